"""Pytest configuration and shared fixtures."""

import pytest

from opstorm.attachment import AttachmentOrchestrator
from opstorm.backend import StorageBackend
from opstorm.binding import BindWaiter
from opstorm.claims import ClaimBatchDriver
from opstorm.errors import ClusterNotReadyError, CreationError, DeletionError, StormError
from opstorm.models import (
    ClaimHandle,
    ClaimPhase,
    ClaimStatus,
    ClassHandle,
    ProvisionedVolume,
    Run,
    UnitHandle,
    UnitPhase,
    UnitStatus,
)
from opstorm.polling import Poller
from opstorm.utils.metrics_collector import MetricsCollector


class FakeClock:
    """Deterministic clock; sleeping advances time instantly."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend(StorageBackend):
    """Scripted storage backend.

    Claim i binds to volume ``vol-i`` after ``bind_after_polls`` status polls.
    The knobs below inject the failures the tests need.
    """

    def __init__(self, host="node-1"):
        self.host = host
        self.calls = []
        self.bind_after_polls = 1
        self.never_bind = set()          # claim indices
        self.reject_claim_at = None      # claim index
        self.reject_class = False
        self.reject_unit = False
        self.unit_ready_after_polls = 1
        self.unit_fails = False
        self.unit_never_ready = False
        self.not_attached = set()        # volume handles
        self.stuck_attached = set()      # volume handles never detaching
        self.failing_mounts = set()      # mount paths
        self.reject_claim_delete = set() # claim names
        self.backend_leak = set()        # volume handles the backend keeps
        self.pv_leak = set()             # PV names the cluster keeps
        self.cluster_ready = True

        self.classes = {}
        self.claims = {}
        self.claim_polls = {}
        self.units = {}
        self.unit_polls = 0
        self.attached = set()
        self.persistent_volumes = set()
        self.backend_volumes = set()
        self.deleted_classes = []
        self.probed_paths = []

    def _index(self, claim):
        return self.claims[claim.name]['index']

    def check_cluster_ready(self):
        self.calls.append(("check_cluster_ready",))
        if not self.cluster_ready:
            raise ClusterNotReadyError("Unable to find ready and schedulable Node")

    def create_volume_class(self, spec):
        self.calls.append(("create_volume_class", spec['name']))
        if self.reject_class:
            raise CreationError("StorageClass", spec['name'], "forbidden")
        handle = ClassHandle(name=spec['name'], provisioner=spec['provisioner'])
        self.classes[spec['name']] = handle
        return handle

    def delete_volume_class(self, handle):
        self.calls.append(("delete_volume_class", handle.name))
        self.deleted_classes.append(handle.name)
        self.classes.pop(handle.name, None)

    def create_volume_claim(self, volume_class, size, name):
        index = len(self.claims)
        self.calls.append(("create_volume_claim", name, size))
        if self.reject_claim_at == index:
            raise CreationError("PersistentVolumeClaim", name, "quota exceeded")
        self.claims[name] = {"index": index, "size": size, "class": volume_class.name}
        self.claim_polls[name] = 0
        return ClaimHandle(name=name, namespace="storm")

    def get_claim_status(self, claim):
        self.claim_polls[claim.name] += 1
        index = self._index(claim)
        if index in self.never_bind or self.claim_polls[claim.name] < self.bind_after_polls:
            return ClaimStatus(ClaimPhase.PENDING)
        handle = f"vol-{index}"
        pv_name = f"pv-{index}"
        self.persistent_volumes.add(pv_name)
        self.backend_volumes.add(handle)
        return ClaimStatus(ClaimPhase.BOUND, ProvisionedVolume(pv_name, handle, claim.name))

    def delete_volume_claim(self, claim):
        self.calls.append(("delete_volume_claim", claim.name))
        if claim.name in self.reject_claim_delete:
            raise DeletionError("PersistentVolumeClaim", claim.name, "forbidden")
        info = self.claims.pop(claim.name, None)
        if info is None:
            return
        index = info['index']
        if f"pv-{index}" not in self.pv_leak:
            self.persistent_volumes.discard(f"pv-{index}")
        if f"vol-{index}" not in self.backend_leak:
            self.backend_volumes.discard(f"vol-{index}")

    def create_compute_unit(self, claims, name):
        self.calls.append(("create_compute_unit", name, [claim.name for claim in claims]))
        if self.reject_unit:
            raise CreationError("Pod", name, "admission denied")
        unit = UnitHandle(name=name, namespace="storm")
        self.units[name] = [self._index(claim) for claim in claims]
        for index in self.units[name]:
            handle = f"vol-{index}"
            if handle not in self.not_attached:
                self.attached.add(handle)
        return unit

    def get_unit_status(self, unit):
        self.unit_polls += 1
        if self.unit_fails:
            return UnitStatus(UnitPhase.FAILED, host=self.host, reason="ContainerCannotRun")
        if self.unit_never_ready or self.unit_polls < self.unit_ready_after_polls:
            return UnitStatus(UnitPhase.PENDING, host=self.host)
        return UnitStatus(UnitPhase.READY, host=self.host)

    def delete_compute_unit(self, unit):
        self.calls.append(("delete_compute_unit", unit.name))
        self.units.pop(unit.name, None)
        self.attached = {handle for handle in self.attached if handle in self.stuck_attached}

    def compute_unit_exists(self, unit):
        return unit.name in self.units

    def is_volume_attached_to_host(self, volume_handle, host):
        self.calls.append(("is_volume_attached_to_host", volume_handle, host))
        return host == self.host and volume_handle in self.attached

    def exec_in_unit(self, unit, command):
        path = command[-1]
        self.probed_paths.append(path)
        if any(path.startswith(prefix + "/") for prefix in self.failing_mounts):
            raise StormError(f"touch: {path}: Read-only file system")
        return ""

    def persistent_volume_exists(self, volume):
        return volume.name in self.persistent_volumes

    def backend_volume_exists(self, volume_handle):
        return volume_handle in self.backend_volumes


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(clock):
    return Poller(interval=1, backoff=2.0, max_interval=4, clock=clock.time, sleep=clock.sleep)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def metrics_collector(monkeypatch):
    monkeypatch.setattr("opstorm.utils.metrics_collector.psutil.cpu_percent", lambda interval=None: 0.0)
    return MetricsCollector()


@pytest.fixture
def storm_config():
    return {
        "test": {"namespace": "storm", "disk_size": "2Gi", "max_workers": 1},
        "timeouts": {
            "claim_provision": 30,
            "pod_ready": 30,
            "pod_delete": 30,
            "detach": 30,
            "volume_delete": 30,
            "backend_delete": 30,
        },
    }


@pytest.fixture
def volume_class(backend):
    return backend.create_volume_class({"name": "storm-sc-test", "provisioner": "ebs.csi.aws.com"})


@pytest.fixture
def make_run(backend, poller, volume_class):
    """Build a Run driven through claim creation, binding and (optionally) attachment"""

    def _make_run(scale=3, attach=True):
        run = Run(scale=scale, volume_class=volume_class)
        ClaimBatchDriver(backend).create_batch(volume_class, scale, run=run)
        BindWaiter(backend, poller).await_all_bound(run.slots, timeout=30)
        if attach:
            AttachmentOrchestrator(backend, poller).attach_all(run.slots, timeout=30, run=run)
        return run

    return _make_run
