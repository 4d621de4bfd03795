import logging
import time
import uuid

from opstorm.errors import (
    AttachTimeoutError,
    AttachmentMismatchError,
    CreationError,
    MountAccessError,
    StormError,
)
from opstorm.models import UnitPhase
from opstorm.polling import Poller, fan_out


class AttachmentOrchestrator:
    """Attaches every provisioned volume to one pod and verifies the result

    The three steps run in order and each gates the next: the pod must be
    ready before attachment is checked, and attachment is checked against the
    backend before the mounts are probed.
    """

    def __init__(self, backend, poller=None, metrics_collector=None, max_workers=1, name_prefix="storm-pod"):
        self.backend = backend
        self.poller = poller or Poller()
        self.metrics_collector = metrics_collector
        self.max_workers = max_workers
        self.name_prefix = name_prefix
        self.logger = logging.getLogger(__name__)

    def attach_all(self, slots, timeout, run=None):
        """Create one pod mounting every volume and wait for it to be ready

        Args:
            slots: Fully bound VolumeSlot list
            timeout: Readiness deadline in seconds
            run: Run to record the pod and host on as soon as they are known,
                including when the pod fails or times out

        Returns:
            Tuple of (UnitHandle, host name)

        Raises:
            StormError: if any slot is unbound
            CreationError: if the pod is rejected
            AttachTimeoutError: if the pod fails or is not ready in time
        """
        unbound = [slot.claim.name for slot in slots if not slot.bound]
        if unbound:
            raise StormError(f"Refusing to attach unbound claims: {', '.join(unbound)}")

        pod_name = f"{self.name_prefix}-{uuid.uuid4().hex[:8]}"
        self.logger.info(f"Creating pod {pod_name} to attach {len(slots)} PVs to the node")
        create_time = time.time()
        try:
            unit = self.backend.create_compute_unit([slot.claim for slot in slots], pod_name)
        except CreationError:
            raise
        except Exception as e:
            raise CreationError("Pod", pod_name, e) from e
        if run is not None:
            run.unit = unit

        last_status = {}

        def _unit_ready():
            try:
                status = self.backend.get_unit_status(unit)
            except Exception as e:
                self.logger.warning(f"Error checking pod {unit.name} status: {e}")
                return False
            if status.phase != last_status.get('phase'):
                self.logger.info(f"Pod {unit.name} phase: {status.phase.value}")
            last_status['phase'] = status.phase
            last_status['status'] = status
            # Teardown needs the node to wait for detach even if the pod never gets ready
            if run is not None and status.host:
                run.host = status.host
            if status.phase == UnitPhase.FAILED:
                raise AttachTimeoutError(unit.name, timeout, phase=f"{status.phase.value} ({status.reason})")
            return status.phase == UnitPhase.READY

        if not self.poller.wait_for(_unit_ready, timeout, description=f"pod {unit.name} to be ready"):
            phase = last_status.get('phase')
            raise AttachTimeoutError(unit.name, timeout, phase=phase.value if phase else None)

        host = last_status['status'].host
        if self.metrics_collector:
            self.metrics_collector.track_pod_startup_delay(unit.name, create_time, time.time())
        self.logger.info(f"Pod {unit.name} is ready on node {host}")
        return unit, host

    def verify_attached(self, slots, host):
        """Ask the backend whether each volume is attached to host

        Every volume is checked. Returns a list of (slot, AttachmentMismatchError).
        """
        self.logger.info(f"Verify the volumes are attached to the node {host}")

        def _check(slot):
            handle = slot.volume.volume_handle
            self.logger.info(f"Verify volume:{handle} is attached to the node: {host}")
            start_time = time.time()
            try:
                attached = self.backend.is_volume_attached_to_host(handle, host)
            except Exception as e:
                raise AttachmentMismatchError(slot.index, handle, host, reason=str(e)) from e
            if not attached:
                raise AttachmentMismatchError(slot.index, handle, host)
            if self.metrics_collector:
                self.metrics_collector.track_volume_attachment(handle, start_time)

        return self._collect("verify_attached", slots, _check)

    def verify_mount_accessible(self, slots, unit):
        """Create an empty marker file at each volume's mount path inside the pod

        All probes run even after a failure. Returns a list of
        (slot, MountAccessError).
        """
        self.logger.info("Verify all volumes are accessible in the pod")

        def _probe(slot):
            path = slot.probe_path
            start_time = time.time()
            try:
                self.backend.exec_in_unit(unit, ["/bin/touch", path])
            except Exception as e:
                if self.metrics_collector:
                    self.metrics_collector.track_mount_operation(unit.name, slot.mount_path, start_time, success=False)
                raise MountAccessError(slot.index, path, e) from e
            if self.metrics_collector:
                self.metrics_collector.track_mount_operation(unit.name, slot.mount_path, start_time)

        return self._collect("verify_mount", slots, _probe)

    def _collect(self, stage, slots, action):
        outcomes = fan_out(slots, action, max_workers=self.max_workers)
        failures = [(slot, error) for slot, error in outcomes if error is not None]
        if self.metrics_collector:
            for _, error in outcomes:
                self.metrics_collector.track_stage_item(stage, error is None)
        self.logger.info(f"{stage}: {len(slots) - len(failures)}/{len(slots)} volumes passed")
        return failures
