"""
Volume operations storm.

Steps
    1. Create a storage class for dynamic volume provisioning.
    2. Create N PVCs using that storage class, requesting 2Gi each.
    3. Wait until all PVs and PVCs are bound. (CreateVolume storm)
    4. Create one pod mounting every PVC. (AttachDisk storm)
    5. Wait for the pod to be running.
    6. Verify every volume is attached (backend view) and writable in the pod.
    7. Delete the pod.
    8. Wait until every volume is detached. (DetachDisk storm)
    9. Delete all PVCs and wait for the PVs and backend volumes to go. (DeleteVolume storm)
    10. Delete the storage class.
"""

import logging
import time
import uuid
from datetime import datetime

from opstorm.attachment import AttachmentOrchestrator
from opstorm.binding import BindWaiter
from opstorm.claims import ClaimBatchDriver, DEFAULT_DISK_SIZE
from opstorm.errors import ConfigurationError, StormError
from opstorm.models import Run
from opstorm.polling import Poller
from opstorm.results import RunResult, Stage
from opstorm.scale import resolve_scale
from opstorm.teardown import TeardownVerifier
from opstorm.utils.log_integration import collect_logs_on_test_failure
from opstorm.utils.metrics_collector import MetricsCollector

DEFAULT_TIMEOUTS = {
    'claim_provision': 300,
    'pod_ready': 300,
    'pod_delete': 300,
    'detach': 300,
    'volume_delete': 300,
    'backend_delete': 300,
}

DEFAULT_STORAGE_CLASS = {
    'name_prefix': 'storm-sc',
    'provisioner': 'ebs.csi.aws.com',
    'parameters': {'type': 'gp3'},
    'reclaim_policy': 'Delete',
    'volume_binding_mode': 'Immediate',
}


class VolumeOpsStormOrchestrator:
    """Drives one volume operations storm run against a StorageBackend"""

    def __init__(self, backend, config=None, metrics_collector=None, poller=None, driver_pod_name=None):
        """Initialize the orchestrator

        Args:
            backend: StorageBackend implementation to drive
            config: Configuration dictionary (see config/orchestrator_config.yaml)
            metrics_collector: Metrics collector instance
            poller: Poller used for every bounded wait
            driver_pod_name: Name of the CSI driver pod for failure log collection
        """
        self.logger = logging.getLogger(__name__)
        self.backend = backend
        self.config = config or {}
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.poller = poller or Poller.from_config(self.config.get('polling'))
        self.driver_pod_name = driver_pod_name
        self._init_test_parameters()
        self._init_stages()

    def _init_test_parameters(self):
        """Initialize test parameters from configuration"""
        test_config = self.config.get('test', {})
        self.namespace = test_config.get('namespace', 'default')
        self.disk_size = test_config.get('disk_size', DEFAULT_DISK_SIZE)
        self.scale_override = test_config.get('volume_ops_scale')
        self.max_workers = test_config.get('max_workers', 1)

        self.timeouts = dict(DEFAULT_TIMEOUTS)
        self.timeouts.update(self.config.get('timeouts', {}))

        self.storage_class_config = dict(DEFAULT_STORAGE_CLASS)
        self.storage_class_config.update(self.config.get('storage_class', {}))

    def _init_stages(self):
        self.claim_driver = ClaimBatchDriver(self.backend, self.metrics_collector)
        self.bind_waiter = BindWaiter(self.backend, self.poller, self.metrics_collector)
        self.attachment = AttachmentOrchestrator(
            self.backend, self.poller, self.metrics_collector, max_workers=self.max_workers
        )
        self.teardown_verifier = TeardownVerifier(
            self.backend, self.poller, self.metrics_collector,
            max_workers=self.max_workers, timeouts=self.timeouts
        )

    def build_storage_class_spec(self):
        """Build the storage class spec for this run"""
        sc_config = self.storage_class_config
        return {
            'name': f"{sc_config['name_prefix']}-{uuid.uuid4().hex[:8]}",
            'provisioner': sc_config['provisioner'],
            'parameters': sc_config.get('parameters', {}),
            'reclaim_policy': sc_config.get('reclaim_policy', 'Delete'),
            'volume_binding_mode': sc_config.get('volume_binding_mode', 'Immediate'),
        }

    def run_test(self, scale=None):
        """
        Run the storm: forward pipeline first, then unconditional teardown.

        Returns:
            Tuple of (report dictionary, RunResult)
        """
        result = RunResult()
        start_time = time.time()

        try:
            scale = resolve_scale(scale if scale is not None else self.scale_override)
        except ConfigurationError as e:
            result.record(Stage.CONFIGURATION, "VOLUME_OPS_SCALE", e)
            return self._generate_report(None, result, time.time() - start_time), result

        self.logger.info(f"Running test with VOLUME_OPS_SCALE: {scale}")
        run = Run(scale=scale)
        self.metrics_collector.collect_csi_metrics(self.config, label="before")

        try:
            self._run_pipeline(run, result)
        except KeyboardInterrupt:
            self.logger.info("Test interrupted by user")
            raise
        finally:
            self._cleanup(run, result)
            self.metrics_collector.collect_csi_metrics(self.config, label="after")

        elapsed = time.time() - start_time
        self.logger.info(f"Test completed in {elapsed:.2f} seconds")
        if not result.passed:
            self._handle_failure(run, result)
        return self._generate_report(run, result, elapsed), result

    def _run_pipeline(self, run, result):
        """Forward pipeline; the first fatal error stops it"""
        stage = Stage.CLUSTER_CHECK
        try:
            self.backend.check_cluster_ready()
            result.mark_completed(stage)

            stage = Stage.CREATE_CLASS
            with self._timed(stage):
                self.logger.info("Creating Storage Class")
                run.volume_class = self.backend.create_volume_class(self.build_storage_class_spec())
            result.mark_completed(stage)

            stage = Stage.CREATE_CLAIMS
            with self._timed(stage):
                self.logger.info("Creating PVCs using the Storage Class")
                self.claim_driver.create_batch(run.volume_class, run.scale, self.disk_size, run=run)
            result.mark_completed(stage)

            stage = Stage.BIND
            with self._timed(stage):
                self.bind_waiter.await_all_bound(run.slots, self.timeouts['claim_provision'])
            result.mark_completed(stage)

            stage = Stage.ATTACH
            with self._timed(stage):
                unit, host = self.attachment.attach_all(run.slots, self.timeouts['pod_ready'], run=run)
            result.mark_completed(stage)

            stage = Stage.VERIFY_ATTACHED
            with self._timed(stage):
                for slot, error in self.attachment.verify_attached(run.slots, host):
                    result.record(stage, slot.describe(), error)
            result.mark_completed(stage)

            stage = Stage.VERIFY_MOUNT
            with self._timed(stage):
                for slot, error in self.attachment.verify_mount_accessible(run.slots, unit):
                    result.record(stage, slot.describe(), error)
            result.mark_completed(stage)
        except StormError as e:
            result.record(stage, self._stage_item(stage, run), e)
            self.logger.error(f"Stage {stage.value} failed fatally, skipping to teardown")
        except Exception as e:
            self.logger.error(f"Unexpected error during stage {stage.value}: {e}", exc_info=True)
            result.record(stage, self._stage_item(stage, run), e)

    def _cleanup(self, run, result):
        """Teardown every resource the run created; never raises"""
        try:
            with self._timed("teardown"):
                self.teardown_verifier.teardown(run, result)
        except Exception as e:
            self.logger.error(f"Error during teardown: {e}", exc_info=True)
            result.record(Stage.TEARDOWN, "teardown", e)
        finally:
            if run.volume_class is not None:
                self.teardown_verifier.delete_volume_class(run.volume_class, result)

    def _stage_item(self, stage, run):
        if stage == Stage.ATTACH and run.unit is not None:
            return run.unit.name
        if stage == Stage.CREATE_CLASS:
            return "storage-class"
        if stage in (Stage.CREATE_CLAIMS, Stage.BIND):
            return f"{len(run.slots)}/{run.scale} claims"
        return stage.value

    def _timed(self, stage):
        return _TimedOperation(self.metrics_collector, stage.value if isinstance(stage, Stage) else stage)

    def _handle_failure(self, run, result):
        if not self.config.get('failure_logs', {}).get('enabled', False):
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        failed_resources = []
        if run.unit is not None:
            failed_resources.append({"type": "pod", "name": run.unit.name, "namespace": self.namespace})
        for slot in run.slots:
            failed_resources.append({"type": "pvc", "name": slot.claim.name, "namespace": slot.claim.namespace})
        logs_path = collect_logs_on_test_failure(
            f"volume_ops_storm_{timestamp}",
            self.metrics_collector,
            self.driver_pod_name,
            failed_resources=failed_resources,
            driver_config=self.config.get('failure_logs', {})
        )
        if logs_path:
            self.logger.info(f"Collected failure logs to: {logs_path}")

    def _generate_report(self, run, result, elapsed):
        """Generate test report"""
        report = {
            "test_duration": elapsed,
            "scale": run.scale if run else None,
            "namespace": self.namespace,
            "storage_class": run.volume_class.name if run and run.volume_class else None,
            "pod": run.unit.name if run and run.unit else None,
            "node": run.host if run else None,
            "volumes": [
                {
                    "index": slot.index,
                    "claim": slot.claim.name,
                    "persistent_volume": slot.volume.name if slot.volume else None,
                    "volume_handle": slot.volume.volume_handle if slot.volume else None,
                    "mount_path": slot.mount_path,
                }
                for slot in (run.slots if run else [])
            ],
            "result": result.to_dict(),
            "stage_durations": {
                op_id: op.get("duration")
                for op_id, op in self.metrics_collector.operations.items()
            },
        }
        self._print_report_summary(report, result)
        return report

    def _print_report_summary(self, report, result):
        """Print a summary of the test report"""
        self.logger.info("===== Volume Operations Storm Summary =====")
        self.logger.info(f"Scale: {report['scale']}, pod: {report['pod']}, node: {report['node']}")
        for stage, duration in report['stage_durations'].items():
            if duration is not None:
                self.logger.info(f"{stage}: {duration:.2f}s")
        for line in result.summary():
            if result.passed:
                self.logger.info(line)
            else:
                self.logger.error(line)
        self.logger.info("===========================================")


class _TimedOperation:
    """Context manager timing one stage through the metrics collector"""

    def __init__(self, metrics_collector, name):
        self.metrics_collector = metrics_collector
        self.name = name
        self.op_id = None

    def __enter__(self):
        self.op_id = self.metrics_collector.start_operation(self.name)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.metrics_collector.end_operation(self.op_id)
        return False
