import logging

from opstorm.errors import (
    BackendDeletionTimeoutError,
    DeletionError,
    DetachTimeoutError,
    PersistentVolumeDeletionTimeoutError,
)
from opstorm.polling import Poller, fan_out
from opstorm.results import Stage

DEFAULT_TEARDOWN_TIMEOUTS = {
    'pod_delete': 300,
    'detach': 300,
    'volume_delete': 300,
    'backend_delete': 300,
}


class TeardownVerifier:
    """Reclaims everything a run created and verifies each step

    Teardown runs in cleanup context, possibly after a failed forward
    pipeline, so every method here records failures on the RunResult and
    carries on with the remaining items instead of raising.
    """

    def __init__(self, backend, poller=None, metrics_collector=None, max_workers=1, timeouts=None):
        self.backend = backend
        self.poller = poller or Poller()
        self.metrics_collector = metrics_collector
        self.max_workers = max_workers
        self.timeouts = dict(DEFAULT_TEARDOWN_TIMEOUTS)
        self.timeouts.update(timeouts or {})
        self.logger = logging.getLogger(__name__)

    def teardown(self, run, result):
        """Run every teardown step against whatever subset of run exists"""
        self.logger.info("===== STARTING TEARDOWN =====")
        if run.unit is not None:
            if not run.host:
                run.host = self._scheduled_host(run.unit)
            self.delete_compute_unit(run.unit, self.timeouts['pod_delete'], result)
            if run.host:
                self.await_all_detached(run.slots, run.host, self.timeouts['detach'], result)
            else:
                self.logger.info(f"Pod {run.unit.name} was never scheduled, no detach to wait for")
        else:
            self.logger.info("No pod was created, skipping pod deletion and detach checks")

        if run.slots:
            self.delete_all_claims(run.slots, result)
            self.await_volumes_deleted(run.slots, self.timeouts['volume_delete'], result)
            self.await_backend_deletion(run.slots, self.timeouts['backend_delete'], result)
        self.logger.info("===== TEARDOWN FINISHED =====")

    def delete_compute_unit(self, unit, timeout, result):
        """Delete the pod and wait until the cluster no longer has it

        Returns:
            True if removal was confirmed within timeout
        """
        self.logger.info(f"Deleting pod {unit.name}")
        try:
            self.backend.delete_compute_unit(unit)
        except DeletionError as e:
            result.record(Stage.DELETE_UNIT, unit.name, e)
            return False
        except Exception as e:
            result.record(Stage.DELETE_UNIT, unit.name, DeletionError("Pod", unit.name, e))
            return False

        def _unit_gone():
            try:
                return not self.backend.compute_unit_exists(unit)
            except Exception as e:
                self.logger.warning(f"Error checking pod deletion status: {e}")
                return False

        if not self.poller.wait_for(_unit_gone, timeout, description=f"pod {unit.name} to be deleted"):
            result.record(
                Stage.DELETE_UNIT, unit.name,
                DeletionError("Pod", unit.name, f"still present after {timeout}s"),
            )
            return False
        self.logger.info(f"Pod {unit.name} has been deleted")
        result.mark_completed(Stage.DELETE_UNIT)
        return True

    def await_all_detached(self, slots, host, timeout, result):
        """Wait for the backend to report every volume detached from host

        All volumes share one deadline; each is checked at least once.
        """
        self.logger.info(f"Verify volumes are detached from the node {host}")
        deadline = self.poller.clock() + timeout

        def _await_detach(slot):
            handle = slot.volume.volume_handle

            def _detached():
                try:
                    return not self.backend.is_volume_attached_to_host(handle, host)
                except Exception as e:
                    self.logger.warning(f"Error checking attachment of volume {handle}: {e}")
                    return False

            if not self.poller.wait_for(_detached, self._remaining(deadline), description=f"volume {handle} to detach"):
                raise DetachTimeoutError(handle, host, timeout)
            self.logger.info(f"Volume {handle} is detached from the node {host}")

        return self._fan_out(Stage.DETACH, self._provisioned(slots), _await_detach, result)

    def delete_all_claims(self, slots, result):
        """Issue deletion for every claim, recording rejected deletions"""
        self.logger.info(f"Deleting {len(slots)} PVCs")

        def _delete(slot):
            try:
                self.backend.delete_volume_claim(slot.claim)
            except DeletionError:
                raise
            except Exception as e:
                raise DeletionError("PersistentVolumeClaim", slot.claim.name, e) from e

        return self._fan_out(Stage.DELETE_CLAIMS, slots, _delete, result)

    def await_volumes_deleted(self, slots, timeout, result):
        """Wait until the cluster no longer holds each PersistentVolume"""
        self.logger.info("Wait until all PVs are deleted from Kubernetes")
        deadline = self.poller.clock() + timeout

        def _await_pv(slot):
            volume = slot.volume

            def _gone():
                try:
                    return not self.backend.persistent_volume_exists(volume)
                except Exception as e:
                    self.logger.warning(f"Error checking PV {volume.name}: {e}")
                    return False

            if not self.poller.wait_for(_gone, self._remaining(deadline), description=f"PV {volume.name} to be deleted"):
                raise PersistentVolumeDeletionTimeoutError(volume.name, timeout)

        return self._fan_out(Stage.VOLUME_DELETION, self._provisioned(slots), _await_pv, result)

    def await_backend_deletion(self, slots, timeout, result):
        """Wait until the backend confirms each volume no longer exists

        Removal of the cluster object is not enough: only the backend's own
        answer counts.
        """
        self.logger.info("Verify volumes are deleted from the backend")
        deadline = self.poller.clock() + timeout

        def _await_backend(slot):
            handle = slot.volume.volume_handle

            def _gone():
                try:
                    return not self.backend.backend_volume_exists(handle)
                except Exception as e:
                    self.logger.warning(f"Error checking backend volume {handle}: {e}")
                    return False

            if not self.poller.wait_for(_gone, self._remaining(deadline), description=f"backend volume {handle} to be deleted"):
                raise BackendDeletionTimeoutError(handle, timeout)
            self.logger.info(f"Volume {handle} is deleted from the backend")

        return self._fan_out(Stage.BACKEND_DELETION, self._provisioned(slots), _await_backend, result)

    def delete_volume_class(self, volume_class, result):
        """Release the run's volume class; called exactly once at run end"""
        self.logger.info(f"Deleting storage class {volume_class.name}")
        try:
            self.backend.delete_volume_class(volume_class)
        except DeletionError as e:
            result.record(Stage.DELETE_CLASS, volume_class.name, e)
            return False
        except Exception as e:
            result.record(Stage.DELETE_CLASS, volume_class.name, DeletionError("StorageClass", volume_class.name, e))
            return False
        result.mark_completed(Stage.DELETE_CLASS)
        return True

    def _scheduled_host(self, unit):
        """Node the pod was placed on, read before the pod is deleted"""
        try:
            return self.backend.get_unit_status(unit).host
        except Exception as e:
            self.logger.warning(f"Error reading the node of pod {unit.name}: {e}")
            return None

    def _provisioned(self, slots):
        return [slot for slot in slots if slot.volume is not None]

    def _remaining(self, deadline):
        return max(deadline - self.poller.clock(), 0)

    def _fan_out(self, stage, slots, action, result):
        outcomes = fan_out(slots, action, max_workers=self.max_workers)
        failures = [(slot, error) for slot, error in outcomes if error is not None]
        for slot, error in failures:
            result.record(stage, slot.describe(), error)
        if self.metrics_collector:
            for _, error in outcomes:
                self.metrics_collector.track_stage_item(stage.value, error is None)
        resolved = len(outcomes) - len(failures)
        self.logger.info(f"{stage.value}: {resolved}/{len(outcomes)} resolved")
        result.mark_completed(stage)
        return failures
