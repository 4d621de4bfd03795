import logging

from opstorm.errors import BindTimeoutError
from opstorm.polling import Poller


class BindWaiter:
    """Waits until every claim of a batch is bound to a provisioned volume"""

    def __init__(self, backend, poller=None, metrics_collector=None):
        self.backend = backend
        self.poller = poller or Poller()
        self.metrics_collector = metrics_collector
        self.logger = logging.getLogger(__name__)

    def await_all_bound(self, slots, timeout):
        """Poll claim status until all slots are bound or timeout expires

        Binding is all-or-nothing: a partial bind is a failure because the
        attachment stage needs the full set. Volumes resolved before the
        deadline are still written to their slots so that teardown can verify
        their removal.

        Args:
            slots: VolumeSlot list produced by the claim batch
            timeout: Deadline in seconds

        Returns:
            List of ProvisionedVolume, volume[i] belonging to slots[i]

        Raises:
            BindTimeoutError: naming exactly the claims still unresolved
        """
        start_time = self.poller.clock()
        resolved = {}
        pending = {slot.index: slot for slot in slots}
        self.logger.info(f"Waiting for {len(slots)} claims to be in bound state")

        def _poll_claims():
            for index, slot in list(pending.items()):
                try:
                    status = self.backend.get_claim_status(slot.claim)
                except Exception as e:
                    self.logger.warning(f"Error checking PVC {slot.claim.name} status: {e}")
                    continue
                if status.bound:
                    resolved[index] = status.volume
                    del pending[index]
                    bind_time = self.poller.clock() - start_time
                    self.logger.info(f"PVC {slot.claim.name} is bound to {status.volume.name}")
                    if self.metrics_collector:
                        self.metrics_collector.track_pv_pvc_binding(slot.claim.name, status.volume.name, bind_time)
                else:
                    self.logger.debug(f"PVC {slot.claim.name} is in {status.phase.value} state, waiting...")
            return not pending

        all_bound = self.poller.wait_for(_poll_claims, timeout, description=f"{len(slots)} PVCs to bind")

        for slot in slots:
            if slot.index in resolved:
                slot.volume = resolved[slot.index]

        if not all_bound:
            unresolved = [pending[index].claim.name for index in sorted(pending)]
            raise BindTimeoutError(unresolved, timeout)

        self.logger.info(f"All {len(slots)} PVCs are bound")
        return [slot.volume for slot in slots]
