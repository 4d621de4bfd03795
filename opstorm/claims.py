import logging
import uuid

from opstorm.errors import ConfigurationError, CreationError
from opstorm.models import VolumeSlot

DEFAULT_DISK_SIZE = "2Gi"


class ClaimBatchDriver:
    """Issues a batch of volume claims against one volume class"""

    def __init__(self, backend, metrics_collector=None, name_prefix="storm-pvc"):
        self.backend = backend
        self.metrics_collector = metrics_collector
        self.name_prefix = name_prefix
        self.logger = logging.getLogger(__name__)

    def create_batch(self, volume_class, count, size=DEFAULT_DISK_SIZE, run=None):
        """Create count claims, one per index

        Any rejected claim is fatal for the whole batch. When a run is given,
        each slot is appended to it as soon as its claim exists so that cleanup
        can reclaim the claims created before a failure.

        Args:
            volume_class: ClassHandle the claims are provisioned from
            count: Number of claims, must be positive
            size: Requested storage per claim
            run: Run to record slots on (optional)

        Returns:
            Ordered list of VolumeSlot, index-aligned with the claims

        Raises:
            ConfigurationError: if count is not positive
            CreationError: on the first rejected claim
        """
        if count <= 0:
            raise ConfigurationError(f"Claim batch size must be positive, got {count}")

        batch_id = uuid.uuid4().hex[:6]
        slots = []
        self.logger.info(f"Creating {count} PVCs of {size} using storage class {volume_class.name}")
        for index in range(count):
            name = f"{self.name_prefix}-{batch_id}-{index}"
            try:
                claim = self.backend.create_volume_claim(volume_class, size, name)
            except CreationError:
                self._track(False)
                raise
            except Exception as e:
                self._track(False)
                raise CreationError("PersistentVolumeClaim", name, e) from e

            slot = VolumeSlot(index=index, claim=claim)
            slots.append(slot)
            if run is not None:
                run.slots.append(slot)
            self._track(True)
            self.logger.debug(f"Created PVC {claim.name} at index {index}")

        self.logger.info(f"Created {len(slots)} PVCs")
        return slots

    def _track(self, success):
        if self.metrics_collector:
            self.metrics_collector.track_stage_item("create_claims", success)
