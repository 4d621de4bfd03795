from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

MOUNT_ROOT = "/mnt"
PROBE_FILE = "emptyFile.txt"


class ClaimPhase(str, Enum):
    PENDING = "Pending"
    BOUND = "Bound"
    LOST = "Lost"


class UnitPhase(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class ClassHandle:
    """Data class to hold a created volume class (StorageClass)"""
    name: str
    provisioner: str


@dataclass(frozen=True)
class ClaimHandle:
    """Data class to hold a created volume claim, identified by name and namespace"""
    name: str
    namespace: str


@dataclass(frozen=True)
class ProvisionedVolume:
    """Backend realization of a bound claim"""
    name: str
    volume_handle: str
    claim_name: str


@dataclass(frozen=True)
class ClaimStatus:
    phase: ClaimPhase
    volume: Optional[ProvisionedVolume] = None

    @property
    def bound(self):
        return self.phase == ClaimPhase.BOUND and self.volume is not None


@dataclass(frozen=True)
class UnitHandle:
    """Data class to hold the compute unit (pod) that mounts every volume"""
    name: str
    namespace: str


@dataclass(frozen=True)
class UnitStatus:
    phase: UnitPhase
    host: Optional[str] = None
    reason: Optional[str] = None


def mount_path(index):
    """Deterministic mount directory for the volume at ``index``"""
    return f"{MOUNT_ROOT}/volume{index + 1}"


@dataclass
class VolumeSlot:
    """Everything the run knows about one scale unit, kept together so that
    claim[i], volume[i] and mount path i can never drift apart."""
    index: int
    claim: ClaimHandle
    volume: Optional[ProvisionedVolume] = None

    @property
    def mount_path(self):
        return mount_path(self.index)

    @property
    def probe_path(self):
        return f"{self.mount_path}/{PROBE_FILE}"

    @property
    def bound(self):
        return self.volume is not None

    def describe(self):
        if self.volume:
            return f"[{self.index}] {self.claim.name} -> {self.volume.volume_handle}"
        return f"[{self.index}] {self.claim.name}"


@dataclass
class Run:
    """Aggregate root for one storm run"""
    scale: int
    volume_class: Optional[ClassHandle] = None
    slots: List[VolumeSlot] = field(default_factory=list)
    unit: Optional[UnitHandle] = None
    host: Optional[str] = None

    @property
    def claims(self):
        return [slot.claim for slot in self.slots]

    @property
    def provisioned_volumes(self):
        return [slot.volume for slot in self.slots if slot.volume is not None]

    @property
    def fully_bound(self):
        return len(self.slots) == self.scale and all(slot.bound for slot in self.slots)
