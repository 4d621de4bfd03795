"""Error types raised while driving a volume operations storm"""


class StormError(Exception):
    """Base class for every failure the orchestrator records or raises"""


class ConfigurationError(StormError):
    """Invalid run configuration, e.g. an unparsable scale override"""


class ClusterNotReadyError(StormError):
    """The cluster cannot host the run (no ready schedulable node)"""


class CreationError(StormError):
    """The backend or API rejected creation of a class, claim or compute unit"""

    def __init__(self, kind, name, reason):
        self.kind = kind
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to create {kind} {name}: {reason}")


class BindTimeoutError(StormError):
    """Claims never reached the Bound phase within the deadline"""

    def __init__(self, unresolved, timeout):
        self.unresolved = list(unresolved)
        self.timeout = timeout
        super().__init__(
            f"{len(self.unresolved)} claim(s) not bound after {timeout}s: {', '.join(self.unresolved)}"
        )


class AttachTimeoutError(StormError):
    """The compute unit never became ready"""

    def __init__(self, unit_name, timeout, phase=None):
        self.unit_name = unit_name
        self.timeout = timeout
        self.phase = phase
        super().__init__(f"Pod {unit_name} not ready after {timeout}s (last phase: {phase})")


class AttachmentMismatchError(StormError):
    """Backend does not report a volume attached to the compute unit's host"""

    def __init__(self, index, volume_handle, host, reason=None):
        self.index = index
        self.volume_handle = volume_handle
        self.host = host
        message = f"Volume {volume_handle} (index {index}) is not attached to the node {host}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MountAccessError(StormError):
    """Write probe failed at a volume's mount path"""

    def __init__(self, index, path, reason):
        self.index = index
        self.path = path
        self.reason = reason
        super().__init__(f"Volume index {index} not accessible at {path}: {reason}")


class DetachTimeoutError(StormError):
    """A volume did not report detached from the host within the deadline"""

    def __init__(self, volume_handle, host, timeout):
        self.volume_handle = volume_handle
        self.host = host
        self.timeout = timeout
        super().__init__(f"Volume {volume_handle} is not detached from the node {host} after {timeout}s")


class DeletionError(StormError):
    """A deletion request was rejected"""

    def __init__(self, kind, name, reason):
        self.kind = kind
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to delete {kind} {name}: {reason}")


class PersistentVolumeDeletionTimeoutError(StormError):
    """The cluster still holds the PersistentVolume object after the deadline"""

    def __init__(self, volume_name, timeout):
        self.volume_name = volume_name
        self.timeout = timeout
        super().__init__(f"PersistentVolume {volume_name} still present after {timeout}s")


class BackendDeletionTimeoutError(StormError):
    """The backend never confirmed removal of a volume"""

    def __init__(self, volume_handle, timeout):
        self.volume_handle = volume_handle
        self.timeout = timeout
        super().__init__(
            f"Volume: {volume_handle} should not be present in the backend after it is deleted "
            f"from kubernetes (waited {timeout}s)"
        )
