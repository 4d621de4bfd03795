"""Interface the orchestrator uses to drive and observe the storage system.

The orchestrator never talks to the cluster or the storage backend directly;
everything goes through a StorageBackend so the same stages can run against a
real cluster or a scripted fake.
"""

import abc


class StorageBackend(abc.ABC):
    """Cluster control plane plus storage backend, as seen by the storm"""

    @abc.abstractmethod
    def create_volume_class(self, spec):
        """Create a volume class from spec and return a ClassHandle

        Raises:
            CreationError: if the class is rejected
        """

    @abc.abstractmethod
    def delete_volume_class(self, handle):
        """Delete a volume class

        Raises:
            DeletionError: if the deletion is rejected
        """

    @abc.abstractmethod
    def create_volume_claim(self, volume_class, size, name):
        """Create one claim against volume_class and return a ClaimHandle

        Raises:
            CreationError: if the claim is rejected
        """

    @abc.abstractmethod
    def get_claim_status(self, claim):
        """Return the ClaimStatus of a claim"""

    @abc.abstractmethod
    def delete_volume_claim(self, claim):
        """Delete a claim; a claim that is already gone is not an error

        Raises:
            DeletionError: if the deletion is rejected
        """

    @abc.abstractmethod
    def create_compute_unit(self, claims, name):
        """Create one compute unit mounting every claim at /mnt/volume{i+1}

        Returns:
            UnitHandle

        Raises:
            CreationError: if the unit is rejected
        """

    @abc.abstractmethod
    def get_unit_status(self, unit):
        """Return the UnitStatus (phase and host) of a compute unit"""

    @abc.abstractmethod
    def delete_compute_unit(self, unit):
        """Request deletion of a compute unit

        Raises:
            DeletionError: if the deletion is rejected
        """

    @abc.abstractmethod
    def compute_unit_exists(self, unit):
        """True while the cluster still holds the compute unit"""

    @abc.abstractmethod
    def is_volume_attached_to_host(self, volume_handle, host):
        """Backend view of whether volume_handle is attached to host"""

    @abc.abstractmethod
    def exec_in_unit(self, unit, command):
        """Run command inside the compute unit and return its output

        Raises:
            StormError: if the command cannot run or fails
        """

    @abc.abstractmethod
    def persistent_volume_exists(self, volume):
        """Cluster view: True while the PersistentVolume object still exists"""

    @abc.abstractmethod
    def backend_volume_exists(self, volume_handle):
        """Backend view: True while the backend still holds the volume"""

    def check_cluster_ready(self):
        """Raise ClusterNotReadyError if the cluster cannot host the run"""
