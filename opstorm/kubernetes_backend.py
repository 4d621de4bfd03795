import logging

import boto3
from botocore.exceptions import ClientError
from kubernetes import client, config
from kubernetes.stream import stream

from opstorm.backend import StorageBackend
from opstorm.errors import ClusterNotReadyError, CreationError, DeletionError, StormError
from opstorm.models import (
    ClaimHandle,
    ClaimPhase,
    ClaimStatus,
    ClassHandle,
    ProvisionedVolume,
    UnitHandle,
    UnitPhase,
    UnitStatus,
    mount_path,
)

# Attachment states in which the EC2 volume is still held by the instance
HELD_ATTACHMENT_STATES = ("attached", "detaching")

DEFAULT_POD_CONFIG = {
    'image': 'busybox:1.36',
    'command': ['/bin/sh', '-c', 'while true; do sleep 30; done'],
}


class KubernetesBackend(StorageBackend):
    """StorageBackend over a Kubernetes cluster provisioning EBS volumes

    Cluster objects (StorageClass, PVC, PV, Pod) are driven with the kubernetes
    client. Attachment and existence of the volumes themselves are answered by
    EC2, which is the authoritative view independent of the cluster objects.
    """

    def __init__(self, namespace="default", region=None, pod_config=None, core_v1=None, storage_v1=None,
                 ec2_client=None, exec_timeout=60):
        """Initialize the backend

        Args:
            namespace: Namespace for claims and the pod
            region: AWS region of the EBS volumes
            pod_config: Image, command and node selector for the pod
            core_v1: CoreV1Api instance (optional, loaded from kubeconfig otherwise)
            storage_v1: StorageV1Api instance (optional)
            ec2_client: boto3 EC2 client (optional)
            exec_timeout: Seconds an exec probe may run
        """
        self.logger = logging.getLogger(__name__)
        self.namespace = namespace
        self.exec_timeout = exec_timeout
        self.pod_config = dict(DEFAULT_POD_CONFIG)
        self.pod_config.update(pod_config or {})

        if core_v1 is None or storage_v1 is None:
            config.load_kube_config()
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.storage_v1 = storage_v1 or client.StorageV1Api()
        self.ec2 = ec2_client or boto3.client('ec2', region_name=region)
        self._instance_ids = {}

    @classmethod
    def from_config(cls, run_config):
        """Build a backend from the orchestrator configuration dictionary"""
        return cls(
            namespace=run_config.get('test', {}).get('namespace', 'default'),
            region=run_config.get('backend', {}).get('region'),
            pod_config=run_config.get('pod_config', {}),
            exec_timeout=run_config.get('timeouts', {}).get('exec', 60),
        )

    def check_cluster_ready(self):
        """Require a ready schedulable node and an existing namespace"""
        nodes = self.core_v1.list_node()
        ready = [node.metadata.name for node in nodes.items if self._is_schedulable(node)]
        if not ready:
            raise ClusterNotReadyError("Unable to find ready and schedulable Node")
        self.logger.info(f"Found {len(ready)} ready schedulable node(s)")
        self._ensure_namespace_exists()

    def _is_schedulable(self, node):
        if node.spec.unschedulable:
            return False
        for taint in node.spec.taints or []:
            if taint.effect in ("NoSchedule", "NoExecute"):
                return False
        for condition in node.status.conditions or []:
            if condition.type == "Ready":
                return condition.status == "True"
        return False

    def _ensure_namespace_exists(self):
        """Create the namespace if it doesn't exist already"""
        try:
            self.core_v1.read_namespace(name=self.namespace)
            self.logger.info(f"Namespace '{self.namespace}' already exists")
        except client.exceptions.ApiException as e:
            if e.status != 404:
                self.logger.error(f"Error checking namespace: {e}")
                raise
            self.core_v1.create_namespace(body={
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": self.namespace}
            })
            self.logger.info(f"Created namespace '{self.namespace}'")

    def create_volume_class(self, spec):
        sc_manifest = {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "StorageClass",
            "metadata": {"name": spec['name']},
            "provisioner": spec['provisioner'],
            "parameters": spec.get('parameters', {}),
            "reclaimPolicy": spec.get('reclaim_policy', 'Delete'),
            "volumeBindingMode": spec.get('volume_binding_mode', 'Immediate'),
        }
        try:
            self.storage_v1.create_storage_class(body=sc_manifest)
        except client.exceptions.ApiException as e:
            raise CreationError("StorageClass", spec['name'], e.reason) from e
        self.logger.info(f"Created StorageClass '{spec['name']}'")
        return ClassHandle(name=spec['name'], provisioner=spec['provisioner'])

    def delete_volume_class(self, handle):
        try:
            self.storage_v1.delete_storage_class(name=handle.name)
        except client.exceptions.ApiException as e:
            if e.status == 404:
                self.logger.warning(f"StorageClass {handle.name} already deleted")
                return
            raise DeletionError("StorageClass", handle.name, e.reason) from e

    def create_volume_claim(self, volume_class, size, name):
        pvc_manifest = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": name, "labels": {"app": "opstorm"}},
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "storageClassName": volume_class.name,
                "resources": {
                    "requests": {"storage": size}
                }
            }
        }
        try:
            self.core_v1.create_namespaced_persistent_volume_claim(namespace=self.namespace, body=pvc_manifest)
        except client.exceptions.ApiException as e:
            raise CreationError("PersistentVolumeClaim", name, e.reason) from e
        return ClaimHandle(name=name, namespace=self.namespace)

    def get_claim_status(self, claim):
        pvc = self.core_v1.read_namespaced_persistent_volume_claim(name=claim.name, namespace=claim.namespace)
        phase = pvc.status.phase if pvc.status else None
        if phase != ClaimPhase.BOUND.value or not pvc.spec.volume_name:
            return ClaimStatus(ClaimPhase.LOST if phase == ClaimPhase.LOST.value else ClaimPhase.PENDING)

        pv = self.core_v1.read_persistent_volume(name=pvc.spec.volume_name)
        handle = self._volume_handle(pv)
        if handle is None:
            self.logger.warning(f"PV {pv.metadata.name} has no CSI volume handle yet")
            return ClaimStatus(ClaimPhase.BOUND)
        return ClaimStatus(
            ClaimPhase.BOUND,
            ProvisionedVolume(name=pv.metadata.name, volume_handle=handle, claim_name=claim.name),
        )

    def _volume_handle(self, pv):
        if pv.spec.csi is not None:
            return pv.spec.csi.volume_handle
        if pv.spec.aws_elastic_block_store is not None:
            return pv.spec.aws_elastic_block_store.volume_id.split('/')[-1]
        return None

    def delete_volume_claim(self, claim):
        try:
            self.core_v1.delete_namespaced_persistent_volume_claim(name=claim.name, namespace=claim.namespace)
        except client.exceptions.ApiException as e:
            if e.status == 404:
                self.logger.warning(f"PVC {claim.name} already deleted or not found")
                return
            raise DeletionError("PersistentVolumeClaim", claim.name, e.reason) from e

    def build_pod_manifest(self, claims, name):
        """Pod mounting claim i at /mnt/volume{i+1}"""
        volumes = []
        mounts = []
        for index, claim in enumerate(claims):
            volume_name = f"volume{index + 1}"
            volumes.append({"name": volume_name, "persistentVolumeClaim": {"claimName": claim.name}})
            mounts.append({"name": volume_name, "mountPath": mount_path(index)})

        pod_spec = {
            "containers": [{
                "name": "storm-container",
                "image": self.pod_config['image'],
                "command": self.pod_config['command'],
                "volumeMounts": mounts,
            }],
            "volumes": volumes,
            "restartPolicy": "Never",
        }
        if self.pod_config.get('node_selector'):
            pod_spec['nodeSelector'] = self.pod_config['node_selector']
        if self.pod_config.get('tolerations'):
            pod_spec['tolerations'] = self.pod_config['tolerations']

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": name, "labels": {"app": "opstorm"}},
            "spec": pod_spec,
        }

    def create_compute_unit(self, claims, name):
        try:
            self.core_v1.create_namespaced_pod(namespace=self.namespace, body=self.build_pod_manifest(claims, name))
        except client.exceptions.ApiException as e:
            raise CreationError("Pod", name, e.reason) from e
        return UnitHandle(name=name, namespace=self.namespace)

    def get_unit_status(self, unit):
        pod = self.core_v1.read_namespaced_pod_status(name=unit.name, namespace=unit.namespace)
        phase = pod.status.phase
        host = pod.spec.node_name
        if phase in ("Failed", "Unknown"):
            return UnitStatus(UnitPhase.FAILED, host=host, reason=pod.status.reason or phase)
        if phase == "Running":
            for condition in pod.status.conditions or []:
                if condition.type == "Ready" and condition.status == "True":
                    return UnitStatus(UnitPhase.READY, host=host)
        return UnitStatus(UnitPhase.PENDING, host=host)

    def delete_compute_unit(self, unit):
        try:
            self.core_v1.delete_namespaced_pod(name=unit.name, namespace=unit.namespace)
        except client.exceptions.ApiException as e:
            if e.status == 404:
                self.logger.warning(f"Pod {unit.name} already deleted or not found")
                return
            raise DeletionError("Pod", unit.name, e.reason) from e

    def compute_unit_exists(self, unit):
        try:
            self.core_v1.read_namespaced_pod_status(name=unit.name, namespace=unit.namespace)
            return True
        except client.exceptions.ApiException as e:
            if e.status == 404:
                return False
            raise

    def exec_in_unit(self, unit, command):
        resp = stream(
            self.core_v1.connect_get_namespaced_pod_exec,
            unit.name,
            unit.namespace,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False
        )
        try:
            resp.run_forever(timeout=self.exec_timeout)
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            returncode = resp.returncode
        finally:
            resp.close()
        if returncode != 0:
            raise StormError(f"Command {' '.join(command)} exited with {returncode}: {stderr.strip()}")
        return stdout

    def persistent_volume_exists(self, volume):
        try:
            self.core_v1.read_persistent_volume(name=volume.name)
            return True
        except client.exceptions.ApiException as e:
            if e.status == 404:
                return False
            raise

    def _instance_id(self, host):
        """EC2 instance ID of a node, from its providerID (aws:///zone/i-...)"""
        if host not in self._instance_ids:
            node = self.core_v1.read_node(name=host)
            provider_id = node.spec.provider_id or ""
            if not provider_id.startswith("aws://"):
                raise StormError(f"Node {host} has no AWS providerID: {provider_id!r}")
            self._instance_ids[host] = provider_id.split('/')[-1]
        return self._instance_ids[host]

    def _describe_volume(self, volume_handle):
        try:
            response = self.ec2.describe_volumes(VolumeIds=[volume_handle])
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'InvalidVolume.NotFound':
                return None
            raise
        volumes = response.get('Volumes', [])
        return volumes[0] if volumes else None

    def is_volume_attached_to_host(self, volume_handle, host):
        instance_id = self._instance_id(host)
        volume = self._describe_volume(volume_handle)
        if volume is None:
            return False
        for attachment in volume.get('Attachments', []):
            if attachment.get('InstanceId') == instance_id and attachment.get('State') in HELD_ATTACHMENT_STATES:
                return True
        return False

    def backend_volume_exists(self, volume_handle):
        volume = self._describe_volume(volume_handle)
        if volume is None:
            return False
        return volume.get('State') != 'deleted'
