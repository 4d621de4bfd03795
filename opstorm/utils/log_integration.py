import os
import json
import subprocess
import logging
import shlex
import shutil
import tarfile
from datetime import datetime

DEFAULT_DRIVER_CONFIG = {
    'namespace': 'kube-system',
    'container': 'ebs-plugin',
    'sidecars': ['csi-provisioner', 'csi-attacher'],
    'controller_label': 'app=ebs-csi-controller',
    'node_label': 'app=ebs-csi-node',
    'logs_dir': 'logs',
}

# Cluster-wide state that explains stuck attach, detach and delete operations
CLUSTER_STATE_COMMANDS = {
    "volume_attachments": ["kubectl get volumeattachments -o wide"],
    "persistent_volumes": ["kubectl get pv -o wide"],
    "storage_classes": ["kubectl get storageclass -o wide"],
}

RESOURCE_COMMANDS = [
    "kubectl describe {type} {name} -n {namespace}",
    "kubectl get {type} {name} -n {namespace} -o yaml",
    "kubectl get events -n {namespace} --field-selector involvedObject.name={name} --sort-by=.lastTimestamp",
]


def _driver_settings(driver_config):
    settings = dict(DEFAULT_DRIVER_CONFIG)
    settings.update(driver_config or {})
    return settings


def execute_command(command, file):
    """Run a kubectl command, writing the command line and its output to file"""
    print(command + "\n", file=file, flush=True)
    subprocess.run(shlex.split(command), text=True, stderr=subprocess.STDOUT, stdout=file)
    print("\n", file=file, flush=True)


def _write_section(directory, name, commands):
    with open(os.path.join(directory, name), "w") as f:
        for command in commands:
            execute_command(command, f)


def _kubectl_value(args):
    result = subprocess.run(["kubectl"] + args, capture_output=True, text=True)
    return result.stdout.strip() if result.stdout else ""


def _find_driver_pod(settings, selector):
    """Name of the first driver pod matching selector, or None"""
    name = _kubectl_value([
        "get", "pods", "-n", settings['namespace'], "-l", selector,
        "-o", "jsonpath={.items[0].metadata.name}"
    ])
    return name or None


def collect_driver_logs(directory, settings, driver_pod_name=None):
    """
    Collect describe output and logs of the CSI controller and node plugin

    The controller's provisioner and attacher sidecars are included since
    they carry the CreateVolume and ControllerPublish traces for the storm.

    Args:
        directory: Directory to write into
        settings: Driver settings (namespace, containers, label selectors)
        driver_pod_name: Controller pod to use instead of looking one up

    Returns:
        List of pod names whose logs were collected
    """
    logger = logging.getLogger(__name__)
    namespace = settings['namespace']
    pods = {
        "controller": driver_pod_name or _find_driver_pod(settings, settings['controller_label']),
        "node": _find_driver_pod(settings, settings['node_label']),
    }

    collected = []
    for role, pod_name in pods.items():
        if not pod_name:
            logger.warning(f"No CSI {role} pod found in namespace {namespace}")
            continue
        containers = [settings['container']]
        if role == "controller":
            containers += settings['sidecars']
        commands = [f"kubectl describe pod {pod_name} -n {namespace}"]
        commands += [f"kubectl logs {pod_name} -n {namespace} -c {container}" for container in containers]
        _write_section(directory, f"driver_{role}_{pod_name}", commands)
        collected.append(pod_name)
    return collected


def collect_resource_logs(resource_type, resource_name, namespace, directory):
    """
    Collect describe output, yaml and events for one storm resource

    For a pvc the bound PV is described as well, for a pod its node.

    Returns:
        Path to the directory containing the collected logs
    """
    resource_dir = os.path.join(directory, f"{resource_type}_{resource_name}")
    os.makedirs(resource_dir, exist_ok=True)

    fields = {"type": resource_type, "name": resource_name, "namespace": namespace}
    _write_section(resource_dir, "describe.txt", [command.format(**fields) for command in RESOURCE_COMMANDS])

    if resource_type == "pvc":
        pv_name = _kubectl_value(["get", "pvc", resource_name, "-n", namespace, "-o", "jsonpath={.spec.volumeName}"])
        if pv_name:
            _write_section(resource_dir, "pv_info.txt", [f"kubectl describe pv {pv_name}"])
    elif resource_type == "pod":
        node_name = _kubectl_value(["get", "pod", resource_name, "-n", namespace, "-o", "jsonpath={.spec.nodeName}"])
        if node_name:
            _write_section(resource_dir, "node_info.txt", [f"kubectl describe node {node_name}"])

    return resource_dir


def collect_logs_on_test_failure(test_name, metrics_collector=None, driver_pod_name=None, failed_resources=None,
                                 driver_config=None):
    """
    Collect diagnostics for a failed storm run into a tarball

    Args:
        test_name: Name of the run, used for the archive name
        metrics_collector: Metrics collector whose data is saved alongside (optional)
        driver_pod_name: Name of the CSI controller pod (looked up when None)
        failed_resources: List of dicts with 'type', 'name' and 'namespace' keys
        driver_config: Overrides for namespace, containers, label selectors and logs_dir

    Returns:
        Path to the tarball, or None if collection failed
    """
    logger = logging.getLogger(__name__)
    settings = _driver_settings(driver_config)
    logger.info(f"Run '{test_name}' failed, collecting diagnostics")

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    main_dir = os.path.join(settings['logs_dir'], f"{test_name}_failure_{timestamp}")
    os.makedirs(main_dir, exist_ok=True)

    try:
        collect_driver_logs(main_dir, settings, driver_pod_name)

        for name, commands in CLUSTER_STATE_COMMANDS.items():
            _write_section(main_dir, name, commands)

        namespaces = set()
        resources_dir = os.path.join(main_dir, "failed_resources")
        for resource in failed_resources or []:
            namespace = resource.get("namespace", "default")
            namespaces.add(namespace)
            collect_resource_logs(resource.get("type", "unknown"), resource.get("name", "unknown"),
                                  namespace, resources_dir)
        for namespace in sorted(namespaces):
            _write_section(main_dir, f"events_{namespace}",
                           [f"kubectl get events -n {namespace} --sort-by=.lastTimestamp"])

        if metrics_collector:
            metrics_dir = os.path.join(main_dir, "metrics")
            os.makedirs(metrics_dir, exist_ok=True)
            with open(os.path.join(metrics_dir, "test_metrics.json"), "w") as f:
                json.dump(metrics_collector.get_all_metrics(), f, indent=2, default=str)
    except (OSError, subprocess.SubprocessError) as e:
        logger.error(f"Error collecting diagnostics: {e}", exc_info=True)
        return None

    tarball_path = f"{main_dir}.tgz"
    with tarfile.open(tarball_path, "w:gz") as tar:
        tar.add(main_dir, arcname=os.path.basename(main_dir))
    shutil.rmtree(main_dir)

    logger.info(f"Failure diagnostics collected to: {tarball_path}")
    return tarball_path
