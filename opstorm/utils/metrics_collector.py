import time
import psutil
import logging
import re
import subprocess
import threading
import requests
from collections import defaultdict
from kubernetes import client

SAMPLE_PATTERN = re.compile(r'^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>\S+)')
LABEL_PATTERN = re.compile(r'(\w+)="((?:[^"\\]|\\.)*)"')

# Per-gRPC-method call counter exported by the CSI sidecars
CSI_OPERATION_METRIC = "csi_sidecar_operations_seconds_count"


class MetricsCollector:
    """Stage timings, per-volume timings and CSI controller counters for a storm run

    Tracking methods may be called from fan-out worker threads.
    """

    def __init__(self):
        self.operations = {}
        self.system_metrics = {}
        self.csi_metrics = {}

        self.stage_metrics = defaultdict(lambda: {"success": 0, "failure": 0})

        self.attach_metrics = {
            "volume_attach_timing": {},
            "mount_timing": {},
            "mount_errors": defaultdict(int)
        }

        self.k8s_events = {
            "binding_times": {},
            "pod_startup_delays": {}
        }

        self._lock = threading.Lock()
        self._process = psutil.Process()
        self.logger = logging.getLogger(__name__)

    def start_operation(self, name):
        """Start timing a stage

        Args:
            name: Stage name, also the key returned for end_operation

        Returns:
            Key of the started operation
        """
        self.operations[name] = {"start_time": time.time()}
        self.system_metrics[name] = self._sample_system("start")
        return name

    def end_operation(self, op_id):
        """Stop timing a stage and return its duration in seconds"""
        operation = self.operations.get(op_id)
        if operation is None:
            self.logger.warning(f"Operation {op_id} was never started")
            return 0

        operation["end_time"] = time.time()
        operation["duration"] = operation["end_time"] - operation["start_time"]
        self.system_metrics[op_id].update(self._sample_system("end"))
        return operation["duration"]

    def _sample_system(self, prefix):
        """Load on the machine driving the storm, plus this process's thread count"""
        return {
            f"{prefix}_cpu_percent": psutil.cpu_percent(interval=0.1),
            f"{prefix}_memory_percent": psutil.virtual_memory().percent,
            f"{prefix}_threads": self._process.num_threads()
        }

    def collect_csi_metrics(self, config=None, label="snapshot"):
        """Scrape the CSI controller's Prometheus endpoints into csi_metrics[label]

        Does nothing unless metrics_collection.enabled is set in config.
        Scrape problems are logged; they never fail the run.
        """
        metrics_config = (config or {}).get('metrics_collection', {})
        if not metrics_config.get('enabled', False):
            return

        namespace = metrics_config.get('controller_namespace', 'kube-system')
        pod_name = self._find_controller_pod(namespace, metrics_config.get('controller_label', 'app=ebs-csi-controller'))
        if pod_name is None:
            return

        scraped = {}
        for port in metrics_config.get('controller_ports', [8080]):
            metrics_text = self._scrape_port(pod_name, namespace, port)
            if metrics_text is not None:
                scraped[f"port_{port}"] = self.parse_prometheus_metrics(metrics_text)
        self.csi_metrics[label] = scraped
        self.logger.info(f"Collected CSI metrics '{label}' from {pod_name} ({len(scraped)} endpoint(s))")

    def _find_controller_pod(self, namespace, selector):
        try:
            pods = client.CoreV1Api().list_namespaced_pod(namespace=namespace, label_selector=selector)
        except Exception as e:
            # Covers ApiException as well as connection and kubeconfig errors
            self.logger.warning(f"Error listing CSI controller pods: {e}")
            return None
        if not pods.items:
            self.logger.warning(f"No CSI controller pods found with selector {selector}")
            return None
        return pods.items[0].metadata.name

    def _scrape_port(self, pod_name, namespace, port):
        try:
            process = subprocess.Popen(
                ["kubectl", "port-forward", pod_name, f"{port}:{port}", "-n", namespace],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.warning(f"Could not start port-forward to {pod_name}:{port}: {e}")
            return None
        try:
            # Give the port-forward time to establish
            time.sleep(2)
            response = requests.get(f"http://localhost:{port}/metrics", timeout=5)
            response.raise_for_status()
            return response.text
        except requests.RequestException as e:
            self.logger.warning(f"Failed to scrape metrics on port {port}: {e}")
            return None
        finally:
            self._stop_port_forward(process)

    def _stop_port_forward(self, process):
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Port-forward {process.pid} did not exit, killing it")
            process.kill()
            process.wait()

    def track_stage_item(self, stage, success=True):
        """Count one per-volume outcome of a stage"""
        with self._lock:
            self.stage_metrics[stage]["success" if success else "failure"] += 1

    def track_volume_attachment(self, volume_handle, start_time):
        """Record how long the backend took to confirm a volume's attachment"""
        with self._lock:
            self.attach_metrics["volume_attach_timing"][volume_handle] = time.time() - start_time

    def track_mount_operation(self, pod_name, mount_path, start_time, success=True):
        """Record a mount probe

        Args:
            pod_name: Pod the probe ran in
            mount_path: Mount directory that was probed
            start_time: When the probe started
            success: Whether the probe file could be created
        """
        with self._lock:
            self.attach_metrics["mount_timing"].setdefault(pod_name, {})[mount_path] = time.time() - start_time
            if not success:
                self.attach_metrics["mount_errors"][pod_name] += 1

    def track_pv_pvc_binding(self, pvc_name, pv_name, bind_time):
        """Record the seconds a claim took to bind to its PV"""
        with self._lock:
            self.k8s_events["binding_times"][pvc_name] = {"volume": pv_name, "seconds": bind_time}

    def track_pod_startup_delay(self, pod_name, create_time, ready_time):
        self.k8s_events["pod_startup_delays"][pod_name] = ready_time - create_time

    def parse_prometheus_metrics(self, metrics_text):
        """Parse Prometheus text exposition format

        Args:
            metrics_text: Raw /metrics response body

        Returns:
            Dictionary of metric name to a list of {"labels": dict, "value": float}
        """
        parsed = defaultdict(list)
        for line in (metrics_text or "").splitlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            match = SAMPLE_PATTERN.match(line)
            if not match:
                continue
            try:
                value = float(match.group('value'))
            except ValueError:
                continue
            labels = dict(LABEL_PATTERN.findall(match.group('labels') or ""))
            parsed[match.group('name')].append({"labels": labels, "value": value})
        return dict(parsed)

    def csi_operation_counts(self, label):
        """Sum CSI sidecar call counts per gRPC method for one scrape"""
        counts = defaultdict(float)
        for endpoint in self.csi_metrics.get(label, {}).values():
            for sample in endpoint.get(CSI_OPERATION_METRIC, []):
                method = sample["labels"].get("method_name", "unknown").rsplit("/", 1)[-1]
                counts[method] += sample["value"]
        return dict(counts)

    def csi_operation_delta(self, before="before", after="after"):
        """CSI calls issued between two scrapes, e.g. {'CreateVolume': 30.0}"""
        if before not in self.csi_metrics or after not in self.csi_metrics:
            return {}
        start = self.csi_operation_counts(before)
        end = self.csi_operation_counts(after)
        return {method: end[method] - start.get(method, 0) for method in end}

    def summarize_binding_times(self):
        """Min/avg/max of the recorded bind times"""
        times = [entry["seconds"] for entry in self.k8s_events["binding_times"].values()]
        if not times:
            return {}
        return {
            "count": len(times),
            "min": min(times),
            "avg": sum(times) / len(times),
            "max": max(times)
        }

    def get_all_metrics(self):
        """Everything collected, in a JSON-serializable dictionary"""
        return {
            "operations": self.operations,
            "system": self.system_metrics,
            "csi": self.csi_metrics,
            "csi_operation_delta": self.csi_operation_delta(),
            "stages": {stage: dict(counts) for stage, counts in self.stage_metrics.items()},
            "attach": {
                "volume_attach_timing": self.attach_metrics["volume_attach_timing"],
                "mount_timing": self.attach_metrics["mount_timing"],
                "mount_errors": dict(self.attach_metrics["mount_errors"])
            },
            "k8s_events": self.k8s_events,
            "binding_summary": self.summarize_binding_times()
        }
