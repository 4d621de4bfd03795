import json
import os
import datetime
import platform
import psutil
from pathlib import Path
import socket
import subprocess

RULE = '=' * 80
SUBRULE = '-' * 40


class ReportGenerator:
    """Write storm reports: a JSON document and a plain-text summary"""

    def __init__(self, output_dir="reports", test_type="volume_ops_storm"):
        """
        Args:
            output_dir: Base directory for reports
            test_type: Subdirectory the reports of this kind go to
        """
        self.output_dir = os.path.join(output_dir, test_type)
        self.test_type = test_type
        Path(self.output_dir).mkdir(parents=True, exist_ok=True)

    def _report_path(self, test_name, suffix):
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        return os.path.join(self.output_dir, f"{test_name}_{timestamp}{suffix}")

    def _kubernetes_version(self):
        """Server version reported by kubectl, or 'Unknown' without a cluster"""
        try:
            output = subprocess.check_output(["kubectl", "version", "-o", "json"], stderr=subprocess.DEVNULL)
        except (subprocess.SubprocessError, FileNotFoundError):
            return "Unknown"
        try:
            versions = json.loads(output)
        except ValueError:
            return "Unknown"
        return versions.get("serverVersion", {}).get("gitVersion", "Unknown")

    def _collect_system_info(self, config=None):
        config = config or {}
        return {
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "python_version": platform.python_version(),
            "cpu_count": psutil.cpu_count(),
            "memory_total_gb": round(psutil.virtual_memory().total / (1024 ** 3), 2),
            "kubernetes_version": self._kubernetes_version(),
            "aws_region": config.get('backend', {}).get('region', 'Unknown'),
            "generated_at": datetime.datetime.now().isoformat(),
        }

    def generate_json_report(self, test_results, test_name, metrics=None, config=None):
        """Write the full report as JSON

        Args:
            test_results: Report dictionary returned by the orchestrator
            test_name: Name of the run
            metrics: MetricsCollector.get_all_metrics() output (optional)
            config: Run configuration (optional)

        Returns:
            Path to the written file
        """
        filepath = self._report_path(test_name, ".json")
        document = {
            "test_name": test_name,
            "test_type": self.test_type,
            "system_info": self._collect_system_info(config),
            "results": test_results,
        }
        if metrics is not None:
            document["metrics"] = metrics

        with open(filepath, 'w') as f:
            json.dump(document, f, indent=2, default=str)
        return filepath

    def generate_summary_report(self, test_results, test_name, metrics=None, config=None):
        """Write a human-readable summary of the run

        Returns:
            Path to the written file
        """
        filepath = self._report_path(test_name, "_summary.txt")
        system_info = self._collect_system_info(config)
        outcome = test_results.get("result", {})

        with open(filepath, 'w') as f:
            f.write(f"{RULE}\nVOLUME OPERATIONS STORM REPORT: {test_name.upper()}\n{RULE}\n\n")
            self._write_section(f, "SYSTEM INFORMATION", [
                f"{key.replace('_', ' ').title()}: {value}" for key, value in system_info.items()
            ])
            self._write_section(f, "RUN", self._run_lines(test_results, outcome))
            self._write_section(f, "STAGE DURATIONS", [
                f"{stage}: {duration:.2f}s"
                for stage, duration in test_results.get("stage_durations", {}).items()
                if duration is not None
            ])
            self._write_section(f, "COMPLETED STAGES", outcome.get("completed_stages", []))
            failures = outcome.get("failures", [])
            self._write_section(f, f"FAILURES ({len(failures)})", [
                f"[{failure['stage']}] {failure['item']}: {failure['error_type']}: {failure['message']}"
                for failure in failures
            ])
            self._write_section(f, "VOLUMES", [
                f"[{volume['index']}] {volume['claim']} -> {volume['volume_handle']} at {volume['mount_path']}"
                for volume in test_results.get("volumes", [])
            ])
            if metrics:
                self._write_section(f, "METRICS", self._metrics_lines(metrics))
            f.write(f"{RULE}\nEND OF REPORT\n{RULE}\n")

        return filepath

    def _run_lines(self, results, outcome):
        return [
            f"Status: {'PASS' if outcome.get('passed') else 'FAIL'}",
            f"Scale: {results.get('scale')} volumes",
            f"Namespace: {results.get('namespace')}",
            f"Storage Class: {results.get('storage_class')}",
            f"Pod: {results.get('pod')} (node {results.get('node')})",
            f"Duration: {results.get('test_duration') or 0:.2f} seconds",
        ]

    def _metrics_lines(self, metrics):
        lines = []
        binding = metrics.get("binding_summary") or {}
        if binding:
            lines.append(
                f"Bind time: min {binding['min']:.2f}s, avg {binding['avg']:.2f}s, "
                f"max {binding['max']:.2f}s over {binding['count']} claims"
            )
        for pod_name, delay in metrics.get("k8s_events", {}).get("pod_startup_delays", {}).items():
            lines.append(f"Pod {pod_name} ready after {delay:.2f}s")
        for method, calls in sorted((metrics.get("csi_operation_delta") or {}).items()):
            lines.append(f"CSI {method}: {calls:g} call(s)")
        return lines

    def _write_section(self, file, title, lines):
        if not lines:
            return
        file.write(f"{title}\n{SUBRULE}\n")
        for line in lines:
            file.write(f"  {line}\n")
        file.write("\n")
