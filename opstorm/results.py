import logging
import threading
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    CONFIGURATION = "configuration"
    CLUSTER_CHECK = "cluster_check"
    CREATE_CLASS = "create_class"
    CREATE_CLAIMS = "create_claims"
    BIND = "bind"
    ATTACH = "attach"
    VERIFY_ATTACHED = "verify_attached"
    VERIFY_MOUNT = "verify_mount"
    DELETE_UNIT = "delete_unit"
    DETACH = "detach"
    DELETE_CLAIMS = "delete_claims"
    VOLUME_DELETION = "volume_deletion"
    BACKEND_DELETION = "backend_deletion"
    DELETE_CLASS = "delete_class"
    TEARDOWN = "teardown"


@dataclass(frozen=True)
class StageFailure:
    stage: Stage
    item: str
    error: Exception

    @property
    def error_type(self):
        return type(self.error).__name__

    def __str__(self):
        return f"[{self.stage.value}] {self.item}: {self.error_type}: {self.error}"


class RunResult:
    """Accumulates stage-tagged failures into a single pass/fail outcome

    Nothing here aborts: stages record every failing item and the run is
    judged once all stages have had their turn.
    """

    def __init__(self):
        self._failures = []
        self._completed = []
        self._lock = threading.Lock()

    def record(self, stage, item, error):
        failure = StageFailure(Stage(stage), str(item), error)
        with self._lock:
            self._failures.append(failure)
        logger.error(str(failure))
        return failure

    def record_all(self, stage, failures):
        """Record (item, error) pairs, skipping items with no error"""
        for item, error in failures:
            if error is not None:
                self.record(stage, item, error)

    def mark_completed(self, stage):
        with self._lock:
            self._completed.append(Stage(stage))

    @property
    def failures(self):
        return list(self._failures)

    @property
    def completed_stages(self):
        return list(self._completed)

    @property
    def passed(self):
        return not self._failures

    def failures_for(self, stage):
        stage = Stage(stage)
        return [failure for failure in self._failures if failure.stage == stage]

    def failed_items(self, stage):
        return [failure.item for failure in self.failures_for(stage)]

    def stage_counts(self):
        counts = {}
        for failure in self._failures:
            counts[failure.stage.value] = counts.get(failure.stage.value, 0) + 1
        return counts

    def summary(self):
        """Human-readable trail of the outcome"""
        if self.passed:
            return ["RESULT: PASS (no failures recorded in any stage)"]
        lines = [f"RESULT: FAIL ({len(self._failures)} failure(s))"]
        lines.extend(f"  {failure}" for failure in self._failures)
        return lines

    def to_dict(self):
        return {
            "passed": self.passed,
            "completed_stages": [stage.value for stage in self._completed],
            "failure_counts": self.stage_counts(),
            "failures": [
                {
                    "stage": failure.stage.value,
                    "item": failure.item,
                    "error_type": failure.error_type,
                    "message": str(failure.error),
                }
                for failure in self._failures
            ],
        }
