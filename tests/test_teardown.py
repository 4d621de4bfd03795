import pytest

from opstorm.errors import (
    BackendDeletionTimeoutError,
    DeletionError,
    DetachTimeoutError,
    PersistentVolumeDeletionTimeoutError,
)
from opstorm.models import Run
from opstorm.results import RunResult, Stage
from opstorm.teardown import TeardownVerifier

TIMEOUTS = {'pod_delete': 10, 'detach': 10, 'volume_delete': 10, 'backend_delete': 10}


@pytest.fixture
def verifier(backend, poller):
    return TeardownVerifier(backend, poller, timeouts=TIMEOUTS)


class TestTeardown:
    def test_clean_teardown_reclaims_everything(self, backend, verifier, make_run):
        run = make_run(scale=3)
        result = RunResult()

        verifier.teardown(run, result)

        assert result.passed
        assert result.completed_stages == [
            Stage.DELETE_UNIT,
            Stage.DETACH,
            Stage.DELETE_CLAIMS,
            Stage.VOLUME_DELETION,
            Stage.BACKEND_DELETION,
        ]
        assert backend.units == {}
        assert backend.claims == {}
        assert backend.persistent_volumes == set()
        assert backend.backend_volumes == set()

    def test_pod_is_deleted_before_claims(self, backend, verifier, make_run):
        run = make_run(scale=2)
        verifier.teardown(run, RunResult())

        names = [call[0] for call in backend.calls]
        assert names.index("delete_compute_unit") < names.index("delete_volume_claim")

    def test_stuck_detach_is_reported_and_claims_still_deleted(self, backend, verifier, make_run):
        backend.stuck_attached = {"vol-1"}
        run = make_run(scale=3)
        result = RunResult()

        verifier.teardown(run, result)

        failures = result.failures_for(Stage.DETACH)
        assert [failure.item for failure in failures] == [run.slots[1].describe()]
        assert isinstance(failures[0].error, DetachTimeoutError)
        assert failures[0].error.volume_handle == "vol-1"
        deleted = [call[1] for call in backend.calls if call[0] == "delete_volume_claim"]
        assert deleted == [slot.claim.name for slot in run.slots]
        assert backend.claims == {}
        assert len(result.failures) == 1

    def test_rejected_claim_deletion_does_not_block_the_rest(self, backend, verifier, make_run):
        run = make_run(scale=3)
        backend.reject_claim_delete = {run.slots[0].claim.name}
        result = RunResult()

        verifier.teardown(run, result)

        assert result.failed_items(Stage.DELETE_CLAIMS) == [run.slots[0].describe()]
        assert isinstance(result.failures_for(Stage.DELETE_CLAIMS)[0].error, DeletionError)
        assert list(backend.claims) == [run.slots[0].claim.name]
        assert result.failed_items(Stage.VOLUME_DELETION) == [run.slots[0].describe()]
        assert result.failed_items(Stage.BACKEND_DELETION) == [run.slots[0].describe()]

    def test_backend_is_authoritative_for_deletion(self, backend, verifier, make_run):
        backend.backend_leak = {"vol-2"}
        run = make_run(scale=3)
        result = RunResult()

        verifier.teardown(run, result)

        assert result.failures_for(Stage.VOLUME_DELETION) == []
        failures = result.failures_for(Stage.BACKEND_DELETION)
        assert [failure.item for failure in failures] == [run.slots[2].describe()]
        assert isinstance(failures[0].error, BackendDeletionTimeoutError)
        assert "should not be present in the backend" in str(failures[0].error)

    def test_lingering_persistent_volume(self, backend, verifier, make_run):
        backend.pv_leak = {"pv-0"}
        run = make_run(scale=2)
        result = RunResult()

        verifier.teardown(run, result)

        failures = result.failures_for(Stage.VOLUME_DELETION)
        assert len(failures) == 1
        assert isinstance(failures[0].error, PersistentVolumeDeletionTimeoutError)
        assert failures[0].error.volume_name == "pv-0"

    def test_without_pod_only_claims_are_reclaimed(self, backend, verifier, make_run):
        run = make_run(scale=2, attach=False)
        result = RunResult()

        verifier.teardown(run, result)

        assert result.passed
        assert not any(call[0] == "delete_compute_unit" for call in backend.calls)
        assert Stage.DETACH not in result.completed_stages
        assert backend.claims == {}

    def test_unscheduled_pod_skips_detach_checks(self, backend, verifier, make_run):
        run = make_run(scale=2)
        run.host = None
        backend.host = None
        calls_before = len(backend.calls)

        verifier.teardown(run, RunResult())

        later = [call[0] for call in backend.calls[calls_before:]]
        assert "delete_compute_unit" in later
        assert "is_volume_attached_to_host" not in later

    def test_host_is_read_back_before_pod_deletion(self, backend, verifier, make_run):
        run = make_run(scale=2)
        run.host = None
        backend.stuck_attached = {"vol-1"}
        result = RunResult()

        verifier.teardown(run, result)

        assert run.host == "node-1"
        failures = result.failures_for(Stage.DETACH)
        assert [failure.error.volume_handle for failure in failures] == ["vol-1"]
        assert isinstance(failures[0].error, DetachTimeoutError)

    def test_only_bound_slots_are_waited_on(self, backend, verifier, make_run):
        run = make_run(scale=2, attach=False)
        run.slots[1].volume = None
        result = RunResult()

        verifier.teardown(run, result)

        assert result.passed
        assert len([call for call in backend.calls if call[0] == "delete_volume_claim"]) == 2

    def test_empty_run_is_a_no_op(self, backend, verifier):
        result = RunResult()
        verifier.teardown(Run(scale=3), result)
        assert result.passed
        assert backend.calls == []

    def test_pod_that_never_goes_away(self, backend, verifier, make_run):
        run = make_run(scale=1)
        backend.delete_compute_unit = lambda unit: None
        result = RunResult()

        verifier.teardown(run, result)

        assert result.failed_items(Stage.DELETE_UNIT) == [run.unit.name]


class TestDeleteVolumeClass:
    def test_deletes_class(self, backend, verifier, volume_class):
        result = RunResult()
        assert verifier.delete_volume_class(volume_class, result) is True
        assert backend.deleted_classes == [volume_class.name]
        assert result.completed_stages == [Stage.DELETE_CLASS]

    def test_failure_is_recorded(self, backend, verifier, volume_class):
        def _reject(handle):
            raise RuntimeError("forbidden")

        backend.delete_volume_class = _reject
        result = RunResult()

        assert verifier.delete_volume_class(volume_class, result) is False
        failure = result.failures_for(Stage.DELETE_CLASS)[0]
        assert isinstance(failure.error, DeletionError)
        assert failure.item == volume_class.name
