import pytest

from clipforge.core.steps import StepExecutor
from clipforge.database import session_scope
from clipforge.models import StepRecord, StepStatus


def _record(session_factory, instance_id, step_name):
    with session_scope(session_factory) as session:
        return session.get(StepRecord, (instance_id, step_name))


def test_first_call_runs_and_persists_output(session_factory):
    executor = StepExecutor(session_factory)
    calls = []

    def fn():
        calls.append(1)
        return {"count": 3}

    assert executor.run_step("wf-1", "reconcile-clips", fn) == {"count": 3}
    assert calls == [1]

    record = _record(session_factory, "wf-1", "reconcile-clips")
    assert record.status == StepStatus.DONE.value
    assert record.output == {"count": 3}
    assert record.attempts == 1


def test_done_step_returns_stored_output_without_calling_fn(session_factory):
    executor = StepExecutor(session_factory)
    executor.run_step("wf-1", "mark-uploaded", lambda: {"uploaded": True})

    def must_not_run():
        raise AssertionError("memoized step executed again")

    assert executor.run_step("wf-1", "mark-uploaded", must_not_run) == {"uploaded": True}


def test_failure_is_recorded_and_step_runs_again(session_factory):
    executor = StepExecutor(session_factory)

    def boom():
        raise RuntimeError("network down")

    with pytest.raises(RuntimeError, match="network down"):
        executor.run_step("wf-1", "invoke-external-processor", boom)

    record = _record(session_factory, "wf-1", "invoke-external-processor")
    assert record.status == StepStatus.FAILED.value
    assert record.error == "network down"

    assert executor.run_step("wf-1", "invoke-external-processor", lambda: {"ok": True}) == {"ok": True}
    record = _record(session_factory, "wf-1", "invoke-external-processor")
    assert record.status == StepStatus.DONE.value
    assert record.attempts == 2


def test_steps_are_scoped_per_instance(session_factory):
    executor = StepExecutor(session_factory)
    executor.run_step("wf-1", "finalize", lambda: {"status": "completed"})
    assert executor.run_step("wf-2", "finalize", lambda: {"status": "failed"}) == {"status": "failed"}
    assert executor.completed_steps("wf-1") == ["finalize"]
    assert executor.completed_steps("wf-3") == []
