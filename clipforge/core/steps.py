"""
Memoized execution of named workflow steps.

A step's output is persisted before ``run_step`` returns, so replaying a
workflow instance after a crash or a retry skips every step that already
reached ``done`` and reuses its stored output. A failing step is recorded as
``failed`` and re-raised; it runs again on the next attempt.
"""

import logging
from typing import Any, Callable, List

from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import StepRecord, StepStatus

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs ``fn`` for ``(instance_id, step_name)`` until it succeeds once, then never again."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def run_step(self, instance_id: str, step_name: str, fn: Callable[[], Any]) -> Any:
        with session_scope(self.session_factory) as session:
            record = session.get(StepRecord, (instance_id, step_name))
            if record is not None and record.status == StepStatus.DONE.value:
                logger.debug("Step %s of %s already done, reusing output", step_name, instance_id)
                return record.output
            if record is None:
                record = StepRecord(
                    workflow_instance_id=instance_id,
                    step_name=step_name,
                    attempts=0,
                )
                session.add(record)
            record.status = StepStatus.PENDING.value
            record.attempts += 1
            attempt = record.attempts

        logger.info("Running step %s of %s (attempt %d)", step_name, instance_id, attempt)
        try:
            output = fn()
        except Exception as exc:
            self._mark(instance_id, step_name, StepStatus.FAILED, error=str(exc)[:4000])
            raise

        self._mark(instance_id, step_name, StepStatus.DONE, output=output)
        return output

    def completed_steps(self, instance_id: str) -> List[str]:
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(StepRecord.step_name)
                .filter(
                    StepRecord.workflow_instance_id == instance_id,
                    StepRecord.status == StepStatus.DONE.value,
                )
                .all()
            )
        return [name for (name,) in rows]

    def _mark(self, instance_id: str, step_name: str, status: StepStatus, output=None, error=None):
        with session_scope(self.session_factory) as session:
            record = session.get(StepRecord, (instance_id, step_name))
            record.status = status.value
            record.output = output
            record.error = error
