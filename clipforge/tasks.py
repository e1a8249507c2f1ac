import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from celery import Celery
from celery.signals import worker_ready
from sqlalchemy.exc import ProgrammingError

from .config import get_settings
from .core.gate import Admission
from .core.workflow import Outcome
from .database import build_engine, build_session_factory
from .pipeline import Pipeline, build_pipeline

logger = logging.getLogger(__name__)

celery_app = Celery("clipforge", broker=get_settings().REDIS_URL)


@lru_cache
def get_pipeline() -> Pipeline:
    settings = get_settings()
    engine = build_engine(settings.DATABASE_URL)
    return build_pipeline(settings, build_session_factory(engine), schedule=schedule_workflow)


def schedule_workflow(instance_id: str, resume: bool = False) -> None:
    run_workflow.apply_async(args=(instance_id,), kwargs={"resume": resume})


@dataclass(frozen=True)
class Decision:
    """What the task does after one pass: wait for the gate, retry the workflow, or stop."""

    action: str  # wait, retry, done
    next_instance_id: Optional[str] = None


def drive(pipeline: Pipeline, instance_id: str, resume: bool = False) -> Decision:
    admission = pipeline.gate.try_acquire(instance_id, resume=resume)
    if admission == Admission.WAIT:
        return Decision("wait")
    if admission == Admission.SKIP:
        logger.info("Workflow %s not runnable here, skipping", instance_id)
        return Decision("done")

    outcome = pipeline.driver.execute(instance_id)
    if outcome == Outcome.RETRY:
        return Decision("retry")
    return Decision("done", next_instance_id=pipeline.gate.release(instance_id))


@worker_ready.connect
def at_start(sender, **kwargs):
    """Re-schedule unfinished workflows so they resume from their last completed step."""
    try:
        pending = get_pipeline().gate.pending_instances()
    except ProgrammingError as e:
        logger.warning("Skipping workflow recovery because the tables don't exist yet: %s", e)
        return
    for instance_id in pending:
        logger.info("Resuming workflow %s after worker start", instance_id)
        schedule_workflow(instance_id, resume=True)


@celery_app.task(bind=True, max_retries=None)
def run_workflow(self, instance_id: str, resume: bool = False):
    """Celery task driving one workflow instance through the gate and the retry policy."""
    pipeline = get_pipeline()
    decision = drive(pipeline, instance_id, resume=resume)

    if decision.next_instance_id:
        schedule_workflow(decision.next_instance_id)
    if decision.action == "wait":
        raise self.retry(countdown=pipeline.settings.GATE_POLL_SECONDS)
    if decision.action == "retry":
        raise self.retry(
            kwargs={"resume": True},
            countdown=pipeline.settings.RETRY_BACKOFF_SECONDS,
        )
    return decision.action
