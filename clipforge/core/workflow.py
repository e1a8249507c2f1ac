"""
The process-video workflow: a fixed sequence of memoized steps for one job,
plus the driver that applies the retry policy and the terminal failure hook.

Steps, in order:

1. validate-and-check         re-parse the payload, check project and source object
2. mark-uploaded              uploaded_files.uploaded = true
3. mark-processing            uploaded_files.status = processing
4. invoke-external-processor  POST to the clip extraction service
5. reconcile-clips            list clip keys in storage and upsert Clip rows
6. finalize                   completed when clips exist, otherwise failed + refund

The workflow as a whole is retried ``max_retries`` times (once by default)
on any failure except NonRetriableError. Every refund of an instance goes
through the ledger with the instance id as idempotency key, so step 4, step 6
and the failure hook can never refund the same job twice.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from ..credits import CLIP_CREATION_COST
from ..database import session_scope
from ..errors import NonRetriableError, NotFound, ProcessorError, StepFailed
from ..models import Clip, FileStatus, InstanceStatus, Project, UploadedFile, WorkflowInstance
from ..schemas import JobRequest
from .ledger import CreditLedger
from .processor import ClipProcessorClient
from .steps import StepExecutor
from .storage import ObjectStore

logger = logging.getLogger(__name__)

VALIDATE_AND_CHECK = "validate-and-check"
MARK_UPLOADED = "mark-uploaded"
MARK_PROCESSING = "mark-processing"
INVOKE_PROCESSOR = "invoke-external-processor"
RECONCILE_CLIPS = "reconcile-clips"
FINALIZE = "finalize"

STEP_ORDER = (
    VALIDATE_AND_CHECK,
    MARK_UPLOADED,
    MARK_PROCESSING,
    INVOKE_PROCESSOR,
    RECONCILE_CLIPS,
    FINALIZE,
)


def upsert_clips(session: Session, uploaded_file: UploadedFile, keys: Iterable[str]) -> int:
    """Inserts Clip rows for ``keys`` not yet linked to ``uploaded_file``; returns how many were new."""
    wanted = list(dict.fromkeys(keys))
    if not wanted:
        return 0
    existing = {
        key
        for (key,) in session.query(Clip.r2_key).filter(
            Clip.uploaded_file_id == uploaded_file.id,
            Clip.r2_key.in_(wanted),
        )
    }
    new_keys = [key for key in wanted if key not in existing]
    session.add_all(
        Clip(r2_key=key, user_id=uploaded_file.user_id, uploaded_file_id=uploaded_file.id)
        for key in new_keys
    )
    session.flush()
    return len(new_keys)


class ProcessVideoWorkflow:
    def __init__(
        self,
        session_factory: sessionmaker,
        executor: StepExecutor,
        ledger: CreditLedger,
        store: ObjectStore,
        processor: ClipProcessorClient,
        bucket: str,
        cost: int = CLIP_CREATION_COST,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.ledger = ledger
        self.store = store
        self.processor = processor
        self.bucket = bucket
        self.cost = cost

    def run(self, instance_id: str, payload: dict, final_attempt: bool = True) -> bool:
        """Runs one attempt; returns True when the file ends ``completed``."""
        checked = self.executor.run_step(
            instance_id, VALIDATE_AND_CHECK, lambda: self._validate_and_check(payload)
        )
        request = JobRequest.model_validate(checked)
        key = request.source_object_key

        self.executor.run_step(
            instance_id, MARK_UPLOADED, lambda: self._update_file(key, uploaded=True)
        )
        self.executor.run_step(
            instance_id, MARK_PROCESSING, lambda: self._update_file(key, status=FileStatus.PROCESSING)
        )
        self.executor.run_step(
            instance_id, INVOKE_PROCESSOR,
            lambda: self._invoke_processor(instance_id, request, final_attempt),
        )
        reconciled = self.executor.run_step(
            instance_id, RECONCILE_CLIPS, lambda: self._reconcile_clips(request)
        )
        final = self.executor.run_step(
            instance_id, FINALIZE,
            lambda: self._finalize(instance_id, request, reconciled["clips_found"]),
        )
        return final["status"] == FileStatus.COMPLETED.value

    def on_failure(self, instance_id: str, payload: dict, error: BaseException) -> None:
        """Terminal failure hook: best effort ``failed`` status and a single refund."""
        logger.error("Process video workflow %s failed after all retries: %s", instance_id, error)
        try:
            request = JobRequest.model_validate(payload)
        except ValidationError:
            logger.error("Workflow %s has an unreadable payload, nothing to refund", instance_id)
            return
        try:
            self._mark_failed(request)
            logger.info("Updated file status to failed: %s", request.source_object_key)
        except Exception:
            logger.exception("Failed to update file status for workflow %s", instance_id)
        try:
            self._refund(instance_id, request.user_id)
        except Exception:
            logger.exception("Failed to refund credit for workflow %s", instance_id)

    def _validate_and_check(self, payload: dict) -> dict:
        try:
            request = JobRequest.model_validate(payload)
        except ValidationError as e:
            raise NonRetriableError(f"Invalid job payload: {e}") from e

        with session_scope(self.session_factory) as session:
            project = (
                session.query(Project)
                .filter(Project.id == request.project_id, Project.owner_id == request.user_id)
                .first()
            )
            uploaded_file = (
                session.query(UploadedFile)
                .filter(
                    UploadedFile.r2_key == request.source_object_key,
                    UploadedFile.user_id == request.user_id,
                    UploadedFile.project_id == request.project_id,
                )
                .first()
            )
        logger.info("Project found: %s", project.id if project else None)

        exists = self.store.exists(self.bucket, request.source_object_key)
        logger.info("File exists in bucket: %s", exists)

        if not exists or project is None:
            raise NonRetriableError("File does not exist in bucket or project not found")
        if uploaded_file is None:
            raise NonRetriableError(
                f"No uploaded file {request.source_object_key} in project {request.project_id} for this user"
            )
        return request.model_dump(mode="json")

    def _update_file(self, key: str, uploaded: Optional[bool] = None, status: Optional[FileStatus] = None) -> dict:
        values = {}
        if uploaded is not None:
            values["uploaded"] = uploaded
        if status is not None:
            values["status"] = status.value
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(UploadedFile).where(UploadedFile.r2_key == key).values(**values)
            )
            if result.rowcount == 0:
                raise StepFailed("update-file", f"no uploaded file with key {key}")
        logger.info("Uploaded file %s updated: %s", key, values)
        return values

    def _mark_failed(self, request: JobRequest) -> None:
        # completed is final; any other state may be (re)entered as failed.
        # Only the requester's own file in the requested project is touched.
        with session_scope(self.session_factory) as session:
            session.execute(
                update(UploadedFile)
                .where(
                    UploadedFile.r2_key == request.source_object_key,
                    UploadedFile.user_id == request.user_id,
                    UploadedFile.project_id == request.project_id,
                    UploadedFile.status != FileStatus.COMPLETED.value,
                )
                .values(status=FileStatus.FAILED.value)
            )

    def _refund(self, instance_id: str, user_id: str) -> None:
        result = self.ledger.refund(user_id, self.cost, job_id=instance_id)
        if result.applied:
            logger.info("Refunded credit to user %s for workflow %s", user_id, instance_id)

    def _invoke_processor(self, instance_id: str, request: JobRequest, final_attempt: bool) -> dict:
        # A retried attempt finds the file failed by the previous one.
        self._update_file(request.source_object_key, status=FileStatus.PROCESSING)
        try:
            return self.processor.process(request.source_object_key, request.max_clips)
        except ProcessorError:
            logger.exception("Error occurred while processing video %s", request.source_object_key)
            self._mark_failed(request)
            if final_attempt:
                self._refund(instance_id, request.user_id)
            raise

    def _reconcile_clips(self, request: JobRequest) -> dict:
        keys = self.store.list_clip_keys(request.source_object_key)
        inserted = 0
        if keys:
            with session_scope(self.session_factory) as session:
                uploaded_file = (
                    session.query(UploadedFile)
                    .filter(
                        UploadedFile.r2_key == request.source_object_key,
                        UploadedFile.user_id == request.user_id,
                        UploadedFile.project_id == request.project_id,
                    )
                    .first()
                )
                if uploaded_file is None:
                    raise NonRetriableError(f"UploadedFile with key {request.source_object_key} not found")
                inserted = upsert_clips(session, uploaded_file, keys)
        logger.info("Clips found: %d (%d new)", len(keys), inserted)
        return {"clips_found": len(keys), "inserted": inserted}

    def _finalize(self, instance_id: str, request: JobRequest, clips_found: int) -> dict:
        if clips_found > 0:
            self._update_file(request.source_object_key, uploaded=True, status=FileStatus.COMPLETED)
            logger.info("Process completed successfully for %s", request.source_object_key)
            return {"status": FileStatus.COMPLETED.value}

        self._mark_failed(request)
        self._refund(instance_id, request.user_id)
        logger.info("No clips found, marked %s as failed", request.source_object_key)
        return {"status": FileStatus.FAILED.value}


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"


class WorkflowDriver:
    """Runs attempts of a workflow instance and owns its status transitions."""

    def __init__(self, session_factory: sessionmaker, workflow: ProcessVideoWorkflow, max_retries: int = 1):
        self.session_factory = session_factory
        self.workflow = workflow
        self.max_retries = max_retries

    def execute(self, instance_id: str) -> Outcome:
        with session_scope(self.session_factory) as session:
            instance = session.get(WorkflowInstance, instance_id)
            if instance is None:
                raise NotFound("workflow instance", instance_id)
            if instance.is_terminal:
                return Outcome(instance.status)
            payload = instance.payload
            retry_count = instance.retry_count

        final_attempt = retry_count >= self.max_retries
        try:
            completed = self.workflow.run(instance_id, payload, final_attempt=final_attempt)
        except NonRetriableError as e:
            logger.error("Workflow %s failed non-retriably: %s", instance_id, e)
            return self._fail(instance_id, payload, e)
        except Exception as e:
            if final_attempt:
                logger.exception("Workflow %s failed on its final attempt", instance_id)
                return self._fail(instance_id, payload, e)
            logger.warning("Workflow %s attempt %d failed, retrying: %s", instance_id, retry_count + 1, e)
            self._record_retry(instance_id, e)
            return Outcome.RETRY

        return self._finish(instance_id, Outcome.SUCCEEDED if completed else Outcome.FAILED)

    def _fail(self, instance_id: str, payload: dict, error: BaseException) -> Outcome:
        self.workflow.on_failure(instance_id, payload, error)
        return self._finish(instance_id, Outcome.FAILED, error=str(error))

    def _record_retry(self, instance_id: str, error: BaseException) -> None:
        with session_scope(self.session_factory) as session:
            instance = session.get(WorkflowInstance, instance_id)
            instance.retry_count += 1
            instance.last_error = str(error)[:4000]

    def _finish(self, instance_id: str, outcome: Outcome, error: Optional[str] = None) -> Outcome:
        status = InstanceStatus.SUCCEEDED if outcome == Outcome.SUCCEEDED else InstanceStatus.FAILED
        with session_scope(self.session_factory) as session:
            instance = session.get(WorkflowInstance, instance_id)
            instance.status = status.value
            instance.finished_at = datetime.utcnow()
            if error is not None:
                instance.last_error = error[:4000]
        logger.info("Workflow %s finished: %s", instance_id, status.value)
        return outcome
