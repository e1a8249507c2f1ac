"""Upload URL issuance, status revalidation and clip listing for projects."""

import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from .core.storage import ObjectStore
from .core.workflow import upsert_clips
from .errors import NotFound
from .models import Clip, FileStatus, InstanceStatus, Project, UploadedFile, User, WorkflowInstance
from .schemas import ClipInfo

logger = logging.getLogger(__name__)


@dataclass
class IssuedUpload:
    signed_url: str
    key: str
    project: Project
    uploaded_file: UploadedFile


def generate_upload_url(
    db: Session,
    store: ObjectStore,
    user_id: str,
    filename: str,
    project_name: Optional[str] = None,
    project_description: Optional[str] = None,
    expires: int = 3600,
) -> IssuedUpload:
    """Creates the project and its queued upload record, then signs a PUT URL for the key."""
    if db.get(User, user_id) is None:
        raise NotFound("user", user_id)

    project_id = str(uuid4())
    file_id = str(uuid4())
    key = f"{user_id}/{project_id}/{file_id}/{filename}"

    project = Project(
        id=project_id,
        owner_id=user_id,
        name=project_name or filename,
        description=project_description,
    )
    uploaded_file = UploadedFile(
        id=file_id,
        r2_key=key,
        display_name=filename,
        uploaded=False,
        status=FileStatus.QUEUED.value,
        user_id=user_id,
        project_id=project_id,
    )
    db.add_all([project, uploaded_file])
    db.commit()

    signed_url = store.presign_upload(store.bucket, key, expires)
    logger.info("Issued upload URL for %s", key)
    return IssuedUpload(signed_url=signed_url, key=key, project=project, uploaded_file=uploaded_file)


def get_owned_upload(db: Session, user_id: str, project_id: str) -> UploadedFile:
    uploaded_file = (
        db.query(UploadedFile)
        .join(Project, Project.id == UploadedFile.project_id)
        .filter(Project.id == project_id, Project.owner_id == user_id)
        .first()
    )
    if uploaded_file is None:
        raise NotFound("project", project_id)
    return uploaded_file


def _has_active_workflow(db: Session, uploaded_file: UploadedFile) -> bool:
    active = (
        db.query(WorkflowInstance.payload)
        .filter(
            WorkflowInstance.user_key == uploaded_file.user_id,
            WorkflowInstance.status.in_([InstanceStatus.QUEUED.value, InstanceStatus.RUNNING.value]),
        )
        .all()
    )
    return any(payload.get("source_object_key") == uploaded_file.r2_key for (payload,) in active)


def revalidate_upload_status(db: Session, store: ObjectStore, user_id: str, project_id: str) -> UploadedFile:
    """
    Re-derives the status from storage: clips present means completed, none means failed.

    A file with a queued or running workflow is returned unchanged; the
    workflow owns its transitions until it is terminal.
    """
    uploaded_file = get_owned_upload(db, user_id, project_id)
    if _has_active_workflow(db, uploaded_file):
        logger.info("Workflow still active for %s, not revalidating", uploaded_file.r2_key)
        return uploaded_file

    clips = store.list_clip_keys(uploaded_file.r2_key)

    if clips:
        uploaded, status = True, FileStatus.COMPLETED.value
    else:
        uploaded, status = False, FileStatus.FAILED.value

    if uploaded_file.uploaded != uploaded or uploaded_file.status != status:
        uploaded_file.uploaded = uploaded
        uploaded_file.status = status
        db.commit()
        db.refresh(uploaded_file)
    return uploaded_file


def get_clips(
    db: Session,
    store: ObjectStore,
    user_id: str,
    project_id: str,
    limit: int = 20,
    offset: int = 0,
    expires: int = 3600,
) -> List[ClipInfo]:
    """
    Clips of the project's upload with signed GET URLs, oldest first.

    When nothing is recorded yet the bucket is listed and the rows are
    backfilled, skipping duplicates.
    """
    uploaded_file = get_owned_upload(db, user_id, project_id)

    query = (
        db.query(Clip)
        .filter(Clip.user_id == user_id, Clip.uploaded_file_id == uploaded_file.id)
        .order_by(Clip.created_at, Clip.id)
    )
    if query.first() is None:
        keys = store.list_clip_keys(uploaded_file.r2_key)
        if not keys:
            return []
        upsert_clips(db, uploaded_file, keys)
        db.commit()

    return [
        ClipInfo(
            id=clip.id,
            name=clip.r2_key.rsplit("/", 1)[-1] or clip.r2_key,
            url=store.presign(store.bucket, clip.r2_key, expires),
            r2Key=clip.r2_key,
            createdAt=clip.created_at,
        )
        for clip in query.offset(offset).limit(limit).all()
    ]
