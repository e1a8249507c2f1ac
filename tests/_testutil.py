from typing import Iterable, Optional, Tuple
from uuid import uuid4

from clipforge.core.storage import ObjectStore, clip_search_prefix
from clipforge.database import session_scope
from clipforge.errors import ProcessorError
from clipforge.models import FileStatus, Project, UploadedFile, User
from clipforge.tasks import Decision, drive


class FakeObjectStore(ObjectStore):
    """In-memory bucket: a set of keys."""

    def __init__(self, bucket: str = "test-bucket", keys: Iterable[str] = ()):
        self.bucket = bucket
        self.objects = set(keys)
        self.listings = 0

    def exists(self, bucket, key):
        return key in self.objects

    def list_by_prefix(self, prefix, bucket=None):
        self.listings += 1
        return sorted(key for key in self.objects if key.startswith(prefix))

    def presign(self, bucket, key, ttl):
        return f"https://signed.test/{bucket}/{key}?expires={ttl}"

    def presign_upload(self, bucket, key, ttl):
        return f"https://signed.test/upload/{bucket}/{key}?expires={ttl}"


class FakeProcessor:
    """Fails the first ``failures`` calls, then writes ``clips`` clip objects next to the source."""

    def __init__(self, store: FakeObjectStore, clips: int = 3, failures: int = 0):
        self.store = store
        self.clips = clips
        self.failures = failures
        self.calls = []

    def process(self, s3_key, max_clips):
        self.calls.append((s3_key, max_clips))
        if self.failures > 0:
            self.failures -= 1
            raise ProcessorError("processor unavailable", status_code=502)
        prefix = clip_search_prefix(s3_key)
        for i in range(self.clips):
            self.store.objects.add(f"{prefix}clips/clip_{i}.mp4")
        return {"accepted": True}


def make_user(session_factory, credits: int, user_id: Optional[str] = None, plan: str = "pro") -> str:
    user_id = user_id or f"user-{uuid4().hex[:8]}"
    with session_scope(session_factory) as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", plan=plan, credits=credits))
    return user_id


def make_upload(session_factory, store: FakeObjectStore, user_id: str, in_bucket: bool = True) -> Tuple[str, str]:
    """Creates a project with its queued upload record; returns (project_id, key)."""
    project_id = str(uuid4())
    file_id = str(uuid4())
    key = f"{user_id}/{project_id}/{file_id}/talk.mp4"
    with session_scope(session_factory) as session:
        session.add(Project(id=project_id, owner_id=user_id, name="talk.mp4"))
        session.add(
            UploadedFile(
                id=file_id,
                r2_key=key,
                display_name="talk.mp4",
                uploaded=False,
                status=FileStatus.QUEUED.value,
                user_id=user_id,
                project_id=project_id,
            )
        )
    if in_bucket:
        store.objects.add(key)
    return project_id, key


def balance(session_factory, user_id: str) -> int:
    with session_scope(session_factory) as session:
        return session.get(User, user_id).credits


def file_of(session_factory, key: str) -> UploadedFile:
    with session_scope(session_factory) as session:
        return session.query(UploadedFile).filter(UploadedFile.r2_key == key).one()


def run_instance(pipeline, instance_id: str, resume: bool = False, max_passes: int = 10) -> Decision:
    """Drives an admitted instance the way the Celery task does, following retries."""
    for _ in range(max_passes):
        decision = drive(pipeline, instance_id, resume=resume)
        if decision.action != "retry":
            return decision
        resume = True
    raise AssertionError(f"workflow {instance_id} did not settle in {max_passes} passes")
