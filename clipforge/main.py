import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from redis import asyncio as redis_asyncio
from sqlalchemy.orm import Session

from .config import Settings, configure_logging, get_settings
from .credits import credit_status_message, max_credits_for_plan, to_user_plan
from .database import build_engine, build_session_factory, get_db
from .errors import InsufficientCredit, NotFound
from .models import User
from .pipeline import Pipeline, build_pipeline
from .schemas import (
    ClipsPage,
    CreditsResponse,
    GenerateClipsRequest,
    GenerateClipsResponse,
    JobRequest,
    ProjectInfo,
    UploadedFileResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)
from .services import generate_upload_url, get_clips, get_owned_upload, revalidate_upload_status

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, pipeline: Optional[Pipeline] = None) -> FastAPI:
    """
    Application factory; run with ``uvicorn clipforge.main:create_app --factory``.

    Tests pass their own ``pipeline`` wired to fakes.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    if pipeline is None:
        from .tasks import schedule_workflow

        engine = build_engine(settings.DATABASE_URL)
        pipeline = build_pipeline(settings, build_session_factory(engine), schedule=schedule_workflow)

    app = FastAPI(title="Clipforge API")
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.session_factory = pipeline.session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    rate_limits = []
    if settings.RATE_LIMIT_ENABLED:
        @app.on_event("startup")
        async def on_startup():
            redis = redis_asyncio.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            await FastAPILimiter.init(redis)

        rate_limits.append(
            Depends(RateLimiter(times=settings.RATE_LIMIT_TIMES, minutes=settings.RATE_LIMIT_MINUTES))
        )

    def current_user_id(request: Request) -> str:
        user_id = request.headers.get(settings.USER_ID_HEADER)
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    @app.exception_handler(InsufficientCredit)
    async def insufficient_credit_handler(request: Request, exc: InsufficientCredit):
        return JSONResponse(
            status_code=403,
            content={
                "success": False,
                "error": "Insufficient credits to process video. Please upgrade your plan or wait for credit refresh.",
                "code": "INSUFFICIENT_CREDITS",
            },
        )

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": f"{exc.entity.capitalize()} not found"},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/uploads/url", response_model=UploadUrlResponse)
    def create_upload_url(
        body: UploadUrlRequest,
        user_id: str = Depends(current_user_id),
        db: Session = Depends(get_db),
    ):
        """
        Create a project with a queued upload and return a signed PUT URL.
        The client uploads the video straight to the bucket.
        """
        issued = generate_upload_url(
            db,
            pipeline.store,
            user_id,
            body.filename,
            project_name=body.projectName,
            project_description=body.projectDescription,
            expires=settings.PRESIGN_EXPIRE_SECONDS,
        )
        return UploadUrlResponse(
            signedUrl=issued.signed_url,
            key=issued.key,
            uploadedFileId=issued.uploaded_file.id,
            project=ProjectInfo.model_validate(issued.project),
        )

    @app.post("/clips/generate", response_model=GenerateClipsResponse, dependencies=rate_limits)
    def generate_clips(body: GenerateClipsRequest, user_id: str = Depends(current_user_id)):
        """
        Reserve a credit and queue clip generation for an uploaded video.
        Progress is observable by polling the project status.
        """
        request = JobRequest(
            user_id=user_id,
            source_object_key=body.s3_key,
            max_clips=body.max_clips or 1,
            project_id=body.projectId,
        )
        result = pipeline.dispatcher.submit(request)
        return GenerateClipsResponse(success=True, status="queued", instanceId=result.instance_id)

    @app.get("/projects/{project_id}/status", response_model=UploadedFileResponse)
    def get_upload_status(
        project_id: str,
        user_id: str = Depends(current_user_id),
        db: Session = Depends(get_db),
    ):
        return get_owned_upload(db, user_id, project_id)

    @app.post("/projects/{project_id}/revalidate", response_model=UploadedFileResponse)
    def revalidate_status(
        project_id: str,
        user_id: str = Depends(current_user_id),
        db: Session = Depends(get_db),
    ):
        return revalidate_upload_status(db, pipeline.store, user_id, project_id)

    @app.get("/projects/{project_id}/clips", response_model=ClipsPage)
    def list_clips(
        project_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        offset: Optional[int] = Query(None, ge=0),
        user_id: str = Depends(current_user_id),
        db: Session = Depends(get_db),
    ):
        start = offset if offset is not None else (page - 1) * limit
        clips = get_clips(
            db,
            pipeline.store,
            user_id,
            project_id,
            limit=limit,
            offset=start,
            expires=settings.PRESIGN_EXPIRE_SECONDS,
        )
        return ClipsPage(clips=clips, page=page, perPage=limit, hasMore=len(clips) == limit)

    @app.get("/credits", response_model=CreditsResponse)
    def get_credits(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
        user = db.get(User, user_id)
        if user is None:
            raise NotFound("user", user_id)
        plan = to_user_plan(user.plan)
        return CreditsResponse(
            credits=user.credits,
            plan=plan.value,
            maxCredits=max_credits_for_plan(plan),
            message=credit_status_message(user.credits),
        )

    return app
