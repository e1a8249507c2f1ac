from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class JobRequest(BaseModel):
    """Immutable clip job input, validated once at admission and again when the workflow starts."""

    user_id: str = Field(min_length=1)
    source_object_key: str = Field(min_length=1)
    max_clips: int = Field(default=1, ge=1)
    project_id: str = Field(min_length=1)

    class Config:
        frozen = True


class GenerateClipsRequest(BaseModel):
    s3_key: str = Field(min_length=5)
    max_clips: Optional[int] = Field(default=None, ge=1)
    projectId: str = Field(min_length=1)


class GenerateClipsResponse(BaseModel):
    success: bool
    status: str
    instanceId: str


class UploadUrlRequest(BaseModel):
    filename: str = Field(min_length=1)
    contentType: str = Field(min_length=1)
    projectName: Optional[str] = Field(default=None, min_length=1)
    projectDescription: Optional[str] = None


class ProjectInfo(BaseModel):
    id: str
    name: str
    description: Optional[str]
    owner_id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UploadUrlResponse(BaseModel):
    success: bool = True
    signedUrl: str
    key: str
    uploadedFileId: str
    project: ProjectInfo


class UploadedFileResponse(BaseModel):
    id: str
    r2_key: str
    display_name: Optional[str]
    uploaded: bool
    status: str
    user_id: str
    project_id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ClipInfo(BaseModel):
    id: str
    name: str
    url: str
    r2Key: str
    createdAt: datetime


class ClipsPage(BaseModel):
    success: bool = True
    clips: list[ClipInfo]
    page: int
    perPage: int
    hasMore: bool


class CreditsResponse(BaseModel):
    credits: int
    plan: str
    maxCredits: int
    message: str
