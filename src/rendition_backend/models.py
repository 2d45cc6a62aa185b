from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_PART_NUMBER = 10000


class UploadTarget(str, Enum):
    NEW_ASSET = "new_asset"
    NEW_VERSION = "new_version"


class UploadState(str, Enum):
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.COMPLETED, UploadState.ABORTED)


class CompletionStep(str, Enum):
    """Progress of a session through the completion pipeline, in order."""

    PENDING = "pending"
    COMMITTED = "committed"
    COPIED = "copied"
    VERSIONED = "versioned"
    ENQUEUED = "enqueued"

    @property
    def rank(self) -> int:
        return list(CompletionStep).index(self)

    def reached(self, other: "CompletionStep") -> bool:
        return self.rank >= other.rank


class RenditionKind(str, Enum):
    THUMB = "thumb"
    PREVIEW = "preview"
    PAGE = "page"
    TILE = "tile"
    WEBP = "webp"


class AssetType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    PDF = "pdf"
    DOC = "doc"
    XLS = "xls"
    PPT = "ppt"
    OTHER = "other"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitUploadRequest(_CamelModel):
    target: UploadTarget
    asset_id: Optional[str] = Field(default=None, alias="assetId")
    file_name: str = Field(alias="fileName", min_length=1, max_length=500)
    mime: str = Field(min_length=1, max_length=255)
    total_size: int = Field(alias="totalSize", gt=0)

    @model_validator(mode="after")
    def _asset_required_for_new_version(self) -> "InitUploadRequest":
        if self.target == UploadTarget.NEW_VERSION and not self.asset_id:
            raise ValueError("assetId is required when target is new_version")
        return self


class InitUploadResponse(_CamelModel):
    upload_id: str = Field(alias="uploadId")
    part_size: int = Field(alias="partSize")
    part_count: int = Field(alias="partCount")
    bucket: str
    key: str


class PartUrlRequest(_CamelModel):
    part_number: int = Field(alias="partNumber", ge=1, le=MAX_PART_NUMBER)


class PartUrlResponse(_CamelModel):
    url: str
    part_number: int = Field(alias="partNumber")


class CompletedPart(_CamelModel):
    part_number: int = Field(alias="partNumber", ge=1, le=MAX_PART_NUMBER)
    etag: str = Field(min_length=1)


class CompleteUploadRequest(_CamelModel):
    parts: List[CompletedPart]
    sha256: Optional[str] = None


class CompleteUploadResponse(_CamelModel):
    asset_id: str = Field(alias="assetId")
    version_id: str = Field(alias="versionId")


class UploadSessionView(_CamelModel):
    id: str
    target: UploadTarget
    asset_id: Optional[str] = Field(default=None, alias="assetId")
    file_name: str = Field(alias="fileName")
    mime: str
    total_size: int = Field(alias="totalSize")
    part_size: int = Field(alias="partSize")
    part_count: int = Field(alias="partCount")
    received_bytes: int = Field(alias="receivedBytes")
    state: UploadState
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")


class RenditionView(_CamelModel):
    id: str
    kind: RenditionKind
    page: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    url: Optional[str] = None
    ready: bool
    created_at: datetime = Field(alias="createdAt")
