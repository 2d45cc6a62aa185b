"""
Shared pieces of the format renderers: failure isolation strategies, the
publisher that turns a local raster into a ready Rendition row, and sizing math.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .database import Database, Rendition
from .errors import PartialTileFailure
from .models import RenditionKind
from .storage import StorageGateway

logger = logging.getLogger(__name__)


class FailureIsolation(str, Enum):
    """
    How a renderer reacts when one artifact fails.

    FAIL_FAST: the error propagates and ends the job (PDF pages).
    SKIP_ARTIFACT: the error is logged, the artifact skipped and the job goes
    on (image tiles).
    """

    FAIL_FAST = "fail_fast"
    SKIP_ARTIFACT = "skip_artifact"


@dataclass
class RenderReport:
    renditions: List[Rendition] = field(default_factory=list)
    skipped: List[PartialTileFailure] = field(default_factory=list)

    def extend(self, other: "RenderReport") -> None:
        self.renditions.extend(other.renditions)
        self.skipped.extend(other.skipped)


class RenditionPublisher:
    """Uploads a rendered file and records it as a ready Rendition."""

    def __init__(self, storage: StorageGateway, database: Database, dedupe: bool = False) -> None:
        self.storage = storage
        self.database = database
        self.dedupe = dedupe

    def publish(
        self,
        version_id: str,
        local_path: Path,
        key: str,
        content_type: str,
        kind: RenditionKind,
        width: int,
        height: int,
        page: Optional[int] = None,
    ) -> Rendition:
        self.storage.upload_file(local_path, key, content_type)
        rendition = self.database.create_rendition(
            asset_version_id=version_id,
            kind=kind,
            bucket=self.storage.bucket,
            key=key,
            width=width,
            height=height,
            page=page,
            ready=False,
            dedupe=self.dedupe,
        )
        self.database.mark_rendition_ready(rendition.id)
        rendition.ready = True
        logger.debug(f"Published {kind.value} rendition {key} ({width}x{height})")
        return rendition


def rendition_prefix(version_id: str) -> str:
    return f"renditions/{version_id}"


def fit_within(width: int, height: int, bound: int) -> Tuple[int, int]:
    """
    Dimensions of a ``width`` x ``height`` image scaled to fit a
    ``bound`` x ``bound`` box, aspect preserved. Never upscales.

    Example:
        >>> fit_within(4000, 3000, 512)
        (512, 384)
        >>> fit_within(300, 200, 512)
        (300, 200)
    """
    if width <= bound and height <= bound:
        return width, height
    if width >= height:
        return bound, max(1, round(bound * height / width))
    return max(1, round(bound * width / height)), bound
