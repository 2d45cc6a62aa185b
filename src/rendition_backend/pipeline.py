"""
Rendition pipeline dispatch.

Resolves an asset version, downloads its original into a per-job scratch
directory and hands it to the renderer for its mime type. The scratch
directory is removed when the job ends, whatever the outcome.
"""

from __future__ import annotations

import logging
import tempfile
from enum import Enum
from pathlib import Path
from typing import Optional

from omegaconf import DictConfig

from .database import Database
from .errors import NotFoundError, StorageError, UnsupportedMediaError
from .image_renderer import ImageRenderer
from .office_bridge import OfficeBridge
from .pdf_renderer import PdfRenderer
from .rendering import RenderReport, RenditionPublisher
from .storage import StorageGateway
from .utils import PDF_MIME, ensure_directory, is_office_mime, normalize_mime

logger = logging.getLogger(__name__)


class UnsupportedMimePolicy(str, Enum):
    SKIP = "skip"
    FAIL = "fail"


class PipelineOutcome(str, Enum):
    RENDERED = "rendered"
    SKIPPED_UNSUPPORTED = "skipped_unsupported"


class RenditionPipeline:
    def __init__(
        self,
        database: Database,
        storage: StorageGateway,
        pdf_renderer: PdfRenderer,
        image_renderer: ImageRenderer,
        office_bridge: OfficeBridge,
        scratch_dir: Path,
        unsupported_mime: UnsupportedMimePolicy = UnsupportedMimePolicy.SKIP,
    ) -> None:
        self.database = database
        self.storage = storage
        self.pdf_renderer = pdf_renderer
        self.image_renderer = image_renderer
        self.office_bridge = office_bridge
        self.scratch_dir = Path(scratch_dir)
        self.unsupported_mime = UnsupportedMimePolicy(unsupported_mime)
        self.last_report: Optional[RenderReport] = None

    @classmethod
    def from_config(cls, config: DictConfig, database: Database, storage: StorageGateway) -> "RenditionPipeline":
        publisher = RenditionPublisher(storage, database, dedupe=bool(config.pipeline.dedupe_renditions))
        return cls(
            database=database,
            storage=storage,
            pdf_renderer=PdfRenderer(
                publisher,
                widths=list(config.pdf.widths),
                thumb_width=int(config.pdf.thumb_width),
            ),
            image_renderer=ImageRenderer(
                publisher,
                thumb_size=int(config.image.thumb_size),
                preview_sizes=list(config.image.preview_sizes),
                tile_size=int(config.image.tile_size),
                max_zoom=int(config.image.max_zoom),
                quality=int(config.image.webp_quality),
            ),
            office_bridge=OfficeBridge(
                converter=config.office.converter,
                timeout_seconds=float(config.office.timeout_seconds),
            ),
            scratch_dir=Path(config.worker.scratch_dir),
            unsupported_mime=UnsupportedMimePolicy(config.pipeline.unsupported_mime),
        )

    def process(self, version_id: str) -> PipelineOutcome:
        """
        Produce all renditions for one asset version.

        Raises:
            NotFoundError: Unknown version id
            StorageError: Download failed, or produced a missing or empty file
            RenderError: The renderer rejected the input
            UnsupportedMediaError: Unhandled mime under the ``fail`` policy
        """
        version = self.database.get_version(version_id)
        if version is None:
            raise NotFoundError(f"Version {version_id} not found")

        mime = normalize_mime(version.mime)
        ensure_directory(self.scratch_dir)
        with tempfile.TemporaryDirectory(prefix=f"job-{version_id}-", dir=self.scratch_dir) as tmp:
            work_dir = Path(tmp)
            source = work_dir / f"source{Path(version.key).suffix.lower()}"
            self.storage.download_file(version.key, source)

            if not source.exists():
                raise StorageError(f"Download of {version.key} for version {version_id} produced no file")
            size = source.stat().st_size
            if size == 0:
                raise StorageError(
                    f"Empty file downloaded for version {version_id} (key {version.key}, mime {version.mime})"
                )
            logger.info(f"Downloaded {version.key}: {size} bytes, mime {mime}")

            if mime == PDF_MIME:
                report = self.pdf_renderer.render(version_id, source, work_dir)
            elif mime.startswith("image/"):
                report = self.image_renderer.render(version_id, source, work_dir)
            elif is_office_mime(mime):
                pdf_path = self.office_bridge.convert(source, work_dir / "office")
                report = self.pdf_renderer.render(version_id, pdf_path, work_dir)
            elif self.unsupported_mime == UnsupportedMimePolicy.FAIL:
                raise UnsupportedMediaError(f"No renderer for mime {mime} (version {version_id})")
            else:
                logger.info(f"Unsupported mime type {mime} for version {version_id}; no renditions produced")
                self.last_report = RenderReport()
                return PipelineOutcome.SKIPPED_UNSUPPORTED

        self.last_report = report
        logger.info(f"Completed render job for version {version_id}: {len(report.renditions)} renditions")
        return PipelineOutcome.RENDERED
