"""
PDF page rasterization.

Every page is rendered at every width of the ladder and published as a
``thumb`` (smallest width) or ``page`` rendition. The renderer is fail-fast:
the first page/width that cannot be rasterized or published ends the job, and
nothing after it in page-then-width order is produced.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence, Tuple

import fitz

from .errors import RenderError
from .models import RenditionKind
from .rendering import FailureIsolation, RenderReport, RenditionPublisher, rendition_prefix

logger = logging.getLogger(__name__)

DEFAULT_WIDTHS = (512, 1024, 2048)


class PdfRenderer:
    failure_isolation = FailureIsolation.FAIL_FAST

    def __init__(
        self,
        publisher: RenditionPublisher,
        widths: Sequence[int] = DEFAULT_WIDTHS,
        thumb_width: int = 512,
    ) -> None:
        self.publisher = publisher
        self.widths = tuple(widths)
        self.thumb_width = thumb_width

    def page_count(self, pdf_path: Path) -> int:
        try:
            with fitz.open(str(pdf_path)) as doc:
                return doc.page_count
        except Exception as exc:
            raise RenderError(f"Cannot open PDF {pdf_path.name}: {exc}") from exc

    def rasterize(self, doc: fitz.Document, page_number: int, width: int, output_path: Path) -> Tuple[int, int]:
        """
        Render one page (1-based) scaled to ``width`` pixels wide.

        Returns:
            The actual (width, height) of the written PNG; rounding can make
            the width differ from the request by a pixel.
        """
        try:
            page = doc[page_number - 1]
            zoom = width / page.rect.width
            pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            pixmap.save(str(output_path))
        except Exception as exc:
            raise RenderError(f"Rasterizing page {page_number} at width {width} failed: {exc}") from exc
        return pixmap.width, pixmap.height

    def render(self, version_id: str, pdf_path: Path, work_dir: Path) -> RenderReport:
        page_count = self.page_count(pdf_path)
        if page_count < 1:
            raise RenderError(f"PDF {pdf_path.name} has no pages")

        logger.info(f"Rendering {page_count} pages x {len(self.widths)} widths for version {version_id}")
        report = RenderReport()
        prefix = rendition_prefix(version_id)

        with fitz.open(str(pdf_path)) as doc:
            for page_number in range(1, page_count + 1):
                for width in self.widths:
                    output_path = work_dir / f"page-{page_number}-{width}.png"
                    actual_width, actual_height = self.rasterize(doc, page_number, width, output_path)
                    rendition = self.publisher.publish(
                        version_id,
                        output_path,
                        key=f"{prefix}/page-{page_number}-{width}.png",
                        content_type="image/png",
                        kind=RenditionKind.THUMB if width == self.thumb_width else RenditionKind.PAGE,
                        width=actual_width,
                        height=actual_height,
                        page=page_number,
                    )
                    report.renditions.append(rendition)
                    output_path.unlink(missing_ok=True)

        return report
