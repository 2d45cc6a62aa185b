"""
Image thumbnails, previews and the zoomable tile pyramid.

Thumbnail and previews are fail-fast. The pyramid is resilient: a tile that
cannot be cut, encoded or published is logged and skipped, and the job still
succeeds with the remaining tiles.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from .errors import PartialTileFailure, RenderError
from .models import RenditionKind
from .rendering import FailureIsolation, RenderReport, RenditionPublisher, fit_within, rendition_prefix

logger = logging.getLogger(__name__)

TILE_SIZE = 256
MAX_ZOOM = 4


@dataclass(frozen=True)
class TileSpec:
    zoom: int
    x: int
    y: int
    left: int
    top: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.left, self.top, self.left + self.width, self.top + self.height)


def max_zoom_level(width: int, height: int, tile_size: int = TILE_SIZE, max_zoom: int = MAX_ZOOM) -> int:
    """
    Highest pyramid zoom level for an image: ceil(log2(longest side / tile)),
    clamped to ``[0, max_zoom]``. Levels 0..result are generated.
    """
    longest = max(width, height)
    level = math.ceil(math.log2(longest / tile_size))
    return max(0, min(max_zoom, level))


def scaled_size(width: int, height: int, zoom: int) -> Tuple[int, int]:
    """Canvas size at ``zoom``: the full image scaled by 1/2**zoom, rounded up."""
    scale = 2 ** zoom
    return max(1, math.ceil(width / scale)), max(1, math.ceil(height / scale))


def tile_grid(canvas_width: int, canvas_height: int, zoom: int, tile_size: int = TILE_SIZE) -> Iterator[TileSpec]:
    """Tiles covering a canvas; the last row and column are clipped, not padded."""
    for x in range(math.ceil(canvas_width / tile_size)):
        for y in range(math.ceil(canvas_height / tile_size)):
            left = x * tile_size
            top = y * tile_size
            yield TileSpec(
                zoom=zoom,
                x=x,
                y=y,
                left=left,
                top=top,
                width=min(tile_size, canvas_width - left),
                height=min(tile_size, canvas_height - top),
            )


def _prepare_mode(img: Image.Image) -> Image.Image:
    # WebP takes RGB or RGBA only
    if img.mode in ("RGB", "RGBA"):
        return img
    has_alpha = img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info)
    return img.convert("RGBA" if has_alpha else "RGB")


class ImageRenderer:
    failure_isolation = FailureIsolation.FAIL_FAST
    tile_failure_isolation = FailureIsolation.SKIP_ARTIFACT

    def __init__(
        self,
        publisher: RenditionPublisher,
        thumb_size: int = 512,
        preview_sizes: Sequence[int] = (1024, 2048),
        tile_size: int = TILE_SIZE,
        max_zoom: int = MAX_ZOOM,
        quality: int = 85,
    ) -> None:
        self.publisher = publisher
        self.thumb_size = thumb_size
        self.preview_sizes = tuple(preview_sizes)
        self.tile_size = tile_size
        self.max_zoom = max_zoom
        self.quality = max(1, min(100, quality))

    def probe(self, image_path: Path) -> Tuple[int, int]:
        """
        Read the image's dimensions.

        Raises:
            RenderError: The file is not a decodable image or has no size
        """
        try:
            with Image.open(image_path) as img:
                width, height = img.size
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise RenderError(f"Unreadable image metadata for {image_path.name}: {exc}") from exc
        if not width or not height:
            raise RenderError(f"Image {image_path.name} has no dimensions")
        return width, height

    def render(self, version_id: str, image_path: Path, work_dir: Path) -> RenderReport:
        width, height = self.probe(image_path)
        report = RenderReport()
        prefix = rendition_prefix(version_id)

        try:
            with Image.open(image_path) as source:
                # Closing the source releases its pixels; keep a detached copy
                img = _prepare_mode(source.copy())
        except (OSError, Image.DecompressionBombError) as exc:
            raise RenderError(f"Decoding {image_path.name} failed: {exc}") from exc

        sized = [(RenditionKind.THUMB, self.thumb_size, "thumb")]
        sized += [(RenditionKind.PREVIEW, size, "preview") for size in self.preview_sizes]
        for kind, bound, label in sized:
            target = fit_within(width, height, bound)
            output_path = work_dir / f"{label}-{bound}.webp"
            self._resized(img, target).save(output_path, "WEBP", quality=self.quality)
            report.renditions.append(
                self.publisher.publish(
                    version_id,
                    output_path,
                    key=f"{prefix}/{label}-{bound}.webp",
                    content_type="image/webp",
                    kind=kind,
                    width=target[0],
                    height=target[1],
                )
            )

        report.extend(self.render_pyramid(version_id, img, work_dir))
        logger.info(
            f"Rendered image version {version_id}: {len(report.renditions)} renditions, "
            f"{len(report.skipped)} tiles skipped"
        )
        return report

    def _resized(self, img: Image.Image, size: Tuple[int, int]) -> Image.Image:
        if img.size == size:
            return img
        return img.resize(size, Image.Resampling.LANCZOS)

    def render_pyramid(self, version_id: str, img: Image.Image, work_dir: Path) -> RenderReport:
        report = RenderReport()
        width, height = img.size
        top_level = max_zoom_level(width, height, self.tile_size, self.max_zoom)
        tiles_dir = work_dir / "tiles"
        tiles_dir.mkdir(parents=True, exist_ok=True)

        for zoom in range(top_level + 1):
            canvas_size = scaled_size(width, height, zoom)
            canvas = self._resized(img, canvas_size)
            for tile in tile_grid(canvas_size[0], canvas_size[1], zoom, self.tile_size):
                try:
                    report.renditions.append(self._publish_tile(version_id, canvas, tile, tiles_dir))
                except Exception as exc:
                    failure = PartialTileFailure(str(exc), zoom=tile.zoom, x=tile.x, y=tile.y)
                    report.skipped.append(failure)
                    logger.warning(
                        f"Skipping tile {tile.zoom}/{tile.x}_{tile.y} for version {version_id}: {exc}"
                    )

        return report

    def _publish_tile(self, version_id: str, canvas: Image.Image, tile: TileSpec, tiles_dir: Path):
        output_path = tiles_dir / f"{tile.zoom}-{tile.x}-{tile.y}.webp"
        canvas.crop(tile.box).save(output_path, "WEBP", quality=self.quality)
        rendition = self.publisher.publish(
            version_id,
            output_path,
            key=f"{rendition_prefix(version_id)}/tiles/{tile.zoom}/{tile.x}_{tile.y}.webp",
            content_type="image/webp",
            kind=RenditionKind.TILE,
            width=tile.width,
            height=tile.height,
        )
        output_path.unlink(missing_ok=True)
        return rendition
