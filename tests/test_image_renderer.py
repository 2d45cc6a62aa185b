"""
Tests for the image renderer and tile pyramid math.
"""

import pytest

from conftest import make_png
from rendition_backend.errors import RenderError
from rendition_backend.image_renderer import ImageRenderer, max_zoom_level, scaled_size, tile_grid
from rendition_backend.models import RenditionKind
from rendition_backend.rendering import fit_within


class TestPyramidMath:
    @pytest.mark.parametrize(
        "size, expected",
        [
            ((256, 256), 0),
            ((100, 50), 0),
            ((257, 100), 1),
            ((1000, 600), 2),
            ((600, 1000), 2),
            ((5000, 5000), 4),
        ],
    )
    def test_max_zoom_level(self, size, expected):
        assert max_zoom_level(*size) == expected

    def test_scaled_size_rounds_up(self):
        assert scaled_size(9000, 5000, 0) == (9000, 5000)
        assert scaled_size(9000, 5000, 4) == (563, 313)
        assert scaled_size(3, 1, 4) == (1, 1)

    def test_edge_tiles_are_clipped(self):
        tiles = list(tile_grid(563, 313, zoom=4))

        assert {(tile.x, tile.y) for tile in tiles} == {(x, y) for x in range(3) for y in range(2)}
        last_column = [tile for tile in tiles if tile.x == 2]
        last_row = [tile for tile in tiles if tile.y == 1]
        assert all(tile.width == 51 for tile in last_column)
        assert all(tile.height == 57 for tile in last_row)
        assert all(tile.zoom == 4 for tile in tiles)

    def test_small_image_is_a_single_tile(self):
        tiles = list(tile_grid(100, 50, zoom=0))
        assert len(tiles) == 1
        assert tiles[0].box == (0, 0, 100, 50)

    @pytest.mark.parametrize(
        "width, height, expected",
        [
            (4000, 3000, (512, 384)),
            (3000, 4000, (384, 512)),
            (300, 200, (300, 200)),
            (5000, 10, (512, 1)),
        ],
    )
    def test_fit_within(self, width, height, expected):
        assert fit_within(width, height, 512) == expected


class TestImageRenderer:
    def _write(self, tmp_path, data, name="source.png"):
        path = tmp_path / name
        path.write_bytes(data)
        return path

    def test_renders_thumb_previews_and_tiles(self, publisher, storage, database, tmp_path, version_id):
        renderer = ImageRenderer(publisher)
        source = self._write(tmp_path, make_png(1000, 600))

        report = renderer.render(version_id, source, tmp_path)

        by_kind = {}
        for rendition in report.renditions:
            by_kind.setdefault(rendition.kind, []).append(rendition)

        thumb = by_kind[RenditionKind.THUMB][0]
        assert (thumb.width, thumb.height) == (512, 307)
        # Previews never upscale
        assert [(p.width, p.height) for p in by_kind[RenditionKind.PREVIEW]] == [(1000, 600), (1000, 600)]
        # Zoom 0: 4x3, zoom 1: 2x2 (500x300), zoom 2: 1x1 (250x150)
        assert len(by_kind[RenditionKind.TILE]) == 12 + 4 + 1
        assert report.skipped == []

        assert f"renditions/{version_id}/thumb-512.webp" in storage.objects
        assert f"renditions/{version_id}/tiles/2/0_0.webp" in storage.objects
        assert all(rendition.ready for rendition in database.list_renditions(version_id))

    def test_outputs_are_webp(self, publisher, storage, tmp_path, version_id):
        ImageRenderer(publisher).render(version_id, self._write(tmp_path, make_png(64, 64)), tmp_path)
        assert storage.objects[f"renditions/{version_id}/thumb-512.webp"][8:12] == b"WEBP"

    def test_palette_image_is_converted(self, publisher, tmp_path, version_id):
        from PIL import Image

        path = tmp_path / "palette.gif"
        Image.new("P", (40, 30)).save(path, "GIF")
        report = ImageRenderer(publisher).render(version_id, path, tmp_path)
        assert len(report.renditions) == 4

    def test_tile_failure_is_skipped(self, publisher, database, tmp_path, version_id):
        class FlakyTiles(ImageRenderer):
            def _publish_tile(self, version_id, canvas, tile, tiles_dir):
                if (tile.zoom, tile.x, tile.y) == (0, 1, 0):
                    raise OSError("encoder crashed")
                return super()._publish_tile(version_id, canvas, tile, tiles_dir)

        report = FlakyTiles(publisher).render(version_id, self._write(tmp_path, make_png(600, 300)), tmp_path)

        assert len(report.skipped) == 1
        failure = report.skipped[0]
        assert (failure.zoom, failure.x, failure.y) == (0, 1, 0)
        tiles = [r for r in database.list_renditions(version_id) if r.kind == RenditionKind.TILE]
        # 600x300 -> 6 + 2 + 1 tiles, one skipped
        assert len(tiles) == 8

    def test_corrupt_image_raises(self, publisher, tmp_path, version_id):
        source = self._write(tmp_path, b"definitely not an image")
        with pytest.raises(RenderError):
            ImageRenderer(publisher).render(version_id, source, tmp_path)

    def test_thumb_failure_is_fatal(self, publisher, storage, tmp_path, version_id):
        storage.fail["upload_file"] = OSError("disk full")
        with pytest.raises(OSError):
            ImageRenderer(publisher).render(version_id, self._write(tmp_path, make_png(64, 64)), tmp_path)
