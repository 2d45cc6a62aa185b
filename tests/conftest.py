"""
Pytest configuration and fixtures for Rendition Backend tests.

Storage and Redis are replaced by in-memory doubles; SQLite, the renderers and
the FastAPI app are the real thing.
"""

import hashlib
import io
from pathlib import Path
from typing import Dict, List, Optional

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from rendition_backend.database import Database
from rendition_backend.errors import StorageError
from rendition_backend.job_queue import JobQueue
from rendition_backend.main import create_app
from rendition_backend.models import CompletedPart
from rendition_backend.pipeline import RenditionPipeline
from rendition_backend.image_renderer import ImageRenderer
from rendition_backend.office_bridge import OfficeBridge
from rendition_backend.pdf_renderer import PdfRenderer
from rendition_backend.rendering import RenditionPublisher
from rendition_backend.uploads import UploadSessionManager
from rendition_backend.worker import RenditionWorker

CALLER = {"X-User-Id": "user-123"}


class FakeStorage:
    """In-memory stand-in for StorageGateway with S3's multipart semantics."""

    def __init__(self, bucket: str = "assets") -> None:
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, Dict] = {}
        self.calls: List[str] = []
        self.fail: Dict[str, Exception] = {}
        self._counter = 0

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise self.fail[operation]

    def put_part(self, upload_id: str, part_number: int, data: bytes) -> str:
        """What the client does with a presigned part URL; returns the ETag."""
        etag = hashlib.md5(data).hexdigest()
        self.uploads[upload_id]["parts"][part_number] = (etag, data)
        return etag

    def create_multipart_upload(self, key: str, mime: str) -> str:
        self._check("create_multipart_upload")
        self._counter += 1
        upload_id = f"upload-{self._counter}"
        self.uploads[upload_id] = {"key": key, "mime": mime, "parts": {}, "state": "open"}
        return upload_id

    def presign_part_url(self, key: str, upload_id: str, part_number: int) -> str:
        self._check("presign_part_url")
        return f"https://storage.test/{self.bucket}/{key}?uploadId={upload_id}&partNumber={part_number}"

    def complete_multipart_upload(self, key: str, upload_id: str, parts) -> str:
        self._check("complete_multipart_upload")
        upload = self.uploads.get(upload_id)
        if upload is None or upload["state"] != "open":
            raise StorageError(f"NoSuchUpload {upload_id}")
        ordered = sorted(parts, key=lambda part: part["PartNumber"])
        numbers = [part["PartNumber"] for part in ordered]
        if numbers != list(range(1, len(upload["parts"]) + 1)) or set(numbers) != set(upload["parts"]):
            raise StorageError(f"InvalidPart: parts {numbers} do not match uploaded parts")
        for part in ordered:
            if upload["parts"][part["PartNumber"]][0] != part["ETag"]:
                raise StorageError(f"InvalidPart: ETag mismatch for part {part['PartNumber']}")
        self.objects[key] = b"".join(upload["parts"][n][1] for n in numbers)
        upload["state"] = "completed"
        return key

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._check("abort_multipart_upload")
        if upload_id in self.uploads:
            self.uploads[upload_id]["state"] = "aborted"

    def copy_object(self, source_key: str, dest_key: str) -> None:
        self._check("copy_object")
        if source_key not in self.objects:
            raise StorageError(f"NoSuchKey {source_key}")
        self.objects[dest_key] = self.objects[source_key]

    def download_file(self, key: str, destination: Path) -> Path:
        self._check("download_file")
        if key not in self.objects:
            raise StorageError(f"NoSuchKey {key}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.objects[key])
        return destination

    def upload_file(self, source: Path, key: str, content_type: str) -> None:
        self._check("upload_file")
        self.objects[key] = Path(source).read_bytes()

    def presign_get_url(self, key: str, ttl: Optional[int] = None) -> str:
        return f"https://storage.test/{self.bucket}/{key}?ttl={ttl or 600}"


class FakeRedis:
    """The handful of list commands JobQueue uses, without blocking."""

    def __init__(self) -> None:
        self.lists: Dict[str, List[str]] = {}
        self.errors: List[Exception] = []

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    def lpush(self, key: str, value: str) -> int:
        self._maybe_fail()
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    def brpop(self, keys, timeout=0):
        self._maybe_fail()
        for key in keys:
            if self.lists.get(key):
                return key, self.lists[key].pop()
        return None

    def rpop(self, key: str):
        self._maybe_fail()
        if self.lists.get(key):
            return self.lists[key].pop()
        return None

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    def close(self) -> None:
        pass


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "renditions.db")


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue(fake_redis):
    return JobQueue(fake_redis)


@pytest.fixture
def manager(database, storage, queue):
    return UploadSessionManager(database=database, storage=storage, queue=queue)


@pytest.fixture
def client(manager):
    """Create a test client for the FastAPI app with injected collaborators."""
    return TestClient(create_app(upload_manager=manager))


@pytest.fixture
def publisher(storage, database):
    return RenditionPublisher(storage, database)


@pytest.fixture
def pipeline(database, storage, publisher, tmp_path):
    return RenditionPipeline(
        database=database,
        storage=storage,
        pdf_renderer=PdfRenderer(publisher),
        image_renderer=ImageRenderer(publisher),
        office_bridge=OfficeBridge(),
        scratch_dir=tmp_path / "scratch",
    )


@pytest.fixture
def worker(queue, pipeline):
    return RenditionWorker(queue=queue, pipeline=pipeline, dequeue_timeout=0, error_backoff=0)


def split_parts(data: bytes, part_size: int) -> List[bytes]:
    return [data[offset:offset + part_size] for offset in range(0, len(data), part_size)]


def upload_all_parts(manager, storage, session, data: bytes) -> List[CompletedPart]:
    """Drive a session like a client would: presign every part, PUT it, collect ETags."""
    parts = []
    for number, chunk in enumerate(split_parts(data, session.part_size), start=1):
        manager.request_part_url(session.id, number)
        etag = storage.put_part(session.s3_upload_id, number, chunk)
        parts.append(CompletedPart(part_number=number, etag=etag))
    return parts


def make_png(width: int, height: int, color=(200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, "PNG")
    return buffer.getvalue()


def make_pdf(page_count: int) -> bytes:
    doc = fitz.open()
    for number in range(1, page_count + 1):
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), f"Page {number}")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def upload_file(manager, storage):
    """Upload ``data`` end to end and return the completion result."""

    def _upload(data: bytes, mime: str, file_name: str, target="new_asset", asset_id=None):
        session = manager.create_session(
            target=target,
            file_name=file_name,
            mime=mime,
            total_size=len(data),
            created_by="user-123",
            asset_id=asset_id,
        )
        parts = upload_all_parts(manager, storage, session, data)
        return manager.complete(session.id, parts)

    return _upload


@pytest.fixture
def version_id(upload_file):
    """A real asset version for renderer tests to attach renditions to."""
    return upload_file(make_png(8, 8), "image/png", "seed.png").version_id
