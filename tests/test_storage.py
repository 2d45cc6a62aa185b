"""
Tests for the S3 storage gateway and runtime configuration.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from botocore.stub import ANY, Stubber
from omegaconf import OmegaConf
from omegaconf.errors import ConfigKeyError

from rendition_backend.configuration import make_runtime_config
from rendition_backend.errors import StorageError
from rendition_backend.storage import StorageGateway, build_s3_client


@pytest.fixture
def s3_client():
    config = OmegaConf.create(
        {
            "endpoint": "http://minio.test:9000",
            "region": "us-east-1",
            "access_key": "testing",
            "secret_key": "testing",
            "force_path_style": True,
        }
    )
    return build_s3_client(config)


@pytest.fixture
def gateway(s3_client):
    return StorageGateway(s3_client, bucket="assets", presign_ttl=600)


class TestMultipartLifecycle:
    def test_create_returns_upload_id(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "create_multipart_upload",
                {"Bucket": "assets", "Key": "uploads/s1/a.png", "UploadId": "mpu-1"},
                {"Bucket": "assets", "Key": "uploads/s1/a.png", "ContentType": "image/png"},
            )
            assert gateway.create_multipart_upload("uploads/s1/a.png", "image/png") == "mpu-1"
            stubber.assert_no_pending_responses()

    def test_create_failure_is_storage_error(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("create_multipart_upload", service_error_code="NoSuchBucket", http_status_code=404)
            with pytest.raises(StorageError, match="create_multipart_upload"):
                gateway.create_multipart_upload("uploads/s1/a.png", "image/png")

    def test_complete_sends_sorted_parts(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "complete_multipart_upload",
                {"Bucket": "assets", "Key": "uploads/s1/a.png", "Location": "http://minio.test:9000/assets/uploads/s1/a.png"},
                {
                    "Bucket": "assets",
                    "Key": "uploads/s1/a.png",
                    "UploadId": "mpu-1",
                    "MultipartUpload": {
                        "Parts": [
                            {"PartNumber": 1, "ETag": '"etag-1"'},
                            {"PartNumber": 2, "ETag": '"etag-2"'},
                        ]
                    },
                },
            )
            key = gateway.complete_multipart_upload(
                "uploads/s1/a.png",
                "mpu-1",
                [{"PartNumber": 2, "ETag": '"etag-2"'}, {"PartNumber": 1, "ETag": '"etag-1"'}],
            )
            assert key == "uploads/s1/a.png"

    def test_complete_with_invalid_part(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("complete_multipart_upload", service_error_code="InvalidPart", http_status_code=400)
            with pytest.raises(StorageError, match="InvalidPart"):
                gateway.complete_multipart_upload("uploads/s1/a.png", "mpu-1", [{"PartNumber": 1, "ETag": "x"}])

    def test_abort_failure_is_storage_error(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("abort_multipart_upload", service_error_code="NoSuchUpload", http_status_code=404)
            with pytest.raises(StorageError):
                gateway.abort_multipart_upload("uploads/s1/a.png", "mpu-1")


class TestCopyAndPresign:
    def test_copy_object(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "copy_object",
                {"CopyObjectResult": {"ETag": '"abc"'}},
                {
                    "Bucket": "assets",
                    "CopySource": ANY,
                    "Key": "assets/s1/a.png",
                },
            )
            gateway.copy_object("uploads/s1/a.png", "assets/s1/a.png")
            stubber.assert_no_pending_responses()

    def test_copy_missing_source(self, gateway, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("copy_object", service_error_code="NoSuchKey", http_status_code=404)
            with pytest.raises(StorageError, match="NoSuchKey"):
                gateway.copy_object("uploads/s1/a.png", "assets/s1/a.png")

    def test_part_url_is_signed_for_the_part(self, gateway):
        url = gateway.presign_part_url("uploads/s1/a.png", "mpu-1", 3)
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.netloc == "minio.test:9000"
        assert parsed.path == "/assets/uploads/s1/a.png"
        assert query["partNumber"] == ["3"]
        assert query["uploadId"] == ["mpu-1"]
        assert query["X-Amz-Expires"] == ["600"]

    def test_get_url_honours_ttl(self, gateway):
        query = parse_qs(urlparse(gateway.presign_get_url("renditions/v1/thumb-512.webp", ttl=60)).query)
        assert query["X-Amz-Expires"] == ["60"]


class TestRuntimeConfig:
    def test_defaults(self):
        config = make_runtime_config()
        assert config.uploads.part_size == 5 * 1024 * 1024
        assert config.uploads.max_parts == 10000
        assert config.queue.dead_letter_queue == "preview:dlq"
        assert list(config.pdf.widths) == [512, 1024, 2048]

    def test_overrides(self):
        config = make_runtime_config({"pipeline": {"unsupported_mime": "fail"}})
        assert config.pipeline.unsupported_mime == "fail"
        assert config.pipeline.dedupe_renditions is False

    def test_unknown_key_is_rejected(self):
        with pytest.raises(ConfigKeyError):
            make_runtime_config({"uploads": {"part_sise": 1}})

    def test_environment_interpolation(self, monkeypatch):
        monkeypatch.setenv("S3_BUCKET", "media-prod")
        assert make_runtime_config().storage.bucket == "media-prod"
