import logging
import os
import re

import pytest
import requests

from snapthis import storage
from snapthis.storage import (
    LocalPhotoStorage,
    PhotoStorage,
    StorageError,
    SupabaseBucket,
    allowed_photo,
    build_photo_filename,
)

logger = logging.getLogger("snapthis.tests.storage")


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


@pytest.fixture
def bucket():
    return SupabaseBucket("https://proj.supabase.co/", "service-key", "photos")


@pytest.fixture
def local(tmp_path):
    return LocalPhotoStorage(str(tmp_path / "uploads"))


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("party.jpg", True),
        ("PARTY.JPEG", True),
        ("clip.heic", True),
        ("notes.txt", False),
        ("no_extension", False),
        ("", False),
        (None, False),
    ],
)
def test_allowed_photo(filename, expected):
    assert allowed_photo(filename) is expected


def test_build_photo_filename_uses_timestamp_and_extension():
    filename = build_photo_filename("My Party.PNG", now_ms=1700000000000)
    assert re.fullmatch(r"1700000000000-[A-Za-z0-9_-]{9}\.png", filename)


def test_filenames_are_unique():
    assert build_photo_filename("a.jpg", now_ms=1) != build_photo_filename("a.jpg", now_ms=1)


def test_public_url(bucket):
    assert (
        bucket.public_url("123-abc.jpg")
        == "https://proj.supabase.co/storage/v1/object/public/photos/uploads/123-abc.jpg"
    )


def test_bucket_upload_posts_to_object_path(bucket, monkeypatch):
    calls = {}

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.update(url=url, data=data, headers=headers)
        return FakeResponse(200, '{"Key": "photos/uploads/x.jpg"}')

    monkeypatch.setattr(storage.requests, "post", fake_post)

    url = bucket.upload(b"bytes", "x.jpg", "image/jpeg")

    assert url.endswith("/storage/v1/object/public/photos/uploads/x.jpg")
    assert calls["url"] == "https://proj.supabase.co/storage/v1/object/photos/uploads/x.jpg"
    assert calls["headers"]["Authorization"] == "Bearer service-key"
    assert calls["headers"]["Content-Type"] == "image/jpeg"
    assert calls["data"] == b"bytes"


def test_bucket_upload_rejected(bucket, monkeypatch):
    monkeypatch.setattr(
        storage.requests, "post", lambda *args, **kwargs: FakeResponse(400, "Duplicate")
    )
    with pytest.raises(StorageError, match="Duplicate"):
        bucket.upload(b"bytes", "x.jpg", "image/jpeg")


def test_bucket_network_error(bucket, monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(storage.requests, "post", boom)
    with pytest.raises(StorageError, match="offline"):
        bucket.upload(b"bytes", "x.jpg", None)


def test_bucket_without_key_cannot_upload():
    assert not SupabaseBucket("https://proj.supabase.co", "", "photos").can_upload


class TestPhotoStorage:
    def test_local_only(self, local, photo_file):
        photos = PhotoStorage(local, None, logger)
        path, url = photos.store(photo_file(), "1-a.jpg")
        assert url is None
        assert os.path.exists(path)

    def test_bucket_success_removes_local_copy(self, local, bucket, photo_file, monkeypatch):
        monkeypatch.setattr(storage.requests, "post", lambda *a, **k: FakeResponse(200))
        photos = PhotoStorage(local, bucket, logger)

        path, url = photos.store(photo_file(), "1-a.jpg")

        assert url == bucket.public_url("1-a.jpg")
        assert not os.path.exists(path)

    def test_bucket_failure_keeps_local_copy(self, local, bucket, photo_file, monkeypatch, caplog):
        monkeypatch.setattr(storage.requests, "post", lambda *a, **k: FakeResponse(500, "down"))
        photos = PhotoStorage(local, bucket, logger)

        with caplog.at_level(logging.ERROR, logger=logger.name):
            path, url = photos.store(photo_file(), "1-a.jpg")

        assert url is None
        assert os.path.exists(path)
        assert "Bucket upload failed" in caplog.text

    def test_failed_local_cleanup_is_logged(self, local, bucket, photo_file, monkeypatch, caplog):
        monkeypatch.setattr(storage.requests, "post", lambda *a, **k: FakeResponse(200))

        def deny(path):
            raise PermissionError(13, "Permission denied", path)

        monkeypatch.setattr(storage.os, "remove", deny)
        photos = PhotoStorage(local, bucket, logger)

        with caplog.at_level(logging.WARNING, logger=logger.name):
            path, url = photos.store(photo_file(), "1-a.jpg")

        assert url == bucket.public_url("1-a.jpg")
        assert os.path.exists(path)
        assert "Unable to remove local copy of 1-a.jpg" in caplog.text

    def test_normalize_keeps_existing_url(self, local, bucket):
        photos = PhotoStorage(local, bucket, logger)
        upload = {"filename": "a.jpg", "url": "https://cdn/a.jpg"}
        assert photos.normalize_upload(upload, "")["url"] == "https://cdn/a.jpg"

    def test_normalize_prefers_bucket_url(self, local, bucket):
        photos = PhotoStorage(local, bucket, logger)
        assert photos.normalize_upload({"filename": "a.jpg"}, "")["url"] == bucket.public_url("a.jpg")

    def test_normalize_local_path(self, local):
        photos = PhotoStorage(local, None, logger)
        assert photos.normalize_upload({"filename": "a.jpg"}, "")["url"] == "/uploads/a.jpg"
        assert (
            photos.normalize_upload({"filename": "a.jpg"}, "https://snapthis.pl/")["url"]
            == "https://snapthis.pl/uploads/a.jpg"
        )

    def test_normalize_without_filename(self, local):
        photos = PhotoStorage(local, None, logger)
        assert photos.normalize_upload({"id": "x"}, "") == {"id": "x"}
