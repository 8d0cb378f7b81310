import os
import secrets
import time
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import requests
from werkzeug.utils import secure_filename

ALLOWED_PHOTO_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp", "heic"}
BUCKET_PREFIX = "uploads"


class StorageError(Exception):
    """Raised when the remote bucket rejects an upload."""


def short_id(length: int = 9) -> str:
    return secrets.token_urlsafe(length)[:length]


def photo_extension(filename: Optional[str]) -> str:
    cleaned = secure_filename(filename or "")
    return os.path.splitext(cleaned)[1].lower()


def allowed_photo(filename: Optional[str]) -> bool:
    extension = photo_extension(filename).lstrip(".")
    return bool(extension) and extension in ALLOWED_PHOTO_EXTENSIONS


def build_photo_filename(original_name: str, now_ms: Optional[int] = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{timestamp}-{short_id()}{photo_extension(original_name)}"


class LocalPhotoStorage:
    def __init__(self, folder: str):
        self.folder = folder
        os.makedirs(self.folder, exist_ok=True)

    def path_for(self, filename: str) -> str:
        return os.path.join(self.folder, filename)

    def save(self, file_storage, filename: str) -> str:
        destination = self.path_for(filename)
        file_storage.save(destination)
        return destination

    def remove(self, filename: str):
        os.remove(self.path_for(filename))


class SupabaseBucket:
    """Minimal client for a public Supabase Storage bucket."""

    def __init__(
        self,
        base_url: str,
        service_key: Optional[str],
        bucket: str,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key or ""
        self.bucket = bucket
        self.timeout = timeout

    @property
    def can_upload(self) -> bool:
        return bool(self.base_url and self.bucket and self.service_key)

    def object_path(self, filename: str) -> str:
        return f"{BUCKET_PREFIX}/{filename}"

    def public_url(self, filename: str) -> str:
        return (
            f"{self.base_url}/storage/v1/object/public/{self.bucket}/"
            f"{quote(self.object_path(filename))}"
        )

    def upload(self, data: bytes, filename: str, content_type: Optional[str]) -> str:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(self.object_path(filename))}"
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": content_type or "application/octet-stream",
            "x-upsert": "false",
        }
        try:
            response = requests.post(url, data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StorageError(str(exc)) from exc

        if response.status_code not in (200, 201):
            raise StorageError(
                f"Bucket upload failed with {response.status_code}: {response.text}"
            )
        return self.public_url(filename)


class PhotoStorage:
    """Stores guest photos locally and mirrors them to the bucket when configured."""

    def __init__(self, local: LocalPhotoStorage, bucket: Optional[SupabaseBucket], logger):
        self.local = local
        self.bucket = bucket
        self.logger = logger

    def store(self, file_storage, filename: str) -> Tuple[str, Optional[str]]:
        """Save ``file_storage`` as ``filename``; return ``(local_path, url)``.

        ``url`` is only set when the bucket accepted the file, in which case
        the local copy is removed.
        """
        local_path = self.local.save(file_storage, filename)
        if not self.bucket or not self.bucket.can_upload:
            return local_path, None

        try:
            with open(local_path, "rb") as handle:
                data = handle.read()
            url = self.bucket.upload(data, filename, getattr(file_storage, "mimetype", None))
        except (StorageError, OSError) as exc:
            self.logger.error("Bucket upload failed for %s: %s", filename, exc)
            return local_path, None

        try:
            self.local.remove(filename)
        except OSError as exc:
            self.logger.warning("Unable to remove local copy of %s: %s", filename, exc)
        return local_path, url

    def normalize_upload(self, upload: Dict, local_base_url: str) -> Dict:
        if upload.get("url"):
            return upload
        filename = upload.get("filename")
        if not filename:
            return upload
        if self.bucket and self.bucket.base_url and self.bucket.bucket:
            return {**upload, "url": self.bucket.public_url(filename)}
        return {**upload, "url": f"{local_base_url.rstrip('/')}/uploads/{filename}"}
