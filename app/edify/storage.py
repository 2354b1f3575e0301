"""
Object storage for downloadable book files.

Keys look like ``books/<book_id>/<YYYYmmddHHMMSS>-<filename>``; the timestamp keeps
re-uploads from overwriting a file a reader may be downloading.
"""
from __future__ import annotations

import mimetypes
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import BinaryIO


class StorageError(RuntimeError):
    pass


def book_file_key(book_id: int, filename: str, uploaded_at: datetime) -> str:
    return f"books/{book_id}/{uploaded_at.strftime('%Y%m%d%H%M%S')}-{filename}"


def download_name(key: str) -> str:
    """Original filename for a stored key (timestamp prefix dropped)."""
    return PurePosixPath(key).name.split("-", 1)[-1]


def guess_content_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


class BookFileStore:
    backend = "base"

    def save(self, key: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    def load(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class LocalBookFileStore(BookFileStore):
    backend = "local"

    def __init__(self, root: Path):
        self.root = root.resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/").replace("\\", "/")).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Storage key escapes root: {key!r}")
        return path

    def save(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def load(self, key: str) -> BinaryIO:
        path = self._path(key)
        if not path.is_file():
            raise StorageError(f"No such object: {key}")
        return path.open("rb")

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class S3BookFileStore(BookFileStore):
    """S3-compatible bucket (AWS, DigitalOcean Spaces, MinIO). Needs the `s3` extra."""

    backend = "s3"

    def __init__(self, *, endpoint: str, region: str, bucket: str, access_key_id: str, secret_access_key: str):
        import boto3

        self.bucket = bucket
        self._client = boto3.client(
            "s3",
            endpoint_url=f"https://{endpoint}" if endpoint else None,
            region_name=region or None,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def save(self, key: str, data: bytes, content_type: str) -> None:
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    def load(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            return self._client.get_object(Bucket=self.bucket, Key=key)["Body"]
        except ClientError as e:
            raise StorageError(f"No such object: {key}") from e

    def remove(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)


def storage_from_config(config) -> BookFileStore:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3BookFileStore(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    root = Path(config.get("STORAGE_LOCAL_ROOT") or "storage")
    if not root.is_absolute():
        root = Path.cwd() / root
    return LocalBookFileStore(root)
