import io
from typing import Protocol

from minio import Minio
from minio.error import S3Error

from .config import MINIO_ACCESS_KEY, MINIO_BUCKET, MINIO_ENDPOINT, MINIO_SECRET_KEY
from .errors import NotFoundError

MISSING_CODES = ("NoSuchKey", "NoSuchBucket")


class ArtifactStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        ...

    def get(self, key: str) -> bytes:
        ...


class MinioStore:
    def __init__(self, endpoint=MINIO_ENDPOINT, access_key=MINIO_ACCESS_KEY, secret_key=MINIO_SECRET_KEY, bucket=MINIO_BUCKET):
        self.bucket = bucket
        self._client = Minio(endpoint, access_key=access_key, secret_key=secret_key, secure=False)

    def ensure_bucket(self):
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.ensure_bucket()
        self._client.put_object(self.bucket, key, io.BytesIO(data), length=len(data), content_type=content_type)

    def get(self, key: str) -> bytes:
        try:
            resp = self._client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in MISSING_CODES:
                raise NotFoundError(f"Stored object {key} not found") from exc
            raise
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()
