import io
from functools import lru_cache
from minio import Minio
from minio.error import S3Error
from .config import Settings, get_settings


class ArtifactStore:
    """PDF artifacts kept in a MinIO / S3 bucket, addressed by key."""

    def __init__(self, settings: Settings):
        self.bucket = settings.minio_bucket
        self._client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )

    def ensure_bucket(self):
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        self.ensure_bucket()
        self._client.put_object(self.bucket, key, io.BytesIO(data), length=len(data), content_type=content_type)

    def get_bytes(self, key: str) -> bytes:
        resp = self._client.get_object(self.bucket, key)
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()

    def delete_object(self, key: str):
        try:
            self._client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code != "NoSuchKey":
                raise


def working_key(document_id: str) -> str:
    return f"documents/{document_id}/working.pdf"


def final_key(document_id: str) -> str:
    return f"documents/{document_id}/final.pdf"


@lru_cache(maxsize=1)
def get_storage() -> ArtifactStore:
    return ArtifactStore(get_settings())
