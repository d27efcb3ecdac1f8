import json
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import BinaryIO

from second_brain.config import settings

_LOCAL_ID = re.compile(r"[0-9a-f]{32}")


class BlobNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class StoredBlob:
    remote_id: str
    url: str
    size: int | None = None


class BlobStore:
    """Remote object storage holding uploaded file bytes.

    ``store`` consumes the stream from its current position. ``public`` controls
    whether the returned URL is readable by anyone who has it.
    """

    def store(self, stream: BinaryIO, name: str, mime_type: str, public: bool = True) -> StoredBlob:
        raise NotImplementedError

    def delete(self, remote_id: str) -> None:
        raise NotImplementedError

    def fetch_metadata(self, remote_id: str) -> dict:
        raise NotImplementedError


def _safe_name(name: str) -> str:
    base = PurePath(name.replace("\\", "/")).name
    return base or "file"


class LocalBlobStore(BlobStore):
    def __init__(self, root: str, base_url: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def _data_path(self, remote_id: str) -> Path:
        if not _LOCAL_ID.fullmatch(remote_id):
            raise BlobNotFoundError(remote_id)
        return self.root / remote_id

    def _meta_path(self, remote_id: str) -> Path:
        return self._data_path(remote_id).with_suffix(".json")

    def store(self, stream: BinaryIO, name: str, mime_type: str, public: bool = True) -> StoredBlob:
        remote_id = uuid.uuid4().hex
        data_path = self._data_path(remote_id)
        self.root.mkdir(parents=True, exist_ok=True)
        with data_path.open("wb") as out:
            shutil.copyfileobj(stream, out)
        size = data_path.stat().st_size
        meta = {"id": remote_id, "name": _safe_name(name), "mime_type": mime_type, "size": size, "public": public}
        self._meta_path(remote_id).write_text(json.dumps(meta), encoding="utf-8")
        return StoredBlob(remote_id=remote_id, url=f"{self.base_url}/blobs/{remote_id}", size=size)

    def delete(self, remote_id: str) -> None:
        data_path = self._data_path(remote_id)
        if not data_path.exists():
            raise BlobNotFoundError(remote_id)
        data_path.unlink()
        self._meta_path(remote_id).unlink(missing_ok=True)

    def fetch_metadata(self, remote_id: str) -> dict:
        meta_path = self._meta_path(remote_id)
        if not meta_path.exists():
            raise BlobNotFoundError(remote_id)
        return json.loads(meta_path.read_text(encoding="utf-8"))

    def open_path(self, remote_id: str) -> Path:
        data_path = self._data_path(remote_id)
        if not data_path.exists():
            raise BlobNotFoundError(remote_id)
        return data_path


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        public_base_url: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def object_key(self, name: str) -> str:
        return f"files/{uuid.uuid4().hex}/{_safe_name(name)}"

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def store(self, stream: BinaryIO, name: str, mime_type: str, public: bool = True) -> StoredBlob:
        key = self.object_key(name)
        params = {"Bucket": self.bucket, "Key": key, "Body": stream, "ContentType": mime_type}
        if public:
            params["ACL"] = "public-read"
        self.client.put_object(**params)
        return StoredBlob(remote_id=key, url=self.object_url(key))

    def delete(self, remote_id: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=remote_id)

    def fetch_metadata(self, remote_id: str) -> dict:
        head = self.client.head_object(Bucket=self.bucket, Key=remote_id)
        return {
            "id": remote_id,
            "name": remote_id.rsplit("/", 1)[-1],
            "mime_type": head.get("ContentType"),
            "size": int(head.get("ContentLength", 0)),
            "etag": (head.get("ETag") or "").strip('"'),
            "url": self.object_url(remote_id),
        }


def build_blob_store() -> BlobStore:
    backend = settings.blob_backend.lower()
    if backend == "local":
        return LocalBlobStore(settings.blob_root, settings.public_base_url)
    if backend == "s3":
        return S3BlobStore(
            settings.s3_bucket,
            settings.aws_region,
            public_base_url=settings.blob_public_base_url or None,
        )
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when blob_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when blob_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3BlobStore(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
            public_base_url=settings.blob_public_base_url or None,
        )
    raise ValueError(f"unsupported blob backend: {settings.blob_backend}")


blob_store = build_blob_store()
