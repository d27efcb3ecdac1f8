"""Scratch-area staging for chunked uploads.

A pending upload is a directory of ``chunk_<index>`` files keyed by the owner and
the client-chosen upload id. Nothing about a pending upload is kept anywhere else:
if the directory is gone, so is the upload.
"""

import hashlib
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from second_brain.config import settings

CHUNK_PREFIX = "chunk_"
COPY_BUFFER_BYTES = 1024 * 1024


class UploadNotFoundError(LookupError):
    def __init__(self, upload_id: str) -> None:
        super().__init__(f"upload {upload_id} has no staged chunks")
        self.upload_id = upload_id


class MissingChunkError(Exception):
    def __init__(self, index: int) -> None:
        super().__init__(f"Missing chunk {index}")
        self.index = index


class IntegrityMismatchError(Exception):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__("assembled file checksum mismatch")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class MergedUpload:
    path: Path
    size_bytes: int
    md5: str

    def verify_md5(self, expected: str | None) -> None:
        if expected and expected.lower() != self.md5:
            raise IntegrityMismatchError(expected.lower(), self.md5)


def staging_key(owner_id: str, upload_id: str) -> str:
    return hashlib.sha256(f"{owner_id}\x00{upload_id}".encode("utf-8")).hexdigest()


class ChunkScratch:
    def __init__(self, root: str) -> None:
        self.root = Path(root)

    @property
    def chunks_root(self) -> Path:
        return self.root / "chunks"

    @property
    def merged_root(self) -> Path:
        return self.root / "merged"

    def upload_dir(self, owner_id: str, upload_id: str) -> Path:
        return self.chunks_root / staging_key(owner_id, upload_id)

    def merged_path(self, owner_id: str, upload_id: str) -> Path:
        return self.merged_root / f"{staging_key(owner_id, upload_id)}.bin"

    def receive_chunk(self, owner_id: str, upload_id: str, chunk_index: int, stream: BinaryIO) -> int:
        """Store one chunk, replacing any earlier chunk with the same index."""
        if chunk_index < 0:
            raise ValueError("chunk index must be non-negative")
        directory = self.upload_dir(owner_id, upload_id)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / f"{CHUNK_PREFIX}{chunk_index}"
        partial = directory / f".{CHUNK_PREFIX}{chunk_index}.{uuid.uuid4().hex}"
        try:
            with partial.open("wb") as out:
                shutil.copyfileobj(stream, out, COPY_BUFFER_BYTES)
            written = partial.stat().st_size
            os.replace(partial, target)
        except OSError:
            partial.unlink(missing_ok=True)
            raise
        return written

    def received(self, owner_id: str, upload_id: str) -> list[int]:
        directory = self.upload_dir(owner_id, upload_id)
        if not directory.is_dir():
            return []
        indexes: list[int] = []
        for path in directory.iterdir():
            suffix = path.name.removeprefix(CHUNK_PREFIX)
            if path.name.startswith(CHUNK_PREFIX) and suffix.isdigit():
                indexes.append(int(suffix))
        return sorted(indexes)

    def assemble(self, owner_id: str, upload_id: str, total_chunks: int) -> MergedUpload:
        """Concatenate chunks ``0..total_chunks-1`` into one temporary file.

        Presence is checked for every index before anything is written, so a
        missing chunk leaves the scratch area untouched for the client to fill in.
        The byte count and MD5 come from the merged stream itself.
        """
        if total_chunks <= 0:
            raise ValueError("total_chunks must be positive")
        directory = self.upload_dir(owner_id, upload_id)
        if not directory.is_dir():
            raise UploadNotFoundError(upload_id)

        for index in range(total_chunks):
            if not (directory / f"{CHUNK_PREFIX}{index}").is_file():
                raise MissingChunkError(index)

        merged = self.merged_path(owner_id, upload_id)
        merged.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.md5(usedforsecurity=False)
        size = 0
        try:
            with merged.open("wb") as out:
                for index in range(total_chunks):
                    with (directory / f"{CHUNK_PREFIX}{index}").open("rb") as source:
                        while True:
                            block = source.read(COPY_BUFFER_BYTES)
                            if not block:
                                break
                            out.write(block)
                            digest.update(block)
                            size += len(block)
        except FileNotFoundError as exc:
            # A concurrent discard removed the staging directory mid-read.
            merged.unlink(missing_ok=True)
            raise UploadNotFoundError(upload_id) from exc
        except OSError:
            merged.unlink(missing_ok=True)
            raise
        return MergedUpload(path=merged, size_bytes=size, md5=digest.hexdigest())

    def discard(self, owner_id: str, upload_id: str) -> None:
        shutil.rmtree(self.upload_dir(owner_id, upload_id), ignore_errors=True)
        self.merged_path(owner_id, upload_id).unlink(missing_ok=True)

    def sweep(self, ttl_seconds: int, now: float | None = None) -> dict[str, int]:
        """Remove staging directories and merged files idle for longer than ``ttl_seconds``."""
        cutoff = (now if now is not None else time.time()) - ttl_seconds
        uploads_deleted = 0
        merged_deleted = 0
        if self.chunks_root.is_dir():
            for directory in self.chunks_root.iterdir():
                try:
                    if directory.is_dir() and directory.stat().st_mtime < cutoff:
                        shutil.rmtree(directory)
                        uploads_deleted += 1
                except OSError:
                    # Merged, discarded or resumed while we were looking at it.
                    continue
        if self.merged_root.is_dir():
            for path in self.merged_root.iterdir():
                try:
                    if path.is_file() and path.stat().st_mtime < cutoff:
                        path.unlink()
                        merged_deleted += 1
                except OSError:
                    continue
        return {"stale_uploads_deleted": uploads_deleted, "stale_merged_files_deleted": merged_deleted}


scratch = ChunkScratch(settings.scratch_root)
