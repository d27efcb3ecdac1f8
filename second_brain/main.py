import asyncio
import json
import logging
import math
import mimetypes
import time
import uuid
from contextlib import asynccontextmanager
from typing import BinaryIO

from fastapi import Depends, FastAPI, File as FilePart, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from pydantic import ValidationError
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from second_brain.auth import AuthUser, require_admin_user, require_user
from second_brain.blobstore import BlobNotFoundError, LocalBlobStore, StoredBlob, blob_store
from second_brain.chunks import (
    IntegrityMismatchError,
    MissingChunkError,
    UploadNotFoundError,
    scratch,
    staging_key,
)
from second_brain.config import settings
from second_brain.db import create_schema, get_db
from second_brain.linkmeta import fetch_url_metadata
from second_brain.locks import upload_locks
from second_brain.maintenance import cleanup_once
from second_brain.metrics import (
    blob_store_failures_total,
    blob_store_latency_seconds,
    chunk_bytes_received_total,
    chunk_receive_failures_total,
    chunks_received_total,
    direct_uploads_total,
    http_request_duration_seconds,
    merges_total,
    metrics_response,
)
from second_brain.models import File as StoredFile, Link, Note
from second_brain.schemas import (
    ChunkReceivedResponse,
    ChunkStatusResponse,
    DashboardStats,
    ErrorResponse,
    FileOut,
    LinkIn,
    LinkOut,
    MergeChunksRequest,
    MessageResponse,
    NoteIn,
    NoteOut,
    Page,
    RecentFile,
    RecentLink,
    RecentNote,
    SearchResult,
    ValidationErrorResponse,
)
from second_brain.tracing import current_trace_id, setup_tracing

DEFAULT_MIME_TYPE = "application/octet-stream"
SEARCH_MIN_QUERY_LENGTH = 2
SEARCH_LIMIT_PER_TYPE = 10
SNIPPET_LENGTH = 100
RECENT_ITEMS = 5


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(cleanup_once)
                _log_event({"event": "scratch_sweep", **stats})
            except Exception as exc:
                _log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.auto_create_schema:
        create_schema()
    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)
request_logger = logging.getLogger("brain.request")
if not request_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    request_logger.addHandler(handler)
request_logger.setLevel(logging.INFO)
audit_logger = logging.getLogger("brain.audit")
if not audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
audit_logger.setLevel(logging.INFO)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return getattr(request.state, "upload_id", None)


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _log_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def _audit_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    audit_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthenticated",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _field_name(loc) -> str:
    parts = [str(part) for part in loc if part not in ("body", "query", "path", "header", "cookie")]
    return ".".join(parts) or "body"


def _validation_error(field: str, message: str) -> RequestValidationError:
    return RequestValidationError([{"loc": ("body", field), "msg": message, "type": "value_error"}])


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing credentials"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    422: {"model": ValidationErrorResponse, "description": "Validation error"},
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
NOT_FOUND_RESPONSE = {404: {"model": ErrorResponse, "description": "Not found"}}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Brain-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    _log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": str(exc.detail),
            "error_code": _error_code_for_status(exc.status_code),
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": current_trace_id(),
        },
        headers=getattr(exc, "headers", None) or {},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        errors.setdefault(_field_name(error.get("loc", ())), []).append(str(error.get("msg", "invalid value")))
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 422,
            "error_class": "validation_error",
            "detail": sorted(errors),
        }
    )
    return JSONResponse(
        status_code=422,
        content={"errors": errors, "error_code": "validation_error", "request_id": _request_id(request)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal server error",
            "error_code": "internal_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": current_trace_id(),
        },
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "blob_backend": settings.blob_backend,
        "auth_mode": settings.auth_mode,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(user: AuthUser = Depends(require_admin_user)) -> dict:
    stats = cleanup_once()
    return {"status": "ok", "requested_by": user.user_id, **stats}


def _stream_size(stream: BinaryIO) -> int:
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(0)
    return size


def _resolve_mime_type(declared: str | None, filename: str) -> str:
    if declared and declared != DEFAULT_MIME_TYPE:
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or DEFAULT_MIME_TYPE


def _store_blob(stream: BinaryIO, name: str, mime_type: str) -> StoredBlob:
    start = time.perf_counter()
    try:
        return blob_store.store(stream, name, mime_type, public=settings.blob_public_read)
    except Exception as exc:
        blob_store_failures_total.labels(operation="store").inc()
        raise HTTPException(status_code=500, detail=f"File upload failed: {exc}") from exc
    finally:
        blob_store_latency_seconds.labels(operation="store").observe(time.perf_counter() - start)


def _delete_blob_best_effort(remote_id: str, reason: str) -> bool:
    start = time.perf_counter()
    try:
        blob_store.delete(remote_id)
        return True
    except Exception as exc:
        blob_store_failures_total.labels(operation="delete").inc()
        _log_event(
            {
                "event": "blob_delete_failed",
                "storage_id": remote_id,
                "reason": reason,
                "error_class": "remote_store_error",
                "detail": str(exc),
            }
        )
        return False
    finally:
        blob_store_latency_seconds.labels(operation="delete").observe(time.perf_counter() - start)


def _record_file(
    db: Session,
    owner_id: str,
    blob: StoredBlob,
    filename: str,
    mimetype: str,
    size: int,
    category: str | None,
) -> StoredFile:
    record = StoredFile(
        owner_id=owner_id,
        filename=filename,
        storage_url=blob.url,
        storage_id=blob.remote_id,
        mimetype=mimetype,
        size=size,
        category=category,
    )
    try:
        db.add(record)
        db.commit()
    except Exception:
        db.rollback()
        _delete_blob_best_effort(blob.remote_id, reason="record_insert_failed")
        raise
    db.refresh(record)
    return record


def upload_direct(
    db: Session,
    owner_id: str,
    stream: BinaryIO,
    filename: str,
    mimetype: str,
    size: int,
    category: str | None = None,
) -> StoredFile:
    if size > settings.max_direct_upload_bytes:
        raise _validation_error(
            "file", f"The file may not be greater than {settings.max_direct_upload_bytes // 1024} kilobytes."
        )
    blob = _store_blob(stream, filename, mimetype)
    direct_uploads_total.inc()
    return _record_file(db, owner_id, blob, filename, mimetype, size, category)


def merge_chunks_for_owner(db: Session, owner_id: str, payload: MergeChunksRequest) -> StoredFile:
    """Assemble a staged upload, push it to the blob store and record it.

    Runs under the per-upload lock: a second merge of the same upload waits, then
    finds the staging area gone and fails with 404 instead of racing the cleanup.
    """
    with upload_locks.hold(staging_key(owner_id, payload.upload_id)):
        try:
            merged = scratch.assemble(owner_id, payload.upload_id, payload.total_chunks)
        except UploadNotFoundError as exc:
            merges_total.labels(outcome="not_found").inc()
            raise HTTPException(status_code=404, detail="upload not found") from exc
        except MissingChunkError as exc:
            merges_total.labels(outcome="missing_chunk").inc()
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        try:
            merged.verify_md5(payload.file_md5)
            with merged.path.open("rb") as stream:
                blob = _store_blob(stream, payload.file_name, payload.mime_type)
        except IntegrityMismatchError as exc:
            merges_total.labels(outcome="integrity_mismatch").inc()
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except HTTPException:
            merges_total.labels(outcome="remote_store_failure").inc()
            raise
        finally:
            scratch.discard(owner_id, payload.upload_id)

        record = _record_file(
            db, owner_id, blob, payload.file_name, payload.mime_type, merged.size_bytes, payload.category
        )
    merges_total.labels(outcome="completed").inc()
    return record


def _get_owned_file(db: Session, file_id: int, user: AuthUser) -> StoredFile:
    record = db.get(StoredFile, file_id)
    if not record or record.owner_id != user.user_id:
        raise HTTPException(status_code=404, detail="file not found")
    return record


def _paginate(db: Session, stmt, page: int, schema) -> dict:
    per_page = settings.page_size
    total = db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = db.scalars(stmt.limit(per_page).offset((page - 1) * per_page)).all()
    return {
        "data": [schema.model_validate(row) for row in rows],
        "current_page": page,
        "per_page": per_page,
        "total": total,
        "last_page": max(1, math.ceil(total / per_page)),
    }


@app.get("/files", response_model=Page[FileOut], responses={**COMMON_ERROR_RESPONSES})
def list_files(
    search: str | None = None,
    category: str | None = None,
    type: str | None = None,
    page: int = Query(default=1, ge=1),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    stmt = select(StoredFile).where(StoredFile.owner_id == user.user_id)
    if search:
        stmt = stmt.where(StoredFile.filename.ilike(f"%{search}%"))
    if category:
        stmt = stmt.where(StoredFile.category == category)
    if type:
        stmt = stmt.where(StoredFile.mimetype.like(f"{type}/%"))
    stmt = stmt.order_by(StoredFile.created_at.desc(), StoredFile.id.desc())
    return _paginate(db, stmt, page, FileOut)


@app.post(
    "/files/upload",
    response_model=FileOut,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES},
)
def upload_file(
    request: Request,
    file: UploadFile = FilePart(...),
    category: str | None = Form(default=None, max_length=100),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> StoredFile:
    filename = file.filename or "upload"
    size = file.size if file.size is not None else _stream_size(file.file)
    mimetype = _resolve_mime_type(file.content_type, filename)
    record = upload_direct(db, user.user_id, file.file, filename, mimetype, size, category or None)
    _audit_event(
        {
            "event": "audit",
            "action": "file_upload",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "file_id": record.id,
            "size": record.size,
        }
    )
    return record


@app.post(
    "/upload-chunk",
    response_model=ChunkReceivedResponse,
    responses={**COMMON_ERROR_RESPONSES},
)
def upload_chunk(
    request: Request,
    file: UploadFile = FilePart(...),
    chunk_index: int = Form(alias="chunkIndex", ge=0),
    upload_id: str = Form(alias="uploadId", min_length=1, max_length=255),
    user: AuthUser = Depends(require_user),
) -> ChunkReceivedResponse:
    request.state.upload_id = upload_id
    try:
        written = scratch.receive_chunk(user.user_id, upload_id, chunk_index, file.file)
    except OSError as exc:
        chunk_receive_failures_total.inc()
        raise HTTPException(status_code=500, detail=f"chunk upload failed: {exc}") from exc
    chunks_received_total.inc()
    chunk_bytes_received_total.inc(written)
    return ChunkReceivedResponse(
        message=f"Chunk {chunk_index} uploaded successfully",
        upload_id=upload_id,
        chunk_index=chunk_index,
    )


@app.get(
    "/upload-chunk/{upload_id}",
    response_model=ChunkStatusResponse,
    responses={**COMMON_ERROR_RESPONSES},
)
def staged_chunks(
    request: Request,
    upload_id: str,
    total_chunks: int | None = Query(default=None, alias="totalChunks", gt=0),
    user: AuthUser = Depends(require_user),
) -> ChunkStatusResponse:
    request.state.upload_id = upload_id
    received = scratch.received(user.user_id, upload_id)
    missing: list[int] = []
    if total_chunks:
        present = set(received)
        missing = [idx for idx in range(total_chunks) if idx not in present]
    return ChunkStatusResponse(upload_id=upload_id, received_chunk_indexes=received, missing_chunk_indexes=missing)


async def _merge_payload(request: Request) -> MergeChunksRequest:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError as exc:
            raise RequestValidationError(
                [{"loc": ("body",), "msg": "request body is not valid JSON", "type": "json_invalid"}]
            ) from exc
    else:
        data = dict(await request.form())
    if not isinstance(data, dict):
        raise RequestValidationError([{"loc": ("body",), "msg": "expected an object", "type": "dict_type"}])
    request.state.upload_id = data.get("uploadId") or data.get("upload_id")
    try:
        return MergeChunksRequest.model_validate(data)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


@app.post(
    "/merge-chunks",
    response_model=FileOut,
    status_code=201,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Missing chunk"},
        404: {"model": ErrorResponse, "description": "Upload not found"},
        409: {"model": ErrorResponse, "description": "Checksum mismatch"},
    },
)
async def merge_chunks(
    request: Request,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> StoredFile:
    payload = await _merge_payload(request)
    record = await asyncio.to_thread(merge_chunks_for_owner, db, user.user_id, payload)
    _audit_event(
        {
            "event": "audit",
            "action": "chunk_merge",
            "request_id": _request_id(request),
            "upload_id": payload.upload_id,
            "user_id": user.user_id,
            "file_id": record.id,
            "total_chunks": payload.total_chunks,
            "size": record.size,
        }
    )
    return record


@app.get(
    "/files/{file_id}",
    response_model=FileOut,
    responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE},
)
def show_file(file_id: int, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> StoredFile:
    return _get_owned_file(db, file_id, user)


@app.get("/files/{file_id}/download", responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE})
def download_file(
    file_id: int, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)
) -> RedirectResponse:
    record = _get_owned_file(db, file_id, user)
    return RedirectResponse(record.storage_url, status_code=302)


@app.delete(
    "/files/{file_id}",
    response_model=MessageResponse,
    responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE},
)
def delete_file(
    request: Request,
    file_id: int,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> MessageResponse:
    record = _get_owned_file(db, file_id, user)
    remote_deleted = None
    if record.storage_id:
        remote_deleted = _delete_blob_best_effort(record.storage_id, reason="file_delete")
    db.delete(record)
    db.commit()
    _audit_event(
        {
            "event": "audit",
            "action": "file_delete",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "file_id": file_id,
            "remote_deleted": remote_deleted,
        }
    )
    return MessageResponse(message="File deleted successfully")


@app.get("/blobs/{remote_id}", responses={**NOT_FOUND_RESPONSE})
def serve_local_blob(remote_id: str) -> FileResponse:
    if not isinstance(blob_store, LocalBlobStore):
        raise HTTPException(status_code=404, detail="blob not found")
    try:
        meta = blob_store.fetch_metadata(remote_id)
        path = blob_store.open_path(remote_id)
    except BlobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="blob not found") from exc
    if not meta.get("public"):
        raise HTTPException(status_code=404, detail="blob not found")
    return FileResponse(path, media_type=meta.get("mime_type") or DEFAULT_MIME_TYPE, filename=meta.get("name"))


def _get_owned_note(db: Session, note_id: int, user: AuthUser) -> Note:
    note = db.get(Note, note_id)
    if not note or note.owner_id != user.user_id:
        raise HTTPException(status_code=404, detail="note not found")
    return note


@app.get("/notes", response_model=Page[NoteOut], responses={**COMMON_ERROR_RESPONSES})
def list_notes(
    search: str | None = None,
    tags: str | None = None,
    page: int = Query(default=1, ge=1),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    stmt = select(Note).where(Note.owner_id == user.user_id)
    if search:
        stmt = stmt.where(or_(Note.title.ilike(f"%{search}%"), Note.content.ilike(f"%{search}%")))
    if tags:
        wanted = [tag.strip() for tag in tags.split(",") if tag.strip()]
        if wanted:
            stmt = stmt.where(or_(*(cast(Note.tags, String).like(f'%{json.dumps(tag)}%') for tag in wanted)))
    stmt = stmt.order_by(Note.updated_at.desc(), Note.id.desc())
    return _paginate(db, stmt, page, NoteOut)


@app.post("/notes", response_model=NoteOut, status_code=201, responses={**COMMON_ERROR_RESPONSES})
def create_note(payload: NoteIn, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> Note:
    note = Note(owner_id=user.user_id, title=payload.title, content=payload.content, tags=payload.tags or [])
    db.add(note)
    db.commit()
    db.refresh(note)
    return note


@app.get("/notes/{note_id}", response_model=NoteOut, responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE})
def show_note(note_id: int, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> Note:
    return _get_owned_note(db, note_id, user)


@app.put("/notes/{note_id}", response_model=NoteOut, responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE})
def update_note(
    note_id: int, payload: NoteIn, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)
) -> Note:
    note = _get_owned_note(db, note_id, user)
    note.title = payload.title
    note.content = payload.content
    note.tags = payload.tags or []
    db.commit()
    db.refresh(note)
    return note


@app.delete(
    "/notes/{note_id}", response_model=MessageResponse, responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE}
)
def delete_note(note_id: int, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> MessageResponse:
    db.delete(_get_owned_note(db, note_id, user))
    db.commit()
    return MessageResponse(message="Note deleted successfully")


def _get_owned_link(db: Session, link_id: int, user: AuthUser) -> Link:
    link = db.get(Link, link_id)
    if not link or link.owner_id != user.user_id:
        raise HTTPException(status_code=404, detail="link not found")
    return link


@app.get("/links", response_model=Page[LinkOut], responses={**COMMON_ERROR_RESPONSES})
def list_links(
    search: str | None = None,
    category: str | None = None,
    page: int = Query(default=1, ge=1),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    stmt = select(Link).where(Link.owner_id == user.user_id)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(Link.title.ilike(pattern), Link.description.ilike(pattern), Link.url.ilike(pattern)))
    if category:
        stmt = stmt.where(Link.category == category)
    stmt = stmt.order_by(Link.created_at.desc(), Link.id.desc())
    return _paginate(db, stmt, page, LinkOut)


@app.post("/links", response_model=LinkOut, status_code=201, responses={**COMMON_ERROR_RESPONSES})
def create_link(payload: LinkIn, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> Link:
    url = payload.url
    metadata = fetch_url_metadata(url)
    link = Link(
        owner_id=user.user_id,
        url=url,
        title=payload.title or metadata.title or url,
        description=payload.description if payload.description is not None else metadata.description,
        favicon_url=metadata.favicon,
        category=payload.category,
    )
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


@app.get("/links/{link_id}", response_model=LinkOut, responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE})
def show_link(link_id: int, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> Link:
    return _get_owned_link(db, link_id, user)


@app.put("/links/{link_id}", response_model=LinkOut, responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE})
def update_link(
    link_id: int, payload: LinkIn, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)
) -> Link:
    link = _get_owned_link(db, link_id, user)
    link.url = payload.url
    link.title = payload.title
    link.description = payload.description
    link.category = payload.category
    db.commit()
    db.refresh(link)
    return link


@app.delete(
    "/links/{link_id}", response_model=MessageResponse, responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE}
)
def delete_link(link_id: int, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> MessageResponse:
    db.delete(_get_owned_link(db, link_id, user))
    db.commit()
    return MessageResponse(message="Link deleted successfully")


@app.get("/dashboard/stats", response_model=DashboardStats, responses={**COMMON_ERROR_RESPONSES})
def dashboard_stats(user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> DashboardStats:
    owner = user.user_id

    def _count(model) -> int:
        return db.scalar(select(func.count()).select_from(model).where(model.owner_id == owner)) or 0

    def _recent(model) -> list:
        stmt = (
            select(model)
            .where(model.owner_id == owner)
            .order_by(model.created_at.desc(), model.id.desc())
            .limit(RECENT_ITEMS)
        )
        return list(db.scalars(stmt).all())

    total_storage = db.scalar(
        select(func.coalesce(func.sum(StoredFile.size), 0)).where(StoredFile.owner_id == owner)
    )
    return DashboardStats(
        total_notes=_count(Note),
        total_links=_count(Link),
        total_files=_count(StoredFile),
        total_storage=int(total_storage or 0),
        recent_notes=[RecentNote(id=note.id, title=note.title, created_at=note.created_at) for note in _recent(Note)],
        recent_links=[RecentLink(id=link.id, title=link.title, url=link.url) for link in _recent(Link)],
        recent_files=[RecentFile(id=rec.id, name=rec.filename, size=rec.size) for rec in _recent(StoredFile)],
    )


def _snippet(text: str | None) -> str:
    text = (text or "").strip()
    if len(text) <= SNIPPET_LENGTH:
        return text
    return text[:SNIPPET_LENGTH].rstrip() + "..."


@app.get("/search", response_model=list[SearchResult], responses={**COMMON_ERROR_RESPONSES})
def search(
    q: str = "",
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> list[SearchResult]:
    query = q.strip()
    if len(query) < SEARCH_MIN_QUERY_LENGTH:
        return []
    pattern = f"%{query}%"
    owner = user.user_id
    results: list[SearchResult] = []

    notes = db.scalars(
        select(Note)
        .where(Note.owner_id == owner, or_(Note.title.ilike(pattern), Note.content.ilike(pattern)))
        .order_by(Note.updated_at.desc())
        .limit(SEARCH_LIMIT_PER_TYPE)
    ).all()
    results.extend(
        SearchResult(type="note", id=note.id, title=note.title, snippet=_snippet(note.content)) for note in notes
    )

    links = db.scalars(
        select(Link)
        .where(
            Link.owner_id == owner,
            or_(Link.title.ilike(pattern), Link.description.ilike(pattern), Link.url.ilike(pattern)),
        )
        .order_by(Link.created_at.desc())
        .limit(SEARCH_LIMIT_PER_TYPE)
    ).all()
    results.extend(
        SearchResult(
            type="link",
            id=link.id,
            title=link.title or link.url,
            snippet=_snippet(link.description or link.url),
            url=link.url,
        )
        for link in links
    )

    files = db.scalars(
        select(StoredFile)
        .where(StoredFile.owner_id == owner, StoredFile.filename.ilike(pattern))
        .order_by(StoredFile.created_at.desc())
        .limit(SEARCH_LIMIT_PER_TYPE)
    ).all()
    results.extend(
        SearchResult(
            type="file",
            id=record.id,
            title=record.filename,
            snippet=f"{record.mimetype}, {record.size} bytes",
            url=record.storage_url,
        )
        for record in files
    )
    return results
