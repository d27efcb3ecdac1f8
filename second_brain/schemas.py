from datetime import datetime
from typing import Annotated, Generic, Literal, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")

MAX_TOTAL_CHUNKS = 100_000
_HTTP_URL = TypeAdapter(HttpUrl)


class ErrorResponse(BaseModel):
    error: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None


class ValidationErrorResponse(BaseModel):
    errors: dict[str, list[str]]
    error_code: str = "validation_error"
    request_id: str | None = None


class MessageResponse(BaseModel):
    message: str


class Page(BaseModel, Generic[T]):
    data: list[T]
    current_page: int
    per_page: int
    total: int
    last_page: int


class FileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    storage_url: str
    storage_id: str | None
    mimetype: str
    size: int
    category: str | None
    created_at: datetime
    updated_at: datetime


class ChunkReceivedResponse(BaseModel):
    message: str
    upload_id: str
    chunk_index: int


class ChunkStatusResponse(BaseModel):
    upload_id: str
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int]


class MergeChunksRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(alias="uploadId", min_length=1, max_length=255)
    total_chunks: int = Field(alias="totalChunks", gt=0, le=MAX_TOTAL_CHUNKS)
    file_name: str = Field(alias="fileName", min_length=1, max_length=255)
    mime_type: str = Field(alias="mimeType", min_length=1, max_length=100)
    category: str | None = Field(default=None, max_length=100)
    file_md5: str | None = Field(
        default=None,
        validation_alias=AliasChoices("fileMd5", "file_md5"),
        pattern=r"^[0-9a-fA-F]{32}$",
    )

    @field_validator("category", "file_md5", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


Tag = Annotated[str, Field(max_length=50)]


class NoteIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)
    tags: list[Tag] | None = None


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    content: str
    tags: list[str]
    created_at: datetime
    updated_at: datetime


class LinkIn(BaseModel):
    url: str
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)

    @field_validator("url")
    @classmethod
    def _valid_http_url(cls, value: str) -> str:
        """Validate as an http(s) URL but keep the string exactly as submitted."""
        value = value.strip()
        try:
            _HTTP_URL.validate_python(value)
        except ValidationError as exc:
            raise ValueError("The url field must be a valid URL.") from exc
        return value


class LinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    title: str | None
    description: str | None
    favicon_url: str | None
    category: str | None
    created_at: datetime
    updated_at: datetime


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecentNote(_CamelModel):
    id: int
    title: str
    created_at: datetime


class RecentLink(_CamelModel):
    id: int
    title: str | None
    url: str


class RecentFile(_CamelModel):
    id: int
    name: str
    size: int


class DashboardStats(_CamelModel):
    total_notes: int
    total_links: int
    total_files: int
    total_storage: int
    recent_notes: list[RecentNote]
    recent_links: list[RecentLink]
    recent_files: list[RecentFile]


class SearchResult(BaseModel):
    type: Literal["note", "link", "file"]
    id: int
    title: str
    snippet: str
    url: str | None = None
