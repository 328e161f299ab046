import re
from pydantic import BaseModel, Field, field_validator, model_validator

UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class StoredFile(BaseModel):
    """A file written under the upload root. `url` is the public path stored on the owning row."""
    url: str
    file_name: str
    size: int


class VideoUploadForm(BaseModel):
    """Form fields of POST /api/upload/video. Chunked mode when chunkIndex and totalChunks are both set."""
    lesson_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    replace_existing: bool = False
    chunk_index: int | None = Field(default=None, ge=0)
    total_chunks: int | None = Field(default=None, ge=1)
    file_name: str | None = None
    upload_id: str | None = None

    @field_validator("upload_id")
    @classmethod
    def _upload_id_is_safe(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not UPLOAD_ID_PATTERN.match(v):
            raise ValueError("uploadId may only contain letters, digits, '_' and '-' (max 128)")
        return v

    @field_validator("file_name")
    @classmethod
    def _blank_file_name(cls, v: str | None) -> str | None:
        return (v or "").strip() or None

    @model_validator(mode="after")
    def _chunk_index_in_range(self):
        if (self.chunk_index is None) != (self.total_chunks is None):
            raise ValueError("chunkIndex and totalChunks must be sent together")
        if self.chunk_index is not None and self.chunk_index >= self.total_chunks:
            raise ValueError("chunkIndex must be less than totalChunks")
        return self

    @property
    def is_chunked(self) -> bool:
        return self.chunk_index is not None and self.total_chunks is not None

