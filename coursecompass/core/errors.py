"""
Upload error taxonomy. Every failure on the upload/file routes is an UploadError; the handlers
registered in main render it as {"success": false, "error": <user message>, "code": <code>}.
"""
import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from coursecompass.config import get_settings

logger = logging.getLogger(__name__)

# Validation
INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
FILE_TOO_LARGE = "FILE_TOO_LARGE"
INVALID_FILE_NAME = "INVALID_FILE_NAME"
MISSING_FILE = "MISSING_FILE"
INVALID_REQUEST_DATA = "INVALID_REQUEST_DATA"
# Security
MALICIOUS_FILE_DETECTED = "MALICIOUS_FILE_DETECTED"
PATH_TRAVERSAL_ATTEMPT = "PATH_TRAVERSAL_ATTEMPT"
# Auth
AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
INVALID_TOKEN = "INVALID_TOKEN"
UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
NOT_FOUND = "NOT_FOUND"
# System
STORAGE_ERROR = "STORAGE_ERROR"
DATABASE_ERROR = "DATABASE_ERROR"
FILE_ALREADY_EXISTS = "FILE_ALREADY_EXISTS"
# Chunked upload
MISSING_CHUNK = "MISSING_CHUNK"
ASSEMBLY_FAILED = "ASSEMBLY_FAILED"
UPLOAD_CONFLICT = "UPLOAD_CONFLICT"
CORRUPTION_DETECTED = "CORRUPTION_DETECTED"
# Limits
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
TOO_MANY_FILES = "TOO_MANY_FILES"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

USER_MESSAGES = {
    INVALID_FILE_TYPE: "Please select a valid file type. Check the allowed file formats.",
    FILE_TOO_LARGE: "File is too large. Please select a smaller file.",
    INVALID_FILE_NAME: "Invalid file name. Please rename your file and try again.",
    MISSING_FILE: "No file was selected. Please choose a file to upload.",
    INVALID_REQUEST_DATA: "Invalid request. Please check your input and try again.",
    MALICIOUS_FILE_DETECTED: "File blocked for security reasons. Please contact support if this is an error.",
    PATH_TRAVERSAL_ATTEMPT: "File blocked for security reasons.",
    AUTHENTICATION_REQUIRED: "Please log in to upload files.",
    INVALID_TOKEN: "Session expired. Please log in again.",
    UNAUTHORIZED_ACCESS: "You do not have permission to perform this action.",
    INSUFFICIENT_PERMISSIONS: "Insufficient permissions for this operation.",
    NOT_FOUND: "The requested resource was not found.",
    STORAGE_ERROR: "File storage error. Please try again later.",
    DATABASE_ERROR: "Database error. Please try again later.",
    FILE_ALREADY_EXISTS: "A file with this name already exists.",
    MISSING_CHUNK: "Failed to assemble video chunks. Please restart the upload.",
    ASSEMBLY_FAILED: "Failed to assemble video chunks. Please restart the upload.",
    UPLOAD_CONFLICT: "This upload cannot accept more data. Please restart the upload.",
    CORRUPTION_DETECTED: "File appears to be corrupted. Please try uploading again.",
    RATE_LIMIT_EXCEEDED: "Too many upload attempts. Please wait before trying again.",
    TOO_MANY_FILES: "Too many files selected. Please upload fewer files at once.",
    UNKNOWN_ERROR: "An unexpected error occurred. Please try again later.",
}

# Codes whose message is safe (and useful) to show verbatim instead of the generic user message.
_EXPOSE_MESSAGE = {
    INVALID_FILE_TYPE, FILE_TOO_LARGE, INVALID_FILE_NAME, MISSING_FILE, INVALID_REQUEST_DATA,
    AUTHENTICATION_REQUIRED, INVALID_TOKEN, UNAUTHORIZED_ACCESS, INSUFFICIENT_PERMISSIONS, NOT_FOUND,
    UPLOAD_CONFLICT, TOO_MANY_FILES,
}
# Codes that always carry `details`; the rest only in debug mode.
_ALWAYS_DETAILS = {INVALID_REQUEST_DATA, MISSING_CHUNK}


class UploadError(Exception):
    """Error on an upload or file route. `message` is for logs; `user_message` goes to the client."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    @property
    def user_message(self) -> str:
        if self.code in _EXPOSE_MESSAGE:
            return self.message
        return USER_MESSAGES.get(self.code, USER_MESSAGES[UNKNOWN_ERROR])

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.user_message, "code": self.code}
        if self.details is not None and (self.code in _ALWAYS_DETAILS or get_settings().debug):
            body["details"] = self.details
        return body


class MissingChunkError(UploadError):
    def __init__(self, upload_id: str, chunk_index: int):
        super().__init__(
            MISSING_CHUNK,
            f"Missing chunk {chunk_index} for upload {upload_id}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"uploadId": upload_id, "chunkIndex": chunk_index},
        )
        self.upload_id = upload_id
        self.chunk_index = chunk_index


def validation_failed(details: list[str]) -> UploadError:
    return UploadError(INVALID_REQUEST_DATA, "Validation failed", status.HTTP_400_BAD_REQUEST, details=details)


def storage_error(message: str) -> UploadError:
    return UploadError(STORAGE_ERROR, message, status.HTTP_500_INTERNAL_SERVER_ERROR)


def not_found(message: str) -> UploadError:
    return UploadError(NOT_FOUND, message, status.HTTP_404_NOT_FOUND)


def forbidden(message: str) -> UploadError:
    return UploadError(INSUFFICIENT_PERMISSIONS, message, status.HTTP_403_FORBIDDEN)


def _format_validation_errors(exc: RequestValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "form"))
        out.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return out


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed [%s]: %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s rejected [%s]: %s", request.method, request.url.path, exc.code, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = validation_failed(_format_validation_errors(exc))
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(UploadError, upload_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
