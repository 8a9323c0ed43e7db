from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    ALBUM_NOT_FOUND = "album_not_found"
    TRIAL_NOT_FOUND = "trial_not_found"
    NOT_CONFIGURED = "not_configured"
    MEDIA_INFO_FAILED = "media_info_failed"
    DOWNLOAD_FAILED = "download_failed"
    TRANSCODE_FAILED = "transcode_failed"
    UPLOAD_FAILED = "upload_failed"
    UNKNOWN = "unknown"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: "ErrorCode | str" = ErrorCode.UNKNOWN) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code.value if isinstance(code, ErrorCode) else code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
