import os
from pathlib import Path
from typing import Optional, Sequence

from ocr_client.models import ValidationResult

MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB

SUPPORTED_EXTENSIONS = (".pdf", ".png", ".jpg", ".jpeg", ".tiff", ".tif", ".webp")

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".webp": "image/webp",
}


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def get_content_type(file_name: str) -> str:
    return CONTENT_TYPES.get(Path(file_name).suffix.lower(), "application/octet-stream")


def _check_extension(
    file_name: str, allowed_types: Sequence[str]
) -> Optional[ValidationResult]:
    ext = Path(file_name).suffix.lower()
    if ext not in allowed_types:
        return ValidationResult(
            valid=False,
            error=f"File type '{ext}' not supported. Allowed: {', '.join(allowed_types)}",
        )
    return None


def validate_file(
    file_path: str,
    max_size: Optional[int] = None,
    allowed_types: Optional[Sequence[str]] = None,
) -> ValidationResult:
    """Check that a local path is a readable, supported file of acceptable size"""
    max_size = MAX_FILE_SIZE if max_size is None else max_size
    allowed_types = allowed_types or SUPPORTED_EXTENSIONS
    path = Path(file_path)

    try:
        stats = path.stat()
    except FileNotFoundError:
        return ValidationResult(valid=False, error=f"File not found: {file_path}")
    except OSError as e:
        return ValidationResult(valid=False, error=f"Failed to validate file: {e}")

    if not path.is_file():
        return ValidationResult(valid=False, error=f"Path is not a file: {file_path}")

    if stats.st_size > max_size:
        return ValidationResult(
            valid=False,
            error=f"File size {format_bytes(stats.st_size)} exceeds maximum {format_bytes(max_size)}",
        )

    bad_extension = _check_extension(file_path, allowed_types)
    if bad_extension is not None:
        return bad_extension

    if not os.access(path, os.R_OK):
        return ValidationResult(valid=False, error=f"File not readable: {file_path}")

    return ValidationResult(valid=True)


def validate_buffer(
    data: bytes,
    file_name: str,
    max_size: Optional[int] = None,
    allowed_types: Optional[Sequence[str]] = None,
) -> ValidationResult:
    max_size = MAX_FILE_SIZE if max_size is None else max_size
    allowed_types = allowed_types or SUPPORTED_EXTENSIONS

    if len(data) > max_size:
        return ValidationResult(
            valid=False,
            error=f"Buffer size {format_bytes(len(data))} exceeds maximum {format_bytes(max_size)}",
        )

    bad_extension = _check_extension(file_name, allowed_types)
    if bad_extension is not None:
        return bad_extension

    return ValidationResult(valid=True)
