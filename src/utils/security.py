"""Security utilities for upload validation and safe file names."""

from __future__ import annotations

import io
import logging
import os
from typing import Optional

LOGGER = logging.getLogger(__name__)

# File signature magic bytes
XLSX_SIGNATURE = b"PK\x03\x04"  # ZIP-based format (Excel 2007+)
XLS_OLD_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"  # OLE2 format (Excel 97-2003)
UTF8_BOM = b"\xef\xbb\xbf"

ALLOWED_TEXT_EXTENSIONS = frozenset({".txt"})

# Maximum file name length (Windows: 255, Unix: 255, but we'll be conservative)
MAX_FILENAME_LENGTH = 200


def validate_text_upload(
    filename: Optional[str], data: bytes, max_size_bytes: int
) -> tuple[bool, Optional[str]]:
    """Validate an uploaded plain-text source file.

    Args:
        filename: Client supplied file name.
        data: Raw uploaded bytes.
        max_size_bytes: Maximum accepted size.

    Returns:
        Tuple of (is_valid, error_message). error_message is None if valid.
    """
    extension = os.path.splitext(filename or "")[1].lower()
    if extension not in ALLOWED_TEXT_EXTENSIONS:
        return False, "Only .txt files can be uploaded."
    if len(data) > max_size_bytes:
        return False, f"File exceeds the maximum size of {max_size_bytes // (1024 * 1024)}MB."
    if b"\x00" in data[:8192]:
        return False, "The file does not look like text."
    return True, None


def decode_text(data: bytes) -> str:
    """Decode UTF-8 bytes, dropping a leading byte order mark.

    Raises:
        UnicodeDecodeError: If the bytes are not valid UTF-8.
    """
    if data.startswith(UTF8_BOM):
        data = data[len(UTF8_BOM):]
    return data.decode("utf-8")


def validate_excel_file(file_buffer: io.BytesIO) -> tuple[bool, Optional[str]]:
    """Validate Excel file by checking file signature.

    Args:
        file_buffer: File buffer to validate.

    Returns:
        Tuple of (is_valid, error_message). error_message is None if valid.
    """
    try:
        file_buffer.seek(0)
        header = file_buffer.read(8)
        file_buffer.seek(0)

        # XLSX files are ZIP archives (Office Open XML)
        if header.startswith(XLSX_SIGNATURE):
            return True, None

        # Old XLS format (OLE2)
        if header.startswith(XLS_OLD_SIGNATURE):
            return True, None

        return False, "Invalid file type. Only Excel files (xlsx, xls) are accepted."
    except (OSError, ValueError) as exc:
        LOGGER.error("File validation error: %s", exc)
        return False, "Could not read the uploaded file."


def sanitize_filename(filename: str, max_length: int = MAX_FILENAME_LENGTH, fallback: str = "file") -> str:
    """Sanitize filename by removing dangerous characters and limiting length.

    Args:
        filename: Original filename.
        max_length: Maximum allowed filename length.
        fallback: Fallback name if sanitization results in empty string.

    Returns:
        Sanitized filename.
    """
    if not filename:
        return fallback

    # Remove path separators and dangerous characters, keep spaces
    sanitized = "".join(ch for ch in filename if ch.isalnum() or ch in ("-", "_", ".", " "))
    sanitized = " ".join(sanitized.split())
    sanitized = sanitized.lstrip(".")

    if len(sanitized) > max_length:
        # Keep extension if exists
        if "." in sanitized:
            name_part, ext_part = sanitized.rsplit(".", 1)
            max_name_length = max_length - len(ext_part) - 1
            if max_name_length > 0:
                sanitized = name_part[:max_name_length] + "." + ext_part
            else:
                sanitized = sanitized[:max_length]
        else:
            sanitized = sanitized[:max_length]

    return sanitized or fallback


def build_download_filename(original_file_name: Optional[str], title: str) -> str:
    """Return ``<name>_translated<ext>``, or ``<title>_translated.txt``."""
    if original_file_name:
        stem, extension = os.path.splitext(os.path.basename(original_file_name))
        if stem:
            return f"{stem}_translated{extension or '.txt'}"
    return f"{title or 'translation'}_translated.txt"
