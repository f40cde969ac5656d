"""
Secure Temporary Files

Intermediate tar files hold plaintext email, so they are created readable and
writable by the current user only (mode 0600 on POSIX; on Windows the file
lives in the per-user temp directory).
"""

from __future__ import annotations

import os
import stat
import sys
import tempfile

from utils.console import safe_print

SECURE_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR


def set_secure_file_permissions(file_path: str, log_fn=safe_print) -> None:
    """Restrict ``file_path`` to the current user."""
    if not file_path or not file_path.strip():
        raise ValueError("File path cannot be null or empty.")
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"File not found: {file_path}")

    if sys.platform == "win32":
        # os.chmod only toggles the read-only flag on Windows.
        log_fn(f"Warning: Cannot restrict permissions of {file_path} on Windows; relying on the per-user temp directory")
        return
    os.chmod(file_path, SECURE_FILE_MODE)


def create_secure_temp_file(prefix: str = "secure_temp", extension: str = ".tmp", directory: str | None = None):
    """Create a uniquely named temp file restricted to the current user.

    Returns a ``(stream, path)`` tuple; the stream is opened ``w+b``. The
    file is removed again if securing it fails.
    """
    fd, file_path = tempfile.mkstemp(suffix=extension, prefix=f"{prefix}_", dir=directory)
    try:
        set_secure_file_permissions(file_path)
        stream = os.fdopen(fd, "w+b")
    except Exception as e:
        os.close(fd)
        safe_delete_file(file_path)
        safe_print(f"Error: Failed to create secure temporary file {file_path}: {e}")
        raise
    return stream, file_path


def safe_delete_file(file_path: str | None, log_fn=safe_print) -> bool:
    """Delete a file, never raising.

    Returns True if the file was deleted or did not exist, False if deletion
    failed.
    """
    if not file_path or not file_path.strip():
        return True

    try:
        if os.path.exists(file_path):
            os.remove(file_path)
        return True
    except OSError as e:
        log_fn(f"Warning: Failed to delete file {file_path}: {e}")
        return False
