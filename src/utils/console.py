"""
Console Output

Thread-safe console logging shared by the archival and IMAP modules.
"""

from __future__ import annotations

import threading

_print_lock = threading.Lock()


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")
