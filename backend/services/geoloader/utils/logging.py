"""
Thread-local logging utilities for the geo-loader pipeline.

Every stage logs through log(), which prints to the console and mirrors the
line into a per-run log file when one is set for the current thread. This
lets parsers, the transformer and the chunk manager write into the run log
of whichever pipeline invocation called them, without passing handles around.

Usage:
    from services.geoloader.utils.logging import log, open_run_log, close_log_file

    open_run_log("debug_logs", "parcels.shp", {"Target CRS": "EPSG:4326"})
    try:
        log("[PIPELINE] Streaming features...")
    finally:
        close_log_file()
"""

import os
import threading
from datetime import datetime
from typing import Dict, Optional, TextIO


# Thread-local storage for the run log file
# Concurrent pipeline runs in different threads each get their own file
_thread_local = threading.local()


def log(message: str) -> None:
    """
    Log a message to the console and the thread's run log file (if any).

    Args:
        message: Message to log (newline appended for file output)
    """
    print(message)
    log_file = getattr(_thread_local, 'log_file', None)
    if log_file:
        try:
            log_file.write(message + "\n")
            log_file.flush()
        except (OSError, ValueError):
            # File closed underneath us: drop the reference, keep console output
            _thread_local.log_file = None


def log_banner(title: str, width: int = 80) -> None:
    """Log a section banner (rule / title / rule)."""
    log(f"\n{'=' * width}")
    log(title)
    log(f"{'=' * width}")


def set_log_file(log_file: Optional[TextIO]) -> None:
    """
    Set the run log file for the current thread.

    Args:
        log_file: Open text file, or None to stop mirroring
    """
    _thread_local.log_file = log_file


def get_log_file() -> Optional[TextIO]:
    """Return the current thread's run log file, or None."""
    return getattr(_thread_local, 'log_file', None)


def open_run_log(
    log_dir: str,
    source_name: str,
    header: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Create a timestamped run log in log_dir and attach it to this thread.

    The file starts with a banner header naming the input and any extra
    key/value lines. Failure to create the file is reported on the console
    and is not fatal: logging then continues to stdout only.

    Args:
        log_dir: Directory for run logs (created if missing)
        source_name: Input file name, used in the header and file name
        header: Extra "key: value" lines for the header

    Returns:
        Path of the created log file, or None if it could not be created
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_name = os.path.basename(source_name).replace(":", "_").replace(" ", "_") or "input"
    path = os.path.join(log_dir, f"geoload_{safe_name}_{timestamp}.log")

    try:
        os.makedirs(log_dir, exist_ok=True)
        log_file = open(path, "w", encoding="utf-8")
    except OSError as e:
        print(f"[LOG] Failed to create run log {path}: {e}")
        return None

    log_file.write(f"{'=' * 80}\n")
    log_file.write("GEO-LOADER RUN LOG\n")
    log_file.write(f"{'=' * 80}\n")
    log_file.write(f"Source: {source_name}\n")
    log_file.write(f"Timestamp: {datetime.now().isoformat()}\n")
    for key, value in (header or {}).items():
        log_file.write(f"{key}: {value}\n")
    log_file.write(f"{'=' * 80}\n\n")
    set_log_file(log_file)
    return path


def close_log_file() -> None:
    """
    Close and detach the current thread's run log file.

    Safe to call multiple times; call it from a finally block.
    """
    log_file = getattr(_thread_local, 'log_file', None)
    if log_file:
        set_log_file(None)  # Clear the reference first to prevent further writes
        try:
            log_file.close()
        except OSError:
            pass
