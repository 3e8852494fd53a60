"""Logging configuration for fetchgate.

Sets up a dual-handler logging pipeline:

1. **Console** -- :class:`SafeStreamHandler` on stdout, which
   replaces characters the stream encoding cannot represent instead of
   dropping the line.
2. **File** -- :class:`CompressedRotatingFileHandler` writing to
   ``logs/fetchgate.log`` with automatic gzip rotation (10 MiB per
   file, 5 backups).

Usage::

    from core.logging_setup import setup_logging
    setup_logging("DEBUG")
"""

import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzip-compresses rotated log files.

    Rotated files are renamed with a ``.gz`` suffix and compressed
    in-place.  Challenge pages are large and get logged at DEBUG, so
    uncompressed history fills disks quickly.
    """

    def rotation_filename(self, default_name: str) -> str:
        """Append ``.gz`` to the rotated file name."""
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Compress *source* into *dest* and remove *source*."""
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that never crashes on unencodable characters.

    Page titles and in-page console messages routinely carry characters
    a redirected or non-UTF-8 stdout cannot represent.  Such lines are
    re-encoded with the stream's own encoding, replacing what does not
    fit.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record) + self.terminator
            try:
                self.stream.write(msg)
            except UnicodeEncodeError:
                encoding = getattr(self.stream, "encoding", None) or "ascii"
                self.stream.write(
                    msg.encode(encoding, errors="replace").decode(encoding)
                )
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
) -> None:
    """Configure the root logger with console and file handlers.

    Args:
        log_level: Logging level name (e.g. ``"DEBUG"``,
            ``"INFO"``).  Unknown names fall back to ``INFO``.
        log_dir: Directory for ``fetchgate.log``.  Defaults to
            ``logs`` relative to the working directory.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    log_path = os.path.join(log_dir or "logs", "fetchgate.log")
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    file_handler = CompressedRotatingFileHandler(
        log_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8',
    )

    stream_handler = SafeStreamHandler(sys.stdout)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[file_handler, stream_handler],
        force=True,
    )
    # Event-loop debug lines drown the solver poll output at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
