"""
Logging for the tracker.

Per-frame code runs on worker threads at camera rate, so records never touch the
disk from the tracking process: a QueueHandler on the 'torsion_tracker' logger
hands them to a separate writer process that owns a rotating, fsync'ed file.

Library modules only call get_logger(). Entry scripts call start_logging() (and
optionally install_crash_hooks()) inside their __main__ guard.
"""

from __future__ import annotations
import atexit
import logging
import multiprocessing as mp
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from logging.handlers import QueueHandler, RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "torsion_tracker"
DEFAULT_LOG_DIR = Path.home() / "TorsionTrackerLogs"

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s %(message)s"
CONSOLE_FORMAT = "[%(levelname)s] %(name)s: %(message)s"

_STOP = "__STOP__"


@dataclass(frozen=True)
class LogFiles:
    log_path: Path
    crash_path: Path

    @classmethod
    def in_dir(cls, log_dir: Path) -> "LogFiles":
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return cls(log_dir / f"torsion_tracker_{stamp}.log", log_dir / f"crash_{stamp}.log")


_queue = None
_writer = None
_files: LogFiles | None = None


def _writer_main(queue, log_path: str, crash_path: str, level: int):
    """Writer process: drain LogRecords from the queue into the log file until told to stop."""
    import time

    class FsyncRotatingFileHandler(RotatingFileHandler):
        def emit(self, record: logging.LogRecord) -> None:
            super().emit(record)
            try:
                self.flush()
                if self.stream and hasattr(self.stream, "fileno"):
                    os.fsync(self.stream.fileno())
            except OSError:
                pass

    sink = logging.getLogger("torsion_tracker.writer")
    sink.setLevel(level)
    sink.propagate = False
    fh = FsyncRotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
    fh.setFormatter(logging.Formatter(FILE_FORMAT))
    sink.addHandler(fh)

    try:
        while True:
            rec = queue.get()
            if rec == _STOP:
                break
            sink.handle(rec)
    except (EOFError, OSError) as exc:
        with open(crash_path, "a", buffering=1, encoding="utf-8") as f:
            f.write(f"Log writer stopped at {time.strftime('%Y-%m-%d %H:%M:%S')}: {exc!r}\n")
    finally:
        fh.close()


def start_logging(log_dir: str | Path | None = None, level: int = logging.INFO,
                  console: bool = False) -> LogFiles | None:
    """
    Start the writer process and attach a QueueHandler to the app logger.
    Returns the file paths in use, or None when called outside the main process.
    A second call returns the paths of the running writer.
    """
    global _queue, _writer, _files

    if _files is not None:
        return _files
    if mp.current_process().name != "MainProcess":
        return None

    log_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    files = LogFiles.in_dir(log_dir)

    # spawn keeps the writer free of the tracker's threads and buffers
    ctx = mp.get_context("spawn")
    _queue = ctx.Queue()
    _writer = ctx.Process(target=_writer_main,
                          args=(_queue, str(files.log_path), str(files.crash_path), level),
                          name="LogWriter", daemon=False)
    _writer.start()
    _files = files

    app = logging.getLogger(LOGGER_NAME)
    app.setLevel(level)
    if not any(isinstance(h, QueueHandler) for h in app.handlers):
        app.addHandler(QueueHandler(_queue))
    if console:
        install_console_handler(level)

    atexit.register(shutdown_logging)
    return files


def get_logger(name: str | None = None) -> logging.Logger:
    """The 'torsion_tracker' logger, or a child of it for module names."""
    if not name or name == LOGGER_NAME:
        return logging.getLogger(LOGGER_NAME)
    if name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def install_console_handler(level: int = logging.INFO) -> logging.Handler:
    """Mirror app records to stderr. Installs at most one such handler."""
    app = logging.getLogger(LOGGER_NAME)
    for h in app.handlers:
        if getattr(h, "_torsion_console", False):
            return h
    h = logging.StreamHandler(sys.stderr)
    h.setLevel(level)
    h.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    h._torsion_console = True
    app.addHandler(h)
    if app.level == logging.NOTSET or app.level > level:
        app.setLevel(level)
    return h


def shutdown_logging(timeout: float = 2.0) -> None:
    """Detach the queue handler, stop the writer and wait for it. Safe to call repeatedly."""
    global _queue, _writer, _files

    app = logging.getLogger(LOGGER_NAME)
    for h in list(app.handlers):
        if isinstance(h, QueueHandler):
            app.removeHandler(h)
            h.close()

    if _queue is not None:
        try:
            _queue.put(_STOP)
        except (OSError, ValueError):
            pass
    if _writer is not None:
        _writer.join(timeout)
        if _writer.is_alive():
            _writer.terminate()

    _queue = None
    _writer = None
    _files = None


def install_crash_hooks() -> None:
    """
    Send uncaught exceptions from the main thread and from worker threads to the
    app logger, and mirror them to the crash file next to the log.
    """
    import faulthandler
    import threading
    import traceback

    crash_path = _files.crash_path if _files is not None else LogFiles.in_dir(DEFAULT_LOG_DIR).crash_path
    crash_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        faulthandler.enable(open(crash_path, "a", buffering=1, encoding="utf-8"))
    except OSError:
        pass

    def _excepthook(exc_type, exc, tb):
        get_logger().critical("UNCAUGHT EXCEPTION", exc_info=(exc_type, exc, tb))
        try:
            with open(crash_path, "a", buffering=1, encoding="utf-8") as f:
                traceback.print_exception(exc_type, exc, tb, file=f)
        except OSError:
            pass

    def _thread_excepthook(args):
        _excepthook(args.exc_type, args.exc_value, args.exc_traceback)

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook
