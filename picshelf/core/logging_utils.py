import logging
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

_configured = False
_current_debug = False
_corruption_lock = threading.Lock()


def setup_logging(log_dir: Path, debug_enabled: bool = False):
    """
    Configure logging to stdout, a primary log file, and an optional debug log file under the log dir.
    Safe to call multiple times.
    """
    global _configured
    global _current_debug
    if _configured and _current_debug == debug_enabled:
        return
    _current_debug = debug_enabled

    fmt = "[%(levelname)s] %(asctime)s %(name)s :: %(message)s"
    handlers: list[logging.Handler] = []
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except Exception as exc:  # pragma: no cover - startup-only path
        print(f"[PicShelf] Could not create log dir: {exc}")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug_enabled else logging.INFO)
    handlers.append(console_handler)

    try:
        info_file = RotatingFileHandler(
            log_dir / "picshelf.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        info_file.setLevel(logging.INFO)
        handlers.append(info_file)
    except Exception as exc:  # pragma: no cover - startup-only path
        print(f"[PicShelf] Could not set up main log file: {exc}")

    if debug_enabled:
        try:
            debug_file = RotatingFileHandler(
                log_dir / "picshelf-debug.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            debug_file.setLevel(logging.DEBUG)
            handlers.append(debug_file)
        except Exception as exc:  # pragma: no cover - startup-only path
            print(f"[PicShelf] Could not set up debug log file: {exc}")

    logging.basicConfig(
        level=logging.DEBUG if debug_enabled else logging.INFO,
        format=fmt,
        handlers=handlers,
        force=True,
    )
    _configured = True


def append_corruption_log(log_path: Path, file_path: str):
    """Append one unrepairable file path to the corruption log."""
    with _corruption_lock:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as fh:
            fh.write(f"{file_path}\n")
