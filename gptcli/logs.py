"""Debug logging and the conversation transcript log.

Modules log through ``logging.getLogger(__name__)`` under the ``gptcli``
hierarchy. Nothing is emitted until ``/debug on`` attaches a RichHandler.
The transcript goes to its own non-propagating ``gptcli.transcript``
logger and is written to a file while ``/log on`` is active.
"""

import logging
from pathlib import Path

from rich.logging import RichHandler

from . import fmt

DEFAULT_LOG_FILE = "gpt-cli.log"

logger = logging.getLogger("gptcli")
transcript_logger = logging.getLogger("gptcli.transcript")
transcript_logger.propagate = False
transcript_logger.setLevel(logging.INFO)

_debug_handler: logging.Handler | None = None
_file_handler: logging.FileHandler | None = None
_log_path: Path = Path(DEFAULT_LOG_FILE)


def debug_enabled() -> bool:
    return _debug_handler is not None


def set_debug(enabled: bool) -> None:
    global _debug_handler
    if enabled and _debug_handler is None:
        _debug_handler = RichHandler(
            console=fmt.console(), show_path=False, markup=False
        )
        logger.addHandler(_debug_handler)
        logger.setLevel(logging.DEBUG)
    elif not enabled and _debug_handler is not None:
        logger.removeHandler(_debug_handler)
        _debug_handler = None
        logger.setLevel(logging.WARNING)


def log_path() -> Path:
    return _log_path


def log_enabled() -> bool:
    return _file_handler is not None


def set_log_file(path: str | Path) -> None:
    """Point the transcript at `path`; reopens the file if logging is on."""
    global _log_path
    _log_path = Path(path)
    if _file_handler is not None:
        set_logging(False)
        set_logging(True)


def set_logging(enabled: bool) -> None:
    """Attach or detach the transcript file handler.

    Raises OSError if the log file cannot be opened.
    """
    global _file_handler
    if enabled and _file_handler is None:
        handler = logging.FileHandler(_log_path, encoding="utf-8")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(message)s", "%Y-%m-%d %H:%M:%S")
        )
        transcript_logger.addHandler(handler)
        _file_handler = handler
    elif not enabled and _file_handler is not None:
        transcript_logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None


def transcript(kind: str, text: str) -> None:
    """Record one transcript entry, e.g. ``transcript("user", line)``."""
    if _file_handler is None:
        return
    transcript_logger.info("[%s] %s", kind, text)


def reset() -> None:
    """Turn off debug output and the transcript (used by /reset)."""
    set_debug(False)
    set_logging(False)
