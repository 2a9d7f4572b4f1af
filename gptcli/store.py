"""Session file persistence: conversation, todo list and diff preview config.

The file is a JSON object::

    {"chatHistory": [...], "todoList": [...], "todoNextId": N,
     "diffPreview": {...}}

Older files hold a bare JSON array of messages; those load as a
conversation with an empty todo list and default diff settings.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .diffview import DiffPreviewConfig
from .todo import TodoList

logger = logging.getLogger(__name__)

SESSION_EXT = ".gptp"
_ROLES = {"system", "user", "assistant", "tool"}


@dataclass
class SessionData:
    messages: list[dict] = field(default_factory=list)
    todo: TodoList = field(default_factory=TodoList)
    diff_config: DiffPreviewConfig = field(default_factory=DiffPreviewConfig)


def ensure_extension(name: str) -> str:
    return name if name.lower().endswith(SESSION_EXT) else name + SESSION_EXT


def find_session_file(directory: str | Path) -> Path | None:
    """Return the most recently modified *.gptp file in `directory`, if any."""
    try:
        candidates = [
            p
            for p in Path(directory).iterdir()
            if p.is_file() and p.name.lower().endswith(SESSION_EXT)
        ]
    except OSError:
        return None
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def _clean_messages(raw) -> list[dict]:
    if not isinstance(raw, list):
        return []
    return [m for m in raw if isinstance(m, dict) and m.get("role") in _ROLES]


def parse_session(data) -> SessionData:
    """Turn decoded JSON (either format) into SessionData."""
    if isinstance(data, list):
        return SessionData(messages=_clean_messages(data))
    if not isinstance(data, dict):
        return SessionData()
    return SessionData(
        messages=_clean_messages(data.get("chatHistory")),
        todo=TodoList.from_list(data.get("todoList"), data.get("todoNextId")),
        diff_config=DiffPreviewConfig.from_dict(data.get("diffPreview")),
    )


def load_session(path: str | Path) -> SessionData:
    """Load a session file. Missing or malformed files give an empty session."""
    p = Path(path)
    if not p.is_file():
        return SessionData()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("could not read session file %s: %s", p, e)
        return SessionData()
    return parse_session(data)


def save_session(path: str | Path, data: SessionData) -> None:
    """Write the session file. Raises OSError on failure."""
    payload = {
        "chatHistory": data.messages,
        "todoList": data.todo.to_list(),
        "todoNextId": data.todo.next_id(),
        "diffPreview": data.diff_config.to_dict(),
    }
    Path(path).write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
