"""Per-run conversation state shared by the agent loop, tools and REPL."""

from collections.abc import Callable
from pathlib import Path

from . import fmt
from .config import DEFAULT_MODEL
from .permissions import PermissionGate
from .store import SessionData, load_session, save_session
from .tools import ToolContext

DEV_INSTRUCTION = (
    "Don't respond with anything other than code. Don't include any markdown."
)


def _deny(_description: str) -> bool:
    return False


class Session:
    """Owns the conversation, todo list, diff settings and permission cache.

    Everything that used to be process-wide state lives here and is
    handed explicitly to the loop and the tools.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        model: str = DEFAULT_MODEL,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = True,
        quiet: bool = False,
        dev: bool = False,
        role: str | None = None,
        input_text: str | None = None,
        out_file: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        session_file: str | None = None,
        confirm: Callable[[str], bool] | None = None,
        data: SessionData | None = None,
    ):
        data = data or SessionData()
        self.messages: list[dict] = data.messages
        self.todo = data.todo
        self.diff_config = data.diff_config

        self.base_dir = str(Path(base_dir).resolve())
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.stream = stream
        self.quiet = quiet
        self.dev = dev
        self.input_text = input_text
        self.out_file = out_file
        self.api_key = api_key
        self.base_url = base_url
        self.session_file = session_file

        self.confirm = confirm or _deny
        self.permissions = PermissionGate(self.confirm)

        if role:
            self.set_system_message(role)

    @classmethod
    def from_file(cls, session_file: str, **kwargs) -> "Session":
        return cls(session_file=session_file, data=load_session(session_file), **kwargs)

    # -- System message ------------------------------------------------------

    @property
    def system_message(self) -> str | None:
        if self.messages and self.messages[0].get("role") == "system":
            return self.messages[0].get("content")
        return None

    def set_system_message(self, text: str) -> None:
        """Install `text` as the single, leading system message."""
        self.messages[:] = [m for m in self.messages if m.get("role") != "system"]
        self.messages.insert(0, {"role": "system", "content": text})

    def clear_system_message(self) -> bool:
        before = len(self.messages)
        self.messages[:] = [m for m in self.messages if m.get("role") != "system"]
        return len(self.messages) != before

    # -- Conversation --------------------------------------------------------

    def build_user_content(self, text: str) -> str:
        content = text
        if self.input_text:
            content = self.input_text + "\n" + content
        if self.dev:
            content = content + "\n" + DEV_INSTRUCTION
        return content

    def reset_conversation(self) -> int:
        """Drop everything except the system message. Returns the count removed."""
        kept = [m for m in self.messages[:1] if m.get("role") == "system"]
        dropped = len(self.messages) - len(kept)
        self.messages[:] = kept
        return dropped

    def tool_context(self) -> ToolContext:
        return ToolContext(
            base_dir=self.base_dir,
            permissions=self.permissions,
            diff_config=self.diff_config,
            todo=self.todo,
            confirm=self.confirm,
        )

    # -- Persistence ---------------------------------------------------------

    def snapshot(self) -> SessionData:
        return SessionData(
            messages=self.messages, todo=self.todo, diff_config=self.diff_config
        )

    def save(self) -> bool:
        """Write the session file, if one is active. Failures only warn."""
        if not self.session_file:
            return False
        try:
            save_session(self.session_file, self.snapshot())
        except OSError as e:
            fmt.warning(f"could not save session to {self.session_file}: {e}")
            return False
        return True
