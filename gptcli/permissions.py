"""Per-path consent cache with interactive yes/no confirmation."""

from collections.abc import Callable

from . import fmt

KINDS = ("read", "write")

_YES = {"y", "yes"}
_NO = {"n", "no"}


def ask_yes_no(prompt_text: str, read_line: Callable[[str], str]) -> bool:
    """Ask until the answer is y/yes or n/no (case-insensitive).

    EOF or Ctrl-C at the prompt counts as "no".
    """
    while True:
        try:
            answer = read_line(f"{prompt_text} [y/n]: ")
        except (EOFError, KeyboardInterrupt):
            return False
        answer = answer.strip().lower()
        if answer in _YES:
            return True
        if answer in _NO:
            return False


def terminal_confirm(description: str) -> bool:
    """Ask on the terminal through prompt_toolkit."""
    from prompt_toolkit import prompt

    return ask_yes_no(description, prompt)


class PermissionGate:
    """Consent cache for file reads/writes, scoped to one process run.

    ``confirm`` is called with a human-readable description and returns
    True for yes. Shell commands go through :meth:`confirm_command`,
    which never consults or fills the cache.
    """

    def __init__(self, confirm: Callable[[str], bool]):
        self.confirm = confirm
        self.cache: dict[str, set[str]] = {kind: set() for kind in KINDS}

    def check(self, kind: str, abs_path: str, action: str = "access") -> bool:
        if kind not in self.cache:
            raise ValueError(f"unknown permission kind {kind!r}")
        if abs_path in self.cache[kind]:
            fmt.notice(f"Using prior permission for {kind}: {abs_path}")
            return True
        if not self.confirm(f"The assistant would like to {action} ({kind}): {abs_path}"):
            return False
        self.cache[kind].add(abs_path)
        return True

    def confirm_command(self, command: str) -> bool:
        return self.confirm(f"The assistant would like to run: {command}")

    def clear(self) -> None:
        for granted in self.cache.values():
            granted.clear()

    def granted(self, kind: str) -> list[str]:
        return sorted(self.cache.get(kind, ()))
