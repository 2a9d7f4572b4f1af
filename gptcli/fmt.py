"""Diagnostics for the terminal: everything here goes to stderr through one Rich console.

Answers never pass through this module; they are printed to stdout.
"""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the console for --color / --no-color (or the config key)."""
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def console() -> Console:
    return _console


# -- Agent loop progress -----------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Round-trip {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_spinner(label: str = "Waiting for model (Esc to cancel)"):
    """Spinner shown while a completion request is outstanding."""
    return _console.status(f"  {label}", spinner="dots")


def cancelled(msg: str = "request cancelled") -> None:
    _console.print(Text(f"  ○ {msg}", style="yellow"))


# -- Tool activity -----------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float) -> None:
    _console.print(Text(f"  ✓ {name}  {elapsed:.1f}s", style="green"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def notice(msg: str) -> None:
    """Bracketed one-line status, e.g. ``[Read 12/12 bytes from /a/b]``."""
    _console.print(Text(f"[{msg}]", style="dim"))


# -- Diff preview ------------------------------------------------------------


def diff(lines: list[str], truncated: int = 0) -> None:
    """Print unified diff lines with file headers, hunks, and +/- colored."""
    for line in lines:
        if line.startswith(("---", "+++")):
            style = "bold"
        elif line.startswith("@@"):
            style = "cyan"
        elif line.startswith("+"):
            style = "green"
        elif line.startswith("-"):
            style = "red"
        else:
            style = None
        _console.print(Text(line, style=style or ""))
    if truncated:
        _console.print(
            Text(f"... diff truncated ({truncated} more lines)", style="yellow")
        )


# -- Todo list ---------------------------------------------------------------


def todo_table(items: list) -> None:
    if not items:
        _console.print(Text("  (no todo items)", style="dim"))
        return
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
    table.add_column("", width=3)
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Description", style="dim")
    for item in items:
        box = "[x]" if item.status == "completed" else "[ ]"
        table.add_row(escape(box), str(item.id), escape(item.title), escape(item.description))
    _console.print(table)


# -- Messages ----------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def clear_screen() -> None:
    _console.clear()


def repl_banner(session_file: str | None) -> None:
    _console.print(Text("Interactive mode. Type /help for commands.", style="dim"))
    _console.print(Text(f"Session file: {session_file or 'N/A'}", style="dim"))
