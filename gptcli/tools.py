"""Tool definitions and implementations for the agentic REPL."""

import os
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from . import diffview, fmt
from .diffview import DiffPreviewConfig
from .errors import PatchError
from .patch import OPERATIONS, apply_operations
from .permissions import PermissionGate
from .results import ToolResult
from .todo import TodoList

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": (
                "Run a shell command in the project directory and return stdout, stderr and exitCode. "
                "The user is asked to approve every command. "
                "This is non-interactive: commands or scripts that prompt for additional input will not work."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell command to execute.",
                    },
                    "timeoutMs": {
                        "type": "integer",
                        "description": "Optional timeout in milliseconds (100-600000). The command is killed when it expires.",
                        "minimum": 100,
                        "maximum": 600000,
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_files",
            "description": "Search for files and directories whose relative path contains a substring, within the working directory.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Case-insensitive substring to match in relative paths.",
                    },
                    "maxResults": {
                        "type": "integer",
                        "description": "Maximum number of results to return (1-500, default 100).",
                        "minimum": 1,
                        "maximum": 500,
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "path_exists",
            "description": "Check if a file or directory exists and whether it is a directory.",
            "parameters": {
                "type": "object",
                "properties": {
                    "targetPath": {
                        "type": "string",
                        "description": "Path to check, relative or absolute.",
                    },
                },
                "required": ["targetPath"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "read_dir",
            "description": "List the immediate entries of a directory.",
            "parameters": {
                "type": "object",
                "properties": {
                    "dirPath": {"type": "string", "description": "Directory path."},
                    "includeTypes": {
                        "type": "boolean",
                        "description": "Include entry types (file/dir/other).",
                    },
                },
                "required": ["dirPath"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a text file and return its contents (at most 200000 bytes).",
            "parameters": {
                "type": "object",
                "properties": {
                    "filePath": {"type": "string", "description": "Path to the file."},
                    "maxBytes": {
                        "type": "integer",
                        "description": "Optional max bytes to read (1-200000).",
                        "minimum": 1,
                        "maximum": 200000,
                    },
                },
                "required": ["filePath"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Create or overwrite a text file with the given content, creating parent directories as needed.",
            "parameters": {
                "type": "object",
                "properties": {
                    "filePath": {
                        "type": "string",
                        "description": "Path to the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "Full file content to write.",
                    },
                },
                "required": ["filePath", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "patch_file",
            "description": (
                "Apply structured edits to an existing text file. Operations run in order, "
                "each on the result of the previous one: replace_range, insert_at, "
                "replace_regex, append, prepend."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "filePath": {
                        "type": "string",
                        "description": "Path to the file to modify.",
                    },
                    "operations": {
                        "type": "array",
                        "description": "Ordered list of patch operations to apply.",
                        "items": {
                            "type": "object",
                            "properties": {
                                "op": {"type": "string", "enum": list(OPERATIONS)},
                                "startLine": {
                                    "type": "integer",
                                    "description": "1-based start line for replace_range.",
                                },
                                "endLine": {
                                    "type": "integer",
                                    "description": "1-based end line (inclusive) for replace_range.",
                                },
                                "newContent": {
                                    "type": "string",
                                    "description": "New content for replace/insert/append/prepend.",
                                },
                                "line": {
                                    "type": "integer",
                                    "description": "1-based line for insert_at.",
                                },
                                "position": {
                                    "type": "string",
                                    "enum": ["before", "after"],
                                    "description": "Insert before or after the given line.",
                                },
                                "pattern": {
                                    "type": "string",
                                    "description": (
                                        "Python regular expression (no delimiters) for replace_regex. "
                                        "Backreferences in newContent use \\1 or \\g<name>; other backslashes are kept as written."
                                    ),
                                },
                                "flags": {
                                    "type": "string",
                                    "description": "Regex flags: g (all matches), i, m, s, x.",
                                },
                            },
                            "required": ["op"],
                        },
                    },
                },
                "required": ["filePath", "operations"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "manage_todo",
            "description": "Create, update, complete, list, or delete todo items for this session.",
            "parameters": {
                "type": "object",
                "properties": {
                    "action": {
                        "type": "string",
                        "enum": ["create", "list", "update", "complete", "delete"],
                        "description": "The action to perform.",
                    },
                    "id": {
                        "type": "integer",
                        "description": "Todo id for update/complete/delete.",
                    },
                    "title": {
                        "type": "string",
                        "description": "Short title for create/update.",
                    },
                    "description": {"type": "string", "description": "Detailed notes."},
                },
                "required": ["action"],
            },
        },
    },
]

TOOL_SCHEMAS = {t["function"]["name"]: t["function"] for t in TOOLS}

MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 600_000
DEFAULT_MAX_RESULTS = 100
MAX_RESULTS = 500
MAX_READ_BYTES = 200_000
MAX_STREAM_CHARS = 100_000


def _read_umask() -> int:
    # os.umask can only be read by setting it; do that once, before any threads
    mask = os.umask(0)
    os.umask(mask)
    return mask


NEW_FILE_MODE = 0o666 & ~_read_umask()


@dataclass
class ToolContext:
    """Everything a tool needs from the session, passed explicitly."""

    base_dir: str
    permissions: PermissionGate
    diff_config: DiffPreviewConfig
    todo: TodoList
    confirm: Callable[[str], bool]


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def _type_ok(value, expected: str) -> bool:
    if expected in ("integer", "number") and isinstance(value, bool):
        return False
    if expected == "integer":
        return isinstance(value, int) or (
            isinstance(value, float) and value.is_integer()
        )
    if expected == "number":
        return isinstance(value, (int, float))
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


def validate_arguments(name: str, args) -> str | None:
    """Check args against the declared schema. Returns an error message or None.

    Unknown fields are rejected. Null optional fields count as omitted.
    Array items are only checked for shape (object, known keys); the
    tool itself validates item values.
    """
    schema = TOOL_SCHEMAS[name]["parameters"]
    if not isinstance(args, dict):
        return "arguments must be a JSON object"
    props = schema["properties"]
    required = schema.get("required", [])

    unknown = sorted(set(args) - set(props))
    if unknown:
        return f"unexpected argument(s) for {name}: {', '.join(unknown)}"
    missing = [key for key in required if args.get(key) is None]
    if missing:
        return f"missing required argument(s) for {name}: {', '.join(missing)}"

    for key, value in args.items():
        if value is None:
            continue
        spec = props[key]
        if not _type_ok(value, spec["type"]):
            return f"{key} must be of type {spec['type']}, got {type(value).__name__}"
        if "enum" in spec and value not in spec["enum"]:
            return f"{key} must be one of: {', '.join(spec['enum'])}"
        items = spec.get("items")
        if spec["type"] == "array" and items and items.get("type") == "object":
            allowed = set(items.get("properties", {}))
            for i, item in enumerate(value):
                if not isinstance(item, dict):
                    return f"{key}[{i}] must be an object"
                extra = sorted(set(item) - allowed)
                if extra:
                    return f"{key}[{i}]: unexpected field(s): {', '.join(extra)}"
    return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve(path_str: str, base_dir: str) -> Path:
    return (Path(base_dir) / Path(path_str).expanduser()).resolve()


def _clamp(value, low: int, high: int, default: int) -> int:
    if value is None:
        return default
    return max(low, min(int(value), high))


def _io_failure(exc: OSError, path: Path) -> ToolResult:
    if isinstance(exc, FileNotFoundError):
        return ToolResult.failure("FileNotFound", f"file not found: {path}", path=str(path))
    return ToolResult.failure("IOFailure", str(exc), path=str(path))


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _cap(text: str) -> tuple[str, bool]:
    if len(text) > MAX_STREAM_CHARS:
        return text[:MAX_STREAM_CHARS], True
    return text, False


def _atomic_write(path: Path, data: bytes) -> None:
    """Replace `path` with `data` in one step, keeping the old file mode."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if path.exists():
            shutil.copymode(path, tmp)
        else:
            os.chmod(tmp, NEW_FILE_MODE)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort

    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable; leave it


def _run_command(
    command: str,
    base_dir: str,
    permissions: PermissionGate,
    timeout_ms: int | None = None,
) -> ToolResult:
    """Run a shell string after asking the user. Never cached."""
    if not command.strip():
        return ToolResult.failure("InvalidArguments", "command must not be empty")
    if not permissions.confirm_command(command):
        return ToolResult.failure("PermissionDenied", "Permission denied by user.")

    timeout = None
    if timeout_ms is not None:
        timeout_ms = _clamp(timeout_ms, MIN_TIMEOUT_MS, MAX_TIMEOUT_MS, MAX_TIMEOUT_MS)
        timeout = timeout_ms / 1000

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return ToolResult.failure("IOFailure", f"failed to start shell command: {e}")

    timed_out = False
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
        try:
            out, err = proc.communicate(timeout=_KILL_WAIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            out, err = b"", b""

    stdout, stdout_truncated = _cap(_decode(out or b""))
    stderr, stderr_truncated = _cap(_decode(err or b""))
    fields: dict = {"exitCode": proc.returncode, "stdout": stdout, "stderr": stderr}
    if stdout_truncated:
        fields["stdoutTruncated"] = True
    if stderr_truncated:
        fields["stderrTruncated"] = True

    if timed_out:
        fmt.notice(f"Command timed out after {timeout_ms} ms and was killed")
        return ToolResult.failure(
            "Timeout",
            f"command timed out after {timeout_ms} ms and was killed",
            timedOut=True,
            **fields,
        )
    fmt.notice(f"Ran command (exit {proc.returncode})")
    return ToolResult.success(**fields)


# ---------------------------------------------------------------------------
# Read-only filesystem tools
# ---------------------------------------------------------------------------


def _sorted_entries(directory) -> list[os.DirEntry]:
    try:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda e: e.name)
    except OSError:
        return []


def _search_files(query: str, base_dir: str, max_results: int | None = None) -> ToolResult:
    """Depth-first, case-insensitive substring match over relative paths."""
    needle = query.lower()
    cap = _clamp(max_results, 1, MAX_RESULTS, DEFAULT_MAX_RESULTS)
    base = Path(base_dir).resolve()

    results: list[str] = []
    stack = [iter(_sorted_entries(base))]
    while stack and len(results) < cap:
        entry = next(stack[-1], None)
        if entry is None:
            stack.pop()
            continue
        rel = os.path.relpath(entry.path, base)
        if needle in rel.lower():
            results.append(rel)
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError:
            is_dir = False
        if is_dir:
            stack.append(iter(_sorted_entries(entry.path)))

    fmt.notice(f'Found {len(results)} file(s) matching "{needle}"')
    return ToolResult.success(results=results)


def _path_exists(target_path: str, base_dir: str) -> ToolResult:
    p = _resolve(target_path, base_dir)
    try:
        st = p.stat()
    except OSError:
        fmt.notice(f"Path not found: {p}")
        return ToolResult.success(exists=False, path=str(p))
    is_dir = p.is_dir()
    fmt.notice(f"Path exists: {p} ({'dir' if is_dir else 'file'})")
    return ToolResult.success(
        exists=True, isDirectory=is_dir, isFile=p.is_file(), size=st.st_size, path=str(p)
    )


def _entry_type(entry: os.DirEntry) -> str:
    try:
        if entry.is_dir(follow_symlinks=False):
            return "dir"
        if entry.is_file(follow_symlinks=False):
            return "file"
    except OSError:
        pass
    return "other"


def _read_dir(dir_path: str, base_dir: str, include_types: bool = False) -> ToolResult:
    p = _resolve(dir_path, base_dir)
    try:
        with os.scandir(p) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        return _io_failure(e, p)
    items = []
    for entry in entries:
        item = {"name": entry.name}
        if include_types:
            item["type"] = _entry_type(entry)
        items.append(item)
    fmt.notice(f"Listed directory: {p} ({len(items)} entries)")
    return ToolResult.success(path=str(p), items=items)


def _read_file(
    file_path: str,
    base_dir: str,
    permissions: PermissionGate,
    max_bytes: int | None = None,
) -> ToolResult:
    p = _resolve(file_path, base_dir)
    if not permissions.check("read", str(p), action="access"):
        return ToolResult.failure("PermissionDenied", "Permission denied by user.", path=str(p))

    limit = _clamp(max_bytes, 1, MAX_READ_BYTES, MAX_READ_BYTES)
    try:
        with open(p, "rb") as f:
            data = f.read(limit)
            total = os.fstat(f.fileno()).st_size
    except OSError as e:
        return _io_failure(e, p)

    truncated = total > len(data)
    fmt.notice(
        f"Read {len(data)}/{total} bytes from {p}{' (truncated)' if truncated else ''}"
    )
    return ToolResult.success(
        path=str(p), content=_decode(data), truncated=truncated, bytesRead=len(data)
    )


# ---------------------------------------------------------------------------
# Mutating filesystem tools
# ---------------------------------------------------------------------------


def _aborted(p: Path) -> ToolResult:
    return ToolResult.failure(
        "Cancelled",
        "Changes rejected by user at diff preview; file left untouched.",
        path=str(p),
        aborted=True,
    )


def _write_file(file_path: str, content: str, ctx: ToolContext) -> ToolResult:
    p = _resolve(file_path, ctx.base_dir)
    if not ctx.permissions.check("write", str(p), action="access"):
        return ToolResult.failure("PermissionDenied", "Permission denied by user.", path=str(p))

    if p.exists() and not p.is_file():
        return ToolResult.failure("IOFailure", f"not a regular file: {p}", path=str(p))
    existed = p.is_file()

    changed = None
    if existed:
        try:
            before = _decode(p.read_bytes())
        except OSError as e:
            return _io_failure(e, p)
        decision = diffview.decide(str(p), before, content, ctx.diff_config, ctx.confirm)
        if not decision.proceed:
            return _aborted(p)
        changed = decision.changed_lines

    data = content.encode("utf-8")
    try:
        _atomic_write(p, data)
    except OSError as e:
        return _io_failure(e, p)

    if existed:
        fmt.notice(f"Changed {changed} line(s) of text in {p}")
        return ToolResult.success(path=str(p), ok=True, created=False, changedLines=changed)
    lines = len(content.split("\n"))
    fmt.notice(f"Created {p} with {lines} line(s)")
    return ToolResult.success(path=str(p), ok=True, created=True, lines=lines)


def _patch_file(file_path: str, operations: list, ctx: ToolContext) -> ToolResult:
    p = _resolve(file_path, ctx.base_dir)
    if not p.is_file():
        return ToolResult.failure("FileNotFound", f"file does not exist: {p}", path=str(p))
    if not operations:
        return ToolResult.failure("NoOperations", "no operations provided", path=str(p))
    if not ctx.permissions.check("write", str(p), action="patch"):
        return ToolResult.failure("PermissionDenied", "Permission denied by user.", path=str(p))

    try:
        original = p.read_bytes().decode("utf-8")
    except UnicodeDecodeError:
        return ToolResult.failure("IOFailure", f"not a UTF-8 text file: {p}", path=str(p))
    except OSError as e:
        return _io_failure(e, p)

    try:
        updated = apply_operations(original, operations)
    except PatchError as e:
        return ToolResult.failure(e.kind, str(e), path=str(p))

    decision = diffview.decide(str(p), original, updated, ctx.diff_config, ctx.confirm)
    if not decision.proceed:
        return _aborted(p)

    data = updated.encode("utf-8")
    try:
        _atomic_write(p, data)
    except OSError as e:
        return _io_failure(e, p)

    before_bytes = len(original.encode("utf-8"))
    fmt.notice(f"Changed {decision.changed_lines} line(s) of text in {p}")
    return ToolResult.success(
        path=str(p),
        ok=True,
        bytes=len(data),
        deltaBytes=len(data) - before_bytes,
        changedLines=decision.changed_lines,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch(name: str, args: dict, ctx: ToolContext) -> ToolResult:
    """Validate arguments and route a tool call to its implementation.

    Unknown tools and schema violations come back as error results.
    """
    if name not in TOOL_SCHEMAS:
        return ToolResult.failure("UnknownTool", f"unknown tool: {name!r}")
    problem = validate_arguments(name, args)
    if problem:
        return ToolResult.failure("InvalidArguments", problem)

    if name == "run_command":
        return _run_command(
            args["command"],
            ctx.base_dir,
            ctx.permissions,
            timeout_ms=args.get("timeoutMs"),
        )
    elif name == "search_files":
        return _search_files(args["query"], ctx.base_dir, args.get("maxResults"))
    elif name == "path_exists":
        return _path_exists(args["targetPath"], ctx.base_dir)
    elif name == "read_dir":
        return _read_dir(
            args["dirPath"], ctx.base_dir, include_types=bool(args.get("includeTypes"))
        )
    elif name == "read_file":
        return _read_file(
            args["filePath"], ctx.base_dir, ctx.permissions, args.get("maxBytes")
        )
    elif name == "write_file":
        return _write_file(args["filePath"], args["content"], ctx)
    elif name == "patch_file":
        return _patch_file(args["filePath"], args["operations"], ctx)
    else:
        return ctx.todo.process(args)
