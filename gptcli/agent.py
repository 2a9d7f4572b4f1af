import argparse
import json
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path

from . import fmt, logs
from .cancel import CancelToken, watch_for_cancel
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    set_default_model,
)
from .diffview import MIN_MAX_LINES
from .errors import AgentError, Cancelled, TransportError
from .permissions import terminal_confirm
from .results import ToolResult
from .session import Session
from .store import ensure_extension, find_session_file
from .tools import TOOLS, dispatch

logger = logging.getLogger(__name__)

MAX_ROUND_TRIPS = 20
MAX_ARG_LOG = 1000

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    encoder = _get_encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


# ---------------------------------------------------------------------------
# Completion transport
# ---------------------------------------------------------------------------


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str


@dataclass
class Completion:
    text: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None


def _completion_kwargs(
    model, messages, *, tools, temperature, max_tokens, api_key, base_url, stream
) -> dict:
    kwargs: dict = dict(model=model, messages=messages)
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    for key, val in [
        ("temperature", temperature),
        ("max_tokens", max_tokens),
        ("api_key", api_key),
        ("api_base", base_url),
    ]:
        if val is not None:
            kwargs[key] = val
    if stream:
        kwargs["stream"] = True
    return kwargs


def _run_cancellable(fn, cancel: CancelToken | None):
    """Run a blocking call on a worker thread, giving up when `cancel` is set.

    The abandoned worker is a daemon thread; its eventual result is dropped.
    """
    box: dict = {}

    def target():
        try:
            box["value"] = fn()
        except BaseException as e:
            box["error"] = e

    worker = threading.Thread(target=target, daemon=True, name="llm-request")
    worker.start()
    while True:
        worker.join(0.05)
        if not worker.is_alive():
            break
        if cancel is not None and cancel.cancelled:
            raise Cancelled("request cancelled")
    if "error" in box:
        raise box["error"]
    return box["value"]


def call_llm(
    model,
    messages,
    *,
    tools=None,
    temperature=None,
    max_tokens=None,
    api_key=None,
    base_url=None,
    cancel: CancelToken | None = None,
) -> Completion:
    """Request one completion through LiteLLM. Raises TransportError or Cancelled."""
    import litellm

    litellm.suppress_debug_info = True

    kwargs = _completion_kwargs(
        model,
        messages,
        tools=tools,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
        base_url=base_url,
        stream=False,
    )
    try:
        response = _run_cancellable(lambda: litellm.completion(**kwargs), cancel)
    except Cancelled:
        raise
    except Exception as e:
        raise TransportError(f"LLM call failed: {e}") from e

    choice = response.choices[0]
    msg = choice.message
    calls = [
        ToolCallRequest(
            id=tc.id, name=tc.function.name, arguments=tc.function.arguments or ""
        )
        for tc in (msg.tool_calls or [])
    ]
    return Completion(text=msg.content, tool_calls=calls, finish_reason=choice.finish_reason)


def stream_llm(
    model,
    messages,
    *,
    temperature=None,
    max_tokens=None,
    api_key=None,
    base_url=None,
    cancel: CancelToken | None = None,
):
    """Yield answer text chunks as they arrive. No tools are offered."""
    import litellm

    litellm.suppress_debug_info = True

    kwargs = _completion_kwargs(
        model,
        messages,
        tools=None,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
        base_url=base_url,
        stream=True,
    )
    try:
        response = _run_cancellable(lambda: litellm.completion(**kwargs), cancel)
        chunks = iter(response)
        while True:
            chunk = _run_cancellable(lambda: next(chunks, None), cancel)
            if chunk is None:
                return
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content
    except Cancelled:
        raise
    except Exception as e:
        raise TransportError(f"LLM call failed: {e}") from e


# ---------------------------------------------------------------------------
# Conversation helpers
# ---------------------------------------------------------------------------


def wire_messages(messages: list) -> list:
    """Return the history to send, without unanswered tool calls.

    An assistant tool-call message is kept only if every call it carries
    is answered by the tool messages directly following it. Tool
    messages that answer nothing are dropped. `messages` is not modified.
    """
    out = []
    i = 0
    while i < len(messages):
        m = messages[i]
        role = m.get("role")
        if role == "assistant" and m.get("tool_calls"):
            ids = {tc.get("id") for tc in m["tool_calls"]}
            j = i + 1
            replies = []
            while j < len(messages) and messages[j].get("role") == "tool":
                replies.append(messages[j])
                j += 1
            if ids <= {r.get("tool_call_id") for r in replies}:
                out.append(m)
                out.extend(r for r in replies if r.get("tool_call_id") in ids)
            i = j
            continue
        if role != "tool":
            out.append(m)
        i += 1
    return out


def _assistant_call_message(call: ToolCallRequest, content: str | None) -> dict:
    return {
        "role": "assistant",
        "content": content,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
        ],
    }


def _tool_message(call_id: str, result: ToolResult) -> dict:
    return {"role": "tool", "tool_call_id": call_id, "content": result.to_content()}


_FENCE = re.compile(r"^\s*```[^\n]*\n(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove one code fence wrapping the whole answer, if present."""
    m = _FENCE.match(text)
    return m.group(1) if m else text


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def handle_tool_call(call: ToolCallRequest, session: Session) -> tuple[dict, ToolResult]:
    """Execute a single tool call and return (tool_msg, result).

    Never raises for tool failures: bad JSON, schema violations and
    unexpected exceptions all come back as error results.
    """
    debug = logs.debug_enabled()
    logs.transcript("tool_call", f"{call.name} {call.arguments}")

    try:
        args = json.loads(call.arguments) if call.arguments else {}
    except (json.JSONDecodeError, TypeError) as e:
        result = ToolResult.failure(
            "InvalidArguments", f"invalid JSON in tool arguments: {e}"
        )
        fmt.tool_error(call.name, result.error)
        return _tool_message(call.id, result), result

    if debug:
        pretty = json.dumps(args, indent=2, ensure_ascii=False)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(call.name, pretty)

    t0 = time.monotonic()
    try:
        result = dispatch(call.name, args, session.tool_context())
    except Exception as e:
        logger.debug("tool %s raised", call.name, exc_info=True)
        result = ToolResult.failure("IOFailure", f"{type(e).__name__}: {e}")
    elapsed = time.monotonic() - t0

    if not result.ok:
        fmt.tool_error(call.name, result.error)
    elif debug:
        fmt.tool_result(call.name, elapsed)
    logs.transcript(
        "tool_result", f"{call.name} {'ok' if result.ok else result.kind} ({elapsed:.2f}s)"
    )
    return _tool_message(call.id, result), result


def run_agent_loop(
    session: Session,
    *,
    max_round_trips: int = MAX_ROUND_TRIPS,
    cancel: CancelToken | None = None,
) -> tuple[str | None, bool]:
    """Run the tool-calling loop until a final answer or the round-trip cap.

    The caller appends the user message first. Mutates
    `session.messages` in place and saves the session after every
    change. Returns (final_answer, exhausted); on exhaustion the answer
    is the last assistant text of this exchange, if any.
    """
    start = len(session.messages)
    round_trips = 0

    while round_trips < max_round_trips:
        round_trips += 1
        wire = wire_messages(session.messages)
        if logs.debug_enabled():
            fmt.turn_header(round_trips, max_round_trips, estimate_tokens(wire, TOOLS))

        t0 = time.monotonic()
        with watch_for_cancel(cancel or CancelToken()) as token, fmt.llm_spinner():
            completion = call_llm(
                session.model,
                wire,
                tools=TOOLS,
                temperature=session.temperature,
                max_tokens=session.max_tokens,
                api_key=session.api_key,
                base_url=session.base_url,
                cancel=token,
            )
        logger.debug(
            "round-trip %d: finish_reason=%s, %d tool call(s), %.1fs",
            round_trips,
            completion.finish_reason,
            len(completion.tool_calls),
            time.monotonic() - t0,
        )

        if not completion.tool_calls:
            answer = completion.text or ""
            session.messages.append({"role": "assistant", "content": answer})
            logs.transcript("assistant", answer)
            session.save()
            return answer, False

        # One assistant message per call, each followed by its result,
        # in the order the model returned them.
        for index, call in enumerate(completion.tool_calls):
            text = completion.text if index == 0 else None
            session.messages.append(_assistant_call_message(call, text))
            try:
                tool_msg, _result = handle_tool_call(call, session)
            except KeyboardInterrupt:
                aborted = ToolResult.failure("Cancelled", "interrupted by user")
                session.messages.append(_tool_message(call.id, aborted))
                session.save()
                raise
            session.messages.append(tool_msg)
            session.save()

    logger.debug("round-trip cap (%d) reached", max_round_trips)
    last_text = None
    for m in reversed(session.messages[start:]):
        if m.get("role") == "assistant" and m.get("content"):
            last_text = m["content"]
            break
    return last_text, True


def _emit_answer(session: Session, answer: str, echo: bool = True) -> bool:
    """Print the answer (unless quiet) and copy it to --out. False on write failure."""
    if echo and not session.quiet:
        print(answer)
    if session.out_file:
        try:
            Path(session.out_file).write_text(answer + "\n", encoding="utf-8")
        except OSError as e:
            fmt.error(f"could not write {session.out_file}: {e}")
            return False
    return True


def run_one_shot(session: Session, prompt: str) -> int:
    """Answer one prompt without tools. Returns the process exit status."""
    content = session.build_user_content(prompt)
    session.messages.append({"role": "user", "content": content})
    logs.transcript("user", content)

    llm_args = dict(
        temperature=session.temperature,
        max_tokens=session.max_tokens,
        api_key=session.api_key,
        base_url=session.base_url,
    )
    wire = wire_messages(session.messages)
    try:
        with watch_for_cancel(CancelToken()) as token:
            if session.stream and not session.dev:
                parts = []
                for chunk in stream_llm(session.model, wire, cancel=token, **llm_args):
                    parts.append(chunk)
                    if not session.quiet:
                        sys.stdout.write(chunk)
                        sys.stdout.flush()
                if not session.quiet:
                    sys.stdout.write("\n")
                answer = "".join(parts)
                streamed = True
            else:
                with fmt.llm_spinner("Waiting for model"):
                    completion = call_llm(session.model, wire, cancel=token, **llm_args)
                answer = completion.text or ""
                if session.dev:
                    answer = strip_code_fence(answer)
                streamed = False
    except (Cancelled, KeyboardInterrupt):
        fmt.cancelled()
        session.save()
        return 130
    except TransportError as e:
        fmt.error(str(e))
        session.save()
        return 1

    session.messages.append({"role": "assistant", "content": answer})
    logs.transcript("assistant", answer)
    session.save()

    ok = _emit_answer(session, answer, echo=not streamed)
    return 0 if ok else 1


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                          Show this help message\n"
        "  /exit, /quit                   Exit the REPL\n"
        "  /save <file>                   Set the session file and save now\n"
        "  /todo list                     Show the todo list\n"
        "  /todo add <title>[|desc]       Add a todo item\n"
        "  /todo update <id> <title>[|desc]\n"
        "  /todo complete <id>            Mark an item completed\n"
        "  /todo delete <id>              Remove an item\n"
        "  /perms list|clear              Show or forget file permissions\n"
        "  /log on|off|set <file>         Transcript logging\n"
        "  /debug on|off                  Debug output on stderr\n"
        "  /model [set <id>|temp <n>|maxtokens <n>|systemmsg <text>|systemclear]\n"
        "  /retry                         Re-run the last question\n"
        "  /edit [text]                   Replace the last question and re-run\n"
        "  /reset                         Clear the conversation (keeps system message)\n"
        "  /restart                       Clear screen and tool permissions\n"
        "  /clear                         Clear the screen\n"
        "  /diff [on|off|threshold <n>|maxlines <n>]\n"
        "\n"
        "Press Esc or Ctrl-C while waiting for the model to cancel."
    )


def _parse_int(text: str, label: str, minimum: int) -> int | None:
    try:
        n = int(text)
    except ValueError:
        fmt.warning(f"invalid number for {label}: {text!r}")
        return None
    if n < minimum:
        fmt.warning(f"{label} must be at least {minimum}")
        return None
    return n


def _repl_save(session: Session, arg: str) -> None:
    name = arg.strip()
    if not name:
        if not session.session_file:
            fmt.warning("usage: /save <filename>")
            return
    else:
        session.session_file = ensure_extension(name)
    if session.save():
        fmt.info(f"session saved to {session.session_file}")


def _split_title(text: str) -> tuple[str, str]:
    title, _, desc = text.partition("|")
    return title.strip(), desc.strip()


def _repl_todo(session: Session, arg: str) -> None:
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else "list"
    rest = parts[1] if len(parts) > 1 else ""
    todo = session.todo

    if sub == "list":
        fmt.todo_table(todo.items)
        return
    if sub == "add":
        title, desc = _split_title(rest)
        if not title:
            fmt.warning("usage: /todo add <title>[|description]")
            return
        todo.create(title, desc)
        session.save()
        return
    if sub not in ("update", "complete", "delete"):
        fmt.warning(f"unknown /todo subcommand: {sub}")
        return

    id_text, _, remainder = rest.strip().partition(" ")
    item_id = _parse_int(id_text, "todo id", 1) if id_text else None
    if item_id is None:
        fmt.warning(f"usage: /todo {sub} <id>" + (" <title>[|description]" if sub == "update" else ""))
        return

    if sub == "update":
        title, desc = _split_title(remainder)
        item = todo.update(item_id, title=title or None, description=desc or None)
    elif sub == "complete":
        item = todo.complete(item_id)
    else:
        item = todo.delete(item_id)
    if item is None:
        fmt.warning(f"todo item #{item_id} not found")
        return
    session.save()


def _repl_perms(session: Session, arg: str) -> None:
    sub = arg.strip().lower() or "list"
    if sub == "list":
        for kind in ("read", "write"):
            granted = session.permissions.granted(kind)
            fmt.info(f"{kind}: {', '.join(granted) if granted else '(none)'}")
    elif sub == "clear":
        session.permissions.clear()
        fmt.info("permissions cleared")
    else:
        fmt.warning("usage: /perms list|clear")


def _repl_log(arg: str) -> None:
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else ""
    try:
        if sub == "on":
            logs.set_logging(True)
            fmt.info(f"logging to {logs.log_path()}")
        elif sub == "off":
            logs.set_logging(False)
            fmt.info("logging disabled")
        elif sub == "set" and len(parts) > 1:
            logs.set_log_file(parts[1].strip())
            logs.set_logging(True)
            fmt.info(f"logging to {logs.log_path()}")
        elif not sub:
            state = "on" if logs.log_enabled() else "off"
            fmt.info(f"logging is {state} ({logs.log_path()})")
        else:
            fmt.warning("usage: /log on|off|set <file>")
    except OSError as e:
        fmt.error(f"cannot open log file {logs.log_path()}: {e}")


def _repl_debug(arg: str) -> None:
    sub = arg.strip().lower()
    if sub in ("on", "off"):
        logs.set_debug(sub == "on")
        fmt.info(f"debug {sub}")
    elif not sub:
        fmt.info(f"debug is {'on' if logs.debug_enabled() else 'off'}")
    else:
        fmt.warning("usage: /debug on|off")


def _repl_model(session: Session, arg: str) -> None:
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else ""
    value = parts[1].strip() if len(parts) > 1 else ""

    if not sub:
        fmt.info(
            f"model: {session.model}, temperature: {session.temperature}, "
            f"max tokens: {session.max_tokens}, "
            f"system message: {'set' if session.system_message else 'none'}"
        )
    elif sub == "set" and value:
        session.model = value
        fmt.info(f"model set to {value}")
    elif sub == "temp" and value:
        try:
            temperature = float(value)
        except ValueError:
            fmt.warning(f"invalid temperature: {value!r}")
            return
        if not 0 <= temperature <= 2:
            fmt.warning("temperature must be between 0 and 2")
            return
        session.temperature = temperature
        fmt.info(f"temperature set to {temperature}")
    elif sub == "maxtokens" and value:
        n = _parse_int(value, "max tokens", 1)
        if n is not None:
            session.max_tokens = n
            fmt.info(f"max tokens set to {n}")
    elif sub == "systemmsg" and value:
        session.set_system_message(value)
        session.save()
        fmt.info("system message set")
    elif sub == "systemclear":
        if session.clear_system_message():
            session.save()
            fmt.info("system message cleared")
        else:
            fmt.info("no system message to clear")
    else:
        fmt.warning(
            "usage: /model [set <id>|temp <n>|maxtokens <n>|systemmsg <text>|systemclear]"
        )


def _repl_diff(session: Session, arg: str) -> None:
    parts = arg.split()
    sub = parts[0].lower() if parts else ""
    config = session.diff_config

    if not sub:
        fmt.info(
            f"diff preview: {'on' if config.enabled else 'off'}, "
            f"threshold: {config.threshold_lines} line(s), max lines: {config.max_lines}"
        )
        return
    if sub in ("on", "off"):
        config.enabled = sub == "on"
        fmt.info(f"diff preview {sub}")
    elif sub == "threshold" and len(parts) == 2:
        n = _parse_int(parts[1], "threshold", 0)
        if n is None:
            return
        config.threshold_lines = n
        fmt.info(f"diff threshold set to {n} line(s)")
    elif sub == "maxlines" and len(parts) == 2:
        n = _parse_int(parts[1], "maxlines", MIN_MAX_LINES)
        if n is None:
            return
        config.max_lines = n
        fmt.info(f"diff max lines set to {n}")
    else:
        fmt.warning("usage: /diff [on|off|threshold <n>|maxlines <n>]")
        return
    session.save()


def _repl_reset(session: Session) -> None:
    """Clear the conversation except the system message, plus permissions and logs."""
    dropped = session.reset_conversation()
    session.permissions.clear()
    logs.reset()
    session.save()
    fmt.info(f"conversation reset ({dropped} messages removed)")


def _repl_restart(session: Session) -> None:
    fmt.clear_screen()
    session.permissions.clear()
    fmt.info("tool state cleared (conversation kept)")


def _last_user_index(messages: list) -> int | None:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].get("role") == "user":
            return i
    return None


def _prepare_retry(session: Session) -> bool:
    """Drop everything after the last user message."""
    idx = _last_user_index(session.messages)
    if idx is None:
        fmt.warning("nothing to retry")
        return False
    del session.messages[idx + 1 :]
    session.save()
    return True


def _prepare_edit(session: Session, new_content: str) -> bool:
    """Replace the last user message and drop everything after it."""
    idx = _last_user_index(session.messages)
    if idx is None:
        fmt.warning("nothing to edit")
        return False
    session.messages[idx] = {"role": "user", "content": new_content}
    del session.messages[idx + 1 :]
    session.save()
    return True


def _run_exchange(session: Session) -> None:
    """Run the agent loop on the current history and report the outcome."""
    try:
        answer, exhausted = run_agent_loop(session, cancel=CancelToken())
    except (Cancelled, KeyboardInterrupt):
        fmt.cancelled("request cancelled")
        return
    except TransportError as e:
        fmt.error(str(e))
        return

    if answer is not None:
        _emit_answer(session, answer)
    if exhausted:
        fmt.warning(f"round-trip limit ({MAX_ROUND_TRIPS}) reached for this question.")


def repl_loop(
    session: Session,
    *,
    first_prompt: str | None = None,
    history_path: str | Path | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(history_path or global_config_dir() / "repl_history")
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "gpt> ")])

    if not session.quiet:
        fmt.repl_banner(session.session_file)

    pending = first_prompt
    while True:
        if pending is not None:
            line, pending = pending, None
        else:
            try:
                print(file=sys.stderr)  # blank line before prompt
                line = prompt_session.prompt(prompt_text)
            except KeyboardInterrupt:
                continue
            except EOFError:
                print(file=sys.stderr)  # newline after ^D
                break

        line = line.strip()
        if not line:
            continue

        if line.startswith("/"):
            cmd_parts = line.split(None, 1)
            cmd = cmd_parts[0].lower()
            cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""
            logs.transcript("command", line)

            if cmd in ("/exit", "/quit"):
                break
            elif cmd == "/help":
                _repl_help()
            elif cmd == "/save":
                _repl_save(session, cmd_arg)
            elif cmd == "/todo":
                _repl_todo(session, cmd_arg)
            elif cmd == "/perms":
                _repl_perms(session, cmd_arg)
            elif cmd == "/log":
                _repl_log(cmd_arg)
            elif cmd == "/debug":
                _repl_debug(cmd_arg)
            elif cmd == "/model":
                _repl_model(session, cmd_arg)
            elif cmd == "/diff":
                _repl_diff(session, cmd_arg)
            elif cmd == "/reset":
                _repl_reset(session)
            elif cmd == "/restart":
                _repl_restart(session)
            elif cmd == "/clear":
                fmt.clear_screen()
            elif cmd == "/retry":
                if _prepare_retry(session):
                    _run_exchange(session)
            elif cmd == "/edit":
                if cmd_arg.strip():
                    new_content = session.build_user_content(cmd_arg.strip())
                else:
                    idx = _last_user_index(session.messages)
                    if idx is None:
                        fmt.warning("nothing to edit")
                        continue
                    old = session.messages[idx].get("content") or ""
                    try:
                        new_content = prompt_session.prompt("edit> ", default=old)
                    except (EOFError, KeyboardInterrupt):
                        fmt.info("edit cancelled")
                        continue
                    if not new_content.strip():
                        fmt.info("edit cancelled")
                        continue
                if _prepare_edit(session, new_content):
                    _run_exchange(session)
            else:
                fmt.error(f"unknown command {cmd}; type /help for a list")
            continue

        content = session.build_user_content(line)
        session.messages.append({"role": "user", "content": content})
        logs.transcript("user", content)
        session.save()
        _run_exchange(session)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="gpt",
        usage="%(prog)s [options] [prompt]",
        description="Chat with a language model from the terminal, one-shot or as a tool-using REPL.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "prompt", nargs="?", default=None, help="Prompt for a one-shot answer."
    )
    parser.add_argument(
        "-i",
        "--in",
        dest="in_file",
        metavar="FILE",
        default=None,
        help="Prepend the contents of FILE to every user message.",
    )
    parser.add_argument(
        "-o",
        "--out",
        dest="out_file",
        metavar="FILE",
        default=None,
        help="Also write the final answer to FILE.",
    )
    parser.add_argument(
        "-r",
        "--role",
        default=_UNSET,
        help="System message inserted at the start of the conversation.",
    )
    parser.add_argument(
        "-d",
        "--dev",
        action="store_true",
        help="Ask for code only, strip a wrapping code fence, and disable streaming.",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=_UNSET,
        help="Model id (default: gpt-4.1-mini). Any LiteLLM model string works.",
    )
    parser.add_argument(
        "-t",
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature.",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Do not print answers (useful with --out).",
    )
    parser.add_argument(
        "-s",
        "--session",
        default=_UNSET,
        help="Session file to load and save (.gptp is appended if missing).",
    )
    parser.add_argument(
        "-I",
        "--interactive",
        action="store_true",
        help="Start the interactive REPL with tool calling.",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        default=_UNSET,
        help="Wait for the whole answer instead of streaming it.",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider's API base URL.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color on stderr even when not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color on stderr.",
    )

    parser.add_argument(
        "--set-default-model",
        metavar="ID",
        default=None,
        help="Store ID as the model in the global config file and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project config template.",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("gpt-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.project and not args.init_config:
        parser.error("--project requires --init-config")
    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        status = _run_main(args, parser)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(status)


def _run_main(args, parser) -> int:
    if args.set_default_model:
        path = set_default_model(args.set_default_model)
        print(f"default model set to {args.set_default_model} in {path}")
        return 0

    base_dir = os.getcwd()
    config = load_config(Path(base_dir))
    apply_config_to_args(args, config)
    fmt.init(color=args.color, no_color=args.no_color)
    if args.log_file:
        logs.set_log_file(args.log_file)

    interactive = args.interactive or (args.prompt is None and sys.stdin.isatty())
    if not interactive and args.prompt is None:
        parser.error("a prompt is required when stdin is not a terminal (or use -I)")

    input_text = None
    if args.in_file:
        try:
            input_text = Path(args.in_file).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise AgentError(f"cannot read input file {args.in_file}: {e}")

    if args.session:
        session_file = ensure_extension(args.session)
    else:
        found = find_session_file(base_dir)
        session_file = str(found) if found else None
    fresh = not (session_file and Path(session_file).is_file())

    session_kwargs = dict(
        base_dir=base_dir,
        model=args.model,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        stream=not args.no_stream,
        quiet=args.quiet,
        dev=args.dev,
        role=args.role,
        input_text=input_text,
        out_file=args.out_file,
        api_key=args.api_key,
        base_url=args.base_url,
        confirm=terminal_confirm,
    )
    if session_file:
        session = Session.from_file(session_file, **session_kwargs)
        if not args.quiet and not fresh:
            fmt.info(f"loaded session {session_file}")
    else:
        session = Session(**session_kwargs)

    # Config-file diff settings seed new sessions; saved sessions keep theirs.
    if fresh:
        if args.diff_preview is not None:
            session.diff_config.enabled = args.diff_preview
        if args.diff_threshold is not None:
            session.diff_config.threshold_lines = args.diff_threshold
        if args.diff_max_lines is not None:
            session.diff_config.max_lines = args.diff_max_lines

    if interactive:
        repl_loop(session, first_prompt=args.prompt)
        return 0
    return run_one_shot(session, args.prompt)


if __name__ == "__main__":
    main()
