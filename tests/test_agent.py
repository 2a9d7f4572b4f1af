"""Tests for the agent loop, the transport wrapper and one-shot mode."""

import json
import threading
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from gptcli.agent import (
    MAX_ROUND_TRIPS,
    Completion,
    ToolCallRequest,
    _run_cancellable,
    call_llm,
    handle_tool_call,
    run_agent_loop,
    run_one_shot,
    strip_code_fence,
    wire_messages,
)
from gptcli.cancel import CancelToken
from gptcli.errors import Cancelled, TransportError
from gptcli.session import DEV_INSTRUCTION, Session
from gptcli.store import load_session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text(text):
    return Completion(text=text, tool_calls=[], finish_reason="stop")


def _tools(*calls, text=None):
    return Completion(
        text=text,
        tool_calls=[ToolCallRequest(id=i, name=n, arguments=a) for i, n, a in calls],
        finish_reason="tool_calls",
    )


def _session(tmp_path, **kwargs):
    kwargs.setdefault("base_dir", str(tmp_path))
    kwargs.setdefault("confirm", lambda _description: True)
    session = Session(**kwargs)
    session.messages.append({"role": "user", "content": "do it"})
    return session


# ---------------------------------------------------------------------------
# run_agent_loop
# ---------------------------------------------------------------------------


class TestRunAgentLoop:
    def test_returns_answer(self, tmp_path):
        session = _session(tmp_path)
        with patch("gptcli.agent.call_llm", return_value=_text("the answer")):
            answer, exhausted = run_agent_loop(session)
        assert answer == "the answer"
        assert exhausted is False
        assert session.messages[-1] == {"role": "assistant", "content": "the answer"}

    def test_tool_call_then_answer(self, tmp_path):
        session = _session(tmp_path)
        responses = [
            _tools(("c1", "manage_todo", json.dumps({"action": "create", "title": "x"}))),
            _text("done"),
        ]
        with patch("gptcli.agent.call_llm", side_effect=responses):
            answer, _ = run_agent_loop(session)

        assert answer == "done"
        roles = [m["role"] for m in session.messages]
        assert roles == ["user", "assistant", "tool", "assistant"]
        assert session.messages[1]["tool_calls"][0]["id"] == "c1"
        assert session.messages[2]["tool_call_id"] == "c1"
        assert json.loads(session.messages[2]["content"])["item"]["id"] == 1
        assert [i.title for i in session.todo.items] == ["x"]

    def test_each_call_gets_its_own_assistant_message(self, tmp_path):
        session = _session(tmp_path)
        responses = [
            _tools(
                ("a", "manage_todo", json.dumps({"action": "create", "title": "first"})),
                ("b", "manage_todo", json.dumps({"action": "create", "title": "second"})),
                text="planning",
            ),
            _text("ok"),
        ]
        with patch("gptcli.agent.call_llm", side_effect=responses):
            run_agent_loop(session)

        exchange = session.messages[1:5]
        assert [m["role"] for m in exchange] == ["assistant", "tool", "assistant", "tool"]
        assert exchange[0]["content"] == "planning"
        assert exchange[2]["content"] is None
        assert [m.get("tool_call_id") for m in exchange[1::2]] == ["a", "b"]
        # Executed in the order returned
        assert [i.title for i in session.todo.items] == ["first", "second"]

    def test_round_trip_cap(self, tmp_path):
        session = _session(tmp_path)
        counter = {"n": 0}

        def always_tools(*args, **kwargs):
            counter["n"] += 1
            return _tools((f"c{counter['n']}", "manage_todo", '{"action": "list"}'))

        with patch("gptcli.agent.call_llm", side_effect=always_tools):
            answer, exhausted = run_agent_loop(session)

        assert exhausted is True
        assert answer is None
        assert counter["n"] == MAX_ROUND_TRIPS == 20
        # Last tool output stays in history
        assert session.messages[-1]["role"] == "tool"

    def test_cap_returns_last_text_of_exchange(self, tmp_path):
        session = _session(tmp_path)
        session.messages.insert(0, {"role": "assistant", "content": "older answer"})
        with patch(
            "gptcli.agent.call_llm",
            return_value=_tools(("c", "manage_todo", '{"action": "list"}'), text="thinking"),
        ):
            answer, exhausted = run_agent_loop(session, max_round_trips=2)
        assert exhausted is True
        assert answer == "thinking"

    def test_sends_tools_and_settings(self, tmp_path):
        session = _session(tmp_path, model="m-1", temperature=0.2, max_tokens=50)
        with patch("gptcli.agent.call_llm", return_value=_text("x")) as mock_llm:
            run_agent_loop(session)
        args, kwargs = mock_llm.call_args
        assert args[0] == "m-1"
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 50
        assert len(kwargs["tools"]) == 8

    def test_cancelled_leaves_history_consistent(self, tmp_path):
        session = _session(tmp_path)
        with patch("gptcli.agent.call_llm", side_effect=Cancelled("request cancelled")):
            with pytest.raises(Cancelled):
                run_agent_loop(session)
        assert session.messages == [{"role": "user", "content": "do it"}]

    def test_transport_error_propagates_with_history_intact(self, tmp_path):
        session = _session(tmp_path)
        responses = [
            _tools(("c1", "manage_todo", '{"action": "list"}')),
            TransportError("LLM call failed: boom"),
        ]
        with patch("gptcli.agent.call_llm", side_effect=responses):
            with pytest.raises(TransportError):
                run_agent_loop(session)
        assert [m["role"] for m in session.messages] == ["user", "assistant", "tool"]

    def test_invalid_json_arguments_keep_loop_alive(self, tmp_path):
        session = _session(tmp_path)
        responses = [_tools(("c1", "read_file", "{not json")), _text("recovered")]
        with patch("gptcli.agent.call_llm", side_effect=responses):
            answer, _ = run_agent_loop(session)
        assert answer == "recovered"
        payload = json.loads(session.messages[2]["content"])
        assert payload["kind"] == "InvalidArguments"

    def test_saves_after_each_step(self, tmp_path):
        session_file = tmp_path / "s.gptp"
        session = _session(tmp_path, session_file=str(session_file))
        saved_lengths = []

        def fake_llm(*args, **kwargs):
            if session_file.exists():
                saved_lengths.append(len(load_session(session_file).messages))
            if len(saved_lengths) < 2:
                return _tools((f"c{len(saved_lengths)}", "manage_todo", '{"action": "list"}'))
            return _text("end")

        with patch("gptcli.agent.call_llm", side_effect=fake_llm):
            run_agent_loop(session)

        assert saved_lengths == [3, 5]
        assert len(load_session(session_file).messages) == 6

    def test_keyboard_interrupt_during_tool_records_result(self, tmp_path):
        session = _session(tmp_path)
        with (
            patch(
                "gptcli.agent.call_llm",
                return_value=_tools(("c1", "manage_todo", '{"action": "list"}')),
            ),
            patch("gptcli.agent.dispatch", side_effect=KeyboardInterrupt),
        ):
            with pytest.raises(KeyboardInterrupt):
                run_agent_loop(session)
        assert session.messages[-1]["tool_call_id"] == "c1"
        assert json.loads(session.messages[-1]["content"])["kind"] == "Cancelled"


class TestHandleToolCall:
    def test_exception_becomes_error_result(self, tmp_path):
        session = _session(tmp_path)
        call = ToolCallRequest(id="x", name="read_file", arguments='{"filePath": "a"}')
        with patch("gptcli.agent.dispatch", side_effect=RuntimeError("kaboom")):
            msg, result = handle_tool_call(call, session)
        assert not result.ok
        assert result.kind == "IOFailure"
        assert "kaboom" in msg["content"]
        assert msg["tool_call_id"] == "x"

    def test_empty_arguments_mean_no_arguments(self, tmp_path):
        session = _session(tmp_path)
        call = ToolCallRequest(id="x", name="manage_todo", arguments="")
        _msg, result = handle_tool_call(call, session)
        assert result.kind == "InvalidArguments"  # action is required


# ---------------------------------------------------------------------------
# Wire history repair
# ---------------------------------------------------------------------------


def _call_msg(call_id):
    return {
        "role": "assistant",
        "content": None,
        "tool_calls": [{"id": call_id, "type": "function", "function": {"name": "n", "arguments": "{}"}}],
    }


def _result_msg(call_id):
    return {"role": "tool", "tool_call_id": call_id, "content": "{}"}


class TestWireMessages:
    def test_complete_pairs_kept(self):
        msgs = [{"role": "user", "content": "u"}, _call_msg("a"), _result_msg("a")]
        assert wire_messages(msgs) == msgs

    def test_dangling_call_dropped(self):
        msgs = [{"role": "user", "content": "u"}, _call_msg("a"), {"role": "user", "content": "again"}]
        assert wire_messages(msgs) == [msgs[0], msgs[2]]

    def test_orphan_tool_message_dropped(self):
        msgs = [{"role": "user", "content": "u"}, _result_msg("zzz")]
        assert wire_messages(msgs) == [msgs[0]]

    def test_does_not_modify_input(self):
        msgs = [_call_msg("a")]
        wire_messages(msgs)
        assert msgs == [_call_msg("a")]


# ---------------------------------------------------------------------------
# Transport wrapper
# ---------------------------------------------------------------------------


def _response(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


class TestCallLlm:
    def test_parses_text(self):
        with patch("litellm.completion", return_value=_response("hello")):
            completion = call_llm("m", [{"role": "user", "content": "hi"}])
        assert completion.text == "hello"
        assert completion.tool_calls == []

    def test_parses_tool_calls(self):
        tc = SimpleNamespace(
            id="c1", function=SimpleNamespace(name="read_file", arguments='{"filePath": "a"}')
        )
        with patch("litellm.completion", return_value=_response(tool_calls=[tc])):
            completion = call_llm("m", [])
        assert completion.tool_calls == [
            ToolCallRequest(id="c1", name="read_file", arguments='{"filePath": "a"}')
        ]

    def test_failure_is_transport_error(self):
        with patch("litellm.completion", side_effect=RuntimeError("boom")):
            with pytest.raises(TransportError, match="boom"):
                call_llm("m", [])

    def test_omits_unset_options(self):
        with patch("litellm.completion", return_value=_response("x")) as mock_completion:
            call_llm("m", [], tools=None, temperature=None)
        kwargs = mock_completion.call_args.kwargs
        assert "tools" not in kwargs
        assert "temperature" not in kwargs


class TestCancellation:
    def test_cancel_interrupts_blocking_call(self):
        token = CancelToken()
        release = threading.Event()
        threading.Timer(0.1, token.cancel).start()
        try:
            with pytest.raises(Cancelled):
                _run_cancellable(lambda: release.wait(5), token)
        finally:
            release.set()

    def test_result_passes_through(self):
        assert _run_cancellable(lambda: 42, CancelToken()) == 42

    def test_worker_exception_reraised(self):
        def boom():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            _run_cancellable(boom, None)


# ---------------------------------------------------------------------------
# One-shot mode
# ---------------------------------------------------------------------------


class TestOneShot:
    def test_streams_answer_to_stdout(self, tmp_path, capsys):
        session = Session(base_dir=str(tmp_path))
        with patch("gptcli.agent.stream_llm", return_value=iter(["Hel", "lo"])):
            status = run_one_shot(session, "hi")
        assert status == 0
        assert capsys.readouterr().out == "Hello\n"
        assert session.messages[-1] == {"role": "assistant", "content": "Hello"}

    def test_no_tools_offered(self, tmp_path):
        session = Session(base_dir=str(tmp_path), stream=False)
        with patch("gptcli.agent.call_llm", return_value=_text("x")) as mock_llm:
            run_one_shot(session, "hi")
        assert mock_llm.call_args.kwargs.get("tools") is None

    def test_dev_mode_strips_fence_and_disables_streaming(self, tmp_path, capsys):
        session = Session(base_dir=str(tmp_path), dev=True)
        with (
            patch("gptcli.agent.call_llm", return_value=_text("```python\nprint(1)\n```")),
            patch("gptcli.agent.stream_llm") as mock_stream,
        ):
            run_one_shot(session, "write code")
        mock_stream.assert_not_called()
        assert capsys.readouterr().out == "print(1)\n"
        assert session.messages[0]["content"].endswith(DEV_INSTRUCTION)

    def test_out_file_and_quiet(self, tmp_path, capsys):
        out = tmp_path / "answer.txt"
        session = Session(base_dir=str(tmp_path), stream=False, quiet=True, out_file=str(out))
        with patch("gptcli.agent.call_llm", return_value=_text("saved")):
            run_one_shot(session, "hi")
        assert capsys.readouterr().out == ""
        assert out.read_text() == "saved\n"

    def test_input_file_prepended(self, tmp_path):
        session = Session(base_dir=str(tmp_path), stream=False, input_text="CONTEXT")
        with patch("gptcli.agent.call_llm", return_value=_text("x")):
            run_one_shot(session, "question")
        assert session.messages[0]["content"] == "CONTEXT\nquestion"

    def test_transport_failure_exits_nonzero(self, tmp_path):
        session = Session(base_dir=str(tmp_path), stream=False)
        with patch("gptcli.agent.call_llm", side_effect=TransportError("down")):
            assert run_one_shot(session, "hi") == 1


class TestStripCodeFence:
    def test_strips(self):
        assert strip_code_fence("```js\nlet a = 1;\n```") == "let a = 1;"

    def test_leaves_plain_text(self):
        assert strip_code_fence("plain") == "plain"

    def test_leaves_inner_fences(self):
        text = "intro\n```\ncode\n```"
        assert strip_code_fence(text) == text
