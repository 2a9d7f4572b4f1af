"""Tests for REPL mode: slash-commands, history editing and repl_loop."""

from io import StringIO
from unittest.mock import MagicMock, patch

import pytest
from rich.console import Console

from gptcli import fmt, logs
from gptcli.agent import (
    _repl_debug,
    _repl_diff,
    _repl_help,
    _repl_log,
    _repl_model,
    _repl_perms,
    _repl_reset,
    _repl_restart,
    _repl_save,
    _repl_todo,
    repl_loop,
)
from gptcli.errors import Cancelled, TransportError
from gptcli.session import Session
from gptcli.store import load_session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def out():
    """Capture fmt output as plain text."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=200)
    yield buf
    fmt._console = old


@pytest.fixture(autouse=True)
def _reset_logs():
    yield
    logs.reset()
    logs.set_log_file(logs.DEFAULT_LOG_FILE)


def _sys(content):
    return {"role": "system", "content": content}


def _user(content):
    return {"role": "user", "content": content}


def _assistant(content):
    return {"role": "assistant", "content": content}


def _session(tmp_path, **kwargs):
    kwargs.setdefault("base_dir", str(tmp_path))
    return Session(**kwargs)


# ---------------------------------------------------------------------------
# Command helpers
# ---------------------------------------------------------------------------


class TestHelp:
    def test_lists_commands(self, out):
        _repl_help()
        text = out.getvalue()
        for cmd in ("/save", "/todo", "/perms", "/log", "/debug", "/model", "/retry", "/edit", "/reset", "/restart", "/clear", "/diff", "/exit"):
            assert cmd in text


class TestTodoCommand:
    def test_add_with_description(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_todo(session, "add Buy milk | two liters")
        item = session.todo.items[0]
        assert (item.id, item.title, item.description) == (1, "Buy milk", "two liters")

    def test_list(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_todo(session, "add First")
        _repl_todo(session, "list")
        assert "First" in out.getvalue()

    def test_update_complete_delete(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_todo(session, "add First")
        _repl_todo(session, "update 1 Renamed|notes")
        assert session.todo.items[0].title == "Renamed"
        assert session.todo.items[0].description == "notes"
        _repl_todo(session, "complete 1")
        assert session.todo.items[0].status == "completed"
        _repl_todo(session, "delete 1")
        assert session.todo.items == []

    def test_unknown_id(self, tmp_path, out):
        _repl_todo(_session(tmp_path), "complete 9")
        assert "not found" in out.getvalue()

    def test_bad_id(self, tmp_path, out):
        _repl_todo(_session(tmp_path), "delete abc")
        assert "usage" in out.getvalue()

    def test_saves_session(self, tmp_path, out):
        session_file = tmp_path / "s.gptp"
        session = _session(tmp_path, session_file=str(session_file))
        _repl_todo(session, "add Persist me")
        assert load_session(session_file).todo.items[0].title == "Persist me"


class TestPermsCommand:
    def test_list_and_clear(self, tmp_path, out):
        session = _session(tmp_path, confirm=lambda _d: True)
        session.permissions.check("read", "/some/file")
        _repl_perms(session, "list")
        assert "/some/file" in out.getvalue()
        _repl_perms(session, "clear")
        assert session.permissions.granted("read") == []


class TestModelCommand:
    def test_status(self, tmp_path, out):
        _repl_model(_session(tmp_path, model="m-1"), "")
        assert "m-1" in out.getvalue()

    def test_set_temp_maxtokens(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_model(session, "set other-model")
        _repl_model(session, "temp 0.5")
        _repl_model(session, "maxtokens 256")
        assert session.model == "other-model"
        assert session.temperature == 0.5
        assert session.max_tokens == 256

    def test_invalid_values_rejected(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_model(session, "temp hot")
        _repl_model(session, "maxtokens 0")
        assert session.temperature is None
        assert session.max_tokens is None

    def test_system_message(self, tmp_path, out):
        session = _session(tmp_path)
        session.messages.append(_user("hi"))
        _repl_model(session, "systemmsg Be terse.")
        assert session.messages[0] == _sys("Be terse.")
        _repl_model(session, "systemmsg Be verbose.")
        assert [m["role"] for m in session.messages].count("system") == 1
        _repl_model(session, "systemclear")
        assert session.messages == [_user("hi")]


class TestDiffCommand:
    def test_status(self, tmp_path, out):
        _repl_diff(_session(tmp_path), "")
        assert "threshold: 1" in out.getvalue()

    def test_changes(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_diff(session, "off")
        _repl_diff(session, "threshold 3")
        _repl_diff(session, "maxlines 40")
        config = session.diff_config
        assert (config.enabled, config.threshold_lines, config.max_lines) == (False, 3, 40)

    def test_maxlines_minimum(self, tmp_path, out):
        session = _session(tmp_path)
        _repl_diff(session, "maxlines 5")
        assert session.diff_config.max_lines == 120

    def test_persisted(self, tmp_path, out):
        session_file = tmp_path / "s.gptp"
        session = _session(tmp_path, session_file=str(session_file))
        _repl_diff(session, "threshold 7")
        assert load_session(session_file).diff_config.threshold_lines == 7


class TestSaveCommand:
    def test_forces_extension(self, tmp_path, out, monkeypatch):
        monkeypatch.chdir(tmp_path)
        session = _session(tmp_path)
        session.messages.append(_user("hi"))
        _repl_save(session, "mysession")
        assert session.session_file == "mysession.gptp"
        assert load_session(tmp_path / "mysession.gptp").messages == [_user("hi")]

    def test_requires_name_without_active_file(self, tmp_path, out):
        _repl_save(_session(tmp_path), "")
        assert "usage" in out.getvalue()


class TestLogAndDebug:
    def test_log_set_writes_transcript(self, tmp_path, out):
        log_file = tmp_path / "t.log"
        _repl_log(f"set {log_file}")
        assert logs.log_enabled()
        logs.transcript("user", "hello there")
        _repl_log("off")
        assert "[user] hello there" in log_file.read_text()

    def test_debug_toggle(self, out):
        _repl_debug("on")
        assert logs.debug_enabled()
        _repl_debug("off")
        assert not logs.debug_enabled()


class TestResetRestart:
    def test_reset_keeps_system_message(self, tmp_path, out):
        session = _session(tmp_path, role="sys", confirm=lambda _d: True)
        session.messages += [_user("q"), _assistant("a")]
        session.permissions.check("write", "/x")
        logs.set_debug(True)
        _repl_reset(session)
        assert session.messages == [_sys("sys")]
        assert session.permissions.granted("write") == []
        assert not logs.debug_enabled()

    def test_restart_keeps_conversation(self, tmp_path, out):
        session = _session(tmp_path, confirm=lambda _d: True)
        session.messages += [_user("q"), _assistant("a")]
        session.permissions.check("read", "/x")
        _repl_restart(session)
        assert len(session.messages) == 2
        assert session.permissions.granted("read") == []


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def _mock_session(self, inputs):
        """Create a mock PromptSession whose .prompt() returns values from inputs."""
        mock_session = MagicMock()
        side = []
        for v in inputs:
            if v is EOFError:
                side.append(EOFError())
            elif v is KeyboardInterrupt:
                side.append(KeyboardInterrupt())
            else:
                side.append(v)
        mock_session.prompt.side_effect = side
        return mock_session

    def _run(self, session, tmp_path, inputs, **kwargs):
        mock_session = self._mock_session(inputs)
        with patch("prompt_toolkit.PromptSession", return_value=mock_session):
            repl_loop(session, history_path=tmp_path / "hist", **kwargs)
        return mock_session

    def test_exit_and_quit(self, tmp_path, out):
        for cmd in ("/exit", "/quit"):
            session = _session(tmp_path)
            self._run(session, tmp_path, [cmd])
            assert session.messages == []

    def test_eof(self, tmp_path, out):
        session = _session(tmp_path)
        self._run(session, tmp_path, [EOFError])
        assert session.messages == []

    def test_ctrl_c_at_prompt_ignored(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop", return_value=("answer", False)) as mock_loop:
            self._run(session, tmp_path, [KeyboardInterrupt, "hello", "/exit"])
        assert mock_loop.call_count == 1

    def test_empty_lines_ignored(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop", return_value=("answer", False)) as mock_loop:
            self._run(session, tmp_path, ["", "   ", "hello", "/exit"])
        assert mock_loop.call_count == 1
        assert session.messages == [_user("hello")]

    def test_unknown_command_not_sent(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop") as mock_loop:
            self._run(session, tmp_path, ["/frobnicate", "/exit"])
        mock_loop.assert_not_called()
        assert "unknown command" in out.getvalue()

    def test_answer_on_stdout(self, tmp_path, out, capsys):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop", return_value=("answer", False)):
            self._run(session, tmp_path, ["hello", "/exit"])
        assert "answer" in capsys.readouterr().out

    def test_first_prompt_runs_before_reading(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop", return_value=("a", False)):
            self._run(session, tmp_path, ["/exit"], first_prompt="from argv")
        assert session.messages == [_user("from argv")]

    def test_cancel_is_neutral(self, tmp_path, out):
        session = _session(tmp_path)
        calls = []

        def fake_run(sess, **kwargs):
            calls.append(len(sess.messages))
            if len(calls) == 1:
                raise Cancelled("request cancelled")
            return ("ok", False)

        with patch("gptcli.agent.run_agent_loop", side_effect=fake_run):
            self._run(session, tmp_path, ["first", "second", "/exit"])
        assert len(calls) == 2
        assert "cancelled" in out.getvalue()
        assert "Error" not in out.getvalue()

    def test_ctrl_c_during_loop(self, tmp_path, out):
        session = _session(tmp_path)
        with patch(
            "gptcli.agent.run_agent_loop", side_effect=[KeyboardInterrupt, ("ok", False)]
        ) as mock_loop:
            self._run(session, tmp_path, ["one", "two", "/exit"])
        assert mock_loop.call_count == 2

    def test_transport_error_reported(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop", side_effect=TransportError("LLM call failed: down")):
            self._run(session, tmp_path, ["q", "/exit"])
        assert "LLM call failed: down" in out.getvalue()
        assert session.messages == [_user("q")]

    def test_exhausted_warns(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop", return_value=(None, True)):
            self._run(session, tmp_path, ["q", "/exit"])
        assert "round-trip limit" in out.getvalue()

    def test_retry_truncates_after_last_user(self, tmp_path, out):
        session = _session(tmp_path)
        session.messages += [
            _user("q"),
            {"role": "assistant", "content": None, "tool_calls": [{"id": "c", "type": "function", "function": {"name": "n", "arguments": "{}"}}]},
            {"role": "tool", "tool_call_id": "c", "content": "{}"},
            _assistant("a"),
        ]
        seen = []

        def fake_run(sess, **kwargs):
            seen.append(list(sess.messages))
            return ("again", False)

        with patch("gptcli.agent.run_agent_loop", side_effect=fake_run):
            self._run(session, tmp_path, ["/retry", "/exit"])
        assert seen == [[_user("q")]]

    def test_retry_with_nothing(self, tmp_path, out):
        session = _session(tmp_path)
        with patch("gptcli.agent.run_agent_loop") as mock_loop:
            self._run(session, tmp_path, ["/retry", "/exit"])
        mock_loop.assert_not_called()

    def test_edit_with_text(self, tmp_path, out):
        session = _session(tmp_path)
        session.messages += [_user("old"), _assistant("a"), _user("latest"), _assistant("b")]
        seen = []

        def fake_run(sess, **kwargs):
            seen.append(list(sess.messages))
            return ("c", False)

        with patch("gptcli.agent.run_agent_loop", side_effect=fake_run):
            self._run(session, tmp_path, ["/edit replaced", "/exit"])
        assert seen == [[_user("old"), _assistant("a"), _user("replaced")]]

    def test_edit_prefills_old_text(self, tmp_path, out):
        session = _session(tmp_path)
        session.messages += [_user("typo here"), _assistant("a")]
        with patch("gptcli.agent.run_agent_loop", return_value=("b", False)):
            mock_session = self._run(session, tmp_path, ["/edit", "fixed here", "/exit"])
        edit_call = mock_session.prompt.call_args_list[1]
        assert edit_call.kwargs["default"] == "typo here"
        assert session.messages[0] == _user("fixed here")

    def test_history_saved_to_session_file(self, tmp_path, out):
        session_file = tmp_path / "chat.gptp"
        session = _session(tmp_path, session_file=str(session_file))
        with patch("gptcli.agent.run_agent_loop", return_value=("a", False)):
            self._run(session, tmp_path, ["remember me", "/exit"])
        assert load_session(session_file).messages == [_user("remember me")]
