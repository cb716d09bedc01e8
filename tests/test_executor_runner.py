"""Tests for executor.runner module."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest
from meta_ralph_mcp.config import Config, ProcessingOptions
from meta_ralph_mcp.executor.models import Activity, ExecutionMetrics, StreamEvent
from meta_ralph_mcp.executor.runner import (
    MAX_STDERR_DETAILS,
    STREAM_LIMIT,
    LineBuffer,
    build_command,
    build_env,
    format_log_line,
    parse_event_line,
    process_issues,
)


def _event_line(event_type: str, issue_id: str, payload: dict) -> bytes:
    data = {"type": event_type, "issueId": issue_id, "payload": payload}
    return f"RALPH_EVENT:{json.dumps(data)}\n".encode("utf-8")


class TestLineBuffer:
    """Tests for LineBuffer line assembly."""

    def test_partial_line_held_until_newline(self):
        """A sentinel line split across chunks is only released once complete."""
        buffer = LineBuffer()

        assert buffer.feed(b'RALPH_EVENT:{"typ') == []
        lines = buffer.feed(b'e":"activity"}\n')

        assert lines == ['RALPH_EVENT:{"type":"activity"}']
        assert buffer.pending == ""

    def test_multiple_lines_in_one_chunk(self):
        """A chunk may carry several lines plus a partial tail."""
        buffer = LineBuffer()

        assert buffer.feed(b"one\r\ntwo\nthr") == ["one", "two"]
        assert buffer.flush() == "thr"
        assert buffer.flush() is None

    def test_multibyte_character_split(self):
        """UTF-8 sequences split across chunks decode correctly."""
        data = "héllo ✓\n".encode("utf-8")
        split = data.index("✓".encode("utf-8")) + 1
        buffer = LineBuffer()

        assert buffer.feed(data[:split]) == []
        assert buffer.feed(data[split:]) == ["héllo ✓"]

    def test_flush_ignores_whitespace(self):
        """A whitespace-only tail is not a line."""
        buffer = LineBuffer()
        buffer.feed(b"done\n  ")

        assert buffer.flush() is None


class TestParseEventLine:
    """Tests for parse_event_line() function."""

    def test_activity_event(self):
        """Sentinel lines with valid JSON become StreamEvents."""
        line = _event_line("activity", "ISSUE-1", {"id": "a1", "timestamp": "t", "type": "tool", "tool": "Read"})
        event = parse_event_line(line.decode().rstrip("\n"))

        assert event.type == "activity"
        assert event.issue_id == "ISSUE-1"
        assert event.payload.tool == "Read"

    def test_plain_line(self):
        """Lines without the sentinel are not events."""
        assert parse_event_line("Processing issue 1") is None

    def test_malformed_json(self):
        """Broken JSON after the sentinel is not an event."""
        assert parse_event_line('RALPH_EVENT:{"type": "activity"') is None

    def test_unknown_event_type(self):
        """Event types outside the protocol are rejected."""
        assert parse_event_line('RALPH_EVENT:{"type": "bogus", "issueId": "A", "payload": {}}') is None

    def test_custom_prefix(self):
        """The sentinel prefix is configurable."""
        line = 'EV>{"type": "complete", "issueId": "A", "payload": {"message": "ok"}}'
        assert parse_event_line(line, prefix="EV>").payload == {"message": "ok"}


class TestFormatLogLine:
    """Tests for legacy log formatting."""

    def test_formats(self):
        """Each event type renders to its legacy log line."""
        activity = Activity.create("tool", details="Reading a.py")
        metrics = ExecutionMetrics(iteration=2, max_iterations=10, cost_usd=0.01234)

        assert format_log_line(StreamEvent.activity("A", activity)) == "[tool] Reading a.py"
        assert format_log_line(StreamEvent.metrics("A", metrics)) == "[metrics] Iteration 2/10, cost: $0.0123"
        assert format_log_line(StreamEvent.complete("A", "done")) == "[complete] done"
        assert format_log_line(StreamEvent.error("A", "bad")) == "[error] bad"


class TestBuildCommand:
    """Tests for command line and environment construction."""

    def test_command(self):
        """Issue ids are joined and providers passed through."""
        cmd = build_command("/opt/meta-ralph.sh", ["A", "B"], Config(providers="sentry"))

        assert cmd == ["bash", "/opt/meta-ralph.sh", "--only-ids", "A,B", "--providers", "sentry"]

    def test_env(self, tmp_path):
        """Processing options are exported as RALPH_* variables."""
        options = ProcessingOptions(mode="plan", model="opus", max_iterations=3, auto_push=False)
        env = build_env(options, Config(target_repo=tmp_path), "/opt/meta-ralph.sh")

        assert env["REPO_ROOT"] == str(tmp_path)
        assert env["RALPH_STREAM_MODE"] == "true"
        assert env["RALPH_JSON_EVENTS"] == "true"
        assert env["RALPH_MODE"] == "plan"
        assert env["RALPH_MODEL"] == "opus"
        assert env["RALPH_MAX_ITERATIONS"] == "3"
        assert env["RALPH_AUTO_PUSH"] == "false"

    def test_env_repo_root_defaults_to_script_dir(self):
        """Without a target repo, REPO_ROOT is the script directory."""
        env = build_env(ProcessingOptions(), Config(), "/opt/ralph/meta-ralph.sh")

        assert env["REPO_ROOT"] == "/opt/ralph"


class TestProcessIssues:
    """Tests for process_issues() orchestration."""

    @pytest.mark.asyncio
    async def test_success_forwards_events(self, registry, ralph_config, mock_process_factory):
        """Sentinel events reach the registry and a clean exit completes every session."""
        stdout = (
            b">>> starting\n"
            + _event_line("activity", "A", {"id": "a1", "timestamp": "t", "type": "tool", "tool": "Read", "details": "Reading x"})
            + _event_line("metrics", "A", {"iteration": 1, "maxIterations": 10, "costUsd": 0.01})
            + _event_line("complete", "A", {"message": "A fixed"})
            + _event_line("activity", "B", {"id": "b1", "timestamp": "t", "type": "message", "details": "hi"})
        )
        mock_process = mock_process_factory(stdout=stdout, return_code=0)
        logs = []
        on_complete = MagicMock()

        with patch("asyncio.create_subprocess_exec", return_value=mock_process) as mock_exec:
            run = process_issues(
                ["A", "B"],
                on_log=logs.append,
                on_complete=on_complete,
                registry=registry,
                config=ralph_config,
            )
            assert registry.get_session("A").status == "processing"
            assert await run.wait() is True

        args = mock_exec.call_args[0]
        assert args[:2] == ("bash", str(ralph_config.script_path.resolve()))
        assert "A,B" in args

        session_a = registry.get_session("A")
        assert session_a.status == "completed"
        assert [a.id for a in session_a.activities][1:] == ["a1"]
        assert session_a.metrics.iteration == 1

        session_b = registry.get_session("B")
        assert session_b.status == "completed"
        assert session_b.activities[-1].details == "hi"

        assert run.current_issue_id == "B"
        assert ">>> starting" in logs
        assert "[tool] Reading x" in logs
        on_complete.assert_called_once_with(True)

    @pytest.mark.asyncio
    async def test_per_issue_outcome_not_overwritten(self, registry, ralph_config, mock_process_factory):
        """A failure reported by the subprocess survives a successful batch exit."""
        stdout = _event_line("error", "A", {"error": "could not reproduce"})
        mock_process = mock_process_factory(stdout=stdout, return_code=0)

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A", "B"], registry=registry, config=ralph_config)
            await run.wait()

        assert registry.get_session("A").status == "failed"
        assert registry.get_session("A").error == "could not reproduce"
        assert registry.get_session("B").status == "completed"

    @pytest.mark.asyncio
    async def test_split_chunks(self, registry, ralph_config, mock_process_factory):
        """An event split across stdout chunks is parsed only once the line is complete."""
        line = _event_line("activity", "A", {"id": "a1", "timestamp": "t", "type": "message", "details": "joined"})
        mock_process = mock_process_factory()
        mock_process.stdout = asyncio.StreamReader()
        received = []
        registry.subscribe("A", received.append)

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A"], registry=registry, config=ralph_config)
            await asyncio.sleep(0.01)

            mock_process.stdout.feed_data(line[:20])
            await asyncio.sleep(0.01)
            assert [e.payload.id for e in received if e.type == "activity"][1:] == []

            mock_process.stdout.feed_data(line[20:])
            mock_process.stdout.feed_eof()
            await run.wait()

        assert [e.payload.id for e in received if e.type == "activity"][1:] == ["a1"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_sessions(self, registry, ralph_config, mock_process_factory):
        """A non-zero exit code fails all non-terminal sessions."""
        mock_process = mock_process_factory(return_code=2)
        on_complete = MagicMock()

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A", "B"], on_complete=on_complete, registry=registry, config=ralph_config)
            assert await run.wait() is False

        for issue_id in ("A", "B"):
            session = registry.get_session(issue_id)
            assert session.status == "failed"
            assert session.error == "Processing failed with code 2"
        on_complete.assert_called_once_with(False)

    @pytest.mark.asyncio
    async def test_cancel_fails_all_immediately(self, registry, ralph_config):
        """Cancelling a 3-issue batch fails all three before the process exits."""
        mock_process = MagicMock()
        mock_process.returncode = None
        mock_process.stdout = asyncio.StreamReader()
        mock_process.stderr = asyncio.StreamReader()
        exited = asyncio.Event()

        async def wait():
            await exited.wait()
            mock_process.returncode = -15
            return -15

        mock_process.wait = wait
        on_complete = MagicMock()

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A", "B", "C"], on_complete=on_complete, registry=registry, config=ralph_config)
            await asyncio.sleep(0.01)

            run.cancel()

            mock_process.terminate.assert_called_once()
            for issue_id in ("A", "B", "C"):
                session = registry.get_session(issue_id)
                assert session.status == "failed"
                assert session.error == "Processing cancelled"
            on_complete.assert_called_once_with(False)

            # Late output from a process that ignored termination is still recorded
            mock_process.stdout.feed_data(
                _event_line("activity", "A", {"id": "late", "timestamp": "t", "type": "message", "details": "late"})
            )
            mock_process.stdout.feed_eof()
            mock_process.stderr.feed_eof()
            exited.set()
            await run.wait()

        assert registry.get_session("A").activities[-1].id == "late"
        assert registry.get_session("A").status == "failed"
        on_complete.assert_called_once_with(False)

    @pytest.mark.asyncio
    async def test_cancel_twice_is_harmless(self, registry, ralph_config, mock_process_factory):
        """A second cancel does not complete the batch again."""
        on_complete = MagicMock()

        with patch("asyncio.create_subprocess_exec", return_value=mock_process_factory()):
            run = process_issues(["A"], on_complete=on_complete, registry=registry, config=ralph_config)
            run.cancel()
            run.cancel()
            await run.wait()

        on_complete.assert_called_once_with(False)
        assert registry.get_session("A").error == "Processing cancelled"

    @pytest.mark.asyncio
    async def test_spawn_error(self, registry, ralph_config):
        """A spawn failure fails every session with the error message."""
        on_complete = MagicMock()

        with patch("asyncio.create_subprocess_exec", side_effect=PermissionError("Permission denied")):
            run = process_issues(["A", "B"], on_complete=on_complete, registry=registry, config=ralph_config)
            assert await run.wait() is False

        for issue_id in ("A", "B"):
            assert registry.get_session(issue_id).error == "Permission denied"
        on_complete.assert_called_once_with(False)

    @pytest.mark.asyncio
    async def test_missing_script(self, registry, tmp_path, monkeypatch):
        """Without a meta-ralph script the batch fails without spawning."""
        monkeypatch.delenv("META_RALPH_PATH", raising=False)
        monkeypatch.chdir(tmp_path)
        config = Config(script_path=tmp_path / "missing.sh")

        with patch("asyncio.create_subprocess_exec") as mock_exec:
            run = process_issues(["A"], registry=registry, config=config)
            await run.wait()

        mock_exec.assert_not_called()
        assert registry.get_session("A").status == "failed"
        assert "not found" in registry.get_session("A").error

    @pytest.mark.asyncio
    async def test_stderr_becomes_error_activity(self, registry, ralph_config, mock_process_factory):
        """stderr lines are logged and attributed to the current issue."""
        mock_process = mock_process_factory(stderr=b"\x1b[31mfatal: bad thing\x1b[0m\n")
        logs = []

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A"], on_log=logs.append, registry=registry, config=ralph_config)
            await run.wait()

        assert "[stderr] fatal: bad thing" in logs
        errors = [a for a in registry.get_session("A").activities if a.type == "error"]
        assert errors[0].details == "fatal: bad thing"
        assert errors[0].id.startswith("stderr-")

    @pytest.mark.asyncio
    async def test_oversized_stderr_line_does_not_stall(self, registry, ralph_config, mock_process_factory):
        """A stderr line longer than the stream limit is drained and the batch still finishes."""
        mock_process = mock_process_factory(
            stdout=b"done\n",
            stderr=b"x" * (STREAM_LIMIT + 10),
            return_code=0,
        )

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A"], registry=registry, config=ralph_config)
            assert await asyncio.wait_for(run.wait(), timeout=10) is True

        session = registry.get_session("A")
        assert session.status == "completed"
        errors = [a for a in session.activities if a.type == "error"]
        assert len(errors) == 1
        assert len(errors[0].details) == MAX_STDERR_DETAILS
        assert errors[0].details.endswith("...")

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_processed(self, registry, ralph_config, mock_process_factory):
        """A final sentinel line without a newline is handled when stdout closes."""
        stdout = _event_line("complete", "A", {"message": "A fixed"}).rstrip(b"\n")
        mock_process = mock_process_factory(stdout=stdout, return_code=1)

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A", "B"], registry=registry, config=ralph_config)
            await run.wait()

        assert registry.get_session("A").status == "completed"
        assert registry.get_session("B").status == "failed"

    @pytest.mark.asyncio
    async def test_stderr_follows_current_issue(self, registry, ralph_config, mock_process_factory):
        """stderr goes to the issue named by the latest event; system events do not move it."""
        stdout = (
            _event_line("activity", "A", {"id": "a1", "timestamp": "t", "type": "message", "details": "on A"})
            + _event_line("activity", "B", {"id": "b1", "timestamp": "t", "type": "message", "details": "on B"})
            + _event_line("activity", "system", {"id": "s1", "timestamp": "t", "type": "system", "details": "sync"})
        )
        mock_process = mock_process_factory(stdout=stdout)
        stderr = asyncio.StreamReader()
        mock_process.stderr = stderr

        def late_stderr():
            stderr.feed_data(b"warning: disk almost full\n")
            stderr.feed_eof()

        asyncio.get_running_loop().call_later(0.01, late_stderr)

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            run = process_issues(["A", "B"], registry=registry, config=ralph_config)
            await run.wait()

        assert run.current_issue_id == "B"
        errors_a = [a for a in registry.get_session("A").activities if a.type == "error"]
        errors_b = [a for a in registry.get_session("B").activities if a.type == "error"]
        assert errors_a == []
        assert [a.details for a in errors_b] == ["warning: disk almost full"]

    @pytest.mark.asyncio
    async def test_raw_stream_json_parsed(self, registry, ralph_config, mock_process_factory):
        """Non-sentinel stream-json lines are parsed into the current issue."""
        stdout = b'{"type":"result","result":{"cost_usd":0.0045,"duration_ms":12500}}\n'

        with patch("asyncio.create_subprocess_exec", return_value=mock_process_factory(stdout=stdout)):
            run = process_issues(
                ["A"],
                ProcessingOptions(max_iterations=4),
                registry=registry,
                config=ralph_config,
            )
            await run.wait()

        metrics = registry.get_session("A").metrics
        assert metrics.iteration == 1
        assert metrics.max_iterations == 4
        assert metrics.total_cost_usd == pytest.approx(0.0045)

    @pytest.mark.asyncio
    async def test_raw_output_parsing_disabled(self, registry, script_path, mock_process_factory):
        """With parse_raw_output off, stream-json lines only go to the log."""
        config = Config(script_path=script_path, parse_raw_output=False)
        stdout = b'{"type":"result","result":{"cost_usd":0.1,"duration_ms":1}}\n'
        logs = []

        with patch("asyncio.create_subprocess_exec", return_value=mock_process_factory(stdout=stdout)):
            run = process_issues(["A"], on_log=logs.append, registry=registry, config=config)
            await run.wait()

        assert registry.get_session("A").metrics is None
        assert logs == [stdout.decode().rstrip("\n")]

    @pytest.mark.asyncio
    async def test_failing_callbacks_do_not_break_batch(self, registry, ralph_config, mock_process_factory):
        """Exceptions from on_log and on_complete are contained."""
        with patch("asyncio.create_subprocess_exec", return_value=mock_process_factory(stdout=b"hello\n")):
            run = process_issues(
                ["A"],
                on_log=MagicMock(side_effect=RuntimeError("log")),
                on_complete=MagicMock(side_effect=RuntimeError("complete")),
                registry=registry,
                config=ralph_config,
            )
            assert await run.wait() is True

        assert registry.get_session("A").status == "completed"

    def test_empty_batch(self, registry):
        """An empty id list fails immediately without sessions."""
        on_complete = MagicMock()

        run = process_issues([], on_complete=on_complete, registry=registry, config=Config())

        assert run.finished is True
        assert run.success is False
        on_complete.assert_called_once_with(False)

    def test_no_running_loop(self, registry, ralph_config):
        """Called outside an event loop, the batch fails instead of raising."""
        run = process_issues(["A"], registry=registry, config=ralph_config)

        assert run.finished is True
        assert registry.get_session("A").error == "No running event loop"
