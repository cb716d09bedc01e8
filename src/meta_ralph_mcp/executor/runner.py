"""Main execution logic for running meta-ralph over a batch of issues.

One subprocess handles the whole batch. Its stdout is framed into lines,
sentinel-prefixed lines are forwarded to the session registry as protocol
events, stream-json lines are run through the event parser, and everything
else is passed to the log callback. Every batch ends with each of its
sessions terminal, exactly once, whatever the exit path.
"""

import asyncio
import codecs
import json
import os
import random
import string
from collections.abc import Callable
from pathlib import Path
from typing import Optional

from ..config import Config, ProcessingOptions, get_config
from .cli import SCRIPT_NAME, find_meta_ralph
from .events import create_parse_state, line_to_stream_events
from .logging import get_logger
from .models import Activity, ExecutionMetrics, ProcessingSession, StreamEvent
from .sessions import SessionRegistry
from .utils import generate_activity_id, now_ms, strip_ansi, truncate

CHUNK_SIZE = 64 * 1024
STREAM_LIMIT = 10 * 1024 * 1024
MAX_STDERR_DETAILS = 2000
SYSTEM_ISSUE_ID = "system"

LogCallback = Callable[[str], None]
CompleteCallback = Callable[[bool], None]


class LineBuffer:
    """Assembles complete lines from arbitrary pipe chunks.

    Chunk boundaries are never line boundaries: bytes are decoded
    incrementally (a multi-byte character may be split across chunks) and a
    trailing partial line is held until its newline arrives or ``flush()``.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._parts: list[str] = []

    @property
    def pending(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the lines it completed."""
        text = self._decoder.decode(chunk)
        if "\n" not in text:
            if text:
                self._parts.append(text)
            return []

        head, *lines, tail = text.split("\n")
        first = "".join(self._parts) + head
        self._parts = [tail] if tail else []
        return [line.rstrip("\r") for line in (first, *lines)]

    def flush(self) -> Optional[str]:
        """Return the buffered partial line, if it holds anything."""
        self._parts.append(self._decoder.decode(b"", final=True))
        rest = "".join(self._parts).rstrip("\r")
        self._parts = []
        return rest if rest.strip() else None


def parse_event_line(line: str, prefix: str = "RALPH_EVENT:") -> Optional[StreamEvent]:
    """Parse a sentinel-prefixed protocol line into a StreamEvent.

    Returns None for ordinary lines and for sentinel lines whose JSON is
    malformed or outside the event protocol.
    """
    if not line.startswith(prefix):
        return None

    json_str = line[len(prefix):]
    try:
        data = json.loads(json_str)
    except (ValueError, RecursionError):
        get_logger().warning(f"Failed to parse {prefix} {json_str[:100]}")
        return None

    event = StreamEvent.from_dict(data)
    if event is None:
        get_logger().warning(f"Ignoring {prefix} line outside the event protocol: {json_str[:100]}")
    return event


def format_log_line(event: StreamEvent) -> str:
    """Render a protocol event for the plain-text log callback."""
    payload = event.payload
    if isinstance(payload, Activity):
        return f"[{payload.type}] {payload.details or ''}"
    if isinstance(payload, ExecutionMetrics):
        return (
            f"[metrics] Iteration {payload.iteration}/{payload.max_iterations}, "
            f"cost: ${payload.cost_usd:.4f}"
        )
    if event.type == "complete":
        return f"[complete] {payload.get('message', '')}"
    return f"[error] {payload.get('error', '')}"


def build_command(script: str, issue_ids: list[str], config: Config) -> list[str]:
    return [
        "bash", script,
        "--only-ids", ",".join(issue_ids),
        "--providers", config.providers,
    ]


def build_env(options: ProcessingOptions, config: Config, script: str) -> dict[str, str]:
    env = dict(os.environ)
    env.update({
        "REPO_ROOT": str(config.target_repo or Path(script).parent),
        "RALPH_STREAM_MODE": "true",
        "RALPH_JSON_EVENTS": "true",
        "RALPH_MODE": options.mode,
        "RALPH_MODEL": options.model,
        "RALPH_MAX_ITERATIONS": str(options.max_iterations),
        "RALPH_AUTO_PUSH": "true" if options.auto_push else "false",
    })
    return env


def _batch_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"batch-{now_ms()}-{suffix}"


class BatchRun:
    """Handle for one meta-ralph subprocess processing a batch of issues."""

    def __init__(
        self,
        issue_ids: list[str],
        options: ProcessingOptions,
        registry: SessionRegistry,
        config: Config,
        on_log: Optional[LogCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> None:
        self.batch_id = _batch_id()
        self.issue_ids = list(issue_ids)
        self.options = options
        self.registry = registry
        self.config = config
        self.current_issue_id: Optional[str] = self.issue_ids[0] if self.issue_ids else None

        self.process: Optional[asyncio.subprocess.Process] = None
        self.return_code: Optional[int] = None
        self.finished = False
        self.success: Optional[bool] = None

        self._on_log = on_log
        self._on_complete = on_complete
        self._sessions: dict[str, ProcessingSession] = {}
        self._parse_state = create_parse_state(options.max_iterations)
        self._task: Optional[asyncio.Task] = None
        self._logger = get_logger()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Terminate the subprocess and fail every session in the batch now.

        Does not wait for the process to exit. Output that still arrives is
        recorded on the (already terminal) sessions.
        """
        if self.finished:
            return
        self._logger.info(f"[{self.batch_id}] Cancelling batch: {', '.join(self.issue_ids)}")
        self._terminate()
        self._finish(False, "Processing cancelled")

    async def wait(self) -> Optional[bool]:
        """Wait until the subprocess has exited and its output is drained."""
        if self._task is not None:
            await self._task
        return self.success

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start(self) -> None:
        for issue_id in self.issue_ids:
            self._sessions[issue_id] = self.registry.start_processing(issue_id, self.options)

    def _finish(self, success: bool, message: str) -> None:
        if self.finished:
            return
        self.finished = True
        self.success = success

        for issue_id in self.issue_ids:
            session = self.registry.get_session(issue_id)
            if session is not self._sessions.get(issue_id):
                # Restarted by another batch; not ours to terminate.
                continue
            if session is not None and session.is_terminal:
                # The subprocess already reported this issue's outcome.
                self.registry.schedule_cleanup(issue_id)
                continue
            self.registry.complete_processing(issue_id, success, message)

        if self._on_complete is not None:
            try:
                self._on_complete(success)
            except Exception:
                self._logger.exception(f"[{self.batch_id}] Error in completion callback")

    def _terminate(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

    def _spawn_failed(self, error: str) -> None:
        self._logger.error(f"[{self.batch_id}] ❌ Failed to spawn meta-ralph: {error}")
        self._log(f"[error] {error}")
        self._finish(False, error)

    async def _run(self) -> None:
        try:
            script = find_meta_ralph(self.config.script_path)
            if not script:
                self._spawn_failed(f"{SCRIPT_NAME} not found")
                return

            cmd = build_command(script, self.issue_ids, self.config)
            self._logger.info(
                f"[{self.batch_id}] 🚀 Starting | Issues: {', '.join(self.issue_ids)} | "
                f"Mode: {self.options.mode} | Model: {self.options.model}"
            )

            try:
                self.process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=STREAM_LIMIT,
                    cwd=str(Path(script).parent),
                    env=build_env(self.options, self.config, script),
                )
            except (OSError, ValueError) as e:
                self._spawn_failed(str(e))
                return

            if self.finished:
                # Cancelled while the process was being spawned
                self._terminate()

            assert self.process.stdout and self.process.stderr

            # Read streams to EOF first, then reap the process
            stdout_task = asyncio.create_task(self._read_stdout(self.process.stdout))
            stderr_task = asyncio.create_task(self._read_stderr(self.process.stderr))
            await stdout_task
            await stderr_task
            self.return_code = await self.process.wait()

            success = self.return_code == 0
            self._logger.info(f"[{self.batch_id}] Process exited with code {self.return_code}")
            self._finish(
                success,
                "Processing completed" if success else f"Processing failed with code {self.return_code}",
            )
        except Exception as e:
            self._logger.exception(f"[{self.batch_id}] Unexpected error")
            self._log(f"[error] {e}")
            self._finish(False, str(e))
        finally:
            if not self.finished:
                # The task itself was cancelled
                self._terminate()
                self._finish(False, "Processing cancelled")

    # ------------------------------------------------------------------
    # Output handling
    # ------------------------------------------------------------------

    async def _read_stdout(self, stdout: asyncio.StreamReader) -> None:
        await self._pump(stdout, self._handle_line, "stdout")

    async def _read_stderr(self, stderr: asyncio.StreamReader) -> None:
        await self._pump(stderr, self._handle_stderr_line, "stderr")

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        handle: Callable[[str], None],
        name: str,
    ) -> None:
        # Chunked reads keep the pipe drained whatever the line length
        buffer = LineBuffer()
        try:
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    handle(line)
        except (BrokenPipeError, ConnectionError, OSError) as e:
            self._logger.debug(f"[{self.batch_id}] {name} closed: {type(e).__name__}")

        rest = buffer.flush()
        if rest is not None:
            handle(rest)

    def _handle_line(self, line: str) -> None:
        line = strip_ansi(line)
        if not line.strip():
            return

        event = parse_event_line(line, self.config.event_prefix)
        if event is not None:
            self.registry.emit_event(event.issue_id, event)
            if event.issue_id != SYSTEM_ISSUE_ID:
                self._set_current_issue(event.issue_id)
            self._log(format_log_line(event))
            return

        if self.config.parse_raw_output and self.current_issue_id and line.lstrip().startswith("{"):
            events, self._parse_state = line_to_stream_events(
                line, self._parse_state, self.current_issue_id
            )
            for parsed in events:
                self.registry.emit_event(parsed.issue_id, parsed)

        self._log(line)

    def _handle_stderr_line(self, text: str) -> None:
        line = strip_ansi(text).strip()
        if not line:
            return
        line = truncate(line, MAX_STDERR_DETAILS)

        self._log(f"[stderr] {line}")
        if self.current_issue_id:
            activity = Activity.create(
                "error",
                details=line,
                status="error",
                id=generate_activity_id("stderr"),
            )
            self.registry.emit_event(
                self.current_issue_id,
                StreamEvent.activity(self.current_issue_id, activity),
            )

    def _set_current_issue(self, issue_id: str) -> None:
        if issue_id == self.current_issue_id:
            return
        self.current_issue_id = issue_id
        self._parse_state = create_parse_state(self.options.max_iterations)

    def _log(self, line: str) -> None:
        if self._on_log is None:
            return
        try:
            self._on_log(line)
        except Exception:
            self._logger.exception(f"[{self.batch_id}] Error in log callback")


def process_issues(
    issue_ids: list[str],
    options: Optional[ProcessingOptions] = None,
    on_log: Optional[LogCallback] = None,
    on_complete: Optional[CompleteCallback] = None,
    *,
    registry: SessionRegistry,
    config: Optional[Config] = None,
) -> BatchRun:
    """Start meta-ralph for a batch of issues.

    Sessions for every issue are started immediately; the subprocess is
    spawned on the running event loop. Never raises: every failure ends up
    as failed sessions plus an ``on_complete(False)`` call.

    Args:
        issue_ids: Issues to process, in order.
        options: Processing options. Defaults to the configured defaults.
        on_log: Receives every plain-text output line (legacy log feed).
        on_complete: Called once with the batch verdict.
        registry: Session registry receiving the events.
        config: Configuration. Loaded from disk/environment if omitted.

    Returns:
        BatchRun handle; call ``cancel()`` to stop the batch.
    """
    config = config or get_config()
    options = options or config.default_options
    run = BatchRun(issue_ids, options, registry, config, on_log, on_complete)

    if not run.issue_ids:
        get_logger().warning(f"[{run.batch_id}] No issue IDs to process")
        run._finish(False, "No issue IDs provided")
        return run

    run._start()

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        run._spawn_failed("No running event loop")
        return run

    run._task = loop.create_task(run._run())
    return run
