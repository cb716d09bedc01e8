"""Processing session registry and event fan-out.

Keeps the live state of every issue being processed, a bounded activity
history per issue, and the set of subscribers listening for its events.
All mutation happens on the event loop thread; per-issue delivery order is
the order of ``emit_event`` calls.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from typing import Optional

from ..config import ProcessingOptions
from .logging import get_logger
from .models import (
    DEFAULT_MAX_ACTIVITIES,
    Activity,
    ExecutionMetrics,
    ProcessingSession,
    StreamEvent,
)
from .utils import now_ms, utc_now_iso

DEFAULT_CLEANUP_DELAY_MS = 300000
DEFAULT_STREAM_QUEUE_SIZE = 1000

Subscriber = Callable[[StreamEvent], None]


class SessionRegistry:
    """In-memory sessions and subscribers keyed by issue id."""

    def __init__(
        self,
        max_activities: int = DEFAULT_MAX_ACTIVITIES,
        cleanup_delay_ms: int = DEFAULT_CLEANUP_DELAY_MS,
    ) -> None:
        self.max_activities = max_activities
        self.cleanup_delay_ms = cleanup_delay_ms

        self._sessions: dict[str, ProcessingSession] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._cleanup_deadlines: dict[str, float] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._logger = get_logger()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, issue_id: str) -> Optional[ProcessingSession]:
        return self._sessions.get(issue_id)

    def get_active_sessions(self) -> list[ProcessingSession]:
        return list(self._sessions.values())

    def create_session(
        self,
        issue_id: str,
        options: Optional[ProcessingOptions] = None,
    ) -> ProcessingSession:
        """Create a fresh pending session, replacing any previous one for the id."""
        self._cancel_cleanup(issue_id)
        session = ProcessingSession(
            issue_id=issue_id,
            options=options or ProcessingOptions(),
            max_activities=self.max_activities,
        )
        self._sessions[issue_id] = session
        return session

    def delete_session(self, issue_id: str) -> bool:
        """Drop a session and its subscribers."""
        self._cancel_cleanup(issue_id)
        self._subscribers.pop(issue_id, None)
        return self._sessions.pop(issue_id, None) is not None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def emit_event(self, issue_id: str, event: StreamEvent) -> None:
        """Record an event on the session (if any) and deliver it to subscribers.

        This is the only write path for session state. A failing subscriber
        is logged and skipped; it never affects other subscribers or the
        caller.
        """
        session = self._sessions.get(issue_id)
        if session is not None:
            self._apply(session, event)

        for callback in list(self._subscribers.get(issue_id, ())):
            try:
                callback(event)
            except Exception:
                self._logger.exception(f"[{issue_id}] Error in subscriber callback")

    def _apply(self, session: ProcessingSession, event: StreamEvent) -> None:
        payload = event.payload

        if event.type == "activity" and isinstance(payload, Activity):
            session.activities.append(payload)
        elif event.type == "metrics" and isinstance(payload, ExecutionMetrics):
            session.metrics = payload
        elif event.type in ("complete", "error"):
            if session.is_terminal:
                self._logger.debug(
                    f"[{session.issue_id}] Ignoring '{event.type}' for session already {session.status}"
                )
                return
            session.completed_at = utc_now_iso()
            if event.type == "complete":
                session.status = "completed"
            else:
                session.status = "failed"
                session.error = str(payload.get("error")) if isinstance(payload, dict) else None

    def subscribe(self, issue_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for an issue's events.

        Returns:
            A function that removes the callback again. Calling it more than
            once is harmless.
        """
        self._subscribers.setdefault(issue_id, []).append(callback)
        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            subs = self._subscribers.get(issue_id)
            if subs is None:
                return
            try:
                subs.remove(callback)
            except ValueError:
                pass
            if not subs:
                del self._subscribers[issue_id]

        return unsubscribe

    def subscriber_count(self, issue_id: str) -> int:
        return len(self._subscribers.get(issue_id, ()))

    # ------------------------------------------------------------------
    # Processing control
    # ------------------------------------------------------------------

    def start_processing(
        self,
        issue_id: str,
        options: Optional[ProcessingOptions] = None,
    ) -> ProcessingSession:
        """Create a session in ``processing`` state and announce it to subscribers."""
        session = self.create_session(issue_id, options)
        session.status = "processing"

        start_activity = Activity.create(
            "message",
            details=f"Starting processing in {session.options.mode} mode with {session.options.model}",
            status="success",
            id=f"start-{now_ms()}",
        )
        self.emit_event(issue_id, StreamEvent.activity(issue_id, start_activity))
        return session

    def complete_processing(
        self,
        issue_id: str,
        success: bool,
        message: Optional[str] = None,
    ) -> bool:
        """Move a session to its terminal state and emit the final event.

        Returns:
            True if a live session was terminated by this call, False if the
            session was missing or already terminal.
        """
        session = self._sessions.get(issue_id)
        terminated = session is not None and not session.is_terminal

        if success:
            event = StreamEvent.complete(issue_id, message or "Processing completed successfully")
        else:
            event = StreamEvent.error(issue_id, message or "Processing failed")

        # The terminal event is the state transition itself (see _apply).
        self.emit_event(issue_id, event)
        self.schedule_cleanup(issue_id)

        if terminated:
            self._logger.info(
                f"[{issue_id}] {'✅ Completed' if success else '❌ Failed'}"
                + (f": {message}" if message else "")
            )
        return terminated

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def schedule_cleanup(self, issue_id: str, delay_ms: Optional[int] = None) -> None:
        """Delete the session after a delay, if it is still terminal by then.

        With a running event loop a timer is armed; otherwise the deadline is
        only recorded and ``sweep()`` must be called to reap it.
        """
        delay = self.cleanup_delay_ms if delay_ms is None else delay_ms
        self._cancel_cleanup(issue_id)
        self._cleanup_deadlines[issue_id] = time.monotonic() + delay / 1000

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_handles[issue_id] = loop.call_later(
            delay / 1000, self._cleanup_if_terminal, issue_id
        )

    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Reap every session whose cleanup deadline has passed."""
        now = time.monotonic() if now is None else now
        deleted = []
        for issue_id, deadline in list(self._cleanup_deadlines.items()):
            if deadline <= now and self._cleanup_if_terminal(issue_id):
                deleted.append(issue_id)
        return deleted

    def _cleanup_if_terminal(self, issue_id: str) -> bool:
        self._cleanup_deadlines.pop(issue_id, None)
        self._cleanup_handles.pop(issue_id, None)

        session = self._sessions.get(issue_id)
        if session is None or not session.is_terminal:
            return False
        self.delete_session(issue_id)
        self._logger.debug(f"[{issue_id}] Session cleaned up")
        return True

    def _cancel_cleanup(self, issue_id: str) -> None:
        self._cleanup_deadlines.pop(issue_id, None)
        handle = self._cleanup_handles.pop(issue_id, None)
        if handle is not None:
            handle.cancel()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        issue_id: str,
        max_queue_size: int = DEFAULT_STREAM_QUEUE_SIZE,
        replay: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        """Iterate over an issue's events through a bounded per-subscriber queue.

        When ``replay`` is set, the current session history is yielded first,
        then live events follow in emission order. The stream ends after a
        terminal (``complete``/``error``) event. When the queue is full the
        oldest undelivered event is dropped.
        """
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=max_queue_size)

        def push(event: StreamEvent) -> None:
            if queue.full():
                queue.get_nowait()
                self._logger.warning(f"[{issue_id}] Stream queue full, dropped oldest event")
            queue.put_nowait(event)

        unsubscribe = self.subscribe(issue_id, push)
        try:
            backlog: list[StreamEvent] = []
            session = self._sessions.get(issue_id)
            if replay and session is not None:
                backlog.extend(StreamEvent.activity(issue_id, a) for a in session.activities)
                if session.metrics is not None:
                    backlog.append(StreamEvent.metrics(issue_id, session.metrics))
                if session.status == "completed":
                    backlog.append(StreamEvent.complete(issue_id, "Processing completed"))
                elif session.status == "failed":
                    backlog.append(StreamEvent.error(issue_id, session.error or "Processing failed"))

            for event in backlog:
                yield event
                if event.type in ("complete", "error"):
                    return

            while True:
                event = await queue.get()
                yield event
                if event.type in ("complete", "error"):
                    return
        finally:
            unsubscribe()
