"""Process-wide state owned by the server: sessions, running batches, CI polls."""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from .ci import CIPoller
from .config import Config, get_config
from .executor.runner import BatchRun
from .executor.sessions import SessionRegistry


@dataclass
class CIWatch:
    poller: CIPoller
    task: asyncio.Task


@dataclass
class ProcessingContext:
    """Everything the MCP tools and the stream route share.

    Handlers receive this explicitly; tests build their own instance.
    """

    registry: SessionRegistry
    runs: dict[str, BatchRun] = field(default_factory=dict)
    ci_watches: dict[str, CIWatch] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Config) -> "ProcessingContext":
        return cls(
            registry=SessionRegistry(
                max_activities=config.max_activities,
                cleanup_delay_ms=config.cleanup_delay_ms,
            )
        )

    def add_run(self, run: BatchRun) -> None:
        # Finished runs are only kept until the next batch starts.
        for batch_id in [b for b, r in self.runs.items() if r.finished]:
            del self.runs[batch_id]
        self.runs[run.batch_id] = run

    def get_run(self, batch_id: str) -> Optional[BatchRun]:
        return self.runs.get(batch_id)

    def watch(self, poller: CIPoller) -> CIWatch:
        """Run a CI poller in the background, replacing any watch on the same commit."""
        sha = poller.result.sha
        previous = self.ci_watches.get(sha)
        if previous is not None:
            previous.poller.stop()

        task = asyncio.get_running_loop().create_task(poller.run())
        watch = CIWatch(poller=poller, task=task)
        self.ci_watches[sha] = watch
        return watch


_context: Optional[ProcessingContext] = None


def get_context() -> ProcessingContext:
    """Get the server's default processing context."""
    global _context
    if _context is None:
        _context = ProcessingContext.from_config(get_config())
    return _context
