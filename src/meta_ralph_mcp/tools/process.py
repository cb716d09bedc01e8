"""Issue processing tools: start, cancel and inspect meta-ralph batches."""

from typing import Optional

from pydantic import ValidationError

from ..config import CONFIG_ERRORS, ProcessingOptions, get_config
from ..context import ProcessingContext, get_context
from ..executor import check_meta_ralph_available
from ..executor.logging import get_logger
from ..executor.runner import process_issues as run_batch


def process_issues(
    issue_ids: list[str],
    mode: Optional[str] = None,
    model: Optional[str] = None,
    max_iterations: Optional[int] = None,
    auto_push: Optional[bool] = None,
    context: Optional[ProcessingContext] = None,
) -> dict:
    """Start meta-ralph on a batch of issues.

    Returns immediately; progress is available through get_session() or the
    stream route.

    Returns:
        A dictionary with:
        - success: Whether the batch was started
        - batch_id: Handle for cancel_processing()
        - issue_ids: The issues in the batch
        - error: Error message if not started
    """
    issue_ids = [i.strip() for i in issue_ids if i and i.strip()]
    if not issue_ids:
        return {"success": False, "batch_id": None, "issue_ids": [], "error": "No issue IDs provided"}

    try:
        config = get_config()
        ctx = context or get_context()
    except CONFIG_ERRORS as e:
        return {"success": False, "batch_id": None, "issue_ids": issue_ids, "error": f"Failed to load config: {e}"}

    script_path = config.script_path
    available, message = check_meta_ralph_available(script_path)
    if not available:
        return {"success": False, "batch_id": None, "issue_ids": issue_ids, "error": message}

    overrides = {
        "mode": mode,
        "model": model,
        "max_iterations": max_iterations,
        "auto_push": auto_push,
    }
    values = config.default_options.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        options = ProcessingOptions.model_validate(values)
    except ValidationError as e:
        return {"success": False, "batch_id": None, "issue_ids": issue_ids, "error": str(e)}

    logger = get_logger()

    def on_log(line: str) -> None:
        logger.debug(f"[meta-ralph] {line}")

    run = run_batch(issue_ids, options, on_log=on_log, registry=ctx.registry, config=config)
    ctx.add_run(run)

    return {"success": True, "batch_id": run.batch_id, "issue_ids": run.issue_ids, "error": None}


def cancel_processing(batch_id: str, context: Optional[ProcessingContext] = None) -> dict:
    """Cancel a running batch; its sessions fail with "Processing cancelled"."""
    try:
        ctx = context or get_context()
    except CONFIG_ERRORS as e:
        return {"success": False, "batch_id": batch_id, "cancelled": [], "error": f"Failed to load config: {e}"}
    run = ctx.get_run(batch_id)
    if run is None:
        return {"success": False, "batch_id": batch_id, "cancelled": [], "error": f"Unknown batch: '{batch_id}'"}
    if run.finished:
        return {"success": False, "batch_id": batch_id, "cancelled": [], "error": "Batch already finished"}

    run.cancel()
    return {"success": True, "batch_id": batch_id, "cancelled": run.issue_ids, "error": None}


def get_session(issue_id: str, context: Optional[ProcessingContext] = None) -> dict:
    try:
        ctx = context or get_context()
    except CONFIG_ERRORS as e:
        return {"success": False, "session": None, "error": f"Failed to load config: {e}"}
    session = ctx.registry.get_session(issue_id)
    if session is None:
        return {"success": False, "session": None, "error": f"No session for issue '{issue_id}'"}
    return {"success": True, "session": session.snapshot(), "error": None}


def list_sessions(context: Optional[ProcessingContext] = None) -> dict:
    try:
        ctx = context or get_context()
    except CONFIG_ERRORS as e:
        return {"sessions": [], "count": 0, "error": f"Failed to load config: {e}"}
    sessions = [
        {
            "issueId": s.issue_id,
            "status": s.status,
            "activityCount": len(s.activities),
            "startedAt": s.started_at,
            "completedAt": s.completed_at,
            "error": s.error,
        }
        for s in ctx.registry.get_active_sessions()
    ]
    return {"sessions": sessions, "count": len(sessions), "error": None}
