"""Status check tool for the meta-ralph orchestrator."""

from typing import Optional

from ..config import get_config
from ..context import ProcessingContext, get_context
from ..executor import check_meta_ralph_available


def check_status(context: Optional[ProcessingContext] = None) -> dict:
    """Check the status of the MCP server and its dependencies.

    Returns information about:
    - Whether the meta-ralph script is available
    - Whether the configuration is loaded
    - Whether GitHub access for CI polling is configured
    - Number of live sessions and running batches
    """
    # Check config
    try:
        config = get_config()
        config_loaded = True
        config_error = None
    except Exception as e:
        config = None
        config_loaded = False
        config_error = str(e)

    # Check meta-ralph
    script_available, script_message = check_meta_ralph_available(
        config.script_path if config else None
    )

    ctx = context or (get_context() if config_loaded else None)
    return {
        "meta_ralph_available": script_available,
        "meta_ralph_message": script_message,
        "config_loaded": config_loaded,
        "config_error": config_error,
        "github_configured": bool(config and config.github_token and config.github_repo),
        "session_count": len(ctx.registry.get_active_sessions()) if ctx else 0,
        "running_batches": sum(1 for r in ctx.runs.values() if not r.finished) if ctx else 0,
    }
