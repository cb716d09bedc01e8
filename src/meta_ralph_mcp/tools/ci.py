"""CI status tools for pushed fix branches."""

from typing import Optional

from ..ci import CIError, CIPoller, GitHubChecksClient
from ..config import CONFIG_ERRORS, get_config
from ..context import ProcessingContext, get_context


async def get_ci_status(sha: str, branch: str = "unknown") -> dict:
    """Fetch the current CI status of a commit once."""
    if not sha:
        return {"success": False, "status": None, "error": "Missing required parameter: sha"}

    try:
        config = get_config()
    except CONFIG_ERRORS as e:
        return {"success": False, "status": None, "error": f"Failed to load config: {e}"}

    try:
        client = GitHubChecksClient.from_config(config)
        status = await client.get_ci_status(sha, branch)
    except CIError as e:
        return {"success": False, "status": None, "error": str(e)}

    return {"success": True, "status": status.to_dict(), "error": None}


def watch_ci(
    sha: str,
    branch: str = "unknown",
    issue_id: Optional[str] = None,
    auto_fix_ci: Optional[bool] = None,
    context: Optional[ProcessingContext] = None,
) -> dict:
    """Start polling a commit's CI status in the background.

    Poll progress is read back with get_ci_poll(sha).
    """
    if not sha:
        return {"success": False, "sha": sha, "error": "Missing required parameter: sha"}

    try:
        config = get_config()
        ctx = context or get_context()
    except CONFIG_ERRORS as e:
        return {"success": False, "sha": sha, "error": f"Failed to load config: {e}"}

    try:
        client = GitHubChecksClient.from_config(config)
    except CIError as e:
        return {"success": False, "sha": sha, "error": str(e)}

    if auto_fix_ci is None:
        auto_fix_ci = config.default_options.auto_fix_ci

    poller = CIPoller(
        client,
        sha,
        branch,
        config=config.ci,
        auto_fix=auto_fix_ci,
        issue_id=issue_id,
    )
    ctx.watch(poller)
    return {
        "success": True,
        "sha": sha,
        "interval_ms": config.ci.interval_ms,
        "max_retries": config.ci.max_retries,
        "error": None,
    }


def get_ci_poll(sha: str, context: Optional[ProcessingContext] = None) -> dict:
    try:
        ctx = context or get_context()
    except CONFIG_ERRORS as e:
        return {"success": False, "poll": None, "error": f"Failed to load config: {e}"}
    watch = ctx.ci_watches.get(sha)
    if watch is None:
        return {"success": False, "poll": None, "error": f"No CI watch for commit '{sha}'"}
    return {"success": True, "poll": watch.poller.result.to_dict(), "error": None}
