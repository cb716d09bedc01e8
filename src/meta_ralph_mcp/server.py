"""MCP Server for orchestrating meta-ralph issue processing.

This server starts meta-ralph batches, exposes per-issue session state,
streams live progress over Server-Sent Events and watches CI for pushed
fixes.
"""

import os
from typing import Annotated, Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from .context import get_context
from .executor.sse import sse_frames
from .tools import (
    cancel_processing as cancel_processing_impl,
    check_status as check_status_impl,
    get_ci_poll as get_ci_poll_impl,
    get_ci_status as get_ci_status_impl,
    get_session as get_session_impl,
    list_sessions as list_sessions_impl,
    process_issues as process_issues_impl,
    watch_ci as watch_ci_impl,
)

# Initialize the MCP server
mcp = FastMCP("Meta-Ralph Orchestrator")


@mcp.tool()
async def process_issues(
    issue_ids: Annotated[
        list[str],
        "IDs of the issues to fix, processed in order by one meta-ralph run",
    ],
    mode: Annotated[
        Optional[str],
        "'plan' to only write an implementation plan, 'build' to plan and implement",
    ] = None,
    model: Annotated[
        Optional[str],
        "Model identifier for the coding agent (optional)",
    ] = None,
    max_iterations: Annotated[
        Optional[int],
        "Maximum agent iterations per issue (optional)",
    ] = None,
    auto_push: Annotated[
        Optional[bool],
        "Whether to push the fix branch when done (optional)",
    ] = None,
) -> dict:
    """Start meta-ralph on a batch of issues.

    Returns as soon as the process is started. Follow progress with
    get_session(issue_id) or by streaming GET /api/process/stream?issueId=...

    Returns:
        A dictionary with:
        - success: Whether the batch was started
        - batch_id: Pass to cancel_processing() to stop the batch
        - issue_ids: The issues being processed
        - error: Error message if failed
    """
    return process_issues_impl(
        issue_ids=issue_ids,
        mode=mode,
        model=model,
        max_iterations=max_iterations,
        auto_push=auto_push,
    )


@mcp.tool()
def cancel_processing(
    batch_id: Annotated[str, "batch_id returned by process_issues"],
) -> dict:
    """Cancel a running batch.

    Every session of the batch is marked failed with "Processing cancelled"
    immediately; the process is terminated in the background.
    """
    return cancel_processing_impl(batch_id=batch_id)


@mcp.tool()
def get_session(
    issue_id: Annotated[str, "The issue ID to inspect"],
) -> dict:
    """Get the current activities, metrics and status for one issue."""
    return get_session_impl(issue_id=issue_id)


@mcp.tool()
def list_sessions() -> dict:
    """List all live processing sessions with their status."""
    return list_sessions_impl()


@mcp.tool()
async def get_ci_status(
    sha: Annotated[str, "The commit SHA to check"],
    branch: Annotated[str, "The branch name, for display"] = "unknown",
) -> dict:
    """Fetch CI check runs for a commit from GitHub once.

    Requires GITHUB_TOKEN and GITHUB_REPO (owner/repo).
    """
    return await get_ci_status_impl(sha=sha, branch=branch)


@mcp.tool()
async def watch_ci(
    sha: Annotated[str, "The commit SHA to watch"],
    branch: Annotated[str, "The branch name, for display"] = "unknown",
    issue_id: Annotated[
        Optional[str],
        "Issue the commit belongs to, attached to any fix attempt (optional)",
    ] = None,
    auto_fix_ci: Annotated[
        Optional[bool],
        "Queue a fix attempt if CI fails (defaults to configuration)",
    ] = None,
) -> dict:
    """Poll CI for a commit in the background until it finishes.

    Read progress with get_ci_poll(sha).
    """
    return watch_ci_impl(sha=sha, branch=branch, issue_id=issue_id, auto_fix_ci=auto_fix_ci)


@mcp.tool()
def get_ci_poll(
    sha: Annotated[str, "The commit SHA passed to watch_ci"],
) -> dict:
    """Get the progress of a CI watch started with watch_ci."""
    return get_ci_poll_impl(sha=sha)


@mcp.tool()
def check_status() -> dict:
    """Check the status of the MCP server and its dependencies.

    Returns information about:
    - Whether the meta-ralph script is available
    - Whether the configuration is loaded
    - Whether GitHub access for CI polling is configured (github_configured)
    - Number of live sessions and running batches (running_batches)
    """
    return check_status_impl()


@mcp.custom_route("/api/process/stream", methods=["GET"])
async def stream_processing(request: Request) -> Response:
    """Stream one issue's events as Server-Sent Events."""
    issue_id = request.query_params.get("issueId")
    if not issue_id:
        return JSONResponse({"error": "Missing issueId parameter"}, status_code=400)

    events = get_context().registry.open_stream(issue_id)
    return StreamingResponse(
        sse_frames(events),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


def main():
    """Entry point for the MCP server."""
    mcp.run(transport=os.environ.get("RALPH_MCP_TRANSPORT", "stdio"))


if __name__ == "__main__":
    main()
