"""CI status polling for pushed fix branches.

Fetches GitHub check runs for a commit, reduces them to an overall status
and, when a run fails and auto-fix is enabled, hands the failures to a fix
trigger. Poll state is reported through ``CIPollResult``; nothing here goes
through the session registry.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import httpx

from .config import CIPollingConfig, Config
from .executor.logging import get_logger
from .executor.utils import now_ms, truncate, utc_now_iso

CIOverallStatus = Literal["pending", "running", "success", "failure", "mixed"]
CIPollState = Literal["idle", "polling", "waiting", "completed", "error", "stopped"]

FAILED_CONCLUSIONS = ("failure", "timed_out", "startup_failure")
TERMINAL_CI_STATUSES = ("success", "failure", "mixed")
MAX_FAILURE_LOG_LENGTH = 2000
GITHUB_API_VERSION = "2022-11-28"


class CIError(Exception):
    """CI status could not be fetched."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CICheck:
    """One GitHub check run."""

    id: str
    name: str
    status: str
    conclusion: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    details_url: str = ""
    output_title: Optional[str] = None
    output_summary: Optional[str] = None
    output_text: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status != "completed"

    @property
    def is_failed(self) -> bool:
        return self.status == "completed" and self.conclusion in FAILED_CONCLUSIONS

    @classmethod
    def from_github(cls, run: dict[str, Any]) -> "CICheck":
        output = run.get("output") or {}
        return cls(
            id=str(run.get("id", "")),
            name=str(run.get("name", "")),
            status=str(run.get("status") or "queued"),
            conclusion=run.get("conclusion"),
            started_at=run.get("started_at"),
            completed_at=run.get("completed_at"),
            details_url=run.get("html_url") or run.get("details_url") or "",
            output_title=output.get("title"),
            output_summary=output.get("summary"),
            output_text=output.get("text"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "detailsUrl": self.details_url,
        }
        if self.output_title or self.output_summary or self.output_text:
            data["output"] = {
                "title": self.output_title,
                "summary": self.output_summary,
                "text": self.output_text,
            }
        return data


@dataclass(frozen=True)
class CheckSummary:
    """Check runs bucketed by outcome."""

    failed: list[CICheck] = field(default_factory=list)
    running: list[CICheck] = field(default_factory=list)
    passed: list[CICheck] = field(default_factory=list)
    other: list[CICheck] = field(default_factory=list)


@dataclass(frozen=True)
class CIStatus:
    """CI state of one commit at one point in time."""

    sha: str
    branch: str
    checks: list[CICheck]
    overall_status: CIOverallStatus
    last_polled_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha": self.sha,
            "branch": self.branch,
            "checks": [c.to_dict() for c in self.checks],
            "overallStatus": self.overall_status,
            "lastPolledAt": self.last_polled_at,
        }


@dataclass(frozen=True)
class CIFailure:
    check_name: str
    error: str
    logs: Optional[str] = None

    @classmethod
    def from_check(cls, check: CICheck) -> "CIFailure":
        return cls(
            check_name=check.name,
            error=check.output_title or check.output_summary or str(check.conclusion),
            logs=check.output_text,
        )


@dataclass(frozen=True)
class CIFixRequest:
    owner: str
    repo: str
    sha: str
    failures: list[CIFailure]
    issue_id: Optional[str] = None


@dataclass(frozen=True)
class CIFixResponse:
    success: bool
    message: str
    fix_attempt_id: Optional[str] = None
    context: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "fixAttemptId": self.fix_attempt_id,
        }


@dataclass
class CIPollResult:
    """Progress and outcome of one polling loop."""

    sha: str
    branch: str
    state: CIPollState = "idle"
    status: Optional[CIStatus] = None
    poll_count: int = 0
    errors: list[str] = field(default_factory=list)
    fix: Optional[CIFixResponse] = None

    @property
    def finished(self) -> bool:
        return self.state in ("completed", "error", "stopped")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha": self.sha,
            "branch": self.branch,
            "state": self.state,
            "status": self.status.to_dict() if self.status else None,
            "pollCount": self.poll_count,
            "errors": list(self.errors),
            "fix": self.fix.to_dict() if self.fix else None,
            "finished": self.finished,
        }


def classify_checks(checks: list[CICheck]) -> CheckSummary:
    summary = CheckSummary()
    for check in checks:
        if check.is_running:
            summary.running.append(check)
        elif check.is_failed:
            summary.failed.append(check)
        elif check.conclusion == "success":
            summary.passed.append(check)
        else:
            summary.other.append(check)
    return summary


def compute_overall_status(checks: list[CICheck]) -> CIOverallStatus:
    """Reduce check runs to one status.

    Precedence: failure, then running, then mixed (completed checks with
    differing conclusions), then success. No checks at all is pending.
    """
    if not checks:
        return "pending"

    summary = classify_checks(checks)
    if summary.failed:
        return "failure"
    if summary.running:
        return "running"
    if len({c.conclusion for c in checks}) > 1:
        return "mixed"
    return "success"


@dataclass(frozen=True)
class GitHubChecksClient:
    """Reads check runs from the GitHub REST API.

    Mockable in tests through the ``transport`` override.
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: Optional[httpx.AsyncBaseTransport] = None

    @classmethod
    def from_config(cls, config: Config) -> "GitHubChecksClient":
        if not config.github_token:
            raise CIError("GitHub token not configured. Set GITHUB_TOKEN environment variable.")
        if not config.github_repo:
            raise CIError(
                "GitHub repository not configured. "
                "Set GITHUB_REPO environment variable (owner/repo format)."
            )
        return cls(token=config.github_token, repo=config.github_repo, api_base=config.github_api_base)

    @property
    def owner_and_name(self) -> tuple[str, str]:
        owner, _, name = self.repo.partition("/")
        return owner, name

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport)

    async def get_ci_status(self, sha: str, branch: str = "unknown") -> CIStatus:
        url = f"{self.api_base}/repos/{self.repo}/commits/{sha}/check-runs"
        try:
            async with self._client() as c:
                r = await c.get(url, headers=self._headers(), params={"per_page": 100})
        except httpx.HTTPError as e:
            raise CIError(f"Failed to fetch CI status: {e}") from e

        if r.status_code == 404:
            raise CIError("Commit not found or no check runs available yet", 404)
        if r.status_code == 401:
            raise CIError("GitHub authentication failed. Check GITHUB_TOKEN.", 401)
        if r.is_error:
            get_logger().warning(f"GitHub API error {r.status_code}: {r.text[:200]}")
            raise CIError(f"GitHub API error: {r.status_code}", r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise CIError(f"Invalid response from GitHub: {e}") from e

        checks = [CICheck.from_github(run) for run in data.get("check_runs") or []]
        return CIStatus(
            sha=sha,
            branch=branch,
            checks=checks,
            overall_status=compute_overall_status(checks),
            last_polled_at=utc_now_iso(),
        )


def build_fix_context(repo: str, sha: str, failures: list[CIFailure]) -> str:
    """Describe CI failures as a task for the coding agent."""
    entries = []
    for i, failure in enumerate(failures, 1):
        entry = f"{i}. {failure.check_name}: {failure.error}"
        if failure.logs:
            entry += f"\n   Logs:\n   {truncate(failure.logs, MAX_FAILURE_LOG_LENGTH)}"
        entries.append(entry)

    return (
        f"CI/CD Pipeline Failures for {repo} at commit {sha}:\n\n"
        + "\n\n".join(entries)
        + "\n\nPlease analyze these CI failures and attempt to fix them. Focus on:\n"
        "1. Type errors and linting issues\n"
        "2. Test failures\n"
        "3. Build errors\n"
        "4. Security scan findings\n\n"
        "After identifying the root cause, make the necessary code changes to resolve the failures.\n"
    )


def queue_ci_fix(request: CIFixRequest) -> CIFixResponse:
    """Record a fix attempt for a failed CI run."""
    if not request.owner or not request.repo or not request.sha:
        return CIFixResponse(success=False, message="Missing required parameters: owner, repo, sha")
    if not request.failures:
        return CIFixResponse(success=False, message="No failures to fix")

    fix_attempt_id = f"ci-fix-{now_ms()}-{request.sha[:7]}"
    context = build_fix_context(f"{request.owner}/{request.repo}", request.sha, request.failures)
    get_logger().info(
        f"[{fix_attempt_id}] CI fix queued for {request.owner}/{request.repo}@{request.sha[:7]} "
        f"({len(request.failures)} failure(s), issue: {request.issue_id or '-'})"
    )
    return CIFixResponse(
        success=True,
        message=(
            f"CI fix attempt queued. The agent will analyze {len(request.failures)} "
            "failure(s) and attempt fixes."
        ),
        fix_attempt_id=fix_attempt_id,
        context=context,
    )


FixTrigger = Callable[[CIFixRequest], CIFixResponse]


class CIPoller:
    """Bounded polling loop over one commit's CI status."""

    def __init__(
        self,
        client: GitHubChecksClient,
        sha: str,
        branch: str = "unknown",
        config: Optional[CIPollingConfig] = None,
        auto_fix: bool = False,
        fix_trigger: Optional[FixTrigger] = None,
        issue_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.config = config or CIPollingConfig()
        self.auto_fix = auto_fix
        self.fix_trigger = fix_trigger or queue_ci_fix
        self.issue_id = issue_id
        self.result = CIPollResult(sha=sha, branch=branch)
        self._stop_event = asyncio.Event()
        self._logger = get_logger()

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> CIPollResult:
        result = self.result
        interval = self.config.interval_ms / 1000

        while not self._stop_event.is_set():
            if result.poll_count >= self.config.max_retries:
                result.state = "error"
                result.errors.append("Maximum polling attempts reached")
                self._logger.warning(f"[ci:{result.sha[:7]}] Maximum polling attempts reached")
                return result

            result.poll_count += 1
            result.state = "polling"
            try:
                status = await self.client.get_ci_status(result.sha, result.branch)
            except CIError as e:
                result.errors.append(str(e))
                self._logger.warning(f"[ci:{result.sha[:7]}] Poll {result.poll_count} failed: {e}")
            else:
                result.status = status
                self._logger.debug(
                    f"[ci:{result.sha[:7]}] Poll {result.poll_count}: {status.overall_status}"
                )
                if status.overall_status in TERMINAL_CI_STATUSES:
                    result.state = "completed"
                    self._maybe_fix(status)
                    return result

            result.state = "waiting"
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        result.state = "stopped"
        return result

    def _maybe_fix(self, status: CIStatus) -> None:
        failed = classify_checks(status.checks).failed
        if not failed or not self.auto_fix:
            return

        owner, repo = self.client.owner_and_name
        request = CIFixRequest(
            owner=owner,
            repo=repo,
            sha=status.sha,
            failures=[CIFailure.from_check(c) for c in failed],
            issue_id=self.issue_id,
        )
        try:
            self.result.fix = self.fix_trigger(request)
        except Exception as e:
            self._logger.exception(f"[ci:{status.sha[:7]}] Fix trigger failed")
            self.result.fix = CIFixResponse(success=False, message=str(e))
