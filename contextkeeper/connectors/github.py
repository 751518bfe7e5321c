"""Source-control connector for GitHub."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from contextkeeper.connectors.base import BaseConnector
from contextkeeper.connectors.config import GITHUB, AuthConfig, ConnectorConfig
from contextkeeper.connectors.errors import AuthError, ConfigError, ErrorCode, ErrorRule
from contextkeeper.connectors.models import (
    AuthResult,
    EventBatch,
    EventType,
    PlatformEvent,
    PlatformInfo,
    RateLimitInfo,
    oldest_window,
)

log = structlog.get_logger("contextkeeper.connectors")

# Per-cycle extraction ceilings.
MAX_PULL_REQUESTS = 50
MAX_ISSUES = 50
MAX_COMMITS = 100

# Listings are read newest-first down to `since`, at most this many pages.
_PAGE_SIZE = 100
_MAX_PAGES = 10

GITHUB_ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCode.RATE_LIMIT,
        status_codes=frozenset({429}),
        patterns=("rate limit",),
        retry_after=timedelta(hours=1),
    ),
    ErrorRule(ErrorCode.AUTH_ERROR, status_codes=frozenset({401}), patterns=("bad credentials",)),
    ErrorRule(ErrorCode.PERMISSION_ERROR, status_codes=frozenset({403})),
    ErrorRule(ErrorCode.NOT_FOUND, status_codes=frozenset({404, 410})),
    ErrorRule(ErrorCode.NETWORK_ERROR, patterns=("timeout", "connection")),
)


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """Extract (owner, repo) from ``owner/repo`` or a GitHub URL.

    Handles:
      - owner/repo
      - https://github.com/owner/repo(.git)
      - git@github.com:owner/repo.git

    Raises ValueError if the value cannot be parsed.
    """
    value = repo_url.strip().rstrip("/")
    if value.endswith(".git"):
        value = value[:-4]
    if value.startswith("git@"):
        value = value.partition(":")[2]
    parts = [p for p in value.split("/") if p]
    if len(parts) < 2:
        raise ValueError(f"cannot parse GitHub repository: {repo_url!r}")
    return parts[-2], parts[-1]


def split_limit(limit: int) -> tuple[int, int, int]:
    """Distribute *limit* across (pull requests, issues, commits) under the ceilings."""
    share, remainder = divmod(max(limit, 0), 3)
    shares = [share + (1 if i < remainder else 0) for i in range(3)]
    return (
        min(shares[0], MAX_PULL_REQUESTS),
        min(shares[1], MAX_ISSUES),
        min(shares[2], MAX_COMMITS),
    )


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _labels(item: dict[str, Any]) -> list[str]:
    return [label["name"] for label in item.get("labels") or [] if label.get("name")]


class GitHubConnector(BaseConnector):
    """Pull requests, issues, and commits of one repository.

    Credentials: ``auth_config.metadata.access_token``. Repository:
    ``metadata.owner`` + ``metadata.repo`` or ``metadata.repository``.
    """

    platform = GITHUB
    base_url = "https://api.github.com"
    default_sync_interval = timedelta(minutes=5)
    error_rules = GITHUB_ERROR_RULES

    def __init__(self, config: ConnectorConfig, **kwargs: Any) -> None:
        if not config.setting("access_token"):
            raise ConfigError("github: access_token is required in auth_config.metadata")
        owner, repo = config.setting("owner"), config.setting("repo")
        if not (owner and repo):
            repository = config.setting("repository")
            if not repository:
                raise ConfigError("github: owner/repo or repository is required")
            try:
                owner, repo = parse_repo_url(str(repository))
            except ValueError as exc:
                raise ConfigError(f"github: {exc}") from exc
        self.owner = str(owner)
        self.repo = str(repo)
        self.include_files = bool(config.setting("include_files", True))
        super().__init__(config, **kwargs)

    def _default_headers(self) -> dict[str, str]:
        return self._headers_for(str(self._config.setting("access_token")))

    @staticmethod
    def _headers_for(token: str) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"Bearer {token}",
        }

    # ── interface ──────────────────────────────────────────────────────────

    async def authenticate(self, config: AuthConfig) -> AuthResult:
        token = config.metadata.get("access_token")
        if not token:
            raise AuthError(self.platform, "access_token not found in auth metadata")

        client = self._client_for_token(self._headers_for(str(token)))
        try:
            response = await client.request("GET", "/user")
        finally:
            await client.close()

        user = response.json()
        scopes_header = response.headers.get("X-OAuth-Scopes", "")
        scopes = [s.strip() for s in scopes_header.split(",") if s.strip()] or list(config.scopes)
        return AuthResult(
            access_token=str(token),
            user_id=str(user.get("id", "")),
            user_login=str(user.get("login", "")),
            expires_at=datetime.now(timezone.utc) + timedelta(hours=24),
            scopes=scopes,
        )

    async def fetch_events(self, since: datetime, limit: int) -> EventBatch:
        """Fetch pull requests, issues and commits at or after *since*.

        *limit* is split evenly across the three kinds, then capped at
        50 pull requests, 50 issues, and 100 commits. A kind with more
        activity than its cap yields its oldest entries and sets the
        batch horizon, so the next sync resumes where this one stopped.
        """
        pr_cap, issue_cap, commit_cap = split_limit(limit)
        batch = EventBatch()
        if pr_cap:
            batch.merge(await self._fetch_pull_requests(since, pr_cap))
        if issue_cap:
            batch.merge(await self._fetch_issues(since, issue_cap))
        if commit_cap:
            batch.merge(await self._fetch_commits(since, commit_cap))
        log.info(
            "github.fetched",
            repo=f"{self.owner}/{self.repo}",
            since=since.isoformat(),
            events=len(batch),
            horizon=batch.horizon.isoformat() if batch.horizon else None,
        )
        return batch

    def get_platform_info(self) -> PlatformInfo:
        rl = self._config.rate_limit
        return PlatformInfo(
            name=GITHUB,
            display_name="GitHub",
            version="1.0.0",
            description="GitHub pull requests, issues, and commits",
            supported_events=(EventType.PULL_REQUEST, EventType.ISSUE, EventType.COMMIT),
            rate_limits=RateLimitInfo(
                requests_per_hour=rl.requests_per_hour,
                requests_per_minute=rl.requests_per_minute,
                burst_limit=rl.burst_limit,
                backoff_strategy="exponential",
                retry_after_header="X-RateLimit-Reset",
            ),
            auth_type="oauth2",
            required_scopes=("repo", "read:user"),
        )

    # ── collectors ─────────────────────────────────────────────────────────

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _fetch_pull_requests(self, since: datetime, cap: int) -> EventBatch:
        params = {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "per_page": _PAGE_SIZE,
        }
        found: list[tuple[datetime, dict[str, Any]]] = []
        async for pr in self._client.get_paginated(
            f"{self._repo_path}/pulls", params, max_pages=_MAX_PAGES
        ):
            updated = _parse_datetime(pr.get("updated_at")) or _parse_datetime(pr.get("created_at"))
            if updated is None or updated < since:
                break  # sorted by updated desc
            found.append((updated, pr))

        window, horizon = oldest_window(found, cap)
        batch = EventBatch(horizon=horizon)
        for updated, pr in window:
            files = await self._pull_request_files(pr["number"]) if self.include_files else []
            batch.append(
                PlatformEvent(
                    id=f"pr-{pr['id']}",
                    type=EventType.PULL_REQUEST,
                    timestamp=updated,
                    author=(pr.get("user") or {}).get("login", ""),
                    title=pr.get("title") or "",
                    content=pr.get("body") or "",
                    platform=GITHUB,
                    references=files,
                    metadata={
                        "number": pr.get("number"),
                        "state": "merged" if pr.get("merged_at") else pr.get("state", ""),
                        "merged": bool(pr.get("merged_at")),
                        "merged_at": pr.get("merged_at"),
                        "created_at": pr.get("created_at"),
                        "labels": _labels(pr),
                        "head_ref": (pr.get("head") or {}).get("ref", ""),
                        "url": pr.get("html_url", ""),
                        "files_changed": files,
                    },
                )
            )
        return batch

    async def _fetch_issues(self, since: datetime, cap: int) -> EventBatch:
        params = {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "since": since.isoformat(),
            "per_page": _PAGE_SIZE,
        }
        found: list[tuple[datetime, dict[str, Any]]] = []
        async for issue in self._client.get_paginated(
            f"{self._repo_path}/issues", params, max_pages=_MAX_PAGES
        ):
            if "pull_request" in issue:
                continue  # the issues endpoint also lists PRs
            updated = _parse_datetime(issue.get("updated_at")) or _parse_datetime(
                issue.get("created_at")
            )
            if updated is None or updated < since:
                break
            found.append((updated, issue))

        window, horizon = oldest_window(found, cap)
        return EventBatch(
            (
                PlatformEvent(
                    id=f"issue-{issue['id']}",
                    type=EventType.ISSUE,
                    timestamp=updated,
                    author=(issue.get("user") or {}).get("login", ""),
                    title=issue.get("title") or "",
                    content=issue.get("body") or "",
                    platform=GITHUB,
                    metadata={
                        "number": issue.get("number"),
                        "state": issue.get("state", ""),
                        "created_at": issue.get("created_at"),
                        "closed_at": issue.get("closed_at"),
                        "labels": _labels(issue),
                        "url": issue.get("html_url", ""),
                    },
                )
                for updated, issue in window
            ),
            horizon=horizon,
        )

    async def _fetch_commits(self, since: datetime, cap: int) -> EventBatch:
        params: dict[str, Any] = {"since": since.isoformat(), "per_page": _PAGE_SIZE}
        if branch := self._config.setting("branch"):
            params["sha"] = branch
        found: list[tuple[datetime, dict[str, Any]]] = []
        async for item in self._client.get_paginated(
            f"{self._repo_path}/commits", params, max_pages=_MAX_PAGES
        ):
            commit = item.get("commit") or {}
            committed = _parse_datetime((commit.get("author") or {}).get("date")) or (
                _parse_datetime((commit.get("committer") or {}).get("date"))
            )
            if committed is None or committed < since:
                continue  # author dates are not monotonic
            found.append((committed, item))

        window, horizon = oldest_window(found, cap)
        batch = EventBatch(horizon=horizon)
        for committed, item in window:
            commit = item.get("commit") or {}
            author = commit.get("author") or {}
            message = commit.get("message") or ""
            title, _, body = message.partition("\n")
            files = await self._commit_files(item["sha"]) if self.include_files else []
            batch.append(
                PlatformEvent(
                    id=f"commit-{item['sha']}",
                    type=EventType.COMMIT,
                    timestamp=committed,
                    author=(item.get("author") or {}).get("login") or author.get("name", ""),
                    title=title.strip(),
                    content=body.strip() or title.strip(),
                    platform=GITHUB,
                    references=files,
                    metadata={
                        "sha": item["sha"],
                        "url": item.get("html_url", ""),
                        "files_changed": files,
                    },
                )
            )
        return batch

    async def _pull_request_files(self, number: int) -> list[str]:
        files: list[str] = []
        async for item in self._client.get_paginated(
            f"{self._repo_path}/pulls/{number}/files", {"per_page": 100}, max_pages=3
        ):
            if filename := item.get("filename"):
                files.append(filename)
        return files

    async def _commit_files(self, sha: str) -> list[str]:
        detail = await self._client.get(f"{self._repo_path}/commits/{sha}")
        return [f["filename"] for f in detail.get("files") or [] if f.get("filename")]
