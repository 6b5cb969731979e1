"""GitHub merged-PR contribution source over the REST search API."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any

import httpx

from payroll_config.schema import GitHubSettings
from payroll_kernel.exceptions import ContributionSourceError
from payroll_kernel.logging_config import get_logger
from payroll_services.ports import (
    ContributionDetail,
    ContributionReport,
    DateRange,
    RepoSelection,
)

logger = get_logger("clients.github")

SEARCH_PATH = "/search/issues"
SEARCH_RESULT_CAP = 1000  # GitHub search never returns more than this
DEGRADING_STATUSES = {403, 429, 500, 502, 503, 504}


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubContributionSource:
    """Counts merged pull requests per author.

    Rate limiting and server errors on a repository degrade the report for
    that repository; they are never papered over with guessed counts. Only
    when no repository could be read at all is ContributionSourceError
    raised.
    """

    def __init__(
        self,
        settings: GitHubSettings | None = None,
        token: str | None = None,
        client: httpx.Client | None = None,
        fetch_details: bool = False,
    ) -> None:
        self.settings = settings or GitHubSettings()
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "payroll-engine",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = client or httpx.Client(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
        )
        self.client.headers.update(headers)
        self.fetch_details = fetch_details

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def build_query(repository: str, selection: RepoSelection, date_range: DateRange) -> str:
        query = (
            f"repo:{repository} is:pr is:merged "
            f"merged:{date_range.start.isoformat()}..{date_range.end.isoformat()}"
        )
        for label in selection.include_labels:
            query += f' label:"{label}"'
        return query

    def fetch(self, repo_selection: RepoSelection, date_range: DateRange) -> ContributionReport:
        counts: dict[str, int] = defaultdict(int)
        details: dict[str, list[ContributionDetail]] = defaultdict(list)
        degraded: list[str] = []
        failed_repos: list[str] = []
        excluded = {label.lower() for label in repo_selection.exclude_labels}

        for repository in repo_selection.repositories:
            try:
                items, truncated = self._search(
                    self.build_query(repository, repo_selection, date_range)
                )
            except ContributionSourceError as exc:
                if not exc.retryable:
                    raise
                logger.warning("github_repository_degraded", extra={
                    "repository": repository,
                    "detail": exc.detail,
                })
                degraded.append(f"{repository}: {exc.detail}")
                failed_repos.append(repository)
                continue

            if truncated:
                degraded.append(f"{repository}: search results truncated")

            for item in items:
                labels = {lbl.get("name", "").lower() for lbl in item.get("labels") or ()}
                if labels & excluded:
                    continue
                merged_at = _parse_timestamp((item.get("pull_request") or {}).get("merged_at"))
                login = (item.get("user") or {}).get("login")
                if not login:
                    degraded.append(f"{repository}#{item.get('number')}: missing author")
                    continue
                counts[login] += 1
                details[login].append(self._detail(repository, item, merged_at))

        if failed_repos and len(failed_repos) == len(repo_selection.repositories):
            raise ContributionSourceError(
                ",".join(failed_repos), "; ".join(degraded), retryable=True,
            )

        report = ContributionReport(
            counts=dict(counts),
            details={login: tuple(d) for login, d in details.items()},
            degraded=bool(degraded),
            degraded_reasons=tuple(degraded),
        )
        logger.info("github_contributions_fetched", extra={
            "repositories": list(repo_selection.repositories),
            "contributor_count": len(report.counts),
            "degraded": report.degraded,
        })
        return report

    def _search(self, query: str) -> tuple[list[dict[str, Any]], bool]:
        items: list[dict[str, Any]] = []
        per_page = self.settings.per_page
        for page in range(1, self.settings.max_pages + 1):
            payload = self._get(SEARCH_PATH, params={
                "q": query,
                "per_page": per_page,
                "page": page,
                "sort": "updated",
                "order": "desc",
            })
            page_items = payload.get("items")
            if not isinstance(page_items, list):
                raise ContributionSourceError(query, "unexpected search payload", retryable=True)
            items.extend(page_items)
            if len(page_items) < per_page:
                total = int(payload.get("total_count", len(items)))
                return items, bool(payload.get("incomplete_results")) or total > SEARCH_RESULT_CAP
        return items, True

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self.client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise ContributionSourceError(path, f"transport error: {exc}", retryable=True) from exc
        if response.status_code in DEGRADING_STATUSES:
            raise ContributionSourceError(
                path, f"HTTP {response.status_code}", retryable=True,
            )
        if response.status_code >= 400:
            raise ContributionSourceError(
                path, f"HTTP {response.status_code}: {response.text[:200]}", retryable=False,
            )
        return response.json()

    def _detail(
        self,
        repository: str,
        item: dict[str, Any],
        merged_at: datetime | None,
    ) -> ContributionDetail:
        additions = deletions = 0
        if self.fetch_details:
            pr = self._get(f"/repos/{repository}/pulls/{item['number']}")
            additions = int(pr.get("additions", 0))
            deletions = int(pr.get("deletions", 0))
        return ContributionDetail(
            repository=repository,
            number=int(item.get("number", 0)),
            title=item.get("title", ""),
            merged_at=merged_at,
            additions=additions,
            deletions=deletions,
        )
