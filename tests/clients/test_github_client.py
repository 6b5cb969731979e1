"""Tests for GitHubContributionSource against a mocked search API."""

from datetime import date

import httpx
import pytest

from payroll_config.schema import GitHubSettings
from payroll_kernel.exceptions import ContributionSourceError
from payroll_services.clients.github import GitHubContributionSource
from payroll_services.ports import DateRange, RepoSelection

MAY = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 31))


def _pr(number, login, labels=(), merged_at="2024-05-10T12:00:00Z"):
    return {
        "number": number,
        "title": f"PR {number}",
        "user": {"login": login} if login else None,
        "labels": [{"name": name} for name in labels],
        "pull_request": {"merged_at": merged_at},
    }


def _source(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://api.github.com")
    return GitHubContributionSource(client=client, token="t0ken", **kwargs)


class TestQuery:

    def test_query_has_merge_window_and_labels(self):
        selection = RepoSelection(repositories=("acme/widgets",), include_labels=("bounty",))
        query = GitHubContributionSource.build_query("acme/widgets", selection, MAY)
        assert query == 'repo:acme/widgets is:pr is:merged merged:2024-05-01..2024-05-31 label:"bounty"'


class TestFetch:

    def test_counts_merged_prs_per_author(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "total_count": 3,
                "incomplete_results": False,
                "items": [_pr(1, "alice"), _pr(2, "alice"), _pr(3, "bob")],
            })

        report = _source(handler).fetch(RepoSelection(repositories=("acme/widgets",)), MAY)

        assert report.counts == {"alice": 2, "bob": 1}
        assert not report.degraded
        assert [d.number for d in report.details["alice"]] == [1, 2]
        assert seen[0].headers["Authorization"] == "Bearer t0ken"
        assert "repo:acme/widgets" in seen[0].url.params["q"]

    def test_excluded_labels_case_insensitive(self):
        def handler(request):
            return httpx.Response(200, json={
                "total_count": 2,
                "items": [_pr(1, "alice", labels=("Chore",)), _pr(2, "bob")],
            })

        selection = RepoSelection(repositories=("acme/widgets",), exclude_labels=("chore",))
        report = _source(handler).fetch(selection, MAY)

        assert report.counts == {"bob": 1}

    def test_missing_author_degrades(self):
        def handler(request):
            return httpx.Response(200, json={"total_count": 1, "items": [_pr(7, None)]})

        report = _source(handler).fetch(RepoSelection(repositories=("acme/widgets",)), MAY)

        assert report.counts == {}
        assert report.degraded_reasons == ("acme/widgets#7: missing author",)

    def test_pagination_and_truncation(self):
        def handler(request):
            page = int(request.url.params["page"])
            return httpx.Response(200, json={
                "total_count": 5,
                "items": [_pr(page * 10 + i, "alice") for i in range(2)],
            })

        source = _source(handler, settings=GitHubSettings(per_page=2, max_pages=2))
        report = source.fetch(RepoSelection(repositories=("acme/widgets",)), MAY)

        assert report.counts == {"alice": 4}
        assert report.degraded_reasons == ("acme/widgets: search results truncated",)

    def test_rate_limited_repository_degrades_report(self, captured_logs):
        def handler(request):
            if "acme/gadgets" in request.url.params["q"]:
                return httpx.Response(403, json={"message": "API rate limit exceeded"})
            return httpx.Response(200, json={"total_count": 1, "items": [_pr(1, "alice")]})

        selection = RepoSelection(repositories=("acme/widgets", "acme/gadgets"))
        report = _source(handler).fetch(selection, MAY)

        assert report.counts == {"alice": 1}
        assert report.degraded
        assert report.degraded_reasons == ("acme/gadgets: HTTP 403",)
        assert any(r["message"] == "github_repository_degraded" for r in captured_logs())

    def test_every_repository_failing_raises(self):
        def handler(request):
            return httpx.Response(503)

        with pytest.raises(ContributionSourceError):
            _source(handler).fetch(RepoSelection(repositories=("acme/widgets",)), MAY)

    def test_bad_credentials_are_not_degradation(self):
        def handler(request):
            return httpx.Response(401, json={"message": "Bad credentials"})

        with pytest.raises(ContributionSourceError) as exc_info:
            _source(handler).fetch(RepoSelection(repositories=("acme/widgets",)), MAY)
        assert exc_info.value.retryable is False

    def test_details_fetch_line_counts(self):
        def handler(request):
            if request.url.path.startswith("/repos/"):
                return httpx.Response(200, json={"additions": 12, "deletions": 3})
            return httpx.Response(200, json={"total_count": 1, "items": [_pr(4, "alice")]})

        report = _source(handler, fetch_details=True).fetch(
            RepoSelection(repositories=("acme/widgets",)), MAY,
        )

        (detail,) = report.details["alice"]
        assert (detail.additions, detail.deletions) == (12, 3)
        assert detail.merged_at.year == 2024
