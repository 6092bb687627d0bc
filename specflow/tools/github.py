"""GitHub integration.

- GitHubClient: pull request creation over the REST API
- verify_signature / parse_feedback: inbound webhook handling for PR comments
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import Any

import httpx
from pydantic import BaseModel

from specflow.config import Settings
from specflow.errors import ExternalServiceError


logger = logging.getLogger(__name__)

BRANCH_PREFIX_RE = re.compile(r"^\[(.+?)\]")


class GitHubClient:
    """Minimal GitHub REST client scoped to one owner."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.owner = settings.github_owner
        self._client = client or httpx.AsyncClient(
            base_url=settings.github_api_url,
            headers={
                "Authorization": f"Bearer {settings.github_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=30.0,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "github",
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:200]}",
                e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("github", f"{method} {path} failed: {e}") from e
        return response.json()

    async def get_default_branch(self, repo: str) -> str:
        data = await self._request("GET", f"/repos/{self.owner}/{repo}")
        return data.get("default_branch") or "main"

    async def find_open_pull_request(self, repo: str, head: str) -> dict[str, Any] | None:
        pulls = await self._request(
            "GET",
            f"/repos/{self.owner}/{repo}/pulls",
            params={"head": f"{self.owner}:{head}", "state": "open"},
        )
        if not pulls:
            return None
        return {"number": pulls[0]["number"], "url": pulls[0]["html_url"], "created": False}

    async def create_pull_request(
        self,
        repo: str,
        head: str,
        title: str,
        body: str = "",
        base: str | None = None,
    ) -> dict[str, Any]:
        """Open a PR from ``head``; returns the already open PR for that branch if any."""
        existing = await self.find_open_pull_request(repo, head)
        if existing is not None:
            logger.info(f"[github] Reusing open PR #{existing['number']} for {repo}:{head}")
            return existing

        base = base or await self.get_default_branch(repo)
        data = await self._request(
            "POST",
            f"/repos/{self.owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        logger.info(f"[github] Opened PR #{data['number']} for {repo}:{head}")
        return {"number": data["number"], "url": data["html_url"], "created": True}

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Webhooks
# =============================================================================

class PullRequestFeedback(BaseModel):
    """A reviewer comment that should become an update spec."""
    repo: str
    branch: str
    pr_number: int
    title: str
    content: str


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an ``x-hub-signature-256`` header against the raw request body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


def branch_from_title(title: str | None) -> str | None:
    """Extract ``branch`` from a ``[branch] Title`` PR title."""
    match = BRANCH_PREFIX_RE.match(title or "")
    return match.group(1).strip() if match else None


def _review_comment_context(comment: dict[str, Any]) -> str:
    author = (comment.get("user") or {}).get("login", "unknown")
    context = f"Comment by {author}"

    path = comment.get("path")
    line = comment.get("line") or comment.get("original_line")
    start_line = comment.get("start_line") or line
    if path and line:
        context += f"\n\n**Location:** `{path}:{line}`"
        if start_line != line:
            context += f" (lines {start_line}-{line})"

    if comment.get("diff_hunk"):
        context += f"\n\n**Code Context:**\n```diff\n{comment['diff_hunk']}\n```"

    context += f"\n\n**Comment:**\n{comment.get('body', '')}"
    return context


def parse_feedback(event: str | None, payload: dict[str, Any]) -> PullRequestFeedback | None:
    """Turn a webhook delivery into PR feedback; None for anything unsupported."""
    if payload.get("action") != "created":
        return None

    repository = payload.get("repository") or {}
    comment = payload.get("comment") or {}
    repo = repository.get("name")
    if not repo or not comment:
        return None

    if event == "pull_request_review_comment":
        pr = payload.get("pull_request") or {}
        branch = (pr.get("head") or {}).get("ref")
        number = pr.get("number")
        if not branch or number is None:
            return None
        return PullRequestFeedback(
            repo=repo,
            branch=branch,
            pr_number=number,
            title=f"Update for PR {repo}#{number}",
            content=_review_comment_context(comment),
        )

    if event == "issue_comment":
        issue = payload.get("issue") or {}
        if not issue.get("pull_request"):
            logger.info("[webhook] Comment is not on a PR, ignoring")
            return None
        branch = branch_from_title(issue.get("title"))
        if not branch:
            logger.info(f"[webhook] PR #{issue.get('number')} title has no [branch] prefix, ignoring")
            return None
        author = (comment.get("user") or {}).get("login", "unknown")
        return PullRequestFeedback(
            repo=repo,
            branch=branch,
            pr_number=issue["number"],
            title=f"Update for PR {repo}#{issue['number']}",
            content=f"Comment by {author} on PR #{issue['number']}:\n\n{comment.get('body', '')}",
        )

    return None
