"""Tool registry dispatch, sandbox git helpers and GitHub webhook parsing."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from specflow.agent.tools import (
    CloseSandboxInput,
    Tool,
    ToolName,
    ToolRegistry,
    cli_query_tool,
    close_sandbox_tool,
    report_completion_tool,
)
from specflow.errors import ExternalServiceError, NotFoundError, ValidationError
from specflow.tools.git_ops import clone_repo, configure_git, ensure_branch
from specflow.tools.github import branch_from_title, parse_feedback, verify_signature
from specflow.tools.sandbox import CLI_AGENT_CONFIG_PATH
from tests.conftest import FakeSandbox


def failing_tool(error: Exception) -> Tool:
    async def handler(params: CloseSandboxInput) -> dict:
        raise error

    return Tool(
        name=ToolName.CLOSE_SANDBOX,
        description="Always fails.",
        input_model=CloseSandboxInput,
        handler=handler,
    )


# =============================================================================
# Registry
# =============================================================================

def test_duplicate_tools_are_rejected():
    with pytest.raises(ValueError, match="Duplicate tool"):
        ToolRegistry([report_completion_tool(), report_completion_tool()])


def test_schemas_use_openai_function_format():
    registry = ToolRegistry([close_sandbox_tool(FakeSandbox()), report_completion_tool()])
    schemas = registry.schemas()

    assert registry.names == ["close_sandbox", "report_completion"]
    assert schemas[0]["type"] == "function"
    assert schemas[0]["function"]["name"] == "close_sandbox"
    assert schemas[0]["function"]["parameters"]["required"] == ["sandbox_id"]


async def test_dispatch_accepts_json_strings_and_dicts():
    sandbox = FakeSandbox()
    registry = ToolRegistry([close_sandbox_tool(sandbox)])

    assert await registry.dispatch("close_sandbox", '{"sandbox_id": "sbx-1"}') == {
        "sandbox_id": "sbx-1",
        "status": "stopped",
    }
    await registry.dispatch("close_sandbox", {"sandbox_id": "sbx-2"})
    assert sandbox.stopped == ["sbx-1", "sbx-2"]


async def test_dispatch_reports_bad_input_as_data():
    registry = ToolRegistry([close_sandbox_tool(FakeSandbox())])

    unknown = await registry.dispatch("rm_rf", {})
    assert unknown["error"] is True
    assert "Available tools: close_sandbox" in unknown["message"]

    not_an_object = await registry.dispatch("close_sandbox", "[1, 2]")
    assert not_an_object == {"error": True, "message": "Arguments for 'close_sandbox' must be a JSON object"}

    missing = await registry.dispatch("close_sandbox", {})
    assert missing["error"] is True
    assert "sandbox_id" in missing["message"]


@pytest.mark.parametrize("error", [ValidationError("bad repo"), NotFoundError("Thread", "t-1")])
async def test_domain_rejections_become_tool_errors(error):
    registry = ToolRegistry([failing_tool(error)])
    result = await registry.dispatch("close_sandbox", {"sandbox_id": "sbx-1"})
    assert result == {"error": True, "message": str(error)}


async def test_external_failures_propagate():
    registry = ToolRegistry([failing_tool(ExternalServiceError("sandbox", "timeout"))])
    with pytest.raises(ExternalServiceError):
        await registry.dispatch("close_sandbox", {"sandbox_id": "sbx-1"})


async def test_report_completion_invokes_callback():
    seen = []

    async def on_complete(params) -> None:
        seen.append(params.summary)

    registry = ToolRegistry([report_completion_tool(on_complete)])
    assert await registry.dispatch("report_completion", {"summary": "Shipped"}) == {"acknowledged": True}
    assert seen == ["Shipped"]


async def test_cli_query_runs_the_agent_in_the_checkout():
    sandbox = FakeSandbox()
    registry = ToolRegistry([cli_query_tool(sandbox, cwd="repo")])

    result = await registry.dispatch("cli_query", {"sandbox_id": "sbx-1", "query": "Add a dark mode toggle"})

    assert result == {"stdout": "Implemented the change.", "stderr": None, "exit_code": 0}
    cmd, args, cwd = sandbox.commands[-1]
    assert (cmd, cwd) == ("cn", "repo")
    assert args == ["--config", CLI_AGENT_CONFIG_PATH, "-p", "--auto", "Add a dark mode toggle"]


# =============================================================================
# Git operations
# =============================================================================

async def test_configure_git_stores_credentials():
    sandbox = FakeSandbox()
    result = await configure_git(sandbox, "sbx-1", "Specflow", "bot@specflow.dev", token="ghp_x")

    assert result.ok
    assert sandbox.commands[0] == ("git", ["config", "--global", "user.name", "Specflow"], None)
    assert "x-access-token:ghp_x@github.com" in sandbox.commands[-1][1][1]


async def test_clone_is_skipped_for_an_existing_checkout():
    sandbox = FakeSandbox()
    sandbox.failing = set()

    result = await clone_repo(sandbox, "sbx-1", "https://github.com/acme/webapp.git", "repo")

    assert result.ok
    assert result.data == {"path": "repo", "cloned": False}
    assert [cmd for cmd, _, _ in sandbox.commands] == ["test"]


async def test_clone_failure_is_reported_as_result():
    sandbox = FakeSandbox()
    sandbox.failing = {"test", "git"}

    result = await clone_repo(sandbox, "sbx-1", "https://github.com/acme/webapp.git", "repo")

    assert not result.ok
    assert result.error_code == "GIT_CLONE_FAILED"
    assert result.retryable


async def test_ensure_branch_creates_missing_branch():
    sandbox = FakeSandbox()
    result = await ensure_branch(sandbox, "sbx-1", "repo", "feat/autogen-1234abcd")

    assert result.ok
    assert result.data == {"branch": "feat/autogen-1234abcd", "created": True}
    assert sandbox.commands[-1] == ("git", ["checkout", "-B", "feat/autogen-1234abcd"], "repo")


# =============================================================================
# GitHub webhooks
# =============================================================================

def test_verify_signature():
    body = b'{"action": "created"}'
    digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    assert verify_signature("s3cret", body, f"sha256={digest}")
    assert not verify_signature("s3cret", body, "sha256=deadbeef")
    assert not verify_signature("s3cret", body, None)
    assert not verify_signature("other", body, f"sha256={digest}")


def test_branch_from_title():
    assert branch_from_title("[feat/autogen-1234abcd] Add dark mode") == "feat/autogen-1234abcd"
    assert branch_from_title("Add dark mode") is None
    assert branch_from_title(None) is None


def test_parse_review_comment():
    payload = {
        "action": "created",
        "repository": {"name": "webapp"},
        "pull_request": {"number": 12, "head": {"ref": "feat/autogen-1234abcd"}},
        "comment": {
            "user": {"login": "octocat"},
            "path": "src/theme.ts",
            "start_line": 10,
            "line": 14,
            "diff_hunk": "@@ -1,3 +1,4 @@\n+const dark = true;",
            "body": "Please read this from user preferences.",
        },
    }

    feedback = parse_feedback("pull_request_review_comment", payload)

    assert feedback.repo == "webapp"
    assert feedback.branch == "feat/autogen-1234abcd"
    assert feedback.pr_number == 12
    assert feedback.title == "Update for PR webapp#12"
    assert "`src/theme.ts:14` (lines 10-14)" in feedback.content
    assert "```diff" in feedback.content
    assert feedback.content.endswith("Please read this from user preferences.")


def test_parse_issue_comment_on_pull_request():
    payload = {
        "action": "created",
        "repository": {"name": "webapp"},
        "issue": {"number": 12, "title": "[feat/autogen-1234abcd] Dark mode", "pull_request": {"url": "..."}},
        "comment": {"user": {"login": "octocat"}, "body": "Also support high contrast."},
    }

    feedback = parse_feedback("issue_comment", payload)

    assert feedback.branch == "feat/autogen-1234abcd"
    assert feedback.content == "Comment by octocat on PR #12:\n\nAlso support high contrast."


@pytest.mark.parametrize(
    "event, payload",
    [
        ("push", {"action": "created", "repository": {"name": "webapp"}, "comment": {"body": "x"}}),
        ("issue_comment", {"action": "deleted", "repository": {"name": "webapp"}, "comment": {"body": "x"}}),
        (
            "issue_comment",
            {"action": "created", "repository": {"name": "webapp"}, "issue": {"number": 3}, "comment": {"body": "x"}},
        ),
        (
            "issue_comment",
            {
                "action": "created",
                "repository": {"name": "webapp"},
                "issue": {"number": 3, "title": "No prefix", "pull_request": {"url": "..."}},
                "comment": {"body": "x"},
            },
        ),
    ],
)
def test_unsupported_deliveries_are_ignored(event, payload):
    assert parse_feedback(event, payload) is None
