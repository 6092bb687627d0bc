"""Sandbox service client.

Sandboxes are isolated, short-lived VMs addressed by an opaque id. The
service exposes:
- POST /sandboxes               create (honours ``Idempotency-Key``)
- POST /sandboxes/{id}/stop     stop
- POST /sandboxes/{id}/commands run a command, returns exit code and output
- POST /sandboxes/{id}/files    write files

Commands return a ``ToolResult`` (non-zero exit is data, not an error);
transport failures and non-2xx responses raise ExternalServiceError.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any

import httpx

from specflow.config import Settings
from specflow.errors import ExternalServiceError
from specflow.schemas import ToolResult


logger = logging.getLogger(__name__)


class SandboxClient:
    """REST client for the sandbox service."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.timeout_seconds = settings.sandbox_timeout_seconds
        self.vcpus = settings.sandbox_vcpus
        self.runtime = settings.sandbox_runtime
        self._client = client or httpx.AsyncClient(
            base_url=settings.sandbox_api_url,
            headers={"Authorization": f"Bearer {settings.sandbox_api_token}"},
            timeout=httpx.Timeout(60.0, read=float(settings.sandbox_timeout_seconds)),
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "sandbox",
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:200]}",
                e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("sandbox", f"{method} {path} failed: {e}") from e
        return response.json() if response.content else {}

    async def create(
        self,
        source_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Create a sandbox, optionally cloning a git source into it.

        Returns ``{"sandbox_id": ..., "status": ...}``. Repeating a create
        with the same ``idempotency_key`` returns the same sandbox.
        """
        body: dict[str, Any] = {
            "resources": {"vcpus": self.vcpus},
            "timeout": self.timeout_seconds * 1000,
            "runtime": self.runtime,
        }
        if source_url:
            body["source"] = {"type": "git", "url": source_url}
            if username and password:
                body["source"].update({"username": username, "password": password})

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        data = await self._request("POST", "/sandboxes", json=body, headers=headers)
        sandbox_id = data.get("sandbox_id") or data.get("id")
        if not sandbox_id:
            raise ExternalServiceError("sandbox", "create response carried no sandbox id")
        logger.info(f"[sandbox:{sandbox_id}] Created (key={idempotency_key})")
        return {"sandbox_id": sandbox_id, "status": data.get("status", "running")}

    async def stop(self, sandbox_id: str) -> dict[str, Any]:
        data = await self._request("POST", f"/sandboxes/{sandbox_id}/stop")
        logger.info(f"[sandbox:{sandbox_id}] Stopped")
        return {"sandbox_id": sandbox_id, "status": data.get("status", "stopped")}

    async def run_command(
        self,
        sandbox_id: str,
        cmd: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        sudo: bool = False,
        env: dict[str, str] | None = None,
    ) -> ToolResult:
        """Run ``cmd args...`` in the sandbox and wait for it to exit."""
        start = time.perf_counter()
        body: dict[str, Any] = {"cmd": cmd, "args": args or [], "sudo": sudo}
        if cwd:
            body["cwd"] = cwd
        if env:
            body["env"] = env

        data = await self._request("POST", f"/sandboxes/{sandbox_id}/commands", json=body)
        latency_ms = int((time.perf_counter() - start) * 1000)

        exit_code = int(data.get("exit_code", data.get("exitCode", 1)))
        stdout = data.get("stdout") or ""
        stderr = data.get("stderr") or ""
        logger.info(f"[sandbox:{sandbox_id}] {cmd} exited {exit_code} in {latency_ms}ms")

        return ToolResult(
            ok=exit_code == 0,
            data={
                "stdout": stdout,
                "stderr": stderr,
                "exit_code": exit_code,
                "command": " ".join([cmd, *(args or [])]),
            },
            error_code="COMMAND_FAILED" if exit_code != 0 else None,
            error_message=(stderr or f"exit code {exit_code}") if exit_code != 0 else None,
            latency_ms=latency_ms,
        )

    async def write_files(self, sandbox_id: str, files: list[dict[str, str]]) -> None:
        """Write ``[{"path", "content"}]`` text files into the sandbox."""
        payload = [
            {
                "path": f["path"],
                "content": base64.b64encode(f["content"].encode("utf-8")).decode("ascii"),
            }
            for f in files
        ]
        await self._request("POST", f"/sandboxes/{sandbox_id}/files", json={"files": payload})
        logger.info(f"[sandbox:{sandbox_id}] Wrote {len(files)} file(s)")

    async def mkdir(self, sandbox_id: str, path: str) -> ToolResult:
        return await self.run_command(sandbox_id, "mkdir", ["-p", path])

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# CLI coding agent
# =============================================================================

CLI_AGENT_PACKAGE = "@continuedev/cli"
CLI_AGENT_CONFIG_DIR = "/tmp/.continue"
CLI_AGENT_CONFIG_PATH = f"{CLI_AGENT_CONFIG_DIR}/config.yaml"


async def install_cli_agent(client: SandboxClient, sandbox_id: str, config_yaml: str) -> ToolResult:
    """Install the CLI coding agent and write its config."""
    result = await client.run_command(sandbox_id, "npm", ["install", "-g", CLI_AGENT_PACKAGE], sudo=True)
    if not result.ok:
        return result
    await client.mkdir(sandbox_id, CLI_AGENT_CONFIG_DIR)
    await client.write_files(sandbox_id, [{"path": CLI_AGENT_CONFIG_PATH, "content": config_yaml}])
    return ToolResult(ok=True, data={"config_path": CLI_AGENT_CONFIG_PATH})


async def run_cli_query(
    client: SandboxClient,
    sandbox_id: str,
    query: str,
    cwd: str | None = None,
) -> dict[str, Any]:
    """Send a natural-language instruction to the CLI coding agent."""
    result = await client.run_command(
        sandbox_id,
        "cn",
        ["--config", CLI_AGENT_CONFIG_PATH, "-p", "--auto", query],
        cwd=cwd,
    )
    data = result.data or {}
    return {
        "stdout": data.get("stdout") or None,
        "stderr": data.get("stderr") or None,
        "exit_code": data.get("exit_code"),
    }
