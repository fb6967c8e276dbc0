from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

import requests

from orbit.config import ConfigManager
from orbit.services.errors import OrbitException

logger = logging.getLogger(__name__)

CALL_TIMEOUT = 120


class RegistrationError(OrbitException):
    pass


class McpClient:
    """JSON-RPC client for the orchestrator's MCP endpoint (``tools/call``)."""

    def __init__(self, base_url: str | None, *, session: requests.Session | None = None) -> None:
        self.base_url = f"{base_url.rstrip('/')}/mcp" if base_url else None
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: ConfigManager, *, session: requests.Session | None = None) -> McpClient:
        return cls(config.get_sequence_url(), session=session)

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.base_url:
            raise RegistrationError("MCP endpoint is not configured")

        payload = {
            "jsonrpc": "2.0",
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments or {}},
            "id": uuid4().hex,
        }
        try:
            response = self._session.post(self.base_url, json=payload, timeout=CALL_TIMEOUT)
        except requests.RequestException as exc:
            raise RegistrationError(f"MCP call failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400:
            message = (body or {}).get("error", {}).get("message") if isinstance(body, dict) else None
            raise RegistrationError(f"MCP call failed: {message or response.text[:200]}")
        if not isinstance(body, dict):
            raise RegistrationError("MCP call returned a non-JSON response")
        if "error" in body:
            error = body["error"] if isinstance(body["error"], dict) else {}
            raise RegistrationError(f"MCP error: {error.get('message', 'Unknown error')}")

        result = body.get("result") or {}
        content = result.get("content") if isinstance(result, dict) else None
        if isinstance(content, list) and content and isinstance(content[0], dict) and "_meta" in content[0]:
            result["meta"] = content[0]["_meta"]
        logger.debug("MCP tool %s returned %s", name, result)
        return result

    def register_project(self, *, slug: str, local_path: str, github_repo: str | None = None, name: str | None = None) -> dict[str, Any]:
        arguments: dict[str, Any] = {"name": name or slug, "slug": slug, "local_path": local_path}
        if github_repo:
            arguments["github_repo"] = github_repo
        return self.call_tool("create-project", arguments)
