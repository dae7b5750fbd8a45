"""HTTP client for the execution gateway ``/tools/invoke`` endpoint."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from mission_control.scheduler.gateway.base import GatewayError, SpawnRequest, SpawnResult
from mission_control.scheduler.gateway.rendering import render_briefing

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
SPAWN_TOOL = "sessions_spawn"


def http_base_url(gateway_url: str) -> str:
    """Map websocket gateway URLs onto their HTTP counterpart."""

    url = gateway_url.rstrip("/")
    if url.startswith("ws://"):
        return "http://" + url[len("ws://") :]
    if url.startswith("wss://"):
        return "https://" + url[len("wss://") :]
    return url


def load_gateway_config(config_path: Path) -> dict[str, Any]:
    path = config_path.expanduser()
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("Cannot read gateway config %s: %s", path, error)
        return {}
    return payload if isinstance(payload, dict) else {}


def load_gateway_token(config_path: Path) -> str | None:
    """Read ``gateway.auth.token`` from the local gateway config file."""

    config = load_gateway_config(config_path)
    token = config.get("gateway", {}).get("auth", {}).get("token")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


def read_gateway_agents(config_path: Path) -> list[tuple[str, str | None]]:
    """Agents listed under ``agents.list`` of the gateway config."""

    config = load_gateway_config(config_path)
    entries = config.get("agents", {}).get("list", [])
    agents: list[tuple[str, str | None]] = []
    if not isinstance(entries, list):
        return agents
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        agent_id = entry.get("id")
        if not isinstance(agent_id, str) or not agent_id.strip():
            continue
        name = entry.get("name")
        agents.append((agent_id.strip(), name if isinstance(name, str) and name else None))
    return agents


class GatewayClient:
    """Spawn sessions through the gateway's tool invocation API."""

    def __init__(
        self,
        *,
        gateway_url: str,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = http_base_url(gateway_url)
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=retries),
        )

    def spawn(self, request: SpawnRequest) -> SpawnResult:
        args: dict[str, Any] = {
            "task": render_briefing(request.briefing),
            "label": request.label,
            "cleanup": request.cleanup,
            "runTimeoutSeconds": request.timeout_seconds,
        }
        if request.agent_id:
            args["agentId"] = request.agent_id
        if request.model:
            args["model"] = request.model

        try:
            response = self._client.post("/tools/invoke", json={"tool": SPAWN_TOOL, "args": args})
        except httpx.TimeoutException as error:
            raise GatewayError(
                f"Gateway timed out spawning {request.label}",
                transient=True,
            ) from error
        except httpx.HTTPError as error:
            raise GatewayError(f"Gateway unreachable: {error}", transient=True) from error

        if response.status_code != httpx.codes.OK:
            raise GatewayError(
                f"spawn failed with status {response.status_code}: {response.text[:500]}",
                transient=response.status_code >= 500,
            )
        try:
            body = response.json()
        except ValueError as error:
            raise GatewayError("Gateway returned a non-JSON body", transient=False) from error

        if not isinstance(body, dict) or not body.get("ok"):
            error_payload = body.get("error") if isinstance(body, dict) else None
            message = "unknown error"
            if isinstance(error_payload, dict) and error_payload.get("message"):
                message = str(error_payload["message"])
            raise GatewayError(f"spawn failed: {message}", transient=False)

        result = body.get("result")
        if not isinstance(result, dict) or not result.get("childSessionKey"):
            raise GatewayError("spawn result is missing childSessionKey", transient=False)

        logger.info("Spawned session %s (%s)", result["childSessionKey"], request.label)
        return SpawnResult(
            session_key=str(result["childSessionKey"]),
            run_id=result.get("runId"),
            status=result.get("status"),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GatewayClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
