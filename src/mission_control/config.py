"""Runtime configuration for the scheduler, gateway and watchdog."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"
DEFAULT_GATEWAY_CONFIG_PATH = Path("~/.openclaw/openclaw.json")


@dataclass(slots=True)
class GatewaySettings:
    """Execution gateway connection settings."""

    url: str = DEFAULT_GATEWAY_URL
    token: str | None = None
    config_path: Path = DEFAULT_GATEWAY_CONFIG_PATH
    model: str | None = None
    request_timeout_seconds: float = 30.0
    transport_retries: int = 2


@dataclass(slots=True)
class DispatchSettings:
    """Phase and story dispatch settings."""

    api_base_url: str = "http://127.0.0.1:8080"
    phase_timeout_seconds: int = 1_800
    story_timeout_seconds: int = 1_200
    max_story_iterations: int = 10
    story_pacing_seconds: float = 2.0
    max_parallel: int = 3
    cleanup: str = "delete"


@dataclass(slots=True)
class WatchdogSettings:
    """Stale-work recovery and timer release settings."""

    enabled: bool = True
    interval_seconds: float = 300.0
    stale_after_seconds: int = 1_800
    max_retries: int = 3
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 1_800.0
    queue_interval_seconds: float = 600.0


@dataclass(slots=True)
class BroadcastSettings:
    """Live event fan-out settings."""

    inbox_size: int = 1_024
    subscriber_buffer: int = 256
    publish_timeout_seconds: float = 0.5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".mission_control.db")
    busy_timeout_ms: int = 5_000
    agents: tuple[tuple[str, str | None], ...] = ()
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    broadcast: BroadcastSettings = field(default_factory=BroadcastSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("MISSION_CONTROL_DB_PATH", ".mission_control.db")),
            busy_timeout_ms=int(os.getenv("MISSION_CONTROL_DB_BUSY_TIMEOUT_MS", "5000")),
            agents=_collect_agents(),
            gateway=GatewaySettings(
                url=os.getenv(
                    "MISSION_CONTROL_GATEWAY_URL",
                    os.getenv("OPENCLAW_GATEWAY_URL", DEFAULT_GATEWAY_URL),
                ),
                token=_env_optional(
                    "MISSION_CONTROL_GATEWAY_TOKEN",
                    fallback="OPENCLAW_GATEWAY_TOKEN",
                ),
                config_path=Path(
                    os.getenv(
                        "MISSION_CONTROL_GATEWAY_CONFIG_PATH",
                        str(DEFAULT_GATEWAY_CONFIG_PATH),
                    ),
                ),
                model=_env_optional("MISSION_CONTROL_GATEWAY_MODEL"),
                request_timeout_seconds=float(
                    os.getenv("MISSION_CONTROL_GATEWAY_TIMEOUT_SECONDS", "30"),
                ),
                transport_retries=int(os.getenv("MISSION_CONTROL_GATEWAY_RETRIES", "2")),
            ),
            dispatch=DispatchSettings(
                api_base_url=os.getenv("MISSION_CONTROL_API_URL", "http://127.0.0.1:8080"),
                phase_timeout_seconds=int(
                    os.getenv("MISSION_CONTROL_PHASE_TIMEOUT_SECONDS", "1800"),
                ),
                story_timeout_seconds=int(
                    os.getenv("MISSION_CONTROL_STORY_TIMEOUT_SECONDS", "1200"),
                ),
                max_story_iterations=int(
                    os.getenv("MISSION_CONTROL_MAX_STORY_ITERATIONS", "10"),
                ),
                story_pacing_seconds=float(
                    os.getenv("MISSION_CONTROL_STORY_PACING_SECONDS", "2.0"),
                ),
                max_parallel=int(os.getenv("MISSION_CONTROL_MAX_PARALLEL", "3")),
                cleanup=os.getenv("MISSION_CONTROL_SESSION_CLEANUP", "delete"),
            ),
            watchdog=WatchdogSettings(
                enabled=_env_bool("MISSION_CONTROL_WATCHDOG_ENABLED", default=True),
                interval_seconds=float(
                    os.getenv("MISSION_CONTROL_WATCHDOG_INTERVAL_SECONDS", "300"),
                ),
                stale_after_seconds=int(
                    os.getenv("MISSION_CONTROL_STALE_AFTER_SECONDS", "1800"),
                ),
                max_retries=int(os.getenv("MISSION_CONTROL_MAX_RETRIES", "3")),
                backoff_base_seconds=float(
                    os.getenv("MISSION_CONTROL_RETRY_BACKOFF_BASE_SECONDS", "60"),
                ),
                backoff_max_seconds=float(
                    os.getenv("MISSION_CONTROL_RETRY_BACKOFF_MAX_SECONDS", "1800"),
                ),
                queue_interval_seconds=float(
                    os.getenv("MISSION_CONTROL_QUEUE_INTERVAL_SECONDS", "600"),
                ),
            ),
            broadcast=BroadcastSettings(
                inbox_size=int(os.getenv("MISSION_CONTROL_BROADCAST_INBOX_SIZE", "1024")),
                subscriber_buffer=int(
                    os.getenv("MISSION_CONTROL_BROADCAST_SUBSCRIBER_BUFFER", "256"),
                ),
                publish_timeout_seconds=float(
                    os.getenv("MISSION_CONTROL_BROADCAST_PUBLISH_TIMEOUT_SECONDS", "0.5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        _validate_url(
            self.gateway.url,
            {"ws", "wss", "http", "https"},
            "MISSION_CONTROL_GATEWAY_URL",
        )
        _validate_url(self.dispatch.api_base_url, {"http", "https"}, "MISSION_CONTROL_API_URL")
        if self.busy_timeout_ms <= 0:
            raise ValueError("MISSION_CONTROL_DB_BUSY_TIMEOUT_MS must be > 0.")
        if self.gateway.request_timeout_seconds <= 0:
            raise ValueError("MISSION_CONTROL_GATEWAY_TIMEOUT_SECONDS must be > 0.")
        if self.gateway.transport_retries < 0:
            raise ValueError("MISSION_CONTROL_GATEWAY_RETRIES must be >= 0.")
        if self.dispatch.phase_timeout_seconds <= 0:
            raise ValueError("MISSION_CONTROL_PHASE_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.story_timeout_seconds <= 0:
            raise ValueError("MISSION_CONTROL_STORY_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.story_pacing_seconds < 0:
            raise ValueError("MISSION_CONTROL_STORY_PACING_SECONDS must be >= 0.")
        if self.dispatch.max_parallel <= 0:
            raise ValueError("MISSION_CONTROL_MAX_PARALLEL must be > 0.")
        if self.dispatch.cleanup not in {"delete", "keep"}:
            raise ValueError("MISSION_CONTROL_SESSION_CLEANUP must be 'delete' or 'keep'.")
        if self.watchdog.interval_seconds <= 0:
            raise ValueError("MISSION_CONTROL_WATCHDOG_INTERVAL_SECONDS must be > 0.")
        if self.watchdog.stale_after_seconds <= 0:
            raise ValueError("MISSION_CONTROL_STALE_AFTER_SECONDS must be > 0.")
        if self.watchdog.max_retries < 0:
            raise ValueError("MISSION_CONTROL_MAX_RETRIES must be >= 0.")
        if self.watchdog.backoff_base_seconds <= 0:
            raise ValueError("MISSION_CONTROL_RETRY_BACKOFF_BASE_SECONDS must be > 0.")
        if self.watchdog.backoff_max_seconds < self.watchdog.backoff_base_seconds:
            raise ValueError(
                "MISSION_CONTROL_RETRY_BACKOFF_MAX_SECONDS must be >= "
                "MISSION_CONTROL_RETRY_BACKOFF_BASE_SECONDS.",
            )
        if self.watchdog.queue_interval_seconds <= 0:
            raise ValueError("MISSION_CONTROL_QUEUE_INTERVAL_SECONDS must be > 0.")
        if self.broadcast.inbox_size <= 0:
            raise ValueError("MISSION_CONTROL_BROADCAST_INBOX_SIZE must be > 0.")
        if self.broadcast.subscriber_buffer <= 0:
            raise ValueError("MISSION_CONTROL_BROADCAST_SUBSCRIBER_BUFFER must be > 0.")
        if self.broadcast.publish_timeout_seconds < 0:
            raise ValueError("MISSION_CONTROL_BROADCAST_PUBLISH_TIMEOUT_SECONDS must be >= 0.")


def _collect_agents() -> tuple[tuple[str, str | None], ...]:
    """Parse ``MISSION_CONTROL_AGENTS`` as ``id[:name]`` comma-separated entries."""

    raw = os.getenv("MISSION_CONTROL_AGENTS", "").strip()
    if not raw:
        return ()

    agents: list[tuple[str, str | None]] = []
    seen: set[str] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        agent_id, _, name = token.partition(":")
        agent_id = agent_id.strip()
        if not agent_id:
            raise ValueError(f"Invalid MISSION_CONTROL_AGENTS entry: {token!r}")
        if agent_id in seen:
            continue
        seen.add(agent_id)
        agents.append((agent_id, name.strip() or None))
    return tuple(agents)


def _validate_url(value: str, schemes: set[str], name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. "
            f"Expected an absolute URL with one of {sorted(schemes)} schemes.",
        )


def _env_optional(name: str, fallback: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None and fallback is not None:
        value = os.getenv(fallback)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
