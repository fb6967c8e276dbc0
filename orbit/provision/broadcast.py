from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

import pusher
from pusher.errors import PusherError
import requests

from orbit.config import ConfigManager

logger = logging.getLogger(__name__)

STATUS_EVENT = "project.provision.status"
FANOUT_CHANNEL = "provisioning"
PUBLISH_TIMEOUT = 5


def project_channel(slug: str) -> str:
    return f"project.{slug}"


def status_event(slug: str, status: str, error: str | None = None) -> dict[str, Any]:
    return {
        "slug": slug,
        "status": status,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class ReverbBroadcaster:
    """Publishes events to Reverb through its Pusher-compatible HTTP API.

    Publishing is best-effort: when broadcasting is disabled or the server
    cannot be reached the call logs and returns, it never raises.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        app_id: str,
        app_key: str,
        app_secret: str,
        host: str = "127.0.0.1",
        port: int = 6001,
        scheme: str = "http",
        client: pusher.Pusher | None = None,
    ) -> None:
        self.enabled = enabled
        self._client = client or pusher.Pusher(
            app_id=app_id,
            key=app_key,
            secret=app_secret,
            host=host,
            port=port,
            ssl=scheme == "https",
            timeout=PUBLISH_TIMEOUT,
        )

    @classmethod
    def from_config(cls, config: ConfigManager) -> ReverbBroadcaster:
        reverb = config.get_reverb_config()
        # server-side publishing goes to the internal plain-HTTP port, not the TLS edge
        return cls(
            enabled=reverb["enabled"],
            app_id=str(reverb["app_id"]),
            app_key=str(reverb["app_key"]),
            app_secret=str(reverb["app_secret"]),
            host=str(reverb["host"]),
            port=int(reverb["internal_port"]),
        )

    def publish(self, channel: str, event: str, payload: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            self._client.trigger(channel, event, payload)
        except (PusherError, requests.RequestException, ValueError) as exc:
            logger.warning("Reverb broadcast to %s failed: %s", channel, exc)
            return False
        logger.debug("Broadcast %s on %s", event, channel)
        return True

    def broadcast_status(self, slug: str, status: str, error: str | None = None) -> dict[str, Any]:
        event = status_event(slug, status, error)
        for channel in (project_channel(slug), FANOUT_CHANNEL):
            self.publish(channel, STATUS_EVENT, event)
        return event
