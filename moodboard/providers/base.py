"""Provider interface for upstream data sources."""
from __future__ import annotations

from abc import ABC
from typing import Any, Dict, Optional

from moodboard.errors import InvalidUpstreamPayload
from moodboard.transport import UpstreamResponse


class UpstreamProvider(ABC):
    """Builds requests for one third-party API and normalizes its responses.

    Providers never perform I/O; requests go through the fetch coordinator.
    """

    name: str = "base"
    api_key_setting: Optional[str] = None

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @property
    def api_key(self) -> Optional[str]:
        return self.config.get(self.api_key_setting) if self.api_key_setting else None

    def configured(self) -> bool:
        return self.api_key_setting is None or bool(self.api_key)

    def base_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": self.config.get("USER_AGENT", "Crypto-Mood-Dashboard/1.0"),
        }

    def json_body(self, response: UpstreamResponse, resource_key: str) -> Any:
        """Decoded JSON body or ``InvalidUpstreamPayload``."""
        body = response.json()
        if body is None:
            raise InvalidUpstreamPayload(
                f"{self.name} returned a non-JSON body for {resource_key}",
                detail={"resource_key": resource_key, "body": response.text[:200]},
            )
        return body


__all__ = ["UpstreamProvider"]
