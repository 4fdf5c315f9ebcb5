from __future__ import annotations
from typing import Any, Dict, Optional


class ProviderError(Exception):
    """Base for failures surfaced to the caller as ``{"error": msg, **extra}``."""

    http_status = 500

    def __init__(self, msg: str, http_status: Optional[int] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(msg)
        self.msg = msg
        if http_status is not None:
            self.http_status = http_status
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.msg}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class ConfigMissing(ProviderError):
    http_status = 500


class UpstreamRejected(ProviderError):
    http_status = 400


class UpstreamUnreachable(ProviderError):
    http_status = 500


class Conflict(ProviderError):
    http_status = 400


class FederationFailed(ProviderError):
    http_status = 400


def require_config(**values: Optional[str]) -> None:
    """Fail closed when any named setting is empty."""
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigMissing(f"{' or '.join(missing)} not set")
