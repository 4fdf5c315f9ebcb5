from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ..config import HTTPSettings
from .errors import UpstreamUnreachable


logger = logging.getLogger(__name__)


def _build_timeout(settings: HTTPSettings) -> httpx.Timeout | float:
    if settings.connect_timeout or settings.read_timeout or settings.write_timeout:
        return httpx.Timeout(
            connect=settings.connect_timeout or settings.timeout,
            read=settings.read_timeout or settings.timeout,
            write=settings.write_timeout or settings.timeout,
            pool=None,
        )
    return settings.timeout


class ProviderHTTP:
    """Shared outbound JSON transport for Aliyun, WeChat and Apple.

    Transport failures and non-JSON bodies become ``UpstreamUnreachable``.
    There is no retry here; the only retry in the system is the App Store
    sandbox fallback, which is a protocol step and lives in the Apple client.
    """

    def __init__(self, settings: Optional[HTTPSettings] = None, client: Optional[httpx.Client] = None):
        settings = settings or HTTPSettings()
        self._client = client or httpx.Client(
            timeout=_build_timeout(settings),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Tuple[int, Dict[str, Any]]:
        try:
            resp = self._client.get(url, params=params, headers={"Accept": "application/json"})
        except httpx.RequestError as e:
            logger.warning("GET %s failed: %s", _host(url), e)
            raise UpstreamUnreachable(f"request to {_host(url)} failed: {e}")
        return resp.status_code, self._decode(resp, url)

    def post_json(self, url: str, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        try:
            resp = self._client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except httpx.RequestError as e:
            logger.warning("POST %s failed: %s", _host(url), e)
            raise UpstreamUnreachable(f"request to {_host(url)} failed: {e}")
        return resp.status_code, self._decode(resp, url)

    def _decode(self, resp: httpx.Response, url: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamUnreachable(f"invalid response from {_host(url)} (HTTP {resp.status_code})")
        if not isinstance(data, dict):
            raise UpstreamUnreachable(f"unexpected response from {_host(url)}")
        return data

    def close(self) -> None:
        self._client.close()


def _host(url: str) -> str:
    # Query strings carry secrets (WeChat app secret, signatures); log host only.
    try:
        return httpx.URL(url).host
    except httpx.InvalidURL:
        return "upstream"
