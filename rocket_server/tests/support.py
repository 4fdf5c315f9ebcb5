from typing import Any, Callable, Dict, List, Tuple

import httpx

from rocket_server.app.db import make_engine, make_session_factory, init_db
from rocket_server.app.provider.http import ProviderHTTP


def memory_session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    return make_session_factory(engine)


class Upstream:
    """httpx.MockTransport router keyed by host; records every request."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, host: str, handler: Callable[[httpx.Request], httpx.Response]) -> "Upstream":
        self.routes[host] = handler
        return self

    def json(self, host: str, payload: Any, status_code: int = 200) -> "Upstream":
        return self.on(host, lambda req: httpx.Response(status_code, json=payload))

    def sequence(self, host: str, payloads: List[Tuple[int, Any]]) -> "Upstream":
        items = list(payloads)

        def handler(req: httpx.Request) -> httpx.Response:
            status_code, payload = items.pop(0)
            return httpx.Response(status_code, json=payload)

        return self.on(host, handler)

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            return httpx.Response(404, json={"error": "no route"})
        return handler(request)

    def calls_to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def http(self) -> ProviderHTTP:
        return ProviderHTTP(client=httpx.Client(transport=httpx.MockTransport(self._dispatch)))
