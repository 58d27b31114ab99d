import logging
from typing import AsyncIterator, List, Mapping, Optional, Tuple

import httpx

from .config import RoutingSettings
from .errors import UpstreamTransportError

logger = logging.getLogger(__name__)

UPSTREAM_TIMEOUT_SECONDS = 600

FORWARDED_HEADERS = ("content-type", "accept", "x-title", "http-referer")

# content-length is dropped because the relayed body is re-chunked by the server
DROPPED_RESPONSE_HEADERS = {
    "content-length",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def build_upstream_url(settings: RoutingSettings, path: str, query: str = "") -> str:
    target_path = path[len("/v1"):] if path.startswith("/v1") else path
    url = f"{settings.base_url}{target_path}"
    if query:
        url = f"{url}?{query}"
    return url


def build_upstream_headers(settings: RoutingSettings, inbound: Mapping[str, str]) -> dict:
    headers = {"authorization": f"Bearer {settings.openrouter_api_key}"}
    for name in FORWARDED_HEADERS:
        value = inbound.get(name)
        if value:
            headers[name] = value
    return headers


def relay_headers(response: httpx.Response) -> List[Tuple[bytes, bytes]]:
    # raw pairs so repeated headers such as set-cookie survive
    return [
        (name.lower(), value)
        for name, value in response.headers.raw
        if name.decode("latin-1").lower() not in DROPPED_RESPONSE_HEADERS
    ]


class UpstreamClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = UPSTREAM_TIMEOUT_SECONDS):
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False)

    async def send(self, method: str, url: str, headers: dict, content: Optional[bytes] = None) -> httpx.Response:
        """Open a streamed upstream response. The caller owns closing it (see relay())."""
        request = self.client.build_request(method, url, headers=headers, content=content)
        try:
            return await self.client.send(request, stream=True, follow_redirects=False)
        except httpx.HTTPError as e:
            raise UpstreamTransportError(url, str(e) or e.__class__.__name__) from e

    async def relay(self, response: httpx.Response, request_id: str = "") -> AsyncIterator[bytes]:
        """Yield the upstream body exactly as received, then release the connection."""
        try:
            async for chunk in response.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"[{request_id}] Upstream stream from {response.request.url} broke: {e}")
        finally:
            await response.aclose()

    async def aclose(self):
        await self.client.aclose()
