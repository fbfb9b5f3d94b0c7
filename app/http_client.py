"""httpx-backed client for HTTP conditions and validators."""

from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

logger = logging.getLogger("dynform.http")


class HttpxRequestClient:
    """Performs ``{url, method, headers}`` requests and returns ``{status, body}``.

    Bodies are decoded as JSON when the response says so, else returned as text.
    Transport failures propagate as httpx exceptions.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    async def request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        method = (request.get("method") or "GET").upper()
        url = request["url"]
        resp = await self._client.request(method, url, headers=request.get("headers") or None)
        logger.debug("http_request method=%s url=%s status=%s", method, url, resp.status_code)
        return {"status": resp.status_code, "body": _decode(resp)}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _decode(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    content_type = resp.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return resp.json()
        except ValueError:
            logger.warning("http_response_json_invalid url=%s", resp.request.url)
            return resp.text
    return resp.text
