import time
from typing import Any, Dict, Optional

import httpx

from merchant_onboarding.settings import settings
from merchant_onboarding.errors import HttpStatusError, NetworkError
from merchant_onboarding.observability.logging import log


def _parse_body(resp: httpx.Response) -> Any:
    # Empty body -> None; non-JSON body -> raw text
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class HttpTransport:
    """
    Verb-based JSON transport: returns the parsed body on 2xx, raises
    HttpStatusError on any other status and NetworkError when the request
    never produced a response. Knows nothing about credentials.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.HTTP_TIMEOUT_SEC,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        method = method.upper()
        start = time.time()
        try:
            resp = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TransportError as e:
            log(
                event="http_transport_error",
                method=method,
                path=path,
                elapsedMs=int((time.time() - start) * 1000),
                errorType=type(e).__name__,
                error=str(e)[:200],
            )
            raise NetworkError(str(e) or type(e).__name__) from e

        body = _parse_body(resp)
        if not (200 <= resp.status_code < 300):
            log(
                event="http_status_error",
                method=method,
                path=path,
                statusCode=int(resp.status_code),
                elapsedMs=int((time.time() - start) * 1000),
            )
            raise HttpStatusError(resp.status_code, body, method=method, path=path)
        return body

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
