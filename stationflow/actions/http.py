"""HTTP action executor."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import BaseModel, JsonValue

from ..errors import ActionError

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = {"GET", "HEAD"}


class HttpResult(BaseModel):
    success: bool
    status: int
    data: JsonValue = None


class ActionExecutor(Protocol):
    """Performs the outbound call of an ``http`` node."""

    async def execute(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: JsonValue = None,
        timeout_ms: int = 15000,
    ) -> HttpResult: ...


class HttpActionExecutor:
    """Default executor on top of ``httpx.AsyncClient``.

    Transport failures and timeouts raise :class:`ActionError`. Responses
    are returned as :class:`HttpResult`, with ``success`` false for non-2xx
    statuses; bodies that are not JSON come back as ``{"text": ...}``.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def execute(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: JsonValue = None,
        timeout_ms: int = 15000,
    ) -> HttpResult:
        method = method.upper()
        request_headers = {"content-type": "application/json", **(headers or {})}
        content = None if method in _BODYLESS_METHODS else json.dumps(body)
        try:
            response = await self._client.request(
                method,
                url,
                headers=request_headers,
                content=content,
                timeout=timeout_ms / 1000,
            )
        except httpx.TimeoutException as e:
            raise ActionError(f"HTTP {method} {url} timed out after {timeout_ms} ms") from e
        except httpx.HTTPError as e:
            raise ActionError(f"HTTP {method} {url} failed: {e}") from e

        data: Any
        try:
            data = response.json()
        except ValueError:
            data = {"text": response.text}

        if not response.is_success:
            logger.warning(f"HTTP {method} {url} returned {response.status_code}")
        return HttpResult(
            success=response.is_success, status=response.status_code, data=data
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
