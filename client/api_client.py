from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from shared.protocol import MatchmakingStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


class ApiError(RuntimeError):
    """Raised when the matchmaking API cannot be reached or rejects a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MatchmakingApi:
    """Thin async client for the remote matchmaking API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_status(self) -> MatchmakingStatus:
        data = await self._request("GET", "/matchmaking/status")
        return MatchmakingStatus.from_dict(data)

    async def update_peer_id(self, session_id: str, peer_id: Optional[str]) -> None:
        """Publish (or clear, with ``None``) this participant's signaling address."""
        await self._request("PUT", f"/sessions/{session_id}/peer-id", json={"peerId": peer_id})

    async def join(self) -> Dict[str, Any]:
        return await self._request("POST", "/matchmaking/join")

    async def cancel(self) -> Dict[str, Any]:
        return await self._request("POST", "/matchmaking/cancel")

    async def create_match(self) -> Dict[str, Any]:
        return await self._request("POST", "/matchmaking/match")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise ApiError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(f"{method} {path} returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise ApiError(f"{method} {path} returned unexpected payload")
        logger.debug("%s %s -> %s", method, path, payload)
        return payload


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return str(payload)[:200]
