"""Async client for the Mux video asset API."""

from typing import Any, Dict, List, Optional

import httpx

from app.core.errors import UnauthorizedError
from app.providers.http import send

PROVIDER = "mux"


class MuxClient:
    def __init__(
        self,
        token_id: Optional[str],
        token_secret: Optional[str],
        base_url: str = "https://api.mux.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self._auth = (token_id, token_secret) if token_id and token_secret else None
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _require_auth(self):
        if self._auth is None:
            raise UnauthorizedError("Mux credentials are not configured")
        return self._auth

    async def create_asset(
        self, input_url: str, playback_policy: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        response = await send(
            self._client,
            "POST",
            f"{self._base_url}/video/v1/assets",
            PROVIDER,
            auth=self._require_auth(),
            json={
                "input": [{"url": input_url}],
                "playback_policy": playback_policy or ["public"],
            },
        )
        return response.json().get("data") or {}

    async def retrieve_asset(self, asset_id: str) -> Dict[str, Any]:
        response = await send(
            self._client,
            "GET",
            f"{self._base_url}/video/v1/assets/{asset_id}",
            PROVIDER,
            auth=self._require_auth(),
        )
        return response.json().get("data") or {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
