#==========================================================================================
# app/platforms/marketplace.py
# Naver Commerce API interface (marketplace side).
# Stock read/adjust for origin products, with OAuth2 client-credentials tokens.
#==========================================================================================
from __future__ import annotations

import base64
import logging
import time
from typing import Any, Protocol

import bcrypt
import httpx

from app.platforms.errors import (
    PermanentPlatformError,
    raise_for_platform_status,
    wrap_transport_error,
)

logger = logging.getLogger("uvicorn.error")

PLATFORM = "naver"


class MarketplaceClient(Protocol):
    async def get_stock(self, product_id: str) -> int: ...

    async def adjust_stock(self, product_id: str, delta: int) -> None: ...


def client_secret_sign(client_id: str, client_secret: str, timestamp: str) -> str:
    """bcrypt(client_id + '_' + timestamp) salted with the client secret, base64-encoded."""
    password = f"{client_id}_{timestamp}".encode("utf-8")
    hashed = bcrypt.hashpw(password, client_secret.encode("utf-8"))
    return base64.b64encode(hashed).decode("utf-8")


class NaverCommerceClient:
    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at: float = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        timestamp = str(int(time.time() * 1000))
        form = {
            "client_id": self.client_id,
            "timestamp": timestamp,
            "client_secret_sign": client_secret_sign(self.client_id, self.client_secret, timestamp),
            "grant_type": "client_credentials",
            "type": "SELF",
        }
        try:
            async with self._client() as client:
                resp = await client.post("/external/v1/oauth2/token", data=form)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, platform=PLATFORM, operation="oauth2_token") from e
        raise_for_platform_status(resp, platform=PLATFORM, operation="oauth2_token")

        data = resp.json()
        token = data.get("access_token")
        if not token:
            raise PermanentPlatformError("naver oauth2_token: no access_token in response",
                                         platform=PLATFORM, operation="oauth2_token")
        # keep 90% of the advertised lifetime
        expires_in = float(data.get("expires_in") or 3600)
        self._token = token
        self._token_expires_at = time.monotonic() + expires_in * 0.9
        logger.info("[NAVER] access token refreshed (expires_in=%ss)", int(expires_in))
        return token

    async def _request(self, method: str, path: str, operation: str, json: dict[str, Any] | None = None) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with self._client() as client:
                resp = await client.request(method, path, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, platform=PLATFORM, operation=operation) from e
        if resp.status_code == 401:
            # token revoked server-side; drop it so the next attempt re-authenticates
            self._token = None
        raise_for_platform_status(resp, platform=PLATFORM, operation=operation)
        return resp

    async def get_stock(self, product_id: str) -> int:
        resp = await self._request("GET", f"/external/v1/products/{product_id}", "get_stock")
        data = resp.json() or {}
        qty = data.get("stockQuantity")
        if qty is None:
            qty = (data.get("originProduct") or {}).get("stockQuantity")
        try:
            return int(qty)
        except (TypeError, ValueError):
            raise PermanentPlatformError(
                f"naver get_stock: product {product_id} has no stockQuantity",
                platform=PLATFORM, operation="get_stock",
            )

    async def adjust_stock(self, product_id: str, delta: int) -> None:
        if delta == 0:
            return
        body = {
            "stockQuantity": abs(int(delta)),
            "operationType": "ADD" if delta > 0 else "SUBTRACT",
        }
        await self._request("PUT", f"/external/v1/products/{product_id}/stock", "adjust_stock", json=body)
        logger.info("[NAVER] stock adjusted product=%s %s %d", product_id, body["operationType"], body["stockQuantity"])
