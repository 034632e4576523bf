"""Async Terra LCD client for CosmWasm smart queries.

Only the read side of the ledger lives here: contract queries and the account
lookup used to seed the signing sequence. Transaction broadcast is handled by
:mod:`executors.lcd_broadcaster`.
"""

from __future__ import annotations

import base64
import json
from urllib.parse import quote
from typing import Any, Optional, Protocol

import httpx

from schemas.chain import ChainQueryError, ChainSchemaError
from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.lcd")


class ChainQuerier(Protocol):
    """``(contract, payload) -> decoded result``; raises on any failure."""

    async def query(self, contract: str, payload: dict) -> Any:
        ...


def encode_query(payload: dict) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return quote(base64.b64encode(raw).decode("ascii"), safe="")


class TerraLCDClient:
    """Smart-query client over the LCD REST API."""

    def __init__(
        self,
        *,
        lcd_url: str,
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not lcd_url:
            raise ValueError("lcd_url must be provided")
        self._base_url = lcd_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=float(timeout))
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "TerraLCDClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def query(self, contract: str, payload: dict) -> Any:
        path = f"/cosmwasm/wasm/v1/contract/{contract}/smart/{encode_query(payload)}"
        LOG.debug("smart query %s on %s", next(iter(payload), "?"), contract)
        body = await self._get_json(path)
        if not isinstance(body, dict) or "data" not in body:
            raise ChainSchemaError("SmartQueryResponse", f"missing 'data' in response for {contract}")
        return body["data"]

    async def account_sequence(self, address: str) -> int:
        body = await self._get_json(f"/cosmos/auth/v1beta1/accounts/{address}")
        try:
            account = body["account"]
            # Vesting accounts nest the base account one level down.
            base = account.get("base_account") or account.get("base_vesting_account", {}).get("base_account") or account
            return int(base["sequence"])
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ChainSchemaError("AccountResponse", f"no sequence for {address}: {exc!r}") from exc

    async def _get_json(self, path: str) -> Any:
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as exc:
            raise ChainQueryError(f"GET {path} failed: {exc!r}") from exc
        if resp.status_code >= 400:
            raise ChainQueryError(f"GET {path} returned {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ChainSchemaError("JSON", f"non-JSON body from {path}") from exc
