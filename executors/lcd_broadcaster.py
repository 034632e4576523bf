"""Broadcast signed transactions through the LCD REST endpoint."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from executors.base import BroadcastError, BroadcastResult, SignedTx
from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.broadcast")


class LCDBroadcaster:
    """POSTs ``tx_bytes`` to ``/cosmos/tx/v1beta1/txs`` in sync mode.

    Transport failures and HTTP errors raise :class:`BroadcastError`; a response
    carrying a non-zero ``code`` is returned as a chain-level rejection.
    """

    def __init__(
        self,
        *,
        lcd_url: str,
        timeout: float = 30.0,
        mode: str = "BROADCAST_MODE_SYNC",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._mode = mode
        self._client = client or httpx.AsyncClient(base_url=lcd_url.rstrip("/"), timeout=float(timeout))
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def broadcast(self, tx: SignedTx) -> BroadcastResult:
        payload = {"tx_bytes": tx.tx_bytes, "mode": self._mode}
        try:
            resp = await self._client.post("/cosmos/tx/v1beta1/txs", json=payload)
        except httpx.HTTPError as exc:
            raise BroadcastError(f"broadcast of sequence {tx.sequence} failed: {exc!r}") from exc
        if resp.status_code >= 400:
            raise BroadcastError(f"broadcast of sequence {tx.sequence} returned {resp.status_code}: {resp.text[:200]}")
        try:
            body: Dict[str, Any] = resp.json()
        except ValueError as exc:
            raise BroadcastError(f"broadcast of sequence {tx.sequence} returned non-JSON body") from exc

        tx_response = body.get("tx_response") or {}
        height = tx_response.get("height")
        result = BroadcastResult(
            txhash=str(tx_response.get("txhash", "")),
            code=int(tx_response.get("code", 0) or 0),
            codespace=str(tx_response.get("codespace", "") or ""),
            raw_log=str(tx_response.get("raw_log", "") or ""),
            height=int(height) if height not in (None, "", "0") else None,
            raw=body,
        )
        LOG.debug("broadcast sequence=%d txhash=%s code=%d", tx.sequence, result.txhash, result.code)
        return result
