"""
Stacks blockchain interaction via the Hiro API.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger()


@dataclass
class BroadcastResult:
    """Node response to ``POST /v2/transactions``."""

    txid: Optional[str]
    error: Optional[str] = None
    reason: Optional[str] = None
    reason_data: Optional[dict] = None

    @property
    def accepted(self) -> bool:
        return self.error is None and self.txid is not None


class StacksApiClient:
    """Client for the Hiro Stacks API."""

    def __init__(self, base_url: str = "https://api.testnet.hiro.so", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout)

    def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            response = self.client.get(url, params=params)
        else:
            response = self.client.get(url)
        response.raise_for_status()
        return response.json()

    def get_tip_height(self) -> int:
        """Current Stacks chain tip height."""
        info = self._get_json("/v2/info")
        return int(info.get("stacks_tip_height") or info.get("burn_block_height") or 0)

    def get_latest_block_height(self) -> int:
        """Height of the most recent block known to the indexer."""
        data = self._get_json("/extended/v1/block", {"limit": 1})
        results = data.get("results") or []
        if not results:
            return 0
        return int(results[0].get("height", 0))

    def get_address_transactions(self, principal: str, limit: int = 50, offset: int = 0) -> list[dict]:
        """
        One page of transactions involving ``principal``, newest first.

        Includes microblock (unanchored) transactions.
        """
        data = self._get_json(
            f"/extended/v1/address/{principal}/transactions",
            {"limit": limit, "offset": offset, "unanchored": "true"},
        )
        return data.get("results") or []

    def get_transaction(self, tx_id: str) -> dict:
        """Full transaction including its event log."""
        return self._get_json(f"/extended/v1/tx/{tx_id}")

    def get_account_nonce(self, address: str) -> int:
        data = self._get_json(f"/v2/accounts/{address}", {"proof": 0})
        return int(data.get("nonce", 0))

    def get_stx_balance(self, address: str) -> int:
        """Unlocked STX balance in microSTX."""
        data = self._get_json(f"/extended/v1/address/{address}/balances")
        return int((data.get("stx") or {}).get("balance", 0))

    def broadcast_transaction(self, raw_tx: bytes) -> BroadcastResult:
        """
        Submit a serialized transaction.

        A rejected transaction is not raised; the node's error and reason
        come back in the result. Transport failures still raise.
        """
        response = self.client.post(
            f"{self.base_url}/v2/transactions",
            content=raw_tx,
            headers={"Content-Type": "application/octet-stream"},
        )
        if response.status_code >= 500:
            response.raise_for_status()

        try:
            body = response.json()
        except ValueError:
            body = response.text.strip().strip('"')

        if response.status_code == 200:
            txid = body if isinstance(body, str) else body.get("txid")
            return BroadcastResult(txid=txid)

        if isinstance(body, dict):
            return BroadcastResult(
                txid=body.get("txid"),
                error=body.get("error") or "transaction rejected",
                reason=body.get("reason"),
                reason_data=body.get("reason_data"),
            )
        return BroadcastResult(txid=None, error=str(body) or f"HTTP {response.status_code}")

    def close(self) -> None:
        self.client.close()
