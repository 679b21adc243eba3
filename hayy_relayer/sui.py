"""
Sui interaction: JSON-RPC transport and the borrow registry client.
"""

import base64
from typing import Any, Optional

import httpx
import structlog

from .errors import ChainCallError
from .models import BorrowPosition
from .signer import SuiKeypair

logger = structlog.get_logger()

# Coin type tag the borrow controller uses for STX collateral
STX_COLLATERAL_TYPE = 3

BORROW_MODULE = "borrow_controller"


class SuiRPCError(Exception):
    """Error from Sui RPC call."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


class SuiRpcClient:
    """Synchronous Sui full-node JSON-RPC client."""

    def __init__(self, url: str = "https://fullnode.testnet.sui.io:443", timeout: float = 30.0):
        self.url = url
        self.client = httpx.Client(timeout=timeout)
        self._request_id = 0

    def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        response = self.client.post(self.url, json=payload)
        response.raise_for_status()
        result = response.json()

        if result.get("error"):
            error = result["error"]
            raise SuiRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        return result.get("result")

    def get_object(self, object_id: str) -> dict[str, Any]:
        """Object with its Move content."""
        return self._call("sui_getObject", [object_id, {"showContent": True, "showType": True}])

    def get_dynamic_fields(
        self, parent_id: str, cursor: Optional[str] = None, limit: Optional[int] = None
    ) -> dict[str, Any]:
        """One page of dynamic fields: ``{data, nextCursor, hasNextPage}``."""
        return self._call("suix_getDynamicFields", [parent_id, cursor, limit])

    def unsafe_move_call(
        self,
        signer: str,
        package_id: str,
        module: str,
        function: str,
        arguments: list[Any],
        gas_budget: int,
        type_arguments: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Have the node build a Move call transaction. Returns ``{txBytes, ...}``."""
        return self._call(
            "unsafe_moveCall",
            [signer, package_id, module, function, type_arguments or [], arguments, None, str(gas_budget)],
        )

    def execute_transaction_block(self, tx_bytes: str, signatures: list[str]) -> dict[str, Any]:
        """Submit a signed transaction and wait for local execution."""
        return self._call(
            "sui_executeTransactionBlock",
            [
                tx_bytes,
                signatures,
                {"showEffects": True, "showEvents": True},
                "WaitForLocalExecution",
            ],
        )

    def close(self) -> None:
        self.client.close()


def _fields(obj: dict[str, Any]) -> dict[str, Any]:
    """Move struct fields of a ``sui_getObject`` response."""
    return ((obj.get("data") or {}).get("content") or {}).get("fields") or {}


class SuiRegistryClient:
    """
    Calls into the Hayy borrow registry on Sui.

    Writes are signed with the relayer keypair and block until the node
    reports the execution status.
    """

    def __init__(
        self,
        rpc: SuiRpcClient,
        keypair: SuiKeypair,
        package_id: str,
        registry_id: str,
        gas_budget: int = 50_000_000,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.package_id = package_id
        self.registry_id = registry_id
        self.gas_budget = gas_budget

    def register_collateral(self, destination_address: str, amount: int, usd_value: float) -> str:
        """
        Record STX collateral for a borrower.

        ``usd_value`` is informational; the registry prices collateral
        itself.

        Returns:
            Transaction digest
        """
        logger.info(
            "sui_register_collateral",
            borrower=destination_address,
            amount=amount,
            usd_value=usd_value,
        )
        return self._execute(
            "register_stacks_collateral",
            [self.registry_id, destination_address, STX_COLLATERAL_TYPE, str(amount)],
        )

    def unlock_collateral(self, destination_address: str, amount: int) -> str:
        """Release STX collateral for a borrower. Returns the digest."""
        logger.info("sui_unlock_collateral", borrower=destination_address, amount=amount)
        return self._execute(
            "withdraw_stx_collateral",
            [self.registry_id, destination_address, str(amount)],
        )

    def _execute(self, function: str, arguments: list[Any]) -> str:
        built = self.rpc.unsafe_move_call(
            signer=self.keypair.address,
            package_id=self.package_id,
            module=BORROW_MODULE,
            function=function,
            arguments=arguments,
            gas_budget=self.gas_budget,
        )
        tx_bytes = built["txBytes"]
        signature = self.keypair.sign_transaction(base64.b64decode(tx_bytes))
        result = self.rpc.execute_transaction_block(tx_bytes, [signature])

        digest = result.get("digest")
        status = (result.get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            reason = status.get("error") or "unknown error"
            logger.error("sui_transaction_failed", function=function, digest=digest, error=reason)
            raise ChainCallError(f"Sui tx failed: {reason}", tx_ref=digest)

        logger.info("sui_transaction_succeeded", function=function, digest=digest)
        return digest

    def get_position(self, destination_address: str) -> Optional[BorrowPosition]:
        """
        Read a borrower's position from the registry's dynamic fields.

        Returns:
            The position, or None if the registry has no entry for the address
        """
        registry = self.rpc.get_object(self.registry_id)
        positions_id = ((_fields(registry).get("id") or {}).get("id")) or self.registry_id
        target = destination_address.lower()

        cursor: Optional[str] = None
        while True:
            page = self.rpc.get_dynamic_fields(positions_id, cursor)
            for entry in page.get("data") or []:
                name = entry.get("name") or {}
                if str(name.get("value", "")).lower() == target:
                    return self._read_position(entry["objectId"])
            if not page.get("hasNextPage"):
                return None
            cursor = page.get("nextCursor")

    def _read_position(self, object_id: str) -> Optional[BorrowPosition]:
        obj = self.rpc.get_object(object_id)
        value = _fields(obj).get("value") or {}
        fields = value.get("fields") if isinstance(value, dict) else None
        if not fields:
            return None
        return BorrowPosition(
            object_id=object_id,
            stx_collateral=int(fields.get("stx_collateral_stacks") or 0),
            sbtc_collateral=int(fields.get("sbtc_collateral") or 0),
            usdc_borrowed=int(fields.get("usdc_borrowed") or 0),
            is_liquidatable=bool(fields.get("is_liquidatable", False)),
        )

    def has_outstanding_debt(self, destination_address: str) -> bool:
        """
        Whether the borrower owes USDC.

        Fails closed: returns True when the position can't be read or found.
        """
        try:
            position = self.get_position(destination_address)
        except Exception as e:
            logger.error("debt_check_failed", borrower=destination_address, error=str(e))
            return True

        if position is None:
            logger.warning("debt_check_position_missing", borrower=destination_address)
            return True
        return position.usdc_borrowed > 0
