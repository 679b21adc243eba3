"""
Releases STX collateral on Stacks after a withdrawal was approved on Sui.
"""

import httpx
import structlog

from .clarity import principal_cv, uint_cv
from .errors import BroadcastError, InsufficientFundsError
from .signer import StacksSigner
from .stacks import StacksApiClient
from .stacks_tx import make_contract_call

logger = structlog.get_logger()

UNLOCK_FUNCTION = "admin-unlock-collateral"
DEFAULT_FEE = 2000  # microSTX

INSUFFICIENT_FUNDS_REASONS = {"NotEnoughFunds"}


class StacksUnlocker:
    """Calls ``admin-unlock-collateral`` from the relayer's admin account."""

    def __init__(
        self,
        api: StacksApiClient,
        signer: StacksSigner,
        contract_id: str,
        fee: int = DEFAULT_FEE,
    ):
        self.api = api
        self.signer = signer
        self.contract_id = contract_id
        self.fee = fee

    def unlock_on_source(self, principal: str, amount: int) -> str:
        """
        Unlock ``amount`` microSTX of ``principal``'s collateral.

        Returns:
            Stacks transaction id

        Raises:
            InsufficientFundsError: the relayer account can't pay the fee
            BroadcastError: the node rejected the transaction
        """
        sender = self.signer.address
        self._check_fee_balance(sender)

        nonce = self.api.get_account_nonce(sender)
        tx = make_contract_call(
            self.signer,
            self.contract_id,
            UNLOCK_FUNCTION,
            [principal_cv(principal), uint_cv(amount)],
            nonce=nonce,
            fee=self.fee,
        )

        result = self.api.broadcast_transaction(tx.serialize())
        if not result.accepted:
            logger.error(
                "stacks_broadcast_rejected",
                user=principal,
                error=result.error,
                reason=result.reason,
            )
            if result.reason in INSUFFICIENT_FUNDS_REASONS:
                raise InsufficientFundsError(
                    f"Relayer account {sender} has insufficient STX for fees"
                )
            raise BroadcastError(f"Broadcast failed: {result.error} - {result.reason}", reason=result.reason)

        logger.info(
            "stacks_unlock_broadcast",
            user=principal,
            amount=amount,
            txid=result.txid,
            nonce=nonce,
        )
        return result.txid  # type: ignore[return-value]

    def _check_fee_balance(self, sender: str) -> None:
        try:
            balance = self.api.get_stx_balance(sender)
        except (httpx.HTTPError, ValueError) as e:
            # The broadcast reports NotEnoughFunds anyway
            logger.warning("stacks_balance_check_failed", address=sender, error=str(e))
            return

        if balance < self.fee:
            raise InsufficientFundsError(
                f"Relayer account {sender} has {balance} microSTX, needs {self.fee} for fees"
            )
