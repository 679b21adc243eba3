"""
Source-chain event monitor.

Walks the collateral contract's transaction history backwards from the
chain tip and turns contract logs into ``SourceChainEvent`` objects.
"""

import httpx
import structlog

from .events import parse_contract_log
from .models import SourceChainEvent
from .stacks import StacksApiClient

logger = structlog.get_logger()

PAGE_SIZE = 50
MAX_PAGES = 4
REFRESH_LOOKBACK_BLOCKS = 100


class StacksEventMonitor:
    """Finds collateral events emitted by one contract."""

    def __init__(
        self,
        api: StacksApiClient,
        contract_id: str,
        confirmations: int = 0,
        page_size: int = PAGE_SIZE,
        max_pages: int = MAX_PAGES,
    ):
        if confirmations < 0:
            raise ValueError("confirmations must be non-negative")
        self.api = api
        self.contract_id = contract_id
        self.confirmations = confirmations
        self.page_size = page_size
        self.max_pages = max_pages

    def fetch_events_since(self, since_height: int) -> list[SourceChainEvent]:
        """
        Collateral events in blocks ``(since_height, tip - confirmations]``.

        Network errors while reading the tip or the transaction list are
        raised; the caller skips the tick. A failure to read one
        transaction's detail only drops that transaction.

        Returns:
            Events sorted by (block_height, tx_id)
        """
        tip = self.api.get_tip_height()
        confirmed_height = tip - self.confirmations
        if confirmed_height <= since_height:
            return []

        candidates = self._candidate_transactions(since_height, confirmed_height)

        events: list[SourceChainEvent] = []
        for tx in candidates:
            events.extend(self._events_for_transaction(tx))

        events.sort(key=lambda e: e.sort_key)

        if events:
            logger.info(
                "collateral_events_found",
                count=len(events),
                since_height=since_height,
                confirmed_height=confirmed_height,
            )
        return events

    def fetch_recent_events(self, lookback_blocks: int = REFRESH_LOOKBACK_BLOCKS) -> list[SourceChainEvent]:
        """Events in the last ``lookback_blocks`` blocks, for manual refreshes."""
        latest = self.api.get_latest_block_height()
        since = max(0, latest - lookback_blocks)
        logger.info("indexer_refresh", latest_height=latest, since_height=since)
        return self.fetch_events_since(since)

    def _candidate_transactions(self, since_height: int, confirmed_height: int) -> list[dict]:
        """Successful contract calls to our contract inside the height window."""
        candidates: list[dict] = []
        seen: set[str] = set()

        for page_number in range(self.max_pages):
            page = self.api.get_address_transactions(
                self.contract_id,
                limit=self.page_size,
                offset=page_number * self.page_size,
            )
            if not page:
                break

            for tx in page:
                tx_id = tx.get("tx_id")
                if not tx_id or tx_id in seen:
                    continue
                seen.add(tx_id)
                if self._is_candidate(tx, since_height, confirmed_height):
                    candidates.append(tx)

            heights = [int(tx["block_height"]) for tx in page if tx.get("block_height") is not None]
            if len(page) < self.page_size or (heights and min(heights) <= since_height):
                break
        else:
            logger.warning(
                "transaction_page_cap_reached",
                contract=self.contract_id,
                pages=self.max_pages,
                since_height=since_height,
            )

        return candidates

    def _is_candidate(self, tx: dict, since_height: int, confirmed_height: int) -> bool:
        if tx.get("tx_status") != "success":
            return False
        if tx.get("tx_type") != "contract_call":
            return False
        contract_call = tx.get("contract_call") or {}
        if contract_call.get("contract_id") != self.contract_id:
            return False
        height = tx.get("block_height")
        if height is None:
            return False
        return since_height < int(height) <= confirmed_height

    def _events_for_transaction(self, tx: dict) -> list[SourceChainEvent]:
        tx_id = tx["tx_id"]
        try:
            detail = self.api.get_transaction(tx_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("transaction_detail_fetch_failed", tx_id=tx_id, error=str(e))
            return []

        block_height = int(detail.get("block_height") or tx["block_height"])
        sender = detail.get("sender_address") or tx.get("sender_address") or ""

        events = []
        for entry in detail.get("events") or []:
            if entry.get("event_type") != "smart_contract_log":
                continue
            contract_log = entry.get("contract_log") or {}
            emitter = contract_log.get("contract_id")
            if emitter and emitter != self.contract_id:
                continue
            repr_text = (contract_log.get("value") or {}).get("repr")
            if not repr_text:
                continue

            event = parse_contract_log(
                repr_text,
                tx_id=tx_id,
                block_height=block_height,
                sender=sender,
            )
            if event is not None:
                events.append(event)
        return events
