import logging
from typing import List, Tuple

from common.error_handling import BusinessLogicError, ErrorCodes
from settlement_service.models import LedgerEntry, EntryDirection
from settlement_service.repositories import LedgerRepository

logger = logging.getLogger(__name__)

class WalletService:
    """Credit/debit facade over the append-only ledger.

    Balance is always aggregated from the entries on read; there is no
    stored balance column to keep in sync.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _append(self, creator_id: str, amount: int, direction: str, description: str,
                reference_id: str, source: str) -> LedgerEntry:
        if amount <= 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "ledger amount must be positive", field="amount")
        with self.session_factory() as db:
            entry = LedgerRepository(db).append(LedgerEntry(
                creator_id=creator_id,
                amount=amount,
                direction=direction,
                source=source,
                reference_id=reference_id,
                description=description,
            ))
            db.commit()
        logger.info(f"Ledger {direction} of {amount} for creator {creator_id} ({source} {reference_id})")
        return entry

    def credit_transaction(self, creator_id: str, amount: int, description: str,
                           reference_id: str, source: str) -> LedgerEntry:
        return self._append(creator_id, amount, EntryDirection.CREDIT, description, reference_id, source)

    def debit_transaction(self, creator_id: str, amount: int, description: str,
                          reference_id: str, source: str) -> LedgerEntry:
        return self._append(creator_id, amount, EntryDirection.DEBIT, description, reference_id, source)

    def get_balance(self, creator_id: str) -> int:
        with self.session_factory() as db:
            return LedgerRepository(db).balance(creator_id)

    def get_wallet_details(self, creator_id: str) -> Tuple[int, List[LedgerEntry]]:
        with self.session_factory() as db:
            repo = LedgerRepository(db)
            return repo.balance(creator_id), repo.list_by_creator(creator_id)
