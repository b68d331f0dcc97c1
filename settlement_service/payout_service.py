import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, ErrorCodes
from common.settings import settings
from settlement_service.gateway import GatewayError, payout_id_from_reference
from settlement_service.leases import hold_lease, LeaseBusy
from settlement_service.models import (
    LedgerEntry, Payout, PayoutStatus, EntryDirection, EntrySource, new_id, utcnow,
)
from settlement_service.repositories import CreatorRepository, LedgerRepository, PayoutRepository

logger = logging.getLogger(__name__)

IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_RE = re.compile(r"^\d{9,18}$")

@dataclass
class PayoutConfig:
    account_holder_name: str
    account_number_masked: str
    ifsc: str
    contact_id: str
    fund_account_id: str
    is_verified: bool

@dataclass
class BalanceSummary:
    available_balance: int
    pending_payout: int
    total_earned: int
    total_withdrawn: int

def mask_account_number(account_number: str) -> str:
    return "XXXX" + account_number[-4:]

class PayoutService:
    def __init__(self, session_factory, gateway, min_withdrawal: int = None, lease_ttl: int = None):
        self.session_factory = session_factory
        self.gateway = gateway
        self.min_withdrawal = min_withdrawal if min_withdrawal is not None else settings.min_withdrawal_amount
        self.lease_ttl = lease_ttl or settings.lease_ttl_seconds

    # configuration

    def save_payout_config(self, creator_id: str, account_holder_name: str, account_number: str, ifsc: str) -> PayoutConfig:
        """Register bank details: contact (reused if present), then fund account, then profile update."""
        account_holder_name = (account_holder_name or "").strip()
        account_number = (account_number or "").strip()
        ifsc = (ifsc or "").strip().upper()
        if not account_holder_name:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "account holder name is required",
                                     field="account_holder_name")
        if not ACCOUNT_NUMBER_RE.match(account_number):
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "invalid account number: must be 9-18 digits",
                                     field="account_number")
        if not IFSC_RE.match(ifsc):
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "invalid IFSC code: must match format XXXX0XXXXXX",
                                     field="ifsc")

        with self.session_factory() as db:
            creator = CreatorRepository(db).get(creator_id)
        if not creator:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "creator not found")

        contact_id = creator.payout_contact_id
        if not contact_id:
            contact_id = self.gateway.create_contact(
                creator.display_name or account_holder_name, creator.email, f"creator_{creator.id}")
        fund_account_id = self.gateway.create_fund_account(contact_id, account_holder_name, ifsc, account_number)

        with self.session_factory() as db:
            creator = CreatorRepository(db).get(creator_id)
            creator.payout_holder_name = account_holder_name
            creator.payout_account_masked = mask_account_number(account_number)
            creator.payout_ifsc = ifsc
            creator.payout_contact_id = contact_id
            creator.payout_fund_account_id = fund_account_id
            creator.payout_verified = True
            creator.updated_at = utcnow()
            db.commit()

        logger.info(f"Payout settings saved for creator {creator_id} (fund account {fund_account_id})")
        return self._config_of(creator)

    @staticmethod
    def _config_of(creator) -> PayoutConfig:
        return PayoutConfig(
            account_holder_name=creator.payout_holder_name,
            account_number_masked=creator.payout_account_masked,
            ifsc=creator.payout_ifsc,
            contact_id=creator.payout_contact_id,
            fund_account_id=creator.payout_fund_account_id,
            is_verified=bool(creator.payout_verified),
        )

    def get_payout_config(self, creator_id: str) -> Optional[PayoutConfig]:
        with self.session_factory() as db:
            creator = CreatorRepository(db).get(creator_id)
        if not creator:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "creator not found")
        if not creator.payout_fund_account_id:
            return None
        return self._config_of(creator)

    # withdrawals

    def withdraw_funds(self, creator_id: str, amount: int) -> Payout:
        if amount < self.min_withdrawal:
            raise BusinessLogicError(
                ErrorCodes.MINIMUM_NOT_MET,
                f"minimum withdrawal amount is ₹{self.min_withdrawal / 100:.2f}",
                field="amount",
            )
        try:
            with hold_lease(self.session_factory, f"payout:{creator_id}", self.lease_ttl):
                return self._withdraw_exclusive(creator_id, amount)
        except LeaseBusy:
            logger.warning(f"Withdrawal for creator {creator_id} rejected: another withdrawal is running")
            raise BusinessLogicError(ErrorCodes.PAYOUT_IN_PROGRESS, "payout already in progress")

    def _withdraw_exclusive(self, creator_id: str, amount: int) -> Payout:
        payout, fund_account_id = self._reserve(creator_id, amount)

        # the local id doubles as the gateway idempotency key
        try:
            gateway_payout_id = self.gateway.create_payout(fund_account_id, amount, payout.id)
        except GatewayError as e:
            if e.outcome_unknown:
                logger.critical(
                    f"Payout {payout.id} for creator {creator_id} ({amount}) has an unknown outcome and stays "
                    f"{PayoutStatus.PROCESSING} until reconciled: {e.message}")
            else:
                self._release_rejected(payout, e)
            raise

        with self.session_factory() as db:
            PayoutRepository(db).attach_gateway_id(payout.id, gateway_payout_id)
            db.commit()
        payout.gateway_payout_id = gateway_payout_id

        logger.info(f"Payout {payout.id} submitted for creator {creator_id}: {amount} via {gateway_payout_id}")
        return payout

    def _reserve(self, creator_id: str, amount: int) -> Tuple[Payout, str]:
        """Check the balance, then write the in-flight payout and its debit in one transaction."""
        with self.session_factory() as db:
            payouts = PayoutRepository(db)
            ledger = LedgerRepository(db)
            if payouts.find_processing(creator_id):
                raise BusinessLogicError(ErrorCodes.PAYOUT_IN_PROGRESS, "payout already in progress")
            balance = ledger.balance(creator_id)
            if amount > balance:
                raise BusinessLogicError(
                    ErrorCodes.INSUFFICIENT_BALANCE,
                    f"insufficient balance: available ₹{balance / 100:.2f}",
                    context={"available_balance": balance},
                )
            creator = CreatorRepository(db).get(creator_id)
            if not creator or not creator.payout_fund_account_id or not creator.payout_verified:
                raise BusinessLogicError(ErrorCodes.NOT_CONFIGURED, "payout settings not configured")

            payout = Payout(
                id=new_id(),
                creator_id=creator_id,
                amount=amount,
                platform_fee=0,
                net_amount=amount,
                status=PayoutStatus.PROCESSING,
            )
            try:
                payouts.add(payout)
                ledger.append(LedgerEntry(
                    creator_id=creator_id,
                    amount=amount,
                    direction=EntryDirection.DEBIT,
                    source=EntrySource.PAYOUT,
                    reference_id=payout.id,
                    description=f"Payout withdrawal {payout.id}",
                ))
                db.commit()
            except IntegrityError:
                db.rollback()
                raise BusinessLogicError(ErrorCodes.PAYOUT_IN_PROGRESS, "payout already in progress")
            return payout, creator.payout_fund_account_id

    def _release_rejected(self, payout: Payout, error: Exception) -> None:
        """The gateway refused the payout outright: fail it and give the money back."""
        with self.session_factory() as db:
            if PayoutRepository(db).finish_by_id(payout.id, PayoutStatus.FAILED):
                LedgerRepository(db).append(self._refund_entry(payout, f"Payout rejected - {payout.id}"))
            db.commit()
        payout.status = PayoutStatus.FAILED
        logger.warning(f"Payout {payout.id} for creator {payout.creator_id} rejected by the gateway: {error}")

    @staticmethod
    def _refund_entry(payout: Payout, description: str) -> LedgerEntry:
        return LedgerEntry(
            creator_id=payout.creator_id,
            amount=payout.amount,
            direction=EntryDirection.CREDIT,
            source=EntrySource.PAYOUT,
            reference_id=payout.id,
            description=description,
        )

    def handle_payout_webhook(self, gateway_payout_id: str, new_status: str, reference_id: str = None) -> Payout:
        """Move a payout to a terminal status; failed/reversed payouts are refunded with a new credit.

        Payouts whose submission timed out have no gateway id yet and are
        matched through the reference id they were submitted with.
        """
        if new_status not in PayoutStatus.TERMINAL:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, f"unsupported payout status {new_status}")

        with self.session_factory() as db:
            repo = PayoutRepository(db)
            payout_id = payout_id_from_reference(reference_id)
            if payout_id and repo.attach_gateway_id(payout_id, gateway_payout_id):
                logger.info(f"Payout {payout_id} reconciled with gateway payout {gateway_payout_id}")

            won = repo.finish(gateway_payout_id, new_status)
            payout = repo.find_by_gateway_id(gateway_payout_id)
            if won and new_status in (PayoutStatus.FAILED, PayoutStatus.REVERSED):
                LedgerRepository(db).append(
                    self._refund_entry(payout, f"Payout reversal - {gateway_payout_id} ({new_status})"))
            db.commit()

        if not payout:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, f"payout {gateway_payout_id} not found")
        if not won:
            logger.info(f"Payout {payout.id} already {payout.status}; ignoring {new_status}")
            return payout

        logger.info(f"Payout {payout.id} -> {new_status}")
        return payout

    # reads

    def get_payout_history(self, creator_id: str) -> List[Payout]:
        with self.session_factory() as db:
            return PayoutRepository(db).list_by_creator(creator_id)

    def get_balance_summary(self, creator_id: str) -> BalanceSummary:
        with self.session_factory() as db:
            ledger = LedgerRepository(db)
            pending = PayoutRepository(db).find_processing(creator_id)
            return BalanceSummary(
                available_balance=ledger.balance(creator_id),
                pending_payout=pending.amount if pending else 0,
                total_earned=ledger.total(creator_id, EntryDirection.CREDIT, EntrySource.ORDER),
                total_withdrawn=ledger.total(creator_id, EntryDirection.DEBIT, EntrySource.PAYOUT),
            )
