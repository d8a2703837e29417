"""
Payout Aggregator

A payout request claims a restaurant's completed, unclaimed online charges
inside a date period. Each claimed transaction gets a `payout_claims`
document keyed by the transaction id, written in the same store transaction
as the payout request, so a transaction can never be claimed twice.
Claims stay with their payout request whatever its later status.
"""

import logging
from typing import Dict, List, Optional, Set

from pymongo.errors import DuplicateKeyError

from database import generate_id
from errors import (ConflictError, InvalidTransitionError, NoEligibleFundsError, NotFoundError, Result,
                    ValidationError, returns_result)
from ledger import TransactionLedger
from schemas import PayoutPeriod, PayoutRequest, Transaction

logger = logging.getLogger(__name__)

PAYOUT_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"approved", "rejected"},
    "approved": {"paid", "rejected"},
    "paid": set(),
    "rejected": set(),
}


class PayoutResult(Result):
    payout_request_id: Optional[str] = None
    payout_request: Optional[PayoutRequest] = None


class PayoutAggregator:
    def __init__(self, store, ledger: TransactionLedger):
        self.store = store
        self.ledger = ledger

    def payable_amount(self, transaction: Transaction, session=None) -> float:
        return round(transaction.net_amount - self.ledger.refunded_amount(transaction.id, session=session), 2)

    def eligible_transactions(self, restaurant_id: str, period: PayoutPeriod, session=None) -> List[Transaction]:
        claimed = self.ledger.claimed_ids(restaurant_id, session=session)
        docs = self.store.find("transactions", {
            "restaurant_id": restaurant_id,
            "kind": "charge",
            "payment_method": "online",
            "payment_status": "completed",
        }, sort=[("created_at", 1)], session=session)
        eligible = []
        for doc in docs:
            transaction = Transaction(**doc)
            day = transaction.created_at.strftime("%Y-%m-%d")
            if transaction.id in claimed or not period.start_date <= day <= period.end_date:
                continue
            if self.payable_amount(transaction, session=session) > 0:
                eligible.append(transaction)
        return eligible

    @returns_result(PayoutResult)
    def create_payout_request(self, restaurant_id: str, period: PayoutPeriod,
                              notes: Optional[str] = None) -> PayoutResult:
        if period.start_date > period.end_date:
            raise ValidationError("Period start must not be after its end", field="period")

        with self.store.transaction() as session:
            eligible = self.eligible_transactions(restaurant_id, period, session=session)
            amount = round(sum(self.payable_amount(t, session=session) for t in eligible), 2)
            if not eligible or amount <= 0:
                raise NoEligibleFundsError("No completed online payments available for payout")

            payout = PayoutRequest(
                id=generate_id("PAY"),
                restaurant_id=restaurant_id,
                amount=amount,
                period=period,
                transaction_ids=[t.id for t in eligible],
                notes=notes,
            )
            self.store.insert("payout_requests", payout, session=session)
            for transaction in eligible:
                try:
                    self.store.insert("payout_claims", {
                        "id": transaction.id,
                        "payout_request_id": payout.id,
                        "restaurant_id": restaurant_id,
                    }, session=session)
                except DuplicateKeyError as exc:
                    raise ConflictError(f"Transaction {transaction.id} is already claimed by another payout") from exc

        logger.info("payout %s created for %s: %.2f over %d transactions",
                    payout.id, restaurant_id, amount, len(eligible))
        return PayoutResult(payout_request_id=payout.id, payout_request=self.get(payout.id))

    def get(self, payout_id: str, session=None) -> PayoutRequest:
        doc = self.store.get("payout_requests", payout_id, session=session)
        if not doc:
            raise NotFoundError(f"Payout request not found: {payout_id}")
        return PayoutRequest(**doc)

    def get_by_restaurant(self, restaurant_id: str) -> List[PayoutRequest]:
        docs = self.store.find("payout_requests", {"restaurant_id": restaurant_id}, sort=[("created_at", -1)])
        return [PayoutRequest(**d) for d in docs]

    @returns_result(PayoutResult)
    def update_status(self, payout_id: str, status: str, notes: Optional[str] = None,
                      payment_details: Optional[dict] = None) -> PayoutResult:
        payout = self.get(payout_id)
        if status not in PAYOUT_TRANSITIONS.get(payout.status, set()):
            raise InvalidTransitionError(f"Payout {payout_id} cannot move from {payout.status} to {status}")
        changes = {"status": status}
        if notes:
            changes["notes"] = notes
        if payment_details:
            changes["payment_details"] = payment_details
        if not self.store.update("payout_requests", payout_id, changes, expect={"status": payout.status}):
            raise ConflictError(f"Payout {payout_id} was changed concurrently")
        logger.info("payout %s: %s -> %s", payout_id, payout.status, status)
        return PayoutResult(payout_request_id=payout_id, payout_request=self.get(payout_id))
