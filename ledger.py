"""
Transaction Ledger

Append-only record of money movement. A charge may move from `pending` to
`completed` or `failed` exactly once; amounts are never rewritten. Refunds
are new `refund` records that point at the charge they correct.
Analytics are aggregated from the stored records on every call.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

import config
from database import generate_id
from errors import ConflictError, InvalidTransitionError, NotFoundError, Result, ValidationError, returns_result
from schemas import Transaction

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "failed", "refunded"}


class MethodBreakdown(BaseModel):
    count: int = 0
    amount: float = 0.0


class TransactionAnalytics(BaseModel):
    total_revenue: float = 0.0
    total_transactions: int = 0
    average_transaction: float = 0.0
    total_processing_fees: float = 0.0
    total_refunds: float = 0.0
    pending_amount: float = 0.0
    payment_method_breakdown: Dict[str, MethodBreakdown] = {}


class DayRollup(BaseModel):
    date: str
    revenue: float = 0.0
    transactions: int = 0
    processing_fees: float = 0.0
    net_amount: float = 0.0
    payout_amount: float = 0.0


class TransactionResult(Result):
    transaction: Optional[Transaction] = None


def charge_id_for(order_id: str) -> str:
    """Every order has exactly one charge, keyed by the order id."""
    return f"TXN{order_id}"


class TransactionLedger:
    def __init__(self, store, currency: str = config.CURRENCY):
        self.store = store
        self.currency = currency

    # Writes

    def record_transaction(self, data: Transaction, session=None) -> str:
        if round(data.net_amount, 2) != round(data.amount - data.processing_fee, 2):
            raise ValidationError("net_amount must equal amount - processing_fee", field="net_amount")
        try:
            return self.store.insert("transactions", data, session=session)
        except DuplicateKeyError as exc:
            raise ConflictError(f"Transaction {data.id} already recorded") from exc

    def settle(self, transaction_id: str, status: str, payment_id: Optional[str] = None,
               session=None) -> Transaction:
        """Move a pending charge to its terminal status.

        Settling again with the same status is a no-op; a different terminal
        status is rejected.
        """
        if status not in ("completed", "failed"):
            raise InvalidTransitionError(f"Cannot settle a transaction as {status}")
        changes = {"payment_status": status}
        if payment_id:
            changes["gateway_payment_id"] = payment_id
        if not self.store.update("transactions", transaction_id, changes,
                                 expect={"payment_status": "pending", "kind": "charge"}, session=session):
            current = self.get(transaction_id, session=session)
            if current.payment_status != status:
                raise InvalidTransitionError(
                    f"Transaction {transaction_id} is already {current.payment_status}")
            return current
        logger.info("transaction %s settled as %s", transaction_id, status)
        return self.get(transaction_id, session=session)

    @returns_result(TransactionResult)
    def record_refund(self, transaction_id: str, amount: Optional[float] = None,
                      reason: Optional[str] = None) -> TransactionResult:
        with self.store.transaction() as session:
            original = self.get(transaction_id, session=session)
            if original.kind != "charge" or original.payment_status != "completed":
                raise InvalidTransitionError("Only completed charges can be refunded")
            already = self.refunded_amount(original.id, session=session)
            refundable = round(original.amount - already, 2)
            amount = refundable if amount is None else round(amount, 2)
            if amount <= 0 or amount > refundable:
                raise ValidationError(f"Refund must be between 0 and {refundable}", field="amount")

            refund = Transaction(
                id=generate_id("RFD"),
                order_id=original.order_id,
                restaurant_id=original.restaurant_id,
                customer_info=original.customer_info,
                amount=amount,
                currency=original.currency,
                payment_method=original.payment_method,
                payment_status="refunded",
                processing_fee=0.0,
                net_amount=amount,
                transaction_type=original.transaction_type,
                kind="refund",
                corrects_transaction_id=original.id,
                notes=reason,
            )
            self.record_transaction(refund, session=session)
        logger.info("refund %s of %.2f recorded against %s", refund.id, amount, original.id)
        return TransactionResult(transaction=self.get(refund.id))

    # Reads

    def get(self, transaction_id: str, session=None) -> Transaction:
        doc = self.store.get("transactions", transaction_id, session=session)
        if not doc:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return Transaction(**doc)

    def get_charge_for_order(self, order_id: str, session=None) -> Optional[Transaction]:
        doc = self.store.get("transactions", charge_id_for(order_id), session=session)
        return Transaction(**doc) if doc else None

    def get_by_restaurant(self, restaurant_id: str, limit: Optional[int] = 50, session=None) -> List[Transaction]:
        docs = self.store.find("transactions", {"restaurant_id": restaurant_id},
                               sort=[("created_at", -1)], limit=limit, session=session)
        return [Transaction(**d) for d in docs]

    def refunded_amount(self, transaction_id: str, session=None) -> float:
        docs = self.store.find("transactions", {"corrects_transaction_id": transaction_id, "kind": "refund"},
                               session=session)
        return round(sum(d["amount"] for d in docs), 2)

    def claimed_ids(self, restaurant_id: str, session=None) -> Set[str]:
        return {d["id"] for d in self.store.find("payout_claims", {"restaurant_id": restaurant_id}, session=session)}

    def _window(self, restaurant_id: str, window_days: int) -> List[Transaction]:
        since = datetime.now(timezone.utc) - timedelta(days=window_days)
        return [t for t in self.get_by_restaurant(restaurant_id, limit=None) if t.created_at and t.created_at >= since]

    def analytics(self, restaurant_id: str, window_days: int = 30) -> TransactionAnalytics:
        transactions = self._window(restaurant_id, window_days)
        charges = [t for t in transactions if t.kind == "charge" and t.payment_status == "completed"]
        refunds = sum(t.amount for t in transactions if t.kind == "refund")

        breakdown: Dict[str, MethodBreakdown] = defaultdict(MethodBreakdown)
        for t in charges:
            breakdown[t.payment_method].count += 1
            breakdown[t.payment_method].amount = round(breakdown[t.payment_method].amount + t.amount, 2)

        revenue = sum(t.amount for t in charges) - refunds
        count = len(charges)
        return TransactionAnalytics(
            total_revenue=round(revenue, 2),
            total_transactions=count,
            average_transaction=round(revenue / count, 2) if count else 0.0,
            total_processing_fees=round(sum(t.processing_fee for t in charges), 2),
            total_refunds=round(refunds, 2),
            pending_amount=round(sum(t.amount for t in transactions
                                     if t.kind == "charge" and t.payment_status == "pending"), 2),
            payment_method_breakdown=dict(breakdown),
        )

    def day_wise_analytics(self, restaurant_id: str, window_days: int = 7) -> List[DayRollup]:
        claimed = self.claimed_ids(restaurant_id)
        transactions = self._window(restaurant_id, window_days)
        refunds: Dict[str, float] = defaultdict(float)
        for t in transactions:
            if t.kind == "refund":
                refunds[t.corrects_transaction_id] += t.amount

        days: Dict[str, DayRollup] = {}
        for t in transactions:
            if t.kind != "charge" or t.payment_status != "completed":
                continue
            day = t.created_at.strftime("%Y-%m-%d")
            rollup = days.setdefault(day, DayRollup(date=day))
            rollup.revenue += t.amount - refunds[t.id]
            rollup.transactions += 1
            rollup.processing_fees += t.processing_fee
            rollup.net_amount += t.net_amount - refunds[t.id]
            if t.payment_method == "online" and t.id not in claimed:
                rollup.payout_amount += max(t.net_amount - refunds[t.id], 0.0)

        rollups = sorted(days.values(), key=lambda r: r.date, reverse=True)
        for r in rollups:
            r.revenue = round(r.revenue, 2)
            r.processing_fees = round(r.processing_fees, 2)
            r.net_amount = round(r.net_amount, 2)
            r.payout_amount = round(r.payout_amount, 2)
        return rollups
