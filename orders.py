"""
Order status management.

Statuses move forward along ORDER_FLOW (steps may be skipped); `cancelled`
is reachable from any status that is not terminal. Payment follows the
order: delivering a cash order means the cash was collected, cancelling an
order voids a payment that never completed.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel

import config
from errors import InvalidTransitionError, NotFoundError, Result, ConflictError, returns_result
from ledger import TransactionLedger
from schemas import Order, Transaction

logger = logging.getLogger(__name__)

ORDER_FLOW = ["pending", "confirmed", "preparing", "ready", "delivered"]
TERMINAL_ORDER_STATUSES = {"delivered", "cancelled"}


def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL_ORDER_STATUSES:
        return False
    if target == "cancelled":
        return True
    if target not in ORDER_FLOW:
        return False
    return ORDER_FLOW.index(target) > ORDER_FLOW.index(current)


class OrderResult(Result):
    order: Optional[Order] = None
    transaction: Optional[Transaction] = None


class SweepResult(BaseModel):
    cancelled_count: int = 0
    cancelled_orders: List[str] = []
    expired_checkouts: List[str] = []


class OrderBook:
    def __init__(self, store, ledger: TransactionLedger):
        self.store = store
        self.ledger = ledger

    def get(self, order_id: str, session=None) -> Order:
        doc = self.store.get("orders", order_id, session=session)
        if not doc:
            raise NotFoundError(f"Order not found: {order_id}")
        return Order(**doc)

    def find(self, order_id: str, session=None) -> Optional[Order]:
        doc = self.store.get("orders", order_id, session=session)
        return Order(**doc) if doc else None

    def get_by_restaurant(self, restaurant_id: str, limit: Optional[int] = None) -> List[Order]:
        docs = self.store.find("orders", {"restaurant_id": restaurant_id}, sort=[("created_at", -1)], limit=limit)
        return [Order(**d) for d in docs]

    def get_by_user(self, user_id: str) -> List[Order]:
        docs = self.store.find("orders", {"user_id": user_id}, sort=[("created_at", -1)])
        return [Order(**d) for d in docs]

    def transition(self, order_id: str, status: str, session=None) -> Order:
        """Apply one status change inside the caller's transaction."""
        order = self.get(order_id, session=session)
        if not can_transition(order.status, status):
            raise InvalidTransitionError(f"Order {order_id} cannot move from {order.status} to {status}")
        charge = self.ledger.get_charge_for_order(order_id, session=session)
        if (status != "cancelled" and charge is not None and charge.payment_method == "online"
                and charge.payment_status != "completed"):
            raise InvalidTransitionError(f"Order {order_id} has no completed online payment")
        if not self.store.update("orders", order_id, {"status": status},
                                 expect={"status": order.status}, session=session):
            raise ConflictError(f"Order {order_id} was changed concurrently")

        if charge is not None and charge.payment_status == "pending":
            if status == "delivered" and charge.payment_method == "cash":
                self.ledger.settle(charge.id, "completed", session=session)
            elif status == "cancelled":
                self.ledger.settle(charge.id, "failed", session=session)
        logger.info("order %s: %s -> %s", order_id, order.status, status)
        return self.get(order_id, session=session)

    @returns_result(OrderResult)
    def update_status(self, order_id: str, status: str) -> OrderResult:
        with self.store.transaction() as session:
            order = self.transition(order_id, status, session=session)
            charge = self.ledger.get_charge_for_order(order_id, session=session)
        return OrderResult(order=order, transaction=charge)

    def cancel_stale_pending_orders(self, max_age_minutes: int = config.PENDING_ORDER_TTL_MINUTES) -> SweepResult:
        """Cancel pending orders whose payment is still pending after `max_age_minutes`
        and drop online checkouts that were never paid."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        result = SweepResult()
        for doc in self.store.find("orders", {"status": "pending"}):
            order = Order(**doc)
            if order.created_at is None or order.created_at > cutoff:
                continue
            charge = self.ledger.get_charge_for_order(order.id)
            if charge is not None and charge.payment_status != "pending":
                continue
            try:
                with self.store.transaction() as session:
                    self.transition(order.id, "cancelled", session=session)
            except (InvalidTransitionError, ConflictError) as exc:
                logger.warning("stale order %s skipped: %s", order.id, exc)
                continue
            result.cancelled_orders.append(order.id)
        result.cancelled_count = len(result.cancelled_orders)

        # Online checkouts whose payment never arrived
        for doc in self.store.find("checkout_intents"):
            if doc.get("created_at") is None or doc["created_at"] > cutoff:
                continue
            if self.store.delete("checkout_intents", doc["id"]):
                result.expired_checkouts.append(doc["id"])
        logger.info("cancelled %d stale pending orders, expired %d unpaid checkouts",
                    result.cancelled_count, len(result.expired_checkouts))
        return result
