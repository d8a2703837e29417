import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional

import pytest

from cart import Cart, DocumentCartStorage
from checkout import CheckoutOrchestrator
from tests.memory_store import MemoryStore
from gateway import ChargeResult, RazorpayGateway
from ledger import TransactionLedger
from menu import MenuCatalog
from orders import OrderBook
from payouts import PayoutAggregator
from pricing import DeliveryFeeRule, PricingRules, TaxRule
from reservations import TableAssignmentGrid
from schemas import Addon, CustomerInfo, MenuItem, Transaction, Variant

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class ScriptedGateway(RazorpayGateway):
    """Razorpay adapter with the network call replaced by a scripted outcome."""

    def __init__(self, succeed: bool = True, verified: bool = False):
        super().__init__(key_id="rzp_test_key", key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)
        self.succeed = succeed
        self.verified = verified
        self.calls = []

    def initiate_charge(self, amount, order_id, customer_info, restaurant_info):
        self.calls.append({"amount": amount, "order_id": order_id, "restaurant_id": restaurant_info.id})
        if not self.succeed:
            return ChargeResult(success=False, error="Card declined")
        return ChargeResult(
            success=True,
            gateway_order_id=f"order_{order_id}",
            payment_id=f"pay_{order_id}" if self.verified else None,
            verified=self.verified,
            key=self.key_id,
        )


MARGHERITA = MenuItem(
    id="margherita",
    restaurant_id="R1",
    name="Margherita Pizza",
    price=300,
    addons=[Addon(name="Extra Cheese", price=50), Addon(name="Olives", price=30)],
)
FARMHOUSE = MenuItem(
    id="farmhouse",
    restaurant_id="R1",
    name="Farmhouse Pizza",
    price=200,
    variants=[Variant(name="Regular", price=200), Variant(name="Large", price=350)],
    addons=[Addon(name="Cheese", price=40)],
)
SOLD_OUT = MenuItem(id="sold-out", restaurant_id="R1", name="Seasonal Soup", price=120, available=False)
DOSA = MenuItem(id="dosa", restaurant_id="R2", name="Masala Dosa", price=90)


@pytest.fixture
def store():
    store = MemoryStore()
    for item in (MARGHERITA, FARMHOUSE, SOLD_OUT, DOSA):
        store.insert("menuitem", item)
    return store


@pytest.fixture
def rules():
    return PricingRules(delivery=DeliveryFeeRule(fee=30), tax=TaxRule(rate=0))


@pytest.fixture
def catalog(store):
    return MenuCatalog(store)


@pytest.fixture
def make_cart(store, rules):
    def factory(session_id: str = "session-1", order_type: str = "delivery"):
        return Cart(session_id, DocumentCartStorage(store), rules, order_type=order_type)
    return factory


@pytest.fixture
def ledger(store):
    return TransactionLedger(store)


@pytest.fixture
def orders(store, ledger):
    return OrderBook(store, ledger)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def checkout(store, gateway, ledger, orders):
    return CheckoutOrchestrator(store, gateway, ledger, orders, convenience_fee=2.0, currency="INR")


@pytest.fixture
def payouts(store, ledger):
    return PayoutAggregator(store, ledger)


@pytest.fixture
def grid(store):
    return TableAssignmentGrid(store)


@pytest.fixture
def customer():
    return CustomerInfo(first_name="Asha", last_name="Rao", phone="9876543210", email="asha@example.com")


@pytest.fixture
def record_charge(ledger, customer):
    """Store a charge directly in the ledger."""
    counter = {"n": 0}

    def factory(amount: float = 100.0, method: str = "online", status: str = "completed",
                restaurant_id: str = "R1", created_at: Optional[datetime] = None) -> Transaction:
        counter["n"] += 1
        fee = 2.0 if method == "online" else 0.0
        transaction = Transaction(
            id=f"TXN-T{counter['n']}",
            order_id=f"ORD-T{counter['n']}",
            restaurant_id=restaurant_id,
            customer_info=customer,
            amount=amount,
            payment_method=method,
            payment_status=status,
            processing_fee=fee,
            net_amount=amount - fee,
            transaction_type="online" if method == "online" else "offline",
            created_at=created_at or datetime(2024, 7, 15, 12, 0, tzinfo=timezone.utc),
        )
        ledger.record_transaction(transaction)
        return ledger.get(transaction.id)
    return factory
