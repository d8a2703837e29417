import logging
import os
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from pydantic import BaseModel, Field

import config
from cart import Cart, DocumentCartStorage
from checkout import CheckoutOrchestrator, CheckoutRequest
from database import connect_store, COLLECTIONS
from errors import NotFoundError, Result
from gateway import PaymentGateway, RazorpayGateway
from ledger import TransactionLedger
from menu import MenuCatalog
from orders import OrderBook
from payouts import PayoutAggregator
from pricing import PricingRules
from reservations import ReservationRequest, TableAssignmentGrid
from schemas import OrderStatus, OrderType, PayoutPeriod, PayoutStatus, ReservationStatus, Table

logging.basicConfig(level=config.LOGLEVEL, format="%(asctime)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Restaurant Ordering Core API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

STATUS_BY_KIND = {
    "validation": 400,
    "gateway": 402,
    "not_found": 404,
    "conflict": 409,
    "invalid_transition": 409,
    "no_eligible_funds": 422,
}


class Core:
    """Wires the components to one store and one payment gateway."""

    def __init__(self, store, gateway: PaymentGateway, rules: Optional[PricingRules] = None,
                 tables: Optional[List[Table]] = None):
        self.store = store
        self.gateway = gateway
        self.rules = rules or PricingRules()
        self.catalog = MenuCatalog(store)
        self.cart_storage = DocumentCartStorage(store)
        self.ledger = TransactionLedger(store)
        self.orders = OrderBook(store, self.ledger)
        self.checkout = CheckoutOrchestrator(store, gateway, self.ledger, self.orders)
        self.payouts = PayoutAggregator(store, self.ledger)
        self.grid = TableAssignmentGrid(store, tables)

    def cart(self, session_id: str, order_type: str = "delivery") -> Cart:
        return Cart(session_id, self.cart_storage, self.rules, order_type=order_type)


_core: Optional[Core] = None


def get_core() -> Core:
    global _core
    if _core is None:
        _core = Core(connect_store(), RazorpayGateway())
    return _core


def get_staff_key_hash() -> Optional[str]:
    return config.STAFF_KEY_HASH


def get_cron_secret() -> Optional[str]:
    return config.CRON_SECRET


def require_staff(x_staff_key: Optional[str] = Header(None), key_hash: Optional[str] = Depends(get_staff_key_hash)):
    if not key_hash:
        raise HTTPException(status_code=503, detail="Staff access is not configured")
    if not x_staff_key or not pwd_context.verify(x_staff_key, key_hash):
        raise HTTPException(status_code=401, detail="Invalid staff key")


def respond(result: Result):
    if result.success:
        return result
    return JSONResponse(status_code=STATUS_BY_KIND.get(result.error.kind, 400), content=result.model_dump(mode="json"))


# ===================== Public Endpoints =====================
@app.get("/")
def root():
    return {"message": "Restaurant Ordering Core API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        response["collections"] = get_core().store.list_collections()
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/menu/{item_id}")
def get_menu_item(item_id: str, core: Core = Depends(get_core)):
    doc = core.store.get("menuitem", item_id)
    if not doc:
        raise HTTPException(404, "Item not found")
    return doc


# ===================== Cart =====================
class AddToCartRequest(BaseModel):
    item_id: str
    quantity: int = 1
    variant: Optional[str] = None
    addons: List[str] = []
    replace: bool = False


class UpdateQuantityRequest(BaseModel):
    quantity: int


@app.get("/cart/{session_id}")
def get_cart(session_id: str, order_type: OrderType = "delivery", core: Core = Depends(get_core)):
    cart = core.cart(session_id, order_type)
    return {"restaurant_id": cart.restaurant_id, "lines": cart.get_cart(), "count": cart.count,
            "totals": cart.totals()}


@app.post("/cart/{session_id}/items")
def add_to_cart(session_id: str, payload: AddToCartRequest, core: Core = Depends(get_core)):
    try:
        item = core.catalog.get_menu_item(payload.item_id)
    except NotFoundError:
        raise HTTPException(404, "Item not found")
    cart = core.cart(session_id)
    return respond(cart.add_to_cart(item, payload.quantity, item.restaurant_id, variant=payload.variant,
                                    addons=payload.addons, replace=payload.replace))


@app.patch("/cart/{session_id}/items/{line_id}")
def update_cart_line(session_id: str, line_id: str, payload: UpdateQuantityRequest, core: Core = Depends(get_core)):
    return respond(core.cart(session_id).update_quantity(line_id, payload.quantity))


@app.delete("/cart/{session_id}/items/{line_id}")
def remove_cart_line(session_id: str, line_id: str, core: Core = Depends(get_core)):
    return respond(core.cart(session_id).remove_line(line_id))


@app.delete("/cart/{session_id}")
def clear_cart(session_id: str, core: Core = Depends(get_core)):
    return core.cart(session_id).clear()


# ===================== Checkout & Payments =====================
class VerifyPaymentRequest(BaseModel):
    order_id: str
    gateway_order_id: str
    payment_id: str
    signature: str


@app.post("/cart/{session_id}/checkout")
def checkout(session_id: str, payload: CheckoutRequest, core: Core = Depends(get_core)):
    cart = core.cart(session_id, payload.order_type)
    return respond(core.checkout.submit(cart, payload))


@app.post("/payments/verify")
def verify_payment(payload: VerifyPaymentRequest, core: Core = Depends(get_core)):
    return respond(core.checkout.confirm_payment(payload.order_id, payload.gateway_order_id,
                                                 payload.payment_id, payload.signature))


@app.post("/payments/webhook")
async def payment_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(None),
                          core: Core = Depends(get_core)):
    body = await request.body()
    return respond(core.checkout.handle_gateway_event(body, x_razorpay_signature))


# ===================== Orders =====================
class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


@app.get("/orders/{order_id}")
def get_order(order_id: str, core: Core = Depends(get_core)):
    order = core.orders.find(order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/restaurants/{restaurant_id}/orders")
def list_restaurant_orders(restaurant_id: str, core: Core = Depends(get_core)):
    return core.orders.get_by_restaurant(restaurant_id)


@app.get("/users/{user_id}/orders")
def list_user_orders(user_id: str, core: Core = Depends(get_core)):
    return core.orders.get_by_user(user_id)


@app.put("/admin/orders/{order_id}/status", dependencies=[Depends(require_staff)])
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest, core: Core = Depends(get_core)):
    return respond(core.orders.update_status(order_id, payload.status))


@app.post("/cron/cancel-pending-orders")
def cancel_pending_orders(authorization: Optional[str] = Header(None), secret: Optional[str] = Depends(get_cron_secret),
                          core: Core = Depends(get_core)):
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return core.orders.cancel_stale_pending_orders()


# ===================== Transactions =====================
class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None


@app.get("/restaurants/{restaurant_id}/transactions")
def list_transactions(restaurant_id: str, limit: int = Query(50, ge=1, le=500), core: Core = Depends(get_core)):
    return core.ledger.get_by_restaurant(restaurant_id, limit)


@app.get("/restaurants/{restaurant_id}/analytics")
def transaction_analytics(restaurant_id: str, window_days: int = Query(30, ge=1), core: Core = Depends(get_core)):
    return core.ledger.analytics(restaurant_id, window_days)


@app.get("/restaurants/{restaurant_id}/analytics/daily")
def day_wise_analytics(restaurant_id: str, window_days: int = Query(7, ge=1), core: Core = Depends(get_core)):
    return core.ledger.day_wise_analytics(restaurant_id, window_days)


@app.post("/admin/transactions/{transaction_id}/refunds", dependencies=[Depends(require_staff)])
def refund_transaction(transaction_id: str, payload: RefundRequest, core: Core = Depends(get_core)):
    return respond(core.ledger.record_refund(transaction_id, payload.amount, payload.reason))


# ===================== Payouts =====================
class CreatePayoutRequest(BaseModel):
    period: PayoutPeriod
    notes: Optional[str] = None


class UpdatePayoutStatusRequest(BaseModel):
    status: PayoutStatus
    notes: Optional[str] = None
    payment_details: Optional[dict] = None


@app.post("/admin/restaurants/{restaurant_id}/payouts", dependencies=[Depends(require_staff)])
def create_payout(restaurant_id: str, payload: CreatePayoutRequest, core: Core = Depends(get_core)):
    return respond(core.payouts.create_payout_request(restaurant_id, payload.period, payload.notes))


@app.get("/admin/restaurants/{restaurant_id}/payouts", dependencies=[Depends(require_staff)])
def list_payouts(restaurant_id: str, core: Core = Depends(get_core)):
    return core.payouts.get_by_restaurant(restaurant_id)


@app.put("/admin/payouts/{payout_id}/status", dependencies=[Depends(require_staff)])
def update_payout_status(payout_id: str, payload: UpdatePayoutStatusRequest, core: Core = Depends(get_core)):
    return respond(core.payouts.update_status(payout_id, payload.status, payload.notes, payload.payment_details))


# ===================== Reservations =====================
class UpdateReservationStatusRequest(BaseModel):
    status: ReservationStatus
    notes: Optional[str] = None


class AssignTableRequest(BaseModel):
    table_number: str


@app.post("/reservations")
def create_reservation(payload: ReservationRequest, core: Core = Depends(get_core)):
    return respond(core.grid.create_reservation(payload))


@app.get("/reservations/{reservation_id}")
def get_reservation(reservation_id: str, core: Core = Depends(get_core)):
    doc = core.store.get("reservations", reservation_id)
    if not doc:
        raise HTTPException(404, "Reservation not found")
    return doc


@app.get("/restaurants/{restaurant_id}/reservations")
def list_reservations(restaurant_id: str, date: str, core: Core = Depends(get_core)):
    return core.grid.for_date(restaurant_id, date)


@app.get("/restaurants/{restaurant_id}/availability")
def reservation_availability(restaurant_id: str, date: str, time: str, core: Core = Depends(get_core)):
    return core.grid.check_availability(restaurant_id, date, time)


@app.put("/admin/reservations/{reservation_id}/status", dependencies=[Depends(require_staff)])
def update_reservation_status(reservation_id: str, payload: UpdateReservationStatusRequest,
                              core: Core = Depends(get_core)):
    return respond(core.grid.transition(reservation_id, payload.status, payload.notes))


@app.put("/admin/reservations/{reservation_id}/table", dependencies=[Depends(require_staff)])
def assign_table(reservation_id: str, payload: AssignTableRequest, core: Core = Depends(get_core)):
    return respond(core.grid.assign_table(reservation_id, payload.table_number))


@app.get("/admin/restaurants/{restaurant_id}/tables", dependencies=[Depends(require_staff)])
def free_tables(restaurant_id: str, date: str, core: Core = Depends(get_core)):
    return core.grid.free_tables(restaurant_id, date)


# ===================== Schema Export for Docs =====================
@app.get("/schema")
def get_schema():
    return {
        "collections": COLLECTIONS,
        "notes": "payout_claims and table_assignments are keyed by the claimed transaction / table slot.",
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
