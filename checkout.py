"""
Checkout Orchestrator

submit() runs one checkout through validating -> authorizing -> committing,
or ends in failed. The order id doubles as the idempotency key: it is fixed
before the gateway is called, and a repeated submit with the same id returns
what that id already produced.

Order and charge Transaction are written in a single store transaction, and
only once payment is settled: cash orders and gateway-confirmed charges
commit inside submit(). An online charge the gateway has not confirmed yet
is kept as a CheckoutIntent (frozen lines, totals and gateway order) in
`checkout_intents`; the signed payment callback or the `payment.captured`
webhook turns it into the Order plus a `completed` Transaction, and
`payment.failed` discards it. A failed checkout leaves no Order or
Transaction behind.
"""

import logging
import re
from datetime import datetime
from typing import Optional

from email_validator import validate_email, EmailNotValidError
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

import config
import pricing
from cart import Cart
from database import generate_id
from errors import (ConflictError, GatewayError, InvalidTransitionError, NotFoundError, Result,
                    ValidationError, returns_result)
from gateway import ChargeResult, PaymentGateway, RestaurantInfo
from ledger import TransactionLedger, charge_id_for
from orders import OrderBook
from schemas import CustomerInfo, Order, OrderLine, OrderType, PaymentMethod, Transaction

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\+?[0-9]{10,15}$")


class CheckoutRequest(BaseModel):
    customer_info: CustomerInfo
    payment_method: PaymentMethod
    order_type: OrderType = "takeaway"
    order_id: Optional[str] = None  # idempotency key; generated when omitted
    special_instructions: Optional[str] = None
    user_id: Optional[str] = None
    guest_session_id: Optional[str] = None
    reservation_id: Optional[str] = None
    restaurant_name: str = ""


class CheckoutIntent(BaseModel):
    """An online checkout waiting for the gateway's signed confirmation."""
    id: str  # the order id
    cart_session_id: str
    order: Order
    transaction: Transaction
    payment: ChargeResult
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CheckoutResult(Result):
    order_id: Optional[str] = None
    order: Optional[Order] = None
    transaction: Optional[Transaction] = None
    payment: Optional[ChargeResult] = None


def validate_customer(info: CustomerInfo):
    if not info.first_name.strip():
        raise ValidationError("First name is required", field="first_name")
    phone = re.sub(r"[\s-]", "", info.phone)
    if not phone:
        raise ValidationError("Phone number is required", field="phone")
    if not PHONE_RE.match(phone):
        raise ValidationError("Phone number is not valid", field="phone")
    if info.email:
        try:
            validate_email(info.email, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError(str(exc), field="email") from exc


class CheckoutOrchestrator:
    def __init__(self, store, gateway: PaymentGateway, ledger: TransactionLedger, orders: OrderBook,
                 convenience_fee: float = config.CONVENIENCE_FEE, currency: str = config.CURRENCY):
        self.store = store
        self.gateway = gateway
        self.ledger = ledger
        self.orders = orders
        self.convenience_fee = convenience_fee
        self.currency = currency

    def _existing(self, order_id: str) -> Optional[CheckoutResult]:
        order = self.orders.find(order_id)
        if order is None:
            return None
        return CheckoutResult(order_id=order_id, order=order,
                              transaction=self.ledger.get_charge_for_order(order_id))

    def get_intent(self, order_id: str, session=None) -> Optional[CheckoutIntent]:
        doc = self.store.get("checkout_intents", order_id, session=session)
        return CheckoutIntent(**doc) if doc else None

    def _check_reservation(self, reservation_id: str, restaurant_id: str, session=None) -> dict:
        doc = self.store.get("reservations", reservation_id, session=session)
        if not doc or doc["restaurant_id"] != restaurant_id:
            raise NotFoundError(f"Reservation not found: {reservation_id}", field="reservation_id")
        return doc

    @returns_result(CheckoutResult)
    def submit(self, cart: Cart, request: CheckoutRequest) -> CheckoutResult:
        order_id = request.order_id or generate_id("ORD")

        existing = self._existing(order_id)
        if existing is not None:
            logger.info("checkout %s: already committed, returning stored order", order_id)
            return existing
        intent = self.get_intent(order_id)
        if intent is not None:
            logger.info("checkout %s: awaiting payment, returning stored intent", order_id)
            return CheckoutResult(order_id=order_id, payment=intent.payment)

        logger.info("checkout %s: validating", order_id)
        validate_customer(request.customer_info)
        lines = cart.get_cart()
        if not lines:
            raise ValidationError("Cart is empty", field="cart")
        restaurant_id = cart.restaurant_id
        if request.reservation_id:
            self._check_reservation(request.reservation_id, restaurant_id)

        totals = cart.totals(request.order_type)
        fee = self.convenience_fee if request.payment_method == "online" else 0.0
        total = round(totals.total + fee, 2)

        logger.info("checkout %s: authorizing %s payment of %.2f", order_id, request.payment_method, total)
        charge = None
        if request.payment_method == "online":
            charge = self.gateway.initiate_charge(
                total, order_id, request.customer_info,
                RestaurantInfo(id=restaurant_id, name=request.restaurant_name),
            )
            if not charge.success:
                logger.warning("checkout %s: gateway declined: %s", order_id, charge.error)
                raise GatewayError(charge.error or "Payment failed, please try again")

        order = Order(
            id=order_id,
            restaurant_id=restaurant_id,
            user_id=request.user_id,
            guest_session_id=request.guest_session_id,
            is_guest=request.user_id is None,
            customer_info=request.customer_info,
            items=[OrderLine(
                item_id=line.item_id,
                name=line.name,
                variant=line.variant,
                addons=line.addons,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=pricing.line_total(line),
            ) for line in lines],
            order_type=request.order_type,
            payment_method=request.payment_method,
            special_instructions=request.special_instructions,
            subtotal=totals.subtotal,
            delivery_fee=totals.delivery_fee,
            tax=totals.tax,
            discount=totals.discount,
            convenience_fee=fee,
            total=total,
            status="pending",
            transaction_id=charge_id_for(order_id),
            reservation_id=request.reservation_id,
        )
        transaction = Transaction(
            id=charge_id_for(order_id),
            order_id=order_id,
            restaurant_id=restaurant_id,
            customer_info=request.customer_info,
            amount=total,
            currency=self.currency,
            payment_method=request.payment_method,
            payment_status="completed" if charge is not None and charge.verified else "pending",
            processing_fee=fee,
            net_amount=round(total - fee, 2),
            transaction_type="online" if request.payment_method == "online" else "offline",
            gateway_order_id=charge.gateway_order_id if charge else None,
            gateway_payment_id=charge.payment_id if charge else None,
            notes="Online payment" if request.payment_method == "online" else "Cash on delivery",
        )

        if charge is not None and not charge.verified:
            intent = CheckoutIntent(id=order_id, cart_session_id=cart.session_id, order=order,
                                    transaction=transaction, payment=charge)
            try:
                self.store.insert("checkout_intents", intent)
            except DuplicateKeyError:
                logger.info("checkout %s: intent stored concurrently", order_id)
                return CheckoutResult(order_id=order_id, payment=self.get_intent(order_id).payment)
            logger.info("checkout %s: awaiting payment confirmation", order_id)
            return CheckoutResult(order_id=order_id, payment=charge)

        logger.info("checkout %s: committing", order_id)
        try:
            with self.store.transaction() as session:
                self._commit(order, transaction, session)
        except DuplicateKeyError:
            # A concurrent retry with the same key committed first
            logger.info("checkout %s: committed concurrently, returning stored order", order_id)
            return self._existing(order_id)

        cart.clear()
        result = self._existing(order_id)
        result.payment = charge
        return result

    def _commit(self, order: Order, transaction: Transaction, session):
        self.store.insert("orders", order, session=session)
        self.ledger.record_transaction(transaction, session=session)
        if order.reservation_id:
            doc = self._check_reservation(order.reservation_id, order.restaurant_id, session=session)
            pre_orders = doc.get("pre_order_ids", []) + [order.id]
            self.store.update("reservations", order.reservation_id, {"pre_order_ids": pre_orders}, session=session)

    def _settle(self, order_id: str, status: str, payment_id: Optional[str]) -> CheckoutResult:
        """Apply a signed payment outcome to the checkout for `order_id`."""
        existing = self._existing(order_id)
        if existing is not None:
            charge = existing.transaction
            if charge is None or charge.payment_status != status:
                raise InvalidTransitionError(
                    f"Payment for order {order_id} is already {charge.payment_status if charge else 'missing'}")
            return existing

        try:
            with self.store.transaction() as session:
                intent = self.get_intent(order_id, session=session)
                if intent is None and status == "failed":
                    return CheckoutResult(order_id=order_id)
                if intent is None:
                    raise NotFoundError(f"No checkout awaiting payment for order {order_id}")
                self.store.delete("checkout_intents", order_id, session=session)
                if status == "failed":
                    logger.info("checkout %s: payment failed, intent discarded", order_id)
                    return CheckoutResult(order_id=order_id)
                transaction = intent.transaction.model_copy(update={
                    "payment_status": "completed",
                    "gateway_payment_id": payment_id,
                })
                self._commit(intent.order, transaction, session)
                self.store.delete("carts", intent.cart_session_id, session=session)
        except DuplicateKeyError:
            logger.info("checkout %s: committed concurrently", order_id)
        logger.info("checkout %s: payment captured, order committed", order_id)
        return self._existing(order_id)

    @returns_result(CheckoutResult)
    def confirm_payment(self, order_id: str, gateway_order_id: str, payment_id: str,
                        signature: str) -> CheckoutResult:
        """Client-side payment callback; trusted only with a valid gateway signature."""
        charge = self.ledger.get_charge_for_order(order_id)
        if charge is not None:
            expected = charge.gateway_order_id
        else:
            intent = self.get_intent(order_id)
            if intent is None:
                raise NotFoundError(f"Order not found: {order_id}")
            expected = intent.payment.gateway_order_id
        if expected != gateway_order_id:
            raise ValidationError("Payment does not belong to this order", field="gateway_order_id")
        if not self.gateway.verify_payment(gateway_order_id, payment_id, signature):
            logger.warning("checkout %s: payment signature rejected", order_id)
            raise GatewayError("Payment verification failed")
        return self._settle(order_id, "completed", payment_id)

    @returns_result(CheckoutResult)
    def handle_gateway_event(self, body: bytes, signature: Optional[str]) -> CheckoutResult:
        event = self.gateway.parse_webhook(body, signature)
        if event.status is None or not event.order_id:
            logger.info("webhook %s ignored", event.event)
            return CheckoutResult()
        logger.info("webhook %s for order %s", event.event, event.order_id)
        try:
            return self._settle(event.order_id, event.status, event.payment_id)
        except InvalidTransitionError as exc:
            # e.g. payment.failed arriving after capture was already recorded
            logger.warning("webhook %s for order %s not applied: %s", event.event, event.order_id, exc)
            raise ConflictError(exc.message) from exc
