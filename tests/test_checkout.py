import json

from checkout import CheckoutRequest
from reservations import ReservationRequest
from schemas import CustomerInfo, ReservationCustomer
from tests.conftest import KEY_SECRET, MARGHERITA, WEBHOOK_SECRET, ScriptedGateway, sign


def fill_cart(make_cart, session_id="session-1"):
    cart = make_cart(session_id)
    cart.add_to_cart(MARGHERITA, 2, "R1", addons=["Extra Cheese"])
    return cart


def webhook_body(event, order_id, payment_id="pay_hook"):
    return json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "order_id": f"order_{order_id}",
            "amount": 73200,
            "notes": {"orderId": order_id},
            "error_description": "Bank declined" if event == "payment.failed" else None,
        }}},
    }).encode()


def test_cash_checkout_end_to_end(make_cart, checkout, store, customer, gateway):
    cart = fill_cart(make_cart)
    result = checkout.submit(cart, CheckoutRequest(customer_info=customer, payment_method="cash",
                                                   order_type="delivery"))

    assert result.success
    order, transaction = result.order, result.transaction
    assert order.status == "pending"
    assert order.items[0].line_total == 700
    assert (order.subtotal, order.delivery_fee, order.tax, order.discount, order.total) == (700, 30, 0, 0, 730)
    assert transaction.order_id == order.id
    assert order.transaction_id == transaction.id
    assert transaction.payment_method == "cash"
    assert transaction.payment_status == "pending"
    assert transaction.processing_fee == 0
    assert transaction.net_amount == 730
    assert transaction.transaction_type == "offline"
    assert gateway.calls == []
    assert cart.get_cart() == []
    assert len(store.find("orders")) == 1
    assert len(store.find("transactions")) == 1


def test_resubmitting_same_key_returns_existing_order(make_cart, checkout, store, customer):
    request = CheckoutRequest(order_id="ORD2407151900ABCD", customer_info=customer, payment_method="cash")
    first = checkout.submit(fill_cart(make_cart), request)
    second = checkout.submit(make_cart(), request)

    assert first.success and second.success
    assert second.order.id == first.order.id == "ORD2407151900ABCD"
    assert second.transaction.id == first.transaction.id
    assert len(store.find("orders")) == 1
    assert len(store.find("transactions", {"order_id": "ORD2407151900ABCD"})) == 1


def test_online_checkout_waits_for_payment_without_creating_an_order(make_cart, checkout, gateway, store, customer):
    cart = fill_cart(make_cart)
    result = checkout.submit(cart, CheckoutRequest(
        customer_info=customer, payment_method="online", order_type="delivery"))

    assert result.success
    assert result.order is None and result.transaction is None
    assert gateway.calls == [{"amount": 732, "order_id": result.order_id, "restaurant_id": "R1"}]
    assert result.payment.gateway_order_id == f"order_{result.order_id}"
    assert store.find("orders") == []
    assert store.find("transactions") == []
    assert len(cart.get_cart()) == 1

    intent = checkout.get_intent(result.order_id)
    assert intent.order.convenience_fee == 2
    assert intent.order.total == 732
    assert intent.transaction.processing_fee == 2
    assert intent.transaction.net_amount == 730


def test_resubmitting_online_checkout_does_not_charge_twice(make_cart, checkout, gateway, customer):
    request = CheckoutRequest(order_id="ORD-ONLINE", customer_info=customer, payment_method="online")
    first = checkout.submit(fill_cart(make_cart), request)
    second = checkout.submit(fill_cart(make_cart), request)

    assert first.order_id == second.order_id == "ORD-ONLINE"
    assert second.payment.gateway_order_id == first.payment.gateway_order_id
    assert len(gateway.calls) == 1


def test_gateway_confirmed_charge_is_recorded_completed(make_cart, store, ledger, orders, customer):
    from checkout import CheckoutOrchestrator
    orchestrator = CheckoutOrchestrator(store, ScriptedGateway(verified=True), ledger, orders)

    result = orchestrator.submit(fill_cart(make_cart), CheckoutRequest(customer_info=customer, payment_method="online"))

    assert result.transaction.payment_status == "completed"
    assert result.transaction.gateway_payment_id == f"pay_{result.order.id}"


def test_gateway_failure_leaves_no_state(make_cart, store, ledger, orders, customer):
    from checkout import CheckoutOrchestrator
    orchestrator = CheckoutOrchestrator(store, ScriptedGateway(succeed=False), ledger, orders)
    cart = fill_cart(make_cart)

    result = orchestrator.submit(cart, CheckoutRequest(order_id="ORD-FAIL", customer_info=customer,
                                                       payment_method="online"))

    assert not result.success
    assert result.error.kind == "gateway"
    assert store.find("orders") == []
    assert store.find("transactions", {"order_id": "ORD-FAIL"}) == []
    assert store.find("checkout_intents") == []
    assert len(cart.get_cart()) == 1


def test_invalid_customer_info_has_no_side_effects(make_cart, checkout, store, gateway):
    cart = fill_cart(make_cart)
    cases = [
        (CustomerInfo(first_name="", phone="9876543210"), "first_name"),
        (CustomerInfo(first_name="Asha", phone=""), "phone"),
        (CustomerInfo(first_name="Asha", phone="12ab"), "phone"),
        (CustomerInfo(first_name="Asha", phone="9876543210", email="not-an-email"), "email"),
    ]
    for info, field in cases:
        result = checkout.submit(cart, CheckoutRequest(customer_info=info, payment_method="online"))
        assert result.error.kind == "validation"
        assert result.error.field == field

    assert gateway.calls == []
    assert store.find("orders") == []


def test_empty_cart_cannot_check_out(make_cart, checkout, customer):
    result = checkout.submit(make_cart(), CheckoutRequest(customer_info=customer, payment_method="cash"))
    assert result.error.kind == "validation"
    assert result.error.field == "cart"


def test_signed_payment_callback_commits_order(make_cart, checkout, store, customer):
    order_id = checkout.submit(fill_cart(make_cart), CheckoutRequest(customer_info=customer,
                                                                     payment_method="online")).order_id
    gateway_order_id = f"order_{order_id}"

    forged = checkout.confirm_payment(order_id, gateway_order_id, "pay_1", "deadbeef")
    assert forged.error.kind == "gateway"
    assert store.find("orders") == []

    wrong_order = checkout.confirm_payment(order_id, "order_other", "pay_1", "deadbeef")
    assert wrong_order.error.field == "gateway_order_id"

    signature = sign(KEY_SECRET, f"{gateway_order_id}|pay_1".encode())
    result = checkout.confirm_payment(order_id, gateway_order_id, "pay_1", signature)

    assert result.success
    assert result.order.id == order_id
    assert result.order.status == "pending"
    assert result.transaction.payment_status == "completed"
    assert result.transaction.gateway_payment_id == "pay_1"
    assert result.transaction.amount == 702
    assert checkout.get_intent(order_id) is None
    assert make_cart().get_cart() == []

    again = checkout.confirm_payment(order_id, gateway_order_id, "pay_1", signature)
    assert again.success
    assert again.transaction.payment_status == "completed"
    assert len(store.find("transactions")) == 1


def test_webhook_capture_and_failure(make_cart, checkout, store, customer):
    captured = checkout.submit(fill_cart(make_cart, "s1"), CheckoutRequest(
        customer_info=customer, payment_method="online")).order_id
    failed = checkout.submit(fill_cart(make_cart, "s2"), CheckoutRequest(
        customer_info=customer, payment_method="online")).order_id

    body = webhook_body("payment.captured", captured)
    result = checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body))
    assert result.transaction.payment_status == "completed"
    assert result.transaction.gateway_payment_id == "pay_hook"
    assert result.order.status == "pending"

    body = webhook_body("payment.failed", failed)
    result = checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body))
    assert result.success
    assert result.order is None
    assert checkout.get_intent(failed) is None
    assert store.get("orders", failed) is None
    assert store.find("transactions", {"order_id": failed}) == []
    assert len(make_cart("s2").get_cart()) == 1

    late = webhook_body("payment.failed", captured)
    result = checkout.handle_gateway_event(late, sign(WEBHOOK_SECRET, late))
    assert result.error.kind == "conflict"
    assert checkout.ledger.get_charge_for_order(captured).payment_status == "completed"


def test_repeated_failure_webhook_is_acknowledged(make_cart, checkout, customer):
    order_id = checkout.submit(fill_cart(make_cart), CheckoutRequest(customer_info=customer,
                                                                     payment_method="online")).order_id
    body = webhook_body("payment.failed", order_id)

    assert checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body)).success
    assert checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body)).success


def test_webhook_with_bad_signature_is_rejected(make_cart, checkout, store, customer):
    order_id = checkout.submit(fill_cart(make_cart), CheckoutRequest(customer_info=customer,
                                                                     payment_method="online")).order_id
    body = webhook_body("payment.captured", order_id)

    result = checkout.handle_gateway_event(body, "forged")

    assert result.error.kind == "gateway"
    assert store.find("orders") == []
    assert checkout.get_intent(order_id) is not None


def test_webhook_without_amount_is_parsed(make_cart, checkout, customer):
    order_id = checkout.submit(fill_cart(make_cart), CheckoutRequest(customer_info=customer,
                                                                     payment_method="online")).order_id
    body = json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": {
        "id": "pay_2", "order_id": f"order_{order_id}", "amount": None, "notes": {"orderId": order_id}}}}}).encode()

    result = checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body))

    assert result.success
    assert result.transaction.payment_status == "completed"


def test_unhandled_webhook_event_is_acknowledged(checkout):
    body = json.dumps({"event": "order.paid", "payload": {}}).encode()
    result = checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body))
    assert result.success
    assert result.order is None


def test_pre_order_is_linked_to_reservation(make_cart, checkout, grid, customer):
    reservation = grid.create_reservation(ReservationRequest(
        restaurant_id="R1", customer=ReservationCustomer(name="Asha", phone="9876543210"),
        date="2024-07-15", time="19:00", guests=4)).reservation

    result = checkout.submit(fill_cart(make_cart), CheckoutRequest(
        customer_info=customer, payment_method="cash", order_type="dine-in", reservation_id=reservation.id))

    assert result.order.reservation_id == reservation.id
    assert result.order.delivery_fee == 0
    assert grid.get(reservation.id).pre_order_ids == [result.order.id]


def test_online_pre_order_is_linked_once_paid(make_cart, checkout, grid, customer):
    reservation = grid.create_reservation(ReservationRequest(
        restaurant_id="R1", customer=ReservationCustomer(name="Asha", phone="9876543210"),
        date="2024-07-15", time="19:00", guests=4)).reservation
    order_id = checkout.submit(fill_cart(make_cart), CheckoutRequest(
        customer_info=customer, payment_method="online", order_type="dine-in",
        reservation_id=reservation.id)).order_id
    assert grid.get(reservation.id).pre_order_ids == []

    body = webhook_body("payment.captured", order_id)
    checkout.handle_gateway_event(body, sign(WEBHOOK_SECRET, body))

    assert grid.get(reservation.id).pre_order_ids == [order_id]


def test_unknown_reservation_is_rejected_before_payment(make_cart, checkout, store, gateway, customer):
    for method in ("cash", "online"):
        result = checkout.submit(fill_cart(make_cart), CheckoutRequest(
            customer_info=customer, payment_method=method, reservation_id="RES-MISSING"))
        assert result.error.kind == "not_found"
        assert result.error.field == "reservation_id"

    assert gateway.calls == []
    assert store.find("orders") == []
    assert store.find("transactions") == []
    assert store.find("checkout_intents") == []


def test_reservation_of_other_restaurant_is_rejected(make_cart, checkout, grid, gateway, customer):
    reservation = grid.create_reservation(ReservationRequest(
        restaurant_id="R2", customer=ReservationCustomer(name="Asha", phone="9876543210"),
        date="2024-07-15", time="19:00", guests=2)).reservation

    result = checkout.submit(fill_cart(make_cart), CheckoutRequest(
        customer_info=customer, payment_method="online", reservation_id=reservation.id))

    assert result.error.kind == "not_found"
    assert gateway.calls == []
