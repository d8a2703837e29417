from datetime import datetime, timezone

from schemas import PayoutPeriod

JULY = PayoutPeriod(start_date="2024-07-01", end_date="2024-07-31")


def on(day):
    return datetime(2024, 7, day, 12, 0, tzinfo=timezone.utc)


def test_transactions_are_claimed_by_at_most_one_payout(record_charge, payouts):
    first = [record_charge(created_at=on(day)) for day in (10, 11, 12)]

    p1 = payouts.create_payout_request("R1", JULY)
    assert p1.success
    assert set(p1.payout_request.transaction_ids) == {t.id for t in first}
    assert p1.payout_request.amount == 3 * 98
    assert p1.payout_request.status == "pending"

    later = [record_charge(created_at=on(day)) for day in (13, 14)]
    p2 = payouts.create_payout_request("R1", JULY)
    assert set(p2.payout_request.transaction_ids) == {t.id for t in later}

    p3 = payouts.create_payout_request("R1", JULY)
    assert not p3.success
    assert p3.error.kind == "no_eligible_funds"


def test_only_completed_online_charges_in_period_are_eligible(record_charge, payouts):
    record_charge(method="cash", created_at=on(10))
    record_charge(status="pending", created_at=on(10))
    record_charge(status="failed", created_at=on(10))
    record_charge(restaurant_id="R2", created_at=on(10))
    record_charge(created_at=datetime(2024, 8, 1, 0, 5, tzinfo=timezone.utc))
    inside = record_charge(created_at=datetime(2024, 7, 31, 23, 59, tzinfo=timezone.utc))

    result = payouts.create_payout_request("R1", JULY)

    assert result.payout_request.transaction_ids == [inside.id]


def test_refunds_reduce_payable_amount(record_charge, ledger, payouts):
    partly = record_charge(created_at=on(10))
    fully = record_charge(created_at=on(11))
    ledger.record_refund(partly.id, 50)
    ledger.record_refund(fully.id)

    result = payouts.create_payout_request("R1", JULY)

    assert result.payout_request.transaction_ids == [partly.id]
    assert result.payout_request.amount == 48


def test_no_eligible_funds_writes_nothing(payouts, store):
    result = payouts.create_payout_request("R1", JULY)

    assert result.error.kind == "no_eligible_funds"
    assert store.find("payout_requests") == []


def test_claim_collision_rolls_back_whole_payout(record_charge, payouts, store):
    taken = record_charge(created_at=on(10))
    record_charge(created_at=on(11))
    store.insert("payout_claims", {"id": taken.id, "payout_request_id": "PAY-OTHER", "restaurant_id": "elsewhere"})

    result = payouts.create_payout_request("R1", JULY)

    assert result.error.kind == "conflict"
    assert store.find("payout_requests") == []
    assert len(store.find("payout_claims")) == 1


def test_period_must_be_ordered(payouts):
    result = payouts.create_payout_request("R1", PayoutPeriod(start_date="2024-07-31", end_date="2024-07-01"))
    assert result.error.field == "period"


def test_payout_status_flow(record_charge, payouts):
    record_charge(created_at=on(10))
    payout_id = payouts.create_payout_request("R1", JULY).payout_request_id

    assert payouts.update_status(payout_id, "paid").error.kind == "invalid_transition"

    approved = payouts.update_status(payout_id, "approved", notes="Checked")
    assert approved.payout_request.status == "approved"
    assert approved.payout_request.notes == "Checked"

    paid = payouts.update_status(payout_id, "paid", payment_details={"utr": "UTR123"})
    assert paid.payout_request.payment_details == {"utr": "UTR123"}
    assert payouts.update_status(payout_id, "rejected").error.kind == "invalid_transition"
    assert payouts.update_status("PAY-MISSING", "approved").error.kind == "not_found"


def test_rejected_payout_keeps_its_claims(record_charge, payouts):
    record_charge(created_at=on(10))
    payout_id = payouts.create_payout_request("R1", JULY).payout_request_id
    payouts.update_status(payout_id, "rejected")

    assert payouts.create_payout_request("R1", JULY).error.kind == "no_eligible_funds"
    assert [p.id for p in payouts.get_by_restaurant("R1")] == [payout_id]
