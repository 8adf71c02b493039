import time

import razorpay
from sqlalchemy import select

from src.infrastructure.db.models import OutboxEvent


def _hold(client, user_id, event_id, ticket_type_id, quantity):
    return client.post(
        "/bookings/hold",
        json={
            "event_id": event_id,
            "tickets": [{"ticket_type_id": ticket_type_id, "quantity": quantity}],
        },
        headers={"X-User-Id": user_id},
    )


def _pay(client, razorpay_client, webhook, user_id, hold_id, payment_id):
    intent = client.post(
        "/payment/create-intent",
        json={"hold_id": hold_id},
        headers={"X-User-Id": user_id},
    )
    assert intent.status_code == 200

    notes = razorpay_client.order.create.call_args.args[0]["notes"]
    body, signature = webhook(notes, payment_id=payment_id)
    return client.post(
        "/payment/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )


def _general(client, event):
    response = client.get(f"/events/{event.id}/availability")
    assert response.status_code == 200
    return next(
        item for item in response.json()["ticket_types"]
        if item["ticket_type_id"] == event.general
    )


def test_booking_flow(client, razorpay_client, webhook, event):
    hold_response = _hold(client, "user1", event.id, event.general, 2)
    assert hold_response.status_code == 201
    hold = hold_response.json()
    assert hold["total_amount"] == "200.00"
    assert 0 < hold["ttl_seconds"] <= 600

    pay_response = _pay(client, razorpay_client, webhook, "user1", hold["hold_id"], "pay_flow_1")
    assert pay_response.status_code == 200
    assert pay_response.json()["status"] == "FULFILLED"

    listing = client.get("/bookings", headers={"X-User-Id": "user1"})
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    booking = listing.json()["bookings"][0]
    assert booking["status"] == "CONFIRMED"
    assert booking["payment_status"] == "PAID"

    detail = client.get(f"/bookings/{booking['id']}", headers={"X-User-Id": "user1"})
    assert detail.status_code == 200
    assert len(detail.json()["tickets"]) == 2

    cancel = client.delete(f"/bookings/{booking['id']}", headers={"X-User-Id": "user1"})
    assert cancel.status_code == 200
    assert cancel.json()["refund_status"] == "REFUNDED"
    assert cancel.json()["booking"]["status"] == "CANCELLED"
    assert _general(client, event)["available"] == 10

    again = client.delete(f"/bookings/{booking['id']}", headers={"X-User-Id": "user1"})
    assert again.status_code == 409


def test_ten_tickets_shared_between_two_users(client, razorpay_client, webhook, event):
    first = _hold(client, "user-a", event.id, event.general, 6)
    assert first.status_code == 201

    rejected = _hold(client, "user-b", event.id, event.general, 5)
    assert rejected.status_code == 409

    second = _hold(client, "user-b", event.id, event.general, 4)
    assert second.status_code == 201
    assert _general(client, event)["bookable"] == 0

    assert _pay(client, razorpay_client, webhook, "user-a", first.json()["hold_id"], "pay_a").status_code == 200
    assert _pay(client, razorpay_client, webhook, "user-b", second.json()["hold_id"], "pay_b").status_code == 200

    general = _general(client, event)
    assert general["available"] == 0
    assert general["held"] == 0

    sold_out = _hold(client, "user-c", event.id, event.general, 1)
    assert sold_out.status_code == 409


def test_full_event_sale_and_cancellation(client, razorpay_client, webhook, event):
    hold = _hold(client, "user-a", event.id, event.general, 10)
    assert hold.status_code == 201

    assert _hold(client, "user-b", event.id, event.general, 1).status_code == 409

    paid = _pay(client, razorpay_client, webhook, "user-a", hold.json()["hold_id"], "pay_all")
    assert paid.json()["status"] == "FULFILLED"

    booking = client.get("/bookings", headers={"X-User-Id": "user-a"}).json()["bookings"][0]
    detail = client.get(f"/bookings/{booking['id']}", headers={"X-User-Id": "user-a"}).json()
    assert len(detail["tickets"]) == 10
    assert {ticket["status"] for ticket in detail["tickets"]} == {"VALID"}
    assert _general(client, event)["available"] == 0

    cancel = client.delete(f"/bookings/{booking['id']}", headers={"X-User-Id": "user-a"})
    assert cancel.status_code == 200

    cancelled = client.get(f"/bookings/{booking['id']}", headers={"X-User-Id": "user-a"}).json()
    assert cancelled["status"] == "CANCELLED"
    assert len(cancelled["tickets"]) == 10
    assert {ticket["status"] for ticket in cancelled["tickets"]} == {"CANCELLED"}
    assert _general(client, event)["available"] == 10


def test_expired_hold_frees_inventory_and_ignores_late_payment(
    client, redis, razorpay_client, webhook, event
):
    hold = _hold(client, "user-a", event.id, event.general, 10).json()
    intent = client.post(
        "/payment/create-intent",
        json={"hold_id": hold["hold_id"]},
        headers={"X-User-Id": "user-a"},
    )
    assert intent.status_code == 200
    notes = razorpay_client.order.create.call_args.args[0]["notes"]

    redis.pexpire(hold["hold_id"], 1)
    time.sleep(0.05)

    assert client.get(f"/bookings/hold/{hold['hold_id']}", headers={"X-User-Id": "user-a"}).status_code == 404
    assert _general(client, event)["bookable"] == 10

    other = _hold(client, "user-b", event.id, event.general, 10)
    assert other.status_code == 201

    body, signature = webhook(notes, payment_id="pay_late")
    late = client.post("/payment/webhook", content=body, headers={"X-Razorpay-Signature": signature})
    assert late.status_code == 200
    assert late.json()["status"] == "SKIPPED"
    assert _general(client, event)["available"] == 10
    assert client.get("/bookings", headers={"X-User-Id": "user-a"}).json()["total"] == 0


def test_create_booking_from_hold_endpoint(client, event):
    hold = _hold(client, "user1", event.id, event.vip, 2).json()

    created = client.post("/bookings", json={"hold_id": hold["hold_id"]}, headers={"X-User-Id": "user1"})
    assert created.status_code == 201
    body = created.json()
    assert body["booking_code"].startswith("BK-")
    assert body["bookings"][0]["payment_status"] == "PENDING"
    assert len(body["bookings"][0]["tickets"]) == 2

    consumed = client.post("/bookings", json={"hold_id": hold["hold_id"]}, headers={"X-User-Id": "user1"})
    assert consumed.status_code == 404


def test_hold_ownership_and_release(client, event):
    hold = _hold(client, "user1", event.id, event.vip, 1).json()
    path = f"/bookings/hold/{hold['hold_id']}"

    assert client.get(path, headers={"X-User-Id": "user2"}).status_code == 403
    assert client.delete(path, headers={"X-User-Id": "user2"}).status_code == 403
    assert client.get(path).status_code == 401

    released = client.delete(path, headers={"X-User-Id": "user1"})
    assert released.status_code == 200
    assert client.get(path, headers={"X-User-Id": "user1"}).status_code == 404


def test_invalid_requests_are_rejected(client, draft_event, event):
    assert _hold(client, "user1", draft_event.id, draft_event.general, 1).status_code == 409
    assert _hold(client, "user1", "missing", event.general, 1).status_code == 404
    assert _hold(client, "user1", event.id, event.general, 0).status_code == 422
    assert client.get("/events/missing/availability").status_code == 404


def test_unsigned_webhook_is_rejected(client, webhook, event):
    hold = _hold(client, "user1", event.id, event.general, 1).json()
    body, _ = webhook({"hold_id": hold["hold_id"], "user_id": "user1"})

    response = client.post("/payment/webhook", content=body, headers={"X-Razorpay-Signature": "deadbeef"})
    assert response.status_code == 400

    response = client.post("/payment/webhook", content=body)
    assert response.status_code == 400


def test_refund_failure_is_reported_not_raised(client, razorpay_client, webhook, event):
    hold = _hold(client, "user1", event.id, event.general, 1).json()
    _pay(client, razorpay_client, webhook, "user1", hold["hold_id"], "pay_refund_fail")
    booking = client.get("/bookings", headers={"X-User-Id": "user1"}).json()["bookings"][0]

    razorpay_client.payment.refund.side_effect = razorpay.errors.BadRequestError("already refunded")
    cancel = client.delete(f"/bookings/{booking['id']}", headers={"X-User-Id": "user1"})

    assert cancel.status_code == 200
    assert cancel.json()["refund_status"] == "FAILED"
    assert cancel.json()["booking"]["payment_status"] == "PAID"


def test_outbox_lists_and_publishes_emails(client, session_factory, event):
    hold = _hold(client, "user1", event.id, event.vip, 1).json()
    client.post("/bookings", json={"hold_id": hold["hold_id"]}, headers={"X-User-Id": "user1"})

    pending = client.get("/outbox/events")
    assert pending.status_code == 200
    event_types = {item["event_type"] for item in pending.json()}
    assert event_types == {"EMAIL_BOOKING_CONFIRMATION", "EMAIL_TICKETS"}

    outbox_id = pending.json()[0]["id"]
    published = client.post(f"/outbox/events/{outbox_id}/mark-published")
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"
    assert published.json()["attempts"] == 1

    with session_factory() as db:
        assert db.execute(select(OutboxEvent).where(OutboxEvent.id == outbox_id)).scalar_one().status == "PUBLISHED"
    assert client.post("/outbox/events/missing/mark-published").status_code == 404


def test_health(client):
    assert client.get("/health").status_code == 200
