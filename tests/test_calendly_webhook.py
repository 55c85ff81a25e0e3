import hashlib
import hmac
import json
import time

import pytest

from app.models.events import MalformedPayloadError, MeetingCanceled, MeetingScheduled
from app.models.lead import BantHeat, PipelineStatus
from app.modules.calendly.parser import parse_webhook


def calendly_payload(event="invitee.created", invitee_uri="https://api.calendly.com/invitees/INV1", **invitee):
    invitee = {
        "name": "Dana Levi",
        "email": "dana@example.com",
        "phone": "+972501234567",
        "uri": invitee_uri,
        **invitee,
    }
    payload = {
        "invitee": invitee,
        "event": {"uri": "https://api.calendly.com/scheduled_events/EV1", "start_time": "2026-10-20T10:00:00Z"},
    }
    if event == "invitee.canceled":
        payload["cancellation"] = {"reason": "schedule conflict"}
    return {"event": event, "created_at": "2026-10-18T09:00:00Z", "created_by": "tenant-1", "payload": payload}


def post(client, payload, headers=None):
    return client.post("/calendly/webhook", content=json.dumps(payload).encode(), headers=headers or {})


def hot_lead(add_lead, **fields):
    return add_lead(
        phone="0501234567", email="dana@example.com",
        bant_heat=BantHeat.HOT, pipeline_status=PipelineStatus.QUALIFIED, **fields,
    )


def test_health_check(client):
    response = client.get("/calendly/webhook")
    assert response.status_code == 200
    assert response.text == "Calendly webhook endpoint is healthy"


def test_booking_makes_lead_burning_and_notifies(client, store, add_lead):
    lead = hot_lead(add_lead)

    response = post(client, calendly_payload())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["event_processed"] == "invitee.created"
    assert body["lead_updates"] == 1
    assert body["notifications_sent"] == 1

    stored = store.leads[lead.id]
    assert stored.bant_heat == BantHeat.BURNING
    assert stored.pipeline_status == PipelineStatus.DEMO_SCHEDULED

    [notification] = store.notifications
    assert notification.user_id == "tenant-1"
    assert notification.type == "success"
    assert notification.title == "🔥 BANT Meeting Scheduled!"
    assert notification.metadata["category"] == "calendly_meeting"
    assert notification.metadata["priority"] == "high"
    assert notification.metadata["lead_update"]["bant_heat"] == "burning"
    assert notification.action_url == "/calendar?event=EV1"


def test_cancellation_demotes_and_warns(client, store, add_lead):
    lead = hot_lead(add_lead)
    post(client, calendly_payload())

    body = post(client, calendly_payload("invitee.canceled")).json()

    assert body["lead_updates"] == 1
    stored = store.leads[lead.id]
    assert stored.bant_heat == BantHeat.HOT
    assert stored.pipeline_status == PipelineStatus.QUALIFIED
    assert [n.type for n in store.notifications] == ["success", "warning"]
    assert store.notifications[1].metadata["canceled_reason"] == "schedule conflict"


def test_replayed_booking_has_no_effect(client, store, add_lead):
    lead = hot_lead(add_lead)
    post(client, calendly_payload())
    before = store.leads[lead.id]

    body = post(client, calendly_payload()).json()

    assert body["success"] is True
    assert body["lead_updates"] == 0
    assert body["notifications_sent"] == 0
    assert len(store.notifications) == 1
    assert store.leads[lead.id] == before


def test_cancellation_for_lead_that_never_booked_is_a_noop(client, store, add_lead):
    lead = hot_lead(add_lead)

    body = post(client, calendly_payload("invitee.canceled")).json()

    assert body["success"] is True
    assert body["lead_updates"] == 0
    assert store.leads[lead.id].bant_heat == BantHeat.HOT
    assert store.notifications == []


def test_owner_falls_back_to_lead_tenant(client, store, add_lead):
    hot_lead(add_lead, tenant_id="tenant-7")
    payload = calendly_payload()
    del payload["created_by"]

    post(client, payload)

    assert store.notifications[0].user_id == "tenant-7"


def test_owner_mapping_routes_booking_to_its_tenant(client, store, add_lead, configure):
    configure(calendly_owner_tenants=json.dumps({"owner-2": "tenant-2"}))
    first_tenant = hot_lead(add_lead)
    second_tenant = hot_lead(add_lead, tenant_id="tenant-2")
    payload = calendly_payload()
    payload["created_by"] = "owner-2"

    body = post(client, payload).json()

    assert body["lead_updates"] == 1
    assert store.leads[second_tenant.id].bant_heat == BantHeat.BURNING
    assert store.leads[first_tenant.id].bant_heat == BantHeat.HOT


def test_malformed_payload_is_rejected(client, store):
    response = client.post("/calendly/webhook", content=b"not json")
    assert response.status_code == 400
    assert response.json()["success"] is False

    response = post(client, calendly_payload(email=None, phone=None))
    assert response.status_code == 400


def test_unhandled_event_type(client, store):
    response = post(client, {"event": "routing_form_submission.created", "payload": {}})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["errors"] == ["Unhandled event type: routing_form_submission.created"]


def test_unknown_invitee_is_reported(client, store, add_lead):
    add_lead(phone="0529999999", email="someone@example.com")

    body = post(client, calendly_payload(email="stranger@example.com", phone="+15551234567")).json()

    assert body["success"] is False
    assert body["errors"] == ["No lead found for stranger@example.com"]
    assert store.notifications == []


def test_signature_verification(client, store, add_lead, configure):
    configure(calendly_webhook_secret="cal-secret")
    lead = hot_lead(add_lead)
    body = json.dumps(calendly_payload()).encode()

    response = client.post("/calendly/webhook", content=body, headers={"Calendly-Webhook-Signature": "t=1,v1=00"})
    assert response.status_code == 401
    assert store.leads[lead.id].bant_heat == BantHeat.HOT

    ts = int(time.time())
    digest = hmac.new(b"cal-secret", f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    response = client.post("/calendly/webhook", content=body, headers={"Calendly-Webhook-Signature": f"t={ts},v1={digest}"})
    assert response.status_code == 200
    assert store.leads[lead.id].bant_heat == BantHeat.BURNING


def test_parser_accepts_flat_invitee_shape():
    body = {
        "event": "invitee.canceled",
        "payload": {
            "name": "Dana Levi",
            "email": None,
            "text_reminder_number": "+972501234567",
            "uri": "https://api.calendly.com/invitees/INV2",
            "scheduled_event": {"uri": "https://api.calendly.com/scheduled_events/EV2"},
            "cancellation": {"reason": "sick"},
        },
    }
    webhook = parse_webhook(json.dumps(body).encode())

    assert isinstance(webhook.event, MeetingCanceled)
    assert webhook.event.invitee_phone == "+972501234567"
    assert webhook.event.event_uri.endswith("/EV2")
    assert webhook.event.reason == "sick"
    assert webhook.created_by is None


def test_parser_reads_timestamps():
    webhook = parse_webhook(json.dumps(calendly_payload()).encode())

    assert isinstance(webhook.event, MeetingScheduled)
    assert webhook.event.start_time.isoformat() == "2026-10-20T10:00:00+00:00"
    assert webhook.event.occurred_at.isoformat() == "2026-10-18T09:00:00+00:00"
    assert webhook.event.key == "calendly:scheduled:https://api.calendly.com/invitees/INV1"


def test_parser_requires_an_identifier():
    payload = calendly_payload(invitee_uri=None)
    payload["payload"]["event"] = {}
    with pytest.raises(MalformedPayloadError):
        parse_webhook(json.dumps(payload).encode())
