"""
POST /payments/webhook — payment reconciliation.

Covers:
  1. Signature verification (precomputed fixture, rejection, permissive mode)
  2. Body validation
  3. Enrollment grant: create, pending → approved, idempotent redelivery
  4. Failed / unknown events, missing metadata, unknown course
  5. Payload shape normalization
  6. Webhook ledger: listing, store failure → 500, admin retry
"""
import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

import config
import models
import payment_service
from payment_service import compute_signature, normalize_event

SECRET = "whsec-test"
# hex(HMAC-SHA256("whsec-test", '{"event_type":"payment.succeeded"}')), computed independently
SIGNATURE_FIXTURE = "a12b0f85c58ced0247a3c67009f0697b84539e075651afc6d0abc2aab6b18f53"


# ── Helpers ───────────────────────────────────────────────────────────────────

def _success(catalog, payment_id="pay_001", **extra) -> dict:
    return {
        "event_type": "payment.succeeded",
        "data": {
            "payment_id": payment_id,
            "status": "succeeded",
            "metadata": {
                "user_id": catalog["student"],
                "course_id": catalog["course"],
                "course_title": "Secure Streaming 101",
            },
        },
        **extra,
    }


async def _deliver(client, payload, webhook_id=None, signature=None, header="x-dodo-signature"):
    body = json.dumps(payload).encode()
    headers = {"content-type": "application/json", header: signature or compute_signature(body, SECRET)}
    if webhook_id:
        headers["webhook-id"] = webhook_id
    return await client.post("/payments/webhook", content=body, headers=headers)


async def _enrollments(db_session, student_id):
    result = await db_session.execute(
        select(models.Enrollment.id, models.Enrollment.status, models.Enrollment.approved_at)
        .where(models.Enrollment.student_id == student_id)
    )
    return result.all()


async def _proofs(db_session):
    result = await db_session.execute(select(models.PaymentProof.payment_id, models.PaymentProof.enrollment_id))
    return result.all()


async def _ledger(db_session, ledger_id):
    result = await db_session.execute(
        select(models.PaymentWebhookEvent.status, models.PaymentWebhookEvent.attempts, models.PaymentWebhookEvent.error)
        .where(models.PaymentWebhookEvent.id == ledger_id)
    )
    return result.first()


# ── 1. Signature ──────────────────────────────────────────────────────────────

def test_signature_matches_fixture():
    assert compute_signature(b'{"event_type":"payment.succeeded"}', SECRET) == SIGNATURE_FIXTURE


def test_verify_signature_rejects_tampering():
    body = b'{"event_type":"payment.succeeded"}'
    assert payment_service.verify_signature(body, SIGNATURE_FIXTURE, SECRET)
    assert payment_service.verify_signature(body, SIGNATURE_FIXTURE.upper(), SECRET)
    assert not payment_service.verify_signature(body + b" ", SIGNATURE_FIXTURE, SECRET)
    assert not payment_service.verify_signature(body, None, SECRET)
    assert not payment_service.verify_signature(body, SIGNATURE_FIXTURE, "")


@pytest.mark.asyncio
async def test_bad_signature_is_401_and_nothing_is_stored(client, db_session, catalog):
    res = await _deliver(client, _success(catalog), signature="00" * 32)
    assert res.status_code == 401
    assert res.json() == {"error": "Invalid signature"}
    assert await _enrollments(db_session, catalog["student"]) == []
    assert (await db_session.execute(select(models.PaymentWebhookEvent.id))).all() == []


@pytest.mark.asyncio
async def test_missing_signature_is_401(client, db_session, catalog):
    res = await client.post("/payments/webhook", json=_success(catalog))
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_alternate_signature_header_is_accepted(client, db_session, catalog):
    res = await _deliver(client, _success(catalog), header="webhook-signature")
    assert res.status_code == 200


@pytest.mark.asyncio
async def test_permissive_mode_processes_unsigned_delivery(client, db_session, catalog):
    with patch.object(config, "WEBHOOK_PERMISSIVE_MODE", True):
        res = await _deliver(client, _success(catalog), webhook_id="evt_unsigned", signature="bogus")
    assert res.status_code == 200
    assert res.json()["status"] == "approved"
    flag = await db_session.execute(
        select(models.PaymentWebhookEvent.signature_valid).where(models.PaymentWebhookEvent.id == "evt_unsigned")
    )
    assert flag.scalar() is False


# ── 2. Body validation ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_signed_malformed_json_is_400(client, db_session):
    body = b"{not json"
    res = await client.post(
        "/payments/webhook", content=body, headers={"x-dodo-signature": compute_signature(body, SECRET)},
    )
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_signed_non_utf8_body_is_400_and_not_stored(client, db_session, catalog):
    body = json.dumps(_success(catalog)).encode("utf-16")
    res = await client.post(
        "/payments/webhook", content=body, headers={"x-dodo-signature": compute_signature(body, SECRET)},
    )
    assert res.status_code == 400
    ledger = await db_session.execute(select(models.PaymentWebhookEvent.id))
    assert ledger.all() == []
    assert await _enrollments(db_session, catalog["student"]) == []


@pytest.mark.asyncio
async def test_signed_non_object_is_400(client, db_session):
    body = b"[1, 2, 3]"
    res = await client.post(
        "/payments/webhook", content=body, headers={"x-dodo-signature": compute_signature(body, SECRET)},
    )
    assert res.status_code == 400


# ── 3. Enrollment grant ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_success_creates_approved_enrollment_and_proof(client, db_session, catalog):
    res = await _deliver(client, _success(catalog), webhook_id="evt_1")
    assert res.status_code == 200
    data = res.json()
    assert data["received"] is True
    assert data["status"] == "approved"

    rows = await _enrollments(db_session, catalog["student"])
    assert len(rows) == 1
    assert rows[0].status == "approved"
    assert rows[0].approved_at is not None
    assert data["enrollment_id"] == rows[0].id

    proofs = await _proofs(db_session)
    assert proofs == [("pay_001", rows[0].id)]

    audit = await db_session.execute(
        select(models.AuditLog.user_id).where(models.AuditLog.event_type == "PAYMENT_SUCCEEDED")
    )
    assert audit.scalars().all() == [catalog["student"]]


@pytest.mark.asyncio
async def test_success_approves_pending_enrollment_in_place(client, db_session, catalog):
    db_session.add(models.Enrollment(student_id=catalog["student"], course_id=catalog["course"], status="pending"))
    await db_session.commit()

    res = await _deliver(client, _success(catalog))
    assert res.json()["status"] == "approved"
    rows = await _enrollments(db_session, catalog["student"])
    assert len(rows) == 1
    assert rows[0].status == "approved"


@pytest.mark.asyncio
async def test_redelivery_with_same_id_is_duplicate(client, db_session, catalog):
    await _deliver(client, _success(catalog), webhook_id="evt_dup")
    res = await _deliver(client, _success(catalog), webhook_id="evt_dup")
    assert res.status_code == 200
    assert res.json()["status"] == "duplicate"
    assert len(await _enrollments(db_session, catalog["student"])) == 1
    assert len(await _proofs(db_session)) == 1


@pytest.mark.asyncio
async def test_same_payment_under_new_delivery_id_grants_once(client, db_session, catalog):
    """A different delivery id for an already-approved payment changes nothing."""
    await _deliver(client, _success(catalog), webhook_id="evt_a")
    res = await _deliver(client, _success(catalog), webhook_id="evt_b")
    assert res.json()["status"] == "already_approved"
    assert len(await _enrollments(db_session, catalog["student"])) == 1
    assert len(await _proofs(db_session)) == 1


@pytest.mark.asyncio
async def test_concurrent_grant_of_same_payment_is_already_approved(db_session, catalog):
    """Another delivery of the payment commits between our lookup and our commit."""
    event = normalize_event(_success(catalog, payment_id="pay_race"))
    real_bounded = payment_service.bounded
    fired = False

    async def racing_bounded(awaitable, op, *args, **kwargs):
        nonlocal fired
        result = await real_bounded(awaitable, op, *args, **kwargs)
        if op == "enrollment_lookup" and not fired:
            fired = True
            async with AsyncSession(db_session.bind, expire_on_commit=False) as rival_db:
                rival = models.Enrollment(student_id=catalog["student"], course_id=catalog["course"], status="approved")
                rival_db.add(rival)
                await rival_db.flush()
                rival_db.add(models.PaymentProof(enrollment_id=rival.id, payment_id="pay_race"))
                await rival_db.commit()
        return result

    with patch("payment_service.bounded", new=racing_bounded):
        result = await payment_service.grant_enrollment(db_session, event)

    assert fired
    rows = await _enrollments(db_session, catalog["student"])
    assert len(rows) == 1
    assert result == {"enrollment_id": rows[0].id, "status": "already_approved"}
    assert await _proofs(db_session) == [("pay_race", rows[0].id)]


@pytest.mark.asyncio
async def test_identical_body_without_webhook_id_is_duplicate(client, db_session, catalog):
    await _deliver(client, _success(catalog))
    res = await _deliver(client, _success(catalog))
    assert res.json()["status"] == "duplicate"


@pytest.mark.asyncio
async def test_granted_enrollment_unlocks_playback(client, db_session, catalog, make_token, auth_headers):
    token = make_token(catalog["student"])
    await client.post("/sessions", json={"device_id": "dev-pay"}, headers=auth_headers(token))
    body = {"video_id": catalog["video"], "lesson_id": catalog["lesson"], "device_id": "dev-pay"}

    assert (await client.post("/video-url", json=body, headers=auth_headers(token))).status_code == 403
    await _deliver(client, _success(catalog))
    assert (await client.post("/video-url", json=body, headers=auth_headers(token))).status_code == 200


# ── 4. Other outcomes ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failed_payment_is_audited_without_enrollment(client, db_session, catalog):
    payload = {
        "event_type": "payment.failed",
        "data": {
            "payment_id": "pay_bad",
            "failure_reason": "card_declined",
            "metadata": {"user_id": catalog["student"], "course_id": catalog["course"]},
        },
    }
    res = await _deliver(client, payload)
    assert res.status_code == 200
    assert res.json()["status"] == "failed"
    assert await _enrollments(db_session, catalog["student"]) == []

    audit = await db_session.execute(
        select(models.AuditLog.details).where(models.AuditLog.event_type == "PAYMENT_FAILED")
    )
    details = json.loads(audit.scalar())
    assert details["failure_reason"] == "card_declined"


@pytest.mark.asyncio
async def test_unrelated_event_is_ignored(client, db_session, catalog):
    res = await _deliver(client, {"type": "subscription.renewed", "data": {"status": "active"}})
    assert res.status_code == 200
    assert res.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_missing_metadata_is_acknowledged(client, db_session, catalog):
    payload = {"event_type": "payment.succeeded", "data": {"payment_id": "pay_nometa"}}
    res = await _deliver(client, payload)
    assert res.status_code == 200
    assert res.json()["status"] == "missing_metadata"
    assert await _enrollments(db_session, catalog["student"]) == []


@pytest.mark.asyncio
async def test_unknown_course_is_acknowledged(client, db_session, catalog):
    payload = _success(catalog)
    payload["data"]["metadata"]["course_id"] = "course-that-does-not-exist"
    res = await _deliver(client, payload)
    assert res.status_code == 200
    assert res.json()["status"] == "unknown_course"
    assert await _enrollments(db_session, catalog["student"]) == []


# ── 5. Normalization ──────────────────────────────────────────────────────────

def test_normalize_nested_shape():
    event = normalize_event({
        "type": "payment.succeeded",
        "data": {"payment_id": "p1", "status": "succeeded", "metadata": {"user_id": "u1", "course_id": "c1"}},
    })
    assert (event.kind, event.payment_id, event.account_id, event.course_id) == ("succeeded", "p1", "u1", "c1")


def test_normalize_flat_shape():
    event = normalize_event({
        "event": "payment_succeeded",
        "payment_id": "p2",
        "metadata": {"account_id": "u2", "course_id": "c2"},
    })
    assert (event.kind, event.payment_id, event.account_id, event.course_id) == ("succeeded", "p2", "u2", "c2")


def test_normalize_checkout_metadata():
    event = normalize_event({
        "event_type": "checkout.session.completed",
        "data": {"id": "p3", "checkout": {"metadata": {"user_id": "u3", "course_id": "c3"}}},
    })
    assert (event.kind, event.payment_id, event.account_id, event.course_id) == ("succeeded", "p3", "u3", "c3")


def test_normalize_status_decides_when_type_is_generic():
    assert normalize_event({"type": "payment.updated", "data": {"status": "paid"}}).kind == "succeeded"
    assert normalize_event({"type": "payment.updated", "status": "failed"}).kind == "failed"
    assert normalize_event({"type": "payment.updated", "status": "processing"}).kind == "unknown"


def test_normalize_precedence():
    event = normalize_event({
        "event_type": "payment.succeeded",
        "type": "payment.failed",
        "payment_id": "outer",
        "data": {"payment_id": "inner", "metadata": {"user_id": "from-data", "course_id": "c-data"}},
        "metadata": {"account_id": "from-top", "course_id": "c-top"},
    })
    assert event.kind == "succeeded"
    assert event.payment_id == "inner"
    assert event.account_id == "from-data"
    assert event.course_id == "c-data"


def test_account_id_wins_over_user_id():
    event = normalize_event({"metadata": {"account_id": "acct", "user_id": "usr"}})
    assert event.account_id == "acct"


def test_delivery_id():
    assert payment_service.delivery_id(" evt_9 ", b"{}") == "evt_9"
    assert payment_service.delivery_id(None, b"{}").startswith("sha256:")
    assert payment_service.delivery_id(None, b"{}") == payment_service.delivery_id("", b"{}")


# ── 6. Ledger ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ledger_records_processed_delivery(client, admin_client, db_session, catalog):
    await _deliver(client, _success(catalog), webhook_id="evt_ledger")
    row = await _ledger(db_session, "evt_ledger")
    assert row.status == "processed"
    assert row.attempts == 1

    res = await admin_client.get("/admin/payments/webhooks")
    assert res.status_code == 200
    listed = res.json()
    assert [e["id"] for e in listed] == ["evt_ledger"]
    assert listed[0]["payment_id"] == "pay_001"
    assert listed[0]["signature_valid"] is True


@pytest.mark.asyncio
async def test_store_failure_is_500_and_marks_ledger_failed(client, admin_client, db_session, catalog):
    boom = OperationalError("UPDATE enrollments", {}, Exception("database is locked"))
    with patch("payment_service.apply_event", new=AsyncMock(side_effect=boom)):
        res = await _deliver(client, _success(catalog), webhook_id="evt_fail")
    assert res.status_code == 500
    assert "error" in res.json()

    row = await _ledger(db_session, "evt_fail")
    assert row.status == "failed"
    assert "database is locked" in row.error
    assert await _enrollments(db_session, catalog["student"]) == []

    failed = (await admin_client.get("/admin/payments/webhooks", params={"status": "failed"})).json()
    assert [e["id"] for e in failed] == ["evt_fail"]


@pytest.mark.asyncio
async def test_failed_delivery_is_reapplied_by_redelivery(client, db_session, catalog):
    boom = OperationalError("UPDATE enrollments", {}, Exception("database is locked"))
    with patch("payment_service.apply_event", new=AsyncMock(side_effect=boom)):
        await _deliver(client, _success(catalog), webhook_id="evt_redo")
    res = await _deliver(client, _success(catalog), webhook_id="evt_redo")
    assert res.json()["status"] == "approved"
    assert (await _ledger(db_session, "evt_redo")).attempts == 2


@pytest.mark.asyncio
async def test_admin_retry_applies_failed_delivery(client, admin_client, db_session, catalog):
    boom = OperationalError("UPDATE enrollments", {}, Exception("database is locked"))
    with patch("payment_service.apply_event", new=AsyncMock(side_effect=boom)):
        await _deliver(client, _success(catalog), webhook_id="evt_retry")

    res = await admin_client.post("/admin/payments/webhooks/evt_retry/retry")
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "processed"
    assert data["attempts"] == 2
    assert data["result"]["status"] == "approved"
    assert len(await _enrollments(db_session, catalog["student"])) == 1


@pytest.mark.asyncio
async def test_admin_retry_of_processed_delivery_is_409(client, admin_client, db_session, catalog):
    await _deliver(client, _success(catalog), webhook_id="evt_done")
    res = await admin_client.post("/admin/payments/webhooks/evt_done/retry")
    assert res.status_code == 409


@pytest.mark.asyncio
async def test_admin_retry_of_unknown_delivery_is_404(admin_client, db_session):
    res = await admin_client.post("/admin/payments/webhooks/evt_missing/retry")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_ledger_routes_require_admin_key(client, db_session):
    assert (await client.get("/admin/payments/webhooks")).status_code == 401
    assert (await client.post("/admin/payments/webhooks/evt_x/retry")).status_code == 401
