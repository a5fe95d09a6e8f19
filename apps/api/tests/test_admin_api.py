import pytest

from services import accounts
from services.settlement import PaymentEvent, create_pending_purchase, settle


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(client, make_account, auth_header):
    account_id = await make_account(balance=10)

    response = await client.post(
        "/admin/credits",
        json={"account_id": account_id, "amount": 50, "reason": "self-service"},
        headers=auth_header(account_id),
    )
    assert response.status_code == 403

    anonymous = await client.get("/admin/reconciliation")
    assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_admin_grant_records_actor(client, make_account, auth_header):
    admin_id = await make_account(email="admin@example.com", balance=0, role="admin")
    account_id = await make_account(balance=10)

    response = await client.post(
        "/admin/credits",
        json={"account_id": account_id, "amount": 50, "reason": "support goodwill"},
        headers=auth_header(admin_id, role="admin"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["balance"] == 60
    assert body["transaction"]["kind"] == "bonus"
    assert body["transaction"]["credit_delta"] == 50

    missing = await client.post(
        "/admin/credits",
        json={"account_id": "missing", "amount": 5, "reason": "typo"},
        headers=auth_header(admin_id, role="admin"),
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_refund_is_idempotent(client, make_account, auth_header, session_maker):
    admin_id = await make_account(email="admin@example.com", balance=0, role="admin")
    account_id = await make_account(balance=0)
    async with session_maker() as session:
        purchase = await create_pending_purchase(session, account_id, "basic", external_ref="pi_admin_refund")
        await settle(session, PaymentEvent(external_ref="pi_admin_refund", outcome="succeeded"))

    headers = auth_header(admin_id, role="admin")
    first = await client.post(
        f"/admin/transactions/{purchase.id}/refund",
        json={"reason": "duplicate charge"},
        headers=headers,
    )
    second = await client.post(
        f"/admin/transactions/{purchase.id}/refund",
        json={"reason": "duplicate charge"},
        headers=headers,
    )

    assert first.status_code == 200
    assert first.json()["credits_clawed_back"] == 100
    assert first.json()["original"]["status"] == "refunded"
    assert first.json()["refund"]["credit_delta"] == -100
    assert second.status_code == 400
    assert second.json()["detail"]["error"] == "ALREADY_REFUNDED"

    missing = await client.post("/admin/transactions/missing/refund", json={"reason": "x"}, headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_reconciliation_queue_and_deactivation(client, make_account, auth_header, session_maker):
    admin_id = await make_account(email="admin@example.com", balance=0, role="admin")
    account_id = await make_account(balance=3)
    async with session_maker() as session:
        await accounts.flag_for_reconciliation(account_id, session, note="manual review")
        await session.commit()

    headers = auth_header(admin_id, role="admin")
    queue = await client.get("/admin/reconciliation", headers=headers)
    assert queue.status_code == 200
    assert queue.json()["count"] == 1
    assert queue.json()["accounts"][0]["reconciliation_note"] == "manual review"

    reconciled = await client.post(f"/admin/accounts/{account_id}/reconcile", headers=headers)
    assert reconciled.status_code == 200
    assert reconciled.json()["needs_reconciliation"] is False
    assert reconciled.json()["balance"] == 3

    queue = await client.get("/admin/reconciliation", headers=headers)
    assert queue.json()["count"] == 0

    deactivated = await client.post(f"/admin/accounts/{account_id}/deactivate", headers=headers)
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    assert deactivated.json()["balance"] == 3

    blocked = await client.get("/billing/credits", headers=auth_header(account_id))
    assert blocked.status_code == 403


@pytest.mark.asyncio
async def test_deactivated_or_demoted_admin_loses_admin_access(client, make_account, auth_header):
    admin_id = await make_account(email="admin@example.com", balance=0, role="admin")
    rogue_id = await make_account(email="rogue@example.com", balance=0, role="admin")
    demoted_id = await make_account(email="demoted@example.com", balance=0, role="admin")
    account_id = await make_account(balance=10)
    headers = auth_header(admin_id, role="admin")
    grant = {"account_id": account_id, "amount": 500, "reason": "goodwill"}

    deactivated = await client.post(f"/admin/accounts/{rogue_id}/deactivate", headers=headers)
    assert deactivated.json()["is_active"] is False
    demoted = await client.patch(f"/admin/accounts/{demoted_id}/role", json={"role": "user"}, headers=headers)
    assert demoted.json()["role"] == "user"

    rogue = await client.post("/admin/credits", json=grant, headers=auth_header(rogue_id, role="admin"))
    former = await client.post("/admin/credits", json=grant, headers=auth_header(demoted_id, role="admin"))
    assert rogue.status_code == 403
    assert former.status_code == 403

    summary = await client.get("/billing/credits", headers=auth_header(account_id))
    assert summary.json()["balance"] == 10


@pytest.mark.asyncio
async def test_role_update_validates_role(client, make_account, auth_header):
    admin_id = await make_account(email="admin@example.com", balance=0, role="admin")
    account_id = await make_account(balance=10)
    headers = auth_header(admin_id, role="admin")

    promoted = await client.patch(f"/admin/accounts/{account_id}/role", json={"role": "premium"}, headers=headers)
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "premium"

    invalid = await client.patch(f"/admin/accounts/{account_id}/role", json={"role": "superuser"}, headers=headers)
    assert invalid.status_code == 422

    missing = await client.patch("/admin/accounts/missing/role", json={"role": "user"}, headers=headers)
    assert missing.status_code == 404

    self_service = await client.patch(
        f"/admin/accounts/{account_id}/role",
        json={"role": "admin"},
        headers=auth_header(account_id, role="admin"),
    )
    assert self_service.status_code == 403


@pytest.mark.asyncio
async def test_zero_amount_refund_is_rejected(client, make_account, auth_header, session_maker):
    admin_id = await make_account(email="admin@example.com", balance=0, role="admin")
    account_id = await make_account(balance=0)
    async with session_maker() as session:
        purchase = await create_pending_purchase(session, account_id, "basic", external_ref="pi_zero_refund")
        await settle(session, PaymentEvent(external_ref="pi_zero_refund", outcome="succeeded"))

    headers = auth_header(admin_id, role="admin")
    zero = await client.post(
        f"/admin/transactions/{purchase.id}/refund",
        json={"reason": "oops", "amount": "0"},
        headers=headers,
    )
    assert zero.status_code == 422

    real = await client.post(
        f"/admin/transactions/{purchase.id}/refund",
        json={"reason": "customer request"},
        headers=headers,
    )
    assert real.status_code == 200
    assert real.json()["credits_clawed_back"] == 100
