import pytest

from config import settings
from services.accounts import deactivate_account
from services.ledger_errors import ProviderError
from services.providers import is_valid_email, normalize_phone


def test_phone_normalisation_rules():
    assert normalize_phone("(11) 99999-0001") == ("+5511999990001", None)
    assert normalize_phone("+55 11 99999-0001") == ("+5511999990001", None)
    assert normalize_phone("1 415 555 0100") == ("+5514155550100", None)
    assert normalize_phone("415 555 0100") == ("+4155550100", None)
    formatted, error = normalize_phone("12345")
    assert formatted is None
    assert error


def test_email_validation_rules():
    assert is_valid_email("owner@example.com")
    assert is_valid_email("  owner@example.com ")
    assert not is_valid_email("owner@example")
    assert not is_valid_email("owner example.com")
    assert not is_valid_email("")


@pytest.mark.asyncio
async def test_single_sms_is_metered(client, make_account, auth_header, fake_messaging):
    account_id = await make_account(balance=5)

    response = await client.post(
        "/campaigns/sms/send",
        json={"phone": "(11) 99999-0001", "message": "Your order shipped"},
        headers=auth_header(account_id),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["granted"] is True
    assert body["credits_used"] == 1
    assert body["remaining_balance"] == 4
    assert body["message_id"] == "msg-1"
    assert fake_messaging.sent[0].recipient == "+5511999990001"


@pytest.mark.asyncio
async def test_invalid_single_recipient_is_rejected_before_charging(client, make_account, auth_header):
    account_id = await make_account(balance=5)
    headers = auth_header(account_id)

    sms = await client.post("/campaigns/sms/send", json={"phone": "123", "message": "Hi"}, headers=headers)
    assert sms.status_code == 400

    email = await client.post(
        "/campaigns/email/send",
        json={"to": "not-an-email", "subject": "Hi", "html": "<p>Hi</p>"},
        headers=headers,
    )
    assert email.status_code == 400

    summary = await client.get("/billing/credits", headers=headers)
    assert summary.json()["balance"] == 5


@pytest.mark.asyncio
async def test_bulk_sms_reports_partial_delivery(client, make_account, auth_header, fake_messaging):
    account_id = await make_account(balance=20)
    phones = [f"11 99999-00{index:02d}" for index in range(10)]
    fake_messaging.failing = {"+55119999900{:02d}".format(index) for index in range(3)}

    response = await client.post(
        "/campaigns/sms/bulk",
        json={"phones": phones + ["123"], "message": "Flash sale"},
        headers=auth_header(account_id),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_recipients"] == 11
    assert body["total_sent"] == 7
    assert body["total_errors"] == 4
    assert body["credits_used"] == 7
    assert body["remaining_balance"] == 13
    assert any(error["recipient"] == "123" for error in body["errors"])


@pytest.mark.asyncio
async def test_bulk_email_without_valid_recipients_is_rejected(client, make_account, auth_header):
    account_id = await make_account(balance=5)

    response = await client.post(
        "/campaigns/email/bulk",
        json={"recipients": ["nope", "also-nope"], "subject": "Hi", "html": "<p>Hi</p>"},
        headers=auth_header(account_id),
    )

    assert response.status_code == 400
    assert len(response.json()["detail"]["errors"]) == 2


@pytest.mark.asyncio
async def test_bulk_size_is_capped(client, make_account, auth_header, monkeypatch):
    monkeypatch.setattr(settings, "BULK_MAX_RECIPIENTS", 2)
    account_id = await make_account(balance=5)

    response = await client.post(
        "/campaigns/email/bulk",
        json={"recipients": ["a@example.com", "b@example.com", "c@example.com"], "subject": "Hi", "html": "Hi"},
        headers=auth_header(account_id),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_insufficient_balance_returns_payment_required(client, make_account, auth_header, fake_messaging):
    account_id = await make_account(balance=1)

    response = await client.post(
        "/campaigns/email/bulk",
        json={"recipients": ["a@example.com", "b@example.com"], "subject": "Hi", "html": "<p>Hi</p>"},
        headers=auth_header(account_id),
    )

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["error"] == "INSUFFICIENT_CREDITS"
    assert detail["details"]["shortfall"] == 1
    assert fake_messaging.sent == []


@pytest.mark.asyncio
async def test_provider_outage_returns_bad_gateway(client, make_account, auth_header, fake_messaging):
    account_id = await make_account(balance=5)
    fake_messaging.failing = {"owner@example.com"}
    headers = auth_header(account_id)

    response = await client.post(
        "/campaigns/email/send",
        json={"to": "owner@example.com", "subject": "Hi", "html": "<p>Hi</p>"},
        headers=headers,
    )

    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "PROVIDER_ERROR"
    history = await client.get("/billing/transactions?kind=usage", headers=headers)
    usage = history.json()["transactions"]
    assert usage[0]["status"] == "failed"
    assert usage[0]["credit_delta"] == 0


@pytest.mark.asyncio
async def test_deactivated_accounts_cannot_send(client, make_account, auth_header, session_maker):
    account_id = await make_account(balance=5)
    async with session_maker() as session:
        await deactivate_account(account_id, session)

    response = await client.post(
        "/campaigns/sms/send",
        json={"phone": "11 99999-0001", "message": "Hi"},
        headers=auth_header(account_id),
    )
    assert response.status_code == 403


def test_provider_error_defaults_to_retryable():
    error = ProviderError("twilio", "timeout")
    assert error.to_dict()["details"] == {"provider": "twilio", "retryable": True}
