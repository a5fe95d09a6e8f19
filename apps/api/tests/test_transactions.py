from decimal import Decimal

import pytest

from services import transactions
from services.ledger_errors import AlreadyRefunded, InvalidTransition, TransactionNotFound
from services.transactions import (
    BonusEntry,
    PurchaseEntry,
    RefundEntry,
    UsageEntry,
    create_transaction,
    find_by_external_ref,
    get_transaction,
    list_transactions,
    transaction_payload,
    transition,
)


def _purchase(external_ref="pi_test"):
    return PurchaseEntry(
        package="premium",
        credits=500,
        bonus=100,
        amount=Decimal("39.99"),
        currency="USD",
        external_ref=external_ref,
    )


def test_entries_carry_their_own_kind_and_sign():
    assert _purchase().kind == "purchase"
    assert _purchase().credit_delta == 600
    assert UsageEntry(operation="ai_generation", credits=4).credit_delta == -4
    assert BonusEntry(credits=25, reason="goodwill").credit_delta == 25
    refund = RefundEntry(
        original_transaction_id="txn-1",
        credits_clawed_back=600,
        amount=Decimal("39.99"),
        currency="USD",
        reason="customer request",
    )
    assert refund.kind == "refund"
    assert refund.credit_delta == -600
    assert refund.external_ref == "txn-1"


@pytest.mark.asyncio
async def test_create_stores_entry_fields(make_account, db):
    account_id = await make_account(balance=0)

    transaction = await create_transaction(db, account_id, _purchase(), status="pending")
    await db.commit()

    stored = await get_transaction(transaction.id, db)
    assert stored.kind == "purchase"
    assert stored.status == "pending"
    assert stored.credit_delta == 600
    assert stored.monetary_amount == Decimal("39.99")
    assert stored.external_ref == "pi_test"
    assert stored.metadata_json["bonus_credits"] == 100
    assert stored.completed_at is None

    payload = transaction_payload(stored)
    assert payload["monetary_amount"] == "39.99"
    assert payload["account_id"] == account_id


@pytest.mark.asyncio
async def test_transactions_cannot_be_created_in_terminal_refund_states(make_account, db):
    account_id = await make_account(balance=0)
    with pytest.raises(ValueError):
        await create_transaction(db, account_id, _purchase(), status="refunded")


@pytest.mark.asyncio
async def test_pending_transaction_moves_once(make_account, db):
    account_id = await make_account(balance=0)
    transaction = await create_transaction(db, account_id, _purchase(), status="pending")
    await db.commit()

    completed = await transition(db, transaction.id, "completed")
    await db.commit()
    assert completed.status == "completed"
    assert completed.completed_at is not None

    with pytest.raises(InvalidTransition) as exc:
        await transition(db, transaction.id, "failed")
    assert exc.value.current_status == "completed"
    assert exc.value.to_dict()["details"]["requested_status"] == "failed"


@pytest.mark.asyncio
async def test_terminal_states_reject_every_move(make_account, db):
    account_id = await make_account(balance=0)
    transaction = await create_transaction(db, account_id, _purchase(), status="pending")
    await transition(db, transaction.id, "cancelled", failure_reason="expired")
    await db.commit()

    for target in ("pending", "completed", "failed", "refunded"):
        with pytest.raises(InvalidTransition):
            await transition(db, transaction.id, target)

    stored = await get_transaction(transaction.id, db)
    assert stored.status == "cancelled"
    assert stored.failure_reason == "expired"


@pytest.mark.asyncio
async def test_refund_transition_records_amount_and_happens_once(make_account, db):
    account_id = await make_account(balance=0)
    transaction = await create_transaction(db, account_id, _purchase(), status="completed")
    await db.commit()

    refunded = await transition(
        db,
        transaction.id,
        "refunded",
        refund_amount=Decimal("10.00"),
        refund_reason="partial",
        refund_transaction_id="refund-1",
    )
    await db.commit()
    assert refunded.status == "refunded"
    assert refunded.is_refunded is True
    assert refunded.refund_amount == Decimal("10.00")
    assert refunded.refund_transaction_id == "refund-1"

    with pytest.raises(AlreadyRefunded):
        await transition(db, transaction.id, "refunded")


@pytest.mark.asyncio
async def test_refund_amount_must_be_positive_and_within_original(make_account, db):
    account_id = await make_account(balance=0)
    transaction = await create_transaction(db, account_id, _purchase(), status="completed")
    await db.commit()

    with pytest.raises(InvalidTransition):
        await transition(db, transaction.id, "refunded", refund_amount=Decimal("50.00"))
    with pytest.raises(InvalidTransition):
        await transition(db, transaction.id, "refunded", refund_amount=Decimal("0"))

    stored = await get_transaction(transaction.id, db)
    assert stored.status == "completed"


@pytest.mark.asyncio
async def test_lookup_and_history(make_account, db):
    account_id = await make_account(balance=10)
    await create_transaction(db, account_id, _purchase("pi_a"), status="pending")
    await create_transaction(db, account_id, UsageEntry(operation="sms_send", credits=1, units=1))
    await create_transaction(db, account_id, UsageEntry(operation="sms_send", credits=1, units=1))
    await db.commit()

    found = await find_by_external_ref("pi_a", db, kind="purchase")
    assert found is not None
    assert found.kind == "purchase"
    assert await find_by_external_ref("pi_missing", db) is None

    items, total = await list_transactions(account_id, db)
    assert total == 4

    usage, usage_total = await list_transactions(account_id, db, kinds=["usage"])
    assert usage_total == 2
    assert all(item.kind == "usage" for item in usage)

    page, _ = await list_transactions(account_id, db, page=2, limit=3)
    assert len(page) == 1

    pending, pending_total = await list_transactions(account_id, db, status="pending")
    assert pending_total == 1
    assert pending[0].external_ref == "pi_a"

    with pytest.raises(TransactionNotFound):
        await get_transaction("missing", db)


@pytest.mark.asyncio
async def test_concurrent_refund_transition_applies_once(make_account, db, session_maker, monkeypatch):
    account_id = await make_account(balance=0)
    transaction = await create_transaction(db, account_id, _purchase(), status="completed")
    await db.commit()

    real_get = transactions.get_transaction
    raced = False

    async def read_then_lose_race(transaction_id, session):
        nonlocal raced
        snapshot = await real_get(transaction_id, session)
        if session is db and not raced:
            raced = True
            async with session_maker() as other:
                await transition(other, transaction_id, "refunded", refund_transaction_id="refund-winner")
                await other.commit()
        return snapshot

    monkeypatch.setattr(transactions, "get_transaction", read_then_lose_race)

    with pytest.raises(AlreadyRefunded):
        await transition(db, transaction.id, "refunded", refund_transaction_id="refund-loser")
    await db.rollback()

    stored = await real_get(transaction.id, db)
    assert stored.status == "refunded"
    assert stored.refund_transaction_id == "refund-winner"
