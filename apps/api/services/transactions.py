"""Transaction recorder.

Every balance change is explained by exactly one ``Transaction`` row. Rows
are created from one of the typed entries below; afterwards only ``status``
and its bookkeeping columns move, through ``transition``:

    pending   -> completed | failed | cancelled
    completed -> refunded

Each transition is a conditional UPDATE on the expected current status, so a
replayed or concurrent request that lost the race changes nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.transaction import Transaction
from services.ledger_errors import AlreadyRefunded, InvalidTransition, TransactionNotFound

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("completed", "failed", "cancelled"),
    "completed": ("refunded",),
}
SETTLED_STATUSES = ("completed", "refunded")


@dataclass(frozen=True)
class PurchaseEntry:
    kind: ClassVar[str] = "purchase"

    package: str
    credits: int
    amount: Decimal
    currency: str
    external_ref: str
    bonus: int = 0
    payment_method: str = "card"
    customer_id: Optional[str] = None

    @property
    def credit_delta(self) -> int:
        return int(self.credits) + int(self.bonus)

    def describe(self) -> str:
        return f"{self.package} package - {self.credit_delta} credits"

    def metadata(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "base_credits": int(self.credits),
            "bonus_credits": int(self.bonus),
            "payment_method": self.payment_method,
            "customer_id": self.customer_id,
        }


@dataclass(frozen=True)
class UsageEntry:
    kind: ClassVar[str] = "usage"

    operation: str
    credits: int
    units: int = 0
    external_ref: Optional[str] = None
    provider: Optional[str] = None
    latency_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def credit_delta(self) -> int:
        return -int(self.credits)

    def describe(self) -> str:
        return f"{self.operation} usage - {int(self.credits)} credits"

    def metadata(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "units": int(self.units),
            "provider": self.provider,
            "latency_ms": int(self.latency_ms),
            **self.details,
        }


@dataclass(frozen=True)
class BonusEntry:
    kind: ClassVar[str] = "bonus"
    external_ref: ClassVar[Optional[str]] = None

    credits: int
    reason: str
    actor_id: Optional[str] = None

    @property
    def credit_delta(self) -> int:
        return int(self.credits)

    def describe(self) -> str:
        return f"Bonus credits: {self.reason}"

    def metadata(self) -> Dict[str, Any]:
        return {"reason": self.reason}


@dataclass(frozen=True)
class RefundEntry:
    kind: ClassVar[str] = "refund"

    original_transaction_id: str
    credits_clawed_back: int
    amount: Decimal
    currency: Optional[str]
    reason: str
    actor_id: Optional[str] = None
    clawback_skipped: bool = False

    @property
    def credit_delta(self) -> int:
        return -int(self.credits_clawed_back)

    @property
    def external_ref(self) -> str:
        return self.original_transaction_id

    def describe(self) -> str:
        return f"Refund of transaction {self.original_transaction_id}: {self.reason}"

    def metadata(self) -> Dict[str, Any]:
        return {
            "original_transaction_id": self.original_transaction_id,
            "reason": self.reason,
            "clawback_skipped": self.clawback_skipped,
        }


TransactionEntry = Union[PurchaseEntry, UsageEntry, BonusEntry, RefundEntry]


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def create_transaction(
    db: AsyncSession,
    account_id: str,
    entry: TransactionEntry,
    *,
    status: str = "completed",
    failure_reason: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> Transaction:
    """Insert the row for ``entry``; the caller commits."""
    if status not in ("pending", "completed", "failed"):
        raise ValueError(f"transactions cannot be created as {status}")

    now = _now()
    amount = getattr(entry, "amount", Decimal("0"))
    transaction = Transaction(
        user_id=account_id,
        kind=entry.kind,
        status=status,
        credit_delta=entry.credit_delta,
        monetary_amount=amount,
        currency=getattr(entry, "currency", None),
        external_ref=entry.external_ref,
        description=entry.describe(),
        metadata_json=entry.metadata(),
        actor_id=getattr(entry, "actor_id", None),
        failure_reason=failure_reason,
        created_at=now,
        completed_at=now if status == "completed" else None,
        failed_at=now if status == "failed" else None,
    )
    if transaction_id:
        transaction.id = transaction_id
    db.add(transaction)
    await db.flush()
    return transaction


def check_transition(transaction: Transaction, requested_status: str) -> None:
    """Raise unless ``requested_status`` is reachable from the current state."""
    if requested_status == "refunded" and transaction.is_refunded:
        raise AlreadyRefunded(transaction.id)
    allowed = ALLOWED_TRANSITIONS.get(transaction.status, ())
    if requested_status not in allowed:
        raise InvalidTransition(transaction.id, transaction.status, requested_status)


async def get_transaction(transaction_id: str, db: AsyncSession) -> Transaction:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise TransactionNotFound(transaction_id)
    return transaction


async def find_by_external_ref(
    external_ref: str,
    db: AsyncSession,
    *,
    kind: Optional[str] = None,
) -> Optional[Transaction]:
    query = select(Transaction).where(Transaction.external_ref == external_ref)
    if kind:
        query = query.where(Transaction.kind == kind)
    result = await db.execute(
        query.order_by(Transaction.created_at.asc()).limit(1).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def transition(
    db: AsyncSession,
    transaction_id: str,
    new_status: str,
    *,
    failure_reason: Optional[str] = None,
    refund_amount: Optional[Decimal] = None,
    refund_reason: Optional[str] = None,
    refund_transaction_id: Optional[str] = None,
) -> Transaction:
    """Move a transaction to ``new_status``; the caller commits.

    Raises ``InvalidTransition`` (or ``AlreadyRefunded``) without touching the
    row when the move is not allowed, including when a concurrent writer
    moved it first.
    """
    transaction = await get_transaction(transaction_id, db)
    check_transition(transaction, new_status)

    now = _now()
    values: Dict[str, Any] = {"status": new_status, "updated_at": now}
    conditions = [Transaction.id == transaction_id, Transaction.status == transaction.status]

    if new_status == "completed":
        values["completed_at"] = func.coalesce(Transaction.completed_at, now)
    elif new_status == "failed":
        values["failed_at"] = now
        values["failure_reason"] = failure_reason
    elif new_status == "cancelled":
        values["failure_reason"] = failure_reason
    elif new_status == "refunded":
        monetary_amount = Decimal(str(transaction.monetary_amount or 0))
        amount = monetary_amount if refund_amount is None else Decimal(str(refund_amount))
        if amount <= 0 or amount > monetary_amount:
            raise InvalidTransition(
                transaction.id,
                transaction.status,
                new_status,
                message=f"Refund amount {amount} must be above 0 and at most {monetary_amount}.",
            )
        values.update(
            is_refunded=True,
            refund_amount=amount,
            refund_reason=refund_reason,
            refund_transaction_id=refund_transaction_id,
            refunded_at=now,
        )
        conditions.append(Transaction.is_refunded.is_(False))

    result = await db.execute(
        update(Transaction)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(transaction)
    if result.rowcount == 0:
        logger.warning(
            "Transaction %s changed concurrently; %s -> %s rejected",
            transaction_id,
            transaction.status,
            new_status,
        )
        check_transition(transaction, new_status)
        raise InvalidTransition(transaction.id, transaction.status, new_status)
    return transaction


async def list_transactions(
    account_id: str,
    db: AsyncSession,
    *,
    kinds: Optional[List[str]] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Transaction], int]:
    filters = [Transaction.user_id == account_id]
    if kinds:
        filters.append(Transaction.kind.in_(kinds))
    if status:
        filters.append(Transaction.status == status)

    total_result = await db.execute(select(func.count(Transaction.id)).where(*filters))
    total = int(total_result.scalar() or 0)

    page = max(int(page), 1)
    limit = max(min(int(limit), 100), 1)
    result = await db.execute(
        select(Transaction)
        .where(*filters)
        .order_by(Transaction.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def settled_credit_sum(account_id: str, db: AsyncSession) -> int:
    """Sum of ``credit_delta`` over settled transactions of one account."""
    result = await db.execute(
        select(func.coalesce(func.sum(Transaction.credit_delta), 0)).where(
            Transaction.user_id == account_id,
            Transaction.status.in_(SETTLED_STATUSES),
        )
    )
    return int(result.scalar() or 0)


async def activity_since(account_id: str, db: AsyncSession, since: datetime) -> Dict[str, Dict[str, int]]:
    """Per-kind credit totals and counts of completed transactions since ``since``."""
    result = await db.execute(
        select(
            Transaction.kind,
            func.coalesce(func.sum(Transaction.credit_delta), 0),
            func.count(Transaction.id),
        )
        .where(
            Transaction.user_id == account_id,
            Transaction.status == "completed",
            Transaction.created_at >= since,
        )
        .group_by(Transaction.kind)
    )
    return {
        kind: {"credits": abs(int(total or 0)), "count": int(count or 0)}
        for kind, total, count in result.all()
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def transaction_payload(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "account_id": transaction.user_id,
        "kind": transaction.kind,
        "status": transaction.status,
        "credit_delta": int(transaction.credit_delta or 0),
        "monetary_amount": str(transaction.monetary_amount or 0),
        "currency": transaction.currency,
        "external_ref": transaction.external_ref,
        "description": transaction.description,
        "metadata": transaction.metadata_json or {},
        "failure_reason": transaction.failure_reason,
        "is_refunded": bool(transaction.is_refunded),
        "refund_amount": str(transaction.refund_amount) if transaction.refund_amount is not None else None,
        "refund_reason": transaction.refund_reason,
        "refund_transaction_id": transaction.refund_transaction_id,
        "created_at": _iso(transaction.created_at),
        "completed_at": _iso(transaction.completed_at),
        "failed_at": _iso(transaction.failed_at),
    }
