"""Usage metering for externally priced operations.

Each request moves through ``estimated -> provider_invoked -> reconciled ->
settled`` or ends in ``failed``:

1. estimate the cost and admit it against the balance (no provider call when
   the account cannot afford the estimate);
2. invoke the provider, bounded by ``PROVIDER_TIMEOUT_SECONDS``; a failure
   records a zero-credit failed usage transaction and raises ``ProviderError``;
3. price the real usage;
4. debit and record a completed usage transaction in one commit.

Credits are not reserved during step 2. If a concurrent request drained the
balance in the meantime the provider work is still returned, the usage is
kept as a pending transaction and the account is flagged for reconciliation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Awaitable, Dict, List, Optional, Tuple
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services import accounts, pricing
from services.credit_gate import admit
from services.ledger_errors import InsufficientCredits, ProviderError, SettlementError
from services.providers.types import (
    AIGeneration,
    BaseAIProvider,
    BaseMessagingProvider,
    Channel,
    OutboundMessage,
    ProviderResult,
)
from services.transactions import UsageEntry, create_transaction

logger = logging.getLogger(__name__)


class MeteringState(str, Enum):
    ESTIMATED = "estimated"
    PROVIDER_INVOKED = "provider_invoked"
    RECONCILED = "reconciled"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass(frozen=True)
class MessageBatch:
    """One or more messages with the same content on one channel."""

    channel: Channel
    recipients: Tuple[str, ...]
    body: str
    subject: Optional[str] = None
    rejected: Tuple[Dict[str, str], ...] = ()

    @property
    def operation(self) -> str:
        suffix = "bulk" if len(self.recipients) > 1 else "send"
        return f"{self.channel}_{suffix}"


@dataclass
class MeteringResult:
    operation: str
    state: MeteringState = MeteringState.ESTIMATED
    estimated_credits: int = 0
    charged_credits: int = 0
    remaining_balance: Optional[int] = None
    transaction_id: Optional[str] = None
    external_ref: Optional[str] = None
    units_consumed: int = 0
    latency_ms: int = 0
    output: Any = None
    provider_details: Dict[str, Any] = field(default_factory=dict)
    delivered: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    settlement_error: Optional[SettlementError] = None

    @property
    def granted(self) -> bool:
        return self.state in (MeteringState.SETTLED, MeteringState.RECONCILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "state": self.state.value,
            "operation": self.operation,
            "estimated_credits": self.estimated_credits,
            "credits_used": self.charged_credits,
            "remaining_balance": self.remaining_balance,
            "transaction_id": self.transaction_id,
            "external_ref": self.external_ref,
            "units_consumed": self.units_consumed,
            "latency_ms": self.latency_ms,
            "settlement_error": self.settlement_error.to_dict() if self.settlement_error else None,
        }


async def _invoke(provider_name: str, call: Awaitable[ProviderResult], timeout: float) -> ProviderResult:
    try:
        result = await asyncio.wait_for(call, timeout=timeout)
    except ProviderError:
        raise
    except asyncio.TimeoutError as exc:
        raise ProviderError(provider_name, f"Provider timed out after {timeout}s.") from exc
    except Exception as exc:
        raise ProviderError(provider_name, f"Provider call failed: {exc}") from exc
    if not result.success:
        raise ProviderError(provider_name, str(result.details.get("error") or "Provider reported failure."))
    return result


async def _record_failure(
    db: AsyncSession,
    account_id: str,
    result: MeteringResult,
    error: ProviderError,
    details: Dict[str, Any],
) -> None:
    transaction = await create_transaction(
        db,
        account_id,
        UsageEntry(
            operation=result.operation,
            credits=0,
            external_ref=result.external_ref,
            provider=error.provider,
            details=details,
        ),
        status="failed",
        failure_reason=error.message,
    )
    await db.commit()
    result.state = MeteringState.FAILED
    result.transaction_id = transaction.id
    logger.warning(
        "Provider %s failed for account %s (%s): %s",
        error.provider,
        account_id,
        result.operation,
        error.message,
    )


async def _settle(db: AsyncSession, account_id: str, result: MeteringResult, entry: UsageEntry) -> None:
    cost = int(entry.credits)
    try:
        balance = await accounts.debit(account_id, cost, db)
    except InsufficientCredits as exc:
        pending_entry = UsageEntry(
            operation=entry.operation,
            credits=cost,
            units=entry.units,
            external_ref=entry.external_ref,
            provider=entry.provider,
            latency_ms=entry.latency_ms,
            details={**entry.details, "settlement_error": True},
        )
        transaction = await create_transaction(db, account_id, pending_entry, status="pending")
        await accounts.flag_for_reconciliation(
            account_id,
            db,
            unsettled_credits=cost,
            note=f"Unsettled usage {transaction.id}",
        )
        await db.commit()
        error = SettlementError(account_id, cost, exc.available, transaction.id)
        logger.error(
            "Settlement failed for account %s: cost=%s available=%s transaction=%s",
            account_id,
            cost,
            exc.available,
            transaction.id,
        )
        result.state = MeteringState.RECONCILED
        result.transaction_id = transaction.id
        result.remaining_balance = exc.available
        result.settlement_error = error
        return

    transaction = await create_transaction(db, account_id, entry, status="completed")
    await db.commit()
    result.state = MeteringState.SETTLED
    result.transaction_id = transaction.id
    result.charged_credits = cost
    result.remaining_balance = balance


async def meter_ai(
    db: AsyncSession,
    account_id: str,
    request: AIGeneration,
    provider: BaseAIProvider,
    *,
    timeout: Optional[float] = None,
) -> MeteringResult:
    model = pricing.get_model(request.model)
    result = MeteringResult(operation="ai_generation", external_ref=str(uuid.uuid4()))
    result.estimated_credits = pricing.estimate_ai_cost(request.model, request.prompt, request.max_tokens)
    balance = await admit(account_id, result.estimated_credits, db)

    result.state = MeteringState.PROVIDER_INVOKED
    try:
        provider_result = await _invoke(
            model.provider,
            provider.generate(request, budget_credits=balance),
            timeout or settings.PROVIDER_TIMEOUT_SECONDS,
        )
    except ProviderError as error:
        await _record_failure(
            db,
            account_id,
            result,
            error,
            {"model": request.model, "request_type": request.request_type},
        )
        raise

    result.state = MeteringState.RECONCILED
    result.units_consumed = int(provider_result.units_consumed)
    result.latency_ms = int(provider_result.latency_ms)
    result.output = provider_result.output
    result.provider_details = dict(provider_result.details)
    actual_cost = pricing.ai_cost(request.model, result.units_consumed)

    entry = UsageEntry(
        operation=result.operation,
        credits=actual_cost,
        units=result.units_consumed,
        external_ref=result.external_ref,
        provider=provider_result.provider or model.provider,
        latency_ms=result.latency_ms,
        details={
            "model": request.model,
            "request_type": request.request_type,
            "tokens": result.units_consumed,
            "provider_ref": provider_result.external_ref,
        },
    )
    await _settle(db, account_id, result, entry)
    return result


async def meter_messages(
    db: AsyncSession,
    account_id: str,
    batch: MessageBatch,
    provider: BaseMessagingProvider,
    *,
    send_delay: Optional[float] = None,
    timeout: Optional[float] = None,
) -> MeteringResult:
    if not batch.recipients:
        raise ValueError("batch has no recipients")

    result = MeteringResult(operation=batch.operation, external_ref=str(uuid.uuid4()))
    result.estimated_credits = pricing.message_cost(len(batch.recipients))
    await admit(account_id, result.estimated_credits, db)

    if send_delay is None:
        send_delay = settings.BULK_SMS_DELAY_SECONDS if batch.channel == "sms" else settings.BULK_EMAIL_DELAY_SECONDS
    timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    result.state = MeteringState.PROVIDER_INVOKED
    last_error: Optional[ProviderError] = None
    for index, recipient in enumerate(batch.recipients):
        message = OutboundMessage(channel=batch.channel, recipient=recipient, body=batch.body, subject=batch.subject)
        try:
            sent = await _invoke(provider.provider_name, provider.send(message), timeout)
        except ProviderError as error:
            last_error = error
            result.failures.append({"recipient": recipient, "error": error.message})
        else:
            result.latency_ms += int(sent.latency_ms)
            result.delivered.append(
                {"recipient": recipient, "message_id": sent.external_ref, "provider": sent.provider}
            )
        if send_delay and index < len(batch.recipients) - 1:
            await asyncio.sleep(send_delay)

    details = {
        "channel": batch.channel,
        "total_recipients": len(batch.recipients) + len(batch.rejected),
        "total_sent": len(result.delivered),
        "total_errors": len(result.failures),
        "rejected": list(batch.rejected),
    }
    if batch.subject:
        details["subject"] = batch.subject

    if not result.delivered:
        error = last_error or ProviderError(provider.provider_name, "No message could be delivered.")
        await _record_failure(db, account_id, result, error, details)
        raise error

    result.state = MeteringState.RECONCILED
    result.units_consumed = len(result.delivered)
    if len(result.delivered) == 1 and len(batch.recipients) == 1:
        result.external_ref = result.delivered[0]["message_id"] or result.external_ref

    entry = UsageEntry(
        operation=result.operation,
        credits=pricing.message_cost(result.units_consumed),
        units=result.units_consumed,
        external_ref=result.external_ref,
        provider=result.delivered[0]["provider"],
        latency_ms=result.latency_ms,
        details=details,
    )
    await _settle(db, account_id, result, entry)
    return result


async def meter(db: AsyncSession, account_id: str, operation, provider, **kwargs) -> MeteringResult:
    """Meter any supported operation descriptor."""
    if isinstance(operation, AIGeneration):
        return await meter_ai(db, account_id, operation, provider, **kwargs)
    if isinstance(operation, MessageBatch):
        return await meter_messages(db, account_id, operation, provider, **kwargs)
    raise TypeError(f"Unsupported operation: {type(operation).__name__}")
