"""Metered SMS and email campaign router."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import require_active_account
from routers.rate_limit import tier_rate_limit
from services.metering import MessageBatch, meter_messages
from services.providers import BaseMessagingProvider, get_messaging_provider, is_valid_email, normalize_phone

router = APIRouter()


class SMSSendRequest(BaseModel):
    phone: str = Field(min_length=1, max_length=32)
    message: str = Field(min_length=1, max_length=1600)


class EmailSendRequest(BaseModel):
    to: str = Field(min_length=3, max_length=320)
    subject: str = Field(min_length=1, max_length=998)
    html: str = Field(min_length=1)


class SMSBulkRequest(BaseModel):
    phones: List[str] = Field(min_length=1)
    message: str = Field(min_length=1, max_length=1600)


class EmailBulkRequest(BaseModel):
    recipients: List[str] = Field(min_length=1)
    subject: str = Field(min_length=1, max_length=998)
    html: str = Field(min_length=1)


def _split_phones(phones: List[str]):
    valid: List[str] = []
    rejected = []
    for phone in phones:
        formatted, error = normalize_phone(phone)
        if formatted is None:
            rejected.append({"recipient": phone, "error": error})
        elif formatted not in valid:
            valid.append(formatted)
    return valid, rejected


def _split_emails(emails: List[str]):
    valid: List[str] = []
    rejected = []
    for email in emails:
        address = (email or "").strip()
        if not is_valid_email(address):
            rejected.append({"recipient": email, "error": "Invalid email address"})
        elif address not in valid:
            valid.append(address)
    return valid, rejected


def _check_batch_size(count: int) -> None:
    if count > settings.BULK_MAX_RECIPIENTS:
        raise HTTPException(
            status_code=400,
            detail=f"At most {settings.BULK_MAX_RECIPIENTS} recipients per request.",
        )


async def _send(
    db: AsyncSession,
    account: User,
    batch: MessageBatch,
    provider: BaseMessagingProvider,
    *,
    single: bool = False,
) -> dict:
    result = await meter_messages(db, account.id, batch, provider)
    response = {
        **result.to_dict(),
        "total_recipients": len(batch.recipients) + len(batch.rejected),
        "total_sent": len(result.delivered),
        "total_errors": len(result.failures) + len(batch.rejected),
        "results": result.delivered,
        "errors": result.failures + list(batch.rejected),
    }
    if single and result.delivered:
        response["message_id"] = result.delivered[0]["message_id"]
    return response


@router.post("/sms/send")
async def send_sms(
    request: SMSSendRequest,
    _rate_limit: None = Depends(tier_rate_limit("sms_send")),
    account: User = Depends(require_active_account),
    provider: BaseMessagingProvider = Depends(get_messaging_provider),
    db: AsyncSession = Depends(get_db),
):
    formatted, error = normalize_phone(request.phone)
    if formatted is None:
        raise HTTPException(status_code=400, detail=error)
    batch = MessageBatch(channel="sms", recipients=(formatted,), body=request.message)
    return await _send(db, account, batch, provider, single=True)


@router.post("/email/send")
async def send_email(
    request: EmailSendRequest,
    _rate_limit: None = Depends(tier_rate_limit("email_send")),
    account: User = Depends(require_active_account),
    provider: BaseMessagingProvider = Depends(get_messaging_provider),
    db: AsyncSession = Depends(get_db),
):
    address = request.to.strip()
    if not is_valid_email(address):
        raise HTTPException(status_code=400, detail="Invalid email address")
    batch = MessageBatch(channel="email", recipients=(address,), body=request.html, subject=request.subject)
    return await _send(db, account, batch, provider, single=True)


@router.post("/sms/bulk")
async def send_bulk_sms(
    request: SMSBulkRequest,
    _rate_limit: None = Depends(tier_rate_limit("sms_bulk")),
    account: User = Depends(require_active_account),
    provider: BaseMessagingProvider = Depends(get_messaging_provider),
    db: AsyncSession = Depends(get_db),
):
    _check_batch_size(len(request.phones))
    valid, rejected = _split_phones(request.phones)
    if not valid:
        raise HTTPException(status_code=400, detail={"message": "No valid phone numbers", "errors": rejected})
    batch = MessageBatch(channel="sms", recipients=tuple(valid), body=request.message, rejected=tuple(rejected))
    return await _send(db, account, batch, provider)


@router.post("/email/bulk")
async def send_bulk_email(
    request: EmailBulkRequest,
    _rate_limit: None = Depends(tier_rate_limit("email_bulk")),
    account: User = Depends(require_active_account),
    provider: BaseMessagingProvider = Depends(get_messaging_provider),
    db: AsyncSession = Depends(get_db),
):
    _check_batch_size(len(request.recipients))
    valid, rejected = _split_emails(request.recipients)
    if not valid:
        raise HTTPException(status_code=400, detail={"message": "No valid email addresses", "errors": rejected})
    batch = MessageBatch(
        channel="email",
        recipients=tuple(valid),
        body=request.html,
        subject=request.subject,
        rejected=tuple(rejected),
    )
    return await _send(db, account, batch, provider)
