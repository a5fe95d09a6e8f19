"""Metered AI generation router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import require_active_account
from routers.rate_limit import tier_rate_limit
from services import pricing
from services.metering import meter_ai
from services.providers import AIGeneration, BaseAIProvider, get_ai_provider

router = APIRouter()


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=20000)
    model: str = Field(default="gpt-3.5-turbo")
    request_type: str = Field(default="text_generation", max_length=50)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)


@router.get("/models")
async def list_models(provider: BaseAIProvider = Depends(get_ai_provider)):
    return {
        "models": pricing.catalog_payload(provider.available()),
        "default_max_tokens": settings.AI_DEFAULT_MAX_TOKENS,
        "max_tokens_limit": settings.AI_MAX_TOKENS_LIMIT,
    }


@router.post("/generate")
async def generate(
    request: GenerateRequest,
    _rate_limit: None = Depends(tier_rate_limit("ai_generate")),
    account: User = Depends(require_active_account),
    provider: BaseAIProvider = Depends(get_ai_provider),
    db: AsyncSession = Depends(get_db),
):
    model = pricing.get_model(request.model)
    max_tokens = min(
        request.max_tokens or settings.AI_DEFAULT_MAX_TOKENS,
        settings.AI_MAX_TOKENS_LIMIT,
        model.max_tokens,
    )
    result = await meter_ai(
        db,
        account.id,
        AIGeneration(
            model=request.model,
            prompt=request.prompt,
            request_type=request.request_type,
            max_tokens=max_tokens,
            temperature=request.temperature,
        ),
        provider,
    )
    return {
        **result.to_dict(),
        "content": result.output,
        "model": request.model,
        "usage": {
            "tokens": result.units_consumed,
            "input_tokens": result.provider_details.get("input_tokens"),
            "output_tokens": result.provider_details.get("output_tokens"),
        },
    }
