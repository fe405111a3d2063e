"""
API endpoints for managing a user's own provider keys.
"""
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Path, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from byokrouter.domain.models.provider import SUPPORTED_PROVIDERS, get_provider_info
from byokrouter.domain.models.usage import UsageSummary
from byokrouter.router import ByokRouter
from byokrouter_proxy.dependencies import get_router
from byokrouter_proxy.middleware.auth import get_user_id

router = APIRouter()

RouterDep = Annotated[ByokRouter, Depends(get_router)]
UserId = Annotated[str, Depends(get_user_id)]


class KeyCreateRequest(BaseModel):
    provider: str = Field(..., description="Provider the key belongs to, e.g. 'openai'.")
    api_key: str = Field(..., alias="apiKey", description="The raw provider API key.")

    model_config = ConfigDict(populate_by_name=True)


def _key_view(key: dict[str, Any]) -> dict[str, Any]:
    """Shape a public key record for the UI; the secret is never included."""
    provider = key["provider"]
    return {
        "id": key["id"],
        "provider": provider.value,
        "providerName": get_provider_info(provider).name,
        "keyHint": key["key_hint"],
        "isActive": key["is_active"],
        "isValid": key["is_valid"],
        "lastError": key["last_error"],
        "totalRequests": key["total_requests"],
        "totalTokens": key["total_tokens"],
        "lastUsedAt": key["last_used_at"],
        "validatedAt": key["validated_at"],
        "createdAt": key["created_at"],
    }


def _usage_view(summary: UsageSummary) -> dict[str, Any]:
    return {
        "period": f"{summary.period_days} days",
        "totalRequests": summary.total_requests,
        "totalTokens": summary.total_tokens,
        "estimatedCostCents": summary.estimated_cost_cents,
        "estimatedCostDollars": summary.estimated_cost_dollars,
        "byProvider": {
            provider: {
                "requests": usage.requests,
                "tokens": usage.tokens,
                "costCents": usage.cost_cents,
            }
            for provider, usage in summary.by_provider.items()
        },
    }


# Static paths are declared before "/{key_id}" routes


@router.get("/providers")
async def list_providers() -> dict[str, Any]:
    """
    List the providers a user can bring a key for.
    """
    return {
        "providers": [
            {
                "id": info.id.value,
                "name": info.name,
                "description": info.description,
                "docsUrl": info.docs_url,
                "keyFormatHint": info.key_format_hint,
            }
            for info in SUPPORTED_PROVIDERS
        ]
    }


@router.get("/settings")
async def get_settings(user_id: UserId, byok_router: RouterDep) -> dict[str, Any]:
    """
    Show the active routing flags and which key source the next request would use.
    """
    preview = await byok_router.settings_preview(user_id)
    return {
        "enabled": preview.enabled,
        "flags": preview.policy.as_flags(),
        "hasCredits": preview.has_credits,
        "hasByokKeys": preview.has_byok_keys,
        "byokProviders": [p.value for p in preview.byok_providers],
        "keySource": {
            "source": preview.verdict.source.value,
            "reason": preview.verdict.explanation,
        },
    }


@router.get("/usage")
async def get_usage(
    user_id: UserId,
    byok_router: RouterDep,
    days: Annotated[int, Query(description="Trailing window in days (1-365).")] = 30,
) -> dict[str, Any]:
    """
    Summarise usage on the user's own keys.
    """
    summary = await byok_router.usage_summary(user_id, days)
    return _usage_view(summary)


@router.get("")
async def list_keys(user_id: UserId, byok_router: RouterDep) -> dict[str, Any]:
    """
    List the user's keys with secrets redacted to a hint.
    """
    keys = await byok_router.list_keys(user_id)
    return {"keys": [_key_view(key) for key in keys]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_key(
    request: Annotated[KeyCreateRequest, Body(...)],
    user_id: UserId,
    byok_router: RouterDep,
) -> dict[str, Any]:
    """
    Validate a key against its provider and store it, replacing any existing
    key for the same provider.
    """
    record = await byok_router.add_key(user_id, request.provider, request.api_key)
    return {
        "success": True,
        "key": _key_view(record.public_view()),
        "message": "API key added and validated successfully",
    }


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_key(
    key_id: Annotated[str, Path(..., description="The ID of the key to delete.")],
    user_id: UserId,
    byok_router: RouterDep,
) -> Response:
    """
    Delete one of the user's keys.
    """
    await byok_router.delete_key(user_id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{key_id}/test")
async def test_key(
    key_id: Annotated[str, Path(..., description="The ID of the key to re-validate.")],
    user_id: UserId,
    byok_router: RouterDep,
) -> dict[str, Any]:
    """
    Re-validate a stored key against its provider.
    """
    result = await byok_router.test_key(user_id, key_id)
    return {
        "valid": result.valid,
        "error": result.error,
        "message": "API key is valid" if result.valid else f"Validation failed: {result.error}",
    }
