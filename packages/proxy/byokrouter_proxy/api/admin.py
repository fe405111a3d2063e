"""Operator endpoints for the routing policy (management API key required)."""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends

from byokrouter.domain.components.decision_engine import explain_policy
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.router import ByokRouter
from byokrouter_proxy.dependencies import get_router
from byokrouter_proxy.middleware.auth import require_management_auth

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_management_auth)])

RouterDep = Annotated[ByokRouter, Depends(get_router)]


def _policy_view(policy: RoutingPolicy) -> dict[str, Any]:
    return {
        "flags": policy.as_flags(),
        "mode": policy.describe(),
        "explanation": explain_policy(policy),
    }


@router.get("/routing-policy")
async def get_routing_policy(byok_router: RouterDep) -> dict[str, Any]:
    """Return the policy currently used for routing decisions."""
    policy = await byok_router.current_policy()
    return _policy_view(policy)


@router.post("/routing-policy/refresh")
async def refresh_routing_policy(byok_router: RouterDep) -> dict[str, Any]:
    """Reload the policy from its source, bypassing the cache."""
    policy = await byok_router.refresh_policy()
    logger.info("routing_policy_refreshed", **policy.as_flags())
    return {"refreshed": True, **_policy_view(policy)}
