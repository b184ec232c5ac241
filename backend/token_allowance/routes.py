"""
Token Allowance API Routes

Endpoints:
- POST /api/ensure-token-allowance - Ensure (or batch-initialize) allowances
- GET /api/token-allowance - Caller's current allowance with credit view
- GET /api/token-allowance/admin/allowances - Active allowance of every user
- GET /api/token-allowance/admin/users/{user_id} - One user's active allowance
- PUT /api/token-allowance/admin/allowances/{allowance_id} - Balance correction
- PUT /api/token-allowance/admin/allowances/{allowance_id}/remaining - Set remaining tokens
- GET /api/token-allowance/admin/settings - Credit settings
- PUT /api/token-allowance/admin/settings/{key} - Update a credit setting
- GET /api/token-allowance/admin/audit - Admin adjustment history

Failures are raised as AllowanceError subclasses and rendered by the
application-level handler as {"success": false, "error": ..., "code": ...}.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from database import get_db
from utils.auth import get_current_user, get_admin_user
from token_allowance.allowance_service import AllowanceService
from token_allowance.admin_service import AdminAllowanceService
from token_allowance.authorization import require, BATCH_INIT
from token_allowance.settings_service import list_settings, update_setting
from token_allowance.models import (
    EnsureAllowanceRequest,
    EnsureAllowanceResponse,
    BatchResponse,
    AllowanceBalanceResponse,
    BalanceCorrectionRequest,
    BalanceCorrectionResult,
    RemainingTokensRequest,
    SettingUpdateRequest,
)

logger = logging.getLogger(__name__)

token_allowance_router = APIRouter(tags=["Token Allowance"])


# ==================== ENSURE ====================

@token_allowance_router.post("/ensure-token-allowance")
async def ensure_token_allowance(
    body: Optional[EnsureAllowanceRequest] = None,
    user: dict = Depends(get_current_user),
    db=Depends(get_db)
):
    """
    Ensure the caller (or, for admins, ``user_id``) has an active allowance.

    With ``batch_init: true`` every profile is processed and a summary is
    returned instead of a single allowance.
    """
    body = body or EnsureAllowanceRequest()
    service = AllowanceService(db)

    if body.batch_init:
        await require(db, user["id"], BATCH_INIT)
        logger.info(f"Batch initialization requested by {user['id']}")
        return await service.batch_ensure_allowance()

    result = await service.ensure_allowance_for_caller(
        caller_id=user["id"],
        target_user_id=body.user_id,
        options=body.options()
    )

    return EnsureAllowanceResponse(created=result.created, allowance=result.allowance)


@token_allowance_router.get("/token-allowance", response_model=AllowanceBalanceResponse)
async def get_token_allowance(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """
    Get current user's allowance, creating this month's period if needed.

    Returns:
        Tokens granted/used/remaining, credits view, plan tier and base grant
    """
    service = AllowanceService(db)
    return await service.get_balance(user["id"])


# ==================== ADMIN ENDPOINTS ====================

@token_allowance_router.get("/token-allowance/admin/allowances")
async def list_allowances(admin: dict = Depends(get_admin_user), db=Depends(get_db)):
    """Active allowance per user (admin only)."""
    allowances = await AdminAllowanceService(db).list_current_allowances()
    return {
        "allowances": allowances,
        "count": len(allowances)
    }


@token_allowance_router.get("/token-allowance/admin/users/{user_id}")
async def get_user_allowance(user_id: str, admin: dict = Depends(get_admin_user), db=Depends(get_db)):
    """A user's active allowance, or null when none is active (admin only)."""
    balance = await AdminAllowanceService(db).get_user_allowance(user_id)
    return {
        "user_id": user_id,
        "balance": balance
    }


@token_allowance_router.put(
    "/token-allowance/admin/allowances/{allowance_id}",
    response_model=BalanceCorrectionResult
)
async def correct_allowance(
    allowance_id: str,
    body: BalanceCorrectionRequest,
    admin: dict = Depends(get_admin_user),
    db=Depends(get_db)
):
    """Overwrite tokens granted/used on a period (admin only, audited)."""
    return await AdminAllowanceService(db).correct_balance(
        admin_id=admin["id"],
        allowance_id=allowance_id,
        tokens_granted=body.tokens_granted,
        tokens_used=body.tokens_used
    )


@token_allowance_router.put(
    "/token-allowance/admin/allowances/{allowance_id}/remaining",
    response_model=BalanceCorrectionResult
)
async def set_remaining_tokens(
    allowance_id: str,
    body: RemainingTokensRequest,
    admin: dict = Depends(get_admin_user),
    db=Depends(get_db)
):
    """Set remaining tokens; tokens_used becomes max(granted - remaining, 0)."""
    return await AdminAllowanceService(db).set_remaining_tokens(
        admin_id=admin["id"],
        allowance_id=allowance_id,
        remaining=body.remaining_tokens
    )


@token_allowance_router.get("/token-allowance/admin/settings")
async def get_credit_settings(admin: dict = Depends(get_admin_user), db=Depends(get_db)):
    return {"settings": await list_settings(db)}


@token_allowance_router.put("/token-allowance/admin/settings/{key}")
async def put_credit_setting(
    key: str,
    body: SettingUpdateRequest,
    admin: dict = Depends(get_admin_user),
    db=Depends(get_db)
):
    """Update one credit setting (validated against its minimum)."""
    setting = await update_setting(db, key, body.value_int, updated_by=admin["id"])
    return {
        "success": True,
        "setting": setting
    }


@token_allowance_router.get("/token-allowance/admin/audit")
async def get_audit_events(
    user_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(get_admin_user),
    db=Depends(get_db)
):
    """Admin balance adjustments, newest first."""
    events = await AdminAllowanceService(db).get_audit_events(user_id, limit)
    return {
        "events": events,
        "count": len(events)
    }
