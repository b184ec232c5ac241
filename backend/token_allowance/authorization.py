"""
Authorization for allowance actions

Policy is expressed as a capability check ``authorize(db, caller, action,
target)`` so the resolver never inlines role conditionals. Admin status is
always re-read from the caller's profile (role == 'admin'); claims in the
bearer token are not trusted for privilege.
"""

import logging
from typing import Optional

from pymongo.errors import PyMongoError

from .config import PROFILES_COLLECTION, ADMIN_ROLE
from .errors import AuthorizationError

logger = logging.getLogger(__name__)

# ==================== ACTIONS ====================
ENSURE_ALLOWANCE = "allowance:ensure"
OVERRIDE_ALLOWANCE = "allowance:override"
BATCH_INIT = "allowance:batch_init"
ADMIN_MANAGE = "allowance:admin"


async def is_admin(db, user_id: str) -> bool:
    """Dedicated privilege lookup: does the profile carry the admin role?"""
    try:
        profile = await db[PROFILES_COLLECTION].find_one(
            {"id": user_id},
            {"_id": 0, "role": 1}
        )
    except PyMongoError as e:
        # Fail closed on privilege lookups
        logger.error(f"Admin role lookup failed for {user_id}: {e}")
        return False

    return bool(profile) and profile.get("role") == ADMIN_ROLE


async def authorize(db, caller_id: str, action: str, target_user_id: Optional[str] = None) -> bool:
    """
    Decide whether ``caller_id`` may perform ``action`` on ``target_user_id``.

    - ENSURE_ALLOWANCE: own allowance always; another user's only for admins
    - OVERRIDE_ALLOWANCE / ADMIN_MANAGE: admins only
    - BATCH_INIT: any authenticated caller
    """
    if not caller_id:
        return False

    if action == ENSURE_ALLOWANCE:
        if target_user_id is None or target_user_id == caller_id:
            return True
        return await is_admin(db, caller_id)

    if action in (OVERRIDE_ALLOWANCE, ADMIN_MANAGE):
        return await is_admin(db, caller_id)

    if action == BATCH_INIT:
        return True

    logger.warning(f"Unknown action '{action}' requested by {caller_id}")
    return False


async def require(db, caller_id: str, action: str, target_user_id: Optional[str] = None):
    """authorize() or raise AuthorizationError"""
    if not await authorize(db, caller_id, action, target_user_id):
        logger.warning(
            f"Authorization denied: caller={caller_id} action={action} target={target_user_id}"
        )
        raise AuthorizationError()
