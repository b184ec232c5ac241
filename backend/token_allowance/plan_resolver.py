"""
Plan Resolver - Reads the user's plan tier from the profiles collection

This module only reads; profiles are owned by the account system.

Rules:
- Plans control ONLY which monthly credit grant applies
- Default to 'free' if the plan cannot be determined (fail open to the
  lowest entitlement, never raise on a storage error)
"""

import logging
from typing import List, Optional

from pymongo.errors import PyMongoError

from .config import PROFILES_COLLECTION, PLAN_FREE, PLAN_PREMIUM
from .errors import PlanRegistryError

logger = logging.getLogger(__name__)

# Normalize plan names (handle variations)
PLAN_MAPPING = {
    "free": PLAN_FREE,
    "premium": PLAN_PREMIUM,
    "pro": PLAN_PREMIUM,
}


async def resolve_plan_type(db, user_id: str) -> str:
    """
    Resolve a user's plan tier.

    Args:
        db: MongoDB database instance
        user_id: User ID to look up

    Returns:
        'premium' or 'free'. Unknown tiers, missing profiles and lookup
        failures all resolve to 'free'.
    """
    try:
        profile = await db[PROFILES_COLLECTION].find_one(
            {"id": user_id},
            {"_id": 0, "plan_type": 1}
        )
    except PyMongoError as e:
        logger.warning(f"Plan lookup failed for user {user_id}, defaulting to free: {e}")
        return PLAN_FREE

    if not profile:
        logger.warning(f"Profile not found for plan resolution: {user_id}")
        return PLAN_FREE

    plan = (profile.get("plan_type") or "").strip().lower()
    return PLAN_MAPPING.get(plan, PLAN_FREE)


async def get_profile(db, user_id: str) -> Optional[dict]:
    """Fetch a profile by id (None if it does not exist)."""
    try:
        return await db[PROFILES_COLLECTION].find_one({"id": user_id}, {"_id": 0})
    except PyMongoError as e:
        logger.error(f"Failed to fetch profile {user_id}: {e}")
        raise PlanRegistryError(f"Failed to fetch profile: {e}")


async def list_profile_ids(db) -> List[str]:
    """
    Enumerate every known identity for batch bootstrap.

    Raises:
        PlanRegistryError: profiles cannot be read at all
    """
    try:
        profiles = await db[PROFILES_COLLECTION].find(
            {},
            {"_id": 0, "id": 1}
        ).to_list(length=None)
    except PyMongoError as e:
        logger.error(f"Failed to fetch profiles: {e}")
        raise PlanRegistryError(f"Failed to fetch profiles: {e}")

    return [p["id"] for p in profiles if p.get("id")]
