"""
Admin Allowance Service

Direct ledger edits made by administrators. These bypass the resolver:
no rollover or plan recomputation happens, the counters are simply
overwritten.

Every edit appends an audit event to llm_usage_events under a fresh
idempotency key. The audit insert is attempted exactly once; if it fails
the balance change still stands and the result carries a warning for the
operator.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, List

from pymongo.errors import PyMongoError

from .config import (
    PERIODS_COLLECTION,
    USAGE_EVENTS_COLLECTION,
    ADMIN_ADJUSTMENT_FEATURE,
    ADMIN_ADJUSTMENT_ACTION,
    ADMIN_REMAINING_ACTION,
    AUDIT_FAILED_WARNING,
)
from .errors import AllowanceNotFoundError, LedgerError, LedgerWriteError
from .models import AllowancePeriod, AllowanceBalance, BalanceCorrectionResult
from .allowance_service import AllowanceService, build_balance
from .periods import remaining_tokens, to_iso
from .settings_service import get_token_settings

logger = logging.getLogger(__name__)


class AdminAllowanceService:
    """Administrative views and balance corrections on the period ledger."""

    def __init__(self, db, now_fn=None):
        self.db = db
        self.periods = db[PERIODS_COLLECTION]
        self.usage_events = db[USAGE_EVENTS_COLLECTION]
        self._now = now_fn or (lambda: datetime.now(timezone.utc))

    async def _get_period(self, allowance_id: str) -> dict:
        try:
            period = await self.periods.find_one({"id": allowance_id}, {"_id": 0})
        except PyMongoError as e:
            raise LedgerError(f"Failed to load allowance period: {e}")

        if not period:
            raise AllowanceNotFoundError(f"Allowance period not found: {allowance_id}")
        return period

    async def correct_balance(
        self,
        admin_id: str,
        allowance_id: str,
        tokens_granted: int,
        tokens_used: int,
        action: str = ADMIN_ADJUSTMENT_ACTION
    ) -> BalanceCorrectionResult:
        """
        Overwrite tokens_granted / tokens_used on an existing period.

        Raises:
            AllowanceNotFoundError: no period with this id
            LedgerWriteError: the update itself failed
        """
        period = await self._get_period(allowance_id)
        now_iso = to_iso(self._now())

        try:
            result = await self.periods.update_one(
                {"id": allowance_id},
                {
                    "$set": {
                        "tokens_granted": tokens_granted,
                        "tokens_used": tokens_used,
                        "updated_at": now_iso
                    }
                }
            )
        except PyMongoError as e:
            logger.error(f"Failed to update allowance {allowance_id}: {e}")
            raise LedgerWriteError(f"Failed to update token balance: {e}")

        if result.matched_count == 0:
            raise AllowanceNotFoundError(f"Allowance period not found: {allowance_id}")

        logger.info(
            f"Admin {admin_id} set allowance {allowance_id} of user {period['user_id']}: "
            f"granted {period['tokens_granted']} -> {tokens_granted}, "
            f"used {period['tokens_used']} -> {tokens_used}"
        )

        updated = {
            **period,
            "tokens_granted": tokens_granted,
            "tokens_used": tokens_used,
            "updated_at": now_iso
        }

        audit_logged = await self._write_audit_event(admin_id, period, updated, action)

        return BalanceCorrectionResult(
            allowance=AllowancePeriod(**updated),
            audit_logged=audit_logged,
            warning=None if audit_logged else AUDIT_FAILED_WARNING
        )

    async def set_remaining_tokens(self, admin_id: str, allowance_id: str, remaining: int) -> BalanceCorrectionResult:
        """Derive tokens_used from a desired remaining balance: max(granted - remaining, 0)."""
        period = await self._get_period(allowance_id)
        granted = period.get("tokens_granted") or 0

        return await self.correct_balance(
            admin_id,
            allowance_id,
            tokens_granted=granted,
            tokens_used=max(granted - remaining, 0),
            action=ADMIN_REMAINING_ACTION
        )

    async def _write_audit_event(self, admin_id: str, before: dict, after: dict, action: str) -> bool:
        """Append the audit record. Single attempt; False on failure."""
        granted_delta = after["tokens_granted"] - before["tokens_granted"]
        used_delta = after["tokens_used"] - before["tokens_used"]

        event = {
            "id": str(uuid.uuid4()),
            "user_id": before["user_id"],
            "idempotency_key": f"admin_adjustment_{before['id']}_{uuid.uuid4().hex}",
            "feature": ADMIN_ADJUSTMENT_FEATURE,
            "total_tokens": granted_delta,
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "credits_charged": 0,
            "created_at": after["updated_at"],
            "metadata": {
                "admin_id": admin_id,
                "admin_action": action,
                "allowance_period_id": before["id"],
                "target_user_id": before["user_id"],
                "previous_tokens_granted": before["tokens_granted"],
                "new_tokens_granted": after["tokens_granted"],
                "tokens_granted_delta": granted_delta,
                "previous_tokens_used": before["tokens_used"],
                "new_tokens_used": after["tokens_used"],
                "tokens_used_delta": used_delta,
                "previous_remaining": remaining_tokens(before),
                "new_remaining": remaining_tokens(after),
                "adjusted_at": after["updated_at"]
            }
        }

        try:
            await self.usage_events.insert_one(event)
        except PyMongoError as e:
            logger.warning(f"Failed to log admin adjustment for allowance {before['id']}: {e}")
            return False

        return True

    # ==================== VIEWS ====================

    async def get_user_allowance(self, user_id: str) -> Optional[AllowanceBalance]:
        """Active allowance of a user with the credit view, or None. Never creates."""
        period = await AllowanceService(self.db, now_fn=self._now).get_active_allowance(user_id)
        if not period:
            return None

        settings = await get_token_settings(self.db)
        return build_balance(period, settings.tokens_per_credit)

    async def list_current_allowances(self) -> List[AllowanceBalance]:
        """Active allowance of every user (latest-ending row per user)."""
        now_iso = to_iso(self._now())

        try:
            periods = await self.periods.find(
                {"period_start": {"$lte": now_iso}, "period_end": {"$gt": now_iso}},
                {"_id": 0}
            ).sort("period_end", -1).to_list(length=None)
        except PyMongoError as e:
            raise LedgerError(f"Failed to fetch allowances: {e}")

        settings = await get_token_settings(self.db)

        by_user = {}
        for period in periods:
            by_user.setdefault(period["user_id"], period)

        return [build_balance(p, settings.tokens_per_credit) for p in by_user.values()]

    async def get_audit_events(self, user_id: Optional[str] = None, limit: int = 50) -> list:
        """Recent admin adjustment events, newest first."""
        query = {"feature": ADMIN_ADJUSTMENT_FEATURE}
        if user_id:
            query["user_id"] = user_id

        try:
            cursor = self.usage_events.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise LedgerError(f"Failed to fetch audit events: {e}")
