"""
Token Allowance Service

Core allowance operations including:
- Active period lookup (period_start <= now < period_end)
- Idempotent "ensure" (create only when no period is active)
- Plan-based grants with capped rollover from the last expired period
- Caller-scoped ensure with admin override checks
- Batch bootstrap across every profile

CRITICAL: Creation is a single upsert keyed on the full window
(user_id, period_start, period_end), backed by a unique index. Concurrent
ensures for the same user therefore converge on one row instead of
inserting duplicates, and an expired row that merely shares a start is
never mistaken for the new period.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Callable

from pymongo.errors import DuplicateKeyError, PyMongoError

from .authorization import require, ENSURE_ALLOWANCE, OVERRIDE_ALLOWANCE
from .config import (
    PERIODS_COLLECTION,
    PLAN_PREMIUM,
    SOURCE_FREE_TIER,
    SOURCE_SUBSCRIPTION,
    CREATED_BY,
)
from .errors import LedgerError, LedgerWriteError, InvalidPeriodError, UnknownUserError
from .models import (
    AllowancePeriod,
    AllowanceMetadata,
    AllowanceResult,
    AllowanceBalance,
    AllowanceBalanceResponse,
    BatchItemResult,
    BatchSummary,
    BatchResponse,
    EnsureOptions,
    TokenSettings,
)
from .periods import (
    calculate_rollover,
    remaining_tokens,
    resolve_window,
    to_iso,
    tokens_to_credits,
)
from .plan_resolver import resolve_plan_type, list_profile_ids, get_profile
from .settings_service import get_token_settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def base_tokens_for(plan_type: str, settings: TokenSettings, options: EnsureOptions) -> int:
    """Base grant for a new period: forced value, or plan credits x tokens per credit."""
    if options.force_tokens is not None:
        return options.force_tokens
    if options.force_credits is not None:
        return options.force_credits * settings.tokens_per_credit
    return settings.credits_for_plan(plan_type) * settings.tokens_per_credit


def build_balance(period: dict, tokens_per_credit: int) -> AllowanceBalance:
    """Attach remaining tokens and the credit view to a ledger row."""
    granted = period.get("tokens_granted") or 0
    used = period.get("tokens_used") or 0
    remaining = remaining_tokens(period)

    return AllowanceBalance(
        allowance=AllowancePeriod(**period),
        remaining_tokens=remaining,
        tokens_per_credit=tokens_per_credit,
        credits_granted=tokens_to_credits(granted, tokens_per_credit),
        credits_used=tokens_to_credits(used, tokens_per_credit),
        credits_remaining=tokens_to_credits(remaining, tokens_per_credit)
    )


class AllowanceService:
    """Service for resolving monthly token allowances."""

    def __init__(self, db, now_fn: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.periods = db[PERIODS_COLLECTION]
        self._now = now_fn or _utcnow

    # ==================== LEDGER READS ====================

    async def get_active_allowance(self, user_id: str, now: Optional[datetime] = None) -> Optional[dict]:
        """Period satisfying period_start <= now < period_end, if any."""
        now_iso = to_iso(now or self._now())

        try:
            return await self.periods.find_one(
                {
                    "user_id": user_id,
                    "period_start": {"$lte": now_iso},
                    "period_end": {"$gt": now_iso}
                },
                {"_id": 0},
                sort=[("period_end", -1)]
            )
        except PyMongoError as e:
            logger.error(f"Error checking active allowance for user {user_id}: {e}")
            raise LedgerError(f"Failed to check active allowance: {e}")

    async def get_most_recent_expired_period(self, user_id: str, now: Optional[datetime] = None) -> Optional[dict]:
        """
        Latest period that has ended (period_end <= now).

        Windows are half-open, so a period whose end equals ``now`` is
        already expired and must count for rollover.
        """
        now_iso = to_iso(now or self._now())

        try:
            return await self.periods.find_one(
                {"user_id": user_id, "period_end": {"$lte": now_iso}},
                {"_id": 0},
                sort=[("period_end", -1)]
            )
        except PyMongoError as e:
            logger.error(f"Error fetching previous period for user {user_id}: {e}")
            raise LedgerError(f"Failed to fetch previous period: {e}")

    # ==================== ENSURE ====================

    async def ensure_allowance(self, user_id: str, options: Optional[EnsureOptions] = None) -> AllowanceResult:
        """
        Return the user's active allowance, creating it if none is active.

        Repeated calls inside the same window are no-ops returning the same
        row with created=False.
        """
        options = options or EnsureOptions()
        now = self._now()

        existing = await self.get_active_allowance(user_id, now)
        if existing:
            logger.info(
                f"Found existing active allowance {existing.get('id')} for user {user_id} "
                f"(ends {existing.get('period_end')})"
            )
            return AllowanceResult(created=False, allowance=AllowancePeriod(**existing))

        logger.info(f"No active allowance for user {user_id}, creating one")
        return await self._create_allowance(user_id, options, now)

    async def _create_allowance(self, user_id: str, options: EnsureOptions, now: datetime) -> AllowanceResult:
        period_start, period_end = resolve_window(now, options.period_start, options.period_end)
        if period_end <= period_start:
            raise InvalidPeriodError(
                details={"period_start": to_iso(period_start), "period_end": to_iso(period_end)}
            )

        # Settings are re-read on every creation so admin edits apply immediately
        settings = await get_token_settings(self.db)
        plan_type = await resolve_plan_type(self.db, user_id)

        base_tokens = base_tokens_for(plan_type, settings, options)
        source = options.source or (SOURCE_SUBSCRIPTION if plan_type == PLAN_PREMIUM else SOURCE_FREE_TIER)

        rollover_tokens = 0
        if not options.skip_rollover:
            previous = await self.get_most_recent_expired_period(user_id, now)
            rollover_tokens = calculate_rollover(previous, base_tokens)

        tokens_granted = base_tokens + rollover_tokens

        logger.info(
            f"Creating allowance for user {user_id}: plan={plan_type} base={base_tokens} "
            f"rollover={rollover_tokens} total={tokens_granted} source={source} "
            f"window=[{to_iso(period_start)}, {to_iso(period_end)})"
        )

        now_iso = to_iso(now)
        metadata = AllowanceMetadata(
            created_by=CREATED_BY,
            created_at=now_iso,
            rollover_tokens=rollover_tokens,
            base_tokens=base_tokens,
            plan_type=plan_type
        )

        period_doc = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "period_start": to_iso(period_start),
            "period_end": to_iso(period_end),
            "tokens_granted": tokens_granted,
            "tokens_used": 0,
            "source": source,
            "metadata": metadata.model_dump(),
            "created_at": now_iso,
            "updated_at": now_iso
        }

        return await self._insert_period(period_doc)

    async def _insert_period(self, period_doc: dict) -> AllowanceResult:
        """
        Insert the period unless one with the same user and window exists.

        The filter fields are supplied by the upsert itself, everything else
        goes through $setOnInsert so an existing row is never modified.
        """
        key = {
            "user_id": period_doc["user_id"],
            "period_start": period_doc["period_start"],
            "period_end": period_doc["period_end"]
        }
        on_insert = {k: v for k, v in period_doc.items() if k not in key}

        try:
            result = await self.periods.update_one(
                key,
                {"$setOnInsert": on_insert},
                upsert=True
            )
        except DuplicateKeyError:
            logger.warning(f"Concurrent allowance creation for user {key['user_id']}, using existing row")
            return await self._existing_after_conflict(key)
        except PyMongoError as e:
            logger.error(f"Error creating allowance for user {key['user_id']}: {e}")
            raise LedgerWriteError(f"Failed to create allowance period: {e}")

        if result.upserted_id is None:
            logger.warning(f"Allowance for user {key['user_id']} already created for {key['period_start']}")
            return await self._existing_after_conflict(key)

        return AllowanceResult(created=True, allowance=AllowancePeriod(**period_doc))

    async def _existing_after_conflict(self, key: dict) -> AllowanceResult:
        try:
            existing = await self.periods.find_one(key, {"_id": 0})
        except PyMongoError as e:
            raise LedgerError(f"Failed to read allowance after conflict: {e}")

        if not existing:
            raise LedgerWriteError("Allowance creation conflicted but no existing period was found")

        return AllowanceResult(created=False, allowance=AllowancePeriod(**existing))

    # ==================== CALLER SCOPED ====================

    async def ensure_allowance_for_caller(
        self,
        caller_id: str,
        target_user_id: Optional[str] = None,
        options: Optional[EnsureOptions] = None
    ) -> AllowanceResult:
        """
        Ensure an allowance on behalf of an authenticated caller.

        Targeting another user, or passing any grant override, requires the
        caller's profile to have the admin role. Authorization is checked
        before any ledger access.
        """
        target = target_user_id or caller_id

        await require(self.db, caller_id, ENSURE_ALLOWANCE, target)
        if options is not None and options.has_overrides():
            await require(self.db, caller_id, OVERRIDE_ALLOWANCE, target)

        if target != caller_id and not await get_profile(self.db, target):
            raise UnknownUserError(f"User not found: {target}")

        if target != caller_id:
            logger.info(f"Admin {caller_id} ensuring allowance for user {target}")

        return await self.ensure_allowance(target, options)

    async def get_balance(self, user_id: str) -> AllowanceBalanceResponse:
        """Ensure the user's allowance and return it with the credit view."""
        result = await self.ensure_allowance(user_id)
        settings = await get_token_settings(self.db)
        plan_type = await resolve_plan_type(self.db, user_id)

        balance = build_balance(result.allowance.model_dump(), settings.tokens_per_credit)

        return AllowanceBalanceResponse(
            **balance.model_dump(),
            created=result.created,
            plan_type=plan_type,
            plan_base_tokens=settings.credits_for_plan(plan_type) * settings.tokens_per_credit
        )

    # ==================== BATCH ====================

    async def batch_ensure_allowance(self) -> BatchResponse:
        """
        Ensure an allowance for every profile.

        Users are processed sequentially and independently: a failure is
        recorded against that user and the loop continues. Only failing to
        enumerate profiles aborts the batch.
        """
        user_ids = await list_profile_ids(self.db)
        logger.info(f"Batch initialization requested for {len(user_ids)} users")

        results = []
        for user_id in user_ids:
            try:
                result = await self.ensure_allowance(user_id)
                results.append(BatchItemResult(
                    user_id=user_id,
                    status="created" if result.created else "exists",
                    balance=result.allowance
                ))
            except Exception as e:
                logger.error(f"Batch allowance failed for user {user_id}: {e}")
                results.append(BatchItemResult(
                    user_id=user_id,
                    status="error",
                    error=str(e)
                ))

        summary = BatchSummary(
            created=sum(1 for r in results if r.status == "created"),
            skipped=sum(1 for r in results if r.status == "exists"),
            errors=sum(1 for r in results if r.status == "error")
        )

        logger.info(
            f"Batch initialization complete: created={summary.created} "
            f"skipped={summary.skipped} errors={summary.errors}"
        )

        return BatchResponse(summary=summary, results=results)
