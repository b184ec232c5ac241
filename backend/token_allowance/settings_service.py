"""
Credit Settings Service

Reads and updates the admin-configured constants in ai_credit_settings.
Documents look like ``{"key": "tokens_per_credit", "value_int": 200,
"description": "..."}``.

Reads are fail-open: a missing key or an unreadable collection yields the
defaults from config.DEFAULT_SETTINGS. The snapshot is fetched once per
ensure call and never cached across calls.
"""

import logging
from datetime import datetime, timezone
from typing import List

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import (
    SETTINGS_COLLECTION,
    SETTING_KEYS,
    DEFAULT_SETTINGS,
    SETTING_MIN_VALUES,
    SETTING_LABELS,
)
from .errors import SettingValidationError, SettingsStoreError, LedgerWriteError
from .models import TokenSettings, CreditSetting

logger = logging.getLogger(__name__)


async def _read_setting_rows(db) -> List[dict]:
    return await db[SETTINGS_COLLECTION].find(
        {"key": {"$in": SETTING_KEYS}},
        {"_id": 0}
    ).to_list(length=len(SETTING_KEYS))


async def get_token_settings(db) -> TokenSettings:
    """Fetch a settings snapshot, falling back to defaults per key."""
    try:
        rows = await _read_setting_rows(db)
    except PyMongoError as e:
        logger.warning(f"Error fetching credit settings, using defaults: {e}")
        return TokenSettings(**DEFAULT_SETTINGS)

    values = dict(DEFAULT_SETTINGS)
    for row in rows:
        if isinstance(row.get("value_int"), int):
            values[row["key"]] = row["value_int"]

    found = {r.get("key") for r in rows}
    missing = [k for k in SETTING_KEYS if k not in found]
    if missing:
        logger.debug(f"Credit settings missing, using defaults for: {missing}")

    return TokenSettings(**values)


async def list_settings(db) -> List[CreditSetting]:
    """All known settings with labels and minimums (for the admin screen)."""
    try:
        rows = {r["key"]: r for r in await _read_setting_rows(db)}
    except PyMongoError as e:
        logger.error(f"Error listing credit settings: {e}")
        raise SettingsStoreError(f"Failed to fetch credit settings: {e}")

    settings = []
    for key in SETTING_KEYS:
        row = rows.get(key)
        settings.append(CreditSetting(
            key=key,
            label=SETTING_LABELS[key],
            value_int=row["value_int"] if row else DEFAULT_SETTINGS[key],
            min_value=SETTING_MIN_VALUES[key],
            description=row.get("description") if row else None,
            is_default=row is None
        ))
    return settings


async def update_setting(db, key: str, value: int, updated_by: str) -> CreditSetting:
    """
    Update a single setting after validating key and minimum.

    Raises:
        SettingValidationError: unknown key or value below the minimum
        LedgerWriteError: the write failed
    """
    if key not in SETTING_KEYS:
        raise SettingValidationError(
            f"Unknown setting '{key}'. Valid options: {SETTING_KEYS}"
        )

    min_value = SETTING_MIN_VALUES[key]
    if value < min_value:
        raise SettingValidationError(f"Value must be at least {min_value}")

    now = datetime.now(timezone.utc)
    try:
        row = await db[SETTINGS_COLLECTION].find_one_and_update(
            {"key": key},
            {
                "$set": {
                    "value_int": value,
                    "updated_at": now.isoformat(),
                    "updated_by": updated_by
                }
            },
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )
    except PyMongoError as e:
        logger.error(f"Failed to update setting {key}: {e}")
        raise LedgerWriteError(f"Failed to update setting {key}: {e}")

    logger.info(f"{SETTING_LABELS[key]} set to {value} by {updated_by}")

    return CreditSetting(
        key=key,
        label=SETTING_LABELS[key],
        value_int=value,
        min_value=min_value,
        description=(row or {}).get("description")
    )
