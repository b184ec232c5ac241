"""
Unit tests for the credit settings store
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import PyMongoError

from token_allowance.errors import LedgerWriteError, SettingValidationError, SettingsStoreError
from token_allowance.settings_service import get_token_settings, list_settings, update_setting


class TestGetTokenSettings:

    @pytest.mark.asyncio
    async def test_defaults_when_empty(self, fake_db):
        settings = await get_token_settings(fake_db)

        assert settings.tokens_per_credit == 200
        assert settings.credits_free_per_month == 0
        assert settings.credits_premium_per_month == 1500

    @pytest.mark.asyncio
    async def test_stored_values_override_defaults_per_key(self, fake_db, settings):
        settings(credits_free_per_month=25)

        result = await get_token_settings(fake_db)

        assert result.credits_free_per_month == 25
        assert result.tokens_per_credit == 200

    @pytest.mark.asyncio
    async def test_unrelated_keys_are_ignored(self, fake_db, settings):
        settings(some_other_flag=1)

        result = await get_token_settings(fake_db)

        assert result.model_dump() == {
            "tokens_per_credit": 200,
            "credits_free_per_month": 0,
            "credits_premium_per_month": 1500,
        }

    @pytest.mark.asyncio
    async def test_read_failure_falls_back_to_defaults(self, fake_db):
        fake_db.ai_credit_settings.find = MagicMock(side_effect=PyMongoError("down"))

        result = await get_token_settings(fake_db)

        assert result.credits_premium_per_month == 1500

    def test_credits_for_plan(self):
        from token_allowance.models import TokenSettings

        settings = TokenSettings(credits_free_per_month=5, credits_premium_per_month=50)

        assert settings.credits_for_plan("premium") == 50
        assert settings.credits_for_plan("free") == 5
        assert settings.credits_for_plan("anything-else") == 5


class TestListAndUpdate:

    @pytest.mark.asyncio
    async def test_list_marks_defaults(self, fake_db, settings):
        settings(tokens_per_credit=300)

        listed = {s.key: s for s in await list_settings(fake_db)}

        assert listed["tokens_per_credit"].value_int == 300
        assert listed["tokens_per_credit"].is_default is False
        assert listed["credits_premium_per_month"].value_int == 1500
        assert listed["credits_premium_per_month"].is_default is True
        assert listed["tokens_per_credit"].min_value == 1

    @pytest.mark.asyncio
    async def test_update_persists_value(self, fake_db):
        setting = await update_setting(fake_db, "credits_premium_per_month", 2000, updated_by="boss")

        assert setting.value_int == 2000
        assert (await get_token_settings(fake_db)).credits_premium_per_month == 2000

    @pytest.mark.asyncio
    async def test_update_rejects_below_minimum(self, fake_db):
        with pytest.raises(SettingValidationError) as exc_info:
            await update_setting(fake_db, "tokens_per_credit", 0, updated_by="boss")

        assert "at least 1" in str(exc_info.value)
        assert await fake_db.ai_credit_settings.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_key(self, fake_db):
        with pytest.raises(SettingValidationError):
            await update_setting(fake_db, "tokens_per_dollar", 5, updated_by="boss")

    @pytest.mark.asyncio
    async def test_listing_fails_closed(self, fake_db):
        fake_db.ai_credit_settings.find = MagicMock(side_effect=PyMongoError("down"))

        with pytest.raises(SettingsStoreError):
            await list_settings(fake_db)

    @pytest.mark.asyncio
    async def test_write_failure(self, fake_db):
        fake_db.ai_credit_settings.find_one_and_update = AsyncMock(side_effect=PyMongoError("down"))

        with pytest.raises(LedgerWriteError):
            await update_setting(fake_db, "credits_free_per_month", 5, updated_by="boss")
