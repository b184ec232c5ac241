"""
Token Allowance Configuration and Constants

Collection names, settings keys, defaults and error messages.
Business values (credits per plan, tokens per credit) are admin-tunable
and live in the ai_credit_settings collection; the numbers below are only
the fallbacks used when a setting is missing or unreadable.
"""

# ==================== COLLECTIONS ====================
PERIODS_COLLECTION = "ai_allowance_periods"
SETTINGS_COLLECTION = "ai_credit_settings"
USAGE_EVENTS_COLLECTION = "llm_usage_events"
PROFILES_COLLECTION = "profiles"
META_COLLECTION = "token_allowance_meta"

# ==================== CREDIT SETTINGS ====================
SETTING_KEYS = [
    "tokens_per_credit",
    "credits_free_per_month",
    "credits_premium_per_month",
]

DEFAULT_SETTINGS = {
    "tokens_per_credit": 200,
    "credits_free_per_month": 0,
    "credits_premium_per_month": 1500,
}

SETTING_MIN_VALUES = {
    "tokens_per_credit": 1,
    "credits_free_per_month": 0,
    "credits_premium_per_month": 0,
}

SETTING_LABELS = {
    "tokens_per_credit": "Tokens per AI Credit",
    "credits_free_per_month": "Free Plan - AI Credits per Month",
    "credits_premium_per_month": "Premium Plan - AI Credits per Month",
}

# ==================== PLANS & SOURCES ====================
PLAN_FREE = "free"
PLAN_PREMIUM = "premium"

SOURCE_FREE_TIER = "free_tier"
SOURCE_SUBSCRIPTION = "subscription"

ADMIN_ROLE = "admin"

# Written into metadata.created_by for every period the resolver creates
CREATED_BY = "ensure-token-allowance"

# ==================== ADMIN AUDIT ====================
ADMIN_ADJUSTMENT_FEATURE = "admin_balance_adjustment"
ADMIN_ADJUSTMENT_ACTION = "balance_adjustment"
ADMIN_REMAINING_ACTION = "remaining_tokens_adjustment"

AUDIT_FAILED_WARNING = "Balance updated but audit log failed"

# ==================== ERROR MESSAGES ====================
ERROR_CODES = {
    "AUTHENTICATION_FAILED": "Missing or invalid bearer token.",
    "FORBIDDEN": "You are not allowed to perform this action.",
    "USER_NOT_FOUND": "User not found.",
    "ALLOWANCE_NOT_FOUND": "Allowance period not found.",
    "INVALID_PERIOD": "period_end must be later than period_start.",
    "INVALID_SETTING": "Invalid credit setting.",
    "LEDGER_ERROR": "Allowance ledger is unavailable.",
    "LEDGER_WRITE_FAILED": "Failed to write allowance period.",
    "PLAN_REGISTRY_UNAVAILABLE": "User profiles are unavailable.",
    "SETTINGS_UNAVAILABLE": "Credit settings are unavailable.",
    "VALIDATION_ERROR": "Invalid request.",
}
