"""
Token Allowance Module
Monthly AI token allowances for the prompt library

This module provides:
- Calendar-month allowance periods per user
- Plan-based grants (credits x tokens per credit)
- Rollover of unused tokens, capped at one month's base grant
- Idempotent, race-safe "ensure" semantics
- Admin override, balance correction with audit trail, batch bootstrap

Collections used:
- ai_allowance_periods: Period ledger (one row per user and window)
- ai_credit_settings: Admin-tunable credit constants
- llm_usage_events: Append-only usage/audit log
- profiles: Plan tier and role (read only)
"""

__version__ = "1.0.0"
