"""Application-wide constants and configuration defaults.

This module centralizes magic values, default configurations, and constants
that are used across the codebase to improve maintainability.
"""

import os

# =============================================================================
# Ledger Defaults
# =============================================================================
DEFAULT_MONTHLY_ALLOWANCE = int(os.getenv("DEFAULT_MONTHLY_ALLOWANCE", "100000"))
DEFAULT_PURCHASED_BALANCE = 0
DEFAULT_NOTIFY_CHANNEL = "credit_balance_changes"
BILLING_CYCLE_ACTOR = "billing-cycle"
PURCHASE_ACTOR = "billing-webhook"

# =============================================================================
# Usage Guard
# =============================================================================
DEFAULT_SECURITY_BUFFER = 2000
DEFAULT_MAX_SINGLE_REQUEST_COST = 8000
DEFAULT_GUARD_TIMEOUT_SECONDS = 5.0
DEFAULT_FEATURE_COST_CEILING = 2000

# Ceiling cost per metered feature (upper bound on billable output units)
FEATURE_COST_CEILINGS = {
    "generate_copy_short": 2000,
    "generate_copy_long": 8000,
    "optimize_copy": 3000,
    "brainstorm_ideas": 1500,
    "generate_headlines": 1200,
    "rewrite_copy": 2500,
    "analyze_competitor": 4000,
    "chat_message": 1000,
    "custom_agent": 2000,
}

# =============================================================================
# Rate Limiting
# =============================================================================
DEFAULT_RATE_LIMIT_REQUESTS = 10
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60

# =============================================================================
# Balance Cache & Sync
# =============================================================================
DEFAULT_BALANCE_CACHE_TTL_SECONDS = 30.0
DEFAULT_REFRESH_DEBOUNCE_SECONDS = 1.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 3
DEFAULT_RECONNECT_BASE_DELAY_SECONDS = 1.0
DEFAULT_RECONNECT_MAX_DELAY_SECONDS = 30.0

# =============================================================================
# Usage Threshold Alerts (percent of credits consumed)
# =============================================================================
USAGE_ALERT_THRESHOLDS = (50, 90)

# =============================================================================
# Database Pool Configuration
# =============================================================================
DEFAULT_DB_POOL_SIZE = 5
DEFAULT_DB_MAX_OVERFLOW = 10
DEFAULT_DB_POOL_TIMEOUT = 30
DEFAULT_DB_POOL_RECYCLE = 1800  # 30 minutes in seconds

# =============================================================================
# API Configuration
# =============================================================================
DOCS_URL = "/docs"
REDOC_URL = "/redoc"
OPENAPI_URL = "/openapi.json"
DEFAULT_API_PREFIX = "/api/v1"

# =============================================================================
# Event Types (for audit logging and change notifications)
# =============================================================================
EVENT_BALANCE_DEDUCTED = "balance_deducted"
EVENT_BALANCE_CREDITED = "balance_credited"
EVENT_MONTHLY_RESET = "monthly_reset"
EVENT_RECONCILIATION_SHORTFALL = "reconciliation_shortfall"
EVENT_USAGE_THRESHOLD = "usage_threshold"
