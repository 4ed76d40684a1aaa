"""
Business logic constants for the billing engine.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(retry policy, storage backend, runner concurrency), see config.py.
"""

from decimal import Decimal

API_TITLE = "Coworking Billing API"
API_VERSION = "0.1.0"

# --- Money ---
# Tax and per-user averages are rounded half-up to cents
MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")

# --- Tax rate bounds (inclusive) ---
MIN_TAX_RATE = Decimal("0")
MAX_TAX_RATE = Decimal("1")

# --- Billing period label: calendar month of the usage / invoice date ---
BILLING_PERIOD_FORMAT = "{year:04d}-{month:02d}"

# --- Identity headers supplied by the gateway in front of this service ---
TENANT_HEADER = "X-Tenant-ID"
ACTOR_HEADER = "X-Actor-ID"
