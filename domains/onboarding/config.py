"""Onboarding reminder configuration - thresholds, cadence and failure handling."""

import os

# Elapsed-time thresholds after account creation, ascending.
# Format: comma separated "<int><unit>" tokens, unit one of m/h/d/w.
# The token doubles as the threshold id stored in reminder history.
THRESHOLDS_SPEC = os.environ.get("ONBOARDING_REMINDER_THRESHOLDS", "24h,3d,7d")

# Timer
POLL_INTERVAL_SECONDS = int(os.environ.get("ONBOARDING_POLL_INTERVAL_SECONDS", 120))
CYCLE_BUDGET_SECONDS = float(os.environ.get("ONBOARDING_CYCLE_BUDGET_SECONDS", 90))
STOP_TIMEOUT_SECONDS = float(os.environ.get("ONBOARDING_STOP_TIMEOUT_SECONDS", 30))
JOB_ID = "onboarding_reminders"

# Records evaluated/dispatched concurrently within one cycle
MAX_CONCURRENT_RECORDS = int(os.environ.get("ONBOARDING_MAX_CONCURRENT_RECORDS", 10))

# What to do when several thresholds are overdue at once (e.g. after downtime):
#   "all"    - send every overdue reminder, oldest threshold first
#   "latest" - send only the most advanced one and mark the lower ones as sent
BACKLOG_POLICY = os.environ.get("ONBOARDING_BACKLOG_POLICY", "all").lower()
BACKLOG_POLICIES = ("all", "latest")

# Record store backend: "sqlite" (local file) or "supabase" (PostgREST)
STORE_BACKEND = os.environ.get("ONBOARDING_STORE_BACKEND", "sqlite").lower()
RECORD_STORE_DB = os.environ.get("ONBOARDING_RECORD_STORE_DB", "data/onboarding_reminders.db")
SUPABASE_CLIENTS_TABLE = "clients"
SUPABASE_REMINDERS_TABLE = "onboarding_reminders"
SUPABASE_TIMEOUT_SECONDS = 10

# Notification sender
SMTP_TIMEOUT_SECONDS = 20
REMINDER_SUBJECT = "Welcome! Continue Your Onboarding"
CREDIT_REPORT_PATH = "/credit-report"
DOCUMENTS_PATH = "/funding-agreement"

# Sender circuit breaker
CIRCUIT_FAILURE_THRESHOLD = int(os.environ.get("ONBOARDING_CIRCUIT_FAILURE_THRESHOLD", 5))
CIRCUIT_RECOVERY_TIMEOUT = int(os.environ.get("ONBOARDING_CIRCUIT_RECOVERY_TIMEOUT", 300))
