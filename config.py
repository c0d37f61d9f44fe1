"""Global configuration for the onboarding reminder service."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Supabase (client records + reminder history)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# SMTP (reminder emails)
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "Client Onboarding")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "1").lower() not in ("0", "false", "no")

# Public URL of the onboarding site, used to build links in reminders
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")

# Logging
LOG_DIR = Path(os.getenv("REMINDER_LOG_DIR", Path(os.getenv("LOCALAPPDATA", ".")) / "onboarding-reminders" / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_LEVEL = os.getenv("REMINDER_LOG_LEVEL", "INFO").upper()
