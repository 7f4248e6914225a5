"""
ChatDesk Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "chatdesk.db"
_user_default_db = Path.home() / ".chatdesk" / "chatdesk.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(env_name: str, key: str, default: str) -> str:
    return os.getenv(env_name, str(config_data.get(key, default)))


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


if os.getenv("CHATDESK_DB"):
    DB_PATH = os.getenv("CHATDESK_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = _setting("CHATDESK_HOST", "HOST", "127.0.0.1")
PORT = int(_setting("CHATDESK_PORT", "PORT", "39780"))
SERVICE_VERSION = "0.1.0"

# Phrase that routes a guest message to a human (case-insensitive substring match)
HANDOFF_TRIGGER = _setting("CHATDESK_HANDOFF_TRIGGER", "HANDOFF_TRIGGER", "speak to admin")
# Sliding idle timeout for human-engaged chats (seconds)
INACTIVITY_TIMEOUT_SECONDS = float(_setting("CHATDESK_INACTIVITY_TIMEOUT", "INACTIVITY_TIMEOUT", "300"))
# Delay after a hand-off request before the no-admin-available fallback (seconds)
GRACE_WINDOW_SECONDS = float(_setting("CHATDESK_GRACE_WINDOW", "GRACE_WINDOW", "60"))

# Shared secret for admin REST calls and admin socket logins (empty = admin access disabled)
ADMIN_TOKEN = _setting("CHATDESK_ADMIN_TOKEN", "ADMIN_TOKEN", "")
ADMIN_EMAILS = _split_list(_setting("CHATDESK_ADMIN_EMAILS", "ADMIN_EMAILS", ""))
ADMIN_PHONES = _split_list(_setting("CHATDESK_ADMIN_PHONES", "ADMIN_PHONES", ""))

# Outbound email (SMTP with STARTTLS)
SMTP_HOST = _setting("CHATDESK_SMTP_HOST", "SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(_setting("CHATDESK_SMTP_PORT", "SMTP_PORT", "587"))
SMTP_USER = os.getenv("CHATDESK_SMTP_USER", "")
SMTP_PASSWORD = os.getenv("CHATDESK_SMTP_PASSWORD", "")
EMAIL_FROM_NAME = _setting("CHATDESK_EMAIL_FROM_NAME", "EMAIL_FROM_NAME", "EcoLogic Solution Support")

# Outbound SMS (Twilio REST API)
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER", "")
TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")

# Automated responder
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = _setting("CHATDESK_OPENAI_MODEL", "OPENAI_MODEL", "gpt-4o-mini")
ASSISTANT_TIMEOUT_SECONDS = float(_setting("CHATDESK_ASSISTANT_TIMEOUT", "ASSISTANT_TIMEOUT", "20"))
ASSISTANT_NAME = _setting("CHATDESK_ASSISTANT_NAME", "ASSISTANT_NAME", "EcoBuddy")
