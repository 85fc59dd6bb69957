"""
Centralized configuration for MEDORA.
All env-based constants live here so the triage core can be wired from one place.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Gemini ---
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "20"))

# --- WhatsApp Cloud API ---
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
WHATSAPP_BUSINESS_PHONE_ID = os.getenv("WHATSAPP_BUSINESS_PHONE_ID", "")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
WHATSAPP_API_BASE = os.getenv("WHATSAPP_API_BASE", "https://graph.facebook.com/v20.0")
ENABLE_MEDIA = _env_bool("ENABLE_MEDIA")

# --- Inbound dedup ---
DEDUP_TTL_SECONDS = int(os.getenv("DEDUP_TTL_SECONDS", "600"))  # 10 minutes
DEDUP_MAX_ENTRIES = int(os.getenv("DEDUP_MAX_ENTRIES", "5000"))

# --- Conversation policy ---
MAX_CHAT_HISTORY = int(os.getenv("MAX_CHAT_HISTORY", "20"))
MAX_ASKED_KEYS = int(os.getenv("MAX_ASKED_KEYS", "4"))
RISK_MIN_FIELDS = int(os.getenv("RISK_MIN_FIELDS", "3"))
BOOKING_FLOW = os.getenv("BOOKING_FLOW", "detailed")  # "detailed" or "slots"
COMPLETED_STAGE_POLICY = os.getenv("COMPLETED_STAGE_POLICY", "closed")  # "closed" or "restart"

# --- Queue ---
QUEUE_IDLE_TIMEOUT_SECONDS = int(os.getenv("QUEUE_IDLE_TIMEOUT_SECONDS", "1800"))
SESSION_IDLE_TIMEOUT_SECONDS = int(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "86400"))

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
