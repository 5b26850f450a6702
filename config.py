"""
config.py
---------
Central configuration module. Loads all environment variables
from the .env file and exposes them as typed constants.
"""

import os
from dotenv import load_dotenv

load_dotenv()


# ── Telegram ──────────────────────────────────────────────
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_BOT_USERNAME: str = os.getenv("TELEGRAM_BOT_USERNAME", "DompetBot")

# ── Gemini AI ─────────────────────────────────────────────
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

# ── PostgreSQL ────────────────────────────────────────────
DB_HOST: str = os.getenv("DB_HOST", "localhost")
DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
DB_NAME: str = os.getenv("DB_NAME", "dompetbot")
DB_USER: str = os.getenv("DB_USER", "dompetbot_user")
DB_PASS: str = os.getenv("DB_PASS", "")
DB_POOL_MIN: int = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX: int = int(os.getenv("DB_POOL_MAX", "10"))

DATABASE_URL: str = os.getenv(
    "DATABASE_URL",
    f"postgresql://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# ── Chat sessions ─────────────────────────────────────────
MAX_CHAT_HANDLES: int = int(os.getenv("MAX_CHAT_HANDLES", "1"))
SESSION_QUEUE_SIZE: int = int(os.getenv("SESSION_QUEUE_SIZE", "100"))
COMMAND_PREFIX: str = os.getenv("COMMAND_PREFIX", "!")

# ── Locale ────────────────────────────────────────────────
SUPPORTED_LANGUAGES: tuple[str, ...] = ("id", "en")
DEFAULT_LANGUAGE: str = os.getenv("DEFAULT_LANGUAGE", "id")
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "Asia/Jakarta")

# ── NLP ───────────────────────────────────────────────────
NLP_CONFIDENCE_THRESHOLD: float = float(os.getenv("NLP_CONFIDENCE_THRESHOLD", "0.7"))

# ── Budget alerts ─────────────────────────────────────────
OVERALL_ALERT_PERCENT: float = 80.0
DEFAULT_CATEGORY_THRESHOLD: float = 80.0

# ── Rate Limiting ─────────────────────────────────────────
RATE_LIMIT_MESSAGES: int = int(os.getenv("RATE_LIMIT_MESSAGES", "30"))
RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# ── Currency ──────────────────────────────────────────────
# Amounts are stored as integers in minor units: value * 10 ** CURRENCY_EXPONENT.
DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "IDR")
CURRENCY_EXPONENT: int = int(os.getenv("CURRENCY_EXPONENT", "0"))

# ── Logging ───────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
