# enrollbot/settings.py

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

# --- Conversation ---
ADMIN_SECRET        = os.getenv("ADMIN_SECRET", "")
DEFAULT_LOCALE      = os.getenv("DEFAULT_LOCALE", "es")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 3600)))

# --- Academic calendar ---
TERM_OVERRIDE       = os.getenv("TERM_OVERRIDE", "")
TERM_TIMEZONE       = os.getenv("TERM_TIMEZONE", "America/Bogota")

# --- Database ---
DATABASE_URL        = os.getenv("DATABASE_URL", "")
PROJECT_ID          = os.getenv("PROJECT_ID", "")
DB_HOST             = os.getenv("DB_HOST", "localhost")
DB_PORT             = int(os.getenv("DB_PORT", "5432"))
DB_NAME             = os.getenv("DB_NAME", "enrollbot")
DB_USER             = os.getenv("DB_USER", "postgres")
DB_PASSWORD         = os.getenv("DB_PASSWORD", "")
DB_SECRET_ID        = os.getenv("DB_SECRET_ID", "")
DB_CONNECT_TIMEOUT  = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))

# --- Queue worker ---
QUEUE_RECEIVER_ID    = os.getenv("QUEUE_RECEIVER_ID", "")
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))
POLL_INTERVAL        = float(os.getenv("POLL_INTERVAL", "1.0"))
