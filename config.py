import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = ENVIRONMENT == "development"

# Database settings
DATABASE_URL = os.getenv("DATABASE_URL")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Application settings
APP_NAME = "Führerschein Chat API"
APP_VERSION = "1.0.0"

# Auth settings (JWTs issued by the hosted identity provider)
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
AUTH_JWT_LEEWAY = int(os.getenv("AUTH_JWT_LEEWAY", "60"))  # seconds of clock-skew tolerance

# Redis settings
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# SSE settings
SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "25"))

# Chat settings
CHAT_ENABLED = os.getenv("CHAT_ENABLED", "true").lower() == "true"
CHAT_MAX_MESSAGE_LENGTH = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "4000"))
MESSAGE_SANITIZE_ENABLED = os.getenv("MESSAGE_SANITIZE_ENABLED", "true").lower() == "true"
SUPPORT_PROFILE_ID = os.getenv("SUPPORT_PROFILE_ID", "").strip() or None
MENTION_RESULT_LIMIT = int(os.getenv("MENTION_RESULT_LIMIT", "5"))
PROFILE_SEARCH_MIN_CHARS = int(os.getenv("PROFILE_SEARCH_MIN_CHARS", "2"))

# "full" re-runs the whole aggregation on every change, "incremental" refreshes one row
CONVERSATION_LIST_REFRESH = os.getenv("CONVERSATION_LIST_REFRESH", "full").lower()

# Typing Settings
TYPING_DEBOUNCE_SECONDS = float(os.getenv("TYPING_DEBOUNCE_SECONDS", "3"))
TYPING_INDICATOR_TIMEOUT_SECONDS = float(os.getenv("TYPING_INDICATOR_TIMEOUT_SECONDS", "6"))

# Presence Settings
PRESENCE_ENABLED = os.getenv("PRESENCE_ENABLED", "true").lower() == "true"
PRESENCE_TTL_SECONDS = int(os.getenv("PRESENCE_TTL_SECONDS", "60"))

# Pusher Settings
PUSHER_ENABLED = os.getenv("PUSHER_ENABLED", "false").lower() == "true"
PUSHER_APP_ID = os.getenv("PUSHER_APP_ID", "")
PUSHER_KEY = os.getenv("PUSHER_KEY", "")
PUSHER_SECRET = os.getenv("PUSHER_SECRET", "")
PUSHER_CLUSTER = os.getenv("PUSHER_CLUSTER", "eu")

# EventSource cannot set headers, so streams may take ?token=
SSE_ALLOW_QUERY_TOKEN = os.getenv("SSE_ALLOW_QUERY_TOKEN", "true").lower() == "true"
