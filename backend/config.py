import os
from dotenv import load_dotenv

load_dotenv()

# Oracle (LLM) settings
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "20"))
ORACLE_MAX_TOKENS = int(os.getenv("ORACLE_MAX_TOKENS", "1200"))
# Most recently shown tasks passed to the oracle as context
MAX_CONTEXT_TASKS = int(os.getenv("MAX_CONTEXT_TASKS", "20"))

# Auth
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Session lifecycle
SESSION_IDLE_SECONDS = int(os.getenv("SESSION_IDLE_SECONDS", "1800"))
SESSION_SWEEP_SECONDS = int(os.getenv("SESSION_SWEEP_SECONDS", "1800"))

# Session sweeper and notification scanner; off in tests
BACKGROUND_TASKS = os.getenv("BACKGROUND_TASKS", "1").lower() not in ("0", "false", "no")

# Notifications
NOTIFICATION_CHECK_SECONDS = int(os.getenv("NOTIFICATION_CHECK_SECONDS", "60"))
TIMEZONE_RETENTION_SECONDS = int(os.getenv("TIMEZONE_RETENTION_SECONDS", "86400"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]


def oracle_configured() -> bool:
    """True when a usable API key is present."""
    return bool(ANTHROPIC_API_KEY) and ANTHROPIC_API_KEY != "your-api-key-here"
