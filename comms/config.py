import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Database Configuration
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASS = os.getenv("DB_PASS", "postgres")
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "guest_comms")

    @property
    def DATABASE_URL(self):
        # Prefer DATABASE_URL env var if set (for SQLite support)
        url = os.getenv("DATABASE_URL")
        if url:
            return url

        # Build PostgreSQL URL
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Twilio (SMS). Transport is disabled when credentials are missing.
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")
    TWILIO_STATUS_CALLBACK_URL = os.getenv("TWILIO_STATUS_CALLBACK_URL")
    TWILIO_VALIDATE_SIGNATURE = _env_bool("TWILIO_VALIDATE_SIGNATURE", False)

    # MailChannels (email)
    MAILCHANNELS_API_KEY = os.getenv("MAILCHANNELS_API_KEY")
    MAILCHANNELS_FROM_EMAIL = os.getenv("MAILCHANNELS_FROM_EMAIL")
    MAILCHANNELS_FROM_NAME = os.getenv("MAILCHANNELS_FROM_NAME", "Guest Support")

    # Telegram escalation bot (OPTIONAL)
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")  # Fallback chat when no integration is configured
    # Telegram users allowed to press Send / Ignore. Empty = anyone in the operator chats.
    OPERATOR_IDS = [int(x.strip()) for x in os.getenv("OPERATOR_IDS", "").split(",") if x.strip() and x.strip().isdigit()]

    # Suggestion service (external language model endpoint)
    SUGGESTION_URL = os.getenv("SUGGESTION_URL")
    SUGGESTION_API_KEY = os.getenv("SUGGESTION_API_KEY")
    SUGGESTION_TIMEOUT_SECONDS = float(os.getenv("SUGGESTION_TIMEOUT_SECONDS", "20"))

    ADMIN_URL = os.getenv("ADMIN_URL", "")

    # Web server
    WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
    WEB_PORT = int(os.getenv("WEB_PORT", "8080"))

    # Scheduler
    SCHEDULER_TICK_SECONDS = int(os.getenv("SCHEDULER_TICK_SECONDS", "60"))
    REMINDER_CATCHUP_MINUTES = int(os.getenv("REMINDER_CATCHUP_MINUTES", "60"))
    REMINDER_MAX_ATTEMPTS = int(os.getenv("REMINDER_MAX_ATTEMPTS", "3"))
    REMINDER_RETRY_MINUTES = int(os.getenv("REMINDER_RETRY_MINUTES", "5"))

    # Outbound delivery
    SEND_MAX_ATTEMPTS = int(os.getenv("SEND_MAX_ATTEMPTS", "3"))
    SEND_BACKOFF_SECONDS = float(os.getenv("SEND_BACKOFF_SECONDS", "1.0"))
    SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "15"))

    # Ledger
    SUSPEND_ON_ZERO_BALANCE = _env_bool("SUSPEND_ON_ZERO_BALANCE", True)
    LOW_BALANCE_THRESHOLD = int(os.getenv("LOW_BALANCE_THRESHOLD", "50"))

config = Config()

# Log configuration on startup
logging.info(f"Database: {config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'SQLite'}")
logging.info(f"Twilio SMS: {'enabled' if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN else 'disabled'}")
logging.info(f"MailChannels email: {'enabled' if config.MAILCHANNELS_API_KEY else 'disabled'}")
logging.info(f"Telegram escalations: {'enabled' if config.TELEGRAM_BOT_TOKEN else 'disabled'}")
