import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using default {default}")
        return default


class Settings:
    PROJECT_NAME: str = "CrediLife Loan Back Office"
    COMPANY_NAME: str = os.getenv("COMPANY_NAME", "CrediLife")
    CURRENCY_SYMBOL: str = os.getenv("CURRENCY_SYMBOL", "$")
    CLIENT_URL: str = os.getenv("CLIENT_URL", "http://localhost:3000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    SUPABASE_URL: str = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str = os.getenv("SUPABASE_SERVICE_ROLE")
    SUPABASE_ANON_PUBLIC: str = os.getenv("SUPABASE_ANON_PUBLIC")

    # Persistent notification log (optional)
    NOTIFICATION_LOG_BACKEND: str = os.getenv("NOTIFICATION_LOG_BACKEND", "memory")
    MONGODB_URI: str = os.getenv("MONGODB_URI")
    MONGODB_DB_NAME: str = os.getenv("MONGODB_DB_NAME")

    # Reminder de-duplication markers
    REDIS_URL: str = os.getenv("REDIS_URL")
    REMINDER_DEDUPE: bool = _env_bool("REMINDER_DEDUPE", True)

    SMTP_HOST: str = os.getenv("SMTP_HOST")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME: str = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD")
    SMTP_USE_TLS: bool = _env_bool("SMTP_USE_TLS", True)
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "notifications@credilife.com")
    EMAIL_FROM_NAME: str = os.getenv("EMAIL_FROM_NAME", "CrediLife")

    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_WHATSAPP_FROM: str = os.getenv("TWILIO_WHATSAPP_FROM")

    PHILSMS_API_TOKEN: str = os.getenv("PHILSMS_API_TOKEN")
    PHILSMS_SENDER_ID: str = os.getenv("PHILSMS_SENDER_ID")

    SCHEDULER_AUTOSTART: bool = _env_bool("SCHEDULER_AUTOSTART", False)
    SCHEDULER_MODE: str = os.getenv("SCHEDULER_MODE", "daily")
    SCHEDULER_INTERVAL_SECONDS: float = _env_float("SCHEDULER_INTERVAL_SECONDS", 60.0)
    SCHEDULER_DAILY_TIME: str = os.getenv("SCHEDULER_DAILY_TIME", "09:00")
    SCHEDULER_TIMEZONE: str = os.getenv("SCHEDULER_TIMEZONE", "UTC")
    REMINDER_DISPATCH_DELAY_SECONDS: float = _env_float("REMINDER_DISPATCH_DELAY_SECONDS", 0.5)


settings = Settings()


def mask_secret(val: str) -> str:
    if not val:
        return "<missing>"
    if len(val) <= 8:
        return "*" * len(val)
    return f"{val[:4]}...{val[-4:]}"


def mask_url(url: str) -> str:
    # Keep scheme and host, but strip credentials and path for safety
    try:
        from urllib.parse import urlparse
        p = urlparse(url)
        netloc = p.hostname or ""
        if p.port:
            netloc = f"{netloc}:{p.port}"
        return f"{p.scheme}://{netloc}"
    except Exception:
        return mask_secret(url)


def describe_settings() -> dict:
    """Redacted snapshot of the integration settings, safe for logs."""
    return {
        "SUPABASE_URL": mask_url(settings.SUPABASE_URL) if settings.SUPABASE_URL else None,
        "SUPABASE_SERVICE_ROLE": mask_secret(settings.SUPABASE_SERVICE_ROLE),
        "NOTIFICATION_LOG_BACKEND": settings.NOTIFICATION_LOG_BACKEND,
        "REDIS_URL": mask_url(settings.REDIS_URL) if settings.REDIS_URL else None,
        "SMTP_HOST": settings.SMTP_HOST,
        "TWILIO_ACCOUNT_SID": mask_secret(settings.TWILIO_ACCOUNT_SID),
        "PHILSMS_API_TOKEN": mask_secret(settings.PHILSMS_API_TOKEN),
        "SCHEDULER_MODE": settings.SCHEDULER_MODE,
        "SCHEDULER_TIMEZONE": settings.SCHEDULER_TIMEZONE,
    }
