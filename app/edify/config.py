import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str
    default_currency: str

    storage_backend: str
    storage_local_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    mail_backend: str
    mail_from: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool

    paystack_secret_key: str
    paystack_base_url: str
    flutterwave_secret_key: str
    flutterwave_secret_hash: str
    flutterwave_base_url: str
    momo_base_url: str
    momo_subscription_key: str
    momo_user_id: str
    momo_api_key: str
    momo_target_environment: str

    newsletter_batch_size: int
    newsletter_batch_delay: float
    rate_limit_enabled: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def normalize_database_url(url: str) -> str:
    """`postgres://` URLs (DigitalOcean, Heroku) need the SQLAlchemy dialect name."""
    if url.startswith("postgres://"):
        return "postgresql+psycopg2://" + url[len("postgres://") :]
    return url


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=normalize_database_url(_getenv("DATABASE_URL", "sqlite:///edify.db")),
        app_url=_getenv("APP_URL", "http://localhost:5000").rstrip("/"),
        default_currency=_getenv("DEFAULT_CURRENCY", "NGN").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_local_root=_getenv("STORAGE_LOCAL_ROOT", "storage"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        mail_backend=_getenv("MAIL_BACKEND", "console"),
        mail_from=_getenv("MAIL_FROM", "EdifyPub <noreply@edifybooks.com>"),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=int(_getenv("SMTP_PORT", "587") or "587"),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getbool("SMTP_USE_TLS", True),
        paystack_secret_key=_getenv("PAYSTACK_SECRET_KEY", ""),
        paystack_base_url=_getenv("PAYSTACK_BASE_URL", "https://api.paystack.co"),
        flutterwave_secret_key=_getenv("FLUTTERWAVE_SECRET_KEY", ""),
        flutterwave_secret_hash=_getenv("FLUTTERWAVE_SECRET_HASH", ""),
        flutterwave_base_url=_getenv("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3"),
        momo_base_url=_getenv("MTN_MOMO_BASE_URL", "https://sandbox.momodeveloper.mtn.com"),
        momo_subscription_key=_getenv("MTN_MOMO_SUBSCRIPTION_KEY", ""),
        momo_user_id=_getenv("MTN_MOMO_USER_ID", ""),
        momo_api_key=_getenv("MTN_MOMO_API_KEY", ""),
        momo_target_environment=_getenv("MTN_MOMO_TARGET_ENVIRONMENT", "sandbox"),
        newsletter_batch_size=int(_getenv("NEWSLETTER_BATCH_SIZE", "50") or "50"),
        newsletter_batch_delay=float(_getenv("NEWSLETTER_BATCH_DELAY", "1.0") or "1.0"),
        rate_limit_enabled=_getbool("RATE_LIMIT_ENABLED", True),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url,
        "DEFAULT_CURRENCY": s.default_currency,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_LOCAL_ROOT": s.storage_local_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "MAIL_BACKEND": s.mail_backend,
        "MAIL_FROM": s.mail_from,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "PAYSTACK_SECRET_KEY": s.paystack_secret_key,
        "PAYSTACK_BASE_URL": s.paystack_base_url,
        "FLUTTERWAVE_SECRET_KEY": s.flutterwave_secret_key,
        "FLUTTERWAVE_SECRET_HASH": s.flutterwave_secret_hash,
        "FLUTTERWAVE_BASE_URL": s.flutterwave_base_url,
        "MTN_MOMO_BASE_URL": s.momo_base_url,
        "MTN_MOMO_SUBSCRIPTION_KEY": s.momo_subscription_key,
        "MTN_MOMO_USER_ID": s.momo_user_id,
        "MTN_MOMO_API_KEY": s.momo_api_key,
        "MTN_MOMO_TARGET_ENVIRONMENT": s.momo_target_environment,
        "NEWSLETTER_BATCH_SIZE": s.newsletter_batch_size,
        "NEWSLETTER_BATCH_DELAY": s.newsletter_batch_delay,
        "RATE_LIMIT_ENABLED": s.rate_limit_enabled,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # book file uploads (100MB)
        "MAX_CONTENT_LENGTH": 100 * 1024 * 1024,
    }
