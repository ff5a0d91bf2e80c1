import os


def _env_bool(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Payment gateway ---
    GATEWAY_API_KEY = os.environ.get("GATEWAY_API_KEY")
    GATEWAY_PASSWORD = os.environ.get("GATEWAY_PASSWORD")
    # Sandbox unless explicitly switched off.
    GATEWAY_SANDBOX = _env_bool("GATEWAY_SANDBOX", "true")
    GATEWAY_ENDPOINT = os.environ.get("GATEWAY_ENDPOINT") or (
        "https://api.sandbox.ewaypayments.com"
        if GATEWAY_SANDBOX
        else "https://api.ewaypayments.com"
    )
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", 20))
    GATEWAY_DEFAULT_CURRENCY = os.environ.get("GATEWAY_DEFAULT_CURRENCY", "AUD")

    # --- Webhooks ---
    WEBHOOK_SHARED_SECRET = os.environ.get("WEBHOOK_SHARED_SECRET")
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "120 per minute")

    # --- Admin API ---
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    # --- Retry policies ---
    # Transient gateway errors on a single charge (same transaction, same reference).
    # Total attempts, so 4 = the first try plus 3 retries.
    CHARGE_RETRY_MAX_ATTEMPTS = int(os.environ.get("CHARGE_RETRY_MAX_ATTEMPTS", 4))
    CHARGE_RETRY_BASE_DELAY_SECONDS = float(os.environ.get("CHARGE_RETRY_BASE_DELAY_SECONDS", 300))
    CHARGE_RETRY_MULTIPLIER = float(os.environ.get("CHARGE_RETRY_MULTIPLIER", 2.0))
    CHARGE_RETRY_JITTER = float(os.environ.get("CHARGE_RETRY_JITTER", 0.1))
    CHARGE_RETRY_CAP_SECONDS = float(os.environ.get("CHARGE_RETRY_CAP_SECONDS", 3600))

    # Declined recurring charges. Max attempts comes from the schedule itself.
    SCHEDULE_RETRY_BASE_DELAY_SECONDS = float(os.environ.get("SCHEDULE_RETRY_BASE_DELAY_SECONDS", 86400))
    SCHEDULE_RETRY_MULTIPLIER = float(os.environ.get("SCHEDULE_RETRY_MULTIPLIER", 2.0))
    SCHEDULE_RETRY_JITTER = float(os.environ.get("SCHEDULE_RETRY_JITTER", 0.0))
    SCHEDULE_RETRY_CAP_SECONDS = float(os.environ.get("SCHEDULE_RETRY_CAP_SECONDS", 7 * 86400))
    SCHEDULE_DEFAULT_MAX_FAILED_ATTEMPTS = int(os.environ.get("SCHEDULE_DEFAULT_MAX_FAILED_ATTEMPTS", 3))

    # Webhook handler failures (store unavailable etc.).
    WEBHOOK_RETRY_MAX_ATTEMPTS = int(os.environ.get("WEBHOOK_RETRY_MAX_ATTEMPTS", 5))
    WEBHOOK_RETRY_BASE_DELAY_SECONDS = float(os.environ.get("WEBHOOK_RETRY_BASE_DELAY_SECONDS", 60))
    WEBHOOK_RETRY_MULTIPLIER = float(os.environ.get("WEBHOOK_RETRY_MULTIPLIER", 2.0))
    WEBHOOK_RETRY_JITTER = float(os.environ.get("WEBHOOK_RETRY_JITTER", 0.1))
    WEBHOOK_RETRY_CAP_SECONDS = float(os.environ.get("WEBHOOK_RETRY_CAP_SECONDS", 6 * 3600))

    # --- Scheduler ---
    SCHEDULER_CLAIM_TTL_SECONDS = int(os.environ.get("SCHEDULER_CLAIM_TTL_SECONDS", 900))
    SCHEDULER_BATCH_SIZE = int(os.environ.get("SCHEDULER_BATCH_SIZE", 100))

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "GATEWAY_API_KEY",
            "GATEWAY_PASSWORD",
            "ADMIN_API_TOKEN",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, fake gateway credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    GATEWAY_API_KEY = "test-api-key"
    GATEWAY_PASSWORD = "test-password"
    GATEWAY_SANDBOX = True
    GATEWAY_ENDPOINT = "https://api.sandbox.ewaypayments.com"
    GATEWAY_TIMEOUT_SECONDS = 5
    WEBHOOK_SHARED_SECRET = None
    ADMIN_API_TOKEN = "admin-test-token"
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    # Deterministic delays in tests.
    CHARGE_RETRY_JITTER = 0.0
    WEBHOOK_RETRY_JITTER = 0.0
    SCHEDULE_RETRY_JITTER = 0.0

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
