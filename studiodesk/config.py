import os


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

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Gemini (embeddings + answers) ---
    GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
    GEMINI_BASE_URL = os.environ.get(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
    )
    GEMINI_EMBEDDING_MODEL = os.environ.get("GEMINI_EMBEDDING_MODEL", "text-embedding-004")
    GEMINI_ANSWER_MODEL = os.environ.get("GEMINI_ANSWER_MODEL", "gemini-2.0-flash")
    GEMINI_TIMEOUT_SECONDS = int(os.environ.get("GEMINI_TIMEOUT_SECONDS", 30))

    # --- Document Q&A ---
    RAG_DAILY_LIMIT = int(os.environ.get("RAG_DAILY_LIMIT", 7))
    RAG_TOP_K = int(os.environ.get("RAG_TOP_K", 5))
    RAG_MAX_QUESTION_LENGTH = 2000
    EMBED_CONCURRENCY = int(os.environ.get("EMBED_CONCURRENCY", 5))
    EMBED_MAX_CHARS = 8000  # model input cap, characters
    RAG_MAX_FILES_PER_USER = int(os.environ.get("RAG_MAX_FILES_PER_USER", 3))
    RAG_MAX_FILE_SIZE_BYTES = 5 * 1024 * 1024
    RAG_CHUNK_SIZE = 800
    RAG_CHUNK_OVERLAP = 150

    # --- Notifications ---
    NOTIFICATION_DEDUP_WINDOW_SECONDS = 300

    # --- API tokens ---
    AUTH_TOKEN_MAX_AGE = int(os.environ.get("AUTH_TOKEN_MAX_AGE", 60 * 60 * 24 * 7))

    # --- Uploads ---
    # Slightly above the RAG file cap so oversize files get a JSON 413
    # from the ingestion check rather than werkzeug's bare one.
    MAX_CONTENT_LENGTH = 6 * 1024 * 1024

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "GEMINI_API_KEY",
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
    """Testing — in-memory SQLite, rate limiting off."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    GEMINI_API_KEY = "gemini_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

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
