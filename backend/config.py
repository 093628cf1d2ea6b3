import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


class Config:
    MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    DB_NAME = os.getenv("DB_NAME", "quizguard")
    REDIS_URL = os.getenv("REDIS_URL", "")  # empty -> in-memory cache only
    STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")  # mongo | memory
    MAX_PARTICIPANTS = 1000
    MAX_QUESTIONS = 100
    WS_HEARTBEAT_SEC = 15
    WS_TIMEOUT_SEC = 25
    CACHE_TTL_SEC = 30
    LEADERBOARD_CACHE_TTL = 5
    ALLOWED_ORIGINS = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]

    # Admin authentication
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "quizguard2026")
    JWT_SECRET = os.getenv("JWT_SECRET", "quizguard-secret-key-change-in-production")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRATION_HOURS = 24

    # Scoring
    DEFAULT_POINTS = 100
    DEFAULT_TIME_LIMIT = 30
    DEFAULT_HINT_PENALTY = 10
    ALLOW_NEGATIVE_SCORE = _env_bool("ALLOW_NEGATIVE_SCORE", False)

    # Anti-cheat
    GRACE_PERIOD_SEC = _env_float("GRACE_PERIOD_SEC", 3.0)
    STRIKE_LIMIT = _env_int("STRIKE_LIMIT", 3)
    # device class -> severity -> deduction per warning strike (1st, 2nd, ...)
    PENALTIES = {
        "desktop": {"soft": [50, 100], "serious": [100, 200]},
        "mobile": {"soft": [25, 50], "serious": [50, 100]},
    }
    DISABLED_SIGNALS = [
        s.strip() for s in os.getenv("DISABLED_SIGNALS", "").split(",") if s.strip()
    ]

    # Submission
    SUBMIT_RETRIES = _env_int("SUBMIT_RETRIES", 2)
    SUBMIT_RETRY_DELAY_SEC = _env_float("SUBMIT_RETRY_DELAY_SEC", 0.2)
    CLOCK_TICK_SEC = 1.0


config = Config()
