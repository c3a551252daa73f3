import os
from typing import Tuple


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default) in ("1", "true", "True", "yes")


def _env_tiers(name: str, default: str) -> Tuple[int, ...]:
    raw = os.getenv(name, default)
    try:
        tiers = tuple(int(p) for p in raw.split(",") if p.strip())
    except ValueError:
        tiers = tuple(int(p) for p in default.split(","))
    return tiers or tuple(int(p) for p in default.split(","))


class Settings:
    """Runtime settings read from the environment.

    Values are read once at import; tests construct their own instance or
    override attributes on the module-level ``settings``.
    """

    def __init__(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./melody.db")
        # secret for signing parent tokens; override in production
        self.SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")
        self.COOKIE_SECURE = _env_bool("COOKIE_SECURE")

        # lease timings (minutes)
        self.SESSION_MINUTES = int(os.getenv("SESSION_MINUTES", "10"))
        self.REFRESH_MINUTES = int(os.getenv("REFRESH_MINUTES", "2"))

        # game rules
        self.MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
        self.TASKS_PER_LEVEL = int(os.getenv("TASKS_PER_LEVEL", "5"))
        self.MAX_LEVEL = int(os.getenv("MAX_LEVEL", "20"))
        # reward on success indexed by failed attempts before it
        self.SCORE_TIERS = _env_tiers("SCORE_TIERS", "10,7,5")

        # demo catalog is limited to the first levels
        self.DEMO_MAX_LEVEL = int(os.getenv("DEMO_MAX_LEVEL", "3"))

        # requests per minute per client on the submit endpoint
        self.RATE_LIMIT_SUBMIT = int(os.getenv("RATE_LIMIT_SUBMIT", "30"))


settings = Settings()
