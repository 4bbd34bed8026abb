import os
from dataclasses import dataclass

from dotenv import load_dotenv


ENV_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env")
load_dotenv(dotenv_path=ENV_PATH)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./school_admin.db")
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_exp_minutes: int = int(os.getenv("JWT_EXP_MINUTES", "60"))
    admin_username: str = os.getenv("ADMIN_USERNAME", "admin")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "ChangeMe@123")
    frontend_url: str = os.getenv("FRONTEND_URL", "")
    debug_solver: bool = _env_flag("DEBUG_SOLVER")
    reversal_grace_days: int = int(os.getenv("REVERSAL_GRACE_DAYS", "30"))
    solver_time_limit: float = float(os.getenv("SOLVER_TIME_LIMIT", "10"))
    base_currency: str = os.getenv("BASE_CURRENCY", "USD")


settings = Settings()
