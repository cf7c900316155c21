from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from typing import Optional
import os

# Populate os.environ first: the field defaults below read it directly
load_dotenv()


class Settings(BaseSettings):
    # Environment configuration
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Database configuration (SQLAlchemy async URL, e.g. postgresql+asyncpg://...)
    database_url: Optional[str] = os.getenv("DATABASE_URL", "")
    database_echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Frontend URL (for CORS and checkout redirects)
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # JWT configuration (tokens are issued by Supabase auth)
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-this")
    jwt_algorithm: str = "HS256"
    jwt_audience: str = os.getenv("JWT_AUDIENCE", "authenticated")

    # Stripe configuration
    stripe_secret: Optional[str] = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_api_version: Optional[str] = os.getenv("STRIPE_API_VERSION", "")
    # Bound on a single Stripe API call made while handling a request
    stripe_timeout_seconds: float = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "5"))
    # Stripe expects a webhook response well within its delivery timeout
    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

    # Plan catalog (JSON file; price ids come from the env vars it names)
    plan_catalog_path: str = os.getenv(
        "PLAN_CATALOG_PATH",
        os.path.join(os.path.dirname(__file__), "plan_catalog.json"),
    )

    class Config:
        env_file = ".env"


settings = Settings()
