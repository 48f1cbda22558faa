import os
from typing import List, Optional

from fastapi import Request
from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "bookstore"
    redis_url: str = "redis://localhost:6379/0"
    jwt_secret: str = "dev-secret-change-me"
    jwt_refresh_secret: str = "dev-refresh-secret-change-me"
    jwt_expires_min: int = 60
    jwt_refresh_expires_days: int = 7
    cache_ttl_seconds: int = 60
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_callback_url: str = "http://localhost:8000/auth/google/callback"
    firebase_credentials: Optional[str] = None
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "bookstore"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me"),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", "60")),
            jwt_refresh_expires_days=int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "7")),
            cache_ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", "60")),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            google_callback_url=os.getenv("GOOGLE_CALLBACK_URL", "http://localhost:8000/auth/google/callback"),
            firebase_credentials=os.getenv("FIREBASE_CREDENTIALS"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", "8000")),
        )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
