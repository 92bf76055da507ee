from __future__ import annotations

from pathlib import Path

import motor.motor_asyncio
from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo.errors import ConfigurationError
from pymongo.uri_parser import parse_uri


BASE_DIR = Path(__file__).resolve().parents[1]
ENV_FILES = [BASE_DIR / ".env.local", BASE_DIR / ".env"]


class Settings(BaseSettings):
    mongodb_url: str = "mongodb://localhost:27017/organ_matching"
    mongo_server_timeout_ms: int = 2000
    mongo_connect_timeout_ms: int = 2000
    mongo_socket_timeout_ms: int = 2000
    jwt_secret: str = "supersecret"
    jwt_algorithm: str = "HS256"
    jwt_expires_min: int = 60
    auto_authorize_demo: bool = True
    demo_user_id: str = "demo-coordinator"
    demo_user_role: str = "coordinator"
    log_level: str = "INFO"
    # allocation protocol
    confirmation_window_hours: int = 24
    lookup_timeout_s: float = 2.0
    mutation_timeout_s: float = 5.0
    # scoring defaults; seeded once into ScoringWeights
    minimum_score: float = 40
    weight_blood_compatibility: float = 30
    weight_urgency: float = 25
    weight_waiting_time: float = 20
    weight_geographic: float = 15
    weight_medical: float = 10

    model_config = SettingsConfigDict(
        env_file=[str(path) for path in ENV_FILES],
        case_sensitive=False,
        env_prefix="",
    )


def get_settings() -> Settings:
    return Settings()


settings = get_settings()
FALLBACK_MONGO_URL = "mongodb://localhost:27017/organ_matching"


def _create_client(uri: str) -> motor.motor_asyncio.AsyncIOMotorClient:
    connect_kwargs = {
        "serverSelectionTimeoutMS": settings.mongo_server_timeout_ms,
        "connectTimeoutMS": settings.mongo_connect_timeout_ms,
        "socketTimeoutMS": settings.mongo_socket_timeout_ms,
    }
    try:
        return motor.motor_asyncio.AsyncIOMotorClient(uri, **connect_kwargs)
    except ConfigurationError as exc:
        if uri == FALLBACK_MONGO_URL:
            raise
        logger.warning(
            "MongoDB DNS resolution failed for {} ({}). Falling back to local Mongo at {}.",
            uri,
            exc,
            FALLBACK_MONGO_URL,
        )
        return motor.motor_asyncio.AsyncIOMotorClient(FALLBACK_MONGO_URL, **connect_kwargs)


def _resolve_database_name(uri: str | None) -> str:
    if uri:
        try:
            parsed = parse_uri(uri)
            if parsed.get("database"):
                return parsed["database"]
        except (ConfigurationError, ValueError) as exc:
            logger.warning("Unable to parse Mongo URI {} ({}). Using fallback database name.", uri, exc)
    return "organ_matching"


def get_database() -> motor.motor_asyncio.AsyncIOMotorDatabase:
    """Open the configured database. The client connects lazily on first use."""
    client = _create_client(settings.mongodb_url)
    return client.get_database(_resolve_database_name(settings.mongodb_url))
