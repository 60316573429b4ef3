"""
Application configuration settings for the mapping engine.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings:
    """Application settings configuration."""

    # Database Configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///mapping_engine.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "10"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "20"))
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "False").lower() == "true"

    # Application Configuration
    APP_NAME = "Mapping & Migration Engine"
    APP_VERSION = "0.4.0"
    DEBUG = os.getenv("DEBUG", "False").lower() == "true"

    # Collaborator services
    ANCHOR_SERVICE_URL = os.getenv("ANCHOR_SERVICE_URL", "http://localhost:8081")
    UNIFIED_MODEL_SERVICE_URL = os.getenv("UNIFIED_MODEL_SERVICE_URL", "http://localhost:8082")
    TRANSFORMATION_SERVICE_URL = os.getenv("TRANSFORMATION_SERVICE_URL", "http://localhost:8083")
    MESH_SERVICE_URL = os.getenv("MESH_SERVICE_URL", "")  # empty = single node
    SERVICE_TIMEOUT_SECONDS = float(os.getenv("SERVICE_TIMEOUT_SECONDS", "30"))
    BROADCAST_TIMEOUT_SECONDS = float(os.getenv("BROADCAST_TIMEOUT_SECONDS", "10"))

    # Data copy defaults
    COPY_DEFAULT_BATCH_SIZE = int(os.getenv("COPY_DEFAULT_BATCH_SIZE", "1000"))
    COPY_DEFAULT_PARALLEL_WORKERS = int(os.getenv("COPY_DEFAULT_PARALLEL_WORKERS", "4"))

    # Schema deployment
    DISCOVERY_WAIT_TIMEOUT_SECONDS = float(os.getenv("DISCOVERY_WAIT_TIMEOUT_SECONDS", "60"))
    DISCOVERY_POLL_INTERVAL_SECONDS = float(os.getenv("DISCOVERY_POLL_INTERVAL_SECONDS", "2"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_JSON = os.getenv("LOG_JSON", "False").lower() == "true"

    # HTTP
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    @classmethod
    def get_database_url(cls) -> str:
        """Get the database URL with proper formatting."""
        return cls.DATABASE_URL

    @classmethod
    def is_sqlite(cls) -> bool:
        """Check if using SQLite database."""
        return "sqlite" in cls.DATABASE_URL.lower()

    @classmethod
    def cors_origins(cls) -> list:
        return [origin.strip() for origin in cls.CORS_ORIGINS.split(",") if origin.strip()]
