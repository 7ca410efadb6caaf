import os
from dotenv import load_dotenv

load_dotenv() # Load .env file from project root if running locally


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_USER = os.getenv("POSTGRES_USER", "user")
DATABASE_PASSWORD = os.getenv("POSTGRES_PASSWORD", "password")
DATABASE_HOST = os.getenv("POSTGRES_HOST", "postgres") # Docker service name
DATABASE_PORT = os.getenv("POSTGRES_PORT", "5432")
DATABASE_NAME = os.getenv("POSTGRES_DB", "logistics_db")

# Async database URL for SQLAlchemy; DATABASE_URL overrides the parts above
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DATABASE_USER}:{DATABASE_PASSWORD}@{DATABASE_HOST}:{DATABASE_PORT}/{DATABASE_NAME}",
)
DATABASE_ECHO = _env_flag("DATABASE_ECHO", "false")

REDIS_HOST = os.getenv("REDIS_HOST", "redis")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))

# Public tracking responses are cached in redis; the database stays the source of truth
TRACKING_CACHE_ENABLED = _env_flag("TRACKING_CACHE_ENABLED", "false")
TRACKING_CACHE_TTL_SECONDS = int(os.getenv("TRACKING_CACHE_TTL_SECONDS", "30"))
TRACKING_BASE_URL = os.getenv("TRACKING_BASE_URL", "https://track.example.com/orders")

# Header carrying the verified principal when the gateway does not set request.state
PRINCIPAL_HEADER = os.getenv("PRINCIPAL_HEADER", "X-Principal-Id")
PRINCIPAL_ROLE_HEADER = os.getenv("PRINCIPAL_ROLE_HEADER", "X-Principal-Role")
# Off by default: the role is then taken only from request.state, which the gateway sets
TRUST_PRINCIPAL_ROLE_HEADER = _env_flag("TRUST_PRINCIPAL_ROLE_HEADER", "false")

RATE_LIMIT_ENABLED = _env_flag("RATE_LIMIT_ENABLED", "true")
RATE_LIMIT_CLEANUP_INTERVAL_SECONDS = int(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", "300")) # 5 minutes

TRANSITION_TIMEOUT_SECONDS = float(os.getenv("TRANSITION_TIMEOUT_SECONDS", "10"))

# S3-compatible object storage for proof photos
STORAGE_ENDPOINT_URL = os.getenv("STORAGE_ENDPOINT_URL", "http://minio:9000")
STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "order-proofs")
STORAGE_REGION = os.getenv("STORAGE_REGION", "us-east-1")
STORAGE_ACCESS_KEY_ID = os.getenv("STORAGE_ACCESS_KEY_ID", "minioadmin")
STORAGE_SECRET_ACCESS_KEY = os.getenv("STORAGE_SECRET_ACCESS_KEY", "minioadmin")
UPLOAD_URL_TTL_SECONDS = int(os.getenv("UPLOAD_URL_TTL_SECONDS", "900")) # 15 minutes

# For Uvicorn binding inside container
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
