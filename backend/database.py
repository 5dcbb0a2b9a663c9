"""
Database connection and configuration

Fails fast with clear error messages if required variables are missing.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Database name (e.g., token_wallet)"
}


def validate_required_env_vars():
    """
    Validate critical environment variables before the app starts.
    Raises ValueError listing every missing variable.
    """
    missing = [
        f"  - {var}: {description}"
        for var, description in REQUIRED_ENV_VARS.items()
        if not os.environ.get(var)
    ]

    if missing:
        raise ValueError(
            "Missing required environment variables:\n"
            + "\n".join(missing)
            + "\nSee .env.example for reference."
        )


validate_required_env_vars()

client = AsyncIOMotorClient(
    os.environ['MONGO_URL'],
    maxPoolSize=50,
    connectTimeoutMS=5000,
    serverSelectionTimeoutMS=5000,
    retryWrites=True
)

db = client[os.environ['DB_NAME']]


async def check_db_connection():
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')
        logger.info(f"Database connected successfully: {os.environ['DB_NAME']}")
        return True, None
    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
