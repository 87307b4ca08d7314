from tortoise import Tortoise
from prescription_cqrs.core.config import DB_URL, DB_MIN_CONNECTIONS, DB_MAX_CONNECTIONS
import logging
from logging import INFO

# Set logging level for Tortoise ORM
logging.getLogger('tortoise').setLevel(INFO)
log = logging.getLogger("db")

# Define all models modules for the ORM
MODELS_MODULES = [
    "prescription_cqrs.models.reference",
    "prescription_cqrs.models.prescription",
    "prescription_cqrs.models.outbox",
    "prescription_cqrs.models.views",
]


def pooled_db_url(db_url: str = DB_URL) -> str:
    """Adds the pool bounds to PostgreSQL URLs; other backends are returned untouched."""
    if not db_url.startswith(("postgres://", "asyncpg://")) or "maxsize=" in db_url:
        return db_url
    separator = "&" if "?" in db_url else "?"
    return f"{db_url}{separator}minsize={DB_MIN_CONNECTIONS}&maxsize={DB_MAX_CONNECTIONS}"


async def init_db(db_url: str = DB_URL, generate_schemas: bool = True):
    """Initializes the Tortoise ORM connection and generates schemas."""
    try:
        await Tortoise.init(
            db_url=pooled_db_url(db_url),
            modules={"models": MODELS_MODULES},
        )
        # Generate the database schema (create tables)
        if generate_schemas:
            await Tortoise.generate_schemas(safe=True)
        log.info("Database connection established and schemas generated.")
    except Exception as e:
        log.critical(f"FATAL ERROR: Could not connect to database. Error: {e}")
        # Re-raise to prevent the process from starting without a database
        raise


async def close_db():
    """Closes all database connections."""
    await Tortoise.close_connections()
    log.info("Database connections closed.")
