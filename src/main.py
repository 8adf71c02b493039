import logging
import time
from typing import Callable

from fastapi import FastAPI
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.api.routes.routes import router
from src.infrastructure import config
from src.infrastructure.db.session import engine
from src.infrastructure.db.models import Base
from src.infrastructure.redis_client import redis_client

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Ticketing Engine")

app.include_router(router)
logger = logging.getLogger(__name__)


def _ping_database() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def _ping_redis() -> None:
    redis_client.client.ping()


def _wait_for(name: str, ping: Callable[[], None], errors: tuple[type[Exception], ...]) -> None:
    # Compose starts the API alongside Postgres and Redis; either may lag.
    max_retries = config.DB_CONNECT_MAX_RETRIES
    retry_delay_seconds = config.DB_CONNECT_RETRY_DELAY

    for attempt in range(1, max_retries + 1):
        try:
            ping()
            logger.info("%s is reachable.", name)
            return
        except errors:
            if attempt == max_retries:
                logger.exception("%s not reachable after %s attempts.", name, max_retries)
                raise
            logger.warning(
                "%s not ready (attempt %s/%s). Retrying in %.1f seconds...",
                name,
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@app.on_event("startup")
def on_startup() -> None:
    _wait_for("Database", _ping_database, (OperationalError,))
    _wait_for("Redis", _ping_redis, (RedisError,))
    Base.metadata.create_all(bind=engine)


@app.on_event("shutdown")
def on_shutdown() -> None:
    redis_client.disconnect()
