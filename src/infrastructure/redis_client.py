# src/infrastructure/redis_client.py

import logging
from typing import Optional

import redis
from redis import Redis

from src.infrastructure import config

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Lazily connected Redis client shared by the hold store
    and the notification broadcaster.
    """

    def __init__(self, url: str = config.REDIS_URL):
        self._url = url
        self._client: Optional[Redis] = None

    def connect(self) -> Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=config.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
                socket_keepalive=True,
            )
            logger.info("Redis client created for %s", self._url)
        return self._client

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("Redis client closed.")

    @property
    def client(self) -> Redis:
        return self.connect()


redis_client = RedisClient()
