import logging
from typing import Any, Optional

import redis.asyncio as redis

from dnarouter.core.config import Config
from dnarouter.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class RedisProvider:
    """
    Redis provider for fleet-wide shared state.
    Every worker invocation talks to the same instance; this is where the
    admission counters live.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", *, client: Any = None):
        self.url = url
        self._client: Optional[redis.Redis] = client

    @classmethod
    def from_config(cls, config: Config) -> "RedisProvider":
        return cls(config.redis.url)

    async def connect(self) -> redis.Redis:
        if not self._client:
            client = redis.from_url(self.url, decode_responses=True)
            try:
                await client.ping()
                logger.info("Connected to Redis at %s", self.url.rsplit("@", 1)[-1])
            except Exception as e:
                logger.error("Failed to connect to Redis: %s", e)
                raise ConfigurationError(f"Redis unreachable: {e}", code="REDIS_UNAVAILABLE") from e
            self._client = client
        return self._client

    async def client(self) -> redis.Redis:
        return await self.connect()

    def register_script(self, source: str) -> "LazyScript":
        """Register a Lua script; the client is resolved on first call."""
        return LazyScript(self, source)

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None


class LazyScript:
    """A Lua script bound to a provider whose connection is opened lazily."""

    def __init__(self, provider: RedisProvider, source: str):
        self._provider = provider
        self._source = source
        self._script: Any = None

    async def __call__(self, keys: list[str], args: list[Any]) -> Any:
        if self._script is None:
            client = await self._provider.connect()
            self._script = client.register_script(self._source)
        return await self._script(keys=keys, args=args)
