"""
共享状态存储：储备快照、月度配额计数器、写锁都经过这里

配置了 REDIS_URL 时使用 Redis（多实例一致）；否则退化为进程内存储，
只适合单进程开发环境。

所有 Redis 异常/超时统一包装为 UpstreamUnavailable，由调用方按自身的
降级策略处理（余额类向不健康方向降级，配额类拒绝放行）。
"""

import asyncio
import time
from typing import Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from app.config import get_settings
from app.errors import UpstreamUnavailable

log = structlog.get_logger()
settings = get_settings()

# 仅当值仍等于调用方持有的令牌时才删除，避免误删他人续上的锁
_DELETE_IF_EQUALS = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# 判断与递增在同一脚本内完成；超出上限返回 -1 且不改动计数器
_INCR_WITHIN = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
if current + amount > tonumber(ARGV[2]) then
    return -1
end
local updated = redis.call('INCRBY', KEYS[1], amount)
if tonumber(ARGV[3]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
end
return updated
"""


class StateStore(Protocol):
    """异步 KV 存储契约"""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None: ...

    async def set_nx(self, key: str, value: str, ttl_ms: int | None = None) -> bool: ...

    async def incr(self, key: str, amount: int = 1, ttl_seconds: int | None = None) -> int: ...

    async def incr_within(
        self, key: str, amount: int, limit: int, ttl_seconds: int | None = None
    ) -> int | None: ...

    async def delete_if_equals(self, key: str, value: str) -> bool: ...

    async def ping(self) -> bool: ...


class RedisStateStore:
    """基于 redis.asyncio 的实现"""

    def __init__(self, redis: aioredis.Redis, timeout: float | None = None):
        self.redis = redis
        self.timeout = timeout or settings.STORE_TIMEOUT

    async def _call(self, op: str, key: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except (RedisError, asyncio.TimeoutError, OSError) as e:
            log.error("状态存储访问失败", op=op, key=key, error=str(e))
            raise UpstreamUnavailable(f"状态存储不可用: {op} {key}", cause=e) from e

    async def get(self, key: str) -> str | None:
        return await self._call("get", key, self.redis.get(key))

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        await self._call("set", key, self.redis.set(key, value, px=ttl_ms))

    async def set_nx(self, key: str, value: str, ttl_ms: int | None = None) -> bool:
        result = await self._call("set_nx", key, self.redis.set(key, value, nx=True, px=ttl_ms))
        return bool(result)

    async def incr(self, key: str, amount: int = 1, ttl_seconds: int | None = None) -> int:
        """INCRBY 原子递增；带 TTL 时同一事务内刷新过期时间"""

        async def _incr() -> int:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                if ttl_seconds:
                    pipe.expire(key, ttl_seconds)
                results = await pipe.execute()
            return int(results[0])

        return await self._call("incr", key, _incr())

    async def incr_within(
        self, key: str, amount: int, limit: int, ttl_seconds: int | None = None
    ) -> int | None:
        """递增后不超过 limit 才生效，返回新值；否则返回 None"""
        result = await self._call(
            "incr_within", key, self.redis.eval(_INCR_WITHIN, 1, key, amount, limit, ttl_seconds or 0)
        )
        result = int(result)
        return None if result < 0 else result

    async def delete_if_equals(self, key: str, value: str) -> bool:
        result = await self._call(
            "delete_if_equals", key, self.redis.eval(_DELETE_IF_EQUALS, 1, key, value)
        )
        return bool(result)

    async def ping(self) -> bool:
        return bool(await self._call("ping", "-", self.redis.ping()))


class MemoryStateStore:
    """
    进程内实现（无 Redis 时的开发模式，也用于测试）

    协程之间没有 await 打断读改写，单个方法天然原子。
    """

    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() > expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_ms / 1000 if ttl_ms else None
        self._data[key] = (value, expires_at)

    async def set_nx(self, key: str, value: str, ttl_ms: int | None = None) -> bool:
        if self._live(key) is not None:
            return False
        await self.set(key, value, ttl_ms)
        return True

    async def incr(self, key: str, amount: int = 1, ttl_seconds: int | None = None) -> int:
        current = int(self._live(key) or 0) + amount
        await self.set(key, str(current), ttl_seconds * 1000 if ttl_seconds else None)
        return current

    async def incr_within(
        self, key: str, amount: int, limit: int, ttl_seconds: int | None = None
    ) -> int | None:
        if int(self._live(key) or 0) + amount > limit:
            return None
        return await self.incr(key, amount, ttl_seconds)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self._live(key) == value:
            del self._data[key]
            return True
        return False

    async def ping(self) -> bool:
        return True


_store: StateStore | None = None


def get_state_store() -> StateStore:
    """启动时解析一次：有 Redis 用 Redis，否则进程内存储"""
    global _store
    if _store is None:
        from app.cache.redis_client import redis_client

        if redis_client is not None:
            _store = RedisStateStore(redis_client)
        else:
            log.warning("未配置 REDIS_URL，使用进程内状态存储（仅限单实例开发）")
            _store = MemoryStateStore()
    return _store


def is_shared_store(store: StateStore) -> bool:
    """多实例间是否共享（进程内存储不算）"""
    return isinstance(store, RedisStateStore)
