"""
Redis 客户端：连接池 + Key 统一管理
"""

import redis.asyncio as aioredis

from app.config import get_settings


class RedisKeys:
    """
    Redis Key 统一管理，避免散弹式硬编码
    命名规范：{业务域}:{资源类型}:{标识}
    """

    # ── 储备状态 ──
    @staticmethod
    def reserve_state() -> str:
        """共享储备快照（JSON，永不过期）"""
        return "reserve:state"

    @staticmethod
    def reserve_lock() -> str:
        """储备快照写锁（SET NX PX 租约）"""
        return "reserve:state:lock"

    # ── 外部 API 月度配额 ──
    @staticmethod
    def category_usage(month: str, category: str) -> str:
        """按月按类别的调用计数器 (TTL 40d)"""
        return f"budget:{month}:{category}"

    # ── 观测过滤 ──
    @staticmethod
    def previous_observations() -> str:
        """上一轮观测快照"""
        return "obs:previous"

    # ── 赞助证明发帖节奏 ──
    @staticmethod
    def proof_counter() -> str:
        """累计赞助次数（每 N 次发一条证明）"""
        return "sponsor:proof:counter"


settings = get_settings()

redis_client: aioredis.Redis | None = None
if settings.REDIS_URL:
    redis_pool = aioredis.ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_timeout=settings.STORE_TIMEOUT,
        socket_connect_timeout=settings.STORE_TIMEOUT,
    )
    redis_client = aioredis.Redis(connection_pool=redis_pool)
