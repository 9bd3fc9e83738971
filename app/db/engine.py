"""
数据库引擎：AsyncEngine 创建 + AsyncSession 工厂
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings

settings = get_settings()


def _engine_options(url: str) -> dict:
    """连接池与 search_path 只对 PostgreSQL 生效（本地/测试可用 sqlite+aiosqlite）"""
    options: dict = {"echo": settings.DB_ECHO}
    if url.startswith("postgresql"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
        if settings.DB_SCHEMA:
            options["connect_args"] = {"server_settings": {"search_path": settings.DB_SCHEMA}}
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    """FastAPI 依赖注入：获取数据库会话"""
    async with async_session() as session:
        yield session
