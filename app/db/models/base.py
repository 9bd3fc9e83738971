"""
SQLAlchemy 声明基类：所有模型继承此 Base
配置了 DB_SCHEMA 时所有表放在该 schema 下做数据隔离（sqlite 测试时留空）
"""

from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """声明基类"""

    __abstract__ = True

    __table_args__ = {"schema": settings.DB_SCHEMA or None}
