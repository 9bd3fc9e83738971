"""
全局配置模块：通过 pydantic-settings 读取 .env 环境变量
"""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用全局配置，从 .env 文件加载"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 数据库（委托账本） ──
    DATABASE_URL: str
    DB_SCHEMA: str = "sponsor_agent"

    DB_ECHO: bool = False  # 打印 SQL 日志，调试时可在 .env 设为 true

    # ── 连接池（仅 PostgreSQL 生效） ──
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # ── Redis（共享状态；未配置时退化为进程内存储） ──
    REDIS_URL: str = ""
    REDIS_MAX_CONNECTIONS: int = 10
    STORE_TIMEOUT: float = 5.0  # 单次存储操作超时（秒）

    # ── 鉴权 ──
    AGENT_API_KEY: str = ""  # Bearer Token，未配置时所有受保护接口一律拒绝
    REACTIVE_CALLBACK_SECRET: str = ""  # Reactive Webhook HMAC 密钥

    # ── 储备金 ──
    TARGET_RESERVE_ETH: float = 0.5
    RESERVE_CRITICAL_ETH: float = 0.05
    DEFAULT_CHAIN_ID: int = 8453
    TESTNET_MODE: bool = False
    RESERVE_LOCK_TTL_MS: int = 5000  # 储备状态写锁租约
    RESERVE_LOCK_WAIT: float = 3.0  # 等待写锁的最长时间（秒）

    # ── 余额查询（JSON-RPC） ──
    AGENT_WALLET_ADDRESS: str = ""
    RPC_URLS: dict[int, str] = {}  # {chain_id: rpc_url}
    USDC_ADDRESSES: dict[int, str] = {}  # {chain_id: usdc 合约地址}
    BALANCE_TIMEOUT: float = 10.0

    # ── 外部 API 月度配额（社交发帖） ──
    BUDGET_PROOF: int = 740  # 赞助证明（约每 42 次赞助发 1 条）
    BUDGET_STATS: int = 30  # 每日统计
    BUDGET_HEALTH: int = 180  # 每 4 小时健康播报
    BUDGET_EMERGENCY: int = 50  # 紧急告警（软上限）
    PROOF_POST_EVERY: int = 42

    # ── 通知 ──
    NOTIFICATION_WEBHOOK_URL: str = ""  # 为空时只写日志
    NOTIFICATION_TIMEOUT: float = 10.0

    # ── 执行器（赞助交易由外部服务构造与签名） ──
    EXECUTOR_URL: str = ""
    EXECUTOR_TIMEOUT: float = 30.0

    # ── 成本估算 ──
    LLM_AVG_CALL_COST_USD: float = 0.0002
    SOCIAL_PLAN_COST_USD: float = 199.0

    # ── LLM（OpenAI 协议兼容） ──
    LLM_DEFAULT_MODEL: str = "anthropic/claude-3-5-haiku-latest"  # LiteLLM 格式
    LLM_API_KEY: str = ""
    LLM_API_BASE: str | None = None
    LLM_TIMEOUT: int = 60  # LLM 调用超时（秒）

    # ── Agent 调度 ──
    CYCLE_INTERVAL_SECONDS: int = 60
    CYCLE_TIMEOUT: float = 120.0
    CONFIDENCE_THRESHOLD: float = 0.8
    MAX_TRANSACTION_VALUE_USD: float = 100.0
    GAS_PRICE_MAX_GWEI: float = 2.0

    # ── 应用 ──
    ENV: str = "development"  # development | production
    APP_NAME: str = "sponsor-agent"
    APP_PORT: int = 8000

    @property
    def category_budgets(self) -> dict[str, int]:
        return {
            "proof": self.BUDGET_PROOF,
            "stats": self.BUDGET_STATS,
            "health": self.BUDGET_HEALTH,
            "emergency": self.BUDGET_EMERGENCY,
        }

    @model_validator(mode="after")
    def _check_production_secrets(self) -> "Settings":
        """生产环境强制要求配置 API Key、Webhook 密钥与 Redis"""
        if self.ENV == "production":
            if len(self.AGENT_API_KEY) < 32:
                raise ValueError("生产环境 AGENT_API_KEY 必须配置且长度 >= 32 位")
            if not self.REACTIVE_CALLBACK_SECRET:
                raise ValueError("生产环境必须配置 REACTIVE_CALLBACK_SECRET")
            if not self.REDIS_URL:
                raise ValueError("生产环境必须配置 REDIS_URL，多实例共享预算与储备状态")
        for name, budget in self.category_budgets.items():
            if budget <= 0:
                raise ValueError(f"类别 {name} 的月度预算必须 > 0")
        return self


@lru_cache
def get_settings() -> Settings:
    """单例获取配置（带缓存）"""
    return Settings()
