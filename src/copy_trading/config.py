"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 模拟执行
    LIVE = "live"  # 真实执行网关


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== 数据库 ====================
    database_url: str = Field(
        default="sqlite:///data/copy_trading.db",
        description="SQLAlchemy 数据库连接串",
    )
    database_echo: bool = Field(default=False, description="是否打印 SQL 语句")

    # ==================== 托管钱包 ====================
    wallet_encryption_key: str = Field(
        default="",
        description="托管私钥加密口令（AES-256-GCM + PBKDF2）",
    )

    # ==================== 执行网关 ====================
    venue_url: str = Field(default="", description="执行网关地址")
    venue_api_key: str = Field(default="", description="执行网关 API Key")
    venue_timeout_seconds: float = Field(
        default=15.0,
        ge=1.0,
        le=120.0,
        description="单次执行网关调用超时（秒）",
    )
    venue_submit_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="下单超时或网关不可用时按 client_ref 重新提交的次数",
    )
    venue_submit_backoff_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=10.0,
        description="重新提交的指数退避基数（秒）",
    )
    venue_confirm_attempts: int = Field(
        default=10,
        ge=1,
        le=60,
        description="交易确认轮询次数",
    )
    venue_confirm_interval_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="交易确认轮询间隔（秒）",
    )
    paper_slippage_bps: float = Field(
        default=2.0,
        ge=0.0,
        le=500.0,
        description="模拟执行滑点（基点）",
    )

    # ==================== 分发参数 ====================
    dispatch_max_workers: int = Field(
        default=16,
        ge=1,
        le=256,
        description="跟单分发并发上限",
    )
    dispatch_claim_ttl_seconds: float = Field(
        default=300.0,
        ge=1.0,
        le=3600.0,
        description="仓位执行租约有效期（秒），超时视为放弃",
    )

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="分发日志存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("venue_url")
    @classmethod
    def normalize_venue_url(cls, v: str) -> str:
        """执行网关地址必须是 http(s)，去掉末尾斜杠。"""
        v = v.strip().rstrip("/")
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("venue_url 必须以 http:// 或 https:// 开头")
        return v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        sqlite_path = self.sqlite_path
        if sqlite_path is not None:
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def sqlite_path(self) -> Path | None:
        """SQLite 文件路径；非 SQLite 或内存库时为 None。"""
        prefix = "sqlite:///"
        if not self.database_url.startswith(prefix):
            return None
        raw = self.database_url[len(prefix) :]
        if not raw or raw == ":memory:":
            return None
        return Path(raw)

    @property
    def is_paper_mode(self) -> bool:
        """是否为模拟执行模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为真实执行模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.venue_url:
            missing.append("VENUE_URL")
        if not self.venue_api_key:
            missing.append("VENUE_API_KEY")
        if not self.wallet_encryption_key:
            missing.append("WALLET_ENCRYPTION_KEY")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
