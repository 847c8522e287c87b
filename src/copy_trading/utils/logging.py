"""结构化日志配置模块。

所有日志写到 stderr，stdout 只留给 CLI 的 JSON 输出。
分发工作线程名会写入每条事件，便于按跟随者追踪并发执行。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from copy_trading.config import LogFormat, get_settings

# 任何名字包含这些片段的字段都不会落盘
_SECRET_FRAGMENTS = ("private_key", "encryption_key", "api_key", "passphrase")


def _redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """托管密钥不得出现在日志中。"""
    for key in event_dict:
        if any(fragment in key for fragment in _SECRET_FRAGMENTS):
            event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """按配置初始化 structlog 与标准库 logging。"""
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
        force=True,
    )
    # SQL 回显只由 database_echo 控制
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {structlog.processors.CallsiteParameter.THREAD_NAME}
        ),
        _redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.log_format == LogFormat.JSON:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=chain,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器，name 为空时使用调用模块名。"""
    return structlog.get_logger(name)


# 便捷日志函数
def log_trade_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    trade_id: str,
    operator_id: str,
    event_type: str,
    **kwargs: Any,
) -> None:
    """记录交易信号生命周期事件。"""
    logger.info(
        "trade_event",
        trade_id=trade_id,
        operator_id=operator_id,
        event_type=event_type,
        **kwargs,
    )


def log_venue_call(
    logger: structlog.stdlib.BoundLogger,
    *,
    operation: str,
    success: bool,
    latency_ms: float,
    **kwargs: Any,
) -> None:
    """记录执行网关调用。"""
    level = "info" if success else "warning"
    getattr(logger, level)(
        "venue_call",
        operation=operation,
        success=success,
        latency_ms=round(latency_ms, 2),
        **kwargs,
    )


def log_position_transition(
    logger: structlog.stdlib.BoundLogger,
    *,
    position_id: str,
    from_status: str,
    to_status: str,
    **kwargs: Any,
) -> None:
    """记录跟单仓位状态迁移。"""
    logger.info(
        "position_transition",
        position_id=position_id,
        from_status=from_status,
        to_status=to_status,
        **kwargs,
    )


def log_dispatch_summary(
    logger: structlog.stdlib.BoundLogger,
    *,
    trade_id: str,
    phase: str,
    fanout_size: int,
    elapsed_ms: float,
    **kwargs: Any,
) -> None:
    """记录一次分发/平仓批次的汇总。"""
    logger.info(
        "dispatch_summary",
        trade_id=trade_id,
        phase=phase,
        fanout_size=fanout_size,
        elapsed_ms=round(elapsed_ms, 2),
        **kwargs,
    )
