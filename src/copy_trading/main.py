"""CLI 入口模块 - Copy Trading 跟单分发命令行接口。"""

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from copy_trading import __version__
from copy_trading.config import get_settings
from copy_trading.errors import CopyTradeError, InvalidParameters
from copy_trading.pipeline import Pipeline, build_pipeline
from copy_trading.reporting.performance import follower_pnl, operator_performance, trade_stats
from copy_trading.types import DispatchResult, PositionStatus, TradeKind, TradeStatus
from copy_trading.utils.logging import get_logger, setup_logging


@contextmanager
def _pipeline_scope(command: str) -> Iterator[Pipeline]:
    """构建管线，统一处理业务异常并在结束时释放连接。"""
    setup_logging()
    logger = get_logger("copy_trading.main")
    settings = get_settings()

    # 验证配置
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置执行网关与钱包加密口令",
            )
            sys.exit(1)

    pipeline: Pipeline | None = None
    try:
        pipeline = build_pipeline(settings)
        yield pipeline
    except CopyTradeError as e:
        logger.error("command_failed", command=command, error_kind=e.kind, error=e.message)
        click.echo(f"[ERROR] {e.kind}: {e.message}", err=True)
        sys.exit(1)
    finally:
        if pipeline is not None:
            pipeline.close()


def _parse_json_option(raw: str | None, name: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidParameters(f"{name}_not_json: {e.msg}") from e
    if not isinstance(value, dict):
        raise InvalidParameters(f"{name}_must_be_object")
    return value


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Copy Trading - 操盘手信号一对多跟单分发系统。

    将操盘手的每笔交易按跟随者的分配规则拆分为独立仓位并并发执行。
    """
    if version:
        click.echo(f"copy-trading version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("init-db")
def init_db() -> None:
    """创建数据库表结构。"""
    with _pipeline_scope("init-db") as pipeline:
        pipeline.database.create_all()
        click.echo(f"[OK] Database ready: {pipeline.settings.database_url}")


# ==================== 操盘手 ====================
@cli.group()
def operator() -> None:
    """操盘手管理。"""


@operator.command("register")
@click.argument("name")
@click.option("--id", "operator_id", default=None, help="指定操盘手 ID")
def operator_register(name: str, operator_id: str | None) -> None:
    """注册操盘手。"""
    with _pipeline_scope("operator register") as pipeline:
        registered = pipeline.operators.register(name, operator_id=operator_id)
        click.echo(registered.id)


@operator.command("deactivate")
@click.argument("operator_id")
def operator_deactivate(operator_id: str) -> None:
    """停用操盘手，停止接收新信号。"""
    with _pipeline_scope("operator deactivate") as pipeline:
        pipeline.operators.deactivate(operator_id)
        click.echo(f"[OK] Operator {operator_id} deactivated")


@operator.command("list")
@click.option("--active-only", is_flag=True, default=False, help="仅显示活跃操盘手")
def operator_list(active_only: bool) -> None:
    """列出操盘手。"""
    with _pipeline_scope("operator list") as pipeline:
        for item in pipeline.operators.list_operators(active_only=active_only):
            marker = "[ACTIVE]" if item.active else "[INACTIVE]"
            click.echo(f"{marker} {item.id}  {item.name}")


@operator.command("performance")
@click.argument("operator_id")
def operator_perf(operator_id: str) -> None:
    """显示操盘手历史表现（基于已平仓记录）。"""
    with _pipeline_scope("operator performance") as pipeline:
        perf = operator_performance(pipeline.trades, pipeline.positions, operator_id)
        _echo_json(
            {
                "operator_id": perf.operator_id,
                "closed_trades": perf.closed_trades,
                "active_trades": perf.active_trades,
                "wins": perf.wins,
                "losses": perf.losses,
                "win_rate_pct": round(perf.win_rate_pct, 2),
                "total_pnl": perf.total_pnl,
                "total_return_pct": round(perf.total_return_pct, 4),
            }
        )


# ==================== 跟随者 ====================
@cli.command()
@click.argument("follower_id")
@click.argument("operator_id")
@click.option(
    "--allocation-pct",
    type=float,
    required=True,
    help="每笔跟单占上限的百分比 (0-100]",
)
@click.option("--max-size", type=float, required=True, help="单笔跟单仓位上限")
@click.option(
    "--generate-key",
    is_flag=True,
    default=False,
    help="为没有托管钱包的跟随者生成签名密钥",
)
def follow(
    follower_id: str,
    operator_id: str,
    allocation_pct: float,
    max_size: float,
    generate_key: bool,
) -> None:
    """订阅操盘手。"""
    with _pipeline_scope("follow") as pipeline:
        subscription = pipeline.followers.subscribe(
            follower_id, operator_id, allocation_pct, max_size
        )
        if generate_key and not pipeline.custodian.has_key(follower_id):
            pipeline.custodian.generate_key(follower_id)
            click.echo(f"[OK] Custodial key generated for {follower_id}")
        click.echo(subscription.id)


@cli.command()
@click.argument("follower_id")
@click.argument("operator_id")
def unfollow(follower_id: str, operator_id: str) -> None:
    """取消订阅（存在未平仓位时拒绝）。"""
    with _pipeline_scope("unfollow") as pipeline:
        pipeline.followers.unsubscribe(follower_id, operator_id)
        click.echo(f"[OK] {follower_id} no longer follows {operator_id}")


# ==================== 交易 ====================
@cli.group()
def trade() -> None:
    """交易信号管理。"""


@trade.command("create")
@click.argument("operator_id")
@click.argument("kind", type=click.Choice([k.value for k in TradeKind]))
@click.option("--confidence", type=float, required=True, help="信号置信度 0-100")
@click.option("--params", "params_json", required=True, help="入场参数（JSON 对象）")
@click.option(
    "--dispatch", "dispatch_now", is_flag=True, default=False, help="创建后立即分发"
)
def trade_create(
    operator_id: str,
    kind: str,
    confidence: float,
    params_json: str,
    dispatch_now: bool,
) -> None:
    """记录一条新的交易信号。"""
    with _pipeline_scope("trade create") as pipeline:
        entry = _parse_json_option(params_json, "params") or {}
        created = pipeline.trades.create_trade(operator_id, kind, confidence, entry)
        click.echo(created.id)
        if dispatch_now:
            _echo_dispatch(pipeline.orchestrator.dispatch_trade(created.id))


@trade.command("dispatch")
@click.argument("trade_id")
def trade_dispatch(trade_id: str) -> None:
    """向全部跟随者分发（可重复执行，只处理 pending 仓位）。"""
    with _pipeline_scope("trade dispatch") as pipeline:
        _echo_dispatch(pipeline.orchestrator.dispatch_trade(trade_id))


@trade.command("close")
@click.argument("trade_id")
@click.option("--exit-params", "exit_json", default=None, help="平仓参数（JSON 对象）")
def trade_close(trade_id: str, exit_json: str | None) -> None:
    """平掉全部跟随者仓位并关闭交易。"""
    with _pipeline_scope("trade close") as pipeline:
        exit_parameters = _parse_json_option(exit_json, "exit_params")
        result = pipeline.orchestrator.close_trade(trade_id, exit_parameters)
        _echo_json(
            {
                "trade_id": result.trade_id,
                "trade_status": result.trade_status.value,
                "closed": result.closed,
                "still_open": result.still_open,
                "realized_pnl": result.realized_pnl,
                "elapsed_ms": round(result.elapsed_ms, 2),
            }
        )
        if not result.complete:
            sys.exit(2)


@trade.command("cancel")
@click.argument("trade_id")
def trade_cancel(trade_id: str) -> None:
    """撤销尚未执行的交易信号。"""
    with _pipeline_scope("trade cancel") as pipeline:
        cancelled = pipeline.orchestrator.cancel_trade(trade_id)
        click.echo(f"[OK] Trade {cancelled.id} -> {cancelled.status.value}")


@trade.command("show")
@click.argument("trade_id")
@click.option(
    "--history", "history_limit", default=0, type=int, help="附带最近 N 条分发日志"
)
def trade_show(trade_id: str, history_limit: int) -> None:
    """显示交易及其仓位统计，可选附带分发日志。"""
    with _pipeline_scope("trade show") as pipeline:
        found = pipeline.trades.get_trade(trade_id)
        stats = trade_stats(pipeline.positions, trade_id)
        report: dict[str, Any] = {
            "id": found.id,
            "operator_id": found.operator_id,
            "kind": found.kind.value,
            "confidence": found.confidence,
            "status": found.status.value,
            "created_at": found.created_at,
            "closed_at": found.closed_at,
            "entry_parameters": found.entry_parameters,
            "positions": {
                "total": stats.follower_count,
                "pending": stats.pending,
                "active": stats.active,
                "closed": stats.closed,
                "failed": stats.failed,
            },
            "total_allocated": stats.total_allocated,
            "total_committed": stats.total_committed,
            "realized_pnl": stats.realized_pnl,
        }
        if history_limit > 0:
            report["history"] = pipeline.journal.history(trade_id=trade_id, limit=history_limit)
        _echo_json(report)


@trade.command("list")
@click.option("--operator", "operator_id", default=None, help="按操盘手过滤")
@click.option(
    "--status",
    type=click.Choice([s.value for s in TradeStatus]),
    default=None,
    help="按状态过滤",
)
@click.option("--page", type=int, default=1, help="页码")
@click.option("--limit", type=int, default=20, help="每页条数")
def trade_list(operator_id: str | None, status: str | None, page: int, limit: int) -> None:
    """分页列出交易历史。"""
    with _pipeline_scope("trade list") as pipeline:
        result = pipeline.trades.list_trades(
            operator_id=operator_id, status=status, page=page, limit=limit
        )
        for item in result.trades:
            click.echo(
                f"{item.id}  {item.status.value:<7} {item.kind.value:<16} "
                f"conf={item.confidence:g}  {item.created_at.isoformat()}"
            )
        click.echo(f"page {result.page}/{result.total_pages} ({result.total} trades)")


def _echo_dispatch(result: DispatchResult) -> None:
    _echo_json(
        {
            "trade_id": result.trade_id,
            "trade_status": result.trade_status.value,
            "fanout_size": result.fanout_size,
            "created": result.created,
            "skipped": result.skipped,
            "active": result.count(PositionStatus.ACTIVE),
            "failed": result.count(PositionStatus.FAILED),
            "deferred": result.deferred,
            "in_flight": result.in_flight,
            "elapsed_ms": round(result.elapsed_ms, 2),
        }
    )


# ==================== 仓位与收益 ====================
@cli.command()
@click.argument("follower_id")
@click.option("--operator", "operator_id", default=None, help="按操盘手过滤")
@click.option(
    "--status",
    type=click.Choice([s.value for s in PositionStatus]),
    default=None,
    help="按状态过滤",
)
def positions(follower_id: str, operator_id: str | None, status: str | None) -> None:
    """列出跟随者的仓位。"""
    with _pipeline_scope("positions") as pipeline:
        rows = pipeline.positions.get_positions_for_follower(
            follower_id,
            PositionStatus(status) if status else None,
            operator_id=operator_id,
        )
        for pos in rows:
            line = (
                f"{pos.id}  trade={pos.trade_id}  {pos.status.value:<7} "
                f"allocated={pos.allocated_amount:g} actual={pos.actual_amount:g}"
            )
            if pos.realized_pnl is not None:
                line += f" pnl={pos.realized_pnl:g}"
            if pos.failure_reason:
                line += f" reason={pos.failure_reason}"
            if pos.close_error:
                line += f" close_error={pos.close_error}"
            click.echo(line)
        click.echo(f"{len(rows)} positions")


@cli.command()
@click.argument("follower_id")
@click.option("--operator", "operator_id", default=None, help="按操盘手过滤")
def pnl(follower_id: str, operator_id: str | None) -> None:
    """显示跟随者收益汇总。"""
    with _pipeline_scope("pnl") as pipeline:
        report = follower_pnl(pipeline.positions, follower_id, operator_id)
        _echo_json(
            {
                "follower_id": report.follower_id,
                "operator_id": report.operator_id,
                "positions": {
                    "total": report.total_positions,
                    "pending": report.pending_positions,
                    "active": report.active_positions,
                    "closed": report.closed_positions,
                    "failed": report.failed_positions,
                },
                "total_committed": report.total_committed,
                "open_exposure": report.open_exposure,
                "realized_pnl": report.realized_pnl,
                "win_rate_pct": round(report.win_rate_pct, 2),
                "total_return_pct": round(report.total_return_pct, 4),
            }
        )


# ==================== 系统 ====================
@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Copy Trading - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper venue" if settings.is_paper_mode else "Execution gateway"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    # 执行网关
    click.echo("[Venue]")
    venue_status = settings.venue_url or "[--] Not configured"
    api_key_status = "[OK] Configured" if settings.venue_api_key else "[--] Not configured"
    click.echo(f"   Gateway URL: {venue_status}")
    click.echo(f"   Gateway API key: {api_key_status}")
    click.echo(f"   Call timeout: {settings.venue_timeout_seconds}s")
    click.echo(
        f"   Confirmation: {settings.venue_confirm_attempts} x "
        f"{settings.venue_confirm_interval_seconds}s"
    )
    click.echo()

    # 分发参数
    click.echo("[Dispatch]")
    click.echo(f"   Max workers: {settings.dispatch_max_workers}")
    click.echo(f"   Claim TTL: {settings.dispatch_claim_ttl_seconds}s")
    key_status = "[OK] Configured" if settings.wallet_encryption_key else "[--] Not configured"
    click.echo(f"   Wallet encryption key: {key_status}")
    click.echo()

    # 存储与日志
    click.echo("[Storage & Logging]")
    click.echo(f"   Database: {settings.database_url}")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require gateway configuration")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("copy_trading.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("sqlalchemy", "Ledger storage"),
        ("cryptography", "Custodial key encryption"),
        ("httpx", "HTTP client"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m copy_trading.main 调用
if __name__ == "__main__":
    cli()
