"""
assetmigf 包的命令行入口点，使用 Typer 实现命令行界面
"""
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

import psutil
import typer
from loguru import logger
from rich.console import Console

from .config import MigrationConfig, load_config
from .core.catalog import CatalogError, JsonAssetCatalog
from .core.changelog import ChangeLogManager
from .core.checkpoint import CheckpointManager
from .core.errors import ConfigError, LockStoreError
from .core.lock import MigrationLock
from .core.orchestrator import MigrationOptions, MigrationOrchestrator
from .core.rollback import METHOD_CHANGESET, RollbackEngine
from .core.backup import BackupManager
from .core.stores import Store, build_stores
from .ui.interactive import InteractiveUI
from .ui.reporter import MigrationReporter

DEFAULT_CONFIG_PATH = Path("assetmigf.toml")


def setup_logger(app_name="app", project_root=None, console_output=True):
    """配置 Loguru 日志系统

    Args:
        app_name: 应用名称，用于日志目录
        project_root: 日志根目录，默认为当前文件所在目录
        console_output: 是否输出到控制台，默认为True

    Returns:
        tuple: (logger, config_info)
            - logger: 配置好的 logger 实例
            - config_info: 包含日志配置信息的字典
    """
    if project_root is None:
        project_root = Path(__file__).parent.resolve()

    # 清除默认处理器
    logger.remove()

    if console_output:
        logger.add(
            sys.stdout,
            level="INFO",
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <blue>{elapsed}</blue> | <level>{level.icon} {level: <8}</level> | <cyan>{name}:{function}:{line}</cyan> - <level>{message}</level>"
        )

    current_time = datetime.now()
    date_str = current_time.strftime("%Y-%m-%d")
    hour_str = current_time.strftime("%H")
    minute_str = current_time.strftime("%M%S")

    log_dir = os.path.join(project_root, "logs", app_name, date_str, hour_str)
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{minute_str}.log")

    logger.add(
        log_file,
        level="DEBUG",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {elapsed} | {level.icon} {level: <8} | {name}:{function}:{line} - {message}",
        enqueue=True,
    )

    config_info = {
        'log_file': log_file,
    }

    logger.info(f"日志系统已初始化，应用名称: {app_name}")
    return logger, config_info


# 创建 Typer 应用
app = typer.Typer(help="资源迁移工具 - 分阶段、可恢复、可回滚地迁移资源文件")

# 初始化 Rich Console，用于用户交互
console = Console()

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="配置文件路径 (TOML)")


def _bootstrap(config_path: Path) -> MigrationConfig:
    """加载配置并初始化日志"""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]配置错误: {e}[/red]")
        raise typer.Exit(code=1)
    setup_logger(app_name="assetmigf", project_root=config.log_root, console_output=True)
    return config


def _runtime(config: MigrationConfig) -> Tuple[JsonAssetCatalog, Dict[str, Store]]:
    """创建资源目录与存储"""
    if config.catalog_path is None:
        logger.error("未配置资源目录: [catalog] path")
        raise typer.Exit(code=1)
    try:
        catalog = JsonAssetCatalog(config.catalog_path)
    except CatalogError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    return catalog, build_stores(config.store_roots)


@app.command()
def migrate(
    dry_run: bool = typer.Option(False, "--dry-run", "--dryRun", help="只分析并显示计划，不做任何修改"),
    resume: bool = typer.Option(False, "--resume", "-r", help="从检查点恢复中断的迁移"),
    checkpoint_id: Optional[str] = typer.Option(None, "--checkpoint-id", "--checkpointId", help="要恢复的迁移 ID，默认最新"),
    skip_lock: bool = typer.Option(False, "--skip-lock", "--skipLock", help="不获取迁移锁（危险）"),
    yes: bool = typer.Option(False, "--yes", "-y", help="无人值守模式，自动确认所有提示"),
    skip_backup: bool = typer.Option(False, "--skip-backup", "--skipBackup", help="不创建迁移前快照"),
    skip_inline: bool = typer.Option(False, "--skip-inline", "--skipInlineDetection", help="跳过内联图片链接阶段"),
    config_path: Path = ConfigOption,
):
    """执行迁移，或从检查点恢复"""
    config = _bootstrap(config_path)
    catalog, stores = _runtime(config)
    options = MigrationOptions(
        dry_run=dry_run,
        yes=yes,
        skip_lock=skip_lock,
        resume=resume or bool(checkpoint_id),
        checkpoint_id=checkpoint_id,
        skip_inline=skip_inline,
        skip_backup=skip_backup,
    )
    if skip_lock:
        logger.warning("已跳过迁移锁，请确保没有其他迁移同时运行")
    orchestrator = MigrationOrchestrator(
        config, catalog, stores, options,
        reporter=MigrationReporter(console),
        ui=InteractiveUI(console, assume_yes=yes),
    )
    raise typer.Exit(code=orchestrator.execute())


@app.command()
def rollback(
    migration_id: Optional[str] = typer.Option(None, "--migration-id", "-m", help="要回滚的迁移 ID，默认交互选择"),
    phases: Optional[str] = typer.Option(None, "--phases", "-p", help="要回滚的阶段，逗号分隔"),
    mode: str = typer.Option("from", "--mode", help="from: 指定阶段及之后的阶段；only: 仅指定阶段"),
    dry_run: bool = typer.Option(False, "--dry-run", "--dryRun", help="只显示回滚计划"),
    method: str = typer.Option(METHOD_CHANGESET, "--method", help="database: 快照整体恢复；changeset: 逐条逆向"),
    yes: bool = typer.Option(False, "--yes", "-y", help="不再确认"),
    config_path: Path = ConfigOption,
):
    """回滚迁移"""
    config = _bootstrap(config_path)
    catalog, stores = _runtime(config)
    ui = InteractiveUI(console, assume_yes=yes)
    changelog = ChangeLogManager(config.changelog_dir)

    if migration_id is None:
        migration_id = ui.choose_migration(changelog.list_migrations())
        if migration_id is None:
            raise typer.Exit(code=1)

    phase_list = [p.strip() for p in phases.split(',') if p.strip()] if phases else None
    engine = RollbackEngine(migration_id, changelog, catalog, stores, BackupManager(config.backup_dir))
    reporter = MigrationReporter(console)

    if not dry_run:
        plan = engine.rollback(phase_list, mode=mode, dry_run=True, method=method)
        reporter.print_rollback_result(plan)
        if not plan.success:
            raise typer.Exit(code=1)
        if not ui.confirm(f"确认回滚迁移 {migration_id}？"):
            logger.info("已取消回滚")
            raise typer.Exit(code=0)

    lock = None
    if not dry_run:
        try:
            lock = MigrationLock(config.lock_db_path, f"rollback-{migration_id}",
                                 lock_name=config.lock_name, lease_seconds=config.lock_timeout_seconds)
            acquired = lock.acquire(config.lock_acquire_timeout_seconds)
        except LockStoreError as e:
            logger.error(str(e))
            raise typer.Exit(code=1)
        if not acquired:
            logger.error("有迁移正在运行，无法回滚")
            lock.close()
            raise typer.Exit(code=1)

    try:
        result = engine.rollback(phase_list, mode=mode, dry_run=dry_run, method=method)
    finally:
        if lock is not None:
            lock.release()
            lock.close()

    reporter.print_rollback_result(result)
    raise typer.Exit(code=0 if result.success else 1)


@app.command()
def status(config_path: Path = ConfigOption):
    """显示锁、检查点与变更日志"""
    config = _bootstrap(config_path)
    changelog = ChangeLogManager(config.changelog_dir)
    checkpoints = CheckpointManager(config.checkpoint_dir)
    try:
        with MigrationLock(config.lock_db_path, "status", lock_name=config.lock_name) as lock:
            holder = lock.current()
    except LockStoreError as e:
        logger.error(str(e))
        holder = None

    migrations = changelog.list_migrations()
    summaries = {m['id']: changelog.get_phases_summary(m['id']) for m in migrations}
    MigrationReporter(console).print_status(holder, checkpoints.list_checkpoints(), migrations, summaries)


@app.command()
def monitor(
    migration_id: Optional[str] = typer.Option(None, "--migration-id", "-m", help="迁移 ID，默认最新"),
    config_path: Path = ConfigOption,
):
    """查看运行中（或最近一次）迁移的进度"""
    config = _bootstrap(config_path)
    checkpoints = CheckpointManager(config.checkpoint_dir)
    quick = checkpoints.load_quick_state(migration_id)
    checkpoint = checkpoints.load_latest_checkpoint(quick.migration_id if quick else migration_id)
    if quick is None and checkpoint is None:
        console.print("[yellow]没有找到迁移状态[/yellow]")
        raise typer.Exit(code=1)

    if quick is not None and (checkpoint is None or quick.timestamp >= checkpoint.timestamp):
        state = quick.to_dict()
        updated = quick.timestamp
    else:
        state = {
            'migration_id': checkpoint.migration_id,
            'phase': checkpoint.phase.value,
            'status': checkpoint.run.status.value,
            'pid': None,
            'processed_count': len(checkpoint.processed_ids),
            'stats': checkpoint.run.stats,
        }
        updated = checkpoint.timestamp
    state['updated'] = datetime.fromtimestamp(updated).isoformat(timespec='seconds') if updated else ''

    pid = state.get('pid')
    alive = psutil.pid_exists(pid) if pid else None
    MigrationReporter(console).print_monitor(state, alive)


@app.command()
def cleanup(
    older_than_hours: Optional[int] = typer.Option(None, "--older-than-hours", "--olderThanHours", help="保留时长（小时），默认取配置"),
    config_path: Path = ConfigOption,
):
    """清理过期的检查点、变更日志与快照"""
    config = _bootstrap(config_path)
    hours = older_than_hours if older_than_hours is not None else config.checkpoint_retention_hours
    result = CheckpointManager(config.checkpoint_dir).cleanup_old_checkpoints(
        hours, extra_dirs=[config.changelog_dir, config.error_log_dir, config.backup_dir]
    )
    console.print(
        f"已清理 {result['checkpoints_cleaned']} 个检查点、{result['changelogs_cleaned']} 个变更日志，"
        f"释放 {result['space_freed']} 字节"
    )


@app.command("force-cleanup")
def force_cleanup(
    yes: bool = typer.Option(False, "--yes", "-y", help="不再确认"),
    config_path: Path = ConfigOption,
):
    """强制清除所有迁移锁与快速状态（仅在确认没有迁移运行时使用）"""
    config = _bootstrap(config_path)
    if not InteractiveUI(console, assume_yes=yes).confirm("确认清除所有迁移锁与状态？"):
        raise typer.Exit(code=0)
    try:
        with MigrationLock(config.lock_db_path, "force-cleanup", lock_name=config.lock_name) as lock:
            locks = lock.force_release_all()
    except LockStoreError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    states = CheckpointManager(config.checkpoint_dir).remove_quick_states()
    console.print(f"已清除 {locks} 个迁移锁、{states} 个快速状态")


def main():
    """主入口函数"""
    app()


if __name__ == "__main__":
    main()
