"""
迁移编排器

按 preparation → discovery → link_inline → fix_links → consolidate → quarantine → cleanup → complete
的顺序驱动迁移，负责锁、检查点、变更日志与错误恢复的协作。
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..config import MigrationConfig
from ..ui.interactive import InteractiveUI
from ..ui.reporter import MigrationReporter
from .backup import BackupManager
from .catalog import AssetCatalog
from .changelog import ChangeLogManager
from .checkpoint import CheckpointManager
from .errors import (
    ConfigError,
    ErrorThresholdExceeded,
    FatalMigrationError,
    HealthCheckError,
    LockStoreError,
    MigrationError,
    StoreError,
)
from .inventory import Analysis, InventoryBuilder
from .lock import MigrationLock
from .matcher import FileMatcher, build_search_indexes
from .models import (
    PHASE_ORDER,
    RESTART_PHASES,
    Checkpoint,
    ItemStatus,
    MigrationRun,
    Phase,
    RunStatus,
)
from .phases import (
    CleanupService,
    ConsolidationService,
    InlineLinkingService,
    LinkRepairService,
    PhaseContext,
    PhaseService,
    QuarantineService,
)
from .recovery import ErrorRecoveryManager
from .stores import Store

MUTATING_PHASES = (Phase.LINK_INLINE, Phase.FIX_LINKS, Phase.CONSOLIDATE, Phase.QUARANTINE, Phase.CLEANUP)
REANALYZE_AFTER = (Phase.LINK_INLINE, Phase.FIX_LINKS)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


@dataclass
class MigrationOptions:
    """migrate 命令的选项"""
    dry_run: bool = False
    yes: bool = False
    skip_lock: bool = False
    resume: bool = False
    checkpoint_id: Optional[str] = None
    skip_inline: bool = False
    skip_backup: bool = False


class MigrationOrchestrator:
    """迁移编排器"""

    def __init__(
        self,
        config: MigrationConfig,
        catalog: AssetCatalog,
        stores: Dict[str, Store],
        options: Optional[MigrationOptions] = None,
        reporter: Optional[MigrationReporter] = None,
        ui: Optional[InteractiveUI] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.catalog = catalog
        self.stores = stores
        self.options = options or MigrationOptions()
        self.reporter = reporter or MigrationReporter()
        self.ui = ui or InteractiveUI(self.reporter.console, assume_yes=self.options.yes)
        self._clock = clock
        self._sleep = sleep

        self.run: Optional[MigrationRun] = None
        self.processed: List[str] = []
        self._processed_set = set()
        self.batch = 0
        self.analysis: Optional[Analysis] = None
        self.services: Dict[Phase, PhaseService] = {}
        self._resume_phase: Optional[Phase] = None
        self._last_lock_refresh = 0.0
        self.checkpoint_saved = False

        self.lock: Optional[MigrationLock] = None
        self.changelog: Optional[ChangeLogManager] = None
        self.checkpoints: Optional[CheckpointManager] = None
        self.recovery: Optional[ErrorRecoveryManager] = None
        self.backups = BackupManager(config.backup_dir)
        self.inventory = InventoryBuilder(
            stores,
            target_store=config.target_store,
            quarantine_store=config.quarantine_store,
            target_folder=config.target_folder,
            transform_prefix=config.transform_prefix,
        )
        self.matcher = FileMatcher(
            target_location=config.target_store,
            low_confidence_threshold=config.low_confidence_threshold,
            min_fuzzy_confidence=config.min_fuzzy_confidence,
            fuzzy_max_distance=config.fuzzy_max_distance,
            fuzzy_max_candidates=config.fuzzy_max_candidates,
        )

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def execute(self) -> int:
        """
        执行迁移

        Returns:
            进程退出码：0 成功，1 失败，130 被中断
        """
        try:
            self.config.validate()
        except ConfigError as e:
            logger.error(f"配置无效: {e}")
            return EXIT_FAILURE

        if self.options.resume:
            checkpoint = self._load_resume_checkpoint()
            if checkpoint is None:
                return EXIT_FAILURE
            if checkpoint.run.status is RunStatus.COMPLETED:
                logger.info(f"迁移 {checkpoint.migration_id} 已完成，无需恢复")
                return EXIT_OK
        else:
            self.run = MigrationRun()

        self._init_components()
        self.reporter.print_header(self.run.id, dry_run=self.options.dry_run, resumed=self.options.resume)

        if not self.options.skip_lock:
            try:
                self.lock = MigrationLock(
                    self.config.lock_db_path,
                    self.run.id,
                    lock_name=self.config.lock_name,
                    lease_seconds=self.config.lock_timeout_seconds,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                acquired = self.lock.acquire(
                    self.config.lock_acquire_timeout_seconds,
                    force_steal_if_same_id=self.options.resume,
                )
            except LockStoreError as e:
                logger.error(f"无法获取迁移锁: {e}")
                return EXIT_FAILURE
            if not acquired:
                logger.error("另一个迁移正在运行，请等待其完成或使用 force-cleanup 清除过期锁")
                self.lock.close()
                return EXIT_FAILURE
            self._last_lock_refresh = self._clock()

        try:
            with self._run_scope():
                self._run_phases()
        except KeyboardInterrupt:
            logger.warning(f"迁移被中断，可使用 --resume --checkpoint-id {self.run.id} 恢复")
            return EXIT_INTERRUPTED
        except MigrationError as e:
            logger.error(f"迁移失败: {e}")
            self.reporter.print_fatal_error(self.run.id, e, self.checkpoint_saved)
            return EXIT_FAILURE
        return EXIT_OK

    def _init_components(self) -> None:
        migration_id = self.run.id
        self.changelog = ChangeLogManager(
            self.config.changelog_dir, migration_id, flush_every=self.config.changelog_flush_every
        )
        self.checkpoints = CheckpointManager(self.config.checkpoint_dir, migration_id, clock=self._clock)
        self.recovery = ErrorRecoveryManager(
            migration_id,
            self.config.error_log_dir,
            max_retries=self.config.max_retries,
            retry_delay_ms=self.config.retry_delay_ms,
            retry_backoff=self.config.retry_backoff,
            error_threshold=self.config.error_threshold,
            on_threshold=self._on_error_threshold,
            sleep=self._sleep,
        )

    @contextmanager
    def _run_scope(self):
        """保证清理：失败时先保存检查点，再写出变更日志并释放锁"""
        try:
            yield
        except KeyboardInterrupt:
            self.run.status = RunStatus.INTERRUPTED
            self.checkpoint_saved = self._save_checkpoint_safely({'interrupted': True})
            raise
        except Exception as e:
            self.run.status = RunStatus.INTERRUPTED
            self.checkpoint_saved = self._save_checkpoint_safely({
                'error': str(e),
                'error_type': type(e).__name__,
                'error_threshold_exceeded': isinstance(e, ErrorThresholdExceeded),
            })
            if not isinstance(e, MigrationError):
                raise MigrationError(f"未预期的错误: {e}") from e
            raise
        finally:
            try:
                self.changelog.flush()
            except OSError as e:
                logger.error(f"写出变更日志失败: {e}")
            if self.lock is not None:
                try:
                    self.lock.release()
                except LockStoreError as e:
                    logger.error(f"释放迁移锁失败: {e}")
                self.lock.close()

    # ------------------------------------------------------------------
    # 恢复
    # ------------------------------------------------------------------

    def _load_resume_checkpoint(self) -> Optional[Checkpoint]:
        reader = CheckpointManager(self.config.checkpoint_dir, clock=self._clock)
        if self.options.checkpoint_id:
            checkpoint = reader.load_latest_checkpoint(self.options.checkpoint_id)
        else:
            state = reader.load_quick_state()
            checkpoint = reader.load_latest_checkpoint(state.migration_id if state else None)
        if checkpoint is None:
            logger.error("找不到可恢复的检查点")
            return None

        run = checkpoint.run
        processed = list(checkpoint.processed_ids)
        phase = checkpoint.phase
        state = reader.load_quick_state(checkpoint.migration_id)
        if state is not None:
            processed = list(dict.fromkeys([*processed, *state.processed_ids]))
            # 快速状态更新时以其阶段为准，但阶段不回退
            if state.timestamp > checkpoint.timestamp and PHASE_ORDER.index(state.phase) > PHASE_ORDER.index(phase):
                phase = state.phase
                run.stats.update(state.stats)

        run.phase = phase
        run.status = RunStatus.RUNNING if run.status is not RunStatus.COMPLETED else run.status
        run.resume_count += 1
        self.run = run
        self.processed = processed
        self._processed_set = set(processed)
        self.batch = checkpoint.batch
        self._resume_phase = phase
        logger.info(
            f"恢复迁移 {run.id}: 阶段 {phase.value}，已处理 {len(processed)} 项，第 {run.resume_count} 次恢复"
        )
        return checkpoint

    # ------------------------------------------------------------------
    # 阶段驱动
    # ------------------------------------------------------------------

    def _run_phases(self) -> None:
        resume_phase = self._resume_phase
        if resume_phase is None or resume_phase in RESTART_PHASES:
            self._enter_phase(Phase.PREPARATION)
            self._prepare(take_snapshot=not self.backups.has_snapshot(self.run.id))
            self._enter_phase(Phase.DISCOVERY)
            self._discover()
            start = MUTATING_PHASES[0]
        else:
            # 从检查点阶段继续，准备与分析结果重新推导
            logger.info(f"重新推导分析结果，随后从阶段 {resume_phase.value} 继续")
            self._prepare(take_snapshot=False)
            self._discover()
            start = resume_phase

        if self.options.dry_run:
            self.reporter.print_planned_operations(self._planned_counts(), skip_inline=self.options.skip_inline)
            return

        if start is Phase.COMPLETE:
            self._complete()
            return

        if not self._confirm("确认开始迁移？"):
            logger.warning("用户取消迁移，检查点已保存")
            self.run.status = RunStatus.INTERRUPTED
            self._save_checkpoint({'cancelled': True})
            return

        for phase in MUTATING_PHASES:
            if PHASE_ORDER.index(phase) < PHASE_ORDER.index(start):
                continue
            self._run_phase(phase)

        self._complete()

    def _run_phase(self, phase: Phase) -> None:
        if phase is Phase.LINK_INLINE and self.options.skip_inline:
            self.reporter.print_skip(phase.value, "已通过 --skip-inline 跳过")
            return
        service = self.services[phase]
        pending = [item for item in service.items(self.analysis)
                   if self._processed_id(service, item) not in self._processed_set]
        if not pending:
            self.reporter.print_skip(phase.value, "没有需要处理的项目")
            return
        if phase is Phase.QUARANTINE and not self._confirm(f"将 {len(pending)} 个未使用的文件移入隔离区，继续？"):
            self.reporter.print_skip(phase.value, "用户拒绝")
            return

        self._enter_phase(phase)
        changed = self._process_items(service, pending)
        if changed and phase in REANALYZE_AFTER:
            # 资源的使用状态或位置已变化，后续阶段需要新的分类
            self._reanalyze()

    def _enter_phase(self, phase: Phase) -> None:
        self.run.phase = phase
        self.changelog.set_phase(phase.value)
        self.reporter.print_phase(phase.value)
        logger.info(f"进入阶段 {phase.value}")
        if not self.options.dry_run:
            self._save_checkpoint({'phase_started': phase.value})

    def _processed_id(self, service: PhaseService, item: Any) -> str:
        return f"{service.phase.value}:{service.item_id(item)}"

    def _process_items(self, service: PhaseService, items: List[Any]) -> int:
        """逐批处理，返回成功完成的项数"""
        phase = service.phase
        batch_size = self.config.batch_size
        batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]
        changed = 0
        logger.info(f"阶段 {phase.value}: {len(items)} 项，{len(batches)} 批")

        with self.reporter.progress(phase.value, total=len(items)) as advance:
            for batch_number, batch in enumerate(batches, 1):
                done = []
                for item in batch:
                    self._maybe_refresh_lock()
                    item_id = self._processed_id(service, item)
                    result = self.recovery.retry_operation(lambda item=item: service.process(item), item_id)
                    if result is None:
                        self.run.bump('errors')
                        self.recovery.track_error(phase.value, str(self.recovery.last_error), {'item': item_id})
                    elif result.status is ItemStatus.FAILED:
                        self.run.bump('errors')
                        self.recovery.track_error(phase.value, result.detail, {'item': item_id})
                    elif result.status is ItemStatus.SKIPPED:
                        self.run.bump('skipped')
                        done.append(item_id)
                    elif result.status is ItemStatus.DONE:
                        done.append(item_id)
                        changed += 1
                    advance()
                self._record_batch(done, checkpoint=batch_number % self.config.checkpoint_every_batches == 0)
        return changed

    def _record_batch(self, done: List[str], checkpoint: bool) -> None:
        self.batch += 1
        # 变更先落盘，再记为已处理
        self.changelog.flush()
        for item_id in done:
            if item_id not in self._processed_set:
                self._processed_set.add(item_id)
                self.processed.append(item_id)
        self.checkpoints.update_processed_ids(done)
        if checkpoint:
            self._save_checkpoint({'batch_completed': self.batch})

    def _maybe_refresh_lock(self) -> None:
        if self.lock is None:
            return
        now = self._clock()
        if now - self._last_lock_refresh < self.config.lock_refresh_seconds:
            return
        if not self.lock.refresh():
            raise FatalMigrationError("迁移锁已丢失，可能有其他进程接管")
        self._last_lock_refresh = now

    def _confirm(self, message: str) -> bool:
        if self.options.yes:
            return True
        # 提示前保证可恢复
        self.changelog.flush()
        self._save_checkpoint({'awaiting_confirmation': message})
        return self.ui.confirm(message)

    # ------------------------------------------------------------------
    # 准备、发现与完成
    # ------------------------------------------------------------------

    def _prepare(self, take_snapshot: bool) -> None:
        self._health_check()
        if take_snapshot and not self.options.skip_backup and not self.options.dry_run:
            self.backups.create_snapshot(self.run.id, self.catalog)

    def _health_check(self) -> None:
        missing = [name for name in self.config.all_stores if name not in self.stores]
        if missing:
            raise HealthCheckError(f"存储未配置: {', '.join(missing)}")
        if self.options.dry_run:
            return
        probe = f".assetmigf-health-{self.run.id}"
        for name in (self.config.target_store, self.config.quarantine_store):
            store = self.stores[name]
            try:
                store.write(probe, b"ok")
                if store.read(probe) != b"ok":
                    raise HealthCheckError(f"存储 {name} 读回的内容不一致")
                store.delete(probe)
            except StoreError as e:
                raise HealthCheckError(f"存储 {name} 不可写: {e}") from e
        logger.info("存储健康检查通过")

    def _discover(self) -> None:
        files, transforms = self.inventory.build_file_inventory()
        indexes = build_search_indexes(files)
        self.analysis = self.inventory.analyze(self.catalog, files, transforms)

        ctx = PhaseContext(
            catalog=self.catalog,
            stores=self.stores,
            changelog=self.changelog,
            run=self.run,
            inventory=self.inventory,
            target_store=self.config.target_store,
            quarantine_store=self.config.quarantine_store,
            target_folder=self.config.target_folder,
        )
        self.services = {
            Phase.LINK_INLINE: InlineLinkingService(ctx),
            Phase.FIX_LINKS: LinkRepairService(ctx, self.matcher, files, indexes),
            Phase.CONSOLIDATE: ConsolidationService(ctx),
            Phase.QUARANTINE: QuarantineService(ctx),
            Phase.CLEANUP: CleanupService(ctx),
        }
        self.reporter.print_analysis(self.analysis.counts())
        if not self.options.dry_run and self.run.phase is Phase.DISCOVERY:
            self._save_checkpoint({'analysis': self.analysis.counts()})

    def _reanalyze(self) -> None:
        files, transforms = self.inventory.build_file_inventory()
        self.analysis = self.inventory.analyze(self.catalog, files, transforms)
        logger.info(f"重新分析资源: {self.analysis.counts()}")

    def _planned_counts(self) -> Dict[str, int]:
        counts = self.analysis.counts()
        if not self.options.skip_inline:
            counts['inline_rows'] = len(self.services[Phase.LINK_INLINE].items(self.analysis))
        return counts

    def _complete(self) -> None:
        self._enter_phase(Phase.COMPLETE)
        cleanup: CleanupService = self.services[Phase.CLEANUP]
        missing = cleanup.verify()
        self.run.status = RunStatus.COMPLETED
        self.changelog.flush()
        self._save_checkpoint({'completed': True, 'verification_missing': len(missing)})

        self.checkpoints.cleanup_old_checkpoints(
            self.config.checkpoint_retention_hours,
            extra_dirs=[self.config.changelog_dir, self.config.error_log_dir, self.config.backup_dir],
        )
        repair: LinkRepairService = self.services[Phase.FIX_LINKS]
        self.reporter.print_review(repair.review)
        self.reporter.print_final_report(self.run.id, self.run.stats, self.run.started_at)

    # ------------------------------------------------------------------
    # 检查点
    # ------------------------------------------------------------------

    def _save_checkpoint(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self.checkpoints.save_checkpoint(Checkpoint(
            run=MigrationRun.from_dict(self.run.to_dict()),
            payload=dict(payload or {}),
            processed_ids=list(self.processed),
            batch=self.batch,
        ))

    def _save_checkpoint_safely(self, payload: Dict[str, Any]) -> bool:
        try:
            self._save_checkpoint(payload)
            return True
        except (MigrationError, OSError) as e:
            logger.error(f"保存检查点失败: {e}")
            return False

    def _on_error_threshold(self, total: int) -> None:
        self._save_checkpoint({'error_threshold_exceeded': True, 'error_count': total})
