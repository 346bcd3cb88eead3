"""
回滚引擎

两种方式：
- database: 用迁移前快照整体恢复资源目录
- changeset: 按时间倒序逐条逆向执行变更日志
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from .backup import BackupManager
from .catalog import AssetCatalog
from .changelog import ChangeLogManager
from .errors import StoreNotFoundError
from .models import (
    PHASE_ORDER,
    BrokenLinkNotFixed,
    ChangeEntry,
    DeletedTransform,
    FixedBrokenLink,
    InlineImageLinked,
    MovedAsset,
    Phase,
    QuarantinedOrphanedFile,
    QuarantinedUnusedAsset,
    UnknownChange,
    UpdatedAssetPath,
    join_path,
)
from .stores import Store, transfer

METHOD_DATABASE = "database"
METHOD_CHANGESET = "changeset"
MODE_FROM = "from"
MODE_ONLY = "only"

SECONDS_PER_OPERATION = 0.1
PROGRESS_EVERY = 50


class RollbackSkip(Exception):
    """条目无需逆向（仅供记录或可再生）"""


@dataclass
class RollbackPlan:
    method: str
    total_operations: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_phase: Dict[str, int] = field(default_factory=dict)
    estimated_time: str = "< 1 minute"
    snapshot_size: int = 0


@dataclass
class RollbackResult:
    success: bool
    operations_reversed: int = 0
    phases_rolled_back: List[str] = field(default_factory=list)
    errors: int = 0
    skipped: int = 0
    dry_run: bool = False
    plan: Optional[RollbackPlan] = None
    error: Optional[str] = None
    error_messages: List[str] = field(default_factory=list)


def estimate_time(operations: int) -> str:
    seconds = operations * SECONDS_PER_OPERATION
    if seconds < 60:
        return "< 1 minute"
    return f"~{round(seconds / 60)} minutes"


def select_phases(phases: Optional[Iterable[str]], mode: str) -> List[str]:
    """
    根据模式确定要回滚的阶段（按阶段顺序）

    参数:
        phases: 指定阶段，为空表示全部
        mode: "from" 回滚指定阶段及其后所有阶段；"only" 只回滚指定阶段

    异常:
        ValueError: 未知阶段或模式
    """
    order = [p.value for p in PHASE_ORDER]
    if mode not in (MODE_FROM, MODE_ONLY):
        raise ValueError(f"未知的回滚模式: {mode}")
    if not phases:
        return order
    names = [str(getattr(p, 'value', p)).strip() for p in phases]
    unknown = [n for n in names if n not in order]
    if unknown:
        raise ValueError(f"未知的阶段: {', '.join(unknown)}")
    if mode == MODE_ONLY:
        return [p for p in order if p in names]
    start = min(order.index(n) for n in names)
    return order[start:]


class RollbackEngine:
    """回滚引擎"""

    def __init__(
        self,
        migration_id: str,
        changelog: ChangeLogManager,
        catalog: AssetCatalog,
        stores: Dict[str, Store],
        backups: Optional[BackupManager] = None,
    ):
        self.migration_id = migration_id
        self.changelog = changelog
        self.catalog = catalog
        self.stores = stores
        self.backups = backups
        self._handlers: Dict[type, Callable[[ChangeEntry], None]] = {
            MovedAsset: self._undo_moved_asset,
            FixedBrokenLink: self._undo_fixed_broken_link,
            UpdatedAssetPath: self._undo_updated_asset_path,
            QuarantinedUnusedAsset: self._undo_quarantined_asset,
            QuarantinedOrphanedFile: self._undo_quarantined_file,
            InlineImageLinked: self._undo_inline_image,
            BrokenLinkNotFixed: self._skip,
            DeletedTransform: self._skip,
            UnknownChange: self._skip,
        }

    def rollback(
        self,
        phases: Optional[Iterable[str]] = None,
        mode: str = MODE_FROM,
        dry_run: bool = False,
        method: Optional[str] = None,
    ) -> RollbackResult:
        """
        回滚迁移

        参数:
            phases: 要回滚的阶段，为空表示全部
            mode: "from" 或 "only"
            dry_run: 只生成计划，不做修改
            method: "database" 或 "changeset"（默认）

        返回:
            RollbackResult: 回滚结果
        """
        method = method or METHOD_CHANGESET
        if method == METHOD_DATABASE:
            return self._rollback_snapshot(dry_run)
        if method != METHOD_CHANGESET:
            return RollbackResult(success=False, dry_run=dry_run, error=f"未知的回滚方式: {method}")

        try:
            selected = select_phases(phases, mode)
        except ValueError as e:
            return RollbackResult(success=False, dry_run=dry_run, error=str(e))

        entries = self.changelog.load_changes(self.migration_id, phases=selected)
        plan = self.build_plan(entries)
        if not entries:
            return RollbackResult(success=False, dry_run=dry_run, plan=plan, error="没有可回滚的变更")
        if dry_run:
            return RollbackResult(success=True, dry_run=True, plan=plan,
                                  phases_rolled_back=self._phases_in_reverse(entries))
        return self._rollback_changes(entries, plan)

    def build_plan(self, entries: List[ChangeEntry]) -> RollbackPlan:
        plan = RollbackPlan(method=METHOD_CHANGESET, total_operations=len(entries))
        for entry in entries:
            entry_type = entry.type or getattr(entry, 'raw_type', '') or 'unknown'
            plan.by_type[entry_type] = plan.by_type.get(entry_type, 0) + 1
            plan.by_phase[entry.phase] = plan.by_phase.get(entry.phase, 0) + 1
        plan.estimated_time = estimate_time(len(entries))
        return plan

    @staticmethod
    def _phases_in_reverse(entries: List[ChangeEntry]) -> List[str]:
        present = {e.phase for e in entries}
        return [p.value for p in reversed(PHASE_ORDER) if p.value in present]

    def _rollback_changes(self, entries: List[ChangeEntry], plan: RollbackPlan) -> RollbackResult:
        result = RollbackResult(success=True, plan=plan, phases_rolled_back=self._phases_in_reverse(entries))
        ordered = sorted(entries, key=lambda e: e.sequence, reverse=True)
        logger.info(f"开始回滚迁移 {self.migration_id}: {len(ordered)} 条变更")

        for index, entry in enumerate(ordered, 1):
            handler = self._handlers.get(type(entry), self._skip)
            try:
                handler(entry)
                result.operations_reversed += 1
            except RollbackSkip:
                result.skipped += 1
            except Exception as e:
                result.errors += 1
                message = f"#{entry.sequence} {entry.type}: {e}"
                result.error_messages.append(message)
                logger.error(f"回滚失败 {message}")
            if index % PROGRESS_EVERY == 0:
                logger.info(f"回滚进度: {index}/{len(ordered)}")

        logger.info(
            f"回滚完成: 逆向 {result.operations_reversed}，跳过 {result.skipped}，失败 {result.errors}"
        )
        return result

    def _rollback_snapshot(self, dry_run: bool) -> RollbackResult:
        if self.backups is None or not self.backups.has_snapshot(self.migration_id):
            return RollbackResult(success=False, dry_run=dry_run,
                                  error=f"迁移 {self.migration_id} 没有可用的快照")
        plan = RollbackPlan(method=METHOD_DATABASE, snapshot_size=self.backups.snapshot_size(self.migration_id))
        if dry_run:
            return RollbackResult(success=True, dry_run=True, plan=plan)
        if not self.backups.restore_snapshot(self.migration_id, self.catalog):
            return RollbackResult(success=False, plan=plan, error="快照恢复失败")
        return RollbackResult(success=True, plan=plan, phases_rolled_back=[METHOD_DATABASE])

    # ------------------------------------------------------------------
    # 各类条目的逆操作
    # ------------------------------------------------------------------

    def _skip(self, entry: ChangeEntry) -> None:
        raise RollbackSkip(entry.type)

    def _asset(self, asset_id: str):
        asset = self.catalog.get_asset(asset_id)
        if asset is None:
            raise StoreNotFoundError("catalog", f"asset {asset_id}")
        return asset

    def _undo_moved_asset(self, entry: MovedAsset) -> None:
        asset = self._asset(entry.asset_id)
        target = self.stores[entry.to_location]
        target_path = join_path(entry.to_folder, entry.to_filename)
        source_path = join_path(entry.from_folder, entry.filename)
        if entry.deduplicated:
            # 目标文件不属于这次移动，只恢复源文件
            self.stores[entry.from_location].write(source_path, target.read(target_path))
        else:
            transfer(target, target_path, self.stores[entry.from_location], source_path)
        asset.location = entry.from_location
        asset.folder = entry.from_folder
        asset.filename = entry.filename
        self.catalog.save_asset(asset)

    def _undo_fixed_broken_link(self, entry: FixedBrokenLink) -> None:
        asset = self._asset(entry.asset_id)
        if entry.copied:
            target = self.stores[entry.target_location]
            if target.exists(entry.target_path):
                target.delete(entry.target_path)
        asset.location = entry.original_location
        asset.folder = entry.original_folder
        asset.filename = entry.original_filename or entry.filename
        self.catalog.save_asset(asset)

    def _undo_updated_asset_path(self, entry: UpdatedAssetPath) -> None:
        asset = self._asset(entry.asset_id)
        asset.location = entry.original_location
        self.catalog.save_asset(asset)

    def _undo_quarantined_asset(self, entry: QuarantinedUnusedAsset) -> None:
        asset = self._asset(entry.asset_id)
        transfer(
            self.stores[entry.quarantine_location], entry.quarantine_path,
            self.stores[entry.from_location], join_path(entry.from_folder, entry.filename),
        )
        asset.location = entry.from_location
        asset.folder = entry.from_folder
        asset.filename = entry.filename
        self.catalog.save_asset(asset)

    def _undo_quarantined_file(self, entry: QuarantinedOrphanedFile) -> None:
        quarantine = self.stores[entry.quarantine_location]
        source = self.stores[entry.source_location]
        source.write(entry.source_path, quarantine.read(entry.quarantine_path))
        quarantine.delete(entry.quarantine_path)

    def _undo_inline_image(self, entry: InlineImageLinked) -> None:
        self.catalog.update_content(entry.row_id, entry.original_content)
        for asset_id in entry.newly_used:
            asset = self.catalog.get_asset(asset_id)
            if asset is not None and asset.used:
                asset.used = False
                self.catalog.save_asset(asset)
