"""
各阶段的单项处理

每个服务给出本阶段的待处理项、稳定的项 ID 以及单项处理函数。
单项处理返回 ItemResult；暂时性存储错误以异常抛出，由 ErrorRecoveryManager 决定是否重试。
"""

import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from urllib.parse import unquote, urlparse

from loguru import logger

from .catalog import AssetCatalog
from .changelog import ChangeLogManager
from .inventory import Analysis, InventoryBuilder
from .matcher import FileMatcher, SearchIndexes
from .models import (
    AssetRecord,
    ContentRow,
    DeletedTransform,
    FileRecord,
    FixedBrokenLink,
    InlineImageLinked,
    BrokenLinkNotFixed,
    ItemResult,
    MatchStrategy,
    MigrationRun,
    MovedAsset,
    Phase,
    QuarantinedOrphanedFile,
    QuarantinedUnusedAsset,
    UpdatedAssetPath,
    join_path,
)
from .stores import Store, transfer


@dataclass
class PhaseContext:
    """阶段服务共享的协作对象"""
    catalog: AssetCatalog
    stores: Dict[str, Store]
    changelog: ChangeLogManager
    run: MigrationRun
    inventory: InventoryBuilder
    target_store: str
    quarantine_store: str
    target_folder: str = ""

    @property
    def target(self) -> Store:
        return self.stores[self.target_store]

    @property
    def quarantine(self) -> Store:
        return self.stores[self.quarantine_store]


def unique_path(store: Store, path: str, tag: str) -> str:
    """目标已存在时在文件名后追加标签，必要时再追加序号"""
    if not store.exists(path):
        return path
    stem, ext = os.path.splitext(path)
    candidate = f"{stem}-{tag}{ext}"
    counter = 2
    while store.exists(candidate):
        candidate = f"{stem}-{tag}-{counter}{ext}"
        counter += 1
    return candidate


def same_content(store_a: Store, path_a: str, store_b: Store, path_b: str) -> bool:
    if not (store_a.exists(path_a) and store_b.exists(path_b)):
        return False
    if store_a.size(path_a) != store_b.size(path_b):
        return False
    return store_a.read(path_a) == store_b.read(path_b)


class PhaseService:
    """阶段服务基类"""

    phase: Phase

    def __init__(self, ctx: PhaseContext):
        self.ctx = ctx

    def items(self, analysis: Analysis) -> List[Any]:
        raise NotImplementedError

    def item_id(self, item: Any) -> str:
        raise NotImplementedError

    def process(self, item: Any) -> ItemResult:
        raise NotImplementedError

    def _refresh_asset(self, asset: AssetRecord) -> Optional[AssetRecord]:
        # 以目录中的最新记录为准，分析结果可能已过时
        return self.ctx.catalog.get_asset(asset.id)


# ---------------------------------------------------------------------------
# link_inline
# ---------------------------------------------------------------------------

IMG_SRC_PATTERN = re.compile(r'(<img\b[^>]*?\bsrc=)(["\'])(.*?)\2', re.IGNORECASE | re.DOTALL)
ASSET_REF_PREFIX = "{asset:"


class InlineLinkingService(PhaseService):
    """把内容中的内联图片地址改写为资源引用，并把资源标记为已使用"""

    phase = Phase.LINK_INLINE

    def __init__(self, ctx: PhaseContext):
        super().__init__(ctx)
        self._by_path: Dict[str, AssetRecord] = {}
        self._by_filename: Dict[str, List[AssetRecord]] = {}

    def _build_lookup(self) -> None:
        self._by_path = {}
        self._by_filename = {}
        for asset in self.ctx.catalog.iter_assets():
            self._by_path.setdefault(asset.path, asset)
            self._by_filename.setdefault(asset.filename, []).append(asset)

    def resolve_url(self, url: str) -> Optional[AssetRecord]:
        """按路径后缀（最长优先）查找资源，其次按唯一文件名"""
        if not url or url.startswith(ASSET_REF_PREFIX) or url.startswith('data:'):
            return None
        path = unquote(urlparse(url).path)
        segments = [s for s in path.split('/') if s]
        if not segments:
            return None
        for i in range(len(segments)):
            asset = self._by_path.get('/'.join(segments[i:]))
            if asset is not None:
                return asset
        matches = self._by_filename.get(segments[-1], [])
        return matches[0] if len(matches) == 1 else None

    def rewrite(self, content: str):
        """返回 (新内容, 引用到的资源列表)"""
        assets: List[AssetRecord] = []

        def replace(match):
            asset = self.resolve_url(match.group(3))
            if asset is None:
                return match.group(0)
            assets.append(asset)
            quote = match.group(2)
            return f"{match.group(1)}{quote}{{asset:{asset.id}:url}}{quote}"

        return IMG_SRC_PATTERN.sub(replace, content), assets

    def items(self, analysis: Analysis) -> List[ContentRow]:
        self._build_lookup()
        rows = []
        for row in self.ctx.catalog.iter_content_rows():
            _content, assets = self.rewrite(row.content)
            if assets:
                rows.append(row)
        return rows

    def item_id(self, item: ContentRow) -> str:
        return f"row:{item.id}"

    def process(self, item: ContentRow) -> ItemResult:
        row = self.ctx.catalog.get_content_row(item.id)
        if row is None:
            return ItemResult.skipped(f"内容行 {item.id} 已不存在")
        new_content, assets = self.rewrite(row.content)
        if not assets or new_content == row.content:
            return ItemResult.skipped("没有可链接的内联图片")

        newly_used = []
        for asset in {a.id: a for a in assets}.values():
            current = self.ctx.catalog.get_asset(asset.id)
            if current is not None and not current.used:
                current.used = True
                self.ctx.catalog.save_asset(current)
                newly_used.append(current.id)

        self.ctx.catalog.update_content(row.id, new_content)
        self.ctx.changelog.log_change(InlineImageLinked(
            row_id=row.id,
            field_name=row.field,
            original_content=row.content,
            new_content=new_content,
            asset_ids=sorted({a.id for a in assets}),
            newly_used=newly_used,
        ))
        self.ctx.run.bump('inline_linked')
        return ItemResult.done(f"{len(assets)} 个内联图片")


# ---------------------------------------------------------------------------
# fix_links
# ---------------------------------------------------------------------------

class LinkRepairService(PhaseService):
    """为断链资源寻找文件，复制到目标位置并更新记录"""

    phase = Phase.FIX_LINKS

    def __init__(self, ctx: PhaseContext, matcher: FileMatcher, file_inventory: List[FileRecord], indexes: SearchIndexes):
        super().__init__(ctx)
        self.matcher = matcher
        self.file_inventory = file_inventory
        self.indexes = indexes
        self.missing: List[Dict[str, Any]] = []
        self.review: List[Dict[str, Any]] = []

    def items(self, analysis: Analysis) -> List[AssetRecord]:
        return list(analysis.broken_links)

    def item_id(self, item: AssetRecord) -> str:
        return f"asset:{item.id}"

    def _probe(self, asset: AssetRecord):
        """在资源所在存储以外的源存储中检查预期路径"""
        def probe(path: str) -> Optional[FileRecord]:
            for name, store in self.ctx.stores.items():
                if name in (asset.location, self.ctx.quarantine_store):
                    continue
                if store.exists(path):
                    return FileRecord(location=name, path=path, size=store.size(path))
            return None
        return probe

    def process(self, item: AssetRecord) -> ItemResult:
        asset = self._refresh_asset(item)
        if asset is None:
            return ItemResult.skipped(f"资源 {item.id} 已不存在")
        store = self.ctx.stores.get(asset.location)
        if store is not None and store.exists(asset.path):
            return ItemResult.skipped("链接已恢复")

        result = self.matcher.find_match(
            asset.filename,
            asset.size,
            self.file_inventory,
            self.indexes,
            source_location=asset.location,
            expected_path=asset.path,
            probe=self._probe(asset),
        )

        if not result.found:
            rejected = result.rejected
            self.ctx.changelog.log_change(BrokenLinkNotFixed(
                asset_id=asset.id,
                filename=asset.filename,
                reason="rejected_match" if rejected else "no_match",
                rejected_match=f"{rejected.file.location}:{rejected.file.path}" if rejected else None,
                rejected_confidence=rejected.confidence if rejected else None,
            ))
            self.missing.append({'asset_id': asset.id, 'filename': asset.filename,
                                 'rejected_confidence': result.rejected_confidence})
            self.ctx.run.bump('broken_links_not_fixed')
            return ItemResult.not_found(f"未找到 {asset.filename}")

        candidate = result.candidate
        if candidate.strategy is MatchStrategy.EXPECTED_PATH:
            original_location = asset.location
            asset.location = candidate.file.location
            self.ctx.catalog.save_asset(asset)
            self.ctx.changelog.log_change(UpdatedAssetPath(
                asset_id=asset.id,
                filename=asset.filename,
                original_location=original_location,
                new_location=asset.location,
                path=asset.path,
            ))
            self.ctx.run.bump('assets_updated')
            return ItemResult.done("仅更新记录位置")

        return self._copy_match(asset, candidate, result.low_confidence)

    def _copy_match(self, asset: AssetRecord, candidate, low_confidence: bool) -> ItemResult:
        source = self.ctx.stores[candidate.file.location]
        target = self.ctx.target
        target_path = join_path(self.ctx.target_folder, asset.filename)
        copied = True

        if candidate.file.location == target.name and candidate.file.path == target_path:
            copied = False
        elif target.exists(target_path):
            if same_content(source, candidate.file.path, target, target_path):
                copied = False
            else:
                target_path = unique_path(target, target_path, asset.id)
        if copied:
            target.write(target_path, source.read(candidate.file.path))

        entry = FixedBrokenLink(
            asset_id=asset.id,
            filename=asset.filename,
            matched_file=candidate.file.filename,
            source_location=candidate.file.location,
            source_path=candidate.file.path,
            target_location=target.name,
            target_path=target_path,
            strategy=candidate.strategy.value,
            confidence=round(candidate.confidence, 4),
            original_location=asset.location,
            original_folder=asset.folder,
            original_filename=asset.filename,
            copied=copied,
            needs_review=low_confidence,
        )
        asset.location = target.name
        asset.folder = self.ctx.target_folder
        asset.filename = target_path.rsplit('/', 1)[-1]
        self.ctx.catalog.save_asset(asset)
        self.ctx.changelog.log_change(entry)

        self.ctx.run.bump('broken_links_fixed')
        if low_confidence:
            self.ctx.run.bump('low_confidence_matches')
            self.review.append({
                'asset_id': asset.id,
                'filename': entry.filename,
                'matched': entry.matched_file,
                'strategy': entry.strategy,
                'confidence': entry.confidence,
            })
        logger.debug(
            f"修复断链 {entry.filename} <- {entry.source_location}:{entry.source_path} "
            f"({entry.strategy}, {entry.confidence:.2f})"
        )
        return ItemResult.done(entry.strategy)


# ---------------------------------------------------------------------------
# consolidate
# ---------------------------------------------------------------------------

class ConsolidationService(PhaseService):
    """把位置错误的已使用资源移动到目标位置"""

    phase = Phase.CONSOLIDATE

    def items(self, analysis: Analysis) -> List[AssetRecord]:
        return list(analysis.used_wrong_location)

    def item_id(self, item: AssetRecord) -> str:
        return f"asset:{item.id}"

    def _owned_by_other(self, asset: AssetRecord, location: str, path: str) -> bool:
        return any(
            other.id != asset.id and other.location == location and other.path == path
            for other in self.ctx.catalog.iter_assets()
        )

    def process(self, item: AssetRecord) -> ItemResult:
        asset = self._refresh_asset(item)
        if asset is None:
            return ItemResult.skipped(f"资源 {item.id} 已不存在")
        if self.ctx.inventory.is_correct_location(asset):
            return ItemResult.skipped("已在目标位置")

        source = self.ctx.stores.get(asset.location)
        if source is None:
            return ItemResult.failed(f"未知的存储: {asset.location}")
        target = self.ctx.target
        target_path = join_path(self.ctx.target_folder, asset.filename)

        deduplicated = False
        if (not self._owned_by_other(asset, target.name, target_path)
                and same_content(source, asset.path, target, target_path)):
            # 无主的同内容文件：上次移动只完成了写入
            source.delete(asset.path)
            deduplicated = True
        else:
            target_path = unique_path(target, target_path, asset.id)
            transfer(source, asset.path, target, target_path)

        entry = MovedAsset(
            asset_id=asset.id,
            filename=asset.filename,
            from_location=asset.location,
            from_folder=asset.folder,
            to_location=target.name,
            to_folder=self.ctx.target_folder,
            to_filename=target_path.rsplit('/', 1)[-1],
            deduplicated=deduplicated,
        )
        asset.location = entry.to_location
        asset.folder = entry.to_folder
        asset.filename = entry.to_filename
        self.ctx.catalog.save_asset(asset)
        self.ctx.changelog.log_change(entry)
        self.ctx.run.bump('files_moved')
        return ItemResult.done()


# ---------------------------------------------------------------------------
# quarantine
# ---------------------------------------------------------------------------

QuarantineItem = Union[AssetRecord, FileRecord]


class QuarantineService(PhaseService):
    """把目标位置中未使用的资源和孤立文件移入隔离区"""

    phase = Phase.QUARANTINE

    def items(self, analysis: Analysis) -> List[QuarantineItem]:
        return [*analysis.unused_assets, *analysis.orphaned_files]

    def item_id(self, item: QuarantineItem) -> str:
        if isinstance(item, AssetRecord):
            return f"asset:{item.id}"
        return f"file:{item.location}/{item.path}"

    def process(self, item: QuarantineItem) -> ItemResult:
        if isinstance(item, AssetRecord):
            return self._quarantine_asset(item)
        return self._quarantine_file(item)

    def _quarantine_asset(self, item: AssetRecord) -> ItemResult:
        asset = self._refresh_asset(item)
        if asset is None:
            return ItemResult.skipped(f"资源 {item.id} 已不存在")
        if asset.used:
            return ItemResult.skipped("资源已被使用")
        if asset.location == self.ctx.quarantine_store:
            return ItemResult.skipped("已在隔离区")

        source = self.ctx.stores[asset.location]
        quarantine = self.ctx.quarantine
        quarantine_path = unique_path(quarantine, join_path("assets", asset.path), asset.id)
        transfer(source, asset.path, quarantine, quarantine_path)

        entry = QuarantinedUnusedAsset(
            asset_id=asset.id,
            filename=asset.filename,
            from_location=asset.location,
            from_folder=asset.folder,
            quarantine_location=quarantine.name,
            quarantine_path=quarantine_path,
        )
        folder, _, filename = quarantine_path.rpartition('/')
        asset.location = quarantine.name
        asset.folder = folder
        asset.filename = filename
        self.ctx.catalog.save_asset(asset)
        self.ctx.changelog.log_change(entry)
        self.ctx.run.bump('assets_quarantined')
        return ItemResult.done()

    def _quarantine_file(self, item: FileRecord) -> ItemResult:
        source = self.ctx.stores[item.location]
        if not source.exists(item.path):
            return ItemResult.skipped("文件已不存在")
        quarantine = self.ctx.quarantine
        quarantine_path = unique_path(quarantine, join_path("orphans", item.path), "orphan")
        size = source.size(item.path)
        transfer(source, item.path, quarantine, quarantine_path)
        self.ctx.changelog.log_change(QuarantinedOrphanedFile(
            source_location=item.location,
            source_path=item.path,
            quarantine_location=quarantine.name,
            quarantine_path=quarantine_path,
            size=size,
        ))
        self.ctx.run.bump('files_quarantined')
        return ItemResult.done()


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------

class CleanupService(PhaseService):
    """删除目标位置的变换产物，并核对已使用资源的文件"""

    phase = Phase.CLEANUP

    def items(self, analysis: Analysis) -> List[FileRecord]:
        return list(analysis.transform_files)

    def item_id(self, item: FileRecord) -> str:
        return f"transform:{item.location}/{item.path}"

    def process(self, item: FileRecord) -> ItemResult:
        store = self.ctx.stores[item.location]
        if not store.exists(item.path):
            return ItemResult.skipped("文件已不存在")
        size = store.size(item.path)
        store.delete(item.path)
        self.ctx.changelog.log_change(DeletedTransform(location=item.location, path=item.path, size=size))
        self.ctx.run.bump('transforms_deleted')
        return ItemResult.done()

    def verify(self) -> List[str]:
        """返回文件仍缺失的已使用资源 ID"""
        missing = []
        for asset in self.ctx.catalog.iter_assets():
            if not asset.used:
                continue
            store = self.ctx.stores.get(asset.location)
            if store is None or not store.exists(asset.path):
                missing.append(asset.id)
        self.ctx.run.stats['verification_missing'] = len(missing)
        if missing:
            logger.warning(f"核对完成: {len(missing)} 个已使用资源仍缺少文件")
        else:
            logger.info("核对完成: 所有已使用资源的文件均存在")
        return missing
