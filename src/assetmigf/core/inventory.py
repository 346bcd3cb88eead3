"""
清单与分析

扫描存储得到文件清单，结合资源目录把资源分为断链、位置错误、位置正确、未使用等类别。
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger

from .catalog import AssetCatalog
from .models import AssetRecord, FileRecord
from .stores import Store


def is_transform_path(path: str, prefix: str) -> bool:
    """路径中任一目录以前缀开头即视为变换产物"""
    if not prefix:
        return False
    return any(part.startswith(prefix) for part in path.split('/')[:-1])


@dataclass
class Analysis:
    """分析结果"""
    broken_links: List[AssetRecord] = field(default_factory=list)
    used_wrong_location: List[AssetRecord] = field(default_factory=list)
    used_correct_location: List[AssetRecord] = field(default_factory=list)
    unused_assets: List[AssetRecord] = field(default_factory=list)
    orphaned_files: List[FileRecord] = field(default_factory=list)
    transform_files: List[FileRecord] = field(default_factory=list)
    duplicates: Dict[str, List[FileRecord]] = field(default_factory=dict)

    def counts(self) -> Dict[str, int]:
        return {
            'broken_links': len(self.broken_links),
            'used_wrong_location': len(self.used_wrong_location),
            'used_correct_location': len(self.used_correct_location),
            'unused_assets': len(self.unused_assets),
            'orphaned_files': len(self.orphaned_files),
            'transform_files': len(self.transform_files),
            'duplicates': len(self.duplicates),
        }


class InventoryBuilder:
    """清单构建器"""

    def __init__(
        self,
        stores: Dict[str, Store],
        target_store: str,
        quarantine_store: str,
        target_folder: str = "",
        transform_prefix: str = "_",
    ):
        self.stores = stores
        self.target_store = target_store
        self.quarantine_store = quarantine_store
        self.target_folder = target_folder.strip('/')
        self.transform_prefix = transform_prefix

    def build_file_inventory(self) -> Tuple[List[FileRecord], List[FileRecord]]:
        """
        扫描除隔离区以外的所有存储

        返回:
            (文件清单, 目标存储中的变换产物)
        """
        files: List[FileRecord] = []
        transforms: List[FileRecord] = []
        for name, store in self.stores.items():
            if name == self.quarantine_store:
                continue
            count = 0
            for record in store.iter_files():
                if is_transform_path(record.path, self.transform_prefix):
                    if name == self.target_store:
                        transforms.append(record)
                    continue
                files.append(record)
                count += 1
            logger.info(f"存储 {name}: {count} 个文件")
        return files, transforms

    def _file_exists(self, asset: AssetRecord) -> bool:
        store = self.stores.get(asset.location)
        return store is not None and store.exists(asset.path)

    def is_correct_location(self, asset: AssetRecord) -> bool:
        return asset.location == self.target_store and asset.folder.strip('/') == self.target_folder

    def analyze(
        self,
        catalog: AssetCatalog,
        file_inventory: List[FileRecord],
        transform_files: Optional[List[FileRecord]] = None,
    ) -> Analysis:
        """分析资源与文件的对应关系"""
        analysis = Analysis(transform_files=list(transform_files or []))
        referenced: Set[Tuple[str, str]] = set()

        for asset in catalog.iter_assets():
            if asset.location == self.quarantine_store:
                continue
            referenced.add((asset.location, asset.path))
            if not self._file_exists(asset):
                analysis.broken_links.append(asset)
            elif asset.used:
                if self.is_correct_location(asset):
                    analysis.used_correct_location.append(asset)
                else:
                    analysis.used_wrong_location.append(asset)
            elif asset.location == self.target_store:
                analysis.unused_assets.append(asset)

        by_name: Dict[str, List[FileRecord]] = defaultdict(list)
        for record in file_inventory:
            by_name[record.filename].append(record)
            if record.location == self.target_store and (record.location, record.path) not in referenced:
                analysis.orphaned_files.append(record)

        analysis.duplicates = {name: files for name, files in by_name.items() if len(files) > 1}

        counts = analysis.counts()
        logger.info(
            "分析完成: 断链 {broken_links}，位置错误 {used_wrong_location}，位置正确 {used_correct_location}，"
            "未使用 {unused_assets}，孤立文件 {orphaned_files}，重复文件名 {duplicates}".format(**counts)
        )
        return analysis
