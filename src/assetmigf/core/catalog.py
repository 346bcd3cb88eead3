"""
资源目录（CMS 数据模型的外部协作方）

AssetCatalog 协议只暴露迁移所需的读写；JsonAssetCatalog 用一个 JSON 文件实现，
每次修改后原子写回。
"""

import json
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Protocol

from loguru import logger

from .errors import MigrationError
from .models import AssetRecord, ContentRow


class AssetCatalog(Protocol):

    def iter_assets(self) -> Iterator[AssetRecord]: ...

    def get_asset(self, asset_id: str) -> Optional[AssetRecord]: ...

    def save_asset(self, asset: AssetRecord) -> None: ...

    def iter_content_rows(self) -> Iterator[ContentRow]: ...

    def get_content_row(self, row_id: str) -> Optional[ContentRow]: ...

    def update_content(self, row_id: str, content: str) -> None: ...

    def snapshot(self) -> Dict[str, Any]: ...

    def restore(self, snapshot: Dict[str, Any]) -> None: ...


class CatalogError(MigrationError):
    """目录文件无法读取或写入"""


class JsonAssetCatalog:
    """JSON 文件形式的资源目录

    文件结构::

        {"assets": [{"id": ..., "filename": ..., "location": ..., ...}],
         "content": [{"id": ..., "field": ..., "content": ...}]}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._assets: Dict[str, AssetRecord] = {}
        self._rows: Dict[str, ContentRow] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.warning(f"资源目录文件不存在，将以空目录开始: {self.path}")
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"无法读取资源目录 {self.path}: {e}") from e
        self._apply(data)

    def _apply(self, data: Dict[str, Any]) -> None:
        self._assets = {}
        for item in data.get('assets', []):
            asset = AssetRecord(**{**item, 'id': str(item['id'])})
            self._assets[asset.id] = asset
        self._rows = {}
        for item in data.get('content', []):
            row = ContentRow(**{**item, 'id': str(item['id'])})
            self._rows[row.id] = row

    def _dump(self) -> Dict[str, Any]:
        return {
            'assets': [asdict(a) for a in self._assets.values()],
            'content': [asdict(r) for r in self._rows.values()],
        }

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(self._dump(), f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise CatalogError(f"无法写入资源目录 {self.path}: {e}") from e

    def iter_assets(self) -> Iterator[AssetRecord]:
        # 复制一份，避免迭代期间修改
        yield from [AssetRecord(**asdict(a)) for a in self._assets.values()]

    def get_asset(self, asset_id: str) -> Optional[AssetRecord]:
        asset = self._assets.get(str(asset_id))
        return AssetRecord(**asdict(asset)) if asset else None

    def save_asset(self, asset: AssetRecord) -> None:
        self._assets[asset.id] = AssetRecord(**asdict(asset))
        self._save()

    def iter_content_rows(self) -> Iterator[ContentRow]:
        yield from [ContentRow(**asdict(r)) for r in self._rows.values()]

    def get_content_row(self, row_id: str) -> Optional[ContentRow]:
        row = self._rows.get(str(row_id))
        return ContentRow(**asdict(row)) if row else None

    def update_content(self, row_id: str, content: str) -> None:
        row = self._rows.get(str(row_id))
        if row is None:
            raise CatalogError(f"内容行不存在: {row_id}")
        row.content = content
        self._save()

    def snapshot(self) -> Dict[str, Any]:
        return self._dump()

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self._apply(snapshot)
        self._save()

    @property
    def asset_count(self) -> int:
        return len(self._assets)
