"""迁移前的资源目录快照，供整体回滚使用"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .catalog import AssetCatalog
from .models import validate_migration_id


class BackupManager:
    """快照管理器"""

    def __init__(self, backup_dir: Path):
        self.backup_dir = Path(backup_dir)

    def snapshot_path(self, migration_id: str) -> Path:
        return self.backup_dir / f"migration_{validate_migration_id(migration_id)}_snapshot.json"

    def create_snapshot(self, migration_id: str, catalog: AssetCatalog) -> Path:
        """保存资源目录快照"""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        path = self.snapshot_path(migration_id)
        data = {
            'migration_id': migration_id,
            'created_at': datetime.now().isoformat(),
            'catalog': catalog.snapshot(),
        }
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
        logger.info(f"已创建迁移前快照: {path} ({path.stat().st_size} 字节)")
        return path

    def has_snapshot(self, migration_id: str) -> bool:
        path = self.snapshot_path(migration_id)
        return path.exists() and path.stat().st_size > 0

    def snapshot_size(self, migration_id: str) -> int:
        path = self.snapshot_path(migration_id)
        return path.stat().st_size if path.exists() else 0

    def load_snapshot(self, migration_id: str) -> Optional[Dict[str, Any]]:
        if not self.has_snapshot(migration_id):
            return None
        with open(self.snapshot_path(migration_id), 'r', encoding='utf-8') as f:
            return json.load(f)

    def restore_snapshot(self, migration_id: str, catalog: AssetCatalog) -> bool:
        """用快照覆盖资源目录，快照不存在时返回 False"""
        data = self.load_snapshot(migration_id)
        if data is None:
            logger.error(f"找不到迁移 {migration_id} 的快照")
            return False
        catalog.restore(data['catalog'])
        logger.info(f"已从快照恢复资源目录: {self.snapshot_path(migration_id)}")
        return True
