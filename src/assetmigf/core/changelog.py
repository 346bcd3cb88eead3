"""
变更日志模块

每次迁移一个 JSONL 文件，只追加。条目先缓冲，每 flush_every 条、阶段切换、
提示确认前和关闭时写入磁盘。
"""

import json
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .models import ChangeEntry, entry_from_dict, validate_migration_id


class ChangeLogManager:
    """变更日志管理器"""

    def __init__(self, log_dir: Path, migration_id: Optional[str] = None, flush_every: int = 5):
        """
        初始化变更日志管理器

        参数:
            log_dir: 变更日志目录
            migration_id: 迁移 ID，只读取时可为空
            flush_every: 缓冲多少条后写入
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.migration_id = validate_migration_id(migration_id) if migration_id else None
        self.flush_every = max(1, flush_every)
        self.phase = ""
        self._buffer: List[ChangeEntry] = []
        # 恢复时序号接在已有条目之后
        self._sequence = self._count_lines(self.log_path) if self.migration_id else 0

    @property
    def log_path(self) -> Path:
        return self._path_for(self.migration_id)

    def _path_for(self, migration_id: Optional[str]) -> Path:
        if not migration_id:
            raise ValueError("未指定迁移 ID")
        return self.log_dir / f"{validate_migration_id(migration_id)}.jsonl"

    @staticmethod
    def _count_lines(path: Path) -> int:
        if not path.exists():
            return 0
        with open(path, 'r', encoding='utf-8') as f:
            return sum(1 for line in f if line.strip())

    def set_phase(self, phase: str) -> None:
        """切换阶段，先写出上一阶段缓冲的条目"""
        self.flush()
        self.phase = str(getattr(phase, 'value', phase))
        logger.debug(f"变更日志阶段: {self.phase}")

    def log_change(self, entry: ChangeEntry) -> None:
        """记录一条变更"""
        self._sequence += 1
        entry.sequence = self._sequence
        entry.timestamp = datetime.now().isoformat()
        if not entry.phase:
            entry.phase = self.phase
        self._buffer.append(entry)
        if len(self._buffer) >= self.flush_every:
            self.flush()

    def flush(self) -> int:
        """写出缓冲区，返回写入条数"""
        if not self._buffer:
            return 0
        lines = [json.dumps(entry.to_dict(), ensure_ascii=False) + "\n" for entry in self._buffer]
        with open(self.log_path, 'a', encoding='utf-8') as f:
            f.writelines(lines)
        count = len(self._buffer)
        self._buffer = []
        logger.debug(f"变更日志已写入 {count} 条")
        return count

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def total_changes(self) -> int:
        return self._sequence

    def load_changes(self, migration_id: Optional[str] = None, phases: Optional[Iterable[str]] = None) -> List[ChangeEntry]:
        """
        按写入顺序读取变更

        参数:
            migration_id: 迁移 ID，默认当前迁移
            phases: 只返回这些阶段的条目

        返回:
            List[ChangeEntry]: 变更条目
        """
        migration_id = migration_id or self.migration_id
        if migration_id == self.migration_id:
            self.flush()
        path = self._path_for(migration_id)
        if not path.exists():
            return []
        wanted = {str(getattr(p, 'value', p)) for p in phases} if phases is not None else None
        entries = []
        with open(path, 'r', encoding='utf-8') as f:
            for number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    # 崩溃时可能留下半行
                    logger.warning(f"跳过损坏的变更日志行 {path.name}:{number}: {e}")
                    continue
                entry = entry_from_dict(data)
                if wanted is None or entry.phase in wanted:
                    entries.append(entry)
        return entries

    def get_phases_summary(self, migration_id: Optional[str] = None) -> Dict[str, int]:
        """每个阶段的变更数量"""
        return dict(Counter(entry.phase for entry in self.load_changes(migration_id)))

    def list_migrations(self) -> List[Dict[str, Any]]:
        """列出所有变更日志，最新的在前"""
        migrations = []
        for path in self.log_dir.glob("*.jsonl"):
            stat = path.stat()
            migrations.append({
                'id': path.stem,
                'timestamp': datetime.fromtimestamp(stat.st_mtime).isoformat(),
                'mtime': stat.st_mtime,
                'change_count': self._count_lines(path),
                'file': str(path),
            })
        migrations.sort(key=lambda m: m['mtime'], reverse=True)
        return migrations

    def close(self) -> None:
        self.flush()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
