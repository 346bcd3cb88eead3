"""
检查点模块

完整检查点 <id>.json 用于恢复；快速状态 <id>.state.json 供监控读取。
两者都先写临时文件再 os.replace，避免崩溃时留下半个文件。
"""

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .errors import CheckpointError
from .models import Checkpoint, QuickState, validate_migration_id

STATE_SUFFIX = ".state.json"


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"读取 {path.name} 失败: {e}")
        return None


class CheckpointManager:
    """检查点管理器"""

    def __init__(self, checkpoint_dir: Path, migration_id: Optional[str] = None, clock=time.time):
        """
        参数:
            checkpoint_dir: 检查点目录
            migration_id: 当前迁移 ID；只读查询时可为空
            clock: 时间函数
        """
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self.migration_id = validate_migration_id(migration_id) if migration_id else None
        self._clock = clock
        self._last_timestamp = 0.0
        if self.migration_id:
            existing = self.load_latest_checkpoint(self.migration_id)
            if existing:
                self._last_timestamp = existing.timestamp

    def _checkpoint_path(self, migration_id: str) -> Path:
        path = (self.checkpoint_dir / f"{validate_migration_id(migration_id)}.json").resolve()
        if path.parent != self.checkpoint_dir.resolve():
            raise CheckpointError(f"非法的检查点路径: {path}")
        return path

    def _state_path(self, migration_id: str) -> Path:
        return self.checkpoint_dir / f"{validate_migration_id(migration_id)}{STATE_SUFFIX}"

    def _require_id(self) -> str:
        if not self.migration_id:
            raise CheckpointError("未指定迁移 ID")
        return self.migration_id

    def _next_timestamp(self) -> float:
        # 同一迁移内时间戳不回退
        self._last_timestamp = max(self._clock(), self._last_timestamp)
        return self._last_timestamp

    def save_checkpoint(self, checkpoint: Checkpoint) -> Path:
        """
        保存完整检查点（覆盖同一迁移的上一个），并同步快速状态

        返回:
            Path: 检查点文件路径
        """
        migration_id = self._require_id()
        if checkpoint.migration_id != migration_id:
            raise CheckpointError(f"检查点属于其他迁移: {checkpoint.migration_id}")

        checkpoint.timestamp = self._next_timestamp()
        # 已处理 ID 只增不减：合并快速状态中可能更新的部分
        state = self.load_quick_state(migration_id)
        if state is not None:
            checkpoint.processed_ids = _union(checkpoint.processed_ids, state.processed_ids)

        path = self._checkpoint_path(migration_id)
        try:
            _write_json_atomic(path, checkpoint.to_dict())
        except OSError as e:
            raise CheckpointError(f"保存检查点失败 {path}: {e}") from e

        self.save_quick_state(QuickState(
            migration_id=migration_id,
            phase=checkpoint.run.phase,
            batch=checkpoint.batch,
            processed_count=len(checkpoint.processed_ids),
            processed_ids=list(checkpoint.processed_ids),
            stats=dict(checkpoint.run.stats),
            status=checkpoint.run.status,
        ))
        logger.debug(
            f"检查点已保存: 阶段 {checkpoint.phase.value}，已处理 {len(checkpoint.processed_ids)} 项"
        )
        return path

    def save_quick_state(self, state: QuickState) -> None:
        """保存快速状态"""
        state.timestamp = self._next_timestamp()
        state.processed_count = len(state.processed_ids)
        path = self._state_path(state.migration_id)
        try:
            _write_json_atomic(path, state.to_dict())
        except OSError as e:
            raise CheckpointError(f"保存快速状态失败 {path}: {e}") from e

    def load_latest_checkpoint(self, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        """
        读取检查点

        参数:
            checkpoint_id: 迁移 ID；为空时返回最新的检查点

        返回:
            Optional[Checkpoint]: 检查点，不存在或损坏时为 None
        """
        if checkpoint_id:
            path = self._checkpoint_path(checkpoint_id)
            if not path.exists():
                return None
        else:
            files = self._checkpoint_files()
            if not files:
                return None
            path = files[0]

        data = _read_json(path)
        if data is None:
            return None
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"检查点格式无效 {path.name}: {e}")
            return None

    def load_quick_state(self, migration_id: Optional[str] = None) -> Optional[QuickState]:
        """读取快速状态；未指定 ID 时取当前迁移，再退到最新的一个"""
        migration_id = migration_id or self.migration_id
        if migration_id:
            path = self._state_path(migration_id)
            if not path.exists():
                return None
        else:
            files = sorted(
                self.checkpoint_dir.glob(f"*{STATE_SUFFIX}"),
                key=lambda p: p.stat().st_mtime,
                reverse=True,
            )
            if not files:
                return None
            path = files[0]

        data = _read_json(path)
        if data is None:
            return None
        try:
            return QuickState.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"快速状态格式无效 {path.name}: {e}")
            return None

    def update_processed_ids(self, ids: Iterable[str]) -> int:
        """
        把已处理 ID 合并进快速状态（并集，不覆盖）

        返回:
            int: 合并后的总数
        """
        migration_id = self._require_id()
        state = self.load_quick_state(migration_id)
        if state is None:
            checkpoint = self.load_latest_checkpoint(migration_id)
            if checkpoint is not None:
                state = QuickState(
                    migration_id=migration_id,
                    phase=checkpoint.phase,
                    batch=checkpoint.batch,
                    processed_ids=list(checkpoint.processed_ids),
                    stats=dict(checkpoint.run.stats),
                )
            else:
                state = QuickState(migration_id=migration_id, phase="preparation")
        state.processed_ids = _union(state.processed_ids, ids)
        self.save_quick_state(state)
        return len(state.processed_ids)

    def _checkpoint_files(self) -> List[Path]:
        files = [
            p for p in self.checkpoint_dir.glob("*.json")
            if not p.name.endswith(STATE_SUFFIX)
        ]
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    def list_checkpoints(self) -> List[Dict[str, Any]]:
        """列出所有检查点，最新的在前"""
        result = []
        for path in self._checkpoint_files():
            data = _read_json(path)
            if data is None:
                continue
            run = data.get('run', {})
            result.append({
                'id': data.get('migration_id', path.stem),
                'phase': run.get('phase'),
                'status': run.get('status'),
                'timestamp': data.get('created_at'),
                'processed': len(data.get('processed_ids', [])),
                'file': str(path),
            })
        return result

    def cleanup_old_checkpoints(self, hours: int = 72, extra_dirs: Iterable[Path] = ()) -> Dict[str, int]:
        """
        删除超过保留期的检查点、快速状态及其他目录中的旧文件（变更日志、错误日志、快照）

        参数:
            hours: 保留时长（小时）
            extra_dirs: 一并清理的目录

        返回:
            dict: checkpoints_cleaned / changelogs_cleaned / space_freed
        """
        cutoff = self._clock() - hours * 3600
        result = {'checkpoints_cleaned': 0, 'changelogs_cleaned': 0, 'space_freed': 0}

        def purge(path: Path) -> bool:
            try:
                stat = path.stat()
                if stat.st_mtime >= cutoff:
                    return False
                path.unlink()
            except OSError as e:
                logger.warning(f"无法删除 {path}: {e}")
                return False
            result['space_freed'] += stat.st_size
            return True

        for path in list(self.checkpoint_dir.glob("*.json")):
            if path.name.endswith(STATE_SUFFIX):
                purge(path)
            elif purge(path):
                result['checkpoints_cleaned'] += 1

        for directory in extra_dirs:
            directory = Path(directory)
            if not directory.exists():
                continue
            for path in list(directory.iterdir()):
                if path.is_file() and purge(path) and path.suffix == ".jsonl":
                    result['changelogs_cleaned'] += 1

        if result['checkpoints_cleaned'] or result['changelogs_cleaned']:
            logger.info(
                f"已清理 {result['checkpoints_cleaned']} 个检查点、{result['changelogs_cleaned']} 个变更日志，"
                f"释放 {result['space_freed']} 字节"
            )
        return result

    def remove_quick_states(self) -> int:
        """删除全部快速状态文件"""
        removed = 0
        for path in self.checkpoint_dir.glob(f"*{STATE_SUFFIX}"):
            path.unlink()
            removed += 1
        return removed


def _union(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    """保持顺序的并集"""
    return list(dict.fromkeys([*existing, *new]))
