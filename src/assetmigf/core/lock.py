"""迁移锁

使用 SQLite 存储租约，保证同一时刻只有一个迁移进程修改存储。
"""

import os
import socket
import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .errors import LockStoreError
from .models import LockInfo

POLL_INTERVAL = 0.5


def process_identity() -> str:
    """当前进程标识 host:pid"""
    return f"{socket.gethostname()}:{os.getpid()}"


class MigrationLock:
    """迁移锁 - 带过期时间的租约"""

    def __init__(
        self,
        db_path: Path,
        migration_id: str,
        lock_name: str = "migration_lock",
        lease_seconds: int = 43200,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """初始化迁移锁

        Args:
            db_path: 锁数据库路径
            migration_id: 当前迁移 ID
            lock_name: 锁名称，同名锁互斥
            lease_seconds: 租约时长（秒）
            clock: 时间函数，测试时可替换
            sleep: 等待函数，测试时可替换
        """
        self.db_path = Path(db_path)
        self.migration_id = migration_id
        self.lock_name = lock_name
        self.lease_seconds = lease_seconds
        self.identity = process_identity()
        self._clock = clock
        self._sleep = sleep
        self._held = False
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None: 事务由我们显式控制
            self.conn = sqlite3.connect(str(self.db_path), timeout=10, isolation_level=None)
            self._init_tables()
        except (sqlite3.Error, OSError) as e:
            raise LockStoreError(f"锁存储不可用 {self.db_path}: {e}") from e

    def _init_tables(self) -> None:
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS migration_locks (
                lock_name TEXT PRIMARY KEY,
                migration_id TEXT NOT NULL,
                locked_at REAL NOT NULL,
                locked_by TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)

    @property
    def is_held(self) -> bool:
        return self._held

    def _try_claim(self, force_steal_if_same_id: bool) -> bool:
        now = self._clock()
        expires_at = now + self.lease_seconds
        cursor = self.conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            # 清理过期锁
            cursor.execute(
                "DELETE FROM migration_locks WHERE lock_name = ? AND expires_at <= ?",
                (self.lock_name, now),
            )
            cursor.execute(
                "SELECT migration_id FROM migration_locks WHERE lock_name = ?",
                (self.lock_name,),
            )
            row = cursor.fetchone()
            if row is None:
                cursor.execute(
                    "INSERT INTO migration_locks (lock_name, migration_id, locked_at, locked_by, expires_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (self.lock_name, self.migration_id, now, self.identity, expires_at),
                )
                claimed = True
            elif row[0] == self.migration_id:
                if force_steal_if_same_id:
                    cursor.execute(
                        "UPDATE migration_locks SET locked_at = ?, locked_by = ?, expires_at = ? "
                        "WHERE lock_name = ?",
                        (now, self.identity, expires_at, self.lock_name),
                    )
                else:
                    cursor.execute(
                        "UPDATE migration_locks SET expires_at = ? WHERE lock_name = ?",
                        (expires_at, self.lock_name),
                    )
                claimed = True
            else:
                claimed = False
            cursor.execute("COMMIT")
        except sqlite3.Error:
            cursor.execute("ROLLBACK")
            raise
        return claimed

    def acquire(self, timeout_seconds: float = 3, force_steal_if_same_id: bool = False) -> bool:
        """获取锁

        Args:
            timeout_seconds: 最长等待时间
            force_steal_if_same_id: 同一迁移 ID 的锁由本进程接管（恢复时使用）

        Returns:
            是否获取成功；被其他迁移持有时返回 False
        """
        deadline = self._clock() + timeout_seconds
        try:
            while True:
                if self._try_claim(force_steal_if_same_id):
                    self._held = True
                    logger.info(f"已获取迁移锁 {self.lock_name} (迁移 {self.migration_id})")
                    return True
                if self._clock() >= deadline:
                    break
                self._sleep(POLL_INTERVAL)
        except sqlite3.Error as e:
            raise LockStoreError(f"锁存储不可用: {e}") from e

        holder = self.current()
        if holder:
            logger.warning(
                f"迁移锁被占用: 迁移 {holder.migration_id}，持有者 {holder.locked_by}，"
                f"剩余 {max(0, int(holder.expires_at - self._clock()))} 秒"
            )
        return False

    def refresh(self) -> bool:
        """延长租约"""
        if not self._held:
            return False
        try:
            cursor = self.conn.execute(
                "UPDATE migration_locks SET expires_at = ? WHERE lock_name = ? AND migration_id = ?",
                (self._clock() + self.lease_seconds, self.lock_name, self.migration_id),
            )
        except sqlite3.Error as e:
            raise LockStoreError(f"刷新迁移锁失败: {e}") from e
        if cursor.rowcount == 0:
            logger.warning(f"迁移锁已丢失，无法刷新 (迁移 {self.migration_id})")
            self._held = False
            return False
        logger.debug(f"迁移锁已刷新 (迁移 {self.migration_id})")
        return True

    def release(self) -> None:
        """释放锁，可重复调用"""
        try:
            self.conn.execute(
                "DELETE FROM migration_locks WHERE lock_name = ? AND migration_id = ?",
                (self.lock_name, self.migration_id),
            )
        except sqlite3.Error as e:
            raise LockStoreError(f"释放迁移锁失败: {e}") from e
        if self._held:
            logger.info(f"已释放迁移锁 (迁移 {self.migration_id})")
        self._held = False

    def current(self) -> Optional[LockInfo]:
        """当前锁记录（可能已过期）"""
        try:
            row = self.conn.execute(
                "SELECT lock_name, migration_id, locked_at, locked_by, expires_at "
                "FROM migration_locks WHERE lock_name = ?",
                (self.lock_name,),
            ).fetchone()
        except sqlite3.Error as e:
            raise LockStoreError(f"读取迁移锁失败: {e}") from e
        return LockInfo(*row) if row else None

    def force_release_all(self) -> int:
        """删除所有锁记录，返回删除数量"""
        try:
            cursor = self.conn.execute("DELETE FROM migration_locks")
        except sqlite3.Error as e:
            raise LockStoreError(f"清除迁移锁失败: {e}") from e
        self._held = False
        return cursor.rowcount

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._held:
            self.release()
        self.close()
