"""
迁移锁测试
"""
import os

import pytest

from assetmigf.core.errors import LockStoreError
from assetmigf.core.lock import MigrationLock


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "state" / "locks.db"


def make_lock(db_path, clock, migration_id, lease_seconds=300):
    return MigrationLock(db_path, migration_id, lease_seconds=lease_seconds, clock=clock, sleep=clock.sleep)


class TestAcquire:
    """测试获取锁"""

    def test_acquire_free_lock(self, db_path, clock):
        """测试空闲时获取成功并记录持有者"""
        lock = make_lock(db_path, clock, "run-a")
        assert lock.acquire(timeout_seconds=0)
        info = lock.current()
        assert info.migration_id == "run-a"
        assert info.expires_at == clock.now + 300
        assert info.locked_by.endswith(f":{os.getpid()}")
        lock.close()

    def test_other_migration_blocked_until_expiry(self, db_path, clock):
        """测试租约到期前其他迁移无法获取，到期后可以"""
        a = make_lock(db_path, clock, "run-a")
        b = make_lock(db_path, clock, "run-b")
        assert a.acquire(timeout_seconds=0)

        clock.advance(299)
        assert not b.acquire(timeout_seconds=0)
        assert b.current().migration_id == "run-a"

        clock.advance(2)
        assert b.acquire(timeout_seconds=0)
        assert b.current().migration_id == "run-b"
        a.close()
        b.close()

    def test_lease_reclaimable_at_expiry_instant(self, db_path, clock):
        """测试租约恰好到期时即可被其他迁移获取"""
        a = make_lock(db_path, clock, "run-a")
        b = make_lock(db_path, clock, "run-b")
        assert a.acquire(timeout_seconds=0)
        clock.advance(300)
        assert b.acquire(timeout_seconds=0)
        assert b.current().migration_id == "run-b"
        a.close()
        b.close()

    def test_acquire_waits_for_expiry_within_timeout(self, db_path, clock):
        """测试等待期间锁过期时获取成功"""
        a = make_lock(db_path, clock, "run-a", lease_seconds=1)
        b = make_lock(db_path, clock, "run-b")
        assert a.acquire(timeout_seconds=0)
        assert b.acquire(timeout_seconds=3)
        a.close()
        b.close()

    def test_acquire_times_out(self, db_path, clock):
        """测试超时后返回 False"""
        a = make_lock(db_path, clock, "run-a")
        b = make_lock(db_path, clock, "run-b")
        assert a.acquire(timeout_seconds=0)
        start = clock.now
        assert not b.acquire(timeout_seconds=2)
        assert clock.now >= start + 2
        a.close()
        b.close()

    def test_same_id_reentry(self, db_path, clock):
        """测试同一迁移 ID 可以再次获取并延长租约"""
        a = make_lock(db_path, clock, "run-a")
        assert a.acquire(timeout_seconds=0)
        clock.advance(100)
        again = make_lock(db_path, clock, "run-a")
        assert again.acquire(timeout_seconds=0)
        assert again.current().expires_at == clock.now + 300
        a.close()
        again.close()

    def test_force_steal_same_id_takes_over(self, db_path, clock):
        """测试恢复时接管同一迁移 ID 的锁"""
        a = make_lock(db_path, clock, "run-a")
        assert a.acquire(timeout_seconds=0)
        clock.advance(50)
        resumed = make_lock(db_path, clock, "run-a")
        assert resumed.acquire(timeout_seconds=0, force_steal_if_same_id=True)
        assert resumed.current().locked_at == clock.now
        a.close()
        resumed.close()


class TestRefreshAndRelease:
    """测试刷新与释放"""

    def test_refresh_extends_lease(self, db_path, clock):
        """测试刷新延长租约"""
        lock = make_lock(db_path, clock, "run-a")
        lock.acquire(timeout_seconds=0)
        clock.advance(200)
        assert lock.refresh()
        assert lock.current().expires_at == clock.now + 300
        lock.close()

    def test_refresh_after_lock_lost(self, db_path, clock):
        """测试锁被他人接管后刷新失败"""
        a = make_lock(db_path, clock, "run-a")
        b = make_lock(db_path, clock, "run-b")
        a.acquire(timeout_seconds=0)
        clock.advance(301)
        assert b.acquire(timeout_seconds=0)
        assert not a.refresh()
        assert not a.is_held
        a.close()
        b.close()

    def test_refresh_without_acquire(self, db_path, clock):
        """测试未持有时刷新返回 False"""
        lock = make_lock(db_path, clock, "run-a")
        assert not lock.refresh()
        lock.close()

    def test_release_is_idempotent(self, db_path, clock):
        """测试重复释放不报错，释放后他人可获取"""
        a = make_lock(db_path, clock, "run-a")
        a.acquire(timeout_seconds=0)
        a.release()
        a.release()
        assert a.current() is None

        b = make_lock(db_path, clock, "run-b")
        assert b.acquire(timeout_seconds=0)
        a.close()
        b.close()

    def test_release_does_not_remove_other_holder(self, db_path, clock):
        """测试释放只删除自己的锁"""
        a = make_lock(db_path, clock, "run-a")
        b = make_lock(db_path, clock, "run-b")
        a.acquire(timeout_seconds=0)
        b.release()
        assert a.current().migration_id == "run-a"
        a.close()
        b.close()

    def test_context_manager_releases(self, db_path, clock):
        """测试 with 语句结束时释放"""
        with make_lock(db_path, clock, "run-a") as lock:
            assert lock.acquire(timeout_seconds=0)
        with make_lock(db_path, clock, "run-b") as other:
            assert other.current() is None

    def test_force_release_all(self, db_path, clock):
        """测试强制清除所有锁"""
        a = make_lock(db_path, clock, "run-a")
        a.acquire(timeout_seconds=0)
        admin = make_lock(db_path, clock, "admin")
        assert admin.force_release_all() == 1
        assert admin.current() is None
        a.close()
        admin.close()


class TestLockStore:
    """测试锁存储不可用"""

    def test_unusable_database_path(self, tmp_path, clock):
        """测试数据库路径是目录时抛出 LockStoreError"""
        db_dir = tmp_path / "locks.db"
        db_dir.mkdir()
        with pytest.raises(LockStoreError):
            make_lock(db_dir, clock, "run-a")
