"""
错误恢复模块测试
"""
import pytest

from assetmigf.core.checkpoint import CheckpointManager
from assetmigf.core.errors import (
    ErrorThresholdExceeded,
    FatalMigrationError,
    PermanentItemError,
    StoreIOError,
    StoreNotFoundError,
)
from assetmigf.core.models import Checkpoint, MigrationRun
from assetmigf.core.recovery import ErrorRecoveryManager, is_permanent_error


class Flaky:
    """前 n 次调用失败的操作"""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or StoreIOError("target", "a.jpg", "disk busy")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def manager(tmp_path, sleeps):
    return ErrorRecoveryManager("run-1", tmp_path / "errors", retry_delay_ms=100, sleep=sleeps.append)


class TestPermanentErrors:
    """测试永久性错误识别"""

    @pytest.mark.parametrize("error", [
        StoreNotFoundError("legacy", "a.jpg"),
        PermanentItemError("bad record"),
        PermissionError("nope"),
        FileNotFoundError("missing"),
        ValueError("Invalid filename"),
        RuntimeError("Permission denied by server"),
    ])
    def test_permanent(self, error):
        """测试永久性错误"""
        assert is_permanent_error(error)

    def test_transient(self):
        """测试暂时性错误"""
        assert not is_permanent_error(StoreIOError("target", "a.jpg", "connection reset"))
        assert not is_permanent_error(TimeoutError("timed out"))


class TestRetryOperation:
    """测试重试"""

    def test_success_first_try(self, manager, sleeps):
        """测试一次成功不等待"""
        assert manager.retry_operation(lambda: 42, "op") == 42
        assert sleeps == []
        assert manager.last_error is None

    def test_transient_failure_then_success(self, manager, sleeps):
        """测试暂时性失败后重试成功，延迟指数增长"""
        op = Flaky(2)
        assert manager.retry_operation(op, "op") == "ok"
        assert op.calls == 3
        assert sleeps == [0.1, 0.2]
        assert manager.get_retry_stats() == {'total_retries': 2, 'operations_retried': 1}

    def test_without_backoff(self, tmp_path, sleeps):
        """测试关闭退避时延迟固定"""
        manager = ErrorRecoveryManager("run-1", tmp_path, retry_delay_ms=100, retry_backoff=False,
                                       sleep=sleeps.append)
        manager.retry_operation(Flaky(2), "op")
        assert sleeps == [0.1, 0.1]

    def test_exhausted_returns_none(self, manager):
        """测试尝试次数用尽后返回 None 并保留最后的错误"""
        op = Flaky(10)
        assert manager.retry_operation(op, "op") is None
        assert op.calls == 3
        assert isinstance(manager.last_error, StoreIOError)

    def test_permanent_error_not_retried(self, manager, sleeps):
        """测试永久性错误只尝试一次"""
        op = Flaky(10, error=StoreNotFoundError("legacy", "a.jpg"))
        assert manager.retry_operation(op, "op") is None
        assert op.calls == 1
        assert sleeps == []

    def test_fatal_error_propagates(self, manager):
        """测试致命错误直接抛出"""
        op = Flaky(1, error=FatalMigrationError("lock lost"))
        with pytest.raises(FatalMigrationError):
            manager.retry_operation(op, "op")
        assert op.calls == 1

    def test_zero_delay_skips_sleep(self, tmp_path, sleeps):
        """测试延迟为 0 时不调用 sleep"""
        manager = ErrorRecoveryManager("run-1", tmp_path, retry_delay_ms=0, sleep=sleeps.append)
        assert manager.retry_operation(Flaky(2), "op") == "ok"
        assert sleeps == []


class TestTrackError:
    """测试错误记录与熔断"""

    def test_error_log_written(self, manager):
        """测试错误写入日志文件"""
        manager.track_error("fix_links", "copy failed", {'item': "asset:1", 'name': "图片.jpg"})
        content = manager.error_log_path.read_text(encoding='utf-8')
        assert manager.error_log_path.name == "migration-errors-run-1.log"
        assert "fix_links: copy failed | Context: " in content
        assert "图片.jpg" in content
        assert manager.error_count == 1
        assert manager.get_error_summary()['by_operation'] == {'fix_links': 1}

    def test_threshold_raises_on_third_error(self, tmp_path):
        """测试第三个错误触发熔断，且熔断前保存检查点"""
        checkpoints = CheckpointManager(tmp_path / "checkpoints", "run-1")
        run = MigrationRun(id="run-1")

        def on_threshold(total):
            checkpoints.save_checkpoint(Checkpoint(
                run=run, payload={'error_threshold_exceeded': True, 'error_count': total},
            ))

        manager = ErrorRecoveryManager("run-1", tmp_path / "errors", error_threshold=3, on_threshold=on_threshold)
        manager.track_error("consolidate", "first")
        manager.track_error("consolidate", "second")
        assert checkpoints.load_latest_checkpoint("run-1") is None

        with pytest.raises(ErrorThresholdExceeded) as exc_info:
            manager.track_error("consolidate", "third")
        assert exc_info.value.count == 3
        assert exc_info.value.threshold == 3

        checkpoint = checkpoints.load_latest_checkpoint("run-1")
        assert checkpoint.payload['error_threshold_exceeded'] is True
        assert checkpoint.payload['error_count'] == 3

    def test_threshold_callback_failure_still_raises(self, tmp_path):
        """测试回调失败时仍然熔断"""
        def broken(total):
            raise OSError("disk full")

        manager = ErrorRecoveryManager("run-1", tmp_path, error_threshold=1, on_threshold=broken)
        with pytest.raises(ErrorThresholdExceeded):
            manager.track_error("cleanup", "boom")
