"""
错误恢复模块

单项操作的有限次重试，以及累计错误数的熔断。
"""

import json
import time
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from loguru import logger

from .errors import ErrorThresholdExceeded, FatalMigrationError, PermanentItemError
from .models import ErrorRecord

T = TypeVar("T")

# 消息包含这些片段的错误不会通过重试恢复
PERMANENT_ERROR_PATTERNS = (
    'does not exist',
    'permission denied',
    'access denied',
    'invalid',
    'constraint violation',
)


def is_permanent_error(error: Exception) -> bool:
    """判断错误是否为永久性错误"""
    if isinstance(error, (PermanentItemError, PermissionError, FileNotFoundError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS)


class ErrorRecoveryManager:
    """错误恢复管理器"""

    def __init__(
        self,
        migration_id: str,
        error_log_dir: Path,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        retry_backoff: bool = True,
        error_threshold: int = 50,
        on_threshold: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        初始化错误恢复管理器

        参数:
            migration_id: 迁移 ID，用于错误日志文件名
            error_log_dir: 错误日志目录
            max_retries: 最多尝试次数
            retry_delay_ms: 重试基础延迟（毫秒）
            retry_backoff: 是否指数退避
            error_threshold: 累计错误数达到该值时熔断
            on_threshold: 熔断前的回调（保存检查点）
            sleep: 等待函数，测试时可替换
        """
        self.migration_id = migration_id
        self.error_log_dir = Path(error_log_dir)
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.retry_backoff = retry_backoff
        self.error_threshold = error_threshold
        self.on_threshold = on_threshold
        self._sleep = sleep

        self.errors: List[ErrorRecord] = []
        self.error_counts: Counter = Counter()
        self.retry_counts: Counter = Counter()
        self.last_error: Optional[Exception] = None

    @property
    def error_log_path(self) -> Path:
        return self.error_log_dir / f"migration-errors-{self.migration_id}.log"

    def _delay_for(self, attempt: int) -> float:
        delay_ms = self.retry_delay_ms
        if self.retry_backoff:
            delay_ms *= 2 ** (attempt - 1)
        return delay_ms / 1000.0

    def retry_operation(self, fn: Callable[[], T], operation_label: str) -> Optional[T]:
        """
        带重试地执行单项操作

        参数:
            fn: 无参操作
            operation_label: 操作标签，用于日志与统计

        返回:
            操作结果；全部尝试失败时返回 None，失败原因保存在 last_error
        """
        self.last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return fn()
            except FatalMigrationError:
                raise
            except Exception as e:
                self.last_error = e
                if is_permanent_error(e):
                    logger.warning(f"{operation_label} 永久性失败，不再重试: {e}")
                    return None
                if attempt >= self.max_retries:
                    logger.error(f"{operation_label} 在 {attempt} 次尝试后失败: {e}")
                    return None
                delay = self._delay_for(attempt)
                self.retry_counts[operation_label] += 1
                logger.warning(f"{operation_label} 第 {attempt} 次尝试失败，{delay:.1f} 秒后重试: {e}")
                if delay > 0:
                    self._sleep(delay)
        return None

    def track_error(self, operation: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        记录错误，累计数达到阈值时熔断

        参数:
            operation: 操作名称
            message: 错误消息
            context: 附加上下文

        异常:
            ErrorThresholdExceeded: 累计错误数达到阈值
        """
        record = ErrorRecord(operation=operation, message=message, context=context or {})
        self.errors.append(record)
        self.error_counts[operation] += 1
        self._write_error_log(record)
        logger.error(f"[{operation}] {message}")

        total = len(self.errors)
        if total >= self.error_threshold:
            logger.critical(f"错误数 {total} 达到阈值 {self.error_threshold}，停止迁移")
            if self.on_threshold is not None:
                try:
                    self.on_threshold(total)
                except Exception as e:
                    logger.error(f"熔断时保存检查点失败: {e}")
            raise ErrorThresholdExceeded(total, self.error_threshold)

    def _write_error_log(self, record: ErrorRecord) -> None:
        line = "[{}] {}: {} | Context: {}\n".format(
            record.timestamp,
            record.operation,
            record.message,
            json.dumps(record.context, ensure_ascii=False, default=str),
        )
        try:
            self.error_log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.error_log_path, 'a', encoding='utf-8') as f:
                f.write(line)
        except OSError as e:
            logger.error(f"无法写入错误日志 {self.error_log_path}: {e}")

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def get_retry_stats(self) -> Dict[str, Any]:
        return {
            'total_retries': sum(self.retry_counts.values()),
            'operations_retried': len(self.retry_counts),
        }

    def get_error_summary(self) -> Dict[str, Any]:
        return {
            'total_errors': len(self.errors),
            'by_operation': dict(self.error_counts),
            'error_log': str(self.error_log_path),
        }
