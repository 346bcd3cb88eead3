"""迁移异常体系"""


class MigrationError(Exception):
    """所有迁移错误的基类"""


class ConfigError(MigrationError):
    """配置无效"""


class CheckpointError(MigrationError):
    """检查点读写失败或标识非法"""


class StoreError(MigrationError):
    """存储后端错误"""

    def __init__(self, location: str, path: str, message: str):
        self.location = location
        self.path = path
        super().__init__(f"[{location}] {path}: {message}")


class StoreNotFoundError(StoreError):
    """路径不存在"""

    def __init__(self, location: str, path: str):
        super().__init__(location, path, "file does not exist")


class StoreIOError(StoreError):
    """读写失败（可能是暂时性的）"""


class PermanentItemError(MigrationError):
    """单项操作的永久性失败，不应重试"""


class FatalMigrationError(MigrationError):
    """不可恢复，必须中止本次运行"""


class ErrorThresholdExceeded(FatalMigrationError):
    """累计错误数达到阈值（熔断）"""

    def __init__(self, count: int, threshold: int):
        self.count = count
        self.threshold = threshold
        super().__init__(f"错误数 {count} 达到阈值 {threshold}，迁移已中止")


class LockStoreError(FatalMigrationError):
    """锁存储不可用"""


class HealthCheckError(FatalMigrationError):
    """存储健康检查失败"""
