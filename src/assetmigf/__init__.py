"""
资源迁移包
分阶段、可恢复、可回滚的资源迁移：锁、检查点、变更日志、错误恢复与文件匹配
"""

__version__ = "0.1.0"

from .config import MigrationConfig, load_config
from .core.changelog import ChangeLogManager
from .core.checkpoint import CheckpointManager
from .core.lock import MigrationLock
from .core.matcher import FileMatcher, build_search_indexes, normalize_filename
from .core.orchestrator import MigrationOptions, MigrationOrchestrator
from .core.recovery import ErrorRecoveryManager
from .core.rollback import RollbackEngine

__all__ = [
    # 配置
    'MigrationConfig',
    'load_config',
    # 核心组件
    'MigrationLock',
    'ErrorRecoveryManager',
    'FileMatcher',
    'build_search_indexes',
    'normalize_filename',
    'ChangeLogManager',
    'CheckpointManager',
    'RollbackEngine',
    # 编排
    'MigrationOrchestrator',
    'MigrationOptions',
]
