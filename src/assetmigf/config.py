"""
迁移全局配置模块

默认值以模块常量给出，运行时通过 MigrationConfig 一次性构造后注入各组件。
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli
from loguru import logger

from .core.errors import ConfigError

# 状态目录（检查点、变更日志、锁、快照）
DEFAULT_STATE_DIR = Path.home() / ".assetmigf"

# 批处理
DEFAULT_BATCH_SIZE = 100
DEFAULT_CHECKPOINT_EVERY_BATCHES = 1
DEFAULT_CHANGELOG_FLUSH_EVERY = 5

# 重试与熔断
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_ERROR_THRESHOLD = 50

# 保留期
DEFAULT_CHECKPOINT_RETENTION_HOURS = 72

# 锁
DEFAULT_LOCK_NAME = "migration_lock"
DEFAULT_LOCK_TIMEOUT_SECONDS = 43200  # 12 小时
DEFAULT_LOCK_ACQUIRE_TIMEOUT_SECONDS = 3
DEFAULT_LOCK_REFRESH_SECONDS = 60

# 匹配阈值（两者相互独立）
LOW_CONFIDENCE_THRESHOLD = 0.85
MIN_FUZZY_CONFIDENCE = 0.70
FUZZY_MAX_DISTANCE = 5
FUZZY_MAX_CANDIDATES = 5

# 以此前缀开头的目录视为缩略图/变换产物
TRANSFORM_PREFIX = "_"


@dataclass
class MigrationConfig:
    """迁移配置"""
    state_dir: Path = DEFAULT_STATE_DIR
    catalog_path: Optional[Path] = None

    # 存储位置: 名称 -> 根目录
    store_roots: Dict[str, Path] = field(default_factory=dict)
    target_store: str = "target"
    quarantine_store: str = "quarantine"
    source_stores: List[str] = field(default_factory=list)
    target_folder: str = ""

    batch_size: int = DEFAULT_BATCH_SIZE
    checkpoint_every_batches: int = DEFAULT_CHECKPOINT_EVERY_BATCHES
    changelog_flush_every: int = DEFAULT_CHANGELOG_FLUSH_EVERY

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    retry_backoff: bool = True
    error_threshold: int = DEFAULT_ERROR_THRESHOLD

    checkpoint_retention_hours: int = DEFAULT_CHECKPOINT_RETENTION_HOURS

    lock_name: str = DEFAULT_LOCK_NAME
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    lock_acquire_timeout_seconds: int = DEFAULT_LOCK_ACQUIRE_TIMEOUT_SECONDS
    lock_refresh_seconds: int = DEFAULT_LOCK_REFRESH_SECONDS

    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD
    min_fuzzy_confidence: float = MIN_FUZZY_CONFIDENCE
    fuzzy_max_distance: int = FUZZY_MAX_DISTANCE
    fuzzy_max_candidates: int = FUZZY_MAX_CANDIDATES

    transform_prefix: str = TRANSFORM_PREFIX

    def __post_init__(self):
        self.state_dir = Path(self.state_dir)
        if self.catalog_path is not None:
            self.catalog_path = Path(self.catalog_path)
        self.store_roots = {name: Path(root) for name, root in self.store_roots.items()}

    @property
    def checkpoint_dir(self) -> Path:
        return self.state_dir / "checkpoints"

    @property
    def changelog_dir(self) -> Path:
        return self.state_dir / "changelogs"

    @property
    def error_log_dir(self) -> Path:
        return self.state_dir / "errors"

    @property
    def backup_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def lock_db_path(self) -> Path:
        return self.state_dir / "locks.db"

    @property
    def log_root(self) -> Path:
        return self.state_dir

    def validate(self) -> None:
        """校验配置，发现问题时抛出 ConfigError"""
        problems = []
        if self.batch_size < 1:
            problems.append("batch_size 必须 >= 1")
        if self.checkpoint_every_batches < 1:
            problems.append("checkpoint_every_batches 必须 >= 1")
        if self.changelog_flush_every < 1:
            problems.append("changelog_flush_every 必须 >= 1")
        if self.max_retries < 1:
            problems.append("max_retries 必须 >= 1")
        if self.error_threshold < 1:
            problems.append("error_threshold 必须 >= 1")
        for name in ("low_confidence_threshold", "min_fuzzy_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                problems.append(f"{name} 必须在 0 到 1 之间")
        if self.min_fuzzy_confidence > self.low_confidence_threshold:
            problems.append("min_fuzzy_confidence 不能大于 low_confidence_threshold")
        if self.target_store == self.quarantine_store:
            problems.append("目标存储与隔离存储不能相同")
        for name in [self.target_store, self.quarantine_store, *self.source_stores]:
            if name not in self.store_roots:
                problems.append(f"存储 '{name}' 未配置根目录")
        if problems:
            raise ConfigError("; ".join(problems))

    @property
    def all_stores(self) -> List[str]:
        """目标、隔离与所有源存储名称（去重且保持顺序）"""
        names = [self.target_store, *self.source_stores, self.quarantine_store]
        return list(dict.fromkeys(names))


def _from_dict(data: Dict[str, Any], base_dir: Path) -> MigrationConfig:
    migration = dict(data.get("migration", {}))
    stores = dict(data.get("stores", {}))
    catalog = data.get("catalog", {})

    def resolve(value) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else base_dir / path

    roots = {name: resolve(root) for name, root in stores.pop("roots", {}).items()}
    kwargs: Dict[str, Any] = {"store_roots": roots}
    for key in ("target", "quarantine"):
        if key in stores:
            kwargs[f"{key}_store"] = stores[key]
    if "sources" in stores:
        kwargs["source_stores"] = list(stores["sources"])
    if "target_folder" in stores:
        kwargs["target_folder"] = stores["target_folder"]
    if "path" in catalog:
        kwargs["catalog_path"] = resolve(catalog["path"])
    if "state_dir" in migration:
        kwargs["state_dir"] = resolve(migration.pop("state_dir"))

    known = set(MigrationConfig.__dataclass_fields__)
    for key, value in migration.items():
        if key not in known:
            raise ConfigError(f"未知的配置项: migration.{key}")
        kwargs[key] = value
    return MigrationConfig(**kwargs)


def load_config(path: Optional[Path] = None) -> MigrationConfig:
    """
    从 TOML 文件加载配置

    参数:
        path: 配置文件路径，不存在时使用默认配置

    返回:
        MigrationConfig: 配置对象
    """
    if path is None or not Path(path).exists():
        if path is not None:
            logger.warning(f"配置文件不存在，使用默认配置: {path}")
        return MigrationConfig()

    path = Path(path)
    try:
        with open(path, 'rb') as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigError(f"配置文件格式错误 {path}: {e}") from e

    config = _from_dict(data, path.parent.resolve())
    logger.debug(f"已加载配置: {path}")
    return config
