"""assetmigf 数据模型"""

import os
import re
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from .errors import CheckpointError

MIGRATION_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class Phase(str, Enum):
    """迁移阶段"""
    PREPARATION = "preparation"
    DISCOVERY = "discovery"
    LINK_INLINE = "link_inline"
    FIX_LINKS = "fix_links"
    CONSOLIDATE = "consolidate"
    QUARANTINE = "quarantine"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


PHASE_ORDER: List[Phase] = list(Phase)

# 这些阶段的检查点恢复时直接从头重新发现
RESTART_PHASES = (Phase.PREPARATION, Phase.DISCOVERY)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


def new_migration_id() -> str:
    """生成迁移 ID：时间戳 + 随机后缀"""
    return f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def validate_migration_id(migration_id: str) -> str:
    """校验迁移 ID，只允许字母数字、下划线与连字符"""
    if not migration_id or not MIGRATION_ID_PATTERN.match(migration_id):
        raise CheckpointError(f"非法的迁移 ID: {migration_id!r}")
    return migration_id


def _new_stats() -> Dict[str, int]:
    return {
        'files_moved': 0,
        'assets_updated': 0,
        'broken_links_fixed': 0,
        'broken_links_not_fixed': 0,
        'low_confidence_matches': 0,
        'inline_linked': 0,
        'assets_quarantined': 0,
        'files_quarantined': 0,
        'transforms_deleted': 0,
        'skipped': 0,
        'errors': 0,
    }


@dataclass
class MigrationRun:
    """一次迁移运行"""
    id: str = field(default_factory=new_migration_id)
    phase: Phase = Phase.PREPARATION
    status: RunStatus = RunStatus.RUNNING
    stats: Dict[str, int] = field(default_factory=_new_stats)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    resume_count: int = 0

    def __post_init__(self):
        validate_migration_id(self.id)
        self.phase = Phase(self.phase)
        self.status = RunStatus(self.status)

    def bump(self, key: str, amount: int = 1) -> None:
        self.stats[key] = self.stats.get(key, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'phase': self.phase.value,
            'status': self.status.value,
            'stats': dict(self.stats),
            'started_at': self.started_at,
            'resume_count': self.resume_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRun":
        stats = _new_stats()
        stats.update(data.get('stats') or {})
        return cls(
            id=data['id'],
            phase=data.get('phase', Phase.PREPARATION),
            status=data.get('status', RunStatus.RUNNING),
            stats=stats,
            started_at=data.get('started_at', ''),
            resume_count=data.get('resume_count', 0),
        )


CHECKPOINT_VERSION = 2


@dataclass
class Checkpoint:
    """完整检查点：运行快照 + 阶段载荷 + 已处理 ID"""
    run: MigrationRun
    payload: Dict[str, Any] = field(default_factory=dict)
    processed_ids: List[str] = field(default_factory=list)
    batch: int = 0
    timestamp: float = 0.0
    checkpoint_version: int = CHECKPOINT_VERSION

    @property
    def migration_id(self) -> str:
        return self.run.id

    @property
    def phase(self) -> Phase:
        return self.run.phase

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checkpoint_version': self.checkpoint_version,
            'migration_id': self.run.id,
            'run': self.run.to_dict(),
            'payload': self.payload,
            'processed_ids': list(self.processed_ids),
            'batch': self.batch,
            'timestamp': self.timestamp,
            'created_at': datetime.fromtimestamp(self.timestamp).isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            run=MigrationRun.from_dict(data['run']),
            payload=data.get('payload') or {},
            processed_ids=list(data.get('processed_ids') or []),
            batch=data.get('batch', 0),
            timestamp=data.get('timestamp', 0.0),
            checkpoint_version=data.get('checkpoint_version', CHECKPOINT_VERSION),
        )


@dataclass
class QuickState:
    """轻量状态，供监控使用"""
    migration_id: str
    phase: Phase
    batch: int = 0
    processed_count: int = 0
    processed_ids: List[str] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    pid: int = field(default_factory=os.getpid)
    timestamp: float = 0.0

    def __post_init__(self):
        self.phase = Phase(self.phase)
        self.status = RunStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['phase'] = self.phase.value
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuickState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class LockInfo:
    """锁记录"""
    name: str
    migration_id: str
    locked_at: float
    locked_by: str
    expires_at: float


@dataclass
class ErrorRecord:
    """单条错误记录"""
    operation: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class FileRecord:
    """存储中的一个文件"""
    location: str
    path: str
    size: int = 0
    modified: float = 0.0

    @property
    def filename(self) -> str:
        return self.path.rsplit('/', 1)[-1]

    @property
    def folder(self) -> str:
        return self.path.rsplit('/', 1)[0] if '/' in self.path else ""


@dataclass
class AssetRecord:
    """CMS 中的资源记录"""
    id: str
    filename: str
    location: str
    folder: str = ""
    size: int = 0
    used: bool = False
    modified: float = 0.0

    @property
    def path(self) -> str:
        return join_path(self.folder, self.filename)


@dataclass
class ContentRow:
    """含内联 HTML 的内容字段"""
    id: str
    field: str
    content: str
    element_id: Optional[str] = None


def join_path(folder: str, filename: str) -> str:
    folder = folder.strip('/')
    return f"{folder}/{filename}" if folder else filename


class MatchStrategy(str, Enum):
    """匹配策略，按级联顺序排列"""
    EXPECTED_PATH = "expected_path"
    EXACT = "exact"
    EXACT_ANY = "exact_any"
    CASE_INSENSITIVE = "case_insensitive"
    NORMALIZED = "normalized"
    BASENAME = "basename"
    SIZE = "size"
    FUZZY = "fuzzy"


@dataclass
class MatchCandidate:
    strategy: MatchStrategy
    confidence: float
    file: FileRecord


@dataclass
class MatchResult:
    """匹配结果：接受的候选，或被拒绝的候选及其置信度"""
    candidate: Optional[MatchCandidate] = None
    rejected: Optional[MatchCandidate] = None
    low_confidence: bool = False

    @property
    def found(self) -> bool:
        return self.candidate is not None

    @property
    def rejected_confidence(self) -> Optional[float]:
        return self.rejected.confidence if self.rejected else None


class ItemStatus(str, Enum):
    DONE = "done"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class ItemResult:
    """单项处理结果"""
    status: ItemStatus
    detail: str = ""

    @classmethod
    def done(cls, detail: str = "") -> "ItemResult":
        return cls(ItemStatus.DONE, detail)

    @classmethod
    def skipped(cls, detail: str = "") -> "ItemResult":
        return cls(ItemStatus.SKIPPED, detail)

    @classmethod
    def not_found(cls, detail: str = "") -> "ItemResult":
        return cls(ItemStatus.NOT_FOUND, detail)

    @classmethod
    def failed(cls, detail: str = "") -> "ItemResult":
        return cls(ItemStatus.FAILED, detail)


# ---------------------------------------------------------------------------
# 变更日志条目（带标签的联合类型）
# ---------------------------------------------------------------------------

CHANGE_TYPES: Dict[str, Type["ChangeEntry"]] = {}


@dataclass
class ChangeEntry:
    """变更日志条目基类；phase/sequence/timestamp 由 ChangeLogManager 填写"""
    type: ClassVar[str] = ""
    reversible: ClassVar[bool] = True

    phase: str = field(default="", kw_only=True)
    sequence: int = field(default=0, kw_only=True)
    timestamp: str = field(default="", kw_only=True)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.type:
            CHANGE_TYPES[cls.type] = cls

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type
        return data


@dataclass
class MovedAsset(ChangeEntry):
    type: ClassVar[str] = "moved_asset"

    asset_id: str
    filename: str
    from_location: str
    from_folder: str
    to_location: str
    to_folder: str
    to_filename: str = ""
    # 目标里已有相同内容的文件，只删除了源文件
    deduplicated: bool = False

    def __post_init__(self):
        if not self.to_filename:
            self.to_filename = self.filename


@dataclass
class FixedBrokenLink(ChangeEntry):
    type: ClassVar[str] = "fixed_broken_link"

    asset_id: str
    filename: str
    matched_file: str
    source_location: str
    source_path: str
    target_location: str
    target_path: str
    strategy: str
    confidence: float
    original_location: str
    original_folder: str
    original_filename: str = ""
    copied: bool = True
    needs_review: bool = False


@dataclass
class UpdatedAssetPath(ChangeEntry):
    type: ClassVar[str] = "updated_asset_path"

    asset_id: str
    filename: str
    original_location: str
    new_location: str
    path: str


@dataclass
class BrokenLinkNotFixed(ChangeEntry):
    type: ClassVar[str] = "broken_link_not_fixed"
    reversible: ClassVar[bool] = False

    asset_id: str
    filename: str
    reason: str = "no_match"
    rejected_match: Optional[str] = None
    rejected_confidence: Optional[float] = None


@dataclass
class QuarantinedUnusedAsset(ChangeEntry):
    type: ClassVar[str] = "quarantined_unused_asset"

    asset_id: str
    filename: str
    from_location: str
    from_folder: str
    quarantine_location: str
    quarantine_path: str


@dataclass
class QuarantinedOrphanedFile(ChangeEntry):
    type: ClassVar[str] = "quarantined_orphaned_file"

    source_location: str
    source_path: str
    quarantine_location: str
    quarantine_path: str
    size: int = 0


@dataclass
class InlineImageLinked(ChangeEntry):
    type: ClassVar[str] = "inline_image_linked"

    row_id: str
    field_name: str
    original_content: str
    new_content: str
    asset_ids: List[str] = field(default_factory=list)
    newly_used: List[str] = field(default_factory=list)


@dataclass
class DeletedTransform(ChangeEntry):
    type: ClassVar[str] = "deleted_transform"
    reversible: ClassVar[bool] = False

    location: str
    path: str
    size: int = 0


@dataclass
class UnknownChange(ChangeEntry):
    """无法识别的条目类型，原样保留"""
    reversible: ClassVar[bool] = False

    raw_type: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


def entry_from_dict(data: Dict[str, Any]) -> ChangeEntry:
    """从字典还原变更条目"""
    cls = CHANGE_TYPES.get(data.get('type', ''))
    if cls is None:
        return UnknownChange(
            raw_type=data.get('type', ''),
            raw=dict(data),
            phase=data.get('phase', ''),
            sequence=data.get('sequence', 0),
            timestamp=data.get('timestamp', ''),
        )
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})
