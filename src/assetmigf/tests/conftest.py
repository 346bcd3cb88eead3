"""
测试共用的夹具
"""
import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from assetmigf.config import MigrationConfig
from assetmigf.core.catalog import JsonAssetCatalog
from assetmigf.core.stores import build_stores
from assetmigf.ui.reporter import MigrationReporter


class FakeClock:
    """可手动推进的时钟，sleep 直接推进时间"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiet_reporter():
    """输出到内存的 reporter"""
    return MigrationReporter(Console(file=io.StringIO(), width=120))


def write_file(root: Path, rel: str, data: bytes = b"data") -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def write_catalog(path: Path, assets, content=()) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({'assets': list(assets), 'content': list(content)}, f, ensure_ascii=False, indent=2)


@pytest.fixture
def workspace(tmp_path):
    """三个存储：target / legacy / quarantine"""
    roots = {
        'target': tmp_path / "stores" / "target",
        'legacy': tmp_path / "stores" / "legacy",
        'quarantine': tmp_path / "stores" / "quarantine",
    }
    for root in roots.values():
        root.mkdir(parents=True)
    return tmp_path, roots


@pytest.fixture
def config(workspace):
    tmp_path, roots = workspace
    return MigrationConfig(
        state_dir=tmp_path / "state",
        catalog_path=tmp_path / "catalog.json",
        store_roots=roots,
        target_store='target',
        quarantine_store='quarantine',
        source_stores=['legacy'],
        retry_delay_ms=0,
        lock_acquire_timeout_seconds=0,
        batch_size=2,
    )


def asset(asset_id, filename, location, folder="", used=True, size=0):
    return {
        'id': str(asset_id),
        'filename': filename,
        'location': location,
        'folder': folder,
        'size': size,
        'used': used,
        'modified': 0.0,
    }


@pytest.fixture
def migration_fixture(config, workspace):
    """
    一个覆盖所有阶段的小型场景

    - 1 a.jpg     已使用，位于 legacy/photos → consolidate
    - 2 b.jpg     已使用，位于 target 根目录 → 不动
    - 3 c.jpg     未使用，位于 target → quarantine
    - 4 d.jpg     已使用，记录指向 target 但文件只在 legacy/old → fix_links
    - 5 gone.jpg  已使用，找不到任何文件 → 未修复
    - 6 inline.jpg 未使用，但被内容内联引用 → link_inline
    - target/orphan.txt 没有记录 → quarantine
    - target/_thumbs/b_200.jpg 变换产物 → cleanup
    """
    tmp_path, roots = workspace
    write_file(roots['legacy'], "photos/a.jpg", b"aaaa")
    write_file(roots['target'], "b.jpg", b"bbbb")
    write_file(roots['target'], "c.jpg", b"cccc")
    write_file(roots['legacy'], "old/d.jpg", b"dddd")
    write_file(roots['target'], "inline.jpg", b"iiii")
    write_file(roots['target'], "orphan.txt", b"orphan")
    write_file(roots['target'], "_thumbs/b_200.jpg", b"thumb")

    write_catalog(config.catalog_path, [
        asset(1, "a.jpg", "legacy", "photos"),
        asset(2, "b.jpg", "target"),
        asset(3, "c.jpg", "target", used=False),
        asset(4, "d.jpg", "target"),
        asset(5, "gone.jpg", "target"),
        asset(6, "inline.jpg", "target", used=False),
    ], content=[
        {'id': "100", 'field': "body", 'content': '<p>hi <img alt="x" src="https://site.test/uploads/inline.jpg"></p>',
         'element_id': "e1"},
    ])
    catalog = JsonAssetCatalog(config.catalog_path)
    stores = build_stores(config.store_roots)
    return catalog, stores


def store_snapshot(roots) -> dict:
    """所有存储中的文件及内容"""
    result = {}
    for name, root in roots.items():
        for path in sorted(root.rglob("*")):
            if path.is_file():
                result[f"{name}:{path.relative_to(root).as_posix()}"] = path.read_bytes()
    return result
