"""
变更日志测试
"""
import json
import os

import pytest

from assetmigf.core.changelog import ChangeLogManager
from assetmigf.core.errors import CheckpointError
from assetmigf.core.models import (
    BrokenLinkNotFixed,
    DeletedTransform,
    MovedAsset,
    UnknownChange,
)


def moved(asset_id):
    return MovedAsset(
        asset_id=str(asset_id), filename=f"{asset_id}.jpg",
        from_location="legacy", from_folder="photos",
        to_location="target", to_folder="",
    )


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "changelogs"


class TestBuffering:
    """测试缓冲与写出"""

    def test_flush_every(self, log_dir):
        """测试达到缓冲上限时自动写出"""
        changelog = ChangeLogManager(log_dir, "run-1", flush_every=3)
        changelog.set_phase("consolidate")
        changelog.log_change(moved(1))
        changelog.log_change(moved(2))
        assert changelog.pending == 2
        assert not changelog.log_path.exists()

        changelog.log_change(moved(3))
        assert changelog.pending == 0
        lines = changelog.log_path.read_text(encoding='utf-8').splitlines()
        assert len(lines) == 3
        assert json.loads(lines[0])['type'] == "moved_asset"

    def test_set_phase_flushes(self, log_dir):
        """测试切换阶段前写出上一阶段的条目"""
        changelog = ChangeLogManager(log_dir, "run-1", flush_every=100)
        changelog.set_phase("consolidate")
        changelog.log_change(moved(1))
        changelog.set_phase("quarantine")
        assert changelog.pending == 0
        assert changelog.load_changes()[0].phase == "consolidate"

    def test_flush_returns_count(self, log_dir):
        """测试 flush 返回写入条数"""
        changelog = ChangeLogManager(log_dir, "run-1", flush_every=100)
        assert changelog.flush() == 0
        changelog.log_change(moved(1))
        changelog.log_change(moved(2))
        assert changelog.flush() == 2

    def test_context_manager_flushes(self, log_dir):
        """测试 with 语句结束时写出"""
        with ChangeLogManager(log_dir, "run-1", flush_every=100) as changelog:
            changelog.log_change(moved(1))
        assert len(ChangeLogManager(log_dir).load_changes("run-1")) == 1


class TestEntries:
    """测试条目内容"""

    def test_sequence_and_timestamp(self, log_dir):
        """测试序号递增并填写时间"""
        changelog = ChangeLogManager(log_dir, "run-1")
        changelog.set_phase("fix_links")
        changelog.log_change(BrokenLinkNotFixed(asset_id="5", filename="gone.jpg"))
        changelog.log_change(moved(1))
        entries = changelog.load_changes()
        assert [e.sequence for e in entries] == [1, 2]
        assert all(e.timestamp for e in entries)
        assert isinstance(entries[0], BrokenLinkNotFixed)
        assert entries[1].to_filename == "1.jpg"

    def test_sequence_continues_after_resume(self, log_dir):
        """测试恢复后序号接在已有条目之后"""
        first = ChangeLogManager(log_dir, "run-1")
        first.log_change(moved(1))
        first.log_change(moved(2))
        first.close()

        resumed = ChangeLogManager(log_dir, "run-1")
        resumed.log_change(moved(3))
        assert [e.sequence for e in resumed.load_changes()] == [1, 2, 3]
        assert resumed.total_changes == 3

    def test_filter_by_phase(self, log_dir):
        """测试按阶段读取"""
        changelog = ChangeLogManager(log_dir, "run-1")
        changelog.set_phase("consolidate")
        changelog.log_change(moved(1))
        changelog.set_phase("cleanup")
        changelog.log_change(DeletedTransform(location="target", path="_thumbs/a.jpg", size=10))
        assert len(changelog.load_changes(phases=["cleanup"])) == 1
        assert changelog.get_phases_summary() == {'consolidate': 1, 'cleanup': 1}

    def test_corrupt_line_skipped(self, log_dir):
        """测试崩溃留下的半行被跳过"""
        changelog = ChangeLogManager(log_dir, "run-1")
        changelog.log_change(moved(1))
        changelog.flush()
        with open(changelog.log_path, 'a', encoding='utf-8') as f:
            f.write('{"type": "moved_asset", "asset_')
        assert len(changelog.load_changes()) == 1

    def test_unknown_type_preserved(self, log_dir):
        """测试未知类型原样保留"""
        log_dir.mkdir(parents=True)
        raw = {'type': "renamed_folder", 'phase': "consolidate", 'sequence': 1, 'folder': "x"}
        (log_dir / "run-1.jsonl").write_text(json.dumps(raw) + "\n", encoding='utf-8')
        entries = ChangeLogManager(log_dir).load_changes("run-1")
        assert isinstance(entries[0], UnknownChange)
        assert entries[0].raw_type == "renamed_folder"
        assert entries[0].to_dict() == raw

    def test_invalid_migration_id(self, log_dir):
        """测试非法迁移 ID"""
        with pytest.raises(CheckpointError):
            ChangeLogManager(log_dir, "../escape")


class TestListMigrations:
    """测试列出迁移"""

    def test_newest_first(self, log_dir):
        """测试按修改时间倒序"""
        for name, mtime in (("run-old", 1_000_000), ("run-new", 2_000_000)):
            changelog = ChangeLogManager(log_dir, name)
            changelog.log_change(moved(1))
            changelog.close()
            os.utime(changelog.log_path, (mtime, mtime))

        migrations = ChangeLogManager(log_dir).list_migrations()
        assert [m['id'] for m in migrations] == ["run-new", "run-old"]
        assert migrations[0]['change_count'] == 1
