"""
迁移编排器测试

使用本地目录存储与 JSON 资源目录跑完整流程。
"""
import pytest

from assetmigf.core.backup import BackupManager
from assetmigf.core.catalog import JsonAssetCatalog
from assetmigf.core.changelog import ChangeLogManager
from assetmigf.core.checkpoint import CheckpointManager
from assetmigf.core.errors import StoreIOError
from assetmigf.core.lock import MigrationLock
from assetmigf.core.models import Phase, RunStatus
from assetmigf.core.orchestrator import (
    EXIT_FAILURE,
    EXIT_OK,
    MigrationOptions,
    MigrationOrchestrator,
)
from assetmigf.core.rollback import MODE_ONLY, RollbackEngine
from assetmigf.core.stores import LocalStore, build_stores

from conftest import asset, store_snapshot, write_catalog, write_file


class ScriptedUI:
    """按顺序返回预设答案的确认界面"""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.asked = []

    def confirm(self, message, default=False):
        self.asked.append(message)
        return self.answers.pop(0)


class FailingStore(LocalStore):
    """对指定路径的写入失败"""

    def __init__(self, name, root, fail_on):
        super().__init__(name, root)
        self.fail_on = set(fail_on)

    def write(self, path, data):
        if path in self.fail_on:
            raise StoreIOError(self.name, path, "disk full")
        super().write(path, data)


def run_migration(config, catalog, stores, reporter, ui=None, **options):
    orchestrator = MigrationOrchestrator(
        config, catalog, stores, MigrationOptions(**options), reporter=reporter, ui=ui,
    )
    return orchestrator, orchestrator.execute()


def catalog_state(config):
    return JsonAssetCatalog(config.catalog_path).snapshot()


class TestFullMigration:
    """测试完整迁移"""

    def test_all_phases(self, config, workspace, migration_fixture, quiet_reporter):
        """测试一次完整迁移的结果"""
        _, roots = workspace
        catalog, stores = migration_fixture
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_OK
        run_id = orchestrator.run.id

        # link_inline
        assert "{asset:6:url}" in catalog.get_content_row("100").content
        assert catalog.get_asset("6").used
        assert (roots['target'] / "inline.jpg").exists()
        # fix_links
        assert (roots['target'] / "d.jpg").read_bytes() == b"dddd"
        assert (roots['legacy'] / "old/d.jpg").exists()
        assert catalog.get_asset("4").location == "target"
        # consolidate
        assert (roots['target'] / "a.jpg").read_bytes() == b"aaaa"
        assert not (roots['legacy'] / "photos/a.jpg").exists()
        moved = catalog.get_asset("1")
        assert (moved.location, moved.folder) == ("target", "")
        # quarantine
        assert (roots['quarantine'] / "assets/c.jpg").read_bytes() == b"cccc"
        assert (roots['quarantine'] / "orphans/orphan.txt").exists()
        assert not (roots['target'] / "c.jpg").exists()
        assert catalog.get_asset("3").location == "quarantine"
        # cleanup
        assert not (roots['target'] / "_thumbs/b_200.jpg").exists()
        # 未动的资源
        assert (roots['target'] / "b.jpg").exists()

        stats = orchestrator.run.stats
        assert stats['inline_linked'] == 1
        assert stats['broken_links_fixed'] == 1
        assert stats['broken_links_not_fixed'] == 1
        assert stats['files_moved'] == 1
        assert stats['assets_quarantined'] == 1
        assert stats['files_quarantined'] == 1
        assert stats['transforms_deleted'] == 1
        assert stats['verification_missing'] == 1
        assert stats['errors'] == 0

        checkpoint = CheckpointManager(config.checkpoint_dir).load_latest_checkpoint(run_id)
        assert checkpoint.run.status is RunStatus.COMPLETED
        assert checkpoint.phase is Phase.COMPLETE
        assert checkpoint.payload['completed'] is True
        assert "consolidate:asset:1" in checkpoint.processed_ids
        assert "fix_links:asset:5" not in checkpoint.processed_ids

        summary = ChangeLogManager(config.changelog_dir).get_phases_summary(run_id)
        assert summary == {
            'link_inline': 1, 'fix_links': 2, 'consolidate': 1, 'quarantine': 2, 'cleanup': 1,
        }
        assert BackupManager(config.backup_dir).has_snapshot(run_id)

        with MigrationLock(config.lock_db_path, "observer", lock_name=config.lock_name) as lock:
            assert lock.current() is None

    def test_catalog_persisted(self, config, migration_fixture, quiet_reporter):
        """测试资源目录修改写回文件"""
        catalog, stores = migration_fixture
        run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assets = {a['id']: a for a in catalog_state(config)['assets']}
        assert assets['1']['location'] == "target"
        assert assets['3']['folder'] == "assets"

    def test_skip_inline(self, config, workspace, migration_fixture, quiet_reporter):
        """测试跳过内联链接时未使用的资源被隔离"""
        _, roots = workspace
        catalog, stores = migration_fixture
        _, code = run_migration(config, catalog, stores, quiet_reporter, yes=True, skip_inline=True)
        assert code == EXIT_OK
        assert "inline.jpg" in catalog.get_content_row("100").content
        assert (roots['quarantine'] / "assets/inline.jpg").exists()

    def test_skip_backup(self, config, migration_fixture, quiet_reporter):
        """测试不创建快照"""
        catalog, stores = migration_fixture
        orchestrator, _ = run_migration(config, catalog, stores, quiet_reporter, yes=True, skip_backup=True)
        assert not BackupManager(config.backup_dir).has_snapshot(orchestrator.run.id)


class TestDryRun:
    """测试演练模式"""

    def test_no_mutation(self, config, workspace, migration_fixture, quiet_reporter):
        """测试演练不修改存储、资源目录，也不写检查点"""
        _, roots = workspace
        catalog, stores = migration_fixture
        files_before = store_snapshot(roots)
        catalog_before = catalog_state(config)

        ui = ScriptedUI()
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, ui=ui, dry_run=True)
        assert code == EXIT_OK
        assert ui.asked == []
        assert store_snapshot(roots) == files_before
        assert catalog_state(config) == catalog_before
        assert CheckpointManager(config.checkpoint_dir).list_checkpoints() == []
        assert not BackupManager(config.backup_dir).has_snapshot(orchestrator.run.id)


class TestConfirmation:
    """测试确认提示"""

    def test_cancel_then_resume(self, config, workspace, migration_fixture, quiet_reporter):
        """测试拒绝开始时保存检查点，之后可以恢复完成"""
        _, roots = workspace
        catalog, stores = migration_fixture
        ui = ScriptedUI(False)
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, ui=ui)
        assert code == EXIT_OK
        assert ui.asked == ["确认开始迁移？"]
        assert (roots['legacy'] / "photos/a.jpg").exists()

        checkpoint = CheckpointManager(config.checkpoint_dir).load_latest_checkpoint(orchestrator.run.id)
        assert checkpoint.run.status is RunStatus.INTERRUPTED
        assert checkpoint.payload == {'cancelled': True}

        resumed, code = run_migration(config, JsonAssetCatalog(config.catalog_path), stores, quiet_reporter,
                                      yes=True, resume=True)
        assert code == EXIT_OK
        assert resumed.run.id == orchestrator.run.id
        assert resumed.run.resume_count == 1
        assert (roots['target'] / "a.jpg").exists()

    def test_decline_quarantine(self, config, workspace, migration_fixture, quiet_reporter):
        """测试拒绝隔离时跳过隔离阶段，其余阶段照常"""
        _, roots = workspace
        catalog, stores = migration_fixture
        ui = ScriptedUI(True, False)
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, ui=ui)
        assert code == EXIT_OK
        assert len(ui.asked) == 2
        assert (roots['target'] / "c.jpg").exists()
        assert (roots['target'] / "orphan.txt").exists()
        assert not (roots['target'] / "_thumbs/b_200.jpg").exists()
        assert orchestrator.run.stats['assets_quarantined'] == 0


class TestFailures:
    """测试失败处理"""

    def test_threshold_then_resume(self, config, workspace, migration_fixture, quiet_reporter):
        """测试熔断后检查点带标记，恢复后已处理 ID 不减少"""
        _, roots = workspace
        catalog, stores = migration_fixture
        config.error_threshold = 1
        failing = FailingStore("target", roots['target'], fail_on={"a.jpg"})
        stores['target'] = failing

        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_FAILURE
        run_id = orchestrator.run.id

        checkpoints = CheckpointManager(config.checkpoint_dir)
        checkpoint = checkpoints.load_latest_checkpoint(run_id)
        assert checkpoint.payload['error_threshold_exceeded'] is True
        assert checkpoint.run.status is RunStatus.INTERRUPTED
        assert checkpoint.phase is Phase.CONSOLIDATE
        processed_before = list(checkpoint.processed_ids)
        assert "fix_links:asset:4" in processed_before
        assert (roots['legacy'] / "photos/a.jpg").exists()
        assert (config.error_log_dir / f"migration-errors-{run_id}.log").exists()

        failing.fail_on.clear()
        resumed, code = run_migration(config, JsonAssetCatalog(config.catalog_path), stores, quiet_reporter,
                                      yes=True, resume=True, checkpoint_id=run_id)
        assert code == EXIT_OK
        checkpoint = checkpoints.load_latest_checkpoint(run_id)
        assert checkpoint.run.status is RunStatus.COMPLETED
        assert checkpoint.run.resume_count == 1
        assert set(processed_before) <= set(checkpoint.processed_ids)
        assert len(checkpoint.processed_ids) == len(set(checkpoint.processed_ids))
        assert (roots['target'] / "a.jpg").exists()

    def test_resume_without_checkpoint(self, config, migration_fixture, quiet_reporter):
        """测试没有检查点时恢复失败"""
        catalog, stores = migration_fixture
        _, code = run_migration(config, catalog, stores, quiet_reporter, yes=True, resume=True)
        assert code == EXIT_FAILURE

    def test_lock_held_by_other_migration(self, config, workspace, migration_fixture, quiet_reporter):
        """测试另一个迁移持有锁时不做任何修改"""
        _, roots = workspace
        catalog, stores = migration_fixture
        files_before = store_snapshot(roots)
        with MigrationLock(config.lock_db_path, "other-run", lock_name=config.lock_name) as other:
            assert other.acquire(timeout_seconds=0)
            _, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
            assert other.current().migration_id == "other-run"
        assert code == EXIT_FAILURE
        assert store_snapshot(roots) == files_before

    def test_invalid_config(self, config, migration_fixture, quiet_reporter):
        """测试配置无效时直接失败"""
        catalog, stores = migration_fixture
        config.target_store = "nowhere"
        _, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_FAILURE


class TestRollbackRoundTrip:
    """测试回滚后重新执行"""

    def test_rollback_phase_then_reapply(self, config, workspace, migration_fixture, quiet_reporter):
        """测试回滚 consolidate 后再次迁移，得到与回滚前相同的状态"""
        _, roots = workspace
        catalog, stores = migration_fixture
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_OK
        files_after_first = store_snapshot(roots)
        catalog_after_first = catalog_state(config)

        engine = RollbackEngine(orchestrator.run.id, ChangeLogManager(config.changelog_dir),
                                JsonAssetCatalog(config.catalog_path), stores)
        result = engine.rollback(["consolidate"], mode=MODE_ONLY)
        assert result.success
        assert result.operations_reversed == 1
        assert (roots['legacy'] / "photos/a.jpg").exists()
        assert catalog_state(config) != catalog_after_first

        _, code = run_migration(config, JsonAssetCatalog(config.catalog_path), stores, quiet_reporter, yes=True)
        assert code == EXIT_OK
        assert store_snapshot(roots) == files_after_first
        assert catalog_state(config) == catalog_after_first


def build_scenario(config, files, assets, content=()):
    """按给定文件与记录搭建存储和资源目录"""
    for (store, path), data in files.items():
        write_file(config.store_roots[store], path, data)
    write_catalog(config.catalog_path, assets, content)
    return JsonAssetCatalog(config.catalog_path), build_stores(config.store_roots)


class TestReanalysis:
    """测试前序阶段改变资源状态后，后续阶段使用新的分类"""

    def test_inline_linked_asset_is_consolidated(self, config, workspace, quiet_reporter):
        """测试内联引用后变为已使用的源存储资源被移动到目标位置"""
        _, roots = workspace
        catalog, stores = build_scenario(
            config,
            {('legacy', "img/pic.jpg"): b"pic"},
            [asset(1, "pic.jpg", "legacy", "img", used=False)],
            [{'id': "200", 'field': "body", 'content': '<img src="/img/pic.jpg">', 'element_id': "e2"}],
        )
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_OK
        moved = catalog.get_asset("1")
        assert moved.used
        assert (moved.location, moved.path) == ("target", "pic.jpg")
        assert (roots['target'] / "pic.jpg").read_bytes() == b"pic"
        assert not (roots['legacy'] / "img/pic.jpg").exists()
        assert orchestrator.run.stats['files_moved'] == 1

    def test_expected_path_fix_is_consolidated(self, config, workspace, quiet_reporter):
        """测试按预期路径修复到源存储的资源随后被移动到目标位置"""
        _, roots = workspace
        catalog, stores = build_scenario(
            config,
            {('legacy', "gone.jpg"): b"g"},
            [asset(5, "gone.jpg", "target")],
        )
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_OK
        fixed = catalog.get_asset("5")
        assert (fixed.location, fixed.path) == ("target", "gone.jpg")
        assert (roots['target'] / "gone.jpg").read_bytes() == b"g"
        summary = ChangeLogManager(config.changelog_dir).get_phases_summary(orchestrator.run.id)
        assert summary == {'fix_links': 1, 'consolidate': 1}


class TestDuplicateFilenames:
    """测试同名同内容的资源"""

    def test_consolidate_and_rollback_keeps_both_files(self, config, workspace, quiet_reporter):
        """测试两个同名同内容资源都被移动，回滚 consolidate 后原文件都恢复"""
        _, roots = workspace
        catalog, stores = build_scenario(
            config,
            {('legacy', "a/x.jpg"): b"same", ('legacy', "b/x.jpg"): b"same"},
            [asset(1, "x.jpg", "legacy", "a"), asset(2, "x.jpg", "legacy", "b")],
        )
        orchestrator, code = run_migration(config, catalog, stores, quiet_reporter, yes=True)
        assert code == EXIT_OK
        paths = {catalog.get_asset("1").path, catalog.get_asset("2").path}
        assert len(paths) == 2
        for path in paths:
            assert (roots['target'] / path).read_bytes() == b"same"

        engine = RollbackEngine(orchestrator.run.id, ChangeLogManager(config.changelog_dir),
                                JsonAssetCatalog(config.catalog_path), stores)
        result = engine.rollback(["consolidate"], mode=MODE_ONLY)
        assert result.success
        assert result.errors == 0
        assert result.operations_reversed == 2
        assert (roots['legacy'] / "a/x.jpg").read_bytes() == b"same"
        assert (roots['legacy'] / "b/x.jpg").read_bytes() == b"same"
        restored = JsonAssetCatalog(config.catalog_path)
        assert restored.get_asset("1").path == "a/x.jpg"
        assert restored.get_asset("2").path == "b/x.jpg"
