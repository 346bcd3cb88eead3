"""
终端输出 - 使用 rich 展示阶段、分析结果、进度与报告
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.rule import Rule
from rich.table import Table

PHASE_TITLES = {
    'preparation': "阶段 0: 准备与健康检查",
    'discovery': "阶段 1: 清单与分析",
    'link_inline': "阶段 2: 链接内联图片",
    'fix_links': "阶段 3: 修复断链",
    'consolidate': "阶段 4: 归并文件",
    'quarantine': "阶段 5: 隔离未使用文件",
    'cleanup': "阶段 6: 清理与核对",
    'complete': "完成",
}


class MigrationReporter:
    """迁移过程的终端输出"""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def print_header(self, migration_id: str, dry_run: bool = False, resumed: bool = False) -> None:
        mode = "演练模式（不会修改任何内容）" if dry_run else ("恢复运行" if resumed else "正式运行")
        self.console.print(Panel(
            f"[bold]迁移 ID:[/bold] {migration_id}\n[bold]模式:[/bold] {mode}",
            title="资源迁移",
            border_style="cyan",
        ))

    def print_phase(self, phase: str) -> None:
        self.console.print(Rule(f"[bold cyan]{PHASE_TITLES.get(phase, phase)}[/bold cyan]"))

    def print_skip(self, phase: str, reason: str) -> None:
        self.console.print(f"[dim]跳过 {PHASE_TITLES.get(phase, phase)}: {reason}[/dim]")

    @contextmanager
    def progress(self, description: str, total: int) -> Iterator:
        """阶段进度条，yield 一个 advance(n) 函数"""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("•"),
            TextColumn("[{task.completed}/{task.total}]"),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        ) as progress:
            task_id = progress.add_task(description, total=total)

            def advance(amount: int = 1) -> None:
                progress.update(task_id, advance=amount)

            yield advance

    def print_analysis(self, counts: Dict[str, int]) -> None:
        table = Table(title="分析结果")
        table.add_column("类别", style="cyan")
        table.add_column("数量", justify="right", style="magenta")
        labels = {
            'broken_links': "断链资源",
            'used_wrong_location': "位置错误的已使用资源",
            'used_correct_location': "位置正确的已使用资源",
            'unused_assets': "目标位置中未使用的资源",
            'orphaned_files': "目标位置中的孤立文件",
            'transform_files': "变换产物",
            'duplicates': "重复文件名",
        }
        for key, label in labels.items():
            table.add_row(label, str(counts.get(key, 0)))
        self.console.print(table)

    def print_planned_operations(self, counts: Dict[str, int], skip_inline: bool = False) -> None:
        self.console.print("[bold]计划执行的操作:[/bold]")
        if not skip_inline:
            self.console.print(f"  • 链接内联图片: {counts.get('inline_rows', 0)} 个内容字段")
        self.console.print(f"  • 修复断链: {counts.get('broken_links', 0)}")
        self.console.print(f"  • 移动到目标位置: {counts.get('used_wrong_location', 0)}")
        self.console.print(f"  • 隔离未使用资源: {counts.get('unused_assets', 0)}")
        self.console.print(f"  • 隔离孤立文件: {counts.get('orphaned_files', 0)}")
        self.console.print(f"  • 删除变换产物: {counts.get('transform_files', 0)}")
        self.console.print("[yellow]演练模式: 没有做任何修改[/yellow]")

    def print_review(self, review: List[Dict[str, Any]]) -> None:
        if not review:
            return
        table = Table(title="需要人工复核的低置信度匹配")
        table.add_column("资源", style="cyan")
        table.add_column("文件名")
        table.add_column("匹配到")
        table.add_column("策略")
        table.add_column("置信度", justify="right")
        for item in review[:50]:
            table.add_row(item['asset_id'], item['filename'], item['matched'], item['strategy'],
                          f"{item['confidence']:.2f}")
        self.console.print(table)
        if len(review) > 50:
            self.console.print(f"[dim]... 另有 {len(review) - 50} 项，详见变更日志[/dim]")

    def print_final_report(self, migration_id: str, stats: Dict[str, int], started_at: str) -> None:
        table = Table(title="迁移完成")
        table.add_column("统计项", style="cyan")
        table.add_column("数量", justify="right", style="green")
        for key, value in stats.items():
            table.add_row(key, str(value))
        self.console.print(table)
        try:
            elapsed = datetime.now() - datetime.fromisoformat(started_at)
            self.console.print(f"耗时: {str(elapsed).split('.')[0]}")
        except ValueError:
            pass
        self.console.print(f"[green]迁移 {migration_id} 已完成[/green]")
        self.console.print(f"回滚: [bold]assetmigf rollback --migration-id {migration_id}[/bold]")

    def print_fatal_error(self, migration_id: str, error: Exception, checkpoint_saved: bool) -> None:
        lines = [f"[bold red]迁移失败:[/bold red] {error}"]
        if checkpoint_saved:
            lines.append(f"检查点已保存，可以恢复: [bold]assetmigf migrate --resume --checkpoint-id {migration_id}[/bold]")
        lines.append(f"回滚已完成的部分: [bold]assetmigf rollback --migration-id {migration_id}[/bold]")
        self.console.print(Panel("\n".join(lines), border_style="red"))

    def print_rollback_plan(self, plan) -> None:
        table = Table(title=f"回滚计划 ({plan.method})")
        table.add_column("项目", style="cyan")
        table.add_column("数量", justify="right")
        if plan.method == "database":
            table.add_row("快照大小（字节）", str(plan.snapshot_size))
        else:
            table.add_row("操作总数", str(plan.total_operations))
            for entry_type, count in sorted(plan.by_type.items()):
                table.add_row(f"  类型 {entry_type}", str(count))
            for phase, count in plan.by_phase.items():
                table.add_row(f"  阶段 {phase}", str(count))
            table.add_row("预计耗时", plan.estimated_time)
        self.console.print(table)

    def print_rollback_result(self, result) -> None:
        if result.plan is not None:
            self.print_rollback_plan(result.plan)
        if not result.success:
            self.console.print(f"[red]回滚失败: {result.error}[/red]")
            return
        if result.dry_run:
            self.console.print("[yellow]演练模式: 没有做任何修改[/yellow]")
            return
        self.console.print(
            f"[green]回滚完成[/green]: 逆向 {result.operations_reversed}，"
            f"跳过 {result.skipped}，失败 {result.errors}；阶段 {', '.join(result.phases_rolled_back)}"
        )
        for message in result.error_messages[:20]:
            self.console.print(f"  [red]•[/red] {message}")

    def print_status(self, lock, checkpoints: List[Dict[str, Any]], migrations: List[Dict[str, Any]],
                     summaries: Dict[str, Dict[str, int]]) -> None:
        if lock is not None:
            expires = datetime.fromtimestamp(lock.expires_at).isoformat(timespec='seconds')
            self.console.print(f"[yellow]迁移锁被持有[/yellow]: {lock.migration_id} ({lock.locked_by})，到期 {expires}")
        else:
            self.console.print("[green]当前没有迁移锁[/green]")

        table = Table(title="检查点")
        table.add_column("迁移 ID", style="magenta")
        table.add_column("阶段")
        table.add_column("状态")
        table.add_column("已处理", justify="right")
        table.add_column("时间")
        for cp in checkpoints:
            table.add_row(cp['id'], str(cp['phase']), str(cp['status']), str(cp['processed']), str(cp['timestamp']))
        self.console.print(table)

        table = Table(title="变更日志")
        table.add_column("迁移 ID", style="magenta")
        table.add_column("变更数", justify="right")
        table.add_column("各阶段")
        table.add_column("时间")
        for migration in migrations:
            summary = summaries.get(migration['id'], {})
            phases = ", ".join(f"{k}={v}" for k, v in summary.items())
            table.add_row(migration['id'], str(migration['change_count']), phases, migration['timestamp'])
        self.console.print(table)

    def print_monitor(self, state: Dict[str, Any], alive: Optional[bool]) -> None:
        table = Table(title="迁移监控")
        table.add_column("项目", style="cyan")
        table.add_column("值")
        table.add_row("迁移 ID", state['migration_id'])
        table.add_row("阶段", str(state['phase']))
        table.add_row("状态", str(state['status']))
        if alive is None:
            process = "未知"
        else:
            process = f"{state.get('pid')} ({'运行中' if alive else '已退出'})"
        table.add_row("进程", process)
        table.add_row("已处理", str(state.get('processed_count', 0)))
        table.add_row("更新时间", str(state.get('updated', '')))
        for key, value in (state.get('stats') or {}).items():
            if value:
                table.add_row(f"  {key}", str(value))
        self.console.print(table)
        if state['status'] != 'completed' and alive is False:
            self.console.print(
                f"[yellow]进程已不在运行，可恢复: assetmigf migrate --resume --checkpoint-id {state['migration_id']}[/yellow]"
            )
