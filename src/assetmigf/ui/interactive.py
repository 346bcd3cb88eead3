"""
用户界面模块 - 负责与用户的交互
"""
from typing import Any, Dict, List, Optional

from loguru import logger
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table


class InteractiveUI:
    """交互式用户界面类"""

    def __init__(self, console: Console = None, assume_yes: bool = False):
        self.console = console or Console()
        self.assume_yes = assume_yes

    def confirm(self, message: str, default: bool = False) -> bool:
        """请求确认；无人值守模式下直接通过"""
        if self.assume_yes:
            logger.info(f"{message} -> 自动确认 (--yes)")
            return True
        try:
            return Confirm.ask(f"[bold yellow]{message}[/bold yellow]", default=default, console=self.console)
        except (KeyboardInterrupt, EOFError):
            logger.warning("确认被中断，视为拒绝")
            return False

    def choose_migration(self, migrations: List[Dict[str, Any]]) -> Optional[str]:
        """从变更日志列表中选择一个迁移"""
        if not migrations:
            logger.warning("没有可回滚的迁移")
            return None

        table = Table(title="可回滚的迁移")
        table.add_column("No.", style="cyan", no_wrap=True)
        table.add_column("迁移 ID", style="magenta")
        table.add_column("时间", style="white")
        table.add_column("变更数", justify="right")
        for i, migration in enumerate(migrations, 1):
            table.add_row(str(i), migration['id'], migration['timestamp'], str(migration['change_count']))
        self.console.print(table)

        choices = [str(i) for i in range(1, len(migrations) + 1)]
        choice = Prompt.ask("选择要回滚的迁移", choices=choices, default="1", console=self.console)
        return migrations[int(choice) - 1]['id']
