from typing import Optional

from InquirerPy import inquirer
from InquirerPy.base.control import Choice
from InquirerPy.separator import Separator
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..database.migrations import AppliedStep
from ..database.models import UserStatus
from ..database.repository import User


console = Console()


class MenuUI:
    
    @staticmethod
    def show_welcome() -> None:
        console.print()
        console.print(Panel.fit(
            "[bold cyan]Cereals[/bold cyan]\n"
            "[dim]Local-first chat store[/dim]",
            border_style="cyan"
        ))
        console.print()
    
    @staticmethod
    def show_store_ready(path: str, version: int, tables: list[str]) -> None:
        console.print(f"[green]✓[/green] Store ready at [bold]{path}[/bold]")
        console.print(f"[dim]Schema version {version} · {len(tables)} tables[/dim]\n")
    
    @staticmethod
    def show_fatal(title: str, message: str, hint: Optional[str] = None) -> None:
        body = f"{message}"
        if hint:
            body += f"\n\n[dim]{hint}[/dim]"
        console.print(Panel(body, title=f"[bold red]{title}[/bold red]", border_style="red"))
    
    @staticmethod
    async def select_action() -> str:
        choices = [
            Choice(value="stats", name="Show store statistics"),
            Choice(value="users", name="List users"),
            Choice(value="history", name="Show migration history"),
            Separator(),
            Choice(value="greet", name="Greet"),
            Choice(value="quit", name="← Quit"),
        ]
        
        return await inquirer.select(
            message="What would you like to do?",
            choices=choices,
            pointer="→",
            amark="✓",
        ).execute_async()
    
    @staticmethod
    async def ask_name() -> str:
        return await inquirer.text(
            message="Your name:",
            validate=lambda x: bool(x.strip()),
            invalid_message="Name cannot be empty",
        ).execute_async()
    
    @staticmethod
    def show_stats(stats: dict[str, int]) -> None:
        table = Table(title="Store statistics", show_header=True, padding=(0, 2))
        table.add_column("Table", style="cyan")
        table.add_column("Rows", justify="right")
        
        for name, count in stats.items():
            table.add_row(name, str(count))
        
        console.print(table)
        console.print()
    
    @staticmethod
    def show_users(users: list[User]) -> None:
        if not users:
            console.print("[dim]No users yet.[/dim]\n")
            return
        
        table = Table(show_header=True, padding=(0, 2))
        table.add_column("ID", justify="right")
        table.add_column("Username", style="cyan")
        table.add_column("Status")
        table.add_column("Created")
        
        for user in users:
            status = user.status.value if isinstance(user.status, UserStatus) else (user.status or "-")
            created = user.created_at.strftime("%Y-%m-%d %H:%M") if user.created_at else "-"
            table.add_row(str(user.id), user.username, status, created)
        
        console.print(table)
        console.print()
    
    @staticmethod
    def show_history(history: list[AppliedStep]) -> None:
        table = Table(title="Applied migrations", show_header=True, padding=(0, 2))
        table.add_column("Version", justify="right")
        table.add_column("Description", style="cyan")
        table.add_column("Applied")
        table.add_column("Checksum", style="dim")
        
        for step in history:
            applied = step.applied_at.strftime("%Y-%m-%d %H:%M:%S") if step.applied_at else "-"
            table.add_row(str(step.version), step.description, applied, step.checksum[:12])
        
        console.print(table)
        console.print()
    
    @staticmethod
    def show_error(message: str) -> None:
        console.print(f"[bold red]Error:[/bold red] {message}")
    
    @staticmethod
    def show_info(message: str) -> None:
        console.print(f"[cyan]ℹ[/cyan] {message}")
    
    @staticmethod
    def show_success(message: str) -> None:
        console.print(f"[green]✓[/green] {message}")
