import asyncio
import logging
import sys

from .commands import bootstrap, greet
from .config import load_config
from .database.errors import LockTimeout, MigrationError, StoreError
from .ui.menu import MenuUI, console


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


async def async_main() -> int:
    try:
        config = load_config()
    except ValueError as e:
        MenuUI.show_error(str(e))
        return 1
    
    logging.getLogger().setLevel(config.log_level)
    
    try:
        repo = await bootstrap(config)
    except LockTimeout as e:
        MenuUI.show_fatal(
            "Store is busy",
            str(e),
            "Another Cereals instance may be upgrading the store. Close it or retry in a moment."
        )
        return 1
    except MigrationError as e:
        MenuUI.show_fatal(
            "Store upgrade failed",
            str(e),
            f"The store at {config.db_path} was left at its last good schema version. "
            "Nothing else was changed."
        )
        return 1
    except StoreError as e:
        MenuUI.show_fatal("Could not open store", str(e))
        return 1
    
    try:
        MenuUI.show_store_ready(str(config.db_path), repo.schema_version, await repo.table_names())
        await run_menu(repo)
    finally:
        await repo.close()
    
    return 0


async def run_menu(repo) -> None:
    while True:
        action = await MenuUI.select_action()
        
        if action == "stats":
            MenuUI.show_stats(await repo.get_stats())
        elif action == "users":
            MenuUI.show_users(await repo.get_all_users())
        elif action == "history":
            MenuUI.show_history(await repo.migration_history())
        elif action == "greet":
            name = await MenuUI.ask_name()
            MenuUI.show_success(greet(name.strip()))
        else:
            break


def main():
    try:
        MenuUI.show_welcome()
        
        exit_code = asyncio.run(async_main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
