from __future__ import annotations

import typer
from tabulate import tabulate

from stackfold.cli.stack import STACK_FILE_HELP
from stackfold.cli.utils import exit_on_error, load_stack_manager
from stackfold.logger import logger

state_app = typer.Typer()


@state_app.command("list")
@exit_on_error
def list_records(
    stack_file: str = typer.Option("", "--file", "-f", help=STACK_FILE_HELP),
) -> None:
    """
    Lists the resources recorded in the state of the stack.
    """
    manager = load_stack_manager(stack_file)
    records = manager.records()
    if not records:
        logger.info("No resources recorded.")
        return

    table = [
        [
            str(rid),
            record.status.value,
            record.generation,
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            ", ".join(sorted(record.drift)),
            record.last_error or "",
        ]
        for rid, record in records.items()
    ]
    logger.info(
        tabulate(
            table,
            headers=["Resource", "Status", "Generation", "Updated", "Drift", "Error"],
        )
    )
