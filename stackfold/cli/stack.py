from __future__ import annotations

from typing import Optional

import typer

from stackfold.cli.utils import (
    exit_on_error,
    load_stack_manager,
    print_apply_result,
    print_plan,
    print_refresh_report,
)
from stackfold.executor import ApplyResult
from stackfold.logger import logger
from stackfold.plan import Plan

STACK_FILE_HELP = (
    "Path to the stack file. The stack file is a YAML file that declares the "
    "resources of the stack and their dependencies. Defaults to ./stack.yaml"
)


def _finish(result: ApplyResult) -> None:
    print_apply_result(result)
    if result.cancelled or not result.ok:
        raise typer.Exit(1)


@exit_on_error
def plan(
    stack_file: str = typer.Option("", "--file", "-f", help=STACK_FILE_HELP),
    out: Optional[str] = typer.Option(
        None,
        "--out",
        "-o",
        help="Write the plan as JSON to this file. The file can be passed to "
        "'apply --plan'.",
    ),
) -> None:
    """
    Shows the operations needed to bring the infrastructure to the stack file.
    Nothing is changed.
    """
    manager = load_stack_manager(stack_file)
    stack_plan = manager.plan()
    print_plan(stack_plan)
    if out:
        stack_plan.save(out)
        logger.info(f"Plan saved to {out}")


@exit_on_error
def apply(
    stack_file: str = typer.Option("", "--file", "-f", help=STACK_FILE_HELP),
    plan_file: Optional[str] = typer.Option(
        None,
        "--plan",
        help="Apply a plan saved with 'plan --out' instead of planning again. The "
        "plan is rejected if the state changed since it was made, unless only an "
        "earlier apply of the same plan changed it.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Automatic yes to prompts. Use this option to bypass the confirmation "
        "prompt and directly proceed with the operation.",
    ),
) -> None:
    """
    Creates, updates or replaces resources so that they match the stack file.
    """
    manager = load_stack_manager(stack_file)
    stack_plan = Plan.load(plan_file) if plan_file else manager.plan()
    print_plan(stack_plan)

    if not stack_plan.has_changes():
        logger.info("No changes. Infrastructure is up-to-date.")
        return

    if yes or typer.confirm("Do you want to apply these changes?", default=False):
        _finish(manager.apply(stack_plan))


@exit_on_error
def destroy(
    stack_file: str = typer.Option("", "--file", "-f", help=STACK_FILE_HELP),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Automatic yes to prompts. Use this option to bypass the confirmation "
        "prompt and directly proceed with the operation.",
    ),
) -> None:
    """
    Tears down every resource recorded in the state of the stack.
    """
    manager = load_stack_manager(stack_file)
    stack_plan = manager.plan_destroy()
    print_plan(stack_plan)

    if not stack_plan.has_changes():
        logger.info("Nothing to destroy.")
        return

    if yes or typer.confirm(
        "Are you sure you want to proceed with the operation? Please note that "
        "all resources and data will be permanently deleted.",
        default=False,
    ):
        _finish(manager.apply(stack_plan))


@exit_on_error
def refresh(
    stack_file: str = typer.Option("", "--file", "-f", help=STACK_FILE_HELP),
) -> None:
    """
    Synchronizes the recorded state with the actual resources and reports drift.
    """
    manager = load_stack_manager(stack_file)
    report = manager.refresh()
    print_refresh_report(report)
    if not report.ok:
        raise typer.Exit(1)
