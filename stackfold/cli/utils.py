from __future__ import annotations

import functools
import os
from typing import Any, Callable, List, Optional

import typer
from pydantic import ValidationError
from tabulate import tabulate

from stackfold.config import Config, parse_yaml
from stackfold.constants import DEFAULT_STACK_FILE
from stackfold.errors import ConfigError, StackfoldError
from stackfold.executor import ApplyResult
from stackfold.logger import logger
from stackfold.plan import Plan
from stackfold.reconcile import RefreshReport
from stackfold.stack.manager import StackManager


def load_stack_config(stack_file: Optional[str]) -> Config:
    """
    Reads and validates a stack file.

    Args:
        stack_file (str, optional): The path to the stack file. Defaults to "./stack.yaml".

    Returns:
        Config: The parsed stack file.

    Raises:
        ConfigError: If the file does not exist or is not a valid stack file.
    """
    if not stack_file:
        stack_file = DEFAULT_STACK_FILE
    stack_file = os.path.abspath(os.path.expanduser(stack_file))
    if not os.path.exists(stack_file):
        raise ConfigError(f"The stack file {stack_file} does not exist")

    with open(stack_file, "r") as file:
        content = file.read()

    try:
        return parse_yaml(content)
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid stack file {stack_file}: {e}") from e


def load_stack_manager(stack_file: Optional[str]) -> StackManager:
    return StackManager(load_stack_config(stack_file))


def exit_on_error(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator that reports stackfold errors of a command and exits with status 1.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except StackfoldError as e:
            logger.error(str(e))
            raise typer.Exit(1)

    return wrapper


def print_plan(stack_plan: Plan) -> None:
    rows = [row for row in stack_plan.rows() if row[1] != "no-op"]
    if rows:
        logger.info(
            tabulate(rows, headers=["Wave", "Action", "Resource", "Changed", "Note"])
        )

    summary = stack_plan.summary()
    logger.info(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['destroy']} to destroy, {summary['no-op']} unchanged."
    )


def print_apply_result(result: ApplyResult) -> None:
    rows: List[List[str]] = result.rows()
    if rows:
        logger.info(tabulate(rows, headers=["Resource", "Action", "Status", "Detail"]))

    logger.info(
        f"{len(result.succeeded)} succeeded, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped."
    )
    for state in result.failed:
        logger.error(f"Failed: {state.resource}: {state.error}")
    for state in result.skipped:
        logger.warning(
            f"Skipped: {state.resource} ("
            + (
                "cancelled"
                if state.skipped_due_to == "cancelled"
                else f"because {state.skipped_due_to} failed"
            )
            + ")"
        )


def print_refresh_report(report: RefreshReport) -> None:
    rows = report.rows()
    if rows:
        logger.info(tabulate(rows, headers=["Resource", "State", "Detail"]))
    else:
        logger.info("No resources recorded.")
