import typer

from stackfold import __version__
from stackfold.cli.stack import apply, destroy, plan, refresh
from stackfold.cli.state import state_app
from stackfold.logger import setup_logger


def version_callback(version: bool) -> None:
    if version:
        typer.echo(f"Stackfold CLI Version: {__version__}")
        raise typer.Exit()


cli = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})


@cli.callback()
def main_options(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output"
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    setup_logger(verbose)


cli.command()(plan)

cli.command()(apply)

cli.command()(destroy)

cli.command()(refresh)

cli.add_typer(state_app, name="state", help="Inspect the recorded state.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
