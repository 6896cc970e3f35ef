"""TallyORM CLI - Main entry point."""

from typing import Annotated

import typer

import tallyorm
from tallyorm.cli.context import CLIContext, get_database_url, get_schema_path

app = typer.Typer(
    name="tallyorm",
    help="TallyORM CLI - inspect schemas, create tables and read entities",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    database: Annotated[
        str | None,
        typer.Option(
            "--database",
            "-d",
            envvar="TALLYORM_URL",
            help="Database URL (PostgreSQL or SQLite)",
        ),
    ] = None,
    schema: Annotated[
        str | None,
        typer.Option(
            "--schema",
            "-s",
            envvar="TALLYORM_SCHEMA",
            help="JSON schema file describing types and relations",
        ),
    ] = None,
    echo: Annotated[
        bool,
        typer.Option(
            "--echo",
            "-e",
            help="Log every SQL statement SQLAlchemy executes",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            "-j",
            help="Output as JSON (machine-readable)",
        ),
    ] = False,
) -> None:
    """Resolve the database URL and schema file once for every subcommand."""
    cli_ctx = CLIContext(
        database_url=get_database_url(database),
        schema_path=get_schema_path(schema),
        echo=echo,
        json_output=json_output,
    )

    # Commands read the context from ctx.obj
    ctx.obj = cli_ctx


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"TallyORM v{tallyorm.__version__}")


# Command groups
from tallyorm.cli.commands import data, schema

app.add_typer(schema.app, name="schema")
app.add_typer(data.app, name="data")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
