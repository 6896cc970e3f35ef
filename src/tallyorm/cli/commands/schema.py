"""Schema commands."""

from typing import Annotated

import typer

from tallyorm.cli.context import CLIContext
from tallyorm.cli.output import OutputFormatter
from tallyorm.storage import render_ddl

# Create schema subcommand group
app = typer.Typer(help="Inspect the schema and create its tables")


@app.command("describe")
def schema_describe(
    ctx: typer.Context,
    type_name: Annotated[
        str | None, typer.Argument(help="Entity type (omit to list all types)")
    ] = None,
) -> None:
    """Show registered types, or one type's fields and relations.

    Examples:

        tallyorm -s schema.json schema describe
        tallyorm -s schema.json schema describe Book
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        registry = cli_ctx.get_registry()

        if type_name is not None:
            formatter.print_type_info(registry.describe_type(type_name))
            return

        schema = registry.describe()
        if cli_ctx.json_output:
            formatter.print_data(schema.model_dump())
        else:
            table_data = [
                {
                    "Name": info.name,
                    "Table": info.table_name,
                    "Parent": info.parent or "",
                    "Fields": len(info.fields),
                    "Relations": len(info.relations),
                }
                for info in schema.types.values()
            ]
            formatter.print_table(
                f"Types ({schema.total_types} total, {schema.total_relations} relations)",
                table_data,
                ["Name", "Table", "Parent", "Fields", "Relations"],
            )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)


@app.command("ddl")
def schema_ddl(
    ctx: typer.Context,
    dialect: Annotated[
        str, typer.Option("--dialect", help="SQL dialect: sqlite or postgresql")
    ] = "sqlite",
) -> None:
    """Print CREATE TABLE statements for the schema (no database needed).

    Examples:

        tallyorm -s schema.json schema ddl
        tallyorm -s schema.json schema ddl --dialect postgresql
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        formatter.print_sql(render_ddl(cli_ctx.get_registry(), dialect))
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)


@app.command("create")
def schema_create(ctx: typer.Context) -> None:
    """Create the schema's tables in the database (existing tables are kept)."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        tables = db.create_tables()
        formatter.print_success(
            f"Ensured {len(tables)} tables",
            {"tables": tables},
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()
