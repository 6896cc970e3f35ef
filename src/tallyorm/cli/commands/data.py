"""Data commands."""

import json
from typing import Annotated

import typer

from tallyorm.cli.context import CLIContext
from tallyorm.cli.output import OutputFormatter
from tallyorm.cli.parsing import parse_filters, parse_identity, read_json_file

# Create data subcommand group
app = typer.Typer(help="Insert and read entities")


@app.command("insert")
def data_insert(
    ctx: typer.Context,
    type_name: Annotated[str, typer.Argument(help="Entity type")],
    data_json: Annotated[
        str | None,
        typer.Argument(help="Field values as JSON object"),
    ] = None,
    from_file: Annotated[
        str | None,
        typer.Option("--from-file", "-f", help="Load field values from a JSON file"),
    ] = None,
) -> None:
    """Insert one entity.

    Examples:

        tallyorm data insert Book '{"title": "Dune"}'
        tallyorm data insert Book --from-file book.json
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        if from_file:
            values = read_json_file(from_file)
        elif data_json:
            values = json.loads(data_json)
        else:
            raise typer.BadParameter("Either provide field values as JSON or use --from-file")

        db = cli_ctx.get_db()
        entity = db.new(type_name, **values)
        result = db.save(entity, atomic=True)
        formatter.print_success(
            f"Inserted {type_name}",
            {"id": entity.identity, "statements": result.total_writes},
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("get")
def data_get(
    ctx: typer.Context,
    type_name: Annotated[str, typer.Argument(help="Entity type")],
    identity: Annotated[str, typer.Argument(help="Entity identity")],
) -> None:
    """Get an entity by identity.

    Examples:

        tallyorm data get Book 1
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        entity = db.load(type_name, parse_identity(identity))
        formatter.print_entity(entity.to_snapshot())
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("list")
def data_list(
    ctx: typer.Context,
    type_name: Annotated[str, typer.Argument(help="Entity type")],
    where: Annotated[
        list[str] | None,
        typer.Option("--where", "-w", help="Filter as field=value (repeatable)"),
    ] = None,
    order_by: Annotated[
        str | None,
        typer.Option("--order-by", "-o", help="Field to sort by (prefix '-' for descending)"),
    ] = None,
) -> None:
    """List entities of a type.

    Examples:

        tallyorm data list Book
        tallyorm data list Book --where title=Dune --order-by -id
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        entities = db.find(type_name, order_by=order_by, **parse_filters(where or []))
        rows = [{"id": e.identity, **e.fields} for e in entities]
        columns = ["id", *db.registry.all_fields_of(type_name)]
        formatter.print_table(f"{type_name} ({len(rows)} rows)", rows, columns)
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("related")
def data_related(
    ctx: typer.Context,
    type_name: Annotated[str, typer.Argument(help="Entity type")],
    identity: Annotated[str, typer.Argument(help="Entity identity")],
    relation: Annotated[str, typer.Argument(help="Relation name")],
) -> None:
    """List the peers related to an entity through one relation.

    Examples:

        tallyorm data related Book 1 authors
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        entity = db.load(type_name, parse_identity(identity))
        group = entity.loaded_group(relation)
        rows = [
            {"id": peer.identity, "count": count, **meta, **peer.fields}
            for peer, count, meta in group.snapshot().entries()
        ]
        peer_type = group.definition.peer_type
        columns = [
            "id",
            "count",
            *group.meta_columns,
            *db.registry.all_fields_of(peer_type),
        ]
        formatter.print_table(f"{type_name} {identity} -> {relation} ({peer_type})", rows, columns)
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()
