"""Output formatting for CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from tallyorm.core.types import EntitySnapshot, EntityTypeInfo
from tallyorm.exceptions import TallyORMError

console = Console()


class OutputFormatter:
    """Formats output for terminal or JSON mode."""

    def __init__(self, json_mode: bool = False) -> None:
        """Initialize formatter.

        Args:
            json_mode: If True, output JSON instead of Rich formatting
        """
        self.json_mode = json_mode

    def print_table(
        self,
        title: str,
        data: list[dict[str, Any]],
        columns: list[str],
    ) -> None:
        """Print data as Rich table or JSON array.

        Args:
            title: Table title
            data: List of row dictionaries
            columns: Column names to display
        """
        if self.json_mode:
            print(json.dumps(data, default=str, indent=2))
        else:
            table = Table(title=title, show_header=True, header_style="bold magenta")
            for col in columns:
                table.add_column(col)
            for row in data:
                table.add_row(*[str(row.get(col, "")) for col in columns])
            console.print(table)

    def print_type_info(self, info: EntityTypeInfo) -> None:
        """Print an entity type with its fields and relations.

        Args:
            info: Entity type information to display
        """
        if self.json_mode:
            print(json.dumps(info.model_dump(), default=str, indent=2))
            return

        console.print(f"\n[bold]Type:[/bold] {info.name}")
        console.print(f"Table: {info.table_name}")
        if info.parent:
            console.print(f"Hierarchy: {' > '.join(info.hierarchy)}")

        if info.fields:
            console.print(f"\n[bold]Fields ({len(info.fields)}):[/bold]")
            fields_table = Table(show_header=True, header_style="bold cyan")
            fields_table.add_column("Name")
            fields_table.add_column("Type")
            for name in info.fields:
                fields_table.add_row(name, info.field_types.get(name, "string"))
            console.print(fields_table)
        if info.transient:
            console.print(f"Transient: {', '.join(info.transient)}", style="dim")

        if info.relations:
            console.print(f"\n[bold]Relations ({len(info.relations)}):[/bold]")
            rel_table = Table(show_header=True, header_style="bold cyan")
            rel_table.add_column("Name")
            rel_table.add_column("Kind")
            rel_table.add_column("Peer")
            rel_table.add_column("Count")
            rel_table.add_column("Stored In")
            for rel in info.relations:
                upper = "*" if rel.max_count is None else str(rel.max_count)
                stored = rel.table_name
                if rel.column_name:
                    stored = f"{stored}.{rel.column_name}"
                rel_table.add_row(
                    rel.name, rel.kind, rel.peer_type, f"{rel.min_count}..{upper}", stored
                )
            console.print(rel_table)

    def print_entity(self, entity: EntitySnapshot) -> None:
        """Print one entity's identity, timestamps and field values."""
        if self.json_mode:
            print(json.dumps(entity.model_dump(mode="json"), indent=2))
            return

        table = Table(
            title=f"{entity.type_name} {entity.identity}",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Field")
        table.add_column("Value")
        for name, value in entity.fields.items():
            table.add_row(name, "" if value is None else str(value))
        console.print(table)
        console.print(f"Created: {entity.created_at}  Altered: {entity.altered_at}", style="dim")

    def print_sql(self, sql: str) -> None:
        """Print SQL text, highlighted in terminal mode."""
        if self.json_mode:
            print(json.dumps({"sql": sql}, indent=2))
        else:
            console.print(Syntax(sql, "sql", theme="ansi_dark", word_wrap=True))

    def print_success(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Print success message.

        Args:
            message: Success message
            details: Optional details to display
        """
        if self.json_mode:
            output = {"success": True, "message": message}
            if details:
                output.update(details)
            print(json.dumps(output, default=str, indent=2))
        else:
            console.print(f"✓ {message}", style="green")
            if details:
                for key, value in details.items():
                    console.print(f"  {key}: {value}", style="dim")

    def print_error(self, error: Exception) -> None:
        """Print error message.

        Args:
            error: Exception to display
        """
        if self.json_mode:
            if isinstance(error, TallyORMError):
                print(json.dumps(error.to_dict(), default=str, indent=2))
            else:
                print(json.dumps({"error": str(error)}, indent=2))
        else:
            error_text = str(error)
            # For TallyORMError, include context if available
            if isinstance(error, TallyORMError) and error.context:
                context_str = "\n".join(f"{k}: {v}" for k, v in error.context.items())
                error_text = f"{error_text}\n\n{context_str}"

            panel = Panel(
                error_text,
                title="[red]Error[/red]",
                border_style="red",
            )
            console.print(panel)

    def print_data(self, data: Any) -> None:
        """Print generic data (dict, list, etc.).

        Args:
            data: Data to print
        """
        if self.json_mode:
            print(json.dumps(data, default=str, indent=2))
        else:
            console.print(data)
