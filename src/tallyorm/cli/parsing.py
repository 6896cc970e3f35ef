"""Input parsing utilities for CLI commands."""

import json
from pathlib import Path
from typing import Any


def parse_identity(value: str) -> int | str:
    """Parse an identity argument: integers stay integers, anything else is a string.

    Examples:
        "42" -> 42
        "a1b2" -> "a1b2"
    """
    try:
        return int(value)
    except ValueError:
        return value


def parse_filters(filters: list[str]) -> dict[str, Any]:
    """Parse ``field=value`` filter arguments.

    Values are read as JSON when they parse (numbers, booleans, null) and as
    plain strings otherwise.

    Examples:
        ["title=Dune", "year=1965"] -> {"title": "Dune", "year": 1965}

    Raises:
        ValueError: If a filter has no '='
    """
    parsed: dict[str, Any] = {}
    for item in filters:
        if "=" not in item:
            raise ValueError(f"Invalid filter: '{item}'. Expected format: field=value")
        name, raw = item.split("=", 1)
        try:
            parsed[name] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[name] = raw
    return parsed


def read_json_file(path: str) -> dict[str, Any]:
    """Read single JSON object from file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON object

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If file contains invalid JSON
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with file_path.open("r") as f:
        return json.load(f)
