"""Naming convention shared with existing schemas.

These rules are reproduced bit for bit so that TallyORM can read and write
tables created by earlier tooling:

- ``FooBar`` -> table ``foo_bars``
- role ``author`` -> foreign key column ``author_id``
- many-to-many junction -> ``r__{table_a}__{table_b}`` (sorted)
"""

from __future__ import annotations

import re

TYPE_NAME_PATTERN = re.compile(r"^[A-Z][A-Za-z0-9]*$")
ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

JUNCTION_PREFIX = "r"
SEPARATOR = "__"

ID_COLUMN = "id"
PARENT_ROLE = "parent"
COUNT_COLUMN = "count"
CREATED_AT_COLUMN = "created_at"
ALTERED_AT_COLUMN = "altered_at"

RESERVED_NAMES = frozenset(
    {ID_COLUMN, PARENT_ROLE, COUNT_COLUMN, CREATED_AT_COLUMN, ALTERED_AT_COLUMN}
)


def valid_type_name(name: str) -> bool:
    """PascalCase alphanumerics, starting with an uppercase letter."""
    return isinstance(name, str) and bool(TYPE_NAME_PATTERN.match(name))


def valid_role_name(name: str) -> bool:
    """Lowercase alphanumerics and underscores, starting with a letter, no ``__``.

    Double underscores are the junction table separator, so they are never
    allowed inside a single name.
    """
    return (
        isinstance(name, str)
        and bool(ROLE_NAME_PATTERN.match(name))
        and SEPARATOR not in name
        and not name.endswith("_")
    )


def snake_case(type_name: str) -> str:
    """Convert a type name to snake_case.

    An underscore goes before every uppercase letter except the first:
    ``BlogPost`` -> ``blog_post``, ``HTMLPage`` -> ``h_t_m_l_page``.
    """
    result = []
    for i, char in enumerate(type_name):
        if char.isupper():
            if i > 0:
                result.append("_")
            result.append(char.lower())
        else:
            result.append(char)
    return "".join(result)


def pluralize(name: str) -> str:
    return f"{name}s"


def table_name(type_name: str) -> str:
    """Table for a type: ``FooBar`` -> ``foo_bars``."""
    return pluralize(snake_case(type_name))


def fk_column(role_name: str) -> str:
    """Foreign key column for a role: ``author`` -> ``author_id``."""
    return f"{role_name}_{ID_COLUMN}"


def parent_key_column() -> str:
    """Column on a derived level's table holding the parent level's key."""
    return fk_column(PARENT_ROLE)


def junction_layout(
    owner_type: str, owner_name: str, peer_type: str, peer_name: str
) -> tuple[str, str, str]:
    """Return ``(table, first_column, second_column)`` for a many-to-many pair.

    The two pluralized, snake_cased type names are sorted to build the table
    name; the key columns follow the same order. When both sides share a type
    the role names decide the order and give the trailing segments.
    """
    if owner_type == peer_type:
        first, second = sorted([owner_name, peer_name])
        table = SEPARATOR.join([JUNCTION_PREFIX, pluralize(first), pluralize(second)])
        return table, fk_column(first), fk_column(second)

    sides = sorted([(table_name(owner_type), owner_name), (table_name(peer_type), peer_name)])
    (table_a, role_a), (table_b, role_b) = sides
    table = SEPARATOR.join([JUNCTION_PREFIX, table_a, table_b])
    return table, fk_column(role_a), fk_column(role_b)


def junction_table(owner_type: str, owner_name: str, peer_type: str, peer_name: str) -> str:
    return junction_layout(owner_type, owner_name, peer_type, peer_name)[0]


def column_alias(table: str, column: str) -> str:
    """Alias used when several hierarchy tables are selected together."""
    return f"{table}{SEPARATOR}{column}"
