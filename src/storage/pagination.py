from __future__ import annotations

from typing import Annotated, Any, Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from src.storage.errors import InvalidArgument


# SQLite INTEGER is a signed 64-bit value; anything wider cannot be bound.
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1

SQLiteInt = Annotated[StrictInt, Field(ge=SQLITE_INT_MIN, le=SQLITE_INT_MAX)]


def reject_bare_string(value: Any, *, key: str) -> None:
    """A str is iterable; as a filter it would silently split into characters."""
    if isinstance(value, (str, bytes, bytearray)):
        raise InvalidArgument(f"Invalid {key}: expected a collection, got {type(value).__name__} {value!r}")


class ListJobRunsParams(BaseModel):
    """Validated arguments for a keyset page over `job_runs`.

    Strict types keep anything but real integers out of the id condition,
    which is rendered as text rather than bound.
    """

    model_config = ConfigDict(frozen=True)

    ids: list[SQLiteInt] | None = None
    names: list[StrictStr] | None = None
    limit: StrictInt | None = Field(default=None, ge=0, le=SQLITE_INT_MAX)
    skip_id: SQLiteInt | None = None
    backwards: StrictBool = False


def validate_list_params(
    *,
    ids: Iterable[int] | None,
    names: Iterable[str] | None,
    limit: int | None,
    skip_id: int | None,
    backwards: bool,
) -> ListJobRunsParams:
    reject_bare_string(ids, key="ids")
    reject_bare_string(names, key="names")
    try:
        return ListJobRunsParams(
            ids=list(ids) if ids is not None else None,
            names=list(names) if names is not None else None,
            limit=limit,
            skip_id=skip_id,
            backwards=backwards,
        )
    except (TypeError, ValidationError) as e:
        details = e.errors(include_url=False) if isinstance(e, ValidationError) else None
        raise InvalidArgument("Invalid pagination arguments.", details=details) from e


def id_in_condition(ids: Iterable[int], *, column: str = "id") -> str:
    """Render `column IN (...)` for integer ids.

    An empty set renders a condition that matches nothing, so "filter given
    but empty" never degrades into "no filter".
    """
    checked: set[int] = set()
    for i in ids:
        if isinstance(i, bool) or not isinstance(i, int) or not SQLITE_INT_MIN <= i <= SQLITE_INT_MAX:
            raise InvalidArgument(f"Invalid id in filter: {i!r}")
        checked.add(int(i))
    rendered = [str(i) for i in sorted(checked)]
    if not rendered:
        return "1 = 0"
    return f"{column} IN ({', '.join(rendered)})"


def make_pagination_query_with_condition(
    table: str,
    columns: Sequence[str],
    *,
    limit: int | None,
    skip_id: int | None,
    backwards: bool,
    condition: str | None = None,
    params: Sequence[Any] = (),
) -> tuple[str, list[Any]]:
    """Build a keyset page query over an integer `id` column.

    The inner query selects the window in traversal order (DESC when paging
    backwards) so LIMIT keeps the rows nearest the cursor; the outer query
    always returns them ascending.
    """
    where: list[str] = []
    bound: list[Any] = []

    if condition:
        where.append(f"({condition})")
        bound.extend(params)

    if skip_id is not None:
        where.append("id < ?" if backwards else "id > ?")
        bound.append(int(skip_id))

    where_sql = f"WHERE {' AND '.join(where)}" if where else ""
    order = "DESC" if backwards else "ASC"

    limit_sql = ""
    if limit is not None:
        limit_sql = "LIMIT ?"
        bound.append(int(limit))

    fields = ", ".join(columns)
    sql = (
        f"SELECT {fields} FROM ("
        f"SELECT {fields} FROM {table} {where_sql} ORDER BY id {order} {limit_sql}"
        f") ORDER BY id ASC;"
    )
    return sql, bound
