"""
Minimal query builder for bookkeeping reads and writes.

Supports the subset of SQL the migration runner needs: single-table
selects with AND-ed conditions, ordering, limits, aggregates, inserts,
updates and deletes. Values are always bound as parameters using the
'?' placeholder style understood by every MigrationDBAdapter.
"""

import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from schemashift.migrations.db_adapter import MigrationDBAdapter

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
OPERATORS = {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE", "IN", "NOT IN", "IS", "IS NOT"}
_NOT_GIVEN = object()


def validate_identifier(name: str) -> str:
    """Ensure a table or column name is a plain SQL identifier.

    Raises:
        ValueError: If the name contains anything but letters, digits and
            underscores, or starts with a digit.
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class QueryBuilder:
    """Fluent single-table query builder bound to an adapter.

    Example:
        rows = await db.query().table("migrations").where("batch", ">=", 2).order_by("id", "DESC").get()
        await db.query().table("migrations").insert({"migration": name, "batch": 1})
    """

    def __init__(self, adapter: "MigrationDBAdapter"):
        self._adapter = adapter
        self._table: str | None = None
        self._columns: list[str] = []
        self._wheres: list[tuple[str, str, Any]] = []
        self._orders: list[tuple[str, str]] = []
        self._limit: int | None = None

    def table(self, name: str) -> "QueryBuilder":
        """Set the target table. The adapter's table prefix is applied."""
        validate_identifier(name)
        self._table = self._adapter.full_table_name(name)
        return self

    from_ = table

    def select(self, *columns: str) -> "QueryBuilder":
        self._columns.extend(validate_identifier(column) for column in columns)
        return self

    def where(self, column: str, operator: Any, value: Any = _NOT_GIVEN) -> "QueryBuilder":
        """Add an AND-ed condition.

        ``where("batch", 2)`` is shorthand for ``where("batch", "=", 2)``.
        """
        if value is _NOT_GIVEN:
            operator, value = "=", operator
        operator = str(operator).upper()
        if operator not in OPERATORS:
            raise ValueError(f"Unsupported operator: {operator!r}")
        self._wheres.append((validate_identifier(column), operator, value))
        return self

    def where_null(self, column: str) -> "QueryBuilder":
        self._wheres.append((validate_identifier(column), "IS", None))
        return self

    def order_by(self, column: str, direction: str = "ASC") -> "QueryBuilder":
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError(f"Invalid sort direction: {direction!r}")
        self._orders.append((validate_identifier(column), direction))
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = int(count)
        return self

    # -------------------------------------------------------------------------
    # SQL compilation
    # -------------------------------------------------------------------------

    def _require_table(self) -> str:
        if self._table is None:
            raise ValueError("No table selected; call table() first")
        return self._table

    def _compile_where(self) -> tuple[str, list[Any]]:
        if not self._wheres:
            return "", []
        clauses = []
        params: list[Any] = []
        for column, operator, value in self._wheres:
            if value is None and operator in ("=", "IS"):
                clauses.append(f"{column} IS NULL")
            elif value is None and operator in ("!=", "<>", "IS NOT"):
                clauses.append(f"{column} IS NOT NULL")
            elif operator in ("IN", "NOT IN"):
                values = list(value)
                if not values:
                    # Empty IN matches nothing; empty NOT IN matches everything
                    clauses.append("1 = 0" if operator == "IN" else "1 = 1")
                    continue
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"{column} {operator} ({placeholders})")
                params.extend(values)
            else:
                clauses.append(f"{column} {operator} ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    def to_sql(self, columns: str | None = None) -> tuple[str, tuple[Any, ...]]:
        """Compile the SELECT statement and its parameters."""
        table = self._require_table()
        selected = columns or (", ".join(self._columns) if self._columns else "*")
        where_sql, params = self._compile_where()
        sql = f"SELECT {selected} FROM {table}{where_sql}"
        if self._orders:
            sql += " ORDER BY " + ", ".join(f"{column} {direction}" for column, direction in self._orders)
        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        return sql, tuple(params)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self) -> list[dict[str, Any]]:
        sql, params = self.to_sql()
        return await self._adapter.fetchall(sql, params)

    async def first(self) -> dict[str, Any] | None:
        self._limit = 1
        sql, params = self.to_sql()
        return await self._adapter.fetchone(sql, params)

    async def pluck(self, column: str) -> list[Any]:
        validate_identifier(column)
        sql, params = self.to_sql(columns=column)
        rows = await self._adapter.fetchall(sql, params)
        return [row[column] for row in rows]

    async def _aggregate(self, function: str, column: str) -> Any:
        if column != "*":
            validate_identifier(column)
        table = self._require_table()
        where_sql, params = self._compile_where()
        row = await self._adapter.fetchone(
            f"SELECT {function}({column}) AS aggregate FROM {table}{where_sql}",
            tuple(params),
        )
        return row["aggregate"] if row else None

    async def max(self, column: str) -> Any:
        return await self._aggregate("MAX", column)

    async def count(self, column: str = "*") -> int:
        return int(await self._aggregate("COUNT", column) or 0)

    async def exists(self) -> bool:
        return await self.count() > 0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(self, row: dict[str, Any]) -> int:
        """Insert one row and return the number of affected rows."""
        if not row:
            raise ValueError("Cannot insert an empty row")
        table = self._require_table()
        columns = [validate_identifier(column) for column in row]
        placeholders = ", ".join("?" for _ in columns)
        await self._adapter.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(row.values()),
        )
        return self._adapter.get_rowcount()

    async def update(self, values: dict[str, Any]) -> int:
        """Update matching rows and return the number of affected rows."""
        if not values:
            raise ValueError("Cannot update with no values")
        table = self._require_table()
        assignments = ", ".join(f"{validate_identifier(column)} = ?" for column in values)
        where_sql, params = self._compile_where()
        await self._adapter.execute(
            f"UPDATE {table} SET {assignments}{where_sql}",
            tuple(values.values()) + tuple(params),
        )
        return self._adapter.get_rowcount()

    async def delete(self) -> int:
        """Delete matching rows and return the number of affected rows."""
        table = self._require_table()
        where_sql, params = self._compile_where()
        await self._adapter.execute(f"DELETE FROM {table}{where_sql}", tuple(params))
        return self._adapter.get_rowcount()
