import copy
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Sequence

from pgmapper.catalog import ModelDescriptor
from pgmapper.psql_client import QueryResult, ResultStatus
from pgmapper.relationships import RelationshipResolver

if TYPE_CHECKING:
	from pgmapper.session import Session

logger = logging.getLogger(__name__)

FAILED = -1

_FORMAT_RE = re.compile(r"%%|%")
_MISSING = object()


def process_format_str(text: str, start: int, params: Sequence[Any]) -> tuple[str, list[Any], int]:
	"""
	Rewrite each bare `%` in text to `$k`, k counting up from start; `%%` becomes a literal `%`.

	Returns (rewritten text, deep copies of params in consumption order, next unused index).
	Raises ValueError when the number of `%` markers and params differ.
	"""
	bound: list[Any] = []

	def _substitute(match: re.Match) -> str:
		if match.group(0) == "%%":
			return "%"
		if len(bound) >= len(params):
			raise ValueError(f"Not enough parameters for format string: {text!r}")
		bound.append(copy.deepcopy(params[len(bound)]))
		return f"${start + len(bound) - 1}"

	rendered = _FORMAT_RE.sub(_substitute, text)
	if len(bound) != len(params):
		raise ValueError(f"Format string {text!r} takes {len(bound)} parameters, got {len(params)}.")
	return rendered, bound, start + len(bound)


@dataclass(frozen=True)
class JoinSpec:
	"""
	Join against another catalog model; condition is already placeholder-substituted.
	"""
	join_type: str
	table_expr: str
	alias: Optional[str]
	on_clause: str


def _normalize_join_type(kind: str) -> str:
	join_type = str(kind).strip().upper()
	if not join_type:
		return "JOIN"
	if "JOIN" not in join_type:
		return f"{join_type} JOIN"
	return join_type


class QueryBuilder:
	"""
	Single-use fluent builder for one statement against one model.

		users = session.query(User).filter("age > %", 18).order("name").limit(5).all()

	Format text passed with extra arguments has each bare `%` bound to the next `$N`
	placeholder; without extra arguments it is used verbatim. After a terminal call
	(all, first, find, delete, update, count) the builder is spent.
	"""

	def __init__(self, session: "Session", model: Any, alias: Optional[str] = None):
		self._session = session
		self._model: ModelDescriptor = session.catalog.require(model)
		self._alias = alias
		self._selection: Optional[str] = None
		self._joins: list[JoinSpec] = []
		self._filters: list[str] = []
		self._havings: list[str] = []
		self._groups: list[str] = []
		self._orders: list[tuple[str, str]] = []
		self._limit: Optional[int] = None
		self._offset: Optional[int] = None
		self._params: list[Any] = []
		self._next_index = 1
		self._includes: list[str] = []
		self._consumed = False

	def __repr__(self) -> str:
		return f"<QueryBuilder {self._model.name} params={len(self._params)}>"

	@property
	def model(self) -> ModelDescriptor:
		return self._model

	@property
	def params(self) -> list[Any]:
		return list(self._params)

	# ---------- Builder operations ----------
	def _check_open(self) -> None:
		if self._consumed:
			raise RuntimeError("QueryBuilder has already been executed; build a new one.")

	def _format(self, text: str, params: Sequence[Any]) -> str:
		self._check_open()
		if not params:
			return text
		rendered, bound, self._next_index = process_format_str(text, self._next_index, params)
		self._params.extend(bound)
		return rendered

	def select(self, text: str) -> "QueryBuilder":
		self._check_open()
		self._selection = text
		return self

	def join(self, kind: str, model: Any, alias: Optional[str], condition: str, *params: Any) -> "QueryBuilder":
		joined = self._session.catalog.require(model)
		on_clause = self._format(condition, params)
		self._joins.append(JoinSpec(_normalize_join_type(kind), joined.qualified_table, alias, on_clause))
		return self

	def filter(self, text: str, *params: Any) -> "QueryBuilder":
		self._filters.append(self._format(text, params))
		return self

	def having(self, text: str, *params: Any) -> "QueryBuilder":
		self._havings.append(self._format(text, params))
		return self

	def group(self, text: str, *params: Any) -> "QueryBuilder":
		self._groups.append(self._format(text, params))
		return self

	def order(self, field: str, direction: str = "ASC") -> "QueryBuilder":
		self._check_open()
		dir_up = str(direction).upper()
		if dir_up not in {"ASC", "DESC"}:
			raise ValueError("direction must be 'ASC' or 'DESC'")
		self._orders.append((field, dir_up))
		return self

	def include(self, *names: str) -> "QueryBuilder":
		self._check_open()
		self._includes.extend(names)
		return self

	def limit(self, n: int) -> "QueryBuilder":
		self._check_open()
		if not isinstance(n, int) or n < 0:
			raise ValueError("limit must be a non-negative integer.")
		self._limit = n
		return self

	def offset(self, n: int) -> "QueryBuilder":
		self._check_open()
		if not isinstance(n, int) or n < 0:
			raise ValueError("offset must be a non-negative integer.")
		self._offset = n
		return self

	# ---------- Rendering ----------
	def _where_sql(self) -> str:
		if not self._filters:
			return ""
		return " WHERE " + " AND ".join(f"({f})" for f in self._filters)

	def _returning_sql(self) -> str:
		pk = self._model.pk_column
		return f' RETURNING "{pk.name}"' if pk is not None else ""

	def to_sql(self) -> str:
		"""
		Render the SELECT statement for the current state.
		"""
		text = f"SELECT {self._selection or '*'} FROM {self._model.qualified_table}"
		if self._alias:
			text += f" {self._alias}"
		for j in self._joins:
			text += f" {j.join_type} {j.table_expr}"
			if j.alias:
				text += f' "{j.alias}"'
			text += f" ON {j.on_clause}"
		text += self._where_sql()
		if self._groups:
			text += " GROUP BY " + ", ".join(self._groups)
		if self._havings:
			text += " HAVING " + " AND ".join(f"({h})" for h in self._havings)
		if self._orders:
			text += " ORDER BY " + ", ".join(f'"{field}" {direction}' for field, direction in self._orders)
		if self._limit is not None:
			text += f" LIMIT {self._limit}"
		if self._offset is not None:
			text += f" OFFSET {self._offset}"
		return text

	def _release(self) -> None:
		self._joins.clear()
		self._filters.clear()
		self._havings.clear()
		self._groups.clear()
		self._orders.clear()
		self._params.clear()
		self._includes.clear()
		self._consumed = True

	@staticmethod
	def _affected(result: QueryResult) -> int:
		if result.status is ResultStatus.TUPLES_OK:
			return len(result.rows)
		if result.status is ResultStatus.COMMAND_OK:
			return result.rowcount if result.rowcount >= 0 else 1
		return FAILED

	# ---------- Terminal operations ----------
	def all(self, result_type: Any = None) -> list:
		self._check_open()
		includes = list(self._includes)
		try:
			result = self._session.run(self.to_sql(), self._params)
			if result.status is not ResultStatus.TUPLES_OK:
				return []
			if result_type is None and self._model.pk_column is not None:
				instances = self._session.lookup_or_create(self._model, result)
			else:
				instances = self._session.materialize(result_type or self._model, result)
		finally:
			self._release()

		if includes and instances and result_type is None:
			RelationshipResolver(self._session).load_includes(self._model, instances, includes)
		return instances

	def first(self, result_type: Any = None) -> Any:
		self._check_open()
		self._limit = 1
		rows = self.all(result_type)
		return rows[0] if rows else None

	def find(self, key: Any) -> Any:
		self._check_open()
		pk = self._model.pk_column
		if pk is None:
			logger.warning("find() on model %s which has no primary key", self._model.name)
			self._release()
			return None
		return self.filter(f'"{pk.name}" = %', key).first()

	def delete(self) -> int:
		self._check_open()
		try:
			text = f"DELETE FROM {self._model.qualified_table}{self._where_sql()}{self._returning_sql()}"
			return self._affected(self._session.run(text, self._params))
		finally:
			self._release()

	def update(self, column: Any, value: Any = _MISSING) -> int:
		"""
		update("name", "x"), update([("name", "x"), ("age", 3)]) or update({"name": "x"}).

		SET placeholders continue after those already bound by filters.
		"""
		self._check_open()
		try:
			if isinstance(column, dict):
				assignments = list(column.items())
			elif value is _MISSING:
				assignments = list(column)
			else:
				assignments = [(column, value)]
			if not assignments:
				raise ValueError("update requires at least one assignment.")

			set_bits = []
			for name, new_value in assignments:
				col = self._model.column(name)
				if col is None:
					raise ValueError(f"Unknown column for update on {self._model.name}: {name}")
				set_bits.append(f'"{col.name}"=${self._next_index}')
				self._params.append(copy.deepcopy(new_value))
				self._next_index += 1

			text = (
				f"UPDATE {self._model.qualified_table} SET {', '.join(set_bits)}"
				f"{self._where_sql()}{self._returning_sql()}"
			)
			return self._affected(self._session.run(text, self._params))
		finally:
			self._release()

	def count(self) -> int:
		self._check_open()
		self._selection = "count(*) as count"
		self._orders.clear()
		self._limit = 1
		self._offset = None
		try:
			result = self._session.run(self.to_sql(), self._params)
			if result.status is not ResultStatus.TUPLES_OK or not result.rows:
				return FAILED
			return int(result.value(0, 0))
		finally:
			self._release()
