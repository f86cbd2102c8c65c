import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import psycopg2
from psycopg2 import extensions, sql

logger = logging.getLogger(__name__)


class ConnectionStatus(enum.Enum):
	OK = "ok"
	BAD = "bad"


class ResultStatus(enum.Enum):
	TUPLES_OK = "PGRES_TUPLES_OK"
	COMMAND_OK = "PGRES_COMMAND_OK"
	FATAL_ERROR = "PGRES_FATAL_ERROR"


@dataclass
class QueryResult:
	"""
	Outcome of one statement: rows for result sets, a status otherwise.
	"""
	status: ResultStatus
	columns: list[str] = field(default_factory=list)
	rows: list[tuple] = field(default_factory=list)
	rowcount: int = -1
	error_message: str = ""

	@property
	def ok(self) -> bool:
		return self.status in (ResultStatus.TUPLES_OK, ResultStatus.COMMAND_OK)

	def column_count(self) -> int:
		return len(self.columns)

	def column_index(self, name: str) -> int:
		try:
			return self.columns.index(name)
		except ValueError:
			return -1

	def value(self, row: int, col: int) -> Any:
		return self.rows[row][col]


class PgConnection:
	"""
	Single blocking PostgreSQL connection speaking `$N` placeholders.

	Create directly from connection parameters:
		conn = PgConnection.connect(database="app", user="postgres", password="...", host="localhost", port=5432)

	Statements never raise for server-side errors: every call returns a QueryResult
	whose status is FATAL_ERROR and whose error_message carries the server text.
	"""

	_PLACEHOLDER_RE = re.compile(r"\$(\d+)")

	@classmethod
	def connect(
		cls,
		*,
		database: str = "postgres",
		user: str = "postgres",
		password: Optional[str] = None,
		host: Optional[str] = None,
		port: Optional[int] = None,
		**conn_kwargs
	) -> "PgConnection":
		"""
		Open a new connection. Extra psycopg2 connect kwargs pass through (e.g., sslmode="require").
		"""
		kwargs = dict(conn_kwargs)
		if password is not None:
			kwargs["password"] = password
		if host is not None:
			kwargs["host"] = host
		if port is not None:
			kwargs["port"] = port
		logger.debug("Connecting to %s@%s:%s/%s", user, host or "", port or "", database)
		return cls(psycopg2.connect(database=database, user=user, **kwargs))

	def __init__(self, raw_conn):
		self._conn = raw_conn

	def __repr__(self) -> str:
		dsn = getattr(self._conn, "dsn", None) if self._conn is not None else None
		return f"<PgConnection {dsn or 'closed'}>"

	# ---------- Liveness ----------
	def status(self) -> ConnectionStatus:
		if self._conn is None or self._conn.closed:
			return ConnectionStatus.BAD
		if self._conn.get_transaction_status() == extensions.TRANSACTION_STATUS_UNKNOWN:
			return ConnectionStatus.BAD
		return ConnectionStatus.OK

	def close(self) -> None:
		if self._conn is None:
			return
		try:
			self._conn.close()
		except Exception:
			logger.exception("Error closing connection")
		finally:
			self._conn = None

	# ---------- Execution ----------
	def execute(self, text: str) -> QueryResult:
		return self._run(text, None)

	def execute_params(self, text: str, params: Sequence[Any]) -> QueryResult:
		"""
		Execute text using `$1..$n` placeholders bound positionally to params.
		"""
		if not params:
			return self._run(text, None)
		return self._run(self._translate_placeholders(text), self._bind(params))

	def escape(self, value: str) -> str:
		"""
		Return value as a quoted SQL literal, for embedding outside placeholders.
		"""
		return sql.Literal(str(value)).as_string(self._conn)

	@classmethod
	def _translate_placeholders(cls, text: str) -> str:
		# psycopg2 binds pyformat, so literal percent signs must be doubled first.
		escaped = text.replace("%", "%%")
		return cls._PLACEHOLDER_RE.sub(lambda m: f"%(p{m.group(1)})s", escaped)

	@staticmethod
	def _bind(params: Sequence[Any]) -> dict[str, Any]:
		return {f"p{i}": value for i, value in enumerate(params, start=1)}

	@staticmethod
	def _result_from_cursor(cur) -> QueryResult:
		if cur.description is None:
			return QueryResult(ResultStatus.COMMAND_OK, rowcount=cur.rowcount)
		columns = [d[0] for d in cur.description]
		rows = [tuple(r) for r in cur.fetchall()]
		return QueryResult(ResultStatus.TUPLES_OK, columns=columns, rows=rows, rowcount=len(rows))

	def _run(self, query: str, params: Optional[dict]) -> QueryResult:
		"""
		Core execution helper. Commits on success; rolls back on a driver error.
		"""
		if self._conn is None:
			return QueryResult(ResultStatus.FATAL_ERROR, error_message="connection is closed")
		try:
			with self._conn.cursor() as cur:
				cur.execute(query, params)
				result = self._result_from_cursor(cur)
			self._conn.commit()
			return result
		except psycopg2.Error as exc:
			self._rollback()
			return QueryResult(ResultStatus.FATAL_ERROR, error_message=str(exc).strip())

	def _rollback(self) -> None:
		try:
			self._conn.rollback()
		except Exception:
			logger.exception("Error rolling back after failed statement")
