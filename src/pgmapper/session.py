import logging
from threading import RLock
from typing import Any, Callable, Hashable, NamedTuple, Optional, Sequence

from pgmapper.catalog import Catalog, ModelDescriptor
from pgmapper.psql_client import ConnectionStatus, PgConnection, QueryResult, ResultStatus
from pgmapper.query import QueryBuilder, process_format_str

logger = logging.getLogger(__name__)


class IdentityKey(NamedTuple):
	model: str
	key: str


class Arena:
	"""
	Owns every instance a session hands out until reset().
	"""

	def __init__(self):
		self._objects: list[Any] = []

	def __len__(self) -> int:
		return len(self._objects)

	def allocate(self, factory: Callable[[], Any]) -> Any:
		obj = factory()
		self._objects.append(obj)
		return obj

	def adopt(self, obj: Any) -> Any:
		self._objects.append(obj)
		return obj

	def reset(self) -> None:
		self._objects.clear()


def _is_zero_value(value: Any) -> bool:
	if value is None:
		return True
	if isinstance(value, (bool, int, float, str, bytes)):
		return value == type(value)()
	return False


class Session:
	"""
	Per-worker unit of connection, identity map, and allocation scope.

	Instances returned by a session stay canonical per (model, primary key) until
	flush(); after a flush every previously returned instance is stale and must
	not be used. A session belongs to exactly one thread.
	"""

	def __init__(self, catalog: Catalog, connect: Callable[[], PgConnection], worker_id: Hashable = None):
		self.catalog = catalog
		self.worker_id = worker_id
		self.arena = Arena()
		self.generation = 0
		self._connect = connect
		self._conn: Optional[PgConnection] = None
		self._identity_map: dict[IdentityKey, Any] = {}

	def __repr__(self) -> str:
		return f"<Session worker={self.worker_id!r} tracked={len(self._identity_map)} gen={self.generation}>"

	# ---------- Connection ----------
	def get_connection(self) -> Optional[PgConnection]:
		"""
		Return the cached connection, reconnecting once when it is stale. None when unreachable.
		"""
		conn = self._conn
		if conn is not None:
			if conn.status() is ConnectionStatus.OK:
				return conn
			logger.warning("Connection for session %r is stale; reconnecting", self.worker_id)
			conn.close()
			self._conn = None
		try:
			self._conn = self._connect()
		except Exception:
			logger.exception("Failed to connect for session %r", self.worker_id)
			return None
		return self._conn

	def close(self) -> None:
		self.flush()
		if self._conn is not None:
			self._conn.close()
			self._conn = None

	def run(self, text: str, params: Sequence[Any] = ()) -> QueryResult:
		"""
		Execute already-numbered SQL. Failures are logged and returned, never raised.
		"""
		conn = self.get_connection()
		if conn is None:
			return QueryResult(ResultStatus.FATAL_ERROR, error_message="no connection")
		logger.debug("Executing %s with %d params", text, len(params))
		result = conn.execute_params(text, list(params)) if params else conn.execute(text)
		if not result.ok:
			logger.error("Query failed: %s [%s]", result.error_message, text)
		return result

	def execute(self, text: str, *params: Any) -> QueryResult:
		"""
		Execute raw SQL, binding each bare `%` in text to the next positional param.
		"""
		if params:
			text, bound, _ = process_format_str(text, 1, params)
			return self.run(text, bound)
		return self.run(text)

	# ---------- Querying ----------
	def query(self, model: Any, alias: Optional[str] = None) -> QueryBuilder:
		return QueryBuilder(self, model, alias=alias)

	def add(self, instance: Any, model: Any = None) -> Any:
		"""
		INSERT instance and track it. Returns the canonical instance, or None on failure.

		A primary key holding its type's zero value (None, 0, "") is left to the database.
		"""
		desc = self.catalog.require(model) if model is not None else self.catalog.descriptor_for(instance)
		names: list[str] = []
		values: list[Any] = []
		for index, col in enumerate(desc.columns):
			value = col.get(instance)
			if index == desc.primary_key and _is_zero_value(value):
				continue
			if value is None and col.default is not None:
				continue
			names.append(col.name)
			values.append(value)

		if names:
			fields = ", ".join(f'"{n}"' for n in names)
			placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
			text = f"INSERT INTO {desc.qualified_table} ({fields}) VALUES ({placeholders}) RETURNING *"
		else:
			text = f"INSERT INTO {desc.qualified_table} DEFAULT VALUES RETURNING *"

		result = self.run(text, values)
		if result.status is not ResultStatus.TUPLES_OK or not result.rows:
			return None
		return self._adopt(desc, instance, result)

	def cached(self, model: Any, key: Any) -> Any:
		"""
		Return the tracked instance for (model, key) without querying, or None.
		"""
		desc = self.catalog.require(model)
		return self._identity_map.get(IdentityKey(desc.name, str(key)))

	# ---------- Identity map ----------
	@staticmethod
	def _first_columns(columns: Sequence[str]) -> dict[str, int]:
		"""Index of the first occurrence of each column name; joined tables repeat names like id."""
		positions: dict[str, int] = {}
		for index, name in enumerate(columns):
			positions.setdefault(name, index)
		return positions

	@classmethod
	def _populate(cls, desc: ModelDescriptor, instance: Any, columns: Sequence[str], row: Sequence[Any]) -> None:
		for name, index in cls._first_columns(columns).items():
			col = desc.column(name)
			if col is not None:
				col.set(instance, row[index])

	def lookup_or_create(self, model: Any, result: QueryResult) -> list[Any]:
		"""
		Map rows onto tracked instances, refreshing existing ones in place.

		Rows whose shape lacks the primary key column come back as untracked instances.
		"""
		desc = self.catalog.require(model)
		pk = desc.pk_column
		pk_index = result.column_index(pk.name) if pk is not None else -1
		if pk_index < 0:
			return self.materialize(desc, result)

		instances = []
		for row in result.rows:
			key = IdentityKey(desc.name, str(row[pk_index]))
			instance = self._identity_map.get(key)
			if instance is None:
				instance = self.arena.allocate(desc.new_instance)
				self._identity_map[key] = instance
			self._populate(desc, instance, result.columns, row)
			instances.append(instance)
		return instances

	def materialize(self, result_type: Any, result: QueryResult) -> list[Any]:
		"""
		Allocate untracked instances of result_type, one per row.
		"""
		desc = self.catalog.get(result_type)
		instances = []
		for row in result.rows:
			if desc is not None:
				instance = self.arena.allocate(desc.new_instance)
				self._populate(desc, instance, result.columns, row)
			else:
				instance = self.arena.allocate(result_type)
				for name, index in self._first_columns(result.columns).items():
					setattr(instance, name, row[index])
			instances.append(instance)
		return instances

	def _adopt(self, desc: ModelDescriptor, instance: Any, result: QueryResult) -> Any:
		row = result.rows[0]
		self._populate(desc, instance, result.columns, row)
		pk = desc.pk_column
		pk_index = result.column_index(pk.name) if pk is not None else -1
		if pk_index < 0:
			return self.arena.adopt(instance)

		key = IdentityKey(desc.name, str(row[pk_index]))
		existing = self._identity_map.get(key)
		if existing is not None and existing is not instance:
			self._populate(desc, existing, result.columns, row)
			return existing
		self._identity_map[key] = instance
		return self.arena.adopt(instance)

	def flush(self) -> None:
		"""
		Forget every tracked instance. Handles obtained before the flush are invalid.
		"""
		logger.debug("Flushing session %r (%d tracked)", self.worker_id, len(self._identity_map))
		self._identity_map.clear()
		self.arena.reset()
		self.generation += 1


class SessionRegistry:
	"""
	Worker id -> Session. Only session creation takes the lock.

		registry = SessionRegistry(catalog, functools.partial(PgConnection.connect, database="app"))
		session = registry.get_or_create_session(threading.get_ident())
	"""

	def __init__(self, catalog: Catalog, connect: Callable[[], PgConnection]):
		self.catalog = catalog
		self._connect = connect
		self._sessions: dict[Hashable, Session] = {}
		self._lock = RLock()

	def get_or_create_session(self, worker_id: Hashable) -> Session:
		session = self._sessions.get(worker_id)
		if session is not None:
			return session
		with self._lock:
			session = self._sessions.get(worker_id)
			if session is None:
				session = Session(self.catalog, self._connect, worker_id=worker_id)
				self._sessions[worker_id] = session
				logger.debug("Created session for worker %r", worker_id)
			return session

	def remove(self, worker_id: Hashable) -> None:
		with self._lock:
			session = self._sessions.pop(worker_id, None)
		if session is not None:
			session.close()

	def close_all(self) -> None:
		"""Close every session and clear the registry."""
		with self._lock:
			sessions = list(self._sessions.values())
			self._sessions.clear()
		for session in sessions:
			try:
				session.close()
			except Exception:
				logger.exception("Error closing session %r", session.worker_id)
