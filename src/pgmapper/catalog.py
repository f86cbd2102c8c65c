from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Any, Callable, Iterable, Iterator

from pgmapper.errors import CatalogValidationError

logger = logging.getLogger(__name__)

Getter = Callable[[Any], Any]
Setter = Callable[[Any, Any], None]


class FkAction(str, enum.Enum):
    NO_ACTION = "NO ACTION"
    RESTRICT = "RESTRICT"
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"


class RelationKind(enum.Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    MANY_TO_MANY = "many_to_many"


@dataclass(frozen=True)
class ForeignKey:
    """REFERENCES target; column defaults to the target model's primary key."""

    model: str
    column: str | None = None
    on_delete: FkAction = FkAction.NO_ACTION
    on_update: FkAction = FkAction.NO_ACTION


@dataclass(frozen=True)
class Check:
    name: str
    condition: str


def _attribute_getter(attr: str) -> Getter:
    return lambda instance: getattr(instance, attr, None)


def _attribute_setter(attr: str) -> Setter:
    return lambda instance, value: setattr(instance, attr, value)


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: str
    nullable: bool = True
    unique: bool = False
    primary_key: bool = False
    default: Any = None
    default_is_expression: bool = False
    foreign_key: ForeignKey | None = None
    checks: tuple[Check, ...] = ()
    choices: tuple[Any, ...] = ()
    index: bool = False
    attr: str | None = None
    getter: Getter | None = field(default=None, compare=False, repr=False)
    setter: Setter | None = field(default=None, compare=False, repr=False)

    def get(self, instance: Any) -> Any:
        return self.getter(instance)

    def set(self, instance: Any, value: Any) -> None:
        self.setter(instance, value)


@dataclass(frozen=True)
class RelationshipDescriptor:
    """
    Association stored on the field `name` of the owning instance.

    BELONGS_TO: local_key is a column on the owner, foreign_key a column on the
    target (defaults to its primary key).
    HAS_ONE / HAS_MANY: foreign_key is a column on the target, local_key a column
    on the owner (defaults to its primary key).
    MANY_TO_MANY: mapping_model rows link owner and target; lookup_key matches the
    owner primary key, result_key the target primary key.
    """

    name: str
    kind: RelationKind
    target: str
    local_key: str | None = None
    foreign_key: str | None = None
    mapping_model: str | None = None
    lookup_key: str | None = None
    result_key: str | None = None
    getter: Getter | None = field(default=None, compare=False, repr=False)
    setter: Setter | None = field(default=None, compare=False, repr=False)

    def get(self, instance: Any) -> Any:
        return self.getter(instance)

    def set(self, instance: Any, value: Any) -> None:
        self.setter(instance, value)


@dataclass(frozen=True)
class ModelDescriptor:
    cls: type
    table: str
    columns: tuple[ColumnDescriptor, ...]
    schema: str = "public"
    name: str | None = None
    relationships: tuple[RelationshipDescriptor, ...] = ()
    factory: Callable[[], Any] | None = field(default=None, compare=False, repr=False)
    primary_key: int = -1

    @cached_property
    def _columns_by_name(self) -> dict[str, ColumnDescriptor]:
        return {c.name: c for c in self.columns}

    @property
    def pk_column(self) -> ColumnDescriptor | None:
        if self.primary_key < 0:
            return None
        return self.columns[self.primary_key]

    @property
    def qualified_table(self) -> str:
        return f'"{self.schema}"."{self.table}"'

    def column(self, name: str) -> ColumnDescriptor | None:
        return self._columns_by_name.get(name.lower())

    def relationship(self, name: str) -> RelationshipDescriptor | None:
        for rel in self.relationships:
            if rel.name == name:
                return rel
        return None

    def new_instance(self) -> Any:
        return self.factory()


class Catalog:
    """
    Immutable model registry keyed by model name (lookups also accept the class).

    Build with Catalog.build(descriptors); rejected items are listed on `errors`.
    """

    def __init__(self, models: dict[str, ModelDescriptor], errors: Iterable[CatalogValidationError] = ()):
        self._models = dict(models)
        self._by_class = {m.cls: m for m in self._models.values()}
        self.errors = list(errors)

    def __contains__(self, model: Any) -> bool:
        return self.get(model) is not None

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)

    def get(self, model: Any) -> ModelDescriptor | None:
        if isinstance(model, ModelDescriptor):
            return self._models.get(model.name)
        if isinstance(model, str):
            return self._models.get(model)
        return self._by_class.get(model)

    def require(self, model: Any) -> ModelDescriptor:
        desc = self.get(model)
        if desc is None:
            raise ValueError(f"Unknown model: {model!r}")
        return desc

    def descriptor_for(self, instance: Any) -> ModelDescriptor:
        return self.require(type(instance))

    @classmethod
    def build(cls, descriptors: Iterable[ModelDescriptor]) -> "Catalog":
        errors: list[CatalogValidationError] = []

        models: dict[str, ModelDescriptor] = {}
        for desc in descriptors:
            bound = _bind_model(desc, models, errors)
            if bound is not None:
                models[bound.name] = bound

        for name, desc in list(models.items()):
            columns = tuple(_check_foreign_key(models, desc, c, errors) for c in desc.columns)
            models[name] = replace(desc, columns=columns)

        for name, desc in list(models.items()):
            relationships = []
            for rel in desc.relationships:
                resolved = _resolve_relationship(models, desc, rel, errors)
                if resolved is not None:
                    relationships.append(resolved)
            models[name] = replace(desc, relationships=tuple(relationships))

        logger.debug("Built catalog with %d models (%d validation errors)", len(models), len(errors))
        return cls(models, errors)


def _reject(errors: list[CatalogValidationError], error: CatalogValidationError) -> None:
    logger.warning("Catalog validation failed: %s", error)
    errors.append(error)


def _bind_column(column: ColumnDescriptor) -> ColumnDescriptor:
    attr = column.attr or column.name
    return replace(
        column,
        name=column.name.lower(),
        attr=attr,
        getter=column.getter or _attribute_getter(attr),
        setter=column.setter or _attribute_setter(attr),
    )


def _bind_model(
    desc: ModelDescriptor,
    known: dict[str, ModelDescriptor],
    errors: list[CatalogValidationError],
) -> ModelDescriptor | None:
    name = desc.name or desc.cls.__name__
    if name in known:
        _reject(errors, CatalogValidationError(name, "duplicate model name"))
        return None

    columns = tuple(_bind_column(c) for c in desc.columns)
    names = [c.name for c in columns]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        _reject(errors, CatalogValidationError(name, f"duplicate column(s) {duplicates}"))
        return None

    pk_indexes = [i for i, c in enumerate(columns) if c.primary_key]
    if len(pk_indexes) > 1:
        pk_names = [columns[i].name for i in pk_indexes]
        _reject(errors, CatalogValidationError(name, f"multiple primary key columns {pk_names}"))
        return None

    return replace(
        desc,
        name=name,
        columns=columns,
        primary_key=pk_indexes[0] if pk_indexes else -1,
        factory=desc.factory or desc.cls,
    )


def _check_foreign_key(
    models: dict[str, ModelDescriptor],
    desc: ModelDescriptor,
    column: ColumnDescriptor,
    errors: list[CatalogValidationError],
) -> ColumnDescriptor:
    fk = column.foreign_key
    if fk is None:
        return column

    target = models.get(fk.model)
    if target is None:
        _reject(errors, CatalogValidationError(desc.name, f"foreign key to unknown model {fk.model!r}", column=column.name))
        return replace(column, foreign_key=None)

    if fk.column is None:
        if target.pk_column is None:
            _reject(
                errors,
                CatalogValidationError(desc.name, f"foreign key target {fk.model!r} has no primary key", column=column.name),
            )
            return replace(column, foreign_key=None)
        return replace(column, foreign_key=replace(fk, column=target.pk_column.name))

    if target.column(fk.column) is None:
        _reject(
            errors,
            CatalogValidationError(desc.name, f"foreign key to unknown column {fk.model}.{fk.column}", column=column.name),
        )
        return replace(column, foreign_key=None)
    return replace(column, foreign_key=replace(fk, column=fk.column.lower()))


def _resolve_relationship(
    models: dict[str, ModelDescriptor],
    desc: ModelDescriptor,
    rel: RelationshipDescriptor,
    errors: list[CatalogValidationError],
) -> RelationshipDescriptor | None:
    def fail(message: str) -> None:
        _reject(errors, CatalogValidationError(desc.name, message, relationship=rel.name))

    target = models.get(rel.target)
    if target is None:
        fail(f"unknown target model {rel.target!r}")
        return None

    rel = replace(
        rel,
        getter=rel.getter or _attribute_getter(rel.name),
        setter=rel.setter or _attribute_setter(rel.name),
    )

    if rel.kind is RelationKind.BELONGS_TO:
        if rel.local_key is None or desc.column(rel.local_key) is None:
            fail(f"local key {rel.local_key!r} is not a column of {desc.name}")
            return None
        if rel.foreign_key is None:
            if target.pk_column is None:
                fail(f"target {target.name} has no primary key and no foreign key was given")
                return None
            return replace(rel, local_key=rel.local_key.lower(), foreign_key=target.pk_column.name)
        if target.column(rel.foreign_key) is None:
            fail(f"foreign key {rel.foreign_key!r} is not a column of {target.name}")
            return None
        return replace(rel, local_key=rel.local_key.lower(), foreign_key=rel.foreign_key.lower())

    if rel.kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
        local_key = rel.local_key
        if local_key is None:
            if desc.pk_column is None:
                fail(f"{desc.name} has no primary key and no local key was given")
                return None
            local_key = desc.pk_column.name
        elif desc.column(local_key) is None:
            fail(f"local key {local_key!r} is not a column of {desc.name}")
            return None
        if rel.foreign_key is None or target.column(rel.foreign_key) is None:
            fail(f"foreign key {rel.foreign_key!r} is not a column of {target.name}")
            return None
        return replace(rel, local_key=local_key.lower(), foreign_key=rel.foreign_key.lower())

    mapping = models.get(rel.mapping_model) if rel.mapping_model else None
    if mapping is None:
        fail(f"unknown mapping model {rel.mapping_model!r}")
        return None
    for model in (desc, target, mapping):
        if model.pk_column is None:
            fail(f"{model.name} has no primary key")
            return None
    for key in (rel.lookup_key, rel.result_key):
        if key is None or mapping.column(key) is None:
            fail(f"mapping key {key!r} is not a column of {mapping.name}")
            return None
    return replace(rel, lookup_key=rel.lookup_key.lower(), result_key=rel.result_key.lower())
