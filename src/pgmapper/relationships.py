from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from pgmapper.catalog import ModelDescriptor, RelationKind, RelationshipDescriptor

if TYPE_CHECKING:
    from pgmapper.session import Session

logger = logging.getLogger(__name__)


class RelationshipResolver:
    """
    Populate relationship fields on instances loaded through a session.

    Only BELONGS_TO has a batched form: resolve_many() issues a single
    `= ANY(...)` query for it. HAS_ONE, HAS_MANY and MANY_TO_MANY are resolved
    one instance at a time, also when called through resolve_many().
    Related instances stay owned by the session.
    """

    def __init__(self, session: Session):
        self.session = session
        self.catalog = session.catalog

    def _descriptor(self, instance: Any, model: Any) -> ModelDescriptor:
        if model is not None:
            return self.catalog.require(model)
        return self.catalog.descriptor_for(instance)

    def _selected(self, desc: ModelDescriptor, field: str | None) -> Sequence[RelationshipDescriptor]:
        if field is None:
            return desc.relationships
        rel = desc.relationship(field)
        if rel is None:
            raise ValueError(f"{desc.name} has no relationship {field!r}")
        return (rel,)

    # ---------- Public API ----------
    def resolve(self, instance: Any, field: str | None = None, *, model: Any = None) -> None:
        desc = self._descriptor(instance, model)
        for rel in self._selected(desc, field):
            self._resolve_one(desc, rel, instance)

    def resolve_many(self, instances: Iterable[Any], field: str | None = None, *, model: Any = None) -> None:
        instances = list(instances)
        if not instances:
            return
        desc = self._descriptor(instances[0], model)
        self._resolve_batch(desc, self._selected(desc, field), instances)

    def load_includes(self, model: Any, instances: Sequence[Any], names: Iterable[str]) -> None:
        """Resolve the named relationships for a freshly loaded batch."""
        desc = self.catalog.require(model)
        rels = []
        for name in names:
            rel = desc.relationship(name)
            if rel is None:
                logger.warning("Ignoring include of unknown relationship %s.%s", desc.name, name)
                continue
            rels.append(rel)
        self._resolve_batch(desc, rels, instances)

    def link(self, instance: Any, other: Any, field: str | None = None) -> Any:
        """
        Insert one mapping row joining instance and other; returns the mapping instance.
        """
        desc = self.catalog.descriptor_for(instance)
        rel, target = self._many_to_many(desc, other, field)
        mapping = self.catalog.require(rel.mapping_model)
        row = mapping.new_instance()
        mapping.column(rel.lookup_key).set(row, desc.pk_column.get(instance))
        mapping.column(rel.result_key).set(row, target.pk_column.get(other))
        return self.session.add(row, mapping)

    def unlink(self, instance: Any, other: Any, field: str | None = None) -> int:
        """
        Delete the mapping rows joining instance and other; returns the delete count.
        """
        desc = self.catalog.descriptor_for(instance)
        rel, target = self._many_to_many(desc, other, field)
        return (
            self.session.query(rel.mapping_model)
            .filter(f'"{rel.lookup_key}" = %', desc.pk_column.get(instance))
            .filter(f'"{rel.result_key}" = %', target.pk_column.get(other))
            .delete()
        )

    def _many_to_many(
        self,
        desc: ModelDescriptor,
        other: Any,
        field: str | None,
    ) -> tuple[RelationshipDescriptor, ModelDescriptor]:
        target = self.catalog.descriptor_for(other)
        for rel in desc.relationships:
            if rel.kind is not RelationKind.MANY_TO_MANY or rel.target != target.name:
                continue
            if field is None or rel.name == field:
                return rel, target
        raise ValueError(f"{desc.name} has no many-to-many relationship to {target.name}")

    # ---------- Dispatch ----------
    def _resolve_batch(
        self,
        desc: ModelDescriptor,
        rels: Sequence[RelationshipDescriptor],
        instances: Sequence[Any],
    ) -> None:
        for rel in rels:
            if rel.kind is RelationKind.BELONGS_TO:
                self._belongs_to_many(desc, rel, instances)
        for rel in rels:
            if rel.kind is RelationKind.BELONGS_TO:
                continue
            for instance in instances:
                self._resolve_one(desc, rel, instance)

    def _resolve_one(self, desc: ModelDescriptor, rel: RelationshipDescriptor, instance: Any) -> None:
        if rel.kind is RelationKind.BELONGS_TO:
            self._belongs_to(desc, rel, instance)
        elif rel.kind is RelationKind.MANY_TO_MANY:
            self._many_to_many_members(desc, rel, instance)
        else:
            self._has(desc, rel, instance)

    # ---------- Handlers ----------
    def _belongs_to(self, desc: ModelDescriptor, rel: RelationshipDescriptor, instance: Any) -> None:
        value = desc.column(rel.local_key).get(instance)
        if value is None:
            rel.set(instance, None)
            return
        related = self.session.query(rel.target).filter(f'"{rel.foreign_key}" = %', value).first()
        rel.set(instance, related)

    def _belongs_to_many(self, desc: ModelDescriptor, rel: RelationshipDescriptor, instances: Sequence[Any]) -> None:
        local = desc.column(rel.local_key)
        keys: list[Any] = []
        for instance in instances:
            value = local.get(instance)
            if value is not None and value not in keys:
                keys.append(value)

        related: list[Any] = []
        if keys:
            related = self.session.query(rel.target).filter(f'"{rel.foreign_key}" = ANY(%)', keys).all()

        target_key = self.catalog.require(rel.target).column(rel.foreign_key)
        for instance in instances:
            value = local.get(instance)
            match = None
            if value is not None:
                for candidate in related:
                    if target_key.get(candidate) == value:
                        match = candidate
                        break
            rel.set(instance, match)

    def _has(self, desc: ModelDescriptor, rel: RelationshipDescriptor, instance: Any) -> None:
        many = rel.kind is RelationKind.HAS_MANY
        value = desc.column(rel.local_key).get(instance)
        if value is None:
            rel.set(instance, [] if many else None)
            return
        query = self.session.query(rel.target).filter(f'"{rel.foreign_key}" = %', value)
        rel.set(instance, query.all() if many else query.first())

    def _many_to_many_members(self, desc: ModelDescriptor, rel: RelationshipDescriptor, instance: Any) -> None:
        mapping = self.catalog.require(rel.mapping_model)
        target = self.catalog.require(rel.target)
        links = (
            self.session.query(mapping)
            .select(f'"{rel.result_key}"')
            .filter(f'"{rel.lookup_key}" = %', desc.pk_column.get(instance))
            .all()
        )
        result_key = mapping.column(rel.result_key)
        ids = [result_key.get(link) for link in links]
        if not ids:
            rel.set(instance, [])
            return

        target_pk = target.pk_column.name
        members = (
            self.session.query(target)
            .filter(f'"{target_pk}" = ANY(%)', ids)
            .order(target_pk, "ASC")
            .all()
        )
        rel.set(instance, members)
