import unittest
from dataclasses import dataclass
from typing import Optional

from fakes import Post, Team, TeamUser, User, make_catalog, model_descriptors
from pgmapper.catalog import (
    Catalog,
    ColumnDescriptor,
    ForeignKey,
    ModelDescriptor,
    RelationKind,
    RelationshipDescriptor,
)
from pgmapper.errors import CatalogValidationError


@dataclass
class Widget:
    id: Optional[int] = None
    code: Optional[str] = None
    owner_id: Optional[int] = None


def _widget(*columns, relationships=()) -> ModelDescriptor:
    return ModelDescriptor(Widget, "widget", tuple(columns), relationships=tuple(relationships))


class TestCatalogBuild(unittest.TestCase):
    def test_builds_valid_catalog(self):
        catalog = make_catalog()

        self.assertEqual(catalog.errors, [])
        self.assertEqual(len(catalog), 6)
        user = catalog.require("User")
        self.assertIs(catalog.get(User), user)
        self.assertEqual(user.pk_column.name, "id")
        self.assertEqual(user.qualified_table, '"public"."user"')
        self.assertEqual(catalog.require("AuditEntry").primary_key, -1)

    def test_foreign_key_column_defaults_to_target_primary_key(self):
        post = make_catalog().require(Post)
        self.assertEqual(post.column("user_id").foreign_key.column, "id")

    def test_relationship_keys_are_resolved(self):
        catalog = make_catalog()
        author = catalog.require(Post).relationship("author")
        self.assertEqual((author.local_key, author.foreign_key), ("user_id", "id"))
        posts = catalog.require(User).relationship("posts")
        self.assertEqual((posts.local_key, posts.foreign_key), ("id", "user_id"))

    def test_column_names_are_lower_cased_and_accessors_bound(self):
        catalog = Catalog.build([_widget(ColumnDescriptor("ID", "serial", primary_key=True, attr="id"))])
        widget = Widget(id=5)
        col = catalog.require(Widget).column("id")

        self.assertEqual(col.name, "id")
        self.assertEqual(col.get(widget), 5)
        col.set(widget, 6)
        self.assertEqual(widget.id, 6)

    def test_custom_accessors_are_kept(self):
        store = {}
        column = ColumnDescriptor(
            "code",
            "text",
            getter=lambda obj: store.get("code"),
            setter=lambda obj, value: store.__setitem__("code", value),
        )
        catalog = Catalog.build([_widget(ColumnDescriptor("id", "serial", primary_key=True), column)])
        col = catalog.require(Widget).column("code")
        col.set(Widget(), "abc")
        self.assertEqual(col.get(Widget()), "abc")


class TestCatalogValidation(unittest.TestCase):
    def test_duplicate_primary_key_excludes_only_that_model(self):
        bad = _widget(
            ColumnDescriptor("id", "serial", primary_key=True),
            ColumnDescriptor("code", "text", primary_key=True),
        )
        with self.assertLogs("pgmapper.catalog", level="WARNING") as logs:
            catalog = Catalog.build(model_descriptors() + [bad])

        self.assertNotIn(Widget, catalog)
        self.assertIn(User, catalog)
        self.assertEqual(len(catalog.errors), 1)
        self.assertIsInstance(catalog.errors[0], CatalogValidationError)
        self.assertEqual(catalog.errors[0].model, "Widget")
        self.assertTrue(any("multiple primary key" in msg for msg in logs.output))

    def test_duplicate_column_excludes_model(self):
        catalog = Catalog.build([_widget(ColumnDescriptor("id", "serial"), ColumnDescriptor("ID", "integer"))])
        self.assertNotIn("Widget", catalog)
        self.assertIn("duplicate column", str(catalog.errors[0]))

    def test_unknown_foreign_key_target_drops_foreign_key(self):
        catalog = Catalog.build(
            [
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    ColumnDescriptor("owner_id", "integer", foreign_key=ForeignKey("Nobody")),
                )
            ]
        )
        widget = catalog.require(Widget)
        self.assertIsNone(widget.column("owner_id").foreign_key)
        self.assertEqual(catalog.errors[0].column, "owner_id")

    def test_unknown_foreign_key_column_drops_foreign_key(self):
        catalog = Catalog.build(
            model_descriptors()
            + [
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    ColumnDescriptor("owner_id", "integer", foreign_key=ForeignKey("User", column="uuid")),
                )
            ]
        )
        self.assertIsNone(catalog.require(Widget).column("owner_id").foreign_key)
        self.assertIn("unknown column User.uuid", str(catalog.errors[0]))

    def test_foreign_key_to_excluded_model_is_dropped(self):
        broken_team = ModelDescriptor(
            Team,
            "team",
            (
                ColumnDescriptor("id", "serial", primary_key=True),
                ColumnDescriptor("id2", "serial", primary_key=True),
            ),
        )
        catalog = Catalog.build(
            [
                broken_team,
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    ColumnDescriptor("owner_id", "integer", foreign_key=ForeignKey("Team")),
                ),
            ]
        )
        self.assertNotIn(Team, catalog)
        self.assertIsNone(catalog.require(Widget).column("owner_id").foreign_key)
        self.assertEqual(len(catalog.errors), 2)

    def test_relationship_with_unknown_target_is_disabled(self):
        catalog = Catalog.build(
            [
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    relationships=[RelationshipDescriptor("parts", RelationKind.HAS_MANY, "Part", foreign_key="widget_id")],
                )
            ]
        )
        widget = catalog.require(Widget)
        self.assertEqual(widget.relationships, ())
        self.assertEqual(catalog.errors[0].relationship, "parts")

    def test_belongs_to_requires_local_key_column(self):
        catalog = Catalog.build(
            model_descriptors()
            + [
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    relationships=[RelationshipDescriptor("owner", RelationKind.BELONGS_TO, "User", local_key="missing")],
                )
            ]
        )
        self.assertIsNone(catalog.require(Widget).relationship("owner"))

    def test_belongs_to_without_foreign_key_needs_target_primary_key(self):
        catalog = Catalog.build(
            model_descriptors()
            + [
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    ColumnDescriptor("code", "text"),
                    relationships=[RelationshipDescriptor("entry", RelationKind.BELONGS_TO, "AuditEntry", local_key="code")],
                )
            ]
        )
        self.assertIsNone(catalog.require(Widget).relationship("entry"))
        self.assertIn("no primary key", str(catalog.errors[0]))

    def test_has_many_without_local_key_needs_owner_primary_key(self):
        catalog = Catalog.build(
            model_descriptors()
            + [
                _widget(
                    ColumnDescriptor("code", "text"),
                    relationships=[RelationshipDescriptor("posts", RelationKind.HAS_MANY, "Post", foreign_key="user_id")],
                )
            ]
        )
        self.assertEqual(catalog.require(Widget).relationships, ())

    def test_many_to_many_requires_mapping_columns(self):
        catalog = Catalog.build(
            model_descriptors()
            + [
                _widget(
                    ColumnDescriptor("id", "serial", primary_key=True),
                    relationships=[
                        RelationshipDescriptor(
                            "teams",
                            RelationKind.MANY_TO_MANY,
                            "Team",
                            mapping_model="TeamUser",
                            lookup_key="widget_id",
                            result_key="team_id",
                        ),
                        RelationshipDescriptor(
                            "crews",
                            RelationKind.MANY_TO_MANY,
                            "Team",
                            mapping_model="Nothing",
                            lookup_key="user_id",
                            result_key="team_id",
                        ),
                    ],
                )
            ]
        )
        self.assertEqual(catalog.require(Widget).relationships, ())
        self.assertEqual(len(catalog.errors), 2)
        self.assertIn(TeamUser, catalog)

    def test_require_unknown_model_raises(self):
        with self.assertRaisesRegex(ValueError, "Unknown model"):
            make_catalog().require("Nope")


if __name__ == "__main__":
    unittest.main()
