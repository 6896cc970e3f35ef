"""Tests for RelationDefinition and RelationGroup."""

import pytest

from tallyorm.core.types import LoadState, RelationKind
from tallyorm.exceptions import InvalidArgumentError, InvalidConfigurationError
from tallyorm.relations import RelationDefinition, RelationGroup


class Peer:
    def __init__(self, identity=None):
        self.identity = identity


def many_to_many(**kwargs):
    params = {"meta_columns": ("role",)}
    params.update(kwargs)
    return RelationGroup.create("many_to_many", "Book", "book", "Author", "authors", **params)


class TestRelationDefinition:
    """Tests for relation definition validation and derived names."""

    def test_invalid_kind(self):
        """Test that an unknown kind lists the valid kinds."""
        with pytest.raises(InvalidConfigurationError) as exc_info:
            RelationDefinition("one_to_one", "Book", "book", "Author", "author")
        assert "many_to_many" in str(exc_info.value)

    def test_kind_is_normalized_to_enum(self):
        definition = RelationDefinition("many_to_one", "Book", "book", "Publisher", "publisher")
        assert definition.kind is RelationKind.MANY_TO_ONE

    def test_invalid_type_name(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition("many_to_many", "book", "book", "Author", "author")

    def test_invalid_role_name(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition("many_to_many", "Book", "the__book", "Author", "author")

    def test_reserved_role_name(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            RelationDefinition("many_to_many", "Book", "book", "Author", "parent")
        assert "reserved" in str(exc_info.value)

    def test_negative_min_count(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition("one_to_many", "Shelf", "shelf", "Book", "books", min_count=-1)

    def test_max_below_min(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition(
                "one_to_many", "Shelf", "shelf", "Book", "books", min_count=3, max_count=2
            )

    def test_many_to_one_defaults_to_max_one(self):
        definition = RelationDefinition("many_to_one", "Book", "book", "Publisher", "publisher")
        assert definition.max_count == 1

    def test_many_to_one_rejects_larger_max(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition(
                "many_to_one", "Book", "book", "Publisher", "publisher", max_count=2
            )

    def test_meta_columns_only_on_many_to_many(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition(
                "one_to_many", "Shelf", "shelf", "Book", "books", meta_columns=("role",)
            )

    def test_meta_column_cannot_shadow_count(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition(
                "many_to_many", "Book", "book", "Author", "authors", meta_columns=("count",)
            )

    def test_meta_column_cannot_shadow_key_column(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition(
                "many_to_many", "Book", "book", "Author", "authors", meta_columns=("book_id",)
            )

    def test_self_reference_needs_distinct_roles(self):
        with pytest.raises(InvalidConfigurationError):
            RelationDefinition("many_to_many", "Person", "friend", "Person", "friend")

    def test_derived_names(self):
        """Test key columns and tables for each kind."""
        m2o = RelationDefinition("many_to_one", "Book", "book", "Publisher", "publisher")
        assert m2o.name == "publisher"
        assert m2o.table_name == "books"
        assert m2o.column_name == "publisher_id"

        o2m = RelationDefinition("one_to_many", "Publisher", "publisher", "Book", "books")
        assert o2m.table_name == "books"
        assert o2m.column_name == "publisher_id"

        m2m = RelationDefinition("many_to_many", "Book", "book", "Author", "authors")
        assert m2m.table_name == "r__authors__books"
        assert m2m.column_name is None
        assert m2m.key_columns == ("book_id", "authors_id")

    def test_accepts(self):
        definition = RelationDefinition(
            "one_to_many", "Shelf", "shelf", "Book", "books", min_count=1, max_count=2
        )
        assert not definition.accepts(0)
        assert definition.accepts(1)
        assert definition.accepts(2)
        assert not definition.accepts(3)


class TestRelationGroup:
    """Tests for loaded/added/deleted bookkeeping."""

    def test_new_group_is_unloaded_and_empty(self):
        group = many_to_many()
        assert group.load_state == LoadState.UNLOADED
        assert group.total() == 0
        assert not group.has_pending_changes

    def test_add_returns_loaded_plus_added(self):
        group = many_to_many()
        peer = Peer(1)
        group.populate(peer, 2)
        assert group.add(peer) == 3
        assert group.loaded.get(peer) == 2
        assert group.added.get(peer) == 1

    def test_add_rejects_unknown_meta(self):
        """Test that metadata keys must be declared junction columns."""
        group = many_to_many()
        with pytest.raises(InvalidArgumentError) as exc_info:
            group.add(Peer(1), meta={"rank": 1})
        assert "rank" in str(exc_info.value)

    def test_add_negative_count(self):
        with pytest.raises(InvalidArgumentError):
            many_to_many().add(Peer(1), -2)

    def test_remove_cancels_pending_additions_first(self):
        """Removing an unsaved addition never reaches storage."""
        group = many_to_many()
        peer = Peer(1)
        group.populate(peer, 1)
        group.add(peer, 2)
        assert group.remove(peer, 2) == 2
        assert group.added.get(peer) == 0
        assert group.loaded.get(peer) == 1
        assert group.deleted.get(peer) == 0

    def test_remove_shortfall_comes_out_of_loaded(self):
        group = many_to_many()
        peer = Peer(1)
        group.populate(peer, 3, {"role": "editor"})
        group.add(peer, 1)
        assert group.remove(peer, 2) == 2
        assert group.added.get(peer) == 0
        assert group.loaded.get(peer) == 2
        assert group.deleted.get(peer) == 1
        assert group.deleted.meta(peer) == {"role": "editor"}

    def test_remove_without_tracking(self):
        group = many_to_many()
        peer = Peer(1)
        group.populate(peer)
        assert group.remove(peer, track_deletion=False) == 1
        assert group.deleted.get(peer) == 0

    def test_remove_more_than_related(self):
        group = many_to_many()
        peer = Peer(1)
        group.populate(peer)
        assert group.remove(peer, 5) == 1
        assert group.total() == 0

    def test_many_to_one_add_replaces_current_peer(self):
        """Test that adding to a many-to-one deletes the loaded peer."""
        group = RelationGroup.create("many_to_one", "Book", "book", "Publisher", "publisher")
        old, new = Peer(1), Peer(2)
        group.populate(old)
        group.add(new)
        assert group.single() is new
        assert group.deleted.get(old) == 1
        assert group.total() == 1

    def test_many_to_one_add_twice_keeps_last(self):
        group = RelationGroup.create("many_to_one", "Book", "book", "Publisher", "publisher")
        first, second = Peer(), Peer()
        group.add(first)
        group.add(second)
        assert group.single() is second
        assert len(group.added) == 1

    def test_snapshot_leaves_state_untouched(self):
        group = many_to_many()
        a, b = Peer(1), Peer(2)
        group.populate(a, 2)
        group.add(b)
        group.remove(a)
        snap = group.snapshot()
        assert snap.get(a) == 1
        assert snap.get(b) == 1
        assert group.snapshot(include_deleted=True).get(a) == 2
        snap.increment(b, 10)
        assert group.added.get(b) == 1

    def test_commit_folds_added_into_loaded(self):
        group = many_to_many()
        a, b = Peer(1), Peer(2)
        group.populate(a, 2)
        group.add(a)
        group.add(b)
        group.remove(a, 1)
        group.commit()
        assert group.is_loaded
        assert group.loaded.get(a) == 2
        assert group.loaded.get(b) == 1
        assert not group.has_pending_changes

    def test_single_on_empty_group(self):
        group = RelationGroup.create("many_to_one", "Book", "book", "Publisher", "publisher")
        assert group.single() is None
