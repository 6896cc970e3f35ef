"""Tests for the reconciliation engine against SQLite in-memory."""

import pytest

from tallyorm import ReconciliationEngine, Registry
from tallyorm.exceptions import (
    ConstraintViolationError,
    InvalidArgumentError,
    NotFoundError,
    UnknownFieldError,
)
from tallyorm.storage import RecordingStore

JUNCTION = "r__authors__books"


def params_of(recording_store, prefix):
    """Params of the first recorded statement starting with ``prefix``."""
    return next(p for sql, p in recording_store.statements if sql.startswith(prefix))


class TestSaveNew:
    """Tests for saving entities that have never been saved."""

    def test_save_assigns_identity_and_timestamps(self, engine):
        book = engine.new("Book", title="Dune", year=1965)
        result = engine.save(book)
        assert book.identity is not None
        assert book.is_persisted
        assert book.created_at is not None
        assert book.altered_at == book.created_at
        assert result.inserts == 1
        assert result.entities_saved == 1

    def test_transient_fields_are_not_written(self, engine, recording_store):
        book = engine.new("Book", title="Dune", notes="signed")
        engine.save(book)
        params = params_of(recording_store, 'INSERT INTO "books"')
        assert "signed" not in params.values()
        assert engine.load("Book", book.identity)["notes"] is None

    def test_hierarchy_rows_are_written_root_first(self, engine, recording_store):
        """Person row goes in before the Author row that points at it."""
        author = engine.new("Author", name="Frank Herbert", pen_name="FH")
        result = engine.save(author)

        writes = recording_store.writes()
        assert writes[0].startswith('INSERT INTO "persons"')
        assert writes[1].startswith('INSERT INTO "authors"')
        assert '"parent_id"' in writes[1]
        assert author.key_for("Person") in params_of(
            recording_store, 'INSERT INTO "authors"'
        ).values()
        assert author.identity == author.key_for("Person")
        assert result.inserts == 2

    def test_unsaved_peers_are_saved_first(self, engine, recording_store):
        book = engine.new("Book", title="Dune")
        author = engine.new("Author", name="Frank Herbert")
        book.add("authors", author)
        result = engine.save(book)

        assert author.is_persisted
        assert result.entities_saved == 2
        assert result.relation_writes == 1
        assert result.inserts == 4
        assert recording_store.writes()[-1].startswith(f'INSERT INTO "{JUNCTION}"')

    def test_junction_row_uses_level_keys(self, engine, recording_store):
        """Junction columns hold each side's key in its own declaring table."""
        engine.save(engine.new("Person", name="not an author"))
        author = engine.new("Author", name="Frank Herbert")
        book = engine.new("Book", title="Dune")
        book.add("authors", author)
        engine.save(book)

        assert author.identity != author.key_for("Author")
        params = params_of(recording_store, f'INSERT INTO "{JUNCTION}"')
        assert author.key_for("Author") in params.values()
        loaded = engine.load("Book", book.identity)
        assert [a.identity for a in loaded.related("authors")] == [author.identity]


class TestManyToMany:
    """Tests for junction reconciliation."""

    def test_convergence(self, engine, recording_store):
        """Loaded {A:2} plus added {A:1, B:1} ends as {A:3, B:1} in storage."""
        a = engine.new("Author", name="A")
        b = engine.new("Author", name="B")
        book = engine.new("Book", title="Dune")
        book.add("authors", a, 2)
        engine.save(book)

        book.add("authors", a)
        book.add("authors", b)
        recording_store.reset()
        engine.save(book)

        writes = recording_store.writes_to(JUNCTION)
        assert len(writes) == 2
        assert writes[0].startswith(f'UPDATE "{JUNCTION}"')
        assert writes[1].startswith(f'INSERT INTO "{JUNCTION}"')

        loaded = engine.load("Book", book.identity)
        assert loaded.count("authors", a) == 3
        assert loaded.count("authors", b) == 1

    def test_deleting_all_emits_one_delete(self, engine, recording_store):
        tag = engine.new("Tag", label="classic")
        book = engine.new("Book", title="Dune")
        book.add("tags", tag, 2)
        engine.save(book)

        book.remove("tags", tag, 2)
        recording_store.reset()
        engine.save(book)

        writes = recording_store.writes_to("r__books__tags")
        assert len(writes) == 1
        assert writes[0].startswith('DELETE FROM "r__books__tags"')
        assert engine.load("Book", book.identity).related("tags") == []

    def test_partial_removal_updates_count(self, engine, recording_store):
        tag = engine.new("Tag", label="classic")
        book = engine.new("Book", title="Dune")
        book.add("tags", tag, 3)
        engine.save(book)

        book.remove("tags", tag)
        recording_store.reset()
        engine.save(book)

        assert recording_store.writes_to("r__books__tags")[0].startswith(
            'UPDATE "r__books__tags"'
        )
        assert engine.load("Book", book.identity).count("tags") == 2

    def test_second_save_is_idempotent(self, engine, recording_store):
        """Saving again without changes issues no relation writes."""
        book = engine.new("Book", title="Dune")
        book.add("authors", engine.new("Author", name="Frank Herbert"))
        book.add("tags", engine.new("Tag", label="classic"))
        book.add("publisher", engine.new("Publisher", name="Chilton"))
        engine.save(book)

        recording_store.reset()
        result = engine.save(book)
        assert result.relation_writes == 0
        assert result.inserts == 0
        assert result.updates == 1
        assert recording_store.writes_to(JUNCTION) == []
        assert recording_store.writes_to("r__books__tags") == []

    def test_metadata_round_trip(self, engine):
        author = engine.new("Author", name="Frank Herbert")
        book = engine.new("Book", title="Dune")
        book.add("authors", author, meta={"role": "writer"})
        engine.save(book)

        loaded = engine.load("Book", book.identity)
        assert loaded.meta("authors", author) == {"role": "writer"}

        loaded.add("authors", author, meta={"role": "editor"})
        engine.save(loaded)
        again = engine.load("Book", book.identity)
        assert again.meta("authors", author) == {"role": "editor"}
        assert again.count("authors", author) == 2

    def test_self_referencing_relation(self, engine):
        fan = engine.new("Person", name="fan")
        idol = engine.new("Author", name="idol")
        fan.add("idol", idol)
        engine.save(fan)

        loaded = engine.load("Person", fan.identity)
        assert [p.identity for p in loaded.related("idol")] == [idol.identity]
        assert loaded.related("idol")[0].type_name == "Person"

    def test_mutual_references_resolve(self, engine):
        """Two new people idolizing each other save without a cycle error."""
        first = engine.new("Person", name="first")
        second = engine.new("Person", name="second")
        first.add("idol", second)
        second.add("idol", first)
        result = engine.save(first)

        assert result.entities_saved == 2
        assert result.relation_writes == 2
        assert engine.load("Person", second.identity).count("idol", first) == 1


class TestManyToOne:
    """Tests for foreign keys held on the owner's row."""

    def test_replacement(self, engine):
        chilton = engine.new("Publisher", name="Chilton")
        ace = engine.new("Publisher", name="Ace")
        book = engine.new("Book", title="Dune")
        book.add("publisher", chilton)
        engine.save(book)

        book.add("publisher", ace)
        engine.save(book)
        loaded = engine.load("Book", book.identity)
        assert loaded.peer("publisher").identity == ace.identity
        assert loaded.peer("publisher")["name"] == "Ace"

    def test_replacement_on_loaded_entity(self, engine, recording_store):
        """Mutating an unloaded group reads it first."""
        chilton = engine.new("Publisher", name="Chilton")
        ace = engine.new("Publisher", name="Ace")
        book = engine.new("Book", title="Dune")
        book.add("publisher", chilton)
        engine.save(book)

        loaded = engine.load("Book", book.identity)
        recording_store.reset()
        loaded.add("publisher", ace)
        assert len(recording_store.reads()) == 1
        assert loaded.group("publisher").deleted.get(chilton) == 1
        engine.save(loaded)
        assert engine.load("Book", book.identity).peer("publisher").identity == ace.identity

    def test_removal_clears_column(self, engine):
        chilton = engine.new("Publisher", name="Chilton")
        book = engine.new("Book", title="Dune")
        book.add("publisher", chilton)
        engine.save(book)

        book.remove("publisher", chilton)
        engine.save(book)
        assert engine.load("Book", book.identity).peer("publisher") is None

    def test_untouched_column_is_not_written(self, engine, recording_store):
        book = engine.new("Book", title="Dune")
        book.add("publisher", engine.new("Publisher", name="Chilton"))
        engine.save(book)

        recording_store.reset()
        book["title"] = "Dune (1965)"
        engine.save(book)
        update = recording_store.writes_to("books")[0]
        assert "publisher_id" not in update


class TestOneToMany:
    """Tests for foreign keys held on the peer's row."""

    def test_add_points_peer_at_owner(self, engine):
        publisher = engine.new("Publisher", name="Chilton")
        book = engine.new("Book", title="Dune")
        publisher.add("books", book)
        engine.save(publisher)

        assert book.is_persisted
        loaded_book = engine.load("Book", book.identity)
        assert loaded_book.peer("publisher").identity == publisher.identity
        loaded_publisher = engine.load("Publisher", publisher.identity)
        assert [b.identity for b in loaded_publisher.related("books")] == [book.identity]

    def test_remove_nulls_peer_column(self, engine, recording_store):
        publisher = engine.new("Publisher", name="Chilton")
        dune, messiah = engine.new("Book", title="Dune"), engine.new("Book", title="Messiah")
        publisher.add("books", dune)
        publisher.add("books", messiah)
        engine.save(publisher)

        publisher.remove("books", dune)
        recording_store.reset()
        result = engine.save(publisher)
        assert result.relation_writes == 1
        sql, params = next(
            (s, p) for s, p in recording_store.statements if s.startswith('UPDATE "books"')
        )
        assert '"publisher_id" IS NULL' not in sql
        assert None in params.values()

        loaded = engine.load("Publisher", publisher.identity)
        assert [b["title"] for b in loaded.related("books")] == ["Messiah"]

    def test_removal_does_not_steal_reassigned_peer(self, engine):
        """Removing a book another publisher has since claimed leaves it there."""
        chilton = engine.new("Publisher", name="Chilton")
        ace = engine.new("Publisher", name="Ace")
        book = engine.new("Book", title="Dune")
        chilton.add("books", book)
        engine.save(chilton)

        ace.add("books", book)
        engine.save(ace)
        chilton.remove("books", book)
        engine.save(chilton)

        assert engine.load("Book", book.identity).peer("publisher").identity == ace.identity

    def test_max_count_checked_at_save(self, engine, recording_store):
        shelf = engine.new("Shelf", label="favorites")
        for title in ("Dune", "Messiah", "Children"):
            shelf.add("books", engine.new("Book", title=title))

        with pytest.raises(ConstraintViolationError) as exc_info:
            engine.save(shelf)
        assert exc_info.value.count == 3
        assert "at most 2" in str(exc_info.value)
        assert recording_store.writes() == []

    def test_max_count_counts_stored_rows(self, engine):
        """A lazily read group is checked with its stored rows included."""
        shelf = engine.new("Shelf", label="favorites")
        shelf.add("books", engine.new("Book", title="Dune"))
        shelf.add("books", engine.new("Book", title="Messiah"))
        engine.save(shelf)

        loaded = engine.load("Shelf", shelf.identity)
        loaded.add("books", engine.new("Book", title="Children"))
        with pytest.raises(ConstraintViolationError):
            engine.save(loaded)

    def test_added_persisted_peer_is_saved(self, engine):
        """Field edits on a stored peer are written along with its back-reference."""
        publisher = engine.new("Publisher", name="Chilton")
        book = engine.new("Book", title="Dune")
        engine.save(publisher)
        engine.save(book)

        book["title"] = "Dune (revised)"
        publisher.add("books", book)
        result = engine.save(publisher)
        assert result.entities_saved == 2

        loaded = engine.load("Book", book.identity)
        assert loaded["title"] == "Dune (revised)"
        assert loaded.peer("publisher").identity == publisher.identity

    def test_mirrored_add_on_stored_peer(self, engine):
        """A peer already mid-save is pointed at the owner without being saved twice."""
        book = engine.new("Book", title="Dune")
        engine.save(book)
        publisher = engine.new("Publisher", name="Chilton")
        book.add("publisher", publisher)
        publisher.add("books", book)

        result = engine.save(book)
        assert result.entities_saved == 2
        assert engine.load("Book", book.identity).peer("publisher").identity == publisher.identity

    def test_min_count_checked_at_save(self, memory_store):
        registry = Registry()
        registry.register_type("Publisher", fields=["name"])
        registry.register_type("Book", fields=["title"])
        registry.register_relation(
            "one_to_many", "Publisher", "publisher", "Book", "books", min_count=1
        )
        recording = RecordingStore(memory_store)
        engine = ReconciliationEngine(registry, recording)

        publisher = engine.new("Publisher", name="Chilton")
        with pytest.raises(ConstraintViolationError) as exc_info:
            engine.save(publisher)
        assert exc_info.value.count == 0
        assert exc_info.value.relation_name == "books"
        assert "at least 1" in str(exc_info.value)
        assert recording.writes() == []

        publisher.add("books", engine.new("Book", title="Dune"))
        assert engine.save(publisher).entities_saved == 2


class TestCycles:
    """Tests for cycle and depth detection."""

    def test_cycle_through_foreign_keys(self, engine):
        book = engine.new("Book", title="Dune")
        publisher = engine.new("Publisher", name="Chilton")
        book.add("publisher", publisher)
        publisher.add("books", book)
        with pytest.raises(ConstraintViolationError) as exc_info:
            engine.save(book)
        assert "Cyclic reference" in str(exc_info.value)

    def test_max_depth(self, registry, recording_store):
        engine = ReconciliationEngine(registry, recording_store, max_depth=3)
        people = [engine.new("Person", name=f"p{i}") for i in range(5)]
        for fan, idol in zip(people, people[1:], strict=False):
            fan.add("idol", idol)
        with pytest.raises(ConstraintViolationError) as exc_info:
            engine.save(people[0])
        assert "nests more than 3" in str(exc_info.value)

    def test_invalid_max_depth(self, registry, recording_store):
        with pytest.raises(InvalidArgumentError):
            ReconciliationEngine(registry, recording_store, max_depth=0)


class TestLoad:
    """Tests for load, lazy relation reads and find."""

    def test_load_restores_fields_and_timestamps(self, engine):
        author = engine.new("Author", name="Frank Herbert", pen_name="FH")
        engine.save(author)

        loaded = engine.load("Author", author.identity)
        assert loaded.fields == {"name": "Frank Herbert", "pen_name": "FH"}
        assert loaded.key_for("Author") == author.key_for("Author")
        assert loaded.created_at == author.created_at
        assert loaded.altered_at == author.altered_at

    def test_load_missing(self, engine):
        with pytest.raises(NotFoundError) as exc_info:
            engine.load("Book", 999)
        assert exc_info.value.identity == 999

    def test_relations_are_read_lazily(self, engine, recording_store):
        book = engine.new("Book", title="Dune")
        book.add("authors", engine.new("Author", name="Frank Herbert"))
        engine.save(book)

        loaded = engine.load("Book", book.identity)
        assert not loaded.group("authors").is_loaded
        recording_store.reset()
        assert len(loaded.related("authors")) == 1
        assert len(recording_store.reads()) == 1
        assert loaded.group("authors").is_loaded
        loaded.related("authors")
        assert len(recording_store.reads()) == 1

    def test_find_with_filter_and_order(self, engine):
        for title, year in (("Dune", 1965), ("Messiah", 1969), ("Children", 1976)):
            engine.save(engine.new("Book", title=title, year=year))

        assert [b["title"] for b in engine.find("Book")] == ["Dune", "Messiah", "Children"]
        assert [b["title"] for b in engine.find("Book", order_by="-year")] == [
            "Children",
            "Messiah",
            "Dune",
        ]
        assert [b["title"] for b in engine.find("Book", year=1969)] == ["Messiah"]

    def test_find_on_inherited_field(self, engine):
        engine.save(engine.new("Author", name="Frank Herbert"))
        engine.save(engine.new("Person", name="Frank Herbert"))
        found = engine.find("Author", name="Frank Herbert")
        assert len(found) == 1
        assert found[0].type_name == "Author"

    def test_find_unknown_field(self, engine):
        with pytest.raises(UnknownFieldError):
            engine.find("Book", isbn="123")
        with pytest.raises(UnknownFieldError):
            engine.find("Book", order_by="notes")


class TestDelete:
    """Tests for delete."""

    def test_delete_removes_every_level(self, engine, recording_store):
        author = engine.new("Author", name="Frank Herbert")
        engine.save(author)

        recording_store.reset()
        assert engine.delete(author) == 2
        writes = recording_store.writes()
        assert writes[0].startswith('DELETE FROM "authors"')
        assert writes[1].startswith('DELETE FROM "persons"')
        assert author.is_deleted
        with pytest.raises(NotFoundError):
            engine.load("Author", author.identity)

    def test_save_after_delete(self, engine):
        book = engine.new("Book", title="Dune")
        engine.save(book)
        engine.delete(book)
        with pytest.raises(InvalidArgumentError):
            engine.save(book)

    def test_delete_unsaved(self, engine):
        with pytest.raises(InvalidArgumentError):
            engine.delete(engine.new("Book"))

    def test_update_of_deleted_row(self, engine):
        book = engine.new("Book", title="Dune")
        engine.save(book)
        stale = engine.load("Book", book.identity)
        engine.delete(book)

        stale["title"] = "Dune Messiah"
        with pytest.raises(NotFoundError):
            engine.save(stale)


class TestSources:
    """Tests for data source routing."""

    def test_unknown_source(self, engine):
        with pytest.raises(InvalidArgumentError) as exc_info:
            engine.store_for("archive")
        assert "default" in str(exc_info.value)

    def test_entities_use_their_source(self, registry, memory_store):
        engine = ReconciliationEngine(registry, {"archive": memory_store})
        book = engine.new("Book", source="archive", title="Dune")
        engine.save(book)
        assert engine.load("Book", book.identity, source="archive")["title"] == "Dune"
        with pytest.raises(InvalidArgumentError):
            engine.save(engine.new("Book", title="Orphan"))


class TestUndoOnError:
    """Tests for restoring entities when their transaction rolls back."""

    def test_rolled_back_save_can_be_retried(self, engine, memory_store):
        tag = engine.new("Tag", label="classic")
        book = engine.new("Book", title="Dune")
        book.add("tags", tag)
        with pytest.raises(RuntimeError):
            with engine.undo_on_error(), memory_store.transaction():
                engine.save(book)
                assert book.identity is not None
                raise RuntimeError("abort")

        assert book.identity is None
        assert tag.identity is None
        assert book.created_at is None
        assert book.count("tags", tag) == 1

        result = engine.save(book)
        assert result.entities_saved == 2
        assert result.relation_writes == 1
        assert engine.load("Book", book.identity).count("tags") == 1

    def test_rolled_back_update_keeps_stored_identity(self, engine, memory_store):
        book = engine.new("Book", title="Dune")
        engine.save(book)
        identity, altered_at = book.identity, book.altered_at

        book["title"] = "Dune (1965)"
        book.add("tags", engine.new("Tag", label="classic"))
        with pytest.raises(RuntimeError):
            with engine.undo_on_error(), memory_store.transaction():
                engine.save(book)
                raise RuntimeError("abort")

        assert book.identity == identity
        assert book.altered_at == altered_at
        assert book.count("tags") == 1
        engine.save(book)
        loaded = engine.load("Book", identity)
        assert loaded["title"] == "Dune (1965)"
        assert loaded.count("tags") == 1

    def test_rolled_back_delete_is_undone(self, engine, memory_store):
        book = engine.new("Book", title="Dune")
        engine.save(book)
        with pytest.raises(RuntimeError):
            with engine.undo_on_error(), memory_store.transaction():
                engine.delete(book)
                raise RuntimeError("abort")

        assert not book.is_deleted
        book["title"] = "Dune (1965)"
        engine.save(book)
        assert engine.load("Book", book.identity)["title"] == "Dune (1965)"

    def test_successful_block_keeps_state(self, engine, memory_store):
        book = engine.new("Book", title="Dune")
        with engine.undo_on_error(), memory_store.transaction():
            engine.save(book)
        assert book.identity is not None
        assert engine.load("Book", book.identity)["title"] == "Dune"
