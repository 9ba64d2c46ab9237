"""
Contract tests run against both storage engines.

Both engines must store the same records, filter them the same way and
find the same set of records for a query.
"""

from datetime import timedelta

import pytest

from conftest import T0, make_record
from notekeep.errors import StorageError, StorageErrorKind
from notekeep.kv_store import KeyValueBackend
from notekeep.relational_store import RelationalBackend
from notekeep.types import Priority, RecordFilter, RemoteRecord, SearchTier, SyncState


def _corrupt(backend, id: str) -> None:
    """Damage one stored record in place."""
    if isinstance(backend, KeyValueBackend):
        backend._conn.execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (id, "{not json")
        )
    else:
        backend._conn.execute(
            "UPDATE records SET sync_state = 'bogus' WHERE id = ?", (id,)
        )


SAMPLE = [
    make_record("a", "Flutter Notes", body="storage patterns", tags=["dart"],
                category="mobile", updated_at=T0),
    make_record("b", "Rust ownership", body="borrow checker", tags=["rust"],
                category="systems", updated_at=T0 + timedelta(hours=1), is_favorite=True),
    make_record("c", "Storage engines", body="btree and lsm", tags=["db", "storage"],
                category="systems", updated_at=T0 + timedelta(hours=2)),
    make_record("d", "Archived idea", body="nothing here", updated_at=T0 + timedelta(hours=3),
                is_archived=True),
]

UNICODE_SAMPLE = [
    make_record("u", "Über Notes", body="Straße plans"),
    make_record("g", "ΣΟΦΙΑ", tags=["Ελληνικά"]),
    make_record("p", "Plain ascii", body="uber strasse"),
]


class TestPutGetDelete:

    def test_put_then_get_round_trips(self, backend):
        conflict = RemoteRecord(id="a", title="Remote", body="", updated_at=T0,
                                remote_version="v9", tags=frozenset({"z"}))
        record = make_record("a", "Title", body="Body", tags=["x", "y"], category="c",
                             description="desc", sync_state=SyncState.CONFLICT,
                             remote_version="v1", conflict_remote=conflict)
        backend.put(record)
        assert backend.get("a") == record

    def test_get_absent_is_none(self, backend):
        assert backend.get("missing") is None

    def test_put_replaces_entirely(self, backend):
        backend.put(make_record("a", "One", tags=["x"], category="c"))
        replacement = make_record("a", "Two", tags=["y"])
        backend.put(replacement)
        assert backend.get("a") == replacement
        assert backend.count() == 1

    def test_delete_is_idempotent(self, backend):
        backend.put(make_record("a"))
        backend.delete("a")
        backend.delete("a")
        backend.delete("never-existed")
        assert backend.get("a") is None
        assert backend.count() == 0

    def test_clear(self, backend):
        backend.bulk_put(SAMPLE)
        backend.clear()
        assert backend.count() == 0
        assert backend.tag_usage() == {}

    def test_data_survives_reopen(self, tmp_path):
        for cls, name in ((KeyValueBackend, "kv.db"), (RelationalBackend, "rel.db")):
            path = tmp_path / name
            with cls(path) as engine:
                engine.bulk_put(SAMPLE)
            with cls(path) as engine:
                assert engine.get("b") == SAMPLE[1]
                assert engine.tag_usage()["rust"] == 1


class TestBulkPut:

    def test_bulk_put_writes_all(self, backend):
        backend.bulk_put(SAMPLE)
        assert backend.count() == len(SAMPLE)

    def test_bulk_put_is_all_or_nothing(self, backend):
        backend.put(make_record("keep", "Existing"))
        # A record that cannot be encoded, after one that can
        bad = make_record("bad", "Bad")
        object.__setattr__(bad, "created_at", None)
        with pytest.raises(AttributeError):
            backend.bulk_put([make_record("x1"), bad])
        assert backend.get("x1") is None
        assert backend.count() == 1


class TestListFiltered:

    def test_default_order_newest_first(self, backend):
        backend.bulk_put(SAMPLE)
        assert backend.list_filtered().ids() == ["d", "c", "b", "a"]

    def test_filter_by_category(self, backend):
        backend.bulk_put(SAMPLE)
        assert backend.list_filtered(RecordFilter(category="systems")).ids() == ["c", "b"]

    def test_filter_by_tags_requires_all(self, backend):
        backend.bulk_put(SAMPLE)
        flt = RecordFilter(tags={"db", "storage"})
        assert backend.list_filtered(flt).ids() == ["c"]
        assert backend.list_filtered(RecordFilter(tags={"db", "dart"})).ids() == []

    def test_filter_flags(self, backend):
        backend.bulk_put(SAMPLE)
        assert backend.list_filtered(RecordFilter(is_favorite=True)).ids() == ["b"]
        assert backend.list_filtered(RecordFilter(is_archived=False)).ids() == ["c", "b", "a"]

    def test_filter_date_range(self, backend):
        backend.bulk_put(SAMPLE)
        flt = RecordFilter(since=T0 + timedelta(hours=1), until=T0 + timedelta(hours=3))
        assert backend.list_filtered(flt).ids() == ["c", "b"]

    def test_order_by_title_ascending(self, backend):
        backend.bulk_put(SAMPLE)
        flt = RecordFilter(order_by="title", descending=False)
        assert backend.list_filtered(flt).ids() == ["d", "a", "b", "c"]

    def test_tombstones_hidden_unless_requested(self, backend):
        backend.bulk_put(SAMPLE)
        backend.put(SAMPLE[0].evolve(deleted_at=T0 + timedelta(days=1)))
        assert "a" not in backend.list_filtered().ids()
        assert "a" in backend.list_filtered(RecordFilter(include_deleted=True)).ids()

    def test_scan_is_restartable(self, backend):
        backend.bulk_put(SAMPLE)
        scan = backend.list_filtered()
        assert list(scan) == list(scan)

    def test_corrupt_record_is_skipped_and_reported(self, backend):
        backend.bulk_put(SAMPLE)
        _corrupt(backend, "b")
        scan = backend.list_filtered()
        assert scan.ids() == ["d", "c", "a"]
        assert len(scan.errors) == 1
        assert scan.errors[0].kind == StorageErrorKind.CORRUPT_RECORD
        assert scan.errors[0].record_id == "b"

    def test_get_corrupt_record_raises(self, backend):
        backend.bulk_put(SAMPLE)
        _corrupt(backend, "b")
        with pytest.raises(StorageError) as exc:
            backend.get("b")
        assert exc.value.kind == StorageErrorKind.CORRUPT_RECORD


class TestSearchContract:

    def test_search_finds_title_tag_and_body_matches(self, backend):
        backend.bulk_put(SAMPLE)
        assert set(backend.search("storage").ids()) == {"a", "c"}

    def test_search_is_case_insensitive(self, backend):
        backend.bulk_put(SAMPLE)
        assert set(backend.search("FLUTTER").ids()) == {"a"}

    def test_search_matches_substrings(self, backend):
        backend.bulk_put(SAMPLE)
        assert set(backend.search("owner").ids()) == {"b"}

    def test_search_matches_any_term(self, backend):
        backend.bulk_put(SAMPLE)
        assert set(backend.search("flutter rust").ids()) == {"a", "b"}

    def test_search_excludes_tombstones(self, backend):
        backend.bulk_put(SAMPLE)
        backend.put(SAMPLE[2].evolve(deleted_at=T0 + timedelta(days=1)))
        assert set(backend.search("storage").ids()) == {"a"}

    def test_empty_query_has_no_hits(self, backend):
        backend.bulk_put(SAMPLE)
        assert len(backend.search("   ")) == 0

    def test_title_match_ranks_above_body_match(self, backend):
        backend.bulk_put(SAMPLE)
        results = backend.search("storage")
        assert results.ids()[0] == "c"

    def test_search_reports_corrupt_records(self, backend):
        backend.bulk_put(SAMPLE)
        _corrupt(backend, "c")
        results = backend.search("storage")
        assert results.ids() == ["a"]
        assert [e.record_id for e in results.errors] == ["c"]


class TestEquivalence:

    @pytest.mark.parametrize("query", [
        "storage", "flutter rust", "st", "checker", "db", "nothing", "zzz", "e",
    ])
    def test_engines_match_the_same_records(self, tmp_path, query):
        with KeyValueBackend(tmp_path / "kv.db") as kv, \
                RelationalBackend(tmp_path / "rel.db") as rel:
            kv.bulk_put(SAMPLE)
            rel.bulk_put(SAMPLE)
            assert set(kv.search(query).ids()) == set(rel.search(query).ids())

    @pytest.mark.parametrize("query", [
        "üb", "ÜBER", "über", "strasse", "STRASSE", "σοφ", "σοφια", "ελλ", "uber",
    ])
    @pytest.mark.parametrize("full_text", [True, False], ids=["fts", "substring"])
    def test_engines_fold_non_ascii_case_alike(self, tmp_path, query, full_text):
        with KeyValueBackend(tmp_path / "kv.db") as kv, \
                RelationalBackend(tmp_path / "rel.db", full_text=full_text) as rel:
            kv.bulk_put(UNICODE_SAMPLE)
            rel.bulk_put(UNICODE_SAMPLE)
            expected = set(kv.search(query).ids())
            assert expected
            assert set(rel.search(query).ids()) == expected

    def test_engines_list_the_same_records(self, tmp_path):
        flt = RecordFilter(category="systems", include_deleted=True)
        with KeyValueBackend(tmp_path / "kv.db") as kv, \
                RelationalBackend(tmp_path / "rel.db") as rel:
            kv.bulk_put(SAMPLE)
            rel.bulk_put(SAMPLE)
            assert list(kv.list_filtered(flt)) == list(rel.list_filtered(flt))


class TestPriority:

    def test_round_trips(self, backend):
        record = make_record("a", priority=Priority.URGENT)
        backend.put(record)
        assert backend.get("a").priority == Priority.URGENT

    def test_filter_accepts_any_listed_priority(self, backend):
        backend.bulk_put([
            make_record("low", priority=Priority.LOW),
            make_record("normal"),
            make_record("high", priority=Priority.HIGH),
            make_record("urgent", priority=Priority.URGENT),
        ])
        flt = RecordFilter(priorities={Priority.HIGH, Priority.URGENT})
        assert sorted(backend.list_filtered(flt).ids()) == ["high", "urgent"]
        assert backend.list_filtered(RecordFilter(priorities={"low"})).ids() == ["low"]

    def test_order_by_priority(self, backend):
        backend.bulk_put([
            make_record("n", priority=Priority.NORMAL),
            make_record("u", priority=Priority.URGENT),
            make_record("l", priority=Priority.LOW),
        ])
        flt = RecordFilter(order_by="priority")
        assert backend.list_filtered(flt).ids() == ["u", "n", "l"]

    def test_relational_schema_gains_priority_column(self, tmp_path):
        path = tmp_path / "rel.db"
        with RelationalBackend(path) as engine:
            engine.put(make_record("a", priority=Priority.HIGH))
            engine._conn.execute("DROP INDEX idx_records_priority")
            engine._conn.execute("ALTER TABLE records DROP COLUMN priority")
        with RelationalBackend(path) as engine:
            assert engine.get("a").priority == Priority.NORMAL

    def test_older_store_index_is_rebuilt_casefolded(self, tmp_path):
        path = tmp_path / "rel.db"
        with RelationalBackend(path) as engine:
            engine.put(make_record("a", "Straße plans"))
            engine._conn.execute("DROP INDEX idx_records_priority")
            engine._conn.execute("ALTER TABLE records DROP COLUMN priority")
            engine._conn.execute("UPDATE records_fts SET title = 'Straße plans'")
        with RelationalBackend(path) as engine:
            hits = engine.search("STRASSE")
            assert hits.tier == SearchTier.FULL_TEXT
            assert hits.ids() == ["a"]


class TestTagUsage:

    def test_counts_live_records_per_tag(self, backend):
        backend.bulk_put(SAMPLE)
        backend.put(make_record("e", "More", tags=["storage", "rust"]))
        assert backend.tag_usage() == {"dart": 1, "db": 1, "rust": 2, "storage": 2}

    def test_tracks_updates_and_deletes(self, backend):
        backend.put(make_record("a", tags=["x", "y"]))
        backend.put(make_record("a", tags=["y", "z"]))
        assert backend.tag_usage() == {"y": 1, "z": 1}
        backend.put(make_record("a", tags=["y", "z"], deleted_at=T0))
        assert backend.tag_usage() == {}
        backend.delete("a")
        assert backend.tag_usage() == {}
