"""CLI tests using typer's CliRunner against a temporary store."""

import json

import pytest
from typer.testing import CliRunner

from notekeep.cli import app
from notekeep.config import load_config
from notekeep.types import BackendKind

runner = CliRunner()


@pytest.fixture
def store(tmp_path):
    return tmp_path / "store"


def invoke(store, *args):
    return runner.invoke(app, ["--store", str(store), *args])


def add_json(store, *args) -> dict:
    result = invoke(store, "--json", "add", *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestRecordCommands:

    def test_add_and_show(self, store):
        note = add_json(store, "Flutter Notes", "--body", "storage patterns", "-t", "dart")
        assert note["title"] == "Flutter Notes"
        assert note["tags"] == ["dart"]
        assert note["sync_state"] == "local_only"

        result = invoke(store, "show", note["id"])
        assert result.exit_code == 0
        assert "Flutter Notes" in result.output
        assert "storage patterns" in result.output

    def test_list_and_filter(self, store):
        add_json(store, "One", "-t", "a", "-c", "work")
        add_json(store, "Two", "-t", "b", "-c", "home", "--favorite")

        result = invoke(store, "list")
        assert "One" in result.output and "Two" in result.output

        result = invoke(store, "list", "--tag", "a")
        assert "One" in result.output
        assert "Two" not in result.output

        result = invoke(store, "list", "--favorites")
        assert "Two" in result.output
        assert "One" not in result.output

        result = invoke(store, "--json", "list", "--category", "home")
        assert [r["title"] for r in json.loads(result.output)] == ["Two"]

    def test_list_since_duration(self, store):
        add_json(store, "Recent")
        result = invoke(store, "list", "--since", "P1D")
        assert result.exit_code == 0
        assert "Recent" in result.output

    def test_list_rejects_bad_since(self, store):
        result = invoke(store, "list", "--since", "yesterday-ish")
        assert result.exit_code != 0

    def test_edit(self, store):
        note = add_json(store, "Old title")
        result = invoke(store, "--json", "edit", note["id"], "--title", "New title",
                        "--favorite")
        assert result.exit_code == 0, result.output
        edited = json.loads(result.output)
        assert edited["title"] == "New title"
        assert edited["is_favorite"] is True

    def test_edit_missing_record_fails(self, store):
        result = invoke(store, "edit", "missing", "--title", "x")
        assert result.exit_code == 1

    def test_edit_without_changes_fails(self, store):
        note = add_json(store, "Title")
        result = invoke(store, "edit", note["id"])
        assert result.exit_code == 1

    def test_rm_and_purge(self, store):
        note = add_json(store, "Temporary")
        result = invoke(store, "rm", note["id"])
        assert "Deleted" in result.output
        assert "Temporary" not in invoke(store, "list").output
        assert "Temporary" in invoke(store, "list", "--deleted").output

        result = invoke(store, "purge")
        assert "Purged 1" in result.output
        assert invoke(store, "show", note["id"]).exit_code == 1

    def test_find(self, store):
        add_json(store, "Kotlin handbook")
        add_json(store, "Notes", "--body", "kotlin in body")
        add_json(store, "Rust")
        result = invoke(store, "--json", "find", "kotlin")
        hits = json.loads(result.output)
        assert [h["title"] for h in hits] == ["Kotlin handbook", "Notes"]
        assert hits[0]["score"] == 3.0

    def test_find_remote_scope_needs_remote(self, store):
        result = invoke(store, "find", "kotlin", "--scope", "remote")
        assert result.exit_code == 1

    def test_tags_and_stats(self, store):
        add_json(store, "One", "-t", "a", "-t", "b")
        add_json(store, "Two", "-t", "a")
        assert json.loads(invoke(store, "--json", "tags").output) == {"a": 2, "b": 1}
        stats = json.loads(invoke(store, "--json", "stats").output)
        assert stats["live"] == 2
        assert stats["backend"] == "key_value"

    def test_priority_add_list_and_show(self, store):
        urgent = add_json(store, "Pay rent", "--priority", "urgent")
        add_json(store, "Water plants", "-p", "low")
        add_json(store, "Read mail")
        assert urgent["priority"] == "urgent"

        result = invoke(store, "--json", "list", "-p", "urgent", "-p", "low")
        assert {r["title"] for r in json.loads(result.output)} == {"Pay rent", "Water plants"}

        result = invoke(store, "--json", "list", "--sort", "priority")
        assert [r["title"] for r in json.loads(result.output)][0] == "Pay rent"

        assert "(urgent)" in invoke(store, "list").output
        assert "priority: urgent" in invoke(store, "show", urgent["id"]).output

    def test_bad_priority_fails(self, store):
        assert invoke(store, "add", "Something", "--priority", "someday").exit_code != 0
        assert invoke(store, "list", "--priority", "someday").exit_code != 0


class TestStorageCommands:

    def test_switch_persists_backend(self, store):
        note = add_json(store, "Flutter Notes", "--body", "storage patterns")
        result = invoke(store, "switch", "relational")
        assert result.exit_code == 0, result.output
        assert "relational" in result.output
        assert load_config(store).backend == BackendKind.RELATIONAL

        result = invoke(store, "--json", "find", "storage")
        assert [h["id"] for h in json.loads(result.output)] == [note["id"]]
        assert json.loads(invoke(store, "--json", "stats").output)["backend"] == "relational"

    def test_export_import(self, store, tmp_path):
        add_json(store, "One", "-t", "x")
        add_json(store, "Two")
        dump = tmp_path / "dump.json"
        assert invoke(store, "export", "-o", str(dump)).exit_code == 0

        other = tmp_path / "other"
        result = invoke(other, "import", str(dump))
        assert "Imported 2" in result.output
        titles = {r["title"] for r in json.loads(invoke(other, "--json", "list").output)}
        assert titles == {"One", "Two"}

    def test_sync_between_stores(self, tmp_path):
        shared = tmp_path / "shared.json"
        alice, bob = tmp_path / "alice", tmp_path / "bob"
        note = add_json(alice, "Shared plan", "--body", "step one")

        result = invoke(alice, "--json", "sync", "--remote", str(shared))
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["pushed"] == 1

        result = invoke(bob, "--json", "sync", "--remote", str(shared))
        assert json.loads(result.output)["new"] == 1
        shown = json.loads(invoke(bob, "--json", "show", note["id"]).output)
        assert shown["sync_state"] == "synced"

    def test_resolve_conflict(self, tmp_path):
        shared = tmp_path / "shared.json"
        alice, bob = tmp_path / "alice", tmp_path / "bob"
        note = add_json(alice, "Plan", "--body", "v1")
        invoke(alice, "sync", "--remote", str(shared))
        invoke(bob, "sync", "--remote", str(shared))

        invoke(alice, "edit", note["id"], "--body", "alice")
        invoke(bob, "edit", note["id"], "--body", "bob")
        invoke(bob, "sync", "--remote", str(shared))
        result = invoke(alice, "--json", "sync", "--remote", str(shared), "--full")
        assert json.loads(result.output)["conflicts"] == 1

        result = invoke(alice, "--json", "resolve", note["id"], "remote",
                        "--remote", str(shared))
        assert result.exit_code == 0, result.output
        resolved = json.loads(result.output)
        assert resolved["body"] == "bob"
        assert resolved["sync_state"] == "synced"

    def test_sync_remembers_fetch_window(self, tmp_path):
        shared = tmp_path / "shared.json"
        alice = tmp_path / "alice"
        add_json(alice, "Shared plan")
        assert load_config(alice).last_sync == {}

        assert invoke(alice, "sync", "--remote", str(shared)).exit_code == 0
        assert str(shared.resolve()) in load_config(alice).last_sync

    def test_incremental_sync_detects_conflict(self, tmp_path):
        shared = tmp_path / "shared.json"
        alice, bob = tmp_path / "alice", tmp_path / "bob"
        note = add_json(alice, "Plan", "--body", "v1")
        invoke(alice, "sync", "--remote", str(shared))
        invoke(bob, "sync", "--remote", str(shared))

        invoke(alice, "edit", note["id"], "--body", "alice")
        invoke(bob, "edit", note["id"], "--body", "bob")
        invoke(bob, "sync", "--remote", str(shared))
        result = invoke(alice, "--json", "sync", "--remote", str(shared))
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["conflicts"] == 1
        assert json.loads(result.output)["pushed"] == 0

        shared_records = json.loads(shared.read_text(encoding="utf-8"))["records"]
        assert [r["body"] for r in shared_records] == ["bob"]

    def test_resolve_without_remote(self, tmp_path):
        shared = tmp_path / "shared.json"
        alice, bob = tmp_path / "alice", tmp_path / "bob"
        note = add_json(alice, "Plan", "--body", "v1")
        invoke(alice, "sync", "--remote", str(shared))
        invoke(bob, "sync", "--remote", str(shared))
        invoke(alice, "edit", note["id"], "--body", "alice")
        invoke(bob, "edit", note["id"], "--body", "bob")
        invoke(bob, "sync", "--remote", str(shared))
        invoke(alice, "sync", "--remote", str(shared))

        result = invoke(alice, "--json", "resolve", note["id"], "local")
        assert result.exit_code == 0, result.output
        resolved = json.loads(result.output)
        assert resolved["body"] == "alice"
        assert resolved["sync_state"] == "pending_push"

        result = invoke(alice, "--json", "sync", "--remote", str(shared))
        assert json.loads(result.output)["pushed"] == 1
