"""Tests for TaskIndex: scanning, completion dispatch and mutations."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from unittest.mock import AsyncMock

import pytest

from taskindex.config import IndexSettings
from taskindex.index import TaskIndex
from taskindex.recurrence import LoggingRecurrenceManager
from taskindex.scanner import ValidationError
from taskindex.vault import MemoryVault

WATER_TODO = "- [ ] Water plants @2024-03-01 ==> repeat(daily)"
WATER_DONE = "- [x] Water plants @2024-03-01 ==> repeat(daily)"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _GatedVault(MemoryVault):
    """Reads of a gated path block until its event is set."""

    def __init__(self, documents=None):
        super().__init__(documents)
        self.gates: dict[str, asyncio.Event] = {}

    async def read(self, path):
        gate = self.gates.get(path)
        if gate is not None:
            await gate.wait()
        return await super().read(path)


class _ScriptedVault(MemoryVault):
    """Serves queued (delay, text) responses before falling back to documents."""

    def __init__(self, documents=None):
        super().__init__(documents)
        self.responses: list[tuple[float, str]] = []

    async def read(self, path):
        if self.responses:
            delay, text = self.responses.pop(0)
            await asyncio.sleep(delay)
            return text
        return await super().read(path)


def _make_index(documents=None, vault=None, **kwargs):
    vault = vault if vault is not None else MemoryVault(documents)
    recurrence = LoggingRecurrenceManager()
    repository = AsyncMock()
    index = TaskIndex(vault, repository, recurrence=recurrence, **kwargs)
    return index, vault, recurrence, repository


def _lines(*lines: str) -> str:
    return "\n".join(lines)


# ===================================================================
# Initial load and suppression
# ===================================================================


class TestInitialLoad:
    def test_bulk_load_indexes_without_triggering(self):
        async def scenario():
            index, _, recurrence, _ = _make_index({
                "a.md": WATER_DONE,
                "b.md": "- [ ] Call Bob @2024-03-02",
            })
            assert index.initializing is True

            await index.on_layout_ready()

            assert index.initializing is False
            assert sorted(t.id for t in index.get_all()) == ["a.md:0", "b.md:0"]
            assert recurrence.handled == []
            assert list(index.tracker.counts_for("a.md").values()) == [1]

        asyncio.run(scenario())

    def test_layout_ready_notifies_listeners(self):
        async def scenario():
            index, _, _, _ = _make_index({"a.md": WATER_TODO})
            calls = []
            index.on_change(lambda task_id, changes: calls.append((task_id, changes)))

            await index.on_layout_ready()

            assert calls == [(None, None)]

        asyncio.run(scenario())

    def test_changes_during_initial_load_do_not_trigger(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})

            await index.on_document_modified("a.md")
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            assert recurrence.handled == []
            assert index.get_by_id("a.md:0").status == "done"

        asyncio.run(scenario())

    def test_first_scan_of_new_document_does_not_trigger(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({})
            await index.on_layout_ready()

            vault.write("new.md", WATER_DONE)
            await index.on_document_created("new.md")

            assert recurrence.handled == []
            assert index.get_by_id("new.md:0") is not None

            vault.write("new.md", _lines(WATER_DONE, WATER_DONE))
            await index.on_document_modified("new.md")

            assert len(recurrence.handled) == 1

        asyncio.run(scenario())

    def test_initial_load_lasts_until_overlapping_pass_finishes(self):
        async def scenario():
            vault = _GatedVault({"a.md": WATER_TODO})
            index, _, recurrence, _ = _make_index(vault=vault)
            vault.gates["a.md"] = asyncio.Event()
            layout = asyncio.ensure_future(index.on_layout_ready())
            await asyncio.sleep(0)

            vault.write("b.md", WATER_TODO)
            vault.gates["b.md"] = asyncio.Event()
            full = asyncio.ensure_future(index.scan_vault())
            await asyncio.sleep(0)

            vault.gates["a.md"].set()
            await asyncio.wait_for(layout, timeout=1)
            assert index.initializing is True

            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")
            assert recurrence.handled == []

            vault.gates["b.md"].set()
            await asyncio.wait_for(full, timeout=1)
            assert index.initializing is False

        asyncio.run(scenario())

    def test_vault_pass_after_load_dispatches(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()

            vault.write("a.md", WATER_DONE)
            await index.scan_vault()

            assert [t.id for t in recurrence.handled] == ["a.md:0"]

        asyncio.run(scenario())

    def test_excluded_paths_are_not_indexed(self):
        async def scenario():
            settings = IndexSettings(excluded_paths=["archive/"])
            index, vault, _, _ = _make_index(
                {"archive/old.md": WATER_DONE, "a.md": WATER_TODO},
                settings=settings,
            )
            await index.on_layout_ready()
            await index.on_document_modified("archive/old.md")

            assert [t.path for t in index.get_all()] == ["a.md"]

        asyncio.run(scenario())


# ===================================================================
# Completion dispatch
# ===================================================================


class TestCompletionDispatch:
    def test_completion_triggers_exactly_once(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()

            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")
            await index.on_document_modified("a.md")

            assert [t.id for t in recurrence.handled] == ["a.md:0"]

        asyncio.run(scenario())

    def test_edit_elsewhere_does_not_retrigger(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            # the completed task moves down a line; same signature, same count
            vault.write("a.md", _lines("# Plants", WATER_DONE))
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 1

        asyncio.run(scenario())

    def test_multiplicity(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_DONE})
            await index.on_layout_ready()

            vault.write("a.md", _lines(WATER_DONE, WATER_DONE, WATER_DONE))
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 2
            assert all(t.id == "a.md:0" for t in recurrence.handled)

        asyncio.run(scenario())

    def test_rescan_of_unchanged_document_is_idempotent(self):
        async def scenario():
            index, _, recurrence, _ = _make_index({
                "a.md": _lines(WATER_DONE, "- [ ] Call Bob @2024-03-02"),
            })
            await index.on_layout_ready()
            before = index.get_all()
            counts = index.tracker.counts_for("a.md")

            await index.on_document_modified("a.md")

            assert index.get_all() == before
            assert index.tracker.counts_for("a.md") == counts
            assert recurrence.handled == []

        asyncio.run(scenario())

    def test_uncheck_then_rescan_unchanged_text_does_not_trigger(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")
            assert len(recurrence.handled) == 1

            await index.update("a.md:0", {"status": "todo"})
            assert index.tracker.count(index.get_by_id("a.md:0")) == 0

            # the write never reached the file; the text is what was last scanned
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 1
            assert index.get_by_id("a.md:0").status == "done"
            assert index.tracker.count(index.get_by_id("a.md:0")) == 1

        asyncio.run(scenario())

    def test_recheck_after_uncheck_is_a_new_completion(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            await index.update("a.md:0", {"status": "todo"})
            vault.write("a.md", WATER_TODO)
            await index.on_document_modified("a.md")
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 2

        asyncio.run(scenario())

    def test_recheck_before_write_lands_is_a_new_completion(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            await index.update("a.md:0", {"status": "todo"})
            await index.update("a.md:0", {"status": "done"})
            # the file still holds the text from the first completion
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 2
            assert index.tracker.pending_for("a.md") == {}

        asyncio.run(scenario())

    def test_rescan_without_optimistic_edit_does_not_trigger(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            await index.update("a.md:0", {"status": "todo"})
            await index.on_document_modified("a.md")
            # a second rescan of the same text is idempotent
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 1

        asyncio.run(scenario())

    def test_store_is_current_when_recurrence_runs(self):
        async def scenario():
            index, vault, _, _ = _make_index({"a.md": WATER_TODO})
            seen = []

            class Recorder:
                async def handle_task_completion(self, task):
                    seen.append(index.get_by_id(task.id).status_char)

            index.scanner._recurrence = Recorder()
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            assert seen == ["x"]

        asyncio.run(scenario())

    def test_recurrence_failure_is_logged(self, caplog):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            recurrence.handle_task_completion = AsyncMock(side_effect=RuntimeError("boom"))
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")
            # later scans of the document still run
            vault.write("a.md", _lines(WATER_DONE, "- [ ] Call Bob @2024-03-02"))
            await index.on_document_modified("a.md")
            return index

        with caplog.at_level(logging.ERROR):
            index = asyncio.run(scenario())
        assert "Error scanning a.md" in caplog.text
        assert index.get_by_id("a.md:1").content == "Call Bob"


# ===================================================================
# Ordering
# ===================================================================


class TestScanOrdering:
    def test_scans_of_one_document_apply_in_request_order(self):
        async def scenario():
            vault = _ScriptedVault({"a.md": WATER_TODO})
            index, _, _, _ = _make_index(vault=vault)
            await index.on_layout_ready()

            vault.responses = [
                (0.05, "- [ ] Older text @2024-03-01"),
                (0, "- [ ] Newer text @2024-03-01"),
            ]
            first = index.on_document_modified("a.md")
            second = index.on_document_modified("a.md")
            await asyncio.gather(first, second)

            assert index.get_by_id("a.md:0").content == "Newer text"

        asyncio.run(scenario())

    def test_documents_scan_independently(self):
        async def scenario():
            vault = _GatedVault({"a.md": WATER_TODO, "b.md": WATER_TODO})
            index, _, _, _ = _make_index(vault=vault)
            await index.on_layout_ready()

            vault.gates["a.md"] = asyncio.Event()
            vault.write("b.md", "- [ ] Changed @2024-03-01")
            a = index.on_document_modified("a.md")
            b = index.on_document_modified("b.md")

            await asyncio.wait_for(b, timeout=1)
            assert index.get_by_id("b.md:0").content == "Changed"
            assert not a.done()

            vault.gates["a.md"].set()
            await asyncio.wait_for(a, timeout=1)

        asyncio.run(scenario())

    def test_scan_error_is_logged(self, caplog):
        async def scenario():
            index, _, _, _ = _make_index({})
            await index.on_layout_ready()
            await index.on_document_modified("missing.md")

        with caplog.at_level(logging.ERROR):
            asyncio.run(scenario())
        assert "Error scanning missing.md" in caplog.text


# ===================================================================
# Document lifecycle
# ===================================================================


class TestDocumentLifecycle:
    def test_deleted_document_drops_its_tasks(self):
        async def scenario():
            index, vault, _, _ = _make_index({"a.md": WATER_TODO, "b.md": WATER_TODO})
            await index.on_layout_ready()

            vault.remove("a.md")
            await index.on_document_deleted("a.md")

            assert [t.path for t in index.get_all()] == ["b.md"]

        asyncio.run(scenario())

    def test_recreated_document_does_not_replay_completions(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_DONE})
            await index.on_layout_ready()

            vault.remove("a.md")
            await index.on_document_deleted("a.md")
            vault.write("a.md", WATER_DONE)
            await index.on_document_created("a.md")

            assert recurrence.handled == []

        asyncio.run(scenario())

    def test_ignored_document_is_dropped(self):
        async def scenario():
            index, vault, _, _ = _make_index({"a.md": WATER_DONE})
            await index.on_layout_ready()

            vault.write("a.md", _lines("---", "taskindex-ignore: true", "---", WATER_DONE))
            await index.on_document_modified("a.md")

            assert index.get_all() == []
            assert index.tracker.counts_for("a.md") == {}

        asyncio.run(scenario())

    def test_unignored_document_fires_restored_completion(self):
        async def scenario():
            index, vault, recurrence, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")
            assert len(recurrence.handled) == 1

            vault.write("a.md", _lines("---", "taskindex-ignore: true", "---", WATER_DONE))
            await index.on_document_modified("a.md")
            vault.write("a.md", WATER_DONE)
            await index.on_document_modified("a.md")

            assert len(recurrence.handled) == 2
            assert index.get_by_id("a.md:0").status == "done"

        asyncio.run(scenario())


# ===================================================================
# Mutations
# ===================================================================


class TestUpdate:
    def test_applies_in_place_and_notifies_before_writing(self):
        async def scenario():
            index, _, _, repository = _make_index({"a.md": WATER_DONE})
            await index.on_layout_ready()
            task = index.get_by_id("a.md:0")
            calls = []
            index.on_change(lambda task_id, changes: calls.append((task_id, changes)))

            write = index.update("a.md:0", {"status": "todo"})

            assert index.get_by_id("a.md:0") is task
            assert task.status == "todo"
            assert task.status_char == " "
            assert calls == [("a.md:0", ["status", "status_char"])]
            assert repository.update_task_in_file.await_count == 0

            await write

            old, new = repository.update_task_in_file.await_args.args
            assert old.status_char == "x"
            assert new.status_char == " "
            assert new is not task

        asyncio.run(scenario())

    def test_status_char_sets_status(self):
        async def scenario():
            index, _, _, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()

            await index.update("a.md:0", {"status_char": "-"})

            assert index.get_by_id("a.md:0").status == "cancelled"

        asyncio.run(scenario())

    def test_unknown_task_is_a_warning(self, caplog):
        async def scenario():
            index, _, _, repository = _make_index({})
            await index.on_layout_ready()
            result = index.update("nope.md:0", {"status": "done"})
            assert result is None
            repository.update_task_in_file.assert_not_called()

        with caplog.at_level(logging.WARNING):
            asyncio.run(scenario())
        assert "nope.md:0 not found" in caplog.text

    def test_unknown_field_is_rejected(self):
        async def scenario():
            index, _, _, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()

            with pytest.raises(ValueError, match="colour"):
                index.update("a.md:0", {"colour": "red"})
            with pytest.raises(ValueError, match="Unknown status"):
                index.update("a.md:0", {"status": "maybe"})

            assert index.get_by_id("a.md:0").status == "todo"

        asyncio.run(scenario())

    def test_failed_write_keeps_in_memory_state(self, caplog):
        async def scenario():
            index, _, _, repository = _make_index({"a.md": WATER_TODO})
            repository.update_task_in_file.side_effect = OSError("read-only")
            await index.on_layout_ready()

            await index.update("a.md:0", {"content": "Water the ferns"})
            await index.wait_for_writes()

            return index.get_by_id("a.md:0").content

        with caplog.at_level(logging.ERROR):
            assert asyncio.run(scenario()) == "Water the ferns"
        assert "Failed to update a.md:0" in caplog.text


class TestOtherMutations:
    def test_delete(self):
        async def scenario():
            index, _, _, repository = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            calls = []
            index.on_change(lambda task_id, changes: calls.append(task_id))

            await index.delete("a.md:0")

            assert index.get_by_id("a.md:0") is None
            assert calls == ["a.md:0"]
            assert repository.delete_task_from_file.await_args.args[0].content == "Water plants"

        asyncio.run(scenario())

    def test_delete_unknown_is_noop(self):
        async def scenario():
            index, _, _, repository = _make_index({})
            await index.on_layout_ready()
            await index.delete("a.md:3")
            repository.delete_task_from_file.assert_not_called()

        asyncio.run(scenario())

    def test_duplicate_delegates_to_repository(self):
        async def scenario():
            index, _, _, repository = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()

            await index.duplicate("a.md:0")
            await index.duplicate_for_week("a.md:0")
            await index.duplicate("a.md:9")

            assert repository.duplicate_task_in_file.await_count == 1
            assert repository.duplicate_task_for_week.await_count == 1
            assert len(index.get_all()) == 1

        asyncio.run(scenario())

    def test_update_line(self):
        async def scenario():
            index, _, _, repository = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()

            await index.update_line("a.md", 0, "- [ ] Edited @2024-03-01")

            repository.update_line.assert_awaited_once_with("a.md", 0, "- [ ] Edited @2024-03-01")

        asyncio.run(scenario())


class TestResolveTask:
    def test_exact_match(self):
        async def scenario():
            index, _, _, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            task = index.get_by_id("a.md:0")

            assert index.resolve_task(task) is task

        asyncio.run(scenario())

    def test_follows_a_task_that_moved(self):
        async def scenario():
            index, vault, _, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            ref = index.get_by_id("a.md:0")

            vault.write("a.md", _lines("- [ ] Inserted above @2024-03-01", WATER_TODO))
            await index.on_document_modified("a.md")

            resolved = index.resolve_task(ref)
            assert resolved.id == "a.md:1"
            assert resolved.content == "Water plants"

        asyncio.run(scenario())

    def test_gone(self):
        async def scenario():
            index, vault, _, _ = _make_index({"a.md": WATER_TODO})
            await index.on_layout_ready()
            ref = index.get_by_id("a.md:0")

            vault.write("a.md", "- [ ] Something else @2024-03-01")
            await index.on_document_modified("a.md")

            assert index.resolve_task(ref) is None

        asyncio.run(scenario())


class TestQueries:
    def test_visual_window_uses_configured_start_hour(self):
        async def scenario():
            index, _, _, _ = _make_index(
                {"a.md": _lines("- [ ] Early @2024-03-01T03:00", "- [ ] Late @2024-03-02T02:00")},
                settings=IndexSettings(start_hour=3),
            )
            await index.on_layout_ready()
            day = index.get_for_visual_window(date(2024, 3, 1))
            assert sorted(t.content for t in day) == ["Early", "Late"]
            assert index.get_for_visual_window(date(2024, 3, 1), boundary_hour=4) == [
                index.get_by_id("a.md:1")
            ]

        asyncio.run(scenario())

    def test_validation_errors(self):
        async def scenario():
            index, vault, _, _ = _make_index({
                "a.md": _lines("- [ ] Fine @2024-03-01", "- [ ] Meeting @2024-03-01>>T17:00"),
                "b.md": WATER_TODO,
            })
            await index.on_layout_ready()

            assert index.get_validation_errors() == [
                ValidationError(
                    file="a.md",
                    line=2,
                    task_id="a.md:1",
                    error="Deadline must include a date (YYYY-MM-DD).",
                )
            ]

            vault.write("a.md", "- [ ] Meeting @2024-03-01>>2024-03-02")
            await index.on_document_modified("a.md")

            assert index.get_validation_errors() == []

        asyncio.run(scenario())

    def test_validation_errors_are_replaced_per_document(self):
        async def scenario():
            bad = "- [ ] Call @>T10:00"
            index, vault, _, _ = _make_index({"a.md": bad, "b.md": bad})
            await index.on_layout_ready()

            await index.on_document_modified("a.md")
            await index.on_document_modified("a.md")
            vault.remove("b.md")
            await index.on_document_deleted("b.md")

            assert [(e.file, e.line) for e in index.get_validation_errors()] == [("a.md", 1)]

        asyncio.run(scenario())
