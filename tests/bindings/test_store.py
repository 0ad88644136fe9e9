import json
import unittest

from topic_relay.bindings.models import Binding, ModelRef, SessionState
from topic_relay.bindings.store import BindingConflict, BindingStore

from tests.fakes import TempDirTestCase, make_binding


class BindingStoreTests(TempDirTestCase):
    def test_upsert_survives_restart(self) -> None:
        store = self.new_store()
        binding = make_binding(reasoning_effort="high", session_title="Refactor")
        store.upsert(binding)

        reloaded = self.new_store()
        self.assertEqual(binding, reloaded.get_by_session(binding.session_id))
        self.assertEqual(binding, reloaded.get_by_thread(-100, 7))

    def test_persisted_document_is_versioned(self) -> None:
        store = self.new_store()
        store.upsert(make_binding())

        document = json.loads(store.state_path.read_text(encoding="utf-8"))
        self.assertEqual(1, document["version"])
        self.assertEqual("ses_abc123def456xyz", document["topics"][0]["sessionId"])
        self.assertEqual({"providerID": "openai", "modelID": "gpt-5.3-codex"}, document["topics"][0]["model"])
        self.assertNotIn("lastError", document["topics"][0])

    def test_no_temp_files_left_after_write(self) -> None:
        store = self.new_store()
        store.upsert(make_binding())
        store.patch("ses_abc123def456xyz", state=SessionState.ACTIVE)

        names = sorted(p.name for p in self._tmp_dir.iterdir())
        self.assertEqual(["bindings.json"], names)

    def test_invalid_json_starts_empty(self) -> None:
        (self._tmp_dir / "bindings.json").write_text("{not json", encoding="utf-8")
        self.assertEqual([], self.new_store().list_all())

    def test_unknown_version_starts_empty(self) -> None:
        (self._tmp_dir / "bindings.json").write_text(json.dumps({"version": 2, "topics": []}), encoding="utf-8")
        self.assertEqual([], self.new_store().list_all())

    def test_malformed_entries_are_skipped(self) -> None:
        good = make_binding().to_dict()
        document = {"version": 1, "topics": [good, {"chatId": 1}]}
        (self._tmp_dir / "bindings.json").write_text(json.dumps(document), encoding="utf-8")

        store = self.new_store()
        self.assertEqual(1, len(store.list_all()))

    def test_second_open_binding_on_thread_conflicts(self) -> None:
        store = self.new_store()
        store.upsert(make_binding("ses_one"))

        with self.assertRaises(BindingConflict):
            store.upsert(make_binding("ses_two"))

    def test_session_cannot_move_to_another_open_thread(self) -> None:
        store = self.new_store()
        store.upsert(make_binding("ses_one", thread_id=7))

        with self.assertRaises(BindingConflict):
            store.upsert(make_binding("ses_one", thread_id=8))

    def test_closed_thread_can_be_rebound(self) -> None:
        store = self.new_store()
        store.upsert(make_binding("ses_one"))
        store.close_by_thread(-100, 7)
        store.upsert(make_binding("ses_two"))

        self.assertEqual("ses_two", store.get_by_thread(-100, 7).session_id)
        self.assertEqual(2, len(store.list_by_chat(-100)))

    def test_closed_session_can_be_imported_elsewhere(self) -> None:
        store = self.new_store()
        store.upsert(make_binding("ses_one", thread_id=7))
        store.close_by_thread(-100, 7)
        store.upsert(make_binding("ses_one", thread_id=9))

        self.assertEqual(9, store.get_by_session("ses_one").thread_id)
        self.assertEqual(1, len(store.list_all()))

    def test_patch_refuses_identity_fields(self) -> None:
        store = self.new_store()
        store.upsert(make_binding())

        with self.assertRaises(ValueError):
            store.patch("ses_abc123def456xyz", thread_id=99)

    def test_patch_updates_timestamp(self) -> None:
        store = BindingStore(str(self._tmp_dir / "bindings.json"), clock_ms=lambda: 1_800_000_000_000)
        store.upsert(make_binding())

        updated = store.patch("ses_abc123def456xyz", state=SessionState.ERROR, last_error="boom")
        self.assertEqual(SessionState.ERROR, updated.state)
        self.assertEqual("boom", updated.last_error)
        self.assertEqual(1_800_000_000_000, updated.updated_at)

    def test_patch_keeps_closed_binding_closed(self) -> None:
        store = self.new_store()
        store.upsert(make_binding(state=SessionState.CLOSED))
        store.upsert(make_binding("ses_second"))

        updated = store.patch("ses_abc123def456xyz", state=SessionState.IDLE, session_title="Late")

        self.assertEqual(SessionState.CLOSED, updated.state)
        self.assertEqual("Late", updated.session_title)
        self.assertEqual("ses_second", store.get_by_thread(-100, 7).session_id)
        self.assertEqual(SessionState.CLOSED, self.new_store().get_by_session("ses_abc123def456xyz").state)

    def test_patch_unknown_session_returns_none(self) -> None:
        self.assertIsNone(self.new_store().patch("missing", state=SessionState.IDLE))

    def test_close_by_thread_is_idempotent(self) -> None:
        store = self.new_store()
        store.upsert(make_binding())

        closed = store.close_by_thread(-100, 7)
        self.assertTrue(closed.is_closed)
        self.assertIsNone(store.close_by_thread(-100, 7))
        self.assertTrue(store.get_by_thread(-100, 7).is_closed)


class BindingModelTests(unittest.TestCase):
    def test_empty_optional_strings_load_as_none(self) -> None:
        data = make_binding().to_dict()
        data["lastError"] = ""
        self.assertIsNone(Binding.from_dict(data).last_error)

    def test_model_ref_round_trip(self) -> None:
        ref = ModelRef(provider_id="anthropic", model_id="claude")
        self.assertEqual(ref, ModelRef.from_dict(ref.to_dict()))


if __name__ == "__main__":
    unittest.main()
