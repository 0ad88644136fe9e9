import asyncio
import unittest

from topic_relay.bindings.models import SessionState
from topic_relay.delivery_errors import BackoffSlots
from topic_relay.session_runtime import RuntimeTable
from topic_relay.topic_names import TopicNamer, topic_name_for
from topic_relay.transport import TransportError

from tests.fakes import FakeClock, FakeTransport, make_binding


class TopicNamerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(500.0)
        self.transport = FakeTransport()
        self.runtimes = RuntimeTable(clock=self.clock)
        self.namer = TopicNamer(self.transport, self.runtimes, clock=self.clock)

    def _update(self, binding) -> bool:
        return asyncio.run(self.namer.update(binding))

    def test_name_reflects_workspace_session_and_state(self) -> None:
        binding = make_binding(state=SessionState.ERROR, workspace_path="/srv/repos/api/")
        self.assertEqual("api | ses_abc123de | error", topic_name_for(binding))

    def test_renames_are_spaced(self) -> None:
        self.assertTrue(self._update(make_binding(state=SessionState.ACTIVE)))
        self.assertFalse(self._update(make_binding(state=SessionState.IDLE)))
        self.clock.advance(5)
        self.assertTrue(self._update(make_binding(state=SessionState.IDLE)))

        self.assertEqual(["project | ses_abc123de | active", "project | ses_abc123de | idle"], [r[2] for r in self.transport.renames])

    def test_unchanged_name_is_not_resent(self) -> None:
        self._update(make_binding())
        self.clock.advance(60)
        self.assertTrue(self._update(make_binding()))
        self.assertEqual(1, len(self.transport.renames))

    def test_not_modified_counts_as_success(self) -> None:
        self.transport.rename_errors.append(TransportError("Bad Request: TOPIC_NOT_MODIFIED"))
        self.assertTrue(self._update(make_binding()))

    def test_flood_blocks_rename_slot(self) -> None:
        self.transport.rename_errors.append(TransportError("Too Many Requests: retry after 30", error_code=429, retry_after=30))
        binding = make_binding()

        self.assertFalse(self._update(binding))
        backoff = self.runtimes.get(binding.session_id).backoff
        self.assertEqual(530.25, backoff.blocked_until(BackoffSlots.TOPIC_RENAME))
        self.clock.advance(10)
        self.assertFalse(self._update(binding))
        self.clock.advance(21)
        self.assertTrue(self._update(binding))

    def test_other_errors_are_reported_not_raised(self) -> None:
        self.transport.rename_errors.append(TransportError("Bad Request: not enough rights"))
        self.assertFalse(self._update(make_binding()))


if __name__ == "__main__":
    unittest.main()
