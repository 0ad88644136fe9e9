import asyncio
import unittest

from topic_relay.event_feed import EventFeed
from topic_relay.events import SessionIdle, SessionStatus


class _StreamingBackend:
    def __init__(self) -> None:
        self.connections = 0
        self.reconnected = asyncio.Event()

    async def stream_events(self):
        self.connections += 1
        if self.connections == 1:
            yield {"type": "session.status", "properties": {"sessionID": "s1", "status": {"type": "busy"}}}
            yield {"type": "unknown.kind", "properties": {}}
            yield {"type": "session.idle", "properties": {"sessionID": "boom"}}
            return
        yield {"type": "session.idle", "properties": {"sessionID": "s1"}}
        self.reconnected.set()
        await asyncio.Event().wait()


class EventFeedTests(unittest.TestCase):
    def test_events_flow_and_stream_reconnects(self) -> None:
        received = []
        sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        async def on_event(event):
            if isinstance(event, SessionIdle) and event.session_id == "boom":
                raise RuntimeError("handler failure")
            received.append(event)

        async def scenario():
            backend = _StreamingBackend()
            feed = EventFeed(backend, on_event, sleep=record_sleep)
            await feed.start()
            await asyncio.wait_for(backend.reconnected.wait(), timeout=1)
            await feed.close()
            return backend

        backend = asyncio.run(scenario())

        self.assertEqual(2, backend.connections)
        self.assertEqual([1.0], sleeps)
        self.assertEqual(
            [SessionStatus(session_id="s1", status="busy", attempt=0), SessionIdle(session_id="s1")],
            received,
        )


if __name__ == "__main__":
    unittest.main()
