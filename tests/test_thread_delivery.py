import asyncio
import unittest

from topic_relay.delivery_errors import (
    BackoffSlots,
    DeliveryErrorKind,
    classify_error,
    parse_error_meta,
)
from topic_relay.formatting import MESSAGE_CHUNK_CHARS
from topic_relay.thread_delivery import ThreadDelivery
from topic_relay.transport import TransportError

from tests.fakes import FakeClock, FakeTransport, make_binding


class DeliveryErrorTests(unittest.TestCase):
    def test_structured_retry_after_wins(self) -> None:
        meta = parse_error_meta(TransportError("Too Many Requests: retry after 9", error_code=429, retry_after=3))
        self.assertEqual(3.0, meta.retry_after)
        self.assertEqual(429, meta.error_code)

    def test_retry_after_parsed_from_text(self) -> None:
        meta = parse_error_meta(RuntimeError("Too Many Requests: retry after 7"))
        self.assertEqual(7.0, meta.retry_after)

    def test_classification(self) -> None:
        cases = {
            "Bad Request: message is not modified": DeliveryErrorKind.NOT_MODIFIED,
            "Bad Request: TOPIC_NOT_MODIFIED": DeliveryErrorKind.NOT_MODIFIED,
            "Too Many Requests: retry after 2": DeliveryErrorKind.FLOOD,
            "Bad Request: can't parse entities: unsupported tag": DeliveryErrorKind.FORMATTING,
            "Bad Request: chat not found": DeliveryErrorKind.FAILURE,
        }
        for text, kind in cases.items():
            with self.subTest(text=text):
                self.assertEqual(kind, classify_error(TransportError(text))[0])

    def test_description_is_considered(self) -> None:
        error = TransportError("telegram error", description="Bad Request: can't find end tag")
        self.assertEqual(DeliveryErrorKind.FORMATTING, classify_error(error)[0])


class BackoffSlotsTests(unittest.TestCase):
    def test_slots_block_independently(self) -> None:
        clock = FakeClock(100.0)
        slots = BackoffSlots(clock=clock, jitter_seconds=0.25)

        until = slots.block(BackoffSlots.PROGRESS_EDIT, 5, fallback=2.5)

        self.assertEqual(105.25, until)
        self.assertTrue(slots.is_blocked(BackoffSlots.PROGRESS_EDIT))
        self.assertFalse(slots.is_blocked(BackoffSlots.PROGRESS_SEND))
        self.assertFalse(slots.is_blocked(BackoffSlots.TOPIC_RENAME))
        clock.advance(5.3)
        self.assertFalse(slots.is_blocked(BackoffSlots.PROGRESS_EDIT))

    def test_fallback_used_without_retry_after(self) -> None:
        slots = BackoffSlots(clock=FakeClock(0.0), jitter_seconds=0.25)
        self.assertAlmostEqual(1.45, slots.block(BackoffSlots.PROGRESS_SEND, None, fallback=1.2))

    def test_clear(self) -> None:
        slots = BackoffSlots(clock=FakeClock(0.0))
        slots.block(BackoffSlots.TOPIC_RENAME, 10, fallback=1)
        slots.clear(BackoffSlots.TOPIC_RENAME)
        self.assertFalse(slots.is_blocked(BackoffSlots.TOPIC_RENAME))


class ThreadDeliveryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = FakeTransport()
        self.sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)

        self.delivery = ThreadDelivery(self.transport, sleep=record_sleep)

    def test_flood_waits_retry_after_plus_jitter(self) -> None:
        self.transport.send_errors.append(TransportError("Too Many Requests: retry after 3", error_code=429, retry_after=3))

        asyncio.run(self.delivery.send(make_binding(), "final answer"))

        self.assertEqual([3.25], self.sleeps)
        self.assertEqual(["final answer"], self.transport.texts())

    def test_flood_without_retry_after_waits_default(self) -> None:
        self.transport.send_errors.append(TransportError("Too Many Requests", error_code=429))

        asyncio.run(self.delivery.send(make_binding(), "x"))

        self.assertEqual([1.25], self.sleeps)

    def test_flood_retries_are_bounded(self) -> None:
        flood = TransportError("Too Many Requests: retry after 1", error_code=429, retry_after=1)
        self.transport.send_errors.extend([flood, flood, flood])

        with self.assertRaises(TransportError):
            asyncio.run(self.delivery.send(make_binding(), "x"))

        self.assertEqual(2, len(self.sleeps))
        self.assertEqual([], self.transport.sent)

    def test_rejected_formatting_falls_back_to_plain_once(self) -> None:
        self.transport.send_errors.append(TransportError("Bad Request: can't parse entities"))

        asyncio.run(self.delivery.send(make_binding(), "**bold**", rich=True))

        self.assertEqual(1, len(self.transport.sent))
        self.assertEqual("**bold**", self.transport.sent[0]["text"])
        self.assertIsNone(self.transport.sent[0]["parse_mode"])
        self.assertEqual([], self.sleeps)

    def test_other_errors_are_not_retried(self) -> None:
        self.transport.send_errors.append(TransportError("Bad Request: chat not found", error_code=400))

        with self.assertRaises(TransportError):
            asyncio.run(self.delivery.send(make_binding(), "x", rich=True))

        self.assertEqual([], self.sleeps)

    def test_long_text_is_chunked(self) -> None:
        text = "a" * (MESSAGE_CHUNK_CHARS * 2 + 10)

        last_id = asyncio.run(self.delivery.send_to(-100, 7, text))

        self.assertEqual([MESSAGE_CHUNK_CHARS, MESSAGE_CHUNK_CHARS, 10], [len(t) for t in self.transport.texts()])
        self.assertEqual(self.transport.sent[-1]["message_id"], last_id)

    def test_reply_target_is_forwarded(self) -> None:
        asyncio.run(self.delivery.send_to(-100, None, "hint", reply_to_message_id=55))

        self.assertEqual(55, self.transport.sent[0]["reply_to_message_id"])
        self.assertIsNone(self.transport.sent[0]["thread_id"])


if __name__ == "__main__":
    unittest.main()
