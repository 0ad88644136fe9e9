import asyncio
import json
import unittest

import httpx

from topic_relay.transport import TransportError
from topic_relay.transports.telegram_transport import TelegramTransport


class TelegramTransportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def _call(self, method: str, *args, **kwargs):
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.responses.pop(0)

        async def scenario():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            transport = TelegramTransport("123:abc", base_url="https://tg.test", client=client)
            try:
                return await getattr(transport, method)(*args, **kwargs)
            finally:
                await transport.close()

        return asyncio.run(scenario())

    def _payload(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)

    def test_send_message_in_thread(self) -> None:
        self.responses.append(httpx.Response(200, json={"ok": True, "result": {"message_id": 77}}))

        message_id = self._call("send_message", -100, "hello", thread_id=7, reply_to_message_id=5, parse_mode="HTML")

        self.assertEqual(77, message_id)
        self.assertEqual("/bot123:abc/sendMessage", self.requests[0].url.path)
        payload = self._payload()
        self.assertEqual(7, payload["message_thread_id"])
        self.assertEqual(5, payload["reply_parameters"]["message_id"])
        self.assertEqual("HTML", payload["parse_mode"])

    def test_flood_error_carries_retry_after(self) -> None:
        self.responses.append(
            httpx.Response(
                429,
                json={
                    "ok": False,
                    "error_code": 429,
                    "description": "Too Many Requests: retry after 3",
                    "parameters": {"retry_after": 3},
                },
            )
        )

        with self.assertRaises(TransportError) as ctx:
            self._call("edit_message", -100, 5, "text")

        self.assertEqual(429, ctx.exception.error_code)
        self.assertEqual(3.0, ctx.exception.retry_after)
        self.assertEqual("Too Many Requests: retry after 3", ctx.exception.description)

    def test_non_json_response(self) -> None:
        self.responses.append(httpx.Response(502, content=b"<html>bad gateway</html>"))
        with self.assertRaises(TransportError) as ctx:
            self._call("delete_message", -100, 5)
        self.assertEqual(502, ctx.exception.error_code)

    def test_create_topic_and_rename(self) -> None:
        self.responses.extend(
            [
                httpx.Response(200, json={"ok": True, "result": {"message_thread_id": 901, "name": "x"}}),
                httpx.Response(200, json={"ok": True, "result": True}),
            ]
        )

        self.assertEqual(901, self._call("create_topic", -100, "project | new"))
        self._call("edit_topic_name", -100, 901, "project | idle")

        self.assertEqual({"chat_id": -100, "message_thread_id": 901, "name": "project | idle"}, self._payload(1))

    def test_download_attachment(self) -> None:
        self.responses.extend(
            [
                httpx.Response(200, json={"ok": True, "result": {"file_path": "photos/file_1.jpg"}}),
                httpx.Response(200, content=b"\xff\xd8jpeg"),
            ]
        )

        attachment = self._call("download_attachment", "file-id")

        self.assertEqual("file_1.jpg", attachment.filename)
        self.assertEqual("image/jpeg", attachment.mime)
        self.assertEqual(b"\xff\xd8jpeg", attachment.data)
        self.assertEqual("/file/bot123:abc/photos/file_1.jpg", self.requests[1].url.path)

    def test_get_updates_offset(self) -> None:
        self.responses.append(httpx.Response(200, json={"ok": True, "result": [{"update_id": 3}]}))

        updates = self._call("get_updates", 3, 10)

        self.assertEqual([{"update_id": 3}], updates)
        self.assertEqual({"timeout": 10, "allowed_updates": ["message"], "offset": 3}, self._payload())


if __name__ == "__main__":
    unittest.main()
