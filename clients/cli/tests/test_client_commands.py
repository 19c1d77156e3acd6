import io
import unittest

from client_fakes import Recorder

from chatwire_client import bus as topics
from chatwire_client.__main__ import HELP, handle_line
from chatwire_client.bus import EventBus
from chatwire_client.commands import CommandEncoder
from chatwire_client.config import ClientConfig
from chatwire_client.events import MessageNotificationsRead
from chatwire_client.session import RealtimeSession, UnreadCounters


class FakeSink:
    def __init__(self, is_open: bool = True) -> None:
        self.is_open = is_open
        self.frames: list[dict] = []

    async def send_frame(self, frame: dict) -> bool:
        self.frames.append(frame)
        return True


class CommandEncoderTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_message_carries_client_msg_id(self):
        sink = FakeSink()
        encoder = CommandEncoder(sink)

        first = await encoder.send_message("bob", content="hi")
        second = await encoder.send_message("bob", image_url="https://img.example/x.png")

        self.assertNotEqual(first, second)
        self.assertEqual(
            sink.frames[0], {"type": "sendMessage", "receiverId": "bob", "clientMsgId": first, "content": "hi"}
        )
        self.assertEqual(sink.frames[1]["imageUrl"], "https://img.example/x.png")
        self.assertNotIn("content", sink.frames[1])

    async def test_send_message_needs_content_or_image(self):
        with self.assertRaises(ValueError):
            await CommandEncoder(FakeSink()).send_message("bob")

    async def test_window_typing_and_consent_frames(self):
        sink = FakeSink()
        encoder = CommandEncoder(sink)

        await encoder.open_chat_window("bob")
        await encoder.send_typing("bob", True)
        await encoder.close_chat_window("bob")
        await encoder.respond_to_consent("c1", accept=False)

        self.assertEqual(
            sink.frames,
            [
                {"type": "openChatWindow", "otherUserId": "bob"},
                {"type": "typing", "receiverId": "bob", "isTyping": True},
                {"type": "closeChatWindow", "otherUserId": "bob"},
                {"type": "consentResponse", "consentId": "c1", "decision": "reject"},
            ],
        )

    async def test_commands_dropped_while_closed(self):
        sink = FakeSink(is_open=False)
        encoder = CommandEncoder(sink)

        self.assertIsNone(await encoder.send_message("bob", content="hi"))
        self.assertFalse(await encoder.send_typing("bob", True))
        self.assertFalse(await encoder.open_chat_window("bob"))
        self.assertEqual(sink.frames, [])


class UnreadCounterTests(unittest.TestCase):
    def setUp(self):
        self.bus = EventBus()
        self.counters = UnreadCounters(self.bus)
        self.changes = Recorder()
        self.bus.subscribe(topics.COUNTERS_CHANGED, self.changes)

    def test_increments_and_reads(self):
        self.bus.publish(topics.MESSAGE_RECEIVED, None)
        self.bus.publish(topics.MESSAGE_RECEIVED, None)
        self.bus.publish(topics.NOTIFICATION_RECEIVED, None)
        self.bus.publish(topics.MESSAGE_READ, MessageNotificationsRead("alice", 1))

        self.assertEqual((self.counters.messages, self.counters.notifications), (1, 1))
        self.assertEqual(self.changes.events[-1], {"messages": 1, "notifications": 1})

    def test_read_never_goes_negative(self):
        self.counters.seed(2, 0)
        self.bus.publish(topics.MESSAGE_READ, MessageNotificationsRead("alice", 5))
        self.assertEqual(self.counters.messages, 0)

    def test_detach_stops_counting(self):
        self.counters.detach()
        self.bus.publish(topics.MESSAGE_RECEIVED, None)
        self.assertEqual(self.counters.messages, 0)
        self.assertEqual(self.changes.events, [])


class ConsoleTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.session = RealtimeSession(ClientConfig(url="ws://127.0.0.1:1/ws", session_token="st_x"))
        self.sink = FakeSink()
        self.session.commands = CommandEncoder(self.sink)
        self.out = io.StringIO()

    async def test_slash_commands_map_to_frames(self):
        for line in ("/open bob", "/typing bob on", "/msg bob hello there", "/accept c1", "/close bob"):
            self.assertTrue(await handle_line(self.session, line, self.out))

        self.assertEqual(
            [frame["type"] for frame in self.sink.frames],
            ["openChatWindow", "typing", "sendMessage", "consentResponse", "closeChatWindow"],
        )
        self.assertEqual(self.sink.frames[2]["content"], "hello there")
        self.assertEqual(self.sink.frames[3]["decision"], "accept")
        self.assertEqual(self.out.getvalue(), "")

    async def test_unknown_command_prints_help(self):
        self.assertTrue(await handle_line(self.session, "/msg bob", self.out))
        self.assertEqual(self.out.getvalue(), HELP + "\n")
        self.assertEqual(self.sink.frames, [])

    async def test_dropped_command_is_reported(self):
        self.sink.is_open = False
        await handle_line(self.session, "/open bob", self.out)
        self.assertIn("command dropped", self.out.getvalue())

    async def test_quit_and_blank_lines(self):
        self.assertTrue(await handle_line(self.session, "\n", self.out))
        self.assertFalse(await handle_line(self.session, "/quit", self.out))


if __name__ == "__main__":
    unittest.main()
