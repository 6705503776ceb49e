import asyncio
import unittest

from glowchat.auth import AuthError, issue_token, verify_token
from glowchat.config import Settings
from glowchat.realtime import (
    MESSAGE_NEW,
    SIGNAL,
    STORIES_UPDATE,
    FanOut,
    JoinResult,
    handle_frame,
)


class RecordingConnection:
    def __init__(self, sid: str):
        self.sid = sid
        self.events = []

    async def send(self, event, data):
        self.events.append((event, data))


class ClosedConnection(RecordingConnection):
    async def send(self, event, data):
        raise ConnectionError("socket closed")


def fake_verifier(token):
    if token and token.startswith("valid:"):
        return {"id": int(token.split(":", 1)[1])}
    raise AuthError("bad token")


class FanOutJoinTests(unittest.TestCase):
    def setUp(self):
        self.fanout = FanOut(token_verifier=fake_verifier)

    def test_join_subscribes_user_and_chat_rooms(self):
        conn = RecordingConnection("a")
        result = self.fanout.join(conn, "valid:5", chat_id=7)
        self.assertEqual(result, JoinResult.JOINED)
        self.assertEqual(self.fanout.rooms_of(conn), {"user_5", "chat_7"})

    def test_join_without_chat_only_subscribes_user_room(self):
        conn = RecordingConnection("a")
        self.fanout.join(conn, "valid:5")
        self.assertEqual(self.fanout.rooms_of(conn), {"user_5"})

    def test_join_with_invalid_token_is_rejected_silently(self):
        conn = RecordingConnection("a")
        self.fanout.connect(conn)
        result = self.fanout.join(conn, "garbage", chat_id=7)
        self.assertEqual(result, JoinResult.REJECTED)
        self.assertEqual(self.fanout.rooms_of(conn), frozenset())
        self.assertEqual(self.fanout.members("chat_7"), frozenset())
        # Nothing is sent back to the client on rejection.
        self.assertEqual(conn.events, [])

    def test_join_with_missing_token_is_rejected(self):
        conn = RecordingConnection("a")
        self.assertEqual(self.fanout.join(conn, None), JoinResult.REJECTED)

    def test_falsy_or_structured_chat_ids_join_no_chat_room(self):
        conn = RecordingConnection("a")
        for chat_id in (False, True, 0, "", [], {"id": 1}, [7]):
            self.assertEqual(self.fanout.join(conn, "valid:5", chat_id), JoinResult.JOINED)
        self.assertEqual(self.fanout.rooms_of(conn), {"user_5"})

    def test_string_chat_id_joins_chat_room(self):
        conn = RecordingConnection("a")
        self.fanout.join(conn, "valid:5", chat_id="7")
        self.assertEqual(self.fanout.rooms_of(conn), {"user_5", "chat_7"})

    def test_repeated_joins_accumulate_rooms(self):
        conn = RecordingConnection("a")
        self.fanout.join(conn, "valid:5", chat_id=1)
        self.fanout.join(conn, "valid:5", chat_id=2)
        self.assertEqual(self.fanout.rooms_of(conn), {"user_5", "chat_1", "chat_2"})

    def test_join_with_real_tokens(self):
        settings = Settings(jwt_secret="unit-secret")
        fanout = FanOut(token_verifier=lambda t: verify_token(t, settings))
        conn = RecordingConnection("a")
        token = issue_token({"id": 42, "email": "a@example.com"}, settings)
        self.assertEqual(fanout.join(conn, token), JoinResult.JOINED)
        self.assertEqual(fanout.rooms_of(conn), {"user_42"})

        forged = issue_token({"id": 42}, Settings(jwt_secret="other"))
        other = RecordingConnection("b")
        self.assertEqual(fanout.join(other, forged), JoinResult.REJECTED)


class FanOutDeliveryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.fanout = FanOut(token_verifier=fake_verifier)

    async def test_broadcast_reaches_joined_connection_exactly_once(self):
        a = RecordingConnection("a")
        b = RecordingConnection("b")
        self.fanout.join(a, "valid:1", chat_id=7)
        self.fanout.connect(b)

        message = {"id": 1, "chat_id": 7, "content": "hi"}
        delivered = await self.fanout.broadcast_message(7, message)

        self.assertEqual(delivered, 1)
        self.assertEqual(a.events, [(MESSAGE_NEW, message)])
        self.assertEqual(b.events, [])

    async def test_broadcast_to_other_chat_is_not_seen(self):
        a = RecordingConnection("a")
        self.fanout.join(a, "valid:1", chat_id=7)
        await self.fanout.broadcast_message(8, {"id": 2})
        self.assertEqual(a.events, [])

    async def test_late_joiner_does_not_receive_earlier_broadcast(self):
        await self.fanout.broadcast_message(7, {"id": 1})
        late = RecordingConnection("late")
        self.fanout.join(late, "valid:1", chat_id=7)
        self.assertEqual(late.events, [])

    async def test_signal_reaches_every_connection_of_the_user(self):
        first = RecordingConnection("first")
        second = RecordingConnection("second")
        bystander = RecordingConnection("bystander")
        self.fanout.join(first, "valid:5")
        self.fanout.join(second, "valid:5")
        self.fanout.join(bystander, "valid:6", chat_id=5)

        payload = {"to": "user_5", "type": "offer", "data": {"sdp": "v=0"}}
        delivered = await self.fanout.relay_signal(payload)

        self.assertEqual(delivered, 2)
        self.assertEqual(first.events, [(SIGNAL, payload)])
        self.assertEqual(second.events, [(SIGNAL, payload)])
        self.assertEqual(bystander.events, [])

    async def test_signal_payload_is_forwarded_verbatim(self):
        target = RecordingConnection("t")
        self.fanout.join(target, "valid:42")
        payload = {"to": "user_42", "type": "candidate", "data": [1, 2], "extra": True}
        await self.fanout.relay_signal(payload)
        self.assertIs(target.events[0][1], payload)

    async def test_signal_to_empty_room_is_not_an_error(self):
        delivered = await self.fanout.relay_signal({"to": "user_99", "type": "offer"})
        self.assertEqual(delivered, 0)

    async def test_malformed_signal_routes_to_nobody(self):
        conn = RecordingConnection("a")
        self.fanout.join(conn, "valid:1")
        self.assertEqual(await self.fanout.relay_signal({"type": "offer"}), 0)
        self.assertEqual(await self.fanout.relay_signal("not a dict"), 0)
        self.assertEqual(await self.fanout.relay_signal({"to": 1}), 0)
        self.assertEqual(conn.events, [])

    async def test_disconnected_connection_gets_no_later_broadcast(self):
        a = RecordingConnection("a")
        self.fanout.join(a, "valid:1", chat_id=7)
        self.fanout.disconnect(a)

        delivered = await self.fanout.broadcast_message(7, {"id": 1})

        self.assertEqual(delivered, 0)
        self.assertEqual(a.events, [])
        self.assertEqual(self.fanout.members("chat_7"), frozenset())
        self.assertEqual(self.fanout.connection_count, 0)

    async def test_disconnect_unknown_connection_is_a_noop(self):
        self.fanout.disconnect(RecordingConnection("ghost"))
        self.assertEqual(self.fanout.connection_count, 0)

    async def test_failed_send_drops_connection_and_keeps_delivering(self):
        healthy = RecordingConnection("ok")
        closed = ClosedConnection("closed")
        self.fanout.join(healthy, "valid:1", chat_id=7)
        self.fanout.join(closed, "valid:2", chat_id=7)

        delivered = await self.fanout.broadcast_message(7, {"id": 1})

        self.assertEqual(delivered, 1)
        self.assertEqual(len(healthy.events), 1)
        self.assertEqual(self.fanout.members("chat_7"), {healthy})
        self.assertEqual(self.fanout.rooms_of(closed), frozenset())

    async def test_emit_all_includes_unauthenticated_connections(self):
        anonymous = RecordingConnection("anon")
        member = RecordingConnection("member")
        self.fanout.connect(anonymous)
        self.fanout.join(member, "valid:1", chat_id=3)

        data = {"uploader_id": 1, "filename": "x.png", "created_at": 1, "expires": 2}
        delivered = await self.fanout.emit_all(STORIES_UPDATE, data)

        self.assertEqual(delivered, 2)
        self.assertEqual(anonymous.events, [(STORIES_UPDATE, data)])
        self.assertEqual(member.events, [(STORIES_UPDATE, data)])

    async def test_broadcast_waits_for_persistence(self):
        order = []

        class OrderedConnection(RecordingConnection):
            async def send(self, event, data):
                order.append("delivered")
                await super().send(event, data)

        conn = OrderedConnection("a")
        self.fanout.join(conn, "valid:1", chat_id=7)

        async def insert_message():
            await asyncio.sleep(0.05)
            order.append("committed")
            return {"id": 1, "chat_id": 7}

        async def send_message():
            message = await insert_message()
            await self.fanout.broadcast_message(7, message)

        task = asyncio.create_task(send_message())
        await asyncio.sleep(0.01)
        self.assertEqual(conn.events, [])
        await task
        self.assertEqual(order, ["committed", "delivered"])


class HandleFrameTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.fanout = FanOut(token_verifier=fake_verifier)

    async def test_join_frame(self):
        conn = RecordingConnection("a")
        await handle_frame(
            self.fanout, conn, {"event": "join", "data": {"token": "valid:3", "chatId": 9}}
        )
        self.assertEqual(self.fanout.rooms_of(conn), {"user_3", "chat_9"})

    async def test_signal_frame(self):
        sender = RecordingConnection("s")
        receiver = RecordingConnection("r")
        self.fanout.join(receiver, "valid:4")
        payload = {"to": "user_4", "type": "answer", "data": "sdp"}
        await handle_frame(self.fanout, sender, {"event": "signal", "data": payload})
        self.assertEqual(receiver.events, [(SIGNAL, payload)])
        self.assertEqual(sender.events, [])

    async def test_garbage_frames_are_ignored(self):
        conn = RecordingConnection("a")
        await handle_frame(self.fanout, conn, None)
        await handle_frame(self.fanout, conn, ["join"])
        await handle_frame(self.fanout, conn, {"event": "join", "data": "nope"})
        await handle_frame(self.fanout, conn, {"event": "dance"})
        self.assertEqual(self.fanout.rooms_of(conn), frozenset())
        self.assertEqual(conn.events, [])


if __name__ == "__main__":
    unittest.main()
