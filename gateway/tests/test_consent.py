import unittest

from aiohttp.test_utils import TestClient, TestServer

from chatwire.consent import (
    ACCEPTED,
    NO_CONSENT,
    PENDING,
    REJECTED,
    ConsentError,
    ConsentGate,
    ConsentPolicy,
    InMemoryConsentStore,
)
from chatwire.ws_transport import create_app

from .ws_util import assert_no_frames, auth, open_session, recv_type


class FakeClock:
    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class ConsentGateTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.gate = ConsentGate(InMemoryConsentStore(), now_func=self.clock.now)

    def test_request_creates_pending_record_once(self):
        consent, created = self.gate.request("alice", "bob")
        self.assertTrue(created)
        self.assertEqual(consent.status, PENDING)
        self.assertEqual((consent.requester_id, consent.responder_id), ("alice", "bob"))

        again, created_again = self.gate.request("bob", "alice")
        self.assertFalse(created_again)
        self.assertEqual(again.consent_id, consent.consent_id)

    def test_permission_without_record(self):
        self.assertEqual(self.gate.permission("alice", "bob"), (NO_CONSENT, None))
        self.assertFalse(self.gate.is_allowed("alice", "bob"))

    def test_accept_opens_both_directions(self):
        consent, _ = self.gate.request("alice", "bob")
        self.clock.advance(5)
        accepted = self.gate.respond(consent.consent_id, "bob", True)

        self.assertEqual(accepted.status, ACCEPTED)
        self.assertEqual(accepted.updated_at_ms, self.clock.now())
        self.assertTrue(self.gate.is_allowed("alice", "bob"))
        self.assertTrue(self.gate.is_allowed("bob", "alice"))

    def test_only_responder_may_decide(self):
        consent, _ = self.gate.request("alice", "bob")
        with self.assertRaises(PermissionError):
            self.gate.respond(consent.consent_id, "alice", True)
        with self.assertRaises(PermissionError):
            self.gate.respond(consent.consent_id, "carol", True)

    def test_decided_record_cannot_be_decided_again(self):
        consent, _ = self.gate.request("alice", "bob")
        self.gate.respond(consent.consent_id, "bob", False)
        with self.assertRaises(ConsentError):
            self.gate.respond(consent.consent_id, "bob", True)

    def test_unknown_consent(self):
        with self.assertRaises(ValueError):
            self.gate.respond("missing", "bob", True)

    def test_self_request_rejected(self):
        with self.assertRaises(ValueError):
            self.gate.request("alice", "alice")

    def test_rejection_blocks_rerequest_by_default(self):
        consent, _ = self.gate.request("alice", "bob")
        self.gate.respond(consent.consent_id, "bob", False)
        self.clock.advance(3600)

        again, created = self.gate.request("alice", "bob")
        self.assertFalse(created)
        self.assertEqual(again.status, REJECTED)

    def test_policy_allows_rerequest_after_cooldown(self):
        gate = ConsentGate(
            InMemoryConsentStore(),
            ConsentPolicy(allow_rerequest_after_reject=True, rerequest_cooldown_s=60),
            now_func=self.clock.now,
        )
        consent, _ = gate.request("alice", "bob")
        gate.respond(consent.consent_id, "bob", False)

        self.clock.advance(30)
        _, created = gate.request("alice", "bob")
        self.assertFalse(created)

        self.clock.advance(30)
        fresh, created = gate.request("alice", "bob")
        self.assertTrue(created)
        self.assertEqual(fresh.status, PENDING)
        self.assertNotEqual(fresh.consent_id, consent.consent_id)
        self.assertIsNone(gate.store.get(consent.consent_id))


class ConsentChannelTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600)
        self.runtime = self.app["runtime"]
        self.runtime.users.upsert("alice", "Alice", "https://img.example/a.png")
        self.runtime.users.upsert("bob", "Bob", "https://img.example/b.png")
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.alice, _, self.alice_token = await open_session(self.client, "alice")
        self.bob, _, self.bob_token = await open_session(self.client, "bob")
        await recv_type(self.alice, "userOnline")

    async def asyncTearDown(self):
        await self.alice.close()
        await self.bob.close()
        await self.client.close()
        await self.server.close()

    async def _request(self) -> dict:
        await self.alice.send_json({"type": "openChatWindow", "otherUserId": "bob"})
        request = await recv_type(self.bob, "consentRequest")
        await recv_type(self.alice, "consentPending")
        return request

    async def test_open_window_without_consent_sends_request_and_pending(self):
        await self.alice.send_json({"type": "openChatWindow", "otherUserId": "bob"})

        request = await recv_type(self.bob, "consentRequest")
        self.assertEqual(request["requesterId"], "alice")
        self.assertEqual(request["consent"]["status"], "pending")
        self.assertEqual(request["requester"]["firstName"], "Alice")

        pending = await recv_type(self.alice, "consentPending")
        self.assertEqual(pending["responderId"], "bob")
        self.assertEqual(pending["consent"]["id"], request["consent"]["id"])

    async def test_reopening_pending_window_repeats_frames(self):
        first = await self._request()

        await self.alice.send_json({"type": "openChatWindow", "otherUserId": "bob"})
        pending = await recv_type(self.alice, "consentPending")
        self.assertEqual(pending["consent"]["id"], first["consent"]["id"])

        await self.bob.send_json({"type": "openChatWindow", "otherUserId": "alice"})
        repeated = await recv_type(self.bob, "consentRequest")
        self.assertEqual(repeated["consent"]["id"], first["consent"]["id"])

    async def test_message_before_accept_is_refused_with_pending(self):
        await self._request()

        await self.alice.send_json({"type": "sendMessage", "receiverId": "bob", "content": "hi"})

        pending = await recv_type(self.alice, "consentPending")
        self.assertEqual(pending["responderId"], "bob")
        await assert_no_frames(self.bob)
        self.assertIsNone(self.runtime.conversations.get("alice", "bob"))

    async def test_message_without_any_request_is_refused(self):
        await self.alice.send_json({"type": "sendMessage", "receiverId": "bob", "content": "hi"})
        error = await recv_type(self.alice, "error")
        self.assertEqual(error["code"], "consent_required")
        await assert_no_frames(self.bob)

    async def test_accept_over_socket_then_messages_flow(self):
        request = await self._request()

        await self.bob.send_json(
            {"type": "consentResponse", "consentId": request["consent"]["id"], "decision": "accept"}
        )
        for ws in (self.alice, self.bob):
            accepted = await recv_type(ws, "consentAccepted")
            self.assertEqual(accepted["consent"]["status"], "accepted")
            self.assertEqual(accepted["requesterId"], "alice")

        await self.alice.send_json(
            {"type": "sendMessage", "receiverId": "bob", "content": "hello", "clientMsgId": "m1"}
        )
        new_message = await recv_type(self.bob, "newMessage")
        self.assertEqual(new_message["message"]["content"], "hello")
        self.assertEqual(new_message["sender"]["id"], "alice")
        confirmed = await recv_type(self.alice, "messageConfirmed")
        self.assertEqual(confirmed["clientMsgId"], "m1")
        self.assertEqual(confirmed["message"]["id"], new_message["message"]["id"])

    async def test_reject_over_http_blocks_messages(self):
        request = await self._request()

        resp = await self.client.post(
            f"/v1/consent/{request['consent']['id']}/reject", headers=auth(self.bob_token)
        )
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["consent"]["status"], "rejected")
        await recv_type(self.alice, "consentRejected")
        await recv_type(self.bob, "consentRejected")

        await self.alice.send_json({"type": "sendMessage", "receiverId": "bob", "content": "please"})
        refused = await recv_type(self.alice, "consentRejected")
        self.assertEqual(refused["receiverId"], "bob")
        await assert_no_frames(self.bob)

        await self.alice.send_json({"type": "openChatWindow", "otherUserId": "bob"})
        await recv_type(self.alice, "consentRejected")
        await assert_no_frames(self.bob)

    async def test_requester_cannot_answer_own_request(self):
        request = await self._request()

        await self.alice.send_json(
            {"type": "consentResponse", "consentId": request["consent"]["id"], "decision": "accept"}
        )
        error = await recv_type(self.alice, "error")
        self.assertEqual(error["code"], "forbidden")

        resp = await self.client.post(
            f"/v1/consent/{request['consent']['id']}/accept", headers=auth(self.alice_token)
        )
        self.assertEqual(resp.status, 403)

    async def test_second_decision_conflicts(self):
        request = await self._request()
        consent_id = request["consent"]["id"]
        first = await self.client.post(f"/v1/consent/{consent_id}/accept", headers=auth(self.bob_token))
        self.assertEqual(first.status, 200)
        second = await self.client.post(f"/v1/consent/{consent_id}/reject", headers=auth(self.bob_token))
        self.assertEqual(second.status, 409)
        missing = await self.client.post("/v1/consent/nope/accept", headers=auth(self.bob_token))
        self.assertEqual(missing.status, 404)

    async def test_consent_status_endpoint(self):
        resp = await self.client.get("/v1/consent/bob", headers=auth(self.alice_token))
        self.assertEqual(await resp.json(), {"status": "no_consent", "allowed": False})

        await self._request()
        resp = await self.client.get("/v1/consent/alice", headers=auth(self.bob_token))
        body = await resp.json()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["role"], "responder")
        self.assertFalse(body["allowed"])
        self.assertEqual(resp.headers["Cache-Control"], "no-store")


if __name__ == "__main__":
    unittest.main()
