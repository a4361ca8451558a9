"""Push channel tests.

Tests for:
- Admission through the ``jwt.<token>`` sub-protocol
- Tenant filtering of broadcasts
- Per-entity coalescing of player events
- Heartbeat, liveness and re-verification closes
"""

import asyncio
import json

import pytest

from playerdash.service.push import (
    CLOSE_AUTH,
    CLOSE_GOING_AWAY,
    PushHub,
    entity_id,
    token_from_subprotocols,
)
from playerdash.storage.models import RevocationReason, Role


class FakeWebSocket:
    def __init__(self, token=None, subprotocols=None):
        if subprotocols is None:
            subprotocols = [f"jwt.{token}"] if token else []
        self.scope = {"type": "websocket", "subprotocols": subprotocols}
        self.accepted = False
        self.subprotocol = None
        self.close_code = None
        self.sent = []
        self.incoming = asyncio.Queue()

    async def accept(self, subprotocol=None):
        self.accepted = True
        self.subprotocol = subprotocol

    async def close(self, code=1000, reason=None):
        self.close_code = code

    async def send_json(self, data):
        self.sent.append(data)

    async def receive(self):
        return await self.incoming.get()

    def push_text(self, message):
        self.incoming.put_nowait({"type": "websocket.receive", "text": json.dumps(message)})

    def disconnect(self):
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def frames(self, kind):
        return [frame for frame in self.sent if frame["type"] == kind]


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _drain(session):
    frames = []
    while not session.queue.empty():
        frames.append(session.queue.get_nowait())
    return frames


@pytest.fixture
def token_for(runtime):
    def _token(principal):
        return runtime.codec.issue(runtime.store.get_principal(principal.id)).token

    return _token


@pytest.fixture
def hub(runtime):
    return PushHub(
        runtime.auth,
        ping_interval=30,
        pong_timeout=5,
        reverify_interval=60,
        coalesce_window=10,
    )


class TestHelpers:
    def test_token_from_subprotocols(self):
        assert token_from_subprotocols(["chat", "jwt.abc"]) == ("abc", "jwt.abc")
        assert token_from_subprotocols(["jwt."]) == (None, None)
        assert token_from_subprotocols([]) == (None, None)

    def test_entity_id_accepts_either_key(self):
        assert entity_id({"id": 7}) == "7"
        assert entity_id({"_id": "abc"}) == "abc"
        assert entity_id({"name": "scherm"}) is None


class TestAdmission:
    async def test_missing_token_closes_with_4401(self, hub):
        ws = FakeWebSocket()

        session = await hub.admit(ws)

        assert session is None
        assert ws.close_code == CLOSE_AUTH
        assert not ws.accepted

    async def test_invalid_token_closes_with_4401(self, hub):
        ws = FakeWebSocket(token="not-a-token")

        assert await hub.admit(ws) is None
        assert ws.close_code == CLOSE_AUTH

    async def test_revoked_token_closes_with_4401(self, runtime, hub, make_principal, token_for):
        principal = make_principal()
        token = token_for(principal)
        runtime.revocations.add_principal_marker(principal.id, RevocationReason.LOGOUT)

        assert await hub.admit(FakeWebSocket(token=token)) is None

    async def test_valid_token_accepts_offered_subprotocol(self, hub, make_principal, token_for):
        principal = make_principal()
        ws = FakeWebSocket(token=token_for(principal))

        session = await hub.admit(ws)

        assert ws.accepted
        assert ws.subprotocol == ws.scope["subprotocols"][0]
        assert session.context.principal_id == principal.id
        assert hub.snapshot()["sessions"] == 1


class TestBroadcast:
    async def _sessions(self, hub, make_principal, token_for):
        admin = await hub.admit(
            FakeWebSocket(token=token_for(make_principal(role=Role.PLATFORM_ADMIN)))
        )
        tenant_a = await hub.admit(FakeWebSocket(token=token_for(make_principal(tenant_id="a"))))
        tenant_b = await hub.admit(FakeWebSocket(token=token_for(make_principal(tenant_id="b"))))
        return admin, tenant_a, tenant_b

    async def test_events_reach_own_tenant_and_platform_admins(
        self, hub, make_principal, token_for
    ):
        admin, tenant_a, tenant_b = await self._sessions(hub, make_principal, token_for)

        await hub.publish("schedule_changed", {"id": "s1"}, "a")

        assert [f["type"] for f in _drain(admin)] == ["schedule_changed"]
        assert [f["type"] for f in _drain(tenant_a)] == ["schedule_changed"]
        assert _drain(tenant_b) == []

    async def test_untenanted_events_reach_platform_admins_only(
        self, hub, make_principal, token_for
    ):
        admin, tenant_a, tenant_b = await self._sessions(hub, make_principal, token_for)

        await hub.publish("system_notice", {"message": "onderhoud"}, None)

        assert len(_drain(admin)) == 1
        assert _drain(tenant_a) == []
        assert _drain(tenant_b) == []

    async def test_player_events_coalesce_per_entity(self, hub, make_principal, token_for):
        """Updates within the window merge into one frame carrying the newest fields."""
        _admin, tenant_a, _tenant_b = await self._sessions(hub, make_principal, token_for)

        await hub.publish("player_created", {"id": "p1", "name": "Scherm 1"}, "a")
        await hub.publish("player_updated", {"id": "p1", "status": "online"}, "a")
        await hub.publish("player_updated", {"id": "p2", "status": "offline"}, "a")
        assert _drain(tenant_a) == []
        assert hub.snapshot()["pendingBatches"] == 2

        await hub.flush()

        frames = sorted(_drain(tenant_a), key=lambda f: f["data"]["id"])
        assert len(frames) == 2
        assert frames[0]["type"] == "player_updated"
        assert frames[0]["data"]["name"] == "Scherm 1"
        assert frames[0]["data"]["status"] == "online"
        assert "batchTimestamp" in frames[0]["data"]
        await hub.close_all()

    async def test_same_entity_in_other_tenant_is_separate(self, hub, make_principal, token_for):
        await self._sessions(hub, make_principal, token_for)

        await hub.publish("player_updated", {"id": "p1"}, "a")
        await hub.publish("player_updated", {"id": "p1"}, "b")

        assert hub.snapshot()["pendingBatches"] == 2
        await hub.close_all()

    async def test_player_event_without_id_is_dropped(self, hub, make_principal, token_for):
        await self._sessions(hub, make_principal, token_for)

        await hub.publish("player_updated", {"status": "online"}, "a")

        assert hub.snapshot()["pendingBatches"] == 0

    async def test_coalesce_window_flushes_automatically(self, hub, make_principal, token_for):
        _admin, tenant_a, _tenant_b = await self._sessions(hub, make_principal, token_for)
        hub.coalesce_window = 0.01

        await hub.publish("player_deleted", {"_id": "p9"}, "a")

        await _until(lambda: not tenant_a.queue.empty())
        frame = tenant_a.queue.get_nowait()
        assert frame["type"] == "player_deleted"


class TestSessionLifecycle:
    async def _serve(self, hub, ws):
        task = asyncio.create_task(hub.serve(ws))
        await _until(lambda: ws.frames("connected"))
        return task

    async def test_connected_frame_and_ping_pong(self, hub, make_principal, token_for):
        principal = make_principal(tenant_id="a")
        ws = FakeWebSocket(token=token_for(principal))
        task = await self._serve(hub, ws)

        connected = ws.frames("connected")[0]["data"]
        assert connected["principalId"] == principal.id
        assert connected["companyId"] == "a"

        ws.push_text({"type": "ping"})
        await _until(lambda: ws.frames("pong"))
        ws.push_text({"type": "heartbeat"})
        await _until(lambda: ws.frames("heartbeat_ack"))
        ws.push_text({"type": "bogus"})
        await _until(lambda: ws.frames("error"))

        ws.disconnect()
        await asyncio.wait_for(task, 2)
        assert hub.snapshot()["sessions"] == 0

    async def test_missing_pong_closes_session(self, hub, make_principal, token_for):
        hub.ping_interval = 0.01
        hub.pong_timeout = 0.02
        ws = FakeWebSocket(token=token_for(make_principal()))
        task = await self._serve(hub, ws)

        await asyncio.wait_for(task, 2)

        assert ws.frames("ping")
        assert ws.close_code == CLOSE_GOING_AWAY

    async def test_revocation_closes_session_on_reverify(
        self, runtime, hub, make_principal, token_for
    ):
        """A password change elsewhere ends an open session with 4401."""
        hub.reverify_interval = 0.02
        principal = make_principal()
        ws = FakeWebSocket(token=token_for(principal))
        task = await self._serve(hub, ws)

        runtime.auth.revoke_all_for_principal(principal.id, RevocationReason.PASSWORD_CHANGE)
        await asyncio.wait_for(task, 2)

        assert ws.close_code == CLOSE_AUTH

    async def test_every_message_is_reverified(self, runtime, hub, make_principal, token_for):
        principal = make_principal()
        ws = FakeWebSocket(token=token_for(principal))
        task = await self._serve(hub, ws)

        runtime.revocations.add_principal_marker(principal.id, RevocationReason.ADMIN)
        ws.push_text({"type": "ping"})
        await asyncio.wait_for(task, 2)

        assert ws.close_code == CLOSE_AUTH
        assert not ws.frames("pong")

    async def test_rebind_to_other_principal_closes(self, hub, make_principal, token_for):
        ws = FakeWebSocket(token=token_for(make_principal()))
        task = await self._serve(hub, ws)

        ws.push_text({"type": "authenticate", "token": token_for(make_principal())})
        await asyncio.wait_for(task, 2)

        assert ws.close_code == CLOSE_AUTH

    async def test_rebind_with_fresh_token(self, hub, make_principal, token_for):
        principal = make_principal()
        ws = FakeWebSocket(token=token_for(principal))
        task = await self._serve(hub, ws)

        ws.push_text({"type": "authenticate", "token": token_for(principal)})
        await _until(lambda: ws.frames("authenticated"))

        ws.disconnect()
        await asyncio.wait_for(task, 2)

    async def test_client_published_events_stay_in_tenant(self, hub, make_principal, token_for):
        hub.coalesce_window = 0.01
        sender = FakeWebSocket(token=token_for(make_principal(tenant_id="a")))
        peer = FakeWebSocket(token=token_for(make_principal(tenant_id="a")))
        outsider = FakeWebSocket(token=token_for(make_principal(tenant_id="b")))
        tasks = [await self._serve(hub, ws) for ws in (sender, peer, outsider)]

        sender.push_text({"type": "player_updated", "data": {"id": "p1", "status": "online"}})
        await _until(lambda: peer.frames("player_updated"))

        assert peer.frames("player_updated")[0]["data"]["status"] == "online"
        assert not outsider.frames("player_updated")
        for ws in (sender, peer, outsider):
            ws.disconnect()
        await asyncio.wait_for(asyncio.gather(*tasks), 2)
