from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from playerdash.logging import get_logger
from playerdash.service.auth import AuthContext, AuthService
from playerdash.service.errors import ServiceError
from playerdash.service.roles import Capability, has_capability
from playerdash.storage.models import utcnow

logger = get_logger(__name__)

SUBPROTOCOL_PREFIX = "jwt."
CLOSE_AUTH = 4401
CLOSE_GOING_AWAY = 1001
CLOSE_NORMAL = 1000

COALESCED_PREFIX = "player_"
CLIENT_EVENT_KINDS = frozenset({"player_created", "player_updated", "player_deleted"})

_CLOSE = object()


def token_from_subprotocols(subprotocols: Iterable[str]) -> Tuple[Optional[str], Optional[str]]:
    """(access token, offered subprotocol) from a ``jwt.<token>`` offer."""
    for proto in subprotocols or ():
        if proto.startswith(SUBPROTOCOL_PREFIX) and len(proto) > len(SUBPROTOCOL_PREFIX):
            return proto[len(SUBPROTOCOL_PREFIX):], proto
    return None, None


def entity_id(data: Dict[str, Any]) -> Optional[str]:
    raw = data.get("id") or data.get("_id")
    return str(raw) if raw else None


@dataclass
class PushEvent:
    kind: str
    data: Dict[str, Any]
    tenant_id: Optional[str]


@dataclass
class _PendingBatch:
    kind: str
    data: Dict[str, Any]
    tenant_id: Optional[str]
    count: int = 1


@dataclass
class PushSession:
    """One admitted connection; frames leave through a single sender task."""

    websocket: WebSocket
    context: AuthContext
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    queue: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue)
    last_seen: float = 0.0
    missed_pongs: int = 0
    awaiting_pong: bool = False
    closed: bool = False
    close_code: Optional[int] = None

    @property
    def token(self) -> str:
        return self.context.token

    def receives(self, event: PushEvent) -> bool:
        if has_capability(self.context.role, Capability.RECEIVE_ALL_EVENTS):
            return True
        return event.tenant_id is not None and event.tenant_id == self.context.tenant_id

    def enqueue(self, frame: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.queue.put_nowait(frame)
        return True

    def close(self, code: int, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.queue.put_nowait((_CLOSE, code, reason))

    async def run_sender(self) -> None:
        while True:
            item = await self.queue.get()
            if isinstance(item, tuple) and item and item[0] is _CLOSE:
                _, code, reason = item
                try:
                    await self.websocket.close(code=code, reason=reason)
                except (RuntimeError, WebSocketDisconnect) as exc:
                    logger.debug("push_close_after_disconnect", session_id=self.id, error=str(exc))
                return
            try:
                await self.websocket.send_json(item)
            except (RuntimeError, WebSocketDisconnect) as exc:
                logger.info("push_send_failed", session_id=self.id, error=str(exc))
                self.closed = True
                return


class PushHub:
    """Authenticated fan-out of dashboard events over WebSocket.

    Admission, periodic re-verification and every incoming message run the
    full access-credential chain. Broadcasts are filtered by tenant;
    ``player_*`` events coalesce per entity for a short window before they
    are delivered.
    """

    def __init__(
        self,
        auth: AuthService,
        *,
        ping_interval: float = 30.0,
        pong_timeout: float = 5.0,
        reverify_interval: float = 60.0,
        coalesce_window: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.auth = auth
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.reverify_interval = reverify_interval
        self.coalesce_window = coalesce_window
        self._clock = clock or utcnow
        self._sessions: Dict[str, PushSession] = {}
        self._lock = asyncio.Lock()
        self._pending: Dict[Tuple[Optional[str], str], _PendingBatch] = {}
        self._pending_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task] = set()

    def _timestamp(self) -> str:
        return self._clock().isoformat()

    def _frame(self, kind: str, data: Any = None) -> Dict[str, Any]:
        return {"type": kind, "data": data, "timestamp": self._timestamp()}

    # admission ------------------------------------------------------------

    async def admit(self, websocket: WebSocket) -> Optional[PushSession]:
        token, proto = token_from_subprotocols(websocket.scope.get("subprotocols") or [])
        try:
            context = await self.auth.authenticate(token)
        except ServiceError as exc:
            logger.info("push_admission_rejected", reason=exc.message)
            await websocket.close(code=CLOSE_AUTH)
            return None
        await websocket.accept(subprotocol=proto)
        session = PushSession(websocket=websocket, context=context)
        session.last_seen = asyncio.get_running_loop().time()
        async with self._lock:
            self._sessions[session.id] = session
        logger.info(
            "push_session_opened",
            session_id=session.id,
            principal_id=context.principal_id,
            role=context.role.value,
        )
        return session

    async def _unregister(self, session: PushSession) -> None:
        async with self._lock:
            self._sessions.pop(session.id, None)
        session.closed = True
        logger.info("push_session_closed", session_id=session.id, code=session.close_code)

    async def serve(self, websocket: WebSocket) -> None:
        session = await self.admit(websocket)
        if session is None:
            return
        session.enqueue(
            self._frame(
                "connected",
                {
                    "sessionId": session.id,
                    "principalId": session.context.principal_id,
                    "role": session.context.role.value,
                    "companyId": session.context.tenant_id,
                },
            )
        )
        sender = asyncio.create_task(session.run_sender())
        receiver = asyncio.create_task(self._receive_loop(session))
        timers = [
            asyncio.create_task(self._heartbeat(session)),
            asyncio.create_task(self._reverify_loop(session)),
        ]
        tasks = [sender, receiver, *timers]
        try:
            await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if session.close_code is not None and not sender.done():
                # Server-initiated close: let the sender flush the close frame.
                await asyncio.wait({sender}, timeout=max(1.0, self.pong_timeout))
            for task in (sender, receiver):
                if task.done() and not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "push_session_task_failed",
                        session_id=session.id,
                        error=str(task.exception()),
                    )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._unregister(session)

    # per-connection timers ------------------------------------------------

    async def _heartbeat(self, session: PushSession) -> None:
        while not session.closed:
            await asyncio.sleep(self.ping_interval)
            session.awaiting_pong = True
            session.enqueue(self._frame("ping"))
            await asyncio.sleep(self.pong_timeout)
            if session.awaiting_pong:
                session.missed_pongs += 1
                logger.info("push_liveness_timeout", session_id=session.id)
                session.close(CLOSE_GOING_AWAY, "liveness timeout")
                return

    async def _verify(self, session: PushSession) -> bool:
        try:
            await self.auth.authenticate(session.token)
        except ServiceError as exc:
            logger.info(
                "push_session_revoked",
                session_id=session.id,
                principal_id=session.context.principal_id,
                reason=exc.message,
            )
            session.close(CLOSE_AUTH, "authentication expired")
            return False
        return True

    async def _reverify_loop(self, session: PushSession) -> None:
        while not session.closed:
            await asyncio.sleep(self.reverify_interval)
            if not await self._verify(session):
                return

    # client messages ------------------------------------------------------

    async def _receive_loop(self, session: PushSession) -> None:
        loop = asyncio.get_running_loop()
        while not session.closed:
            incoming = await session.websocket.receive()
            if incoming.get("type") == "websocket.disconnect":
                session.closed = True
                return
            raw = incoming.get("text")
            if raw is None:
                raw = (incoming.get("bytes") or b"").decode("utf-8", "replace")
            session.last_seen = loop.time()
            if not await self._verify(session):
                return
            try:
                message = json.loads(raw)
            except ValueError:
                session.enqueue(self._frame("error", {"message": "invalid message"}))
                continue
            if not isinstance(message, dict):
                session.enqueue(self._frame("error", {"message": "invalid message"}))
                continue
            await self._handle_message(session, message)

    async def _handle_message(self, session: PushSession, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "ping":
            session.enqueue(self._frame("pong"))
        elif kind == "pong":
            session.awaiting_pong = False
            session.missed_pongs = 0
        elif kind == "heartbeat":
            session.awaiting_pong = False
            session.enqueue(self._frame("heartbeat_ack"))
        elif kind == "authenticate":
            await self._rebind(session, message.get("token"))
        elif kind in CLIENT_EVENT_KINDS:
            data = message.get("data")
            if not isinstance(data, dict):
                session.enqueue(self._frame("error", {"message": "invalid event data"}))
                return
            if not has_capability(session.context.role, Capability.PUBLISH_EVENTS):
                session.enqueue(self._frame("error", {"message": "forbidden"}))
                return
            tenant = session.context.tenant_id
            if tenant is None and has_capability(
                session.context.role, Capability.MANAGE_ALL_TENANTS
            ):
                tenant = data.get("company_id")
            await self.publish(kind, data, tenant)
        else:
            session.enqueue(self._frame("error", {"message": "unknown message type"}))

    async def _rebind(self, session: PushSession, token: Any) -> None:
        try:
            context = await self.auth.authenticate(token if isinstance(token, str) else None)
        except ServiceError:
            session.close(CLOSE_AUTH, "authentication failed")
            return
        if context.principal_id != session.context.principal_id:
            session.close(CLOSE_AUTH, "principal changed")
            return
        session.context = context
        session.enqueue(self._frame("authenticated", {"expiresAt": context.expires_at.isoformat()}))

    # broadcast ------------------------------------------------------------

    async def publish(self, kind: str, data: Dict[str, Any], tenant_id: Optional[str]) -> None:
        event = PushEvent(kind=kind, data=dict(data), tenant_id=tenant_id)
        if kind.startswith(COALESCED_PREFIX):
            await self._coalesce(event)
        else:
            await self._fan_out(event.kind, event.data, event.tenant_id)

    async def _coalesce(self, event: PushEvent) -> None:
        ident = entity_id(event.data)
        if ident is None:
            logger.warning("push_event_dropped_missing_id", kind=event.kind)
            return
        key = (event.tenant_id, ident)
        async with self._pending_lock:
            batch = self._pending.get(key)
            if batch is not None:
                batch.data = {**batch.data, **event.data}
                batch.kind = event.kind
                batch.count += 1
                return
            self._pending[key] = _PendingBatch(event.kind, dict(event.data), event.tenant_id)
        task = asyncio.create_task(self._flush_after(key))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush_after(self, key: Tuple[Optional[str], str]) -> None:
        await asyncio.sleep(self.coalesce_window)
        await self.flush(key)

    async def flush(self, key: Optional[Tuple[Optional[str], str]] = None) -> None:
        """Deliver one pending batch now, or all of them."""
        async with self._pending_lock:
            if key is None:
                batches = list(self._pending.values())
                self._pending.clear()
            else:
                batch = self._pending.pop(key, None)
                batches = [batch] if batch else []
        for batch in batches:
            data = {
                **batch.data,
                "batchTimestamp": int(self._clock().timestamp() * 1000),
            }
            await self._fan_out(batch.kind, data, batch.tenant_id)

    async def _fan_out(self, kind: str, data: Dict[str, Any], tenant_id: Optional[str]) -> int:
        event = PushEvent(kind=kind, data=data, tenant_id=tenant_id)
        frame = self._frame(kind, data)
        delivered = 0
        async with self._lock:
            for session in self._sessions.values():
                if session.receives(event) and session.enqueue(frame):
                    delivered += 1
        return delivered

    # introspection --------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        by_role: Dict[str, int] = {}
        for session in list(self._sessions.values()):
            role = session.context.role.value
            by_role[role] = by_role.get(role, 0) + 1
        return {
            "sessions": len(self._sessions),
            "sessionsByRole": by_role,
            "pendingBatches": len(self._pending),
        }

    async def close_all(self, code: int = CLOSE_GOING_AWAY) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.close(code, "server shutdown")
        for task in list(self._flush_tasks):
            task.cancel()
