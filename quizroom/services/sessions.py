"""Session gateway: per-connection lifecycle on top of the command processor.

A session moves through::

    Connecting -> Active -> Disconnected -> Reconnected -> Active
                                         \\-> Expired

Only the gateway's own table is guarded by ``self._lock``; it is always
released before calling into the processor, which takes room locks.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple
import logging
import threading

from quizroom.errors import InvalidArgument, NotFound
from quizroom.events import Sink
from quizroom.models import new_id
from .commands import CommandProcessor


logger = logging.getLogger(__name__)

CONNECTING = 'connecting'
ACTIVE = 'active'
DISCONNECTED = 'disconnected'
RECONNECTED = 'reconnected'
EXPIRED = 'expired'

ROLE_HOST = 'host'
ROLE_PLAYER = 'player'


@dataclass
class Session:
    room_id: str
    role: str
    sink: Sink = field(repr=False)
    player_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    state: str = CONNECTING
    last_heartbeat: float = 0.0
    disconnected_at: Optional[float] = None

    def to_dict(self):
        return {
            'session_id': self.id,
            'room_id': self.room_id,
            'role': self.role,
            'player_id': self.player_id,
            'state': self.state,
        }


class SessionGateway:
    def __init__(self, processor: CommandProcessor, heartbeat_timeout: float = 30,
                 reconnect_grace: float = 60, room_idle_timeout: float = 3600, clock=None):
        self.processor = processor
        self.heartbeat_timeout = heartbeat_timeout
        self.reconnect_grace = reconnect_grace
        self.room_idle_timeout = room_idle_timeout
        self.clock = clock or processor.store.clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._player_sessions: Dict[str, str] = {}
        processor.add_room_closed_listener(self._room_closed)
        processor.store.on_delivery_failure = self._delivery_failed

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def get(self, session_id) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound('Session not found or expired')
            return replace(session)

    def state_of(self, session_id) -> str:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.state if session else EXPIRED

    def sessions_for_room(self, room_id) -> List[Session]:
        with self._lock:
            return [replace(s) for s in self._sessions.values() if s.room_id == room_id]

    # ---- transitions ----

    def attach(self, sink: Sink, player_id=None, room_id=None, host_token=None) -> Tuple[Session, dict]:
        """Open a session for a player (by id) or for the host (room id + token)."""
        if player_id:
            room_id = self.processor.room_of(player_id=player_id)
            role = ROLE_PLAYER
        elif room_id:
            self.processor.verify_host(room_id, host_token)
            role = ROLE_HOST
            player_id = None
        else:
            raise InvalidArgument('player_id or room_id is required')

        session = Session(room_id=room_id, role=role, sink=sink, player_id=player_id,
                          last_heartbeat=self.clock())
        superseded = None
        with self._lock:
            self._sessions[session.id] = session
            if player_id:
                superseded = self._player_sessions.get(player_id)
                self._player_sessions[player_id] = session.id
        if superseded:
            self._expire(superseded, reason='superseded')

        try:
            snapshot = self._activate(session)
        except NotFound:
            self._forget(session.id)
            raise
        logger.info(f"[session-attached] session={session.id} room={room_id} role={role} player={player_id}")
        return self.get(session.id), snapshot

    def heartbeat(self, session_id, sink: Optional[Sink] = None) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound('Session not found or expired')
            if session.state != DISCONNECTED:
                session.last_heartbeat = self.clock()
                return replace(session)
        # the client is still talking to us: treat it as a resume
        resumed, _ = self.resume(session_id, sink)
        return resumed

    def resume(self, session_id, sink: Optional[Sink] = None) -> Tuple[Session, dict]:
        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound('Session not found or expired')
            was_active = session.state in (ACTIVE, CONNECTING)
            past_grace = (
                session.state == DISCONNECTED
                and session.disconnected_at is not None
                and now - session.disconnected_at > self.reconnect_grace
            )
        if past_grace:
            self._expire(session_id, reason='grace-elapsed')
            raise NotFound('Session not found or expired')
        if was_active:
            # transport swapped under a live session
            self.processor.unsubscribe(session.room_id, session.id)
        with self._lock:
            session.state = RECONNECTED
            if sink is not None:
                session.sink = sink
        try:
            snapshot = self._activate(session)
        except NotFound:
            self._forget(session_id)
            raise
        logger.info(f"[session-resumed] session={session_id} room={session.room_id} player={session.player_id}")
        return self.get(session_id), snapshot

    def transport_lost(self, session_id, reason='transport') -> bool:
        """Active -> Disconnected. Returns False when there was nothing to do."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state in (DISCONNECTED, EXPIRED):
                return False
            session.state = DISCONNECTED
            session.disconnected_at = self.clock()
            owns_player = bool(session.player_id) and self._player_sessions.get(session.player_id) == session_id
        self.processor.unsubscribe(session.room_id, session_id)
        if owns_player:
            try:
                self.processor.set_connection_status(session.player_id, False)
            except NotFound:
                pass
        logger.info(f"[session-disconnected] session={session_id} room={session.room_id} reason={reason}")
        return True

    def detach(self, session_id) -> None:
        """Explicit leave: the session is released immediately."""
        self.transport_lost(session_id, reason='detach')
        self._expire(session_id, reason='detach')

    def sweep(self, now: Optional[float] = None) -> dict:
        """Time out silent sessions, expire stale ones and evict idle rooms."""
        now = self.clock() if now is None else now
        with self._lock:
            silent = [
                s.id for s in self._sessions.values()
                if s.state == ACTIVE and now - s.last_heartbeat > self.heartbeat_timeout
            ]
            stale = [
                s.id for s in self._sessions.values()
                if s.state == DISCONNECTED and s.disconnected_at is not None
                and now - s.disconnected_at > self.reconnect_grace
            ]
        for session_id in silent:
            logger.info(f"[session-timeout] session={session_id} timeout={self.heartbeat_timeout}s")
            self.transport_lost(session_id, reason='heartbeat-timeout')
        for session_id in stale:
            self._expire(session_id, reason='grace-elapsed')
        evicted = self.processor.evict_idle_rooms(now, self.room_idle_timeout)
        return {'timed_out': silent, 'expired': stale, 'evicted': evicted}

    # ---- internals ----

    def _activate(self, session: Session) -> dict:
        if session.player_id:
            self.processor.set_connection_status(session.player_id, True)
        snapshot, delivered = self.processor.subscribe(
            session.room_id,
            session.id,
            session.sink,
            player_id=session.player_id,
            host=session.role == ROLE_HOST,
        )
        with self._lock:
            session.state = ACTIVE
            session.last_heartbeat = self.clock()
            session.disconnected_at = None
        if not delivered:
            self.transport_lost(session.id, reason='snapshot-undelivered')
        return snapshot

    def _expire(self, session_id, reason) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return
            if session.player_id and self._player_sessions.get(session.player_id) == session_id:
                del self._player_sessions[session.player_id]
            still_subscribed = session.state in (ACTIVE, CONNECTING, RECONNECTED)
            session.state = EXPIRED
        if still_subscribed:
            self.processor.unsubscribe(session.room_id, session_id)
        logger.info(f"[session-expired] session={session_id} room={session.room_id} reason={reason}")

    def _forget(self, session_id) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                session.state = EXPIRED
            if session and session.player_id and self._player_sessions.get(session.player_id) == session_id:
                del self._player_sessions[session.player_id]

    def _delivery_failed(self, room_id, session_id) -> None:
        self.transport_lost(session_id, reason='delivery-failure')

    def _room_closed(self, room_id, detached) -> None:
        with self._lock:
            ids = [s.id for s in self._sessions.values() if s.room_id == room_id]
        for session_id in ids:
            self._forget(session_id)
        if ids:
            logger.info(f"[sessions-released] room={room_id} sessions={len(ids)}")
