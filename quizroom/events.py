"""Per-room event bus.

Each room owns one ``EventBus``. All calls happen while the room's lock is
held, so the order in which commands commit is the order in which events get
their sequence numbers and the order in which every subscriber receives them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from .models import utcnow


logger = logging.getLogger(__name__)

ROOM_CREATED = 'RoomCreated'
PLAYER_JOINED = 'PlayerJoined'
QUESTION_ACTIVATED = 'QuestionActivated'
QUESTION_DEACTIVATED = 'QuestionDeactivated'
ANSWER_SUBMITTED = 'AnswerSubmitted'
ANSWER_GRADED = 'AnswerGraded'
SCORE_CHANGED = 'ScoreChanged'
PLAYER_CONNECTION_CHANGED = 'PlayerConnectionChanged'
ROOM_ENDED = 'RoomEnded'

EVENT_KINDS = (
    ROOM_CREATED,
    PLAYER_JOINED,
    QUESTION_ACTIVATED,
    QUESTION_DEACTIVATED,
    ANSWER_SUBMITTED,
    ANSWER_GRADED,
    SCORE_CHANGED,
    PLAYER_CONNECTION_CHANGED,
    ROOM_ENDED,
)

# Socket.IO event names used for pushes
EVENT_MESSAGE = 'event'
SNAPSHOT_MESSAGE = 'snapshot'

# sink(message_name, payload) pushes one message to one session's transport
Sink = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class DomainEvent:
    kind: str
    room_id: str
    seq: int
    data: Dict[str, Any]
    emitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            'kind': self.kind,
            'room_id': self.room_id,
            'seq': self.seq,
            'data': self.data,
            'emitted_at': self.emitted_at.isoformat(),
        }


class EventBus:
    def __init__(self, room_id: str, delivery_attempts: int = 3,
                 on_delivery_failure: Optional[Callable[[str, str], None]] = None):
        self.room_id = room_id
        self.delivery_attempts = max(1, int(delivery_attempts))
        self.on_delivery_failure = on_delivery_failure
        self._subscribers: Dict[str, Sink] = {}
        self._seq = 0
        self._closed = False

    @property
    def seq(self) -> int:
        """Sequence number of the last published event (0 before any)."""
        return self._seq

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self):
        return len(self._subscribers)

    def __contains__(self, session_id):
        return session_id in self._subscribers

    def subscriber_ids(self) -> List[str]:
        return list(self._subscribers)

    def subscribe(self, session_id: str, sink: Sink) -> None:
        if self._closed:
            raise RuntimeError(f"bus for room {self.room_id} is closed")
        # dict keeps insertion order, which is the fan-out order
        self._subscribers.pop(session_id, None)
        self._subscribers[session_id] = sink

    def unsubscribe(self, session_id: str) -> bool:
        return self._subscribers.pop(session_id, None) is not None

    def deliver(self, session_id: str, message: str, payload: Dict[str, Any]) -> bool:
        """Push one message to one subscriber, retrying transient failures."""
        sink = self._subscribers.get(session_id)
        if sink is None:
            return False
        for attempt in range(1, self.delivery_attempts + 1):
            try:
                sink(message, payload)
                return True
            except Exception as exc:
                logger.warning(
                    f"[delivery-retry] room={self.room_id} session={session_id} "
                    f"message={message} attempt={attempt}/{self.delivery_attempts} error={exc!r}"
                )
        return False

    def publish(self, kind: str, data: Dict[str, Any]) -> DomainEvent:
        """Sequence and fan out an event.

        Subscribers that cannot be reached after all attempts are detached and
        reported through ``on_delivery_failure`` once this event has reached
        everyone else, so follow-up events keep their place in the order.
        """
        if self._closed:
            raise RuntimeError(f"bus for room {self.room_id} is closed")
        self._seq += 1
        event = DomainEvent(kind=kind, room_id=self.room_id, seq=self._seq, data=data)
        envelope = event.to_dict()
        failed = []
        for session_id in list(self._subscribers):
            if not self.deliver(session_id, EVENT_MESSAGE, envelope):
                failed.append(session_id)
        for session_id in failed:
            self.unsubscribe(session_id)
            logger.warning(f"[delivery-failed] room={self.room_id} session={session_id} seq={event.seq}")
        if self.on_delivery_failure is not None:
            for session_id in failed:
                self.on_delivery_failure(self.room_id, session_id)
        return event

    def close(self) -> List[str]:
        """Drop every subscriber; returns the detached session ids."""
        detached = list(self._subscribers)
        self._subscribers.clear()
        self._closed = True
        return detached
