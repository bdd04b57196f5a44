"""In-memory state store.

Rooms are kept as aggregates (``RoomState``) holding their players, questions,
answers, score ledger and event bus. Each aggregate has its own re-entrant
lock; ``RoomStore.transaction`` is the only way commands touch an aggregate.
The store-wide index lock protects the lookup tables only and is never held
while waiting for a room lock.
"""

from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional
import threading
import time

from .errors import NotFound
from .events import EventBus
from .models import Answer, Player, Question, Room, ScoreEntry, normalize_code
from .services.scoring import ledger_total


class RoomState:
    def __init__(self, room: Room, bus: EventBus, now: float):
        self.room = room
        self.bus = bus
        self.lock = threading.RLock()
        self.players: Dict[str, Player] = {}
        self.questions: Dict[str, Question] = {}
        self.answers: Dict[str, Answer] = {}
        self.ledger: List[ScoreEntry] = []
        # monotonic time at which the room last had no subscriber; None while watched
        self.idle_since: Optional[float] = now
        self.removed = False

    @property
    def id(self):
        return self.room.id

    def active_question(self) -> Optional[Question]:
        for question in self.questions.values():
            if question.is_active:
                return question
        return None

    def answer_for(self, player_id, question_id) -> Optional[Answer]:
        for answer in self.answers.values():
            if answer.player_id == player_id and answer.question_id == question_id:
                return answer
        return None

    def answers_for_question(self, question_id) -> List[Answer]:
        found = [a for a in self.answers.values() if a.question_id == question_id]
        return sorted(found, key=lambda a: a.submitted_at)

    def check_invariants(self) -> None:
        active = [q.id for q in self.questions.values() if q.is_active]
        assert len(active) <= 1, f"room {self.id} has {len(active)} active questions"
        pairs = [(a.player_id, a.question_id) for a in self.answers.values()]
        assert len(pairs) == len(set(pairs)), f"room {self.id} has duplicate answers"
        for player in self.players.values():
            assert player.score >= 0, f"player {player.id} has negative score"
            total = ledger_total(self.ledger, player.id)
            assert total == player.score, f"ledger for player {player.id} sums to {total}, score is {player.score}"


class RoomStore:
    def __init__(self, delivery_attempts: int = 3, clock=time.monotonic):
        self.delivery_attempts = delivery_attempts
        self.clock = clock
        # set by the engine: called as (room_id, session_id) when a subscriber is unreachable
        self.on_delivery_failure = None
        self._index_lock = threading.Lock()
        self._rooms: Dict[str, RoomState] = {}
        self._codes: Dict[str, str] = {}
        self._player_rooms: Dict[str, str] = {}
        self._question_rooms: Dict[str, str] = {}
        self._answer_rooms: Dict[str, str] = {}

    # ---- rooms ----

    def try_add_room(self, room: Room) -> Optional[RoomState]:
        """Register a room unless its code is held by an active room."""
        room.code = normalize_code(room.code)
        bus = EventBus(room.id, self.delivery_attempts, on_delivery_failure=self._delivery_failed)
        state = RoomState(room, bus, self.clock())
        with self._index_lock:
            if room.code in self._codes:
                return None
            self._codes[room.code] = room.id
            self._rooms[room.id] = state
        return state

    def remove_room(self, state: RoomState) -> None:
        """Drop the room and everything it owns. Caller holds the room lock."""
        with self._index_lock:
            self._rooms.pop(state.id, None)
            if self._codes.get(state.room.code) == state.id:
                del self._codes[state.room.code]
            for player_id in state.players:
                self._player_rooms.pop(player_id, None)
            for question_id in state.questions:
                self._question_rooms.pop(question_id, None)
            for answer_id in state.answers:
                self._answer_rooms.pop(answer_id, None)
        state.room.is_active = False
        state.removed = True

    def get(self, room_id) -> RoomState:
        with self._index_lock:
            state = self._rooms.get(room_id)
        if state is None:
            raise NotFound('Room not found')
        return state

    def find_by_code(self, code) -> RoomState:
        with self._index_lock:
            room_id = self._codes.get(normalize_code(code))
        if room_id is None:
            raise NotFound('Room not found')
        return self.get(room_id)

    def room_ids(self) -> List[str]:
        with self._index_lock:
            return list(self._rooms)

    def __len__(self):
        with self._index_lock:
            return len(self._rooms)

    @contextmanager
    def transaction(self, room_id) -> Iterator[RoomState]:
        state = self.get(room_id)
        with state.lock:
            # the room may have ended while we waited for the lock
            if state.removed:
                raise NotFound('Room not found')
            yield state

    # ---- secondary indexes ----

    def room_for_player(self, player_id) -> str:
        with self._index_lock:
            room_id = self._player_rooms.get(player_id)
        if room_id is None:
            raise NotFound('Player not found')
        return room_id

    def room_for_question(self, question_id) -> str:
        with self._index_lock:
            room_id = self._question_rooms.get(question_id)
        if room_id is None:
            raise NotFound('Question not found')
        return room_id

    def room_for_answer(self, answer_id) -> str:
        with self._index_lock:
            room_id = self._answer_rooms.get(answer_id)
        if room_id is None:
            raise NotFound('Answer not found')
        return room_id

    def add_player(self, state: RoomState, player: Player) -> None:
        state.players[player.id] = player
        with self._index_lock:
            self._player_rooms[player.id] = state.id

    def add_question(self, state: RoomState, question: Question) -> None:
        state.questions[question.id] = question
        with self._index_lock:
            self._question_rooms[question.id] = state.id

    def add_answer(self, state: RoomState, answer: Answer) -> None:
        state.answers[answer.id] = answer
        with self._index_lock:
            self._answer_rooms[answer.id] = state.id

    def clear_answers(self, state: RoomState) -> List[Answer]:
        removed = list(state.answers.values())
        state.answers = {}
        with self._index_lock:
            for answer in removed:
                self._answer_rooms.pop(answer.id, None)
        return removed

    def _delivery_failed(self, room_id, session_id):
        if self.on_delivery_failure is not None:
            self.on_delivery_failure(room_id, session_id)
