"""Command processor: validates and applies host/player commands.

Every mutating command runs inside ``RoomStore.transaction`` for the room it
targets, so commands for one room are applied one at a time while different
rooms proceed independently. Events are published before the transaction is
released, which keeps commit order, sequence order and delivery order equal.
"""

from dataclasses import replace
from typing import Callable, List, Optional, Tuple
import logging
import secrets

from quizroom import events
from quizroom.errors import (
    AlreadyExists,
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    ResourceExhausted,
)
from quizroom.models import (
    DEFAULT_ROOM_NAME,
    Answer,
    Player,
    Question,
    Room,
    ScoreEntry,
    generate_room_code,
    normalize_code,
)
from quizroom.store import RoomState, RoomStore
from .scoring import GRADE_POINTS, REASON_ADJUSTED, REASON_GRADED, clamp_score, grade


logger = logging.getLogger(__name__)


def _clean_text(value, field_name) -> str:
    if value is None:
        return ''
    if not isinstance(value, str):
        raise InvalidArgument(f'{field_name} must be a string')
    return value.strip()


def _as_int(value, field_name) -> int:
    if value is None:
        raise InvalidArgument(f'{field_name} is required')
    if isinstance(value, bool):
        raise InvalidArgument(f'{field_name} must be an integer')
    try:
        as_int = int(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidArgument(f'{field_name} must be an integer') from None
    if isinstance(value, float) and value != as_int:
        raise InvalidArgument(f'{field_name} must be an integer')
    return as_int


class CommandProcessor:
    def __init__(self, store: RoomStore, code_length: int = 6, max_code_attempts: int = 20,
                 code_factory: Callable[[int], str] = generate_room_code, check_invariants: bool = False):
        self.store = store
        self.code_length = code_length
        self.max_code_attempts = max_code_attempts
        self.code_factory = code_factory
        self.check_invariants = check_invariants
        self._room_closed_listeners: List[Callable[[str, List[str]], None]] = []

    def add_room_closed_listener(self, listener: Callable[[str, List[str]], None]) -> None:
        """``listener(room_id, detached_session_ids)`` runs after a room is removed."""
        self._room_closed_listeners.append(listener)

    # ---- commands ----

    def create_room(self, name=None) -> Tuple[Room, str]:
        """Create a room with a fresh code. Returns the room and its host token."""
        name = _clean_text(name, 'name') or DEFAULT_ROOM_NAME
        token = secrets.token_urlsafe(24)

        for attempt in range(1, self.max_code_attempts + 1):
            room = Room(name=name, code=self.code_factory(self.code_length))
            room.set_host_token(token)
            state = self.store.try_add_room(room)
            if state is not None:
                break
            logger.info(f"[code-collision] code={room.code} attempt={attempt}/{self.max_code_attempts}")
        else:
            raise ResourceExhausted('Could not generate a unique room code')

        with self.store.transaction(room.id) as state:
            self._publish(state, events.ROOM_CREATED, {'room': state.room.to_dict()})
            created = replace(state.room)
        logger.info(f"[room-created] room={created.id} code={created.code} name={created.name!r}")
        return created, token

    def join_room(self, code, pseudo) -> Tuple[Player, dict]:
        pseudo = _clean_text(pseudo, 'pseudo')
        code = normalize_code(_clean_text(code, 'code'))
        if not code:
            raise InvalidArgument('Room code is required')
        if not pseudo:
            raise InvalidArgument('Pseudo is required')
        room_id = self.store.find_by_code(code).id
        with self.store.transaction(room_id) as state:
            player = Player(pseudo=pseudo, room_id=state.id)
            self.store.add_player(state, player)
            self._after_mutation(state)
            self._publish(state, events.PLAYER_JOINED, {'player': player.to_dict()})
            snapshot = self._snapshot(state, player_id=player.id)
            joined = replace(player)
        logger.info(f"[player-joined] room={room_id} player={joined.id} pseudo={joined.pseudo!r}")
        return joined, snapshot

    def send_question(self, room_id, text, correct_answer) -> Question:
        text = _clean_text(text, 'text')
        correct_answer = _clean_text(correct_answer, 'correct_answer')
        if not text:
            raise InvalidArgument('Question text must not be empty')
        if not correct_answer:
            raise InvalidArgument('Correct answer must not be empty')
        with self.store.transaction(room_id) as state:
            previous = state.active_question()
            if previous is not None:
                previous.is_active = False
            # each broadcast round starts with no answers
            cleared = self.store.clear_answers(state)
            question = Question(room_id=state.id, text=text, correct_answer=correct_answer)
            self.store.add_question(state, question)
            self._after_mutation(state)
            if previous is not None:
                self._publish(state, events.QUESTION_DEACTIVATED, {'question': previous.to_dict()})
            self._publish(state, events.QUESTION_ACTIVATED, {'question': question.to_dict()})
            sent = replace(question)
        logger.info(
            f"[question-sent] room={room_id} question={sent.id} "
            f"previous={previous.id if previous else None} cleared_answers={len(cleared)}"
        )
        return sent

    def submit_answer(self, player_id, question_id, text, response_time_ms) -> Answer:
        text = _clean_text(text, 'text')
        if not text:
            raise InvalidArgument('Answer text must not be empty')
        response_time_ms = _as_int(response_time_ms, 'response_time_ms')
        if response_time_ms < 0:
            raise InvalidArgument('response_time_ms must not be negative')

        room_id = self.store.room_for_player(player_id)
        with self.store.transaction(room_id) as state:
            player = self._player(state, player_id)
            question = state.questions.get(question_id)
            if question is None:
                # raises NotFound when the question does not exist anywhere
                self.store.room_for_question(question_id)
                raise FailedPrecondition('Question belongs to another room')
            if not question.is_active:
                raise FailedPrecondition('Question is no longer active')
            if state.answer_for(player.id, question.id) is not None:
                raise AlreadyExists('Player already answered this question')
            answer = Answer(
                player_id=player.id,
                question_id=question.id,
                text=text,
                response_time_ms=response_time_ms,
            )
            self.store.add_answer(state, answer)
            self._after_mutation(state)
            self._publish(state, events.ANSWER_SUBMITTED, {
                'answer': answer.to_dict(),
                'player': {'id': player.id, 'pseudo': player.pseudo},
            })
            submitted = replace(answer)
        return submitted

    def mark_correct(self, answer_id) -> Tuple[Answer, Player]:
        room_id = self.store.room_for_answer(answer_id)
        with self.store.transaction(room_id) as state:
            answer = state.answers.get(answer_id)
            if answer is None:
                raise NotFound('Answer not found')
            player = self._player(state, answer.player_id)
            if answer.is_correct:
                # already graded: never award twice
                return replace(answer), replace(player)
            answer.is_correct = grade(state.questions.get(answer.question_id), True)
            player.score, applied = clamp_score(player.score, GRADE_POINTS)
            state.ledger.append(ScoreEntry(player_id=player.id, delta=applied, reason=REASON_GRADED, answer_id=answer.id))
            self._after_mutation(state)
            self._publish(state, events.ANSWER_GRADED, {
                'answer': answer.to_dict(),
                'player': player.to_dict(),
            })
            graded, scored = replace(answer), replace(player)
        logger.info(f"[answer-graded] room={room_id} answer={graded.id} player={scored.id} score={scored.score}")
        return graded, scored

    def adjust_score(self, player_id, delta) -> Player:
        delta = _as_int(delta, 'delta')
        room_id = self.store.room_for_player(player_id)
        with self.store.transaction(room_id) as state:
            player = self._player(state, player_id)
            player.score, applied = clamp_score(player.score, delta)
            if applied:
                state.ledger.append(ScoreEntry(player_id=player.id, delta=applied, reason=REASON_ADJUSTED))
            self._after_mutation(state)
            self._publish(state, events.SCORE_CHANGED, {
                'player': player.to_dict(),
                'delta': applied,
                'requested_delta': delta,
            })
            adjusted = replace(player)
        logger.info(f"[score-adjusted] room={room_id} player={adjusted.id} requested={delta} applied={applied}")
        return adjusted

    def end_game(self, room_id, reason='ended') -> None:
        with self.store.transaction(room_id) as state:
            detached = self._end_locked(state, reason)
        self._notify_room_closed(room_id, detached)

    def set_connection_status(self, player_id, connected) -> Player:
        connected = bool(connected)
        room_id = self.store.room_for_player(player_id)
        with self.store.transaction(room_id) as state:
            player = self._player(state, player_id)
            if player.is_connected != connected:
                player.is_connected = connected
                self._publish(state, events.PLAYER_CONNECTION_CHANGED, {'player': player.to_dict()})
            current = replace(player)
        return current

    def evict_idle_rooms(self, now: float, idle_timeout: float) -> List[str]:
        """End every room that has had no subscriber for ``idle_timeout`` seconds."""
        evicted = []
        for room_id in self.store.room_ids():
            try:
                with self.store.transaction(room_id) as state:
                    if len(state.bus) or state.idle_since is None:
                        continue
                    if now - state.idle_since < idle_timeout:
                        continue
                    detached = self._end_locked(state, 'idle')
            except NotFound:
                continue
            self._notify_room_closed(room_id, detached)
            evicted.append(room_id)
        return evicted

    # ---- subscriptions (used by the session gateway) ----

    def subscribe(self, room_id, session_id, sink, player_id=None, host=False) -> Tuple[dict, bool]:
        """Attach a session to the room's bus and hand it a snapshot first.

        Returns the snapshot and whether it reached the session. A session
        whose snapshot could not be delivered is left unsubscribed.
        """
        with self.store.transaction(room_id) as state:
            if player_id is not None:
                self._player(state, player_id)
            state.bus.subscribe(session_id, sink)
            state.idle_since = None
            snapshot = self._snapshot(state, player_id=player_id, host=host)
            delivered = state.bus.deliver(session_id, events.SNAPSHOT_MESSAGE, snapshot)
            if not delivered:
                self._unsubscribe_locked(state, session_id)
        return snapshot, delivered

    def unsubscribe(self, room_id, session_id) -> bool:
        try:
            with self.store.transaction(room_id) as state:
                return self._unsubscribe_locked(state, session_id)
        except NotFound:
            return False

    # ---- reads ----

    def room_snapshot(self, room_id, player_id=None, host=False) -> dict:
        with self.store.transaction(room_id) as state:
            if player_id is not None:
                self._player(state, player_id)
            return self._snapshot(state, player_id=player_id, host=host)

    def leaderboard(self, room_id, limit: Optional[int] = None) -> List[dict]:
        if limit is not None:
            limit = _as_int(limit, 'limit')
            if limit < 1:
                raise InvalidArgument('limit must be at least 1')
        with self.store.transaction(room_id) as state:
            ranked = self._ranked_players(state)
        if limit is not None:
            ranked = ranked[:limit]
        return ranked

    def answers_for_active(self, room_id) -> List[dict]:
        with self.store.transaction(room_id) as state:
            return self._active_answers(state)

    def score_ledger(self, room_id, player_id=None) -> List[dict]:
        with self.store.transaction(room_id) as state:
            return [e.to_dict() for e in state.ledger if player_id is None or e.player_id == player_id]

    def verify_host(self, room_id, token) -> None:
        state = self.store.get(room_id)
        if not state.room.check_host_token(token):
            raise PermissionDenied('Invalid host token')

    def room_of(self, player_id=None, question_id=None, answer_id=None) -> str:
        if player_id is not None:
            return self.store.room_for_player(player_id)
        if question_id is not None:
            return self.store.room_for_question(question_id)
        if answer_id is not None:
            return self.store.room_for_answer(answer_id)
        raise InvalidArgument('Nothing to resolve a room from')

    # ---- helpers ----

    def _player(self, state: RoomState, player_id) -> Player:
        player = state.players.get(player_id)
        if player is None:
            raise NotFound('Player not found')
        return player

    def _publish(self, state: RoomState, kind, data):
        event = state.bus.publish(kind, data)
        logger.debug(f"[event] room={state.id} seq={event.seq} kind={kind} subscribers={len(state.bus)}")
        return event

    def _after_mutation(self, state: RoomState) -> None:
        if self.check_invariants:
            state.check_invariants()

    def _end_locked(self, state: RoomState, reason) -> List[str]:
        self.store.remove_room(state)
        self._publish(state, events.ROOM_ENDED, {'room': state.room.to_dict(), 'reason': reason})
        detached = state.bus.close()
        logger.info(
            f"[room-ended] room={state.id} code={state.room.code} reason={reason} "
            f"players={len(state.players)} detached_sessions={len(detached)}"
        )
        return detached

    def _notify_room_closed(self, room_id, detached) -> None:
        for listener in self._room_closed_listeners:
            listener(room_id, detached)

    def _unsubscribe_locked(self, state: RoomState, session_id) -> bool:
        removed = state.bus.unsubscribe(session_id)
        if not len(state.bus) and state.idle_since is None:
            state.idle_since = self.store.clock()
        return removed

    def _ranked_players(self, state: RoomState) -> List[dict]:
        ranked = sorted(state.players.values(), key=lambda p: (-p.score, p.joined_at))
        return [p.to_dict() for p in ranked]

    def _active_answers(self, state: RoomState) -> List[dict]:
        question = state.active_question()
        if question is None:
            return []
        rows = []
        for answer in state.answers_for_question(question.id):
            row = answer.to_dict()
            player = state.players.get(answer.player_id)
            row['player'] = {'id': player.id, 'pseudo': player.pseudo} if player else None
            rows.append(row)
        return rows

    def _snapshot(self, state: RoomState, player_id=None, host=False) -> dict:
        question = state.active_question()
        snapshot = {
            'room': state.room.to_dict(),
            'players': self._ranked_players(state),
            'question': question.to_dict(include_answer=host) if question else None,
            'seq': state.bus.seq,
        }
        if player_id is not None:
            own = state.answer_for(player_id, question.id) if question else None
            snapshot['player_id'] = player_id
            snapshot['my_answer'] = own.to_dict() if own else None
        if host:
            snapshot['answers'] = self._active_answers(state)
        return snapshot
