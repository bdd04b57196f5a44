from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from werkzeug.security import generate_password_hash, check_password_hash
import random
import string
import uuid


CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_ROOM_NAME = 'New game'
# Host tokens are random, so a cheap hash round is enough
HOST_TOKEN_HASH_METHOD = 'pbkdf2:sha256:1000'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def generate_room_code(length=6):
    """Generate a short room code candidate. Uniqueness is checked by the store."""
    return ''.join(random.choices(CODE_ALPHABET, k=length))


def normalize_code(code) -> str:
    return (code or '').strip().upper()


def _iso(dt: Optional[datetime]):
    return dt.isoformat() if dt else None


@dataclass
class Room:
    name: str
    code: str
    id: str = field(default_factory=new_id)
    host_token_hash: str = ''
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def set_host_token(self, token):
        self.host_token_hash = generate_password_hash(token, method=HOST_TOKEN_HASH_METHOD)

    def check_host_token(self, token):
        if not token or not self.host_token_hash:
            return False
        return check_password_hash(self.host_token_hash, token)

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }


@dataclass
class Player:
    pseudo: str
    room_id: str
    id: str = field(default_factory=new_id)
    score: int = 0
    is_connected: bool = True
    joined_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'pseudo': self.pseudo,
            'room_id': self.room_id,
            'score': self.score,
            'is_connected': self.is_connected,
            'joined_at': _iso(self.joined_at),
        }


@dataclass
class Question:
    room_id: str
    text: str
    correct_answer: str
    id: str = field(default_factory=new_id)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self, include_answer=False):
        # The expected answer is for the host only
        payload = {
            'id': self.id,
            'room_id': self.room_id,
            'text': self.text,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }
        if include_answer:
            payload['correct_answer'] = self.correct_answer
        return payload


@dataclass
class Answer:
    player_id: str
    question_id: str
    text: str
    response_time_ms: int
    id: str = field(default_factory=new_id)
    is_correct: bool = False
    submitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'player_id': self.player_id,
            'question_id': self.question_id,
            'text': self.text,
            'response_time_ms': self.response_time_ms,
            'is_correct': self.is_correct,
            'submitted_at': _iso(self.submitted_at),
        }


@dataclass(frozen=True)
class ScoreEntry:
    """One applied change to a player's score."""

    player_id: str
    delta: int
    reason: str
    answer_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'delta': self.delta,
            'reason': self.reason,
            'answer_id': self.answer_id,
            'recorded_at': _iso(self.recorded_at),
        }
