"""Wiring of store, processor and gateway.

One engine per Flask app, kept in ``app.extensions``; nothing here is a
process-wide singleton.
"""

import time

from flask import current_app

from .models import generate_room_code
from .services.commands import CommandProcessor
from .services.sessions import SessionGateway
from .store import RoomStore

EXTENSION_KEY = 'quizroom'


class QuizEngine:
    def __init__(self, config=None, clock=time.monotonic, code_factory=generate_room_code):
        cfg = config or {}
        self.store = RoomStore(
            delivery_attempts=int(cfg.get('DELIVERY_ATTEMPTS', 3)),
            clock=clock,
        )
        self.processor = CommandProcessor(
            self.store,
            code_length=int(cfg.get('ROOM_CODE_LENGTH', 6)),
            max_code_attempts=int(cfg.get('ROOM_CODE_MAX_ATTEMPTS', 20)),
            code_factory=code_factory,
            check_invariants=bool(cfg.get('CHECK_INVARIANTS', False)),
        )
        self.gateway = SessionGateway(
            self.processor,
            heartbeat_timeout=float(cfg.get('HEARTBEAT_TIMEOUT_SEC', 30)),
            reconnect_grace=float(cfg.get('RECONNECT_GRACE_SEC', 60)),
            room_idle_timeout=float(cfg.get('ROOM_IDLE_TIMEOUT_SEC', 3600)),
            clock=clock,
        )
        self.leaderboard_size = int(cfg.get('LEADERBOARD_SIZE', 5))


def init_engine(app, **kwargs) -> QuizEngine:
    engine = QuizEngine(app.config, **kwargs)
    app.extensions[EXTENSION_KEY] = engine
    return engine


def get_engine(app=None) -> QuizEngine:
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
