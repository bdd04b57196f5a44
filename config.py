import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    # Comma separated list of browser origins allowed to call the API / socket
    CORS_ORIGINS = [
        o.strip() for o in (os.environ.get('CORS_ORIGINS') or 'http://localhost:5173,http://127.0.0.1:5173').split(',')
        if o.strip()
    ]
    # Room codes
    ROOM_CODE_LENGTH = int(os.environ.get('ROOM_CODE_LENGTH', '6'))
    ROOM_CODE_MAX_ATTEMPTS = int(os.environ.get('ROOM_CODE_MAX_ATTEMPTS', '20'))
    # Session lifecycle (seconds)
    HEARTBEAT_TIMEOUT_SEC = int(os.environ.get('HEARTBEAT_TIMEOUT_SEC', '30'))
    RECONNECT_GRACE_SEC = int(os.environ.get('RECONNECT_GRACE_SEC', '60'))
    ROOM_IDLE_TIMEOUT_SEC = int(os.environ.get('ROOM_IDLE_TIMEOUT_SEC', '3600'))
    SWEEP_INTERVAL_SEC = int(os.environ.get('SWEEP_INTERVAL_SEC', '5'))
    # Per-subscriber delivery attempts before the session is marked disconnected
    DELIVERY_ATTEMPTS = int(os.environ.get('DELIVERY_ATTEMPTS', '3'))
    LEADERBOARD_SIZE = int(os.environ.get('LEADERBOARD_SIZE', '5'))
    # Optional: log a sweeper heartbeat every N ticks. 0 disables.
    SWEEPER_LOG_EVERY = int(os.environ.get('SWEEPER_LOG_EVERY', '0'))
    # Assert room invariants after every mutating command (tests turn this on)
    CHECK_INVARIANTS = os.environ.get('CHECK_INVARIANTS', '').lower() in ('1', 'true', 'yes')
