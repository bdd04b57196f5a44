from quizroom import socketio
from quizroom.engine import get_engine


_started_apps = set()


def start_session_sweeper(app) -> bool:
    """Start the background sweeper for ``app`` once.

    - No-ops in TESTING mode unless ENABLE_SWEEPER_IN_TESTS is set
    - Every SWEEP_INTERVAL_SEC: heartbeat timeouts, reconnect-grace expiry
      and idle-room eviction (see ``SessionGateway.sweep``)
    - Optional heartbeat log every SWEEPER_LOG_EVERY ticks
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SWEEPER_IN_TESTS'):
        return False
    if id(app) in _started_apps:
        app.logger.info("[sweeper-skip] already running")
        return False
    _started_apps.add(id(app))

    interval = max(1, int(app.config.get('SWEEP_INTERVAL_SEC', 5)))
    log_every = int(app.config.get('SWEEPER_LOG_EVERY', 0))
    gateway = get_engine(app).gateway
    app.logger.info(f"[sweeper-start] interval={interval}s")

    def _worker():
        ticks = 0
        while True:
            socketio.sleep(interval)
            ticks += 1
            try:
                result = gateway.sweep()
            except Exception:
                # keep sweeping: one bad room must not stop timeouts for the others
                app.logger.exception("[sweep-error]")
                continue
            if result['timed_out'] or result['expired'] or result['evicted']:
                app.logger.info(
                    f"[sweep] timed_out={len(result['timed_out'])} expired={len(result['expired'])} "
                    f"evicted={len(result['evicted'])}"
                )
            if log_every > 0 and ticks % log_every == 0:
                app.logger.info(f"[sweeper-heartbeat] ticks={ticks} sessions={len(gateway)}")

    socketio.start_background_task(_worker)
    return True
