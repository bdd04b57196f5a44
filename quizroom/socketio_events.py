from flask import current_app, request
from flask_socketio import emit
from typing import Any, Dict

from quizroom import socketio
from quizroom.engine import get_engine
from quizroom.errors import CommandError, InvalidArgument, NotFound

NAMESPACE = '/ws'


def handle_connect():
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(reason=None):
    # The transport is gone; the session stays resumable for the grace period
    session_id = _sid_sessions().pop(_get_sid(), None)
    if not session_id:
        return
    get_engine().gateway.transport_lost(session_id, reason=f'socket-{reason or "disconnect"}')


def handle_attach(data):
    """Attach this socket to a room as a player or as the host.

    ``{"player_id": ...}`` or ``{"room_id": ..., "host_token": ...}``; an
    optional ``session_id`` resumes a disconnected session instead.
    """
    data = data or {}
    if not isinstance(data, dict):
        return _reject(InvalidArgument('attach expects an object'))
    gateway = get_engine().gateway
    sid = _get_sid()
    sink = _sink_for(sid)
    try:
        session = None
        if data.get('session_id'):
            try:
                session, _ = gateway.resume(data['session_id'], sink)
            except NotFound:
                if not (data.get('player_id') or data.get('room_id')):
                    raise
        if session is None:
            session, _ = gateway.attach(
                sink,
                player_id=data.get('player_id'),
                room_id=data.get('room_id'),
                host_token=data.get('host_token'),
            )
    except CommandError as exc:
        return _reject(exc)

    previous = _sid_sessions().get(sid)
    if previous and previous != session.id:
        gateway.detach(previous)
    _sid_sessions()[sid] = session.id
    payload = {'ok': True, 'session': session.to_dict()}
    emit('attached', payload)
    return payload


def handle_heartbeat(data=None):
    data = data or {}
    sid = _get_sid()
    session_id = (data.get('session_id') if isinstance(data, dict) else None) or _sid_sessions().get(sid)
    if not session_id:
        return _reject(NotFound('Session not found or expired'))
    try:
        session = get_engine().gateway.heartbeat(session_id, _sink_for(sid))
    except CommandError as exc:
        return _reject(exc)
    _sid_sessions()[sid] = session.id
    payload = {'ok': True, 'session': session.to_dict()}
    emit('pong', payload)
    return payload


def handle_detach(data=None):
    session_id = _sid_sessions().pop(_get_sid(), None)
    if not session_id:
        return _reject(NotFound('Session not found or expired'))
    get_engine().gateway.detach(session_id)
    emit('detached', {'session_id': session_id})
    return {'ok': True}


def handle_command(data):
    """Run one command; the outcome goes back to the caller only."""
    data = data or {}
    if not isinstance(data, dict):
        return _reject(InvalidArgument('command expects an object'))
    name = data.get('name')
    args = data.get('args') or {}
    handler = _COMMANDS.get(name)
    try:
        if handler is None:
            raise InvalidArgument(f'Unknown command: {name!r}')
        if not isinstance(args, dict):
            raise InvalidArgument('args must be an object')
        result = handler(args, data.get('host_token'))
    except CommandError as exc:
        return _reject(exc)
    return {'ok': True, 'data': result}


# ---- command table ----

def _cmd_create_room(args, token):
    room, host_token = get_engine().processor.create_room(args.get('name'))
    return {'room': room.to_dict(), 'host_token': host_token}


def _cmd_join_room(args, token):
    player, snapshot = get_engine().processor.join_room(args.get('code'), args.get('pseudo'))
    return {'player': player.to_dict(), 'snapshot': snapshot}


def _cmd_send_question(args, token):
    processor = get_engine().processor
    processor.verify_host(args.get('room_id'), token)
    question = processor.send_question(args.get('room_id'), args.get('text'), args.get('correct_answer'))
    return {'question': question.to_dict(include_answer=True)}


def _cmd_submit_answer(args, token):
    answer = get_engine().processor.submit_answer(
        args.get('player_id'),
        args.get('question_id'),
        args.get('text'),
        args.get('response_time_ms'),
    )
    return {'answer': answer.to_dict()}


def _cmd_mark_correct(args, token):
    processor = get_engine().processor
    processor.verify_host(processor.room_of(answer_id=args.get('answer_id')), token)
    answer, player = processor.mark_correct(args.get('answer_id'))
    return {'answer': answer.to_dict(), 'player': player.to_dict()}


def _cmd_adjust_score(args, token):
    processor = get_engine().processor
    processor.verify_host(processor.room_of(player_id=args.get('player_id')), token)
    player = processor.adjust_score(args.get('player_id'), args.get('delta'))
    return {'player': player.to_dict()}


def _cmd_end_game(args, token):
    processor = get_engine().processor
    processor.verify_host(args.get('room_id'), token)
    processor.end_game(args.get('room_id'))
    return {}


_COMMANDS = {
    'create_room': _cmd_create_room,
    'join_room': _cmd_join_room,
    'send_question': _cmd_send_question,
    'submit_answer': _cmd_submit_answer,
    'mark_correct': _cmd_mark_correct,
    'adjust_score': _cmd_adjust_score,
    'end_game': _cmd_end_game,
}


# ---- helpers ----

def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _sid_sessions() -> Dict[str, str]:
    """socket id -> gateway session id, kept per app."""
    return current_app.extensions.setdefault('quizroom.sockets', {})


def _sink_for(sid: str):
    def sink(message: str, payload: Dict[str, Any]) -> None:
        # Use socketio.emit since this runs from whichever request committed the event
        socketio.emit(message, payload, to=sid, namespace=NAMESPACE)
    return sink


def _reject(exc: CommandError) -> Dict[str, Any]:
    payload = {'ok': False, **exc.to_dict()}
    emit('error', payload)
    return payload


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on namespace '/ws'."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('attach', handle_attach, namespace=NAMESPACE)
    socketio.on_event('heartbeat', handle_heartbeat, namespace=NAMESPACE)
    socketio.on_event('detach', handle_detach, namespace=NAMESPACE)
    socketio.on_event('command', handle_command, namespace=NAMESPACE)
