from flask import Blueprint, jsonify, request

from quizroom.engine import get_engine
from quizroom.errors import InvalidArgument


rooms = Blueprint('rooms', __name__)


def _host_token():
    data = request.get_json(silent=True) or {}
    return request.headers.get('X-Host-Token') or data.get('host_token')


def _require_host(room_id):
    get_engine().processor.verify_host(room_id, _host_token())


def _is_host(room_id):
    token = _host_token()
    if not token:
        return False
    return get_engine().store.get(room_id).room.check_host_token(token)


@rooms.route('/create', methods=['POST'])
def create_room():
    data = request.get_json(silent=True) or {}
    room, token = get_engine().processor.create_room(data.get('name'))
    return jsonify({
        'message': 'New room created!',
        'room': room.to_dict(),
        'host_token': token,
    }), 201


@rooms.route('/join', methods=['POST'])
def join_room():
    data = request.get_json(silent=True) or {}
    player, snapshot = get_engine().processor.join_room(data.get('code'), data.get('pseudo'))
    return jsonify({'player': player.to_dict(), 'snapshot': snapshot}), 201


@rooms.route('/<string:room_id>', methods=['GET'])
def get_room_state(room_id):
    """Full room snapshot: host view with a valid token, player view with ?player_id=."""
    processor = get_engine().processor
    if _is_host(room_id):
        return jsonify(processor.room_snapshot(room_id, host=True))
    return jsonify(processor.room_snapshot(room_id, player_id=request.args.get('player_id')))


@rooms.route('/<string:room_id>', methods=['DELETE'])
def end_game(room_id):
    _require_host(room_id)
    get_engine().processor.end_game(room_id)
    return jsonify({'message': 'Game ended'})


@rooms.route('/<string:room_id>/questions', methods=['POST'])
def send_question(room_id):
    data = request.get_json(silent=True) or {}
    _require_host(room_id)
    question = get_engine().processor.send_question(room_id, data.get('text'), data.get('correct_answer'))
    return jsonify({'question': question.to_dict(include_answer=True)}), 201


@rooms.route('/questions/<string:question_id>/answers', methods=['POST'])
def submit_answer(question_id):
    data = request.get_json(silent=True) or {}
    player_id = data.get('player_id')
    if not player_id:
        raise InvalidArgument('player_id is required')
    answer = get_engine().processor.submit_answer(
        player_id,
        question_id,
        data.get('text'),
        data.get('response_time_ms'),
    )
    return jsonify({'answer': answer.to_dict()}), 201


@rooms.route('/answers/<string:answer_id>/correct', methods=['POST'])
def mark_correct(answer_id):
    processor = get_engine().processor
    _require_host(processor.room_of(answer_id=answer_id))
    answer, player = processor.mark_correct(answer_id)
    return jsonify({'answer': answer.to_dict(), 'player': player.to_dict()})


@rooms.route('/players/<string:player_id>/score', methods=['POST'])
def adjust_score(player_id):
    data = request.get_json(silent=True) or {}
    if 'delta' not in data:
        raise InvalidArgument('delta is required')
    processor = get_engine().processor
    _require_host(processor.room_of(player_id=player_id))
    player = processor.adjust_score(player_id, data.get('delta'))
    return jsonify({'player': player.to_dict()})


@rooms.route('/<string:room_id>/leaderboard', methods=['GET'])
def leaderboard(room_id):
    engine = get_engine()
    limit = request.args.get('limit', engine.leaderboard_size)
    return jsonify({'players': engine.processor.leaderboard(room_id, limit=limit)})


@rooms.route('/<string:room_id>/answers', methods=['GET'])
def current_answers(room_id):
    _require_host(room_id)
    return jsonify({'answers': get_engine().processor.answers_for_active(room_id)})


@rooms.route('/<string:room_id>/ledger', methods=['GET'])
def score_ledger(room_id):
    _require_host(room_id)
    entries = get_engine().processor.score_ledger(room_id, player_id=request.args.get('player_id'))
    return jsonify({'entries': entries})
