import pytest

from quizroom.engine import QuizEngine
from quizroom.errors import (
    AlreadyExists,
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    ResourceExhausted,
)
from quizroom.models import CODE_ALPHABET, DEFAULT_ROOM_NAME


def _active_questions(engine, room_id):
    state = engine.store.get(room_id)
    return [q for q in state.questions.values() if q.is_active]


def test_create_room_defaults(processor):
    room, token = processor.create_room('  ')
    assert room.name == DEFAULT_ROOM_NAME
    assert len(room.code) == 6
    assert all(c in CODE_ALPHABET for c in room.code)
    assert room.is_active
    assert token
    assert room.check_host_token(token)
    assert not room.check_host_token('not-the-token')


def test_create_room_gives_up_after_repeated_collisions(clock):
    engine = QuizEngine({'ROOM_CODE_MAX_ATTEMPTS': 3}, clock=clock, code_factory=lambda n: 'SAME01')
    engine.processor.create_room('first')
    with pytest.raises(ResourceExhausted):
        engine.processor.create_room('second')
    assert len(engine.store) == 1


def test_code_is_reusable_once_room_ended(clock):
    engine = QuizEngine({}, clock=clock, code_factory=lambda n: 'SAME01')
    first, _ = engine.processor.create_room('first')
    engine.processor.end_game(first.id)
    second, _ = engine.processor.create_room('second')
    assert second.code == 'SAME01'
    assert second.id != first.id


def test_join_is_case_insensitive_and_requires_pseudo(processor, room):
    created, _ = room
    player, snapshot = processor.join_room(f' {created.code.lower()} ', 'Alice')
    assert player.room_id == created.id
    assert player.score == 0
    assert snapshot['player_id'] == player.id
    assert snapshot['question'] is None
    assert [p['pseudo'] for p in snapshot['players']] == ['Alice']

    with pytest.raises(InvalidArgument):
        processor.join_room(created.code, '   ')
    with pytest.raises(InvalidArgument):
        processor.join_room('', 'Bob')
    with pytest.raises(NotFound):
        processor.join_room('ZZZZZZ', 'Bob')


def test_send_question_keeps_one_active(engine, processor, room):
    created, _ = room
    q1 = processor.send_question(created.id, 'Capital of France?', 'Paris')
    assert [q.id for q in _active_questions(engine, created.id)] == [q1.id]
    q2 = processor.send_question(created.id, 'Capital of Italy?', 'Rome')
    assert [q.id for q in _active_questions(engine, created.id)] == [q2.id]
    q3 = processor.send_question(created.id, 'Capital of Spain?', 'Madrid')
    assert [q.id for q in _active_questions(engine, created.id)] == [q3.id]
    assert len(engine.store.get(created.id).questions) == 3


def test_send_question_validates_input(processor, room):
    created, _ = room
    with pytest.raises(InvalidArgument):
        processor.send_question(created.id, '', 'Paris')
    with pytest.raises(InvalidArgument):
        processor.send_question(created.id, 'Capital of France?', '  ')
    with pytest.raises(NotFound):
        processor.send_question('missing-room', 'Q', 'A')


def test_double_submit_is_rejected(engine, processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')

    first = processor.submit_answer(player.id, question.id, 'Paris', 1200)
    assert first.response_time_ms == 1200
    assert first.is_correct is False
    with pytest.raises(AlreadyExists):
        processor.submit_answer(player.id, question.id, 'Lyon', 900)

    stored = engine.store.get(created.id).answers_for_question(question.id)
    assert [a.id for a in stored] == [first.id]
    assert stored[0].text == 'Paris'


def test_submit_answer_errors(processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')
    old = processor.send_question(created.id, 'Q1', 'A1')
    current = processor.send_question(created.id, 'Q2', 'A2')

    with pytest.raises(FailedPrecondition):
        processor.submit_answer(player.id, old.id, 'late', 10)
    with pytest.raises(NotFound):
        processor.submit_answer(player.id, 'no-such-question', 'x', 10)
    with pytest.raises(NotFound):
        processor.submit_answer('no-such-player', current.id, 'x', 10)
    with pytest.raises(InvalidArgument):
        processor.submit_answer(player.id, current.id, '   ', 10)
    with pytest.raises(InvalidArgument):
        processor.submit_answer(player.id, current.id, 'x', -1)
    with pytest.raises(InvalidArgument):
        processor.submit_answer(player.id, current.id, 'x', 'fast')

    other, _ = processor.create_room('Other')
    foreign = processor.send_question(other.id, 'Elsewhere?', 'Yes')
    with pytest.raises(FailedPrecondition):
        processor.submit_answer(player.id, foreign.id, 'x', 10)


def test_mark_correct_twice_awards_once(engine, processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    answer = processor.submit_answer(player.id, question.id, 'Paris', 800)

    graded, scored = processor.mark_correct(answer.id)
    assert graded.is_correct is True
    assert scored.score == 1
    again, rescored = processor.mark_correct(answer.id)
    assert again.is_correct is True
    assert rescored.score == 1

    ledger = processor.score_ledger(created.id, player_id=player.id)
    assert [(e['delta'], e['reason'], e['answer_id']) for e in ledger] == [(1, 'graded', answer.id)]

    with pytest.raises(NotFound):
        processor.mark_correct('no-such-answer')


def test_adjust_score_never_goes_negative(processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')

    assert processor.adjust_score(player.id, 3).score == 3
    assert processor.adjust_score(player.id, -10).score == 0
    assert processor.adjust_score(player.id, -1).score == 0
    assert processor.adjust_score(player.id, 2).score == 2

    deltas = [e['delta'] for e in processor.score_ledger(created.id)]
    # the clamped -10 is recorded as the -3 actually applied; the -1 at zero is not recorded
    assert deltas == [3, -3, 2]
    assert sum(deltas) == 2

    with pytest.raises(InvalidArgument):
        processor.adjust_score(player.id, 'lots')
    with pytest.raises(InvalidArgument):
        processor.adjust_score(player.id, 1.5)
    with pytest.raises(InvalidArgument):
        processor.adjust_score(player.id, True)
    with pytest.raises(NotFound):
        processor.adjust_score('no-such-player', 1)


def test_superseding_question_leaves_grades_alone(engine, processor, room):
    created, _ = room
    alice, _ = processor.join_room(created.code, 'Alice')
    bob, _ = processor.join_room(created.code, 'Bob')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    right = processor.submit_answer(alice.id, question.id, 'Paris', 500)
    wrong = processor.submit_answer(bob.id, question.id, 'Lyon', 700)
    processor.mark_correct(right.id)

    stored = dict(engine.store.get(created.id).answers)
    processor.send_question(created.id, 'Capital of Italy?', 'Rome')

    assert stored[right.id].is_correct is True
    assert stored[wrong.id].is_correct is False
    # the new round starts empty and the old answers can no longer be graded
    assert processor.answers_for_active(created.id) == []
    with pytest.raises(NotFound):
        processor.mark_correct(wrong.id)
    assert processor.leaderboard(created.id)[0]['id'] == alice.id


def test_leaderboard_orders_by_score_then_join_time(processor, room):
    created, _ = room
    players = [processor.join_room(created.code, name)[0] for name in ('Ann', 'Ben', 'Cid', 'Dee', 'Eve', 'Fay')]
    processor.adjust_score(players[2].id, 5)
    processor.adjust_score(players[4].id, 5)
    processor.adjust_score(players[1].id, 1)

    board = processor.leaderboard(created.id, limit=5)
    assert [p['pseudo'] for p in board] == ['Cid', 'Eve', 'Ben', 'Ann', 'Dee']
    assert len(processor.leaderboard(created.id)) == 6


def test_answers_for_active_lists_submissions_in_order(processor, room):
    created, _ = room
    alice, _ = processor.join_room(created.code, 'Alice')
    bob, _ = processor.join_room(created.code, 'Bob')
    assert processor.answers_for_active(created.id) == []

    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    processor.submit_answer(bob.id, question.id, 'Paris', 300)
    processor.submit_answer(alice.id, question.id, 'Nice', 900)

    rows = processor.answers_for_active(created.id)
    assert [r['player']['pseudo'] for r in rows] == ['Bob', 'Alice']
    assert [r['text'] for r in rows] == ['Paris', 'Nice']


def test_host_snapshot_reveals_answer_player_snapshot_does_not(processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    processor.submit_answer(player.id, question.id, 'Paris', 400)

    host_view = processor.room_snapshot(created.id, host=True)
    assert host_view['question']['correct_answer'] == 'Paris'
    assert len(host_view['answers']) == 1

    player_view = processor.room_snapshot(created.id, player_id=player.id)
    assert 'correct_answer' not in player_view['question']
    assert 'answers' not in player_view
    assert player_view['my_answer']['text'] == 'Paris'


def test_verify_host(processor, room):
    created, token = room
    processor.verify_host(created.id, token)
    with pytest.raises(PermissionDenied):
        processor.verify_host(created.id, 'wrong')
    with pytest.raises(PermissionDenied):
        processor.verify_host(created.id, None)
    with pytest.raises(NotFound):
        processor.verify_host('missing-room', token)


def test_full_game_then_code_is_gone(processor):
    created, _ = processor.create_room('Scenario')
    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    answer = processor.submit_answer(player.id, question.id, 'Paris', 1500)
    _, scored = processor.mark_correct(answer.id)
    assert scored.score == 1

    processor.end_game(created.id)

    with pytest.raises(NotFound):
        processor.join_room(created.code, 'Bob')
    with pytest.raises(NotFound):
        processor.room_snapshot(created.id)
    with pytest.raises(NotFound):
        processor.adjust_score(player.id, 1)
    with pytest.raises(NotFound):
        processor.end_game(created.id)


def test_infinite_numbers_are_invalid(processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')

    with pytest.raises(InvalidArgument):
        processor.adjust_score(player.id, float('inf'))
    with pytest.raises(InvalidArgument):
        processor.adjust_score(player.id, float('-inf'))
    with pytest.raises(InvalidArgument):
        processor.adjust_score(player.id, float('nan'))
    with pytest.raises(InvalidArgument):
        processor.submit_answer(player.id, question.id, 'Paris', float('inf'))

    assert processor.leaderboard(created.id)[0]['score'] == 0
    assert processor.answers_for_active(created.id) == []


def test_response_time_is_required(processor, room):
    created, _ = room
    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    with pytest.raises(InvalidArgument, match='response_time_ms is required'):
        processor.submit_answer(player.id, question.id, 'Paris', None)


def test_non_string_text_is_invalid(processor, room):
    created, _ = room
    with pytest.raises(InvalidArgument):
        processor.create_room(['Quiz'])
    with pytest.raises(InvalidArgument):
        processor.join_room(created.code, {'a': 1})
    with pytest.raises(InvalidArgument):
        processor.join_room(['CODE'], 'Alice')
    with pytest.raises(InvalidArgument):
        processor.send_question(created.id, 42, 'Paris')
    with pytest.raises(InvalidArgument):
        processor.send_question(created.id, 'Capital of France?', ['Paris'])

    player, _ = processor.join_room(created.code, 'Alice')
    question = processor.send_question(created.id, 'Capital of France?', 'Paris')
    with pytest.raises(InvalidArgument):
        processor.submit_answer(player.id, question.id, {'text': 'Paris'}, 100)
    assert processor.answers_for_active(created.id) == []


def test_leaderboard_limit_must_be_positive(processor, room):
    created, _ = room
    for name in ('Ann', 'Ben', 'Cid'):
        processor.join_room(created.code, name)
    assert len(processor.leaderboard(created.id, limit=2)) == 2
    assert len(processor.leaderboard(created.id, limit='3')) == 3
    for bad in (0, -1, 'many'):
        with pytest.raises(InvalidArgument):
            processor.leaderboard(created.id, limit=bad)
