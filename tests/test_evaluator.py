import threading

import pytest
from sqlmodel import SQLModel, create_engine, Session

from melody_app import crud, models
from melody_app.errors import ConflictError, NotFoundError, ValidationError
from melody_app.evaluator import AnswerEvaluator, parse_answer, score_for
from melody_app.sessions import SessionManager
from melody_app.tasks import TaskOrchestrator


def setup_db(tmp_path):
    db = tmp_path / 'evaluator.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


class Game:
    """One profile with a live session and a single-sequence level 1."""

    def __init__(self, s, clock, level=1, completed=0):
        self.s = s
        self.clock = clock
        parent = crud.create_parent(s, 'parent@example.com')
        self.profile = crud.create_profile(s, parent.id, 'Ala', level_id=level)
        self.profile.completed_tasks_in_level = completed
        s.add(self.profile)
        s.commit()
        for lvl in range(1, 22):
            crud.create_sequence(s, lvl, "C4-E4-G4", "C4-E4")
        self.sessions = SessionManager(s, clock=clock)
        self.sid = self.sessions.start_session(self.profile.id)['sessionId']
        self.tasks = TaskOrchestrator(s, clock=clock)
        self.evaluator = AnswerEvaluator(s, clock=clock)

    def next(self):
        return self.tasks.resume_or_generate(self.profile.id, self.sid)['sequenceId']

    def answer(self, seq_id, answer):
        return self.evaluator.submit(self.profile.id, seq_id, answer, self.sid)


def test_score_tiers():
    assert [score_for(n) for n in range(4)] == [10, 7, 5, 5]
    assert score_for(1, tiers=(10, 5, 2)) == 5
    assert score_for(-1) == 10


def test_parse_answer():
    assert parse_answer("C4-E4") == ["C4", "E4"]
    assert parse_answer(" F#3 - Bb3 ") == ["F#3", "Bb3"]
    for bad in ["", "   ", "C4-", "H4", "c4", "C4-E"]:
        with pytest.raises(ValidationError):
            parse_answer(bad)


def test_first_attempt_success(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        res = g.answer(seq, "C4-E4")
        assert res['score'] == 10
        assert res['attemptsUsed'] == 0
        assert res['levelCompleted'] is False
        assert res['nextLevel'] == 1
        assert res['completedTasksInLevel'] == 1
        assert res['totalScore'] == 10

        s.refresh(g.profile)
        assert g.profile.total_score == 10
        assert crud.as_utc(g.profile.last_played_at) == clock.now
        assert crud.get_open_task(s, g.profile.id) is None


def test_order_matters(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        res = g.answer(seq, "E4-C4")
        assert res['score'] == 0
        assert res['attemptsUsed'] == 1


def test_success_after_failures_scores_lower_tier(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        assert g.answer(seq, "D4-E4")['attemptsUsed'] == 1
        assert g.answer(seq, "D4-F4")['attemptsUsed'] == 2
        res = g.answer(seq, "C4-E4")
        assert res['score'] == 5
        assert res['attemptsUsed'] == 2
        assert res['totalScore'] == 5


def test_three_wrong_answers_exhaust_task(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        used = [g.answer(seq, "G4-G4")['attemptsUsed'] for _ in range(3)]
        assert used == [1, 2, 3]
        s.refresh(g.profile)
        assert g.profile.total_score == 0
        assert g.profile.completed_tasks_in_level == 0
        assert crud.get_open_task(s, g.profile.id) is None
        assert crud.has_completed_task(s, g.profile.id, seq)


def test_resubmitting_completed_task_is_conflict(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        g.answer(seq, "C4-E4")
        with pytest.raises(ConflictError):
            g.answer(seq, "C4-E4")
        s.refresh(g.profile)
        assert g.profile.total_score == 10


def test_unknown_task_is_not_found(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        with pytest.raises(NotFoundError):
            g.answer('00000000-0000-0000-0000-000000000000', "C4-E4")


def test_expired_session_is_rejected_before_anything_changes(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        clock.advance(minutes=11)
        with pytest.raises(ValidationError) as err:
            g.answer(seq, "C4-E4")
        assert 'session' in err.value.details
        assert crud.get_open_task(s, g.profile.id).attempts_used == 0


def test_fifth_success_levels_up_and_resets(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock, completed=3)
        res = g.answer(g.next(), "C4-E4")
        assert res['levelCompleted'] is False
        assert res['completedTasksInLevel'] == 4

        res = g.answer(g.next(), "C4-E4")
        assert res['levelCompleted'] is True
        assert res['nextLevel'] == 2
        assert res['completedTasksInLevel'] == 0
        s.refresh(g.profile)
        assert g.profile.current_level_id == 2
        assert g.profile.completed_tasks_in_level == 0

        # next puzzle comes from the new level
        assert g.tasks.resume_or_generate(g.profile.id, g.sid)['levelId'] == 2


def test_exhausted_task_does_not_count_towards_level(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock, completed=4)
        seq = g.next()
        for _ in range(3):
            res = g.answer(seq, "A4-A4")
        assert res['levelCompleted'] is False
        assert res['nextLevel'] == 1
        assert res['completedTasksInLevel'] == 4


def test_level_is_capped(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock, level=20, completed=4)
        res = g.answer(g.next(), "C4-E4")
        assert res['levelCompleted'] is True
        assert res['nextLevel'] == 20
        s.refresh(g.profile)
        assert g.profile.current_level_id == 20
        assert g.profile.completed_tasks_in_level == 0


def test_concurrent_submissions_award_the_task_once(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, crud.utcnow)
        profile_id, sid = g.profile.id, g.sid
        seq = g.next()

    # both tabs read the open task before either writes
    barrier = threading.Barrier(2, timeout=10)
    read_open_task = crud.get_open_task

    def get_open_task_then_wait(*args, **kwargs):
        task = read_open_task(*args, **kwargs)
        barrier.wait()
        return task

    monkeypatch.setattr(crud, 'get_open_task', get_open_task_then_wait)
    results, errors = [], []

    def tab():
        with Session(engine) as s:
            try:
                results.append(AnswerEvaluator(s).submit(profile_id, seq, "C4-E4", sid))
            except ConflictError as exc:
                errors.append(exc)

    threads = [threading.Thread(target=tab) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(results) == 1 and len(errors) == 1
    assert results[0]['score'] == 10
    assert results[0]['totalScore'] == 10
    with Session(engine) as s:
        profile = s.get(models.ChildProfile, profile_id)
        assert profile.total_score == 10
        assert profile.completed_tasks_in_level == 1


def test_stale_attempt_count_is_rejected(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = Game(s, clock)
        seq = g.next()
        task = crud.get_open_task(s, g.profile.id, seq)
        # a second writer already used attempt 1
        assert crud.record_attempt(s, task.id, 0, 1) is True
        s.commit()
        assert crud.record_attempt(s, task.id, 0, 1) is False
        s.rollback()
        assert crud.get_open_task(s, g.profile.id, seq).attempts_used == 1
