from datetime import timedelta
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine, Session, select

from melody_app.main import app
from melody_app import crud, models
from melody_app.client import ClientStateStore, GameApiClient, LeaseCookieJar, Lease, RepeatingTimer
from melody_app.errors import NotFoundError


def setup_db(tmp_path):
    db = tmp_path / 'client.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


class FakeTimer:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.callback()


class World:
    def __init__(self, tmp_path):
        self.engine = setup_db(tmp_path)
        with Session(self.engine) as s:
            parent = crud.create_parent(s, 'parent@example.com')
            self.profile_id = crud.create_profile(s, parent.id, 'Ala').id
            self.seq_id = crud.create_sequence(s, 1, "C4-E4-G4", "C4-E4").id
            self.token = crud.sign_parent_token(parent.id)
        self.jar = LeaseCookieJar()
        self.timers = []

    def timer_factory(self, interval, callback):
        t = FakeTimer(interval, callback)
        self.timers.append(t)
        return t

    def api(self):
        return GameApiClient(TestClient(app), token=self.token)

    def store(self, api=None):
        return ClientStateStore(
            api or self.api(), self.profile_id, cookies=self.jar, timer_factory=self.timer_factory,
        )

    def sessions(self):
        with Session(self.engine) as s:
            return list(s.exec(select(models.GameSession)).all())

    def expire(self, sid):
        with Session(self.engine) as s:
            gs = s.get(models.GameSession, sid)
            gs.ended_at = crud.utcnow() - timedelta(seconds=1)
            s.add(gs)
            s.commit()


def test_lease_cookie_jar_drops_expired(clock):
    jar = LeaseCookieJar(clock)
    jar.write('p1', Lease('s1', clock.now + timedelta(minutes=1)))
    assert LeaseCookieJar.cookie_name('p1') == 'game_session_p1'
    assert jar.read('p1').session_id == 's1'
    clock.advance(minutes=1)
    assert jar.read('p1') is None
    assert jar.read('p2') is None


def test_repeating_timer_cancel():
    calls = []
    t = RepeatingTimer(60, lambda: calls.append(1))
    t.start()
    assert t.running
    t.cancel()
    assert not t.running
    assert calls == []


def test_ensure_active_session_creates_lease_mirroring_server_expiry(tmp_path):
    w = World(tmp_path)
    store = w.store()
    sid = store.ensure_active_session()

    [gs] = w.sessions()
    assert gs.id == sid
    assert crud.as_utc(gs.ended_at) - crud.as_utc(gs.started_at) == timedelta(minutes=10)
    lease = w.jar.read(w.profile_id)
    assert lease.session_id == sid
    assert lease.expires_at == crud.as_utc(gs.ended_at)

    # in-memory id short-circuits; one timer only
    assert store.ensure_active_session() == sid
    assert len(w.sessions()) == 1
    assert len(w.timers) == 1
    assert w.timers[0].interval == 120
    assert w.timers[0].started


def test_cookie_lease_is_reused_after_reload(tmp_path):
    w = World(tmp_path)
    sid = w.store().ensure_active_session()
    reloaded = w.store()
    assert reloaded.session_id is None
    assert reloaded.ensure_active_session() == sid
    assert len(w.sessions()) == 1


def test_keepalive_moves_cookie_expiry(tmp_path):
    w = World(tmp_path)
    store = w.store()
    sid = store.ensure_active_session()
    before = w.jar.read(w.profile_id).expires_at
    w.timers[0].fire()
    after = w.jar.read(w.profile_id).expires_at
    assert after - before == timedelta(minutes=2)
    [gs] = w.sessions()
    assert crud.as_utc(gs.ended_at) == after
    assert store.session_id == sid


def test_keepalive_on_dead_lease_clears_it(tmp_path):
    w = World(tmp_path)
    store = w.store()
    sid = store.ensure_active_session()
    w.expire(sid)
    w.timers[0].fire()
    assert store.session_id is None
    assert w.jar.read(w.profile_id) is None
    assert w.timers[0].cancelled
    assert not store.keepalive_armed

    # next action re-creates the lease
    new_sid = store.ensure_active_session()
    assert new_sid != sid
    assert len(w.timers) == 2


def test_load_task_and_note_buffer(tmp_path):
    w = World(tmp_path)
    store = w.store()
    data = store.load_current_or_next_task()
    assert data['sequenceId'] == w.seq_id
    task = store.current_task
    assert task.sequence_beginning == ["C4", "E4", "G4"]
    assert task.expected_slots == 2
    assert store.attempts_left == 3

    store.remove_last_note()
    assert store.selected_notes == []
    for note in ["C4", "E4", "G4"]:
        store.add_note(note)
    assert store.selected_notes == ["C4", "E4"]
    store.remove_last_note()
    assert store.selected_notes == ["C4"]
    store.clear_notes()
    assert store.selected_notes == []


def test_submit_reconciles_from_server(tmp_path):
    w = World(tmp_path)
    store = w.store()
    store.load_current_or_next_task()
    assert store.submit() is None  # nothing selected yet

    store.add_note("D4")
    store.add_note("D4")
    res = store.submit()
    assert res['attemptsUsed'] == 1
    assert store.attempts_left == 2
    assert store.task_state == "in_progress"
    assert store.selected_notes == []

    store.add_note("C4")
    store.add_note("E4")
    res = store.submit()
    assert res['score'] == 7
    assert store.total_score == 7
    assert store.attempts_left == 2
    assert store.completed_tasks_in_level == 1
    assert store.current_level == 1
    assert store.task_state == "completed"
    assert store.feedback.type == "success"
    assert store.feedback.score == 7
    # the next puzzle is only loaded on request
    assert store.current_task.sequence_id == w.seq_id

    store.load_next_task()
    assert store.feedback is None
    assert store.attempts_left == 3
    assert store.task_state is None


def test_three_misses_end_the_task(tmp_path):
    w = World(tmp_path)
    store = w.store()
    store.load_current_or_next_task()
    for _ in range(3):
        store.add_note("A4")
        store.add_note("A4")
        store.submit()
    assert store.attempts_left == 0
    assert store.task_state == "completed"
    assert store.feedback.type == "failed"
    assert store.total_score == 0


def test_reload_resumes_attempts(tmp_path):
    w = World(tmp_path)
    store = w.store()
    store.load_current_or_next_task()
    store.add_note("A4")
    store.add_note("A4")
    store.submit()
    store.close()

    reloaded = w.store()
    data = reloaded.load_current_or_next_task()
    assert data['sequenceId'] == w.seq_id
    assert reloaded.attempts_left == 2


def test_submit_recreates_dead_lease_and_retries(tmp_path):
    w = World(tmp_path)
    store = w.store()
    store.load_current_or_next_task()
    old_sid = store.session_id
    w.expire(old_sid)

    store.add_note("C4")
    store.add_note("E4")
    res = store.submit()
    assert res['score'] == 10
    assert store.session_id not in (None, old_sid)
    assert w.jar.read(w.profile_id).session_id == store.session_id


def test_only_one_submission_in_flight(tmp_path):
    w = World(tmp_path)
    nested = []

    class ReentrantApi(GameApiClient):
        def submit(self, *args):
            nested.append(store.submit())
            return super().submit(*args)

    store = w.store(ReentrantApi(TestClient(app), token=w.token))
    store.load_current_or_next_task()
    store.add_note("C4")
    store.add_note("E4")
    assert store.submit()['score'] == 10
    assert nested == [None]
    assert store.is_submitting is False


def test_task_errors_surface_as_feedback(tmp_path):
    w = World(tmp_path)
    with Session(w.engine) as s:
        profile = s.get(models.ChildProfile, w.profile_id)
        profile.current_level_id = 9  # no sequences at this level
        s.add(profile)
        s.commit()
    store = w.store()
    with pytest.raises(NotFoundError):
        store.load_current_or_next_task()
    assert store.feedback.type == "error"
    assert store.is_loading is False


def test_close_cancels_keepalive(tmp_path):
    w = World(tmp_path)
    with w.store() as store:
        store.ensure_active_session()
        assert store.keepalive_armed
    assert w.timers[0].cancelled
    assert not store.keepalive_armed


def test_end_session_releases_everything(tmp_path):
    w = World(tmp_path)
    store = w.store()
    sid = store.ensure_active_session()
    store.end_session()
    assert store.session_id is None
    assert w.jar.read(w.profile_id) is None
    [gs] = w.sessions()
    assert gs.id == sid
    assert crud.as_utc(gs.ended_at) <= crud.utcnow()


def test_finished_puzzle_ignores_input_until_next_load(tmp_path):
    w = World(tmp_path)
    store = w.store()
    store.load_current_or_next_task()
    store.add_note("C4")
    store.add_note("E4")
    assert store.submit()['score'] == 10

    store.add_note("C4")
    assert store.selected_notes == []
    assert store.submit() is None
    assert store.feedback.type == "success"
    assert store.total_score == 10

    store.load_next_task()
    store.add_note("C4")
    assert store.selected_notes == ["C4"]
