"""
Client-side game controller.

``ClientStateStore`` is the page-level state object of the game screen: it
holds the current puzzle, the answer being built, attempts left and score, and
a mirror of the active session lease. All server calls go through
``GameApiClient`` over ``httpx`` (a FastAPI ``TestClient`` works too).

The lease is kept alive by one repeating timer that refreshes the session every
two minutes and rewrites the lease cookie with the new expiry. A refresh that
comes back ``NotFound`` or ``Validation`` means the lease is dead: the id and
cookie are dropped and the next action starts a new session.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import httpx

from . import crud
from .catalog import join_notes, split_notes
from .config import settings
from .errors import GameError, NotFoundError, ValidationError, from_payload
from .logging_utils import get_logger

logger = get_logger("melody.client")

LEASE_COOKIE_PREFIX = "game_session_"
KEEPALIVE_SECONDS = 120


def parse_timestamp(value: str) -> datetime:
    return crud.as_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class Lease:
    session_id: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


class LeaseCookieJar:
    """Stand-in for the browser cookie store: one lease per profile.

    A lease past its expiry is gone, the way an expired cookie is, so a
    lease read from here always names an active session.
    """

    def __init__(self, clock: Callable[[], datetime] = crud.utcnow):
        self.clock = clock
        self._leases: Dict[str, Lease] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cookie_name(profile_id: str) -> str:
        return f"{LEASE_COOKIE_PREFIX}{profile_id}"

    def read(self, profile_id: str) -> Optional[Lease]:
        name = self.cookie_name(profile_id)
        with self._lock:
            lease = self._leases.get(name)
            if lease is not None and not lease.is_live(self.clock()):
                del self._leases[name]
                return None
            return lease

    def write(self, profile_id: str, lease: Lease) -> None:
        with self._lock:
            self._leases[self.cookie_name(profile_id)] = lease

    def delete(self, profile_id: str) -> None:
        with self._lock:
            self._leases.pop(self.cookie_name(profile_id), None)


class RepeatingTimer:
    """Runs ``callback`` every ``interval`` seconds on a daemon thread until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None]):
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stopped.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="lease-keepalive", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("keepalive_tick_failed")

    def cancel(self) -> None:
        self._stopped.set()


class GameApiClient:
    """Thin JSON client for the game endpoints; error bodies become typed errors."""

    def __init__(self, http: httpx.Client, token: Optional[str] = None, prefix: str = "/api"):
        self.http = http
        self.token = token
        self.prefix = prefix

    def _request(self, method: str, path: str, **kwargs) -> Optional[dict]:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = self.http.request(method, f"{self.prefix}{path}", headers=headers, **kwargs)
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {"message": resp.text or f"HTTP {resp.status_code}"}
            raise from_payload(payload if isinstance(payload, dict) else {})
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def start_session(self, profile_id: str) -> dict:
        return self._request("POST", f"/profiles/{profile_id}/sessions")

    def refresh_session(self, session_id: str) -> dict:
        return self._request("POST", f"/sessions/{session_id}/refresh")

    def end_session(self, session_id: str) -> None:
        self._request("POST", f"/sessions/{session_id}/end")

    def next_task(self, profile_id: str, session_id: str) -> dict:
        return self._request("POST", f"/profiles/{profile_id}/tasks/next", json={"sessionId": session_id})

    def current_task(self, profile_id: str, session_id: str) -> dict:
        return self._request("GET", f"/profiles/{profile_id}/tasks/current", params={"sessionId": session_id})

    def submit(self, profile_id: str, sequence_id: str, answer: str, session_id: str) -> dict:
        return self._request(
            "POST",
            f"/profiles/{profile_id}/tasks/{sequence_id}/submit",
            json={"answer": answer, "sessionId": session_id},
        )


@dataclass
class CurrentTask:
    sequence_id: str
    level_id: int
    sequence_beginning: List[str]
    expected_slots: int

    @classmethod
    def from_puzzle(cls, data: dict) -> "CurrentTask":
        return cls(
            sequence_id=data["sequenceId"],
            level_id=data["levelId"],
            sequence_beginning=split_notes(data["sequenceBeginning"]),
            expected_slots=data["expectedSlots"],
        )


@dataclass
class Feedback:
    type: str  # "success", "failed" or "error"
    message: str
    score: int = 0


def _is_session_error(exc: GameError) -> bool:
    return isinstance(exc, ValidationError) and bool(exc.details) and (
        "session" in exc.details or "sessionId" in exc.details
    )


@dataclass
class _State:
    session_id: Optional[str] = None
    current_level: int = 1
    total_score: int = 0
    attempts_left: int = 3
    completed_tasks_in_level: int = 0
    current_task: Optional[CurrentTask] = None
    selected_notes: List[str] = field(default_factory=list)
    is_loading: bool = False
    is_submitting: bool = False
    feedback: Optional[Feedback] = None
    task_state: Optional[str] = None  # "in_progress", "completed" or None


class ClientStateStore:
    """State of one game screen for one profile.

    Construct it when the page opens and call ``close()`` when it goes away;
    ``close`` cancels the keep-alive timer.
    """

    def __init__(
        self,
        api: GameApiClient,
        profile_id: str,
        initial_level: int = 1,
        initial_score: int = 0,
        cookies: Optional[LeaseCookieJar] = None,
        clock: Callable[[], datetime] = crud.utcnow,
        timer_factory: Callable[[float, Callable[[], None]], RepeatingTimer] = RepeatingTimer,
        keepalive_seconds: float = KEEPALIVE_SECONDS,
    ):
        self.api = api
        self.profile_id = profile_id
        self.cookies = cookies or LeaseCookieJar(clock)
        self.clock = clock
        self.timer_factory = timer_factory
        self.keepalive_seconds = keepalive_seconds
        self.max_attempts = settings.MAX_ATTEMPTS
        self._state = _State(
            current_level=initial_level,
            total_score=initial_score,
            attempts_left=settings.MAX_ATTEMPTS,
        )
        self._lock = threading.RLock()
        self._timer: Optional[RepeatingTimer] = None

    # read-only views

    @property
    def session_id(self) -> Optional[str]:
        return self._state.session_id

    @property
    def current_level(self) -> int:
        return self._state.current_level

    @property
    def total_score(self) -> int:
        return self._state.total_score

    @property
    def attempts_left(self) -> int:
        return self._state.attempts_left

    @property
    def completed_tasks_in_level(self) -> int:
        return self._state.completed_tasks_in_level

    @property
    def current_task(self) -> Optional[CurrentTask]:
        return self._state.current_task

    @property
    def selected_notes(self) -> List[str]:
        return list(self._state.selected_notes)

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def is_submitting(self) -> bool:
        return self._state.is_submitting

    @property
    def feedback(self) -> Optional[Feedback]:
        return self._state.feedback

    @property
    def task_state(self) -> Optional[str]:
        return self._state.task_state

    @property
    def keepalive_armed(self) -> bool:
        return self._timer is not None

    # session lease

    def ensure_active_session(self) -> str:
        with self._lock:
            if self._state.session_id:
                return self._state.session_id
            lease = self.cookies.read(self.profile_id)
            if lease is not None:
                self._adopt(lease)
                return lease.session_id

        result = self.api.start_session(self.profile_id)
        lease = Lease(result["sessionId"], parse_timestamp(result["endedAt"]))
        with self._lock:
            self.cookies.write(self.profile_id, lease)
            self._adopt(lease)
        logger.info("lease_started", extra={"profile_id": self.profile_id, "session_id": lease.session_id})
        return lease.session_id

    def _adopt(self, lease: Lease) -> None:
        self._state.session_id = lease.session_id
        self._arm_keepalive()

    def _arm_keepalive(self) -> None:
        if self._timer is not None:
            return
        self._timer = self.timer_factory(self.keepalive_seconds, self.keepalive_tick)
        self._timer.start()

    def _disarm_keepalive(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _drop_lease(self) -> None:
        with self._lock:
            self._state.session_id = None
            self.cookies.delete(self.profile_id)
            self._disarm_keepalive()

    def keepalive_tick(self) -> None:
        """Refresh the held session and move the cookie expiry with it."""
        with self._lock:
            sid = self._state.session_id
        if not sid:
            return
        try:
            result = self.api.refresh_session(sid)
        except (NotFoundError, ValidationError):
            logger.info("lease_lost", extra={"profile_id": self.profile_id, "session_id": sid})
            with self._lock:
                if self._state.session_id == sid:
                    self._drop_lease()
            return
        with self._lock:
            if self._state.session_id == sid:
                self.cookies.write(self.profile_id, Lease(sid, parse_timestamp(result["endedAt"])))

    def _with_session(self, call: Callable[[str], dict]) -> dict:
        """Run ``call`` with a live session id, recreating a dead lease once."""
        sid = self.ensure_active_session()
        try:
            return call(sid)
        except GameError as exc:
            if not _is_session_error(exc):
                raise
            logger.info("lease_recreated", extra={"profile_id": self.profile_id, "session_id": sid})
            with self._lock:
                if self._state.session_id == sid:
                    self._drop_lease()
            return call(self.ensure_active_session())

    def end_session(self) -> None:
        with self._lock:
            sid = self._state.session_id
        if sid:
            try:
                self.api.end_session(sid)
            except (NotFoundError, ValidationError):
                pass  # already gone server-side
        self._drop_lease()

    def close(self) -> None:
        with self._lock:
            self._disarm_keepalive()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # puzzles

    def _install_task(self, data: dict) -> None:
        with self._lock:
            self._state.current_task = CurrentTask.from_puzzle(data)
            self._state.attempts_left = self.max_attempts - int(data.get("attemptsUsed", 0))
            self._state.selected_notes = []
            self._state.task_state = None

    def _load(self, loader: Callable[[], dict]) -> dict:
        with self._lock:
            if self._state.is_loading:
                raise ValidationError("A task is already loading")
            self._state.is_loading = True
        try:
            data = loader()
        except GameError:
            with self._lock:
                self._state.feedback = Feedback("error", "Could not load the puzzle. Please try again.")
            raise
        finally:
            with self._lock:
                self._state.is_loading = False
        self._install_task(data)
        return data

    def load_current_or_next_task(self) -> dict:
        """Resume the open puzzle after a reload, or start a new one."""
        def loader():
            try:
                return self._with_session(lambda sid: self.api.current_task(self.profile_id, sid))
            except NotFoundError:
                return self._with_session(lambda sid: self.api.next_task(self.profile_id, sid))
        return self._load(loader)

    def load_next_task(self) -> dict:
        """Explicitly move on after feedback has been shown."""
        with self._lock:
            self._state.feedback = None
        return self._load(lambda: self._with_session(lambda sid: self.api.next_task(self.profile_id, sid)))

    # answer buffer

    def add_note(self, note: str) -> None:
        with self._lock:
            task = self._state.current_task
            if task is None or self._state.task_state == "completed":
                return
            if len(self._state.selected_notes) >= task.expected_slots:
                return
            self._state.selected_notes.append(note)

    def remove_last_note(self) -> None:
        with self._lock:
            if self._state.selected_notes:
                self._state.selected_notes.pop()

    def clear_notes(self) -> None:
        with self._lock:
            self._state.selected_notes = []

    def clear_feedback(self) -> None:
        with self._lock:
            self._state.feedback = None

    # submission

    def submit(self) -> Optional[dict]:
        with self._lock:
            task = self._state.current_task
            if task is None or not self._state.selected_notes or self._state.is_submitting:
                return None
            # a finished puzzle waits for load_next_task
            if self._state.task_state == "completed":
                return None
            self._state.is_submitting = True
            answer = join_notes(self._state.selected_notes)

        try:
            result = self._with_session(
                lambda sid: self.api.submit(self.profile_id, task.sequence_id, answer, sid)
            )
        except GameError:
            with self._lock:
                self._state.feedback = Feedback("error", "Could not check the answer. Please try again.")
            raise
        finally:
            with self._lock:
                self._state.is_submitting = False

        self._reconcile(result)
        return result

    def _reconcile(self, result: dict) -> None:
        score = int(result["score"])
        attempts_used = int(result["attemptsUsed"])
        with self._lock:
            st = self._state
            st.total_score = int(result.get("totalScore", st.total_score + score))
            st.attempts_left = self.max_attempts - attempts_used
            st.current_level = int(result["nextLevel"])
            if "completedTasksInLevel" in result:
                st.completed_tasks_in_level = int(result["completedTasksInLevel"])
            elif result["levelCompleted"]:
                st.completed_tasks_in_level = 0
            st.selected_notes = []

            if score > 0:
                st.task_state = "completed"
                if score >= settings.SCORE_TIERS[0]:
                    message = "Perfect!"
                elif score >= settings.SCORE_TIERS[min(1, len(settings.SCORE_TIERS) - 1)]:
                    message = "Very good!"
                else:
                    message = "Good!"
                st.feedback = Feedback("success", message, score)
            elif attempts_used >= self.max_attempts:
                st.task_state = "completed"
                st.feedback = Feedback("failed", "No attempts left. Try the next one!", 0)
            else:
                st.task_state = "in_progress"
                st.feedback = None
