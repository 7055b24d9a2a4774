import html
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from livy_interpreter.backend.constants import (
    SESSION_LOG_TAIL_LINES,
    SESSION_PATH,
    SESSION_PATH_WITH_ID,
    HttpMethod,
)
from livy_interpreter.backend.models import CreateSessionRequest, SessionInfo
from livy_interpreter.config import InterpreterConfig
from livy_interpreter.exc import (
    APINotFoundError,
    ProgrammingError,
    RequestError,
    SessionCreateFailed,
    SessionCreateTimeout,
)
from livy_interpreter.types import SessionKind, SessionState
from livy_interpreter.version import Capability, VersionGate

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    SessionState.CREATING: {SessionState.IDLE, SessionState.BUSY, SessionState.DEAD, SessionState.CLOSED},
    SessionState.IDLE: {SessionState.BUSY, SessionState.DEAD, SessionState.CLOSED},
    SessionState.BUSY: {SessionState.IDLE, SessionState.DEAD, SessionState.CLOSED},
    SessionState.DEAD: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


def _session_info(response) -> SessionInfo:
    try:
        return SessionInfo.from_dict(response)
    except (KeyError, TypeError, ValueError) as e:
        raise RequestError(
            "Unexpected session response from Livy: {}".format(e), {"response": response}
        ) from e


class Session:
    """
    One remote Livy session as seen by this client.

    All mutable state (lifecycle state, reference count and the in-flight statement
    slot) is only changed while holding the session lock. A separate submission lock,
    entered through ``serialized()``, lets several users of a shared session queue up
    instead of tripping over each other's statements.
    """

    def __init__(self, session_id: int, kind: SessionKind, shared_key: Optional[str] = None):
        self.id = session_id
        self.kind = kind
        self.shared_key = shared_key
        self.raw_state: Optional[str] = None
        self.app_id: Optional[str] = None
        self.app_info: Dict[str, Optional[str]] = {}
        self.log: List[str] = []

        self._lock = threading.RLock()
        self._submission_lock = threading.RLock()
        self._state = SessionState.CREATING
        self._ref_count = 1
        self._in_flight: Optional[Any] = None

    def __repr__(self):
        return "Session(id={}, kind={}, state={})".format(
            self.id, self.kind.value, self._state.value
        )

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def ref_count(self) -> int:
        with self._lock:
            return self._ref_count

    @property
    def in_flight(self) -> Optional[Any]:
        """The statement currently running on this session, if any."""
        with self._lock:
            return self._in_flight

    def transition(self, new_state: SessionState):
        with self._lock:
            if new_state is self._state:
                return
            if new_state not in _ALLOWED_TRANSITIONS[self._state]:
                raise ProgrammingError(
                    "Invalid session state transition",
                    {
                        "session-id": self.id,
                        "from": self._state.value,
                        "to": new_state.value,
                    },
                )
            logger.debug(
                "Session %s: %s -> %s", self.id, self._state.value, new_state.value
            )
            self._state = new_state

    def mark_dead(self):
        with self._lock:
            if not self._state.is_terminal:
                self.transition(SessionState.DEAD)

    def mark_closed(self):
        with self._lock:
            self.transition(SessionState.CLOSED)
            self._in_flight = None

    def update_from(self, info: SessionInfo):
        """Apply the state the server reported for this session."""
        with self._lock:
            self.raw_state = info.raw_state
            self.app_id = info.app_id or self.app_id
            if info.app_info:
                self.app_info = dict(info.app_info)
            if info.log:
                self.log = list(info.log)

            if self._state.is_terminal:
                return
            if info.state is SessionState.DEAD:
                self.transition(SessionState.DEAD)
            elif info.state is SessionState.CREATING:
                # still starting, or recovering after a server restart
                return
            elif self._in_flight is None:
                self.transition(info.state)

    def retain(self) -> int:
        with self._lock:
            self._ref_count += 1
            return self._ref_count

    def release_ref(self) -> int:
        with self._lock:
            self._ref_count = max(self._ref_count - 1, 0)
            return self._ref_count

    def try_begin(self, statement: Any) -> bool:
        """Claim the in-flight slot for ``statement``; False if it is already taken."""
        with self._lock:
            if self._in_flight is not None or self._state.is_terminal:
                return False
            self._in_flight = statement
            if self._state is SessionState.IDLE:
                self.transition(SessionState.BUSY)
            return True

    def finish(self, statement: Any):
        with self._lock:
            if self._in_flight is not statement:
                return
            self._in_flight = None
            if self._state is SessionState.BUSY:
                self.transition(SessionState.IDLE)

    @contextmanager
    def serialized(self) -> Iterator["Session"]:
        """Block until no other caller is submitting to this session."""
        with self._submission_lock:
            yield self


class SessionManager:
    """
    Creates, shares and tears down Livy sessions.

    Sessions acquired with a shared key are reference counted: every ``acquire``
    with the same key returns the same live session, and the remote session is
    deleted once every holder has released it.
    """

    def __init__(
        self,
        http_client,
        config: InterpreterConfig,
        version_gate: Optional[VersionGate] = None,
    ):
        self._http_client = http_client
        self._config = config
        self.version_gate = version_gate or VersionGate(http_client)

        self._lock = threading.RLock()
        self._shared: Dict[str, Session] = {}
        self._sessions: List[Session] = []

    @property
    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions)

    def acquire(self, kind: SessionKind, shared_key: Optional[str] = None) -> Session:
        if shared_key is None:
            session = self._create(kind, None)
            with self._lock:
                self._sessions.append(session)
            return session

        if not self.version_gate.supports(Capability.SHARED_SESSION):
            # one session per language; SQL shares the Scala one
            shared_key = "{}/{}".format(shared_key, self.remote_kind(kind).value)

        # creation happens under the lock so concurrent holders of one key get one session
        with self._lock:
            session = self._shared.get(shared_key)
            if session is not None:
                if not session.state.is_terminal:
                    session.retain()
                    logger.debug(
                        "Reusing session %s for key %s (%s holders)",
                        session.id,
                        shared_key,
                        session.ref_count,
                    )
                    return session
                logger.info(
                    "Shared session %s for key %s is %s, creating a new one",
                    session.id,
                    shared_key,
                    session.state.value,
                )
                self._forget(session)

            session = self._create(kind, shared_key)
            self._shared[shared_key] = session
            self._sessions.append(session)
            return session

    def release(self, session: Session):
        with self._lock:
            if session.release_ref() > 0:
                return
            self._forget(session)
        self._close(session)

    def refresh(self, session: Session) -> SessionState:
        """Re-read the remote state of ``session``."""
        if session.state is SessionState.CLOSED:
            return SessionState.CLOSED
        try:
            info = self._get_info(session.id)
        except APINotFoundError:
            logger.warning("Session %s is unknown to the server", session.id)
            session.mark_dead()
            return session.state
        except RequestError as e:
            logger.warning("Could not refresh session %s: %s", session.id, e)
            return session.state
        session.update_from(info)
        return session.state

    def close_all(self):
        with self._lock:
            sessions = list(self._sessions)
            self._sessions = []
            self._shared = {}
        for session in sessions:
            self._close(session)

    def app_info_html(self, session: Session) -> str:
        """Links to the Spark application behind ``session``."""
        if not session.app_id or not session.app_info:
            self.refresh(session)

        rows = [("Spark Application Id", html.escape(session.app_id or "unknown"))]
        for label, key in (("Spark WebUI", "sparkUiUrl"), ("Driver Log", "driverLogUrl")):
            url = session.app_info.get(key)
            if url:
                escaped = html.escape(url, quote=True)
                rows.append((label, '<a href="{0}">{0}</a>'.format(escaped)))

        return "<hr/>" + "<br/>".join("{}: {}".format(label, value) for label, value in rows)

    def remote_kind(self, kind: SessionKind, shared_key: Optional[str] = None) -> SessionKind:
        """The kind a session must be created with to run ``kind`` statements."""
        if kind is SessionKind.SHARED or shared_key is not None:
            if self.version_gate.supports(Capability.SHARED_SESSION):
                return SessionKind.SHARED
        if kind in (SessionKind.SQL, SessionKind.SHARED):
            return SessionKind.SPARK
        return kind

    def _forget(self, session: Session):
        if session in self._sessions:
            self._sessions.remove(session)
        if session.shared_key is not None and self._shared.get(session.shared_key) is session:
            del self._shared[session.shared_key]

    def _get_info(self, session_id: int) -> SessionInfo:
        response = self._http_client.make_request(
            HttpMethod.GET, SESSION_PATH_WITH_ID.format(session_id)
        )
        return _session_info(response)

    def _create(self, kind: SessionKind, shared_key: Optional[str]) -> Session:
        remote_kind = self.remote_kind(kind, shared_key)
        request = CreateSessionRequest(
            kind=remote_kind.value,
            proxy_user=self._config.proxy_user,
            conf=self._config.session_conf,
            name=self._config.session_name,
            heartbeat_timeout_in_second=self._config.session_heartbeat_timeout,
        )

        logger.info("Creating Livy session of kind %s", remote_kind.value)
        try:
            response = self._http_client.make_request(
                HttpMethod.POST, SESSION_PATH, request.to_dict()
            )
            info = _session_info(response)
        except RequestError as e:
            raise SessionCreateFailed(
                "Failed to create Livy session: {}".format(e),
                {"last-state": None, "log": [], "original-exception": e},
            ) from e

        session = Session(info.id, remote_kind, shared_key)
        self._wait_until_idle(session, info)
        logger.info("Session %s is ready (app id %s)", session.id, session.app_id)
        return session

    def _wait_until_idle(self, session: Session, info: SessionInfo):
        timeout = self._config.session_create_timeout
        deadline = time.monotonic() + timeout

        while True:
            session.update_from(info)
            if info.state in (SessionState.IDLE, SessionState.BUSY):
                return
            if info.state is SessionState.DEAD:
                log_tail = session.log[-SESSION_LOG_TAIL_LINES:]
                raise SessionCreateFailed(
                    "Session {} failed to start, state: {}\n{}".format(
                        session.id, info.raw_state, "\n".join(log_tail)
                    ),
                    {
                        "session-id": session.id,
                        "last-state": info.raw_state,
                        "log": log_tail,
                    },
                )
            if time.monotonic() >= deadline:
                session.mark_dead()
                self._delete_quietly(session)
                raise SessionCreateTimeout(
                    "Session {} was not ready after {} seconds".format(session.id, timeout),
                    {
                        "session-id": session.id,
                        "timeout": timeout,
                        "last-state": info.raw_state,
                    },
                )

            time.sleep(self._config.pull_status_interval)
            try:
                info = self._get_info(session.id)
            except RequestError as e:
                session.mark_dead()
                raise SessionCreateFailed(
                    "Lost session {} while it was starting: {}".format(session.id, e),
                    {"session-id": session.id, "last-state": info.raw_state, "log": []},
                ) from e

    def _delete_quietly(self, session: Session) -> bool:
        try:
            self._http_client.make_request(
                HttpMethod.DELETE, SESSION_PATH_WITH_ID.format(session.id)
            )
        except APINotFoundError:
            logger.debug("Session %s was already gone", session.id)
        except RequestError as e:
            logger.warning("Failed to close Livy session %s: %s", session.id, e)
            return False
        return True

    def _close(self, session: Session):
        if session.state is SessionState.CLOSED:
            return
        logger.info("Closing session %s", session.id)
        self._delete_quietly(session)
        session.mark_closed()
