import logging
import threading

import pytest

from livy_interpreter.backend.models import SessionInfo
from livy_interpreter.config import InterpreterConfig
from livy_interpreter.exc import (
    ProgrammingError,
    SessionCreateFailed,
    SessionCreateTimeout,
)
from livy_interpreter.session import Session, SessionManager
from livy_interpreter.types import SessionKind, SessionState
from livy_interpreter.version import VersionGate
from tests.unit.fake_livy import FakeLivy


def make_config(**kwargs):
    kwargs.setdefault("pull_status_interval", 0.001)
    kwargs.setdefault("session_create_timeout", 5)
    return InterpreterConfig(url="http://livy:8998", **kwargs)


def session_info(state, **kwargs):
    return SessionInfo.from_dict({"id": 1, "state": state, **kwargs})


class TestSession:
    @pytest.fixture
    def session(self):
        session = Session(1, SessionKind.SPARK)
        session.update_from(session_info("idle"))
        return session

    def test_starts_creating_with_one_holder(self):
        session = Session(1, SessionKind.SPARK)
        assert session.state is SessionState.CREATING
        assert session.ref_count == 1

    def test_invalid_transition(self, session):
        session.mark_closed()
        with pytest.raises(ProgrammingError):
            session.transition(SessionState.IDLE)

    def test_dead_sessions_can_only_close(self, session):
        session.mark_dead()
        with pytest.raises(ProgrammingError):
            session.transition(SessionState.BUSY)
        session.mark_closed()
        assert session.state is SessionState.CLOSED

    def test_in_flight_slot_is_exclusive(self, session):
        first, second = object(), object()
        assert session.try_begin(first)
        assert session.state is SessionState.BUSY
        assert not session.try_begin(second)
        assert session.in_flight is first

        session.finish(second)
        assert session.in_flight is first
        session.finish(first)
        assert session.in_flight is None
        assert session.state is SessionState.IDLE

    def test_remote_state_does_not_override_an_in_flight_statement(self, session):
        session.try_begin(object())
        session.update_from(session_info("idle"))
        assert session.state is SessionState.BUSY
        session.update_from(session_info("dead"))
        assert session.state is SessionState.DEAD

    def test_no_statement_on_a_dead_session(self, session):
        session.mark_dead()
        assert not session.try_begin(object())

    def test_update_keeps_app_details(self, session):
        session.update_from(
            session_info(
                "idle",
                appId="application_1",
                appInfo={"sparkUiUrl": "http://ui"},
                log=["line"],
            )
        )
        assert session.app_id == "application_1"
        assert session.app_info == {"sparkUiUrl": "http://ui"}
        assert session.log == ["line"]

    def test_concurrent_try_begin_admits_one(self, session):
        barrier = threading.Barrier(8)
        admitted = []

        def attempt():
            marker = object()
            barrier.wait()
            if session.try_begin(marker):
                admitted.append(marker)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(admitted) == 1


class TestSessionManager:
    @pytest.fixture
    def livy(self):
        return FakeLivy()

    @pytest.fixture
    def manager(self, livy):
        return SessionManager(livy, make_config())

    def test_acquire_creates_and_waits_for_idle(self, manager, livy):
        session = manager.acquire(SessionKind.PYSPARK)

        assert session.state is SessionState.IDLE
        assert session.kind is SessionKind.PYSPARK
        assert session.app_id == "application_1_0000"
        method, path, body = livy.requests_for("POST", "/sessions")[0]
        assert body == {"kind": "pyspark"}
        assert len(livy.requests_for("GET", "/sessions/0")) == 1
        assert manager.sessions == [session]

    def test_session_conf_and_name(self, livy):
        config = make_config(
            session_conf={"spark.executor.cores": "4"},
            session_name="zeppelin-livy",
            proxy_user="alice",
            session_heartbeat_timeout=600,
        )
        SessionManager(livy, config).acquire(SessionKind.SPARK)

        body = livy.requests_for("POST", "/sessions")[0][2]
        assert body == {
            "kind": "spark",
            "proxyUser": "alice",
            "conf": {"spark.executor.cores": "4"},
            "name": "zeppelin-livy",
            "heartbeatTimeoutInSecond": 600,
        }

    def test_sql_sessions_are_spark_sessions(self, manager, livy):
        session = manager.acquire(SessionKind.SQL)
        assert session.kind is SessionKind.SPARK

    def test_create_timeout_deletes_the_half_created_session(self, livy):
        livy.session_states = ("starting",)
        manager = SessionManager(livy, make_config(session_create_timeout=0.05))

        with pytest.raises(SessionCreateTimeout) as excinfo:
            manager.acquire(SessionKind.SPARK)

        assert excinfo.value.context["session-id"] == 0
        assert excinfo.value.context["last-state"] == "starting"
        assert livy.requests_for("DELETE", "/sessions/0")
        assert manager.sessions == []

    def test_create_failure_carries_the_log(self, manager, livy):
        livy.session_states = ("starting", "dead")

        with pytest.raises(SessionCreateFailed) as excinfo:
            manager.acquire(SessionKind.SPARKR)

        assert excinfo.value.context["last-state"] == "dead"
        assert "stderr: launching driver" in excinfo.value.context["log"]
        assert "stderr: launching driver" in str(excinfo.value)

    def test_session_that_errors_immediately(self, manager, livy):
        livy.session_states = ("error",)

        with pytest.raises(SessionCreateFailed):
            manager.acquire(SessionKind.SPARK)

    def test_unknown_session_state_fails_creation(self, manager, livy):
        livy.session_states = ("starting", "hibernating")

        with pytest.raises(SessionCreateFailed) as excinfo:
            manager.acquire(SessionKind.SPARK)

        assert "hibernating" in str(excinfo.value)

    def test_refresh_keeps_the_state_when_the_server_fails(self, manager, livy):
        session = manager.acquire(SessionKind.SPARK)
        livy.fail_session_gets = True

        assert manager.refresh(session) is SessionState.IDLE
        assert "Spark Application Id: application_1_0000" in manager.app_info_html(session)

    def test_shared_key_returns_the_same_session(self, manager, livy):
        first = manager.acquire(SessionKind.SPARK, shared_key="team")
        second = manager.acquire(SessionKind.PYSPARK, shared_key="team")

        assert first is second
        assert first.kind is SessionKind.SHARED
        assert first.ref_count == 2
        assert len(livy.requests_for("POST", "/sessions")) == 1

        manager.release(first)
        assert not livy.requests_for("DELETE")
        assert first.state is SessionState.IDLE

        manager.release(second)
        assert livy.requests_for("DELETE", "/sessions/0")
        assert first.state is SessionState.CLOSED
        assert manager.sessions == []

    def test_shared_key_without_shared_sessions(self, livy):
        livy.version = "0.4.0"
        manager = SessionManager(livy, make_config())

        spark = manager.acquire(SessionKind.SPARK, shared_key="team")
        sql = manager.acquire(SessionKind.SQL, shared_key="team")
        pyspark = manager.acquire(SessionKind.PYSPARK, shared_key="team")

        assert spark is sql
        assert pyspark is not spark
        assert spark.kind is SessionKind.SPARK
        assert pyspark.kind is SessionKind.PYSPARK

    def test_exclusive_sessions_are_distinct(self, manager):
        assert manager.acquire(SessionKind.SPARK) is not manager.acquire(SessionKind.SPARK)

    def test_reacquire_after_death_creates_a_new_session(self, manager, livy):
        first = manager.acquire(SessionKind.SPARK, shared_key="team")
        first.mark_dead()

        second = manager.acquire(SessionKind.SPARK, shared_key="team")

        assert second is not first
        assert second.state is SessionState.IDLE
        assert len(livy.requests_for("POST", "/sessions")) == 2

    def test_close_failures_are_logged_and_swallowed(self, manager, livy, caplog):
        session = manager.acquire(SessionKind.SPARK)
        livy.fail_delete = True

        with caplog.at_level(logging.WARNING, logger="livy_interpreter.session"):
            manager.release(session)

        assert session.state is SessionState.CLOSED
        assert "Failed to close Livy session 0" in caplog.text

    def test_refresh_marks_forgotten_sessions_dead(self, manager, livy):
        session = manager.acquire(SessionKind.SPARK)
        livy.kill_session(session.id)

        assert manager.refresh(session) is SessionState.DEAD
        assert session.state is SessionState.DEAD

    def test_close_all(self, manager, livy):
        manager.acquire(SessionKind.SPARK)
        manager.acquire(SessionKind.PYSPARK, shared_key="k")
        manager.acquire(SessionKind.PYSPARK, shared_key="k")

        manager.close_all()

        assert livy.sessions == {}
        assert manager.sessions == []

    def test_concurrent_shared_acquire_creates_one_session(self, manager, livy):
        barrier = threading.Barrier(4)
        sessions = []

        def acquire():
            barrier.wait()
            sessions.append(manager.acquire(SessionKind.SPARK, shared_key="team"))

        threads = [threading.Thread(target=acquire) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(s) for s in sessions}) == 1
        assert sessions[0].ref_count == 4
        assert len(livy.requests_for("POST", "/sessions")) == 1

    def test_app_info_html(self, manager):
        session = manager.acquire(SessionKind.SPARK)
        html = manager.app_info_html(session)

        assert html.startswith("<hr/>")
        assert "Spark Application Id: application_1_0000" in html
        assert '<a href="http://rm:8088/proxy/0">' in html
        assert "Driver Log" in html

    def test_version_gate_is_shared(self, livy):
        gate = VersionGate(livy)
        manager = SessionManager(livy, make_config(), gate)
        manager.acquire(SessionKind.SPARK, shared_key="a")
        manager.acquire(SessionKind.SPARK, shared_key="b")
        assert manager.version_gate is gate
        assert len(livy.requests_for("GET", "/version")) == 1
