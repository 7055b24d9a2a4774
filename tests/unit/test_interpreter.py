from unittest.mock import patch

import pytest

import livy_interpreter
from livy_interpreter.config import InterpreterConfig
from livy_interpreter.interpreter import InterpreterGroup, wrap_sql
from livy_interpreter.output import ResultKind, TypedResult
from livy_interpreter.types import MimeType, SessionKind, SessionState
from tests.unit.fake_livy import FakeLivy, echo, error_output, ok_output

SHOW_OUTPUT = """+-----+-----+
|col_1|col_2|
+-----+-----+
|hello|   20|
+-----+-----+
"""

SQL_JSON = {
    "application/json": {
        "schema": {
            "type": "struct",
            "fields": [
                {"name": "col_1", "type": "string", "nullable": True},
                {"name": "col_2", "type": "integer", "nullable": False},
            ],
        },
        "data": [["hello", 20]],
    }
}


def sql_responder(spark2=True):
    def responder(code, kind):
        if code == "spark":
            if spark2:
                return [{"state": "available", "output": ok_output("res0: SparkSession")}]
            return [
                {
                    "state": "available",
                    "output": error_output(None, "<console>:1: error: not found: value spark"),
                }
            ]
        if kind == "sql":
            return [{"state": "available", "output": ok_output("", SQL_JSON)}]
        if ".sql(" in code:
            return [{"state": "available", "output": ok_output(SHOW_OUTPUT)}]
        return echo(code, kind)

    return responder


def make_group(livy, **kwargs):
    kwargs.setdefault("pull_status_interval", 0.001)
    return InterpreterGroup(InterpreterConfig(url="http://livy:8998", **kwargs), http_client=livy)


def test_wrap_sql():
    assert (
        wrap_sql("select 1", "spark", 1000) == 'spark.sql("""select 1""").show(1000, false)'
    )


class TestInterpreters:
    @pytest.fixture
    def livy(self):
        return FakeLivy()

    def test_spark(self, livy):
        with make_group(livy) as group:
            spark = group.spark()
            assert spark.interpret("val a = 1") == [TypedResult.text("val a = 1")]
            assert spark.session.kind is SessionKind.SPARK

        assert livy.sessions == {}

    def test_pyspark_error(self, livy):
        livy.responder = lambda code, kind: [
            {"state": "available", "output": error_output("ZeroDivisionError", "division by zero")}
        ]
        with make_group(livy) as group:
            results = group.pyspark().interpret("1 / 0\nprint('never')")

        assert results == [TypedResult.error("ZeroDivisionError: division by zero")]
        assert livy.submitted_code == ["1 / 0"]

    def test_native_sql(self, livy):
        livy.responder = sql_responder()
        with make_group(livy) as group:
            sql = group.sql()
            results = sql.interpret("select * from t;\n")

        assert results == [
            TypedResult(ResultKind.TABLE, "col_1\tcol_2\nhello\t20", MimeType.PLAIN)
        ]
        statement = livy.requests_for("POST", "/statements")[0][2]
        assert statement["kind"] == "sql"
        assert livy.requests_for("POST", "/sessions")[0][2]["kind"] == "spark"

    def test_sql_on_servers_without_statement_kinds(self, livy):
        livy.version = "0.4.0"
        livy.responder = sql_responder()
        with make_group(livy) as group:
            sql = group.sql()
            first = sql.interpret("select * from t")
            second = sql.interpret("select * from u")

        assert first[0].kind is ResultKind.TABLE
        assert first[0].data == "col_1\tcol_2\nhello\t20"
        assert second[0].data == first[0].data
        assert livy.submitted_code == [
            "spark",
            'spark.sql("""select * from t""").show(1000, false)',
            'spark.sql("""select * from u""").show(1000, false)',
        ]

    def test_sql_on_spark_1(self, livy):
        livy.version = "0.4.0"
        livy.responder = sql_responder(spark2=False)
        with make_group(livy, max_result_rows=10) as group:
            group.sql().interpret("select 1")

        assert livy.submitted_code[-1] == 'sqlContext.sql("""select 1""").show(10, false)'

    def test_sql_error(self, livy):
        livy.version = "0.4.0"
        livy.responder = lambda code, kind: [
            {
                "state": "available",
                "output": error_output("AnalysisException", "Table or view not found: t"),
            }
        ]
        with make_group(livy) as group:
            results = group.sql().interpret("select * from t")

        assert results[0].is_error
        assert "Table or view not found" in results[0].data

    def test_display_app_info(self, livy):
        with make_group(livy, display_app_info=True) as group:
            results = group.spark().interpret("val a = 1")

        assert [r.kind for r in results] == [ResultKind.TEXT, ResultKind.HTML]
        assert "application_1_0000" in results[1].data
        assert "http://rm:8088/proxy/0" in results[1].data

    def test_app_info_when_the_session_cannot_be_read(self, livy):
        with make_group(livy, display_app_info=True) as group:
            spark = group.spark()
            spark.open()
            spark.session.app_id = None
            livy.fail_session_gets = True

            results = spark.interpret("val a = 1")

        assert results[0] == TypedResult.text("val a = 1")
        assert results[1].kind is ResultKind.HTML
        assert "Spark Application Id: unknown" in results[1].data

    def test_no_app_info_after_an_error(self, livy):
        livy.responder = lambda code, kind: [
            {"state": "available", "output": error_output("Error", "boom")}
        ]
        with make_group(livy, display_app_info=True) as group:
            results = group.spark().interpret("val a = 1")

        assert len(results) == 1
        assert results[0].is_error

    def test_sparkr_probe(self, livy):
        with make_group(livy) as group:
            sparkr = group.sparkr()
            assert sparkr.is_spark2()
            assert sparkr.is_spark2()

        assert livy.submitted_code == ["sparkR.session()"]

    def test_sparkr_probe_on_legacy_servers(self, livy):
        livy.version = None
        with make_group(livy) as group:
            with pytest.warns(livy_interpreter.VersionDiscoveryUnavailable):
                assert not group.sparkr().is_spark2()

        assert not livy.submitted_code

    def test_cancel_and_completion(self, livy):
        with make_group(livy) as group:
            spark = group.spark()
            assert spark.cancel().value == "NOT_REQUESTED"
            assert spark.completion("sc.", 3) == ["collect", "count"]

    def test_shared_interpreters(self, livy):
        with make_group(livy) as group:
            scala = group.spark(shared_key="team")
            python = group.pyspark(shared_key="team")
            scala.interpret("val a = 1")
            python.interpret("b = 2")

            assert scala.session is python.session
            assert scala.session.kind is SessionKind.SHARED

        assert len(livy.requests_for("POST", "/sessions")) == 1
        assert livy.sessions == {}

    def test_shared_interpreter_runs_any_language(self, livy):
        with make_group(livy) as group:
            shared = group.shared()
            shared.interpret("x = 1", kind=SessionKind.PYSPARK)
            shared.interpret("val y = 2")
            assert shared.completion("x.", 2, SessionKind.PYSPARK) == ["collect", "count"]

        kinds = [r[2]["kind"] for r in livy.requests_for("POST", "/statements")]
        assert kinds == ["pyspark", "spark"]
        assert livy.requests_for("POST", "/sessions")[0][2]["kind"] == "shared"

    def test_group_close_is_idempotent(self, livy):
        group = make_group(livy)
        spark = group.spark()
        spark.open()

        group.close()
        group.close()

        assert not group.open
        assert spark.session is None
        assert len(livy.requests_for("DELETE")) == 1

    def test_dead_session_restart_through_config(self, livy):
        with make_group(livy, restart_dead_session=True) as group:
            spark = group.spark()
            spark.interpret("val a = 1")
            livy.kill_session(spark.session.id)

            assert spark.interpret("val b = 2") == [TypedResult.text("val b = 2")]
            assert spark.session.state is SessionState.IDLE


class TestConnect:
    def test_connect_with_properties(self):
        with patch("livy_interpreter.interpreter.LivyHttpClient") as client_class:
            group = livy_interpreter.connect(
                {
                    "zeppelin.livy.url": "http://livy:8998",
                    "zeppelin.livy.http.headers": "X-A:1",
                }
            )

        assert isinstance(group, InterpreterGroup)
        assert group.config.url == "http://livy:8998"
        args = client_class.call_args[0]
        assert args[0] == "http://livy:8998"
        assert args[1] == [("X-A", "1")]

    def test_connect_with_keywords(self):
        with patch("livy_interpreter.interpreter.LivyHttpClient"):
            group = livy_interpreter.connect(url="http://livy:8998", max_result_rows=5)
        assert group.config.max_result_rows == 5
