import logging
from typing import Callable, List, Optional, Tuple, Type

from livy_interpreter.auth import get_auth_provider
from livy_interpreter.backend.http_client import LivyHttpClient
from livy_interpreter.config import InterpreterConfig
from livy_interpreter.coordinator import LIFECYCLE_ERRORS, ExecutionCoordinator
from livy_interpreter.output import OutputClassifier, TypedResult
from livy_interpreter.segmenter import LexicalSegmenter, SourceBlock, StatementUnit
from livy_interpreter.session import SessionManager
from livy_interpreter.statement import CancelOutcome, RawOutput, StatementExecutor
from livy_interpreter.types import SessionKind
from livy_interpreter.version import Capability, VersionGate

logger = logging.getLogger(__name__)


def wrap_sql(query: str, entry_point: str, max_rows: int) -> str:
    """Scala code printing the first ``max_rows`` rows of ``query`` as a grid."""
    return '{}.sql("""{}""").show({}, false)'.format(entry_point, query, max_rows)


class SQLExecutionCoordinator(ExecutionCoordinator):
    """
    Runs SQL statements.

    Servers that accept the ``sql`` statement kind get the query as is. Older ones
    get it wrapped in a Scala ``show()`` call whose printed grid is parsed back into
    a table.
    """

    def __init__(self, *args, spark2_probe: Callable[[], bool], **kwargs):
        super().__init__(*args, **kwargs)
        self._spark2_probe = spark2_probe

    @property
    def native_sql(self) -> bool:
        return self.session_manager.version_gate.supports(Capability.STATEMENT_KIND)

    def prepare(
        self, unit: StatementUnit, kind: SessionKind
    ) -> Tuple[str, Optional[SessionKind]]:
        if self.native_sql:
            return unit.text, SessionKind.SQL
        entry_point = "spark" if self._spark2_probe() else "sqlContext"
        return wrap_sql(unit.code, entry_point, self.classifier.max_result_rows), None

    def classify(self, raw: RawOutput) -> TypedResult:
        if self.native_sql or not raw.success:
            return super().classify(raw)
        return self.classifier.show_output_to_table(raw.text)


class LivyInterpreter:
    """
    Runs code of one language on a Livy server.

    The session is created on first use (or by ``open``) and shared with other
    interpreters of the same group when a shared session key is configured.
    """

    kind: SessionKind = SessionKind.SPARK
    spark2_probe_code = "spark"
    spark2_probe_kind: Optional[SessionKind] = None

    def __init__(self, group: "InterpreterGroup", shared_key: Optional[str] = None):
        self.group = group
        self.config = group.config
        self.executor = StatementExecutor(
            group.http_client,
            group.version_gate,
            poll_interval=self.config.pull_status_interval,
            timeout=self.config.statement_timeout,
        )
        self.classifier = OutputClassifier(
            max_result_rows=self.config.max_result_rows,
            max_field_length=self.config.max_field_length,
            enable_field_truncation=self.config.enable_field_truncation,
        )
        self.coordinator = self._create_coordinator(
            shared_key or self.config.shared_session_key
        )
        self._spark2: Optional[bool] = None

    def _create_coordinator(self, shared_key: Optional[str]) -> ExecutionCoordinator:
        return ExecutionCoordinator(
            self.group.session_manager,
            self.executor,
            self.classifier,
            self.kind,
            shared_key=shared_key,
            segmenter=self.group.segmenter,
            restart_dead_session=self.config.restart_dead_session,
        )

    @property
    def session(self):
        return self.coordinator.session

    def open(self):
        self.coordinator.open()

    def interpret(self, code: str) -> List[TypedResult]:
        results = self.coordinator.run(SourceBlock(code, self.kind))
        if self.config.display_app_info and not any(r.is_error for r in results):
            session = self.coordinator.session
            if session is not None:
                results.append(
                    TypedResult.html(self.group.session_manager.app_info_html(session))
                )
        return results

    def cancel(self) -> CancelOutcome:
        return self.coordinator.cancel_current()

    def completion(self, code: str, cursor: int) -> List[str]:
        return self.coordinator.complete(code, cursor)

    def close(self):
        self.coordinator.close()

    def is_spark2(self) -> bool:
        """Whether the session runs Spark 2 or later, probed once by running a statement."""
        if self._spark2 is None:
            self._spark2 = self._probe_spark2()
            logger.info("Session runs Spark %s", "2+" if self._spark2 else "1.x")
        return self._spark2

    def _probe_spark2(self) -> bool:
        try:
            raw = self.coordinator.run_raw(
                self.spark2_probe_code, self.spark2_probe_kind or self.kind
            )
        except LIFECYCLE_ERRORS as e:
            logger.debug("Spark version probe failed: %s", e)
            return False
        return raw.success


class SparkInterpreter(LivyInterpreter):
    kind = SessionKind.SPARK


class PySparkInterpreter(LivyInterpreter):
    kind = SessionKind.PYSPARK


class SparkRInterpreter(LivyInterpreter):
    kind = SessionKind.SPARKR
    spark2_probe_code = "sparkR.session()"

    def _probe_spark2(self) -> bool:
        if not self.group.version_gate.supports(Capability.SPARKR_PROBE):
            return False
        return super()._probe_spark2()


class SparkSQLInterpreter(LivyInterpreter):
    kind = SessionKind.SQL
    spark2_probe_kind = SessionKind.SPARK

    def _create_coordinator(self, shared_key: Optional[str]) -> ExecutionCoordinator:
        return SQLExecutionCoordinator(
            self.group.session_manager,
            self.executor,
            self.classifier,
            self.kind,
            shared_key=shared_key,
            segmenter=self.group.segmenter,
            restart_dead_session=self.config.restart_dead_session,
            spark2_probe=self.is_spark2,
        )


class SharedInterpreter(LivyInterpreter):
    """Runs code of any language in one session (Livy 0.5+ ``shared`` sessions)."""

    kind = SessionKind.SHARED
    spark2_probe_kind = SessionKind.SPARK

    def interpret(
        self, code: str, kind: SessionKind = SessionKind.SPARK
    ) -> List[TypedResult]:
        return self.coordinator.run(SourceBlock(code, kind))

    def completion(
        self, code: str, cursor: int, kind: SessionKind = SessionKind.SPARK
    ) -> List[str]:
        session = self.coordinator.open()
        return self.executor.complete(session, code, cursor, kind)


class InterpreterGroup:
    """
    Owns the connection to one Livy server and the interpreters that use it.

    Usable as a context manager; leaving the block closes every session the group
    created.
    """

    def __init__(self, config: InterpreterConfig, http_client=None, **kwargs):
        self.config = config
        self.http_client = http_client or LivyHttpClient(
            config.url,
            config.http_headers,
            get_auth_provider(config),
            config.ssl_options,
            **kwargs,
        )
        self.version_gate = VersionGate(self.http_client)
        self.session_manager = SessionManager(self.http_client, config, self.version_gate)
        self.segmenter = LexicalSegmenter(
            sql_doubled_quote_escape=config.sql_doubled_quote_escape
        )
        self._interpreters: List[LivyInterpreter] = []
        self.open = True

    def __enter__(self) -> "InterpreterGroup":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _add(self, cls: Type[LivyInterpreter], shared_key: Optional[str]) -> LivyInterpreter:
        interpreter = cls(self, shared_key)
        self._interpreters.append(interpreter)
        return interpreter

    def spark(self, shared_key: Optional[str] = None) -> SparkInterpreter:
        return self._add(SparkInterpreter, shared_key)

    def pyspark(self, shared_key: Optional[str] = None) -> PySparkInterpreter:
        return self._add(PySparkInterpreter, shared_key)

    def sparkr(self, shared_key: Optional[str] = None) -> SparkRInterpreter:
        return self._add(SparkRInterpreter, shared_key)

    def sql(self, shared_key: Optional[str] = None) -> SparkSQLInterpreter:
        return self._add(SparkSQLInterpreter, shared_key)

    def shared(self, shared_key: str = "shared") -> SharedInterpreter:
        return self._add(SharedInterpreter, shared_key)

    def close(self):
        if not self.open:
            return
        for interpreter in self._interpreters:
            interpreter.close()
        self._interpreters = []
        self.session_manager.close_all()
        self.http_client.close()
        self.open = False
