import logging
import threading
from typing import List, Optional, Tuple, Union

from livy_interpreter.exc import (
    ExecutionError,
    RequestError,
    SessionCreateFailed,
    SessionCreateTimeout,
    SessionExpiredError,
)
from livy_interpreter.output import OutputClassifier, TypedResult
from livy_interpreter.segmenter import LexicalSegmenter, SourceBlock, StatementUnit
from livy_interpreter.session import Session, SessionManager
from livy_interpreter.statement import CancelOutcome, RawOutput, StatementExecutor
from livy_interpreter.types import SessionKind

logger = logging.getLogger(__name__)

# ExecutionTimeout and ExecutionCancelled are ExecutionErrors
LIFECYCLE_ERRORS = (
    SessionCreateTimeout,
    SessionCreateFailed,
    SessionExpiredError,
    ExecutionError,
    RequestError,
)


class ExecutionCoordinator:
    """
    Runs a source block on one session, statement by statement.

    Every call to ``run`` returns at least one result and exactly one result per
    submitted statement, in order. The first ERROR result stops the run; the units
    after it are never submitted.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        executor: StatementExecutor,
        classifier: OutputClassifier,
        kind: SessionKind,
        shared_key: Optional[str] = None,
        segmenter: Optional[LexicalSegmenter] = None,
        restart_dead_session: bool = False,
    ):
        self.session_manager = session_manager
        self.executor = executor
        self.classifier = classifier
        self.kind = kind
        self.shared_key = shared_key
        self.segmenter = segmenter or LexicalSegmenter()
        self.restart_dead_session = restart_dead_session

        self._lock = threading.RLock()
        # keeps the units of one block together when several threads share this coordinator
        self._run_lock = threading.RLock()
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    def open(self) -> Session:
        """Acquire the session now instead of on the first run."""
        with self._lock:
            if self._session is None:
                self._session = self.session_manager.acquire(self.kind, self.shared_key)
            return self._session

    def run(self, block: Union[SourceBlock, str]) -> List[TypedResult]:
        if not isinstance(block, SourceBlock):
            block = SourceBlock(block, self.kind)

        units = [unit for unit in self.segmenter.split(block) if not unit.is_blank]
        if not units:
            return [TypedResult.text("")]

        try:
            self._live_session()
        except LIFECYCLE_ERRORS as e:
            logger.error("Could not get a Livy session: %s", e)
            return [TypedResult.error(e.message)]

        results: List[TypedResult] = []
        with self._run_lock:
            for unit in units:
                result = self._run_unit(unit, block.kind)
                results.append(result)
                if result.is_error:
                    break
        return results

    def run_raw(self, code: str, kind: Optional[SessionKind] = None) -> RawOutput:
        """Submit ``code`` as a single statement, without segmenting or classifying it."""
        session = self._live_session()
        with session.serialized():
            return self.executor.execute(session, code, kind)

    def cancel_current(self) -> CancelOutcome:
        session = self.session
        if session is None:
            return CancelOutcome.NOT_REQUESTED
        return self.executor.cancel(session)

    def complete(self, code: str, cursor: int) -> List[str]:
        kind = SessionKind.SPARK if self.kind is SessionKind.SHARED else self.kind
        return self.executor.complete(self._live_session(), code, cursor, kind)

    def close(self):
        with self._lock:
            session, self._session = self._session, None
        if session is not None:
            self.session_manager.release(session)

    def _live_session(self) -> Session:
        with self._lock:
            if self._session is None:
                return self.open()
            if self._session.state.is_terminal:
                self._replace_dead_session()
            return self._session

    def _replace_dead_session(self):
        dead = self._session
        if not self.restart_dead_session:
            raise SessionExpiredError(
                "Livy session {} is {}; enable restart_dead_session to recreate it "
                "automatically".format(dead.id, dead.state.value),
                {"session-id": dead.id},
            )
        logger.warning("Livy session %s is dead, creating a new one", dead.id)
        self._session = None
        self.session_manager.release(dead)
        self.open()

    def prepare(
        self, unit: StatementUnit, kind: SessionKind
    ) -> Tuple[str, Optional[SessionKind]]:
        """The code and statement kind to submit for ``unit``."""
        return unit.text, None if kind is SessionKind.SHARED else kind

    def classify(self, raw: RawOutput) -> TypedResult:
        return self.classifier.classify(raw)

    def _run_unit(self, unit: StatementUnit, kind: SessionKind) -> TypedResult:
        code, statement_kind = self.prepare(unit, kind)
        try:
            raw = self._execute(code, statement_kind)
        except LIFECYCLE_ERRORS as e:
            logger.error("Statement failed: %s", e.message)
            trace = e.trace if isinstance(e, ExecutionError) else e.message
            if trace != e.message:
                trace = "{}\n{}".format(e.message, trace)
            return TypedResult.error(trace)

        if unit.possibly_incomplete and not raw.success:
            logger.debug("Last statement of the block may be incomplete")
        return self.classify(raw)

    def _execute(self, code: str, kind: Optional[SessionKind]) -> RawOutput:
        session = self._live_session()
        with session.serialized():
            try:
                return self.executor.execute(session, code, kind)
            except SessionExpiredError:
                # the session died between statements; nothing of this unit ran yet
                if not self.restart_dead_session:
                    raise
                with self._lock:
                    if self._session is session:
                        self._replace_dead_session()

        # the replacement may be shared, so it is locked on its own
        session = self._live_session()
        with session.serialized():
            return self.executor.execute(session, code, kind)
