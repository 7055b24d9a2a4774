import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from livy_interpreter.backend.constants import (
    CANCEL_STATEMENT_PATH_WITH_ID,
    COMPLETION_PATH,
    STATEMENT_PATH,
    STATEMENT_PATH_WITH_ID,
    CancellationMessages,
    HttpMethod,
)
from livy_interpreter.backend.models import (
    CompletionRequest,
    CompletionResponse,
    ExecuteStatementRequest,
    StatementInfo,
    StatementOutput,
)
from livy_interpreter.exc import (
    APINotFoundError,
    ExecutionCancelled,
    ExecutionError,
    ExecutionTimeout,
    RequestError,
    SessionExpiredError,
    SessionNotIdle,
)
from livy_interpreter.segmenter import StatementUnit
from livy_interpreter.session import Session
from livy_interpreter.types import SessionKind, StatementState
from livy_interpreter.version import Capability, VersionGate

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0

# "Job 12 cancelled part of cancelled job group 3", "Job 4 cancelled because ..."
_JOB_CANCELLED_RE = re.compile(r"\bJob \d+ cancelled\b")


class CancelOutcome(Enum):
    """What became of a cancel request for a statement.

    Attributes:
        NOT_REQUESTED: Nobody asked to cancel
        REQUESTED: A cancel was sent before the statement finished
        UNSUPPORTED: The server cannot cancel statements; nothing was sent
        CANCEL_RACE: The statement finished on its own before the cancel took effect
    """

    NOT_REQUESTED = "NOT_REQUESTED"
    REQUESTED = "REQUESTED"
    UNSUPPORTED = "UNSUPPORTED"
    CANCEL_RACE = "CANCEL_RACE"


def is_cancellation_message(text: Optional[str]) -> bool:
    """Whether an error text is Spark reporting a job killed through its job group."""
    if not text:
        return False
    if any(message.value in text for message in CancellationMessages):
        return True
    return _JOB_CANCELLED_RE.search(text) is not None


@dataclass
class RawOutput:
    """The unclassified result of one statement."""

    success: bool
    text: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    trace: Optional[str] = None
    cancelled: bool = False
    execution_count: Optional[int] = None
    cancel_outcome: CancelOutcome = CancelOutcome.NOT_REQUESTED


class Statement:
    """
    Client-side record of one remote statement.

    State only moves forward: a poll reporting an earlier state than the one already
    seen is ignored, and once a terminal state is observed it never changes again.
    """

    def __init__(self, session_id: int, code: str, kind: Optional[SessionKind] = None):
        self.session_id = session_id
        self.code = code
        self.kind = kind
        self.id: Optional[int] = None
        self.output: Optional[StatementOutput] = None
        self.progress: Optional[float] = None

        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._state = StatementState.WAITING
        self._cancel_outcome = CancelOutcome.NOT_REQUESTED

    def __repr__(self):
        return "Statement(session={}, id={}, state={})".format(
            self.session_id, self.id, self._state.value
        )

    @property
    def state(self) -> StatementState:
        with self._lock:
            return self._state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def cancel_outcome(self) -> CancelOutcome:
        with self._lock:
            return self._cancel_outcome

    def observe(self, info: StatementInfo) -> StatementState:
        """Record a state reported by the server and return the resulting state."""
        with self._lock:
            if self.id is None:
                self.id = info.id
            if self._state.is_terminal or info.state.rank < self._state.rank:
                return self._state

            self._state = info.state
            if info.progress is not None:
                self.progress = info.progress
            if info.output is not None:
                self.output = info.output

            if (
                self._state.is_terminal
                and self._cancel_outcome is CancelOutcome.REQUESTED
                and self._finished_on_its_own()
            ):
                self._cancel_outcome = CancelOutcome.CANCEL_RACE
            return self._state

    def _finished_on_its_own(self) -> bool:
        if self._state is StatementState.CANCELLED:
            return False
        if self.output is None:
            return self._state is StatementState.AVAILABLE
        if self.output.is_ok:
            return True
        return not is_cancellation_message(self.output.evalue) and not any(
            is_cancellation_message(line) for line in self.output.traceback
        )

    def request_cancel(self) -> bool:
        """Mark the statement as cancel-requested; False if that is pointless or already done."""
        with self._lock:
            if self._state.is_terminal:
                if self._cancel_outcome is CancelOutcome.NOT_REQUESTED:
                    self._cancel_outcome = CancelOutcome.CANCEL_RACE
                return False
            if self._cancel_outcome is not CancelOutcome.NOT_REQUESTED:
                return False
            self._cancel_outcome = CancelOutcome.REQUESTED
            return True

    def mark_cancel_unsupported(self):
        with self._lock:
            if self._cancel_outcome is CancelOutcome.NOT_REQUESTED:
                self._cancel_outcome = CancelOutcome.UNSUPPORTED

    def wait(self, timeout: float) -> bool:
        """Sleep until the next poll is due or someone wakes the poller."""
        woken = self._wakeup.wait(timeout)
        self._wakeup.clear()
        return woken

    def wake(self):
        self._wakeup.set()


def _join_traceback(lines: List[str]) -> str:
    return "".join(line if line.endswith("\n") else line + "\n" for line in lines).rstrip(
        "\n"
    )


def _statement_info(session: Session, statement_id: Optional[int], response) -> StatementInfo:
    try:
        return StatementInfo.from_dict(response)
    except (KeyError, TypeError, ValueError) as e:
        raise ExecutionError(
            "Unexpected statement response from Livy: {}".format(e),
            {"session-id": session.id, "statement-id": statement_id, "trace": str(e)},
        ) from e


class StatementExecutor:
    """
    Runs statements on a Session, one at a time.

    ``execute`` blocks the calling thread while it polls; ``cancel`` is meant to be
    called from another thread and never blocks on the poller.
    """

    def __init__(
        self,
        http_client,
        version_gate: VersionGate,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: Optional[float] = None,
    ):
        self._http_client = http_client
        self.version_gate = version_gate
        self.poll_interval = poll_interval
        self.timeout = timeout

    def execute(
        self,
        session: Session,
        unit: Union[StatementUnit, str],
        kind: Optional[SessionKind] = None,
    ) -> RawOutput:
        """
        Submit ``unit`` to ``session`` and wait for its outcome.

        Raises:
            SessionNotIdle: If another statement is already in flight on the session
            SessionExpiredError: If the session is dead, closed or unknown to the server
            ExecutionTimeout: If the statement did not finish within ``timeout``
            ExecutionCancelled: If a cancel arrived before the statement was submitted
            ExecutionError: If submitting or polling failed
        """
        code = unit.text if isinstance(unit, StatementUnit) else unit

        if session.state.is_terminal:
            raise SessionExpiredError(
                "Session {} is {}".format(session.id, session.state.value),
                {"session-id": session.id},
            )

        statement = Statement(session.id, code, kind)
        if not session.try_begin(statement):
            raise SessionNotIdle(
                "Session {} already has a statement in flight".format(session.id),
                {"session-id": session.id, "in-flight": repr(session.in_flight)},
            )

        try:
            self._submit(session, statement)
            self._wait_until_done(session, statement)
            return self._to_raw_output(statement)
        finally:
            session.finish(statement)

    def cancel(self, session: Session) -> CancelOutcome:
        """
        Ask the server to cancel whatever runs on ``session``.

        Safe to call repeatedly and from any thread. On servers without statement
        cancellation this does nothing and reports ``UNSUPPORTED``.
        """
        statement = session.in_flight
        if statement is None:
            logger.debug("Nothing to cancel on session %s", session.id)
            return CancelOutcome.NOT_REQUESTED

        if not self.version_gate.supports(Capability.CANCEL):
            logger.info("Livy %s cannot cancel statements", self.version_gate.resolve().version)
            statement.mark_cancel_unsupported()
            return statement.cancel_outcome

        if statement.request_cancel() and statement.id is not None:
            self._send_cancel(session, statement)
        return statement.cancel_outcome

    def complete(
        self, session: Session, code: str, cursor: int, kind: SessionKind
    ) -> List[str]:
        """Completion candidates at ``cursor``; empty where the server has no completion."""
        if not self.version_gate.supports(Capability.CODE_COMPLETION):
            return []

        request = CompletionRequest(code=code, kind=kind.value, cursor=cursor)
        try:
            response = self._http_client.make_request(
                HttpMethod.POST, COMPLETION_PATH.format(session.id), request.to_dict()
            )
        except RequestError as e:
            logger.warning("Code completion failed on session %s: %s", session.id, e)
            return []
        return CompletionResponse.from_dict(response).candidates

    def _submit(self, session: Session, statement: Statement):
        if statement.cancel_outcome is CancelOutcome.REQUESTED:
            raise ExecutionCancelled(
                "Statement was cancelled before it was submitted",
                {"session-id": session.id},
            )

        kind = None
        if statement.kind is not None and self.version_gate.supports(
            Capability.STATEMENT_KIND
        ):
            kind = statement.kind.value
        request = ExecuteStatementRequest(code=statement.code, kind=kind)

        try:
            response = self._http_client.make_request(
                HttpMethod.POST, STATEMENT_PATH.format(session.id), request.to_dict()
            )
        except APINotFoundError as e:
            session.mark_dead()
            raise SessionExpiredError(
                "Session {} is unknown to the server".format(session.id),
                {"session-id": session.id},
            ) from e
        except RequestError as e:
            raise ExecutionError(
                "Failed to submit statement: {}".format(e),
                {"session-id": session.id, "trace": str(e)},
            ) from e

        statement.observe(_statement_info(session, statement.id, response))
        logger.debug("Submitted statement %s on session %s", statement.id, session.id)

        # a cancel that arrived while the submission was in flight
        if statement.cancel_outcome is CancelOutcome.REQUESTED:
            self._send_cancel(session, statement)

    def _wait_until_done(self, session: Session, statement: Statement):
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while not statement.is_terminal:
            interval = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._on_timeout(session, statement)
                interval = min(interval, remaining)

            statement.wait(interval)
            self._poll(session, statement)

    def _on_timeout(self, session: Session, statement: Statement):
        logger.warning(
            "Statement %s on session %s timed out after %s seconds",
            statement.id,
            session.id,
            self.timeout,
        )
        if self.version_gate.supports(Capability.CANCEL) and statement.request_cancel():
            self._send_cancel(session, statement)
        raise ExecutionTimeout(
            "Statement did not finish within {} seconds".format(self.timeout),
            {
                "session-id": session.id,
                "statement-id": statement.id,
                "trace": "Statement timed out in state {}".format(statement.state.value),
            },
        )

    def _poll(self, session: Session, statement: Statement):
        try:
            response = self._http_client.make_request(
                HttpMethod.GET, STATEMENT_PATH_WITH_ID.format(session.id, statement.id)
            )
        except RequestError as e:
            raise ExecutionError(
                "Failed to poll statement {}: {}".format(statement.id, e),
                {"session-id": session.id, "statement-id": statement.id, "trace": str(e)},
            ) from e

        info = _statement_info(session, statement.id, response)
        previous = statement.state
        state = statement.observe(info)
        if state is not previous:
            logger.debug("Statement %s: %s -> %s", statement.id, previous.value, state.value)

    def _send_cancel(self, session: Session, statement: Statement):
        logger.info("Cancelling statement %s on session %s", statement.id, session.id)
        try:
            self._http_client.make_request(
                HttpMethod.POST,
                CANCEL_STATEMENT_PATH_WITH_ID.format(session.id, statement.id),
            )
        except RequestError as e:
            logger.warning(
                "Cancel request for statement %s failed: %s", statement.id, e
            )
        statement.wake()

    def _error_trace(self, output: StatementOutput) -> str:
        if output.ename and output.evalue:
            header = "{}: {}".format(output.ename, output.evalue)
        else:
            # 0.2 servers put the whole error into evalue
            header = output.evalue or output.ename or "Unknown error"

        if output.traceback and self.version_gate.supports(Capability.TRACEBACK):
            return header.rstrip("\n") + "\n" + _join_traceback(output.traceback)
        return header

    def _to_raw_output(self, statement: Statement) -> RawOutput:
        state = statement.state
        output = statement.output
        cancel_outcome = statement.cancel_outcome
        execution_count = output.execution_count if output else None

        if state is StatementState.CANCELLED:
            trace = self._error_trace(output) if output and not output.is_ok else None
            return RawOutput(
                success=False,
                trace=trace or "Statement {} was cancelled".format(statement.id),
                cancelled=True,
                execution_count=execution_count,
                cancel_outcome=cancel_outcome,
            )

        if output is None:
            if state is StatementState.ERROR:
                return RawOutput(
                    success=False,
                    trace="Statement {} failed without output".format(statement.id),
                    cancel_outcome=cancel_outcome,
                )
            return RawOutput(success=True, cancel_outcome=cancel_outcome)

        if output.is_ok and state is StatementState.AVAILABLE:
            text = output.data.get("text/plain")
            return RawOutput(
                success=True,
                text=text if isinstance(text, str) else "",
                data=dict(output.data),
                execution_count=execution_count,
                cancel_outcome=cancel_outcome,
            )

        trace = self._error_trace(output)
        return RawOutput(
            success=False,
            trace=trace,
            cancelled=is_cancellation_message(trace),
            execution_count=execution_count,
            cancel_outcome=cancel_outcome,
        )
