"""
Response models for the Livy REST backend.

These models define the structures used in Livy API responses.
"""

from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

from livy_interpreter.types import SessionState, StatementState


@dataclass
class SessionInfo:
    """Representation of an interactive session as reported by the server."""

    id: int
    state: SessionState
    raw_state: str
    kind: Optional[str] = None
    app_id: Optional[str] = None
    owner: Optional[str] = None
    proxy_user: Optional[str] = None
    app_info: Dict[str, Optional[str]] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        """Create a SessionInfo from a dictionary."""
        raw_state = data.get("state", "")
        state = SessionState.from_livy_state(raw_state)
        if state is None:
            raise ValueError(f"Invalid session state: {raw_state}")

        return cls(
            id=data["id"],
            state=state,
            raw_state=raw_state,
            kind=data.get("kind"),
            app_id=data.get("appId"),
            owner=data.get("owner"),
            proxy_user=data.get("proxyUser"),
            app_info=data.get("appInfo") or {},
            log=data.get("log") or [],
        )


@dataclass
class StatementOutput:
    """The ``output`` object of a finished statement."""

    status: str
    execution_count: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    ename: Optional[str] = None
    evalue: Optional[str] = None
    traceback: List[str] = field(default_factory=list)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatementOutput":
        """Create a StatementOutput from a dictionary."""
        return cls(
            status=data.get("status", ""),
            execution_count=data.get("execution_count"),
            data=data.get("data") or {},
            ename=data.get("ename"),
            evalue=data.get("evalue"),
            traceback=data.get("traceback") or [],
        )


def _parse_output(data: Dict[str, Any]) -> Optional[StatementOutput]:
    """Parse the output from response data, if the statement has produced one."""
    output_data = data.get("output")
    if not output_data:
        return None
    return StatementOutput.from_dict(output_data)


@dataclass
class StatementInfo:
    """Representation of a statement as reported by the server."""

    id: int
    state: StatementState
    code: Optional[str] = None
    output: Optional[StatementOutput] = None
    progress: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatementInfo":
        """Create a StatementInfo from a dictionary."""
        raw_state = data.get("state", "")
        state = StatementState.from_livy_state(raw_state)
        if state is None:
            raise ValueError(f"Invalid statement state: {raw_state}")

        return cls(
            id=data["id"],
            state=state,
            code=data.get("code"),
            output=_parse_output(data),
            progress=data.get("progress"),
        )


@dataclass
class VersionResponse:
    """Representation of the response from the version endpoint."""

    version: str
    git_commit: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionResponse":
        """Create a VersionResponse from a dictionary."""
        return cls(version=data.get("version", ""), git_commit=data.get("revision"))


@dataclass
class CompletionResponse:
    """Representation of the response from the completion endpoint."""

    candidates: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletionResponse":
        """Create a CompletionResponse from a dictionary."""
        return cls(candidates=list(data.get("candidates") or []))
