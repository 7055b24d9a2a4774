"""
Request models for the Livy REST backend.

These models define the structures used in Livy API requests.
"""

from typing import Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class CreateSessionRequest:
    """Representation of a request to create a new interactive session."""

    kind: str
    proxy_user: Optional[str] = None
    conf: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    heartbeat_timeout_in_second: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the request to a dictionary for JSON serialization."""
        result: Dict[str, Any] = {"kind": self.kind}

        if self.proxy_user:
            result["proxyUser"] = self.proxy_user

        if self.conf:
            result["conf"] = dict(self.conf)

        if self.name:
            result["name"] = self.name

        if self.heartbeat_timeout_in_second:
            result["heartbeatTimeoutInSecond"] = self.heartbeat_timeout_in_second

        return result


@dataclass
class ExecuteStatementRequest:
    """Representation of a request to run a piece of code in a session."""

    code: str
    kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the request to a dictionary for JSON serialization."""
        result: Dict[str, Any] = {"code": self.code}
        if self.kind:
            result["kind"] = self.kind
        return result


@dataclass
class CompletionRequest:
    """Representation of a request for code completion candidates."""

    code: str
    kind: str
    cursor: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert the request to a dictionary for JSON serialization."""
        return {"code": self.code, "kind": self.kind, "cursor": self.cursor}
