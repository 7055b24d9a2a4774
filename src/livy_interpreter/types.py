from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SessionKind(Enum):
    """
    Enum representing the language a session (or a single statement) is interpreted in.

    The values are the ``kind`` strings understood by the Livy REST API.

    Attributes:
        SPARK: Scala
        PYSPARK: Python
        SPARKR: R
        SQL: Spark SQL
        SHARED: one interpreter per language inside a single session (Livy 0.5+)
    """

    SPARK = "spark"
    PYSPARK = "pyspark"
    SPARKR = "sparkr"
    SQL = "sql"
    SHARED = "shared"

    @classmethod
    def from_string(cls, value: str) -> "SessionKind":
        aliases = {
            "scala": cls.SPARK,
            "python": cls.PYSPARK,
            "r": cls.SPARKR,
            "spark-sql": cls.SQL,
        }
        normalized = value.strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class SessionState(Enum):
    """
    Enum representing the client-side view of a remote session's lifecycle.

    State Mappings from the Livy session state:
        - not_started, starting, recovering -> CREATING
        - idle -> IDLE
        - busy -> BUSY
        - shutting_down, error, dead, killed, success -> DEAD
    CLOSED is never reported by the server; it is set once the client deleted the session.
    """

    CREATING = "CREATING"
    IDLE = "IDLE"
    BUSY = "BUSY"
    DEAD = "DEAD"
    CLOSED = "CLOSED"

    @classmethod
    def from_livy_state(cls, state: str) -> Optional["SessionState"]:
        state_mapping = {
            "not_started": cls.CREATING,
            "starting": cls.CREATING,
            "recovering": cls.CREATING,
            "idle": cls.IDLE,
            "busy": cls.BUSY,
            "shutting_down": cls.DEAD,
            "error": cls.DEAD,
            "dead": cls.DEAD,
            "killed": cls.DEAD,
            "success": cls.DEAD,
        }
        return state_mapping.get(state, None)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DEAD, SessionState.CLOSED)


class StatementState(Enum):
    """
    Enum representing the execution state of a statement.

    Attributes:
        WAITING: Submitted, queued behind the session's interpreter
        RUNNING: Currently executing
        AVAILABLE: Finished; the output carries a success or error payload
        ERROR: The server failed to run the statement at all
        CANCELLING: A cancel was accepted but has not taken effect yet
        CANCELLED: Cancelled before completion
    """

    WAITING = "WAITING"
    RUNNING = "RUNNING"
    AVAILABLE = "AVAILABLE"
    ERROR = "ERROR"
    CANCELLING = "CANCELLING"
    CANCELLED = "CANCELLED"

    @classmethod
    def from_livy_state(cls, state: str) -> Optional["StatementState"]:
        state_mapping = {
            "waiting": cls.WAITING,
            "running": cls.RUNNING,
            "available": cls.AVAILABLE,
            "error": cls.ERROR,
            "cancelling": cls.CANCELLING,
            "cancelled": cls.CANCELLED,
        }
        return state_mapping.get(state, None)

    @property
    def is_terminal(self) -> bool:
        return self in (
            StatementState.AVAILABLE,
            StatementState.ERROR,
            StatementState.CANCELLED,
        )

    @property
    def rank(self) -> int:
        """Position in the lifecycle; a statement never moves to a lower rank."""
        if self is StatementState.WAITING:
            return 0
        if self is StatementState.RUNNING:
            return 1
        if self is StatementState.CANCELLING:
            return 2
        return 3


class MimeType(str, Enum):
    """Media types that appear in the ``data`` map of a statement output."""

    PLAIN = "text/plain"
    HTML = "text/html"
    JSON = "application/json"
    LIVY_TABLE = "application/vnd.livy.table.v1+json"
    PNG = "image/png"
    JPEG = "image/jpeg"
    SVG = "image/svg+xml"


@dataclass
class SSLOptions:
    """TLS settings for the connection to the Livy server."""

    tls_verify: bool = True
    tls_trusted_ca_file: Optional[str] = None
    tls_client_cert_file: Optional[str] = None
    tls_client_cert_key_file: Optional[str] = None
    tls_client_cert_key_password: Optional[str] = None
