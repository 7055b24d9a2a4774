import json
import logging

logger = logging.getLogger(__name__)


class Error(Exception):
    """Base class for all livy_interpreter exceptions.
    `message`: An optional user-friendly error message. It should be short, actionable and stable
    `context`: Optional extra context about the error. MUST be JSON serializable
    """

    def __init__(self, message=None, context=None, *args, **kwargs):
        super().__init__(message, *args, **kwargs)
        self.message = message
        self.context = context or {}

    def __str__(self):
        return self.message

    def message_with_context(self):
        return self.message + ": " + json.dumps(self.context, default=str)


class Warning(UserWarning):
    """Base class for non-fatal conditions; issued through ``warnings.warn``, never raised."""

    pass


class InterfaceError(Error):
    pass


class ProgrammingError(Error):
    pass


class OperationalError(Error):
    pass


class RequestError(OperationalError):
    """Thrown if there was an error during a request to the Livy server.
    Its context will have the following keys:
    "method": The HTTP method of the failed request
    "path": The REST path of the failed request
    "http-code": HTTP response code (if available)
    "response-body": The body returned by the server (if available)
    "original-exception": The Python level original exception (if any)
    """

    @property
    def http_code(self):
        return self.context.get("http-code")


class APINotFoundError(RequestError):
    """Thrown when the server answers 404, e.g. for an endpoint an older Livy does not have
    or a session that the server has already forgotten."""

    pass


### Session lifecycle ###
class SessionCreateTimeout(OperationalError):
    """Thrown if a session does not become idle within the configured create timeout.
    Its context will have the following keys:
    "session-id": The Livy session id
    "timeout": The create timeout in seconds
    "last-state": The last state reported by the server
    """

    pass


class SessionCreateFailed(OperationalError):
    """Thrown if the server reports a permanent failure while starting a session.
    Its context will have the following keys:
    "session-id": The Livy session id (if one was assigned)
    "last-state": The terminal state reported by the server
    "log": The tail of the session log
    """

    pass


class SessionExpiredError(OperationalError):
    """Thrown if a session the client still holds is dead or unknown to the server."""

    pass


class SessionNotIdle(ProgrammingError):
    """Thrown if a statement is submitted to a session that already has one in flight."""

    pass


### Statement execution ###
class ExecutionError(OperationalError):
    """Thrown if a statement could not be executed or observed to completion.
    Its context will have the following keys:
    "session-id": The Livy session id
    "statement-id": The Livy statement id (if one was assigned)
    "trace": The remote trace or local failure description
    """

    @property
    def trace(self):
        return self.context.get("trace") or self.message


class ExecutionTimeout(ExecutionError):
    """Thrown if a statement did not reach a terminal state within the operation timeout.
    A best-effort cancel has already been issued when this is raised."""

    pass


class ExecutionCancelled(ExecutionError):
    """Thrown if a statement ended because it was cancelled, by the caller or a timeout."""

    pass


### Non-fatal conditions ###
class SegmentationDegenerate(Warning):
    """A source block ended inside a string, comment or open bracket. The final unit is
    still produced and tagged as possibly incomplete."""

    pass


class VersionDiscoveryUnavailable(Warning):
    """The server has no version endpoint; the client falls back to the legacy feature set."""

    pass
