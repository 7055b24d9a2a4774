"""
Constants for the Livy REST backend.
"""

from enum import Enum

# Livy rejects POST/DELETE without this header when CSRF protection is enabled
REQUESTED_BY_HEADER = ("X-Requested-By", "livy_interpreter")

VERSION_PATH = "/version"
SESSION_PATH = "/sessions"
SESSION_PATH_WITH_ID = SESSION_PATH + "/{}"
STATEMENT_PATH = SESSION_PATH_WITH_ID + "/statements"
STATEMENT_PATH_WITH_ID = STATEMENT_PATH + "/{}"
CANCEL_STATEMENT_PATH_WITH_ID = STATEMENT_PATH_WITH_ID + "/cancel"
COMPLETION_PATH = SESSION_PATH_WITH_ID + "/completion"

SESSION_LOG_TAIL_LINES = 20


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    DELETE = "DELETE"


class CancellationMessages(Enum):
    """Error texts Spark reports for a job killed through its job group.

    Older servers surface a cancelled statement as an ordinary error carrying one of
    these messages instead of moving it to the ``cancelled`` state.
    """

    JOB_CANCELLED = "Job is cancelled"
    JOB_GROUP_CANCELLED = "cancelled part of cancelled job group"
