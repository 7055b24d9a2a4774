"""
Models for the Livy REST backend.

This package contains data models for Livy API requests and responses.
"""

from livy_interpreter.backend.models.requests import (
    CreateSessionRequest,
    ExecuteStatementRequest,
    CompletionRequest,
)

from livy_interpreter.backend.models.responses import (
    SessionInfo,
    StatementOutput,
    StatementInfo,
    VersionResponse,
    CompletionResponse,
)

__all__ = [
    # Request models
    "CreateSessionRequest",
    "ExecuteStatementRequest",
    "CompletionRequest",
    # Response models
    "SessionInfo",
    "StatementOutput",
    "StatementInfo",
    "VersionResponse",
    "CompletionResponse",
]
