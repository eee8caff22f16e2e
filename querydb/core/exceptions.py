from enum import Enum
from typing import Any, List, Optional


class ErrorKind(Enum):
    """Failure kinds surfaced to callers."""

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    ROW_COUNT = "row_count"
    EXECUTION = "execution"
    COMPILE = "compile"


class QueryError(Exception):
    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.path = path


class QueryNotFoundError(QueryError):
    """The query file (or migration script) does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}", path)


class QueryTimeoutError(QueryError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, path: str, timeout: float):
        super().__init__(f"Request timed out after {timeout}s: {path}", path)
        self.timeout = timeout


class RowCountError(QueryError):
    """A shaping helper got fewer or more rows than it requires."""

    kind = ErrorKind.ROW_COUNT

    def __init__(self, expected: int, actual: int, path: Optional[str] = None):
        if actual > expected:
            message = f"Too many rows. Expected {expected}, obtained {actual}."
        else:
            message = f"Too few rows. Expected {expected}, obtained none."
        super().__init__(message, path)
        self.expected = expected
        self.actual = actual


class QueryExecutionError(QueryError):
    kind = ErrorKind.EXECUTION

    def __init__(
        self,
        text: str,
        parameters: List[Any],
        error: Exception,
        path: Optional[str] = None,
    ):
        super().__init__(f"Error executing query {path or '<unsafe>'}: {error}", path)
        self.text = text
        self.parameters = parameters
        self.error = error


class ScriptCompileError(QueryError):
    kind = ErrorKind.COMPILE

    def __init__(self, path: Optional[str], error: Exception):
        super().__init__(f"Error while compiling query script {path}: {error}", path)
        self.error = error
