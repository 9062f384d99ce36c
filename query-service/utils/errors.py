from enum import Enum
from typing import Any, Dict


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    LLM_PARSING_ERROR = "LLM_PARSING_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    QUERY_EXECUTION_ERROR = "QUERY_EXECUTION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    UNSAFE_OPERATION = "UNSAFE_OPERATION"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


STATUS_CODES = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.LLM_PARSING_ERROR: 422,
    ErrorCode.CONNECTION_ERROR: 503,
    ErrorCode.QUERY_EXECUTION_ERROR: 400,
    ErrorCode.TIMEOUT_ERROR: 504,
    ErrorCode.RATE_LIMIT_ERROR: 429,
    ErrorCode.UNSAFE_OPERATION: 400,
    ErrorCode.UNKNOWN_ERROR: 500,
}


class QueryServiceError(Exception):
    """
    Failure surfaced to the caller as ``{success: false, error, errorCode}``.

    The HTTP status is derived from the error code so every raise site
    stays consistent with the response taxonomy.
    """

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "errorCode": self.code.value,
        }

    def __repr__(self) -> str:
        return f"QueryServiceError({self.code.value}, {self.message!r})"
