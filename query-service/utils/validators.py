import json
import re
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from agents.query_models import (
    DANGEROUS_OPERATIONS,
    GeneratedQuery,
    QueryEnvelope,
    generated_query_adapter,
)
from config import settings
from utils.errors import ErrorCode, QueryServiceError


class QueryRequest(BaseModel):
    """Body of ``POST /api/mongodb/query``."""

    schema_: str = Field(..., alias="schema", min_length=1, max_length=settings.max_schema_length)
    userRequest: str = Field(..., min_length=1, max_length=settings.max_request_length)
    connectionString: str
    dryRun: StrictBool = False

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "schema": "users: {name: string, age: number, city: string}",
                "userRequest": "Users over 30 in Boston",
                "connectionString": "mongodb://localhost:27017/sample_shop",
                "dryRun": False
            }
        }
    )

    @field_validator("connectionString")
    @classmethod
    def _mongodb_scheme(cls, value: str) -> str:
        if not value.startswith("mongodb"):
            raise ValueError("Connection string must start with 'mongodb'")
        return value


class DatabaseRequest(BaseModel):
    """Body of ``POST /api/db/info``."""

    connectionString: str

    @field_validator("connectionString")
    @classmethod
    def _mongodb_scheme(cls, value: str) -> str:
        if not value.startswith("mongodb"):
            raise ValueError("Connection string must start with 'mongodb'")
        return value


class SchemaRequest(DatabaseRequest):
    """Body of ``POST /api/db/schema``."""

    sampleSize: int = Field(settings.schema_sample_size, ge=1, le=100)


def _first_issue(exc: ValidationError) -> str:
    issue = exc.errors()[0]
    location = ".".join(str(part) for part in issue.get("loc", ()) if part != "body")
    message = issue.get("msg", "Validation error")
    return f"{location}: {message}" if location else message


def validate_request_body(payload: Any, model=QueryRequest):
    """
    Validate an inbound request body.

    Raises:
        QueryServiceError: VALIDATION_ERROR carrying the first issue found
    """
    if not isinstance(payload, dict):
        raise QueryServiceError(ErrorCode.VALIDATION_ERROR, "Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise QueryServiceError(ErrorCode.VALIDATION_ERROR, _first_issue(e)) from e


def sanitize_input(text: str) -> str:
    """
    Strip characters that could smuggle markup or template syntax into the prompt.
    """
    # Remove control characters but keep newlines and tabs for schemas
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]', '', text)
    text = re.sub(r'[<>]', '', text)
    text = re.sub(r'\$\{.*?\}', '', text)
    text = text.replace('`', "'")
    return text.strip()


def is_blank_schema(schema: str) -> bool:
    return not schema or schema.strip() in ("", "{}")


def validate_mql_safety(raw_query: Dict[str, Any]) -> None:
    """
    Reject mass mutations that carry no explicit filter.

    Raises:
        QueryServiceError: UNSAFE_OPERATION for updateMany/deleteMany without a non-empty filter
    """
    operation = raw_query.get("operation")
    if operation not in DANGEROUS_OPERATIONS:
        return

    body = raw_query.get("query")
    query_filter = body.get("filter") if isinstance(body, dict) else None
    if not isinstance(query_filter, dict) or not query_filter:
        raise QueryServiceError(
            ErrorCode.UNSAFE_OPERATION,
            f"{operation} requires a non-empty filter to prevent mass modifications"
        )


def parse_generated_query(raw: str) -> GeneratedQuery:
    """
    Turn raw LLM output into a validated query.

    Steps: JSON parse, envelope check (operation, collection, query present),
    safety gate, then the per-operation shape check.

    Raises:
        QueryServiceError: LLM_PARSING_ERROR or UNSAFE_OPERATION
    """
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise QueryServiceError(ErrorCode.LLM_PARSING_ERROR, f"LLM returned invalid JSON: {e}") from e

    if isinstance(parsed, dict) and "error" in parsed and "operation" not in parsed:
        # The prompt lets the model refuse with {"error": "..."}
        raise QueryServiceError(ErrorCode.LLM_PARSING_ERROR, f"LLM could not generate a query: {parsed['error']}")

    try:
        QueryEnvelope.model_validate(parsed)
    except ValidationError as e:
        raise QueryServiceError(ErrorCode.LLM_PARSING_ERROR, f"Invalid query structure: {_first_issue(e)}") from e

    validate_mql_safety(parsed)

    try:
        return generated_query_adapter.validate_python(parsed)
    except ValidationError as e:
        raise QueryServiceError(ErrorCode.LLM_PARSING_ERROR, f"Invalid query structure: {_first_issue(e)}") from e
