import json
import logging
import time
from typing import Any, Callable, ContextManager, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from pymongo.errors import PyMongoError

from agents.query_executor import QueryExecutor
from agents.query_models import CACHEABLE_OPERATIONS, dump_query
from config import settings
from services.cache import QueryCache, RateLimiter
from services.connection_manager import default_database, mask_connection_string, mongo_connection
from services.llm_service import extract_text
from utils.errors import ErrorCode, QueryServiceError
from utils.prompt_builder import PromptBuilder
from utils.result_normalizer import result_to_dataset
from utils.schema_inference import infer_schema, summarize_schema
from utils.validators import (
    DatabaseRequest,
    QueryRequest,
    SchemaRequest,
    is_blank_schema,
    parse_generated_query,
    sanitize_input,
    validate_request_body,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You translate natural language into MongoDB queries. Respond with a single JSON object and nothing else."

Connector = Callable[[str], ContextManager[Any]]


class MongoQueryAgent:
    """
    Natural language to MongoDB query pipeline.

    Holds every piece of per-process state (prompt templates, result cache,
    rate-limit counters) so tests can build isolated instances with their
    own clock and collaborators.
    """

    def __init__(
        self,
        llm: Any,
        llm_metadata: Optional[Dict[str, Any]] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        result_cache: Optional[QueryCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        executor: Optional[QueryExecutor] = None,
        connector: Connector = mongo_connection,
        schema_sample_size: int = settings.schema_sample_size,
    ):
        """
        Args:
            llm: Client exposing ``invoke(messages)`` (see services.llm_service)
            llm_metadata: Provider/model description reported by /health
            connector: Callable returning a context manager that yields a connected client
        """
        self.llm = llm
        self.llm_metadata = llm_metadata or {"provider": "unknown", "model": "unknown"}
        self.prompt_builder = prompt_builder or PromptBuilder(
            max_cache_size=settings.prompt_cache_size,
            max_schema_length=settings.max_schema_length,
            timezone=settings.default_timezone,
        )
        self.result_cache = result_cache or QueryCache(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            schema_prefix=settings.cache_key_schema_prefix,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.executor = executor or QueryExecutor(
            query_timeout_ms=settings.query_timeout_ms,
            max_result_size=settings.max_result_size,
            parse_embedded_json=settings.parse_embedded_json,
        )
        self.connector = connector
        self.schema_sample_size = schema_sample_size

    def _generate_query_text(self, prompt: str) -> str:
        response = self.llm.invoke([
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=prompt),
        ])
        return extract_text(response)

    def check_rate_limit(self, caller_id: str) -> None:
        """
        Count a request against the caller's window.

        Raises:
            QueryServiceError: RATE_LIMIT_ERROR once the window is exhausted
        """
        if not self.rate_limiter.check(RateLimiter.make_key(caller_id)):
            raise QueryServiceError(ErrorCode.RATE_LIMIT_ERROR, "Rate limit exceeded. Please try again later.")

    def process_query(self, payload: Any) -> Dict[str, Any]:
        """
        Run one ``/api/mongodb/query`` request end to end.

        Callers apply check_rate_limit first. Order: body validation,
        connect, schema inference (if no schema was given), cache lookup,
        prompt, LLM, query validation, execution, cache write. The
        connection is released on every path.

        Returns:
            Success response body

        Raises:
            QueryServiceError: for every failure in the error taxonomy
        """
        start = time.perf_counter()

        request: QueryRequest = validate_request_body(payload)

        with self.connector(request.connectionString) as client:
            db = default_database(client)

            schema = request.schema_
            if is_blank_schema(schema):
                logger.info("No schema provided, inferring from %s", mask_connection_string(request.connectionString))
                schema = json.dumps(infer_schema(db, sample_size=self.schema_sample_size), indent=2)

            sanitized_schema = sanitize_input(schema)
            sanitized_request = sanitize_input(request.userRequest)

            cache_key = self.result_cache.make_key(sanitized_schema, sanitized_request)
            if not request.dryRun:
                cached = self.result_cache.get(cache_key)
                if cached is not None:
                    logger.info('Cache hit for: "%s..."', sanitized_request[:50])
                    return {
                        "success": True,
                        "result": cached["result"],
                        "dataset": cached["dataset"],
                        "generatedQuery": cached["query"],
                        "metadata": {
                            **cached["metadata"],
                            "cached": True,
                            "totalTimeMs": _elapsed_ms(start),
                        },
                    }

            logger.info('Generating query for: "%s..."', sanitized_request[:50])
            prompt = self.prompt_builder.build(sanitized_schema, sanitized_request)
            generated_text = self._generate_query_text(prompt)

            query = parse_generated_query(generated_text)
            logger.info("Generated query: operation=%s collection=%s", query.operation, query.collection)

            result, metadata = self.executor.execute(db, query, dry_run=request.dryRun)

        generated_query = dump_query(query)
        dataset = result_to_dataset(result) if isinstance(result, list) and result else None

        if not request.dryRun and query.operation in CACHEABLE_OPERATIONS:
            self.result_cache.set(cache_key, {
                "result": result,
                "dataset": dataset,
                "query": generated_query,
                "metadata": metadata,
            })

        total_time_ms = _elapsed_ms(start)
        logger.info(
            "✅ Success - %s on %s (%dms, affected: %s)",
            metadata["operation"], metadata["collection"], total_time_ms, metadata.get("affectedDocuments")
        )

        return {
            "success": True,
            "result": result,
            "dataset": dataset,
            "generatedQuery": generated_query,
            "metadata": {
                **metadata,
                "totalTimeMs": total_time_ms,
                "cached": False,
            },
        }

    def describe_schema(self, payload: Any) -> Dict[str, Any]:
        """Summarize field types per collection for ``/api/db/schema``."""
        request: SchemaRequest = validate_request_body(payload, SchemaRequest)

        with self.connector(request.connectionString) as client:
            db = default_database(client)
            return {
                "database": db.name,
                "schema": summarize_schema(db, sample_size=request.sampleSize),
            }

    def describe_database(self, payload: Any) -> Dict[str, Any]:
        """
        List the collections of the target database with document counts.

        Raises:
            QueryServiceError: VALIDATION_ERROR, CONNECTION_ERROR or QUERY_EXECUTION_ERROR
        """
        request: DatabaseRequest = validate_request_body(payload, DatabaseRequest)

        with self.connector(request.connectionString) as client:
            db = default_database(client)
            try:
                collections = [
                    {"name": name, "documentCount": db[name].count_documents({})}
                    for name in db.list_collection_names()
                ]
            except PyMongoError as e:
                raise QueryServiceError(ErrorCode.QUERY_EXECUTION_ERROR, f"MongoDB error: {e}") from e

            return {
                "database": db.name,
                "totalCollections": len(collections),
                "collections": collections,
            }

    def stats(self) -> Dict[str, Any]:
        return {
            "promptCache": self.prompt_builder.stats(),
            "resultCache": self.result_cache.stats(),
        }


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
