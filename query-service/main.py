import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from agents.mongodb_agent import MongoQueryAgent
from config import settings
from services.llm_service import create_llm
from utils.errors import ErrorCode, QueryServiceError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger("query_service")

# Global agent instance
agent: Optional[MongoQueryAgent] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    global agent

    logger.info("Starting MongoDB Query Service (LLM provider: %s)", settings.llm_provider)

    llm, llm_metadata = create_llm()
    agent = MongoQueryAgent(llm=llm, llm_metadata=llm_metadata)
    logger.info("MongoDB Query Agent initialized successfully")

    yield

    logger.info("MongoDB Query Service shutting down")


# Create FastAPI app
app = FastAPI(
    title="MongoDB Query Service",
    description="Natural language queries against MongoDB, translated by an LLM",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class QueryResponse(BaseModel):
    success: bool
    result: Any = None
    dataset: Optional[Dict[str, Any]] = None
    generatedQuery: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = {}


class HealthResponse(BaseModel):
    status: str
    service: str
    llm_provider: str
    llm_model: str
    caches: Dict[str, Any]


@app.exception_handler(QueryServiceError)
async def query_service_error_handler(request: Request, exc: QueryServiceError):
    logger.error("%s %s failed: [%s] %s", request.method, request.url.path, exc.code.value, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def _require_agent() -> MongoQueryAgent:
    if not agent:
        raise HTTPException(status_code=503, detail="Agent not initialized")
    return agent


def caller_identity(request: Request) -> str:
    """
    Identify the caller for rate limiting.

    Uses the first X-Forwarded-For hop, then X-Real-IP, then the peer address.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and forwarded.split(",")[0].strip():
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    raise QueryServiceError(
        ErrorCode.UNKNOWN_ERROR,
        "Unable to determine caller identity for rate limiting; check proxy configuration"
    )


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise QueryServiceError(ErrorCode.VALIDATION_ERROR, "Request body must be valid JSON") from e


# Routes
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint"""
    return {
        "service": "MongoDB Query Service",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "health": "/health",
            "query": "/api/mongodb/query (POST)",
            "schema": "/api/db/schema (POST)",
            "info": "/api/db/info (POST)",
            "docs": "/docs"
        }
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    current = _require_agent()
    return {
        "status": "healthy",
        "service": "MongoDB Query Service",
        "llm_provider": current.llm_metadata["provider"],
        "llm_model": current.llm_metadata["model"],
        "caches": current.stats()
    }


@app.post("/api/mongodb/query", response_model=QueryResponse, tags=["Query"])
async def mongodb_query(request: Request):
    """
    Translate a natural language request into a MongoDB operation and run it.

    The rate limit is applied before the body is parsed so rejected callers
    never reach the LLM or the database.
    """
    current = _require_agent()
    current.check_rate_limit(caller_identity(request))

    payload = await _read_json(request)

    try:
        result = await run_in_threadpool(current.process_query, payload)
    except QueryServiceError:
        raise
    except Exception as e:
        logger.exception("Unexpected error in /api/mongodb/query")
        raise QueryServiceError(ErrorCode.UNKNOWN_ERROR, str(e) or "Internal server error") from e

    return QueryResponse(**result)


@app.post("/api/db/schema", tags=["Metadata"])
async def database_schema(request: Request):
    """Summarize the field types of every collection in the target database."""
    current = _require_agent()
    payload = await _read_json(request)

    try:
        summary = await run_in_threadpool(current.describe_schema, payload)
    except QueryServiceError:
        raise
    except Exception as e:
        logger.exception("Unexpected error in /api/db/schema")
        raise QueryServiceError(ErrorCode.UNKNOWN_ERROR, str(e) or "Internal server error") from e

    return summary


@app.post("/api/db/info", tags=["Metadata"])
async def database_info(request: Request):
    """List collections in the target database with their document counts."""
    current = _require_agent()
    payload = await _read_json(request)

    try:
        info = await run_in_threadpool(current.describe_database, payload)
    except QueryServiceError:
        raise
    except Exception as e:
        logger.exception("Unexpected error in /api/db/info")
        raise QueryServiceError(ErrorCode.UNKNOWN_ERROR, str(e) or "Internal server error") from e

    return info


# Run server
if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
