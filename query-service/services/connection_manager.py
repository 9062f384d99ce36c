import logging
import re
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import settings
from utils.errors import ErrorCode, QueryServiceError

logger = logging.getLogger(__name__)


def mask_connection_string(connection_string: str) -> str:
    """Hide credentials before a connection string is logged."""
    return re.sub(r"//([^:/@]+):([^@]+)@", "//*****:*****@", connection_string)


def create_client(connection_string: str) -> MongoClient:
    return MongoClient(
        connection_string,
        serverSelectionTimeoutMS=settings.connection_timeout_ms,
        maxPoolSize=settings.max_pool_size,
        minPoolSize=settings.min_pool_size,
        retryWrites=True,
        retryReads=True,
    )


def connect_with_retry(
    connection_string: str,
    max_retries: int = 2,
    backoff_ms: int = 1000,
    client_factory: Callable[[str], MongoClient] = create_client,
    sleep: Callable[[float], None] = time.sleep,
) -> MongoClient:
    """
    Open a client and verify the server is reachable.

    Makes ``max_retries + 1`` attempts in total, waiting ``backoff_ms * n``
    after the n-th failure.

    Raises:
        QueryServiceError: CONNECTION_ERROR once every attempt has failed
    """
    last_error: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        client = None
        try:
            client = client_factory(connection_string)
            # MongoClient connects lazily; force server selection now
            client.admin.command("ping")
            return client
        except PyMongoError as e:
            last_error = e
            logger.warning(
                "⚠️ Connection attempt %d/%d to %s failed: %s",
                attempt + 1, max_retries + 1, mask_connection_string(connection_string), e
            )
            if client is not None:
                client.close()
            if attempt < max_retries:
                sleep(backoff_ms * (attempt + 1) / 1000)

    raise QueryServiceError(
        ErrorCode.CONNECTION_ERROR,
        f"Failed to connect after {max_retries + 1} attempts: {last_error}"
    )


@contextmanager
def mongo_connection(connection_string: str, **kwargs) -> Iterator[MongoClient]:
    """
    Scoped client for a single request; the client is closed on every exit path.
    """
    kwargs.setdefault("max_retries", settings.connect_max_retries)
    kwargs.setdefault("backoff_ms", settings.connect_backoff_ms)
    client = connect_with_retry(connection_string, **kwargs)
    try:
        yield client
    finally:
        try:
            client.close()
            logger.debug("🔌 MongoDB connection closed")
        except PyMongoError as e:
            logger.error("Error closing MongoDB connection: %s", e)


def default_database(client: MongoClient):
    """Database named in the connection string, falling back to the configured default."""
    return client.get_default_database(default=settings.default_database)
