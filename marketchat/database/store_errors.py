from contextlib import asynccontextmanager

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)

from marketchat.errors import ConflictError, TransientStoreError


_TRANSIENT = (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError)


@asynccontextmanager
async def store_call(operation: str):
    """Translate driver failures raised inside the block into chat errors."""
    try:
        yield
    except DuplicateKeyError as exc:
        raise ConflictError(f"{operation}: document already exists") from exc
    except _TRANSIENT as exc:
        raise TransientStoreError(f"{operation}: {exc}") from exc
