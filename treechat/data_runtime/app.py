from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from loguru import logger

from treechat.data_runtime.cache import Cache
from treechat.data_runtime.client import DataClient, RetryPolicy
from treechat.data_runtime.commands import CommandExecutor
from treechat.data_runtime.errors import DataAccessError
from treechat.data_runtime.filesystem import FileSystem
from treechat.data_runtime.log import setup_logging
from treechat.data_runtime.models.enums import ConnectionState, ErrorKind
from treechat.data_runtime.settings import TreeChatSettings, get_settings
from treechat.data_runtime.store.base import DocumentStore
from treechat.data_runtime.store.memory import InMemoryDocumentStore
from treechat.data_runtime.sync import SyncTracker

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def create_document_store(settings: TreeChatSettings) -> DocumentStore:
    """Create the document store backend based on configuration."""
    if settings.document_store == "dynamodb":
        from treechat.data_runtime.store.dynamodb import DynamoDBDocumentStore

        return DynamoDBDocumentStore(
            table_name=settings.dynamodb_table,
            region=settings.dynamodb_region,
            endpoint_url=settings.dynamodb_endpoint,
            access_key=settings.dynamodb_access_key.get_secret_value() if settings.dynamodb_access_key else None,
            secret_key=settings.dynamodb_secret_key.get_secret_value() if settings.dynamodb_secret_key else None,
        )
    return InMemoryDocumentStore()


def build_filesystem(settings: TreeChatSettings, store: DocumentStore | None = None) -> FileSystem:
    """Wire store -> client -> cache/tracker/executor -> filesystem."""
    client = DataClient(
        store if store is not None else create_document_store(settings),
        retry=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            attempt_timeout=settings.attempt_timeout,
        ),
        max_tree_items=settings.max_tree_items,
        max_value_bytes=settings.max_value_bytes,
    )
    cache = Cache(ttl=settings.cache_ttl, max_size=settings.cache_max_size)
    tracker = SyncTracker(cache)
    return FileSystem(client, cache, CommandExecutor(cache, tracker), tracker)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level)

    auth_token = settings.resolve_auth_token()
    if not settings.auth_token:
        logger.warning("No TREECHAT_AUTH_TOKEN set -- generated token: {}", auth_token)
    _app.state.auth_token = auth_token

    logger.info("Data runtime starting (host={}, port={})", settings.host, settings.port)
    if settings.document_store == "dynamodb":
        logger.info("Document store: dynamodb (table={})", settings.dynamodb_table)
    else:
        logger.warning("Document store: memory -- data is lost on restart")

    fs = build_filesystem(settings)
    _app.state.fs = fs
    if fs.tracker is not None:
        fs.tracker.set_connection_state(ConnectionState.CONNECTED)

    yield

    # -- Shutdown --------------------------------------------------------------
    stats = fs.cache.stats
    logger.info(
        "Data runtime shutting down (cache hits={}, misses={}, invalidations={})",
        stats.hits,
        stats.misses,
        stats.invalidations,
    )
    if fs.tracker is not None:
        fs.tracker.set_connection_state(ConnectionState.DISCONNECTED)


app = FastAPI(title="TreeChat Data Runtime", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Error mapping -- domain errors become {"error": {...}} bodies
# ---------------------------------------------------------------------------
_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.TRANSACTION_FAILED: 409,
    ErrorKind.TOO_MANY_ITEMS: 413,
    ErrorKind.BATCH_SIZE_EXCEEDED: 413,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.PARTIAL_FAILURE: 500,
    ErrorKind.STORE_ERROR: 500,
}


@app.exception_handler(DataAccessError)
async def data_access_error_handler(_request: Request, exc: DataAccessError) -> JSONResponse:
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("{} -> {}: {}", exc.kind, status_code, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    error = {
        "kind": str(ErrorKind.VALIDATION),
        "message": "Malformed request body",
        "retryable": False,
        "details": {"errors": _jsonable_errors(exc)},
    }
    return JSONResponse(status_code=400, content={"error": error})


def _jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


# ---------------------------------------------------------------------------
# API router -- all endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


from treechat.data_runtime.routers.data import router as data_router  # noqa: E402
from treechat.data_runtime.routers.fs import router as fs_router  # noqa: E402

api.include_router(data_router)
api.include_router(fs_router)

app.include_router(api)
