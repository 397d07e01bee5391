import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from marketchat.config import get_settings
from marketchat.database.connection import close_mongo_connection, connect_to_mongo
from marketchat.errors import ChatError, ConflictError, NotFoundError, TransientStoreError, ValidationError
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.routers.accounts import router as accounts_router
from marketchat.routers.chat import router as chat_router
from marketchat.routers.conversations import router as conversations_router
from marketchat.routers.devices import router as devices_router


settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    db = await connect_to_mongo()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    logger.info("%s started", settings.APP_NAME)
    try:
        yield
    finally:
        await close_mongo_connection()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


_STATUS_BY_ERROR = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    TransientStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(devices_router)
app.include_router(accounts_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
