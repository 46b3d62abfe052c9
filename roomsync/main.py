import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from roomsync.core.config import get_settings
from roomsync.core.exceptions import NotFoundError, QueryError, WriteError
from roomsync.database.connection import close_store_connection, connect_to_store
from roomsync.routers.messages import router as messages_router
from roomsync.routers.rooms import router as rooms_router

settings = get_settings()

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_store()
    try:
        yield
    finally:
        await close_store_connection()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)


app.include_router(rooms_router)
app.include_router(messages_router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(WriteError)
@app.exception_handler(QueryError)
async def store_error_handler(request: Request, exc: Exception):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Document store unavailable."})


@app.get("/")
async def root():

    return {"message": f"{settings.PROJECT_NAME} is running", "store": settings.STORE_BACKEND}
