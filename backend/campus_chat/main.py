import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import get_settings
from .core.errors import ChatError
from .db.database import engine
from .db import models
from .routes.auth_routes import router as auth_router
from .routes.chats import router as chats_router
from .routes.files import router as files_router
from .routes.messages import router as messages_router
from .routes.users import router as users_router
from .ws.sockets import ws_router

settings = get_settings()
logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)


app = FastAPI(title="Campus Chat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _envelope(status_code: int, message: str, headers=None, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra}, headers=headers)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return _envelope(exc.status_code, exc.message, headers=getattr(exc, "headers", None))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _envelope(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in exc.errors()]
    return _envelope(status.HTTP_400_BAD_REQUEST, "Validation failed", errors=errors)


@app.exception_handler(PydanticValidationError)
async def payload_validation_handler(request: Request, exc: PydanticValidationError):
    errors = [{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in exc.errors()]
    return _envelope(status.HTTP_400_BAD_REQUEST, "Validation failed", errors=errors)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    message = "Internal server error" if settings.is_production else f"Internal server error: {exc}"
    return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, message)


# Mount routers
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(chats_router)
app.include_router(messages_router)
app.include_router(files_router)
app.include_router(ws_router)


@app.get("/")
async def read_root():
    return {"message": "Welcome to the Campus Chat server"}
