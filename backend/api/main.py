import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from api.admin_routes import router as admin_router
from api.internal_routes import router as internal_router
from api.limits import limiter
from api.routes import router
from api.social_routes import router as social_router
from config import CORS_ORIGINS_EXTRA
from core.errors import GameError
from infrastructure.database import close_db, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


# При allow_credentials=True нельзя использовать allow_origins=["*"]: браузер требует явный origin
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
] + list(CORS_ORIGINS_EXTRA)

app = FastAPI(
    title="Eldergrove Economy API",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(
    RateLimitExceeded,
    lambda r, e: JSONResponse(status_code=429, content={"detail": "Too many requests"}),
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)
app.include_router(social_router)
app.include_router(internal_router)
app.include_router(admin_router)


def _cors_headers_for_request(request: Request) -> dict:
    """Заголовки CORS по Origin запроса (только если origin в разрешённом списке)."""
    origin = request.headers.get("origin")
    if origin and origin in CORS_ORIGINS:
        return {"Access-Control-Allow-Origin": origin}
    return {}


async def game_error_handler(request: Request, exc: GameError) -> JSONResponse:
    """Отказ игрового правила: статус по классу ошибки, тело {"detail", "error"}."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def exception_handler_500(request: Request, exc: Exception) -> JSONResponse:
    """Необработанные исключения: 500 + CORS. HTTPException пробрасываем дальше (обрабатывает FastAPI)."""
    if isinstance(exc, HTTPException):
        raise exc
    logger.exception(exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error"},
        headers=_cors_headers_for_request(request),
    )


app.add_exception_handler(GameError, game_error_handler)
app.add_exception_handler(Exception, exception_handler_500)


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=8000)
