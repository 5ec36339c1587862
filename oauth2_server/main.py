"""
OAuth2 client-credentials token service.
POST /auth/token issues bearer tokens, GET /auth/authenticate and GET /secret check them.
Port 3000 by default (PORT).
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from starlette.exceptions import HTTPException as StarletteHTTPException

from oauth2_server.audit import router as audit_router
from oauth2_server.authenticate import require_access_token
from oauth2_server.authenticate import router as authenticate_router
from oauth2_server.config import HOST, LOG_LEVEL, PORT
from oauth2_server.database import SessionLocal, close_db, init_db
from oauth2_server.entities import Token
from oauth2_server.oauth2_model import TokenAuthorizationModel
from oauth2_server.seed import seed_from_env
from oauth2_server.store import SQLAlchemyEntityStore
from oauth2_server.token_endpoint import router as token_router

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed the configured client, build the model; dispose the engine on shutdown."""
    await init_db()
    store = SQLAlchemyEntityStore(SessionLocal)
    await seed_from_env(store)
    app.state.oauth_model = TokenAuthorizationModel(store)
    logger.info("oauth2_server ready")
    try:
        yield
    finally:
        await close_db()


app = FastAPI(title="OAuth2 Server", version="1.0.0", lifespan=lifespan)
app.include_router(token_router, tags=["token"])
app.include_router(authenticate_router, tags=["authenticate"])
app.include_router(audit_router)


@app.exception_handler(StarletteHTTPException)
async def hide_method_not_allowed(request: Request, exc: StarletteHTTPException):
    """Known path, wrong method: answer 404 like any unknown route."""
    if exc.status_code == 405:
        exc = StarletteHTTPException(status_code=404, detail="Not Found")
    return await http_exception_handler(request, exc)


@app.get("/")
async def index():
    return {"message": "hello world"}


@app.get("/healthz")
async def healthz():
    """Health check endpoint."""
    return {"status": "ok", "service": "oauth2_server"}


@app.get("/secret")
async def secret(token: Token = Depends(require_access_token)):
    """Any valid bearer token will do."""
    return {"message": "Ooh I hope nobody gets their hands on me Strawberry Smiggles"}


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run("oauth2_server.main:app", host=HOST, port=PORT)
