"""
Authorization server for the tool-execution server.
GET/POST /authorize, POST /token, POST /revoke, metadata, audit trail and health.
"""
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from tool_oauth.audit import router as audit_router
from tool_oauth.authorize import router as authorize_router
from tool_oauth.provider import AuthorizationProvider, get_provider
from tool_oauth.revoke import router as revoke_router
from tool_oauth.seed import seed_from_env
from tool_oauth.token_endpoint import router as token_router
from tool_oauth.well_known import router as well_known_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect storage, seed client from env on startup; stop the sweeper on shutdown."""
    provider = app.dependency_overrides.get(get_provider, get_provider)()
    provider.initialize()
    seed_from_env(provider)
    yield
    provider.close()


app = FastAPI(title="Tool OAuth", version="0.1.0", lifespan=lifespan)
app.include_router(authorize_router, tags=["authorize"])
app.include_router(token_router, tags=["token"])
app.include_router(revoke_router, tags=["revoke"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(audit_router)


@app.get("/health")
def health(provider: Annotated[AuthorizationProvider, Depends(get_provider)]):
    """Health check endpoint, including storage health."""
    result = provider.storage.health_check()
    body = {
        "status": "ok" if result.healthy else "degraded",
        "service": "tool_oauth",
        "storage": {
            "backend": provider.storage.name,
            "healthy": result.healthy,
            "message": result.message,
            "response_time_ms": round(result.response_time_ms, 3),
        },
    }
    return JSONResponse(body, status_code=200 if result.healthy else 503)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tool_oauth.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
