from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.env import env_list, load_env_file
from core.logging import setup_logging
from web import routers
from web.middleware.auth_context import auth_context_middleware

load_env_file()
setup_logging()

app = FastAPI(
    title="Portal Identity API",
    description="Multi-channel sign-in, MFA, channel binding and portal scope.",
    version="0.1.0",
)

origins = list(env_list("CORS_ALLOWED_ORIGINS", ("http://localhost:3000",)))

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_session_claims(request: Request, call_next):
    """Validate bearer tokens once and expose the claims on request.state."""
    return await auth_context_middleware(request, call_next)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    return {"status": "ok", "message": "Portal Identity API is running."}


@app.get("/healthz", include_in_schema=False)
def readiness_probe():
    db_ok, db_error = routers.health.ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


app.include_router(routers.auth.router, prefix="/api/v1")
app.include_router(routers.identity.router, prefix="/api/v1")
app.include_router(routers.health.router, prefix="/api/v1")
