import os
import logfire

from dotenv import load_dotenv

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from contextlib import asynccontextmanager

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from models.users import User

from routers import auth, users, health

from security.errors import CredentialError, StoreUnavailable
from security.helpers import credential_error_response
from security.settings import get_token_settings
from services.user_store import BeanieUserStore, InMemoryUserStore, configure_user_store

from utils.logger import instrument_libraries


# Load environment variables first
load_dotenv()

# Configure logfire BEFORE creating FastAPI app
logfire.configure(
    token=os.getenv("LOGFIRE_WRITE_TOKEN"),
    send_to_logfire="if-token-present",
    service_name="clipnex-session",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logfire.info("Starting Clipnex session service...")

    get_token_settings()  # Fail fast on missing signing secrets

    client = None
    connection_string = os.getenv("DATABASE_CONNECTION_STRING")

    if connection_string:
        client = AsyncIOMotorClient(connection_string)  # * Connect to MongoDB

        await init_beanie(
            database=client[os.getenv("DATABASE_NAME", "clipnex")],
            document_models=[User],
        )
        configure_user_store(BeanieUserStore())
        logfire.info("Database initialized successfully")
    else:
        configure_user_store(InMemoryUserStore())
        logfire.warning("DATABASE_CONNECTION_STRING not set, using in-memory user store")

    yield

    logfire.info("Shutting down Clipnex session service...")
    if client is not None:
        client.close()
    logfire.info("Application shutdown complete")


app = FastAPI(
    title="Clipnex Session API",
    description="Issues, verifies, rotates and revokes the access and refresh credentials of the Clipnex video platform.",
    lifespan=lifespan,
)

if os.getenv("LOGFIRE_WRITE_TOKEN"):
    instrument_libraries(app)


@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError):
    return credential_error_response(exc)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable"},
        headers={"Retry-After": "5"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:5173").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
)
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["127.0.0.1"])
app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(health.router)
