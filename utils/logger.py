"""Universal logging setup for the application."""

import logfire
from logging import getLogger

from fastapi import FastAPI

# Create a universal logger instance that can be imported anywhere
logger = getLogger("clipnex_session")


def get_logger(name: str = "clipnex_session"):
    """Get a logger with optional context name."""
    return getLogger(name)


def instrument_libraries(app: FastAPI):
    """Instrument the app and the libraries it talks to for better observability."""
    logfire.instrument_fastapi(app)
    logfire.instrument_httpx()
    logfire.instrument_pymongo()
    logger.info("Instrumented FastAPI, httpx and pymongo with logfire")
