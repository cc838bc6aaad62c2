"""
Entrypoint module for uvicorn.

Run as:

    uvicorn devicewatch.main:app
"""

from devicewatch.config import configure_logging

configure_logging()

from devicewatch.api import app  # noqa: E402  FastAPI app
