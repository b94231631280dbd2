"""
ASGI entry point.

This module exposes the FastAPI application instance defined in the
`epub2audio.main` module, so hosting platforms that import a root level
`main.py` and look for an object called `app` can serve it directly.

Usage:
    uvicorn main:app --reload
"""

from epub2audio.main import app as app  # noqa: F401  re-export FastAPI instance
