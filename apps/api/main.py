"""Thin API launcher.

This is the uvicorn entrypoint. All application logic lives in the marginalia package.
Run with: uvicorn main:app --reload

Note: The app instance is created here (not in marginalia.app) to avoid import-time
side effects. This allows tests to import create_app without requiring all
environment variables to be configured.
"""

from marginalia.app import create_app

# Request-id middleware is registered inside create_app, outermost
app = create_app()

__all__ = ["app"]
