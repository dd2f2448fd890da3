"""Viewer identity for API requests.

Authentication happens upstream; this package only reads the identity the
upstream layer forwards and enforces the internal header where required.
"""

from marginalia.auth.middleware import Viewer, ViewerMiddleware, get_viewer

__all__ = [
    "Viewer",
    "ViewerMiddleware",
    "get_viewer",
]
