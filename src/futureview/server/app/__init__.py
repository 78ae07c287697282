"""Server bootstrap and the viewer notification endpoint."""

from .render_server import FutureViewServer, main

__all__ = ["FutureViewServer", "main"]
