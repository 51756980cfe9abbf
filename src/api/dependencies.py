"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi.requests import HTTPConnection

if TYPE_CHECKING:  # pragma: no cover
    from bridge.session import SessionManager


def get_session_manager(connection: HTTPConnection) -> SessionManager:
    return connection.app.state.session_manager
