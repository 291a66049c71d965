"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi.requests import HTTPConnection

if TYPE_CHECKING:  # pragma: no cover
    from integrations.twilio_streaming import LinkFactory
    from relay.registry import SessionRegistry


def get_registry(connection: HTTPConnection) -> SessionRegistry:
    return connection.app.state.registry


def get_link_factory(connection: HTTPConnection) -> LinkFactory:
    return connection.app.state.link_factory
