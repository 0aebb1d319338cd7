"""
Shared validation helpers for API routes.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import Request

from app.core.errors import ValidationFailed
from app.services.broadcast import ActivityBroadcaster


def require_organization_id(organization_id: Optional[UUID]) -> UUID:
    """Every audit route is organization scoped"""
    if not organization_id:
        raise ValidationFailed("Organization ID is required")
    return organization_id


def get_broadcaster(request: Request) -> ActivityBroadcaster:
    """The broadcaster built by the application lifespan"""
    return request.app.state.broadcaster
