"""API dependencies (read-only)."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from discovery.core.controller import DiscoveryController


def get_controller(request: Request) -> DiscoveryController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Discovery engine not attached.",
        )
    return controller


def enforce_read_only_access(request: Request) -> None:
    if request.method not in ("GET", "HEAD", "OPTIONS"):
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, detail="Read-only API.")
