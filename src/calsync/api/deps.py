"""Dependencies for the calsync API.

Provides:
- the ``CalsyncService`` singleton, created by the app lifespan;
- ``get_auth_context``, which identifies the calling user. The default reads
  the ``X-Calsync-User`` header set by a trusted gateway; deployments with
  their own authentication override it via ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Header, HTTPException

from calsync.config import CalsyncConfig
from calsync.service import CalsyncService, build_service

logger = logging.getLogger(__name__)

USER_HEADER = "X-Calsync-User"


@dataclass(frozen=True)
class AuthContext:
    user_id: str


def get_auth_context(
    x_calsync_user: str | None = Header(default=None, alias=USER_HEADER),
) -> AuthContext:
    """FastAPI dependency: the authenticated caller."""
    user_id = (x_calsync_user or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return AuthContext(user_id=user_id)


# ---------------------------------------------------------------------------
# Service singleton
# ---------------------------------------------------------------------------

_service: CalsyncService | None = None


async def init_service(config: CalsyncConfig) -> CalsyncService:
    """Build the service singleton. Called once from the lifespan handler."""
    global _service  # noqa: PLW0603
    _service = await build_service(config)
    return _service


def set_service(service: CalsyncService | None) -> None:
    """Install a prebuilt service (tests and embedding applications)."""
    global _service  # noqa: PLW0603
    _service = service


async def shutdown_service() -> None:
    global _service  # noqa: PLW0603
    if _service is not None:
        await _service.aclose()
        _service = None


def get_service() -> CalsyncService:
    """FastAPI dependency: provides the CalsyncService singleton."""
    if _service is None:
        raise RuntimeError("CalsyncService not initialized; call init_service() first")
    return _service
