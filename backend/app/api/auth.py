############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# auth.py: Requester identity and orchestrator dependencies
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Requester identity.

Authentication happens in the front end; it forwards the caller as
X-User-Id and X-User-Role headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from backend.app.core.orchestrator import Orchestrator

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Requester:
    """Who is calling."""
    user_id: Optional[str]
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == ADMIN_ROLE


def get_orchestrator(request: Request) -> Orchestrator:
    """The orchestrator built at startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized",
        )
    return orchestrator


async def get_requester(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Requester:
    user_id = x_user_id.strip() if x_user_id else None
    return Requester(user_id=user_id or None, role=x_user_role)


async def require_user(requester: Requester = Depends(get_requester)) -> Requester:
    """Dependency that requires an identified caller."""
    if not requester.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return requester


def require_admin():
    """Dependency that requires the admin role."""
    async def check_admin(requester: Requester = Depends(require_user)) -> Requester:
        if not requester.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin access required",
            )
        return requester
    return check_admin
