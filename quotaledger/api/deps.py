"""
Calling-principal dependencies.

The principal (id, role, organization) arrives from the upstream
authentication layer as headers. It is consumed as input; tokens are not
validated here.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from quotaledger.core.config import settings
from quotaledger.core.errors import PermissionError

logger = logging.getLogger("quotaledger.api")


@dataclass(frozen=True)
class Principal:
    principal_id: Optional[str]
    role: Optional[str]
    organization_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.role) and self.role.upper() in settings.admin_roles()


def get_principal(
    x_principal_id: Optional[str] = Header(None),
    x_principal_role: Optional[str] = Header(None),
    x_principal_org: Optional[str] = Header(None),
) -> Principal:
    return Principal(principal_id=x_principal_id, role=x_principal_role, organization_id=x_principal_org)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Admin routes: role must be one of ADMIN_ROLES."""
    if not principal.is_admin:
        logger.warning(
            "admin.access_denied",
            extra={"error_code": "forbidden", "actor_id": principal.principal_id, "role": principal.role},
        )
        raise PermissionError(
            "Insufficient permissions for subscription administration",
            details={"required_roles": settings.admin_roles()},
        )
    return principal


def require_org_access(org_id: str, principal: Principal = Depends(get_principal)) -> Principal:
    """Organization routes: the principal's organization must match, unless admin."""
    if principal.is_admin or principal.organization_id in (None, org_id):
        return principal
    logger.warning(
        "org.access_denied",
        extra={"error_code": "forbidden", "organization_id": org_id, "actor_id": principal.principal_id},
    )
    raise PermissionError("Principal does not belong to this organization")
