from fastapi import Depends, HTTPException, status

from provisioning.core.security import get_current_member
from provisioning.models.member import Member


def require_roles(*required: str):
    """
    Usage:
      Depends(require_roles("admin"))
      Depends(require_roles("admin", "manager"))  # any-of
    """
    required_set = set(required)

    def _dep(member: Member = Depends(get_current_member)) -> Member:
        if member.role not in required_set:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Forbidden. Requires one of: {sorted(required_set)}",
            )
        return member

    return _dep
