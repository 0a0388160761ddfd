"""Approver authority — who may approve or reject whose leave.

The lifecycle consumes the answer as a plain boolean; the directory
implementation below is the default source of that fact.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.dependencies import has_role
from leaveflow.common.constants import UserRole
from leaveflow.core_hr.models import Employee


class ApproverAuthority(Protocol):
    async def is_authorized_approver(
        self,
        db: AsyncSession,
        approver: Employee,
        requester: Employee,
    ) -> bool:
        ...


class DirectoryAuthority:
    """Direct manager of the requester, or anyone with an hr/admin role.

    Nobody approves their own request.
    """

    async def is_authorized_approver(
        self,
        db: AsyncSession,
        approver: Employee,
        requester: Employee,
    ) -> bool:
        if approver.id == requester.id:
            return False
        if requester.manager_id == approver.id:
            return True
        return has_role(approver, UserRole.hr)


default_authority = DirectoryAuthority()
