"""
Authorization matrix for file operations.
Pure predicates over (role, actor ministry, resource ministry); callers are
responsible for logging and auditing denials.
"""
import enum
from typing import Optional

from churchportal.models import Role


UPLOAD_ROLES = frozenset({Role.GENERAL_ADMIN, Role.MINISTRY_LEADER, Role.STANDARD_USER})
DOWNLOAD_ROLES = frozenset({Role.GENERAL_ADMIN, Role.MINISTRY_LEADER, Role.STANDARD_USER})


class CreateDecision(enum.Enum):
    ALLOWED = "allowed"
    ROLE_DENIED = "role_denied"
    MINISTRY_DENIED = "ministry_denied"


def can_modify(actor_role, actor_ministry: Optional[int], resource_ministry: Optional[int]) -> bool:
    """Edit/delete permission on a file record owned by ``resource_ministry``."""
    if actor_role == Role.GENERAL_ADMIN:
        return True
    if actor_role == Role.MINISTRY_LEADER:
        return resource_ministry is not None and resource_ministry == actor_ministry
    return False


def can_upload(actor_role) -> bool:
    return actor_role in UPLOAD_ROLES


def can_download(actor_role) -> bool:
    return actor_role in DOWNLOAD_ROLES


def check_create(actor_role, actor_ministry: Optional[int], resource_ministry: Optional[int]) -> CreateDecision:
    """
    Decide whether a metadata record may be created for ``resource_ministry``.

    Ministry leaders may only register files for the ministry they lead; a
    leader without a ministry cannot register files at all.
    """
    if not can_upload(actor_role):
        return CreateDecision.ROLE_DENIED
    if actor_role == Role.MINISTRY_LEADER:
        if actor_ministry is None or actor_ministry != resource_ministry:
            return CreateDecision.MINISTRY_DENIED
    return CreateDecision.ALLOWED
