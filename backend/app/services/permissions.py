"""
Permission evaluator: one pure decision function for every resource type.

    evaluate(principal, resource, op) -> Decision

Rules, first match wins:
  1. read of a resource with ``is_public`` set          -> allow (anonymous too)
  2. permission_level >= 2 (superadmin)                 -> allow
  3. role customer: read/update iff same company_id     -> else not-owner
                    create/delete                       -> role-insufficient
  4. permission_level >= 1 (branch admin)               -> allow iff branch access
  5. permission_level == 0 (inspector): read iff branch access,
     create/update iff branch access and created_by == principal.id,
     delete never
  6. anything else                                      -> role-insufficient

``resource`` is duck-typed: ORM rows and ``Resource`` both expose
``branch_id``, ``company_id``, ``created_by`` and (for offers and reports)
``is_public``. No I/O, no allocation beyond the attribute reads; the
decisions are shared singletons.

``ensure_role`` narrows an allowed write to the side of the relationship a
named transition belongs to (staff send, customers answer).
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from app.core.errors import PermissionDenied
from app.schemas.access import (
    ROLE_LEVELS,
    Decision,
    DenyReason,
    Operation,
    PermissionContext,
    Principal,
    Role,
)
from app.services.branch_scope import has_branch_access
from app.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

ALLOW = Decision(True)
DENY_ROLE_INSUFFICIENT = Decision(False, DenyReason.ROLE_INSUFFICIENT)
DENY_BRANCH_MISMATCH = Decision(False, DenyReason.BRANCH_MISMATCH)
DENY_NOT_OWNER = Decision(False, DenyReason.NOT_OWNER)
DENY_NOT_PUBLIC = Decision(False, DenyReason.NOT_PUBLIC)

_SUPERADMIN_LEVEL = ROLE_LEVELS[Role.SUPERADMIN]
_BRANCH_ADMIN_LEVEL = ROLE_LEVELS[Role.BRANCH_ADMIN]
_INSPECTOR_LEVEL = ROLE_LEVELS[Role.INSPECTOR]


def evaluate(principal: Optional[Principal], resource: Any, op: Operation) -> Decision:
    if op == Operation.READ and getattr(resource, "is_public", False) is True:
        return ALLOW

    if principal is None:
        return DENY_NOT_PUBLIC if op == Operation.READ else DENY_ROLE_INSUFFICIENT

    level = principal.permission_level
    if level >= _SUPERADMIN_LEVEL:
        return ALLOW

    if principal.role == Role.CUSTOMER:
        if op not in (Operation.READ, Operation.UPDATE):
            return DENY_ROLE_INSUFFICIENT
        company_id = getattr(resource, "company_id", None)
        if principal.company_id and company_id == principal.company_id:
            return ALLOW
        return DENY_NOT_OWNER

    branch_ok = has_branch_access(principal, getattr(resource, "branch_id", None))

    if level >= _BRANCH_ADMIN_LEVEL:
        return ALLOW if branch_ok else DENY_BRANCH_MISMATCH

    if level == _INSPECTOR_LEVEL:
        if op == Operation.DELETE:
            return DENY_ROLE_INSUFFICIENT
        if not branch_ok:
            return DENY_BRANCH_MISMATCH
        if op == Operation.READ:
            return ALLOW
        # create and update both require the inspector to be the author
        if getattr(resource, "created_by", None) == principal.id:
            return ALLOW
        return DENY_NOT_OWNER

    return DENY_ROLE_INSUFFICIENT


def ensure_allowed(
    actor: Union[PermissionContext, Principal, None],
    resource: Any,
    op: Operation,
) -> None:
    """Raise ``PermissionDenied`` unless ``evaluate`` allows ``op``."""
    principal = _principal_of(actor)
    decision = evaluate(principal, resource, op)
    if not decision.allowed:
        _deny(principal, resource, op, decision)


def ensure_role(
    actor: Union[PermissionContext, Principal, None],
    resource: Any,
    op: Operation,
    roles: frozenset[Role],
) -> None:
    """Narrow an allowed operation to the roles a named transition is meant for.

    ``evaluate`` answers whether the principal may write the document at all;
    some transitions (sending an offer, answering it) belong to one side only.
    """
    principal = _principal_of(actor)
    if principal is None or principal.role not in roles:
        _deny(principal, resource, op, DENY_ROLE_INSUFFICIENT)


def _principal_of(actor: Union[PermissionContext, Principal, None]) -> Optional[Principal]:
    return actor.principal if isinstance(actor, PermissionContext) else actor


def _deny(principal: Optional[Principal], resource: Any, op: Operation, decision: Decision) -> None:
    resource_id = getattr(resource, "id", None)
    metadata = {
        "principal_id": principal.id if principal else None,
        "resource_id": resource_id,
        "op": op.value,
        "reason": decision.reason.value,
    }
    logger.info("Permission denied: %s", metadata)
    try:
        alert_tracker.record("PERMISSION_DENIED", metadata)
    except Exception:
        logger.exception("Alert tracker failed for PERMISSION_DENIED")
    raise PermissionDenied(decision.reason.value, resource_id=resource_id)
