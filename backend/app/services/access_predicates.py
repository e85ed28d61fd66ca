"""
Storage-boundary mirror of ``permissions.evaluate``.

``scope_clause(principal, Model, op)`` returns a SQLAlchemy boolean clause
that holds for exactly the rows ``evaluate`` allows. List endpoints filter
with it, so a query never returns a row the evaluator would refuse.
``tests/test_access_predicates.py`` checks both against the same grid of
principals and rows; change them together.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.elements import ColumnElement

from app.schemas.access import ROLE_LEVELS, Operation, Principal, Role


def _public_clause(model) -> ColumnElement[bool]:
    column = getattr(model, "is_public", None)
    if column is None:
        return false()
    return column.is_(True)


def branch_clause(principal: Principal, model) -> ColumnElement[bool]:
    """SQL form of ``branch_scope.has_branch_access``."""
    present = and_(model.branch_id.is_not(None), model.branch_id != "")
    if principal.has_cross_branch_access:
        return present
    if not principal.branch_id:
        return false()
    return and_(present, model.branch_id == principal.branch_id)


def _role_clause(principal: Optional[Principal], model, op: Operation) -> ColumnElement[bool]:
    if principal is None:
        return false()

    level = principal.permission_level
    if level >= ROLE_LEVELS[Role.SUPERADMIN]:
        return true()

    if principal.role == Role.CUSTOMER:
        if op not in (Operation.READ, Operation.UPDATE) or not principal.company_id:
            return false()
        return model.company_id == principal.company_id

    if level >= ROLE_LEVELS[Role.BRANCH_ADMIN]:
        return branch_clause(principal, model)

    if level == ROLE_LEVELS[Role.INSPECTOR]:
        if op == Operation.DELETE:
            return false()
        if op == Operation.READ:
            return branch_clause(principal, model)
        return and_(branch_clause(principal, model), model.created_by == principal.id)

    return false()


def scope_clause(principal: Optional[Principal], model, op: Operation = Operation.READ) -> ColumnElement[bool]:
    clause = _role_clause(principal, model, op)
    if op == Operation.READ:
        return or_(_public_clause(model), clause)
    return clause
