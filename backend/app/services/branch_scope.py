from typing import Optional

from app.schemas.access import Principal


def has_branch_access(principal: Principal, resource_branch_id: Optional[str]) -> bool:
    """Whether ``principal``'s branch assignment reaches ``resource_branch_id``.

    A resource without a branch never matches, not even for cross-branch
    principals; superadmins are let through by the evaluator before this runs.
    Every resource type goes through this one function.
    """
    if not resource_branch_id:
        return False
    if principal.has_cross_branch_access:
        return True
    return principal.branch_id is not None and principal.branch_id == resource_branch_id
