"""
Domain exception hierarchy for the authorization and lifecycle core.

Services raise these; ``app.main`` maps them to HTTP responses once.
None of them carry HTTP concepts, so the scheduler and the API share them.

    PermissionDenied    403  evaluator denied, nothing was written
    InvalidTransition   409  transition undefined from the current state
    Conflict            409  row_version compare-and-set lost after retries
    StaleAuthorization  401  token claims disagree with the users table
    EntityNotFound      404
    SchedulerSkew       --   period or record already processed; logged, never surfaced
"""

from __future__ import annotations

from typing import Optional


class CoreError(Exception):
    """Base class for every error the core raises on purpose."""


class PermissionDenied(CoreError):
    """Raised when ``evaluate`` returns a deny decision.

    Args:
        reason: One of ``role-insufficient``, ``branch-mismatch``,
            ``not-owner``, ``not-public``.
    """

    def __init__(self, reason: str, *, resource_id: Optional[str] = None) -> None:
        self.reason = reason
        self.resource_id = resource_id
        super().__init__(f"Permission denied: {reason}")


class InvalidTransition(CoreError):
    """Raised when a transition is not defined from the entity's current state.

    ``current`` is always the state that was read, so callers can show it.
    """

    def __init__(self, current: str, attempted: str, detail: Optional[str] = None) -> None:
        self.current = current
        self.attempted = attempted
        self.detail = detail
        msg = f"Invalid transition: {attempted} from {current}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class Conflict(CoreError):
    """Raised when a write lost an optimistic-concurrency race."""

    def __init__(self, entity_type: str, entity_id: str, detail: Optional[str] = None) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.detail = detail
        super().__init__(detail or f"Concurrent modification of {entity_type} {entity_id}")


class StaleAuthorization(CoreError):
    """Raised when the token no longer matches the canonical principal record.

    Distinct from ``PermissionDenied``: the caller should re-authenticate,
    not treat it as a hard denial.
    """

    def __init__(self, principal_id: str, fields: tuple[str, ...] = ()) -> None:
        self.principal_id = principal_id
        self.fields = fields
        detail = ", ".join(fields) if fields else "record missing"
        super().__init__(f"Stale authorization for {principal_id}: {detail}")


class EntityNotFound(CoreError):
    def __init__(self, entity_type: str, entity_id: Optional[str] = None) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        msg = entity_type
        if entity_id is not None:
            msg += f" id={entity_id}"
        super().__init__(msg + " not found")


class SchedulerSkew(CoreError):
    """The periodic job (or one record in it) was already processed for ``period``."""

    def __init__(self, job: str, period: str, entity_id: Optional[str] = None) -> None:
        self.job = job
        self.period = period
        self.entity_id = entity_id
        target = f" for {entity_id}" if entity_id else ""
        super().__init__(f"{job} already processed period {period}{target}")
