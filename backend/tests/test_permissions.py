"""
Unit tests for the permission evaluator and branch scope.

Covers:
  - has_branch_access: exact match, "main" cross-branch override, missing branches
  - Principal: cross-branch flag derived once from branch_id and level
  - evaluate: public reads, superadmin bypass, customer company rule,
    branch admin scope, inspector ownership, deny reasons
  - ensure_allowed: raises PermissionDenied and feeds the alert tracker
"""

from __future__ import annotations

import itertools

import pytest

from app.core.errors import PermissionDenied
from app.schemas.access import DenyReason, Operation, PermissionContext, Resource, Role
from app.services.branch_scope import has_branch_access
from app.services.permissions import evaluate, ensure_allowed
from app.utils.alerting import alert_tracker
from tests.conftest import make_principal

BRANCHES = ["stockholm", "goteborg", "main", None, ""]
ALL_OPS = list(Operation)


def _resources():
    for branch_id, company_id, created_by, is_public in itertools.product(
        BRANCHES, ["acme", "other", None], ["inspector-1", "someone-else"], [False, True]
    ):
        yield Resource(
            id="r-1",
            created_by=created_by,
            branch_id=branch_id,
            company_id=company_id,
            is_public=is_public,
        )


class TestBranchScope:
    def test_same_branch(self):
        p = make_principal(Role.INSPECTOR, branch_id="stockholm")
        assert has_branch_access(p, "stockholm") is True
        assert has_branch_access(p, "goteborg") is False

    def test_main_sentinel_grants_cross_branch(self):
        p = make_principal(Role.INSPECTOR, branch_id="main")
        assert p.has_cross_branch_access is True
        assert has_branch_access(p, "goteborg") is True

    def test_missing_resource_branch_never_matches(self):
        for branch in ("stockholm", "main"):
            p = make_principal(Role.BRANCH_ADMIN, branch_id=branch)
            assert has_branch_access(p, None) is False
            assert has_branch_access(p, "") is False

    def test_principal_without_branch(self):
        p = make_principal(Role.INSPECTOR, branch_id=None)
        assert has_branch_access(p, "stockholm") is False

    def test_customer_on_main_has_no_cross_branch(self):
        p = make_principal(Role.CUSTOMER, branch_id="main", company_id="acme")
        assert p.has_cross_branch_access is False


class TestEvaluateProperties:
    def test_superadmin_allows_everything(self):
        for branch in BRANCHES:
            p = make_principal(Role.SUPERADMIN, branch_id=branch)
            for resource, op in itertools.product(_resources(), ALL_OPS):
                assert evaluate(p, resource, op).allowed, (branch, resource, op)

    def test_main_branch_admin_allows_any_branch(self):
        p = make_principal(Role.BRANCH_ADMIN, branch_id="main")
        for resource, op in itertools.product(_resources(), ALL_OPS):
            if not resource.branch_id:
                continue
            assert evaluate(p, resource, op).allowed, (resource, op)

    def test_inspector_same_branch_other_author(self):
        p = make_principal(Role.INSPECTOR, id="inspector-1", branch_id="stockholm")
        r = Resource(id="r-1", created_by="someone-else", branch_id="stockholm")
        update = evaluate(p, r, Operation.UPDATE)
        assert update.allowed is False
        assert update.reason == DenyReason.NOT_OWNER
        assert evaluate(p, r, Operation.READ).allowed is True

    def test_inspector_own_resource(self):
        p = make_principal(Role.INSPECTOR, id="inspector-1", branch_id="stockholm")
        r = Resource(id="r-1", created_by="inspector-1", branch_id="stockholm")
        assert evaluate(p, r, Operation.UPDATE).allowed is True
        assert evaluate(p, r, Operation.CREATE).allowed is True

    def test_inspector_other_branch(self):
        p = make_principal(Role.INSPECTOR, id="inspector-1", branch_id="stockholm")
        r = Resource(id="r-1", created_by="inspector-1", branch_id="goteborg")
        decision = evaluate(p, r, Operation.READ)
        assert decision.reason == DenyReason.BRANCH_MISMATCH

    def test_inspector_cannot_delete_own_report(self):
        # Inspectors never hold delete rights, even on their own documents.
        p = make_principal(Role.INSPECTOR, id="inspector-1", branch_id="stockholm")
        report = Resource(id="report-1", created_by="inspector-1", branch_id="stockholm")
        decision = evaluate(p, report, Operation.DELETE)
        assert decision.allowed is False
        assert decision.reason == DenyReason.ROLE_INSUFFICIENT

    def test_main_branch_admin_reads_other_branch_customer(self):
        p = make_principal(Role.BRANCH_ADMIN, id="admin-1", branch_id="main")
        customer = Resource(id="c-1", created_by="someone", branch_id="goteborg")
        assert evaluate(p, customer, Operation.READ).allowed is True

    def test_branch_admin_other_branch(self):
        p = make_principal(Role.BRANCH_ADMIN, branch_id="stockholm")
        r = Resource(id="r-1", created_by="x", branch_id="goteborg")
        assert evaluate(p, r, Operation.UPDATE).reason == DenyReason.BRANCH_MISMATCH


class TestCustomerRule:
    def test_same_company_read_update(self):
        p = make_principal(Role.CUSTOMER, id="cust-1", company_id="acme")
        r = Resource(id="o-1", created_by="inspector-1", branch_id="goteborg", company_id="acme")
        assert evaluate(p, r, Operation.READ).allowed is True
        assert evaluate(p, r, Operation.UPDATE).allowed is True

    def test_other_company(self):
        p = make_principal(Role.CUSTOMER, id="cust-1", company_id="acme")
        r = Resource(id="o-1", created_by="inspector-1", branch_id="stockholm", company_id="other")
        assert evaluate(p, r, Operation.READ).reason == DenyReason.NOT_OWNER

    def test_create_and_delete_denied(self):
        p = make_principal(Role.CUSTOMER, id="cust-1", company_id="acme")
        r = Resource(id="o-1", created_by="cust-1", company_id="acme")
        assert evaluate(p, r, Operation.CREATE).reason == DenyReason.ROLE_INSUFFICIENT
        assert evaluate(p, r, Operation.DELETE).reason == DenyReason.ROLE_INSUFFICIENT

    def test_customer_without_company_never_matches(self):
        p = make_principal(Role.CUSTOMER, id="cust-1", company_id=None)
        r = Resource(id="o-1", created_by="x", company_id=None)
        assert evaluate(p, r, Operation.READ).allowed is False


class TestPublicReads:
    def test_anonymous_public_read(self):
        r = Resource(id="o-1", created_by="x", is_public=True)
        assert evaluate(None, r, Operation.READ).allowed is True

    def test_anonymous_private_read(self):
        r = Resource(id="o-1", created_by="x", branch_id="stockholm")
        assert evaluate(None, r, Operation.READ).reason == DenyReason.NOT_PUBLIC

    def test_public_flag_does_not_grant_writes(self):
        r = Resource(id="o-1", created_by="x", is_public=True)
        assert evaluate(None, r, Operation.UPDATE).reason == DenyReason.ROLE_INSUFFICIENT

    def test_unscoped_resource_denied_below_superadmin(self):
        r = Resource(id="o-1", created_by="x")
        admin = make_principal(Role.BRANCH_ADMIN, branch_id="main")
        assert evaluate(admin, r, Operation.READ).allowed is False
        assert evaluate(make_principal(Role.SUPERADMIN), r, Operation.READ).allowed is True


class TestEnsureAllowed:
    def test_raises_with_reason_and_records_alert(self):
        ctx = PermissionContext(principal=make_principal(Role.INSPECTOR, branch_id="stockholm"))
        r = Resource(id="report-1", created_by="user-1", branch_id="stockholm")
        with pytest.raises(PermissionDenied) as exc_info:
            ensure_allowed(ctx, r, Operation.DELETE)
        assert exc_info.value.reason == "role-insufficient"
        assert exc_info.value.resource_id == "report-1"
        assert alert_tracker.count("PERMISSION_DENIED") == 1

    def test_allow_is_silent(self):
        ensure_allowed(make_principal(Role.SUPERADMIN), Resource(id="x", created_by="y"), Operation.DELETE)
        assert alert_tracker.count("PERMISSION_DENIED") == 0
