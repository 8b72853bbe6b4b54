"""
Tests para la matriz de permisos
"""

import pytest
from uuid import uuid4

from app.common.exceptions import ForbiddenError
from app.modules.business.models import StaffRole
from app.modules.permissions.constants import Resource, Action
from app.modules.permissions.service import PermissionService


@pytest.fixture
def permissions(db_session):
    return PermissionService(db_session)


class TestPermissions:

    def test_owner_has_everything(self, permissions, business, owner_id):
        for resource in Resource:
            for action in Action:
                assert permissions.has_permission(owner_id, business.id, resource, action)

    @pytest.mark.parametrize("role,resource,action,expected", [
        (StaffRole.ADMIN, Resource.BILLS, Action.APPROVE, True),
        (StaffRole.MANAGER, Resource.BILLS, Action.APPROVE, False),
        (StaffRole.MANAGER, Resource.BILLS, Action.VOID, True),
        (StaffRole.MANAGER, Resource.SETTINGS, Action.UPDATE, False),
        (StaffRole.ACCOUNTANT, Resource.PAYMENTS, Action.CREATE, True),
        (StaffRole.ACCOUNTANT, Resource.BILLS, Action.CREATE, False),
        (StaffRole.CASHIER, Resource.PAYMENTS, Action.CREATE, True),
        (StaffRole.CASHIER, Resource.BILLS, Action.VOID, False),
        (StaffRole.VIEWER, Resource.BILLS, Action.READ, True),
        (StaffRole.VIEWER, Resource.PAYMENTS, Action.CREATE, False),
    ])
    def test_role_matrix(self, permissions, business, staff_factory, role, resource, action, expected):
        user = staff_factory(role)
        assert permissions.has_permission(user, business.id, resource, action) is expected

    def test_stranger_has_nothing(self, permissions, business):
        assert not permissions.has_permission(uuid4(), business.id, Resource.BILLS, Action.READ)

    def test_staff_of_other_business(self, permissions, business, other_business, staff_factory):
        admin = staff_factory(StaffRole.ADMIN)
        assert not permissions.has_permission(admin, other_business.id, Resource.BILLS, Action.READ)

    def test_override_takes_precedence(self, permissions, business, staff_factory):
        manager = staff_factory(StaffRole.MANAGER)
        permissions.grant(business.id, manager, Resource.BILLS, Action.APPROVE)
        assert permissions.has_permission(manager, business.id, Resource.BILLS, Action.APPROVE)

        permissions.grant(business.id, manager, Resource.BILLS, Action.APPROVE, granted=False)
        assert not permissions.has_permission(manager, business.id, Resource.BILLS, Action.APPROVE)

    def test_require_raises_forbidden(self, permissions, business, staff_factory):
        viewer = staff_factory(StaffRole.VIEWER)
        with pytest.raises(ForbiddenError) as exc:
            permissions.require(viewer, business.id, Resource.BILLS, Action.CREATE)
        assert exc.value.status_code == 403
