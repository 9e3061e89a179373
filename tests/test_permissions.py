"""Capability resolution and role assignment rules."""

import pytest

from services.permissions import ALL, NONE, Capabilities, can_assign_role, resolve_capabilities


class TestResolveCapabilities:
    def test_super_admin_has_everything(self):
        assert resolve_capabilities("SUPER_ADMIN", None, 42) == ALL
        assert resolve_capabilities("SUPER_ADMIN", None, None, target_role="SUPER_ADMIN") == ALL

    def test_admin_same_tenant(self):
        caps = resolve_capabilities("ADMIN", 1, 1, target_role="USER")
        assert caps == Capabilities(True, True, True)

    def test_admin_cannot_delete_super_admin(self):
        caps = resolve_capabilities("ADMIN", 1, 1, target_role="SUPER_ADMIN")
        assert caps == Capabilities(True, True, False)

    def test_admin_cannot_delete_self(self):
        caps = resolve_capabilities("ADMIN", 1, 1, is_self=True, target_role="ADMIN")
        assert caps.can_edit is True
        assert caps.can_delete is False

    def test_admin_other_tenant(self):
        assert resolve_capabilities("ADMIN", 1, 2) == NONE

    def test_admin_without_tenant(self):
        assert resolve_capabilities("ADMIN", None, None) == NONE

    def test_self_service(self):
        caps = resolve_capabilities("USER", 1, 1, is_self=True)
        assert caps == Capabilities(can_view=True, can_edit=True, can_delete=False)

    def test_user_on_someone_else(self):
        assert resolve_capabilities("USER", 1, 1) == NONE

    def test_to_dict(self):
        assert ALL.to_dict() == {"can_view": True, "can_edit": True, "can_delete": True}


class TestAssignableRoles:
    @pytest.mark.parametrize("role", ["SUPER_ADMIN", "ADMIN", "USER"])
    def test_super_admin_assigns_any(self, role):
        assert can_assign_role("SUPER_ADMIN", role)

    def test_admin_assigns_user_only(self):
        assert can_assign_role("ADMIN", "USER")
        assert not can_assign_role("ADMIN", "ADMIN")
        assert not can_assign_role("ADMIN", "SUPER_ADMIN")

    def test_user_assigns_nothing(self):
        assert not can_assign_role("USER", "USER")

    def test_unknown_role(self):
        assert not can_assign_role("SUPER_ADMIN", "ROOT")
