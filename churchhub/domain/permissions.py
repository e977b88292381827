from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"

PERM_MEMBERS_VIEW = "members.view"
PERM_MEMBERS_CREATE = "members.create"
PERM_MEMBERS_EDIT = "members.edit"
PERM_MEMBERS_DELETE = "members.delete"
PERM_MEMBERS_TRANSFER = "members.transfer"

PERM_SACRAMENTS_VIEW = "sacraments.view"
PERM_SACRAMENTS_CREATE = "sacraments.create"
PERM_SACRAMENTS_EDIT = "sacraments.edit"
PERM_SACRAMENTS_DELETE = "sacraments.delete"
PERM_SACRAMENTS_CERTIFICATES = "sacraments.certificates"

PERM_BRANCHES_VIEW = "branches.view"
PERM_BRANCHES_CREATE = "branches.create"
PERM_BRANCHES_EDIT = "branches.edit"
PERM_BRANCHES_DELETE = "branches.delete"
PERM_BRANCHES_MANAGE_STAFF = "branches.manage_staff"

PERM_EVENTS_VIEW = "events.view"
PERM_EVENTS_CREATE = "events.create"
PERM_EVENTS_EDIT = "events.edit"
PERM_EVENTS_DELETE = "events.delete"
PERM_EVENTS_ATTENDANCE = "events.attendance"

PERM_REPORTS_VIEW = "reports.view"
PERM_REPORTS_EXPORT = "reports.export"
PERM_REPORTS_CREATE_CUSTOM = "reports.create_custom"
PERM_REPORTS_DIOCESE_LEVEL = "reports.diocese_level"

PERM_GROUPS_VIEW = "groups.view"
PERM_GROUPS_MANAGE = "groups.manage"

PERM_ADMIN_VIEW_LOGS = "admin.view_logs"
PERM_ADMIN_MANAGE_ROLES = "admin.manage_roles"
PERM_ADMIN_MANAGE_USERS = "admin.manage_users"
PERM_ADMIN_SYSTEM_SETTINGS = "admin.system_settings"
PERM_ADMIN_RESOURCE_APPROVAL = "admin.resource_approval"

# (id, display name, subject)
DEFAULT_PERMISSIONS: tuple[tuple[str, str, str], ...] = (
    (PERM_WILDCARD, "All Permissions", "System"),
    (PERM_MEMBERS_VIEW, "View Members", "Members"),
    (PERM_MEMBERS_CREATE, "Create Members", "Members"),
    (PERM_MEMBERS_EDIT, "Edit Members", "Members"),
    (PERM_MEMBERS_DELETE, "Delete Members", "Members"),
    (PERM_MEMBERS_TRANSFER, "Transfer Members", "Members"),
    (PERM_SACRAMENTS_VIEW, "View Sacramental Records", "Sacraments"),
    (PERM_SACRAMENTS_CREATE, "Create Sacramental Records", "Sacraments"),
    (PERM_SACRAMENTS_EDIT, "Edit Sacramental Records", "Sacraments"),
    (PERM_SACRAMENTS_DELETE, "Delete Sacramental Records", "Sacraments"),
    (PERM_SACRAMENTS_CERTIFICATES, "Generate Certificates", "Sacraments"),
    (PERM_BRANCHES_VIEW, "View Branches", "Branches"),
    (PERM_BRANCHES_CREATE, "Create Branches", "Branches"),
    (PERM_BRANCHES_EDIT, "Edit Branch Information", "Branches"),
    (PERM_BRANCHES_DELETE, "Delete Branches", "Branches"),
    (PERM_BRANCHES_MANAGE_STAFF, "Manage Branch Staff", "Branches"),
    (PERM_EVENTS_VIEW, "View Events", "Events"),
    (PERM_EVENTS_CREATE, "Create Events", "Events"),
    (PERM_EVENTS_EDIT, "Edit Events", "Events"),
    (PERM_EVENTS_DELETE, "Delete Events", "Events"),
    (PERM_EVENTS_ATTENDANCE, "Manage Event Attendance", "Events"),
    (PERM_REPORTS_VIEW, "View Reports", "Reports"),
    (PERM_REPORTS_EXPORT, "Export Reports", "Reports"),
    (PERM_REPORTS_CREATE_CUSTOM, "Create Custom Reports", "Reports"),
    (PERM_REPORTS_DIOCESE_LEVEL, "View Diocese-Level Reports", "Reports"),
    (PERM_GROUPS_VIEW, "View Small Groups", "Groups"),
    (PERM_GROUPS_MANAGE, "Manage Small Groups", "Groups"),
    (PERM_ADMIN_VIEW_LOGS, "View Audit Logs", "Security"),
    (PERM_ADMIN_MANAGE_ROLES, "Manage Roles & Permissions", "Security"),
    (PERM_ADMIN_MANAGE_USERS, "Manage System Users", "Security"),
    (PERM_ADMIN_SYSTEM_SETTINGS, "Edit System Settings", "System"),
    (PERM_ADMIN_RESOURCE_APPROVAL, "Approve Resource Sharing", "Security"),
)

DEFAULT_PERMISSION_IDS = [item[0] for item in DEFAULT_PERMISSIONS]


def _claim_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def has_permission(claims: dict[str, Any], permission: str, branch_id: str | None = None) -> bool:
    """Check a permission against token claims.

    Without ``branch_id`` the flattened ``permissions`` claim is used, so a
    permission held at any branch counts. With ``branch_id`` only the role held
    at that branch counts. The wildcard held anywhere grants everything.
    """
    permissions = _claim_list(claims.get("permissions", []))
    if PERM_WILDCARD in permissions:
        return True
    if branch_id is None:
        return permission in permissions

    branch_permissions = claims.get("branch_permissions", {})
    if not isinstance(branch_permissions, dict):
        return False
    return permission in _claim_list(branch_permissions.get(branch_id, []))
