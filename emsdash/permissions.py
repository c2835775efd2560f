"""Role and permission matrix shared by route gates and page rendering."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

USER_ROLES = ["admin", "manager", "data_entry", "supervisor", "fto", "trainee"]

ROLE_LABELS: Dict[str, str] = {
    "admin": "Admin",
    "manager": "Manager",
    "data_entry": "Data Entry",
    "supervisor": "Supervisor",
    "fto": "FTO",
    "trainee": "Trainee",
}

# Roles that may act as a field training officer on an assignment or DOR.
FTO_ROLES = ("fto", "supervisor", "manager", "admin")

_ADMIN = ("admin",)
_ADMIN_MANAGER = ("admin", "manager")
_DATA_ENTRY = ("admin", "data_entry")
_DASHBOARD = ("admin", "manager", "data_entry")
_SUPERVISORS = ("supervisor", "manager", "admin")

PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    "manage_users": _ADMIN,
    "manage_departments": _ADMIN,
    "manage_metric_defs": _ADMIN,
    "manage_categories": _ADMIN,
    "manage_driver_diagrams": _ADMIN,
    "manage_campaigns": _ADMIN,
    "manage_scorecards": _ADMIN,
    "view_audit_log": _ADMIN,
    "manage_action_items": _ADMIN_MANAGER,
    "manage_ftos_trainees": _ADMIN_MANAGER,
    "manage_dors_skills": _ADMIN_MANAGER,
    "export_reports": _ADMIN_MANAGER,
    "enter_metric_data": _DATA_ENTRY,
    "upload_batch_data": _DATA_ENTRY,
    "view_dashboard": _DASHBOARD,
    "view_admin": _DASHBOARD,
    "create_edit_own_dors": FTO_ROLES,
    "view_own_trainees": FTO_ROLES,
    "review_approve_dors": _SUPERVISORS,
    "view_all_trainees": _SUPERVISORS,
    "manage_training_assignments": _SUPERVISORS,
    "signoff_phases": _SUPERVISORS,
    "access_field_training": ("fto", "supervisor", "manager", "admin", "trainee"),
}


def has_permission(role: Optional[str], permission: str) -> bool:
    if not role:
        return False
    return role in PERMISSIONS.get(permission, ())


def permissions_for_role(role: Optional[str]) -> List[str]:
    return [name for name, roles in PERMISSIONS.items() if role in roles]


def role_label(role: Optional[str]) -> str:
    return ROLE_LABELS.get(str(role or ""), str(role or "").replace("_", " ").title())


def parse_role(raw_role: Optional[str], default: str = "data_entry") -> str:
    role = str(raw_role or default).strip().lower()
    return role if role in USER_ROLES else default
