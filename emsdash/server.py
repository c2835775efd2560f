"""WSGI entrypoint and router.

HTML pages are dispatched explicitly (``if req.path == ...``). The JSON API is
a route table filled by the :func:`api` decorator; every handler receives the
open connection, the request, the auth context and any captured path groups,
and returns a result dict (or a ready :class:`Response`). The dispatcher owns
auth, permission and CSRF gates plus commit/rollback, so handlers only call
services.
"""

from __future__ import annotations

import logging
import re
from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple
from wsgiref.simple_server import WSGIServer, make_server

from emsdash import (
    coaching,
    config,
    dashboard,
    entries,
    field_training,
    metrics,
    org,
    qi,
    reports,
    scorecards,
    skills,
    snapshots,
)
from emsdash.audit import AUDIT_ACTIONS, entity_history, list_audit_log
from emsdash.auth import (
    LoginThrottled,
    admin_reset_password,
    approve_user,
    authenticate,
    change_password,
    create_session,
    destroy_session,
    get_auth_context,
    register_user,
    reject_user,
    require_auth,
    require_permission,
    switch_organization,
    validate_csrf,
)
from emsdash.db import db_connect, default_org_id, ensure_bootstrap
from emsdash.errors import (
    CSRF_ERROR,
    ActionError,
    NotFoundError,
    api_bad_request,
    api_error,
    api_forbidden,
    api_not_found,
    api_server_error,
    run_action,
)
from emsdash.http import Request, Response, clear_cookie, csv_response, json_response, redirect, set_cookie
from emsdash.pages import (
    ADMIN_SECTIONS,
    redirect_with_message,
    render_account,
    render_action_items,
    render_admin,
    render_audit,
    render_campaign_report,
    render_campaigns,
    render_department,
    render_diagram,
    render_division,
    render_dor,
    render_dor_form,
    render_entries,
    render_error,
    render_field_training,
    render_landing,
    render_login,
    render_metric_detail,
    render_my_coaching,
    render_register,
    render_scorecard,
    render_scorecards,
    render_shared_snapshot,
    render_skills,
    render_trainee,
)
from emsdash.pagination import parse_pagination
from emsdash.permissions import has_permission, permissions_for_role, role_label
from emsdash.utils import to_bool

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_token"

MIME_TYPES = {
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".svg": "image/svg+xml",
}


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request server for the standalone deployment."""

    daemon_threads = True


# JSON API route table

Handler = Callable[..., Any]
API_ROUTES: List[Tuple[str, Pattern, Optional[str], Handler]] = []


def api(method: str, pattern: str, permission: Optional[str] = None):
    """Register ``func`` for ``method`` on the full-match ``pattern``.

    ``permission`` of ``None`` still requires a signed-in user.
    """

    def register(func: Handler) -> Handler:
        API_ROUTES.append((method, re.compile(pattern), permission, func))
        return func

    return register


def _org_id(ctx: Dict[str, Any]) -> int:
    return int(ctx["org_id"])


def _user_id(ctx: Dict[str, Any]) -> int:
    return int(ctx["user"]["id"])


def _scope(ctx: Dict[str, Any]) -> Optional[int]:
    """Trainee visibility scope: ``None`` sees everyone, otherwise the caller's own id."""
    if has_permission(ctx.get("role"), "view_all_trainees"):
        return None
    return _user_id(ctx)


def _active(req: Request) -> bool:
    return to_bool(req.form.get("active", req.form.get("is_active")))


def _safe_next(req: Request) -> str:
    if req.method != "POST" or req.json is not None:
        return ""
    target = str(req.form.get("next") or "")
    if target.startswith("/") and not target.startswith("//"):
        return target
    return ""


def _finish(req: Request, payload: Dict[str, Any], status: str = "200 OK") -> Response:
    """Answer an action as JSON, or as a redirect with ``?msg=`` for HTML form posts."""
    target = _safe_next(req)
    if target:
        message = payload.get("message", "Saved.") if payload.get("ok") else payload.get("error", "")
        return redirect(redirect_with_message(target, str(message)))
    return json_response(payload, status=status)


def dispatch_api(conn, req: Request, ctx: Dict[str, Any]) -> Response:
    method_mismatch = False
    for method, pattern, permission, handler in API_ROUTES:
        match = pattern.fullmatch(req.path)
        if not match:
            continue
        if method != req.method:
            method_mismatch = True
            continue
        gate = require_auth(ctx, req)
        if gate is None and permission:
            gate = require_permission(ctx, permission, req)
        if gate:
            return gate
        if req.malformed_json:
            return api_bad_request("Request body must be a JSON object.")
        if not validate_csrf(req, ctx):
            if _safe_next(req):
                return _finish(req, {"ok": False, "error": CSRF_ERROR})
            return api_forbidden(CSRF_ERROR)
        args = [int(group) if group.isdigit() else group for group in match.groups()]
        outcome = run_action(f"{req.method} {req.path}", handler, conn, req, ctx, *args)
        if isinstance(outcome, Response):
            conn.commit()
            return outcome
        if not outcome["ok"]:
            conn.rollback()
            status = outcome.pop("status")
            return _finish(req, outcome, status)
        conn.commit()
        return _finish(req, outcome)
    if method_mismatch:
        return api_error("Method not allowed", status="405 Method Not Allowed")
    return api_not_found("Endpoint")


# Auth and account


@api("GET", r"/api/auth/me")
def api_me(conn, req, ctx):
    return {
        "user": ctx["user"],
        "role": ctx["role"],
        "role_label": role_label(ctx["role"]),
        "permissions": permissions_for_role(ctx["role"]),
        "organization": {"id": ctx["org_id"], "name": ctx["active_org"]["name"]},
        "memberships": [
            {"organization_id": m["organization_id"], "name": m["name"], "role": m["role"]} for m in ctx["memberships"]
        ],
        "csrf": ctx["csrf"],
    }


@api("POST", r"/api/auth/switch-org")
def api_switch_org(conn, req, ctx):
    cookie = switch_organization(ctx, req.form.get("org_id"))
    target = _safe_next(req)
    if target:
        return redirect(target, cookies=[cookie])
    return json_response({"ok": True, "org_id": int(req.form.get("org_id"))}, cookies=[cookie])


@api("POST", r"/api/auth/password")
def api_change_password(conn, req, ctx):
    change_password(
        conn,
        _user_id(ctx),
        str(req.form.get("current_password") or ""),
        str(req.form.get("new_password") or ""),
        str(req.form.get("confirm_password") or ""),
        keep_session_id=ctx["session_id"],
    )
    return {"message": "Password changed. Other sessions were signed out."}


# Users


@api("GET", r"/api/admin/users", "manage_users")
def api_list_users(conn, req, ctx):
    page, page_size = parse_pagination(req.query)
    return org.list_users(conn, _org_id(ctx), req.query, page, page_size)


@api("GET", r"/api/admin/users/pending", "manage_users")
def api_pending_users(conn, req, ctx):
    return {"users": org.pending_users(conn, _org_id(ctx))}


@api("POST", r"/api/admin/users", "manage_users")
def api_create_user(conn, req, ctx):
    return org.create_user(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/admin/users/(\d+)", "manage_users")
def api_get_user(conn, req, ctx, user_id):
    return {"user": org.get_member(conn, _org_id(ctx), user_id)}


@api("POST", r"/api/admin/users/(\d+)", "manage_users")
def api_update_user(conn, req, ctx, user_id):
    return org.update_user(conn, _org_id(ctx), _user_id(ctx), user_id, req.form)


@api("POST", r"/api/admin/users/(\d+)/active", "manage_users")
def api_user_active(conn, req, ctx, user_id):
    return org.set_user_active(conn, _org_id(ctx), _user_id(ctx), user_id, _active(req))


@api("POST", r"/api/admin/users/(\d+)/approve", "manage_users")
def api_approve_user(conn, req, ctx, user_id):
    result = approve_user(conn, _org_id(ctx), _user_id(ctx), user_id, req.form.get("role"))
    return dict(result, message="Account approved.")


@api("POST", r"/api/admin/users/(\d+)/reject", "manage_users")
def api_reject_user(conn, req, ctx, user_id):
    return dict(reject_user(conn, _org_id(ctx), _user_id(ctx), user_id), message="Registration rejected.")


@api("POST", r"/api/admin/users/(\d+)/reset-password", "manage_users")
def api_reset_password(conn, req, ctx, user_id):
    result = admin_reset_password(conn, _org_id(ctx), _user_id(ctx), user_id, str(req.form.get("new_password") or ""))
    return dict(result, message="Password reset. The user's sessions were signed out.")


# Departments, divisions, regions, categories


@api("GET", r"/api/departments", "view_dashboard")
def api_list_departments(conn, req, ctx):
    return {"departments": org.list_departments(conn, _org_id(ctx), active_only=to_bool(req.query.get("active")))}


@api("POST", r"/api/departments", "manage_departments")
def api_create_department(conn, req, ctx):
    return org.create_department(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/departments/(\d+)", "view_dashboard")
def api_get_department(conn, req, ctx, department_id):
    return {"department": org.get_department(conn, _org_id(ctx), department_id)}


@api("POST", r"/api/departments/(\d+)", "manage_departments")
def api_update_department(conn, req, ctx, department_id):
    return org.update_department(conn, _org_id(ctx), _user_id(ctx), department_id, req.form)


@api("POST", r"/api/departments/(\d+)/active", "manage_departments")
def api_department_active(conn, req, ctx, department_id):
    return org.set_department_active(conn, _org_id(ctx), _user_id(ctx), department_id, _active(req))


@api("GET", r"/api/divisions", "view_dashboard")
def api_list_divisions(conn, req, ctx):
    divisions = org.list_divisions(
        conn, _org_id(ctx), req.query.get("department_id"), active_only=to_bool(req.query.get("active"))
    )
    return {"divisions": divisions}


@api("POST", r"/api/divisions", "manage_departments")
def api_create_division(conn, req, ctx):
    return org.create_division(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/divisions/(\d+)", "view_dashboard")
def api_get_division(conn, req, ctx, division_id):
    return {"division": org.get_division(conn, _org_id(ctx), division_id)}


@api("POST", r"/api/divisions/(\d+)", "manage_departments")
def api_update_division(conn, req, ctx, division_id):
    return org.update_division(conn, _org_id(ctx), _user_id(ctx), division_id, req.form)


@api("POST", r"/api/divisions/(\d+)/active", "manage_departments")
def api_division_active(conn, req, ctx, division_id):
    return org.set_division_active(conn, _org_id(ctx), _user_id(ctx), division_id, _active(req))


@api("GET", r"/api/regions", "view_dashboard")
def api_list_regions(conn, req, ctx):
    regions = org.list_regions(conn, _org_id(ctx), req.query.get("division_id"), active_only=to_bool(req.query.get("active")))
    return {"regions": regions}


@api("POST", r"/api/regions", "manage_departments")
def api_create_region(conn, req, ctx):
    return org.create_region(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/regions/(\d+)", "view_dashboard")
def api_get_region(conn, req, ctx, region_id):
    return {"region": org.get_region(conn, _org_id(ctx), region_id)}


@api("POST", r"/api/regions/(\d+)", "manage_departments")
def api_update_region(conn, req, ctx, region_id):
    return org.update_region(conn, _org_id(ctx), _user_id(ctx), region_id, req.form)


@api("POST", r"/api/regions/(\d+)/active", "manage_departments")
def api_region_active(conn, req, ctx, region_id):
    return org.set_region_active(conn, _org_id(ctx), _user_id(ctx), region_id, _active(req))


@api("GET", r"/api/categories", "view_dashboard")
def api_list_categories(conn, req, ctx):
    return {"categories": org.list_categories(conn, _org_id(ctx))}


@api("POST", r"/api/categories", "manage_categories")
def api_create_category(conn, req, ctx):
    return org.create_category(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("POST", r"/api/categories/(\d+)", "manage_categories")
def api_update_category(conn, req, ctx, category_id):
    return org.update_category(conn, _org_id(ctx), _user_id(ctx), category_id, req.form)


@api("POST", r"/api/categories/(\d+)/delete", "manage_categories")
def api_delete_category(conn, req, ctx, category_id):
    return org.delete_category(conn, _org_id(ctx), _user_id(ctx), category_id)


# Metric definitions, associations, annotations


@api("GET", r"/api/metrics", "view_dashboard")
def api_list_metrics(conn, req, ctx):
    items = metrics.list_metrics(
        conn,
        _org_id(ctx),
        department_id=req.query.get("department_id"),
        active_only=to_bool(req.query.get("active")),
        kpi_only=to_bool(req.query.get("kpi")),
    )
    return {"metrics": items}


@api("POST", r"/api/metrics", "manage_metric_defs")
def api_create_metric(conn, req, ctx):
    return metrics.create_metric(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/metrics/(\d+)", "view_dashboard")
def api_get_metric(conn, req, ctx, metric_id):
    return {
        "metric": metrics.get_metric(conn, _org_id(ctx), metric_id),
        "associations": metrics.list_associations(conn, _org_id(ctx), metric_id),
    }


@api("POST", r"/api/metrics/(\d+)", "manage_metric_defs")
def api_update_metric(conn, req, ctx, metric_id):
    return metrics.update_metric(conn, _org_id(ctx), _user_id(ctx), metric_id, req.form)


@api("POST", r"/api/metrics/(\d+)/active", "manage_metric_defs")
def api_metric_active(conn, req, ctx, metric_id):
    return metrics.set_metric_active(conn, _org_id(ctx), _user_id(ctx), metric_id, _active(req))


@api("GET", r"/api/metrics/(\d+)/associations", "view_dashboard")
def api_list_associations(conn, req, ctx, metric_id):
    return {"associations": metrics.list_associations(conn, _org_id(ctx), metric_id)}


@api("POST", r"/api/metrics/(\d+)/associations", "manage_metric_defs")
def api_add_association(conn, req, ctx, metric_id):
    return metrics.add_association(
        conn, _org_id(ctx), _user_id(ctx), metric_id, req.form.get("division_id"), req.form.get("region_id")
    )


@api("POST", r"/api/metrics/(\d+)/associations/set", "manage_metric_defs")
def api_set_associations(conn, req, ctx, metric_id):
    return metrics.set_associations(conn, _org_id(ctx), _user_id(ctx), metric_id, req.form_list("associations"))


@api("POST", r"/api/associations/(\d+)/delete", "manage_metric_defs")
def api_remove_association(conn, req, ctx, association_id):
    return metrics.remove_association(conn, _org_id(ctx), _user_id(ctx), association_id)


@api("GET", r"/api/metrics/(\d+)/annotations", "view_dashboard")
def api_list_annotations(conn, req, ctx, metric_id):
    return {"annotations": metrics.list_annotations(conn, _org_id(ctx), metric_id)}


@api("POST", r"/api/metrics/(\d+)/annotations", "manage_metric_defs")
def api_create_annotation(conn, req, ctx, metric_id):
    return dict(metrics.create_annotation(conn, _org_id(ctx), _user_id(ctx), metric_id, req.form), message="Annotation added.")


@api("POST", r"/api/annotations/(\d+)/delete", "manage_metric_defs")
def api_delete_annotation(conn, req, ctx, annotation_id):
    return metrics.delete_annotation(conn, _org_id(ctx), _user_id(ctx), annotation_id)


# Entries


@api("GET", r"/api/entries", "enter_metric_data")
def api_list_entries(conn, req, ctx):
    page, page_size = parse_pagination(req.query)
    return entries.list_entries(conn, _org_id(ctx), req.query, page, page_size)


@api("POST", r"/api/entries", "enter_metric_data")
def api_create_entry(conn, req, ctx):
    return dict(entries.create_entry(conn, _org_id(ctx), _user_id(ctx), req.form), message="Entry saved.")


@api("GET", r"/api/entries/(\d+)", "enter_metric_data")
def api_get_entry(conn, req, ctx, entry_id):
    return {"entry": entries.get_entry(conn, _org_id(ctx), entry_id)}


@api("POST", r"/api/entries/(\d+)", "enter_metric_data")
def api_update_entry(conn, req, ctx, entry_id):
    return entries.update_entry(conn, _org_id(ctx), _user_id(ctx), entry_id, req.form)


@api("POST", r"/api/entries/(\d+)/delete", "enter_metric_data")
def api_delete_entry(conn, req, ctx, entry_id):
    return entries.delete_entry(conn, _org_id(ctx), _user_id(ctx), entry_id)


@api("POST", r"/api/entries/bulk", "upload_batch_data")
def api_bulk_entries(conn, req, ctx):
    return entries.bulk_create_entries(conn, _org_id(ctx), _user_id(ctx), req.form_list("rows"))


@api("POST", r"/api/entries/import", "upload_batch_data")
def api_import_entries(conn, req, ctx):
    result = entries.import_entries_csv(conn, _org_id(ctx), _user_id(ctx), req.files.get("file"))
    failed = len(result["errors"]) - result["skipped"]
    message = f"Imported {result['created']} entries, skipped {result['skipped']} duplicates."
    if failed:
        message += f" {failed} rows had errors."
    return dict(result, message=message)


@api("GET", r"/api/entries/template\.csv", "upload_batch_data")
def api_entries_template(conn, req, ctx):
    return csv_response(entries.csv_template(conn, _org_id(ctx), req.query.get("department_id")), "metric_entries_template.csv")


@api("GET", r"/api/entries/export\.csv", "export_reports")
def api_entries_export(conn, req, ctx):
    return csv_response(entries.export_entries_csv(conn, _org_id(ctx), req.query), "metric_entries.csv")


# Reports


@api("GET", r"/api/reports/dors\.csv", "export_reports")
def api_export_dors(conn, req, ctx):
    return csv_response(reports.export_dor_csv(conn, _org_id(ctx), req.query), "dor_data.csv")


@api("GET", r"/api/reports/training-progress\.csv", "export_reports")
def api_export_training_progress(conn, req, ctx):
    return csv_response(reports.export_training_progress_csv(conn, _org_id(ctx), req.query), "training_progress.csv")


@api("GET", r"/api/reports/audit\.csv", "export_reports")
def api_export_audit(conn, req, ctx):
    return csv_response(reports.export_audit_csv(conn, _org_id(ctx), req.query), "audit_log.csv")


@api("GET", r"/api/reports/users\.csv", "export_reports")
def api_export_users(conn, req, ctx):
    return csv_response(reports.export_user_roster_csv(conn, _org_id(ctx), req.query), "user_roster.csv")


# Dashboard


@api("GET", r"/api/dashboard", "view_dashboard")
def api_landing(conn, req, ctx):
    return {"departments": dashboard.landing_summary(conn, _org_id(ctx))}


@api("GET", r"/api/dashboard/divisions/([\w-]+)", "view_dashboard")
def api_division_overview(conn, req, ctx, slug):
    return dashboard.division_overview(conn, _org_id(ctx), slug, req.query.get("range"))


@api("GET", r"/api/dashboard/([\w-]+)", "view_dashboard")
def api_department_overview(conn, req, ctx, slug):
    return dashboard.department_overview(
        conn, _org_id(ctx), slug, req.query.get("range"), req.query.get("division_id"), req.query.get("region_id")
    )


@api("GET", r"/api/dashboard/([\w-]+)/([\w-]+)", "view_dashboard")
def api_metric_detail(conn, req, ctx, department_slug, metric_slug):
    return dashboard.metric_detail(
        conn,
        _org_id(ctx),
        department_slug,
        metric_slug,
        req.query.get("range"),
        req.query.get("division_id"),
        req.query.get("region_id"),
    )


# Scorecards


@api("GET", r"/api/scorecards", "view_dashboard")
def api_list_scorecards(conn, req, ctx):
    return {"scorecards": scorecards.list_scorecards(conn, _org_id(ctx), active_only=to_bool(req.query.get("active")))}


@api("POST", r"/api/scorecards", "manage_scorecards")
def api_create_scorecard(conn, req, ctx):
    return scorecards.create_scorecard(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/scorecards/(\d+)", "view_dashboard")
def api_get_scorecard(conn, req, ctx, scorecard_id):
    return {"scorecard": scorecards.get_scorecard(conn, _org_id(ctx), scorecard_id)}


@api("GET", r"/api/scorecards/(\d+)/grid", "view_dashboard")
def api_scorecard_grid(conn, req, ctx, scorecard_id):
    return scorecards.build_scorecard(conn, _org_id(ctx), scorecard_id, req.query.get("year"))


@api("POST", r"/api/scorecards/(\d+)", "manage_scorecards")
def api_update_scorecard(conn, req, ctx, scorecard_id):
    return scorecards.update_scorecard(conn, _org_id(ctx), _user_id(ctx), scorecard_id, req.form)


@api("POST", r"/api/scorecards/(\d+)/delete", "manage_scorecards")
def api_delete_scorecard(conn, req, ctx, scorecard_id):
    return scorecards.delete_scorecard(conn, _org_id(ctx), _user_id(ctx), scorecard_id)


# QI campaigns and share links


@api("GET", r"/api/qi/campaigns", "view_dashboard")
def api_list_campaigns(conn, req, ctx):
    items = qi.list_campaigns(conn, _org_id(ctx), req.query.get("status"), active_only=to_bool(req.query.get("active")))
    return {"campaigns": items}


@api("POST", r"/api/qi/campaigns", "manage_campaigns")
def api_create_campaign(conn, req, ctx):
    return dict(qi.create_campaign(conn, _org_id(ctx), _user_id(ctx), req.form), message="Campaign created.")


@api("GET", r"/api/qi/campaigns/(\d+)", "view_dashboard")
def api_get_campaign(conn, req, ctx, campaign_id):
    return {"campaign": qi.get_campaign(conn, _org_id(ctx), campaign_id)}


@api("POST", r"/api/qi/campaigns/(\d+)", "manage_campaigns")
def api_update_campaign(conn, req, ctx, campaign_id):
    return qi.update_campaign(conn, _org_id(ctx), _user_id(ctx), campaign_id, req.form)


@api("POST", r"/api/qi/campaigns/(\d+)/active", "manage_campaigns")
def api_campaign_active(conn, req, ctx, campaign_id):
    return qi.set_campaign_active(conn, _org_id(ctx), _user_id(ctx), campaign_id, _active(req))


@api("POST", r"/api/qi/campaigns/(\d+)/delete", "manage_campaigns")
def api_delete_campaign(conn, req, ctx, campaign_id):
    return qi.delete_campaign(conn, _org_id(ctx), _user_id(ctx), campaign_id)


@api("GET", r"/api/qi/campaigns/(\d+)/report", "view_dashboard")
def api_campaign_report(conn, req, ctx, campaign_id):
    return qi.campaign_report(conn, _org_id(ctx), campaign_id)


@api("GET", r"/api/qi/campaigns/(\d+)/share-links", "manage_campaigns")
def api_list_share_links(conn, req, ctx, campaign_id):
    return {"share_links": qi.list_share_links(conn, _org_id(ctx), campaign_id)}


@api("POST", r"/api/qi/campaigns/(\d+)/share-links", "manage_campaigns")
def api_create_share_link(conn, req, ctx, campaign_id):
    result = qi.create_share_link(conn, _org_id(ctx), _user_id(ctx), campaign_id, req.form.get("days"))
    return dict(result, message="Share link created.")


@api("POST", r"/api/qi/share-links/(\d+)/revoke", "manage_campaigns")
def api_revoke_share_link(conn, req, ctx, link_id):
    return dict(qi.revoke_share_link(conn, _org_id(ctx), _user_id(ctx), link_id), message="Share link revoked.")


# Driver diagrams and nodes


@api("GET", r"/api/qi/diagrams", "view_dashboard")
def api_list_diagrams(conn, req, ctx):
    return {"diagrams": qi.list_diagrams(conn, _org_id(ctx), req.query.get("campaign_id"))}


@api("POST", r"/api/qi/diagrams", "manage_driver_diagrams")
def api_create_diagram(conn, req, ctx):
    return qi.create_diagram(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/qi/diagrams/(\d+)", "view_dashboard")
def api_diagram_tree(conn, req, ctx, diagram_id):
    return {"diagram": qi.diagram_tree(conn, _org_id(ctx), diagram_id)}


@api("POST", r"/api/qi/diagrams/(\d+)", "manage_driver_diagrams")
def api_update_diagram(conn, req, ctx, diagram_id):
    return qi.update_diagram(conn, _org_id(ctx), _user_id(ctx), diagram_id, req.form)


@api("POST", r"/api/qi/diagrams/(\d+)/delete", "manage_driver_diagrams")
def api_delete_diagram(conn, req, ctx, diagram_id):
    return qi.delete_diagram(conn, _org_id(ctx), _user_id(ctx), diagram_id)


@api("POST", r"/api/qi/diagrams/(\d+)/campaign", "manage_driver_diagrams")
def api_assign_diagram(conn, req, ctx, diagram_id):
    return qi.assign_diagram_to_campaign(conn, _org_id(ctx), _user_id(ctx), diagram_id, req.form.get("campaign_id"))


@api("POST", r"/api/qi/diagrams/(\d+)/nodes", "manage_driver_diagrams")
def api_create_node(conn, req, ctx, diagram_id):
    return qi.create_node(conn, _org_id(ctx), _user_id(ctx), diagram_id, req.form)


@api("POST", r"/api/qi/nodes/reorder", "manage_driver_diagrams")
def api_reorder_nodes(conn, req, ctx):
    return qi.reorder_nodes(conn, _org_id(ctx), _user_id(ctx), req.form_list("orders"))


@api("POST", r"/api/qi/nodes/(\d+)", "manage_driver_diagrams")
def api_update_node(conn, req, ctx, node_id):
    return qi.update_node(conn, _org_id(ctx), _user_id(ctx), node_id, req.form)


@api("POST", r"/api/qi/nodes/(\d+)/delete", "manage_driver_diagrams")
def api_delete_node(conn, req, ctx, node_id):
    return qi.delete_node(conn, _org_id(ctx), _user_id(ctx), node_id)


# PDSA cycles


@api("GET", r"/api/qi/pdsa", "view_dashboard")
def api_list_pdsa(conn, req, ctx):
    return {"cycles": qi.list_pdsa_cycles(conn, _org_id(ctx), req.query.get("diagram_id"), req.query.get("status"))}


@api("POST", r"/api/qi/pdsa", "manage_driver_diagrams")
def api_create_pdsa(conn, req, ctx):
    return qi.create_pdsa_cycle(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/qi/pdsa/(\d+)", "view_dashboard")
def api_get_pdsa(conn, req, ctx, cycle_id):
    return {"cycle": qi.get_pdsa_cycle(conn, _org_id(ctx), cycle_id)}


@api("POST", r"/api/qi/pdsa/(\d+)", "manage_driver_diagrams")
def api_update_pdsa(conn, req, ctx, cycle_id):
    return qi.update_pdsa_cycle(conn, _org_id(ctx), _user_id(ctx), cycle_id, req.form)


@api("POST", r"/api/qi/pdsa/(\d+)/delete", "manage_driver_diagrams")
def api_delete_pdsa(conn, req, ctx, cycle_id):
    return qi.delete_pdsa_cycle(conn, _org_id(ctx), _user_id(ctx), cycle_id)


@api("POST", r"/api/qi/pdsa/(\d+)/advance", "manage_driver_diagrams")
def api_advance_pdsa(conn, req, ctx, cycle_id):
    result = qi.advance_pdsa_cycle(conn, _org_id(ctx), _user_id(ctx), cycle_id)
    return dict(result, message=f"Cycle moved to {result['status']}.")


@api("POST", r"/api/qi/pdsa/(\d+)/clone", "manage_driver_diagrams")
def api_clone_pdsa(conn, req, ctx, cycle_id):
    return qi.clone_pdsa_cycle(conn, _org_id(ctx), _user_id(ctx), cycle_id)


# Action items


@api("GET", r"/api/qi/action-items", "view_dashboard")
def api_list_action_items(conn, req, ctx):
    return {"action_items": qi.list_action_items(conn, _org_id(ctx), req.query)}


@api("POST", r"/api/qi/action-items", "manage_action_items")
def api_create_action_item(conn, req, ctx):
    return qi.create_action_item(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/qi/action-items/(\d+)", "view_dashboard")
def api_get_action_item(conn, req, ctx, item_id):
    return {"action_item": qi.get_action_item(conn, _org_id(ctx), item_id)}


@api("POST", r"/api/qi/action-items/(\d+)", "manage_action_items")
def api_update_action_item(conn, req, ctx, item_id):
    return qi.update_action_item(conn, _org_id(ctx), _user_id(ctx), item_id, req.form)


@api("POST", r"/api/qi/action-items/(\d+)/status", "manage_action_items")
def api_action_item_status(conn, req, ctx, item_id):
    return qi.set_action_item_status(conn, _org_id(ctx), _user_id(ctx), item_id, str(req.form.get("status") or ""))


@api("POST", r"/api/qi/action-items/(\d+)/delete", "manage_action_items")
def api_delete_action_item(conn, req, ctx, item_id):
    return qi.delete_action_item(conn, _org_id(ctx), _user_id(ctx), item_id)


# Field training: trainees, FTOs, assignments


@api("GET", r"/api/field-training/stats", "view_own_trainees")
def api_ft_stats(conn, req, ctx):
    return field_training.dashboard_stats(conn, _org_id(ctx), _scope(ctx))


@api("GET", r"/api/field-training/trainees", "view_own_trainees")
def api_list_trainees(conn, req, ctx):
    return {"trainees": field_training.list_trainees(conn, _org_id(ctx), _scope(ctx), req.query.get("status"))}


@api("POST", r"/api/field-training/trainees", "manage_ftos_trainees")
def api_create_trainee(conn, req, ctx):
    return field_training.create_trainee(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/field-training/trainees/(\d+)", "access_field_training")
def api_get_trainee(conn, req, ctx, trainee_id):
    trainee = field_training.get_trainee(conn, _org_id(ctx), trainee_id, _scope(ctx))
    return {
        "trainee": trainee,
        "phases": field_training.trainee_phase_progress(conn, _org_id(ctx), trainee["id"]),
        "skills": skills.trainee_skill_progress(conn, _org_id(ctx), trainee["id"]),
        "coaching": coaching.coaching_summary(conn, _org_id(ctx), trainee["id"]),
    }


@api("POST", r"/api/field-training/trainees/(\d+)", "manage_ftos_trainees")
def api_update_trainee(conn, req, ctx, trainee_id):
    return field_training.update_trainee(conn, _org_id(ctx), _user_id(ctx), trainee_id, req.form)


@api("GET", r"/api/field-training/ftos", "view_own_trainees")
def api_list_ftos(conn, req, ctx):
    return {"ftos": field_training.list_ftos(conn, _org_id(ctx))}


@api("POST", r"/api/field-training/ftos", "manage_ftos_trainees")
def api_create_fto(conn, req, ctx):
    return field_training.create_fto(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("POST", r"/api/field-training/ftos/(\d+)", "manage_ftos_trainees")
def api_update_fto(conn, req, ctx, fto_id):
    return field_training.update_fto(conn, _org_id(ctx), _user_id(ctx), fto_id, req.form)


@api("GET", r"/api/field-training/assignments", "view_own_trainees")
def api_list_assignments(conn, req, ctx):
    fto_id = req.query.get("fto_id")
    if _scope(ctx) is not None:
        fto_id = _user_id(ctx)
    return {"assignments": field_training.list_assignments(conn, _org_id(ctx), req.query.get("trainee_id"), fto_id)}


@api("POST", r"/api/field-training/assignments", "manage_training_assignments")
def api_create_assignment(conn, req, ctx):
    return field_training.create_assignment(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("POST", r"/api/field-training/assignments/(\d+)/end", "manage_training_assignments")
def api_end_assignment(conn, req, ctx, assignment_id):
    status = str(req.form.get("status") or "completed")
    return field_training.end_assignment(conn, _org_id(ctx), _user_id(ctx), assignment_id, status)


@api("GET", r"/api/field-training/assignment-requests", "view_own_trainees")
def api_list_assignment_requests(conn, req, ctx):
    return {
        "requests": field_training.list_assignment_requests(conn, _org_id(ctx), req.query.get("status"), _scope(ctx))
    }


@api("POST", r"/api/field-training/assignment-requests", "create_edit_own_dors")
def api_create_assignment_request(conn, req, ctx):
    result = field_training.create_assignment_request(conn, _org_id(ctx), _user_id(ctx), req.form)
    return dict(result, message="Assignment request sent.")


@api("POST", r"/api/field-training/assignment-requests/(\d+)/review", "manage_training_assignments")
def api_review_assignment_request(conn, req, ctx, request_id):
    result = field_training.review_assignment_request(
        conn, _org_id(ctx), _user_id(ctx), request_id, req.form.get("decision"), req.form.get("review_notes")
    )
    return dict(result, message=f"Request {result['status']}.")


# Field training: phases and evaluation categories


@api("GET", r"/api/field-training/phases", "access_field_training")
def api_list_phases(conn, req, ctx):
    return {"phases": field_training.list_phases(conn, _org_id(ctx), active_only=to_bool(req.query.get("active")))}


@api("POST", r"/api/field-training/phases", "manage_dors_skills")
def api_create_phase(conn, req, ctx):
    return field_training.create_phase(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("POST", r"/api/field-training/phases/(\d+)", "manage_dors_skills")
def api_update_phase(conn, req, ctx, phase_id):
    return field_training.update_phase(conn, _org_id(ctx), _user_id(ctx), phase_id, req.form)


@api("POST", r"/api/field-training/phases/(\d+)/delete", "manage_dors_skills")
def api_delete_phase(conn, req, ctx, phase_id):
    return field_training.delete_phase(conn, _org_id(ctx), _user_id(ctx), phase_id)


@api("POST", r"/api/field-training/trainees/(\d+)/phases/(\d+)", "signoff_phases")
def api_update_trainee_phase(conn, req, ctx, trainee_id, phase_id):
    return field_training.update_trainee_phase(conn, _org_id(ctx), _user_id(ctx), trainee_id, phase_id, req.form)


@api("POST", r"/api/field-training/trainees/(\d+)/phases/(\d+)/signoff", "signoff_phases")
def api_signoff_phase(conn, req, ctx, trainee_id, phase_id):
    result = field_training.signoff_phase(conn, _org_id(ctx), _user_id(ctx), trainee_id, phase_id, req.form.get("notes"))
    return dict(result, message="Phase signed off.")


@api("GET", r"/api/field-training/categories", "access_field_training")
def api_list_eval_categories(conn, req, ctx):
    items = field_training.list_evaluation_categories(conn, _org_id(ctx), active_only=to_bool(req.query.get("active")))
    return {"categories": items}


@api("POST", r"/api/field-training/categories", "manage_dors_skills")
def api_create_eval_category(conn, req, ctx):
    return field_training.create_evaluation_category(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("POST", r"/api/field-training/categories/(\d+)", "manage_dors_skills")
def api_update_eval_category(conn, req, ctx, category_id):
    return field_training.update_evaluation_category(conn, _org_id(ctx), _user_id(ctx), category_id, req.form)


@api("POST", r"/api/field-training/categories/(\d+)/delete", "manage_dors_skills")
def api_delete_eval_category(conn, req, ctx, category_id):
    return field_training.delete_evaluation_category(conn, _org_id(ctx), _user_id(ctx), category_id)


# Field training: DORs


def _visible_dor(conn, ctx: Dict[str, Any], evaluation_id: int) -> Dict[str, Any]:
    dor = field_training.get_dor(conn, _org_id(ctx), evaluation_id, _scope(ctx))
    # Trainees only ever see their own submitted reports.
    if ctx["role"] == "trainee" and (dor["status"] != "submitted" or int(dor["trainee_id"]) != _user_id(ctx)):
        raise NotFoundError("DOR")
    return dor


def _dor_filters(req: Request, ctx: Dict[str, Any]) -> Dict[str, Any]:
    filters = dict(req.query)
    if ctx["role"] == "trainee":
        filters["status"] = "submitted"
        filters["trainee_id"] = _user_id(ctx)
    return filters


@api("GET", r"/api/field-training/dors", "access_field_training")
def api_list_dors(conn, req, ctx):
    return {"dors": field_training.list_dors(conn, _org_id(ctx), _dor_filters(req, ctx), _scope(ctx))}


@api("POST", r"/api/field-training/dors", "create_edit_own_dors")
def api_create_dor(conn, req, ctx):
    submit = to_bool(req.form.get("submit"))
    result = field_training.create_dor(conn, _org_id(ctx), _user_id(ctx), req.form, submit, _scope(ctx))
    return dict(result, message="DOR submitted." if submit else "DOR saved as draft.")


@api("GET", r"/api/field-training/dors/(\d+)", "access_field_training")
def api_get_dor(conn, req, ctx, evaluation_id):
    return {"dor": _visible_dor(conn, ctx, evaluation_id)}


@api("POST", r"/api/field-training/dors/(\d+)", "create_edit_own_dors")
def api_update_dor(conn, req, ctx, evaluation_id):
    return field_training.update_dor_draft(conn, _org_id(ctx), _user_id(ctx), evaluation_id, req.form, _scope(ctx))


@api("POST", r"/api/field-training/dors/(\d+)/submit", "create_edit_own_dors")
def api_submit_dor(conn, req, ctx, evaluation_id):
    result = field_training.submit_dor(conn, _org_id(ctx), _user_id(ctx), evaluation_id, _scope(ctx))
    return dict(result, message="DOR submitted.")


@api("POST", r"/api/field-training/dors/(\d+)/delete", "create_edit_own_dors")
def api_delete_dor(conn, req, ctx, evaluation_id):
    return field_training.delete_dor(conn, _org_id(ctx), _user_id(ctx), evaluation_id, _scope(ctx))


@api("POST", r"/api/field-training/dors/(\d+)/acknowledge", "access_field_training")
def api_acknowledge_dor(conn, req, ctx, evaluation_id):
    result = field_training.acknowledge_dor(conn, _org_id(ctx), _user_id(ctx), evaluation_id)
    return dict(result, message="DOR acknowledged.")


@api("POST", r"/api/field-training/dors/(\d+)/notes", "review_approve_dors")
def api_add_dor_note(conn, req, ctx, evaluation_id):
    result = field_training.add_supervisor_note(conn, _org_id(ctx), _user_id(ctx), evaluation_id, req.form.get("note"))
    return dict(result, message="Note added.")


@api("POST", r"/api/field-training/notes/(\d+)/delete", "review_approve_dors")
def api_delete_dor_note(conn, req, ctx, note_id):
    can_moderate = has_permission(ctx["role"], "manage_dors_skills")
    return field_training.delete_supervisor_note(conn, _org_id(ctx), _user_id(ctx), note_id, can_moderate)


@api("GET", r"/api/field-training/trainees/(\d+)/dors", "access_field_training")
def api_trainee_dor_history(conn, req, ctx, trainee_id):
    return {"dors": field_training.get_trainee_dor_history(conn, _org_id(ctx), trainee_id, _scope(ctx))}


# Coaching


@api("GET", r"/api/coaching/activities", "access_field_training")
def api_list_activities(conn, req, ctx):
    items = coaching.list_activities(
        conn, _org_id(ctx), req.query.get("category_id"), active_only=to_bool(req.query.get("active"))
    )
    return {"activities": items}


@api("POST", r"/api/coaching/activities", "manage_dors_skills")
def api_create_activity(conn, req, ctx):
    return coaching.create_activity(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/coaching/activities/(\d+)", "access_field_training")
def api_get_activity(conn, req, ctx, activity_id):
    return {"activity": coaching.get_activity(conn, _org_id(ctx), activity_id)}


@api("POST", r"/api/coaching/activities/(\d+)", "manage_dors_skills")
def api_update_activity(conn, req, ctx, activity_id):
    return coaching.update_activity(conn, _org_id(ctx), _user_id(ctx), activity_id, req.form)


@api("POST", r"/api/coaching/activities/(\d+)/delete", "manage_dors_skills")
def api_delete_activity(conn, req, ctx, activity_id):
    return coaching.delete_activity(conn, _org_id(ctx), _user_id(ctx), activity_id)


@api("GET", r"/api/field-training/trainees/(\d+)/coaching", "view_own_trainees")
def api_trainee_coaching(conn, req, ctx, trainee_id):
    field_training.assert_trainee_visible(conn, _org_id(ctx), trainee_id, _scope(ctx))
    return {
        "assignments": coaching.trainee_assignments(conn, _org_id(ctx), trainee_id, req.query.get("status")),
        "summary": coaching.coaching_summary(conn, _org_id(ctx), trainee_id),
    }


@api("GET", r"/api/me/coaching", "access_field_training")
def api_my_coaching(conn, req, ctx):
    return {
        "assignments": coaching.trainee_assignments(conn, _org_id(ctx), _user_id(ctx), req.query.get("status")),
        "summary": coaching.coaching_summary(conn, _org_id(ctx), _user_id(ctx)),
    }


@api("POST", r"/api/me/coaching/(\d+)/start", "access_field_training")
def api_start_coaching(conn, req, ctx, assignment_id):
    return dict(coaching.start_assignment(conn, _org_id(ctx), _user_id(ctx), assignment_id), message="Activity started.")


@api("POST", r"/api/me/coaching/(\d+)/progress", "access_field_training")
def api_coaching_progress(conn, req, ctx, assignment_id):
    return coaching.update_progress(conn, _org_id(ctx), _user_id(ctx), assignment_id, req.form.get("progress"))


@api("POST", r"/api/me/coaching/(\d+)/complete", "access_field_training")
def api_complete_coaching(conn, req, ctx, assignment_id):
    result = coaching.complete_assignment(
        conn, _org_id(ctx), _user_id(ctx), assignment_id, req.form.get("response"), req.form.get("score")
    )
    return dict(result, message="Activity completed.")


# Skills


@api("GET", r"/api/skills/categories", "access_field_training")
def api_list_skill_categories(conn, req, ctx):
    items = skills.list_skill_categories(conn, _org_id(ctx), active_only=to_bool(req.query.get("active")))
    return {"categories": items}


@api("POST", r"/api/skills/categories", "manage_dors_skills")
def api_create_skill_category(conn, req, ctx):
    return skills.create_skill_category(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("POST", r"/api/skills/categories/(\d+)", "manage_dors_skills")
def api_update_skill_category(conn, req, ctx, category_id):
    return skills.update_skill_category(conn, _org_id(ctx), _user_id(ctx), category_id, req.form)


@api("POST", r"/api/skills/categories/(\d+)/delete", "manage_dors_skills")
def api_delete_skill_category(conn, req, ctx, category_id):
    return skills.delete_skill_category(conn, _org_id(ctx), _user_id(ctx), category_id)


@api("GET", r"/api/skills", "access_field_training")
def api_list_skills(conn, req, ctx):
    items = skills.list_skills(conn, _org_id(ctx), req.query.get("category_id"), active_only=to_bool(req.query.get("active")))
    return {"skills": items}


@api("POST", r"/api/skills", "manage_dors_skills")
def api_create_skill(conn, req, ctx):
    return skills.create_skill(conn, _org_id(ctx), _user_id(ctx), req.form)


@api("GET", r"/api/skills/(\d+)", "access_field_training")
def api_get_skill(conn, req, ctx, skill_id):
    return {"skill": skills.get_skill(conn, _org_id(ctx), skill_id)}


@api("POST", r"/api/skills/(\d+)", "manage_dors_skills")
def api_update_skill(conn, req, ctx, skill_id):
    return skills.update_skill(conn, _org_id(ctx), _user_id(ctx), skill_id, req.form)


@api("POST", r"/api/skills/(\d+)/delete", "manage_dors_skills")
def api_delete_skill(conn, req, ctx, skill_id):
    return skills.delete_skill(conn, _org_id(ctx), _user_id(ctx), skill_id)


@api("POST", r"/api/skills/(\d+)/steps", "manage_dors_skills")
def api_create_step(conn, req, ctx, skill_id):
    return skills.create_step(conn, _org_id(ctx), _user_id(ctx), skill_id, req.form)


@api("POST", r"/api/skills/steps/(\d+)", "manage_dors_skills")
def api_update_step(conn, req, ctx, step_id):
    return skills.update_step(conn, _org_id(ctx), _user_id(ctx), step_id, req.form)


@api("POST", r"/api/skills/steps/(\d+)/delete", "manage_dors_skills")
def api_delete_step(conn, req, ctx, step_id):
    return skills.delete_step(conn, _org_id(ctx), _user_id(ctx), step_id)


@api("GET", r"/api/field-training/trainees/(\d+)/skills", "access_field_training")
def api_trainee_skills(conn, req, ctx, trainee_id):
    field_training.assert_trainee_visible(conn, _org_id(ctx), trainee_id, _scope(ctx))
    return skills.trainee_skill_progress(conn, _org_id(ctx), trainee_id)


@api("POST", r"/api/field-training/trainees/(\d+)/skills/(\d+)/signoff", "create_edit_own_dors")
def api_signoff_skill(conn, req, ctx, trainee_id, skill_id):
    field_training.assert_trainee_visible(conn, _org_id(ctx), trainee_id, _scope(ctx))
    result = skills.signoff_skill(conn, _org_id(ctx), _user_id(ctx), trainee_id, skill_id, req.form)
    return dict(result, message="Skill signed off.")


@api("POST", r"/api/field-training/trainees/(\d+)/skills/(\d+)/remove", "manage_dors_skills")
def api_remove_skill_signoff(conn, req, ctx, trainee_id, skill_id):
    return skills.remove_signoff(conn, _org_id(ctx), _user_id(ctx), trainee_id, skill_id)


# Snapshots


@api("GET", r"/api/snapshots", "view_all_trainees")
def api_list_snapshots(conn, req, ctx):
    return {"snapshots": snapshots.list_snapshots(conn, _org_id(ctx), req.query.get("trainee_id"))}


@api("GET", r"/api/field-training/trainees/(\d+)/snapshots", "view_all_trainees")
def api_trainee_snapshots(conn, req, ctx, trainee_id):
    return {"snapshots": snapshots.list_snapshots(conn, _org_id(ctx), trainee_id)}


@api("POST", r"/api/field-training/trainees/(\d+)/snapshots", "view_all_trainees")
def api_create_snapshot(conn, req, ctx, trainee_id):
    result = snapshots.create_snapshot(conn, _org_id(ctx), _user_id(ctx), trainee_id, req.form.get("days"))
    return dict(result, message=f"Snapshot link created: /shared/trainee/{result['token']}")


@api("POST", r"/api/snapshots/bulk", "view_all_trainees")
def api_bulk_snapshots(conn, req, ctx):
    return snapshots.create_bulk_snapshots(
        conn, _org_id(ctx), _user_id(ctx), req.form_list("trainee_ids"), req.form.get("days")
    )


@api("POST", r"/api/snapshots/(\d+)/revoke", "view_all_trainees")
def api_revoke_snapshot(conn, req, ctx, snapshot_id):
    return dict(snapshots.revoke_snapshot(conn, _org_id(ctx), _user_id(ctx), snapshot_id), message="Snapshot revoked.")


# Audit


@api("GET", r"/api/audit", "view_audit_log")
def api_audit_log(conn, req, ctx):
    page, page_size = parse_pagination(req.query)
    return list_audit_log(conn, _org_id(ctx), req.query, page, page_size)


@api("GET", r"/api/audit/([A-Za-z]+)/(\d+)", "view_audit_log")
def api_entity_history(conn, req, ctx, entity, entity_id):
    return {"history": entity_history(conn, _org_id(ctx), entity, entity_id)}


# HTML pages


def _home_for(ctx: Dict[str, Any]) -> str:
    role = ctx.get("role")
    if has_permission(role, "view_dashboard"):
        return "/dashboard"
    if role == "trainee":
        return "/field-training/coaching"
    return "/field-training"


def _page_gate(ctx: Dict[str, Any], req: Request, permission: Optional[str] = None) -> Optional[Response]:
    gate = require_auth(ctx, req)
    if gate is None and permission:
        gate = require_permission(ctx, permission, req)
    return gate


def _admin_rows(conn, ctx: Dict[str, Any], req: Request, section: str) -> Dict[str, Any]:
    org_id = _org_id(ctx)
    if section == "users":
        page, page_size = parse_pagination(req.query)
        result = org.list_users(conn, org_id, req.query, page, page_size)
        return {"rows": result["items"], "pagination": result["pagination"], "pending": org.pending_users(conn, org_id)}
    loaders = {
        "departments": lambda: org.list_departments(conn, org_id),
        "divisions": lambda: org.list_divisions(conn, org_id, req.query.get("department_id")),
        "regions": lambda: org.list_regions(conn, org_id, req.query.get("division_id")),
        "categories": lambda: org.list_categories(conn, org_id),
        "metrics": lambda: metrics.list_metrics(conn, org_id, req.query.get("department_id")),
    }
    return {"rows": loaders[section](), "pagination": None, "pending": []}


def route_page(conn, req: Request, ctx: Dict[str, Any], notice: str) -> Optional[Response]:
    """Serve the signed-in HTML pages. Returns ``None`` when nothing matched."""
    path = req.path
    if req.method != "GET":
        return None

    if path == "/":
        if not ctx.get("user"):
            return redirect("/login")
        return redirect(_home_for(ctx))

    if path == "/account":
        gate = _page_gate(ctx, req)
        return gate or Response(render_account(req, ctx, notice))

    if path == "/dashboard":
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        return Response(render_landing(req, ctx, dashboard.landing_summary(conn, _org_id(ctx)), notice))

    match = re.fullmatch(r"/divisions/([\w-]+)", path)
    if match:
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        data = dashboard.division_overview(conn, _org_id(ctx), match.group(1), req.query.get("range"))
        return Response(render_division(req, ctx, data))

    match = re.fullmatch(r"/dashboard/([\w-]+)", path)
    if match:
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        data = dashboard.department_overview(
            conn, _org_id(ctx), match.group(1), req.query.get("range"), req.query.get("division_id"), req.query.get("region_id")
        )
        return Response(render_department(req, ctx, data))

    match = re.fullmatch(r"/dashboard/([\w-]+)/([\w-]+)", path)
    if match:
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        data = dashboard.metric_detail(
            conn,
            _org_id(ctx),
            match.group(1),
            match.group(2),
            req.query.get("range"),
            req.query.get("division_id"),
            req.query.get("region_id"),
        )
        return Response(render_metric_detail(req, ctx, data))

    if path == "/scorecards":
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        items = scorecards.list_scorecards(conn, _org_id(ctx), active_only=not has_permission(ctx["role"], "manage_scorecards"))
        return Response(render_scorecards(req, ctx, items, notice))

    match = re.fullmatch(r"/scorecards/(\d+)", path)
    if match:
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        data = scorecards.build_scorecard(conn, _org_id(ctx), match.group(1), req.query.get("year"))
        return Response(render_scorecard(req, ctx, data))

    if path == "/qi/campaigns":
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        return Response(render_campaigns(req, ctx, qi.list_campaigns(conn, _org_id(ctx), req.query.get("status")), notice))

    match = re.fullmatch(r"/qi/campaigns/(\d+)", path)
    if match:
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        report = qi.campaign_report(conn, _org_id(ctx), match.group(1))
        links = qi.list_share_links(conn, _org_id(ctx), match.group(1)) if has_permission(ctx["role"], "manage_campaigns") else []
        return Response(render_campaign_report(req, ctx, report, links, notice=notice))

    match = re.fullmatch(r"/qi/diagrams/(\d+)", path)
    if match:
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        tree = qi.diagram_tree(conn, _org_id(ctx), match.group(1))
        cycles = qi.list_pdsa_cycles(conn, _org_id(ctx), match.group(1))
        return Response(render_diagram(req, ctx, tree, cycles, notice))

    if path == "/qi/action-items":
        gate = _page_gate(ctx, req, "view_dashboard")
        if gate:
            return gate
        return Response(render_action_items(req, ctx, qi.list_action_items(conn, _org_id(ctx), req.query), notice))

    if path == "/field-training":
        gate = _page_gate(ctx, req, "access_field_training")
        if gate:
            return gate
        if not has_permission(ctx["role"], "view_own_trainees"):
            return redirect(f"/field-training/trainees/{_user_id(ctx)}")
        scope = _scope(ctx)
        stats = field_training.dashboard_stats(conn, _org_id(ctx), scope)
        trainees = field_training.list_trainees(conn, _org_id(ctx), scope, req.query.get("status"))
        requests = field_training.list_assignment_requests(conn, _org_id(ctx), requester_id=scope)
        requestable = []
        if has_permission(ctx["role"], "create_edit_own_dors"):
            requestable = field_training.list_trainees(conn, _org_id(ctx), status="active")
        return Response(render_field_training(req, ctx, stats, trainees, notice, requests, requestable))

    match = re.fullmatch(r"/field-training/trainees/(\d+)", path)
    if match:
        gate = _page_gate(ctx, req, "access_field_training")
        if gate:
            return gate
        org_id = _org_id(ctx)
        trainee = field_training.get_trainee(conn, org_id, match.group(1), _scope(ctx))
        dor_filters = {"trainee_id": trainee["id"]}
        if ctx["role"] == "trainee":
            dor_filters["status"] = "submitted"
        links = snapshots.list_snapshots(conn, org_id, trainee["id"]) if has_permission(ctx["role"], "view_all_trainees") else []
        return Response(
            render_trainee(
                req,
                ctx,
                trainee,
                field_training.trainee_phase_progress(conn, org_id, trainee["id"]),
                field_training.list_dors(conn, org_id, dor_filters, _scope(ctx)),
                skills.trainee_skill_progress(conn, org_id, trainee["id"]),
                coaching.coaching_summary(conn, org_id, trainee["id"]),
                links,
                notice,
            )
        )

    if path == "/field-training/dors/new":
        gate = _page_gate(ctx, req, "create_edit_own_dors")
        if gate:
            return gate
        org_id = _org_id(ctx)
        return Response(
            render_dor_form(
                req,
                ctx,
                field_training.list_trainees(conn, org_id, _scope(ctx)),
                field_training.list_evaluation_categories(conn, org_id, active_only=True),
                field_training.list_phases(conn, org_id, active_only=True),
                field_training.RECOMMEND_ACTIONS,
                notice,
            )
        )

    match = re.fullmatch(r"/field-training/dors/(\d+)", path)
    if match:
        gate = _page_gate(ctx, req, "access_field_training")
        if gate:
            return gate
        return Response(render_dor(req, ctx, _visible_dor(conn, ctx, int(match.group(1))), notice))

    if path == "/field-training/skills":
        gate = _page_gate(ctx, req, "access_field_training")
        if gate:
            return gate
        categories = skills.list_skill_categories(conn, _org_id(ctx), active_only=True)
        items = skills.list_skills(conn, _org_id(ctx), active_only=True)
        return Response(render_skills(req, ctx, categories, items, notice))

    if path == "/field-training/coaching":
        gate = _page_gate(ctx, req, "access_field_training")
        if gate:
            return gate
        assignments = coaching.trainee_assignments(conn, _org_id(ctx), _user_id(ctx))
        summary = coaching.coaching_summary(conn, _org_id(ctx), _user_id(ctx))
        return Response(render_my_coaching(req, ctx, assignments, summary, notice))

    if path == "/data-entry":
        gate = _page_gate(ctx, req, "enter_metric_data")
        if gate:
            return gate
        page, page_size = parse_pagination(req.query)
        result = entries.list_entries(conn, _org_id(ctx), req.query, page, page_size)
        items = metrics.list_metrics(conn, _org_id(ctx), active_only=True)
        return Response(render_entries(req, ctx, result, items, notice))

    if path == "/admin":
        gate = _page_gate(ctx, req, "view_admin")
        return gate or redirect("/admin/departments")

    if path == "/admin/audit":
        gate = _page_gate(ctx, req, "view_audit_log")
        if gate:
            return gate
        page, page_size = parse_pagination(req.query)
        result = list_audit_log(conn, _org_id(ctx), req.query, page, page_size)
        return Response(render_audit(req, ctx, result, AUDIT_ACTIONS))

    match = re.fullmatch(r"/admin/([a-z]+)", path)
    if match and match.group(1) in dict(ADMIN_SECTIONS):
        section = match.group(1)
        gate = _page_gate(ctx, req, "manage_users" if section == "users" else "view_admin")
        if gate:
            return gate
        data = _admin_rows(conn, ctx, req, section)
        return Response(render_admin(req, ctx, section, data["rows"], data["pending"], data["pagination"], notice))

    return None


def route_public(conn, req: Request, ctx: Dict[str, Any], notice: str) -> Optional[Response]:
    """Login, logout, registration and the token-protected shared views."""
    path = req.path

    if path == "/login" and req.method == "GET":
        if ctx.get("user"):
            return redirect(_home_for(ctx))
        return Response(render_login(req, error=notice))

    if path == "/login" and req.method == "POST":
        try:
            user = authenticate(conn, req.form.get("email", ""), req.form.get("password", ""), req.client_ip, req.user_agent)
        except LoginThrottled as exc:
            conn.commit()
            return Response(render_login(req, exc.message), status=exc.status, headers=[("Retry-After", str(exc.retry_after))])
        except ActionError as exc:
            conn.commit()
            return Response(render_login(req, exc.message), status="401 Unauthorized")
        raw_session, _csrf = create_session(conn, user["id"], req.client_ip, req.user_agent)
        conn.commit()
        logger.info("User %s signed in", user["id"])
        cookie = set_cookie(SESSION_COOKIE, raw_session, max_age=config.SESSION_DAYS * 86400)
        return redirect("/", cookies=[cookie])

    if path == "/api/auth/login" and req.method == "POST":
        try:
            user = authenticate(conn, req.form.get("email", ""), req.form.get("password", ""), req.client_ip, req.user_agent)
        except LoginThrottled as exc:
            conn.commit()
            resp = api_error(exc.message, status=exc.status)
            resp.headers.append(("Retry-After", str(exc.retry_after)))
            return resp
        except ActionError as exc:
            conn.commit()
            return api_error(exc.message, status="401 Unauthorized")
        raw_session, csrf = create_session(conn, user["id"], req.client_ip, req.user_agent)
        conn.commit()
        cookie = set_cookie(SESSION_COOKIE, raw_session, max_age=config.SESSION_DAYS * 86400)
        payload = {"ok": True, "user": {"id": user["id"], "email": user["email"]}, "csrf": csrf}
        return json_response(payload, cookies=[cookie])

    if path in ("/logout", "/api/auth/logout") and req.method == "POST":
        if ctx.get("user") and not validate_csrf(req, ctx):
            return api_forbidden(CSRF_ERROR)
        destroy_session(conn, req.cookies.get(SESSION_COOKIE, ""))
        conn.commit()
        cookies = [clear_cookie(SESSION_COOKIE), clear_cookie("active_org")]
        if req.is_api:
            return json_response({"ok": True}, cookies=cookies)
        return redirect("/login", cookies=cookies)

    if path == "/register" and req.method == "GET":
        return Response(render_register(req))

    if path == "/register" and req.method == "POST":
        org_id = default_org_id(conn)
        if org_id is None:
            return Response(render_register(req, "Registration is not available."), status="503 Service Unavailable")
        try:
            register_user(conn, org_id, req.form)
        except ActionError as exc:
            conn.rollback()
            return Response(render_register(req, exc.message), status=exc.status)
        conn.commit()
        return Response(render_register(req, done=True))

    match = re.fullmatch(r"/(api/)?shared/campaign/([\w-]+)", path)
    if match and req.method == "GET":
        report = qi.shared_campaign_report(conn, match.group(2))
        if match.group(1):
            return json_response({"ok": True, **report})
        return Response(render_campaign_report(req, None, report, shared=True))

    match = re.fullmatch(r"/(api/)?shared/trainee/([\w-]+)", path)
    if match and req.method == "GET":
        snapshot = snapshots.shared_snapshot(conn, match.group(2))
        if match.group(1):
            return json_response({"ok": True, **snapshot})
        return Response(render_shared_snapshot(req, snapshot))

    return None


def serve_static(req: Request) -> Response:
    rel = req.path[len("/static/"):]
    root = config.STATIC_DIR.resolve()
    static_file = (root / rel).resolve()
    if root not in static_file.parents or not static_file.is_file():
        return Response("Not found", status="404 Not Found", content_type="text/plain")
    mime = MIME_TYPES.get(static_file.suffix, "text/plain; charset=utf-8")
    return Response(static_file.read_bytes(), content_type=mime)


def app(environ, start_response):
    """WSGI entrypoint."""
    req = Request(environ)

    if req.path.startswith("/static/"):
        return serve_static(req).wsgi(start_response)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        # Readiness includes DB reachability so a locked or corrupt database is reported.
        try:
            ensure_bootstrap()
            check_conn = db_connect()
            try:
                check_conn.execute("SELECT 1").fetchone()
            finally:
                check_conn.close()
        except Exception:
            logger.exception("Readiness check failed")
            return Response("not-ready", status="503 Service Unavailable", content_type="text/plain").wsgi(start_response)
        return Response("ready", content_type="text/plain").wsgi(start_response)

    try:
        ensure_bootstrap()
    except Exception:
        body = "<h1>503 Service Unavailable</h1><p>The database is not available yet.</p>"
        if req.is_api:
            return api_error("Service unavailable", status="503 Service Unavailable").wsgi(start_response)
        return Response(body, status="503 Service Unavailable").wsgi(start_response)

    conn = db_connect()
    ctx: Dict[str, Any] = {}
    try:
        ctx = get_auth_context(conn, req)
        notice = req.query.get("msg", "")

        response = route_public(conn, req, ctx, notice)
        if response is None and req.is_api:
            response = dispatch_api(conn, req, ctx)
        if response is None:
            response = route_page(conn, req, ctx, notice)
            conn.commit()
        if response is None:
            response = Response(render_error(req, ctx, "404 Not Found", "That page does not exist."), status="404 Not Found")
        return response.wsgi(start_response)
    except ActionError as exc:
        # Services raising on a page load (unknown slug, foreign trainee).
        conn.rollback()
        if req.is_api:
            return api_error(exc.message, status=exc.status).wsgi(start_response)
        status_text = exc.status.split(" ", 1)[1] if " " in exc.status else exc.status
        return Response(render_error(req, ctx, status_text, exc.message), status=exc.status).wsgi(start_response)
    except Exception:
        logger.exception("Unhandled error on %s %s", req.method, req.path)
        conn.rollback()
        if req.is_api:
            return api_server_error().wsgi(start_response)
        body = "<h1>500 Internal Server Error</h1><p>An unexpected server error occurred.</p>"
        return Response(body, status="500 Internal Server Error").wsgi(start_response)
    finally:
        conn.close()


def run() -> None:
    config.configure_logging()
    ensure_bootstrap()
    server_mode = "threaded" if config.WSGI_THREADED else "single-threaded"
    logger.info(
        "%s running on http://%s:%s (db=%s, backend=%s, mode=%s)",
        config.APP_NAME,
        config.HOST,
        config.PORT,
        config.DB_PATH,
        config.DB_BACKEND,
        server_mode,
    )
    if config.WSGI_THREADED:
        server = make_server(config.HOST, config.PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(config.HOST, config.PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
