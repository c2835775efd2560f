"""Server-rendered HTML for the dashboard.

Pages are plain f-strings wrapped by :func:`render_layout`. Forms post to the
``/api/`` action endpoints with a hidden ``next`` field, so the router answers
them with a redirect carrying ``?msg=`` instead of a JSON body.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

from emsdash import config
from emsdash.http import Request
from emsdash.pagination import build_pagination_url
from emsdash.permissions import has_permission, role_label
from emsdash.utils import format_period, h

NAV_ITEMS: List[Tuple[str, str, Optional[str]]] = [
    ("/dashboard", "Dashboard", "view_dashboard"),
    ("/scorecards", "Scorecards", "view_dashboard"),
    ("/qi/campaigns", "QI Campaigns", "view_dashboard"),
    ("/qi/action-items", "Action Items", "view_dashboard"),
    ("/field-training", "Field Training", "access_field_training"),
    ("/data-entry", "Data Entry", "enter_metric_data"),
    ("/admin", "Admin", "view_admin"),
    ("/admin/audit", "Audit Log", "view_audit_log"),
    ("/account", "Account", None),
]

RANGE_OPTIONS = [("1mo", "1 month"), ("3mo", "3 months"), ("6mo", "6 months"), ("1yr", "1 year"), ("ytd", "Year to date"), ("all", "All time")]


def nav_link(path: str, label: str, current: str) -> str:
    active = current == path or (path != "/dashboard" and current.startswith(path + "/"))
    cls = "nav-link active" if active else "nav-link"
    return f"<a class='{cls}' href='{h(path)}'>{h(label)}</a>"


def csrf_field(ctx: Optional[Mapping[str, Any]]) -> str:
    return f"<input type='hidden' name='csrf_token' value='{h((ctx or {}).get('csrf', ''))}' />"


def action_form(
    ctx: Mapping[str, Any],
    action: str,
    next_path: str,
    label: str,
    fields: str = "",
    cls: str = "inline-form",
    button_cls: str = "btn",
) -> str:
    """A POST form for an action endpoint that redirects back to ``next_path``."""
    return f"""
    <form method="post" action="{h(action)}" class="{cls}">
      {csrf_field(ctx)}
      <input type="hidden" name="next" value="{h(next_path)}" />
      {fields}
      <button type="submit" class="{button_cls}">{h(label)}</button>
    </form>
    """


def options_html(options: Iterable[Any], selected: Any = None, blank: Optional[str] = None) -> str:
    parts = [f"<option value=''>{h(blank)}</option>"] if blank is not None else []
    for option in options:
        if isinstance(option, (tuple, list)):
            value, label = option[0], option[1]
        else:
            value, label = option, str(option).replace("_", " ").title()
        chosen = " selected" if selected is not None and str(selected) == str(value) else ""
        parts.append(f"<option value='{h(value)}'{chosen}>{h(label)}</option>")
    return "".join(parts)


def data_table(columns: Sequence[Tuple[str, str]], rows: Iterable[Mapping[str, Any]], empty: str = "Nothing here yet.") -> str:
    rows = list(rows)
    if not rows:
        return f"<p class='muted'>{h(empty)}</p>"
    head = "".join(f"<th scope='col'>{h(label)}</th>" for _key, label in columns)
    body = "".join(
        "<tr>" + "".join(f"<td>{h(row.get(key))}</td>" for key, _label in columns) + "</tr>" for row in rows
    )
    return f"<table class='data-table'><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def pager(base_path: str, params: Mapping[str, Any], meta: Mapping[str, Any]) -> str:
    if meta["total_pages"] <= 1:
        return ""
    links = []
    if meta["has_prev"]:
        links.append(f"<a class='btn ghost' href='{h(build_pagination_url(base_path, params, meta['page'] - 1, meta['page_size']))}'>Previous</a>")
    links.append(f"<span class='muted'>Page {meta['page']} of {meta['total_pages']} ({meta['total_items']} items)</span>")
    if meta["has_next"]:
        links.append(f"<a class='btn ghost' href='{h(build_pagination_url(base_path, params, meta['page'] + 1, meta['page_size']))}'>Next</a>")
    return f"<nav class='pager' aria-label='Pagination'>{''.join(links)}</nav>"


def sparkline_svg(values: Sequence[float], width: int = 120, height: int = 32) -> str:
    if len(values) < 2:
        return ""
    low, high = min(values), max(values)
    span = (high - low) or 1.0
    step = width / (len(values) - 1)
    points = " ".join(f"{i * step:.1f},{height - (v - low) / span * height:.1f}" for i, v in enumerate(values))
    return f"<svg class='sparkline' viewBox='0 0 {width} {height}' role='img' aria-label='Trend'><polyline points='{points}' /></svg>"


def line_chart_svg(points: Sequence[Mapping[str, Any]], width: int = 640, height: int = 220) -> str:
    """Value line plus optional ``ucl``/``lcl``/``center_line`` keys drawn as limit lines."""
    if len(points) < 2:
        return "<p class='muted'>Not enough data to chart.</p>"
    series = {"value": [float(p["value"]) for p in points]}
    for key in ("ucl", "lcl", "center_line"):
        if all(p.get(key) is not None for p in points):
            series[key] = [float(p[key]) for p in points]
    everything = [v for values in series.values() for v in values]
    low, high = min(everything), max(everything)
    span = (high - low) or 1.0
    step = width / (len(points) - 1)

    def coords(values: Sequence[float]) -> str:
        return " ".join(f"{i * step:.1f},{height - (v - low) / span * height:.1f}" for i, v in enumerate(values))

    lines = "".join(f"<polyline class='line-{key}' points='{coords(values)}' />" for key, values in series.items())
    dots = "".join(
        f"<circle class='signal' cx='{i * step:.1f}' cy='{height - (float(p['value']) - low) / span * height:.1f}' r='4' />"
        for i, p in enumerate(points)
        if p.get("special_cause")
    )
    return f"<svg class='chart' viewBox='0 0 {width} {height}' role='img' aria-label='Metric chart'>{lines}{dots}</svg>"


def render_layout(
    title: str,
    content: str,
    req: Request,
    ctx: Optional[Dict[str, Any]] = None,
    notice: str = "",
) -> str:
    if ctx and ctx.get("user"):
        user = ctx["user"]
        org = ctx.get("active_org")
        role = ctx.get("role")
        nav = "".join(
            nav_link(path, label, req.path) for path, label, permission in NAV_ITEMS if not permission or has_permission(role, permission)
        )
        org_switch = " ".join(
            f"<a class='org-chip {'active' if org and int(m['organization_id']) == int(org['organization_id']) else ''}' href='?org_id={m['organization_id']}'>{h(m['name'])}</a>"
            for m in ctx.get("memberships", [])
        )
        sidebar = f"""
        <aside class="sidebar" aria-label="Primary Navigation">
          <div class="sidebar-brand">
            <h1><a class="brand-link" href="/">{h(config.APP_NAME)}</a></h1>
            <p>{h(config.APP_TAGLINE)}</p>
          </div>
          <nav class="side-nav" aria-label="Primary">{nav}</nav>
          <div class="sidebar-foot">
            <h4>Organizations</h4>
            <div class="org-switch">{org_switch}</div>
          </div>
        </aside>
        """
        top_bar = f"""
        <header class="topbar">
          <span class="user-chip">{h(user['name'])} ({h(role_label(role))}) {h(org['name']) if org else ''}</span>
          <form method="post" action="/logout">
            {csrf_field(ctx)}
            <button type="submit" class="btn ghost">Logout</button>
          </form>
        </header>
        """
    else:
        sidebar = ""
        top_bar = f"<header class='topbar'><h1>{h(config.APP_NAME)}</h1></header>"

    alert = f"<div class='notice' role='status' aria-live='polite'>{h(notice)}</div>" if notice else ""
    return f"""<!doctype html>
    <html lang="en">
      <head>
        <meta charset="utf-8" />
        <meta name="viewport" content="width=device-width,initial-scale=1" />
        <meta name="csrf-token" content="{h(ctx.get('csrf', '') if ctx else '')}" />
        <title>{h(title)} | {h(config.APP_NAME)}</title>
        <link rel="stylesheet" href="/static/style.css" />
      </head>
      <body>
        <a class="skip-link" href="#main-content">Skip to main content</a>
        <div class="container app-shell">{sidebar}<section class="main-shell">{top_bar}{alert}<main id="main-content" tabindex="-1">{content}</main></section></div>
      </body>
    </html>
    """


def render_error(req: Request, ctx: Optional[Dict[str, Any]], status_text: str, message: str) -> str:
    body = f"<section class='card'><h2>{h(status_text)}</h2><p>{h(message)}</p><p><a href='/'>Back to dashboard</a></p></section>"
    return render_layout(status_text, body, req, ctx)


# Auth pages


def render_login(req: Request, error: str = "") -> str:
    body = f"""
    <section class="card auth">
      <h2>Sign In</h2>
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/login">
        <label>Email <input type="email" name="email" required autocomplete="username" /></label>
        <label>Password <input type="password" name="password" required autocomplete="current-password" /></label>
        <button type="submit">Sign In</button>
      </form>
      <p><a href="/register">Request an account</a></p>
    </section>
    """
    return render_layout("Login", body, req)


def render_register(req: Request, error: str = "", done: bool = False) -> str:
    if done:
        body = "<section class='card auth'><h2>Request received</h2><p>An administrator will review your account.</p><p><a href='/login'>Back to sign in</a></p></section>"
        return render_layout("Register", body, req)
    body = f"""
    <section class="card auth">
      <h2>Request an Account</h2>
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/register">
        <label>First name <input name="first_name" required maxlength="80" /></label>
        <label>Last name <input name="last_name" required maxlength="80" /></label>
        <label>Email <input type="email" name="email" required /></label>
        <label>Requested role
          <select name="role">{options_html([("fto", "FTO"), ("trainee", "Trainee"), ("data_entry", "Data Entry"), ("supervisor", "Supervisor")], "fto")}</select>
        </label>
        <label>Password <input type="password" name="password" required minlength="12" /></label>
        <label>Confirm password <input type="password" name="password_confirm" required minlength="12" /></label>
        <button type="submit">Submit Request</button>
      </form>
      <p><a href="/login">Already have an account?</a></p>
    </section>
    """
    return render_layout("Register", body, req)


def render_account(req: Request, ctx: Dict[str, Any], notice: str = "") -> str:
    body = f"""
    <section class="card">
      <h2>Account</h2>
      <p>{h(ctx['user']['name'])} &lt;{h(ctx['user']['email'])}&gt; ({h(role_label(ctx.get('role')))})</p>
    </section>
    <section class="card">
      <h3>Change Password</h3>
      {action_form(ctx, '/api/auth/password', '/account', 'Change Password', '''
        <label>Current password <input type="password" name="current_password" required /></label>
        <label>New password <input type="password" name="new_password" required minlength="12" /></label>
        <label>Confirm new password <input type="password" name="confirm_password" required minlength="12" /></label>
      ''', cls='stack-form')}
    </section>
    """
    return render_layout("Account", body, req, ctx, notice)


# Dashboard pages


def render_landing(req: Request, ctx: Dict[str, Any], departments: Sequence[Mapping[str, Any]], notice: str = "") -> str:
    cards = "".join(
        f"""
        <a class="card dept-card" href="/dashboard/{h(d['slug'])}">
          <h3>{h(d['name'])}</h3>
          <p class="muted">{h(d.get('description') or '')}</p>
          <p>{d['kpi_count']} KPIs, {d['metric_count']} metrics</p>
          <p class="muted">Latest data: {h(d['latest_label'])}</p>
        </a>
        """
        for d in departments
    )
    body = f"<section><h2>Departments</h2><div class='card-grid'>{cards or '<p class=muted>No departments yet.</p>'}</div></section>"
    return render_layout("Dashboard", body, req, ctx, notice)


def range_picker(base_path: str, current: str, extra: str = "") -> str:
    links = "".join(
        f"<a class='chip {'active' if key == current else ''}' href='{h(base_path)}?range={key}{extra}'>{h(label)}</a>"
        for key, label in RANGE_OPTIONS
    )
    return f"<nav class='range-picker' aria-label='Date range'>{links}</nav>"


def kpi_card_html(card: Mapping[str, Any], href: str) -> str:
    arrow = {"up": "&#9650;", "down": "&#9660;"}.get(card["trend_direction"], "&#9654;")
    met = card.get("target_met")
    status = "" if met is None else ("<span class='pill ok'>On target</span>" if met else "<span class='pill warn'>Off target</span>")
    target = f"<p class='muted'>Target {h(card['formatted_target'])}</p>" if card.get("formatted_target") else ""
    return f"""
    <a class="card kpi-card" href="{h(href)}">
      <h4>{h(card['name'])}</h4>
      <p class="kpi-value">{h(card['formatted_value'])}</p>
      <p class="trend trend-{h(card['trend_direction'])}">{arrow} {card['trend']}%</p>
      {sparkline_svg(card['sparkline'])}
      {target}{status}
    </a>
    """


def render_department(req: Request, ctx: Dict[str, Any], data: Mapping[str, Any]) -> str:
    dept = data["department"]
    base = f"/dashboard/{dept['slug']}"
    scope = ""
    if data.get("division_id"):
        scope += f"&division_id={data['division_id']}"
    if data.get("region_id"):
        scope += f"&region_id={data['region_id']}"
    divisions = "".join(
        f"<a class='chip {'active' if data.get('division_id') == d['id'] else ''}' href='{h(base)}?range={h(data['range'])}&division_id={d['id']}'>{h(d['name'])}</a>"
        for d in data["divisions"]
    )
    regions = "".join(
        f"<a class='chip {'active' if data.get('region_id') == r['id'] else ''}' href='{h(base)}?range={h(data['range'])}&division_id={data['division_id']}&region_id={r['id']}'>{h(r['name'])}</a>"
        for r in data["regions"]
    )
    kpis = "".join(kpi_card_html(card, f"{base}/{card['metric_slug']}") for card in data["kpis"])
    charts = "".join(
        f"""
        <section class="card">
          <h3><a href="{h(base)}/{h(m['slug'])}">{h(m['name'])}</a></h3>
          {line_chart_svg(m['data'])}
        </section>
        """
        for m in data["metrics"]
    )
    body = f"""
    <section>
      <h2>{h(dept['name'])}</h2>
      {range_picker(base, data['range'], scope)}
      <nav class="scope-picker"><a class="chip {'active' if not data.get('division_id') else ''}" href="{h(base)}?range={h(data['range'])}">Department</a>{divisions}</nav>
      {'<nav class="scope-picker">' + regions + '</nav>' if regions else ''}
      <div class="card-grid">{kpis or '<p class=muted>No KPIs configured.</p>'}</div>
      {charts}
    </section>
    """
    return render_layout(dept["name"], body, req, ctx)


def render_division(req: Request, ctx: Dict[str, Any], data: Mapping[str, Any]) -> str:
    division = data["division"]
    base = f"/divisions/{division['slug']}"
    dept_slugs = {m["id"]: m["department_slug"] for m in data["metrics"]}
    scope = f"?division_id={division['id']}" if division["id"] else ""
    kpis = "".join(
        kpi_card_html(card, f"/dashboard/{dept_slugs[card['metric_id']]}/{card['metric_slug']}{scope}") for card in data["kpis"]
    )
    regions = ", ".join(h(r["name"]) for r in data["regions"])
    body = f"""
    <section>
      <h2>{h(division['name'])}</h2>
      {range_picker(base, data['range'])}
      {'<p class="muted">Regions: ' + regions + '</p>' if regions else ''}
      <div class="card-grid">{kpis or '<p class=muted>No KPIs for this division.</p>'}</div>
    </section>
    """
    return render_layout(division["name"], body, req, ctx)


def render_metric_detail(req: Request, ctx: Dict[str, Any], data: Mapping[str, Any]) -> str:
    metric = data["metric"]
    dept = data["department"]
    stats = data["stats"]
    spc = data.get("spc")
    base = f"/dashboard/{dept['slug']}/{metric['slug']}"
    period_type = metric.get("period_type")
    if spc and spc.get("points"):
        rows = "".join(
            f"<tr class='{'signal' if p['special_cause'] else ''}'><td>{h(format_period(p['period'], period_type))}</td><td>{p['value']}</td>"
            f"<td>{p['center_line']}</td><td>{p['ucl']}</td><td>{p['lcl']}</td><td>{h(', '.join(p['special_cause_rules']))}</td></tr>"
            for p in spc["points"]
        )
        spc_html = f"""
        <section class="card">
          <h3>Control chart ({h(spc['chart_type'])})</h3>
          {line_chart_svg(spc['points'])}
          <table class="data-table"><thead><tr><th>Period</th><th>Value</th><th>CL</th><th>UCL</th><th>LCL</th><th>Signals</th></tr></thead><tbody>{rows}</tbody></table>
        </section>
        """
    else:
        spc_html = f"<section class='card'><h3>Trend</h3>{line_chart_svg(data['chart_data'])}</section>"
    notes = "".join(f"<li>{h(a['date'])}: {h(a['label'])}</li>" for a in data["qi_annotations"])
    children = data_table([("name", "Sub-metric"), ("formatted_value", "Latest")], data["children"], "No sub-metrics.")
    divisions = data_table([("name", "Division"), ("formatted_value", "Latest"), ("trend", "Trend %")], data["division_breakdown"], "No division data.")
    regions = data_table([("name", "Region"), ("formatted_value", "Latest"), ("trend", "Trend %")], data["region_breakdown"], "No region data.")
    parent = f"<p>Part of <a href='/dashboard/{h(dept['slug'])}/{h(data['parent']['slug'])}'>{h(data['parent']['name'])}</a></p>" if data.get("parent") else ""
    annotate = ""
    if has_permission(ctx.get("role"), "manage_metric_defs"):
        annotate = action_form(ctx, f"/api/metrics/{metric['id']}/annotations", base, "Add annotation", """
          <label>Date <input type="date" name="annotation_date" required /></label>
          <label>Title <input name="title" required maxlength="200" /></label>
        """)
    body = f"""
    <section>
      <h2>{h(metric['name'])}</h2>
      {parent}
      <p class="muted">{h(metric.get('description') or '')}</p>
      {range_picker(base, data['range'])}
      <div class="stat-row">
        <div class="stat"><span>Current</span><strong>{h(stats['formatted_current'])}</strong></div>
        <div class="stat"><span>Trend</span><strong>{stats['trend']}% {h(stats['trend_direction'])}</strong></div>
        <div class="stat"><span>Average</span><strong>{h(stats['average'])}</strong></div>
        <div class="stat"><span>Min / Max</span><strong>{h(stats['min'])} / {h(stats['max'])}</strong></div>
        <div class="stat"><span>Periods</span><strong>{stats['count']}</strong></div>
      </div>
      {spc_html}
      <section class="card"><h3>Annotations</h3><ul>{notes or '<li class=muted>None in range.</li>'}</ul>{annotate}</section>
      <section class="card"><h3>Sub-metrics</h3>{children}</section>
      <section class="card"><h3>By division</h3>{divisions}</section>
      <section class="card"><h3>By region</h3>{regions}</section>
    </section>
    """
    return render_layout(metric["name"], body, req, ctx)


def render_scorecards(req: Request, ctx: Dict[str, Any], scorecards: Sequence[Mapping[str, Any]], notice: str = "") -> str:
    items = "".join(
        f"<li><a href='/scorecards/{c['id']}'>{h(c['name'])}</a> <span class='muted'>{c['metric_count']} metrics</span></li>"
        for c in scorecards
    )
    create = ""
    if has_permission(ctx.get("role"), "manage_scorecards"):
        create = action_form(ctx, "/api/scorecards", "/scorecards", "Create scorecard", """
          <label>Name <input name="name" required maxlength="200" /></label>
          <label>Description <input name="description" maxlength="1000" /></label>
        """)
    body = f"<section class='card'><h2>Scorecards</h2><ul>{items or '<li class=muted>No scorecards yet.</li>'}</ul>{create}</section>"
    return render_layout("Scorecards", body, req, ctx, notice)


def render_scorecard(req: Request, ctx: Dict[str, Any], data: Mapping[str, Any]) -> str:
    card = data["scorecard"]
    head = "".join(f"<th scope='col'>{h(label)}</th>" for label in data["month_labels"])
    rows = []
    group = None
    for row in data["rows"]:
        if row["group_name"] and row["group_name"] != group:
            group = row["group_name"]
            rows.append(f"<tr class='group'><th colspan='{len(data['month_labels']) + 3}'>{h(group)}</th></tr>")
        cells = "".join(
            f"<td class='{'' if met is None else ('met' if met else 'missed')}'>{h(text)}</td>"
            for text, met in zip(row["formatted_months"], row["months_met"])
        )
        ytd_cls = "" if row["ytd_met"] is None else ("met" if row["ytd_met"] else "missed")
        rows.append(f"<tr><th scope='row'>{h(row['name'])}</th><td>{h(row['target'])}</td>{cells}<td class='{ytd_cls}'>{h(row['formatted_ytd'])}</td></tr>")
    year = data["year"]
    body = f"""
    <section class="card">
      <h2>{h(card['name'])} {year}</h2>
      <nav><a href="?year={year - 1}">&larr; {year - 1}</a> <a href="?year={year + 1}">{year + 1} &rarr;</a></nav>
      <table class="data-table scorecard"><thead><tr><th>Metric</th><th>Target</th>{head}<th>YTD</th></tr></thead><tbody>{''.join(rows)}</tbody></table>
    </section>
    """
    return render_layout(card["name"], body, req, ctx)


# QI pages


def render_campaigns(req: Request, ctx: Dict[str, Any], campaigns: Sequence[Mapping[str, Any]], notice: str = "") -> str:
    rows = "".join(
        f"<tr><td><a href='/qi/campaigns/{c['id']}'>{h(c['name'])}</a></td><td>{h(c['status'])}</td>"
        f"<td>{h(c.get('start_date') or '')}</td><td>{h(c.get('end_date') or '')}</td></tr>"
        for c in campaigns
    )
    create = ""
    if has_permission(ctx.get("role"), "manage_campaigns"):
        create = action_form(ctx, "/api/qi/campaigns", "/qi/campaigns", "Create campaign", """
          <label>Name <input name="name" required maxlength="200" /></label>
          <label>Goals <input name="goals" maxlength="2000" /></label>
          <label>Start <input type="date" name="start_date" /></label>
          <label>End <input type="date" name="end_date" /></label>
        """)
    body = f"""
    <section class="card">
      <h2>QI Campaigns</h2>
      <table class="data-table"><thead><tr><th>Name</th><th>Status</th><th>Start</th><th>End</th></tr></thead><tbody>{rows}</tbody></table>
      {create}
    </section>
    """
    return render_layout("QI Campaigns", body, req, ctx, notice)


def render_campaign_report(
    req: Request,
    ctx: Optional[Dict[str, Any]],
    report: Mapping[str, Any],
    share_links: Sequence[Mapping[str, Any]] = (),
    shared: bool = False,
    notice: str = "",
) -> str:
    campaign = report["campaign"]
    diagrams = "".join(
        f"<li>{'<a href=/qi/diagrams/' + str(d['id']) + '>' + h(d['name']) + '</a>' if not shared else h(d['name'])} <span class='muted'>{h(d['status'])}</span></li>"
        for d in report["diagrams"]
    )
    cycles = data_table(
        [("cycle_number", "#"), ("title", "Cycle"), ("status", "Status"), ("outcome", "Outcome")], report["pdsa_cycles"], "No PDSA cycles."
    )
    items = data_table(
        [("title", "Action item"), ("status", "Status"), ("priority", "Priority"), ("due_date", "Due")], report["action_items"], "No action items."
    )
    share = ""
    if not shared and ctx and has_permission(ctx.get("role"), "manage_campaigns"):
        path = f"/qi/campaigns/{campaign['id']}"
        links = "".join(
            f"<li><code>/shared/campaign/{h(link['token'])}</code> expires {h(link['expires_at'])} "
            + action_form(ctx, "/api/qi/share-links/%s/revoke" % link["id"], path, "Revoke", button_cls="btn ghost")
            + "</li>"
            for link in share_links
            if link["is_active"]
        )
        share = f"""
        <section class="card">
          <h3>Share links</h3>
          <ul>{links or '<li class=muted>No active links.</li>'}</ul>
          {action_form(ctx, f'/api/qi/campaigns/{campaign["id"]}/share-links', path, 'Create share link', '<label>Days <input type="number" name="days" min="1" max="365" /></label>')}
        </section>
        """
    body = f"""
    <section>
      <h2>{h(campaign['name'])}</h2>
      <p class="muted">{h(campaign.get('goals') or '')}</p>
      <div class="stat-row">
        <div class="stat"><span>Status</span><strong>{h(campaign['status'])}</strong></div>
        <div class="stat"><span>Action items complete</span><strong>{report['completion_percent']}%</strong></div>
        <div class="stat"><span>PDSA cycles</span><strong>{report['pdsa_total']}</strong></div>
      </div>
      <section class="card"><h3>Driver diagrams</h3><ul>{diagrams or '<li class=muted>None linked.</li>'}</ul></section>
      {'<section class="card"><h3>Linked metric</h3>' + line_chart_svg(report['chart_data']) + '</section>' if report.get('chart_data') else ''}
      <section class="card"><h3>PDSA cycles</h3>{cycles}</section>
      <section class="card"><h3>Action items</h3>{items}</section>
      {share}
    </section>
    """
    return render_layout(campaign["name"], body, req, ctx, notice)


def _node_html(node: Mapping[str, Any]) -> str:
    children = "".join(_node_html(child) for child in node.get("children", []))
    return f"<li><span class='node node-{h(node['node_type'])}'>{h(node['text'])}</span>{'<ul>' + children + '</ul>' if children else ''}</li>"


def render_diagram(req: Request, ctx: Dict[str, Any], diagram: Mapping[str, Any], cycles: Sequence[Mapping[str, Any]], notice: str = "") -> str:
    nodes = "".join(_node_html(node) for node in diagram["nodes"])
    path = f"/qi/diagrams/{diagram['id']}"
    rows = []
    for c in cycles:
        advance = ""
        if c["status"] not in ("completed", "abandoned"):
            advance = action_form(ctx, "/api/qi/pdsa/%s/advance" % c["id"], path, "Advance", button_cls="btn ghost")
        rows.append(
            f"<tr><td>{h(c['cycle_number'])}</td><td>{h(c['title'])}</td><td>{h(c['status'])}</td><td>{advance}</td></tr>"
        )
    body = f"""
    <section>
      <h2>{h(diagram['name'])}</h2>
      <section class="card driver-tree"><ul>{nodes or '<li class=muted>No nodes yet.</li>'}</ul></section>
      <section class="card">
        <h3>PDSA cycles</h3>
        <table class="data-table"><thead><tr><th>#</th><th>Title</th><th>Status</th><th></th></tr></thead><tbody>{''.join(rows)}</tbody></table>
      </section>
    </section>
    """
    return render_layout(diagram["name"], body, req, ctx, notice)


def render_action_items(req: Request, ctx: Dict[str, Any], items: Sequence[Mapping[str, Any]], notice: str = "") -> str:
    rows = "".join(
        f"<tr class='{h(i['effective_status'])}'><td>{h(i['title'])}</td><td>{h(i.get('campaign_name') or '')}</td>"
        f"<td>{h(i['effective_status'])}</td><td>{h(i['priority'])}</td><td>{h(i.get('due_date') or '')}</td><td>{h(i.get('assignee_name') or '')}</td></tr>"
        for i in items
    )
    body = f"""
    <section class="card">
      <h2>Action Items</h2>
      <table class="data-table"><thead><tr><th>Title</th><th>Campaign</th><th>Status</th><th>Priority</th><th>Due</th><th>Assignee</th></tr></thead><tbody>{rows}</tbody></table>
    </section>
    """
    return render_layout("Action Items", body, req, ctx, notice)


# Field training pages


def _assignment_requests_html(
    ctx: Dict[str, Any], requests: Sequence[Mapping[str, Any]], requestable: Sequence[Mapping[str, Any]]
) -> str:
    can_review = has_permission(ctx.get("role"), "manage_training_assignments")
    items = []
    for r in requests:
        review = ""
        if can_review and r["status"] == "pending":
            action = "/api/field-training/assignment-requests/%s/review" % r["id"]
            review = action_form(
                ctx, action, "/field-training", "Approve", "<input type='hidden' name='decision' value='approved' />"
            ) + action_form(
                ctx, action, "/field-training", "Deny", "<input type='hidden' name='decision' value='denied' />", button_cls="btn ghost"
            )
        items.append(
            f"<li>{h(r['requester_name'])} for {h(r['trainee_name'])} ({h(r['status'])})"
            f"{' - ' + h(r['reason']) if r.get('reason') else ''} {review}</li>"
        )
    form = ""
    if requestable:
        fields = (
            f"<label>Trainee <select name='trainee_id'>{options_html([(t['id'], t['name']) for t in requestable])}</select></label>"
            "<label>Reason <input name='reason' maxlength='1000' /></label>"
        )
        form = action_form(ctx, "/api/field-training/assignment-requests", "/field-training", "Request assignment", fields)
    listing = f"<ul>{''.join(items)}</ul>" if items else "<p class='muted'>No assignment requests.</p>"
    return f"<section class='card'><h3>Assignment Requests</h3>{listing}{form}</section>"


def render_field_training(
    req: Request,
    ctx: Dict[str, Any],
    stats: Mapping[str, Any],
    trainees: Sequence[Mapping[str, Any]],
    notice: str = "",
    requests: Sequence[Mapping[str, Any]] = (),
    requestable: Sequence[Mapping[str, Any]] = (),
) -> str:
    rows = "".join(
        f"<tr><td><a href='/field-training/trainees/{t['id']}'>{h(t['name'])}</a></td><td>{h(t.get('employee_id') or '')}</td>"
        f"<td>{h(t.get('trainee_status') or '')}</td><td>{h(t.get('fto_name') or '')}</td></tr>"
        for t in trainees
    )
    recent = data_table(
        [("evaluation_date", "Date"), ("trainee_name", "Trainee"), ("fto_name", "FTO"), ("overall_rating", "Overall"), ("status", "Status")],
        stats["recent_dors"],
        "No DORs yet.",
    )
    new_dor = "<a class='btn' href='/field-training/dors/new'>New DOR</a>" if has_permission(ctx.get("role"), "create_edit_own_dors") else ""
    body = f"""
    <section>
      <h2>Field Training</h2>
      <div class="stat-row">
        <div class="stat"><span>Active trainees</span><strong>{stats['active_trainees']}</strong></div>
        <div class="stat"><span>DORs</span><strong>{stats['dor_count']}</strong></div>
        <div class="stat"><span>Drafts</span><strong>{stats['draft_count']}</strong></div>
        <div class="stat"><span>Average rating</span><strong>{h(stats['average_rating'] if stats['average_rating'] is not None else '-')}</strong></div>
        <div class="stat"><span>NRT / REM</span><strong>{stats['nrt_count']} / {stats['rem_count']}</strong></div>
      </div>
      {new_dor} <a class="btn ghost" href="/field-training/skills">Skills</a>
      <section class="card">
        <h3>Trainees</h3>
        <table class="data-table"><thead><tr><th>Name</th><th>Employee ID</th><th>Status</th><th>FTO</th></tr></thead><tbody>{rows}</tbody></table>
      </section>
      <section class="card"><h3>Recent DORs</h3>{recent}</section>
      {_assignment_requests_html(ctx, requests, requestable)}
    </section>
    """
    return render_layout("Field Training", body, req, ctx, notice)


def render_trainee(
    req: Request,
    ctx: Dict[str, Any],
    trainee: Mapping[str, Any],
    phases: Sequence[Mapping[str, Any]],
    dors: Sequence[Mapping[str, Any]],
    skills: Mapping[str, Any],
    coaching: Mapping[str, Any],
    snapshots: Sequence[Mapping[str, Any]],
    notice: str = "",
) -> str:
    path = f"/field-training/trainees/{trainee['id']}"
    can_signoff = has_permission(ctx.get("role"), "signoff_phases")
    phase_rows = []
    for p in phases:
        signoff = h(p.get("signoff_name") or "")
        if can_signoff and p["status"] != "completed":
            action = "/api/field-training/trainees/%s/phases/%s/signoff" % (trainee["id"], p["phase_id"])
            signoff = action_form(ctx, action, path, "Sign off", button_cls="btn ghost")
        phase_rows.append(
            f"<tr><td>{h(p['name'])}</td><td>{h(p['status'])}</td><td>{h(p.get('start_date') or '')}</td>"
            f"<td>{h(p.get('end_date') or '')}</td><td>{signoff}</td></tr>"
        )
    dor_rows = "".join(
        f"<tr><td><a href='/field-training/dors/{d['id']}'>{h(d['evaluation_date'])}</a></td><td>{h(d['fto_name'])}</td>"
        f"<td>{h(d['overall_rating'])}</td><td>{h(d['status'])}</td><td>{'Yes' if d['trainee_acknowledged'] else 'No'}</td></tr>"
        for d in dors
    )
    skill_rows = "".join(
        f"<tr><td>{h(c['name'])}</td><td>{c['signed_off']} / {c['total']}</td><td>{c['percent']}%</td></tr>" for c in skills["categories"]
    )
    snapshot_html = ""
    if has_permission(ctx.get("role"), "view_all_trainees"):
        items = []
        for s in snapshots:
            state = "(expired)" if s["is_expired"] else "expires " + h(s["expires_at"])
            revoke = ""
            if s["is_active"]:
                revoke = action_form(ctx, "/api/snapshots/%s/revoke" % s["id"], path, "Revoke", button_cls="btn ghost")
            items.append(f"<li><code>/shared/trainee/{h(s['token'])}</code> {state}{revoke}</li>")
        links = "".join(items)
        snapshot_html = f"""
        <section class="card">
          <h3>Progress reports</h3>
          <ul>{links or '<li class=muted>No reports shared.</li>'}</ul>
          {action_form(ctx, f'/api/field-training/trainees/{trainee["id"]}/snapshots', path, 'Create shareable report')}
        </section>
        """
    body = f"""
    <section>
      <h2>{h(trainee['name'])}</h2>
      <p class="muted">Status: {h(trainee.get('trainee_status') or 'active')} | Hired {h(trainee.get('hire_date') or '-')} | Started {h(trainee.get('start_date') or '-')}</p>
      <section class="card">
        <h3>Phases</h3>
        <table class="data-table"><thead><tr><th>Phase</th><th>Status</th><th>Start</th><th>End</th><th>Sign-off</th></tr></thead><tbody>{''.join(phase_rows)}</tbody></table>
      </section>
      <section class="card">
        <h3>DORs</h3>
        <table class="data-table"><thead><tr><th>Date</th><th>FTO</th><th>Overall</th><th>Status</th><th>Acknowledged</th></tr></thead><tbody>{dor_rows}</tbody></table>
      </section>
      <section class="card">
        <h3>Skills ({skills['signed_off']} / {skills['total']}, {skills['percent']}%)</h3>
        <table class="data-table"><thead><tr><th>Category</th><th>Signed off</th><th>Percent</th></tr></thead><tbody>{skill_rows}</tbody></table>
      </section>
      <section class="card">
        <h3>Coaching</h3>
        <p>{coaching['completed']} of {coaching['total']} activities complete ({coaching['completion_rate']}%).</p>
      </section>
      {snapshot_html}
    </section>
    """
    return render_layout(trainee["name"], body, req, ctx, notice)


def render_dor_form(
    req: Request,
    ctx: Dict[str, Any],
    trainees: Sequence[Mapping[str, Any]],
    categories: Sequence[Mapping[str, Any]],
    phases: Sequence[Mapping[str, Any]],
    recommend_actions: Sequence[str],
    error: str = "",
) -> str:
    rating_rows = "".join(
        f"""
        <fieldset class="rating-row">
          <legend>{h(c['name'])}</legend>
          <label>Rating <select name="rating_{c['id']}">{options_html([(n, str(n)) for n in range(1, 8)], blank='Not rated')}</select></label>
          <label>Comments <input name="comment_{c['id']}" maxlength="2000" /></label>
        </fieldset>
        """
        for c in categories
    )
    body = f"""
    <section class="card">
      <h2>New Daily Observation Report</h2>
      {'<div class="error">' + h(error) + '</div>' if error else ''}
      <form method="post" action="/api/field-training/dors" class="stack-form">
        {csrf_field(ctx)}
        <input type="hidden" name="next" value="/field-training" />
        <label>Trainee <select name="trainee_id" required>{options_html([(t['id'], t['name']) for t in trainees], blank='Select trainee')}</select></label>
        <label>Date <input type="date" name="evaluation_date" required /></label>
        <label>Phase <select name="phase_id">{options_html([(p['id'], p['name']) for p in phases], blank='None')}</select></label>
        {rating_rows}
        <label>Overall rating <select name="overall_rating" required>{options_html([(n, str(n)) for n in range(1, 8)])}</select></label>
        <label>Narrative <textarea name="narrative" maxlength="10000"></textarea></label>
        <label>Most satisfactory <textarea name="most_satisfactory" maxlength="5000"></textarea></label>
        <label>Least satisfactory <textarea name="least_satisfactory" maxlength="5000"></textarea></label>
        <label>Recommendation <select name="recommend_action">{options_html(recommend_actions, 'continue')}</select></label>
        <label><input type="checkbox" name="nrt_flag" value="1" /> Not responding to training</label>
        <label><input type="checkbox" name="rem_flag" value="1" /> Remedial training</label>
        <label><input type="checkbox" name="submit" value="1" /> Submit now (otherwise saved as draft)</label>
        <button type="submit">Save DOR</button>
      </form>
    </section>
    """
    return render_layout("New DOR", body, req, ctx)


def render_dor(req: Request, ctx: Dict[str, Any], dor: Mapping[str, Any], notice: str = "") -> str:
    path = f"/field-training/dors/{dor['id']}"
    ratings = data_table([("category_name", "Category"), ("rating", "Rating"), ("comments", "Comments")], dor["ratings"], "No category ratings.")
    notes = "".join(f"<li><strong>{h(n['author_name'])}</strong> {h(n['created_at'])}: {h(n['note'])}</li>" for n in dor["notes"])
    actions = []
    user_id = ctx["user"]["id"]
    if dor["status"] == "draft" and (int(dor["fto_id"]) == user_id or has_permission(ctx.get("role"), "view_all_trainees")):
        actions.append(action_form(ctx, f"/api/field-training/dors/{dor['id']}/submit", path, "Submit"))
    if dor["status"] == "submitted" and int(dor["trainee_id"]) == user_id and not dor["trainee_acknowledged"]:
        actions.append(action_form(ctx, f"/api/field-training/dors/{dor['id']}/acknowledge", path, "Acknowledge"))
    if has_permission(ctx.get("role"), "review_approve_dors"):
        actions.append(action_form(ctx, f"/api/field-training/dors/{dor['id']}/notes", path, "Add note", "<label>Note <input name='note' required maxlength='2000' /></label>"))
    body = f"""
    <section class="card">
      <h2>DOR: {h(dor['trainee_name'])} on {h(dor['evaluation_date'])}</h2>
      <p>FTO {h(dor['fto_name'])} | Phase {h(dor.get('phase_name') or '-')} | Status {h(dor['status'])}</p>
      <p>Overall rating <strong>{h(dor['overall_rating'])}</strong>, recommendation {h(dor['recommend_action'])}
         {'<span class="pill warn">NRT</span>' if dor['nrt_flag'] else ''}{'<span class="pill warn">REM</span>' if dor['rem_flag'] else ''}</p>
      {ratings}
      <h3>Narrative</h3><p>{h(dor.get('narrative') or '')}</p>
      <h3>Supervisor notes</h3><ul>{notes or '<li class=muted>No notes.</li>'}</ul>
      {''.join(actions)}
    </section>
    """
    return render_layout("DOR", body, req, ctx, notice)


def render_skills(req: Request, ctx: Dict[str, Any], categories: Sequence[Mapping[str, Any]], skills: Sequence[Mapping[str, Any]], notice: str = "") -> str:
    by_category: Dict[Any, List[Mapping[str, Any]]] = {}
    for skill in skills:
        by_category.setdefault(skill["category_id"], []).append(skill)
    sections = "".join(
        f"<section class='card'><h3>{h(c['name'])}</h3>"
        + data_table([("name", "Skill"), ("step_count", "Steps")], by_category.get(c["id"], []), "No skills.")
        + "</section>"
        for c in categories
    )
    return render_layout("Skills", f"<section><h2>Skills Checklist</h2>{sections}</section>", req, ctx, notice)


def render_my_coaching(req: Request, ctx: Dict[str, Any], assignments: Sequence[Mapping[str, Any]], summary: Mapping[str, Any], notice: str = "") -> str:
    items = []
    for a in assignments:
        controls = ""
        if a["status"] == "assigned":
            controls = action_form(ctx, f"/api/me/coaching/{a['id']}/start", "/field-training/coaching", "Start")
        elif a["status"] == "in_progress":
            controls = action_form(ctx, f"/api/me/coaching/{a['id']}/complete", "/field-training/coaching", "Complete",
                                   "<label>Response <textarea name='response' maxlength='5000'></textarea></label>")
        items.append(
            f"<li class='card'><h4>{h(a['title'])}</h4><p class='muted'>{h(a['category_name'])} | {h(a['activity_type'])} | "
            f"{a['estimated_mins']} min | {h(a['status'])}</p><p>{h(a.get('description') or '')}</p>{controls}</li>"
        )
    body = f"""
    <section>
      <h2>My Coaching</h2>
      <p>{summary['completed']} of {summary['total']} complete ({summary['completion_rate']}%).</p>
      <ul class="plain">{''.join(items) or '<li class=muted>No coaching activities assigned.</li>'}</ul>
    </section>
    """
    return render_layout("My Coaching", body, req, ctx, notice)


# Admin pages


ADMIN_SECTIONS = [
    ("departments", "Departments"),
    ("divisions", "Divisions"),
    ("regions", "Regions"),
    ("categories", "Categories"),
    ("metrics", "Metrics"),
    ("users", "Users"),
]

ADMIN_COLUMNS: Dict[str, List[Tuple[str, str]]] = {
    "departments": [("name", "Name"), ("slug", "Slug"), ("department_type", "Type"), ("is_active", "Active")],
    "divisions": [("name", "Name"), ("slug", "Slug"), ("department_name", "Department"), ("is_active", "Active")],
    "regions": [("name", "Name"), ("division_name", "Division"), ("role", "Role"), ("is_active", "Active")],
    "categories": [("name", "Name"), ("slug", "Slug"), ("sort_order", "Order")],
    "metrics": [("name", "Name"), ("slug", "Slug"), ("department_name", "Department"), ("unit", "Unit"), ("is_kpi", "KPI"), ("is_active", "Active")],
    "users": [("email", "Email"), ("first_name", "First"), ("last_name", "Last"), ("role", "Role"), ("status", "Status")],
}


def render_admin(
    req: Request,
    ctx: Dict[str, Any],
    section: str,
    rows: Sequence[Mapping[str, Any]],
    pending: Sequence[Mapping[str, Any]] = (),
    pagination: Optional[Mapping[str, Any]] = None,
    notice: str = "",
) -> str:
    tabs = "".join(
        f"<a class='chip {'active' if key == section else ''}' href='/admin/{key}'>{h(label)}</a>" for key, label in ADMIN_SECTIONS
    )
    pending_html = ""
    if pending:
        pending_rows = "".join(
            f"<li>{h(p['email'])} ({h(role_label(p['role']))}) "
            + action_form(ctx, "/api/admin/users/%s/approve" % p["id"], "/admin/users", "Approve")
            + action_form(ctx, "/api/admin/users/%s/reject" % p["id"], "/admin/users", "Reject", button_cls="btn ghost")
            + "</li>"
            for p in pending
        )
        pending_html = f"<section class='card'><h3>Pending registrations</h3><ul>{pending_rows}</ul></section>"
    paging = pager(f"/admin/{section}", req.query, pagination) if pagination else ""
    export = ""
    if section == "users" and has_permission(ctx.get("role"), "export_reports"):
        export = "<p><a class='btn ghost' href='/api/reports/users.csv'>Export roster CSV</a></p>"
    body = f"""
    <section>
      <h2>Administration</h2>
      <nav class="tabs">{tabs}</nav>
      {pending_html}
      <section class="card">{export}{data_table(ADMIN_COLUMNS[section], rows)}{paging}</section>
    </section>
    """
    return render_layout("Admin", body, req, ctx, notice)


def render_entries(
    req: Request,
    ctx: Dict[str, Any],
    result: Mapping[str, Any],
    metrics: Sequence[Mapping[str, Any]],
    notice: str = "",
) -> str:
    rows = data_table(
        [("metric_name", "Metric"), ("department_name", "Department"), ("division_name", "Division"), ("region_name", "Region"),
         ("period_start", "Period"), ("value", "Value"), ("numerator", "N"), ("denominator", "D")],
        result["items"],
        "No entries yet.",
    )
    form = f"""
    <form method="post" action="/api/entries" class="stack-form">
      {csrf_field(ctx)}
      <input type="hidden" name="next" value="/data-entry" />
      <label>Metric <select name="metric_id" required>{options_html([(m['id'], m['name']) for m in metrics], blank='Select metric')}</select></label>
      <label>Period start <input type="date" name="period_start" required /></label>
      <label>Period type <select name="period_type">{options_html(['monthly', 'weekly', 'bi-weekly', 'daily', 'quarterly', 'annual'], 'monthly')}</select></label>
      <label>Value <input name="value" inputmode="decimal" /></label>
      <label>Numerator <input name="numerator" inputmode="decimal" /></label>
      <label>Denominator <input name="denominator" inputmode="decimal" /></label>
      <label>Notes <input name="notes" maxlength="2000" /></label>
      <button type="submit">Save entry</button>
    </form>
    """
    upload = ""
    if has_permission(ctx.get("role"), "upload_batch_data"):
        upload = f"""
        <form method="post" action="/api/entries/import" enctype="multipart/form-data" class="stack-form">
          {csrf_field(ctx)}
          <input type="hidden" name="next" value="/data-entry" />
          <label>CSV file <input type="file" name="file" accept=".csv" required /></label>
          <button type="submit">Import CSV</button>
          <a href="/api/entries/template.csv">Download template</a>
        </form>
        """
    body = f"""
    <section>
      <h2>Data Entry</h2>
      <section class="card"><h3>New entry</h3>{form}</section>
      {'<section class="card"><h3>Bulk upload</h3>' + upload + '</section>' if upload else ''}
      <section class="card"><h3>Recent entries</h3>{rows}{pager('/data-entry', req.query, result['pagination'])}</section>
    </section>
    """
    return render_layout("Data Entry", body, req, ctx, notice)


def render_audit(req: Request, ctx: Dict[str, Any], result: Mapping[str, Any], actions: Sequence[str]) -> str:
    current = req.query.get("action", "")
    export_query = urlencode({k: req.query[k] for k in ("action", "entity", "from", "to") if req.query.get(k)})
    filters = f"""
    <form method="get" action="/admin/audit" class="inline-form">
      <label>Action <select name="action">{options_html([(a, a) for a in actions], current, blank='Any')}</select></label>
      <label>Entity <input name="entity" value="{h(req.query.get('entity', ''))}" /></label>
      <label>Search <input name="q" value="{h(req.query.get('q', ''))}" /></label>
      <button type="submit" class="btn ghost">Filter</button>
      <a class="btn ghost" href="/api/reports/audit.csv?{h(export_query)}">Export CSV</a>
    </form>
    """
    rows = data_table(
        [("created_at", "When"), ("user_email", "User"), ("action", "Action"), ("entity", "Entity"), ("entity_id", "ID"), ("details", "Details")],
        result["items"],
        "No audit entries match.",
    )
    body = f"<section class='card'><h2>Audit Log</h2>{filters}{rows}{pager('/admin/audit', req.query, result['pagination'])}</section>"
    return render_layout("Audit Log", body, req, ctx)


# Public shared views


def render_shared_snapshot(req: Request, snapshot: Mapping[str, Any]) -> str:
    data = snapshot["data"]
    profile = data.get("profile", {})
    dor = data.get("dor_summary", {})
    phases = data.get("phase_progress", {})
    skills = data.get("skill_progress", {})
    coaching = data.get("coaching_progress", {})
    categories = data_table([("name", "Category"), ("average", "Average"), ("count", "Ratings")], dor.get("category_averages", []), "No ratings.")
    phase_rows = data_table([("name", "Phase"), ("status", "Status"), ("completed_at", "Completed")], phases.get("phases", []), "No phases.")
    skill_rows = data_table([("name", "Category"), ("completed", "Completed"), ("total", "Total")], skills.get("categories", []), "No skills.")
    body = f"""
    <section>
      <h2>{h(snapshot['title'])}</h2>
      <p class="muted">Prepared by {h(data.get('creator_name'))} on {h(data.get('generated_at'))}. Link expires {h(snapshot.get('expires_at') or 'never')}.</p>
      <section class="card">
        <h3>Profile</h3>
        <p>{h(profile.get('name'))} | Employee ID {h(profile.get('employee_id') or '-')} | {h(profile.get('division') or 'No division')}</p>
        <p>Current phase: {h(profile.get('current_phase') or '-')} | Status {h(profile.get('trainee_status') or '-')}</p>
      </section>
      <section class="card">
        <h3>Daily Observation Reports</h3>
        <p>{dor.get('total_count', 0)} submitted, average overall {dor.get('average_overall', 0)}. NRT {dor.get('nrt_count', 0)}, REM {dor.get('rem_count', 0)}.</p>
        {line_chart_svg([{'period': p['date'], 'value': p['rating']} for p in dor.get('rating_trend', [])])}
        {categories}
      </section>
      <section class="card"><h3>Phases ({phases.get('completed_count', 0)} / {phases.get('total_count', 0)})</h3>{phase_rows}</section>
      <section class="card"><h3>Skills ({skills.get('completed_count', 0)} / {skills.get('total_count', 0)})</h3>{skill_rows}</section>
      <section class="card"><h3>Coaching</h3><p>{coaching.get('completed', 0)} of {coaching.get('total', 0)} complete ({coaching.get('completion_rate', 0)}%).</p></section>
    </section>
    """
    return render_layout(snapshot["title"], body, req)


def redirect_with_message(path: str, message: str) -> str:
    separator = "&" if "?" in path else "?"
    return f"{path}{separator}msg={quote(message)}"
