#!/usr/bin/env python3
"""Load deterministic sample data for demos and usability testing.

Everything goes through the service layer, so the sample rows are validated
and audited exactly like rows entered through the UI.
"""

import argparse
import datetime as dt
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from emsdash import config, entries, field_training, metrics, org, qi
from emsdash.db import db_connect, ensure_bootstrap
from emsdash.utils import add_months, slugify, today

RANDOM_SEED = 20260216
SAMPLE_PASSWORD = "SamplePassword!2026"
MONTHS = 24

# name, type, divisions, metrics: (name, unit, target, mean, spread)
DEPARTMENTS = [
    (
        "Clinical Quality",
        "clinical",
        [],
        [
            ("Cardiac Arrest ROSC Rate", "percentage", 30, 27, 6),
            ("Stroke Scene Time", "duration", 15, 17, 2),
            ("Protocol Compliance", "percentage", 90, 88, 4),
        ],
    ),
    (
        "Operations",
        "operations",
        ["North District", "South District"],
        [
            ("Response Time 90th Percentile", "duration", 9, 9.5, 0.8),
            ("Call Volume", "count", None, 1800, 150),
        ],
    ),
    (
        "Education",
        "education",
        [],
        [("CE Hours Completed", "count", 400, 380, 60)],
    ),
]

TRAINEES = [("Alex", "Rivera"), ("Priya", "Shah"), ("Jordan", "Lee"), ("Maya", "Thompson")]
FTOS = [("Samir", "Patel"), ("Elena", "Garcia")]


def admin_id(conn):
    return conn.execute("SELECT id FROM users WHERE email = ?", (config.ADMIN_EMAIL,)).fetchone()["id"]


def load_departments(conn, org_id, actor_id):
    summary = {"departments": 0, "metrics": 0, "entries": 0}
    start = add_months(today().replace(day=1), -MONTHS)
    for dept_name, dept_type, divisions, metric_specs in DEPARTMENTS:
        department = org.create_department(conn, org_id, actor_id, {"name": dept_name, "department_type": dept_type})
        summary["departments"] += 1
        for division_name in divisions:
            org.create_division(conn, org_id, actor_id, {"name": division_name, "department_id": department["department_id"]})

        rows = []
        for idx, (name, unit, target, mean, spread) in enumerate(metric_specs):
            metrics.create_metric(
                conn,
                org_id,
                actor_id,
                {
                    "department_id": department["department_id"],
                    "name": name,
                    "unit": unit,
                    "target": target,
                    "is_kpi": "1" if target is not None else "",
                    "sort_order": idx,
                },
            )
            summary["metrics"] += 1
            for month in range(MONTHS):
                period = add_months(start, month)
                value = max(0.0, random.gauss(mean, spread))
                if unit == "percentage":
                    value = min(100.0, value)
                targets = divisions or [""]
                for division_name in targets:
                    rows.append(
                        {
                            "metric": name,
                            "department": department["slug"],
                            "division": division_name,
                            "period": period.isoformat(),
                            "value": f"{value / len(targets):.2f}",
                        }
                    )
        result = entries.bulk_create_entries(conn, org_id, actor_id, rows)
        summary["entries"] += result["created"]
    return summary


def load_qi(conn, org_id, actor_id):
    campaign = qi.create_campaign(
        conn,
        org_id,
        actor_id,
        {
            "name": "Improve ROSC",
            "description": "Pit-crew CPR and early epinephrine.",
            "goals": "Raise ROSC to 30% within 12 months.",
            "status": "active",
            "start_date": add_months(today(), -6).isoformat(),
        },
    )
    diagram = qi.create_diagram(
        conn, org_id, actor_id, {"name": "ROSC drivers", "campaign_id": campaign["campaign_id"], "status": "active"}
    )
    aim = qi.create_node(conn, org_id, actor_id, diagram["diagram_id"], {"node_type": "aim", "text": "ROSC at 30%"})
    primary = qi.create_node(
        conn, org_id, actor_id, diagram["diagram_id"],
        {"node_type": "primary", "text": "High-quality CPR", "parent_id": aim["node_id"]},
    )
    qi.create_node(
        conn, org_id, actor_id, diagram["diagram_id"],
        {"node_type": "changeIdea", "text": "Pit-crew choreography training", "parent_id": primary["node_id"]},
    )
    qi.create_action_item(
        conn,
        org_id,
        actor_id,
        {
            "title": "Schedule pit-crew drills",
            "campaign_id": campaign["campaign_id"],
            "priority": "high",
            "due_date": (today() + dt.timedelta(days=14)).isoformat(),
        },
    )
    return {"campaigns": 1, "diagrams": 1}


def load_field_training(conn, org_id, actor_id):
    fto_ids = []
    for idx, (first, last) in enumerate(FTOS, start=1):
        result = field_training.create_fto(
            conn, org_id, actor_id,
            {"email": f"fto{idx}@example.org", "first_name": first, "last_name": last, "password": SAMPLE_PASSWORD},
        )
        fto_ids.append(result["fto_id"])

    categories = field_training.list_evaluation_categories(conn, org_id, active_only=True)
    dor_count = 0
    for idx, (first, last) in enumerate(TRAINEES, start=1):
        trainee = field_training.create_trainee(
            conn, org_id, actor_id,
            {
                "email": f"trainee{idx}@example.org",
                "first_name": first,
                "last_name": last,
                "password": SAMPLE_PASSWORD,
                "start_date": (today() - dt.timedelta(days=30)).isoformat(),
            },
        )
        fto_id = fto_ids[idx % len(fto_ids)]
        field_training.create_assignment(conn, org_id, actor_id, {"trainee_id": trainee["trainee_id"], "fto_id": fto_id})
        for day in range(10):
            form = {
                "trainee_id": trainee["trainee_id"],
                "evaluation_date": (today() - dt.timedelta(days=20 - day)).isoformat(),
                "overall_rating": random.randint(3, 6),
                "recommend_action": "continue",
            }
            for category in categories:
                form[f"rating_{category['id']}"] = random.randint(2, 7)
            field_training.create_dor(conn, org_id, fto_id, form, submit=True)
            dor_count += 1
    return {"ftos": len(fto_ids), "trainees": len(TRAINEES), "dors": dor_count}


def parse_args():
    parser = argparse.ArgumentParser(description="Load deterministic sample data.")
    parser.add_argument("--skip-field-training", action="store_true", help="Only load departments, metrics and QI data.")
    return parser.parse_args()


def main():
    args = parse_args()
    config.configure_logging()
    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        org_row = conn.execute("SELECT id FROM organizations WHERE slug = ?", (slugify(config.DEFAULT_ORG_SLUG),)).fetchone()
        org_id = int(org_row["id"])
        if conn.execute(
            "SELECT id FROM departments WHERE organization_id = ? AND slug = ?", (org_id, slugify(DEPARTMENTS[0][0]))
        ).fetchone():
            print("SAMPLE_DATA_PRESENT: nothing to do")
            return
        actor_id = admin_id(conn)
        summary = load_departments(conn, org_id, actor_id)
        summary.update(load_qi(conn, org_id, actor_id))
        if not args.skip_field_training:
            summary.update(load_field_training(conn, org_id, actor_id))
        conn.commit()
        print("SAMPLE_DATA_LOADED", summary)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
