"""Tests for campaigns, driver diagrams, PDSA cycles and action items."""

import datetime as dt

import pytest

from emsdash import qi
from emsdash.errors import NotFoundError, ValidationError
from emsdash.utils import today


@pytest.fixture
def campaign_id(conn, org_id, admin_id):
    return qi.create_campaign(conn, org_id, admin_id, {"name": "Cardiac Arrest Survival", "status": "active"})["campaign_id"]


@pytest.fixture
def diagram(conn, org_id, admin_id, campaign_id):
    """Aim, primary driver and one change idea."""
    diagram_id = qi.create_diagram(conn, org_id, admin_id, {"name": "ROSC Drivers", "campaign_id": campaign_id})["diagram_id"]
    aim = qi.create_node(conn, org_id, admin_id, diagram_id, {"node_type": "aim", "text": "Raise ROSC to 35%"})["node_id"]
    primary = qi.create_node(
        conn, org_id, admin_id, diagram_id, {"node_type": "primary", "text": "High quality CPR", "parent_id": aim}
    )["node_id"]
    idea = qi.create_node(
        conn, org_id, admin_id, diagram_id, {"node_type": "changeIdea", "text": "CPR feedback devices", "parent_id": primary}
    )["node_id"]
    return {"id": diagram_id, "aim": aim, "primary": primary, "idea": idea}


class TestCampaigns:
    def test_date_order(self, conn, org_id, admin_id):
        with pytest.raises(ValidationError, match="on or after the start date"):
            qi.create_campaign(conn, org_id, admin_id, {"name": "Bad", "start_date": "2024-05-01", "end_date": "2024-04-01"})

    def test_unknown_owner(self, conn, org_id, admin_id):
        with pytest.raises(NotFoundError):
            qi.create_campaign(conn, org_id, admin_id, {"name": "Orphan", "owner_id": "999"})

    def test_report_counts(self, conn, org_id, admin_id, campaign_id, diagram):
        qi.create_pdsa_cycle(conn, org_id, admin_id, {"title": "Trial", "diagram_id": diagram["id"]})
        qi.create_action_item(conn, org_id, admin_id, {"title": "Order devices", "campaign_id": campaign_id, "status": "completed"})
        qi.create_action_item(conn, org_id, admin_id, {"title": "Train crews", "campaign_id": campaign_id})
        report = qi.campaign_report(conn, org_id, campaign_id)
        assert report["diagrams"][0]["node_count"] == 3
        assert report["pdsa_counts"]["planning"] == 1
        assert report["action_total"] == 2
        assert report["completion_percent"] == 50.0


class TestDriverDiagrams:
    """Node tree operations."""

    def test_tree_nesting(self, conn, org_id, diagram):
        tree = qi.diagram_tree(conn, org_id, diagram["id"])
        assert tree["node_count"] == 3
        (aim,) = tree["nodes"]
        assert aim["children"][0]["children"][0]["text"] == "CPR feedback devices"

    def test_parent_from_other_diagram(self, conn, org_id, admin_id, diagram):
        other = qi.create_diagram(conn, org_id, admin_id, {"name": "Other"})["diagram_id"]
        with pytest.raises(ValidationError, match="does not belong"):
            qi.create_node(conn, org_id, admin_id, other, {"node_type": "primary", "text": "X", "parent_id": diagram["aim"]})

    def test_invalid_node_type(self, conn, org_id, admin_id, diagram):
        with pytest.raises(ValidationError, match="Type must be one of"):
            qi.create_node(conn, org_id, admin_id, diagram["id"], {"node_type": "tertiary", "text": "X"})

    def test_delete_cascades(self, conn, org_id, admin_id, diagram):
        qi.delete_node(conn, org_id, admin_id, diagram["primary"])
        remaining = [r["id"] for r in conn.execute("SELECT id FROM driver_nodes").fetchall()]
        assert remaining == [diagram["aim"]]

    def test_node_cannot_parent_itself(self, conn, org_id, admin_id, diagram):
        with pytest.raises(ValidationError, match="own parent"):
            qi.update_node(
                conn, org_id, admin_id, diagram["primary"],
                {"node_type": "primary", "text": "High quality CPR", "parent_id": diagram["primary"]},
            )

    def test_reorder(self, conn, org_id, admin_id, diagram):
        result = qi.reorder_nodes(conn, org_id, admin_id, [{"id": diagram["aim"], "sort_order": 5}])
        assert result == {"updated": 1}
        row = conn.execute("SELECT sort_order FROM driver_nodes WHERE id = ?", (diagram["aim"],)).fetchone()
        assert row["sort_order"] == 5

    def test_reorder_rejects_negative(self, conn, org_id, admin_id, diagram):
        with pytest.raises(ValidationError):
            qi.reorder_nodes(conn, org_id, admin_id, [{"id": diagram["aim"], "sort_order": -1}])


class TestPdsaCycles:
    """Cycle numbering and the phase flow."""

    def test_numbering_per_change_idea(self, conn, org_id, admin_id, diagram):
        form = {"title": "Feedback pilot", "diagram_id": diagram["id"], "change_idea_node_id": diagram["idea"]}
        first = qi.create_pdsa_cycle(conn, org_id, admin_id, form)
        second = qi.create_pdsa_cycle(conn, org_id, admin_id, form)
        assert (first["cycle_number"], second["cycle_number"]) == (1, 2)

    def test_change_idea_must_match_diagram(self, conn, org_id, admin_id, diagram):
        other = qi.create_diagram(conn, org_id, admin_id, {"name": "Other"})["diagram_id"]
        form = {"title": "Mismatch", "diagram_id": other, "change_idea_node_id": diagram["idea"]}
        with pytest.raises(ValidationError, match="Change idea"):
            qi.create_pdsa_cycle(conn, org_id, admin_id, form)

    def test_advance_through_phases(self, conn, org_id, admin_id, diagram):
        cycle_id = qi.create_pdsa_cycle(conn, org_id, admin_id, {"title": "Pilot", "diagram_id": diagram["id"]})["cycle_id"]
        statuses = [qi.advance_pdsa_cycle(conn, org_id, admin_id, cycle_id)["status"] for _ in range(4)]
        assert statuses == ["doing", "studying", "acting", "completed"]
        cycle = qi.get_pdsa_cycle(conn, org_id, cycle_id)
        stamp = today().isoformat()
        assert cycle["do_start_date"] == stamp
        assert cycle["do_end_date"] == stamp
        assert cycle["act_date"] == stamp
        with pytest.raises(ValidationError, match="Cannot advance"):
            qi.advance_pdsa_cycle(conn, org_id, admin_id, cycle_id)

    def test_abandoned_cycle_cannot_advance(self, conn, org_id, admin_id):
        cycle_id = qi.create_pdsa_cycle(conn, org_id, admin_id, {"title": "Dropped", "status": "abandoned"})["cycle_id"]
        with pytest.raises(ValidationError):
            qi.advance_pdsa_cycle(conn, org_id, admin_id, cycle_id)

    def test_clone_carries_learnings(self, conn, org_id, admin_id, diagram):
        form = {
            "title": "Pilot",
            "diagram_id": diagram["id"],
            "change_idea_node_id": diagram["idea"],
            "study_learnings": "Crews need refresher",
        }
        source = qi.create_pdsa_cycle(conn, org_id, admin_id, form)
        clone = qi.clone_pdsa_cycle(conn, org_id, admin_id, source["cycle_id"])
        assert clone["cycle_number"] == 2
        cycle = qi.get_pdsa_cycle(conn, org_id, clone["cycle_id"])
        assert cycle["status"] == "planning"
        assert cycle["plan_description"] == "Learnings from Cycle 1: Crews need refresher"


class TestActionItems:
    """Action item status."""

    def test_past_due_reads_overdue(self, conn, org_id, admin_id):
        yesterday = (today() - dt.timedelta(days=1)).isoformat()
        qi.create_action_item(conn, org_id, admin_id, {"title": "Late", "due_date": yesterday})
        qi.create_action_item(conn, org_id, admin_id, {"title": "Done", "due_date": yesterday, "status": "completed"})
        states = {i["title"]: i["effective_status"] for i in qi.list_action_items(conn, org_id)}
        assert states == {"Late": "overdue", "Done": "completed"}
        overdue = qi.list_action_items(conn, org_id, {"status": "overdue"})
        assert [i["title"] for i in overdue] == ["Late"]

    def test_set_status_stamps_completion(self, conn, org_id, admin_id):
        item_id = qi.create_action_item(conn, org_id, admin_id, {"title": "Audit"})["action_item_id"]
        result = qi.set_action_item_status(conn, org_id, admin_id, item_id, "completed")
        assert result["completed_at"]
        reopened = qi.set_action_item_status(conn, org_id, admin_id, item_id, "open")
        assert reopened["completed_at"] is None

    def test_invalid_status(self, conn, org_id, admin_id):
        item_id = qi.create_action_item(conn, org_id, admin_id, {"title": "Audit"})["action_item_id"]
        with pytest.raises(ValidationError, match="Status must be one of"):
            qi.set_action_item_status(conn, org_id, admin_id, item_id, "paused")


class TestShareLinks:
    """Public campaign reports."""

    def test_shared_report_hides_owner(self, conn, org_id, admin_id):
        campaign_id = qi.create_campaign(conn, org_id, admin_id, {"name": "Stroke", "owner_id": admin_id})["campaign_id"]
        token = qi.create_share_link(conn, org_id, admin_id, campaign_id)["token"]
        report = qi.shared_campaign_report(conn, token)
        assert report["campaign"]["name"] == "Stroke"
        assert "owner_id" not in report["campaign"]

    def test_revoked_link(self, conn, org_id, admin_id, campaign_id):
        link = qi.create_share_link(conn, org_id, admin_id, campaign_id, days=7)
        qi.revoke_share_link(conn, org_id, admin_id, link["link_id"])
        with pytest.raises(NotFoundError):
            qi.shared_campaign_report(conn, link["token"])

    def test_expired_link(self, conn, org_id, admin_id, campaign_id):
        link = qi.create_share_link(conn, org_id, admin_id, campaign_id)
        conn.execute("UPDATE campaign_share_links SET expires_at = '2000-01-01T00:00:00Z'")
        with pytest.raises(NotFoundError):
            qi.shared_campaign_report(conn, link["token"])

    def test_lifetime_bounds(self, conn, org_id, admin_id, campaign_id):
        with pytest.raises(ValidationError, match="1 to 365 days"):
            qi.create_share_link(conn, org_id, admin_id, campaign_id, days=400)

    @pytest.mark.parametrize("days", [0, "0", "-1", "forever"])
    def test_explicit_lifetime_is_validated(self, conn, org_id, admin_id, campaign_id, days):
        with pytest.raises(ValidationError, match="1 to 365 days"):
            qi.create_share_link(conn, org_id, admin_id, campaign_id, days=days)

    def test_unknown_token(self, conn):
        with pytest.raises(NotFoundError):
            qi.shared_campaign_report(conn, "nope")
