"""Tests for field training: DORs, scoping, phases, coaching, skills and snapshots."""

import datetime as dt

import pytest

from emsdash import coaching, field_training as ft, skills, snapshots
from emsdash.errors import NotFoundError, PermissionDenied, ValidationError
from emsdash.utils import iso, utcnow


@pytest.fixture
def people(conn, org_id, admin_id, make_user):
    """Two trainees, an FTO assigned to the first, and a supervisor."""
    fto = make_user("fto")
    supervisor = make_user("supervisor")
    assigned = make_user("trainee")
    other = make_user("trainee")
    ft.create_assignment(conn, org_id, admin_id, {"trainee_id": assigned, "fto_id": fto})
    conn.commit()
    return {"fto": fto, "supervisor": supervisor, "trainee": assigned, "other": other}


@pytest.fixture
def categories(conn, org_id):
    return [c["id"] for c in ft.list_evaluation_categories(conn, org_id)]


def dor_form(trainee_id, **extra):
    form = {"trainee_id": trainee_id, "evaluation_date": "2024-05-01", "overall_rating": "4"}
    form.update(extra)
    return form


class TestScope:
    """FTOs only see their assigned trainees."""

    def test_fto_lists_assigned_only(self, conn, org_id, people):
        trainees = ft.list_trainees(conn, org_id, scope_user_id=people["fto"])
        assert [t["id"] for t in trainees] == [people["trainee"]]
        assert trainees[0]["fto_name"]

    def test_unscoped_lists_all(self, conn, org_id, people):
        assert len(ft.list_trainees(conn, org_id)) == 2

    def test_fto_cannot_open_other_trainee(self, conn, org_id, people):
        with pytest.raises(PermissionDenied):
            ft.get_trainee(conn, org_id, people["other"], scope_user_id=people["fto"])

    def test_trainee_sees_self(self, conn, org_id, people):
        ft.assert_trainee_visible(conn, org_id, people["trainee"], people["trainee"])

    def test_ended_assignment_removes_access(self, conn, org_id, admin_id, people):
        (assignment,) = ft.list_assignments(conn, org_id, trainee_id=people["trainee"])
        ft.end_assignment(conn, org_id, admin_id, assignment["id"])
        assert ft.assigned_trainee_ids(conn, org_id, people["fto"]) == []
        with pytest.raises(ValidationError, match="already ended"):
            ft.end_assignment(conn, org_id, admin_id, assignment["id"])

    def test_assignment_needs_fto_role(self, conn, org_id, admin_id, people):
        with pytest.raises(NotFoundError):
            ft.create_assignment(conn, org_id, admin_id, {"trainee_id": people["trainee"], "fto_id": people["other"]})


class TestDors:
    """Daily observation report lifecycle."""

    def test_draft_with_clamped_ratings(self, conn, org_id, people, categories):
        form = dor_form(people["trainee"], **{f"rating_{categories[0]}": "9", f"rating_{categories[1]}": "0"})
        result = ft.create_dor(conn, org_id, people["fto"], form, scope_user_id=people["fto"])
        assert result["status"] == "draft"
        dor = ft.get_dor(conn, org_id, result["evaluation_id"])
        assert sorted(r["rating"] for r in dor["ratings"]) == [1, 7]
        assert dor["fto_id"] == people["fto"]

    def test_overall_rating_required(self, conn, org_id, people):
        form = dor_form(people["trainee"], overall_rating="")
        with pytest.raises(ValidationError, match="Overall rating is required"):
            ft.create_dor(conn, org_id, people["fto"], form, scope_user_id=people["fto"])

    def test_overall_rating_range(self, conn, org_id, people):
        with pytest.raises(ValidationError, match="at most 7"):
            ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], overall_rating="8"))

    def test_unknown_category(self, conn, org_id, people):
        with pytest.raises(NotFoundError):
            ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], rating_9999="4"))

    def test_fto_cannot_write_for_unassigned_trainee(self, conn, org_id, people):
        with pytest.raises(PermissionDenied):
            ft.create_dor(conn, org_id, people["fto"], dor_form(people["other"]), scope_user_id=people["fto"])

    def test_submitted_dor_is_locked(self, conn, org_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]), submit=True)
        with pytest.raises(ValidationError, match="already been submitted"):
            ft.update_dor_draft(conn, org_id, people["fto"], created["evaluation_id"], dor_form(people["trainee"]))
        with pytest.raises(ValidationError):
            ft.submit_dor(conn, org_id, people["fto"], created["evaluation_id"])

    def test_fto_edits_only_own_drafts(self, conn, org_id, admin_id, people, make_user):
        second_fto = make_user("fto")
        ft.create_assignment(conn, org_id, admin_id, {"trainee_id": people["trainee"], "fto_id": second_fto})
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]), scope_user_id=people["fto"])
        with pytest.raises(PermissionDenied, match="your own DORs"):
            ft.delete_dor(conn, org_id, second_fto, created["evaluation_id"], scope_user_id=second_fto)

    def test_submit_draft(self, conn, org_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]), scope_user_id=people["fto"])
        result = ft.submit_dor(conn, org_id, people["fto"], created["evaluation_id"], scope_user_id=people["fto"])
        assert result["status"] == "submitted"
        assert ft.get_dor(conn, org_id, created["evaluation_id"])["submitted_at"]

    def test_scoped_listing(self, conn, org_id, people):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]))
        ft.create_dor(conn, org_id, people["supervisor"], dor_form(people["other"]))
        visible = ft.list_dors(conn, org_id, scope_user_id=people["fto"])
        assert [d["trainee_id"] for d in visible] == [people["trainee"]]
        assert len(ft.list_dors(conn, org_id)) == 2


class TestAcknowledgement:
    def test_trainee_acknowledges_once(self, conn, org_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]), submit=True)
        ft.acknowledge_dor(conn, org_id, people["trainee"], created["evaluation_id"])
        assert ft.get_dor(conn, org_id, created["evaluation_id"])["trainee_acknowledged"] == 1
        with pytest.raises(ValidationError, match="already been acknowledged"):
            ft.acknowledge_dor(conn, org_id, people["trainee"], created["evaluation_id"])

    def test_other_trainee_rejected(self, conn, org_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]), submit=True)
        with pytest.raises(PermissionDenied):
            ft.acknowledge_dor(conn, org_id, people["other"], created["evaluation_id"])

    def test_draft_cannot_be_acknowledged(self, conn, org_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]))
        with pytest.raises(ValidationError, match="Only submitted"):
            ft.acknowledge_dor(conn, org_id, people["trainee"], created["evaluation_id"])


class TestDorHistory:
    def test_submitted_only_newest_first(self, conn, org_id, people):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], evaluation_date="2024-05-01"), submit=True)
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], evaluation_date="2024-05-03"), submit=True)
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], evaluation_date="2024-05-05"))
        history = ft.get_trainee_dor_history(conn, org_id, people["trainee"])
        assert [d["evaluation_date"] for d in history] == ["2024-05-03", "2024-05-01"]
        assert history[0]["fto_name"] == "User1, Fto"
        assert history[0]["recommend_action"] == "continue"

    def test_limit(self, conn, org_id, people):
        for day in range(1, 5):
            ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], evaluation_date=f"2024-06-0{day}"), submit=True)
        history = ft.get_trainee_dor_history(conn, org_id, people["trainee"], limit=2)
        assert [d["evaluation_date"] for d in history] == ["2024-06-04", "2024-06-03"]

    def test_scoped_to_assigned_trainees(self, conn, org_id, people):
        with pytest.raises(PermissionDenied):
            ft.get_trainee_dor_history(conn, org_id, people["other"], scope_user_id=people["fto"])

    def test_trainee_reads_own_history(self, conn, org_id, people):
        assert ft.get_trainee_dor_history(conn, org_id, people["trainee"], scope_user_id=people["trainee"]) == []

    def test_non_trainee(self, conn, org_id, people):
        with pytest.raises(NotFoundError):
            ft.get_trainee_dor_history(conn, org_id, people["fto"])


class TestAssignmentRequests:
    """FTO requests to take on a trainee and their review."""

    def test_create_pending(self, conn, org_id, people):
        created = ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"], "reason": "Same shift"})
        assert created["status"] == "pending"
        (request,) = ft.list_assignment_requests(conn, org_id)
        assert request["requester_name"] == "Fto User1"
        assert request["trainee_name"] == "Trainee User4"
        assert request["reason"] == "Same shift"

    def test_duplicate_pending_rejected(self, conn, org_id, people):
        ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})
        with pytest.raises(ValidationError, match="already have a pending request"):
            ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})

    @pytest.mark.parametrize("target", ["supervisor", "missing"])
    def test_target_must_be_trainee(self, conn, org_id, people, target):
        trainee_id = people.get(target, 9999)
        with pytest.raises(ValidationError, match="not a trainee"):
            ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": trainee_id})

    def test_trainee_required(self, conn, org_id, people):
        with pytest.raises(ValidationError, match="Trainee is required"):
            ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": ""})

    def test_approval_reassigns_trainee(self, conn, org_id, people, make_user):
        second_fto = make_user("fto")
        request_id = ft.create_assignment_request(conn, org_id, second_fto, {"trainee_id": people["trainee"]})["request_id"]
        result = ft.review_assignment_request(conn, org_id, people["supervisor"], request_id, "approved", "Covering nights")
        assert result["status"] == "approved"
        assert ft.assigned_trainee_ids(conn, org_id, people["fto"]) == []
        assert ft.assigned_trainee_ids(conn, org_id, second_fto) == [people["trainee"]]
        statuses = {a["fto_id"]: a["status"] for a in ft.list_assignments(conn, org_id, trainee_id=people["trainee"])}
        assert statuses == {people["fto"]: "reassigned", second_fto: "active"}
        (request,) = ft.list_assignment_requests(conn, org_id, status="approved")
        assert request["review_notes"] == "Covering nights"
        assert request["reviewer_name"] == "Supervisor User2"

    def test_denial_leaves_assignments(self, conn, org_id, people):
        request_id = ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})["request_id"]
        ft.review_assignment_request(conn, org_id, people["supervisor"], request_id, "denied")
        assert ft.assigned_trainee_ids(conn, org_id, people["fto"]) == [people["trainee"]]
        with pytest.raises(ValidationError, match="already been reviewed"):
            ft.review_assignment_request(conn, org_id, people["supervisor"], request_id, "approved")

    def test_new_request_after_review(self, conn, org_id, people):
        request_id = ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})["request_id"]
        ft.review_assignment_request(conn, org_id, people["supervisor"], request_id, "denied")
        ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})
        assert len(ft.list_assignment_requests(conn, org_id, status="pending")) == 1

    def test_unknown_decision(self, conn, org_id, people):
        request_id = ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})["request_id"]
        with pytest.raises(ValidationError, match="approved or denied"):
            ft.review_assignment_request(conn, org_id, people["supervisor"], request_id, "maybe")

    def test_unknown_request(self, conn, org_id, people):
        with pytest.raises(NotFoundError):
            ft.review_assignment_request(conn, org_id, people["supervisor"], 9999, "approved")

    def test_list_by_requester(self, conn, org_id, people, make_user):
        second_fto = make_user("fto")
        ft.create_assignment_request(conn, org_id, people["fto"], {"trainee_id": people["other"]})
        ft.create_assignment_request(conn, org_id, second_fto, {"trainee_id": people["other"]})
        mine = ft.list_assignment_requests(conn, org_id, requester_id=second_fto)
        assert [r["requester_id"] for r in mine] == [second_fto]


class TestSupervisorNotes:
    def test_author_or_moderator_deletes(self, conn, org_id, admin_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]), submit=True)
        note_id = ft.add_supervisor_note(conn, org_id, people["supervisor"], created["evaluation_id"], "Solid scene size-up")["note_id"]
        with pytest.raises(PermissionDenied):
            ft.delete_supervisor_note(conn, org_id, people["fto"], note_id)
        ft.delete_supervisor_note(conn, org_id, admin_id, note_id, can_moderate=True)
        assert ft.get_dor(conn, org_id, created["evaluation_id"])["notes"] == []

    def test_empty_note(self, conn, org_id, people):
        created = ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]))
        with pytest.raises(ValidationError, match="cannot be empty"):
            ft.add_supervisor_note(conn, org_id, people["supervisor"], created["evaluation_id"], "   ")


class TestPhasesAndCategories:
    def test_default_phases_seeded(self, conn, org_id, people):
        progress = ft.trainee_phase_progress(conn, org_id, people["trainee"])
        assert len(progress) == 5
        assert {p["status"] for p in progress} == {"not_started"}

    def test_signoff_records_supervisor(self, conn, org_id, people):
        phase_id = ft.list_phases(conn, org_id)[0]["id"]
        ft.signoff_phase(conn, org_id, people["supervisor"], people["trainee"], phase_id, "Ready")
        first = ft.trainee_phase_progress(conn, org_id, people["trainee"])[0]
        assert first["status"] == "completed"
        assert first["signoff_date"]
        assert first["signoff_name"].startswith("Supervisor")

    def test_category_in_use_cannot_be_deleted(self, conn, org_id, admin_id, people, categories):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], **{f"rating_{categories[0]}": "5"}))
        with pytest.raises(ValidationError, match="Deactivate it instead"):
            ft.delete_evaluation_category(conn, org_id, admin_id, categories[0])
        ft.delete_evaluation_category(conn, org_id, admin_id, categories[1])

    def test_dashboard_stats(self, conn, org_id, people):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], overall_rating="3", nrt_flag="1"), submit=True)
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], overall_rating="6"), submit=True)
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"]))
        stats = ft.dashboard_stats(conn, org_id, scope_user_id=people["fto"])
        assert stats["trainee_count"] == 1
        assert stats["dor_count"] == 3
        assert stats["draft_count"] == 1
        assert stats["unacknowledged_count"] == 2
        assert stats["average_rating"] == 4.5
        assert stats["nrt_count"] == 1


class TestCoaching:
    """Assignments generated from poor ratings."""

    @pytest.fixture
    def activity_id(self, conn, org_id, admin_id, categories):
        return coaching.create_activity(conn, org_id, admin_id, {"category_id": categories[0], "title": "Radio discipline"})["activity_id"]

    def test_poor_rating_assigns_on_submit(self, conn, org_id, people, categories, activity_id):
        form = dor_form(people["trainee"], **{f"rating_{categories[0]}": "2"})
        draft = ft.create_dor(conn, org_id, people["fto"], form)
        assert draft["coaching_assigned"] == 0
        result = ft.submit_dor(conn, org_id, people["fto"], draft["evaluation_id"])
        assert result["coaching_assigned"] == 1

    def test_in_flight_activity_not_duplicated(self, conn, org_id, people, categories, activity_id):
        form = dor_form(people["trainee"], **{f"rating_{categories[0]}": "3"})
        ft.create_dor(conn, org_id, people["fto"], form, submit=True)
        assert ft.create_dor(conn, org_id, people["fto"], form, submit=True)["coaching_assigned"] == 0

    def test_good_rating_assigns_nothing(self, conn, org_id, people, categories, activity_id):
        form = dor_form(people["trainee"], **{f"rating_{categories[0]}": "4"})
        assert ft.create_dor(conn, org_id, people["fto"], form, submit=True)["coaching_assigned"] == 0

    def test_trainee_works_assignment(self, conn, org_id, people, categories, activity_id):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], **{f"rating_{categories[0]}": "1"}), submit=True)
        (assignment,) = coaching.trainee_assignments(conn, org_id, people["trainee"])
        coaching.start_assignment(conn, org_id, people["trainee"], assignment["id"])
        assert coaching.update_progress(conn, org_id, people["trainee"], assignment["id"], "150")["progress"] == 100
        with pytest.raises(ValidationError, match="between 0 and 100"):
            coaching.complete_assignment(conn, org_id, people["trainee"], assignment["id"], score="120")
        coaching.complete_assignment(conn, org_id, people["trainee"], assignment["id"], "Reviewed", "90")
        summary = coaching.coaching_summary(conn, org_id, people["trainee"])
        assert summary["completed"] == 1
        assert summary["completion_rate"] == 100.0

    def test_other_trainee_cannot_touch_assignment(self, conn, org_id, people, categories, activity_id):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], **{f"rating_{categories[0]}": "1"}), submit=True)
        (assignment,) = coaching.trainee_assignments(conn, org_id, people["trainee"])
        with pytest.raises(PermissionDenied):
            coaching.start_assignment(conn, org_id, people["other"], assignment["id"])

    def test_summary_without_assignments(self, conn, org_id, people):
        assert coaching.coaching_summary(conn, org_id, people["other"])["completion_rate"] == 100.0


class TestSkills:
    """Skill sign-offs."""

    @pytest.fixture
    def skill_id(self, conn, org_id, admin_id):
        category = skills.create_skill_category(conn, org_id, admin_id, {"name": "Airway"})["category_id"]
        return skills.create_skill(conn, org_id, admin_id, {"category_id": category, "name": "BVM ventilation", "is_critical": "1"})["skill_id"]

    def test_signoff_progress(self, conn, org_id, people, skill_id):
        skills.signoff_skill(conn, org_id, people["fto"], people["trainee"], skill_id)
        progress = skills.trainee_skill_progress(conn, org_id, people["trainee"])
        assert (progress["signed_off"], progress["total"], progress["percent"]) == (1, 1, 100.0)
        assert progress["critical_signed_off"] == 1

    def test_double_signoff(self, conn, org_id, people, skill_id):
        skills.signoff_skill(conn, org_id, people["fto"], people["trainee"], skill_id)
        with pytest.raises(ValidationError, match="already been signed off"):
            skills.signoff_skill(conn, org_id, people["fto"], people["trainee"], skill_id)

    def test_signoff_requires_fto(self, conn, org_id, people, skill_id):
        with pytest.raises(ValidationError, match="recorded by an FTO"):
            skills.signoff_skill(conn, org_id, people["other"], people["trainee"], skill_id)

    def test_remove_signoff(self, conn, org_id, admin_id, people, skill_id):
        skills.signoff_skill(conn, org_id, people["fto"], people["trainee"], skill_id)
        skills.remove_signoff(conn, org_id, admin_id, people["trainee"], skill_id)
        assert skills.trainee_skill_progress(conn, org_id, people["trainee"])["signed_off"] == 0
        with pytest.raises(NotFoundError):
            skills.remove_signoff(conn, org_id, admin_id, people["trainee"], skill_id)

    def test_step_numbers_unique(self, conn, org_id, admin_id, skill_id):
        skills.create_step(conn, org_id, admin_id, skill_id, {"step_number": "1", "description": "Open airway"})
        with pytest.raises(ValidationError, match="already exists"):
            skills.create_step(conn, org_id, admin_id, skill_id, {"step_number": "1", "description": "Seal mask"})


class TestSnapshots:
    """Shared progress reports."""

    def test_snapshot_is_frozen(self, conn, org_id, admin_id, people):
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], overall_rating="5"), submit=True)
        token = snapshots.create_snapshot(conn, org_id, admin_id, people["trainee"], days=30)["token"]
        ft.create_dor(conn, org_id, people["fto"], dor_form(people["trainee"], overall_rating="1"), submit=True)
        shared = snapshots.shared_snapshot(conn, token)
        assert shared["data"]["dor_summary"]["total_count"] == 1
        assert shared["data"]["dor_summary"]["average_overall"] == 5.0
        assert shared["title"].endswith("Progress Report")

    def test_revoked_snapshot(self, conn, org_id, admin_id, people):
        created = snapshots.create_snapshot(conn, org_id, admin_id, people["trainee"])
        snapshots.revoke_snapshot(conn, org_id, admin_id, created["snapshot_id"])
        with pytest.raises(NotFoundError):
            snapshots.shared_snapshot(conn, created["token"])

    def test_lifetime_bounds(self, conn, org_id, admin_id, people):
        with pytest.raises(ValidationError, match="1 to 365 days"):
            snapshots.create_snapshot(conn, org_id, admin_id, people["trainee"], days=366)

    @pytest.mark.parametrize("days", [0, "0", "-3", "soon"])
    def test_explicit_lifetime_is_validated(self, conn, org_id, admin_id, people, days):
        with pytest.raises(ValidationError, match="1 to 365 days"):
            snapshots.create_snapshot(conn, org_id, admin_id, people["trainee"], days=days)

    def test_blank_lifetime_uses_default(self, conn, org_id, admin_id, people):
        created = snapshots.create_snapshot(conn, org_id, admin_id, people["trainee"], days="")
        assert created["expires_at"] > iso(utcnow() + dt.timedelta(days=29))

    def test_bulk_reports_missing_trainees(self, conn, org_id, admin_id, people):
        result = snapshots.create_bulk_snapshots(conn, org_id, admin_id, [people["trainee"], people["fto"]])
        assert [s["trainee_id"] for s in result["snapshots"]] == [people["trainee"]]
        assert result["errors"][0]["trainee_id"] == people["fto"]
