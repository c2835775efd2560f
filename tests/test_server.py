"""HTTP tests against the WSGI app."""

from emsdash import config, field_training, qi

from conftest import STRONG_PASSWORD


class TestHealthChecks:
    def test_healthz(self, client):
        result = client.get("/healthz")
        assert result.status_code == 200
        assert result.text == "ok"

    def test_readyz(self, client):
        assert client.get("/readyz").text == "ready"

    def test_static_traversal_blocked(self, client):
        assert client.get("/static/../config.py").status_code == 404

    def test_static_file(self, client):
        result = client.get("/static/style.css")
        assert result.status_code == 200
        assert result.header("Content-Type").startswith("text/css")


class TestLogin:
    """Sessions over the JSON and form endpoints."""

    def test_json_login(self, client):
        result = client.login()
        body = result.json()
        assert body["ok"] is True
        assert body["user"]["email"] == config.ADMIN_EMAIL
        assert body["csrf"]
        assert "session_token" in client.cookies

    def test_bad_password(self, client):
        result = client.request("POST", "/api/auth/login", json_body={"email": config.ADMIN_EMAIL, "password": "nope"})
        assert result.status_code == 401
        assert result.json()["ok"] is False

    def test_form_login_redirects(self, client):
        result = client.post("/login", {"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD})
        assert result.status_code == 302
        assert result.header("Location") == "/"

    def test_form_login_failure(self, client):
        result = client.post("/login", {"email": config.ADMIN_EMAIL, "password": "wrong"})
        assert result.status_code == 401
        assert "Sign In" in result.text

    def test_login_page(self, client):
        result = client.get("/login")
        assert result.status_code == 200
        assert 'action="/login"' in result.text

    def test_logout_clears_session(self, admin_client):
        result = admin_client.post("/api/auth/logout")
        assert result.status_code == 200
        assert "session_token" not in admin_client.cookies
        assert admin_client.get("/api/auth/me").status_code == 401

    def test_logout_requires_csrf(self, admin_client):
        assert admin_client.post("/api/auth/logout", csrf=False).status_code == 403


class TestApiGates:
    """Authentication, permission and CSRF checks."""

    def test_requires_login(self, client):
        result = client.get("/api/departments")
        assert result.status_code == 401
        assert result.json() == {"ok": False, "error": "Authentication required"}

    def test_permission_denied(self, client, make_user):
        make_user("data_entry", email="clerk@example.org")
        client.login("clerk@example.org", STRONG_PASSWORD)
        result = client.get("/api/admin/users")
        assert result.status_code == 403
        assert result.json()["error"] == "Insufficient permissions"

    def test_missing_csrf(self, admin_client):
        result = admin_client.post("/api/departments", {"name": "Operations"}, csrf=False)
        assert result.status_code == 403
        assert result.json()["error"] == "Invalid or missing CSRF token."

    def test_cross_origin_rejected(self, admin_client):
        result = admin_client.post("/api/departments", {"name": "Operations"}, headers={"HTTP_ORIGIN": "https://evil.test"})
        assert result.status_code == 403

    def test_unknown_endpoint(self, admin_client):
        result = admin_client.get("/api/nothing-here")
        assert result.status_code == 404
        assert result.json()["error"] == "Endpoint not found"

    def test_wrong_method(self, admin_client):
        assert admin_client.get("/api/entries/bulk").status_code == 405


class TestApiActions:
    def test_create_department(self, admin_client):
        result = admin_client.post("/api/departments", {"name": "Operations"})
        assert result.status_code == 200
        assert result.json()["slug"] == "operations"
        listing = admin_client.get("/api/departments").json()
        assert [d["slug"] for d in listing["departments"]] == ["operations"]

    def test_validation_error_is_400(self, admin_client):
        result = admin_client.post("/api/departments", {"name": ""})
        assert result.status_code == 400
        assert result.json()["ok"] is False

    def test_form_post_with_next_redirects(self, admin_client):
        result = admin_client.post("/api/departments", {"name": "Operations", "next": "/admin/departments"})
        assert result.status_code == 302
        assert result.header("Location").startswith("/admin/departments?msg=")

    def test_offsite_next_ignored(self, admin_client):
        result = admin_client.post("/api/departments", {"name": "Operations", "next": "//evil.test/"})
        assert result.status_code == 200


class TestPages:
    """Server-rendered pages."""

    def test_root_redirects_anonymous(self, client):
        result = client.get("/")
        assert result.status_code == 302
        assert result.header("Location") == "/login"

    def test_root_redirects_admin_home(self, admin_client):
        assert admin_client.get("/").header("Location") == "/dashboard"

    def test_dashboard(self, admin_client):
        result = admin_client.get("/dashboard")
        assert result.status_code == 200

    def test_page_requires_login(self, client):
        assert client.get("/dashboard").header("Location") == "/login"

    def test_unknown_page(self, admin_client):
        assert admin_client.get("/no/such/page").status_code == 404

    def test_unknown_department_page(self, admin_client):
        assert admin_client.get("/dashboard/atlantis").status_code == 404


class TestSharedReports:
    """Public share links."""

    def test_shared_campaign(self, client, conn, org_id, admin_id):
        campaign_id = qi.create_campaign(conn, org_id, admin_id, {"name": "Stroke Alert"})["campaign_id"]
        token = qi.create_share_link(conn, org_id, admin_id, campaign_id)["token"]
        conn.commit()
        page = client.get(f"/shared/campaign/{token}")
        assert page.status_code == 200
        assert "Stroke Alert" in page.text
        body = client.get(f"/api/shared/campaign/{token}").json()
        assert body["campaign"]["name"] == "Stroke Alert"

    def test_unknown_token(self, client):
        assert client.get("/api/shared/campaign/missing").status_code == 404


class TestListings:
    """Paginated listings over HTTP."""

    def test_entries_api(self, admin_client):
        body = admin_client.get("/api/entries?page=4").json()
        assert body["items"] == []
        assert body["pagination"]["page"] == 1

    def test_data_entry_page(self, admin_client):
        result = admin_client.get("/data-entry")
        assert result.status_code == 200
        assert "No entries yet." in result.text

    def test_audit_api_filters(self, admin_client):
        admin_client.post("/api/departments", {"name": "Operations"})
        body = admin_client.get("/api/audit?entity=Department&action=create").json()
        assert body["pagination"]["total_items"] == 1
        assert body["items"][0]["user_email"] == config.ADMIN_EMAIL

    def test_audit_page(self, admin_client):
        admin_client.post("/api/departments", {"name": "Operations"})
        result = admin_client.get("/admin/audit?entity=Department")
        assert result.status_code == 200
        assert "Created department" in result.text

    def test_users_api(self, admin_client, make_user):
        make_user("fto", email="fto.one@example.org")
        body = admin_client.get("/api/admin/users?role=fto").json()
        assert [u["email"] for u in body["items"]] == ["fto.one@example.org"]

    def test_users_page(self, admin_client):
        result = admin_client.get("/admin/users")
        assert result.status_code == 200
        assert config.ADMIN_EMAIL in result.text


class TestRequestErrors:
    def test_malformed_json(self, admin_client):
        result = admin_client.request(
            "POST", "/api/departments", json_body=["not", "an", "object"], headers={"HTTP_X_CSRF_TOKEN": admin_client.csrf}
        )
        assert result.status_code == 400
        assert result.json()["error"] == "Request body must be a JSON object."

    def test_json_body_with_header_token(self, admin_client):
        result = admin_client.request(
            "POST", "/api/departments", json_body={"name": "Fleet"}, headers={"HTTP_X_CSRF_TOKEN": admin_client.csrf}
        )
        assert result.json()["slug"] == "fleet"

    def test_form_without_csrf_redirects_with_message(self, admin_client):
        result = admin_client.post("/api/departments", {"name": "Fleet", "next": "/admin/departments"}, csrf=False)
        assert result.status_code == 302
        assert "CSRF" in result.header("Location")


class TestReportExports:
    """CSV downloads under the export permission."""

    def test_roster_download(self, admin_client):
        result = admin_client.get("/api/reports/users.csv")
        assert result.status_code == 200
        assert result.header("Content-Type").startswith("text/csv")
        assert result.header("Content-Disposition") == "attachment; filename=user_roster.csv"
        assert config.ADMIN_EMAIL in result.text

    def test_audit_download_filters(self, admin_client):
        admin_client.post("/api/departments", {"name": "Operations"})
        lines = admin_client.get("/api/reports/audit.csv?entity=Department").text.splitlines()
        assert lines[0] == "timestamp,action,entity,entity_id,details,user_email"
        assert len(lines) == 2

    def test_dor_and_progress_downloads(self, admin_client):
        assert admin_client.get("/api/reports/dors.csv").text.startswith("date,trainee_name,")
        assert admin_client.get("/api/reports/training-progress.csv").text.startswith("trainee_name,")

    def test_requires_export_permission(self, client, make_user):
        make_user("data_entry", email="clerk@example.org")
        client.login("clerk@example.org", STRONG_PASSWORD)
        assert client.get("/api/reports/audit.csv").status_code == 403


class TestAssignmentRequestApi:
    def test_request_and_approve(self, client, make_user):
        make_user("fto", email="fto@example.org")
        make_user("supervisor", email="sup@example.org")
        trainee_id = make_user("trainee")
        client.login("fto@example.org", STRONG_PASSWORD)
        created = client.post("/api/field-training/assignment-requests", {"trainee_id": trainee_id})
        assert created.json()["message"] == "Assignment request sent."
        request_id = created.json()["request_id"]
        assert client.post(f"/api/field-training/assignment-requests/{request_id}/review", {"decision": "approved"}).status_code == 403

        client.login("sup@example.org", STRONG_PASSWORD)
        reviewed = client.post(f"/api/field-training/assignment-requests/{request_id}/review", {"decision": "approved"})
        assert reviewed.json()["status"] == "approved"
        assignments = client.get(f"/api/field-training/assignments?trainee_id={trainee_id}").json()["assignments"]
        assert [a["status"] for a in assignments] == ["active"]

    def test_fto_sees_own_requests(self, client, conn, org_id, make_user):
        fto_id = make_user("fto", email="fto@example.org")
        other_fto = make_user("fto")
        trainee_id = make_user("trainee")
        field_training.create_assignment_request(conn, org_id, other_fto, {"trainee_id": trainee_id})
        conn.commit()
        client.login("fto@example.org", STRONG_PASSWORD)
        client.post("/api/field-training/assignment-requests", {"trainee_id": trainee_id})
        requests = client.get("/api/field-training/assignment-requests").json()["requests"]
        assert [r["requester_id"] for r in requests] == [fto_id]

    def test_field_training_page_lists_requests(self, admin_client, make_user):
        trainee_id = make_user("trainee", first_name="Jordan", last_name="Reyes")
        admin_client.post("/api/field-training/assignment-requests", {"trainee_id": trainee_id, "reason": "Night shift"})
        page = admin_client.get("/field-training")
        assert "Assignment Requests" in page.text
        assert "Night shift" in page.text


class TestDorHistoryApi:
    def test_trainee_reads_own_history(self, client, make_user):
        trainee_id = make_user("trainee", email="trainee@example.org")
        client.login("trainee@example.org", STRONG_PASSWORD)
        result = client.get(f"/api/field-training/trainees/{trainee_id}/dors")
        assert result.status_code == 200
        assert result.json()["dors"] == []

    def test_unassigned_fto_denied(self, client, make_user):
        make_user("fto", email="fto@example.org")
        trainee_id = make_user("trainee")
        client.login("fto@example.org", STRONG_PASSWORD)
        assert client.get(f"/api/field-training/trainees/{trainee_id}/dors").status_code == 403
