"""
Administration Tests
====================

Cabinet members, the audit log, assignments, portal links and expenses.
"""

STRONG_PASSWORD = "Secret#2026"


def _new_user(client, email, role="collaborator", **extra):
    payload = {"email": email, "name": "Nouveau Membre", "role": role, "password": STRONG_PASSWORD}
    payload.update(extra)
    return client.post("/api/v1/users", json=payload)


# =============================================================================
# Members
# =============================================================================

def test_owner_manages_members(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])

    resp = _new_user(owner, "Nouveau@Alpha.ma", rate_cents=25000)
    assert resp.status_code == 200
    user = resp.json()
    assert user["email"] == "nouveau@alpha.ma"
    assert user["role"] == "collaborator"

    assert _new_user(owner, "nouveau@alpha.ma").status_code == 409
    assert _new_user(owner, "faible@alpha.ma", password="faible").status_code == 400
    assert _new_user(owner, "root2@alpha.ma", global_role="sysadmin").status_code == 403

    resp = owner.patch(f"/api/v1/users/{user['id']}", json={"role": "assistant", "rate_cents": 27000})
    assert resp.json()["role"] == "assistant"
    assert resp.json()["rate_cents"] == 27000

    emails = [u["email"] for u in owner.get("/api/v1/users").json()]
    assert "nouveau@alpha.ma" in emails
    assert "owner@beta.ma" not in emails


def test_existing_login_is_attached(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])

    resp = owner.post("/api/v1/users", json={"email": "owner@beta.ma", "name": "Owner Beta", "role": "assistant"})
    assert resp.status_code == 200
    assert resp.json()["id"] == seed["outsider_id"]

    outsider = api_client(seed["outsider_id"], seed["tenant_id"])
    assert outsider.get("/api/v1/clients").status_code == 200

    # still owner of Beta, so the login stays active
    resp = owner.delete(f"/api/v1/users/{seed['outsider_id']}")
    assert resp.json()["deactivated"] is False
    assert outsider.get("/api/v1/clients").status_code == 403


def test_removing_last_membership_deactivates(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])

    assert owner.delete(f"/api/v1/users/{seed['owner_id']}").status_code == 409
    assert owner.patch(f"/api/v1/users/{seed['owner_id']}", json={"role": "assistant"}).status_code == 409

    resp = owner.delete(f"/api/v1/users/{seed['collab_id']}")
    assert resp.json()["deactivated"] is True
    assert api_client(seed["collab_id"]).get("/api/v1/timesheet").status_code == 401


def test_assistant_cannot_manage_members(seed, api_client):
    assistant = api_client(seed["assistant_id"], seed["tenant_id"])
    assert _new_user(assistant, "x@alpha.ma").status_code == 403
    assert assistant.get("/api/v1/audit").status_code == 403


def test_profile_update(seed, api_client):
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    assert collab.patch("/api/v1/users/me", json={"name": "X"}).status_code == 400

    resp = collab.patch("/api/v1/users/me", json={"name": "Salma Benali"})
    assert resp.json()["name"] == "Salma Benali"
    assert collab.get("/api/v1/users/me").json()["role"] == "collaborator"


def test_audit_log(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    user_id = _new_user(owner, "audit@alpha.ma").json()["id"]
    owner.patch(f"/api/v1/users/{user_id}", json={"active": False})

    rows = owner.get("/api/v1/audit", params={"entity_type": "user", "entity_id": user_id}).json()
    assert {r["action"] for r in rows} == {"create_user", "update_user"}
    assert all(r["user_id"] == seed["owner_id"] for r in rows)


# =============================================================================
# Assignments & portal links
# =============================================================================

def test_assignment_window_controls_logging(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])

    resp = owner.post("/api/v1/assignments", json={
        "matter_id": seed["flat_matter_id"], "user_id": seed["collab_id"],
        "start_date": "2026-02-01", "end_date": "2026-01-31",
    })
    assert resp.status_code == 400
    resp = owner.post("/api/v1/assignments", json={
        "matter_id": seed["flat_matter_id"], "user_id": seed["portal_id"], "start_date": "2026-02-01",
    })
    assert resp.status_code == 400

    resp = owner.post("/api/v1/assignments", json={
        "matter_id": seed["flat_matter_id"], "user_id": seed["collab_id"],
        "start_date": "2026-02-01", "end_date": "2026-02-28",
    })
    assert resp.status_code == 200

    entry = {"matter_id": seed["flat_matter_id"], "minutes": 30, "description": "Statuts"}
    assert collab.post("/api/v1/timesheet", json={**entry, "entry_date": "2026-02-10"}).status_code == 200
    assert collab.post("/api/v1/timesheet", json={**entry, "entry_date": "2026-03-01"}).status_code == 403

    mine = collab.get("/api/v1/assignments").json()
    assert {a["matter_id"] for a in mine} == {seed["matter_id"], seed["flat_matter_id"]}


def test_portal_link_narrowed_to_matters(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    portal_id = _new_user(owner, "juriste@atlas.ma", role="client").json()["id"]

    resp = owner.post("/api/v1/client-users", json={
        "client_id": seed["client_id"], "user_id": seed["collab_id"],
    })
    assert resp.status_code == 400

    resp = owner.post("/api/v1/client-users", json={
        "client_id": seed["client_id"], "user_id": portal_id, "matter_ids": [seed["flat_matter_id"]],
    })
    assert resp.status_code == 200

    for name, matter_id in (("bail.pdf", seed["matter_id"]), ("statuts.pdf", seed["flat_matter_id"]),
                            ("kbis.pdf", None)):
        data = {"client_id": seed["client_id"]}
        if matter_id:
            data["matter_id"] = matter_id
        owner.post("/api/v1/documents", data=data, files={"file": (name, b"%PDF", "application/pdf")})

    narrowed = api_client(portal_id, seed["tenant_id"])
    assert sorted(d["file_name"] for d in narrowed.get("/api/v1/documents").json()) == ["kbis.pdf", "statuts.pdf"]

    full = api_client(seed["portal_id"], seed["tenant_id"])
    assert len(full.get("/api/v1/documents").json()) == 3


# =============================================================================
# Expenses
# =============================================================================

def test_collaborator_expenses(seed, api_client):
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    assistant = api_client(seed["assistant_id"], seed["tenant_id"])
    expense = {
        "client_id": seed["client_id"], "matter_id": seed["matter_id"],
        "expense_date": "2026-03-03", "nature": "Frais de greffe", "amount_ttc_cents": 15000,
    }

    resp = collab.post("/api/v1/expenses", json=expense)
    assert resp.status_code == 200
    expense_id = resp.json()["id"]

    assert collab.post("/api/v1/expenses", json={**expense, "client_id": seed["other_client_id"]}).status_code == 400
    assert collab.post("/api/v1/expenses", json={**expense, "amount_ttc_cents": 0}).status_code == 400
    assert collab.post("/api/v1/expenses", json={**expense, "expense_date": "2025-12-31"}).status_code == 403
    assert collab.post("/api/v1/expenses", json={
        **expense, "matter_id": seed["flat_matter_id"],
    }).status_code == 403

    resp = collab.patch(f"/api/v1/expenses/{expense_id}", json={"amount_ttc_cents": 18000})
    assert resp.json()["amount_ttc_cents"] == 18000

    listed = assistant.get("/api/v1/expenses").json()
    assert [e["id"] for e in listed] == [expense_id]
    assert api_client(seed["owner_id"], seed["tenant_id"]).get("/api/v1/expenses").json()[0]["user_id"] == seed["collab_id"]

    assert collab.delete(f"/api/v1/expenses/{expense_id}").status_code == 200
