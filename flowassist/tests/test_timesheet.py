"""
Timesheet Tests
===============

Rounding, who may log time where, locking and matter budgets.
"""

from datetime import date

import pytest

from flowassist.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from flowassist.timesheet import format_minutes_to_hours, minutes_to_decimal_hours, round_minutes


@pytest.mark.parametrize("raw,rounded", [
    (-5, 15), (0, 15), (1, 15), (15, 15), (16, 30), (61, 75), (120, 120),
])
def test_round_minutes(raw, rounded):
    assert round_minutes(raw) == rounded


def test_hour_labels():
    assert format_minutes_to_hours(45) == "45 min"
    assert format_minutes_to_hours(120) == "2 h"
    assert format_minutes_to_hours(135) == "2 h 15"
    assert minutes_to_decimal_hours(90) == "1.50"


def test_collaborator_logs_on_assigned_matter(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import create_entry

    with get_db_session() as db:
        auth = auth_for(db, seed["collab_id"], seed["tenant_id"])
        entry = create_entry(db, auth, seed["matter_id"], date(2026, 3, 2), 20, "Recherche")
        assert entry.minutes_rounded == 30
        assert entry.user_id == seed["collab_id"]
        assert not entry.locked


def test_collaborator_rules(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import create_entry

    with get_db_session() as db:
        auth = auth_for(db, seed["collab_id"], seed["tenant_id"])

        # before the assignment starts
        with pytest.raises(PermissionDeniedError):
            create_entry(db, auth, seed["matter_id"], date(2025, 12, 31), 30)
        # not assigned
        with pytest.raises(PermissionDeniedError):
            create_entry(db, auth, seed["flat_matter_id"], date(2026, 3, 2), 30)
        # someone else's time
        with pytest.raises(PermissionDeniedError):
            create_entry(db, auth, seed["matter_id"], date(2026, 3, 2), 30, user_id=seed["owner_id"])


def test_manager_logs_for_members_only(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import create_entry

    with get_db_session() as db:
        auth = auth_for(db, seed["assistant_id"], seed["tenant_id"])
        entry = create_entry(db, auth, seed["flat_matter_id"], date(2026, 3, 2), 50, user_id=seed["collab_id"])
        assert entry.minutes_rounded == 60

        with pytest.raises(ValidationError):
            create_entry(db, auth, seed["matter_id"], date(2026, 3, 2), 30, user_id=seed["portal_id"])


def test_closed_matter_rejects_time(seed, auth_for):
    from flowassist.db.models import Matter, MatterStatus
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import create_entry

    with get_db_session() as db:
        db.query(Matter).filter(Matter.id == seed["matter_id"]).update({"status": MatterStatus.CLOSED})
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])
        with pytest.raises(ConflictError):
            create_entry(db, auth, seed["matter_id"], date(2026, 3, 2), 30)


def test_locked_entries_are_read_only(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import create_entry, delete_entry, lock_entries, update_entry

    with get_db_session() as db:
        owner = auth_for(db, seed["owner_id"], seed["tenant_id"])
        entry = create_entry(db, owner, seed["matter_id"], date(2026, 3, 2), 30)
        assert lock_entries(db, owner, [entry.id]) == 1
        assert lock_entries(db, owner, [entry.id]) == 0

        with pytest.raises(ConflictError):
            update_entry(db, owner, entry.id, minutes=45)
        with pytest.raises(ConflictError):
            delete_entry(db, owner, entry.id)


def test_entries_hidden_from_other_collaborators(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import create_entry, get_entry, list_entries

    with get_db_session() as db:
        owner = auth_for(db, seed["owner_id"], seed["tenant_id"])
        collab = auth_for(db, seed["collab_id"], seed["tenant_id"])
        owner_entry = create_entry(db, owner, seed["matter_id"], date(2026, 3, 2), 30)
        create_entry(db, collab, seed["matter_id"], date(2026, 3, 3), 30)

        assert len(list_entries(db, owner)) == 2
        assert [e.user_id for e in list_entries(db, collab)] == [seed["collab_id"]]
        with pytest.raises(NotFoundError):
            get_entry(db, collab, owner_entry.id)


def test_budget_status(seed, auth_for):
    from flowassist.db.models import Matter
    from flowassist.db.session import get_db_session
    from flowassist.timesheet import budget_status, create_entry

    with get_db_session() as db:
        collab = auth_for(db, seed["collab_id"], seed["tenant_id"])
        create_entry(db, collab, seed["matter_id"], date(2026, 3, 2), 90)
        create_entry(db, collab, seed["matter_id"], date(2026, 3, 3), 60, billable=False)

        matter = db.query(Matter).filter(Matter.id == seed["matter_id"]).one()
        status = budget_status(db, matter)
        assert status == {"max_amount_ht_cents": 100000, "consumed_ht_cents": 30000, "percent": 30}

        flat = db.query(Matter).filter(Matter.id == seed["flat_matter_id"]).one()
        assert budget_status(db, flat) is None


# =============================================================================
# API
# =============================================================================

def test_timesheet_api_flow(seed, api_client):
    collab = api_client(seed["collab_id"], seed["tenant_id"])

    resp = collab.post("/api/v1/timesheet", json={
        "matter_id": seed["matter_id"],
        "entry_date": "2026-03-02",
        "minutes": 50,
        "description": "Conclusions",
    })
    assert resp.status_code == 200
    entry = resp.json()
    assert entry["minutes_rounded"] == 60
    assert entry["hours_label"] == "1 h"

    resp = collab.patch(f"/api/v1/timesheet/{entry['id']}", json={"minutes": 70})
    assert resp.status_code == 200
    assert resp.json()["minutes_rounded"] == 75

    resp = collab.get("/api/v1/timesheet")
    assert resp.status_code == 200
    assert len(resp.json()) == 1

    # locking is a manager action
    resp = collab.post("/api/v1/timesheet/lock", json={"entry_ids": [entry["id"]]})
    assert resp.status_code == 403

    owner = api_client(seed["owner_id"], seed["tenant_id"])
    resp = owner.post("/api/v1/timesheet/lock", json={"entry_ids": [entry["id"]]})
    assert resp.json() == {"locked": 1}

    resp = collab.delete(f"/api/v1/timesheet/{entry['id']}")
    assert resp.status_code == 409


def test_unassigned_collaborator_gets_403(seed, api_client):
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    resp = collab.post("/api/v1/timesheet", json={
        "matter_id": seed["flat_matter_id"],
        "entry_date": "2026-03-02",
        "minutes": 30,
    })
    assert resp.status_code == 403


def test_portal_user_cannot_log_time(seed, api_client):
    portal = api_client(seed["portal_id"], seed["tenant_id"])
    resp = portal.get("/api/v1/timesheet")
    assert resp.status_code == 403
