"""
Background Job Tests
====================

Inline fallback of the queue and the notification tasks.
"""

from datetime import date, datetime, timedelta

from flowassist.jobs.queue import enqueue_job


def _double(value):
    return value * 2


def _explode():
    raise RuntimeError("boom")


def test_enqueue_runs_inline_without_redis():
    result = enqueue_job(_double, 21)
    assert result["status"] == "done"
    assert result["result"] == 42


def test_inline_failure_is_reported():
    result = enqueue_job(_explode, job_id="job-1")
    assert result == {"job_id": "job-1", "status": "failed", "error": "boom"}


# =============================================================================
# Tasks
# =============================================================================

def _log_minutes(seed, minutes):
    from flowassist.db.models import TimesheetEntry
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        db.add(TimesheetEntry(tenant_id=seed["tenant_id"], user_id=seed["collab_id"], matter_id=seed["matter_id"],
                              date=date(2026, 3, 2), minutes_rounded=minutes, description="Recherches"))


def _budget_alerts(seed):
    from flowassist.db.models import AuditLog
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        return [a.details for a in db.query(AuditLog).filter(
            AuditLog.tenant_id == seed["tenant_id"], AuditLog.action == "budget_alert",
        ).all()]


def test_budget_alert_fires_once(seed):
    from flowassist.jobs.tasks import task_budget_alert

    _log_minutes(seed, 180)
    assert task_budget_alert(seed["tenant_id"], seed["matter_id"])["alert_sent"] is False

    _log_minutes(seed, 60)
    assert task_budget_alert(seed["tenant_id"], seed["matter_id"]) == {
        "matter_id": seed["matter_id"], "alert_sent": True,
    }
    assert task_budget_alert(seed["tenant_id"], seed["matter_id"])["alert_sent"] is False

    alerts = _budget_alerts(seed)
    assert len(alerts) == 1
    assert alerts[0]["consumed_ht_cents"] == 80000
    assert alerts[0]["percent"] == 80
    assert alerts[0]["notified"] == 1


def test_budget_alert_rearms_when_budget_changes(seed):
    from flowassist.db.models import Matter
    from flowassist.db.session import get_db_session
    from flowassist.jobs.tasks import task_budget_alert

    _log_minutes(seed, 240)
    assert task_budget_alert(seed["tenant_id"], seed["matter_id"])["alert_sent"] is True

    with get_db_session() as db:
        db.query(Matter).filter(Matter.id == seed["matter_id"]).first().max_amount_ht_cents = 90000
    assert task_budget_alert(seed["tenant_id"], seed["matter_id"])["alert_sent"] is True


def test_logging_time_through_api_triggers_alert(seed, api_client):
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    resp = collab.post("/api/v1/timesheet", json={
        "matter_id": seed["matter_id"], "entry_date": "2026-03-02", "minutes": 240, "description": "Plaidoirie",
    })
    assert resp.status_code == 200
    assert len(_budget_alerts(seed)) == 1


def test_budget_alert_wrong_tenant(seed):
    from flowassist.jobs.tasks import task_budget_alert

    _log_minutes(seed, 240)
    assert task_budget_alert(seed["beta_id"], seed["matter_id"])["alert_sent"] is False


def test_document_notification_statuses(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.documents import upload_document
    from flowassist.jobs.tasks import task_document_notification

    with get_db_session() as db:
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])
        with_email = upload_document(db, auth, seed["client_id"], "a.pdf", "application/pdf", b"%PDF").id
        without_email = upload_document(db, auth, seed["other_client_id"], "b.pdf", "application/pdf", b"%PDF").id

    assert task_document_notification(with_email)["status"] == "sent"
    assert task_document_notification(without_email)["status"] == "no_recipient"
    assert task_document_notification("missing")["status"] == "not_found"


def test_document_notification_reports_failure(seed, auth_for, monkeypatch):
    import flowassist.email_utils as email_utils
    from flowassist.db.session import get_db_session
    from flowassist.documents import upload_document
    from flowassist.jobs.tasks import task_document_notification

    with get_db_session() as db:
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])
        document_id = upload_document(db, auth, seed["client_id"], "a.pdf", "application/pdf", b"%PDF").id

    monkeypatch.setattr(email_utils, "send_document_notification_email", lambda **kwargs: False)
    assert task_document_notification(document_id)["status"] == "failed"


def test_agenda_reminders_task_purges_blacklist(seed, auth_for):
    from flowassist.collab import create_agenda_entry
    from flowassist.db.models import TokenBlacklist
    from flowassist.db.session import get_db_session
    from flowassist.jobs.tasks import task_agenda_reminders

    with get_db_session() as db:
        auth = auth_for(db, seed["collab_id"], seed["tenant_id"])
        create_agenda_entry(db, auth, date(2026, 5, 4), "Audience TPI")
        db.add(TokenBlacklist(jti="old", expires_at=datetime.utcnow() - timedelta(days=1)))
        db.add(TokenBlacklist(jti="live", expires_at=datetime.utcnow() + timedelta(days=1)))

    result = task_agenda_reminders("2026-05-03")
    assert result == {"date": "2026-05-03", "reminders_sent": 1, "blacklist_purged": 1}

    with get_db_session() as db:
        assert [t.jti for t in db.query(TokenBlacklist).all()] == ["live"]
