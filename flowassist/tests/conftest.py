"""
Shared fixtures: a throwaway SQLite database per test, a seeded cabinet
and header-authenticated API clients.
"""

from datetime import date

import pytest


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Jobs run inline and the token blacklist falls back to the database."""
    import flowassist.jobs.queue as queue
    import flowassist.token_blacklist as token_blacklist

    monkeypatch.setattr(queue, "get_redis_connection", lambda: None)
    monkeypatch.setattr(token_blacklist, "get_redis_client", lambda: None)


@pytest.fixture
def sqlalchemy_db(tmp_path, monkeypatch):
    """Configure a fresh SQLAlchemy SQLite DB and storage root for tests."""
    from flowassist.config import get_settings
    from flowassist.db.session import reset_engine, init_db

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'flowassist.db'}")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("SMTP_HOST", raising=False)
    monkeypatch.setenv("ALLOW_HEADER_AUTH", "true")
    monkeypatch.setenv("ENVIRONMENT", "development")
    get_settings.cache_clear()
    reset_engine()
    init_db()

    yield

    reset_engine()
    get_settings.cache_clear()


def _seed_cabinet():
    from flowassist.db.session import get_db_session
    from flowassist.db.models import (
        Assignment, Client, ClientUser, GlobalRole, Matter, BillingType, TenantMember, TenantRole, User,
    )
    from flowassist.tenants import create_tenant, ensure_cabinet_settings

    with get_db_session() as db:
        owner = User(email="owner@alpha.ma", name="Owner Alpha")
        assistant = User(email="assistant@alpha.ma", name="Assistant Alpha")
        collab = User(email="collab@alpha.ma", name="Collab Alpha", rate_cents=20000)
        portal = User(email="portal@client.ma", name="Portal User")
        outsider = User(email="owner@beta.ma", name="Owner Beta")
        sysadmin = User(email="root@flowassist.ma", name="Root", global_role=GlobalRole.SYSADMIN)
        db.add_all([owner, assistant, collab, portal, outsider, sysadmin])
        db.flush()

        alpha = create_tenant(db, "Cabinet Alpha", "alpha", owner_id=owner.id)
        ensure_cabinet_settings(db, alpha.id).rate_cabinet_cents = 30000
        beta = create_tenant(db, "Cabinet Beta", "beta", owner_id=outsider.id)
        db.add_all([
            TenantMember(tenant_id=alpha.id, user_id=assistant.id, role=TenantRole.ASSISTANT),
            TenantMember(tenant_id=alpha.id, user_id=collab.id, role=TenantRole.COLLABORATOR),
            TenantMember(tenant_id=alpha.id, user_id=portal.id, role=TenantRole.CLIENT),
        ])

        client = Client(tenant_id=alpha.id, code="CL0001", name="Atlas SARL", billing_email="compta@atlas.ma")
        other_client = Client(tenant_id=alpha.id, code="CL0002", name="Rif SA")
        beta_client = Client(tenant_id=beta.id, code="CL0001", name="Beta Client")
        db.add_all([client, other_client, beta_client])
        db.flush()

        matter = Matter(tenant_id=alpha.id, client_id=client.id, code="DOS0001", label="Contentieux bail",
                        vat_rate=20, max_amount_ht_cents=100000)
        flat = Matter(tenant_id=alpha.id, client_id=client.id, code="DOS0002", label="Statuts",
                      vat_rate=20, billing_type=BillingType.FLAT_FEE, flat_fee_cents=500000)
        db.add_all([matter, flat])
        db.flush()

        db.add(Assignment(tenant_id=alpha.id, matter_id=matter.id, user_id=collab.id,
                          start_date=date(2026, 1, 1)))
        db.add(ClientUser(tenant_id=alpha.id, client_id=client.id, user_id=portal.id))

        return {
            "tenant_id": alpha.id,
            "beta_id": beta.id,
            "owner_id": owner.id,
            "assistant_id": assistant.id,
            "collab_id": collab.id,
            "portal_id": portal.id,
            "outsider_id": outsider.id,
            "sysadmin_id": sysadmin.id,
            "client_id": client.id,
            "other_client_id": other_client.id,
            "beta_client_id": beta_client.id,
            "matter_id": matter.id,
            "flat_matter_id": flat.id,
        }


@pytest.fixture
def seed(sqlalchemy_db):
    return _seed_cabinet()


def make_auth(db, user_id, tenant_id):
    """AuthContext for a seeded user, as the request dependencies would build it."""
    from flowassist.auth import get_auth_service
    from flowassist.db.models import User
    from flowassist.tenants import resolve_tenant

    user = db.query(User).filter(User.id == user_id).first()
    tenant, role = resolve_tenant(db, user, tenant_id)
    return get_auth_service(db).build_context(user, tenant_id=tenant.id, tenant_role=role)


@pytest.fixture
def api_client(sqlalchemy_db):
    """Factory: TestClient acting as `user_id` inside `tenant_id`."""
    from fastapi.testclient import TestClient
    from flowassist.api import app

    def _client(user_id, tenant_id=None):
        client = TestClient(app)
        client.headers.update({"X-User-Id": user_id})
        if tenant_id:
            client.headers.update({"X-Tenant-Id": tenant_id})
        return client

    return _client


@pytest.fixture
def auth_for():
    return make_auth
