"""
Dashboard analytics.

Pure functions over row sets already loaded for a tenant: callers pass
entries, invoices and lookup dicts; nothing here touches the session.
"""

from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from .billing import effective_rate_cents, round_half_up
from .db.models import BillingType, InvoiceStatus
from .errors import ValidationError

GROUP_COLLABORATOR = "collaborator"
GROUP_CLIENT = "client"
GROUP_MATTER = "matter"
GROUP_FIELDS = (GROUP_COLLABORATOR, GROUP_CLIENT, GROUP_MATTER)

AGING_BUCKETS = ("under_30", "d30_60", "d60_90", "d90_120", "over_120")


def normalize_grouping(group_by: Iterable[str]) -> List[str]:
    """Validate a grouping selection; at least one of collaborator, client, matter."""
    selected = [g for g in GROUP_FIELDS if g in set(group_by or [])]
    unknown = set(group_by or []) - set(GROUP_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown grouping: {', '.join(sorted(unknown))}")
    if not selected:
        raise ValidationError("Select at least one grouping (collaborator, client or matter)")
    return selected


def _in_period(value: Optional[date], date_from: Optional[date], date_to: Optional[date]) -> bool:
    if value is None:
        return False
    if date_from and value < date_from:
        return False
    if date_to and value > date_to:
        return False
    return True


class _Lookup:
    """Resolves users, matters and clients for grouped rows."""

    def __init__(self, users: Dict, matters: Dict, clients: Dict):
        self.users = users
        self.matters = matters
        self.clients = clients

    def client_for_matter(self, matter_id: str):
        matter = self.matters.get(matter_id)
        return self.clients.get(matter.client_id) if matter else None

    def key_and_labels(self, grouping: Sequence[str], user_id: Optional[str], matter_id: str):
        parts = []
        labels: Dict[str, Optional[str]] = {}
        if GROUP_COLLABORATOR in grouping:
            user = self.users.get(user_id) if user_id else None
            parts.append(user_id or "-")
            labels.update({
                "user_id": user_id,
                "user_name": (user.name if user else None) or "Inconnu",
                "user_email": user.email if user else "",
            })
        if GROUP_CLIENT in grouping:
            client = self.client_for_matter(matter_id)
            parts.append(client.id if client else "unknown")
            labels.update({
                "client_id": client.id if client else None,
                "client_code": client.code if client else "-",
                "client_name": client.name if client else "-",
            })
        if GROUP_MATTER in grouping:
            matter = self.matters.get(matter_id)
            parts.append(matter_id)
            labels.update({
                "matter_id": matter_id,
                "matter_code": matter.code if matter else "-",
                "matter_label": matter.label if matter else "-",
            })
        return "|".join(parts), labels


# =============================================================================
# MINUTES KPIs
# =============================================================================

def kpi_summary(entries: Iterable, date_from: Optional[date] = None, date_to: Optional[date] = None) -> Dict[str, int]:
    total = billable = 0
    for e in entries:
        if not _in_period(e.date, date_from, date_to):
            continue
        total += e.minutes_rounded
        if e.billable:
            billable += e.minutes_rounded
    return {
        "total_minutes": total,
        "billable_minutes": billable,
        "non_billable_minutes": total - billable,
    }


def kpi_by_user(entries: Iterable, users: Dict) -> List[Dict]:
    """Billable minutes per collaborator, highest first."""
    minutes: Dict[str, int] = {}
    for e in entries:
        if e.billable:
            minutes[e.user_id] = minutes.get(e.user_id, 0) + e.minutes_rounded

    rows = []
    for user_id, total in minutes.items():
        user = users.get(user_id)
        rows.append({
            "user_id": user_id,
            "user_email": user.email if user else "",
            "user_name": (user.name if user else None) or "",
            "billable_minutes": total,
        })
    return sorted(rows, key=lambda r: r["billable_minutes"], reverse=True)


def kpi_by_matter(entries: Iterable, matters: Dict, clients: Dict) -> List[Dict]:
    """Billable minutes per matter, highest first."""
    minutes: Dict[str, int] = {}
    for e in entries:
        if e.billable:
            minutes[e.matter_id] = minutes.get(e.matter_id, 0) + e.minutes_rounded

    rows = []
    for matter_id, total in minutes.items():
        matter = matters.get(matter_id)
        client = clients.get(matter.client_id) if matter else None
        rows.append({
            "matter_id": matter_id,
            "matter_code": matter.code if matter else "",
            "matter_label": matter.label if matter else "",
            "client_code": client.code if client else "",
            "billable_minutes": total,
        })
    return sorted(rows, key=lambda r: r["billable_minutes"], reverse=True)


# =============================================================================
# REVENUE KPIs
# =============================================================================

def kpi_revenue(
    entries: Iterable,
    invoices: Iterable,
    invoice_entries: Iterable,
    users: Dict,
    matters: Dict,
    clients: Dict,
    settings,
    group_by: Iterable[str],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[Dict]:
    """
    Valued billable time against invoiced HT, grouped.

    Billable revenue values each billable entry of the period at its
    effective rate. Invoiced revenue sums HT of invoices issued in the
    period; under collaborator grouping an invoice is split by the minutes
    of the entries it locked (entries with no collaborator go to "-").
    """
    grouping = normalize_grouping(group_by)
    lookup = _Lookup(users, matters, clients)
    rows: "OrderedDict[str, Dict]" = OrderedDict()

    def row_for(user_id: Optional[str], matter_id: str) -> Dict:
        key, labels = lookup.key_and_labels(grouping, user_id, matter_id)
        if key not in rows:
            rows[key] = dict(labels, key=key, billable_minutes=0,
                             billable_revenue_cents=0, invoiced_revenue_cents=0)
        return rows[key]

    for e in entries:
        if not e.billable or not _in_period(e.date, date_from, date_to):
            continue
        rate = effective_rate_cents(matters.get(e.matter_id), users.get(e.user_id), settings)
        row = row_for(e.user_id, e.matter_id)
        row["billable_minutes"] += e.minutes_rounded
        row["billable_revenue_cents"] += round_half_up(e.minutes_rounded * rate, 60)

    minutes_by_invoice: Dict[str, Dict[str, int]] = {}
    for e in invoice_entries:
        per_user = minutes_by_invoice.setdefault(e.invoice_id, {})
        per_user[e.user_id] = per_user.get(e.user_id, 0) + e.minutes_rounded

    for inv in invoices:
        if inv.status != InvoiceStatus.ISSUED or not _in_period(inv.issue_date, date_from, date_to):
            continue
        if GROUP_COLLABORATOR not in grouping:
            row_for(None, inv.matter_id)["invoiced_revenue_cents"] += inv.total_ht_cents
            continue

        per_user = minutes_by_invoice.get(inv.id) or {}
        total_minutes = sum(per_user.values())
        if not total_minutes:
            row_for(None, inv.matter_id)["invoiced_revenue_cents"] += inv.total_ht_cents
            continue
        # the last share takes the rounding remainder
        allocated = 0
        shares = list(per_user.items())
        for i, (user_id, minutes) in enumerate(shares):
            if i == len(shares) - 1:
                share = inv.total_ht_cents - allocated
            else:
                share = round_half_up(inv.total_ht_cents * minutes, total_minutes)
            allocated += share
            row_for(user_id, inv.matter_id)["invoiced_revenue_cents"] += share

    return sorted(rows.values(), key=lambda r: r["billable_revenue_cents"], reverse=True)


def flat_fee_summary(matters: Dict, clients: Dict, invoices: Iterable,
                     date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[Dict]:
    """Agreed fee vs. HT invoiced in the period, per flat-fee matter."""
    rows: Dict[str, Dict] = {}
    for matter in matters.values():
        if matter.billing_type != BillingType.FLAT_FEE:
            continue
        client = clients.get(matter.client_id)
        rows[matter.id] = {
            "matter_id": matter.id,
            "matter_code": matter.code,
            "matter_label": matter.label,
            "client_code": client.code if client else "-",
            "client_name": client.name if client else "-",
            "flat_fee_cents": matter.flat_fee_cents or 0,
            "invoiced_revenue_cents": 0,
        }

    for inv in invoices:
        if inv.matter_id not in rows:
            continue
        if inv.status != InvoiceStatus.ISSUED or not _in_period(inv.issue_date, date_from, date_to):
            continue
        rows[inv.matter_id]["invoiced_revenue_cents"] += inv.total_ht_cents

    return sorted(rows.values(), key=lambda r: r["flat_fee_cents"], reverse=True)


# =============================================================================
# RECEIVABLES & WIP
# =============================================================================

def unpaid_invoices(invoices: Iterable) -> Dict:
    """Issued, unpaid invoices, oldest first, with their TTC total."""
    unpaid = sorted(
        (inv for inv in invoices if inv.status == InvoiceStatus.ISSUED and not inv.paid),
        key=lambda inv: inv.issue_date or date.min,
    )
    return {
        "invoices": unpaid,
        "count": len(unpaid),
        "total_ttc_cents": sum(inv.total_ttc_cents for inv in unpaid),
    }


def aging_bucket(age_days: int) -> str:
    if age_days < 30:
        return "under_30"
    if age_days < 60:
        return "d30_60"
    if age_days < 90:
        return "d60_90"
    if age_days < 120:
        return "d90_120"
    return "over_120"


def wip_aging(entries: Iterable, users: Dict, matters: Dict, clients: Dict,
              group_by: Iterable[str], today: Optional[date] = None) -> List[Dict]:
    """
    Unbilled billable time bucketed by age in days.

    Only billable, unlocked entries count. Rows are sorted by minutes, highest first.
    """
    grouping = normalize_grouping(group_by)
    today = today or date.today()
    lookup = _Lookup(users, matters, clients)
    rows: "OrderedDict[str, Dict]" = OrderedDict()

    for e in entries:
        if not e.billable or e.locked:
            continue
        key, labels = lookup.key_and_labels(grouping, e.user_id, e.matter_id)
        if key not in rows:
            rows[key] = dict(labels, key=key, billable_minutes=0, aging={b: 0 for b in AGING_BUCKETS})
        row = rows[key]
        row["billable_minutes"] += e.minutes_rounded
        row["aging"][aging_bucket((today - e.date).days)] += e.minutes_rounded

    return sorted(rows.values(), key=lambda r: r["billable_minutes"], reverse=True)


def wip_totals(rows: Iterable[Dict]) -> Dict:
    totals = {"billable_minutes": 0, "aging": {b: 0 for b in AGING_BUCKETS}}
    for row in rows:
        totals["billable_minutes"] += row["billable_minutes"]
        for bucket in AGING_BUCKETS:
            totals["aging"][bucket] += row["aging"][bucket]
    return totals
