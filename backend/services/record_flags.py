"""
Payflow Hub - Duplicate & Anomaly Flags

Read-only detectors over a snapshot of records. Flags are advisory: they are
never persisted and the workflow engine never consults them.

Each record kind has an adapter naming the payload fields used for identity,
amount and date, so invoices, payslips and assignments share one detector.
"""

import logging
import re
import statistics
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Dict, List, Any, Tuple, Iterable

from dateutil import parser as date_parser

from . import settings
from .records import Record, RecordKind, INVOICE_KINDS, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# NORMALIZATION
# =============================================================================

COMPANY_SUFFIXES = [
    r'[\s,]+(inc\.?|incorporated)$',
    r'[\s,]+(llc\.?|l\.l\.c\.?)$',
    r'[\s,]+(ltd\.?|limited)$',
    r'[\s,]+(corp\.?|corporation)$',
    r'[\s,]+(co\.?|company)$',
    r'[\s,]+(plc\.?)$',
    r'[\s,]+(gmbh)$',
    r'[\s,]+(ag)$',
]


def normalize_name(name: Any) -> str:
    """
    Normalize a person or company name for matching.
    Strips common company suffixes, punctuation, and converts to lowercase.
    """
    if not name:
        return ""
    name = str(name).lower().strip()
    for suffix in COMPANY_SUFFIXES:
        name = re.sub(suffix, '', name, flags=re.IGNORECASE)
    name = re.sub(r'[^\w\s]', '', name)
    return re.sub(r'\s+', ' ', name).strip()


def parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[date]:
    """Best-effort date parse; None for missing or unparsable values."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError):
        return None


# =============================================================================
# KIND ADAPTERS
# =============================================================================

def _first(payload: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


class KindAdapter:
    """Which payload fields mean name, amount, date and identity for a kind."""

    def name(self, payload: Dict[str, Any]) -> Optional[str]:
        return None

    def amount(self, payload: Dict[str, Any]) -> Optional[float]:
        return None

    def date(self, payload: Dict[str, Any]) -> Any:
        return None

    def duplicate_key(self, payload: Dict[str, Any]) -> Optional[Tuple]:
        raise NotImplementedError


class InvoiceAdapter(KindAdapter):

    def name(self, payload):
        return _first(payload, "beneficiary_name", "guest_name")

    def amount(self, payload):
        return parse_amount(_first(payload, "gross_amount", "amount"))

    def date(self, payload):
        return _first(payload, "invoice_date", "service_date_from")

    def invoice_number(self, payload) -> str:
        value = payload.get("invoice_number")
        return re.sub(r'[\s\-/]', '', str(value)).lower() if value else ""

    def duplicate_key(self, payload):
        name = normalize_name(self.name(payload))
        amount = self.amount(payload)
        if not name or amount is None:
            return None
        number = self.invoice_number(payload)
        if number:
            return (name, round(amount, 2), number)
        return (name, round(amount, 2))


class PayslipAdapter(KindAdapter):

    def name(self, payload):
        return payload.get("employee_name")

    def amount(self, payload):
        return parse_amount(payload.get("net_pay"))

    def date(self, payload):
        return payload.get("pay_date")

    def duplicate_key(self, payload):
        name = normalize_name(self.name(payload))
        month, year = payload.get("payment_month"), payload.get("payment_year")
        if not name or month in (None, "") or year in (None, ""):
            return None
        return (name, str(month), str(year))


class AssignmentAdapter(KindAdapter):

    def name(self, payload):
        return payload.get("contractor_id")

    def date(self, payload):
        return payload.get("date")

    def duplicate_key(self, payload):
        contractor = payload.get("contractor_id")
        shift_date = parse_date(payload.get("date"))
        role = normalize_name(payload.get("role"))
        if not contractor or shift_date is None or not role:
            return None
        return (str(contractor), shift_date.isoformat(), role)


ADAPTERS: Dict[str, KindAdapter] = {
    RecordKind.INVOICE.value: InvoiceAdapter(),
    RecordKind.OTHER_INVOICE.value: InvoiceAdapter(),
    RecordKind.PAYSLIP.value: PayslipAdapter(),
    RecordKind.ASSIGNMENT.value: AssignmentAdapter(),
}


def get_adapter(kind: str) -> KindAdapter:
    if kind not in ADAPTERS:
        raise ValueError(f"Unknown record kind '{kind}'")
    return ADAPTERS[kind]


# =============================================================================
# DUPLICATES
# =============================================================================

@dataclass
class DuplicateGroup:
    kind: str
    key: Tuple
    record_ids: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "key": list(self.key), "record_ids": self.record_ids}


def find_duplicate_groups(records: Iterable[Record]) -> List[DuplicateGroup]:
    """
    Group records sharing an identity key within the same kind.

    Deterministic: groups sorted by (kind, key), ids sorted within a group.
    """
    buckets: Dict[Tuple[str, Tuple], List[str]] = {}
    for record in records:
        adapter = ADAPTERS.get(record.kind)
        if adapter is None:
            continue
        key = adapter.duplicate_key(record.payload)
        if key is None:
            continue
        buckets.setdefault((record.kind, key), []).append(record.id)

    groups = [
        DuplicateGroup(kind=kind, key=key, record_ids=sorted(ids))
        for (kind, key), ids in buckets.items()
        if len(ids) > 1
    ]
    groups.sort(key=lambda g: (g.kind, tuple(str(part) for part in g.key)))
    return groups


def find_duplicates(records: Iterable[Record]) -> List[str]:
    """Sorted ids of every record in a duplicate group."""
    return sorted({rid for group in find_duplicate_groups(records) for rid in group.record_ids})


def check_candidate(
    kind: str,
    payload: Dict[str, Any],
    records: Iterable[Record],
    limit: int = 10,
) -> List[Dict[str, Any]]:
    """
    Pre-submission check: existing records that look like the candidate.

    A name match is required; each further agreeing field adds a reason.
    Results are ordered by number of reasons, strongest first.
    """
    adapter = get_adapter(kind)
    candidate_name = normalize_name(adapter.name(payload))
    if not candidate_name:
        return []

    candidate_amount = adapter.amount(payload)
    candidate_date = parse_date(adapter.date(payload))

    matches = []
    for record in records:
        if record.kind != kind:
            continue
        existing = record.payload
        existing_name = normalize_name(adapter.name(existing))
        if not existing_name or candidate_name not in existing_name:
            continue

        reasons = ["Same name"]
        amount = adapter.amount(existing)
        if candidate_amount is not None and amount is not None and abs(amount - candidate_amount) < 0.01:
            reasons.append("Same amount")

        existing_date = parse_date(adapter.date(existing))
        if candidate_date and existing_date:
            days = abs((candidate_date - existing_date).days)
            if days == 0:
                reasons.append("Same date")
            elif days <= 7:
                reasons.append(f"Date within {days} days")

        if isinstance(adapter, InvoiceAdapter):
            number = adapter.invoice_number(payload)
            if number and number == adapter.invoice_number(existing):
                reasons.append("Same invoice number")
        elif isinstance(adapter, PayslipAdapter):
            if (
                str(payload.get("payment_month")) == str(existing.get("payment_month"))
                and str(payload.get("payment_year")) == str(existing.get("payment_year"))
            ):
                reasons.append("Same pay period")
        elif isinstance(adapter, AssignmentAdapter):
            if normalize_name(payload.get("role")) == normalize_name(existing.get("role")):
                reasons.append("Same role")

        matches.append({
            "id": record.id,
            "name": adapter.name(existing),
            "amount": amount,
            "date": adapter.date(existing),
            "status": record.status,
            "match_reasons": reasons,
        })

    matches.sort(key=lambda m: (-len(m["match_reasons"]), m["id"]))
    return matches[:limit]


# =============================================================================
# ANOMALIES
# =============================================================================

UNUSUAL_AMOUNT = "unusual_amount"
FUTURE_DATE = "future_date"
VERY_OLD_DATE = "very_old_date"


def _anomaly_group(kind: str) -> str:
    # Both invoice kinds share one amount distribution
    return "invoice" if kind in INVOICE_KINDS else kind


def detect_anomalies(
    records: Iterable[Record],
    today: Optional[date] = None,
    min_sample: Optional[int] = None,
    multiplier: Optional[float] = None,
    very_old_days: Optional[int] = None,
) -> Dict[str, List[str]]:
    """
    Flag unusual amounts and dates.

    Returns {record_id: [flags]} for flagged records only; flag lists are
    sorted. Amount outliers are judged per kind group and only once at least
    `min_sample` records have a known amount.
    """
    records = list(records)
    today = today or utc_now().date()
    min_sample = settings.ANOMALY_MIN_SAMPLE if min_sample is None else min_sample
    multiplier = settings.ANOMALY_STDDEV_MULTIPLIER if multiplier is None else multiplier
    very_old_days = settings.VERY_OLD_DATE_DAYS if very_old_days is None else very_old_days

    flags: Dict[str, set] = {}

    amounts_by_group: Dict[str, List[Tuple[str, float]]] = {}
    for record in records:
        adapter = ADAPTERS.get(record.kind)
        if adapter is None:
            continue
        amount = adapter.amount(record.payload)
        if amount is not None:
            amounts_by_group.setdefault(_anomaly_group(record.kind), []).append((record.id, amount))

        record_date = parse_date(adapter.date(record.payload))
        if record_date is not None:
            if record_date > today:
                flags.setdefault(record.id, set()).add(FUTURE_DATE)
            elif record_date < today - timedelta(days=very_old_days):
                flags.setdefault(record.id, set()).add(VERY_OLD_DATE)

    for group, known in amounts_by_group.items():
        if len(known) < max(min_sample, 2):
            continue
        values = [amount for _, amount in known]
        mean = statistics.mean(values)
        sd = statistics.stdev(values)
        if sd == 0:
            continue
        low, high = mean - multiplier * sd, mean + multiplier * sd
        for record_id, amount in known:
            if amount < low or amount > high:
                flags.setdefault(record_id, set()).add(UNUSUAL_AMOUNT)
        logger.debug("Anomaly bounds for %s: mean=%.2f sd=%.2f n=%d", group, mean, sd, len(values))

    return {record_id: sorted(found) for record_id, found in sorted(flags.items())}
