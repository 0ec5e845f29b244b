# backend/app/services/audit_export.py
"""CSV rendering of audit records for spreadsheet import"""
import csv
import io
import json
from typing import Iterable, List, Optional

from app.core.constants import AuditCategory
from app.core.audit_log import AuditRecord

EXPORT_COLUMNS = ["Date/Time", "Action", "Category", "Organization", "Amount", "Performed By", "Details"]

# Spreadsheet apps evaluate cells starting with these
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t")

_CATEGORY_KEYWORDS = [
    (AuditCategory.PAYMENT, ("payment", "refund", "invoice")),
    (AuditCategory.DISCOUNT, ("coupon", "discount")),
    (AuditCategory.SUBSCRIPTION, ("subscription", "plan", "trial", "checkout", "status")),
]


def action_category(action: str) -> str:
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in action for keyword in keywords):
            return category.value
    return AuditCategory.SYSTEM.value


def action_label(action: str) -> str:
    """``payment_received`` -> ``Payment Received``"""
    return action.replace("_", " ").title()


def format_amount(amount_cents: Optional[int]) -> str:
    if amount_cents is None:
        return ""
    return f"${amount_cents / 100:,.2f}"


def safe_cell(value) -> str:
    text = "" if value is None else str(value)
    if text.startswith(FORMULA_PREFIXES):
        return "'" + text
    return text


def performer(record: AuditRecord) -> str:
    if record.is_system:
        return "System"
    if record.is_super_admin:
        return f"{record.performed_by} (Super Admin)"
    return record.performed_by or ""


def export_rows(records: Iterable[AuditRecord]) -> List[List[str]]:
    rows = []
    for record in records:
        rows.append([
            safe_cell(record.created_at.strftime("%Y-%m-%d %H:%M:%S")),
            safe_cell(action_label(record.action)),
            safe_cell(action_category(record.action)),
            safe_cell(record.organization_name or ""),
            safe_cell(format_amount(record.amount_cents)),
            safe_cell(performer(record)),
            safe_cell(json.dumps(record.action_details, sort_keys=True, default=str) if record.action_details else ""),
        ])
    return rows


def to_csv(records: Iterable[AuditRecord]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    writer.writerows(export_rows(records))
    return output.getvalue()
