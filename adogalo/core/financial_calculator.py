"""
FINANCIAL CALCULATOR

Pure, stateless functions consumed by every money-moving transition.

LOCKED FORMULAS:
- client_fee_amount     = gross * client_fee% / 100
- total_with_client_fee = gross + client_fee_amount
- vendor_fee_amount     = gross * vendor_fee% / 100
- retention_amount      = gross * retention% / 100
- vendor_net_amount     = gross - vendor_fee_amount - retention_amount
- required_funds        = milestone_price * (1 + buffer% / 100)

All intermediate values are Decimal; results are rounded at the boundary.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from adogalo.core.financial_precision import (
    Number,
    to_decimal,
    to_float,
    safe_add,
    safe_divide,
    calculate_percentage,
)

CLIENT_FEE_PERCENT = 1
VENDOR_FEE_PERCENT = 2
WARNING_BUFFER_PERCENT = 10

# <= 15 juta: 1 termin, <= 50 juta: 2 termins, above: 3 termins
BUDGET_THRESHOLD_1_TERMIN = 15_000_000
BUDGET_THRESHOLD_2_TERMIN = 50_000_000

TERMIN_SPLITS = {
    1: [100],
    2: [50, 50],
    3: [40, 30, 30],
}


@dataclass(frozen=True)
class FinancialBreakdown:
    gross_amount: float
    client_fee_amount: float
    total_with_client_fee: float
    vendor_fee_amount: float
    retention_percent: float
    retention_amount: float
    vendor_net_amount: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class FundsCheck:
    is_sufficient: bool
    required_funds: float
    shortage: float
    warning_message: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_milestone_payment(
    gross_amount: Number,
    retention_percent: Number = 0,
    client_fee_percent: Number = CLIENT_FEE_PERCENT,
    vendor_fee_percent: Number = VENDOR_FEE_PERCENT,
) -> FinancialBreakdown:
    """
    Breakdown for one milestone payment.

    vendor_net_amount goes negative only when retention + vendor fee exceed
    100%, which is a caller misconfiguration and is not guarded here.
    """
    gross = to_decimal(gross_amount)
    client_fee = calculate_percentage(gross, client_fee_percent)
    vendor_fee = calculate_percentage(gross, vendor_fee_percent)
    retention = calculate_percentage(gross, retention_percent)
    vendor_net = gross - vendor_fee - retention

    return FinancialBreakdown(
        gross_amount=to_float(gross),
        client_fee_amount=to_float(client_fee),
        total_with_client_fee=to_float(safe_add(gross, client_fee)),
        vendor_fee_amount=to_float(vendor_fee),
        retention_percent=float(to_decimal(retention_percent)),
        retention_amount=to_float(retention),
        vendor_net_amount=to_float(vendor_net),
    )


def calculate_termin_amount(
    base_amount: Number,
    client_fee_percent: Number = CLIENT_FEE_PERCENT,
) -> Dict[str, float]:
    """Termin = base amount + client fee (sign preserving)."""
    base = to_decimal(base_amount)
    fee = calculate_percentage(base, client_fee_percent)
    return {
        "base_amount": to_float(base),
        "client_fee_amount": to_float(fee),
        "total_with_fee": to_float(base + fee),
    }


def check_client_funds_sufficient(client_funds: Number, milestone_price: Number) -> FundsCheck:
    """
    Soft gate before a milestone can start.
    Rule: client_funds >= 110% of the milestone price.
    """
    required = to_decimal(milestone_price) * (
        Decimal('1') + safe_divide(WARNING_BUFFER_PERCENT, 100)
    )
    funds = to_decimal(client_funds)
    is_sufficient = funds >= required
    shortage = Decimal('0') if is_sufficient else required - funds

    warning_message = None
    if not is_sufficient:
        warning_message = (
            f"Dana client tidak mencukupi. Dibutuhkan minimal {format_currency(required)} "
            f"(110% dari nilai pekerjaan), kekurangan {format_currency(shortage)}"
        )

    return FundsCheck(
        is_sufficient=is_sufficient,
        required_funds=to_float(required),
        shortage=to_float(shortage),
        warning_message=warning_message,
    )


def termin_split_for_budget(budget: Number) -> List[int]:
    value = to_decimal(budget)
    if value <= BUDGET_THRESHOLD_1_TERMIN:
        return TERMIN_SPLITS[1]
    if value <= BUDGET_THRESHOLD_2_TERMIN:
        return TERMIN_SPLITS[2]
    return TERMIN_SPLITS[3]


def generate_default_termins(
    budget: Number,
    client_fee_percent: Number = CLIENT_FEE_PERCENT,
) -> List[Dict[str, float]]:
    """
    Tiered termin split:
    - <= 15 juta: 1 termin (100%)
    - 15-50 juta: 2 termins (50% + 50%)
    - > 50 juta: 3 termins (40% + 30% + 30%)
    """
    termins = []
    for index, percentage in enumerate(termin_split_for_budget(budget), start=1):
        amounts = calculate_termin_amount(
            calculate_percentage(budget, percentage), client_fee_percent
        )
        termins.append({
            "termin_number": index,
            "percentage": percentage,
            **amounts,
        })
    return termins


# =============================================================================
# ROLE-BASED DISPLAY (view layer only, never used by transitions)
# =============================================================================

def get_display_amount(
    gross_amount: Number,
    retention_percent: Number,
    role: str,
    client_fee_percent: Number = CLIENT_FEE_PERCENT,
    vendor_fee_percent: Number = VENDOR_FEE_PERCENT,
) -> Dict[str, Any]:
    """Vendor sees net, client sees gross, admin/manager see gross + breakdown."""
    breakdown = calculate_milestone_payment(
        gross_amount, retention_percent, client_fee_percent, vendor_fee_percent
    )

    if role == "vendor":
        return {
            "display_amount": breakdown.vendor_net_amount,
            "label": "Nilai Bersih",
            "breakdown": breakdown.to_dict(),
        }
    if role == "client":
        return {"display_amount": breakdown.gross_amount, "label": "Nilai Pekerjaan", "breakdown": None}
    if role in ("admin", "manager"):
        return {
            "display_amount": breakdown.gross_amount,
            "label": "Nilai Kotor",
            "breakdown": breakdown.to_dict(),
        }
    return {"display_amount": breakdown.gross_amount, "label": "Nilai", "breakdown": None}


def get_budget_display(budget: Number, role: str, client_fee_percent: Number = CLIENT_FEE_PERCENT) -> Dict[str, Any]:
    # Vendor never sees the client fee
    if role == "vendor":
        base = to_float(budget)
        return {
            "base_amount": base,
            "client_fee_amount": 0.0,
            "total_with_fee": base,
            "display_amount": base,
            "label": "Anggaran Proyek",
            "show_fee": False,
        }

    amounts = calculate_termin_amount(budget, client_fee_percent)
    return {
        "base_amount": amounts["base_amount"],
        "client_fee_amount": amounts["client_fee_amount"],
        "total_with_fee": amounts["total_with_fee"],
        "display_amount": amounts["total_with_fee"],
        "label": "Total dengan Biaya Admin",
        "show_fee": True,
    }


def _percent_of(part: Decimal, whole: Decimal) -> int:
    if whole <= 0:
        return 0
    return int((safe_divide(part, whole) * 100).quantize(Decimal('1'), rounding="ROUND_HALF_UP"))


def calculate_project_statistics(
    milestones: Iterable[Mapping[str, Any]],
    termins: Iterable[Mapping[str, Any]],
    ledger: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Progress by count and by value, termin progress (reductions excluded)."""
    milestones = list(milestones)
    termins = list(termins)

    completed = [m for m in milestones if m.get("status") == "completed"]
    total_value = safe_add(*[m.get("price", 0) for m in milestones])
    completed_value = safe_add(*[m.get("price", 0) for m in completed])

    billable = [t for t in termins if t.get("type") != "reduction"]
    total_termin_value = safe_add(*[t.get("total_with_fee", 0) for t in billable])
    paid_termin_value = safe_add(
        *[t.get("total_with_fee", 0) for t in billable if t.get("status") == "paid"]
    )

    return {
        "total_milestones": len(milestones),
        "completed_milestones": len(completed),
        "active_milestones": len([m for m in milestones if m.get("status") == "active"]),
        "pending_milestones": len([m for m in milestones if m.get("status") == "pending"]),
        "total_value": to_float(total_value),
        "completed_value": to_float(completed_value),
        "progress": _percent_of(Decimal(len(completed)), Decimal(len(milestones))),
        "value_progress": _percent_of(completed_value, total_value),
        "total_termin_value": to_float(total_termin_value),
        "paid_termin_value": to_float(paid_termin_value),
        "termin_progress": _percent_of(paid_termin_value, total_termin_value),
        "total_paid": float((ledger or {}).get("vendor_paid", 0)),
    }


def format_currency(amount: Number) -> str:
    """Indonesian Rupiah without decimals, e.g. Rp 1.100.000"""
    value = to_decimal(amount).quantize(Decimal('1'), rounding="ROUND_HALF_UP")
    sign = "-" if value < 0 else ""
    digits = f"{abs(int(value)):,}".replace(",", ".")
    return f"{sign}Rp {digits}"


def format_percent(value: Number, decimals: int = 1) -> str:
    return f"{float(to_decimal(value)):.{decimals}f}%"
