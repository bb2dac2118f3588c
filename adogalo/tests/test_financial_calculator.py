"""
Financial calculator: locked formulas, funds gate and termin tiers
"""
from decimal import Decimal

from adogalo.core.financial_calculator import (
    calculate_milestone_payment,
    calculate_termin_amount,
    check_client_funds_sufficient,
    generate_default_termins,
    get_display_amount,
    get_budget_display,
    calculate_project_statistics,
    format_currency,
    format_percent,
)
from adogalo.core.financial_precision import to_decimal, to_float, calculate_percentage


class TestMilestonePayment:
    """Breakdown of one milestone payment"""

    def test_breakdown_with_retention(self):
        payment = calculate_milestone_payment(1_000_000, retention_percent=5)
        assert payment.gross_amount == 1_000_000
        assert payment.client_fee_amount == 10_000
        assert payment.total_with_client_fee == 1_010_000
        assert payment.vendor_fee_amount == 20_000
        assert payment.retention_amount == 50_000
        assert payment.vendor_net_amount == 930_000

    def test_no_retention(self):
        payment = calculate_milestone_payment(2_500_000)
        assert payment.retention_amount == 0
        assert payment.vendor_net_amount == 2_450_000

    def test_custom_fees(self):
        payment = calculate_milestone_payment(1_000_000, 0, client_fee_percent=1.5, vendor_fee_percent=3)
        assert payment.client_fee_amount == 15_000
        assert payment.vendor_fee_amount == 30_000

    def test_decimal_rounding_at_boundary(self):
        payment = calculate_milestone_payment(333_333.33, retention_percent=5)
        assert payment.vendor_fee_amount == 6_666.67
        assert payment.retention_amount == 16_666.67
        assert payment.vendor_net_amount == 310_000.0


class TestTerminAmount:
    def test_adds_client_fee(self):
        assert calculate_termin_amount(10_000_000) == {
            "base_amount": 10_000_000,
            "client_fee_amount": 100_000,
            "total_with_fee": 10_100_000,
        }

    def test_negative_base_keeps_sign(self):
        amounts = calculate_termin_amount(-500_000, 0)
        assert amounts["base_amount"] == -500_000
        assert amounts["total_with_fee"] == -500_000


class TestFundsCheck:
    """Client funds must cover 110% of the milestone price"""

    def test_one_rupiah_short_is_insufficient(self):
        check = check_client_funds_sufficient(1_099_999, 1_000_000)
        assert check.is_sufficient is False
        assert check.required_funds == 1_100_000
        assert check.shortage == 1
        assert "110%" in check.warning_message

    def test_exact_buffer_is_sufficient(self):
        check = check_client_funds_sufficient(1_100_000, 1_000_000)
        assert check.is_sufficient is True
        assert check.shortage == 0
        assert check.warning_message is None


class TestDefaultTermins:
    """Budget tiers: 1 / 2 / 3 termins"""

    def test_fifteen_million_is_single_termin(self):
        termins = generate_default_termins(15_000_000)
        assert [t["percentage"] for t in termins] == [100]
        assert termins[0]["total_with_fee"] == 15_150_000

    def test_just_above_fifteen_million_splits_in_two(self):
        termins = generate_default_termins(15_000_001)
        assert [t["percentage"] for t in termins] == [50, 50]
        assert [t["termin_number"] for t in termins] == [1, 2]

    def test_fifty_million_is_still_two(self):
        assert len(generate_default_termins(50_000_000)) == 2

    def test_just_above_fifty_million_splits_in_three(self):
        termins = generate_default_termins(50_000_001)
        assert [t["percentage"] for t in termins] == [40, 30, 30]

    def test_bases_sum_to_budget(self):
        termins = generate_default_termins(100_000_000)
        assert sum(t["base_amount"] for t in termins) == 100_000_000
        assert termins[0]["client_fee_amount"] == 400_000


class TestRoleDisplay:
    """Same breakdown, different field per role"""

    def test_vendor_sees_net(self):
        display = get_display_amount(1_000_000, 5, "vendor")
        assert display["display_amount"] == 930_000
        assert display["label"] == "Nilai Bersih"

    def test_client_sees_gross_without_breakdown(self):
        display = get_display_amount(1_000_000, 5, "client")
        assert display["display_amount"] == 1_000_000
        assert display["breakdown"] is None

    def test_admin_sees_breakdown(self):
        display = get_display_amount(1_000_000, 5, "admin")
        assert display["display_amount"] == 1_000_000
        assert display["breakdown"]["retention_amount"] == 50_000

    def test_vendor_budget_hides_client_fee(self):
        assert get_budget_display(10_000_000, "vendor")["show_fee"] is False
        client_view = get_budget_display(10_000_000, "client")
        assert client_view["display_amount"] == 10_100_000


class TestStatistics:
    def test_progress_excludes_reduction_termins(self):
        milestones = [
            {"status": "completed", "price": 3_000_000},
            {"status": "active", "price": 7_000_000},
        ]
        termins = [
            {"type": "main", "status": "paid", "total_with_fee": 5_050_000},
            {"type": "main", "status": "unpaid", "total_with_fee": 5_050_000},
            {"type": "reduction", "status": "unpaid", "total_with_fee": -1_000_000},
        ]
        stats = calculate_project_statistics(milestones, termins, {"vendor_paid": 2_940_000})
        assert stats["progress"] == 50
        assert stats["value_progress"] == 30
        assert stats["termin_progress"] == 50
        assert stats["active_milestones"] == 1
        assert stats["total_paid"] == 2_940_000

    def test_empty_project(self):
        stats = calculate_project_statistics([], [], None)
        assert stats["progress"] == 0
        assert stats["total_paid"] == 0


class TestFormatting:
    def test_rupiah(self):
        assert format_currency(1_100_000) == "Rp 1.100.000"
        assert format_currency(-50_000) == "-Rp 50.000"

    def test_percent(self):
        assert format_percent(5) == "5.0%"
        assert format_percent(Decimal("2"), 0) == "2%"


class TestPrecision:
    def test_float_goes_through_str(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_percentage(self):
        assert calculate_percentage(1000, 10) == Decimal("100")
        assert to_float(calculate_percentage(10_000_000, 1)) == 100_000
