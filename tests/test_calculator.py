"""
Tests for the Investment Calculator

Tests cover:
- Exit strategy rules per purchase type
- Mortgage, cash and bridging purchase finance
- Refinance and sale exits
- Blank and malformed input
"""

import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.calculator import (
    ExitStrategy,
    InvestmentCalculator,
    PurchaseType,
    default_calculator_data,
    merge_with_defaults,
    resolve_exit_strategy,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def calculator():
    return InvestmentCalculator()


@pytest.fixture
def mortgage_deal():
    """£200k buy-to-let at 75% LTV."""
    return {
        "purchaseType": "mortgage",
        "purchaseFinance": {
            "purchasePrice": "£200,000",
            "ltv": "75",
            "productFee": "1",
            "interestRate": "5",
        },
        "initialCosts": {"stampDutyPercent": "3", "legal": "1500"},
        "refurbItems": [{"id": 1, "description": "Kitchen", "amount": "5,000"}],
        "monthlyIncome": {"rent1": "1200"},
        "monthlyExpenses": {"maintenancePercent": "10", "insurance": "30"},
    }


@pytest.fixture
def bridging_deal():
    """Bridge with retained interest, refinanced onto a mortgage."""
    return {
        "purchaseType": "bridging",
        "exitStrategy": "refinance-rent",
        "bridgingDetails": {
            "loanType": "retained",
            "duration": "6",
            "grossLoanPercent": "70",
            "monthlyInterest": "1",
            "applicationFee": "500",
        },
        "purchaseFinance": {"purchasePrice": "100000", "productFee": "2"},
        "refinanceDetails": {
            "expectedGDV": "150000",
            "newLoanLTV": "75",
            "interestRate": "6",
            "brokerFees": "1000",
            "legalFees": "500",
        },
        "monthlyIncome": {"rent1": "1000"},
    }


# =============================================================================
# Exit Strategy Rules
# =============================================================================

class TestExitStrategyRules:

    @pytest.mark.parametrize("requested", [None] + list(ExitStrategy))
    def test_mortgage_always_just_rent(self, requested):
        assert resolve_exit_strategy(PurchaseType.MORTGAGE, requested) == ExitStrategy.JUST_RENT

    def test_bridging_cannot_just_rent(self):
        resolved = resolve_exit_strategy(PurchaseType.BRIDGING, ExitStrategy.JUST_RENT)
        assert resolved == ExitStrategy.REFINANCE_RENT

    @pytest.mark.parametrize("requested", [ExitStrategy.REFINANCE_RENT, ExitStrategy.FLIP_SELL])
    def test_bridging_keeps_other_exits(self, requested):
        assert resolve_exit_strategy(PurchaseType.BRIDGING, requested) == requested

    @pytest.mark.parametrize("requested", [None] + list(ExitStrategy))
    def test_cash_any_exit(self, requested):
        assert resolve_exit_strategy(PurchaseType.CASH, requested) == requested

    def test_mortgage_document_with_flip_is_just_rent(self, calculator, mortgage_deal):
        mortgage_deal["exitStrategy"] = "flip-sell"
        assert calculator.calculate(mortgage_deal).exit_strategy == "just-rent"


# =============================================================================
# Mortgage Purchase
# =============================================================================

class TestMortgagePurchase:

    def test_purchase_costs(self, calculator, mortgage_deal):
        result = calculator.calculate(mortgage_deal)

        assert result.stamp_duty_amount == pytest.approx(6000)
        assert result.total_initial_costs == pytest.approx(7500)
        assert result.total_refurb_costs == pytest.approx(5000)

    def test_finance(self, calculator, mortgage_deal):
        result = calculator.calculate(mortgage_deal)

        assert result.base_loan_amount == pytest.approx(150000)
        assert result.deposit_amount == pytest.approx(50000)
        assert result.product_fee_amount == pytest.approx(1500)
        assert result.final_loan_amount == pytest.approx(150000)
        assert result.effective_ltv_percent == pytest.approx(75)
        assert result.cost_of_finance == pytest.approx(51500)
        assert result.amount_needed_to_purchase == pytest.approx(59000)
        assert result.total_investment == pytest.approx(209000)
        assert result.total_project_costs == pytest.approx(64000)

    def test_monthly_figures(self, calculator, mortgage_deal):
        result = calculator.calculate(mortgage_deal)

        assert result.mortgage_payment == pytest.approx(625)
        assert result.maintenance_amount == pytest.approx(120)
        assert result.net_monthly_income == pytest.approx(425)
        assert result.annual_net_income == pytest.approx(5100)
        assert result.yield_percent == pytest.approx(7.2)
        assert result.net_yield_percent == pytest.approx(2.55)
        assert result.roce_percent == pytest.approx(5100 / 64000 * 100)

    def test_fees_added_to_loan(self, calculator, mortgage_deal):
        mortgage_deal["includeFeesInLoan"] = True
        result = calculator.calculate(mortgage_deal)

        assert result.final_loan_amount == pytest.approx(151500)
        assert result.effective_ltv_percent == pytest.approx(75.75)
        assert result.cost_of_finance == pytest.approx(50000)
        assert result.mortgage_payment == pytest.approx(631.25)


# =============================================================================
# Cash Purchase
# =============================================================================

class TestCashPurchase:

    def test_flip_and_sell(self, calculator):
        result = calculator.calculate({
            "purchaseType": "cash",
            "exitStrategy": "flip-sell",
            "purchaseFinance": {"purchasePrice": "100000"},
            "refurbItems": [{"amount": "20000"}],
            "saleDetails": {
                "expectedSalePrice": "160000",
                "agencyFeePercent": "1.5",
                "legalFees": "1000",
            },
        })

        assert result.cost_of_finance == pytest.approx(100000)
        assert result.mortgage_payment == 0
        assert result.net_sale_proceeds == pytest.approx(156600)
        assert result.total_project_costs == pytest.approx(120000)
        assert result.total_return == pytest.approx(36600)
        assert result.total_return_percent == pytest.approx(30.5)
        assert result.roce_percent == pytest.approx(30.5)

    def test_no_exit_selected(self, calculator):
        result = calculator.calculate({
            "purchaseType": "cash",
            "purchaseFinance": {"purchasePrice": "100000"},
        })
        assert result.exit_strategy is None
        assert result.roce_percent == 0


# =============================================================================
# Bridging Purchase
# =============================================================================

class TestBridgingPurchase:

    def test_bridge_finance(self, calculator, bridging_deal):
        result = calculator.calculate(bridging_deal)

        assert result.gross_loan_amount == pytest.approx(70000)
        assert result.deposit_amount == pytest.approx(30000)
        # Product fee is charged on the gross loan
        assert result.product_fee_amount == pytest.approx(1400)
        assert result.retained_interest_amount == pytest.approx(4200)
        assert result.net_advance == pytest.approx(63900)
        assert result.cost_of_finance == pytest.approx(36100)

    def test_refinance_exit(self, calculator, bridging_deal):
        result = calculator.calculate(bridging_deal)

        assert result.new_loan_amount == pytest.approx(112500)
        assert result.net_refinance_proceeds == pytest.approx(111000)
        assert result.mortgage_payment == pytest.approx(562.5)
        assert result.yield_percent == pytest.approx(8.0)
        assert result.money_left_in_deal == pytest.approx(4900)
        assert result.total_return == pytest.approx(74900)
        assert result.roce_percent == pytest.approx(5250 / 4900 * 100)

    def test_serviced_bridge_has_no_retained_interest(self, calculator, bridging_deal):
        bridging_deal["bridgingDetails"]["loanType"] = "serviced"
        result = calculator.calculate(bridging_deal)

        assert result.retained_interest_amount == 0
        assert result.net_advance == pytest.approx(68100)

    def test_just_rent_becomes_refinance(self, calculator, bridging_deal):
        bridging_deal["exitStrategy"] = "just-rent"
        assert calculator.calculate(bridging_deal).exit_strategy == "refinance-rent"


# =============================================================================
# Funding Sources
# =============================================================================

class TestFunding:

    def test_shortfall_and_interest(self, calculator, mortgage_deal):
        mortgage_deal["fundingSources"] = [
            {"id": 1, "name": "Personal", "amount": "30000", "interestRate": "", "duration": ""},
            {"id": 2, "name": "JV", "amount": "20000", "interestRate": "8", "duration": "12"},
        ]
        result = calculator.calculate(mortgage_deal)

        assert result.total_funding_sources == pytest.approx(50000)
        assert result.funding_gap == pytest.approx(14000)
        assert result.is_funding_shortfall
        assert result.total_funding_interest == pytest.approx(1600)

    def test_fully_funded(self, calculator, mortgage_deal):
        mortgage_deal["fundingSources"] = [{"amount": "70000"}]
        result = calculator.calculate(mortgage_deal)
        assert not result.is_funding_shortfall


# =============================================================================
# Input Handling
# =============================================================================

class TestInputHandling:

    def test_blank_document(self, calculator):
        result = calculator.calculate(default_calculator_data())

        assert result.purchase_type == "mortgage"
        assert result.total_project_costs == 0
        assert result.yield_percent == 0
        assert result.net_yield_percent == 0

    def test_none_document(self, calculator):
        assert calculator.calculate(None).purchase_price == 0

    def test_invalid_purchase_type(self, calculator):
        with pytest.raises(ValueError, match="purchase type"):
            calculator.calculate({"purchaseType": "leaseback"})

    def test_invalid_exit(self, calculator):
        with pytest.raises(ValueError, match="exit strategy"):
            calculator.calculate({"purchaseType": "cash", "exitStrategy": "auction"})

    def test_merge_keeps_defaults_for_missing_fields(self):
        merged = merge_with_defaults({"purchaseFinance": {"purchasePrice": "1"}})

        assert merged["purchaseFinance"]["purchasePrice"] == "1"
        assert merged["purchaseFinance"]["ltv"] == ""
        assert merged["monthlyIncome"]["rent5"] == ""

    def test_null_section_keeps_defaults(self, calculator):
        merged = merge_with_defaults({"purchaseFinance": None, "refurbItems": None})

        assert merged["purchaseFinance"]["ltv"] == ""
        assert len(merged["refurbItems"]) == 1
        assert calculator.calculate({"purchaseFinance": None}).purchase_price == 0

    @pytest.mark.parametrize("document", [
        {"purchaseFinance": "200000"},
        {"monthlyIncome": ["1200"]},
        {"refurbItems": {"amount": "5000"}},
        {"refurbItems": ["5000"]},
        {"fundingSources": [{"amount": "1"}, 7]},
    ])
    def test_malformed_section(self, calculator, document):
        with pytest.raises(ValueError, match="must be"):
            calculator.calculate(document)

    def test_defaults_are_independent_copies(self):
        first = default_calculator_data()
        first["refurbItems"].append({"id": 2})
        assert len(default_calculator_data()["refurbItems"]) == 1

    def test_to_dict_rounds(self, calculator, mortgage_deal):
        mortgage_deal["purchaseFinance"]["interestRate"] = "4.75"
        data = calculator.calculate(mortgage_deal).to_dict()

        assert data["mortgage_payment"] == 593.75
        assert data["is_funding_shortfall"] in (True, False)
