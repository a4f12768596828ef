"""
Investment Calculator

Evaluates the calculator document saved for a property: purchase costs,
finance (cash, mortgage or bridging), monthly income and expenses, and the
chosen exit (just rent, refinance and rent, or flip and sell).

The document keeps values as entered in the dashboard (camelCase keys,
numbers as strings, percentages as whole numbers), so every numeric field
is read through parse_amount and blanks count as zero.
"""

import copy
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from utils.formatting import parse_amount


class PurchaseType(Enum):
    CASH = "cash"
    MORTGAGE = "mortgage"
    BRIDGING = "bridging"

    @classmethod
    def from_string(cls, value: str) -> Optional["PurchaseType"]:
        """Convert string to PurchaseType, case-insensitive."""
        if not value:
            return None
        normalised = value.lower().strip()
        for member in cls:
            if member.value == normalised:
                return member
        return None


class ExitStrategy(Enum):
    JUST_RENT = "just-rent"
    REFINANCE_RENT = "refinance-rent"
    FLIP_SELL = "flip-sell"

    @classmethod
    def from_string(cls, value: Optional[str]) -> Optional["ExitStrategy"]:
        """Convert string to ExitStrategy, case-insensitive."""
        if not value:
            return None
        normalised = value.lower().strip()
        for member in cls:
            if member.value == normalised:
                return member
        return None


_DEFAULT_CALCULATOR_DATA: Dict[str, Any] = {
    "purchaseType": "mortgage",
    "includeFeesInLoan": False,
    "bridgingDetails": {
        "loanType": "serviced",
        "duration": "",
        "grossLoanPercent": "",
        "grossLoanAmount": "",
        "monthlyInterest": "",
        "applicationFee": "",
    },
    "exitStrategy": None,
    "refinanceDetails": {
        "expectedGDV": "",
        "newLoanLTV": "",
        "newLoanAmount": "",
        "interestRate": "",
        "brokerFees": "",
        "legalFees": "",
    },
    "saleDetails": {
        "expectedSalePrice": "",
        "agencyFeePercent": "",
        "agencyFeeAmount": "",
        "legalFees": "",
    },
    "refurbItems": [{"id": 1, "description": "", "amount": ""}],
    "fundingSources": [
        {"id": 1, "name": "Personal", "amount": "", "interestRate": "", "duration": ""}
    ],
    "initialCosts": {
        "refurbRepair": "",
        "legal": "",
        "stampDutyPercent": "",
        "stampDutyAmount": "",
        "ila": "",
        "brokerFees": "",
        "auctionFees": "",
        "findersFee": "",
    },
    "purchaseFinance": {
        "purchasePrice": "",
        "deposit": "",
        "ltv": "",
        "loanAmount": "",
        "productFee": "",
        "productFeeAmount": "",
        "interestRate": "",
    },
    "monthlyIncome": {
        "rent1": "",
        "rent2": "",
        "rent3": "",
        "rent4": "",
        "rent5": "",
    },
    "monthlyExpenses": {
        "serviceCharge": "",
        "groundRent": "",
        "maintenancePercent": "",
        "maintenanceAmount": "",
        "managementPercent": "",
        "managementAmount": "",
        "insurance": "",
        "mortgagePayment": "",
    },
    "propertyValue": "",
}


def default_calculator_data() -> Dict[str, Any]:
    """A fresh calculator document with every field blank."""
    return copy.deepcopy(_DEFAULT_CALCULATOR_DATA)


def merge_with_defaults(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Fill sections missing from a stored document with their defaults.

    Nested sections are merged one level deep; lists are taken as-is.
    A null section keeps its default.

    Raises:
        ValueError: If a section or list entry is not an object
    """
    merged = default_calculator_data()
    for key, value in (data or {}).items():
        default = merged.get(key)
        if value is None and default is not None:
            continue
        if isinstance(default, dict):
            if not isinstance(value, dict):
                raise ValueError(f"{key} must be an object")
            default.update(value)
        elif isinstance(default, list):
            if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
                raise ValueError(f"{key} must be a list of objects")
            merged[key] = value
        else:
            merged[key] = value
    return merged


def resolve_exit_strategy(
    purchase_type: PurchaseType,
    exit_strategy: Optional[ExitStrategy],
) -> Optional[ExitStrategy]:
    """
    Apply the exit rules for a purchase type.

    - mortgage purchases can only exit by just rent
    - bridging cannot exit by just rent (it becomes refinance and rent)
    - cash may use any exit
    """
    if purchase_type == PurchaseType.MORTGAGE:
        return ExitStrategy.JUST_RENT
    if purchase_type == PurchaseType.BRIDGING and exit_strategy == ExitStrategy.JUST_RENT:
        return ExitStrategy.REFINANCE_RENT
    return exit_strategy


def _pct(value: Any) -> float:
    return parse_amount(value) / 100


@dataclass
class CalculatorResult:
    """
    Derived figures for a calculator document.

    Monetary values are in pounds; *_percent values are whole percentages.
    """
    purchase_type: str
    exit_strategy: Optional[str]

    # Purchase
    purchase_price: float
    stamp_duty_amount: float
    other_initial_costs: float
    total_initial_costs: float
    total_refurb_costs: float

    # Finance
    base_loan_amount: float
    deposit_amount: float
    product_fee_amount: float
    final_loan_amount: float
    effective_ltv_percent: float
    gross_loan_amount: float
    retained_interest_amount: float
    net_advance: float
    cost_of_finance: float
    amount_needed_to_purchase: float
    total_investment: float
    total_project_costs: float
    total_funding_sources: float
    funding_gap: float
    total_funding_interest: float

    # Monthly
    total_monthly_income: float
    maintenance_amount: float
    management_amount: float
    mortgage_payment: float
    total_monthly_expenses: float
    net_monthly_income: float
    annual_net_income: float

    # Returns
    yield_percent: float
    net_yield_percent: float
    net_sale_proceeds: float
    new_loan_amount: float
    net_refinance_proceeds: float
    money_left_in_deal: float
    total_return: float
    total_return_percent: float
    roce_percent: float

    @property
    def is_funding_shortfall(self) -> bool:
        return self.funding_gap > 0

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in asdict(self).items():
            result[key] = round(value, 2) if isinstance(value, float) else value
        result["is_funding_shortfall"] = self.is_funding_shortfall
        return result


class InvestmentCalculator:
    """
    Evaluates calculator documents.

    Stateless; one instance can serve every request.
    """

    def calculate(self, data: Optional[Dict[str, Any]]) -> CalculatorResult:
        """
        Evaluate a calculator document.

        Raises:
            ValueError: On an unknown purchase type or exit strategy
        """
        doc = merge_with_defaults(data)

        purchase_type = PurchaseType.from_string(doc.get("purchaseType") or "mortgage")
        if purchase_type is None:
            raise ValueError(f"Invalid purchase type: {doc.get('purchaseType')}")
        requested_exit = doc.get("exitStrategy")
        exit_strategy = ExitStrategy.from_string(requested_exit)
        if requested_exit and exit_strategy is None:
            raise ValueError(f"Invalid exit strategy: {requested_exit}")
        exit_strategy = resolve_exit_strategy(purchase_type, exit_strategy)

        is_cash = purchase_type == PurchaseType.CASH
        is_mortgage = purchase_type == PurchaseType.MORTGAGE
        is_bridging = purchase_type == PurchaseType.BRIDGING
        include_fees = bool(doc.get("includeFeesInLoan"))

        finance = doc["purchaseFinance"]
        initial = doc["initialCosts"]
        bridging = doc["bridgingDetails"]
        income = doc["monthlyIncome"]
        expenses = doc["monthlyExpenses"]
        refinance = doc["refinanceDetails"]
        sale = doc["saleDetails"]

        # =====================================================================
        # Purchase costs
        # =====================================================================
        price = parse_amount(finance.get("purchasePrice"))
        stamp_duty = price * _pct(initial.get("stampDutyPercent")) if price > 0 else 0.0
        other_initial = sum(
            parse_amount(initial.get(key))
            for key in ("legal", "refurbRepair", "ila", "brokerFees", "auctionFees", "findersFee")
        )
        total_initial = other_initial + stamp_duty
        total_refurb = sum(
            parse_amount(item.get("amount")) for item in doc.get("refurbItems") or []
        )

        # =====================================================================
        # Finance
        # =====================================================================
        ltv = _pct(finance.get("ltv"))
        product_fee_rate = _pct(finance.get("productFee"))

        base_loan = price * ltv if is_mortgage and price > 0 and ltv >= 0 else 0.0
        gross_loan_rate = _pct(bridging.get("grossLoanPercent"))
        gross_loan = price * gross_loan_rate if is_bridging and price > 0 and gross_loan_rate > 0 else 0.0

        if is_mortgage and price > 0 and ltv >= 0:
            deposit = price - base_loan
        elif is_bridging and price > 0 and gross_loan_rate > 0:
            deposit = price - gross_loan
        else:
            deposit = 0.0

        if is_bridging and gross_loan > 0:
            product_fee = gross_loan * product_fee_rate
        else:
            product_fee = base_loan * product_fee_rate

        monthly_interest = _pct(bridging.get("monthlyInterest"))
        application_fee = parse_amount(bridging.get("applicationFee"))
        duration_months = parse_amount(bridging.get("duration"))

        retained_interest = 0.0
        if is_bridging and bridging.get("loanType") == "retained" and duration_months > 0:
            retained_interest = gross_loan * monthly_interest * duration_months

        net_advance = 0.0
        if is_bridging and gross_loan > 0:
            net_advance = gross_loan - product_fee - application_fee - retained_interest

        if is_bridging:
            final_loan = gross_loan
        else:
            final_loan = base_loan + (product_fee if include_fees else 0.0)
        effective_ltv = final_loan / price * 100 if price > 0 else 0.0

        interest_rate = _pct(finance.get("interestRate"))
        purchase_mortgage_payment = final_loan * interest_rate / 12 if is_mortgage else 0.0

        upfront_product_fee = 0.0 if include_fees else product_fee
        if is_cash:
            cost_of_finance = price
        elif is_bridging:
            cost_of_finance = price - net_advance
        else:
            cost_of_finance = deposit + upfront_product_fee

        amount_needed = total_initial + cost_of_finance
        total_investment = total_initial + price + upfront_product_fee
        total_project_costs = cost_of_finance + total_initial + total_refurb

        funding_sources = doc.get("fundingSources") or []
        total_funding = sum(parse_amount(s.get("amount")) for s in funding_sources)
        funding_gap = total_project_costs - total_funding
        funding_interest = 0.0
        for source in funding_sources:
            amount = parse_amount(source.get("amount"))
            rate = _pct(source.get("interestRate"))
            duration = parse_amount(source.get("duration"))
            if amount > 0 and rate > 0 and duration > 0:
                funding_interest += amount * rate * duration / 12

        # =====================================================================
        # Monthly income and expenses
        # =====================================================================
        total_income = sum(parse_amount(v) for v in income.values())
        maintenance = total_income * _pct(expenses.get("maintenancePercent"))
        management = total_income * _pct(expenses.get("managementPercent"))
        other_expenses = sum(
            parse_amount(expenses.get(key))
            for key in ("serviceCharge", "groundRent", "insurance")
        )

        # Net yield is measured against the purchase finance, before any refinance
        purchase_net_monthly = (
            total_income - other_expenses - maintenance - management - purchase_mortgage_payment
        )
        net_yield = purchase_net_monthly * 12 / price * 100 if price > 0 else 0.0

        # =====================================================================
        # Exit
        # =====================================================================
        gdv = parse_amount(refinance.get("expectedGDV"))
        new_loan = gdv * _pct(refinance.get("newLoanLTV"))
        refinance_costs = parse_amount(refinance.get("brokerFees")) + parse_amount(
            refinance.get("legalFees")
        )
        net_refinance = new_loan - refinance_costs

        sale_price = parse_amount(sale.get("expectedSalePrice"))
        agency_fee = sale_price * _pct(sale.get("agencyFeePercent"))
        net_sale = sale_price - agency_fee - parse_amount(sale.get("legalFees"))

        refinancing = exit_strategy == ExitStrategy.REFINANCE_RENT
        if refinancing and new_loan > 0:
            mortgage_payment = new_loan * _pct(refinance.get("interestRate")) / 12
        else:
            mortgage_payment = purchase_mortgage_payment

        total_expenses = other_expenses + maintenance + management + mortgage_payment
        net_monthly = total_income - total_expenses
        annual_net = net_monthly * 12

        yield_base = gdv if refinancing and gdv > 0 else price
        gross_yield = total_income * 12 / yield_base * 100 if yield_base > 0 else 0.0

        if exit_strategy == ExitStrategy.FLIP_SELL:
            total_return = net_sale - total_project_costs
        elif refinancing:
            total_return = net_refinance - total_project_costs
        else:
            total_return = 0.0
        total_return_percent = (
            total_return / total_project_costs * 100 if total_project_costs > 0 else 0.0
        )

        if is_cash:
            finance_repayment = 0.0
        elif is_bridging:
            finance_repayment = gross_loan
        else:
            finance_repayment = final_loan
        money_left = (
            new_loan - finance_repayment - refinance_costs - total_project_costs - funding_interest
        )

        roce = 0.0
        if exit_strategy == ExitStrategy.JUST_RENT and total_project_costs > 0:
            roce = annual_net / total_project_costs * 100
        elif exit_strategy == ExitStrategy.FLIP_SELL and total_project_costs > 0:
            roce = total_return / total_project_costs * 100
        elif refinancing and money_left != 0:
            roce = annual_net / abs(money_left) * 100

        return CalculatorResult(
            purchase_type=purchase_type.value,
            exit_strategy=exit_strategy.value if exit_strategy else None,
            purchase_price=price,
            stamp_duty_amount=stamp_duty,
            other_initial_costs=other_initial,
            total_initial_costs=total_initial,
            total_refurb_costs=total_refurb,
            base_loan_amount=base_loan,
            deposit_amount=deposit,
            product_fee_amount=product_fee,
            final_loan_amount=final_loan,
            effective_ltv_percent=effective_ltv,
            gross_loan_amount=gross_loan,
            retained_interest_amount=retained_interest,
            net_advance=net_advance,
            cost_of_finance=cost_of_finance,
            amount_needed_to_purchase=amount_needed,
            total_investment=total_investment,
            total_project_costs=total_project_costs,
            total_funding_sources=total_funding,
            funding_gap=funding_gap,
            total_funding_interest=funding_interest,
            total_monthly_income=total_income,
            maintenance_amount=maintenance,
            management_amount=management,
            mortgage_payment=mortgage_payment,
            total_monthly_expenses=total_expenses,
            net_monthly_income=net_monthly,
            annual_net_income=annual_net,
            yield_percent=gross_yield,
            net_yield_percent=net_yield,
            net_sale_proceeds=net_sale,
            new_loan_amount=new_loan,
            net_refinance_proceeds=net_refinance,
            money_left_in_deal=money_left,
            total_return=total_return,
            total_return_percent=total_return_percent,
            roce_percent=roce,
        )
