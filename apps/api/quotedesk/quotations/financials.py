"""Line item pricing and quotation totals.

All arithmetic is done in ``Decimal`` quantized to six places and converted to
plain floats only when building the returned documents, so the same inputs
always produce the same totals regardless of summation order.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from quotedesk.quotations.schemas import FinancialSummary, LineItem, TaxDetail

ZERO = Decimal("0")
HUNDRED = Decimal("100")
GST_RATE = Decimal("18")


def _q(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.000001"))


def _d(value: float | int | str | Decimal) -> Decimal:
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


@dataclass(slots=True, frozen=True)
class LineComputation:
    item_total: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal


@dataclass(slots=True, frozen=True)
class FinancialResult:
    line_items: list[LineItem]
    summary: FinancialSummary
    tax_details: list[TaxDetail]


def compute_line(item: LineItem) -> LineComputation:
    item_total = _q(_d(item.unit_price) * _d(item.quantity))
    discount_amount = ZERO
    if item.discount is not None:
        if item.discount.type == "percentage":
            discount_amount = _q(item_total * _d(item.discount.value) / HUNDRED)
        else:
            # fixed discounts are taken as given, even above the item total
            discount_amount = _q(_d(item.discount.value))
    taxable_amount = _q(item_total - discount_amount)
    tax_amount = _q(taxable_amount * _d(item.tax_rate) / HUNDRED)
    return LineComputation(
        item_total=item_total,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        tax_amount=tax_amount,
    )


def tax_label(rate: Decimal) -> str:
    return "GST" if rate == GST_RATE else "TAX"


def _group_by_rate(pairs: Sequence[tuple[LineItem, LineComputation]]) -> list[tuple[Decimal, str, Decimal, Decimal]]:
    groups: dict[Decimal, list] = {}
    for item, computed in pairs:
        rate = _d(item.tax_rate)
        group = groups.get(rate)
        if group is None:
            groups[rate] = [tax_label(rate), computed.taxable_amount, computed.tax_amount]
            continue
        group[1] += computed.taxable_amount
        group[2] += computed.tax_amount
    return [(rate, label, _q(taxable), _q(tax)) for rate, (label, taxable, tax) in groups.items()]


def compute_tax_details(line_items: Sequence[LineItem]) -> list[TaxDetail]:
    pairs = [(item, compute_line(item)) for item in line_items]
    return [
        TaxDetail(tax_type=label, tax_rate=float(rate), taxable_amount=float(taxable), tax_amount=float(tax))
        for rate, label, taxable, tax in _group_by_rate(pairs)
    ]


def compute_financial_summary(line_items: Sequence[LineItem], currency: str) -> FinancialSummary:
    return compute_financials(line_items, currency).summary


def compute_financials(line_items: Sequence[LineItem], currency: str) -> FinancialResult:
    """Price every line and aggregate.

    ``total_tax`` is the sum of the per-rate breakdown so the breakdown always
    reconciles with the summary; ``line_total`` on each returned item is its
    taxable amount.
    """
    pairs = [(item, compute_line(item)) for item in line_items]
    groups = _group_by_rate(pairs)

    subtotal = _q(sum((computed.item_total for _, computed in pairs), start=ZERO))
    total_discount = _q(sum((computed.discount_amount for _, computed in pairs), start=ZERO))
    taxable_amount = _q(subtotal - total_discount)
    total_tax = _q(sum((tax for _, _, _, tax in groups), start=ZERO))
    grand_total = _q(taxable_amount + total_tax)

    priced = [
        item.model_copy(update={"line_total": float(computed.taxable_amount)})
        for item, computed in pairs
    ]
    summary = FinancialSummary(
        subtotal=float(subtotal),
        total_discount=float(total_discount),
        taxable_amount=float(taxable_amount),
        total_tax=float(total_tax),
        grand_total=float(grand_total),
        currency=currency,
    )
    tax_details = [
        TaxDetail(tax_type=label, tax_rate=float(rate), taxable_amount=float(taxable), tax_amount=float(tax))
        for rate, label, taxable, tax in groups
    ]
    return FinancialResult(line_items=priced, summary=summary, tax_details=tax_details)
