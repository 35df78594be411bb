"""Commission calculator.

Turns a credit value and a rate table into per-installment, per-role
commission values. Every function here is pure: no I/O, no clock, no shared
state, so callers may invoke them speculatively (for example to preview a
sale while it is being typed).

The calculator is deliberately non-validating. A credit value that is zero
or negative produces an all-zero breakdown instead of an error; rejecting
such sales is the job of the registration step.

Amounts keep full :class:`~decimal.Decimal` precision. Use
:func:`quantize_money` only when presenting values.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from .rates import DEFAULT_RATE_TABLE, RateRule, RateTable, ZERO


HUNDRED = Decimal("100")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class RoleShare:
    """Rate and per-installment value owed to one role."""

    rate: Decimal
    per_installment: Decimal


@dataclass(frozen=True)
class BreakdownRow:
    """Commission owed for one contiguous, rule-defined installment range."""

    start_installment: int
    end_installment: int
    installment_count: int
    consultant: RoleShare
    manager: RoleShare
    angel: RoleShare

    @property
    def label(self) -> str:
        if self.start_installment == self.end_installment:
            return f"Installment {self.start_installment}"
        return f"Installments {self.start_installment}-{self.end_installment}"

    @property
    def per_installment_total(self) -> Decimal:
        return (
            self.consultant.per_installment
            + self.manager.per_installment
            + self.angel.per_installment
        )


@dataclass(frozen=True)
class RoleTotals:
    """Commission totals per role across the whole schedule."""

    consultant: Decimal = ZERO
    manager: Decimal = ZERO
    angel: Decimal = ZERO

    @property
    def grand_total(self) -> Decimal:
        return self.consultant + self.manager + self.angel


@dataclass(frozen=True)
class Breakdown:
    """Result of :func:`calculate_breakdown`."""

    credit_value: Decimal
    has_angel: bool
    uses_custom_rules: bool
    rows: tuple[BreakdownRow, ...]
    totals: RoleTotals

    @property
    def grand_total(self) -> Decimal:
        return self.totals.grand_total


@dataclass(frozen=True)
class InstallmentValues:
    """Net commission owed to each role for a single installment."""

    consultant: Decimal = ZERO
    manager: Decimal = ZERO
    angel: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.consultant + self.manager + self.angel


def percent_of(credit_value: Decimal, rate: Decimal) -> Decimal:
    """Return ``rate`` percent of ``credit_value`` without rounding."""
    return credit_value * (rate / HUNDRED)


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents (half-up) for presentation."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _effective_credit(credit_value: Decimal) -> Decimal:
    return credit_value if credit_value > ZERO else ZERO


def _row_from_rule(credit: Decimal, rule: RateRule, has_angel: bool) -> BreakdownRow:
    angel_rate = rule.angel_rate if has_angel else ZERO
    return BreakdownRow(
        start_installment=rule.start_installment,
        end_installment=rule.end_installment,
        installment_count=rule.installment_count,
        consultant=RoleShare(rule.consultant_rate, percent_of(credit, rule.consultant_rate)),
        manager=RoleShare(rule.manager_rate, percent_of(credit, rule.manager_rate)),
        angel=RoleShare(angel_rate, percent_of(credit, angel_rate)),
    )


def calculate_breakdown(
    credit_value: Decimal,
    has_angel: bool,
    rules: Optional[Sequence[RateRule]] = None,
    *,
    rate_table: RateTable = DEFAULT_RATE_TABLE,
) -> Breakdown:
    """Compute the per-range and total commission for a sale.

    In default mode (``rules`` empty or ``None``) the breakdown holds three
    rows taken from ``rate_table``: installments 1-10, 11-13 and 15. In
    custom mode every supplied rule produces its own row and contributes
    ``per_installment * installment_count`` to the totals independently, so
    overlapping rules are summed and the default table is ignored.

    Args:
        credit_value (Decimal): Credit amount of the sale. Values that are
            zero or negative yield zero for every monetary field.
        has_angel (bool): Whether an angel participates. Switches the
            manager's default coefficients and zeroes angel rates otherwise.
        rules (Sequence[RateRule] | None): Custom rules replacing the
            default table.
        rate_table (RateTable): Default coefficients, injectable so sessions
            can load their own configuration.

    Returns:
        Breakdown: Rows in rule order and the per-role totals, unrounded.
    """

    credit = _effective_credit(credit_value)
    custom = bool(rules)
    source = tuple(rules) if custom else rate_table.rules_for(has_angel)
    rows = tuple(_row_from_rule(credit, rule, has_angel) for rule in source)

    consultant = manager = angel = ZERO
    for row in rows:
        consultant += row.consultant.per_installment * row.installment_count
        manager += row.manager.per_installment * row.installment_count
        angel += row.angel.per_installment * row.installment_count

    return Breakdown(
        credit_value=credit_value,
        has_angel=has_angel,
        uses_custom_rules=custom,
        rows=rows,
        totals=RoleTotals(consultant=consultant, manager=manager, angel=angel),
    )


def match_rule(rules: Sequence[RateRule], installment: int) -> Optional[RateRule]:
    """Return the first rule covering ``installment``, or ``None`` for a gap."""
    for rule in rules:
        if rule.covers(installment):
            return rule
    return None


def tax_multiplier(tax_rate_percent: Decimal) -> Decimal:
    return Decimal("1") - (tax_rate_percent or ZERO) / HUNDRED


def installment_values(
    credit_value: Decimal,
    installment: int,
    *,
    has_angel: bool,
    rules: Optional[Sequence[RateRule]] = None,
    tax_rate_percent: Decimal = ZERO,
    rate_table: RateTable = DEFAULT_RATE_TABLE,
) -> InstallmentValues:
    """Compute what each role earns for one installment, net of tax.

    Unlike :func:`calculate_breakdown`, overlapping custom rules are not
    summed here: the first rule whose range covers ``installment`` wins and
    an installment no rule covers earns nothing.

    Args:
        credit_value (Decimal): Credit amount of the sale.
        installment (int): Installment number, 1-based.
        has_angel (bool): Whether an angel participates.
        rules (Sequence[RateRule] | None): Custom rules, or ``None`` for the
            default table.
        tax_rate_percent (Decimal): Tax withheld from every commission, as a
            percentage.
        rate_table (RateTable): Default coefficients.

    Returns:
        InstallmentValues: Unrounded net values per role.
    """

    source = tuple(rules) if rules else rate_table.rules_for(has_angel)
    rule = match_rule(source, installment)
    if rule is None:
        return InstallmentValues()

    credit = _effective_credit(credit_value)
    multiplier = tax_multiplier(tax_rate_percent)
    angel_rate = rule.angel_rate if has_angel else ZERO
    return InstallmentValues(
        consultant=percent_of(credit, rule.consultant_rate) * multiplier,
        manager=percent_of(credit, rule.manager_rate) * multiplier,
        angel=percent_of(credit, angel_rate) * multiplier,
    )


def net_value(grand_total: Decimal, tax_rate_percent: Decimal) -> Decimal:
    """Apply the tax withholding to a gross commission total."""
    return grand_total * tax_multiplier(tax_rate_percent)
