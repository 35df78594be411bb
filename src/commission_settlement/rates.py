"""Commission rate tables.

Rates are expressed as percentages of the sale's credit value: a coefficient
of ``0.1288`` pays 0.1288 % of the credit per installment. The default table
pays three tiers (installments 1-10, 11-13 and 15); installment 14 is never
paid to anyone. Sales may replace the default table with an ordered list of
:class:`RateRule` entries.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from .constants import INSTALLMENT_COUNT


ZERO = Decimal("0")


@dataclass(frozen=True)
class RateRule:
    """Percentages paid to each role for an inclusive installment range."""

    start_installment: int
    end_installment: int
    consultant_rate: Decimal
    manager_rate: Decimal
    angel_rate: Decimal = ZERO

    @property
    def installment_count(self) -> int:
        """Number of installments covered; inverted ranges cover none."""
        return max(0, self.end_installment - self.start_installment + 1)

    def covers(self, installment: int) -> bool:
        return self.start_installment <= installment <= self.end_installment


@dataclass(frozen=True)
class TierRates:
    """Coefficients for one tier of the default table."""

    consultant: Decimal
    manager_without_angel: Decimal
    manager_with_angel: Decimal
    angel: Decimal

    def manager(self, has_angel: bool) -> Decimal:
        return self.manager_with_angel if has_angel else self.manager_without_angel


@dataclass(frozen=True)
class RateTable:
    """Built-in three-tier coefficients applied when a sale has no custom rules.

    The manager's coefficients switch between two tables depending on
    whether an angel participates in the sale, and the angel's coefficients
    only apply when one does. The final tier (installment 15) pays the
    consultant alone.
    """

    first_tier: TierRates = TierRates(
        consultant=Decimal("0.1288"),
        manager_without_angel=Decimal("0.0322"),
        manager_with_angel=Decimal("0.0194"),
        angel=Decimal("0.0128"),
    )
    second_tier: TierRates = TierRates(
        consultant=Decimal("0.2374"),
        manager_without_angel=Decimal("0.0593"),
        manager_with_angel=Decimal("0.0356"),
        angel=Decimal("0.0237"),
    )
    final_consultant_rate: Decimal = Decimal("0.30")

    def rules_for(self, has_angel: bool) -> tuple[RateRule, ...]:
        """Expand the table into the equivalent list of :class:`RateRule` entries.

        Args:
            has_angel (bool): Whether the sale includes an angel participant.

        Returns:
            tuple[RateRule, ...]: Rules for installments 1-10, 11-13 and 15,
                in that order. Angel rates are zero when ``has_angel`` is
                ``False``.
        """

        def _tier(start: int, end: int, tier: TierRates) -> RateRule:
            return RateRule(
                start_installment=start,
                end_installment=end,
                consultant_rate=tier.consultant,
                manager_rate=tier.manager(has_angel),
                angel_rate=tier.angel if has_angel else ZERO,
            )

        return (
            _tier(1, 10, self.first_tier),
            _tier(11, 13, self.second_tier),
            RateRule(
                start_installment=INSTALLMENT_COUNT,
                end_installment=INSTALLMENT_COUNT,
                consultant_rate=self.final_consultant_rate,
                manager_rate=ZERO,
                angel_rate=ZERO,
            ),
        )


DEFAULT_RATE_TABLE = RateTable()


# Keys accepted in the optional ``[Rates]`` section of ``config.ini``.
RATE_OVERRIDE_KEYS: Mapping[str, tuple[str, str]] = {
    "consultanttier1": ("first_tier", "consultant"),
    "managertier1": ("first_tier", "manager_without_angel"),
    "managerwithangeltier1": ("first_tier", "manager_with_angel"),
    "angeltier1": ("first_tier", "angel"),
    "consultanttier2": ("second_tier", "consultant"),
    "managertier2": ("second_tier", "manager_without_angel"),
    "managerwithangeltier2": ("second_tier", "manager_with_angel"),
    "angeltier2": ("second_tier", "angel"),
}


def build_rate_table(overrides: Optional[Mapping[str, str]] = None) -> RateTable:
    """Create a :class:`RateTable`, replacing selected default coefficients.

    Args:
        overrides (Mapping[str, str] | None): Case-insensitive option names
            from ``RATE_OVERRIDE_KEYS`` (plus ``FinalConsultant``) mapped to
            decimal strings.

    Returns:
        RateTable: The default table when no overrides are given, otherwise a
            new table with the requested coefficients replaced.

    Raises:
        KeyError: If an override names an unknown coefficient.
    """

    if not overrides:
        return DEFAULT_RATE_TABLE

    tiers: dict[str, dict[str, Any]] = {
        "first_tier": asdict(DEFAULT_RATE_TABLE.first_tier),
        "second_tier": asdict(DEFAULT_RATE_TABLE.second_tier),
    }
    final_rate = DEFAULT_RATE_TABLE.final_consultant_rate
    for raw_key, raw_value in overrides.items():
        key = raw_key.lower()
        value = Decimal(str(raw_value).replace(",", "."))
        if key == "finalconsultant":
            final_rate = value
            continue
        if key not in RATE_OVERRIDE_KEYS:
            raise KeyError(f"Unknown rate coefficient: {raw_key}")
        tier_name, field_name = RATE_OVERRIDE_KEYS[key]
        tiers[tier_name][field_name] = value

    return RateTable(
        first_tier=TierRates(**tiers["first_tier"]),
        second_tier=TierRates(**tiers["second_tier"]),
        final_consultant_rate=final_rate,
    )


def parse_rule(text: str) -> RateRule:
    """Parse ``START:END:CONSULTANT:MANAGER[:ANGEL]`` into a :class:`RateRule`.

    Decimal commas are accepted so values can be typed the way the sales team
    writes them (``0,1288``).

    Raises:
        ValueError: If the text does not carry four or five fields.
    """

    parts = [part.strip() for part in text.split(":")]
    if len(parts) not in (4, 5):
        raise ValueError(f"Invalid rate rule '{text}': expected START:END:CONS:MAN[:ANGEL]")
    rates = [Decimal(part.replace(",", ".")) for part in parts[2:]]
    angel = rates[2] if len(rates) == 3 else ZERO
    return RateRule(
        start_installment=int(parts[0]),
        end_installment=int(parts[1]),
        consultant_rate=rates[0],
        manager_rate=rates[1],
        angel_rate=angel,
    )


def normalize_rules(rules: Optional[Sequence[RateRule]]) -> Optional[tuple[RateRule, ...]]:
    """Return custom rules as a tuple, or ``None`` when no custom rules apply."""
    if not rules:
        return None
    return tuple(rules)
