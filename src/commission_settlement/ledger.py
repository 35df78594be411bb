"""Installment ledger.

Each sale pays out over ``INSTALLMENT_COUNT`` installments, tracked
independently through a small state machine::

    Pendente -> Pago | Atraso | Cancelado
    Atraso   -> Pago | Cancelado

``Pago`` and ``Cancelado`` are terminal. Re-applying the current status is
always accepted; re-settling a paid installment recomputes its competence
month from the new paid date. Leaving a terminal state is only possible
through the administrative override.

Ledgers are immutable. Every transition returns a new ledger, so a record
swaps its ledger and the derived overall status in a single assignment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional

from . import log
from .clock import Clock, SystemClock
from .competence import CutoffCalendar, DEFAULT_CUTOFF_CALENDAR
from .constants import INSTALLMENT_COUNT, InstallmentStatus, SaleStatus
from .errors import LedgerInvariantViolation


ALLOWED_TRANSITIONS: Mapping[InstallmentStatus, frozenset[InstallmentStatus]] = MappingProxyType(
    {
        InstallmentStatus.PENDING: frozenset(InstallmentStatus),
        InstallmentStatus.OVERDUE: frozenset(
            {InstallmentStatus.OVERDUE, InstallmentStatus.PAID, InstallmentStatus.CANCELLED}
        ),
        InstallmentStatus.PAID: frozenset({InstallmentStatus.PAID}),
        InstallmentStatus.CANCELLED: frozenset({InstallmentStatus.CANCELLED}),
    }
)


@dataclass(frozen=True)
class InstallmentInfo:
    """State of one installment. Paid date and competence only exist when paid."""

    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    competence_month: Optional[str] = None


def derive_overall_status(statuses) -> SaleStatus:
    """Derive a sale's status from its installment statuses.

    Precedence, evaluated top-down: any ``Atraso`` makes the sale
    ``Atraso``; otherwise all ``Pago`` makes it ``Concluído``; otherwise all
    ``Cancelado`` makes it ``Cancelado``; anything else is ``Em Andamento``.
    A partially cancelled sale therefore stays in progress.

    Args:
        statuses (Iterable[InstallmentStatus]): Status of every installment.

    Returns:
        SaleStatus: Overall status.
    """

    values = list(statuses)
    if any(status is InstallmentStatus.OVERDUE for status in values):
        return SaleStatus.OVERDUE
    if values and all(status is InstallmentStatus.PAID for status in values):
        return SaleStatus.COMPLETED
    if values and all(status is InstallmentStatus.CANCELLED for status in values):
        return SaleStatus.CANCELLED
    return SaleStatus.IN_PROGRESS


def require_installment_number(installment: int) -> None:
    if not 1 <= installment <= INSTALLMENT_COUNT:
        raise LedgerInvariantViolation(
            f"Installment must be between 1 and {INSTALLMENT_COUNT}, got {installment}"
        )


def check_transition(current: InstallmentStatus, target: InstallmentStatus, *, override: bool = False) -> None:
    """Reject transitions the state machine does not allow.

    Raises:
        LedgerInvariantViolation: If ``target`` is not reachable from
            ``current`` and ``override`` is ``False``.
    """

    if override or target in ALLOWED_TRANSITIONS[current]:
        return
    raise LedgerInvariantViolation(
        f"Cannot move installment from '{current.value}' to '{target.value}' without an override"
    )


@dataclass(frozen=True)
class InstallmentLedger:
    """Immutable map of installment number to :class:`InstallmentInfo`."""

    entries: Mapping[int, InstallmentInfo]

    @classmethod
    def initial(cls) -> "InstallmentLedger":
        """Ledger of a freshly registered sale: every installment pending."""
        return cls.from_mapping({number: InstallmentInfo() for number in range(1, INSTALLMENT_COUNT + 1)})

    @classmethod
    def from_mapping(cls, entries: Mapping[int, InstallmentInfo]) -> "InstallmentLedger":
        ordered = {number: entries[number] for number in sorted(entries)}
        return cls(entries=MappingProxyType(ordered))

    def __getitem__(self, installment: int) -> InstallmentInfo:
        require_installment_number(installment)
        return self.entries[installment]

    def __iter__(self) -> Iterator[int]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def items(self):
        return self.entries.items()

    def statuses(self) -> list[InstallmentStatus]:
        return [info.status for info in self.entries.values()]

    @property
    def overall_status(self) -> SaleStatus:
        return derive_overall_status(self.statuses())

    def apply(
        self,
        installment: int,
        status: InstallmentStatus,
        *,
        paid_date: Optional[date] = None,
        calendar: CutoffCalendar = DEFAULT_CUTOFF_CALENDAR,
        clock: Optional[Clock] = None,
        override: bool = False,
    ) -> "InstallmentLedger":
        """Return a new ledger with one installment moved to ``status``.

        Marking an installment ``Pago`` stamps the paid date (the clock's
        current day when ``paid_date`` is omitted) and the competence month
        resolved from it. Any other status clears both fields.

        Args:
            installment (int): Installment number, 1-based.
            status (InstallmentStatus): Target status.
            paid_date (date | None): Payment day, used only for ``Pago``.
            calendar (CutoffCalendar): Resolver for the competence month.
            clock (Clock | None): Source of "today"; defaults to the system
                clock.
            override (bool): Administrative override allowing transitions
                out of terminal states.

        Returns:
            InstallmentLedger: Updated ledger; ``self`` is left untouched.

        Raises:
            LedgerInvariantViolation: If the installment number is out of
                range or the transition is not allowed.
        """

        require_installment_number(installment)
        status = InstallmentStatus(status)
        current = self.entries[installment]
        check_transition(current.status, status, override=override)
        if override and status not in ALLOWED_TRANSITIONS[current.status]:
            log.warning(
                "Administrative override moved installment %d from '%s' to '%s'",
                installment,
                current.status.value,
                status.value,
            )

        if status is InstallmentStatus.PAID:
            settled_on = paid_date or (clock or SystemClock()).today()
            info = InstallmentInfo(
                status=status,
                paid_date=settled_on,
                competence_month=calendar.resolve(settled_on),
            )
        else:
            info = InstallmentInfo(status=status)

        updated = dict(self.entries)
        updated[installment] = info
        return InstallmentLedger.from_mapping(updated)

    def apply_range(
        self,
        start: int,
        end: int,
        status: InstallmentStatus,
        **options: Any,
    ) -> "InstallmentLedger":
        """Apply the same transition to installments ``start`` through ``end``.

        Either every installment in the range moves or none does: the first
        rejected transition raises before any change becomes visible.
        """

        if start > end:
            raise LedgerInvariantViolation(f"Invalid installment range {start}-{end}")
        ledger = self
        for number in range(start, end + 1):
            ledger = ledger.apply(number, status, **options)
        return ledger


def _parse_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_status(value: Any, installment: Any) -> InstallmentStatus:
    try:
        return InstallmentStatus(value)
    except ValueError:
        log.warning(
            "Unknown status %r for installment %s; treating it as pending",
            value,
            installment,
        )
        return InstallmentStatus.PENDING


def normalize_installment_details(raw: Optional[Mapping[Any, Any]]) -> InstallmentLedger:
    """Migrate a stored installment map into an :class:`InstallmentLedger`.

    Stored sales come in three shapes: no installment map at all (oldest
    records), a map of installment number to bare status string, and the
    current map of installment number to ``{"status", "paidDate",
    "competenceMonth"}``. All of them normalize into the structured form;
    installments missing from the map are pending, and paid date or
    competence month left on a non-paid installment are dropped.

    This is the only place that understands legacy shapes. It runs once,
    when a payload is loaded.

    Args:
        raw (Mapping | None): Stored installment map keyed by number (as
            ``int`` or ``str``).

    Returns:
        InstallmentLedger: Normalized ledger with all installments present.
    """

    entries: Dict[int, InstallmentInfo] = {
        number: InstallmentInfo() for number in range(1, INSTALLMENT_COUNT + 1)
    }
    if not raw:
        return InstallmentLedger.from_mapping(entries)

    for key, value in raw.items():
        number = int(key)
        if not 1 <= number <= INSTALLMENT_COUNT:
            log.warning("Dropping out-of-range installment %s during migration", key)
            continue
        if isinstance(value, Mapping):
            status = _parse_status(value.get("status"), key)
            paid_date = _parse_date(value.get("paidDate"))
            competence = value.get("competenceMonth") or None
        else:
            status = _parse_status(value, key)
            paid_date = None
            competence = None

        if status is InstallmentStatus.PAID:
            entries[number] = InstallmentInfo(status, paid_date, competence)
        else:
            entries[number] = InstallmentInfo(status)

    return InstallmentLedger.from_mapping(entries)


def ledger_to_payload(ledger: InstallmentLedger) -> Dict[str, Dict[str, str]]:
    """Serialize a ledger into the stored ``installmentDetails`` shape."""

    payload: Dict[str, Dict[str, str]] = {}
    for number, info in ledger.items():
        entry = {"status": info.status.value}
        if info.paid_date is not None:
            entry["paidDate"] = info.paid_date.isoformat()
        if info.competence_month is not None:
            entry["competenceMonth"] = info.competence_month
        payload[str(number)] = entry
    return payload
