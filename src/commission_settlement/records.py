"""Settlement records: the sale aggregate and its stored payload shape.

A :class:`SettlementRecord` combines a sale's identifying data, the
commission totals computed at registration, and its
:class:`~commission_settlement.ledger.InstallmentLedger`. Records are
immutable; every change produces a new record through
:func:`dataclasses.replace`.

The payload helpers translate records to and from the JSON document kept by
the remote store (camelCase keys, decimals as strings, installment map keyed
by number).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .calculator import Breakdown, calculate_breakdown, net_value
from .constants import INSTALLMENT_COUNT, LOCAL_ID_PREFIX, NO_MANAGER, SaleStatus, SaleType
from .errors import ValidationGap
from .ledger import InstallmentLedger, ledger_to_payload, normalize_installment_details
from .rates import DEFAULT_RATE_TABLE, RateRule, RateTable, ZERO, normalize_rules


@dataclass(frozen=True)
class SaleCommand:
    """User intent for registering a new sale."""

    client_name: str
    sale_type: SaleType
    group: str
    quota: str
    pv: str
    credit_value: Optional[Decimal]
    consultant_name: str
    sale_date: Optional[date]
    manager_name: Optional[str] = None
    angel_name: Optional[str] = None
    tax_rate_percent: Decimal = Decimal("6")
    custom_rules: Optional[Sequence[RateRule]] = None

    @property
    def has_angel(self) -> bool:
        return bool(self.angel_name and self.angel_name.strip())


@dataclass(frozen=True)
class SettlementRecord:
    """One commissionable sale with its 15-installment payout schedule."""

    sale_id: str
    local_id: str
    remote_id: Optional[str]
    sale_date: date
    client_name: str
    sale_type: SaleType
    group: str
    quota: str
    pv: str
    credit_value: Decimal
    tax_rate_percent: Decimal
    consultant_name: str
    manager_name: str
    angel_name: Optional[str]
    custom_rules: Optional[tuple[RateRule, ...]]
    ledger: InstallmentLedger
    consultant_value: Decimal
    manager_value: Decimal
    angel_value: Decimal
    net_value: Decimal
    created_at: datetime

    @property
    def has_angel(self) -> bool:
        return bool(self.angel_name)

    @property
    def overall_status(self) -> SaleStatus:
        return self.ledger.overall_status

    @property
    def is_pending(self) -> bool:
        """``True`` while the remote store has not confirmed the record."""
        return is_placeholder_id(self.remote_id)

    @property
    def gross_total(self) -> Decimal:
        return self.consultant_value + self.manager_value + self.angel_value


def placeholder_remote_id(local_id: str) -> str:
    return f"{LOCAL_ID_PREFIX}{local_id}"


def is_placeholder_id(remote_id: Optional[str]) -> bool:
    return remote_id is None or remote_id.startswith(LOCAL_ID_PREFIX)


def generate_local_id() -> str:
    return uuid.uuid4().hex


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate_sale_command(command: SaleCommand) -> None:
    """Reject a sale that lacks any required field.

    Required: credit value (strictly positive), client name, sale date,
    point of sale, group, quota and consultant. An angel flag needs an angel
    name, which :attr:`SaleCommand.has_angel` already implies.

    Raises:
        ValidationGap: Listing every missing field.
    """

    missing: List[str] = []
    if command.credit_value is None or command.credit_value <= ZERO:
        missing.append("credit_value")
    if _blank(command.client_name):
        missing.append("client_name")
    if command.sale_date is None:
        missing.append("sale_date")
    if _blank(command.pv):
        missing.append("pv")
    if _blank(command.group):
        missing.append("group")
    if _blank(command.quota):
        missing.append("quota")
    if _blank(command.consultant_name):
        missing.append("consultant_name")
    if missing:
        raise ValidationGap(missing)


def build_settlement_record(
    command: SaleCommand,
    *,
    sale_id: str,
    local_id: str,
    created_at: datetime,
    rate_table: RateTable = DEFAULT_RATE_TABLE,
) -> tuple[SettlementRecord, Breakdown]:
    """Materialize a validated :class:`SaleCommand` into a pending record.

    The commission totals are computed once here and stored on the record.
    The record starts with every installment pending and a placeholder
    remote id derived from ``local_id``.

    Returns:
        tuple[SettlementRecord, Breakdown]: The new record and the breakdown
            its totals came from.
    """

    rules = normalize_rules(command.custom_rules)
    angel_name = command.angel_name.strip() if command.has_angel else None
    breakdown = calculate_breakdown(
        command.credit_value,
        angel_name is not None,
        rules,
        rate_table=rate_table,
    )
    record = SettlementRecord(
        sale_id=sale_id,
        local_id=local_id,
        remote_id=placeholder_remote_id(local_id),
        sale_date=command.sale_date,
        client_name=command.client_name.strip(),
        sale_type=SaleType(command.sale_type),
        group=command.group.strip(),
        quota=command.quota.strip(),
        pv=command.pv.strip(),
        credit_value=command.credit_value,
        tax_rate_percent=command.tax_rate_percent or ZERO,
        consultant_name=command.consultant_name.strip(),
        manager_name=(command.manager_name or "").strip() or NO_MANAGER,
        angel_name=angel_name,
        custom_rules=rules,
        ledger=InstallmentLedger.initial(),
        consultant_value=breakdown.totals.consultant,
        manager_value=breakdown.totals.manager,
        angel_value=breakdown.totals.angel,
        net_value=net_value(breakdown.grand_total, command.tax_rate_percent or ZERO),
        created_at=created_at,
    )
    return record, breakdown


def recompute_commission(record: SettlementRecord, *, rate_table: RateTable = DEFAULT_RATE_TABLE) -> SettlementRecord:
    """Refresh the stored totals after a corrective update to the sale terms."""

    breakdown = calculate_breakdown(
        record.credit_value,
        record.has_angel,
        record.custom_rules,
        rate_table=rate_table,
    )
    return replace(
        record,
        consultant_value=breakdown.totals.consultant,
        manager_value=breakdown.totals.manager,
        angel_value=breakdown.totals.angel,
        net_value=net_value(breakdown.grand_total, record.tax_rate_percent),
    )


def rule_to_payload(rule: RateRule) -> Dict[str, Any]:
    return {
        "startInstallment": rule.start_installment,
        "endInstallment": rule.end_installment,
        "consultantRate": str(rule.consultant_rate),
        "managerRate": str(rule.manager_rate),
        "angelRate": str(rule.angel_rate),
    }


def rule_from_payload(data: Mapping[str, Any]) -> RateRule:
    return RateRule(
        start_installment=int(data["startInstallment"]),
        end_installment=int(data["endInstallment"]),
        consultant_rate=_to_decimal(data.get("consultantRate")),
        manager_rate=_to_decimal(data.get("managerRate")),
        angel_rate=_to_decimal(data.get("angelRate")),
    )


def record_to_payload(record: SettlementRecord) -> Dict[str, Any]:
    """Serialize a record into the JSON document sent to the remote store.

    The remote id is not part of the document; it lives beside it in the
    store. ``localId`` is embedded so the store can deduplicate retries.
    """

    payload: Dict[str, Any] = {
        "id": record.sale_id,
        "localId": record.local_id,
        "date": record.sale_date.isoformat(),
        "clientName": record.client_name,
        "type": record.sale_type.value,
        "group": record.group,
        "quota": record.quota,
        "pv": record.pv,
        "consultant": record.consultant_name,
        "managerName": record.manager_name,
        "value": str(record.credit_value),
        "taxRate": str(record.tax_rate_percent),
        "netValue": str(record.net_value),
        "installments": INSTALLMENT_COUNT,
        "status": record.overall_status.value,
        "installmentDetails": ledger_to_payload(record.ledger),
        "consultantValue": str(record.consultant_value),
        "managerValue": str(record.manager_value),
        "angelValue": str(record.angel_value),
        "createdAt": record.created_at.isoformat(),
    }
    if record.angel_name:
        payload["angelName"] = record.angel_name
    if record.custom_rules:
        payload["customRules"] = [rule_to_payload(rule) for rule in record.custom_rules]
    return payload


def _to_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal value: {value!r}") from exc


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        raise ValueError("Stored sale has no creation timestamp")
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def record_from_payload(
    data: Mapping[str, Any],
    *,
    remote_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> SettlementRecord:
    """Rebuild a record from a stored payload, migrating legacy shapes.

    Args:
        data (Mapping[str, Any]): Stored JSON document.
        remote_id (str | None): Store id the document was found under. When
            omitted the record keeps a placeholder id (a queued write).
        created_at (datetime | None): Store creation timestamp, preferred
            over the one embedded in the document.

    Returns:
        SettlementRecord: Fully normalized record.

    Raises:
        ValueError: If mandatory fields are missing or malformed.
    """

    try:
        sale_id = str(data["id"])
        sale_date = date.fromisoformat(str(data["date"])[:10])
    except KeyError as exc:
        raise ValueError(f"Stored sale is missing field {exc}") from exc

    local_id = str(data.get("localId") or sale_id)
    rules_raw = data.get("customRules") or []
    rules = tuple(rule_from_payload(rule) for rule in rules_raw) or None
    angel_name = data.get("angelName") or None

    return SettlementRecord(
        sale_id=sale_id,
        local_id=local_id,
        remote_id=remote_id if remote_id is not None else placeholder_remote_id(local_id),
        sale_date=sale_date,
        client_name=str(data.get("clientName", "")),
        sale_type=SaleType(data.get("type", SaleType.REAL_ESTATE.value)),
        group=str(data.get("group", "")),
        quota=str(data.get("quota", "")),
        pv=str(data.get("pv", "")),
        credit_value=_to_decimal(data.get("value")),
        tax_rate_percent=_to_decimal(data.get("taxRate")),
        consultant_name=str(data.get("consultant", "")),
        manager_name=str(data.get("managerName") or NO_MANAGER),
        angel_name=angel_name,
        custom_rules=rules,
        ledger=normalize_installment_details(data.get("installmentDetails")),
        consultant_value=_to_decimal(data.get("consultantValue")),
        manager_value=_to_decimal(data.get("managerValue")),
        angel_value=_to_decimal(data.get("angelValue")),
        net_value=_to_decimal(data.get("netValue")),
        created_at=_to_datetime(created_at or data.get("createdAt")),
    )
