"""Enumerations shared across the commission settlement modules.

Centralises domain constants so that the calculator, the installment ledger,
the write pipeline, and the presentation layer rely on a single source of
truth for status labels, sheet names, and schedule sizes.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Every sale pays out over a fixed schedule of monthly installments.
INSTALLMENT_COUNT = 15

# Cutoff day used for any calendar month without an explicit entry.
DEFAULT_CUTOFF_DAY = 19

# Placeholder prefix carried by records the remote store has not confirmed.
LOCAL_ID_PREFIX = "local_"

# Manager label stored when a sale is registered without a manager.
NO_MANAGER = "N/A"


class InstallmentStatus(str, Enum):
    """Enumerate the lifecycle states of a single installment."""

    PENDING = "Pendente"
    PAID = "Pago"
    OVERDUE = "Atraso"
    CANCELLED = "Cancelado"


class SaleStatus(str, Enum):
    """Enumerate the overall status derived from a sale's installments."""

    IN_PROGRESS = "Em Andamento"
    OVERDUE = "Atraso"
    COMPLETED = "Concluído"
    CANCELLED = "Cancelado"


class SaleType(str, Enum):
    """Enumerate the kinds of consortium credit a sale may refer to."""

    REAL_ESTATE = "Imóvel"
    VEHICLE = "Veículo"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PENDING_WRITES = "PendingWrites"
    CUTOFF_PERIODS = "CutoffPeriods"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "INSTALLMENT_COUNT",
    "DEFAULT_CUTOFF_DAY",
    "LOCAL_ID_PREFIX",
    "NO_MANAGER",
    "InstallmentStatus",
    "SaleStatus",
    "SaleType",
    "SheetName",
]
