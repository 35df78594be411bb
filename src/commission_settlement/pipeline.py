"""Resilient local-first write pipeline.

The pipeline owns the in-memory collection of :class:`SettlementRecord`
objects and is the only component allowed to mutate it. New sales are
published locally before the remote store has seen them; the remote insert
then runs in the background, bounded by ``write_timeout``. Failed inserts land
in a durable queue keyed by the sale's ``local_id`` and are retried by a
periodic recovery pass.

Everything runs on a single asyncio event loop. Record updates replace the
whole record in one assignment, so the ledger and the derived overall status
always change together.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, TypeVar

from . import log
from .clock import Clock, SystemClock
from .competence import CutoffCalendar, DEFAULT_CUTOFF_CALENDAR
from .constants import NO_MANAGER, InstallmentStatus, SaleType
from .data_manager import PendingWrite
from .errors import MissingReferenceError, RemoteTransientError, ValidationGap
from .rates import DEFAULT_RATE_TABLE, RateTable, ZERO, normalize_rules
from .records import (
    SaleCommand,
    SettlementRecord,
    build_settlement_record,
    generate_local_id,
    record_from_payload,
    record_to_payload,
    recompute_commission,
    validate_sale_command,
)
from .remote import RemoteReceipt, RemoteStore


T = TypeVar("T")

DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_STARTUP_DELAY = 3.0
DEFAULT_RETRY_INTERVAL = 120.0

EDITABLE_FIELDS = frozenset(
    {
        "client_name",
        "sale_type",
        "group",
        "quota",
        "pv",
        "sale_date",
        "credit_value",
        "tax_rate_percent",
        "consultant_name",
        "manager_name",
        "angel_name",
        "custom_rules",
    }
)
COMMISSION_FIELDS = frozenset({"credit_value", "tax_rate_percent", "angel_name", "custom_rules"})


class DurableLocalQueue(Protocol):
    """Persistent store of writes the remote store has not acknowledged."""

    def enqueue(self, entry: PendingWrite) -> None: ...

    def list_all(self) -> List[PendingWrite]: ...

    def get(self, local_id: str) -> Optional[PendingWrite]: ...

    def remove(self, local_id: str) -> bool: ...

    def update(self, local_id: str, **patch: Any) -> None: ...


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of a single recovery pass."""

    attempted: int = 0
    recovered: int = 0
    failed: int = 0
    skipped: bool = False


def _describe(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class ResilientWritePipeline:
    """Coordinates local publication, remote writes and queued retries.

    Args:
        store (RemoteStore): Remote persistence backend.
        queue (DurableLocalQueue): Durable queue for unacknowledged inserts.
        calendar (CutoffCalendar): Competence resolver used when paying
            installments.
        rate_table (RateTable): Default commission coefficients.
        clock (Clock | None): Time source, the system clock by default.
        write_timeout (float): Upper bound in seconds for every remote call.
        startup_delay (float): Delay before the first recovery pass after
            :meth:`start`.
        retry_interval (float): Delay between recovery passes.
    """

    def __init__(
        self,
        store: RemoteStore,
        queue: DurableLocalQueue,
        *,
        calendar: CutoffCalendar = DEFAULT_CUTOFF_CALENDAR,
        rate_table: RateTable = DEFAULT_RATE_TABLE,
        clock: Optional[Clock] = None,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        startup_delay: float = DEFAULT_STARTUP_DELAY,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        self.store = store
        self.queue = queue
        self.calendar = calendar
        self.rate_table = rate_table
        self.clock = clock or SystemClock()
        self.write_timeout = write_timeout
        self.startup_delay = startup_delay
        self.retry_interval = retry_interval
        self._records: Dict[str, SettlementRecord] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._deleted: set[str] = set()
        self._recovering = False
        self._recovery_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Collection access
    # ------------------------------------------------------------------

    @property
    def records(self) -> tuple[SettlementRecord, ...]:
        """Snapshot of every known record in publication order."""
        return tuple(self._records.values())

    def get_record(self, sale_id: str) -> SettlementRecord:
        record = self._records.get(sale_id)
        if record is None:
            raise MissingReferenceError(f"Unknown sale: {sale_id}")
        return record

    def find_by_local_id(self, local_id: str) -> Optional[SettlementRecord]:
        for record in self._records.values():
            if record.local_id == local_id:
                return record
        return None

    def pending_writes(self) -> List[PendingWrite]:
        return self.queue.list_all()

    def _publish(self, record: SettlementRecord) -> None:
        self._records[record.sale_id] = record

    def _lock_for(self, sale_id: str) -> asyncio.Lock:
        return self._locks.setdefault(sale_id, asyncio.Lock())

    def _track(self, local_id: str, task: asyncio.Task) -> None:
        self._inflight[local_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(local_id, None))

    # ------------------------------------------------------------------
    # Remote plumbing
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.write_timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteTransientError(
                f"Remote {operation} timed out after {self.write_timeout:g}s"
            ) from exc

    async def _try_insert(self, local_id: str, payload: Mapping[str, Any]) -> Optional[RemoteReceipt]:
        """Attempt one remote insert; on failure queue or bump the entry.

        Every insert failure is considered retryable, whatever its cause, so
        this never raises for remote problems.
        """

        try:
            return await self._call(self.store.insert(payload), "insert")
        except Exception as exc:
            error = _describe(exc)
            log.warning("Remote insert of '%s' failed: %s", local_id, error)
            self._record_failure(local_id, payload, error)
            return None

    def _record_failure(self, local_id: str, payload: Mapping[str, Any], error: str) -> None:
        if local_id in self._deleted:
            return
        existing = self.queue.get(local_id)
        if existing is None:
            self.queue.enqueue(
                PendingWrite(
                    local_id=local_id,
                    payload=dict(payload),
                    enqueued_at=self.clock.now().isoformat(),
                    attempt_count=0,
                    last_error=error,
                )
            )
            return
        self.queue.update(
            local_id,
            attempt_count=existing.attempt_count + 1,
            last_error=error,
            payload=dict(payload),
        )

    async def _confirm(
        self,
        local_id: str,
        submitted: Mapping[str, Any],
        receipt: RemoteReceipt,
        fallback: SettlementRecord,
    ) -> Optional[SettlementRecord]:
        """Adopt the store's identifiers once an insert has been acknowledged.

        If the record changed while the insert was in flight, the latest state
        is pushed with an update so the store does not keep the stale copy.
        A sale deleted while its insert was in flight has the new remote
        document removed instead, and ``None`` is returned.
        """

        self.queue.remove(local_id)
        if local_id in self._deleted:
            log.info("Sale '%s' was deleted during its write; removing '%s'", fallback.sale_id, receipt.remote_id)
            try:
                await self._call(self.store.delete(receipt.remote_id), "delete")
            except Exception as exc:
                log.error("Could not remove remote document '%s': %s", receipt.remote_id, _describe(exc))
            return None

        current = self.find_by_local_id(local_id) or fallback

        confirmed = replace(
            current,
            remote_id=receipt.remote_id,
            created_at=receipt.created_at or current.created_at,
        )
        self._publish(confirmed)
        log.info("Sale '%s' persisted remotely as '%s'", confirmed.sale_id, receipt.remote_id)

        if record_to_payload(current) != dict(submitted):
            try:
                await self._call(
                    self.store.update(receipt.remote_id, record_to_payload(confirmed)),
                    "update",
                )
            except Exception as exc:
                log.error(
                    "Sale '%s' changed during its first write and the follow-up update failed: %s",
                    confirmed.sale_id,
                    _describe(exc),
                )
        return confirmed

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_sale(self, command: SaleCommand) -> SettlementRecord:
        """Validate, publish and start persisting a new sale.

        The record is visible in :attr:`records` when this coroutine returns;
        the remote insert continues in the background. Use :meth:`drain` to
        wait for it.

        Args:
            command (SaleCommand): Sale to register.

        Returns:
            SettlementRecord: The published record, still carrying its
                placeholder remote id.

        Raises:
            ValidationGap: If required fields are missing.
        """

        validate_sale_command(command)
        local_id = generate_local_id()
        record, breakdown = build_settlement_record(
            command,
            sale_id=str(uuid.uuid4()),
            local_id=local_id,
            created_at=self.clock.now(),
            rate_table=self.rate_table,
        )
        self._publish(record)
        log.info(
            "Registered sale '%s' for '%s' (commission total %s)",
            record.sale_id,
            record.client_name,
            breakdown.grand_total,
        )

        self._track(local_id, asyncio.get_running_loop().create_task(self._write_new(local_id)))
        return record

    async def _write_new(self, local_id: str) -> None:
        record = self.find_by_local_id(local_id)
        if record is None:
            return
        await self._persist(local_id, record)

    async def _persist(self, local_id: str, record: SettlementRecord) -> bool:
        """Insert ``record`` once; ``True`` when the store acknowledged it."""
        payload = record_to_payload(record)
        receipt = await self._try_insert(local_id, payload)
        if receipt is None:
            return False
        await self._confirm(local_id, payload, receipt, record)
        return True

    async def drain(self) -> None:
        """Wait until no insert, initial or retried, is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()))

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_pending(self) -> RecoveryResult:
        """Retry every queued write once.

        A pass that starts while another is still running returns
        immediately with ``skipped=True``. Entries whose initial write is
        still in flight are left for the next pass. Each retry is tracked
        like an initial write, so :meth:`delete_sale` waits for it.
        Entries whose payload cannot be read stay queued and count as
        failed.

        Returns:
            RecoveryResult: Counters for the pass.
        """

        if self._recovering:
            log.info("Recovery pass already running; skipping")
            return RecoveryResult(skipped=True)

        self._recovering = True
        attempted = recovered = failed = 0
        try:
            for entry in self.queue.list_all():
                local_id = entry.local_id
                if local_id in self._inflight or local_id in self._deleted:
                    continue
                if self.queue.get(local_id) is None:
                    continue
                attempted += 1
                record = self.find_by_local_id(local_id)
                if record is None:
                    try:
                        record = record_from_payload(entry.payload)
                    except (ValueError, KeyError) as exc:
                        log.warning("Queued sale '%s' is unreadable and stays queued: %s", local_id, exc)
                        failed += 1
                        continue
                task = asyncio.get_running_loop().create_task(self._persist(local_id, record))
                self._track(local_id, task)
                if await task:
                    recovered += 1
                else:
                    failed += 1
        finally:
            self._recovering = False

        if attempted:
            log.info("Recovery pass finished: %d recovered, %d still pending", recovered, failed)
        return RecoveryResult(attempted=attempted, recovered=recovered, failed=failed)

    async def _recovery_loop(self) -> None:
        await asyncio.sleep(self.startup_delay)
        while True:
            try:
                await self.recover_pending()
            except Exception:
                log.exception("Recovery pass aborted")
            await asyncio.sleep(self.retry_interval)

    def start(self) -> asyncio.Task:
        """Schedule the periodic recovery task on the running loop."""
        if self._recovery_task is None or self._recovery_task.done():
            self._recovery_task = asyncio.get_running_loop().create_task(self._recovery_loop())
            log.info(
                "Recovery scheduled after %gs, then every %gs",
                self.startup_delay,
                self.retry_interval,
            )
        return self._recovery_task

    async def stop(self) -> None:
        task, self._recovery_task = self._recovery_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def bootstrap(self) -> int:
        """Load every stored sale, then re-publish locally queued ones.

        Stored payloads pass through the legacy migration on the way in.
        Documents that cannot be parsed are logged and skipped. A queued
        write whose ``localId`` is already stored landed before its insert
        timed out; the stored copy wins and the queued write is dropped.

        Returns:
            int: Number of records in the collection afterwards.

        Raises:
            RemoteStoreError: If the store cannot be listed.
        """

        rows = await self._call(self.store.list_all(), "list")
        for row in rows:
            try:
                record = record_from_payload(row.data, remote_id=row.remote_id, created_at=row.created_at)
            except (ValueError, KeyError) as exc:
                log.warning("Skipping unreadable stored sale '%s': %s", row.remote_id, exc)
                continue
            self._publish(record)

        for entry in self.queue.list_all():
            existing = self.find_by_local_id(entry.local_id)
            if existing is not None:
                if not existing.is_pending and entry.local_id not in self._inflight:
                    self.queue.remove(entry.local_id)
                    log.info(
                        "Queued sale '%s' is already stored as '%s'; dropping the queued write",
                        existing.sale_id,
                        existing.remote_id,
                    )
                continue
            try:
                self._publish(record_from_payload(entry.payload))
            except (ValueError, KeyError) as exc:
                log.warning("Skipping unreadable queued sale '%s': %s", entry.local_id, exc)

        log.info("Loaded %d sales", len(self._records))
        return len(self._records)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _commit(self, updated: SettlementRecord) -> SettlementRecord:
        """Make ``updated`` the current version of its sale.

        Pending records only refresh their queued payload. Persisted records
        are written to the store first and published only on success; a
        failure is raised to the caller and nothing is queued.
        """

        if updated.is_pending:
            self._publish(updated)
            if self.queue.get(updated.local_id) is not None:
                self.queue.update(updated.local_id, payload=record_to_payload(updated))
            return updated

        await self._call(self.store.update(updated.remote_id, record_to_payload(updated)), "update")
        self._publish(updated)
        return updated

    async def set_installment_status(
        self,
        sale_id: str,
        installment: int,
        status: InstallmentStatus,
        paid_date: Optional[date] = None,
        *,
        override: bool = False,
    ) -> SettlementRecord:
        """Move one installment to ``status`` and persist the change.

        Raises:
            MissingReferenceError: If the sale is unknown.
            LedgerInvariantViolation: If the transition is not allowed.
            RemoteStoreError: If the store rejects or misses the update.
        """

        async with self._lock_for(sale_id):
            record = self.get_record(sale_id)
            ledger = record.ledger.apply(
                installment,
                status,
                paid_date=paid_date,
                calendar=self.calendar,
                clock=self.clock,
                override=override,
            )
            updated = await self._commit(replace(record, ledger=ledger))
        log.info(
            "Installment %d of sale '%s' is now '%s' (sale '%s')",
            installment,
            sale_id,
            updated.ledger[installment].status.value,
            updated.overall_status.value,
        )
        return updated

    async def mark_installment_range(
        self,
        sale_id: str,
        start: int,
        end: int,
        status: InstallmentStatus,
        paid_date: Optional[date] = None,
        *,
        override: bool = False,
    ) -> SettlementRecord:
        """Apply one status to installments ``start`` through ``end`` atomically."""

        async with self._lock_for(sale_id):
            record = self.get_record(sale_id)
            ledger = record.ledger.apply_range(
                start,
                end,
                status,
                paid_date=paid_date,
                calendar=self.calendar,
                clock=self.clock,
                override=override,
            )
            updated = await self._commit(replace(record, ledger=ledger))
        log.info("Installments %d-%d of sale '%s' updated", start, end, sale_id)
        return updated

    async def update_sale(self, sale_id: str, **changes: Any) -> SettlementRecord:
        """Apply a corrective update to a sale's terms.

        Commission values are recomputed when the credit value, tax rate,
        angel or custom rules change. The ledger is left as it is.

        Raises:
            KeyError: If a field cannot be edited.
            ValidationGap: If the new credit value is not positive.
        """

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise KeyError(f"Unknown sale fields: {', '.join(sorted(unknown))}")

        if "credit_value" in changes and (changes["credit_value"] is None or changes["credit_value"] <= ZERO):
            raise ValidationGap(["credit_value"])
        if "sale_type" in changes:
            changes["sale_type"] = SaleType(changes["sale_type"])
        if "custom_rules" in changes:
            changes["custom_rules"] = normalize_rules(changes["custom_rules"])
        if "angel_name" in changes:
            changes["angel_name"] = (changes["angel_name"] or "").strip() or None
        if "manager_name" in changes:
            changes["manager_name"] = (changes["manager_name"] or "").strip() or NO_MANAGER

        async with self._lock_for(sale_id):
            updated = replace(self.get_record(sale_id), **changes)
            if COMMISSION_FIELDS & set(changes):
                updated = recompute_commission(updated, rate_table=self.rate_table)
            updated = await self._commit(updated)
        log.info("Updated sale '%s' (%s)", sale_id, ", ".join(sorted(changes)))
        return updated

    async def delete_sale(self, sale_id: str) -> None:
        """Remove a sale locally and from wherever it is persisted.

        A write still in flight, initial or recovery retry, is awaited
        first. The sale is marked as deleted before that, so a write that
        lands afterwards removes its own remote copy and a failed one is
        not queued again.
        """

        async with self._lock_for(sale_id):
            record = self.get_record(sale_id)
            task = self._inflight.get(record.local_id)
            if record.is_pending or task is not None:
                self._deleted.add(record.local_id)
            if task is not None:
                await task
            record = self.get_record(sale_id)

            if record.is_pending:
                self.queue.remove(record.local_id)
            else:
                await self._call(self.store.delete(record.remote_id), "delete")
            self._records.pop(sale_id, None)
        self._locks.pop(sale_id, None)
        log.info("Deleted sale '%s'", sale_id)
