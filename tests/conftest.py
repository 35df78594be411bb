"""Shared pytest fixtures and utilities for commission settlement tests."""

from __future__ import annotations

import argparse
import asyncio
import sys
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from commission_settlement import cli, constants, core_logic, data_manager  # noqa: E402
from commission_settlement.clock import FixedClock  # noqa: E402
from commission_settlement.errors import RemoteTransientError  # noqa: E402
from commission_settlement.pipeline import ResilientWritePipeline  # noqa: E402
from commission_settlement.records import SaleCommand  # noqa: E402
from commission_settlement.remote import RemoteReceipt, RemoteRow  # noqa: E402
from commission_settlement.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_MOMENT = datetime(2024, 3, 25, 12, 0, tzinfo=UTC)
STORE_TIMESTAMP = datetime(2024, 3, 25, 12, 0, 5, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "OfficeName = {office_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Remote]\n"
    "BaseUrl = https://store.test/api\n"
    "ApiKey = secret-key\n"
    "Tenant = office-1\n"
    "Timeout = 5\n\n"
    "[Sync]\n"
    "WriteTimeout = 2\n"
    "StartupDelay = 0\n"
    "RetryInterval = 60\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    office_name: str


class FakeRemoteStore:
    """In-memory :class:`RemoteStore` with scriptable failures.

    ``failures`` makes the next N inserts raise, ``always_fail`` makes every
    insert raise, and ``delay`` slows inserts down so timeouts and in-flight
    races can be exercised.
    """

    def __init__(self, *, failures: int = 0, always_fail: bool = False, delay: float = 0.0):
        self.failures_left = failures
        self.always_fail = always_fail
        self.delay = delay
        self.fail_updates = False
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.insert_calls = 0
        self.updates: List[tuple[str, Dict[str, Any]]] = []
        self.deleted: List[str] = []
        self.closed = False
        self._counter = 0

    async def insert(self, payload: Mapping[str, Any]) -> RemoteReceipt:
        self.insert_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail or self.failures_left > 0:
            self.failures_left -= 1
            raise RemoteTransientError("store unavailable")
        self._counter += 1
        remote_id = f"remote-{self._counter}"
        self.documents[remote_id] = dict(payload)
        return RemoteReceipt(remote_id=remote_id, created_at=STORE_TIMESTAMP)

    async def update(self, remote_id: str, payload: Mapping[str, Any]) -> None:
        if self.fail_updates:
            raise RemoteTransientError("store unavailable")
        self.updates.append((remote_id, dict(payload)))
        self.documents[remote_id] = dict(payload)

    async def delete(self, remote_id: str) -> None:
        self.deleted.append(remote_id)
        self.documents.pop(remote_id, None)

    async def list_all(self) -> List[RemoteRow]:
        return [
            RemoteRow(remote_id=remote_id, created_at=STORE_TIMESTAMP, data=data)
            for remote_id, data in self.documents.items()
        ]

    async def aclose(self) -> None:
        self.closed = True


class MemoryQueue:
    """Dictionary-backed durable queue stand-in."""

    def __init__(self) -> None:
        self.entries: Dict[str, data_manager.PendingWrite] = {}

    def enqueue(self, entry: data_manager.PendingWrite) -> None:
        if entry.local_id in self.entries:
            raise KeyError(entry.local_id)
        self.entries[entry.local_id] = entry

    def list_all(self) -> List[data_manager.PendingWrite]:
        return list(self.entries.values())

    def get(self, local_id: str) -> Optional[data_manager.PendingWrite]:
        return self.entries.get(local_id)

    def remove(self, local_id: str) -> bool:
        return self.entries.pop(local_id, None) is not None

    def update(self, local_id: str, **patch: Any) -> None:
        self.entries[local_id] = replace(self.entries[local_id], **patch)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized settlement workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "settlement_data.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh settlement workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        office_name: str = "Test Office",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        extra: str = "",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                office_name=office_name,
                schema_version=schema_version,
            )
            + extra,
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            office_name=office_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="settlement-cli", description="Settlement CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "settlement_data.xlsx",
        office_name="Test Office",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        remote_base_url="https://store.test/api",
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fixed_clock() -> FixedClock:
    return FixedClock(FIXED_MOMENT)


@pytest.fixture
def fake_store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def store_factory() -> Callable[..., FakeRemoteStore]:
    """Return the fake store class so tests can script failures."""

    return FakeRemoteStore


@pytest.fixture
def memory_queue() -> MemoryQueue:
    return MemoryQueue()


@pytest.fixture
def pipeline_factory(fixed_clock: FixedClock, memory_queue: MemoryQueue) -> Callable[..., ResilientWritePipeline]:
    """Build pipelines around a fake store with short timings."""

    def _create(store: Any = None, *, queue: Any = None, **options: Any) -> ResilientWritePipeline:
        options.setdefault("clock", fixed_clock)
        options.setdefault("write_timeout", 1.0)
        options.setdefault("startup_delay", 0.0)
        options.setdefault("retry_interval", 0.01)
        return ResilientWritePipeline(
            store if store is not None else FakeRemoteStore(),
            queue if queue is not None else memory_queue,
            **options,
        )

    return _create


@pytest.fixture
def make_command() -> Callable[..., SaleCommand]:
    """Factory producing a valid sale command with optional overrides."""

    def _create(**overrides: Any) -> SaleCommand:
        values: Dict[str, Any] = dict(
            client_name="Maria Souza",
            sale_type=constants.SaleType.REAL_ESTATE,
            group="1020",
            quota="45",
            pv="PV Centro",
            credit_value=Decimal("100000"),
            consultant_name="Carlos Lima",
            sale_date=date(2024, 3, 10),
            manager_name="Ana Prado",
        )
        values.update(overrides)
        return SaleCommand(**values)

    return _create
