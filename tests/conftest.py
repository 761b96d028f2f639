from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from crm_backup.backup_service import BackupService
from crm_backup.errors import DumpFailedError, RestoreFailedError
from crm_backup.recovery_service import RecoveryService
from crm_backup.runners import CommandResult


def dump_script(tables: List[str], include_data: bool = True) -> str:
    lines = [
        "--",
        "-- PostgreSQL database dump",
        "--",
        "",
        "SET statement_timeout = 0;",
        "SELECT pg_catalog.set_config('search_path', '', false);",
    ]
    for table in tables:
        lines.append(f"DROP TABLE IF EXISTS public.{table};")
    for table in tables:
        lines += [
            "",
            "--",
            f"-- Name: {table}; Type: TABLE; Schema: public; Owner: crm",
            "--",
            "",
            f"CREATE TABLE public.{table} (id integer NOT NULL, name text);",
        ]
        if include_data:
            lines += [
                "",
                "--",
                f"-- Data for Name: {table}; Type: TABLE DATA; Schema: public; Owner: crm",
                "--",
                "",
                f"COPY public.{table} (id, name) FROM stdin;",
                f"1\t{table}-row",
                "\\.",
            ]
    lines += ["", "--", "-- PostgreSQL database dump complete", "--", ""]
    return "\n".join(lines)


class FakeInspector:
    def __init__(self, tables: Optional[List[str]] = None):
        self.tables = list(tables or [])
        self.dropped: List[str] = []

    def get_current_tables(self) -> List[str]:
        return list(self.tables)

    def drop_tables(self, tables: List[str]) -> None:
        for table in tables:
            self.dropped.append(table)
            if table in self.tables:
                self.tables.remove(table)


class FakeDumpRunner:
    executable = "pg_dump"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[dict] = []

    async def dump(self, output_path: str, tables: List[str], include_data: bool = True) -> CommandResult:
        self.calls.append({"path": output_path, "tables": list(tables), "include_data": include_data})
        if self.fail:
            Path(output_path).write_text("--\n-- PostgreSQL database dump\n--\nSET")
            raise DumpFailedError(
                "pg_dump failed with exit code 1",
                diagnostics="pg_dump: error: connection refused",
                summary="Connection error",
            )
        Path(output_path).write_text(dump_script(tables, include_data))
        return CommandResult(returncode=0, stdout="", stderr="")


class FakeRestoreRunner:
    executable = "psql"

    def __init__(self, inspector: FakeInspector, fail: bool = False, skip_tables: Optional[List[str]] = None):
        self.inspector = inspector
        self.fail = fail
        self.skip_tables = skip_tables or []
        self.calls: List[dict] = []

    async def restore(self, dump_path: str, tables=None, dumped_tables=None) -> CommandResult:
        self.calls.append({"path": dump_path, "tables": tables, "dumped_tables": dumped_tables})
        if self.fail:
            raise RestoreFailedError("psql failed with exit code 3", diagnostics="ERROR: syntax error")
        for table in (tables if tables is not None else dumped_tables):
            if table not in self.skip_tables and table not in self.inspector.tables:
                self.inspector.tables.append(table)
        return CommandResult(returncode=0, stdout="", stderr="")


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector(["schools", "contacts"])


@pytest.fixture
def dump_runner() -> FakeDumpRunner:
    return FakeDumpRunner()


@pytest.fixture
def backup_service(tmp_path: Path, inspector: FakeInspector, dump_runner: FakeDumpRunner) -> BackupService:
    return BackupService(str(tmp_path / "backups"), inspector, dump_runner)


@pytest.fixture
def restore_runner(inspector: FakeInspector) -> FakeRestoreRunner:
    return FakeRestoreRunner(inspector)


@pytest.fixture
def recovery_service(
    backup_service: BackupService, inspector: FakeInspector, restore_runner: FakeRestoreRunner
) -> RecoveryService:
    return RecoveryService(backup_service, inspector, restore_runner)
