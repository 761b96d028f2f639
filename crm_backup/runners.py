import asyncio
import os
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import DatabaseSettings
from .dump_filter import filter_dump
from .error_parser import parse_tool_error
from .errors import DumpFailedError, RestoreFailedError
from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


class CommandRunner:
    """
    Runs one external command and waits for it. The deadline is optional; when it
    expires the process is killed and the result is marked as timed out.
    """

    async def run(
        self,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        logger.debug(f"Executing command: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            return CommandResult(returncode=127, stdout="", stderr=f"{cmd[0]}: command not found")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Command '{cmd[0]}' exceeded its {timeout}s deadline, killing pid {process.pid}")
            process.kill()
            stdout, stderr = await process.communicate()
            message = stderr.decode(errors="replace") + f"\n{cmd[0]} timed out after {timeout}s"
            return CommandResult(
                returncode=process.returncode if process.returncode is not None else -9,
                stdout=stdout.decode(errors="replace"),
                stderr=message,
                timed_out=True,
            )

        return CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


def _pg_env(db: DatabaseSettings) -> Dict[str, str]:
    # Password travels in the environment, never on the command line
    env = os.environ.copy()
    env["PGPASSWORD"] = db.password
    return env


def _connection_args(db: DatabaseSettings) -> List[str]:
    return [
        "--host", db.host,
        "--port", str(db.port),
        "--username", db.username,
        "--dbname", db.database_name,
        "--no-password",
    ]


def _write_scoped_script(dump_path: str, tables: List[str], dumped_tables: List[str]) -> str:
    with open(dump_path, "r", encoding="utf-8") as f:
        script = f.read()
    scoped = filter_dump(script, tables, dumped_tables)
    with tempfile.NamedTemporaryFile("w", suffix=".sql", delete=False, encoding="utf-8") as tmp_file:
        tmp_file.write(scoped)
        return tmp_file.name


class PgDumpRunner:
    """Dump Runner: writes a plain-format pg_dump of a table set to a single file."""

    tool = "pg_dump"

    def __init__(
        self,
        db: DatabaseSettings,
        command_runner: Optional[CommandRunner] = None,
        executable: str = "pg_dump",
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.command_runner = command_runner or CommandRunner()
        self.executable = executable
        self.timeout = timeout

    def build_command(self, output_path: str, tables: List[str], include_data: bool = True) -> List[str]:
        cmd = [
            self.executable,
            *_connection_args(self.db),
            "--verbose",
            "--clean",
            "--if-exists",
            "--format=plain",
            "--file", output_path,
        ]
        for table in tables:
            # Quoted so mixed-case table names are not folded to lower case
            cmd.extend(["--table", f'public."{table}"'])
        if not include_data:
            cmd.append("--schema-only")
        return cmd

    async def dump(self, output_path: str, tables: List[str], include_data: bool = True) -> CommandResult:
        cmd = self.build_command(output_path, tables, include_data)
        result = await self.command_runner.run(cmd, env=_pg_env(self.db), timeout=self.timeout)
        if result.returncode != 0:
            raise DumpFailedError(
                f"pg_dump failed with exit code {result.returncode}",
                diagnostics=result.stderr,
                summary=parse_tool_error(result.stderr, self.tool),
            )
        return result


class PsqlRestoreRunner:
    """Restore Runner: replays a plain-format dump with psql in a single transaction."""

    tool = "psql"

    def __init__(
        self,
        db: DatabaseSettings,
        command_runner: Optional[CommandRunner] = None,
        executable: str = "psql",
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.command_runner = command_runner or CommandRunner()
        self.executable = executable
        self.timeout = timeout

    def build_command(self, script_path: str) -> List[str]:
        return [
            self.executable,
            *_connection_args(self.db),
            "--set", "ON_ERROR_STOP=1",
            "--single-transaction",
            "--file", script_path,
        ]

    async def restore(
        self,
        dump_path: str,
        tables: Optional[List[str]] = None,
        dumped_tables: Optional[List[str]] = None,
    ) -> CommandResult:
        """
        Restores ``dump_path``. When ``tables`` is given, only the parts of the dump that
        belong to those tables are replayed (``dumped_tables`` lists every table the dump holds).
        """
        script_path = dump_path
        scoped_path = None
        if tables is not None:
            scoped_path = await asyncio.to_thread(_write_scoped_script, dump_path, tables, dumped_tables or tables)
            script_path = scoped_path
            logger.info(f"Restoring only tables {tables} from {os.path.basename(dump_path)}")

        try:
            result = await self.command_runner.run(
                self.build_command(script_path), env=_pg_env(self.db), timeout=self.timeout
            )
        finally:
            if scoped_path and os.path.exists(scoped_path):
                logger.debug(f"Removing temporary file: {scoped_path}")
                os.remove(scoped_path)

        if result.returncode != 0:
            raise RestoreFailedError(
                f"psql failed with exit code {result.returncode}",
                diagnostics=result.stderr,
                summary=parse_tool_error(result.stderr, self.tool),
            )
        return result
