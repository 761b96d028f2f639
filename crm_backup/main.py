from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .backup_service import BackupService
from .config import load_settings
from .database import TableInspector, build_engine
from .logger import setup_logging, get_logger
from .recovery_service import RecoveryService
from .routers import backups
from .runners import CommandRunner, PgDumpRunner, PsqlRestoreRunner
from .scheduler import BackupScheduler

setup_logging()
logger = get_logger(__name__)

app = FastAPI(title="CRM Backup & Recovery")
Instrumentator().instrument(app).expose(app)


@app.on_event("startup")
async def startup_event():
    settings = load_settings()
    engine = build_engine(settings.database)
    inspector = TableInspector(engine)
    command_runner = CommandRunner()

    backup_service = BackupService(
        settings.backup_dir,
        inspector,
        PgDumpRunner(
            settings.database, command_runner,
            executable=settings.pg_dump_path, timeout=settings.tool_timeout_seconds,
        ),
    )
    await backup_service.initialize()

    recovery_service = RecoveryService(
        backup_service,
        inspector,
        PsqlRestoreRunner(
            settings.database, command_runner,
            executable=settings.psql_path, timeout=settings.tool_timeout_seconds,
        ),
        restore_throughput=settings.restore_throughput_bytes_per_second,
    )
    backup_scheduler = BackupScheduler(backup_service, settings.schedule)

    app.state.settings = settings
    app.state.engine = engine
    app.state.backup_service = backup_service
    app.state.recovery_service = recovery_service
    app.state.backup_scheduler = backup_scheduler

    backup_scheduler.start()
    logger.info("Backup service started.")


@app.on_event("shutdown")
async def shutdown_event():
    app.state.backup_scheduler.stop()
    app.state.engine.dispose()


app.include_router(backups.router, prefix="/backups", tags=["backups"])
