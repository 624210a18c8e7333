"""
Execution Recovery Service.

Timers live in process memory, so a restart loses every pending WAIT and
reply timeout. Deadlines are persisted in the execution context, which
lets this service rebuild the timers at startup.

Recovery flow:
1. On startup, scan the store for RUNNING and WAITING executions
2. WAITING with a stored deadline: reschedule the remaining delay, or
   fire immediately if the deadline already passed
3. Deadline unparseable: fail the execution
4. No deadline and untouched for STALE_EXECUTION_MINUTES: fail as stale
5. Anything else is left alone
"""

from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import ExecutionStatus
from core.utils import ensure_utc, seconds_until, stale_threshold, to_iso, utcnow
from db.models.execution import WorkflowExecution
from services.workflow_service import ExecutionService
from workflow.context import REPLY_TIMEOUT_AT, ExecutionContext
from workflow.engine import ExecutionEngine, pending_deadline

logger = structlog.get_logger(__name__)

RESUMED = "resumed"
RESCHEDULED = "rescheduled"
FAILED_STALE = "failed_stale"
FAILED_INVALID = "failed_invalid"
SKIPPED = "skipped"


class RecoveryResult:
    """Result of a recovery attempt for a single execution."""

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        self.action: str = SKIPPED
        self.delay_seconds: Optional[float] = None
        self.error: Optional[str] = None
        self.timestamp: datetime = utcnow()

    @property
    def recovered(self) -> bool:
        return self.action in (RESUMED, RESCHEDULED)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "status": self.status,
            "action": self.action,
            "recovered": self.recovered,
            "delay_seconds": self.delay_seconds,
            "error": self.error,
            "timestamp": to_iso(self.timestamp),
        }


class RecoveryService:
    """
    Re-arms timers and clears stale executions on startup.

    Integrates with the execution engine, which owns the timers and the
    terminal transitions.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._recovery_log: List[RecoveryResult] = []

    async def scan_pending_executions(self) -> List[WorkflowExecution]:
        async with self.session_factory() as session:
            rows = await ExecutionService(session).list_pending()
        if rows:
            logger.info(
                "Found pending executions",
                count=len(rows),
                execution_ids=[r.id for r in rows[:10]],
            )
        return list(rows)

    async def recover_execution(self, row: WorkflowExecution) -> RecoveryResult:
        """Decide what happens to one pending execution after a restart."""
        result = RecoveryResult(row.id, row.status)
        try:
            await self._recover(row, result)
        except Exception as e:
            result.error = str(e)
            logger.error("Recovery failed", execution_id=row.id, error=str(e))
        self._recovery_log.append(result)
        return result

    async def _recover(self, row: WorkflowExecution, result: RecoveryResult) -> None:
        status = ExecutionStatus(row.status)
        context = ExecutionContext.from_dict(row.context)

        if status == ExecutionStatus.WAITING:
            try:
                key, deadline = pending_deadline(context)
            except ValueError:
                result.action = FAILED_INVALID
                result.error = "Invalid wait resume time"
                await self.engine.fail_execution(row.id, result.error)
                logger.warning("Execution has an invalid deadline", execution_id=row.id)
                return

            if deadline is not None:
                delay = seconds_until(deadline)
                stamp = (context.get_variable(key), row.current_node_id)
                if key == REPLY_TIMEOUT_AT:
                    self.engine.schedule_reply_timeout(row.id, delay, *stamp)
                else:
                    self.engine.schedule_wait_resume(row.id, delay, *stamp)
                result.delay_seconds = delay
                result.action = RESCHEDULED if delay > 0 else RESUMED
                logger.info(
                    "Execution timer restored",
                    execution_id=row.id,
                    action=result.action,
                    delay_seconds=round(delay, 3),
                )
                return

        minutes = self.settings.STALE_EXECUTION_MINUTES
        updated = ensure_utc(row.updated_at)
        if updated is not None and updated < stale_threshold(minutes):
            result.action = FAILED_STALE
            result.error = f"Execution was stale ({status.value}) after server restart"
            await self.engine.fail_execution(row.id, result.error)
            logger.warning("Stale execution failed", execution_id=row.id, status=status.value)
            return

        result.action = SKIPPED

    async def recover_all(self) -> List[RecoveryResult]:
        """
        Scan and recover every pending execution.

        Called on application startup.
        """
        logger.info("Starting execution recovery scan...")

        rows = await self.scan_pending_executions()
        if not rows:
            logger.info("No pending executions found")
            return []

        results = [await self.recover_execution(row) for row in rows]

        logger.info(
            "Recovery scan complete",
            total=len(results),
            recovered=sum(1 for r in results if r.recovered),
            failed=sum(1 for r in results if r.action in (FAILED_STALE, FAILED_INVALID)),
            skipped=sum(1 for r in results if r.action == SKIPPED),
        )
        return results

    def get_recovery_log(self) -> List[dict]:
        return [r.to_dict() for r in self._recovery_log]
