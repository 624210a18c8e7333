"""Workflow Execution Engine: durable conversational state machine.

Advances one conversation (tenant, session, contact) through a workflow
graph, one node at a time:

- start: a trigger matched; create the execution row and run
- resume: a reply arrived for a WAITING execution
- timer: an unattended WAIT elapsed, or a reply wait timed out

Every entry point holds the per-contact lock for the whole run loop and
persists the execution after every node, so a crash loses at most the
node that was in flight. Suspensions store their deadline in the context
(``_waitResumeAt`` / ``_replyTimeoutAt``); in-process timers are only a
convenience re-derived by RecoveryService at startup.

States:
    RUNNING  -> RUNNING | WAITING | COMPLETED | ERROR
    WAITING  -> RUNNING | COMPLETED | ERROR | EXPIRED
    COMPLETED, ERROR, EXPIRED are terminal.
"""

import asyncio
import functools
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import EventType, ExecutionStatus, OnTimeout
from core.exceptions import (
    ActiveExecutionExistsError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    NoTriggerNodeError,
    WorkflowNotFoundError,
)
from core.locks import LockManager, contact_lock_key
from core.utils import ensure_utc, parse_iso, stale_threshold, to_iso, utcnow
from db.models.execution import WorkflowExecution
from messaging.gateway import MessageDispatcher, MessageToSend
from services.contact_service import ContactFlowStateService, ContactTagsService
from services.workflow_service import ExecutionService, WorkflowService
from workflow.context import (
    ON_TIMEOUT,
    REPLY_TIMEOUT_AT,
    TIMEOUT_TARGET_NODE_ID,
    WAIT_RESUME_AT,
    ExecutionContext,
)
from workflow.definition import Node, WorkflowGraph
from workflow.events import EventSink, ExecutionEvent
from workflow.loop import LoopController
from workflow.node_executor import NodeExecutionResult, NodeExecutor
from workflow.timers import TimerRegistry

logger = structlog.get_logger(__name__)


# ─── Run State ────────────────────────────────────────────────

@dataclass
class RunState:
    """In-memory copy of one execution row while a run loop owns it."""

    id: str
    tenant_id: str
    workflow_id: str
    session_id: str
    contact_id: str
    current_node_id: Optional[str]
    status: ExecutionStatus
    context: ExecutionContext
    interaction_count: int
    expires_at: Optional[datetime]
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: WorkflowExecution) -> "RunState":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            workflow_id=row.workflow_id,
            session_id=row.session_id,
            contact_id=row.contact_id,
            current_node_id=row.current_node_id,
            status=ExecutionStatus(row.status),
            context=ExecutionContext.from_dict(row.context),
            interaction_count=row.interaction_count or 0,
            expires_at=ensure_utc(row.expires_at),
            updated_at=ensure_utc(row.updated_at),
        )

    @property
    def lock_key(self) -> str:
        return contact_lock_key(self.tenant_id, self.session_id, self.contact_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) > self.expires_at


def pending_deadline(context: ExecutionContext) -> tuple[Optional[str], Optional[datetime]]:
    """The (context key, deadline) of the wait a context is suspended on.

    Raises:
        ValueError: If the stored deadline is not a valid timestamp
    """
    for key in (WAIT_RESUME_AT, REPLY_TIMEOUT_AT):
        raw = context.get_variable(key)
        if raw:
            return key, parse_iso(raw)
    return None, None


def default_trigger_payload(contact_id: str, text: str, now: datetime) -> dict[str, Any]:
    millis = int(now.timestamp() * 1000)
    return {
        "messageId": f"text-{millis}",
        "from": contact_id,
        "type": "text",
        "text": text,
        "media": None,
        "timestamp": millis,
    }


# ─── Engine ───────────────────────────────────────────────────

class ExecutionEngine:
    """Runs workflow executions against live conversations.

    Owns its TimerRegistry; collaborators (store, lock manager, messaging,
    event sink) are injected.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager,
        dispatcher: MessageDispatcher,
        event_sink: EventSink,
        settings: Optional[Settings] = None,
        timers: Optional[TimerRegistry] = None,
        node_executor: Optional[NodeExecutor] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.locks = lock_manager
        self.dispatcher = dispatcher
        self.events = event_sink
        self.timers = timers or TimerRegistry()
        self.node_executor = node_executor or NodeExecutor(
            loops=LoopController(),
            default_reply_timeout=self.settings.WAIT_REPLY_DEFAULT_TIMEOUT_SECONDS,
        )
        self.loops = self.node_executor.loops

    # ─── Public API ───────────────────────────────────────────

    async def start(
        self,
        tenant_id: str,
        workflow_id: str,
        session_id: str,
        contact_id: str,
        trigger_text: Optional[str] = None,
        trigger_payload: Optional[dict] = None,
        trigger_node_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """Start a new execution for a contact and run it until it suspends or ends.

        Raises:
            ExecutionLockedError: If another run loop holds this contact
            WorkflowNotFoundError: If the workflow does not belong to the tenant
            ActiveExecutionExistsError: If a live execution already exists
            NoTriggerNodeError: If the workflow has no trigger node
        """
        key = contact_lock_key(tenant_id, session_id, contact_id)
        async with self.locks.hold(key, self.settings.EXECUTION_LOCK_TTL_SECONDS):
            async with self.session_factory() as session:
                workflow = await WorkflowService(session).get_for_tenant(tenant_id, workflow_id)
                if workflow is None:
                    raise WorkflowNotFoundError(workflow_id)
                active = await ExecutionService(session).get_active_execution(
                    tenant_id, session_id, contact_id
                )
                tags = await ContactTagsService(session).get_tags(tenant_id, session_id, contact_id)

            if active is not None:
                await self._clear_stale(active)

            graph = WorkflowGraph.from_workflow(workflow)
            trigger = graph.get_node(trigger_node_id) if trigger_node_id else graph.find_trigger()
            if trigger is None:
                raise NoTriggerNodeError(workflow_id)

            now = utcnow()
            text = trigger_text or ""
            payload = dict(trigger_payload) if trigger_payload else default_trigger_payload(contact_id, text, now)
            context = ExecutionContext(
                variables={
                    "triggerMessage": text,
                    "triggerPayload": payload,
                    "contactTags": tags,
                },
                input=payload,
            )

            async with self.session_factory() as session:
                row = await ExecutionService(session).create_execution(
                    tenant_id=tenant_id,
                    workflow_id=workflow_id,
                    session_id=session_id,
                    contact_id=contact_id,
                    current_node_id=graph.next_node_id(trigger.id),
                    context=context.to_dict(),
                    expires_at=now + timedelta(hours=self.settings.EXECUTION_TTL_HOURS),
                )
                await session.commit()

            state = RunState.from_row(row)
            logger.info(
                "Execution started",
                execution_id=state.id,
                workflow_id=workflow_id,
                trigger_node_id=trigger.id,
            )
            await self._emit(state, EventType.STARTED, {
                "triggerNodeId": trigger.id,
                "triggerMessage": text,
            })
            await self._drive(state, graph)

        return await self.get_execution(tenant_id, state.id)

    async def resume(
        self,
        tenant_id: str,
        execution_id: str,
        message_text: str,
        trigger_payload: Optional[dict] = None,
    ) -> WorkflowExecution:
        """Feed an inbound reply to a WAITING execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist for the tenant
            ExecutionLockedError: If another run loop holds this contact
            InvalidExecutionStateError: If the execution is not WAITING
        """
        row = await self._get_row(tenant_id, execution_id)
        key = contact_lock_key(row.tenant_id, row.session_id, row.contact_id)
        async with self.locks.hold(key, self.settings.EXECUTION_LOCK_TTL_SECONDS):
            state = await self._load_state(execution_id)
            if state is None:
                raise ExecutionNotFoundError(execution_id)
            if state.status != ExecutionStatus.WAITING:
                raise InvalidExecutionStateError(execution_id, state.status.value)
            await self._resume_locked(state, message_text or "", trigger_payload)

        return await self.get_execution(tenant_id, execution_id)

    async def get_execution(self, tenant_id: str, execution_id: str) -> WorkflowExecution:
        return await self._get_row(tenant_id, execution_id)

    async def fail_execution(self, execution_id: str, error: str) -> bool:
        """Force a non-terminal execution into ERROR. Returns False if already finished."""
        state = await self._load_state(execution_id)
        if state is None or state.status.is_terminal:
            return False
        await self._fail(state, error)
        return True

    def schedule_wait_resume(
        self,
        execution_id: str,
        delay_seconds: float,
        deadline: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        """Arm the WAIT timer, stamped with the deadline and node it was armed for."""
        self.timers.schedule(
            execution_id,
            delay_seconds,
            functools.partial(self.resume_from_timer, execution_id, deadline, node_id),
        )

    def schedule_reply_timeout(
        self,
        execution_id: str,
        delay_seconds: float,
        deadline: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        self.timers.schedule(
            execution_id,
            delay_seconds,
            functools.partial(self.handle_reply_timeout, execution_id, deadline, node_id),
        )

    async def shutdown(self) -> None:
        """Cancel every pending timer. Deadlines stay persisted for recovery."""
        cancelled = self.timers.cancel_all()
        logger.info("Execution engine stopped", cancelled_timers=cancelled)

    # ─── Timer Entry Points ───────────────────────────────────

    async def resume_from_timer(
        self,
        execution_id: str,
        deadline: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        """Continue an execution whose WAIT elapsed.

        ``deadline`` and ``node_id`` identify the wait the timer was armed
        for. When given, the timer only acts while that same wait is still
        pending; a later wait on the same execution is left alone.
        """
        state = await self._load_state(execution_id)
        if not self._timer_matches(state, WAIT_RESUME_AT, deadline, node_id):
            logger.info("Timer skipped, wait no longer pending", execution_id=execution_id)
            return

        key = state.lock_key
        token = await self._acquire_for_timer(key)
        if token is None:
            await self._rearm_timer(
                execution_id, WAIT_RESUME_AT, deadline, node_id, self.schedule_wait_resume
            )
            return

        try:
            state = await self._load_state(execution_id)
            if not self._timer_matches(state, WAIT_RESUME_AT, deadline, node_id):
                logger.info("Timer skipped, wait no longer pending", execution_id=execution_id)
                return
            if state.is_expired():
                await self._expire(state, "Execution expired")
                return

            graph = await self._load_graph(state)
            state.context.pop_variable(WAIT_RESUME_AT)
            state.status = ExecutionStatus.RUNNING
            await self._persist(state)
            await self._emit(state, EventType.RESUMED, {
                "nodeId": state.current_node_id,
                "reason": "timer",
            })
            await self._drive(state, graph)
        except Exception as e:
            logger.error("WAIT auto-resume failed", execution_id=execution_id, error=str(e))
            await self._fail(state, f"WAIT auto-resume failed: {e}")
        finally:
            await self._release(key, token)

    async def handle_reply_timeout(
        self,
        execution_id: str,
        deadline: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        """Apply a reply wait's onTimeout policy: END expires, GOTO_NODE jumps."""
        state = await self._load_state(execution_id)
        if not self._timer_matches(state, REPLY_TIMEOUT_AT, deadline, node_id):
            logger.info("Reply timeout skipped, wait no longer pending", execution_id=execution_id)
            return

        key = state.lock_key
        token = await self._acquire_for_timer(key)
        if token is None:
            await self._rearm_timer(
                execution_id, REPLY_TIMEOUT_AT, deadline, node_id, self.schedule_reply_timeout
            )
            return

        try:
            state = await self._load_state(execution_id)
            if not self._timer_matches(state, REPLY_TIMEOUT_AT, deadline, node_id):
                logger.info("Reply timeout skipped, wait no longer pending", execution_id=execution_id)
                return
            ctx = state.context

            policy = ctx.get_variable(ON_TIMEOUT) or OnTimeout.END.value
            target = ctx.get_variable(TIMEOUT_TARGET_NODE_ID)
            ctx.clear_reply_wait()
            logger.info(
                "Reply wait timed out",
                execution_id=execution_id,
                node_id=state.current_node_id,
                on_timeout=policy,
            )

            if policy != OnTimeout.GOTO_NODE.value or not target:
                await self._expire(state, "Reply timeout")
                return

            graph = await self._load_graph(state)
            if graph.get_node(target) is None:
                await self._fail(state, f"Timeout target node not found: {target}")
                return

            await self._clear_flow_state(state)
            timed_out_node = state.current_node_id
            state.current_node_id = target
            state.status = ExecutionStatus.RUNNING
            await self._persist(state)
            await self._emit(state, EventType.RESUMED, {
                "nodeId": target,
                "fromNodeId": timed_out_node,
                "reason": "timeout",
            })
            await self._drive(state, graph)
        except Exception as e:
            logger.error("Reply timeout handling failed", execution_id=execution_id, error=str(e))
            await self._fail(state, f"Reply timeout handling failed: {e}")
        finally:
            await self._release(key, token)

    @staticmethod
    def _timer_matches(
        state: Optional[RunState],
        deadline_key: str,
        deadline: Optional[str],
        node_id: Optional[str],
    ) -> bool:
        """True while the wait a timer was armed for is still the pending one."""
        if state is None or state.status != ExecutionStatus.WAITING:
            return False
        pending = state.context.get_variable(deadline_key)
        if pending is None:
            return False
        if deadline is not None and pending != deadline:
            return False
        return node_id is None or state.current_node_id == node_id

    async def _rearm_timer(
        self,
        execution_id: str,
        deadline_key: str,
        deadline: Optional[str],
        node_id: Optional[str],
        schedule,
    ) -> None:
        """Try again later when the contact lock stayed busy.

        The row is not written here: without the lock it may belong to a
        run loop that is moving the execution on.
        """
        state = await self._load_state(execution_id)
        if not self._timer_matches(state, deadline_key, deadline, node_id):
            logger.info("Timer lock busy, wait already moved on", execution_id=execution_id)
            return
        if self.timers.has_timer(execution_id):
            return
        delay = self.settings.TIMER_REARM_DELAY_SECONDS
        logger.warning("Timer lock busy, re-arming", execution_id=execution_id, delay=delay)
        schedule(
            execution_id,
            delay,
            state.context.get_variable(deadline_key),
            state.current_node_id,
        )

    # ─── Resume ───────────────────────────────────────────────

    async def _resume_locked(self, state: RunState, text: str, trigger_payload: Optional[dict]) -> None:
        now = utcnow()
        if state.is_expired(now):
            await self._expire(state, "Execution expired")
            return

        async with self.session_factory() as session:
            count = await ExecutionService(session).increment_interaction_count(state.id)
            await session.commit()
        state.interaction_count = count
        if ExecutionService.is_interaction_limit_reached(count, self.settings.MAX_INTERACTIONS):
            logger.warning("Interaction limit reached", execution_id=state.id, count=count)
            await self._complete(state, reason="Interaction limit reached")
            return

        graph = await self._load_graph(state)
        ctx = state.context
        payload = dict(trigger_payload) if trigger_payload else default_trigger_payload(state.contact_id, text, now)
        ctx.set_variable("triggerPayload", payload)
        ctx.set_variable("triggerMessage", text)
        ctx.input = payload

        node = graph.get_node(state.current_node_id)
        if self.node_executor.waits_for_reply(node):
            try:
                outcome = self.node_executor.process_reply(node, text, payload, ctx, graph)
            except Exception as e:
                await self._fail(state, f"Node {node.type} failed: {e}")
                return

            if not outcome.matched:
                await self._persist(state)
                logger.info("Reply did not match, still waiting", execution_id=state.id, node_id=node.id)
                if outcome.message_to_send is not None:
                    await self._send_best_effort(state, outcome.message_to_send)
                return

            self.timers.cancel(state.id)
            ctx.clear_reply_wait()
            await self._clear_flow_state(state)
            state.current_node_id = outcome.next_node_id
        else:
            self.timers.cancel(state.id)
            ctx.pop_variable(WAIT_RESUME_AT)

        state.status = ExecutionStatus.RUNNING
        await self._persist(state)
        await self._emit(state, EventType.RESUMED, {
            "nodeId": node.id if node else None,
            "reason": "reply",
            "interactionCount": count,
        })
        await self._drive(state, graph)

    async def _clear_stale(self, active: WorkflowExecution) -> None:
        """Force-fail a stale active execution, or refuse to start a new one.

        Raises:
            ActiveExecutionExistsError: If the active execution is still live
        """
        minutes = self.settings.STALE_EXECUTION_MINUTES
        updated = ensure_utc(active.updated_at)
        if updated is not None and updated >= stale_threshold(minutes):
            raise ActiveExecutionExistsError(active.id)

        state = RunState.from_row(active)
        try:
            _, deadline = pending_deadline(state.context)
        except ValueError:
            deadline = None
        if deadline is not None and deadline > utcnow():
            raise ActiveExecutionExistsError(active.id, "waiting")

        await self._fail(
            state,
            f"Auto-expired: execution was stuck in {state.status.value} for over {minutes} minutes",
        )

    # ─── Run Loop ─────────────────────────────────────────────

    async def _drive(self, state: RunState, graph: WorkflowGraph) -> None:
        """Run the loop; infrastructure failures end the execution in ERROR."""
        with structlog.contextvars.bound_contextvars(
            execution_id=state.id,
            tenant_id=state.tenant_id,
        ):
            try:
                await self._run(state, graph)
            except Exception as e:
                logger.error("Run loop failed", error=str(e), exc_info=True)
                await self._fail(state, f"Execution failed: {e}")

    async def _run(self, state: RunState, graph: WorkflowGraph) -> None:
        ctx = state.context
        max_iterations = self.settings.MAX_NODE_ITERATIONS
        iterations = 0

        while state.status == ExecutionStatus.RUNNING:
            if state.current_node_id is None:
                if not self.loops.in_loop(ctx):
                    await self._complete(state)
                    return
                step = self.loops.advance(ctx, graph)
                if step.finished and step.next_node_id is None:
                    await self._complete(state)
                    return
                state.current_node_id = step.next_node_id
                await self._persist(state)
                continue

            iterations += 1
            if iterations > max_iterations:
                await self._fail(
                    state,
                    f"Max iterations ({max_iterations}) exceeded - possible infinite loop",
                )
                return

            node = graph.get_node(state.current_node_id)
            if node is None:
                await self._fail(state, f"Node not found: {state.current_node_id}")
                return

            if self.loops.intercepts(node, ctx):
                step = self.loops.advance(ctx, graph)
                if step.finished and step.next_node_id is None:
                    await self._complete(state)
                    return
                state.current_node_id = step.next_node_id
                await self._persist(state)
                continue

            started = time.monotonic()
            try:
                result = await self.node_executor.execute(node, ctx, graph)
                if result.send_delay_seconds > 0:
                    await asyncio.sleep(result.send_delay_seconds)
                if result.message_to_send is not None:
                    await self.dispatcher.dispatch(state.session_id, state.contact_id, result.message_to_send)
            except Exception as e:
                logger.warning("Node failed", node_id=node.id, node_type=node.type, error=str(e))
                await self._fail(state, f"Node {node.type} failed: {e}")
                return

            ctx.output = result.output
            await self._emit(state, EventType.NODE_EXECUTED, {
                "nodeId": node.id,
                "nodeType": node.type,
                "durationMs": int((time.monotonic() - started) * 1000),
                "output": result.output,
                "variables": ctx.public_variables(),
            })

            if result.should_wait:
                await self._suspend(state, node, result)
                return

            state.current_node_id = result.next_node_id
            await self._persist(state)

    async def _suspend(self, state: RunState, node: Node, result: NodeExecutionResult) -> None:
        now = utcnow()
        ctx = state.context
        state.status = ExecutionStatus.WAITING

        if result.waits_for_reply:
            timeout = float(result.wait_timeout_seconds or self.settings.WAIT_REPLY_DEFAULT_TIMEOUT_SECONDS)
            deadline = now + timedelta(seconds=timeout)
            ctx.set_variable(REPLY_TIMEOUT_AT, to_iso(deadline))
            ctx.set_variable(ON_TIMEOUT, (result.on_timeout or OnTimeout.END).value)
            if result.timeout_target_node_id:
                ctx.set_variable(TIMEOUT_TARGET_NODE_ID, result.timeout_target_node_id)
            else:
                ctx.pop_variable(TIMEOUT_TARGET_NODE_ID)
            state.current_node_id = node.id

            async with self.session_factory() as session:
                await self._write(ExecutionService(session), state)
                await ContactFlowStateService(session).save(
                    tenant_id=state.tenant_id,
                    session_id=state.session_id,
                    contact_id=state.contact_id,
                    workflow_id=state.workflow_id,
                    execution_id=state.id,
                    current_node_id=node.id,
                    variables=ctx.public_variables(),
                    expires_at=deadline,
                )
                await session.commit()

            self.schedule_reply_timeout(state.id, timeout, to_iso(deadline), node.id)
            details = {"waitingFor": "reply", "timeoutAt": to_iso(deadline)}
        else:
            delay = float(result.wait_seconds or 0)
            resume_at = now + timedelta(seconds=delay)
            ctx.set_variable(WAIT_RESUME_AT, to_iso(resume_at))
            state.current_node_id = result.next_node_id
            await self._persist(state)
            self.schedule_wait_resume(state.id, delay, to_iso(resume_at), state.current_node_id)
            details = {"waitingFor": "timer", "resumeAt": to_iso(resume_at)}

        logger.info("Execution waiting", node_id=node.id, **details)
        await self._emit(state, EventType.WAITING, {"nodeId": node.id, "nodeType": node.type, **details})

    # ─── Terminal Transitions ─────────────────────────────────

    async def _complete(self, state: RunState, reason: Optional[str] = None) -> None:
        if reason:
            state.context.output = {**state.context.output, "reason": reason}
        await self._finish(state, ExecutionStatus.COMPLETED, reason=reason)

    async def _fail(self, state: RunState, error: str) -> None:
        logger.error("Execution failed", execution_id=state.id, node_id=state.current_node_id, error=error)
        await self._finish(state, ExecutionStatus.ERROR, error=error)

    async def _expire(self, state: RunState, reason: str) -> None:
        await self._finish(state, ExecutionStatus.EXPIRED, reason=reason)

    async def _finish(
        self,
        state: RunState,
        status: ExecutionStatus,
        error: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        if state.status.is_terminal:
            return
        self.timers.cancel(state.id)
        state.status = status
        if status == ExecutionStatus.COMPLETED:
            state.current_node_id = None

        async with self.session_factory() as session:
            await self._write(
                ExecutionService(session),
                state,
                error=error,
                completed_at=utcnow(),
            )
            await ContactFlowStateService(session).delete(
                state.session_id, state.contact_id, execution_id=state.id
            )
            await session.commit()

        payload: dict[str, Any] = {"nodeId": state.current_node_id}
        if error:
            payload["error"] = error
        if reason:
            payload["reason"] = reason
        if status == ExecutionStatus.COMPLETED:
            payload["output"] = state.context.output

        event_type = {
            ExecutionStatus.COMPLETED: EventType.COMPLETED,
            ExecutionStatus.ERROR: EventType.ERROR,
            ExecutionStatus.EXPIRED: EventType.EXPIRED,
        }[status]
        logger.info("Execution finished", execution_id=state.id, status=status.value)
        await self._emit(state, event_type, payload)

    # ─── Store, Locks & Events ────────────────────────────────

    async def _get_row(self, tenant_id: str, execution_id: str) -> WorkflowExecution:
        async with self.session_factory() as session:
            row = await ExecutionService(session).get_execution(tenant_id, execution_id)
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return row

    async def _load_state(self, execution_id: str) -> Optional[RunState]:
        async with self.session_factory() as session:
            row = await ExecutionService(session).get_by_id(execution_id)
        return RunState.from_row(row) if row else None

    async def _load_graph(self, state: RunState) -> WorkflowGraph:
        async with self.session_factory() as session:
            workflow = await WorkflowService(session).get_for_tenant(state.tenant_id, state.workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(state.workflow_id)
        return WorkflowGraph.from_workflow(workflow)

    @staticmethod
    async def _write(service: ExecutionService, state: RunState, **extra: Any) -> None:
        await service.update_execution(
            state.id,
            status=state.status,
            current_node_id=state.current_node_id,
            context=state.context.to_dict(),
            **extra,
        )

    async def _persist(self, state: RunState) -> None:
        async with self.session_factory() as session:
            await self._write(ExecutionService(session), state)
            await session.commit()

    async def _clear_flow_state(self, state: RunState) -> None:
        async with self.session_factory() as session:
            await ContactFlowStateService(session).delete(
                state.session_id, state.contact_id, execution_id=state.id
            )
            await session.commit()

    async def _acquire_for_timer(self, key: str) -> Optional[str]:
        lease = self.settings.TIMER_LOCK_TTL_SECONDS
        token = await self.locks.acquire(key, lease)
        if token is not None:
            return token
        logger.info("Timer lock busy, retrying once", key=key)
        await asyncio.sleep(self.settings.TIMER_LOCK_RETRY_DELAY_SECONDS)
        return await self.locks.acquire(key, lease)

    async def _release(self, key: str, token: str) -> None:
        try:
            if not await self.locks.release(key, token):
                logger.warning("Timer lock lease lapsed before release", key=key)
        except Exception as e:
            logger.error("Lock release failed", key=key, error=str(e))

    async def _send_best_effort(self, state: RunState, message: MessageToSend) -> None:
        try:
            await self.dispatcher.dispatch(state.session_id, state.contact_id, message)
        except Exception as e:
            logger.warning("Prompt resend failed", execution_id=state.id, error=str(e))

    async def _emit(self, state: RunState, event_type: EventType, payload: dict) -> None:
        event = ExecutionEvent(
            type=event_type,
            tenant_id=state.tenant_id,
            execution_id=state.id,
            workflow_id=state.workflow_id,
            session_id=state.session_id,
            contact_id=state.contact_id,
            payload=payload,
        )
        try:
            await self.events.emit(event)
        except Exception as e:
            logger.error("Event emission failed", event_type=event_type.value, error=str(e))
