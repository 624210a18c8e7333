"""Inbound message router.

Decides what an incoming chat message means for a contact:

1. A reply the contact's suspended execution is waiting for → resume
2. Otherwise, a message matching an active workflow trigger → start
3. Otherwise, nothing

Messages sent by the session itself (``fromMe``) are ignored.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ExecutionStatus, MatchType
from core.exceptions import ExecutionNotFoundError, InvalidExecutionStateError
from core.utils import ensure_utc, utcnow
from services.contact_service import ContactFlowStateService
from services.workflow_service import ExecutionService, WorkflowService
from workflow.definition import TriggerMessageNode, WorkflowGraph
from workflow.engine import ExecutionEngine

logger = logging.getLogger(__name__)


@dataclass
class RouteResult:
    """What the router did with a message."""

    action: str  # resumed, started, ignored, no_match
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None


def normalize_payload(contact_id: str, message: Union[str, dict, None]) -> dict[str, Any]:
    """Coerce a raw inbound message into the payload shape stored in context."""
    raw = {"text": message} if isinstance(message, str) else dict(message or {})
    media = raw.get("media")
    kind = "media" if media else (raw.get("type") or "text")
    text = raw.get("text")
    if text is None:
        text = raw.get("body") or (media or {}).get("caption") or ""
    timestamp = raw.get("timestamp") or int(utcnow().timestamp() * 1000)
    return {
        "messageId": raw.get("messageId") or raw.get("id") or f"{kind}-{timestamp}",
        "from": raw.get("from") or contact_id,
        "fromMe": bool(raw.get("fromMe", False)),
        "type": kind,
        "text": text,
        "media": media,
        "timestamp": timestamp,
    }


def _matches_pattern(pattern: str, text: str, match_type: str) -> bool:
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        return re.search(pattern[1:-1], text, re.IGNORECASE) is not None
    if match_type == MatchType.REGEX.value:
        return re.search(pattern, text, re.IGNORECASE) is not None

    needle = pattern.lower()
    haystack = text.strip().lower()
    if match_type == MatchType.STARTS_WITH.value:
        return haystack.startswith(needle)
    if match_type == MatchType.CONTAINS.value:
        return needle in haystack
    return haystack == needle


def match_trigger(node: TriggerMessageNode, text: str, session_id: Optional[str] = None) -> bool:
    """Whether an inbound text fires a TRIGGER_MESSAGE node.

    ``pattern`` is a comma-separated list; any entry matching fires the
    trigger. An empty pattern matches every message. Invalid regexes
    never match.
    """
    config = node.config
    if config.session_id and session_id and config.session_id != session_id:
        return False

    patterns = [p.strip() for p in (config.pattern or "").split(",") if p.strip()]
    if not patterns:
        return True

    for pattern in patterns:
        try:
            if _matches_pattern(pattern, text or "", config.match_type):
                return True
        except re.error as e:
            logger.warning(f"Invalid trigger pattern {pattern!r} on node {node.id}: {e}")
    return False


class InboundMessageRouter:
    """Routes inbound messages to the execution engine."""

    def __init__(self, engine: ExecutionEngine, session_factory: async_sessionmaker[AsyncSession]):
        self.engine = engine
        self.session_factory = session_factory

    async def handle_message(
        self,
        tenant_id: str,
        session_id: str,
        contact_id: str,
        message: Union[str, dict],
    ) -> RouteResult:
        """Resume or start an execution for one inbound message.

        Raises:
            ExecutionLockedError: If the contact's run loop is busy
            ActiveExecutionExistsError: If a trigger matched while another
                execution is still live for the contact
        """
        payload = normalize_payload(contact_id, message)
        if payload["fromMe"]:
            return RouteResult(action="ignored")
        text = payload["text"] or ""

        execution_id = await self._find_waiting_execution(tenant_id, session_id, contact_id)
        if execution_id is not None:
            try:
                execution = await self.engine.resume(tenant_id, execution_id, text, payload)
            except (ExecutionNotFoundError, InvalidExecutionStateError) as e:
                logger.info(f"Dropping reply route to {execution_id}: {e.message}")
                await self._delete_flow_state(session_id, contact_id, execution_id)
            else:
                return RouteResult("resumed", execution.id, execution.workflow_id)

        async with self.session_factory() as session:
            workflows = await WorkflowService(session).list_active(tenant_id)

        for workflow in workflows:
            graph = WorkflowGraph.from_workflow(workflow)
            for trigger in graph.message_triggers():
                if not match_trigger(trigger, text, session_id):
                    continue
                logger.info(f"Message from {contact_id} matched workflow {workflow.id} (trigger {trigger.id})")
                execution = await self.engine.start(
                    tenant_id,
                    workflow.id,
                    session_id,
                    contact_id,
                    trigger_text=text,
                    trigger_payload=payload,
                    trigger_node_id=trigger.id,
                )
                return RouteResult("started", execution.id, workflow.id)

        return RouteResult(action="no_match")

    async def _find_waiting_execution(
        self,
        tenant_id: str,
        session_id: str,
        contact_id: str,
    ) -> Optional[str]:
        async with self.session_factory() as session:
            flow_state = await ContactFlowStateService(session).get(session_id, contact_id)
            if flow_state is not None and flow_state.tenant_id == tenant_id:
                expires_at = ensure_utc(flow_state.expires_at)
                if expires_at is None or expires_at > utcnow():
                    return flow_state.execution_id
                logger.info(f"Flow state for {contact_id} expired, removing")
                await ContactFlowStateService(session).delete(session_id, contact_id)
                await session.commit()

            active = await ExecutionService(session).get_active_execution(
                tenant_id, session_id, contact_id, statuses=(ExecutionStatus.WAITING,)
            )
        return active.id if active else None

    async def _delete_flow_state(self, session_id: str, contact_id: str, execution_id: str) -> None:
        async with self.session_factory() as session:
            await ContactFlowStateService(session).delete(session_id, contact_id, execution_id=execution_id)
            await session.commit()
