"""Tests for the execution engine state machine."""

import asyncio
from datetime import timedelta

import pytest

from core.constants import ExecutionStatus
from core.exceptions import (
    ActiveExecutionExistsError,
    ExecutionLockedError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    NoTriggerNodeError,
    WorkflowNotFoundError,
)
from core.locks import contact_lock_key
from core.utils import utcnow
from factories import CONTACT, SESSION, TENANT, chain, edge, greeting_workflow, node
from messaging.gateway import MessageDispatcher
from services.contact_service import ContactFlowStateService, ContactTagsService
from services.workflow_service import ExecutionService
from workflow.context import REPLY_TIMEOUT_AT, WAIT_RESUME_AT
from workflow.engine import ExecutionEngine
from workflow.events import FanoutEventSink, JournalEventSink


async def start(engine, workflow, text="hi", contact=CONTACT):
    return await engine.start(TENANT, workflow.id, SESSION, contact, trigger_text=text)


async def flow_state(session_factory, contact=CONTACT):
    async with session_factory() as session:
        return await ContactFlowStateService(session).get(SESSION, contact)


async def set_fields(session_factory, execution_id, **fields):
    async with session_factory() as session:
        await ExecutionService(session).update_execution(execution_id, **fields)
        await session.commit()


# ─── Conversation round trip ───

@pytest.mark.integration
class TestConversation:
    async def test_greeting_flow(self, engine, create_workflow, gateway, events, session_factory):
        workflow = await create_workflow(*greeting_workflow())

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.current_node_id == "wait"
        assert gateway.texts == ["What's your name?"]
        assert execution.context["variables"]["triggerMessage"] == "hi"
        assert REPLY_TIMEOUT_AT in execution.context["variables"]

        state = await flow_state(session_factory)
        assert state is not None
        assert state.execution_id == execution.id
        assert state.current_node_id == "wait"

        execution = await engine.resume(TENANT, execution.id, "Ana")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.current_node_id is None
        assert execution.completed_at is not None
        assert execution.interaction_count == 1
        assert gateway.texts == ["What's your name?", "Hello, Ana!"]
        assert execution.context["output"] == {"name": "Ana"}
        assert REPLY_TIMEOUT_AT not in execution.context["variables"]
        assert await flow_state(session_factory) is None

        assert events.types(execution.id) == [
            "execution.started",
            "execution.node_executed",
            "execution.node_executed",
            "execution.waiting",
            "execution.resumed",
            "execution.node_executed",
            "execution.node_executed",
            "execution.completed",
        ]

    async def test_contact_tags_exposed_to_context(self, engine, create_workflow, session_factory):
        async with session_factory() as session:
            await ContactTagsService(session).add_tags(TENANT, SESSION, CONTACT, ["vip"])
            await session.commit()
        workflow = await create_workflow(*greeting_workflow())

        execution = await start(engine, workflow)
        assert execution.context["variables"]["contactTags"] == ["vip"]

    async def test_linear_workflow_completes_in_one_call(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MESSAGE", pattern="menu"),
            node("set", "SET_VARIABLE", variables={"greeting": "Hi {{ triggerMessage }}"}),
            node("say", "SEND_MESSAGE", message="{{greeting}}!"),
            node("end", "END", outputVariables=["greeting"]),
        ]
        workflow = await create_workflow(nodes, chain("t", "set", "say", "end"))

        execution = await start(engine, workflow, text="menu")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["Hi menu!"]
        assert execution.context["output"] == {"greeting": "Hi menu"}

    async def test_condition_branches(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("set", "SET_VARIABLE", variables={"age": 20}),
            node("check", "CONDITION", expression="age >= 18"),
            node("adult", "SEND_MESSAGE", message="adult"),
            node("minor", "SEND_MESSAGE", message="minor"),
            node("end", "END"),
        ]
        edges = chain("t", "set", "check") + [
            edge("check", "adult", condition="true"),
            edge("check", "minor", condition="false"),
            edge("adult", "end"),
            edge("minor", "end"),
        ]
        workflow = await create_workflow(nodes, edges)

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["adult"]

    async def test_switch_default_route(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MESSAGE"),
            node("route", "SWITCH", rules=[
                {"value1": "{{triggerMessage}}", "operator": "==", "value2": "1", "outputKey": "sales"},
                {"value1": "{{triggerMessage}}", "operator": "==", "value2": "2", "outputKey": "support"},
            ]),
            node("sales", "SEND_MESSAGE", message="sales"),
            node("support", "SEND_MESSAGE", message="support"),
            node("other", "SEND_MESSAGE", message="other"),
            node("end", "END"),
        ]
        edges = [
            edge("t", "route"),
            edge("route", "sales", condition="sales"),
            edge("route", "support", condition="support"),
            edge("route", "other", condition="default"),
            edge("sales", "end"),
            edge("support", "end"),
            edge("other", "end"),
        ]
        workflow = await create_workflow(nodes, edges)

        await start(engine, workflow, text="2", contact="c-1")
        await start(engine, workflow, text="9", contact="c-2")
        assert gateway.texts == ["support", "other"]

    async def test_loop_sends_once_per_item(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("each", "LOOP", items=["a", "b", "c"]),
            node("body", "SEND_MESSAGE", message="Item {{index}}: {{item}}"),
            node("bye", "SEND_MESSAGE", message="done"),
            node("end", "END"),
        ]
        edges = [
            edge("t", "each"),
            edge("each", "body", condition="loop"),
            edge("each", "bye", condition="done"),
            edge("bye", "end"),
        ]
        workflow = await create_workflow(nodes, edges)

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["Item 0: a", "Item 1: b", "Item 2: c", "done"]
        assert not any(k.startswith("_loop") for k in execution.context["variables"])


# ─── Failure paths ───

@pytest.mark.integration
class TestFailures:
    async def test_missing_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            await engine.start(TENANT, "missing", SESSION, CONTACT, trigger_text="hi")

    async def test_workflow_of_other_tenant_is_not_found(self, engine, create_workflow):
        workflow = await create_workflow(*greeting_workflow(), tenant_id="tenant-2")
        with pytest.raises(WorkflowNotFoundError):
            await start(engine, workflow)

    async def test_workflow_without_trigger(self, engine, create_workflow):
        nodes = [node("say", "SEND_MESSAGE", message="x"), node("end", "END")]
        workflow = await create_workflow(nodes, chain("say", "end"), is_active=False)
        with pytest.raises(NoTriggerNodeError):
            await start(engine, workflow)

    async def test_node_failure_ends_in_error(self, engine, create_workflow, events):
        nodes = [node("t", "TRIGGER_MANUAL"), node("media", "SEND_MEDIA", mediaType="image"), node("end", "END")]
        workflow = await create_workflow(nodes, chain("t", "media", "end"))

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.ERROR.value
        assert execution.error == "Node SEND_MEDIA failed: SEND_MEDIA requires a url"
        assert execution.completed_at is not None
        assert events.types(execution.id)[-1] == "execution.error"

    async def test_unknown_node_type_fails(self, engine, create_workflow):
        nodes = [node("t", "TRIGGER_MANUAL"), node("x", "TELEPORT"), node("end", "END")]
        workflow = await create_workflow(nodes, chain("t", "x", "end"), is_active=False)

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.ERROR.value
        assert execution.error == "Node TELEPORT failed: Unknown node type: TELEPORT"

    async def test_missing_target_node_fails(self, engine, create_workflow):
        nodes = [node("t", "TRIGGER_MANUAL"), node("end", "END")]
        workflow = await create_workflow(nodes, [edge("t", "ghost")], is_active=False)

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.ERROR.value
        assert execution.error == "Node not found: ghost"

    async def test_iteration_ceiling_stops_cycles(self, make_engine, create_workflow):
        engine = make_engine(MAX_NODE_ITERATIONS=10)
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("a", "SET_VARIABLE", variables={"x": 1}),
            node("b", "SET_VARIABLE", variables={"y": 2}),
            node("end", "END"),
        ]
        edges = chain("t", "a", "b") + [edge("b", "a")]
        workflow = await create_workflow(nodes, edges, is_active=False)

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.ERROR.value
        assert execution.error == "Max iterations (10) exceeded - possible infinite loop"

    async def test_transient_send_failures_are_retried(self, engine, create_workflow, gateway):
        gateway.fail_next = 2
        workflow = await create_workflow(*greeting_workflow())

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.WAITING.value
        assert gateway.attempts == 3
        assert gateway.texts == ["What's your name?"]

    async def test_exhausted_send_retries_fail_execution(self, engine, create_workflow, gateway):
        gateway.fail_next = 3
        workflow = await create_workflow(*greeting_workflow())

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.ERROR.value
        assert execution.error == "Node SEND_MESSAGE failed: Session not ready: session-1"
        assert gateway.attempts == 3

    async def test_never_left_running(self, engine, create_workflow, gateway, session_factory):
        gateway.error = RuntimeError("socket closed")
        workflow = await create_workflow(*greeting_workflow())

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.ERROR.value
        async with session_factory() as session:
            pending = await ExecutionService(session).list_pending()
        assert pending == []


# ─── Resume semantics ───

@pytest.mark.integration
class TestResume:
    async def test_resume_unknown_execution(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            await engine.resume(TENANT, "nope", "hello")

    async def test_resume_other_tenant_is_not_found(self, engine, create_workflow):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        with pytest.raises(ExecutionNotFoundError):
            await engine.resume("tenant-2", execution.id, "Ana")

    async def test_resume_completed_execution_rejected(self, engine, create_workflow):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        await engine.resume(TENANT, execution.id, "Ana")

        with pytest.raises(InvalidExecutionStateError):
            await engine.resume(TENANT, execution.id, "again")

    async def test_expired_execution_is_not_resumed(self, engine, create_workflow, gateway, events, session_factory):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        await set_fields(session_factory, execution.id, expires_at=utcnow() - timedelta(minutes=1))

        execution = await engine.resume(TENANT, execution.id, "Ana")
        assert execution.status == ExecutionStatus.EXPIRED.value
        assert gateway.texts == ["What's your name?"]
        assert events.of_type("execution.expired")[0].payload["reason"] == "Execution expired"
        assert await flow_state(session_factory) is None

    async def test_interaction_limit_completes(self, make_engine, create_workflow):
        engine = make_engine(MAX_INTERACTIONS=1)
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("wait", "WAIT_REPLY", saveAs="answer", keywords=["yes"]),
            node("end", "END"),
        ]
        workflow = await create_workflow(nodes, chain("t", "wait", "end"))
        execution = await start(engine, workflow)

        execution = await engine.resume(TENANT, execution.id, "maybe")
        assert execution.status == ExecutionStatus.WAITING.value

        execution = await engine.resume(TENANT, execution.id, "perhaps")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.interaction_count == 2
        assert execution.context["output"]["reason"] == "Interaction limit reached"

    async def test_keyword_mismatch_keeps_waiting(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("wait", "WAIT_REPLY", saveAs="answer", keywords=["sim", "não"],
                 retryMessage="Responda sim ou não"),
            node("yes", "SEND_MESSAGE", message="Ótimo"),
            node("no", "SEND_MESSAGE", message="Tudo bem"),
            node("end", "END"),
        ]
        edges = [
            edge("t", "wait"),
            edge("wait", "yes", condition="sim"),
            edge("wait", "no", condition="não"),
            edge("yes", "end"),
            edge("no", "end"),
        ]
        workflow = await create_workflow(nodes, edges)
        execution = await start(engine, workflow)

        execution = await engine.resume(TENANT, execution.id, "talvez")
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.current_node_id == "wait"
        assert execution.interaction_count == 1
        assert gateway.texts == ["Responda sim ou não"]
        assert engine.timers.has_timer(execution.id)

        execution = await engine.resume(TENANT, execution.id, "  NÃO ")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["Responda sim ou não", "Tudo bem"]
        assert execution.context["variables"]["answer"] == "  NÃO "

    async def test_buttons_route_by_selection(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("ask", "SEND_BUTTONS", message="Continue?", saveAs="choice", buttons=[
                {"id": "yes", "text": "Yes"},
                {"id": "no", "text": "No"},
            ]),
            node("y", "SEND_MESSAGE", message="You chose {{choice}} ({{choiceId}})"),
            node("n", "SEND_MESSAGE", message="Maybe later"),
            node("end", "END"),
        ]
        edges = [
            edge("t", "ask"),
            edge("ask", "y", condition="yes"),
            edge("ask", "n", condition="no"),
            edge("y", "end"),
            edge("n", "end"),
        ]
        workflow = await create_workflow(nodes, edges)

        first = await start(engine, workflow, contact="c-1")
        assert gateway.sent[0]["kind"] == "buttons"
        assert first.current_node_id == "ask"
        first = await engine.resume(TENANT, first.id, "yes please")
        assert first.status == ExecutionStatus.WAITING.value

        first = await engine.resume(TENANT, first.id, "Yes")
        assert first.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts[-1] == "You chose Yes (yes)"

        second = await start(engine, workflow, contact="c-2")
        second = await engine.resume(TENANT, second.id, "", {"type": "text", "text": "", "selectedId": "no"})
        assert second.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts[-1] == "Maybe later"

    async def test_list_selection_by_position(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("menu", "SEND_LIST", message="Pick", buttonText="Menu", saveAs="plan", sections=[
                {"title": "Plans", "rows": [{"id": "basic", "title": "Basic"}, {"id": "pro", "title": "Pro"}]},
            ]),
            node("say", "SEND_MESSAGE", message="Plan: {{plan}}"),
            node("end", "END"),
        ]
        edges = [edge("t", "menu"), edge("menu", "say"), edge("say", "end")]
        workflow = await create_workflow(nodes, edges)

        execution = await start(engine, workflow)
        assert gateway.sent[0]["kind"] == "list"
        execution = await engine.resume(TENANT, execution.id, "2")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts[-1] == "Plan: Pro"

    async def test_payment_confirmation(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("pay", "PAYMENT_CONFIRMATION", message="Send the receipt",
                 invalidMessage="Please send an image or PDF"),
            node("thanks", "SEND_MESSAGE", message="Thanks!"),
            node("end", "END"),
        ]
        edges = [edge("t", "pay"), edge("pay", "thanks", condition="confirmed"), edge("thanks", "end")]
        workflow = await create_workflow(nodes, edges)

        execution = await start(engine, workflow)
        assert gateway.texts == ["Send the receipt"]

        execution = await engine.resume(TENANT, execution.id, "paid already")
        assert execution.status == ExecutionStatus.WAITING.value
        assert gateway.texts[-1] == "Please send an image or PDF"

        media_payload = {
            "type": "media",
            "text": "",
            "media": {"mimetype": "application/pdf", "url": "https://files.example/r.pdf"},
        }
        execution = await engine.resume(TENANT, execution.id, "", media_payload)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts[-1] == "Thanks!"
        receipt = execution.context["variables"]["receipt"]
        assert receipt["kind"] == "document"
        assert receipt["url"] == "https://files.example/r.pdf"


# ─── Timers ───

@pytest.mark.integration
class TestTimers:
    async def test_wait_node_suspends_and_resumes(self, engine, create_workflow, gateway, events):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("pause", "WAIT", amount=30, unit="seconds"),
            node("after", "SEND_MESSAGE", message="done"),
            node("end", "END"),
        ]
        workflow = await create_workflow(nodes, chain("t", "pause", "after", "end"))

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.current_node_id == "after"
        assert WAIT_RESUME_AT in execution.context["variables"]
        assert engine.timers.has_timer(execution.id)

        engine.timers.cancel(execution.id)
        await engine.resume_from_timer(execution.id)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["done"]
        assert WAIT_RESUME_AT not in execution.context["variables"]
        assert events.of_type("execution.resumed")[0].payload["reason"] == "timer"

    async def test_wait_timer_fires(self, engine, create_workflow, gateway):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("pause", "WAIT", seconds=0.05),
            node("after", "SEND_MESSAGE", message="done"),
            node("end", "END"),
        ]
        workflow = await create_workflow(nodes, chain("t", "pause", "after", "end"))

        execution = await start(engine, workflow)
        task = engine.timers.task_for(execution.id)
        assert task is not None
        await asyncio.wait_for(task, timeout=5)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["done"]

    async def test_wait_as_last_node_completes(self, engine, create_workflow):
        nodes = [node("t", "TRIGGER_MANUAL"), node("pause", "WAIT", seconds=10)]
        workflow = await create_workflow(nodes, chain("t", "pause"), is_active=False)

        execution = await start(engine, workflow)
        assert execution.current_node_id is None
        engine.timers.cancel(execution.id)
        await engine.resume_from_timer(execution.id)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value

    async def test_timer_for_finished_execution_is_ignored(self, engine, create_workflow):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        await engine.resume(TENANT, execution.id, "Ana")

        await engine.resume_from_timer(execution.id)
        await engine.handle_reply_timeout(execution.id)
        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value

    async def test_reply_timeout_expires(self, engine, create_workflow, events, session_factory):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        engine.timers.cancel(execution.id)

        await engine.handle_reply_timeout(execution.id)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.EXPIRED.value
        assert events.of_type("execution.expired")[0].payload["reason"] == "Reply timeout"
        assert await flow_state(session_factory) is None

    async def test_reply_timeout_goto_node(self, engine, create_workflow, gateway, events):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("wait", "WAIT_REPLY", saveAs="answer", timeoutSeconds=5,
                 onTimeout="GOTO_NODE", timeoutTargetNodeId="nudge"),
            node("thanks", "SEND_MESSAGE", message="Thanks"),
            node("nudge", "SEND_MESSAGE", message="Still there?"),
            node("end", "END"),
        ]
        edges = chain("t", "wait", "thanks", "end") + [edge("nudge", "end")]
        workflow = await create_workflow(nodes, edges)
        execution = await start(engine, workflow)
        engine.timers.cancel(execution.id)

        await engine.handle_reply_timeout(execution.id)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert gateway.texts == ["Still there?"]
        resumed = events.of_type("execution.resumed")[0]
        assert resumed.payload["reason"] == "timeout"
        assert resumed.payload["nodeId"] == "nudge"

    async def test_shutdown_cancels_timers(self, engine, create_workflow):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        assert engine.timers.has_timer(execution.id)

        await engine.shutdown()
        assert engine.timers.pending() == []
        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.WAITING.value


# ─── Concurrency ───

@pytest.mark.integration
class TestConcurrency:
    async def test_start_rejected_while_contact_locked(self, engine, create_workflow, locks, session_factory):
        workflow = await create_workflow(*greeting_workflow())
        await locks.acquire(contact_lock_key(TENANT, SESSION, CONTACT), 30)

        with pytest.raises(ExecutionLockedError):
            await start(engine, workflow)
        async with session_factory() as session:
            assert await ExecutionService(session).get_active_execution(TENANT, SESSION, CONTACT) is None

    async def test_resume_rejected_while_contact_locked(self, engine, create_workflow, locks):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        await locks.acquire(contact_lock_key(TENANT, SESSION, CONTACT), 30)

        with pytest.raises(ExecutionLockedError):
            await engine.resume(TENANT, execution.id, "Ana")
        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.WAITING.value

    async def test_lock_released_after_run(self, engine, create_workflow, locks):
        workflow = await create_workflow(*greeting_workflow())
        await start(engine, workflow)
        assert not locks.is_locked(contact_lock_key(TENANT, SESSION, CONTACT))

    async def test_timer_rearms_when_lock_stays_busy(self, make_engine, create_workflow, locks, events):
        engine = make_engine(TIMER_REARM_DELAY_SECONDS=60)
        nodes = [node("t", "TRIGGER_MANUAL"), node("pause", "WAIT", seconds=30), node("end", "END")]
        workflow = await create_workflow(nodes, chain("t", "pause", "end"))
        execution = await start(engine, workflow)
        deadline = execution.context["variables"][WAIT_RESUME_AT]
        engine.timers.cancel(execution.id)
        await locks.acquire(contact_lock_key(TENANT, SESSION, CONTACT), 30)

        await engine.resume_from_timer(execution.id, deadline, "end")

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.error is None
        assert events.of_type("execution.error") == []
        assert engine.timers.has_timer(execution.id)

    async def test_rearmed_timer_resumes_once_lock_is_free(self, make_engine, create_workflow, locks):
        engine = make_engine(TIMER_REARM_DELAY_SECONDS=0.05)
        nodes = [node("t", "TRIGGER_MANUAL"), node("pause", "WAIT", seconds=30), node("end", "END")]
        workflow = await create_workflow(nodes, chain("t", "pause", "end"))
        execution = await start(engine, workflow)
        engine.timers.cancel(execution.id)
        key = contact_lock_key(TENANT, SESSION, CONTACT)
        token = await locks.acquire(key, 30)

        await engine.resume_from_timer(execution.id)
        rearmed = engine.timers.task_for(execution.id)
        assert rearmed is not None
        await locks.release(key, token)
        await asyncio.wait_for(rearmed, timeout=5)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value

    async def test_stale_reply_timeout_leaves_later_wait_alone(self, make_engine, create_workflow, locks):
        engine = make_engine(TIMER_LOCK_RETRY_DELAY_SECONDS=0.5)
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("a", "WAIT_REPLY", saveAs="first", timeoutSeconds=0.2),
            node("b", "WAIT_REPLY", saveAs="second", timeoutSeconds=300),
            node("end", "END"),
        ]
        workflow = await create_workflow(nodes, chain("t", "a", "b", "end"))
        execution = await start(engine, workflow)
        first_timer = engine.timers.task_for(execution.id)
        key = contact_lock_key(TENANT, SESSION, CONTACT)
        token = await locks.acquire(key, 30)

        # Timer for "a" fires while the lock is held and waits to retry.
        await asyncio.sleep(0.3)
        await locks.release(key, token)
        await engine.resume(TENANT, execution.id, "Ana")
        await asyncio.wait_for(first_timer, timeout=5)

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.current_node_id == "b"
        assert execution.context["variables"]["first"] == "Ana"
        assert REPLY_TIMEOUT_AT in execution.context["variables"]
        assert engine.timers.has_timer(execution.id)

    async def test_timer_for_earlier_wait_is_ignored(self, engine, create_workflow):
        nodes = [
            node("t", "TRIGGER_MANUAL"),
            node("a", "WAIT_REPLY", saveAs="first", timeoutSeconds=60),
            node("b", "WAIT_REPLY", saveAs="second", timeoutSeconds=60),
            node("end", "END"),
        ]
        workflow = await create_workflow(nodes, chain("t", "a", "b", "end"))
        execution = await start(engine, workflow)
        stale_deadline = execution.context["variables"][REPLY_TIMEOUT_AT]
        await engine.resume(TENANT, execution.id, "Ana")

        await engine.handle_reply_timeout(execution.id, stale_deadline, "a")

        execution = await engine.get_execution(TENANT, execution.id)
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.current_node_id == "b"

    async def test_second_start_rejected_while_waiting(self, engine, create_workflow):
        workflow = await create_workflow(*greeting_workflow())
        await start(engine, workflow)

        with pytest.raises(ActiveExecutionExistsError):
            await start(engine, workflow)

    async def test_stale_waiting_with_future_deadline_still_blocks(self, engine, create_workflow, session_factory):
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        await set_fields(session_factory, execution.id, updated_at=utcnow() - timedelta(hours=2))

        with pytest.raises(ActiveExecutionExistsError):
            await start(engine, workflow)

    async def test_stuck_running_execution_is_cleared(self, engine, create_workflow, session_factory):
        workflow = await create_workflow(*greeting_workflow())
        async with session_factory() as session:
            stuck = await ExecutionService(session).create_execution(
                tenant_id=TENANT,
                workflow_id=workflow.id,
                session_id=SESSION,
                contact_id=CONTACT,
                current_node_id="ask",
                context={"variables": {}, "input": {}, "output": {}},
                expires_at=utcnow() + timedelta(hours=1),
            )
            await session.commit()
        await set_fields(session_factory, stuck.id, updated_at=utcnow() - timedelta(hours=2))

        execution = await start(engine, workflow)
        assert execution.status == ExecutionStatus.WAITING.value

        stuck = await engine.get_execution(TENANT, stuck.id)
        assert stuck.status == ExecutionStatus.ERROR.value
        assert stuck.error == "Auto-expired: execution was stuck in RUNNING for over 30 minutes"


# ─── Journal ───

@pytest.mark.integration
class TestJournal:
    async def test_events_are_journaled(self, session_factory, gateway, events, locks, settings, create_workflow):
        journal = JournalEventSink(session_factory)
        engine = ExecutionEngine(
            session_factory=session_factory,
            lock_manager=locks,
            dispatcher=MessageDispatcher.from_settings(gateway, settings),
            event_sink=FanoutEventSink([events, journal]),
            settings=settings,
        )
        workflow = await create_workflow(*greeting_workflow())
        execution = await start(engine, workflow)
        await engine.shutdown()

        entries = await journal.get_journal(execution.id)
        assert {e["event_type"] for e in entries} == {
            "execution.started",
            "execution.node_executed",
            "execution.waiting",
        }
        waiting = await journal.get_journal(execution.id, event_type="execution.waiting")
        assert len(waiting) == 1
        assert waiting[0]["node_id"] == "wait"
        assert waiting[0]["severity"] == "info"
