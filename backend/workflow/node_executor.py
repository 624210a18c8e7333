"""Node executor: per-node-type semantics.

Given one node and the execution context, computes where execution goes
next, what (if anything) must be sent to the contact, and whether the
run must suspend. Dispatch is a table keyed by node model class; a node
without a handler is a fatal UnknownNodeTypeError, never skipped.

Resume-time transitions (a reply arriving at WAIT_REPLY, SEND_BUTTONS,
SEND_LIST or PAYMENT_CONFIRMATION) live in ``process_reply``: the edge is
chosen by matching the reply against data stored at send time, and a
reply that matches nothing can leave the execution waiting.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.constants import EdgeCondition, OnTimeout
from core.exceptions import NodeExecutionError, UnknownNodeTypeError
from messaging.gateway import MessageToSend
from workflow.context import (
    BUTTON_MAP,
    ExecutionContext,
    RESERVED_PREFIX,
    apply_operator,
    evaluate_condition,
    interpolate,
    resolve_value,
)
from workflow.definition import (
    ConditionNode,
    EndNode,
    LoopNode,
    Node,
    PaymentConfirmationNode,
    ReplyWaitConfig,
    SendButtonsNode,
    SendListNode,
    SendMediaNode,
    SendMessageNode,
    SetVariableNode,
    SwitchNode,
    TriggerManualNode,
    TriggerMessageNode,
    TriggerScheduleNode,
    WaitNode,
    WaitReplyNode,
    WorkflowGraph,
)
from workflow.loop import LoopController, coerce_items

logger = structlog.get_logger(__name__)

DEFAULT_REPLY_TIMEOUT_SECONDS = 300


@dataclass
class NodeExecutionResult:
    """What the engine should do after running one node."""

    next_node_id: Optional[str]
    output: dict[str, Any] = field(default_factory=dict)
    should_wait: bool = False
    waits_for_reply: bool = False
    wait_seconds: Optional[float] = None
    wait_timeout_seconds: Optional[float] = None
    on_timeout: Optional[OnTimeout] = None
    timeout_target_node_id: Optional[str] = None
    message_to_send: Optional[MessageToSend] = None
    send_delay_seconds: float = 0.0


@dataclass
class ReplyOutcome:
    """Result of matching an inbound reply against a waiting node."""

    matched: bool
    next_node_id: Optional[str] = None
    message_to_send: Optional[MessageToSend] = None


class NodeExecutor:
    """Executes one node at a time against an ExecutionContext."""

    def __init__(
        self,
        loops: Optional[LoopController] = None,
        default_reply_timeout: float = DEFAULT_REPLY_TIMEOUT_SECONDS,
    ):
        self.loops = loops or LoopController()
        self.default_reply_timeout = default_reply_timeout
        self._handlers = {
            TriggerMessageNode: self._execute_trigger,
            TriggerScheduleNode: self._execute_trigger,
            TriggerManualNode: self._execute_trigger,
            SendMessageNode: self._execute_send_message,
            SendMediaNode: self._execute_send_media,
            SendButtonsNode: self._execute_send_buttons,
            SendListNode: self._execute_send_list,
            ConditionNode: self._execute_condition,
            SwitchNode: self._execute_switch,
            WaitReplyNode: self._execute_wait_reply,
            WaitNode: self._execute_wait,
            LoopNode: self._execute_loop,
            SetVariableNode: self._execute_set_variable,
            PaymentConfirmationNode: self._execute_payment_confirmation,
            EndNode: self._execute_end,
        }
        self._reply_handlers = {
            WaitReplyNode: self._reply_wait_reply,
            SendButtonsNode: self._reply_choice,
            SendListNode: self._reply_choice,
            PaymentConfirmationNode: self._reply_payment,
        }

    async def execute(
        self,
        node: Node,
        context: ExecutionContext,
        graph: WorkflowGraph,
    ) -> NodeExecutionResult:
        """Run one node.

        Raises:
            UnknownNodeTypeError: If no handler exists for the node
            NodeExecutionError: If the node's configuration cannot be executed
        """
        handler = self._handlers.get(type(node))
        if handler is None:
            raise UnknownNodeTypeError(node.id, node.type)
        return handler(node, context, graph)

    def waits_for_reply(self, node: Optional[Node]) -> bool:
        return node is not None and type(node) in self._reply_handlers

    # ─── Entry & Messages ─────────────────────────────────────

    def _execute_trigger(self, node, context, graph) -> NodeExecutionResult:
        return NodeExecutionResult(next_node_id=graph.next_node_id(node.id))

    def _execute_send_message(self, node: SendMessageNode, context, graph) -> NodeExecutionResult:
        text = interpolate(node.config.message, context)
        return NodeExecutionResult(
            next_node_id=graph.next_node_id(node.id),
            output={"message": text},
            message_to_send=MessageToSend.text_message(text),
            send_delay_seconds=(node.config.delay or 0) / 1000.0,
        )

    def _execute_send_media(self, node: SendMediaNode, context, graph) -> NodeExecutionResult:
        cfg = node.config
        url = interpolate(cfg.url, context)
        if not url:
            raise NodeExecutionError("SEND_MEDIA requires a url", node_id=node.id, node_type=node.type)
        caption = interpolate(cfg.caption, context) if cfg.caption else None
        return NodeExecutionResult(
            next_node_id=graph.next_node_id(node.id),
            output={"mediaType": cfg.media_type, "url": url, "caption": caption},
            message_to_send=MessageToSend(
                kind="media",
                media_type=cfg.media_type,
                url=url,
                caption=caption,
                file_name=cfg.file_name,
                send_audio_as_voice=cfg.send_audio_as_voice,
            ),
            send_delay_seconds=(cfg.delay or 0) / 1000.0,
        )

    def _reply_wait(self, cfg: ReplyWaitConfig, **kwargs) -> NodeExecutionResult:
        return NodeExecutionResult(
            should_wait=True,
            waits_for_reply=True,
            wait_timeout_seconds=cfg.timeout_seconds or self.default_reply_timeout,
            on_timeout=cfg.on_timeout,
            timeout_target_node_id=cfg.timeout_target_node_id,
            **kwargs,
        )

    def _execute_send_buttons(self, node: SendButtonsNode, context, graph) -> NodeExecutionResult:
        cfg = node.config
        if not cfg.buttons:
            raise NodeExecutionError("SEND_BUTTONS has no buttons", node_id=node.id, node_type=node.type)
        text = interpolate(cfg.message, context)
        buttons = [{"id": b.id, "text": interpolate(b.text, context)} for b in cfg.buttons]
        context.set_variable(BUTTON_MAP, {b["id"]: b["text"] for b in buttons})
        return self._reply_wait(
            cfg,
            next_node_id=None,
            output={"message": text, "buttons": buttons},
            message_to_send=MessageToSend(kind="buttons", text=text, buttons=buttons, footer=cfg.footer),
        )

    def _execute_send_list(self, node: SendListNode, context, graph) -> NodeExecutionResult:
        cfg = node.config
        sections = [
            {
                "title": interpolate(s.title, context),
                "rows": [
                    {
                        "id": r.id,
                        "title": interpolate(r.title, context),
                        "description": interpolate(r.description, context) if r.description else None,
                    }
                    for r in s.rows
                ],
            }
            for s in cfg.sections
        ]
        rows = [row for s in sections for row in s["rows"]]
        if not rows:
            raise NodeExecutionError("SEND_LIST has no rows", node_id=node.id, node_type=node.type)
        text = interpolate(cfg.message, context)
        context.set_variable(BUTTON_MAP, {r["id"]: r["title"] for r in rows})
        return self._reply_wait(
            cfg,
            next_node_id=None,
            output={"message": text, "sections": sections},
            message_to_send=MessageToSend(
                kind="list",
                text=text,
                button_text=cfg.button_text,
                sections=sections,
                footer=cfg.footer,
                title=cfg.title,
            ),
        )

    # ─── Branching ────────────────────────────────────────────

    def _execute_condition(self, node: ConditionNode, context, graph) -> NodeExecutionResult:
        result = evaluate_condition(node.config.expression, context)
        tag = EdgeCondition.TRUE if result else EdgeCondition.FALSE
        return NodeExecutionResult(
            next_node_id=graph.target_for(node.id, tag.value),
            output={"conditionResult": result},
        )

    def _execute_switch(self, node: SwitchNode, context, graph) -> NodeExecutionResult:
        for index, rule in enumerate(node.config.rules):
            left = resolve_value(rule.value1, context)
            right = resolve_value(rule.value2, context)
            try:
                matched = apply_operator(left, rule.operator, right)
            except ValueError as e:
                raise NodeExecutionError(str(e), node_id=node.id, node_type=node.type) from e
            if matched:
                return NodeExecutionResult(
                    next_node_id=graph.target_for(node.id, rule.output_key),
                    output={"switchOutput": rule.output_key, "switchRuleIndex": index},
                )

        return NodeExecutionResult(
            next_node_id=graph.target_for(node.id, EdgeCondition.DEFAULT.value),
            output={"switchOutput": EdgeCondition.DEFAULT.value, "switchRuleIndex": -1},
        )

    # ─── Waits ────────────────────────────────────────────────

    def _execute_wait_reply(self, node: WaitReplyNode, context, graph) -> NodeExecutionResult:
        return self._reply_wait(
            node.config,
            next_node_id=graph.next_node_id(node.id),
            output={"waitingFor": node.config.save_as},
        )

    def _execute_wait(self, node: WaitNode, context, graph) -> NodeExecutionResult:
        seconds = node.config.delay_seconds()
        return NodeExecutionResult(
            next_node_id=graph.next_node_id(node.id),
            output={"waitSeconds": seconds},
            should_wait=True,
            wait_seconds=seconds,
        )

    def _execute_payment_confirmation(
        self, node: PaymentConfirmationNode, context, graph
    ) -> NodeExecutionResult:
        cfg = node.config
        message = None
        output: dict[str, Any] = {"waitingFor": cfg.save_as}
        if cfg.message:
            text = interpolate(cfg.message, context)
            message = MessageToSend.text_message(text)
            output["message"] = text
        return self._reply_wait(cfg, next_node_id=None, output=output, message_to_send=message)

    # ─── Data & Control ───────────────────────────────────────

    def _execute_loop(self, node: LoopNode, context, graph) -> NodeExecutionResult:
        try:
            items = coerce_items(resolve_value(node.config.items, context))
        except ValueError as e:
            raise NodeExecutionError(str(e), node_id=node.id, node_type=node.type) from e
        step = self.loops.begin(node, items, context, graph)
        return NodeExecutionResult(
            next_node_id=step.next_node_id,
            output={"loopItems": len(items)},
        )

    def _execute_set_variable(self, node: SetVariableNode, context, graph) -> NodeExecutionResult:
        assigned = {}
        for name, template in node.config.variables.items():
            if name.startswith(RESERVED_PREFIX):
                raise NodeExecutionError(
                    f"Variable name {name!r} is reserved",
                    node_id=node.id,
                    node_type=node.type,
                )
            value = resolve_value(template, context)
            context.set_variable(name, value)
            assigned[name] = value
        return NodeExecutionResult(
            next_node_id=graph.next_node_id(node.id),
            output={"variables": assigned},
        )

    def _execute_end(self, node: EndNode, context, graph) -> NodeExecutionResult:
        output = {
            name: context.get_variable(name)
            for name in node.config.output_variables
            if not name.startswith(RESERVED_PREFIX)
        }
        return NodeExecutionResult(next_node_id=None, output=output)

    # ─── Resume-time transitions ──────────────────────────────

    def process_reply(
        self,
        node: Node,
        text: str,
        payload: Optional[dict],
        context: ExecutionContext,
        graph: WorkflowGraph,
    ) -> ReplyOutcome:
        """Match a reply against the node the execution is waiting on.

        Nodes that do not wait for replies (e.g. a WAIT timer interrupted by
        a message) simply continue from the current pointer.
        """
        handler = self._reply_handlers.get(type(node))
        if handler is None:
            return ReplyOutcome(matched=True, next_node_id=node.id)
        return handler(node, text or "", payload or {}, context, graph)

    def _reply_wait_reply(self, node: WaitReplyNode, text, payload, context, graph) -> ReplyOutcome:
        cfg = node.config
        normalized = text.strip().lower()
        next_node_id = graph.next_node_id(node.id)

        if cfg.keywords:
            keywords = {k.strip().lower(): k for k in cfg.keywords if k.strip()}
            if normalized not in keywords:
                retry = MessageToSend.text_message(interpolate(cfg.retry_message, context)) if cfg.retry_message else None
                return ReplyOutcome(matched=False, message_to_send=retry)
            next_node_id = (
                graph.target_for(node.id, keywords[normalized])
                or graph.untagged_target(node.id)
                or next_node_id
            )

        if cfg.save_as:
            context.set_variable(cfg.save_as, text)
            if payload.get("type") == "media" and payload.get("media"):
                context.set_variable(f"{cfg.save_as}Payload", payload)
        return ReplyOutcome(matched=True, next_node_id=next_node_id)

    def _reply_choice(self, node, text, payload, context, graph) -> ReplyOutcome:
        options = context.get_variable(BUTTON_MAP) or {}
        selected_id = payload.get("selectedId")
        choice = None

        if selected_id and selected_id in options:
            choice = selected_id
        else:
            normalized = text.strip().lower()
            for option_id, title in options.items():
                if normalized and normalized in (str(option_id).lower(), str(title).strip().lower()):
                    choice = option_id
                    break
            if choice is None and normalized.isdigit():
                position = int(normalized)
                if 1 <= position <= len(options):
                    choice = list(options)[position - 1]

        save_as = node.config.save_as
        if choice is not None:
            if save_as:
                context.set_variable(save_as, options[choice])
                context.set_variable(f"{save_as}Id", choice)
            next_node_id = (
                graph.target_for(node.id, choice)
                or graph.target_for(node.id, EdgeCondition.DEFAULT.value)
                or graph.untagged_target(node.id)
            )
            return ReplyOutcome(matched=True, next_node_id=next_node_id)

        default = graph.target_for(node.id, EdgeCondition.DEFAULT.value)
        if default is None:
            return ReplyOutcome(matched=False)
        if save_as:
            context.set_variable(save_as, text)
        return ReplyOutcome(matched=True, next_node_id=default)

    def _reply_payment(self, node: PaymentConfirmationNode, text, payload, context, graph) -> ReplyOutcome:
        cfg = node.config
        media = payload.get("media") if payload.get("type") == "media" else None
        media_kind = _media_kind(media) if media else None
        accepted = {t.lower() for t in cfg.accepted_media_types}

        if media_kind is None or media_kind not in accepted:
            invalid = (
                MessageToSend.text_message(interpolate(cfg.invalid_message, context))
                if cfg.invalid_message else None
            )
            return ReplyOutcome(matched=False, message_to_send=invalid)

        if cfg.save_as:
            context.set_variable(cfg.save_as, {**media, "kind": media_kind, "caption": text or None})
        next_node_id = (
            graph.target_for(node.id, EdgeCondition.CONFIRMED.value)
            or graph.untagged_target(node.id)
        )
        return ReplyOutcome(matched=True, next_node_id=next_node_id)


def _media_kind(media: dict) -> Optional[str]:
    """image, video, audio or document for a normalized media descriptor."""
    kind = media.get("type") or media.get("mediaType")
    if kind:
        return str(kind).lower()
    mimetype = str(media.get("mimetype") or media.get("mimeType") or "").lower()
    if not mimetype:
        return None
    major = mimetype.split("/", 1)[0]
    if major in ("image", "video", "audio"):
        return major
    return "document"
