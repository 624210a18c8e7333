"""Workflow definition: parsed node/edge graph.

Workflows are stored as raw JSON lists of nodes and edges, exactly as the
visual builder saves them:

    nodes: [{"id": "n1", "type": "SEND_MESSAGE",
             "config": {"message": "hello"}, "position": {...}}]
    edges: [{"id": "e1", "source": "n1", "target": "n2",
             "condition": "true", "label": "Yes"}]

This module parses them into typed pydantic models (one config model per
node kind, discriminated on ``type``) and wraps them in a WorkflowGraph
with the edge lookups the executor needs. Node types the engine does not
know parse into UnknownNode so execution fails loudly instead of skipping.
"""

from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from core.constants import TRIGGER_NODE_TYPES, EdgeCondition, NodeType, OnTimeout
from core.exceptions import WorkflowValidationError


class _Config(BaseModel):
    """Node config: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ─── Node Configs ─────────────────────────────────────────────

class TriggerMessageConfig(_Config):
    pattern: str = ""
    match_type: str = "exact"
    session_id: Optional[str] = None


class TriggerScheduleConfig(_Config):
    cron: Optional[str] = None


class TriggerManualConfig(_Config):
    pass


class SendMessageConfig(_Config):
    message: str = ""
    delay: Optional[float] = None  # milliseconds


class SendMediaConfig(_Config):
    media_type: Literal["image", "video", "audio", "document"] = "image"
    url: str = ""
    caption: Optional[str] = None
    file_name: Optional[str] = None
    send_audio_as_voice: bool = False
    delay: Optional[float] = None


class ReplyWaitConfig(_Config):
    """Shared settings for every node that suspends on a human reply."""

    save_as: Optional[str] = None
    timeout_seconds: Optional[float] = None
    on_timeout: OnTimeout = OnTimeout.END
    timeout_target_node_id: Optional[str] = None


class Button(_Config):
    id: str
    text: str


class SendButtonsConfig(ReplyWaitConfig):
    message: str = ""
    buttons: list[Button] = Field(default_factory=list)
    footer: Optional[str] = None


class ListRow(_Config):
    id: str
    title: str
    description: Optional[str] = None


class ListSection(_Config):
    title: str = ""
    rows: list[ListRow] = Field(default_factory=list)


class SendListConfig(ReplyWaitConfig):
    message: str = ""
    button_text: str = "Options"
    sections: list[ListSection] = Field(default_factory=list)
    footer: Optional[str] = None
    title: Optional[str] = None


class ConditionConfig(_Config):
    expression: str = ""


class SwitchRule(_Config):
    value1: Any = ""
    operator: str = "=="
    value2: Any = ""
    output_key: str


class SwitchConfig(_Config):
    rules: list[SwitchRule] = Field(default_factory=list)


class WaitReplyConfig(ReplyWaitConfig):
    keywords: list[str] = Field(default_factory=list)
    retry_message: Optional[str] = None


_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class WaitConfig(_Config):
    amount: Optional[float] = None
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"
    seconds: Optional[float] = None

    def delay_seconds(self) -> float:
        if self.amount is not None:
            return max(0.0, float(self.amount) * _UNIT_SECONDS[self.unit])
        return max(0.0, float(self.seconds or 0))


class LoopConfig(_Config):
    items: Any = None  # list literal or an expression resolving to one
    item_variable: str = "item"
    index_variable: str = "index"


class SetVariableConfig(_Config):
    variables: dict[str, Any] = Field(default_factory=dict)


class PaymentConfirmationConfig(ReplyWaitConfig):
    message: Optional[str] = None
    save_as: Optional[str] = "receipt"
    accepted_media_types: list[str] = Field(default_factory=lambda: ["image", "document"])
    invalid_message: Optional[str] = None


class EndConfig(_Config):
    output_variables: list[str] = Field(default_factory=list)


# ─── Nodes ────────────────────────────────────────────────────

class _Node(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    position: Optional[dict[str, Any]] = None


class TriggerMessageNode(_Node):
    type: Literal["TRIGGER_MESSAGE"]
    config: TriggerMessageConfig = Field(default_factory=TriggerMessageConfig)


class TriggerScheduleNode(_Node):
    type: Literal["TRIGGER_SCHEDULE"]
    config: TriggerScheduleConfig = Field(default_factory=TriggerScheduleConfig)


class TriggerManualNode(_Node):
    type: Literal["TRIGGER_MANUAL"]
    config: TriggerManualConfig = Field(default_factory=TriggerManualConfig)


class SendMessageNode(_Node):
    type: Literal["SEND_MESSAGE"]
    config: SendMessageConfig = Field(default_factory=SendMessageConfig)


class SendMediaNode(_Node):
    type: Literal["SEND_MEDIA"]
    config: SendMediaConfig = Field(default_factory=SendMediaConfig)


class SendButtonsNode(_Node):
    type: Literal["SEND_BUTTONS"]
    config: SendButtonsConfig = Field(default_factory=SendButtonsConfig)


class SendListNode(_Node):
    type: Literal["SEND_LIST"]
    config: SendListConfig = Field(default_factory=SendListConfig)


class ConditionNode(_Node):
    type: Literal["CONDITION"]
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class SwitchNode(_Node):
    type: Literal["SWITCH"]
    config: SwitchConfig = Field(default_factory=SwitchConfig)


class WaitReplyNode(_Node):
    type: Literal["WAIT_REPLY"]
    config: WaitReplyConfig = Field(default_factory=WaitReplyConfig)


class WaitNode(_Node):
    type: Literal["WAIT"]
    config: WaitConfig = Field(default_factory=WaitConfig)


class LoopNode(_Node):
    type: Literal["LOOP"]
    config: LoopConfig = Field(default_factory=LoopConfig)


class SetVariableNode(_Node):
    type: Literal["SET_VARIABLE"]
    config: SetVariableConfig = Field(default_factory=SetVariableConfig)


class PaymentConfirmationNode(_Node):
    type: Literal["PAYMENT_CONFIRMATION"]
    config: PaymentConfirmationConfig = Field(default_factory=PaymentConfirmationConfig)


class EndNode(_Node):
    type: Literal["END"]
    config: EndConfig = Field(default_factory=EndConfig)


class UnknownNode(_Node):
    """A node whose type this engine cannot execute."""

    type: str
    config: dict[str, Any] = Field(default_factory=dict)


KnownNode = Annotated[
    Union[
        TriggerMessageNode,
        TriggerScheduleNode,
        TriggerManualNode,
        SendMessageNode,
        SendMediaNode,
        SendButtonsNode,
        SendListNode,
        ConditionNode,
        SwitchNode,
        WaitReplyNode,
        WaitNode,
        LoopNode,
        SetVariableNode,
        PaymentConfirmationNode,
        EndNode,
    ],
    Field(discriminator="type"),
]

Node = Union[KnownNode, UnknownNode]

REPLY_WAIT_NODES = (SendButtonsNode, SendListNode, WaitReplyNode, PaymentConfirmationNode)

_known_adapter = TypeAdapter(KnownNode)
_KNOWN_TYPES = {t.value for t in NodeType}


def parse_node(raw: dict[str, Any]) -> Node:
    """Parse one raw node dict into its typed model."""
    data = dict(raw)
    if data.get("config") is None:
        data["config"] = {}
    if data.get("type") in _KNOWN_TYPES:
        return _known_adapter.validate_python(data)
    return UnknownNode.model_validate(data)


class Edge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    source: str
    target: str
    condition: Optional[str] = None
    label: Optional[str] = None

    @field_validator("condition", "label", mode="before")
    @classmethod
    def _tag_to_str(cls, value):
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None or isinstance(value, str):
            return value
        return str(value)


# ─── Graph ────────────────────────────────────────────────────

class WorkflowGraph:
    """Read-only view over a workflow's nodes and edges."""

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge], workflow_id: str = ""):
        self.workflow_id = workflow_id
        self.nodes: dict[str, Node] = {n.id: n for n in nodes}
        self.edges: list[Edge] = list(edges)

    @classmethod
    def from_definition(
        cls,
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]],
        workflow_id: str = "",
    ) -> "WorkflowGraph":
        return cls(
            (parse_node(n) for n in nodes or []),
            (Edge.model_validate(e) for e in edges or []),
            workflow_id=workflow_id,
        )

    @classmethod
    def from_workflow(cls, workflow) -> "WorkflowGraph":
        return cls.from_definition(workflow.nodes, workflow.edges, workflow_id=workflow.id)

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def edge_for(self, node_id: str, tag: str) -> Optional[Edge]:
        """First outgoing edge tagged ``tag``.

        The condition field is the branch tag; older editor versions only
        wrote the label, so it is checked second.
        """
        wanted = str(tag).strip().lower()
        outgoing = self.outgoing(node_id)
        for edge in outgoing:
            if edge.condition is not None and edge.condition.strip().lower() == wanted:
                return edge
        for edge in outgoing:
            if edge.label is not None and edge.label.strip().lower() == wanted:
                return edge
        return None

    def target_for(self, node_id: str, tag: str) -> Optional[str]:
        edge = self.edge_for(node_id, tag)
        return edge.target if edge else None

    def next_node_id(self, node_id: str) -> Optional[str]:
        """Target of the first outgoing edge, whatever its tag."""
        outgoing = self.outgoing(node_id)
        return outgoing[0].target if outgoing else None

    def untagged_target(self, node_id: str) -> Optional[str]:
        for edge in self.outgoing(node_id):
            if not edge.condition:
                return edge.target
        return None

    def triggers(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.type in TRIGGER_NODE_TYPES]

    def find_trigger(self) -> Optional[Node]:
        triggers = self.triggers()
        return triggers[0] if triggers else None

    def message_triggers(self) -> list[TriggerMessageNode]:
        return [n for n in self.nodes.values() if isinstance(n, TriggerMessageNode)]


def validate_for_activation(graph: WorkflowGraph) -> None:
    """Check that a workflow graph can be executed.

    Raises:
        WorkflowValidationError: listing every problem found
    """
    errors: list[str] = []

    for edge in graph.edges:
        if edge.source not in graph.nodes:
            errors.append(f"Edge {edge.id or '?'} references missing source node {edge.source}")
        if edge.target not in graph.nodes:
            errors.append(f"Edge {edge.id or '?'} references missing target node {edge.target}")

    if not graph.triggers():
        errors.append("Workflow has no trigger node")
    if not any(n.type == NodeType.END for n in graph.nodes.values()):
        errors.append("Workflow has no END node")

    for node in graph.nodes.values():
        if isinstance(node, UnknownNode):
            errors.append(f"Node {node.id} has unknown type {node.type}")
        elif isinstance(node, SwitchNode):
            if graph.edge_for(node.id, EdgeCondition.DEFAULT.value) is None:
                errors.append(f"SWITCH node {node.id} has no default edge")
        elif isinstance(node, LoopNode):
            if graph.edge_for(node.id, EdgeCondition.LOOP.value) is None:
                errors.append(f"LOOP node {node.id} has no loop edge")
        elif isinstance(node, REPLY_WAIT_NODES):
            cfg = node.config
            if cfg.on_timeout == OnTimeout.GOTO_NODE and cfg.timeout_target_node_id not in graph.nodes:
                errors.append(
                    f"{node.type} node {node.id} times out to missing node "
                    f"{cfg.timeout_target_node_id}"
                )

    if errors:
        raise WorkflowValidationError(errors)
