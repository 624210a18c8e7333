"""For-each loops layered on top of the graph.

A loop is not a nested execution. The LOOP header binds the first item and
follows its ``loop`` edge into the body; the body runs as ordinary graph
traversal. When the body reaches an END node, a dead end, or comes back to
the header, the engine asks the controller to advance: the next item is
bound and the body is re-entered through the ``loop`` edge, or, once the
items are exhausted, the frame is cleared and control follows the header's
``done`` edge. One loop frame is active at a time.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from core.constants import EdgeCondition
from core.exceptions import NodeExecutionError
from workflow.context import ExecutionContext, LoopFrame
from workflow.definition import EndNode, LoopNode, Node, WorkflowGraph

logger = structlog.get_logger(__name__)


@dataclass
class LoopStep:
    """Where to go after a loop decision. ``next_node_id`` None completes."""

    next_node_id: Optional[str]
    finished: bool = False
    index: Optional[int] = None


def coerce_items(value: Any) -> list:
    """Turn a resolved LOOP ``items`` value into a list.

    Raises:
        ValueError: If the value cannot be iterated as a sequence
    """
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            parsed = json.loads(text)
            if isinstance(parsed, list):
                return parsed
        return [part.strip() for part in text.split(",") if part.strip()]
    raise ValueError(f"LOOP items must be a list, got {type(value).__name__}")


class LoopController:
    """Begins and advances the single active loop frame of a context."""

    @staticmethod
    def _bind(context: ExecutionContext, frame: LoopFrame) -> None:
        context.set_variable(frame.item_variable, frame.items[frame.index])
        context.set_variable(frame.index_variable, frame.index)

    def in_loop(self, context: ExecutionContext) -> bool:
        frame = context.loop_frame
        return frame is not None and frame.started

    def intercepts(self, node: Node, context: ExecutionContext) -> bool:
        """Whether reaching ``node`` advances the loop instead of running it."""
        frame = context.loop_frame
        if frame is None or not frame.started:
            return False
        if isinstance(node, LoopNode) and node.id == frame.node_id:
            return True
        return isinstance(node, EndNode)

    def begin(
        self,
        node: LoopNode,
        items: list,
        context: ExecutionContext,
        graph: WorkflowGraph,
    ) -> LoopStep:
        """First visit to a LOOP header.

        Raises:
            NodeExecutionError: If another loop is already in progress
        """
        current = context.loop_frame
        if current is not None and current.node_id != node.id:
            raise NodeExecutionError(
                f"Nested loops are not supported (loop {current.node_id} is still running)",
                node_id=node.id,
                node_type=node.type,
            )

        if not items:
            context.loop_frame = None
            logger.debug("Loop has no items", node_id=node.id)
            return LoopStep(graph.target_for(node.id, EdgeCondition.DONE.value), finished=True)

        frame = LoopFrame(
            node_id=node.id,
            items=list(items),
            index=0,
            item_variable=node.config.item_variable or "item",
            index_variable=node.config.index_variable or "index",
            iterations_executed=1,
        )
        context.loop_frame = frame
        self._bind(context, frame)
        return LoopStep(graph.target_for(node.id, EdgeCondition.LOOP.value), index=0)

    def advance(self, context: ExecutionContext, graph: WorkflowGraph) -> LoopStep:
        """Move to the next item, or leave the loop through its ``done`` edge."""
        frame = context.loop_frame
        if frame is None or not frame.started:
            return LoopStep(None, finished=True)

        next_index = frame.index + 1
        if next_index < len(frame.items):
            frame.index = next_index
            frame.iterations_executed += 1
            context.loop_frame = frame
            self._bind(context, frame)
            logger.debug("Loop advanced", node_id=frame.node_id, index=next_index)
            return LoopStep(
                graph.target_for(frame.node_id, EdgeCondition.LOOP.value),
                index=next_index,
            )

        context.loop_frame = None
        logger.debug(
            "Loop finished",
            node_id=frame.node_id,
            iterations=frame.iterations_executed,
        )
        return LoopStep(
            graph.target_for(frame.node_id, EdgeCondition.DONE.value),
            finished=True,
        )
