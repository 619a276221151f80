"""Evaluation order of shared subexpressions.

Subexpressions may reference other subexpressions,
and several objective/constraint expressions may share them.
The forward pass evaluates every used subexpression once,
after everything it references;
the reverse pass of a function walks its own dependency list backwards.
"""

import logging
from collections.abc import Sequence

from nlpeval.nodes import Node, NodeType

logger = logging.getLogger(__name__)

_VISITING = 1
_DONE = 2


def direct_subexpressions(nodes: Sequence[Node]) -> list[int]:
    """Ids of subexpressions referenced directly by a node sequence, in first-use order."""
    seen: dict[int, None] = {}
    for node in nodes:
        if node.type is NodeType.SUBEXPRESSION:
            seen.setdefault(node.index, None)
    return list(seen)


def order_subexpressions(
    main_expressions: Sequence[Sequence[Node]],
    subexpressions: Sequence[Sequence[Node]],
) -> tuple[list[int], list[list[int]]]:
    """Topologically order the subexpressions used by the main expressions.

    Args:
        main_expressions: Node sequences of the objective and constraints.
        subexpressions: Node sequences of all subexpressions, indexed by id.

    Returns:
        Tuple of ``(global_order, individual_orders)`` where:
        - global_order: Every subexpression reachable from a main expression,
          each one after all subexpressions it references.
          Unreachable subexpressions are left out.
        - individual_orders: For each main expression,
          the subexpressions it depends on (transitively)
          in the relative order of ``global_order``.

    Raises:
        ValueError: If subexpressions reference each other cyclically.
    """
    direct = [direct_subexpressions(nodes) for nodes in subexpressions]
    main_direct = [direct_subexpressions(nodes) for nodes in main_expressions]

    global_order: list[int] = []
    state: dict[int, int] = {}
    for refs in main_direct:
        for k in refs:
            if k not in state:
                _postorder(k, direct, state, global_order)

    position = {k: i for i, k in enumerate(global_order)}
    individual_orders = [
        sorted(_reachable(refs, direct), key=position.__getitem__)
        for refs in main_direct
    ]
    logger.debug(
        "Ordered %d of %d subexpressions", len(global_order), len(subexpressions)
    )
    return global_order, individual_orders


def _postorder(
    start: int, direct: list[list[int]], state: dict[int, int], order: list[int]
) -> None:
    """Append ``start`` and its unvisited dependencies to ``order``, dependencies first."""
    state[start] = _VISITING
    stack = [(start, iter(direct[start]))]
    while stack:
        k, pending = stack[-1]
        for child in pending:
            child_state = state.get(child)
            if child_state is None:
                state[child] = _VISITING
                stack.append((child, iter(direct[child])))
                break
            if child_state == _VISITING:
                msg = f"Subexpression {child} references itself through subexpression {k}"
                raise ValueError(msg)
        else:
            stack.pop()
            state[k] = _DONE
            order.append(k)


def _reachable(refs: list[int], direct: list[list[int]]) -> set[int]:
    """Subexpressions reachable from ``refs``, ``refs`` included."""
    found: set[int] = set()
    stack = list(refs)
    while stack:
        k = stack.pop()
        if k in found:
            continue
        found.add(k)
        stack.extend(direct[k])
    return found
