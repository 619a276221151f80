"""Static structure of a single expression: gradient sparsity, linearity, Hessian sparsity.

All three analyses run once at compile time
and only look at the node sequence and its adjacency,
so their results hold for every evaluation point.
"""

from collections.abc import Mapping, Sequence
from enum import IntEnum

import scipy.sparse as sp

from nlpeval.exceptions import UnsupportedFeatureError
from nlpeval.nodes import UNIVARIATE, Node, NodeType, Operator, children


class Linearity(IntEnum):
    """Ordered linearity classes: ``CONSTANT < LINEAR < NONLINEAR``."""

    CONSTANT = 0
    LINEAR = 1
    NONLINEAR = 2


def gradient_sparsity(nodes: Sequence[Node]) -> set[int]:
    """Variables that appear anywhere in the node sequence.

    This is conservative: a variable whose contribution cancels out
    (e.g. ``x - x``) is still reported.
    Subexpression references are not followed;
    callers union in the sparsity of every subexpression the function depends on.
    """
    return {node.index for node in nodes if node.type is NodeType.VARIABLE}


def classify_linearity(
    nodes: Sequence[Node],
    adj: sp.csc_matrix,
    subexpression_linearity: Mapping[int, Linearity] | None = None,
) -> list[Linearity]:
    """Classify every node as constant, linear or nonlinear in the variables.

    Children are classified before their parents by walking the sequence backwards.
    The classification of the whole expression is ``linearity[0]``.

    Args:
        nodes: Node sequence in pre-order.
        adj: Adjacency from `adjmat`.
        subexpression_linearity: Classification of already compiled subexpressions.
            Subexpressions missing from the mapping count as nonlinear.

    Returns:
        One `Linearity` per node.
    """
    if subexpression_linearity is None:
        subexpression_linearity = {}
    linearity = [Linearity.NONLINEAR] * len(nodes)

    for k in range(len(nodes) - 1, -1, -1):
        node = nodes[k]
        match node.type:
            case NodeType.VALUE:
                linearity[k] = Linearity.CONSTANT
            case NodeType.VARIABLE:
                linearity[k] = Linearity.LINEAR
            case NodeType.SUBEXPRESSION:
                linearity[k] = subexpression_linearity.get(
                    node.index, Linearity.NONLINEAR
                )
            case NodeType.CALL:
                operands = [linearity[c] for c in children(adj, k)]
                linearity[k] = _call_linearity(node.index, operands)

    return linearity


def _call_linearity(op: Operator, operands: list[Linearity]) -> Linearity:
    """Combine operand classes according to the operator."""
    highest = max(operands)
    if highest is Linearity.CONSTANT:
        return Linearity.CONSTANT

    match op:
        case Operator.ADD | Operator.SUB | Operator.NEG:
            return highest
        case Operator.MUL:
            non_constant = [lin for lin in operands if lin is not Linearity.CONSTANT]
            if len(non_constant) == 1:
                return non_constant[0]
            return Linearity.NONLINEAR
        case Operator.DIV:
            numerator, denominator = operands
            if denominator is Linearity.CONSTANT:
                return numerator
            return Linearity.NONLINEAR
        case Operator.POW:
            return Linearity.NONLINEAR
        case _ if op in UNIVARIATE:
            return Linearity.NONLINEAR
        case _:
            msg = f"No linearity rule for operator '{op.value}'"
            raise NotImplementedError(msg)


def hessian_sparsity(
    nodes: Sequence[Node],
    adj: sp.csc_matrix,
    linearity: Sequence[Linearity],
) -> set[tuple[int, int]]:
    """Structural nonzeros of the Hessian as lower-triangle pairs ``(i, j)``, ``i >= j``.

    Starting at the root, linear combinations are looked through:
    sums, differences, negations,
    products with all but one constant operand
    and divisions by a constant.
    Every other nonlinear node reached this way couples all variables below it,
    so every pair of them (diagonal included) is reported.
    Linear and constant expressions yield an empty set.

    Raises:
        UnsupportedFeatureError: If a subexpression reference is reached.
            Hessians are not available for subexpressions.
    """
    edges: set[tuple[int, int]] = set()
    stack = [0]
    while stack:
        k = stack.pop()
        if linearity[k] is not Linearity.NONLINEAR:
            continue
        node = nodes[k]
        if node.type is NodeType.SUBEXPRESSION:
            msg = "Hessians are not supported for expressions with subexpressions"
            raise UnsupportedFeatureError(msg)
        operands = children(adj, k)
        passthrough = _linear_operands(node.index, operands, linearity)
        if passthrough is not None:
            stack.extend(int(c) for c in passthrough)
            continue
        group = sorted(_subtree_variables(nodes, adj, k))
        for a, i in enumerate(group):
            for j in group[: a + 1]:
                edges.add((i, j))
    return edges


def _linear_operands(op, operands, linearity):
    """Operands to descend into when ``op`` combines them linearly, else ``None``."""
    match op:
        case Operator.ADD | Operator.SUB | Operator.NEG:
            return operands
        case Operator.MUL:
            non_constant = [c for c in operands if linearity[c] is not Linearity.CONSTANT]
            if len(non_constant) == 1:
                return non_constant
        case Operator.DIV:
            if linearity[operands[1]] is Linearity.CONSTANT:
                return operands[:1]
    return None


def _subtree_variables(nodes, adj, root):
    """Variables below ``root``."""
    found: set[int] = set()
    stack = [root]
    while stack:
        k = stack.pop()
        node = nodes[k]
        match node.type:
            case NodeType.VARIABLE:
                found.add(node.index)
            case NodeType.SUBEXPRESSION:
                msg = "Hessians are not supported for expressions with subexpressions"
                raise UnsupportedFeatureError(msg)
            case NodeType.CALL:
                stack.extend(int(c) for c in children(adj, k))
    return found
