"""Flat expression-graph representation consumed by the evaluator.

An expression is a sequence of nodes stored in pre-order:
the root is node ``0`` and every child has a larger index than its parent.
Forward evaluation walks the sequence backwards (children first),
reverse evaluation walks it forwards (parents first).
Shared nonlinear pieces are not duplicated inside a sequence;
they live in their own sequence and are referenced by a ``SUBEXPRESSION`` node.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray


class NodeType(Enum):
    """What a node is: a leaf or an operator call."""

    VARIABLE = "variable"
    VALUE = "value"
    SUBEXPRESSION = "subexpression"
    CALL = "call"


class Operator(Enum):
    """Closed instruction set of operator nodes.

    ``ADD`` and ``MUL`` are n-ary.
    ``SUB`` takes one operand (negation) or two.
    ``DIV`` and ``POW`` are binary, everything else is univariate.
    """

    ADD = "+"
    MUL = "*"
    SUB = "-"
    DIV = "/"
    POW = "^"
    NEG = "neg"
    SQRT = "sqrt"
    EXP = "exp"
    LOG = "log"
    SIN = "sin"
    COS = "cos"
    TAN = "tan"
    ATAN = "atan"
    TANH = "tanh"
    ABS = "abs"

    def accepts(self, num_operands: int) -> bool:
        """Whether ``num_operands`` operands are valid for this operator."""
        if self in (Operator.ADD, Operator.MUL):
            return num_operands >= 1
        if self is Operator.SUB:
            return num_operands in (1, 2)
        if self in (Operator.DIV, Operator.POW):
            return num_operands == 2
        return num_operands == 1


UNIVARIATE = frozenset(
    op
    for op in Operator
    if op not in (Operator.ADD, Operator.MUL, Operator.SUB, Operator.DIV, Operator.POW)
)


@dataclass(frozen=True)
class Node:
    """One entry of a node sequence.

    Attributes:
        type: Leaf kind or ``CALL``.
        index: Variable index for ``VARIABLE``,
            constant-pool index for ``VALUE``,
            subexpression id for ``SUBEXPRESSION``,
            the ``Operator`` for ``CALL``.
        parent: Index of the parent node, ``-1`` for the root.
    """

    type: NodeType
    index: int | Operator
    parent: int


@dataclass(frozen=True)
class NonlinearExprData:
    """A single nonlinear expression as handed over by the modeling front-end."""

    nodes: tuple[Node, ...]
    const_values: NDArray[np.float64] = field(
        default_factory=lambda: np.zeros(0, dtype=np.float64)
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(
            self, "const_values", np.asarray(self.const_values, dtype=np.float64)
        )

    def __len__(self) -> int:
        return len(self.nodes)

    @classmethod
    def from_tree(cls, tree: Term | float) -> NonlinearExprData:
        """Flatten a nested term into a pre-order node sequence.

        Example:
            ``call("+", call("^", variable(0), 2), variable(1))``
            becomes ``[+ , ^, x0, 2.0, x1]`` with the constant ``2.0``
            stored in the constant pool.
        """
        nodes: list[Node] = []
        const_values: list[float] = []
        stack: list[tuple[Term, int]] = [(_as_term(tree), -1)]
        while stack:
            term, parent = stack.pop()
            k = len(nodes)
            if term.type is NodeType.VALUE:
                nodes.append(Node(NodeType.VALUE, len(const_values), parent))
                const_values.append(float(term.index))
                continue
            nodes.append(Node(term.type, term.index, parent))
            # Reversed so the first operand is popped (and numbered) first.
            for arg in reversed(term.args):
                stack.append((_as_term(arg), k))
        return cls(tuple(nodes), np.asarray(const_values, dtype=np.float64))


# =========================================================================
# Tree builders
# =========================================================================


@dataclass(frozen=True)
class Term:
    """Nested form of an expression, only used to build node sequences."""

    type: NodeType
    index: int | float | Operator
    args: tuple[Term | float, ...] = ()


def variable(index: int) -> Term:
    """Decision variable ``x[index]``."""
    return Term(NodeType.VARIABLE, int(index))


def constant(value: float) -> Term:
    """Numeric constant, stored in the expression's constant pool."""
    return Term(NodeType.VALUE, float(value))


def subexpression(index: int) -> Term:
    """Reference to the shared subexpression with id ``index``."""
    return Term(NodeType.SUBEXPRESSION, int(index))


def call(op: Operator | str, *args: Term | float) -> Term:
    """Operator applied to ``args``; plain numbers become constants."""
    op = Operator(op)
    if not op.accepts(len(args)):
        msg = f"Operator '{op.value}' does not accept {len(args)} operands"
        raise ValueError(msg)
    return Term(NodeType.CALL, op, tuple(args))


def _as_term(arg: Term | float) -> Term:
    if isinstance(arg, Term):
        return arg
    return constant(arg)


# =========================================================================
# Adjacency
# =========================================================================


def adjmat(nodes: tuple[Node, ...] | list[Node]) -> sp.csc_matrix:
    """Build the child/parent incidence matrix of a node sequence.

    Entry ``(child, parent)`` is set for every edge,
    so the children of node ``k`` in operand order are
    ``adj.indices[adj.indptr[k]:adj.indptr[k + 1]]``.

    Raises:
        ValueError: If a parent index is out of range or does not precede its child,
            or an operator has the wrong number of operands.
    """
    n = len(nodes)
    children: list[list[int]] = [[] for _ in range(n)]
    for k, node in enumerate(nodes):
        if k == 0:
            if node.parent != -1:
                msg = f"Root node must have parent -1, got {node.parent}"
                raise ValueError(msg)
            continue
        if not 0 <= node.parent < k:
            msg = f"Node {k} has invalid parent {node.parent}"
            raise ValueError(msg)
        children[node.parent].append(k)

    for k, node in enumerate(nodes):
        if node.type is NodeType.CALL:
            if not node.index.accepts(len(children[k])):
                msg = (
                    f"Operator '{node.index.value}' at node {k} "
                    f"has {len(children[k])} operands"
                )
                raise ValueError(msg)
        elif children[k]:
            msg = f"Leaf node {k} ({node.type.value}) has children"
            raise ValueError(msg)

    indptr = np.zeros(n + 1, dtype=np.int32)
    for k in range(n):
        indptr[k + 1] = indptr[k] + len(children[k])
    indices = np.fromiter(
        (c for cs in children for c in cs), dtype=np.int32, count=int(indptr[-1])
    )
    data = np.ones(len(indices), dtype=np.bool_)
    return sp.csc_matrix((data, indices, indptr), shape=(n, n))


def children(adj: sp.csc_matrix, k: int) -> NDArray[np.int32]:
    """Children of node ``k`` in operand order."""
    return adj.indices[adj.indptr[k] : adj.indptr[k + 1]]
