"""Forward and reverse passes over a node sequence.

The forward pass computes every node value at a point,
the reverse pass accumulates adjoints ``d root / d node`` by the chain rule.
Both passes are generic over the number type:
with floats they give values and gradients,
with `Dual` numbers (forward-over-reverse) they give Hessian-vector products.
"""

from collections.abc import MutableSequence, Sequence

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from nlpeval import dual
from nlpeval.dual import Dual
from nlpeval.nodes import Node, NodeType, Operator


def forward_eval(
    storage: MutableSequence,
    nodes: Sequence[Node],
    adj: sp.csc_matrix,
    const_values: NDArray[np.float64],
    x: Sequence,
    subexpression_values: Sequence,
):
    """Evaluate every node at ``x``, children before parents.

    Args:
        storage: Output buffer with at least one slot per node.
        nodes: Node sequence in pre-order.
        adj: Adjacency from `adjmat`.
        const_values: Constant pool of the expression.
        x: Point, indexed by variable.
        subexpression_values: Already computed subexpression values, indexed by id.

    Returns:
        The value of the root node.
    """
    indptr, children_arr = adj.indptr, adj.indices
    for k in range(len(nodes) - 1, -1, -1):
        node = nodes[k]
        match node.type:
            case NodeType.VARIABLE:
                storage[k] = x[node.index]
            case NodeType.VALUE:
                storage[k] = const_values[node.index]
            case NodeType.SUBEXPRESSION:
                storage[k] = subexpression_values[node.index]
            case NodeType.CALL:
                args = [storage[c] for c in children_arr[indptr[k] : indptr[k + 1]]]
                storage[k] = apply_operator(node.index, args)
    return storage[0]


def reverse_eval(
    output: MutableSequence,
    reverse_storage: MutableSequence,
    forward_storage: Sequence,
    nodes: Sequence[Node],
    adj: sp.csc_matrix,
    const_values: NDArray[np.float64],
    subexpression_adjoints: MutableSequence,
    scale=1.0,
) -> None:
    """Accumulate ``scale * d root / d x`` into ``output``.

    Parents are visited before their children,
    so every node's adjoint is final when it is read.
    Variable adjoints are added into ``output``,
    subexpression adjoints into ``subexpression_adjoints``;
    both must be zeroed by the caller before a fresh sweep.

    Args:
        output: Gradient accumulator, indexed by variable.
        reverse_storage: Scratch buffer with at least one slot per node.
        forward_storage: Node values from `forward_eval` at the same point.
        nodes: Node sequence in pre-order.
        adj: Adjacency from `adjmat`.
        const_values: Constant pool of the expression.
        subexpression_adjoints: Adjoint accumulator, indexed by subexpression id.
        scale: Adjoint of the root.
    """
    indptr, children_arr = adj.indptr, adj.indices
    reverse_storage[0] = scale
    for k, node in enumerate(nodes):
        adjoint = reverse_storage[k]
        match node.type:
            case NodeType.VARIABLE:
                output[node.index] += adjoint
            case NodeType.SUBEXPRESSION:
                subexpression_adjoints[node.index] += adjoint
            case NodeType.VALUE:
                pass
            case NodeType.CALL:
                operands = children_arr[indptr[k] : indptr[k + 1]]
                args = [forward_storage[c] for c in operands]
                partials = local_partials(node.index, args, forward_storage[k])
                for c, partial in zip(operands, partials, strict=True):
                    reverse_storage[c] = adjoint * partial


def hessian_matmat(
    seed: NDArray[np.float64],
    reverse_storage: MutableSequence,
    forward_storage: MutableSequence,
    nodes: Sequence[Node],
    adj: sp.csc_matrix,
    const_values: NDArray[np.float64],
    x: NDArray[np.float64],
    reverse_output_vector: MutableSequence,
    forward_input_vector: MutableSequence,
    local_indices: NDArray[np.int32],
    grad_sparsity: NDArray[np.int32],
) -> None:
    """Overwrite each seed column ``s`` with the Hessian-vector product ``H @ s``.

    ``seed`` has one row per local variable and one column per probing direction.
    For every column, the local variables are lifted to ``Dual(x, s)``,
    a dual forward and reverse pass run,
    and the epsilon parts of the local variable adjoints are written back.

    ``forward_input_vector`` must hold ``Dual(x[i], 0.0)`` for every variable on entry
    and is restored to that state on exit.
    """
    for c in range(seed.shape[1]):
        for local, i in enumerate(local_indices):
            forward_input_vector[i] = Dual(x[i], seed[local, c])
        for i in grad_sparsity:
            reverse_output_vector[i] = Dual(0.0, 0.0)

        forward_eval(forward_storage, nodes, adj, const_values, forward_input_vector, ())
        reverse_eval(
            reverse_output_vector,
            reverse_storage,
            forward_storage,
            nodes,
            adj,
            const_values,
            (),
            Dual(1.0, 0.0),
        )

        for local, i in enumerate(local_indices):
            seed[local, c] = dual.epsilon(reverse_output_vector[i])

    for i in local_indices:
        forward_input_vector[i] = Dual(x[i], 0.0)


# =========================================================================
# Operator rules
# =========================================================================


def apply_operator(op: Operator, args: list):
    """Value of ``op`` applied to ``args``."""
    match op:
        case Operator.ADD:
            total = args[0]
            for a in args[1:]:
                total = total + a
            return total
        case Operator.MUL:
            product = args[0]
            for a in args[1:]:
                product = product * a
            return product
        case Operator.SUB:
            if len(args) == 1:
                return -args[0]
            return args[0] - args[1]
        case Operator.NEG:
            return -args[0]
        case Operator.DIV:
            return _divide(args[0], args[1])
        case Operator.POW:
            return dual.power(args[0], args[1])
        case Operator.SQRT:
            return dual.sqrt(args[0])
        case Operator.EXP:
            return dual.exp(args[0])
        case Operator.LOG:
            return dual.log(args[0])
        case Operator.SIN:
            return dual.sin(args[0])
        case Operator.COS:
            return dual.cos(args[0])
        case Operator.TAN:
            return dual.tan(args[0])
        case Operator.ATAN:
            return dual.atan(args[0])
        case Operator.TANH:
            return dual.tanh(args[0])
        case Operator.ABS:
            return abs(args[0])
        case _:
            msg = f"No forward rule for operator '{op.value}'"
            raise NotImplementedError(msg)


def local_partials(op: Operator, args: list, result) -> list:
    """Partial derivatives of ``op`` with respect to each operand.

    ``result`` is the already computed value of the operator node.
    """
    match op:
        case Operator.ADD:
            return [1.0] * len(args)
        case Operator.MUL:
            partials = []
            for j in range(len(args)):
                others = 1.0
                for i, a in enumerate(args):
                    if i != j:
                        others = others * a
                partials.append(others)
            return partials
        case Operator.SUB:
            if len(args) == 1:
                return [-1.0]
            return [1.0, -1.0]
        case Operator.NEG:
            return [-1.0]
        case Operator.DIV:
            a, b = args
            inverse = _divide(1.0, b)
            return [inverse, -a * inverse * inverse]
        case Operator.POW:
            a, b = args
            d_base = b * dual.power(a, b - 1)
            # d/db a^b = a^b log(a), only defined for a > 0
            d_exponent = result * dual.log(a) if a > 0 else 0.0
            return [d_base, d_exponent]
        case Operator.SQRT:
            return [_divide(0.5, result)]
        case Operator.EXP:
            return [result]
        case Operator.LOG:
            return [_divide(1.0, args[0])]
        case Operator.SIN:
            return [dual.cos(args[0])]
        case Operator.COS:
            return [-dual.sin(args[0])]
        case Operator.TAN:
            return [1.0 + result * result]
        case Operator.ATAN:
            return [_divide(1.0, 1.0 + args[0] * args[0])]
        case Operator.TANH:
            return [1.0 - result * result]
        case Operator.ABS:
            return [dual.sign(args[0])]
        case _:
            msg = f"No derivative rule for operator '{op.value}'"
            raise NotImplementedError(msg)


def _divide(a, b):
    """``a / b`` with numpy semantics for floats (``inf``/``nan`` instead of raising)."""
    if isinstance(a, Dual) or isinstance(b, Dual):
        return a / b
    return np.divide(a, b)
