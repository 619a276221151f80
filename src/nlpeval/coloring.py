"""Graph coloring for compressed Hessian evaluation.

Variables that never interact in the Hessian can be probed together:
one Hessian-vector product per color instead of one per variable.
Symmetric (star) coloring exploits Hessian symmetry for fewer colors.

Algorithms adapted from SparseMatrixColorings.jl (MIT license)
Copyright (c) 2024 Guillaume Dalle, Alexis Montoison, and contributors
https://github.com/gdalle/SparseMatrixColorings.jl
See also: Dalle & Montoison (2025), https://arxiv.org/abs/2505.07308
"""

from collections import Counter
from collections.abc import Iterable

import numpy as np
from numpy.typing import NDArray

from nlpeval.pattern import ColoredPattern, SparsityPattern


def hessian_color_preprocess(
    edgelist: Iterable[tuple[int, int]],
    num_var: int,
    *,
    compress: bool = True,
) -> tuple[NDArray[np.int32], NDArray[np.int32], ColoredPattern]:
    """Build the Hessian structure and recovery plan of one function.

    Args:
        edgelist: Lower-triangle structural nonzeros ``(i, j)``, ``i >= j``,
            in global variable indices.
        num_var: Total number of variables in the problem.
        compress: Use star coloring.
            If False, every local variable gets its own color,
            i.e. one Hessian-vector product per variable.

    Returns:
        Tuple of ``(hess_I, hess_J, colored)`` where:
        - hess_I, hess_J: Global row and column of each entry, ``hess_I >= hess_J``.
        - colored: A [`ColoredPattern`][nlpeval.ColoredPattern] whose entries
          are in the same order.

    Raises:
        ValueError: If an edge is not in the lower triangle or out of range.
    """
    edges = sorted(set(edgelist))
    for i, j in edges:
        if not 0 <= j <= i < num_var:
            msg = f"Hessian edge ({i}, {j}) is not a lower-triangle entry of a {num_var}-variable problem"
            raise ValueError(msg)

    local_indices = np.array(sorted({v for edge in edges for v in edge}), dtype=np.int32)
    global_to_local = {int(g): local for local, g in enumerate(local_indices)}
    local_edges = [(global_to_local[i], global_to_local[j]) for i, j in edges]
    num_local = len(local_indices)

    sparsity = SparsityPattern.from_edges(local_edges, num_local)
    if compress:
        colors, num_colors = color_symmetric(sparsity)
    else:
        colors, num_colors = np.arange(num_local, dtype=np.int32), num_local

    hess_I = np.array([i for i, _ in edges], dtype=np.int32)
    hess_J = np.array([j for _, j in edges], dtype=np.int32)
    colored = ColoredPattern(
        sparsity,
        colors=colors,
        num_colors=num_colors,
        local_indices=local_indices,
        hess_rows=np.array([i for i, _ in local_edges], dtype=np.int32),
        hess_cols=np.array([j for _, j in local_edges], dtype=np.int32),
    )
    return hess_I, hess_J, colored


def prepare_seed_matrix(seed: NDArray[np.float64], colored: ColoredPattern) -> None:
    """Reset ``seed`` in place to the indicator columns of ``colored``.

    Hessian probing overwrites the seed with its results,
    so a reused buffer has to be refilled before every evaluation.
    """
    colored.fill_seed(seed)


def color_symmetric(sparsity: SparsityPattern) -> tuple[NDArray[np.int32], int]:
    """Greedy symmetric coloring for sparse Hessian computation.

    Uses star coloring (Gebremedhin et al., 2005):
    a distance-1 coloring with the additional constraint
    that every path on 4 vertices uses at least 3 colors.
    This enables symmetric recovery using fewer colors than row coloring.

    Requires a square sparsity pattern (Hessians are always square).
    Uses LargestFirst vertex ordering.

    Args:
        sparsity: SparsityPattern of shape (n, n) representing the
            symmetric Hessian sparsity pattern

    Returns:
        Tuple of (colors, num_colors) where:
        - colors: Array of shape (n,) with color assignment for each row/column
        - num_colors: Total number of colors used

    Raises:
        ValueError: If pattern is not square
    """
    if sparsity.m != sparsity.n:
        msg = (
            f"Symmetric coloring requires a square pattern, got shape {sparsity.shape}"
        )
        raise ValueError(msg)

    n = sparsity.n

    if n == 0:
        return np.array([], dtype=np.int32), 0

    adj = sparsity.adjacency

    # LargestFirst ordering
    order = sorted(range(n), key=lambda v: len(adj[v]), reverse=True)

    colors = np.full(n, -1, dtype=np.int32)
    num_colors = 0

    for v in order:
        # Forbidden colors from distance-1 constraint
        forbidden: set[int] = set()
        for w in adj[v]:
            if colors[w] >= 0:
                forbidden.add(colors[w])

        # Star constraint: for a colored neighbor w and its colored neighbor u,
        # giving v the color of u creates the 2-colored path x-u-w-v
        # whenever u has another neighbor x colored like w.
        for w in adj[v]:
            if colors[w] < 0:
                continue
            for u in adj[w]:
                if u == v or colors[u] < 0:
                    continue
                if colors[u] in forbidden:
                    continue
                for x in adj[u]:
                    if x != w and colors[x] == colors[w]:
                        forbidden.add(colors[u])
                        break

        # Star constraint with v in the middle: if two neighbors w and u of v
        # share a color, v must avoid the colors of w's other neighbors x,
        # otherwise x-w-v-u is 2-colored.
        neighbor_colors = Counter(int(colors[w]) for w in adj[v] if colors[w] >= 0)
        for w in adj[v]:
            if colors[w] >= 0 and neighbor_colors[int(colors[w])] > 1:
                for x in adj[w]:
                    if x != v and colors[x] >= 0:
                        forbidden.add(colors[x])

        # Assign smallest non-forbidden color
        color = 0
        while color in forbidden:
            color += 1

        colors[v] = color
        num_colors = max(num_colors, color + 1)

    return colors, num_colors
