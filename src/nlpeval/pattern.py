"""Pattern data structures for the Hessian sparsity->coloring->recovery pipeline."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from functools import cached_property

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class SparsityPattern:
    """Structural nonzeros of a Hessian block, without values.

    Attributes:
        rows: Row of each structural nonzero.
        cols: Column of each structural nonzero.
        shape: ``(m, n)``; square for every pattern the evaluator builds.
    """

    rows: NDArray[np.int32]
    cols: NDArray[np.int32]
    shape: tuple[int, int]

    def __post_init__(self) -> None:
        """Validate inputs."""
        if len(self.rows) != len(self.cols):
            msg = f"rows and cols must have same length, got {len(self.rows)} and {len(self.cols)}"
            raise ValueError(msg)

    # Properties

    @property
    def nnz(self) -> int:
        """Number of structural nonzeros."""
        return len(self.rows)

    @property
    def m(self) -> int:
        """Number of rows."""
        return self.shape[0]

    @property
    def n(self) -> int:
        """Number of columns."""
        return self.shape[1]

    @cached_property
    def col_to_rows(self) -> dict[int, list[int]]:
        """Rows holding a nonzero, per column.

        Used by star recovery to check whether a color is unique in a column.
        """
        result: dict[int, list[int]] = defaultdict(list)
        for row, col in zip(self.rows, self.cols, strict=True):
            result[int(col)].append(int(row))
        return dict(result)

    @cached_property
    def adjacency(self) -> list[set[int]]:
        """Undirected off-diagonal neighbours of each vertex of a square pattern."""
        adj: list[set[int]] = [set() for _ in range(self.n)]
        for i, j in zip(self.rows, self.cols, strict=True):
            i, j = int(i), int(j)
            if i != j:
                adj[i].add(j)
                adj[j].add(i)
        return adj

    # Constructors

    @classmethod
    def from_coordinates(
        cls,
        rows: NDArray[np.int32] | list[int],
        cols: NDArray[np.int32] | list[int],
        shape: tuple[int, int],
    ) -> SparsityPattern:
        """Pattern from parallel row and column index lists."""
        return cls(
            rows=np.asarray(rows, dtype=np.int32),
            cols=np.asarray(cols, dtype=np.int32),
            shape=shape,
        )

    @classmethod
    def from_dense(cls, dense: NDArray) -> SparsityPattern:
        """Pattern of the nonzeros of a dense matrix."""
        dense = np.asarray(dense)
        rows, cols = np.nonzero(dense)
        return cls(
            rows=rows.astype(np.int32),
            cols=cols.astype(np.int32),
            shape=(dense.shape[0], dense.shape[1]),
        )

    @classmethod
    def from_edges(
        cls, edges: list[tuple[int, int]], n: int
    ) -> SparsityPattern:
        """Symmetric ``(n, n)`` pattern from lower-triangle pairs ``(i, j)``, ``i >= j``."""
        rows: list[int] = []
        cols: list[int] = []
        for i, j in edges:
            rows.append(i)
            cols.append(j)
            if i != j:
                rows.append(j)
                cols.append(i)
        return cls.from_coordinates(rows, cols, (n, n))

    # Conversion

    def todense(self) -> NDArray:
        """Dense ``int8`` indicator of the pattern."""
        result = np.zeros(self.shape, dtype=np.int8)
        if self.nnz > 0:
            result[self.rows, self.cols] = 1
        return result

    def __repr__(self) -> str:
        """Return compact single-line representation."""
        return f"SparsityPattern(shape={self.shape}, nnz={self.nnz})"


@dataclass(frozen=True, repr=False)
class ColoredPattern:
    """Recovery plan for the Hessian of one function.

    The Hessian is probed in a local index space
    made of the variables that appear in its sparsity pattern.

    Attributes:
        sparsity: Symmetric local pattern of shape ``(num_local, num_local)``.
        colors: Color of each local variable, shape ``(num_local,)``.
        num_colors: Total number of colors, i.e. Hessian-vector products per evaluation.
        local_indices: Global variable index of each local variable.
        hess_rows: Local row of each recovered lower-triangle entry.
        hess_cols: Local column of each recovered lower-triangle entry.
    """

    sparsity: SparsityPattern
    colors: NDArray[np.int32]
    num_colors: int
    local_indices: NDArray[np.int32]
    hess_rows: NDArray[np.int32]
    hess_cols: NDArray[np.int32]

    @property
    def num_local(self) -> int:
        """Number of variables in the local index space."""
        return len(self.local_indices)

    @property
    def nnz(self) -> int:
        """Number of recovered lower-triangle entries."""
        return len(self.hess_rows)

    @cached_property
    def _extraction_indices(
        self,
    ) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
        """Pre-compute star recovery indices into the compressed matrix.

        For a compressed matrix ``B = H @ S`` of shape ``(num_local, num_colors)``,
        ``B[elem_idx, color_idx]`` gives the entries in ``hess_rows``/``hess_cols`` order.

        For each entry ``(i, j)``:
        - diagonal (``i == j``): use ``B[i, colors[i]]``
        - off-diagonal: use ``B[j, colors[i]]`` if ``colors[i]``
          is unique among column ``j``'s neighbors;
          otherwise ``B[i, colors[j]]``.
        """
        neighbors = self.sparsity.col_to_rows
        colors = self.colors

        color_idx = np.empty(self.nnz, dtype=np.intp)
        elem_idx = np.empty(self.nnz, dtype=np.intp)

        for k, (i, j) in enumerate(zip(self.hess_rows, self.hess_cols, strict=True)):
            i, j = int(i), int(j)
            shared = i != j and any(
                r != i and colors[r] == colors[i] for r in neighbors.get(j, ())
            )
            if shared:
                color_idx[k], elem_idx[k] = colors[j], i
            else:
                color_idx[k], elem_idx[k] = colors[i], j

        return color_idx, elem_idx

    def fill_seed(self, seed: NDArray[np.float64]) -> None:
        """Overwrite ``seed``, of shape ``(num_local, num_colors)``, with the seed matrix.

        Column ``c`` is the indicator of the variables with color ``c``,
        used as the direction of the ``c``-th Hessian-vector product.
        """
        seed.fill(0.0)
        seed[np.arange(self.num_local), self.colors] = 1.0

    def seed_matrix(self) -> NDArray[np.float64]:
        """Freshly allocated seed matrix, see `fill_seed`."""
        seed = np.empty((self.num_local, self.num_colors), dtype=np.float64)
        self.fill_seed(seed)
        return seed

    def __repr__(self) -> str:
        """Return compact single-line representation."""
        c = self.num_colors
        return (
            f"ColoredPattern({self.num_local} local variables, nnz={self.nnz}, "
            f"{c} {'color' if c == 1 else 'colors'})"
        )
