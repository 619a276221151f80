"""Recovery of sparse Hessian entries from compressed Hessian-vector products.

After probing, column ``c`` of the compressed matrix holds ``H @ s_c``
where ``s_c`` is the indicator of the variables with color ``c``.
Star coloring guarantees that every structural nonzero
can be read off a single compressed entry.
"""

import numpy as np
from numpy.typing import NDArray

from nlpeval.pattern import ColoredPattern


def recover_from_matmat(
    output: NDArray[np.float64],
    compressed: NDArray[np.float64],
    colored: ColoredPattern,
) -> None:
    """Write the lower-triangle Hessian entries of one function into ``output``.

    For diagonal entries (i, i): read ``compressed[i, colors[i]]``.
    For off-diagonal entries (i, j): read ``compressed[j, colors[i]]`` if
    colors[i] is unique among column j's neighbors;
    otherwise read ``compressed[i, colors[j]]``.

    Args:
        output: Destination of length ``colored.nnz``,
            in the order of ``hess_I``/``hess_J``.
        compressed: Probing result of shape ``(num_local, num_colors)``.
        colored: Recovery plan from `hessian_color_preprocess`.
    """
    if colored.nnz == 0:
        return
    color_idx, elem_idx = colored._extraction_indices
    output[:] = compressed[elem_idx, color_idx]


def dense_local_hessian(
    compressed: NDArray[np.float64],
    colored: ColoredPattern,
) -> NDArray[np.float64]:
    """Symmetric dense Hessian in the local index space, mostly for inspection.

    Entries outside the sparsity pattern are zero.
    """
    values = np.empty(colored.nnz, dtype=np.float64)
    recover_from_matmat(values, compressed, colored)
    dense = np.zeros((colored.num_local, colored.num_local), dtype=np.float64)
    dense[colored.hess_rows, colored.hess_cols] = values
    dense[colored.hess_cols, colored.hess_rows] = values
    return dense
