# autodiff_utils.py
#
# Small helpers around pydrake's AutoDiffXd so that the rest of the code can
# work with flat 1-D numpy arrays:
#   - initialize_autodiff(x)    -> object array seeded with the identity gradient
#   - autodiff_to_value(a)      -> float array with the same shape as a
#   - autodiff_to_gradient(a)   -> (a.size, num_derivatives) Jacobian
#
# pydrake returns column matrices for vectors; everything here is reshaped
# back to the caller's shape.

from __future__ import annotations

import numpy as np

from pydrake.all import (
    AutoDiffXd,
    ExtractGradient,
    ExtractValue,
    InitializeAutoDiff,
)


def is_autodiff(a) -> bool:
    a = np.asarray(a)
    if a.dtype != object:
        return False
    return any(isinstance(ai, AutoDiffXd) for ai in a.reshape(-1))


def initialize_autodiff(value: np.ndarray) -> np.ndarray:
    """Seed a vector so that d(value_i)/d(value_j) = delta_ij."""
    value = np.asarray(value, dtype=float).reshape(-1)
    return np.asarray(InitializeAutoDiff(value.reshape(-1, 1))).reshape(-1)


def _promote(a: np.ndarray) -> np.ndarray:
    # Plain floats (constants folded by numpy) become AutoDiffXd with no
    # derivatives so that pydrake accepts the array. Vectors are passed as
    # column matrices.
    flat = [
        ai if isinstance(ai, AutoDiffXd) else AutoDiffXd(float(ai))
        for ai in a.reshape(-1)
    ]
    shape = a.shape if a.ndim == 2 else (a.size, 1)
    return np.array(flat, dtype=object).reshape(shape)


def autodiff_to_value(a) -> np.ndarray:
    a = np.asarray(a)
    if a.dtype != object:
        return a.astype(float)
    if a.size == 0:
        return np.zeros(a.shape)
    return np.asarray(ExtractValue(_promote(a)), dtype=float).reshape(a.shape)


def autodiff_to_gradient(a, num_derivatives: int) -> np.ndarray:
    """
    Jacobian of the flattened array a with respect to the seed.

    Entries without derivatives (constants) contribute zero rows.
    """
    a = np.asarray(a).reshape(-1)
    gradient = np.zeros((a.size, num_derivatives))
    if a.size == 0 or a.dtype != object:
        return gradient

    extracted = np.asarray(ExtractGradient(_promote(a)), dtype=float)
    extracted = extracted.reshape(a.size, -1)
    assert extracted.shape[1] <= num_derivatives, (
        f"Gradient has {extracted.shape[1]} columns, expected at most "
        f"{num_derivatives}"
    )
    gradient[:, : extracted.shape[1]] = extracted
    return gradient


def autodiff_array_equal(a, b) -> bool:
    # Used to avoid invalidating plant context caches with identical values.
    a = np.asarray(a)
    b = np.asarray(b)
    if a.shape != b.shape:
        return False
    if not np.array_equal(autodiff_to_value(a), autodiff_to_value(b)):
        return False
    n = max(_num_derivatives(a), _num_derivatives(b))
    return np.array_equal(autodiff_to_gradient(a, n), autodiff_to_gradient(b, n))


def _num_derivatives(a: np.ndarray) -> int:
    if a.dtype != object:
        return 0
    sizes = [
        ai.derivatives().size for ai in a.reshape(-1) if isinstance(ai, AutoDiffXd)
    ]
    return max(sizes, default=0)


def autodiff_solve(M, b) -> np.ndarray:
    """
    Solve M y = b where either side may carry AutoDiffXd entries.

    Uses dy = M^-1 (db - dM y) so that only float factorizations are needed.
    """
    M = np.asarray(M)
    b = np.asarray(b).reshape(-1)
    if not is_autodiff(M) and not is_autodiff(b):
        return np.linalg.solve(M.astype(float), b.astype(float))

    n = b.shape[0]
    num_derivatives = max(_num_derivatives(M), _num_derivatives(b))
    M_value = autodiff_to_value(M)
    b_value = autodiff_to_value(b)
    y_value = np.linalg.solve(M_value, b_value)

    dM = autodiff_to_gradient(M, num_derivatives).reshape(n, n, num_derivatives)
    db = autodiff_to_gradient(b, num_derivatives)
    dy = np.linalg.solve(M_value, db - np.einsum("ijk,j->ik", dM, y_value))

    y = np.empty(n, dtype=object)
    for i in range(n):
        y[i] = AutoDiffXd(float(y_value[i]), dy[i])
    return y


def to_autodiff(a) -> np.ndarray:
    """Constant AutoDiffXd copy of a float array (no derivatives)."""
    a = np.asarray(a)
    if a.dtype == object:
        return a
    out = np.empty(a.shape, dtype=object)
    for index, value in np.ndenumerate(a):
        out[index] = AutoDiffXd(float(value))
    return out
