# manifold_sgd.py
#
# Stochastic-gradient outer loop for the planar walker trajectory optimization.
#
# Each trajectory optimization (an external callable) writes, for one batch,
# the linearization of its active constraints and cost at the optimum:
#
#   {iter}_{batch}_A.csv   constraint Jacobian w.r.t. decision variables z
#   {iter}_{batch}_B.csv   constraint Jacobian w.r.t. the feature weights theta
#   {iter}_{batch}_H.csv   cost Hessian w.r.t. z
#   {iter}_{batch}_lb.csv  constraint lower bounds       (single column)
#   {iter}_{batch}_ub.csv  constraint upper bounds       (single column)
#   {iter}_{batch}_y.csv   constraint values             (single column)
#   {iter}_{batch}_w.csv   cost gradient w.r.t. z        (single column)
#   {iter}_{batch}_z.csv   optimal decision variables    (single column)
#   {iter}_theta.csv       weights used for the iteration (single column)
#
# The step on theta is the cost gradient projected onto the tangent space of
# the active constraints of all batches, scaled by a Newton-like step length:
#
#   [A_1      B_1] [dz_1]
#   [    A_2  B_2] [dz_2] = 0  ->  N = null space basis
#   [        ...] [dth ]
#
#   g = N N^T w_ext,   dtheta = -step * g_theta * (g^T g) / (g^T H_ext g)

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

BATCH_FIELDS = ("A", "B", "H", "lb", "ub", "y", "w", "z")
VECTOR_FIELDS = ("lb", "ub", "y", "w", "z", "theta")

ACTIVE_TOLERANCE = 1e-4
THETA_REGULARIZATION = 1e-2
STEP_SIZE = 0.1

# Initial weights of the 16 features used by the planar walker.
NUM_WEIGHTS = 16


@dataclass
class SgdSettings:
    n_iterations: int = 50
    n_batch: int = 5
    snopt_iter: int = 200
    length_min: float = 0.3
    length_range: float = 0.2
    speed: float = 0.5  # m/s, kept constant across randomized lengths
    init_z: str = "z_save.csv"
    initial_length: float = 0.5
    initial_duration: float = 1.0


# (length, duration, snopt_iter, directory, init_z, weights, output_prefix) -> None
TrajectoryOptimizer = Callable[[float, float, int, str, str, str, str], None]


def write_csv(path: str, matrix: np.ndarray) -> None:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix.reshape(-1, 1)
    np.savetxt(path, matrix, delimiter=",", fmt="%.17g")


def read_csv(path: str) -> np.ndarray:
    return np.loadtxt(path, delimiter=",", ndmin=2)


def initial_theta() -> np.ndarray:
    theta = np.zeros(NUM_WEIGHTS)
    theta[0] = -0.1
    theta[5] = 1.0
    return theta


def read_batch(directory: str, iteration: int, batch: int) -> Dict[str, np.ndarray]:
    batch_prefix = os.path.join(directory, f"{iteration}_{batch}_")
    data = {name: read_csv(batch_prefix + f"{name}.csv") for name in BATCH_FIELDS}
    data["theta"] = read_csv(os.path.join(directory, f"{iteration}_theta.csv"))

    for name in VECTOR_FIELDS:
        if data[name].shape[1] != 1:
            raise ValueError(
                f"{batch_prefix}{name}.csv must have a single column, got {data[name].shape[1]}"
            )
    return data


def active_constraint_mask(
    y: np.ndarray,
    lb: np.ndarray,
    ub: np.ndarray,
    tol: float = ACTIVE_TOLERANCE,
) -> np.ndarray:
    y = np.asarray(y, dtype=float).reshape(-1)
    lb = np.asarray(lb, dtype=float).reshape(-1)
    ub = np.asarray(ub, dtype=float).reshape(-1)
    return (y >= ub - tol) | (y <= lb + tol)


def _null_space(M: np.ndarray) -> np.ndarray:
    n = M.shape[1]
    if M.shape[0] == 0:
        return np.eye(n)
    _, s, Vt = np.linalg.svd(M, full_matrices=True)
    tol = s.max(initial=0.0) * max(M.shape) * np.finfo(float).eps
    rank = int(np.sum(s > tol))
    return Vt[rank:].T


def compute_theta_step(
    batches: List[Dict[str, np.ndarray]],
    step_size: float = STEP_SIZE,
    theta_regularization: float = THETA_REGULARIZATION,
    tol: float = ACTIVE_TOLERANCE,
) -> np.ndarray:
    assert batches, "Need at least one batch"

    A_active_list = []
    B_active_list = []
    nz_list = []
    nt = None
    theta0 = np.asarray(batches[0]["theta"], dtype=float).reshape(-1)

    for i, data in enumerate(batches):
        mask = active_constraint_mask(data["y"], data["lb"], data["ub"], tol)
        A_i = np.atleast_2d(np.asarray(data["A"], dtype=float))
        B_i = np.atleast_2d(np.asarray(data["B"], dtype=float))
        nt_i = B_i.shape[1]

        if mask.shape[0] != A_i.shape[0] or B_i.shape[0] != A_i.shape[0]:
            raise ValueError(
                f"Batch {i}: A has {A_i.shape[0]} rows, B has {B_i.shape[0]} and y has "
                f"{mask.shape[0]}"
            )

        if nt is None:
            nt = nt_i
        elif nt != nt_i:
            raise ValueError(f"Batch {i} has {nt_i} weights, expected {nt}")
        if np.linalg.norm(theta0 - np.asarray(data["theta"], dtype=float).reshape(-1)) != 0:
            raise ValueError(f"Batch {i} was generated with different weights")

        A_active_list.append(A_i[mask])
        B_active_list.append(B_i[mask])
        nz_list.append(A_i.shape[1])

    nz = sum(nz_list)
    nl = sum(a.shape[0] for a in A_active_list)

    # Join matrices
    AB_active = np.zeros((nl, nz + nt))
    H_ext = np.zeros((nz + nt, nz + nt))
    w_ext = np.zeros(nz + nt)
    nl_start = 0
    nz_start = 0
    for data, A_active, B_active, nz_i in zip(batches, A_active_list, B_active_list, nz_list):
        nl_i = A_active.shape[0]
        AB_active[nl_start:nl_start + nl_i, nz_start:nz_start + nz_i] = A_active
        AB_active[nl_start:nl_start + nl_i, nz:] = B_active
        H_ext[nz_start:nz_start + nz_i, nz_start:nz_start + nz_i] = data["H"]
        w_ext[nz_start:nz_start + nz_i] = np.asarray(data["w"], dtype=float).reshape(-1)
        nl_start += nl_i
        nz_start += nz_i
    H_ext[nz:, nz:] = theta_regularization * np.eye(nt)

    N = _null_space(AB_active)
    gradient = N @ (N.T @ w_ext)

    scale_num = float(gradient @ gradient)
    scale_den = float(gradient @ (H_ext @ gradient))
    if scale_num == 0.0 or scale_den == 0.0:
        return np.zeros(nt)
    return -step_size * gradient[nz:] * scale_num / scale_den


def run_sgd(
    trajectory_optimizer: TrajectoryOptimizer,
    directory: str,
    rng: np.random.Generator,
    settings: Optional[SgdSettings] = None,
    verbose: bool = False,
) -> np.ndarray:
    """
    Alternate trajectory optimizations and theta steps.

    The generator is owned by the caller; seeding it makes the sequence of
    randomized walking lengths, and therefore the whole run, reproducible.
    Returns the last theta written.
    """
    settings = SgdSettings() if settings is None else settings
    os.makedirs(directory, exist_ok=True)

    theta = initial_theta()
    write_csv(os.path.join(directory, "0_theta.csv"), theta)

    init_z = settings.init_z
    weights = "0_theta.csv"
    trajectory_optimizer(
        settings.initial_length,
        settings.initial_duration,
        settings.snopt_iter,
        directory,
        init_z,
        weights,
        "0_0_",
    )

    for iteration in range(1, settings.n_iterations + 1):
        input_batch = 1 if iteration == 1 else settings.n_batch
        batches = [read_batch(directory, iteration - 1, b) for b in range(input_batch)]

        dtheta = compute_theta_step(batches)
        theta = batches[0]["theta"].reshape(-1) + dtheta

        if verbose:
            print(f"\n[SGD] dtheta norm: {np.linalg.norm(dtheta):.6e}")
            print("[SGD] ***********Next iteration*************")

        write_csv(os.path.join(directory, f"{iteration}_theta.csv"), theta)

        weights = f"{iteration}_theta.csv"
        output_prefix = f"{iteration}_"

        for batch in range(settings.n_batch):
            # randomize distance on [length_min, length_min + length_range]
            length = settings.length_min + settings.length_range * rng.uniform(0.0, 1.0)
            duration = length / settings.speed

            if verbose:
                print(f"\n[SGD] Iter-Batch: {iteration}-{batch}")
                print(f"[SGD] New length: {length}")

            trajectory_optimizer(
                length,
                duration,
                settings.snopt_iter,
                directory,
                init_z,
                weights,
                output_prefix + f"{batch}_",
            )

    return theta
