# planar_walker_lqr.py
#
# Constrained LQR for the simplified planar walker.
#
# Design model:
#   - PlanarLinkage with two links, one actuator on the first joint and the
#     holonomic constraint q_0 - q_1 = 0 (the legs move together),
#   - equilibrium (u0, lambda0) found at the requested pose q0 with v = 0,
#   - LQR designed in the 2-D null space of the stacked constraint Jacobian.
#
# Runtime model:
#   u = u0 - K (x - x0)
#
# Usage:
#   python3 planar_walker_lqr.py
#   python3 planar_walker_lqr.py --stiffness 5.0 --q_weight 10.0 --r_weight 0.1 --verbose
#   python3 planar_walker_lqr.py --plot --save_path response.png

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from scipy.linalg import expm

from constrained_lqr_controller import (
    ConstrainedLqrController,
    solve_constrained_equilibrium,
)
from constrained_plant import PlanarLinkage

# Default LQR weights (reduced coordinates)
Q_WEIGHT = 1.0
R_WEIGHT = 1.0


def build_planar_walker(stiffness: float = 0.0, damping: float = 0.1) -> PlanarLinkage:
    return PlanarLinkage(
        masses=(1.0, 1.0),
        stiffness=stiffness,
        damping=damping,
        actuation_matrix=np.array([[1.0], [0.0]]),
        position_constraints_jacobian=np.array([[1.0, -1.0]]),
    )


def design_planar_walker_lqr(
    q0: np.ndarray,
    stiffness: float = 0.0,
    damping: float = 0.1,
    q_weight: float = Q_WEIGHT,
    r_weight: float = R_WEIGHT,
    verbose: bool = False,
) -> ConstrainedLqrController:
    plant = build_planar_walker(stiffness=stiffness, damping=damping)

    u0, lambda0, _ = solve_constrained_equilibrium(plant, q0, verbose=verbose)

    controller = ConstrainedLqrController(plant, verbose=verbose)
    # Reduced dimension = 2 * (n_q - n_constraints)
    n_reduced = 2 * (plant.num_positions() - plant.num_forces())
    Q = q_weight * np.eye(n_reduced)
    R = r_weight * np.eye(plant.num_actuators())
    controller.setup_controller(q0, u0, lambda0, Q, R)
    return controller


@dataclass
class ResponseLog:
    times: np.ndarray   # (N,)
    states: np.ndarray  # (N, n_x)
    efforts: np.ndarray  # (N, n_u)


def simulate_reduced_response(
    controller: ConstrainedLqrController,
    dx0: np.ndarray,
    duration: float = 5.0,
    dt: float = 0.01,
) -> ResponseLog:
    """
    Propagate an initial deviation through the reduced closed loop

        zdot = (A_r - B_r K_r) z,   z = P (x - x_desired)

    with the exact discrete transition expm(A_cl dt). The part of dx0 that
    violates the constraints is dropped by the projection.
    """
    result = controller.lqr_result
    P = controller.P
    A_cl = result.A_reduced - result.B_reduced @ result.K_reduced
    Phi = expm(A_cl * dt)

    dx0 = np.asarray(dx0, dtype=float).reshape(-1)
    assert dx0.shape[0] == controller.num_states, (
        f"dx0 must have length {controller.num_states}"
    )

    params = controller.calc_control(0.0)
    n_steps = int(np.ceil(duration / dt)) + 1
    times = dt * np.arange(n_steps)
    states = np.zeros((n_steps, controller.num_states))
    efforts = np.zeros((n_steps, controller.num_efforts))

    z = P @ dx0
    for k in range(n_steps):
        x = params.x_desired + P.T @ z
        states[k] = x
        efforts[k] = params.calc_effort(x)
        z = Phi @ z

    return ResponseLog(times=times, states=states, efforts=efforts)


def plot_response(log: ResponseLog, save_path: Optional[str] = None) -> None:
    n_q = log.states.shape[1] // 2

    fig, axes = plt.subplots(3, 1, figsize=(10, 8), sharex=True)
    fig.suptitle("Planar walker: constrained LQR response", fontsize=14, fontweight="bold")

    for i in range(n_q):
        axes[0].plot(log.times, log.states[:, i], linewidth=1.5, label=f"q_{i}")
        axes[1].plot(log.times, log.states[:, n_q + i], linewidth=1.5, label=f"v_{i}")
    for i in range(log.efforts.shape[1]):
        axes[2].plot(log.times, log.efforts[:, i], linewidth=1.5, label=f"u_{i}")

    axes[0].set_ylabel("Position (rad)")
    axes[1].set_ylabel("Velocity (rad/s)")
    axes[2].set_ylabel("Effort (N·m)")
    axes[2].set_xlabel("Time (s)")
    for ax in axes:
        ax.axhline(y=0, color="black", linestyle="-", linewidth=0.5)
        ax.legend(loc="upper right", fontsize=9)
        ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches="tight")
        print(f"\n  Response plot saved to: {save_path}")

    plt.show()


def main():
    parser = argparse.ArgumentParser(
        description="Constrained LQR for the planar walker."
    )
    parser.add_argument("--q0", type=float, nargs=2, default=[0.0, 0.0],
                        help="Joint positions of the equilibrium pose.")
    parser.add_argument("--stiffness", type=float, default=0.0,
                        help="Joint spring stiffness.")
    parser.add_argument("--damping", type=float, default=0.1,
                        help="Joint damping.")
    parser.add_argument("--q_weight", type=float, default=Q_WEIGHT,
                        help="State weight in reduced coordinates.")
    parser.add_argument("--r_weight", type=float, default=R_WEIGHT,
                        help="Effort weight.")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--plot", action="store_true",
                        help="Plot the response to a common leg offset of 0.1 rad.")
    parser.add_argument("--save_path", type=str, default=None,
                        help="Where to save the response plot.")
    args = parser.parse_args()

    controller = design_planar_walker_lqr(
        np.asarray(args.q0),
        stiffness=args.stiffness,
        damping=args.damping,
        q_weight=args.q_weight,
        r_weight=args.r_weight,
        verbose=args.verbose,
    )
    params = controller.calc_control(0.0)
    result = controller.lqr_result

    closed_loop = result.A_reduced - result.B_reduced @ result.K_reduced
    eigs = np.linalg.eigvals(closed_loop)

    print("[CLQR] Planar walker constrained LQR")
    print(f"  K         = {np.array2string(params.K, precision=4)}")
    print(f"  x_desired = {params.x_desired}")
    print(f"  E         = {params.E}")
    print("  Reduced closed-loop eigenvalues:")
    for i, lam in enumerate(eigs):
        print(f"    mode {i:2d}: λ = {lam.real:+8.4e} + {lam.imag:+8.4e}j")

    if args.plot:
        dx0 = np.zeros(controller.num_states)
        dx0[:controller.num_positions] = 0.1
        plot_response(simulate_reduced_response(controller, dx0), save_path=args.save_path)


if __name__ == "__main__":
    main()
