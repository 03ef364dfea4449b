# constrained_lqr_controller.py
#
# LQR regulator around a constrained equilibrium (holonomic + contact).
#
# Design model:
#   x = [q; v],  xdot = f(x, u, lambda)  with constraint forces lambda.
#   The constraints J(q) qdot = 0 are imposed on positions and velocities
#   alike, so admissible perturbations live in the null space of
#
#       F = [J  0]
#           [0  J]
#
#   An orthonormal basis P of null(F) (rows of P) is taken from the complete
#   QR factorization of F^T. The full linearization (A, B) at (x0, u0, lambda0)
#   is projected into these reduced coordinates
#
#       A_ = P A P^T,   B_ = P B
#
#   and a continuous-time LQR is solved there. The gain is mapped back as
#
#       K = K_ P
#
#   so that K ignores every component of a deviation that violates the
#   constraints.
#
# Runtime model:
#   u = E - K (x - x_desired),  E = u0,  x_desired = x0 = [q0; 0]
#   The parameters are computed once in setup_controller() and re-emitted
#   unchanged (apart from the timestamp) by calc_control().

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import least_squares

from pydrake.all import LinearQuadraticRegulator

from affine_params import AffineParams
from autodiff_utils import (
    autodiff_to_gradient,
    autodiff_to_value,
    initialize_autodiff,
)
from constrained_plant import ConstrainedPlant

# Max |xdot| accepted at the linearization point.
EQUILIBRIUM_TOLERANCE = 1e-6


class EquilibriumError(RuntimeError):
    """The requested linearization point is not a fixed point of the dynamics."""


@dataclass(frozen=True)
class Linearization:
    A: np.ndarray
    B: np.ndarray
    xdot0: np.ndarray


@dataclass(frozen=True)
class ReducedLqrResult:
    K: np.ndarray
    K_reduced: np.ndarray
    S_reduced: np.ndarray
    A_reduced: np.ndarray
    B_reduced: np.ndarray


def _read_only(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=float, copy=True)
    a.setflags(write=False)
    return a


def assemble_constraint_jacobian(plant: ConstrainedPlant, q0: np.ndarray) -> np.ndarray:
    """
    Stack the holonomic constraint Jacobian over the contact Jacobian at q0:

        J = [J_h(q0)]
            [J_c(q0)]     (only when the plant has contacts)

    The contact block goes through the AutoDiffXd path of the plant and only
    its value is kept.
    """
    nq = plant.num_positions()
    q0 = np.asarray(q0, dtype=float).reshape(-1)
    assert q0.shape[0] == nq

    J_tree = np.asarray(plant.calc_position_constraints_jacobian(q0), dtype=float)
    J_tree = J_tree.reshape(-1, nq)

    if plant.num_contacts() > 0:
        x0 = np.concatenate([q0, np.zeros(plant.num_velocities())])
        J_contact = autodiff_to_value(plant.calc_contact_jacobian(initialize_autodiff(x0)))
        J_contact = J_contact.reshape(-1, nq)
    else:
        J_contact = np.zeros((0, nq))

    return np.vstack([J_tree, J_contact])


def compute_null_space_projector(J: np.ndarray) -> np.ndarray:
    """
    Orthonormal basis (as rows) of the null space of F = blkdiag(J, J).

    The rank of F is taken to be rows(F); rank-deficient constraint sets are
    not detected here and show up as a mis-sized projector.
    """
    J = np.asarray(J, dtype=float)
    m, n = J.shape

    F = np.zeros((2 * m, 2 * n))
    F[:m, :n] = J
    F[m:, n:] = J

    Q_decomp, _ = np.linalg.qr(F.T, mode="complete")
    return Q_decomp[:, F.shape[0]:].T


def linearize_constrained_dynamics(
    plant: ConstrainedPlant,
    x0: np.ndarray,
    u0: np.ndarray,
    lambda0: np.ndarray,
    tolerance: float = EQUILIBRIUM_TOLERANCE,
) -> Linearization:
    """
    Linearize xdot = f(x, u, lambda) at (x0, u0, lambda0) with one joint seed
    over [x0; u0; lambda0]. The lambda columns of the Jacobian are dropped.

    Raises EquilibriumError if max |f(x0, u0, lambda0)| > tolerance.
    """
    n_x = plant.num_states()
    n_u = plant.num_actuators()
    n_l = plant.num_forces()

    xul0 = np.concatenate([
        np.asarray(x0, dtype=float).reshape(-1),
        np.asarray(u0, dtype=float).reshape(-1),
        np.asarray(lambda0, dtype=float).reshape(-1),
    ])
    assert xul0.shape[0] == n_x + n_u + n_l

    xul0_autodiff = initialize_autodiff(xul0)
    x_autodiff = xul0_autodiff[:n_x]
    u_autodiff = xul0_autodiff[n_x:n_x + n_u]
    lambda_autodiff = xul0_autodiff[n_x + n_u:]

    xdot_autodiff = plant.calc_time_derivatives(x_autodiff, u_autodiff, lambda_autodiff)

    xdot0 = autodiff_to_value(xdot_autodiff).reshape(-1)
    residual = float(np.max(np.abs(xdot0))) if xdot0.size else 0.0
    if residual > tolerance:
        raise EquilibriumError(
            f"Not an equilibrium: max |xdot| = {residual:.3e} > {tolerance:.1e}"
        )

    AB = autodiff_to_gradient(xdot_autodiff, xul0.shape[0])
    A = AB[:, :n_x]
    B = AB[:, n_x:n_x + n_u]
    return Linearization(A=A, B=B, xdot0=xdot0)


def synthesize_reduced_lqr(
    A: np.ndarray,
    B: np.ndarray,
    P: np.ndarray,
    Q: np.ndarray,
    R: np.ndarray,
) -> ReducedLqrResult:
    A = np.asarray(A, dtype=float)
    B = np.asarray(B, dtype=float)
    P = np.asarray(P, dtype=float)
    Q = np.atleast_2d(np.asarray(Q, dtype=float))
    R = np.atleast_2d(np.asarray(R, dtype=float))

    if P.shape[1] != A.shape[0]:
        raise ValueError(
            f"Projector has {P.shape[1]} columns but the state dimension is {A.shape[0]}"
        )

    # A and B in the reduced coordinates
    A_reduced = P @ A @ P.T
    B_reduced = P @ B

    if Q.shape[0] != Q.shape[1]:
        raise ValueError(f"Q must be square, got shape {Q.shape}")
    if R.shape[0] != R.shape[1]:
        raise ValueError(f"R must be square, got shape {R.shape}")
    if A_reduced.shape[0] != Q.shape[0]:
        raise ValueError(
            f"Q is {Q.shape[0]}x{Q.shape[1]} but the reduced state dimension is "
            f"{A_reduced.shape[0]}"
        )
    if B_reduced.shape[1] != R.shape[0]:
        raise ValueError(
            f"R is {R.shape[0]}x{R.shape[1]} but there are {B_reduced.shape[1]} efforts"
        )

    K_reduced, S_reduced = LinearQuadraticRegulator(A_reduced, B_reduced, Q, R)
    K_reduced = np.asarray(K_reduced)

    return ReducedLqrResult(
        K=K_reduced @ P,
        K_reduced=K_reduced,
        S_reduced=np.asarray(S_reduced),
        A_reduced=A_reduced,
        B_reduced=B_reduced,
    )


def solve_constrained_equilibrium(
    plant: ConstrainedPlant,
    q0: np.ndarray,
    u_guess: Optional[np.ndarray] = None,
    lambda_guess: Optional[np.ndarray] = None,
    verbose: bool = False,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Given a fixed pose q0 and v = 0, find efforts and constraint forces

        (u0, lambda0) = argmin ||xdot(q0, 0, u, lambda)||^2

    The pose is not changed. The residual Jacobian comes from AutoDiffXd.
    Returns (u0, lambda0, xdot).
    """
    n_q = plant.num_positions()
    n_u = plant.num_actuators()
    n_l = plant.num_forces()

    q0 = np.asarray(q0, dtype=float).reshape(-1)
    if q0.shape[0] != n_q:
        raise ValueError(f"q0 must have length {n_q}, got {q0.shape[0]}")
    x0 = np.concatenate([q0, np.zeros(plant.num_velocities())])

    u_init = np.zeros(n_u) if u_guess is None else np.asarray(u_guess, dtype=float).reshape(n_u)
    l_init = np.zeros(n_l) if lambda_guess is None else np.asarray(lambda_guess, dtype=float).reshape(n_l)
    theta0 = np.concatenate([u_init, l_init])

    def residual(theta: np.ndarray) -> np.ndarray:
        return np.asarray(
            plant.calc_time_derivatives(x0, theta[:n_u], theta[n_u:]), dtype=float
        ).reshape(-1)

    def jacobian(theta: np.ndarray) -> np.ndarray:
        theta_autodiff = initialize_autodiff(theta)
        xdot = plant.calc_time_derivatives(x0, theta_autodiff[:n_u], theta_autodiff[n_u:])
        return autodiff_to_gradient(xdot, theta.shape[0])

    if verbose:
        xdot_init = residual(theta0)
        print("\n[EQ] Initial equilibrium residual at fixed pose:")
        print(f"  ||xdot||   = {np.linalg.norm(xdot_init):.3e}")
        print(f"  max |xdot| = {np.max(np.abs(xdot_init)):.3e}")

    res = least_squares(
        residual,
        theta0,
        jac=jacobian,
        method="trf",
        xtol=1e-12,
        ftol=1e-12,
        gtol=1e-12,
    )

    u_star = res.x[:n_u]
    lambda_star = res.x[n_u:]
    xdot_star = residual(res.x)

    if verbose:
        print("\n[EQ] Equilibrium solve at fixed pose:")
        print(f"  success    = {res.success},  message = {res.message}")
        print(f"  max |xdot| = {np.max(np.abs(xdot_star)):.3e}")

    return u_star, lambda_star, xdot_star


class ConstrainedLqrController:
    """
    Constrained LQR around (q0, u0, lambda0) for a ConstrainedPlant.

    Usage:
        controller = ConstrainedLqrController(plant)
        controller.setup_controller(q0, u0, lambda0, Q, R)
        params = controller.calc_control(t)   # once per control tick
    """

    def __init__(self, plant: ConstrainedPlant, verbose: bool = False) -> None:
        if plant.num_positions() != plant.num_velocities():
            raise ValueError(
                "ConstrainedLqrController assumes num_positions == num_velocities, got "
                f"{plant.num_positions()} and {plant.num_velocities()}"
            )
        self._plant = plant
        self.verbose = bool(verbose)

        self.num_positions = plant.num_positions()
        self.num_velocities = plant.num_velocities()
        self.num_states = self.num_positions + self.num_velocities
        self.num_efforts = plant.num_actuators()
        self.num_forces = plant.num_forces()

        self._K: Optional[np.ndarray] = None
        self._E: Optional[np.ndarray] = None
        self._x_desired: Optional[np.ndarray] = None
        self._P: Optional[np.ndarray] = None
        self._linearization: Optional[Linearization] = None
        self._lqr_result: Optional[ReducedLqrResult] = None

    @property
    def plant(self) -> ConstrainedPlant:
        return self._plant

    @property
    def is_setup(self) -> bool:
        return self._K is not None

    @property
    def K(self) -> np.ndarray:
        assert self._K is not None, "Call setup_controller() first."
        return self._K

    @property
    def E(self) -> np.ndarray:
        assert self._E is not None, "Call setup_controller() first."
        return self._E

    @property
    def x_desired(self) -> np.ndarray:
        assert self._x_desired is not None, "Call setup_controller() first."
        return self._x_desired

    @property
    def P(self) -> np.ndarray:
        assert self._P is not None, "Call setup_controller() first."
        return self._P

    @property
    def A(self) -> np.ndarray:
        assert self._linearization is not None, "Call setup_controller() first."
        return self._linearization.A

    @property
    def B(self) -> np.ndarray:
        assert self._linearization is not None, "Call setup_controller() first."
        return self._linearization.B

    @property
    def lqr_result(self) -> ReducedLqrResult:
        assert self._lqr_result is not None, "Call setup_controller() first."
        return self._lqr_result

    def setup_controller(self, q0, u0, lambda0, Q, R) -> None:
        q0 = np.asarray(q0, dtype=float).reshape(-1)
        u0 = np.asarray(u0, dtype=float).reshape(-1)
        lambda0 = np.asarray(lambda0, dtype=float).reshape(-1)

        # checking the validity of the parameters
        if q0.shape[0] != self.num_positions:
            raise ValueError(f"q0 must have length {self.num_positions}, got {q0.shape[0]}")
        if u0.shape[0] != self.num_efforts:
            raise ValueError(f"u0 must have length {self.num_efforts}, got {u0.shape[0]}")
        if lambda0.shape[0] != self.num_forces:
            raise ValueError(
                f"lambda0 must have length {self.num_forces}, got {lambda0.shape[0]}"
            )

        # Fixed point: zero velocities
        x0 = np.concatenate([q0, np.zeros(self.num_velocities)])

        J = assemble_constraint_jacobian(self._plant, q0)
        P = compute_null_space_projector(J)
        linearization = linearize_constrained_dynamics(self._plant, x0, u0, lambda0)
        lqr_result = synthesize_reduced_lqr(linearization.A, linearization.B, P, Q, R)

        self._P = _read_only(P)
        self._linearization = Linearization(
            A=_read_only(linearization.A),
            B=_read_only(linearization.B),
            xdot0=_read_only(linearization.xdot0),
        )
        self._lqr_result = lqr_result
        self._K = _read_only(lqr_result.K)
        self._E = _read_only(u0)
        self._x_desired = _read_only(x0)

        if self.verbose:
            print("\n" + "=" * 80)
            print("[CLQR] Constrained LQR setup")
            print("=" * 80)
            print(f"  Positions n_q                  = {self.num_positions}")
            print(f"  States n_x                     = {self.num_states}")
            print(f"  Efforts n_u                    = {self.num_efforts}")
            print(f"  Constraint forces n_lambda     = {self.num_forces}")
            print(f"  Constraint Jacobian J shape    = {J.shape}")
            print(f"  Reduced state dimension        = {P.shape[0]}")
            print(f"  max |xdot0|                    = {np.max(np.abs(linearization.xdot0)):.3e}")
            print(f"  K shape: {self._K.shape},  ‖K‖_∞ = {np.max(np.abs(self._K)):.3e}")
            print("=" * 80 + "\n")

    def calc_control(self, time: float) -> AffineParams:
        assert self._K is not None, "Call setup_controller() first."
        return AffineParams(
            K=self._K,
            E=self._E,
            x_desired=self._x_desired,
            timestamp=float(time),
        )
