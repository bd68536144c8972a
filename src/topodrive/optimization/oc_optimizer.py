"""Optimality-criteria optimizer with volume constraint enforcement."""

import logging
import math
from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np

from ..core.base import OptimizationResult, Optimizer, Topology
from ..core.config import OptimizerConfig
from ..core.exceptions import InvalidParameterError
from ..core.history import IterationRecord
from ..core.registry import register_optimizer

logger = logging.getLogger(__name__)

# Volume fraction step used to probe dg/dv and as the default step
VOLUME_PROBE = 0.001
# Number of empirical dg/dv slopes averaged by the secant update
SLOPE_WINDOW = 10
# Extra Newton iterations allowed beyond those spent bracketing
NEWTON_EXTRA_ITERATIONS = 10
NEWTON_PERTURBATION = 1e-5

CONSTRAINT_GRADIENT_MODES = ("None", "Adjoint")

_RULE = "*" * 72


@register_optimizer("OC", "Optimality Criteria")
class OCOptimizer(Optimizer):
    """
    Optimality-criteria (OC) optimizer.

    Every outer iteration evaluates the objective and volume sensitivities,
    then finds the Lagrange multiplier for which the OC update meets the
    volume target. The multiplier is bracketed by recursive bisection and
    refined with a secant Newton search, falling back to bisection if the
    Newton search stalls. When the simulation reports a nonzero secondary
    constraint residual ``g`` the volume target itself is adapted.
    """

    def __init__(self, config: OptimizerConfig, topology: Topology):
        super().__init__(config, topology)

        if config.move_limiter is None:
            raise InvalidParameterError("Optimizer: 'Move Limiter' parameter is required.")
        if config.stabilization_parameter is None:
            raise InvalidParameterError(
                "Optimizer: 'Stabilization Parameter' parameter is required."
            )
        if config.volume_enforcement is None:
            raise InvalidParameterError("Error! Missing 'Volume Enforcement' ParameterList.")
        if config.constraint_gradient not in CONSTRAINT_GRADIENT_MODES:
            raise InvalidParameterError(
                f"Error! Unknown 'Constraint Gradient': {config.constraint_gradient}. "
                f"Options are {CONSTRAINT_GRADIENT_MODES}"
            )

        self.move_limit = config.move_limiter
        self.stab_exponent = config.stabilization_parameter
        self.volume_enforcement = config.volume_enforcement
        self.constraint_gradient = config.constraint_gradient

        self.vol_constraint = self.volume_enforcement.target_volume_fraction
        self.g = 0.0
        self.g_last = 0.0

        self.dfdp: Optional[np.ndarray] = None
        self.dvdp: Optional[np.ndarray] = None
        self.dgdp: Optional[np.ndarray] = None

        self._vol_constraint_last = self.vol_constraint
        self._dgdv_vals: Deque[float] = deque(maxlen=SLOPE_WINDOW)

    def initialize(self) -> None:
        solver = self._require_interface()

        self.num_opt_dofs = solver.get_num_opt_dofs()
        n = self.num_opt_dofs

        self.p = np.full(n, self.topology.get_initial_value())
        self.p_last = np.zeros(n)
        self.dfdp = np.zeros(n)
        self.dvdp = np.zeros(n)
        self.dgdp = np.zeros(n) if self.constraint_gradient == "Adjoint" else None

        self.opt_volume = solver.compute_reference_volume()
        solver.initialize_topology(self.p)

    def optimize(self) -> OptimizationResult:
        """Run OC iterations until the convergence test stops the loop.

        Returns:
            Optimization result holding the final design and status

        Raises:
            InvalidParameterError: If the optimizer has no solver interface or
                the volume constraint cannot be enforced
        """
        solver = self._require_interface()
        if self.p is None:
            raise InvalidParameterError("Error! Optimizer must be initialized before optimize().")

        self.history.clear()
        self._dgdv_vals.clear()

        self._evaluate()
        self.p_last[:] = self.p
        solver.compute_volume(self.p, self.dvdp)

        self.compute_updated_topology()

        global_f = self.comm.sum_all(self.f)
        self.convergence_checker.init_norm(global_f, self.compute_norm(self.p))

        iteration = 0
        self._vol_constraint_last = self.vol_constraint
        converged = False
        while not converged:
            self.f_last, self.g_last = self.f, self.g
            self._evaluate()
            solver.compute_volume(self.p, self.dvdp)

            self.p_last[:] = self.p

            if self.g != 0.0:
                self._adapt_volume_target()

            self.compute_updated_topology()

            self._report(_RULE)
            self._report("** Optimization Status Check *******************************************")
            self._report(f"Status: Objective = {self.f}")

            delta_f = self.comm.sum_all(self.f - self.f_last)
            delta_p = self.compute_diff_norm(self.p, self.p_last)

            converged = self.convergence_checker.is_converged(
                delta_f, delta_p, iteration, self.comm.my_pid()
            )
            self.history.append(IterationRecord(
                iteration=iteration,
                objective=float(self.f),
                delta_f=float(delta_f),
                delta_p=float(delta_p),
                volume_fraction=float(self.vol_constraint),
                converged=converged,
            ))
            iteration += 1

        self.iterations = iteration
        return OptimizationResult(
            x=self.p.copy(),
            objective=float(self.f),
            iterations=iteration,
            status=self.convergence_checker.status,
            volume_fraction=float(self.vol_constraint),
            info={'package': 'OC', 'constraint_gradient': self.constraint_gradient},
        )

    def _evaluate(self) -> None:
        solver = self.solver_interface
        if self.dgdp is not None:
            self.f, self.g = solver.compute(self.p, self.dfdp, self.dgdp)
        else:
            self.f, self.g = solver.compute(self.p, self.dfdp)

    def _adapt_volume_target(self) -> None:
        """Move the volume target to drive the secondary constraint ``g`` to zero."""
        ve = self.volume_enforcement

        if self.dgdp is not None:
            self.vol_constraint += VOLUME_PROBE
            self.compute_updated_topology()
            self.vol_constraint -= VOLUME_PROBE

            dg = self.comm.sum_all(float(np.dot(self.dgdp, self.p - self.p_last)))
            dgdv = dg / VOLUME_PROBE
            deltav = -self.g / dgdv if dgdv != 0.0 else VOLUME_PROBE
        elif self.vol_constraint != self._vol_constraint_last:
            self._dgdv_vals.append(
                (self.g - self.g_last) / (self.vol_constraint - self._vol_constraint_last)
            )
            dgdv = sum(self._dgdv_vals) / len(self._dgdv_vals)
            deltav = -self.g / dgdv if dgdv != 0.0 else VOLUME_PROBE
        else:
            deltav = VOLUME_PROBE

        dvol_limit = 0.1 * self.vol_constraint
        if abs(deltav) > dvol_limit:
            deltav = math.copysign(dvol_limit, deltav)

        self._vol_constraint_last = self.vol_constraint
        self.vol_constraint = min(max(self.vol_constraint + deltav, ve.min_volume_fraction),
                                  ve.max_volume_fraction)

    def _update_design(self, multiplier: float) -> None:
        """Write the OC update of ``p_last`` for ``multiplier`` into ``p``."""
        min_density, max_density = self.topology.get_bounds()
        offset = min_density - 0.01 * (max_density - min_density)

        be = np.maximum(-self.dfdp / self.dvdp / multiplier, 0.0)
        p_new = (self.p_last - offset) * be ** self.stab_exponent + offset
        p_new = np.clip(p_new, self.p_last - self.move_limit, self.p_last + self.move_limit)
        np.clip(p_new, min_density, max_density, out=self.p)

    def _volume_residual(self, multiplier: float) -> float:
        self._update_design(multiplier)
        vol = self.solver_interface.compute_volume(self.p)
        return vol - self.vol_constraint * self.opt_volume

    def _log_residual(self, niters: int, residual: float) -> None:
        if self.comm.is_root():
            logger.debug(f"Volume enforcement (iteration {niters}): "
                         f"Residual = {residual / self.opt_volume}")

    def _bisection_search(self, v1: float, v2: float,
                          stop_on_bracket: bool) -> Tuple[float, float, float, int, Optional[float]]:
        """Recursive bisection on the multiplier interval ``[v1, v2]``.

        Args:
            v1: Lower multiplier (too much volume)
            v2: Upper multiplier (too little volume)
            stop_on_bracket: Return at the first midpoint with excess volume

        Returns:
            Tuple of (v1, v2, last residual, iterations, residual ratio). The
            ratio compares the bracketing residual with the zero-volume
            residual and is None unless the search stopped on a bracket.
        """
        ve = self.volume_enforcement
        target = self.vol_constraint * self.opt_volume
        tol = ve.convergence_tolerance * self.opt_volume

        niters = 0
        while True:
            vmid = 0.5 * (v1 + v2)
            residual = self._volume_residual(vmid)
            niters += 1
            if residual > 0.0:
                v1 = vmid
                if stop_on_bracket:
                    return v1, v2, residual, niters, residual / -target
            else:
                v2 = vmid

            self._log_residual(niters, residual)

            if niters >= ve.max_iterations or abs(residual) <= tol:
                return v1, v2, residual, niters, None

    def _newton_search(self, v1: float, v2: float, resid_ratio: float,
                       niters: int) -> Tuple[bool, float]:
        """Secant search for the multiplier starting from a bisection bracket.

        Returns:
            Tuple of (converged, last residual)
        """
        tol = self.volume_enforcement.convergence_tolerance * self.opt_volume
        max_iters = niters + NEWTON_EXTRA_ITERATIONS

        multiplier = (resid_ratio * v2 - v1) / (resid_ratio - 1.0)
        epsilon = multiplier * NEWTON_PERTURBATION
        residual = 0.0
        if multiplier <= 0.0:
            return False, residual

        while True:
            f0 = self._volume_residual(multiplier)
            residual = f0
            self._log_residual(niters, f0)
            if abs(f0) < tol:
                return True, f0

            f1 = self._volume_residual(multiplier + epsilon)
            residual = f1
            if f1 == f0:
                return False, residual
            multiplier -= epsilon * f0 / (f1 - f0)

            niters += 1
            if niters >= max_iters:
                return False, residual

    def compute_updated_topology(self) -> None:
        """Update ``p`` from ``p_last`` so that the design meets the volume target.

        Raises:
            InvalidParameterError: If the final volume residual exceeds the
                acceptable tolerance
        """
        ve = self.volume_enforcement

        dfdp_tot = self.comm.sum_all(float(np.sum(self.dfdp)))
        dvdp_tot = self.comm.sum_all(float(np.sum(self.dvdp)))
        v1 = 0.0
        v2 = -10.0 * dfdp_tot / dvdp_tot

        self._report(f"Volume enforcement: Target = {self.vol_constraint}")
        self._report("Volume enforcement: Beginning search with recursive bisection.")

        v1, v2, residual, niters, resid_ratio = self._bisection_search(
            v1, v2, stop_on_bracket=ve.use_newton_search
        )

        if resid_ratio is not None:
            self._report("Volume enforcement: Bounds found.  Switching to Newton search.")
            converged, residual = self._newton_search(v1, v2, resid_ratio, niters)
            if not converged:
                self._report("Volume enforcement: Newton search failed.  "
                             "Switching back to recursive bisection.")
                _, _, residual, _, _ = self._bisection_search(v1, v2, stop_on_bracket=False)
        elif ve.use_newton_search and abs(residual) > ve.convergence_tolerance * self.opt_volume:
            # bracketing used its budget without finding excess volume
            self._report("Volume enforcement: No bounds found.  "
                         "Continuing with recursive bisection.")
            _, _, residual, _, _ = self._bisection_search(v1, v2, stop_on_bracket=False)

        if abs(residual) > ve.acceptable_tolerance * self.opt_volume:
            raise InvalidParameterError(
                "Enforcement of volume constraint failed:  Exceeded max iterations"
            )
