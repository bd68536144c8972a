"""Optimizer backend delegating to NLopt's MMA and CCSA methods."""

import logging
from typing import Optional

import nlopt
import numpy as np

from ..core.base import OptimizationResult, Optimizer, Topology
from ..core.config import OptimizerConfig
from ..core.convergence import ConvergenceStatus
from ..core.exceptions import InvalidParameterError
from ..core.history import IterationRecord
from ..core.registry import register_optimizer

logger = logging.getLogger(__name__)

# Forced stop code reported when the convergence test passes
XTOL_REACHED = 104

METHODS = {
    "MMA": nlopt.LD_MMA,
    "CCSA": nlopt.LD_CCSAQ,
}

_RULE = "*" * 72


class StopToken:
    """Cooperative stop flag shared between the callbacks and ``optimize``."""

    def __init__(self):
        self.code: Optional[int] = None

    @property
    def is_set(self) -> bool:
        return self.code is not None

    def set(self, code: int) -> None:
        self.code = code

    def clear(self) -> None:
        self.code = None


@register_optimizer("NLopt", "NLopt (MMA, CCSA)")
class NLoptOptimizer(Optimizer):
    """
    Gradient-based optimizer driving an ``nlopt.opt`` instance.

    The objective and volume constraint are registered as bound methods.
    Convergence is decided by the configured convergence test, which stops
    NLopt through ``force_stop``; NLopt's own step tolerance is set tight
    enough that it never ends the run first. Serial runs only.
    """

    def __init__(self, config: OptimizerConfig, topology: Topology):
        super().__init__(config, topology)

        if config.volume_fraction_constraint is None:
            raise InvalidParameterError(
                "Optimizer: 'Volume Fraction Constraint' parameter is required."
            )
        if config.method is None:
            raise InvalidParameterError("Optimizer: 'Method' parameter is required.")

        self.vol_constraint = config.volume_fraction_constraint
        self.method = config.method
        self.constraint_tolerance = config.constraint_tolerance

        self.opt: Optional[nlopt.opt] = None
        self.stop_token = StopToken()
        self._grad_scratch: Optional[np.ndarray] = None
        self._n_iterations = 0
        self._has_iterate = False

    def initialize(self) -> None:
        solver = self._require_interface()

        if self.comm.num_proc() != 1:
            raise InvalidParameterError(
                "Error! NLopt package doesn't work in parallel.  Use OC package."
            )

        if self.method not in METHODS:
            raise InvalidParameterError(
                f"Error!  Optimization method: {self.method} Unknown!\n"
                f"Valid options are ({', '.join(METHODS)})"
            )

        self.num_opt_dofs = solver.get_num_opt_dofs()
        n = self.num_opt_dofs
        min_density, max_density = self.topology.get_bounds()

        self.p = np.full(n, self.topology.get_initial_value())
        self.p_last = np.zeros(n)
        self._grad_scratch = np.zeros(n)

        self.opt_volume = solver.compute_reference_volume()

        self.opt = nlopt.opt(METHODS[self.method], n)
        self.opt.set_lower_bounds(min_density)
        self.opt.set_upper_bounds(max_density)
        self.opt.set_min_objective(self.evaluate)
        # convergence is decided by the convergence test, not by step size
        self.opt.set_xtol_rel(1e-9)
        self.opt.set_maxeval(self.convergence_checker.max_iterations)
        self.opt.add_inequality_constraint(
            self.constraint, self.constraint_tolerance * self.opt_volume
        )

    def optimize(self) -> OptimizationResult:
        """Run NLopt until the convergence test or NLopt itself stops it.

        Returns:
            Optimization result holding the final design and status

        Raises:
            InvalidParameterError: If NLopt reports a failure
        """
        solver = self._require_interface()
        if self.opt is None:
            raise InvalidParameterError("Error! Optimizer must be initialized before optimize().")

        self.history.clear()
        self.stop_token.clear()
        self._n_iterations = 0
        self._has_iterate = False

        self.f = solver.compute_objective(self.p, np.zeros(self.num_opt_dofs))
        global_f = self.comm.sum_all(self.f)
        self.convergence_checker.init_norm(global_f, self.compute_norm(self.p))
        self.p_last[:] = self.p

        try:
            x = self.opt.optimize(self.p.copy())
            self.p[:] = x
            self.f = self.opt.last_optimum_value()
            result_code = self.opt.last_optimize_result()
        except nlopt.ForcedStop:
            if not self.stop_token.is_set:
                raise InvalidParameterError(
                    f"Error!  Optimization failed with errorcode {nlopt.FORCED_STOP}"
                ) from None
            result_code = self.stop_token.code
        except nlopt.RoundoffLimited:
            raise InvalidParameterError(
                f"Error!  Optimization failed with errorcode {nlopt.ROUNDOFF_LIMITED}"
            ) from None
        except RuntimeError as e:
            raise InvalidParameterError(
                f"Error!  Optimization failed with errorcode {nlopt.FAILURE}: {e}"
            ) from e

        if result_code is not None and result_code < 0:
            raise InvalidParameterError(f"Error!  Optimization failed with errorcode {result_code}")

        if self.stop_token.is_set:
            self._report(_RULE)
            self._report(f"  Optimizer converged.  Objective value = {self.f}")
            self._report(f"    Convergence code: {self.stop_token.code}")
            self._report(_RULE)

        if self.stop_token.is_set:
            status = self.convergence_checker.status
        elif result_code in (nlopt.MAXEVAL_REACHED, nlopt.MAXTIME_REACHED):
            status = ConvergenceStatus.ITERATION_LIMIT
        else:
            status = ConvergenceStatus.CONVERGED

        self.iterations = self._n_iterations
        return OptimizationResult(
            x=self.p.copy(),
            objective=float(self.f),
            iterations=self._n_iterations,
            status=status,
            volume_fraction=float(self.vol_constraint),
            info={'package': 'NLopt', 'method': self.method, 'result_code': result_code},
        )

    def evaluate(self, x: np.ndarray, grad: np.ndarray) -> float:
        """NLopt objective callback; fills ``grad`` in place when requested.

        NLopt calls this for every trial point, including repeated and
        infeasible ones. Only accepted iterates are passed to the
        convergence test and recorded in the history; see
        :meth:`is_accepted_iterate`.
        """
        if self.stop_token.is_set:
            return float(self.f)

        out = grad if grad.size > 0 else self._grad_scratch
        f = self.solver_interface.compute_objective(x, out)

        self._report(_RULE)
        self._report(f"  Optimizer:  objective value is: {f}")
        self._report(_RULE)

        if not self.is_accepted_iterate(x, f):
            return float(f)

        self.f_last = self.f
        self.f = f
        self._has_iterate = True

        delta_f = self.comm.sum_all(self.f - self.f_last)
        delta_p = self.compute_diff_norm(x, self.p_last)
        self.p_last[:] = x
        self.p[:] = x

        converged = self.convergence_checker.is_converged(
            delta_f, delta_p, self._n_iterations, self.comm.my_pid()
        )
        self.history.append(IterationRecord(
            iteration=self._n_iterations,
            objective=float(self.f),
            delta_f=float(delta_f),
            delta_p=float(delta_p),
            volume_fraction=float(self.vol_constraint),
            converged=converged,
        ))
        if converged:
            self.stop_token.set(XTOL_REACHED)
            self.opt.set_force_stop(XTOL_REACHED)
            self.opt.force_stop()
        self._n_iterations += 1

        return float(f)

    def is_accepted_iterate(self, x: np.ndarray, f: float) -> bool:
        """Whether a trial point counts as an optimizer iterate.

        A point is accepted when it differs from the last accepted design,
        satisfies the volume constraint within its tolerance and does not
        increase the objective of the last accepted design.
        """
        if np.array_equal(x, self.p_last):
            return False

        excess = self.solver_interface.compute_volume(x) - self.vol_constraint * self.opt_volume
        if excess > self.constraint_tolerance * self.opt_volume:
            return False

        return not (self._has_iterate and f > self.f)

    def constraint(self, x: np.ndarray, grad: np.ndarray) -> float:
        """NLopt volume constraint callback: volume minus target volume."""
        out = grad if grad.size > 0 else None
        vol = self.solver_interface.compute_volume(x, out)
        logger.debug(f"Optimizer:  computed volume is: {vol}")
        return vol - self.vol_constraint * self.opt_volume
