#!/usr/bin/env python
"""
Test suite for the NLopt optimizer backend.
"""

import copy
import os
import sys
import unittest

import numpy as np

# Add src directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from topodrive.core.base import Topology
from topodrive.core.convergence import ConvergenceStatus
from topodrive.core.exceptions import InvalidParameterError
from topodrive.core.registry import OptimizerFactory
from topodrive.optimization.nlopt_optimizer import NLoptOptimizer, StopToken, XTOL_REACHED
from topodrive.parallel import SerialCommunicator
from topodrive.problems import SeparableComplianceProblem


NLOPT_PARAMS = {
    "Package": "NLopt",
    "Method": "MMA",
    "Volume Fraction Constraint": 0.4,
    "Constraint Tolerance": 1.0e-8,
    "Convergence Tests": {
        "Maximum Iterations": 300,
        "Combo Type": "AND",
        "Absolute Topology Change": 1.0e-6,
        "Relative Objective Change": 1.0e-8,
    },
}

BOUNDS = (0.01, 1.0)


class TwoProcessCommunicator(SerialCommunicator):
    def num_proc(self) -> int:
        return 2


def make_params(**overrides):
    params = copy.deepcopy(NLOPT_PARAMS)
    params.update(overrides)
    return params


def make_optimizer(problem, params=None):
    optimizer = OptimizerFactory.create(params or make_params(), Topology(BOUNDS, 0.5))
    optimizer.set_interface(problem)
    optimizer.initialize()
    return optimizer


class TestStopToken(unittest.TestCase):

    def test_set_and_clear(self):
        token = StopToken()
        self.assertFalse(token.is_set)
        token.set(XTOL_REACHED)
        self.assertTrue(token.is_set)
        self.assertEqual(token.code, 104)
        token.clear()
        self.assertIsNone(token.code)


class TestNLoptSetup(unittest.TestCase):
    """Tests for NLopt parameter validation and initialization."""

    def test_factory_builds_nlopt(self):
        optimizer = OptimizerFactory.create(make_params(), Topology(BOUNDS, 0.5))
        self.assertIsInstance(optimizer, NLoptOptimizer)
        self.assertEqual(optimizer.vol_constraint, 0.4)
        self.assertEqual(optimizer.constraint_tolerance, 1.0e-8)

    def test_missing_method(self):
        params = make_params()
        del params["Method"]
        with self.assertRaises(InvalidParameterError):
            OptimizerFactory.create(params, Topology())

    def test_missing_volume_fraction_constraint(self):
        params = make_params()
        del params["Volume Fraction Constraint"]
        with self.assertRaises(InvalidParameterError):
            OptimizerFactory.create(params, Topology())

    def test_unknown_method(self):
        optimizer = OptimizerFactory.create(make_params(Method="SLSQP"), Topology())
        optimizer.set_interface(SeparableComplianceProblem.uniform_grid(5))
        with self.assertRaises(InvalidParameterError) as ctx:
            optimizer.initialize()
        self.assertIn("SLSQP", str(ctx.exception))

    def test_requires_interface(self):
        optimizer = OptimizerFactory.create(make_params(), Topology())
        with self.assertRaises(InvalidParameterError):
            optimizer.initialize()

    def test_rejects_parallel_runs(self):
        optimizer = OptimizerFactory.create(make_params(), Topology())
        optimizer.set_interface(SeparableComplianceProblem.uniform_grid(5))
        optimizer.set_communicator(TwoProcessCommunicator())
        with self.assertRaises(InvalidParameterError) as ctx:
            optimizer.initialize()
        self.assertIn("doesn't work in parallel", str(ctx.exception))

    def test_initialize(self):
        optimizer = make_optimizer(SeparableComplianceProblem.uniform_grid(12))
        self.assertEqual(optimizer.num_opt_dofs, 12)
        self.assertEqual(optimizer.opt_volume, 12.0)
        self.assertEqual(optimizer.opt.get_maxeval(), 300)
        np.testing.assert_array_equal(optimizer.p, np.full(12, 0.5))

    def test_optimize_before_initialize(self):
        optimizer = OptimizerFactory.create(make_params(), Topology())
        optimizer.set_interface(SeparableComplianceProblem.uniform_grid(5))
        with self.assertRaises(InvalidParameterError):
            optimizer.optimize()


class TestNLoptOptimize(unittest.TestCase):
    """Tests for complete NLopt runs.

    Only the final state is checked; the trial points NLopt visits differ
    between nlopt releases.
    """

    def check_solution(self, problem, result):
        self.assertNotEqual(result.status, ConvergenceStatus.NOT_CONVERGED)
        volume_fraction = problem.compute_volume(result.x) / problem.compute_reference_volume()
        self.assertLessEqual(volume_fraction, 0.4 + 1e-4)
        self.assertTrue(np.all(result.x >= BOUNDS[0]))
        self.assertTrue(np.all(result.x <= BOUNDS[1]))
        np.testing.assert_allclose(result.x, problem.optimal_design(0.4, BOUNDS), atol=2e-2)

    def test_mma(self):
        problem = SeparableComplianceProblem.uniform_grid(20)
        optimizer = make_optimizer(problem)
        result = optimizer.optimize()

        self.check_solution(problem, result)
        self.assertEqual(result.info['method'], "MMA")
        self.assertEqual(len(optimizer.history), result.iterations)

    def test_mma_single_design_change_criterion(self):
        params = make_params(**{"Convergence Tests": {
            "Maximum Iterations": 300,
            "Absolute Topology Change": 1.0e-4,
        }})
        problem = SeparableComplianceProblem.uniform_grid(20)
        result = make_optimizer(problem, params).optimize()

        self.check_solution(problem, result)
        self.assertLess(result.objective, problem.compute_objective(np.full(20, 0.4), np.zeros(20)))

    def test_ccsa(self):
        problem = SeparableComplianceProblem.uniform_grid(20)
        optimizer = make_optimizer(problem, make_params(Method="CCSA"))
        result = optimizer.optimize()

        self.check_solution(problem, result)

    def test_forced_stop_reports_convergence_code(self):
        params = make_params(**{"Convergence Tests": {
            "Maximum Iterations": 300,
            "Absolute Objective Change": 1.0e10,
        }})
        optimizer = make_optimizer(SeparableComplianceProblem.uniform_grid(10), params)
        result = optimizer.optimize()

        self.assertEqual(result.info['result_code'], XTOL_REACHED)
        self.assertEqual(result.status, ConvergenceStatus.CONVERGED)
        self.assertGreaterEqual(result.iterations, 2)

    def test_maxeval_reports_iteration_limit(self):
        params = make_params(**{"Convergence Tests": {
            "Maximum Iterations": 5,
            "Absolute Objective Change": 1.0e-30,
        }})
        optimizer = make_optimizer(SeparableComplianceProblem.uniform_grid(10), params)
        result = optimizer.optimize()

        self.assertIn(result.status, (ConvergenceStatus.ITERATION_LIMIT, ConvergenceStatus.CONVERGED))
        self.assertLessEqual(result.iterations, 5)


class TestNLoptCallbacks(unittest.TestCase):
    """Tests for the objective and constraint callbacks."""

    def setUp(self):
        self.problem = SeparableComplianceProblem.uniform_grid(4)
        params = make_params(**{"Convergence Tests": {
            "Maximum Iterations": 300,
            "Absolute Topology Change": 1.0,
        }})
        self.optimizer = make_optimizer(self.problem, params)
        self.optimizer.p_last[:] = 0.5

    def test_constraint_callback(self):
        problem = SeparableComplianceProblem.uniform_grid(10)
        optimizer = make_optimizer(problem)
        grad = np.zeros(10)
        value = optimizer.constraint(np.full(10, 0.5), grad)
        self.assertAlmostEqual(value, 5.0 - 4.0)
        np.testing.assert_array_equal(grad, problem.volumes)

    def test_objective_callback_tracks_design_change(self):
        grad = np.zeros(4)
        self.optimizer.evaluate(np.full(4, 0.4), grad)
        np.testing.assert_allclose(grad, -self.problem.weights / 0.16)
        np.testing.assert_array_equal(self.optimizer.p, np.full(4, 0.4))
        self.assertAlmostEqual(self.optimizer.history.records[0].delta_p, 0.2)

    def test_repeated_point_is_not_an_iterate(self):
        x = np.full(4, 0.4)
        self.optimizer.evaluate(x, np.zeros(4))

        grad = np.zeros(4)
        value = self.optimizer.evaluate(x.copy(), grad)
        self.assertAlmostEqual(value, float(np.sum(self.problem.weights / 0.4)))
        np.testing.assert_allclose(grad, -self.problem.weights / 0.16)
        self.assertEqual(len(self.optimizer.history), 1)
        self.assertEqual(self.optimizer._n_iterations, 1)
        self.assertFalse(self.optimizer.stop_token.is_set)

        # a distinct feasible improvement is the next iterate and converges
        self.optimizer.evaluate(self.problem.optimal_design(0.4, BOUNDS), np.zeros(4))
        self.assertEqual(len(self.optimizer.history), 2)
        self.assertTrue(self.optimizer.stop_token.is_set)

    def test_infeasible_point_is_not_an_iterate(self):
        grad = np.zeros(4)
        self.optimizer.evaluate(np.full(4, 0.9), grad)
        np.testing.assert_allclose(grad, -self.problem.weights / 0.81)
        self.assertEqual(len(self.optimizer.history), 0)
        np.testing.assert_array_equal(self.optimizer.p, np.full(4, 0.5))

    def test_worse_point_is_not_an_iterate(self):
        self.optimizer.evaluate(np.full(4, 0.4), np.zeros(4))
        self.optimizer.evaluate(np.full(4, 0.3), np.zeros(4))
        self.assertEqual(len(self.optimizer.history), 1)
        np.testing.assert_array_equal(self.optimizer.p, np.full(4, 0.4))


if __name__ == "__main__":
    unittest.main()
