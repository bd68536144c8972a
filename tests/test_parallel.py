#!/usr/bin/env python
"""
Test suite for partition communicators and global norms.
"""

import importlib.util
import logging
import os
import sys
import unittest

import numpy as np

# Add src directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from topodrive.core.base import Topology
from topodrive.core.registry import OptimizerFactory
from topodrive.parallel import Communicator, SerialCommunicator, MPICommunicator

MPI4PY_AVAILABLE = importlib.util.find_spec("mpi4py") is not None


class RecordingCommunicator(Communicator):
    """Three identical partitions; records every reduction."""

    def __init__(self):
        self.calls = []

    def sum_all(self, local_value):
        self.calls.append(local_value)
        return 3 * local_value

    def my_pid(self):
        return 1

    def num_proc(self):
        return 3


def make_optimizer():
    return OptimizerFactory.create({
        "Package": "NLopt",
        "Method": "MMA",
        "Volume Fraction Constraint": 0.5,
        "Convergence Tests": {"Maximum Iterations": 10},
    }, Topology())


class TestSerialCommunicator(unittest.TestCase):

    def test_identity_reduction(self):
        comm = SerialCommunicator()
        self.assertEqual(comm.sum_all(2.5), 2.5)
        np.testing.assert_array_equal(comm.sum_all(np.array([1.0, 2.0])), [1.0, 2.0])
        self.assertEqual(comm.my_pid(), 0)
        self.assertEqual(comm.num_proc(), 1)
        self.assertTrue(comm.is_root())


class TestGlobalNorms(unittest.TestCase):

    def test_serial_norms(self):
        optimizer = make_optimizer()
        self.assertAlmostEqual(optimizer.compute_norm(np.array([3.0, 4.0])), 5.0)
        self.assertEqual(optimizer.compute_norm(np.zeros(3)), 0.0)
        self.assertAlmostEqual(
            optimizer.compute_diff_norm(np.array([1.0, 1.0]), np.array([1.0, 0.0])), 1.0
        )

    def test_norms_reduce_once_across_partitions(self):
        optimizer = make_optimizer()
        comm = RecordingCommunicator()
        optimizer.set_communicator(comm)

        self.assertAlmostEqual(optimizer.compute_norm(np.array([1.0, 1.0])), np.sqrt(6.0))
        self.assertEqual(len(comm.calls), 1)
        self.assertAlmostEqual(comm.calls[0], 2.0)

        optimizer.compute_diff_norm(np.array([2.0]), np.array([1.0]), print_result=True)
        self.assertEqual(len(comm.calls), 2)
        self.assertFalse(comm.is_root())

    def test_diff_norm_printed_on_root(self):
        optimizer = make_optimizer()
        with self.assertLogs('topodrive.core.base', level='INFO') as logs:
            optimizer.compute_diff_norm(np.array([0.0]), np.array([2.0]), print_result=True)
        self.assertTrue(any("computed diffnorm is: 2.0" in line for line in logs.output))


class ElectedRootCommunicator(RecordingCommunicator):
    """Partition 1 acts as the root."""

    def is_root(self):
        return True


class TestRootReporting(unittest.TestCase):

    def test_non_root_partition_is_silent(self):
        optimizer = make_optimizer()
        optimizer.set_communicator(RecordingCommunicator())
        with self.assertLogs('topodrive.core.base', level='INFO') as logs:
            optimizer._report("progress")
            logging.getLogger('topodrive.core.base').info("marker")
        self.assertEqual(len(logs.output), 1)
        self.assertIn("marker", logs.output[0])

    def test_reports_follow_root_partition(self):
        optimizer = make_optimizer()
        optimizer.set_communicator(ElectedRootCommunicator())
        with self.assertLogs('topodrive.core.base', level='INFO') as logs:
            optimizer._report("progress")
        self.assertIn("progress", logs.output[0])


@unittest.skipUnless(MPI4PY_AVAILABLE, "mpi4py not installed")
class TestMPICommunicator(unittest.TestCase):

    def test_single_process_world(self):
        comm = MPICommunicator()
        self.assertEqual(comm.num_proc(), comm.comm.Get_size())
        if comm.num_proc() == 1:
            self.assertEqual(comm.sum_all(1.5), 1.5)
            self.assertTrue(comm.is_root())


if __name__ == "__main__":
    unittest.main()
