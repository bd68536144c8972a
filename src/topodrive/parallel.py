"""
Communicators for data-parallel optimization runs.

The design vector is partitioned across processes; the optimizers only need
blocking global sum reductions and the process rank. Every reduction is a
collective call: all partitions must reach it in the same order.
"""

import logging
from abc import ABC, abstractmethod
from typing import Union

import numpy as np

logger = logging.getLogger(__name__)

Reducible = Union[float, np.ndarray]


class Communicator(ABC):
    """Abstract base class for partition communicators."""

    @abstractmethod
    def sum_all(self, local_value: Reducible) -> Reducible:
        """Return the sum of ``local_value`` over all partitions."""
        pass

    @abstractmethod
    def my_pid(self) -> int:
        """Rank of the calling process."""
        pass

    @abstractmethod
    def num_proc(self) -> int:
        """Number of participating processes."""
        pass

    def is_root(self) -> bool:
        return self.my_pid() == 0


class SerialCommunicator(Communicator):
    """Single-process communicator; reductions are the identity."""

    def sum_all(self, local_value: Reducible) -> Reducible:
        return local_value

    def my_pid(self) -> int:
        return 0

    def num_proc(self) -> int:
        return 1


class MPICommunicator(Communicator):
    """
    MPI communicator backed by mpi4py.

    Handles global reductions over ``MPI.COMM_WORLD`` (or a supplied
    communicator). Requires the ``mpi`` extra.
    """

    def __init__(self, comm=None):
        """Initialize MPI communicator.

        Args:
            comm: mpi4py communicator to wrap; defaults to ``MPI.COMM_WORLD``
        """
        from mpi4py import MPI

        self._mpi = MPI
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        logger.debug(f"MPI communicator: rank {self.rank} of {self.size}")

    def sum_all(self, local_value: Reducible) -> Reducible:
        if self.size == 1:
            return local_value
        return self.comm.allreduce(local_value, op=self._mpi.SUM)

    def my_pid(self) -> int:
        return self.rank

    def num_proc(self) -> int:
        return self.size
