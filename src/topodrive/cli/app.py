"""Command-line interface for topodrive.

Runs an optimizer described by a configuration file against the built-in
separable compliance reference problem.
"""

import argparse
import logging
import os
import traceback
from typing import List, Optional

from topodrive.core.base import Topology
from topodrive.core.config import OptimizerConfig
from topodrive.core.exceptions import InvalidParameterError
from topodrive.core.registry import OptimizerFactory
from topodrive.problems import SeparableComplianceProblem


def setup_logging(debug_mode: bool = False) -> None:
    """Configure logging based on debug mode.

    Args:
        debug_mode: If True, set logging level to DEBUG, otherwise INFO
    """
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed command line arguments
    """
    parser = argparse.ArgumentParser(
        description='Topology optimization driver (OC and NLopt backends)'
    )
    parser.add_argument('config', help='Path to optimizer configuration (.yaml, .yml or .json)')
    parser.add_argument('-n', '--num-dofs', type=int, default=100,
                        help='Number of design variables of the reference problem')
    parser.add_argument('--constraint-target', type=float, default=None,
                        help='Volume fraction enforced through the secondary constraint g')

    output_group = parser.add_argument_group('output', 'Control the output files')
    output_group.add_argument('--history', default=None, help='Write iteration history to a JSON file')
    output_group.add_argument('--plot', default=None, help='Save a convergence plot to the given path')

    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to run an optimization.

    Returns:
        Exit code: 0 for success, non-zero for error
    """
    args = parse_arguments(argv)

    setup_logging(args.debug)
    logger = logging.getLogger(__name__)

    if not os.path.exists(args.config):
        logger.error(f"Configuration file not found: {args.config}")
        return 1

    try:
        config = OptimizerConfig.from_file(args.config)
        if config.topology is None:
            raise InvalidParameterError("Error! Missing 'Topology' ParameterList.")
        topology = Topology.from_config(config.topology)

        optimizer = OptimizerFactory.create(config, topology)
        problem = SeparableComplianceProblem.uniform_grid(
            args.num_dofs, constraint_target=args.constraint_target
        )
        optimizer.set_interface(problem)

        logger.info(f"Running {config.package} optimizer on {args.num_dofs} design variables")
        optimizer.initialize()
        result = optimizer.optimize()
    except InvalidParameterError as e:
        logger.error(str(e))
        if args.debug:
            logger.debug(traceback.format_exc())
        return 1

    logger.info(f"Finished after {result.iterations} iterations: {result.status.value}")
    logger.info(f"Final objective: {result.objective}")
    logger.info(f"Final volume fraction target: {result.volume_fraction}")

    if args.history:
        optimizer.save_history(args.history)
        logger.info(f"History written to {args.history}")
    if args.plot:
        optimizer.history.plot(args.plot)

    return 0
