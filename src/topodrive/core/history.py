"""Per-iteration history of an optimization run."""

import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


@dataclass
class IterationRecord:
    """Diagnostics of one outer iteration."""
    iteration: int
    objective: float
    delta_f: float
    delta_p: float
    volume_fraction: float
    converged: bool = False


class OptimizationHistory:
    """Ordered collection of iteration records."""

    def __init__(self):
        self.records: List[IterationRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def append(self, record: IterationRecord) -> None:
        self.records.append(record)

    def clear(self) -> None:
        self.records.clear()

    @property
    def objectives(self) -> List[float]:
        return [r.objective for r in self.records]

    def to_list(self) -> List[Dict[str, Any]]:
        return [asdict(r) for r in self.records]

    def save(self, filename: Union[str, Path]) -> None:
        """Save history as JSON."""
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_list(), f, indent=2)

    @classmethod
    def load(cls, filename: Union[str, Path]) -> 'OptimizationHistory':
        """Load history written by ``save``."""
        history = cls()
        with open(filename, 'r') as f:
            for entry in json.load(f):
                history.append(IterationRecord(**entry))
        return history

    def plot(self, output_path: Optional[Union[str, Path]] = None) -> None:
        """Plot objective and design change against iteration.

        Args:
            output_path: Path to save the plot; the figure is closed afterwards
        """
        if not self.records:
            logger.warning("No iterations recorded, nothing to plot")
            return

        iterations = [r.iteration for r in self.records]
        fig, (ax_f, ax_p) = plt.subplots(2, 1, figsize=(10, 8), sharex=True)

        ax_f.plot(iterations, self.objectives, 'o-', linewidth=2)
        ax_f.set_ylabel('Objective Value')
        ax_f.set_title('Optimization History')
        ax_f.grid(True)

        delta_p = [max(r.delta_p, 1e-300) for r in self.records]
        ax_p.semilogy(iterations, delta_p, 's-', linewidth=2)
        ax_p.set_xlabel('Iteration')
        ax_p.set_ylabel('|dp|')
        ax_p.grid(True)

        if output_path:
            fig.savefig(output_path, dpi=300, bbox_inches='tight')
            logger.info(f"Plot saved to {output_path}")
        plt.close(fig)
