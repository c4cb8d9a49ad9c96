# Copyright 2025 ChunkBM Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Supervision of mean-field settling.

After every settling iteration the network asks its supervisor what to do
next. The answer is a damping factor k (0 for an undamped iteration), with
which the new means are blended as (1 - k) * new + k * old, or None to stop.
"""

from typing import Any, Callable, Optional, Sequence
import logging

from .chunks import Chunk

logger = logging.getLogger(__name__)

MeanFieldSupervisor = Callable[[Sequence[Chunk], Any, int], Optional[float]]


def mean_abs_node_change(chunks: Sequence[Chunk]) -> float:
    """Mean absolute difference between nodes and old_nodes over all units."""
    total = 0.0
    count = 0
    for chunk in chunks:
        total += (chunk.nodes - chunk.old_nodes).abs().sum().item()
        count += chunk.nodes.numel()
    return total / count if count else 0.0


class DefaultMeanFieldSupervisor:
    """
    Undamped iterations first, damped ones after, until convergence.

    Settling stops as soon as the mean absolute node change of an iteration
    falls below node_change_threshold, and in any case after
    n_undamped_iterations + n_damped_iterations iterations.
    """

    def __init__(
        self,
        n_undamped_iterations: int = 2,
        n_damped_iterations: int = 5,
        damping_factor: float = 0.9,
        node_change_threshold: float = 1e-6,
    ):
        """
        Initialize the supervisor.

        Args:
            n_undamped_iterations: Iterations run without damping
            n_damped_iterations: Damped iterations run afterwards
            damping_factor: Weight of the old nodes in damped iterations
            node_change_threshold: Convergence tolerance on the mean
                absolute node change
        """
        if not 0.0 <= damping_factor < 1.0:
            raise ValueError(f"Damping factor must be in [0, 1), got {damping_factor}")
        self.n_undamped_iterations = n_undamped_iterations
        self.n_damped_iterations = n_damped_iterations
        self.damping_factor = damping_factor
        self.node_change_threshold = node_change_threshold

    @property
    def max_iterations(self) -> int:
        return self.n_undamped_iterations + self.n_damped_iterations

    def __call__(self, chunks: Sequence[Chunk], bm: Any, iteration: int) -> Optional[float]:
        change = mean_abs_node_change(chunks)
        if change < self.node_change_threshold:
            logger.debug(f"Mean field converged after {iteration + 1} iterations (change {change:.3g})")
            return None
        if iteration + 1 >= self.max_iterations:
            return None
        if iteration < self.n_undamped_iterations:
            return 0.0
        return self.damping_factor

    def __repr__(self) -> str:
        return (
            f"DefaultMeanFieldSupervisor("
            f"n_undamped_iterations={self.n_undamped_iterations}, "
            f"n_damped_iterations={self.n_damped_iterations}, "
            f"damping_factor={self.damping_factor})"
        )
