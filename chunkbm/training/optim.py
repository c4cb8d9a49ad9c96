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
Gradient accumulation and parameter updates for cloud weights

Learners add their statistics to accumulators looked up in a gradient sink;
the optimizer turns the accumulated gradients into weight updates:
- GradientAccumulator: one accumulator per dense weight matrix, keyed by name
- SGDOptimizer: gradient descent with momentum and weight decay
"""

from typing import Dict, Iterable, Optional
import logging

import torch

from ..models.bm import BoltzmannMachine
from ..models.clouds import Cloud

logger = logging.getLogger(__name__)


class GradientAccumulator:
    """
    Gradient sink for the weights of a network.

    Accumulators are keyed by cloud name, so the clouds of a persistent-chain
    clone, which share names and weights with the trained network, resolve to
    the same accumulators. Frozen clouds get none and are not trained.
    """

    def __init__(self, bm: BoltzmannMachine, frozen: Iterable[str] = ()):
        frozen = set(frozen)
        self.clouds = {cloud.name: cloud for cloud in bm.full_clouds() if cloud.name not in frozen}
        self.accumulators: Dict[str, torch.Tensor] = {
            name: torch.zeros_like(cloud.weights) for name, cloud in self.clouds.items()
        }
        if frozen:
            logger.info(f"Frozen clouds: {sorted(frozen)}")

    def find_accumulator(self, cloud: Cloud) -> Optional[torch.Tensor]:
        return self.accumulators.get(cloud.name)

    def zero_(self) -> None:
        for accumulator in self.accumulators.values():
            accumulator.zero_()


class SGDOptimizer:
    """Momentum gradient descent on the weights collected by a sink."""

    def __init__(
        self,
        sink: GradientAccumulator,
        learning_rate: float = 0.01,
        momentum: float = 0.9,
        weight_decay: float = 0.0001,
        no_decay: Iterable[str] = (),
    ):
        """
        Initialize the optimizer.

        Args:
            sink: Gradient sink holding the accumulated gradients
            learning_rate: Learning rate for parameter updates
            momentum: Momentum coefficient for parameter updates
            weight_decay: L2 regularization coefficient
            no_decay: Names of clouds exempt from weight decay (e.g. biases)
        """
        self.sink = sink
        self.learning_rate = learning_rate
        self.momentum = momentum
        self.weight_decay = weight_decay
        self.no_decay = set(no_decay)
        self.momentum_buffers: Dict[str, torch.Tensor] = {}

    def step(self, batch_size: int) -> None:
        """
        Update the weights with the accumulated gradients and zero the sink.

        Args:
            batch_size: Number of samples the gradients were summed over
        """
        for name, grad in self.sink.accumulators.items():
            weights = self.sink.clouds[name].weights
            grad = grad / batch_size

            # Add weight decay (L2 regularization)
            if self.weight_decay > 0 and name not in self.no_decay:
                grad = grad + self.weight_decay * weights

            if name not in self.momentum_buffers:
                self.momentum_buffers[name] = torch.zeros_like(weights)

            self.momentum_buffers[name] = (
                self.momentum * self.momentum_buffers[name] +
                self.learning_rate * grad
            )
            weights.sub_(self.momentum_buffers[name])

        self.sink.zero_()
