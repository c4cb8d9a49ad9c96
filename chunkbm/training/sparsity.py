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
Sparsity regularization of chunk activations

A sparsity gradient source pushes the mean activation of a chunk towards a
target by adding a penalty gradient to the weights of one of its clouds.
Running averages are damped across batches:
- NormalSparsityGradientSource: average of the outer product of the
  neighbour's means with the chunk's deviation from the target
- CheatingSparsityGradientSource: separate averages of both sides' means;
  cheaper, but biased when the co-activation is anti-correlated with the
  marginal activations
"""

from typing import Optional
import logging

import torch

from ..models.chunks import Chunk
from ..models.clouds import Cloud, FullCloud

logger = logging.getLogger(__name__)


class SparsityGradientSource:
    """Base class of sparsity penalties on a chunk through a full cloud."""

    def __init__(
        self,
        cloud: Cloud,
        chunk: Chunk,
        target: float,
        cost: float,
        damping: float = 0.9,
    ):
        """
        Initialize a sparsity gradient source.

        Args:
            cloud: Full cloud whose weights receive the penalty gradient
            chunk: End of the cloud whose activation is regularized
            target: Target mean activation
            cost: Weight of the penalty
            damping: Weight of the old running averages
        """
        if not isinstance(cloud, FullCloud):
            raise ValueError(f"Sparsity is only supported on full clouds, not {cloud.name}")
        if chunk is cloud.chunk1:
            self.neighbour = cloud.chunk2
        elif chunk is cloud.chunk2:
            self.neighbour = cloud.chunk1
        else:
            raise ValueError(f"Chunk {chunk.name} is not an end of cloud {cloud.name}")
        self.cloud = cloud
        self.chunk = chunk
        self.target = target
        self.cost = cost
        self.damping = damping

    def _damp(self, old: Optional[torch.Tensor], new: torch.Tensor) -> torch.Tensor:
        if old is None:
            return new
        return self.damping * old + (1.0 - self.damping) * new

    def _oriented(self, neighbour_by_chunk: torch.Tensor) -> torch.Tensor:
        """Lay a [neighbour, chunk] matrix out like the cloud's weights."""
        if self.chunk is self.cloud.chunk2:
            return neighbour_by_chunk
        return neighbour_by_chunk.t()

    def accumulate(self) -> None:
        """Update the running averages from the current means."""
        raise NotImplementedError

    def gradient(self) -> Optional[torch.Tensor]:
        """Penalty gradient in the layout of the cloud's weights."""
        raise NotImplementedError

    def flush(self, sink, multiplier: float, batch_size: int) -> None:
        """Add cost * multiplier * batch_size * gradient to the cloud's accumulator."""
        accumulator = sink.find_accumulator(self.cloud)
        gradient = self.gradient()
        if accumulator is None or gradient is None:
            return
        accumulator.add_(gradient, alpha=self.cost * multiplier * batch_size)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(cloud='{self.cloud.name}', chunk='{self.chunk.name}', "
            f"target={self.target}, cost={self.cost})"
        )


class NormalSparsityGradientSource(SparsityGradientSource):
    """Tracks the full co-activation of neighbour means and chunk deviations."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.products: Optional[torch.Tensor] = None

    def accumulate(self) -> None:
        deviation = self.chunk.means - self.target
        neighbour = self.neighbour.means
        products = torch.matmul(neighbour.t(), deviation) / neighbour.size(0)
        self.products = self._damp(self.products, products)

    def gradient(self) -> Optional[torch.Tensor]:
        if self.products is None:
            return None
        return self._oriented(self.products)


class CheatingSparsityGradientSource(SparsityGradientSource):
    """Tracks the mean activations of the chunk and its neighbour separately."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.chunk_mean: Optional[torch.Tensor] = None
        self.neighbour_mean: Optional[torch.Tensor] = None

    def accumulate(self) -> None:
        self.chunk_mean = self._damp(self.chunk_mean, self.chunk.means.mean(dim=0))
        self.neighbour_mean = self._damp(self.neighbour_mean, self.neighbour.means.mean(dim=0))

    def gradient(self) -> Optional[torch.Tensor]:
        if self.chunk_mean is None:
            return None
        return self._oriented(torch.outer(self.neighbour_mean, self.chunk_mean - self.target))
