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
Clouds: weighted connections between two chunks

A cloud propagates activations between its chunks in both directions and
accumulates the outer-product statistics its weights are trained on:
- FullCloud: a dense [size1, size2] weight matrix
- FactoredCloud: a low-rank product of two full clouds meeting in a
  bottleneck chunk

Clouds are built from CloudSpec values, resolved once against the chunks of
a network.
"""

from typing import BinaryIO, Dict, List, Literal, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, replace
import logging

import numpy as np
import torch

from .chunks import Chunk, ChunkKind

logger = logging.getLogger(__name__)

# Directions of propagation: chunk1 -> chunk2 multiplies by W, chunk2 -> chunk1
# by the transpose of W.
FORWARD = 0
REVERSE = 1

CloudKind = Literal["full", "factored"]


@dataclass
class CloudSpec:
    """
    Description of a cloud by the names of its chunks.

    A spec whose kind is None removes the default cloud between the two chunks
    when merged.
    """

    chunk1: str
    chunk2: str
    kind: Optional[CloudKind] = "full"
    name: Optional[str] = None
    scale1: float = 1.0
    scale2: float = 1.0
    rank: Optional[int] = None
    init_std: Optional[float] = None

    @property
    def key(self) -> frozenset:
        return frozenset((self.chunk1, self.chunk2))

    def cloud_name(self) -> str:
        return self.name or f"{self.chunk1}-{self.chunk2}"


def merge_cloud_specs(defaults: Sequence[CloudSpec], specs: Sequence[CloudSpec]) -> List[CloudSpec]:
    """
    Merge explicit specs into the default ones.

    An explicit spec replaces the default between the same pair of chunks, or
    removes it if its kind is None. Explicit specs without a default are
    appended in order.
    """
    merged: Dict[frozenset, CloudSpec] = {spec.key: spec for spec in defaults}
    for spec in specs:
        merged[spec.key] = spec
    return [spec for spec in merged.values() if spec.kind is not None]


class Cloud:
    """
    Base class of connections between chunk1 and chunk2.

    scale1 multiplies activations arriving at chunk1, scale2 those arriving
    at chunk2. Each direction has a cached activation tagged with the version
    of the source chunk it was computed from.
    """

    def __init__(self, name: str, chunk1: Chunk, chunk2: Chunk, scale1: float = 1.0, scale2: float = 1.0):
        self.name = name
        self.chunk1 = chunk1
        self.chunk2 = chunk2
        self.scale1 = scale1
        self.scale2 = scale2
        self._cache: List[Optional[torch.Tensor]] = [None, None]
        self._cache_versions: List[Optional[int]] = [None, None]

    @property
    def is_self_loop(self) -> bool:
        return self.chunk1 is self.chunk2

    def ends(self, direction: int) -> Tuple[Chunk, Chunk]:
        """Source and destination chunks for direction."""
        if direction == FORWARD:
            return self.chunk1, self.chunk2
        return self.chunk2, self.chunk1

    def activate(self, direction: int, source: torch.Tensor, dest: torch.Tensor) -> None:
        """Add the scaled activation of source to dest."""
        raise NotImplementedError

    def cached_activate(self, direction: int, source_chunk: Chunk, source: torch.Tensor,
                        dest: torch.Tensor) -> None:
        """
        Like activate, but reuse the activation computed from the same version
        of source_chunk.
        """
        cache = self._cache[direction]
        if (cache is None or self._cache_versions[direction] != source_chunk.version
                or cache.shape != dest.shape):
            cache = torch.zeros_like(dest)
            self.activate(direction, source, cache)
            self._cache[direction] = cache
            self._cache_versions[direction] = source_chunk.version
        dest.add_(cache)

    def invalidate_cache(self) -> None:
        self._cache = [None, None]
        self._cache_versions = [None, None]

    def find_accumulators(self, sink):
        """Accumulator(s) the sink holds for this cloud, or None to skip it."""
        raise NotImplementedError

    def accumulate_statistics(self, v1: torch.Tensor, v2: torch.Tensor, multiplier: float,
                              accumulator, importances: Optional[torch.Tensor] = None) -> None:
        """Add multiplier * v1^T v2 (rows of v1 weighted by importances) to accumulator."""
        raise NotImplementedError

    def zero_weight_to_self(self) -> None:
        raise NotImplementedError

    def full_clouds(self) -> List["FullCloud"]:
        """Dense clouds holding the weights of this cloud, in persistence order."""
        raise NotImplementedError

    def share(self, chunks: Dict[str, Chunk]) -> "Cloud":
        """Cloud over the named chunks of another network, sharing the weights."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}', chunk1='{self.chunk1.name}', chunk2='{self.chunk2.name}')"


def _weighted_rows(values: torch.Tensor, importances: Optional[torch.Tensor]) -> torch.Tensor:
    if importances is None:
        return values
    return values * importances[:values.size(0)].to(values.dtype).unsqueeze(1)


class FullCloud(Cloud):
    """Dense weight matrix between two chunks."""

    def __init__(
        self,
        name: str,
        chunk1: Chunk,
        chunk2: Chunk,
        scale1: float = 1.0,
        scale2: float = 1.0,
        weights: Optional[torch.Tensor] = None,
        init_std: Optional[float] = None,
    ):
        """
        Initialize a full cloud.

        Args:
            name: Unique name within a network
            chunk1: First chunk (rows of the weight matrix)
            chunk2: Second chunk (columns of the weight matrix)
            scale1: Multiplier of activations arriving at chunk1
            scale2: Multiplier of activations arriving at chunk2
            weights: Existing [size1, size2] weights to share
            init_std: Standard deviation of the random initial weights;
                Xavier scaling if None
        """
        super().__init__(name, chunk1, chunk2, scale1, scale2)
        if weights is None:
            std = np.sqrt(2.0 / (chunk1.size + chunk2.size)) if init_std is None else init_std
            weights = torch.randn(chunk1.size, chunk2.size, device=chunk1.device, dtype=chunk1.dtype) * std
        elif tuple(weights.shape) != (chunk1.size, chunk2.size):
            raise ValueError(
                f"Cloud {name}: weights of shape {tuple(weights.shape)} do not match "
                f"chunks of size {chunk1.size} and {chunk2.size}"
            )
        self.weights = weights
        if self.is_self_loop:
            self.zero_weight_to_self()

    def zero_weight_to_self(self) -> None:
        self.weights.fill_diagonal_(0.0)

    def activate(self, direction: int, source: torch.Tensor, dest: torch.Tensor) -> None:
        if self.is_self_loop:
            self.zero_weight_to_self()
        if direction == FORWARD:
            dest.addmm_(source, self.weights, alpha=self.scale2)
        else:
            dest.addmm_(source, self.weights.t(), alpha=self.scale1)

    def find_accumulators(self, sink) -> Optional[torch.Tensor]:
        return sink.find_accumulator(self)

    def accumulate_statistics(self, v1: torch.Tensor, v2: torch.Tensor, multiplier: float,
                              accumulator: torch.Tensor, importances: Optional[torch.Tensor] = None) -> None:
        accumulator.addmm_(_weighted_rows(v1, importances).t(), v2, alpha=multiplier)

    def full_clouds(self) -> List["FullCloud"]:
        return [self]

    def share(self, chunks: Dict[str, Chunk]) -> "FullCloud":
        return FullCloud(self.name, chunks[self.chunk1.name], chunks[self.chunk2.name],
                         self.scale1, self.scale2, weights=self.weights)

    def write_weights(self, stream: BinaryIO) -> None:
        stream.write(self.weights.detach().cpu().numpy().tobytes())

    def read_weights(self, stream: BinaryIO) -> None:
        host = self.weights.detach().cpu().numpy()
        data = stream.read(host.nbytes)
        if len(data) != host.nbytes:
            raise ValueError(f"Cloud {self.name}: weight stream ended early")
        values = np.frombuffer(data, dtype=host.dtype).reshape(host.shape)
        with torch.no_grad():
            self.weights.copy_(torch.from_numpy(values.copy()))


class FactoredCloud(Cloud):
    """
    Low-rank cloud: W = A B.

    A connects chunk1 to a synthetic bottleneck chunk of size rank and B the
    bottleneck to chunk2. The bottleneck's nodes serve as scratch space.
    """

    def __init__(
        self,
        name: str,
        chunk1: Chunk,
        chunk2: Chunk,
        rank: int,
        scale1: float = 1.0,
        scale2: float = 1.0,
        init_std: Optional[float] = None,
        cloud_a: Optional[FullCloud] = None,
        cloud_b: Optional[FullCloud] = None,
    ):
        super().__init__(name, chunk1, chunk2, scale1, scale2)
        if self.is_self_loop:
            raise NotImplementedError(f"Factored cloud {name} cannot connect a chunk to itself")
        if rank <= 0:
            raise ValueError(f"Factored cloud {name} needs a positive rank, got {rank}")
        self.rank = rank
        self.bottleneck = Chunk(
            f"{name}-bottleneck", rank, ChunkKind.GAUSSIAN,
            max_n_stripes=max(chunk1.max_n_stripes, chunk2.max_n_stripes),
            device=chunk1.device, dtype=chunk1.dtype,
        )
        self.cloud_a = FullCloud(
            f"{name}-a", chunk1, self.bottleneck, init_std=init_std,
            weights=None if cloud_a is None else cloud_a.weights,
        )
        self.cloud_b = FullCloud(
            f"{name}-b", self.bottleneck, chunk2, init_std=init_std,
            weights=None if cloud_b is None else cloud_b.weights,
        )

    def zero_weight_to_self(self) -> None:
        raise NotImplementedError("Zeroing the weights to self is not implemented for factored clouds")

    def _bottleneck_buffer(self, n_stripes: int) -> torch.Tensor:
        if n_stripes > self.bottleneck.max_n_stripes:
            self.bottleneck.resize(self.rank, n_stripes)
        self.bottleneck.set_n_stripes(n_stripes)
        buffer = self.bottleneck.nodes
        buffer.zero_()
        return buffer

    def activate(self, direction: int, source: torch.Tensor, dest: torch.Tensor) -> None:
        middle = self._bottleneck_buffer(source.size(0))
        a = self.cloud_a.weights
        b = self.cloud_b.weights
        if direction == FORWARD:
            middle.addmm_(source, a)
            dest.addmm_(middle, b, alpha=self.scale2)
        else:
            middle.addmm_(source, b.t())
            dest.addmm_(middle, a.t(), alpha=self.scale1)

    def find_accumulators(self, sink) -> Optional[Tuple[Optional[torch.Tensor], Optional[torch.Tensor]]]:
        accumulators = (sink.find_accumulator(self.cloud_a), sink.find_accumulator(self.cloud_b))
        if all(accumulator is None for accumulator in accumulators):
            return None
        return accumulators

    def accumulate_statistics(self, v1: torch.Tensor, v2: torch.Tensor, multiplier: float,
                              accumulator: Tuple[Optional[torch.Tensor], Optional[torch.Tensor]],
                              importances: Optional[torch.Tensor] = None) -> None:
        """
        Accumulate the statistics of A and B.

        dA += multiplier * v1^T (v2 B^T) and dB += multiplier * (v1 A)^T v2,
        both computed through the bottleneck buffer.
        """
        accumulator_a, accumulator_b = accumulator
        weighted = _weighted_rows(v1, importances)
        if accumulator_a is not None:
            middle = self._bottleneck_buffer(v2.size(0))
            middle.addmm_(v2, self.cloud_b.weights.t())
            accumulator_a.addmm_(weighted.t(), middle, alpha=multiplier)
        if accumulator_b is not None:
            middle = self._bottleneck_buffer(v1.size(0))
            middle.addmm_(weighted, self.cloud_a.weights)
            accumulator_b.addmm_(middle.t(), v2, alpha=multiplier)

    def full_clouds(self) -> List[FullCloud]:
        return [self.cloud_a, self.cloud_b]

    def share(self, chunks: Dict[str, Chunk]) -> "FactoredCloud":
        return FactoredCloud(self.name, chunks[self.chunk1.name], chunks[self.chunk2.name],
                             self.rank, self.scale1, self.scale2,
                             cloud_a=self.cloud_a, cloud_b=self.cloud_b)


def make_cloud(spec: CloudSpec, chunks: Dict[str, Chunk]) -> Cloud:
    """Resolve a spec against chunks indexed by name."""
    for chunk_name in (spec.chunk1, spec.chunk2):
        if chunk_name not in chunks:
            raise ValueError(f"Cloud {spec.cloud_name()} refers to unknown chunk {chunk_name}")
    chunk1 = chunks[spec.chunk1]
    chunk2 = chunks[spec.chunk2]
    if spec.kind == "full":
        return FullCloud(spec.cloud_name(), chunk1, chunk2, spec.scale1, spec.scale2, init_std=spec.init_std)
    if spec.kind == "factored":
        if spec.rank is None:
            raise ValueError(f"Factored cloud {spec.cloud_name()} needs a rank")
        return FactoredCloud(spec.cloud_name(), chunk1, chunk2, spec.rank, spec.scale1, spec.scale2,
                             init_std=spec.init_std)
    raise ValueError(f"Unknown cloud kind: {spec.kind}")


def to_cloud_spec(spec: Union[CloudSpec, Dict]) -> CloudSpec:
    """Accept specs given as dictionaries, e.g. from configuration files."""
    if isinstance(spec, CloudSpec):
        return replace(spec)
    return CloudSpec(**spec)
