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
Chunks: banks of units sharing an activation and sampling rule

A chunk owns the value buffers of its units for every stripe (batch row):
- nodes / old_nodes: a double buffer flipped by swap() to get synchronous updates
- means: snapshot of the last computed distribution means
- inputs: clamped data, kept for reconstruction error (not for conditioning chunks)
- scratch: temporary space for sampling

The unit type is a ChunkKind tag; activation and sampling dispatch through
per-kind function tables instead of subclasses.
"""

from typing import Any, Callable, Dict, Optional, Sequence, Union
from enum import Enum
import itertools
import logging

import torch

from .utils import (
    Scale,
    sigmoid_,
    relu_,
    normalize_groups_,
    exp_normalize_groups_,
    sample_bernoulli_,
    sample_gaussian_,
    sample_relu_,
    sample_poisson_,
    sample_categorical_groups_,
)

logger = logging.getLogger(__name__)

# Process-wide source of version stamps. Stamps only ever increase, so a cache
# holding a stamp is valid exactly while the chunk still carries it.
_versions = itertools.count(1)


class ChunkKind(str, Enum):
    """Unit types a chunk can hold."""

    CONDITIONING = "conditioning"
    CONSTANT = "constant"
    TEMPORAL = "temporal"
    SIGMOID = "sigmoid"
    GAUSSIAN = "gaussian"
    RELU = "relu"
    NORMALIZED = "normalized"
    SOFTMAX = "softmax"
    CONSTRAINED_POISSON = "constrained-poisson"


CONDITIONING_KINDS = frozenset({ChunkKind.CONDITIONING, ChunkKind.CONSTANT, ChunkKind.TEMPORAL})
NORMALIZED_KINDS = frozenset({ChunkKind.NORMALIZED, ChunkKind.SOFTMAX, ChunkKind.CONSTRAINED_POISSON})


def _normalized_mean(chunk: "Chunk") -> None:
    normalize_groups_(chunk.nodes, chunk.group_size, chunk.scale)


def _exp_normalized_mean(chunk: "Chunk") -> None:
    exp_normalize_groups_(chunk.nodes, chunk.group_size, chunk.scale)


def _categorical_sample(chunk: "Chunk") -> None:
    sample_categorical_groups_(chunk.nodes, chunk.group_size, chunk.scale, uniform=chunk.scratch)


_MEAN_FUNCTIONS: Dict[ChunkKind, Callable[["Chunk"], Any]] = {
    ChunkKind.SIGMOID: lambda chunk: sigmoid_(chunk.nodes),
    ChunkKind.GAUSSIAN: lambda chunk: chunk.nodes,
    ChunkKind.RELU: lambda chunk: relu_(chunk.nodes),
    ChunkKind.NORMALIZED: _normalized_mean,
    ChunkKind.SOFTMAX: _exp_normalized_mean,
    ChunkKind.CONSTRAINED_POISSON: _exp_normalized_mean,
}

_SAMPLE_FUNCTIONS: Dict[ChunkKind, Callable[["Chunk"], Any]] = {
    ChunkKind.SIGMOID: lambda chunk: sample_bernoulli_(chunk.nodes),
    ChunkKind.GAUSSIAN: lambda chunk: sample_gaussian_(chunk.nodes),
    ChunkKind.RELU: lambda chunk: sample_relu_(chunk.nodes),
    ChunkKind.NORMALIZED: _categorical_sample,
    ChunkKind.SOFTMAX: _categorical_sample,
    ChunkKind.CONSTRAINED_POISSON: lambda chunk: sample_poisson_(chunk.nodes),
}


class Chunk:
    """
    A bank of units of the same kind.

    Buffers are allocated for max_n_stripes rows; the properties expose views
    of the first n_stripes rows, so changing the stripe count never copies.
    """

    def __init__(
        self,
        name: str,
        size: int,
        kind: Union[ChunkKind, str] = ChunkKind.SIGMOID,
        max_n_stripes: int = 1,
        group_size: Optional[int] = None,
        scale: Scale = 1.0,
        default_value: Optional[float] = None,
        source: Optional["Chunk"] = None,
        device: Optional[torch.device] = None,
        dtype: torch.dtype = torch.float32,
    ):
        """
        Initialize a chunk.

        Args:
            name: Unique name within a network
            size: Number of units
            kind: Unit type
            max_n_stripes: Initial stripe capacity
            group_size: Units per group for normalized kinds (defaults to size)
            scale: Sum of the means of a group for normalized kinds; a float
                or a per-stripe tensor
            default_value: Value conditioning chunks are filled with on
                (re)allocation; constant chunks default to 1.0
            source: Chunk whose means a temporal chunk remembers
            device: Device to place buffers on
            dtype: Data type of the buffers
        """
        self.name = name
        self.kind = ChunkKind(kind)
        self.device = device or torch.device('cpu')
        self.dtype = dtype

        if self.kind in NORMALIZED_KINDS:
            group_size = size if group_size is None else group_size
            if group_size <= 0 or size % group_size != 0:
                raise ValueError(f"Group size {group_size} does not divide size {size} of chunk {name}")
        self.group_size = group_size
        self.scale = scale

        if self.is_constant and default_value is None:
            default_value = 1.0
        self.default_value = default_value

        if self.kind == ChunkKind.TEMPORAL:
            if source is None:
                raise ValueError(f"Temporal chunk {name} needs a source chunk")
            if source.size != size:
                raise ValueError(
                    f"Temporal chunk {name} has size {size} but its source {source.name} has {source.size}"
                )
        self.source = source
        self._remembered = False
        self._has_memory = False

        self.version = next(_versions)
        self.indices_present: Optional[torch.Tensor] = None
        self.size = 0
        self.max_n_stripes = 0
        self.n_stripes = 1
        self._buffers = None
        self._current = 0
        self.resize(size, max_n_stripes)

    @property
    def is_conditioning(self) -> bool:
        """Conditioning chunks are clamped and never updated by the network."""
        return self.kind in CONDITIONING_KINDS

    @property
    def is_constant(self) -> bool:
        return self.kind == ChunkKind.CONSTANT

    @property
    def nodes(self) -> torch.Tensor:
        return self._buffers[self._current][:self.n_stripes]

    @property
    def old_nodes(self) -> torch.Tensor:
        return self._buffers[1 - self._current][:self.n_stripes]

    @property
    def means(self) -> torch.Tensor:
        return self._means[:self.n_stripes]

    @property
    def inputs(self) -> Optional[torch.Tensor]:
        if self._inputs is None:
            return None
        return self._inputs[:self.n_stripes]

    @property
    def scratch(self) -> torch.Tensor:
        return self._scratch[:self.n_stripes]

    def _allocate(self) -> torch.Tensor:
        return torch.zeros(self.max_n_stripes, self.size, device=self.device, dtype=self.dtype)

    def resize(self, size: int, max_n_stripes: int) -> None:
        """
        Set the number of units and the stripe capacity.

        Buffers keep their content only if both dimensions are unchanged;
        otherwise they are reallocated and conditioning chunks with a default
        value are refilled.
        """
        if (self.indices_present is not None and len(self.indices_present) > 1
                and self.n_stripes > 1):
            raise ValueError(f"Chunk {self.name} has missing values and cannot hold multiple stripes")
        if self._buffers is not None and size == self.size and max_n_stripes == self.max_n_stripes:
            return

        self.size = size
        self.max_n_stripes = max_n_stripes
        self.n_stripes = min(self.n_stripes, max_n_stripes)
        self._buffers = [self._allocate(), self._allocate()]
        self._means = self._allocate()
        self._scratch = self._allocate()
        self._inputs = None if self.is_conditioning else self._allocate()
        if self.kind == ChunkKind.TEMPORAL:
            self._held = self._allocate()
            self._has_memory = False
            self._remembered = False
        if self.default_value is not None:
            self.fill(self.default_value, all=True)
        self.touch()

    def set_n_stripes(self, n_stripes: int) -> None:
        """Change the number of active stripes within the capacity."""
        if n_stripes > self.max_n_stripes:
            raise ValueError(
                f"Chunk {self.name}: {n_stripes} stripes exceed capacity {self.max_n_stripes}"
            )
        if self.indices_present is not None and n_stripes > 1:
            raise ValueError(f"Chunk {self.name} has missing values and cannot hold multiple stripes")
        self.n_stripes = n_stripes

    def set_indices_present(self, indices: Optional[Sequence[int]]) -> None:
        """Restrict the chunk to the given unit indices (single stripe only)."""
        if indices is None:
            self.indices_present = None
            return
        if self.n_stripes > 1:
            raise ValueError(f"Chunk {self.name} has multiple stripes and cannot have missing values")
        self.indices_present = torch.as_tensor(indices, dtype=torch.long, device=self.device)

    def mark_everything_present(self) -> None:
        self.indices_present = None

    def fill(self, value: float, all: bool = False) -> None:
        """
        Write value into the nodes.

        With all=True every allocated element of both node buffers is written.
        Otherwise only the active stripes are, and only at the present indices
        when the chunk has missing values.
        """
        if all:
            for buffer in self._buffers:
                buffer.fill_(value)
            self._means.fill_(value)
        elif self.indices_present is not None:
            self.nodes[:, self.indices_present] = value
        else:
            self.nodes.fill_(value)
        self.touch()

    def swap(self) -> None:
        """Exchange nodes and old_nodes."""
        self._current = 1 - self._current

    def touch(self) -> None:
        """Give the chunk a new version, invalidating activations cached from it."""
        self.version = next(_versions)

    def compute_mean(self) -> None:
        """Map the activations accumulated in nodes to means, in place."""
        mean_fn = _MEAN_FUNCTIONS.get(self.kind)
        if mean_fn is None:
            return
        mean_fn(self)
        self.means.copy_(self.nodes)

    def sample(self) -> None:
        """Replace the means in nodes with a sample, in place."""
        sample_fn = _SAMPLE_FUNCTIONS.get(self.kind)
        if sample_fn is None:
            return
        sample_fn(self)
        self.touch()

    def restore_means(self) -> None:
        """Copy the last computed means back into nodes."""
        if self.is_conditioning:
            return
        self.nodes.copy_(self.means)
        self.touch()

    def remember(self) -> None:
        """
        Hold the source's means for the next clamp.

        Only the first call after a clamp is honoured; later calls keep the
        earliest value.
        """
        if self.kind != ChunkKind.TEMPORAL or self._remembered:
            return
        n_stripes = self.source.n_stripes
        self._held[:n_stripes].copy_(self.source.means)
        self._remembered = True
        self._has_memory = True

    def restore(self) -> None:
        """Clamp the remembered values into nodes and accept a new memory."""
        if self.kind != ChunkKind.TEMPORAL:
            return
        if self._has_memory:
            self.nodes.copy_(self._held[:self.n_stripes])
            self.touch()
        self._remembered = False

    def clone(self) -> "Chunk":
        """
        Copy of the chunk with its own buffers holding the same values.

        A temporal clone still points at the original source; the owner
        rebinds it.
        """
        scale = self.scale.clone() if isinstance(self.scale, torch.Tensor) else self.scale
        clone = Chunk(
            self.name, self.size, self.kind,
            max_n_stripes=self.max_n_stripes,
            group_size=self.group_size,
            scale=scale,
            default_value=self.default_value,
            source=self.source,
            device=self.device,
            dtype=self.dtype,
        )
        clone.n_stripes = self.n_stripes
        clone._current = self._current
        for mine, theirs in zip(clone._buffers, self._buffers):
            mine.copy_(theirs)
        clone._means.copy_(self._means)
        if self._inputs is not None:
            clone._inputs.copy_(self._inputs)
        if self.kind == ChunkKind.TEMPORAL:
            clone._held.copy_(self._held)
            clone._has_memory = self._has_memory
            clone._remembered = self._remembered
        if self.indices_present is not None:
            clone.indices_present = self.indices_present.clone()
        return clone

    def __repr__(self) -> str:
        return f"Chunk(name='{self.name}', size={self.size}, kind='{self.kind.value}')"
