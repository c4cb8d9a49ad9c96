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
Deep Boltzmann Machine over layers of chunks

This module implements DBMs following Salakhutdinov & Hinton (2009) with:
- Layers of chunks, the first of which is visible
- Clouds only between adjacent layers
- Single-pass approximate inference upwards and downwards, doubling the
  activation of chunks that are also connected in the other direction
- Mean-field settling of the hidden layers seeded by an up pass
"""

from typing import Dict, List, Optional, Sequence, Set, Union
import logging

from .bm import BoltzmannMachine
from .chunks import Chunk
from .clouds import Cloud, CloudSpec
from .mean_field import MeanFieldSupervisor

logger = logging.getLogger(__name__)


class DeepBoltzmannMachine(BoltzmannMachine):
    """
    Deep Boltzmann Machine.

    layers[0] holds the visible chunks, every later layer hidden ones. Default
    clouds connect each pair of chunks in adjacent layers, unless both are
    conditioning chunks.
    """

    def __init__(
        self,
        layers: Sequence[Sequence[Chunk]],
        clouds: Optional[Sequence[Union[CloudSpec, Dict]]] = None,
        default_clouds: bool = True,
        max_n_stripes: int = 1,
        mean_field_supervisor: Optional[MeanFieldSupervisor] = None,
    ):
        """
        Initialize a Deep Boltzmann Machine.

        Args:
            layers: Chunks of each layer, bottom (visible) to top
            clouds: Cloud specs merged into the defaults
            default_clouds: Whether to start from the adjacent-layer defaults
            max_n_stripes: Stripe capacity of every chunk
            mean_field_supervisor: Supervisor used for settling when none is given
        """
        if len(layers) < 2:
            raise ValueError("DBM requires at least 2 layers")
        self.layers = [list(layer) for layer in layers]
        hidden = [chunk for layer in self.layers[1:] for chunk in layer]
        super().__init__(
            self.layers[0], hidden,
            clouds=clouds,
            default_clouds=default_clouds,
            max_n_stripes=max_n_stripes,
            mean_field_supervisor=mean_field_supervisor,
        )

    def _default_cloud_specs(self) -> List[CloudSpec]:
        return [
            CloudSpec(lower.name, upper.name)
            for below, above in zip(self.layers, self.layers[1:])
            for lower in below
            for upper in above
            if not (lower.is_conditioning and upper.is_conditioning)
        ]

    def _layer_index(self) -> Dict[Chunk, int]:
        return {chunk: i for i, layer in enumerate(self.layers) for chunk in layer}

    def _validate_clouds(self) -> None:
        self._index_clouds()

    def _index_clouds(self) -> None:
        """Check adjacency and sort clouds by the layer gap they span."""
        index = self._layer_index()
        self.upward_clouds: List[List[Cloud]] = [[] for _ in self.layers[1:]]
        self._connected_above: Set[Chunk] = set()
        self._connected_below: Set[Chunk] = set()
        for cloud in self.clouds:
            i1 = index[cloud.chunk1]
            i2 = index[cloud.chunk2]
            if abs(i1 - i2) != 1:
                raise ValueError(
                    f"Cloud {cloud.name} connects layers {i1} and {i2}, which are not adjacent"
                )
            lower, upper = (cloud.chunk1, cloud.chunk2) if i1 < i2 else (cloud.chunk2, cloud.chunk1)
            self.upward_clouds[min(i1, i2)].append(cloud)
            self._connected_above.add(lower)
            self._connected_below.add(upper)

    def _pass_step(self, targets: List[Chunk], clouds: List[Cloud], doubled: Set[Chunk]) -> None:
        for chunk in targets:
            chunk.swap()
        self._propagate(targets, use_old_nodes=False, clouds=clouds)
        for chunk in targets:
            if chunk in doubled:
                chunk.nodes.mul_(2.0)
            chunk.compute_mean()
            chunk.touch()

    def up_pass(self) -> None:
        """
        Single bottom-up pass of approximate inference.

        Each hidden layer is computed from the nodes of the layer below only.
        Chunks that also have clouds to the layer above get their activation
        doubled, standing in for the missing top-down input.
        """
        visible = set(self.visible_chunks)
        for i in range(len(self.layers) - 1):
            targets = [
                chunk for chunk in self.layers[i + 1]
                if not chunk.is_conditioning and chunk not in visible
            ]
            self._pass_step(targets, self.upward_clouds[i], self._connected_above)

    def down_pass(self) -> None:
        """
        Single top-down pass, the mirror of up_pass.

        Each layer is computed from the nodes of the layer above only, down to
        the visible layer. Chunks that also have clouds to the layer below get
        their activation doubled.
        """
        for i in range(len(self.layers) - 1, 0, -1):
            targets = [chunk for chunk in self.layers[i - 1] if not chunk.is_conditioning]
            self._pass_step(targets, self.upward_clouds[i - 1], self._connected_below)

    def _initialize_hidden_mean(self) -> None:
        self.up_pass()

    def _rebind(self, chunk_map: Dict[str, Chunk], clouds: List[Cloud]) -> None:
        super()._rebind(chunk_map, clouds)
        self.layers = [[chunk_map[chunk.name] for chunk in layer] for layer in self.layers]
        self._index_clouds()

    def __repr__(self) -> str:
        return (
            f"DeepBoltzmannMachine("
            f"layers={[[chunk.name for chunk in layer] for layer in self.layers]}, "
            f"clouds={[cloud.name for cloud in self.clouds]})"
        )
