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
Boltzmann machines over chunks and clouds

This module implements the general Boltzmann machine with:
- Visible and hidden partitions of chunks, connected by clouds
- Synchronous mean updates through double-buffered nodes
- Mean-field settling when a partition has connections within itself
- Activation caching keyed by chunk versions
- Persistent-chain clones sharing weights with the trained network
- Flat weight streams for saving and loading
"""

from typing import BinaryIO, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
import copy
import logging
from pathlib import Path

import torch

from .chunks import Chunk, ChunkKind
from .clouds import FORWARD, REVERSE, Cloud, CloudSpec, FullCloud, make_cloud, merge_cloud_specs, to_cloud_spec
from .mean_field import DefaultMeanFieldSupervisor, MeanFieldSupervisor

logger = logging.getLogger(__name__)

Samples = Union[torch.Tensor, Mapping[str, torch.Tensor]]


class BoltzmannMachine:
    """
    Boltzmann machine with arbitrary clouds between its chunks.

    By default every visible chunk is connected to every hidden chunk by a
    full cloud, unless both are conditioning chunks. Explicit cloud specs
    replace or remove these defaults by chunk pair.
    """

    def __init__(
        self,
        visible_chunks: Sequence[Chunk],
        hidden_chunks: Sequence[Chunk],
        clouds: Optional[Sequence[Union[CloudSpec, Dict]]] = None,
        default_clouds: bool = True,
        max_n_stripes: int = 1,
        mean_field_supervisor: Optional[MeanFieldSupervisor] = None,
    ):
        """
        Initialize a Boltzmann machine.

        Args:
            visible_chunks: Chunks clamped to data in the positive phase
            hidden_chunks: Latent chunks
            clouds: Cloud specs merged into the defaults
            default_clouds: Whether to start from the visible x hidden defaults
            max_n_stripes: Stripe capacity of every chunk
            mean_field_supervisor: Supervisor used for settling when none is given
        """
        self.visible_chunks = list(visible_chunks)
        self.hidden_chunks = list(hidden_chunks)
        self.chunks = self.visible_chunks + self.hidden_chunks
        self._check_unique([chunk.name for chunk in self.chunks], "chunk")
        self.mean_field_supervisor = mean_field_supervisor or DefaultMeanFieldSupervisor()

        specs = [to_cloud_spec(spec) for spec in (clouds or [])]
        defaults = self._default_cloud_specs() if default_clouds else []
        chunk_map = {chunk.name: chunk for chunk in self.chunks}
        self.clouds: List[Cloud] = [make_cloud(spec, chunk_map) for spec in merge_cloud_specs(defaults, specs)]
        self._check_unique([cloud.name for cloud in self.clouds], "cloud")
        self._check_unique([cloud.name for cloud in self.full_clouds()], "weight matrix")
        self._validate_clouds()
        self._update_connectivity()

        self.n_stripes = 1
        self.max_n_stripes = 0
        self.set_max_n_stripes(max_n_stripes)

        logger.info(
            f"Built {type(self).__name__} with {len(self.chunks)} chunks and {len(self.clouds)} clouds"
        )

    @staticmethod
    def _check_unique(names: Iterable[str], what: str) -> None:
        seen: Set[str] = set()
        for name in names:
            if name in seen:
                raise ValueError(f"Duplicate {what} name: {name}")
            seen.add(name)

    def _default_cloud_specs(self) -> List[CloudSpec]:
        return [
            CloudSpec(visible.name, hidden.name)
            for visible in self.visible_chunks
            for hidden in self.hidden_chunks
            if not (visible.is_conditioning and hidden.is_conditioning)
        ]

    def _validate_clouds(self) -> None:
        """Hook for subclasses restricting the topology."""

    def _update_connectivity(self) -> None:
        visible = set(self.visible_chunks)
        hidden = set(self.hidden_chunks)
        self.has_visible_to_visible = any(
            cloud.chunk1 in visible and cloud.chunk2 in visible for cloud in self.clouds
        )
        self.has_hidden_to_hidden = any(
            cloud.chunk1 in hidden and cloud.chunk2 in hidden for cloud in self.clouds
        )

    @property
    def conditioning_visible_chunks(self) -> List[Chunk]:
        return [chunk for chunk in self.visible_chunks if chunk.is_conditioning]

    @property
    def conditioning_hidden_chunks(self) -> List[Chunk]:
        return [chunk for chunk in self.hidden_chunks if chunk.is_conditioning]

    @property
    def input_chunks(self) -> List[Chunk]:
        """Visible chunks clamped by set_input, in the order data columns are split."""
        return [
            chunk for chunk in self.visible_chunks
            if not chunk.is_constant and chunk.kind != ChunkKind.TEMPORAL
        ]

    def find_chunk(self, name: str) -> Chunk:
        for chunk in self.chunks:
            if chunk.name == name:
                return chunk
        raise ValueError(f"Unknown chunk: {name}")

    def find_cloud(self, name: str) -> Cloud:
        for cloud in self.clouds:
            if cloud.name == name:
                return cloud
        raise ValueError(f"Unknown cloud: {name}")

    def full_clouds(self) -> List[FullCloud]:
        """Dense clouds holding all weights, in cloud order."""
        return [full for cloud in self.clouds for full in cloud.full_clouds()]

    # Stripes

    def set_max_n_stripes(self, max_n_stripes: int) -> None:
        """Grow or shrink the stripe capacity of every chunk."""
        for chunk in self.chunks:
            chunk.resize(chunk.size, max_n_stripes)
        self.max_n_stripes = max_n_stripes
        self.n_stripes = min(self.n_stripes, max_n_stripes)
        for cloud in self.clouds:
            cloud.invalidate_cache()

    def set_n_stripes(self, n_stripes: int) -> None:
        if n_stripes > self.max_n_stripes:
            raise ValueError(f"{n_stripes} stripes exceed capacity {self.max_n_stripes}")
        for chunk in self.chunks:
            chunk.set_n_stripes(n_stripes)
        self.n_stripes = n_stripes

    # Inputs

    def _split_input(self, samples: Samples) -> List[Tuple[Chunk, torch.Tensor]]:
        if isinstance(samples, Mapping):
            return [(self.find_chunk(name), data) for name, data in samples.items()]
        chunks = self.input_chunks
        width = sum(chunk.size for chunk in chunks)
        if samples.dim() != 2 or samples.size(1) != width:
            raise ValueError(f"Expected samples of shape [batch, {width}], got {tuple(samples.shape)}")
        return list(zip(chunks, torch.split(samples, [chunk.size for chunk in chunks], dim=1)))

    def set_input(self, samples: Samples) -> None:
        """
        Clamp a batch of samples to the visible chunks.

        Samples are either a [batch, width] tensor split over input_chunks in
        order, or a mapping from chunk name to [batch, size] tensors. The
        stripe count follows the batch size; remembered temporal values are
        restored first, clamped values are mirrored into the inputs buffers
        and the means of the visible chunks are refreshed.
        """
        pairs = self._split_input(samples)
        n_stripes = pairs[0][1].size(0) if pairs else self.n_stripes
        if n_stripes > 1:
            for chunk in self.chunks:
                if chunk.indices_present is not None:
                    raise ValueError(f"Chunk {chunk.name} has missing values and cannot hold multiple stripes")
        if n_stripes > self.max_n_stripes:
            self.set_max_n_stripes(n_stripes)
        self.set_n_stripes(n_stripes)

        for chunk in self.chunks:
            if chunk.kind == ChunkKind.TEMPORAL:
                chunk.restore()

        for chunk, data in pairs:
            if data.shape != chunk.nodes.shape:
                raise ValueError(
                    f"Chunk {chunk.name} expects input of shape {tuple(chunk.nodes.shape)}, "
                    f"got {tuple(data.shape)}"
                )
            chunk.nodes.copy_(data)
            if chunk.kind == ChunkKind.CONSTRAINED_POISSON:
                chunk.scale = chunk.nodes.sum(dim=1).clone()
            chunk.touch()

        self.nodes_to_inputs()
        for chunk in self.visible_chunks:
            chunk.means.copy_(chunk.nodes)

    def nodes_to_inputs(self) -> None:
        for chunk in self.visible_chunks:
            if chunk.inputs is not None:
                chunk.inputs.copy_(chunk.nodes)

    def reconstruction_error(self) -> Tuple[float, int]:
        """
        Squared difference between the inputs and the current nodes.

        Summed over the present units of non-conditioning visible chunks.

        Returns:
            error: Sum of squared differences
            count: Number of contributing elements
        """
        error = 0.0
        count = 0
        for chunk in self.visible_chunks:
            if chunk.is_conditioning:
                continue
            diff = chunk.inputs - chunk.nodes
            if chunk.indices_present is not None:
                diff = diff[:, chunk.indices_present]
            error += torch.sum(diff ** 2).item()
            count += diff.numel()
        return error, count

    # Propagation

    def _open_epoch(self, chunks: Iterable[Chunk]) -> None:
        for chunk in chunks:
            chunk.touch()

    def _propagate(
        self,
        targets: Sequence[Chunk],
        use_old_nodes: bool = True,
        clouds: Optional[Sequence[Cloud]] = None,
        cached_sources: Iterable[Chunk] = (),
    ) -> None:
        """
        Zero the targets' nodes and add the activation of every cloud
        arriving at them from the other end.
        """
        target_set = set(targets)
        cached = set(cached_sources)
        for chunk in targets:
            chunk.nodes.zero_()
        for cloud in self.clouds if clouds is None else clouds:
            if cloud.is_self_loop:
                directions = (FORWARD,) if cloud.chunk2 in target_set else ()
            else:
                directions = tuple(
                    direction for direction in (FORWARD, REVERSE)
                    if cloud.ends(direction)[1] in target_set
                )
            for direction in directions:
                source, dest = cloud.ends(direction)
                values = source.old_nodes if use_old_nodes else source.nodes
                if source in cached:
                    cloud.cached_activate(direction, source, values, dest.nodes)
                else:
                    cloud.activate(direction, values, dest.nodes)

    def hijack_means_to_activation(self, chunks: Sequence[Chunk], cached_sources: Iterable[Chunk] = ()) -> None:
        """
        Propagate and reduce: recompute the non-conditioning chunks from the
        old nodes of their neighbours and map the result to means.
        """
        targets = [chunk for chunk in chunks if not chunk.is_conditioning]
        self._propagate(targets, use_old_nodes=True, cached_sources=cached_sources)
        for chunk in targets:
            chunk.compute_mean()
            chunk.touch()

    def set_mean(self, chunks: Sequence[Chunk], cached_sources: Iterable[Chunk] = ()) -> None:
        """
        Synchronously update the means of chunks.

        Every chunk is swapped, so old_nodes hold the current state for all
        of them; the updated chunks are recomputed into nodes and the rest
        are swapped back. All updated chunks thus see the same snapshot.
        """
        for chunk in self.chunks:
            chunk.swap()
        self.hijack_means_to_activation(chunks, cached_sources)
        updated = {chunk for chunk in chunks if not chunk.is_conditioning}
        for chunk in self.chunks:
            if chunk not in updated:
                chunk.swap()

    def settle(
        self,
        chunks: Sequence[Chunk],
        supervisor: Optional[MeanFieldSupervisor] = None,
        cached_sources: Iterable[Chunk] = (),
    ) -> int:
        """
        Iterate the means of chunks to a mean-field fixed point.

        Each iteration updates the chunks one by one. The supervisor decides
        after each iteration whether to stop or with what damping to blend
        the new nodes with the previous ones.

        Returns:
            Number of iterations run
        """
        supervisor = supervisor or self.mean_field_supervisor
        targets = [chunk for chunk in chunks if not chunk.is_conditioning]
        cached_sources = list(cached_sources)
        iteration = 0
        while True:
            for chunk in targets:
                self.set_mean([chunk], cached_sources)
            damping = supervisor(targets, self, iteration)
            if damping is None:
                break
            if damping > 0.0:
                for chunk in targets:
                    chunk.nodes.mul_(1.0 - damping).add_(chunk.old_nodes, alpha=damping)
                    chunk.touch()
            iteration += 1
        for chunk in targets:
            chunk.means.copy_(chunk.nodes)
        logger.debug(f"Settled {len(targets)} chunks in {iteration + 1} iterations")
        return iteration + 1

    def _remember(self, updated: Sequence[Chunk]) -> None:
        updated_set = set(updated)
        for chunk in self.chunks:
            if chunk.kind == ChunkKind.TEMPORAL and chunk.source in updated_set:
                chunk.remember()

    def set_visible_mean(self, supervisor: Optional[MeanFieldSupervisor] = None) -> None:
        """Compute the visible means from the hidden nodes."""
        self._open_epoch(self.hidden_chunks)
        self.set_mean(self.visible_chunks, cached_sources=self.hidden_chunks)
        if self.has_visible_to_visible:
            self.settle(self.visible_chunks, supervisor, cached_sources=self.hidden_chunks)
        self._remember(self.visible_chunks)

    def _initialize_hidden_mean(self) -> None:
        self.set_mean(self.hidden_chunks, cached_sources=self.visible_chunks)

    def set_hidden_mean(self, supervisor: Optional[MeanFieldSupervisor] = None, initialize: bool = False) -> None:
        """
        Compute the hidden means from the visible nodes.

        Args:
            supervisor: Mean-field supervisor for settling
            initialize: Seed the means from the visible nodes alone before
                settling (an up pass in deep machines)
        """
        self._open_epoch(self.visible_chunks)
        if initialize:
            self._initialize_hidden_mean()
        else:
            self.set_mean(self.hidden_chunks, cached_sources=self.visible_chunks)
        if self.has_hidden_to_hidden:
            self.settle(self.hidden_chunks, supervisor, cached_sources=self.visible_chunks)
        self._remember(self.hidden_chunks)

    def sample_visible(self) -> None:
        for chunk in self.visible_chunks:
            chunk.sample()

    def sample_hidden(self) -> None:
        for chunk in self.hidden_chunks:
            chunk.sample()

    def restore_visible_means(self) -> None:
        for chunk in self.visible_chunks:
            chunk.restore_means()

    def restore_hidden_means(self) -> None:
        for chunk in self.hidden_chunks:
            chunk.restore_means()

    # Persistent chains

    def _rebind(self, chunk_map: Dict[str, Chunk], clouds: List[Cloud]) -> None:
        self.visible_chunks = [chunk_map[chunk.name] for chunk in self.visible_chunks]
        self.hidden_chunks = [chunk_map[chunk.name] for chunk in self.hidden_chunks]
        self.chunks = self.visible_chunks + self.hidden_chunks
        self.clouds = clouds

    def clone_for_persistent_chain(self, n_chains: int) -> "BoltzmannMachine":
        """
        Independent copy of the network state for n_chains persistent chains.

        Chunk buffers are deep-copied; cloud weights are shared by reference,
        so weight updates made to this network are seen by the chains.
        """
        chunk_map = {chunk.name: chunk.clone() for chunk in self.chunks}
        for chunk in chunk_map.values():
            if chunk.source is not None:
                chunk.source = chunk_map[chunk.source.name]
        clone = copy.copy(self)
        clone._rebind(chunk_map, [cloud.share(chunk_map) for cloud in self.clouds])
        clone.n_stripes = self.n_stripes
        clone.set_max_n_stripes(n_chains)
        clone.set_n_stripes(n_chains)
        return clone

    # Persistence

    def write_weights(self, stream: BinaryIO) -> None:
        """Write the weights of every full cloud as one flat stream in cloud order."""
        for cloud in self.full_clouds():
            cloud.write_weights(stream)

    def read_weights(self, stream: BinaryIO) -> None:
        for cloud in self.full_clouds():
            cloud.read_weights(stream)
        for cloud in self.clouds:
            cloud.invalidate_cache()

    def save_weights(self, filepath: Union[str, Path]) -> None:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as stream:
            self.write_weights(stream)
        logger.info(f"Weights saved to {filepath}")

    def load_weights(self, filepath: Union[str, Path]) -> None:
        with open(filepath, 'rb') as stream:
            self.read_weights(stream)
        logger.info(f"Weights loaded from {filepath}")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}("
            f"visible={[chunk.name for chunk in self.visible_chunks]}, "
            f"hidden={[chunk.name for chunk in self.hidden_chunks]}, "
            f"clouds={[cloud.name for cloud in self.clouds]})"
        )


class RestrictedBoltzmannMachine(BoltzmannMachine):
    """Boltzmann machine without visible-visible or hidden-hidden clouds."""

    def _validate_clouds(self) -> None:
        visible = set(self.visible_chunks)
        for cloud in self.clouds:
            if (cloud.chunk1 in visible) == (cloud.chunk2 in visible):
                raise ValueError(f"Cloud {cloud.name} connects chunks of the same partition in an RBM")
