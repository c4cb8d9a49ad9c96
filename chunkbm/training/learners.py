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
Contrastive divergence learners for Boltzmann machines

A learner turns a batch of samples into gradient contributions. It clamps the
batch, collects statistics from data-driven states (positive phase) and from
model-driven states (negative phase), and adds negative - positive statistics,
scaled by a multiplier, to the accumulators of a gradient sink:
- BMLearner: shared phase protocol, sampling modes and sparsity bookkeeping
- RBMCDLearner: contrastive divergence with a short Gibbs chain from the data
- BMPCDLearner: persistent contrastive divergence with long-lived chains
"""

from typing import Any, Dict, List, Optional, Sequence
import logging

import torch

from ..models.bm import BoltzmannMachine, Samples
from ..models.chunks import ChunkKind
from .sparsity import SparsityGradientSource

logger = logging.getLogger(__name__)

SAMPLING_MODES = (None, "half-hearted", "full")


def _check_sampling_mode(mode: Optional[str], what: str) -> Optional[str]:
    if mode not in SAMPLING_MODES:
        raise ValueError(f"Unknown {what} sampling mode: {mode!r}, expected one of {SAMPLING_MODES}")
    return mode


class BMLearner:
    """
    Base class of the learners.

    Sampling modes control what the chain runs on and what the statistics are
    collected from:
    - None: means drive both the chain and the statistics
    - "half-hearted": samples drive the chain, means feed the statistics
    - "full": samples drive both
    """

    def __init__(
        self,
        bm: BoltzmannMachine,
        visible_sampling: Optional[str] = None,
        hidden_sampling: Optional[str] = "half-hearted",
        n_gibbs: int = 1,
        sparsity_sources: Optional[Sequence[SparsityGradientSource]] = None,
        monitors: Optional[Sequence[Any]] = None,
    ):
        """
        Initialize a learner.

        Args:
            bm: Network being trained
            visible_sampling: Sampling mode of the visible chunks
            hidden_sampling: Sampling mode of the hidden chunks
            n_gibbs: Gibbs steps per negative phase
            sparsity_sources: Sparsity penalties flushed once per batch
            monitors: Objects whose apply(bm) is called after each negative phase
        """
        if n_gibbs < 1:
            raise ValueError(f"n_gibbs must be positive, got {n_gibbs}")
        self.bm = bm
        self.visible_sampling = _check_sampling_mode(visible_sampling, "visible")
        self.hidden_sampling = _check_sampling_mode(hidden_sampling, "hidden")
        self.n_gibbs = n_gibbs
        self.sparsity_sources: List[SparsityGradientSource] = list(sparsity_sources or [])
        self.monitors = list(monitors or [])

    def cost(self) -> float:
        raise NotImplementedError(f"{type(self).__name__} computes gradients only, not the cost value")

    def _accumulate(
        self,
        bm: BoltzmannMachine,
        sink,
        multiplier: float,
        importances: Optional[torch.Tensor] = None,
    ) -> None:
        """Add multiplier times the statistics of bm's current nodes to the sink."""
        for cloud in bm.clouds:
            accumulator = cloud.find_accumulators(sink)
            if accumulator is None:
                continue
            cloud.accumulate_statistics(
                cloud.chunk1.nodes, cloud.chunk2.nodes, multiplier, accumulator, importances
            )

    def _gibbs_steps(self, bm: BoltzmannMachine, last_hidden_sample: bool) -> None:
        """
        Run n_gibbs steps from the current hidden nodes.

        Hidden chunks in half-hearted mode are sampled between steps, and after
        the last one only if last_hidden_sample is set.
        """
        for step in range(self.n_gibbs):
            bm.set_visible_mean()
            if self.visible_sampling is not None:
                bm.sample_visible()
            bm.set_hidden_mean()
            is_last = step == self.n_gibbs - 1
            if self.hidden_sampling == "full":
                bm.sample_hidden()
            elif self.hidden_sampling == "half-hearted" and (not is_last or last_hidden_sample):
                bm.sample_hidden()
        if self.visible_sampling == "half-hearted":
            bm.restore_visible_means()

    def positive_phase(self, batch: Samples, sink, multiplier: float = 1.0,
                       importances: Optional[torch.Tensor] = None) -> None:
        """Clamp the batch, infer the hidden means and subtract their statistics."""
        bm = self.bm
        bm.set_input(batch)
        bm.set_hidden_mean(initialize=True)
        if self.hidden_sampling == "full":
            bm.sample_hidden()
        self._accumulate(bm, sink, -multiplier, importances)
        for source in self.sparsity_sources:
            source.accumulate()
        if self.hidden_sampling == "half-hearted":
            bm.sample_hidden()

    def negative_phase(self, sink, batch_size: int, multiplier: float = 1.0,
                       importances: Optional[torch.Tensor] = None) -> None:
        raise NotImplementedError

    def _batch_size(self, batch: Samples) -> int:
        if isinstance(batch, torch.Tensor):
            return batch.size(0)
        return next(iter(batch.values())).size(0)

    def _reconstruction_metrics(self) -> Dict[str, float]:
        error, count = self.bm.reconstruction_error()
        return {'reconstruction_error': error, 'n_reconstructed': count}

    def train_batch(
        self,
        batch: Samples,
        sink,
        multiplier: float = 1.0,
        importances: Optional[torch.Tensor] = None,
    ) -> Dict[str, float]:
        """
        Accumulate the gradient contribution of one batch into the sink.

        Args:
            batch: Samples for set_input
            sink: Gradient sink providing the accumulators
            multiplier: Scale of both phases' statistics
            importances: Optional per-sample weights of the data statistics

        Returns:
            metrics: Summed squared reconstruction error, its element count
                and the batch size
        """
        batch_size = self._batch_size(batch)
        self.positive_phase(batch, sink, multiplier, importances)
        self.negative_phase(sink, batch_size, multiplier, importances)
        for source in self.sparsity_sources:
            source.flush(sink, multiplier, batch_size)
        metrics = self._reconstruction_metrics()
        for monitor in self.monitors:
            monitor.apply(self.bm)
        metrics['batch_size'] = batch_size
        return metrics

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(visible_sampling={self.visible_sampling!r}, "
            f"hidden_sampling={self.hidden_sampling!r}, n_gibbs={self.n_gibbs})"
        )


class RBMCDLearner(BMLearner):
    """
    Contrastive divergence for networks without intra-partition clouds.

    The negative phase continues the chain from the positive phase's hidden
    state on the trainee itself, leaving the reconstruction in its visible
    nodes for monitors.
    """

    def __init__(self, bm: BoltzmannMachine, **kwargs):
        if bm.has_visible_to_visible or bm.has_hidden_to_hidden:
            raise ValueError("Contrastive divergence requires a network without intra-partition clouds")
        super().__init__(bm, **kwargs)

    def negative_phase(self, sink, batch_size: int, multiplier: float = 1.0,
                       importances: Optional[torch.Tensor] = None) -> None:
        self._gibbs_steps(self.bm, last_hidden_sample=False)
        self._accumulate(self.bm, sink, multiplier, importances)


class BMPCDLearner(BMLearner):
    """
    Persistent contrastive divergence.

    The negative phase runs on a persistent-chain clone of the network, which
    shares the weights but keeps its own state across batches. Its statistics
    are rescaled by batch_size / n_particles so both phases weigh the same
    regardless of the population sizes.
    """

    def __init__(self, bm: BoltzmannMachine, n_particles: int = 100, **kwargs):
        """
        Initialize a PCD learner.

        Args:
            bm: Network being trained
            n_particles: Number of persistent chains
            **kwargs: Arguments of BMLearner
        """
        for cloud in bm.clouds:
            if cloud.is_self_loop:
                raise ValueError(f"Persistent chains do not support self-loop cloud {cloud.name}")
        if n_particles < 1:
            raise ValueError(f"n_particles must be positive, got {n_particles}")
        super().__init__(bm, **kwargs)
        self.n_particles = n_particles
        self.chain = bm.clone_for_persistent_chain(n_particles)
        logger.info(f"Initialized {n_particles} persistent chains")

    def negative_phase_multiplier(self, batch_size: int, multiplier: float = 1.0) -> float:
        return multiplier * batch_size / self.n_particles

    def _refresh_chain_scales(self) -> None:
        """
        Give constrained-Poisson chains document lengths drawn from the rows
        of the latest clamped batch.
        """
        for chunk in self.chain.visible_chunks:
            if chunk.kind != ChunkKind.CONSTRAINED_POISSON:
                continue
            scale = self.bm.find_chunk(chunk.name).scale
            if isinstance(scale, torch.Tensor):
                rows = torch.randint(scale.size(0), (self.n_particles,), device=scale.device)
                chunk.scale = scale[rows].clone()
            else:
                chunk.scale = scale

    def negative_phase(self, sink, batch_size: int, multiplier: float = 1.0,
                       importances: Optional[torch.Tensor] = None) -> None:
        chain = self.chain
        self._refresh_chain_scales()
        self._gibbs_steps(chain, last_hidden_sample=False)
        self._accumulate(chain, sink, self.negative_phase_multiplier(batch_size, multiplier))
        if self.hidden_sampling == "half-hearted":
            chain.sample_hidden()

    def _reconstruction_metrics(self) -> Dict[str, float]:
        # The trainee still holds the data; reconstruct it by a mean-field step.
        self.bm.set_visible_mean()
        return super()._reconstruction_metrics()
