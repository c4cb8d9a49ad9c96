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
In-place activation and sampling kernels for chunk buffers

All functions operate on a [n_stripes, size] tensor and overwrite it:
- Mean functions map accumulated activations to distribution means
- Sampling functions draw one sample per unit, using the buffer as parameters
- Grouped functions view the buffer as [n_stripes, n_groups, group_size]
"""

from typing import Union
import torch
import logging

logger = logging.getLogger(__name__)

Scale = Union[float, torch.Tensor]


def _grouped(x: torch.Tensor, group_size: int) -> torch.Tensor:
    return x.view(x.size(0), -1, group_size)


def _scale_view(scale: Scale, n_stripes: int) -> Scale:
    """Broadcastable view of a per-stripe scale over grouped buffers."""
    if isinstance(scale, torch.Tensor):
        return scale[:n_stripes].view(n_stripes, 1, 1)
    return scale


def sigmoid_(x: torch.Tensor) -> torch.Tensor:
    """Logistic mean of binary units."""
    return x.sigmoid_()


def relu_(x: torch.Tensor) -> torch.Tensor:
    """Rectified mean, max(0, x)."""
    return x.clamp_(min=0.0)


def normalize_groups_(x: torch.Tensor, group_size: int, scale: Scale = 1.0) -> torch.Tensor:
    """
    Normalize every group of units so that it sums to scale.

    Groups summing to zero are left at zero.
    """
    groups = _grouped(x, group_size)
    sums = groups.sum(dim=-1, keepdim=True)
    sums[sums == 0] = 1.0
    groups.div_(sums).mul_(_scale_view(scale, x.size(0)))
    return x


def exp_normalize_groups_(x: torch.Tensor, group_size: int, scale: Scale = 1.0) -> torch.Tensor:
    """
    Softmax within every group, scaled to sum to scale.

    The per-group maximum is subtracted before exponentiating so that large
    activations cannot overflow.
    """
    groups = _grouped(x, group_size)
    groups.sub_(groups.max(dim=-1, keepdim=True).values)
    groups.exp_()
    groups.div_(groups.sum(dim=-1, keepdim=True))
    groups.mul_(_scale_view(scale, x.size(0)))
    return x


def sample_bernoulli_(probs: torch.Tensor) -> torch.Tensor:
    """
    Replace Bernoulli probabilities with binary samples.

    Args:
        probs: Bernoulli probabilities [n_stripes, n_units]

    Returns:
        The same tensor, holding binary samples
    """
    return probs.copy_(torch.bernoulli(probs.clamp(0.0, 1.0)))


def sample_gaussian_(mean: torch.Tensor) -> torch.Tensor:
    """Add unit variance Gaussian noise to the means."""
    return mean.add_(torch.randn_like(mean))


def sample_relu_(mean: torch.Tensor) -> torch.Tensor:
    """Gaussian noise added to the means, clipped at zero."""
    return mean.add_(torch.randn_like(mean)).clamp_(min=0.0)


def sample_poisson_(rates: torch.Tensor) -> torch.Tensor:
    """Replace Poisson rates with counts."""
    return rates.copy_(torch.poisson(rates.clamp(min=0.0)))


def sample_categorical_groups_(
    x: torch.Tensor,
    group_size: int,
    scale: Scale = 1.0,
    uniform: torch.Tensor = None
) -> torch.Tensor:
    """
    Draw one active unit per group.

    The means of a group divided by scale are treated as categorical
    probabilities. A uniform number per group is compared against the
    cumulative probabilities; the first unit whose cumulative probability
    reaches it is set to scale, every other unit of the group to zero.

    Args:
        x: Means [n_stripes, size], overwritten with the one-hot samples
        group_size: Number of units per group
        scale: Group scale (float or per-stripe tensor)
        uniform: Optional buffer with at least [n_stripes, n_groups] elements
            used for the uniform draws
    """
    n_stripes = x.size(0)
    groups = _grouped(x, group_size)
    n_groups = groups.size(1)
    scale_view = _scale_view(scale, n_stripes)
    cumulative = (groups / scale_view).cumsum(dim=-1)
    if uniform is None:
        thresholds = torch.rand(n_stripes, n_groups, 1, dtype=x.dtype, device=x.device)
    else:
        thresholds = uniform.reshape(-1)[:n_stripes * n_groups].uniform_()
        thresholds = thresholds.view(n_stripes, n_groups, 1)
    # Index of the first cumulative value reaching the threshold. Rounding can
    # leave the final cumulative value just below one.
    chosen = (cumulative < thresholds).sum(dim=-1, keepdim=True).clamp_(max=group_size - 1)
    if isinstance(scale_view, torch.Tensor):
        values = scale_view.expand(n_stripes, n_groups, 1).to(x.dtype)
    else:
        values = torch.full((n_stripes, n_groups, 1), float(scale_view),
                            dtype=x.dtype, device=x.device)
    groups.zero_()
    groups.scatter_(-1, chosen, values)
    return x
