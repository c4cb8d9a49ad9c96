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
Monitors applied to the trained network after each negative phase.
"""

from typing import Dict
import logging
import math

from ..models.bm import BoltzmannMachine

logger = logging.getLogger(__name__)


class ReconstructionRMSEMonitor:
    """
    Root mean squared reconstruction error over the batches seen since the
    last reset.

    With mean_field_reconstruction the visible means are recomputed from the
    hidden nodes before measuring, so the error reflects a deterministic
    reconstruction rather than whatever the chain left in the visible nodes.
    """

    def __init__(self, mean_field_reconstruction: bool = False, name: str = 'reconstruction_rmse'):
        self.mean_field_reconstruction = mean_field_reconstruction
        self.name = name
        self.reset()

    def reset(self) -> None:
        self.squared_error = 0.0
        self.count = 0

    def apply(self, bm: BoltzmannMachine) -> None:
        if self.mean_field_reconstruction:
            bm.set_visible_mean()
        error, count = bm.reconstruction_error()
        self.squared_error += error
        self.count += count

    @property
    def rmse(self) -> float:
        if self.count == 0:
            return float('nan')
        return math.sqrt(self.squared_error / self.count)

    def result(self) -> Dict[str, float]:
        return {self.name: self.rmse}

    def __repr__(self) -> str:
        return f"ReconstructionRMSEMonitor(rmse={self.rmse:.6f}, count={self.count})"
