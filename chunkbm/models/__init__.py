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
Models module for ChunkBM.

This module provides Boltzmann machines built from chunks and clouds:
- Chunk: bank of units of one kind (sigmoid, gaussian, softmax, ...)
- FullCloud / FactoredCloud: dense and low-rank connections between chunks
- BoltzmannMachine, RestrictedBoltzmannMachine, DeepBoltzmannMachine
- DefaultMeanFieldSupervisor: damping and convergence policy for settling
"""

from .chunks import Chunk, ChunkKind
from .clouds import CloudSpec, Cloud, FullCloud, FactoredCloud, make_cloud, merge_cloud_specs
from .mean_field import DefaultMeanFieldSupervisor, mean_abs_node_change
from .bm import BoltzmannMachine, RestrictedBoltzmannMachine
from .dbm import DeepBoltzmannMachine

__version__ = "0.1.0"
__all__ = [
    # Building blocks
    "Chunk",
    "ChunkKind",
    "CloudSpec",
    "Cloud",
    "FullCloud",
    "FactoredCloud",
    "make_cloud",
    "merge_cloud_specs",

    # Networks
    "BoltzmannMachine",
    "RestrictedBoltzmannMachine",
    "DeepBoltzmannMachine",

    # Mean field
    "DefaultMeanFieldSupervisor",
    "mean_abs_node_change",
]
