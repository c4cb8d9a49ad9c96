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
Training module for ChunkBM.

This module provides the training infrastructure for chunk Boltzmann machines:
- RBMCDLearner / BMPCDLearner: contrastive divergence learners
- Sparsity gradient sources for regularizing chunk activations
- GradientAccumulator / SGDOptimizer: gradient sink and weight updates
- TrainingLoop: epoch orchestration with callbacks
- Callbacks: early stopping, weight checkpoints and progress logging
"""

from .learners import BMLearner, RBMCDLearner, BMPCDLearner, SAMPLING_MODES
from .sparsity import (
    SparsityGradientSource,
    NormalSparsityGradientSource,
    CheatingSparsityGradientSource
)
from .optim import GradientAccumulator, SGDOptimizer
from .monitors import ReconstructionRMSEMonitor
from .loop import TrainingLoop
from .callbacks import Callback, EarlyStopping, WeightCheckpoint, ProgressLogger

__version__ = "0.1.0"
__all__ = [
    # Learners
    "BMLearner",
    "RBMCDLearner",
    "BMPCDLearner",
    "SAMPLING_MODES",

    # Sparsity
    "SparsityGradientSource",
    "NormalSparsityGradientSource",
    "CheatingSparsityGradientSource",

    # Optimization
    "GradientAccumulator",
    "SGDOptimizer",
    "ReconstructionRMSEMonitor",

    # Core training
    "TrainingLoop",

    # Callbacks
    "Callback",
    "EarlyStopping",
    "WeightCheckpoint",
    "ProgressLogger",
]
