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
ChunkBM: Boltzmann machines over chunks of units connected by clouds.

- models: chunks, clouds, BM/RBM/DBM networks and mean-field settling
- training: CD/PCD learners, sparsity, optimization and the training loop
- config: experiment configuration and builders
"""

__version__ = "0.1.0"
