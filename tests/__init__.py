"""
ChunkBM Test Suite

Test Structure:
- test_chunks.py: Chunk buffers, kinds, means, sampling and temporal memory
- test_clouds.py: Full and factored clouds, caching and spec merging
- test_mean_field.py: Supervisors and mean-field settling
- test_bm.py: Boltzmann machines, inputs, propagation, persistence
- test_dbm.py: Layered networks and single-pass inference
- test_learners.py: CD/PCD learners and sparsity gradients
- test_training.py: Optimizer, training loop and callbacks
- test_config.py: Configuration loading and builders

Usage:
    # Run all tests
    python tests/run_tests.py

    # Run specific test module
    python tests/run_tests.py --test test_bm

    # Or with pytest
    pytest tests
"""

import sys
import warnings
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

warnings.filterwarnings('ignore', category=UserWarning)

TEST_CONFIG = {
    'random_seed': 42,
    'tolerance': 1e-5,
}

__all__ = ['TEST_CONFIG']
