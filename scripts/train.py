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
Training script for ChunkBM networks.

This script provides a complete training pipeline with support for:
- BM, RBM and DBM networks described by YAML experiment configurations
- CD and PCD learners with sparsity regularization
- Early stopping, weight checkpoints and progress logging
- Hyperparameter overrides from the command line

Usage:
    # Basic training
    python scripts/train.py --config=configs/binary_rbm.yaml --epochs=50

    # PCD with more Gibbs steps per batch
    python scripts/train.py --config=configs/pcd_dbm.yaml --n_gibbs=5 --lr=0.005

    # Resume from saved weights
    python scripts/train.py --config=configs/binary_rbm.yaml --resume=runs/binary_rbm/best.weights
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Tuple

import numpy as np
import torch
import torch.utils.data as data
import yaml

from chunkbm.config import ConfigManager, create_learner, create_network, create_optimizer
from chunkbm.models.bm import BoltzmannMachine
from chunkbm.training.callbacks import EarlyStopping, ProgressLogger, WeightCheckpoint
from chunkbm.training.loop import TrainingLoop

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Train ChunkBM networks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument('--config', type=str, required=True,
                       help='Experiment configuration file (YAML or JSON)')

    # Training configuration overrides
    parser.add_argument('--learner', type=str, choices=['cd', 'pcd'], help='Learner override')
    parser.add_argument('--n_gibbs', type=int, help='Gibbs steps per negative phase')
    parser.add_argument('--n_particles', type=int, help='Persistent chains for PCD')
    parser.add_argument('--epochs', type=int, help='Training epochs')
    parser.add_argument('--batch_size', type=int, help='Batch size')
    parser.add_argument('--lr', type=float, help='Learning rate')
    parser.add_argument('--momentum', type=float, help='Momentum')
    parser.add_argument('--weight_decay', type=float, help='Weight decay')

    # Data configuration overrides
    parser.add_argument('--data', type=str, help='Path of a .npy array of training samples')
    parser.add_argument('--n_samples', type=int, help='Number of synthetic training samples')

    # Training control
    parser.add_argument('--resume', type=str, help='Weights to start from')
    parser.add_argument('--patience', type=int, default=10, help='Early stopping patience')
    parser.add_argument('--no_save', action='store_true', help='Disable saving')
    parser.add_argument('--dry_run', action='store_true', help='Dry run without training')

    parser.add_argument('--log_level', type=str, default='INFO',
                       choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                       help='Logging level')
    parser.add_argument('--quiet', action='store_true', help='Minimal output')

    return parser.parse_args()


def collect_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Dotted-key configuration overrides from command line arguments."""
    mapping = {
        'learner': 'training.learner',
        'n_gibbs': 'training.n_gibbs',
        'n_particles': 'training.n_particles',
        'epochs': 'training.epochs',
        'batch_size': 'training.batch_size',
        'lr': 'training.learning_rate',
        'momentum': 'training.momentum',
        'weight_decay': 'training.weight_decay',
        'data': 'data.path',
        'n_samples': 'data.n_samples',
    }
    return {
        key: getattr(args, arg)
        for arg, key in mapping.items()
        if getattr(args, arg) is not None
    }


def synthetic_binary_data(n_samples: int, width: int, n_prototypes: int = 8,
                          flip_probability: float = 0.05, seed: int = 42) -> np.ndarray:
    """Noisy copies of random binary prototypes."""
    rng = np.random.default_rng(seed)
    prototypes = rng.random((n_prototypes, width)) < 0.3
    samples = prototypes[rng.integers(0, n_prototypes, size=n_samples)]
    flips = rng.random(samples.shape) < flip_probability
    return np.logical_xor(samples, flips).astype(np.float32)


def create_data_loaders(config: Dict[str, Any], bm: BoltzmannMachine) -> Tuple[data.DataLoader, data.DataLoader]:
    """Training and validation loaders over the configured samples."""
    data_config = config.get('data', {})
    width = sum(chunk.size for chunk in bm.input_chunks)
    path = data_config.get('path')

    if path in (None, '', 'null'):
        samples = synthetic_binary_data(data_config.get('n_samples', 1000), width,
                                        seed=data_config.get('seed', 42))
        logger.info(f"Generated {len(samples)} synthetic samples of width {width}")
    else:
        samples = np.load(path).astype(np.float32)
        logger.info(f"Loaded {len(samples)} samples from {path}")
        if samples.ndim != 2 or samples.shape[1] != width:
            raise ValueError(f"Expected samples of width {width}, got shape {samples.shape}")

    dataset = data.TensorDataset(torch.from_numpy(samples))
    n_val = int(len(dataset) * data_config.get('validation_split', 0.1))
    generator = torch.Generator().manual_seed(data_config.get('seed', 42))
    train_set, val_set = data.random_split(dataset, [len(dataset) - n_val, n_val], generator=generator)

    batch_size = config['training'].get('batch_size', 64)
    train_loader = data.DataLoader(train_set, batch_size=batch_size, shuffle=True, drop_last=True)
    val_loader = data.DataLoader(val_set, batch_size=batch_size) if n_val else None
    return train_loader, val_loader


def main():
    """Main training function."""
    args = parse_arguments()

    if args.quiet:
        logging.getLogger().setLevel(logging.WARNING)
    else:
        logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))

    try:
        config = ConfigManager.load(args.config, overrides=collect_overrides(args))

        if args.dry_run:
            logger.info("Dry run mode - configuration loaded successfully")
            logger.info(f"Config: {yaml.dump(config, default_flow_style=False)}")
            return

        torch.manual_seed(config.get('data', {}).get('seed', 42))
        bm = create_network(config)
        if args.resume:
            bm.load_weights(args.resume)
            logger.info(f"Resumed training from: {args.resume}")

        learner = create_learner(bm, config)
        _, optimizer = create_optimizer(bm, config)
        train_loader, val_loader = create_data_loaders(config, bm)

        monitor = 'val_loss' if val_loader is not None else 'train_loss'
        callbacks = [ProgressLogger(), EarlyStopping(monitor=monitor, patience=args.patience)]
        output_dir = Path(config.get('output', {}).get('dir', f"runs/{config['name']}"))
        if not args.no_save:
            callbacks.append(WeightCheckpoint(output_dir / 'best.weights', monitor=monitor))
            ConfigManager.save(config, output_dir / 'config.yaml')

        training_loop = TrainingLoop(learner, optimizer, train_loader, val_loader, callbacks=callbacks)
        logger.info("Starting training...")
        training_loop.train(config['training'].get('epochs', 10))

        if not args.no_save:
            bm.save_weights(output_dir / 'final.weights')

        logger.info(f"Training completed successfully for experiment: {config['name']}")

    except Exception as e:
        logger.error(f"Training failed: {e}")
        raise


if __name__ == "__main__":
    main()
