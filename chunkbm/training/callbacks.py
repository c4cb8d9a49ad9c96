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
Training callbacks for early stopping, weight checkpoints, and progress logging

Callbacks receive the network being trained:
- Early stopping on a monitored metric, optionally restoring the best weights
- Weight checkpoints in the flat weight-stream format
- Progress logging with elapsed time
"""

from typing import Any, Dict, Optional, Union
import logging
import time
from pathlib import Path
from abc import ABC

import numpy as np
import torch

from ..models.bm import BoltzmannMachine

logger = logging.getLogger(__name__)


class Callback(ABC):
    """Base class for training callbacks."""

    def on_train_begin(self, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Called at the beginning of training."""
        pass

    def on_train_end(self, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Called at the end of training."""
        pass

    def on_epoch_begin(self, epoch: int, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Called at the beginning of each epoch."""
        pass

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Called at the end of each epoch."""
        pass

    def on_batch_end(self, batch: int, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Called at the end of each batch."""
        pass

    def should_stop(self) -> bool:
        return False


def _monitor_op(mode: str):
    if mode == 'min':
        return np.less, np.inf
    if mode == 'max':
        return np.greater, -np.inf
    raise ValueError(f"Mode {mode} not supported")


class EarlyStopping(Callback):
    """Early stopping callback to stop training when a metric stops improving."""

    def __init__(
        self,
        monitor: str = 'val_loss',
        patience: int = 10,
        min_delta: float = 0.0,
        mode: str = 'min',
        restore_best_weights: bool = True,
        verbose: bool = True
    ):
        """
        Initialize early stopping callback.

        Args:
            monitor: Metric to monitor
            patience: Number of epochs with no improvement to wait
            min_delta: Minimum change to qualify as improvement
            mode: 'min' for minimization, 'max' for maximization
            restore_best_weights: Whether to restore best weights when stopping
            verbose: Whether to log messages
        """
        self.monitor = monitor
        self.patience = patience
        self.min_delta = min_delta
        self.mode = mode
        self.restore_best_weights = restore_best_weights
        self.verbose = verbose
        self.monitor_op, self.best = _monitor_op(mode)

        self.wait = 0
        self.stopped_epoch = 0
        self.best_weights: Optional[Dict[str, torch.Tensor]] = None

    def on_train_begin(self, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Reset state at training start."""
        self.wait = 0
        self.stopped_epoch = 0
        _, self.best = _monitor_op(self.mode)
        self.best_weights = None

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Check for early stopping condition."""
        current = logs.get(self.monitor)
        if current is None:
            logger.warning(f"Early stopping metric '{self.monitor}' not found in logs")
            return

        if self.monitor_op(current - self.min_delta, self.best):
            self.best = current
            self.wait = 0
            if self.restore_best_weights:
                self.best_weights = {cloud.name: cloud.weights.clone() for cloud in bm.full_clouds()}
        else:
            self.wait += 1
            if self.wait >= self.patience:
                self.stopped_epoch = epoch
                if self.verbose:
                    logger.info(f"Early stopping at epoch {epoch + 1}")

                if self.restore_best_weights and self.best_weights is not None:
                    for cloud in bm.full_clouds():
                        cloud.weights.copy_(self.best_weights[cloud.name])
                    for cloud in bm.clouds:
                        cloud.invalidate_cache()
                    if self.verbose:
                        logger.info("Restored best weights")

    def should_stop(self) -> bool:
        """Check if training should stop."""
        return self.wait >= self.patience


class WeightCheckpoint(Callback):
    """
    Callback saving the network's weights during training.

    The filepath may contain {epoch} and {<monitor>} placeholders.
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        monitor: str = 'val_loss',
        save_best_only: bool = True,
        mode: str = 'min',
        period: int = 1,
        verbose: bool = True
    ):
        """
        Initialize weight checkpoint callback.

        Args:
            filepath: Path template of the weight files
            monitor: Metric to monitor for the best weights
            save_best_only: Whether to save only improving weights
            mode: 'min' for minimization, 'max' for maximization
            period: Interval (epochs) between checkpoints
            verbose: Whether to log messages
        """
        self.filepath = Path(filepath)
        self.monitor = monitor
        self.save_best_only = save_best_only
        self.mode = mode
        self.period = period
        self.verbose = verbose
        self.monitor_op, self.best = _monitor_op(mode)
        self.epochs_since_last_save = 0

        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    def on_train_begin(self, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Reset state at training start."""
        _, self.best = _monitor_op(self.mode)
        self.epochs_since_last_save = 0

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Save weights if conditions are met."""
        self.epochs_since_last_save += 1
        if self.epochs_since_last_save < self.period:
            return
        self.epochs_since_last_save = 0

        current = logs.get(self.monitor)
        if self.save_best_only:
            if current is None:
                logger.warning(f"Checkpoint metric '{self.monitor}' not found in logs")
                return
            if not self.monitor_op(current, self.best):
                return
            self.best = current
        self._save_weights(bm, epoch, current)

    def _save_weights(self, bm: BoltzmannMachine, epoch: int, metric_value: Optional[float]) -> None:
        filepath = str(self.filepath).format(epoch=epoch+1, **{self.monitor: metric_value or 0})
        bm.save_weights(filepath)
        if self.verbose:
            logger.info(f"Weight checkpoint saved to {filepath}")


class ProgressLogger(Callback):
    """Simple progress logging callback."""

    def __init__(self, log_freq: int = 1):
        """
        Initialize progress logger.

        Args:
            log_freq: Frequency (epochs) for logging progress
        """
        self.log_freq = log_freq
        self.start_time = None

    def on_train_begin(self, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Record training start time."""
        self.start_time = time.time()
        logger.info(f"Training started: {bm}")

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Log progress."""
        if (epoch + 1) % self.log_freq == 0:
            elapsed = time.time() - self.start_time
            logger.info(f"Epoch {epoch + 1} completed in {elapsed:.2f}s")

    def on_train_end(self, logs: Dict[str, Any], bm: BoltzmannMachine) -> None:
        """Log training completion."""
        if self.start_time:
            total_time = time.time() - self.start_time
            logger.info(f"Training completed in {total_time:.2f}s")
