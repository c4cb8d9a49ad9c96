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
Training loop for chunk Boltzmann machines with callbacks and logging

This module drives a learner over a data loader:
- One learner pass and one optimizer step per batch
- Epoch metrics from the summed squared reconstruction error
- Optional validation by mean-field reconstruction
- Callbacks for early stopping, weight checkpoints and progress logging
"""

from typing import Any, Dict, List, Optional
import logging
import math
import time

import torch
import torch.utils.data as data
from tqdm import tqdm

from .learners import BMLearner
from .optim import GradientAccumulator, SGDOptimizer

logger = logging.getLogger(__name__)


def _data_batch(batch: Any) -> torch.Tensor:
    if isinstance(batch, (list, tuple)):
        return batch[0]
    return batch


class TrainingLoop:
    """
    Training loop for a learner and its optimizer.

    The learner accumulates each batch's gradient into the optimizer's sink,
    then the optimizer updates the shared weights.
    """

    def __init__(
        self,
        learner: BMLearner,
        optimizer: SGDOptimizer,
        train_loader: data.DataLoader,
        val_loader: Optional[data.DataLoader] = None,
        callbacks: Optional[List[Any]] = None,
        log_interval: int = 10,
    ):
        """
        Initialize training loop.

        Args:
            learner: Learner accumulating the gradients
            optimizer: Optimizer owning the gradient sink
            train_loader: Training data loader
            val_loader: Validation data loader (optional)
            callbacks: List of training callbacks
            log_interval: Interval, in batches, for progress bar updates
        """
        self.learner = learner
        self.optimizer = optimizer
        self.train_loader = train_loader
        self.val_loader = val_loader
        self.callbacks = callbacks or []
        self.log_interval = log_interval

        self.current_epoch = 0
        self.global_step = 0
        self.training_history: Dict[str, List[float]] = {
            'train_loss': [],
            'val_loss': [],
            'epoch_time': []
        }

        logger.info(f"Training loop initialized for {type(learner).__name__} on {type(learner.bm).__name__}")

    @property
    def bm(self):
        return self.learner.bm

    @property
    def sink(self) -> GradientAccumulator:
        return self.optimizer.sink

    def train_epoch(self, epoch: int) -> Dict[str, float]:
        """
        Train for one epoch.

        Returns:
            metrics: train_loss (reconstruction RMSE), n_batches, epoch_time and
                the per-epoch results of the learner's monitors
        """
        squared_error = 0.0
        count = 0
        n_batches = 0
        epoch_start_time = time.time()

        pbar = tqdm(
            self.train_loader,
            desc=f"Epoch {epoch+1}",
            disable=not logger.isEnabledFor(logging.INFO)
        )

        for batch_idx, batch in enumerate(pbar):
            data_batch = _data_batch(batch)
            batch_metrics = self.learner.train_batch(data_batch, self.sink)
            self.optimizer.step(batch_metrics['batch_size'])

            squared_error += batch_metrics['reconstruction_error']
            count += batch_metrics['n_reconstructed']
            n_batches += 1
            self.global_step += 1

            if batch_idx % self.log_interval == 0:
                current_loss = math.sqrt(squared_error / count) if count else 0.0
                pbar.set_postfix({'rmse': f'{current_loss:.4f}'})

            for callback in self.callbacks:
                callback.on_batch_end(batch=batch_idx, logs=batch_metrics, bm=self.bm)

        metrics = {
            'train_loss': math.sqrt(squared_error / count) if count else 0.0,
            'n_batches': n_batches,
            'epoch_time': time.time() - epoch_start_time,
        }
        # Monitors report over this epoch only.
        for monitor in self.learner.monitors:
            metrics.update(monitor.result())
            monitor.reset()
        return metrics

    def validate_epoch(self, epoch: int) -> Dict[str, float]:
        """Reconstruction RMSE of the validation data after one up-down pass."""
        if self.val_loader is None:
            return {}

        squared_error = 0.0
        count = 0
        for batch in self.val_loader:
            self.bm.set_input(_data_batch(batch))
            self.bm.set_hidden_mean(initialize=True)
            self.bm.set_visible_mean()
            error, n = self.bm.reconstruction_error()
            squared_error += error
            count += n

        return {'val_loss': math.sqrt(squared_error / count) if count else 0.0}

    def train(self, epochs: int) -> Dict[str, List[float]]:
        """
        Main training loop.

        Args:
            epochs: Number of epochs to train

        Returns:
            history: Training history
        """
        logger.info(f"Starting training for {epochs} epochs")

        for callback in self.callbacks:
            callback.on_train_begin(logs={}, bm=self.bm)

        try:
            for epoch in range(epochs):
                self.current_epoch = epoch

                for callback in self.callbacks:
                    callback.on_epoch_begin(epoch=epoch, logs={}, bm=self.bm)

                train_metrics = self.train_epoch(epoch)
                val_metrics = self.validate_epoch(epoch)
                epoch_logs = {**train_metrics, **val_metrics}

                for key, value in epoch_logs.items():
                    self.training_history.setdefault(key, []).append(value)

                log_msg = f"Epoch {epoch+1}/{epochs}"
                log_msg += f" - train_loss: {train_metrics['train_loss']:.4f}"
                if val_metrics:
                    log_msg += f" - val_loss: {val_metrics['val_loss']:.4f}"
                log_msg += f" - time: {train_metrics['epoch_time']:.2f}s"
                logger.info(log_msg)

                for callback in self.callbacks:
                    callback.on_epoch_end(epoch=epoch, logs=epoch_logs, bm=self.bm)

                stopper = next((callback for callback in self.callbacks if callback.should_stop()), None)
                if stopper is not None:
                    logger.info(f"Early stopping triggered by {type(stopper).__name__}")
                    break

        except KeyboardInterrupt:
            logger.info("Training interrupted by user")

        except Exception as e:
            logger.error(f"Training failed with error: {e}")
            raise

        finally:
            for callback in self.callbacks:
                callback.on_train_end(logs=self.training_history, bm=self.bm)

        logger.info("Training completed")
        return self.training_history
