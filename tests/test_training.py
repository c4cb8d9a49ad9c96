#!/usr/bin/env python3
"""
Unit tests for the optimizer, the training loop and callbacks.
"""

import tempfile
import unittest
import torch
import torch.utils.data as data
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from chunkbm.models.bm import RestrictedBoltzmannMachine
from chunkbm.models.chunks import Chunk, ChunkKind
from chunkbm.training.callbacks import Callback, EarlyStopping, ProgressLogger, WeightCheckpoint
from chunkbm.training.learners import BMPCDLearner, RBMCDLearner
from chunkbm.training.loop import TrainingLoop
from chunkbm.training.monitors import ReconstructionRMSEMonitor
from chunkbm.training.optim import GradientAccumulator, SGDOptimizer


def make_rbm():
    visible = [Chunk('v', 6), Chunk('bias', 1, ChunkKind.CONSTANT)]
    hidden = [Chunk('h', 4)]
    return RestrictedBoltzmannMachine(visible, hidden)


class RecordingCallback(Callback):
    """Callback recording the hooks it receives."""

    def __init__(self):
        self.events = []

    def on_train_begin(self, logs, bm):
        self.events.append('train_begin')

    def on_epoch_end(self, epoch, logs, bm):
        self.events.append(f'epoch_end_{epoch}')

    def on_batch_end(self, batch, logs, bm):
        self.events.append('batch_end')

    def on_train_end(self, logs, bm):
        self.events.append('train_end')


class TestSGDOptimizer(unittest.TestCase):
    """Test cases for SGDOptimizer."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)
        self.rbm = make_rbm()
        for cloud in self.rbm.full_clouds():
            cloud.weights.zero_()
        self.sink = GradientAccumulator(self.rbm)

    def test_step_descends_and_zeroes_the_sink(self):
        """Test W -= lr * grad / batch_size."""
        optimizer = SGDOptimizer(self.sink, learning_rate=0.1, momentum=0.0, weight_decay=0.0)
        self.sink.accumulators['v-h'].fill_(1.0)
        optimizer.step(batch_size=2)
        self.assertTrue(torch.allclose(self.rbm.find_cloud('v-h').weights, torch.full((6, 4), -0.05)))
        self.assertTrue(torch.all(self.sink.accumulators['v-h'] == 0))

    def test_momentum(self):
        """Test that momentum carries previous updates."""
        optimizer = SGDOptimizer(self.sink, learning_rate=0.1, momentum=0.5, weight_decay=0.0)
        self.sink.accumulators['v-h'].fill_(1.0)
        optimizer.step(batch_size=1)
        optimizer.step(batch_size=1)
        # -0.1 then -(0.5 * 0.1)
        self.assertTrue(torch.allclose(self.rbm.find_cloud('v-h').weights, torch.full((6, 4), -0.15)))

    def test_weight_decay_exemptions(self):
        """Test that weight decay skips clouds listed in no_decay."""
        for cloud in self.rbm.full_clouds():
            cloud.weights.fill_(1.0)
        optimizer = SGDOptimizer(self.sink, learning_rate=1.0, momentum=0.0, weight_decay=0.1,
                                 no_decay=['bias-h'])
        optimizer.step(batch_size=1)
        self.assertTrue(torch.allclose(self.rbm.find_cloud('v-h').weights, torch.full((6, 4), 0.9)))
        self.assertTrue(torch.all(self.rbm.find_cloud('bias-h').weights == 1.0))


class TestTrainingLoop(unittest.TestCase):
    """Test cases for TrainingLoop."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)
        self.rbm = make_rbm()
        samples = torch.bernoulli(torch.full((32, 6), 0.3))
        self.train_loader = data.DataLoader(data.TensorDataset(samples[:24]), batch_size=8)
        self.val_loader = data.DataLoader(data.TensorDataset(samples[24:]), batch_size=8)

    def _loop(self, learner, callbacks=None):
        optimizer = SGDOptimizer(GradientAccumulator(self.rbm), learning_rate=0.05)
        return TrainingLoop(learner, optimizer, self.train_loader, self.val_loader, callbacks=callbacks)

    def test_train_records_history(self):
        """Test epochs, history and weight updates."""
        before = self.rbm.find_cloud('v-h').weights.clone()
        loop = self._loop(RBMCDLearner(self.rbm))
        history = loop.train(epochs=3)

        self.assertEqual(len(history['train_loss']), 3)
        self.assertEqual(len(history['val_loss']), 3)
        self.assertEqual(history['n_batches'], [3, 3, 3])
        self.assertEqual(loop.global_step, 9)
        self.assertFalse(torch.equal(self.rbm.find_cloud('v-h').weights, before))

    def test_monitors_report_per_epoch(self):
        """Test that monitor results enter the history and restart every epoch."""
        monitor = ReconstructionRMSEMonitor()
        history = self._loop(RBMCDLearner(self.rbm, monitors=[monitor])).train(epochs=2)

        self.assertEqual(len(history['reconstruction_rmse']), 2)
        for monitored, loss in zip(history['reconstruction_rmse'], history['train_loss']):
            self.assertAlmostEqual(monitored, loss, places=5)
        self.assertEqual(monitor.count, 0)

    def test_train_with_pcd(self):
        """Test that PCD learners train through the same loop."""
        loop = self._loop(BMPCDLearner(self.rbm, n_particles=10))
        history = loop.train(epochs=2)
        self.assertTrue(all(loss >= 0 for loss in history['train_loss']))

    def test_callback_hooks(self):
        """Test the order of callback hooks."""
        callback = RecordingCallback()
        self._loop(RBMCDLearner(self.rbm), callbacks=[callback, ProgressLogger()]).train(epochs=1)
        self.assertEqual(callback.events,
                         ['train_begin', 'batch_end', 'batch_end', 'batch_end', 'epoch_end_0', 'train_end'])

    def test_early_stopping(self):
        """Test that training stops once the monitored metric stops improving."""
        stopper = EarlyStopping(monitor='constant', patience=2)

        class ConstantMetric(Callback):
            def on_epoch_end(self, epoch, logs, bm):
                logs['constant'] = 1.0

        loop = self._loop(RBMCDLearner(self.rbm), callbacks=[ConstantMetric(), stopper])
        history = loop.train(epochs=10)
        self.assertEqual(len(history['train_loss']), 3)
        self.assertTrue(stopper.should_stop())

    def test_weight_checkpoint(self):
        """Test that checkpoints hold loadable weights."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / 'epoch_{epoch}.weights'
            checkpoint = WeightCheckpoint(path, save_best_only=False, verbose=False)
            self._loop(RBMCDLearner(self.rbm), callbacks=[checkpoint]).train(epochs=2)
            saved = Path(temp_dir) / 'epoch_2.weights'
            self.assertTrue(saved.exists())

            other = make_rbm()
            other.load_weights(saved)
            for mine, theirs in zip(self.rbm.full_clouds(), other.full_clouds()):
                self.assertTrue(torch.equal(mine.weights, theirs.weights))

    def test_invalid_mode(self):
        """Test monitor mode validation."""
        with self.assertRaises(ValueError):
            EarlyStopping(mode='sideways')


if __name__ == '__main__':
    unittest.main()
