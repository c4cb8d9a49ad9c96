#!/usr/bin/env python3
"""
Unit tests for chunks.

Covers buffer management, double buffering, versions, the mean and sampling
functions of every kind, and the temporal delay line.
"""

import unittest
import torch
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from chunkbm.models.chunks import Chunk, ChunkKind


class TestChunkBuffers(unittest.TestCase):
    """Test cases for chunk buffers and stripes."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)
        self.chunk = Chunk('units', 4, max_n_stripes=3)

    def test_initialization(self):
        """Test chunk initialization."""
        self.assertEqual(self.chunk.size, 4)
        self.assertEqual(self.chunk.max_n_stripes, 3)
        self.assertEqual(self.chunk.n_stripes, 1)
        self.assertEqual(self.chunk.kind, ChunkKind.SIGMOID)
        for buffer in (self.chunk.nodes, self.chunk.old_nodes, self.chunk.means, self.chunk.inputs):
            self.assertEqual(buffer.shape, (1, 4))

    def test_set_n_stripes(self):
        """Test that stripe views follow the stripe count."""
        self.chunk.set_n_stripes(3)
        self.assertEqual(self.chunk.nodes.shape, (3, 4))
        self.assertEqual(self.chunk.old_nodes.shape, (3, 4))

        with self.assertRaises(ValueError):
            self.chunk.set_n_stripes(4)

    def test_swap(self):
        """Test that swap exchanges nodes and old_nodes without copying."""
        self.chunk.nodes.fill_(1.0)
        nodes = self.chunk.nodes
        self.chunk.swap()
        self.assertTrue(torch.all(self.chunk.nodes == 0))
        self.assertTrue(torch.all(self.chunk.old_nodes == 1))
        self.assertEqual(self.chunk.old_nodes.data_ptr(), nodes.data_ptr())

    def test_touch_increases_version(self):
        """Test that versions only ever increase."""
        version = self.chunk.version
        self.chunk.touch()
        self.assertGreater(self.chunk.version, version)

    def test_resize_preserves_content_when_unchanged(self):
        """Test that a resize to the same dimensions keeps the values."""
        self.chunk.nodes.fill_(0.5)
        self.chunk.resize(4, 3)
        self.assertTrue(torch.all(self.chunk.nodes == 0.5))

        self.chunk.resize(4, 5)
        self.assertEqual(self.chunk.max_n_stripes, 5)
        self.assertTrue(torch.all(self.chunk.nodes == 0))

    def test_constant_refilled_on_resize(self):
        """Test that constant chunks hold their default value after reallocation."""
        bias = Chunk('bias', 1, ChunkKind.CONSTANT)
        bias.resize(1, 5)
        bias.set_n_stripes(5)
        self.assertTrue(torch.all(bias.nodes == 1.0))
        self.assertTrue(torch.all(bias.old_nodes == 1.0))
        self.assertIsNone(bias.inputs)

    def test_missing_values_forbid_multiple_stripes(self):
        """Test that indices_present and multi-stripe batches are exclusive."""
        self.chunk.set_indices_present([0, 2])
        with self.assertRaises(ValueError):
            self.chunk.set_n_stripes(2)

        self.chunk.set_n_stripes(1)
        self.chunk.mark_everything_present()
        self.chunk.set_n_stripes(2)
        with self.assertRaises(ValueError):
            self.chunk.set_indices_present([1])

    def test_fill_present_indices(self):
        """Test that fill only writes present indices."""
        self.chunk.set_indices_present([0, 2])
        self.chunk.fill(1.0)
        self.assertEqual(self.chunk.nodes.tolist(), [[1.0, 0.0, 1.0, 0.0]])

    def test_clone_is_independent(self):
        """Test that clones copy values into their own buffers."""
        self.chunk.nodes.fill_(0.25)
        clone = self.chunk.clone()
        self.assertTrue(torch.equal(clone.nodes, self.chunk.nodes))
        clone.nodes.fill_(0.75)
        self.assertTrue(torch.all(self.chunk.nodes == 0.25))

    def test_invalid_parameters(self):
        """Test parameter validation."""
        with self.assertRaises(ValueError):
            Chunk('bad-groups', 5, ChunkKind.SOFTMAX, group_size=2)
        with self.assertRaises(ValueError):
            Chunk('orphan', 3, ChunkKind.TEMPORAL)
        with self.assertRaises(ValueError):
            Chunk('bad-kind', 3, 'binary')


class TestChunkMeans(unittest.TestCase):
    """Test cases for mean computation."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)

    def test_sigmoid_mean(self):
        """Test logistic means and the snapshot into means."""
        chunk = Chunk('sigmoid', 2)
        chunk.nodes.copy_(torch.tensor([[0.0, 100.0]]))
        chunk.compute_mean()
        self.assertAlmostEqual(chunk.nodes[0, 0].item(), 0.5)
        self.assertAlmostEqual(chunk.nodes[0, 1].item(), 1.0, places=5)
        self.assertTrue(torch.equal(chunk.means, chunk.nodes))

    def test_gaussian_and_relu_means(self):
        """Test identity and rectified means."""
        values = torch.tensor([[-1.0, 2.0]])
        gaussian = Chunk('gaussian', 2, ChunkKind.GAUSSIAN)
        gaussian.nodes.copy_(values)
        gaussian.compute_mean()
        self.assertTrue(torch.equal(gaussian.means, values))

        relu = Chunk('relu', 2, ChunkKind.RELU)
        relu.nodes.copy_(values)
        relu.compute_mean()
        self.assertEqual(relu.means.tolist(), [[0.0, 2.0]])

    def test_normalized_mean(self):
        """Test normalization of every group to its scale."""
        chunk = Chunk('normalized', 4, ChunkKind.NORMALIZED, group_size=2, scale=3.0)
        chunk.nodes.copy_(torch.tensor([[1.0, 3.0, 0.0, 0.0]]))
        chunk.compute_mean()
        self.assertEqual(chunk.means.tolist(), [[0.75, 2.25, 0.0, 0.0]])

    def test_softmax_sums_to_scale_with_extreme_activations(self):
        """Test that softmax groups sum to the scale and never overflow."""
        chunk = Chunk('softmax', 6, ChunkKind.SOFTMAX, max_n_stripes=2, group_size=3, scale=2.0)
        chunk.set_n_stripes(2)
        chunk.nodes.copy_(torch.tensor([
            [1000.0, -1000.0, 0.0, 1e-3, 5.0, 5.0],
            [-1e4, -1e4, -1e4, 88.0, 89.0, 1e5],
        ]))
        chunk.compute_mean()
        self.assertFalse(torch.any(torch.isnan(chunk.means)))
        sums = chunk.means.view(2, 2, 3).sum(dim=-1)
        self.assertTrue(torch.allclose(sums, torch.full((2, 2), 2.0)))

    def test_conditioning_chunks_are_not_updated(self):
        """Test that conditioning chunks ignore mean and sample requests."""
        chunk = Chunk('clamped', 2, ChunkKind.CONDITIONING)
        chunk.nodes.copy_(torch.tensor([[3.0, -3.0]]))
        chunk.compute_mean()
        chunk.sample()
        self.assertEqual(chunk.nodes.tolist(), [[3.0, -3.0]])


class TestChunkSampling(unittest.TestCase):
    """Test cases for sampling."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)

    def test_bernoulli_samples_are_binary(self):
        """Test Bernoulli sampling of sigmoid units."""
        chunk = Chunk('sigmoid', 50, max_n_stripes=4)
        chunk.set_n_stripes(4)
        chunk.nodes.fill_(0.5)
        chunk.sample()
        self.assertTrue(torch.all((chunk.nodes == 0) | (chunk.nodes == 1)))

    def test_relu_samples_are_non_negative(self):
        """Test clipped Gaussian sampling of ReLU units."""
        chunk = Chunk('relu', 50, ChunkKind.RELU)
        chunk.sample()
        self.assertTrue(torch.all(chunk.nodes >= 0))

    def test_poisson_samples_are_counts(self):
        """Test Poisson sampling of constrained Poisson units."""
        chunk = Chunk('counts', 10, ChunkKind.CONSTRAINED_POISSON)
        chunk.nodes.fill_(2.0)
        chunk.sample()
        self.assertTrue(torch.all(chunk.nodes >= 0))
        self.assertTrue(torch.equal(chunk.nodes, chunk.nodes.round()))

    def test_categorical_samples_are_one_hot(self):
        """Test that every softmax group gets exactly one unit at the scale."""
        chunk = Chunk('softmax', 12, ChunkKind.SOFTMAX, max_n_stripes=5, group_size=4, scale=2.0)
        chunk.set_n_stripes(5)
        chunk.nodes.copy_(torch.randn(5, 12) * 3)
        chunk.compute_mean()
        chunk.sample()
        groups = chunk.nodes.view(5, 3, 4)
        self.assertTrue(torch.all((groups != 0).sum(dim=-1) == 1))
        self.assertTrue(torch.all(groups.sum(dim=-1) == 2.0))

    def test_categorical_sample_follows_certain_choice(self):
        """Test that a group with all mass on one unit samples that unit."""
        chunk = Chunk('softmax', 3, ChunkKind.SOFTMAX)
        chunk.nodes.copy_(torch.tensor([[0.0, 1.0, 0.0]]))
        chunk.sample()
        self.assertEqual(chunk.nodes.tolist(), [[0.0, 1.0, 0.0]])

    def test_sampling_touches(self):
        """Test that sampling gives the chunk a new version."""
        chunk = Chunk('sigmoid', 3)
        version = chunk.version
        chunk.sample()
        self.assertGreater(chunk.version, version)


class TestTemporalChunk(unittest.TestCase):
    """Test cases for the temporal delay line."""

    def setUp(self):
        """Set up test fixtures."""
        self.source = Chunk('source', 3)
        self.temporal = Chunk('memory', 3, ChunkKind.TEMPORAL, source=self.source)

    def test_remember_keeps_earliest_value(self):
        """Test that only the first remember after a clamp is honoured."""
        self.source.means.fill_(0.3)
        self.temporal.remember()
        self.source.means.fill_(0.7)
        self.temporal.remember()

        self.temporal.restore()
        self.assertTrue(torch.allclose(self.temporal.nodes, torch.full((1, 3), 0.3)))

    def test_restore_without_new_memory_reuses_value(self):
        """Test that consecutive clamps both restore the held value."""
        self.source.means.fill_(0.3)
        self.temporal.remember()
        self.temporal.restore()
        self.temporal.nodes.zero_()
        self.temporal.restore()
        self.assertTrue(torch.allclose(self.temporal.nodes, torch.full((1, 3), 0.3)))

    def test_restore_accepts_new_memory(self):
        """Test that a clamp re-arms remember."""
        self.source.means.fill_(0.3)
        self.temporal.remember()
        self.temporal.restore()
        self.source.means.fill_(0.7)
        self.temporal.remember()
        self.temporal.restore()
        self.assertTrue(torch.allclose(self.temporal.nodes, torch.full((1, 3), 0.7)))

    def test_restore_before_any_memory(self):
        """Test that a clamp without memory leaves the nodes alone."""
        self.temporal.restore()
        self.assertTrue(torch.all(self.temporal.nodes == 0))


if __name__ == '__main__':
    unittest.main()
