#!/usr/bin/env python3
"""
Unit tests for Deep Boltzmann Machines.
"""

import unittest
import torch
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from chunkbm.models.chunks import Chunk, ChunkKind
from chunkbm.models.clouds import CloudSpec
from chunkbm.models.dbm import DeepBoltzmannMachine


class TestDeepBoltzmannMachine(unittest.TestCase):
    """Test cases for DeepBoltzmannMachine."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)
        self.v = Chunk('v', 3)
        self.h1 = Chunk('h1', 4)
        self.h2 = Chunk('h2', 2)
        self.dbm = DeepBoltzmannMachine([[self.v], [self.h1], [self.h2]])
        self.data = torch.tensor([[1.0, 0.0, 1.0]])
        self.w1 = self.dbm.find_cloud('v-h1').weights
        self.w2 = self.dbm.find_cloud('h1-h2').weights

    def test_initialization(self):
        """Test layers and default clouds between adjacent layers."""
        self.assertEqual(len(self.dbm.layers), 3)
        self.assertEqual(self.dbm.visible_chunks, [self.v])
        self.assertEqual(self.dbm.hidden_chunks, [self.h1, self.h2])
        self.assertEqual([cloud.name for cloud in self.dbm.clouds], ['v-h1', 'h1-h2'])
        self.assertEqual([[c.name for c in clouds] for clouds in self.dbm.upward_clouds],
                         [['v-h1'], ['h1-h2']])
        self.assertTrue(self.dbm.has_hidden_to_hidden)

    def test_requires_two_layers(self):
        """Test that a single layer is rejected."""
        with self.assertRaises(ValueError):
            DeepBoltzmannMachine([[Chunk('v', 3)]])

    def test_non_adjacent_clouds_are_rejected(self):
        """Test that clouds may only connect adjacent layers."""
        with self.assertRaises(ValueError):
            DeepBoltzmannMachine([[Chunk('v', 3)], [Chunk('h1', 4)], [Chunk('h2', 2)]],
                                 clouds=[CloudSpec('v', 'h2')])
        with self.assertRaises(ValueError):
            DeepBoltzmannMachine([[Chunk('v', 3)], [Chunk('h1', 4), Chunk('g1', 4)]],
                                 clouds=[CloudSpec('h1', 'g1')])

    def test_up_pass_doubles_chunks_connected_above(self):
        """Test single-pass bottom-up inference."""
        self.dbm.set_input(self.data)
        self.dbm.up_pass()

        h1 = torch.sigmoid(2.0 * self.data @ self.w1)
        self.assertTrue(torch.allclose(self.h1.means, h1, atol=1e-6))
        h2 = torch.sigmoid(h1 @ self.w2)
        self.assertTrue(torch.allclose(self.h2.means, h2, atol=1e-6))
        self.assertTrue(torch.equal(self.v.nodes, self.data))

    def test_down_pass_doubles_chunks_connected_below(self):
        """Test single-pass top-down inference down to the visible layer."""
        self.dbm.set_input(self.data)
        self.dbm.up_pass()
        top = self.h2.nodes.clone()
        self.dbm.down_pass()

        h1 = torch.sigmoid(2.0 * top @ self.w2.t())
        self.assertTrue(torch.allclose(self.h1.means, h1, atol=1e-6))
        v = torch.sigmoid(h1 @ self.w1.t())
        self.assertTrue(torch.allclose(self.v.means, v, atol=1e-6))
        self.assertTrue(torch.equal(self.h2.nodes, top))

    def test_conditioning_chunks_are_not_updated_by_passes(self):
        """Test that bias chunks keep their value through both passes."""
        bias = Chunk('bias', 1, ChunkKind.CONSTANT)
        dbm = DeepBoltzmannMachine([[Chunk('x', 3), bias], [Chunk('y', 2)]])
        self.assertEqual([cloud.name for cloud in dbm.clouds], ['x-y', 'bias-y'])
        dbm.set_input(self.data)
        dbm.up_pass()
        dbm.down_pass()
        self.assertTrue(torch.all(bias.nodes == 1.0))

    def test_set_hidden_mean_with_up_pass_initialization(self):
        """Test that settling seeded by an up pass runs to the mean-field budget."""
        self.dbm.set_input(self.data)
        self.dbm.set_hidden_mean(initialize=True)
        for chunk in self.dbm.hidden_chunks:
            self.assertTrue(torch.equal(chunk.means, chunk.nodes))
            self.assertTrue(torch.all((chunk.means > 0) & (chunk.means < 1)))

    def test_persistent_chain_clone_keeps_layers(self):
        """Test that clones rebind layers to their own chunks."""
        chain = self.dbm.clone_for_persistent_chain(3)
        self.assertIs(chain.layers[1][0], chain.find_chunk('h1'))
        self.assertIsNot(chain.layers[1][0], self.h1)
        self.assertIs(chain.upward_clouds[0][0].chunk2, chain.find_chunk('h1'))
        chain.up_pass()
        self.assertEqual(chain.find_chunk('h2').means.shape, (3, 2))


if __name__ == '__main__':
    unittest.main()
