#!/usr/bin/env python3
"""
Unit tests for mean-field supervision and settling.
"""

import unittest
import torch
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from chunkbm.models.bm import BoltzmannMachine
from chunkbm.models.chunks import Chunk
from chunkbm.models.clouds import CloudSpec
from chunkbm.models.mean_field import DefaultMeanFieldSupervisor, mean_abs_node_change


class TestDefaultMeanFieldSupervisor(unittest.TestCase):
    """Test cases for DefaultMeanFieldSupervisor."""

    def setUp(self):
        """Set up test fixtures."""
        self.chunk = Chunk('h', 4)
        self.chunk.nodes.fill_(1.0)
        self.supervisor = DefaultMeanFieldSupervisor(
            n_undamped_iterations=2, n_damped_iterations=3, damping_factor=0.5,
            node_change_threshold=1e-3
        )

    def test_mean_abs_node_change(self):
        """Test the convergence measure."""
        self.assertAlmostEqual(mean_abs_node_change([self.chunk]), 1.0)

    def test_schedule(self):
        """Test undamped iterations, then damped ones, then stop."""
        decisions = [self.supervisor([self.chunk], None, i) for i in range(5)]
        self.assertEqual(decisions, [0.0, 0.0, 0.5, 0.5, None])

    def test_convergence_takes_priority(self):
        """Test that a small change stops settling at once."""
        self.chunk.old_nodes.fill_(1.0)
        self.assertIsNone(self.supervisor([self.chunk], None, 0))

    def test_invalid_damping(self):
        """Test damping factor validation."""
        with self.assertRaises(ValueError):
            DefaultMeanFieldSupervisor(damping_factor=1.0)


class TestSettling(unittest.TestCase):
    """Test cases for settling networks with hidden-hidden clouds."""

    def setUp(self):
        """Set up test fixtures."""
        torch.manual_seed(42)
        self.visible = Chunk('v', 3)
        self.h1 = Chunk('h1', 4)
        self.h2 = Chunk('h2', 4)
        self.bm = BoltzmannMachine(
            [self.visible], [self.h1, self.h2],
            clouds=[CloudSpec('h1', 'h2', init_std=1.0)]
        )
        self.bm.set_input(torch.tensor([[1.0, 0.0, 1.0]]))

    def test_iteration_budget_bounds_settling(self):
        """Test that settling stops after n_undamped + n_damped iterations."""
        supervisor = DefaultMeanFieldSupervisor(
            n_undamped_iterations=2, n_damped_iterations=3, node_change_threshold=-1.0
        )
        n_iterations = self.bm.settle(self.bm.hidden_chunks, supervisor)
        self.assertEqual(n_iterations, 5)

    def test_threshold_stops_early(self):
        """Test that a converged iteration ends settling."""
        supervisor = DefaultMeanFieldSupervisor(node_change_threshold=1e9)
        self.assertEqual(self.bm.settle(self.bm.hidden_chunks, supervisor), 1)

    def test_custom_supervisor(self):
        """Test that any callable can supervise settling."""
        calls = []

        def supervisor(chunks, bm, iteration):
            calls.append(iteration)
            return None if iteration == 2 else 0.25

        self.assertEqual(self.bm.settle(self.bm.hidden_chunks, supervisor), 3)
        self.assertEqual(calls, [0, 1, 2])

    def test_damping_blends_with_previous_nodes(self):
        """Test nodes = (1 - k) new + k old for a damped iteration."""
        self.h1.nodes.fill_(0.2)
        self.h2.nodes.fill_(0.2)
        snapshots = []

        def supervisor(chunks, bm, iteration):
            snapshots.append([(c.nodes.clone(), c.old_nodes.clone()) for c in chunks])
            return 0.5 if iteration == 0 else None

        self.bm.settle(self.bm.hidden_chunks, supervisor)
        # The second iteration starts from the blended nodes of the first.
        new_h1, old_h1 = snapshots[0][0]
        blended = 0.5 * new_h1 + 0.5 * old_h1
        _, second_old_h1 = snapshots[1][0]
        self.assertTrue(torch.allclose(second_old_h1, blended, atol=1e-6))

    def test_settled_means_snapshot(self):
        """Test that settling leaves means equal to nodes."""
        self.bm.set_hidden_mean()
        for chunk in self.bm.hidden_chunks:
            self.assertTrue(torch.equal(chunk.means, chunk.nodes))


if __name__ == '__main__':
    unittest.main()
