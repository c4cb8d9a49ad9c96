#!/usr/bin/env python3
"""
Test runner for the ChunkBM test suite.
"""

import argparse
import sys
import time
import unittest
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))


class SummaryTextTestRunner(unittest.TextTestRunner):
    """Test runner printing a short summary after the run."""

    def run(self, test):
        print("ChunkBM Test Suite")
        print("=" * 50)

        start_time = time.time()
        result = super().run(test)
        end_time = time.time()

        print("\n" + "=" * 50)
        print(f"Total time: {end_time - start_time:.2f} seconds")
        print(f"Failed: {len(result.failures)}")
        print(f"Errors: {len(result.errors)}")
        print(f"Skipped: {len(result.skipped)}")
        print(f"Total: {result.testsRun}")

        for test_case, _ in result.failures + result.errors:
            print(f"  - {test_case}")

        return result


def main():
    """Main test runner function."""
    parser = argparse.ArgumentParser(description='Run ChunkBM tests')
    parser.add_argument('--test', type=str, help='Run specific test module')
    parser.add_argument('--pattern', type=str, default='test_*.py',
                       help='Test file pattern')
    parser.add_argument('--verbosity', type=int, default=2, choices=[0, 1, 2],
                       help='Test verbosity level')
    parser.add_argument('--failfast', action='store_true',
                       help='Stop on first failure')
    parser.add_argument('--quiet', action='store_true',
                       help='Minimal output')

    args = parser.parse_args()

    test_dir = Path(__file__).parent
    loader = unittest.TestLoader()
    if args.test:
        suite = loader.discover(str(test_dir), pattern=f"{args.test}.py")
    else:
        suite = loader.discover(str(test_dir), pattern=args.pattern)

    runner = SummaryTextTestRunner(
        verbosity=0 if args.quiet else args.verbosity,
        failfast=args.failfast,
        buffer=True
    )
    result = runner.run(suite)
    sys.exit(0 if result.wasSuccessful() else 1)


if __name__ == '__main__':
    main()
