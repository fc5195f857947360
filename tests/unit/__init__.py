"""
Unit Tests

Tests for individual components in isolation. Time is driven by a fake clock
and the device by a fake HTTP session (see tests/unit/mocks.py), so no test
sleeps or touches the network.

Run via command line:
    python tests/run_tests.py

Or run specific test module:
    python -m unittest tests.unit.test_<module_name>
"""

import os
import sys
import unittest

# Ensure src directory is in Python path for imports
# This is critical for IDE test discovery, which imports test modules directly
_project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
_src_dir = os.path.join(_project_root, "src")
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from core.logging_helper import configure_logging  # noqa: E402

# Only testing() output is shown while tests run
configure_logging("TESTING")

# Re-export TestCase for convenience - tests can use: from tests.unit import TestCase
TestCase = unittest.TestCase

__all__ = ["TestCase"]
