"""
Device Panel Test Suite

Test organization:
- tests/unit/          - Unit tests (isolated component testing, fake clock and fake device)

Usage from a REPL:
    >>> import tests
    >>> tests.run_all()
    >>> tests.run_unit()
"""

import os
import sys

# Add src to path for imports
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_src_dir = os.path.join(_project_root, "src")
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)


def run_all() -> None:
    """Run all tests in the test suite.

    Usage from a REPL:
        >>> import tests
        >>> tests.run_all()
    """
    from unittest import main

    print("\n" + "=" * 60)
    print("DEVICE PANEL - ALL TESTS")
    print("=" * 60)
    main(module="tests", exit=False, verbosity=2)


def run_unit() -> None:
    """Run only unit tests.

    Usage from a REPL:
        >>> import tests
        >>> tests.run_unit()
    """
    from unittest import main

    print("\n" + "=" * 60)
    print("DEVICE PANEL - UNIT TESTS")
    print("=" * 60)
    main(module="tests.unit", exit=False, verbosity=2)
