"""Pytest configuration.

Ensures that the repository root is importable so that the ``timedash``
package resolves when tests run from a plain checkout (without
``pip install -e .``), and keeps the package log out of the working tree.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add the repository root (the directory containing this file) to ``sys.path``
# if it is not already present.  This mirrors the behaviour of running Python
# scripts directly from the project root.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("TIMEDASH_LOG_DIR", str(Path(tempfile.gettempdir()) / "timedash-test-log"))
