"""Pytest configuration – ensure the local packages are discoverable.

The entry-point imports its configuration helper as ``tools.src.mysqld_config``
and the tests import ``mysql_entrypoint`` directly from the checkout.  When
the suite runs without an editable install the project root might not be
present in ``sys.path``; the hook below adds it *once* at the beginning of the
test session.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


def pytest_configure() -> None:  # noqa: D401 – Pytest hook name
    root = Path(os.getenv("PYTEST_PROJECT_ROOT", Path(__file__).resolve().parents[1])).resolve()
    if str(root) not in sys.path:  # pragma: no cover – executed once
        sys.path.insert(0, str(root))
