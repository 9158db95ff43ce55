"""Root-level conftest.py: keep test runs away from the real state directory.

Anything that falls back to ``get_state_dir()`` (config, database, logs)
would otherwise land in ``./.governor`` of whoever runs the suite.
"""

import pytest


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("GOVERNOR_DIR", str(tmp_path / ".governor"))
