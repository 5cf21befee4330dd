import sys
from pathlib import Path

import pytest

# Allow `import marksync` without installing the package.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_marksync_env(monkeypatch):
    """Tests must not pick up a developer's real remote or profile settings."""
    import os

    for name in list(os.environ):
        if name.startswith("MARKSYNC_"):
            monkeypatch.delenv(name, raising=False)
