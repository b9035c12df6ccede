from __future__ import annotations

from pathlib import Path
import sys

import pytest

_SRC = Path(__file__).resolve().parents[1] / 'src'
if _SRC.is_dir():
    # Prefer the working tree over any installed copy of the package.
    src_text = str(_SRC)
    sys.path[:] = [src_text] + [p for p in sys.path if p and Path(p).resolve() != _SRC]


@pytest.fixture(autouse=True)
def _clear_task_context():
    from agentcrew.observability import set_task_context

    set_task_context(task_id=None, provider=None)
    yield
    set_task_context(task_id=None, provider=None)
