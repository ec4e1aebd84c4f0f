import os
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SCRIPT = ROOT / "entrycopy.py"

# let the unit tests import the module from a plain checkout
sys.path.insert(0, str(ROOT))


@pytest.fixture
def run_cli():
    def _run(args, cwd=None):
        cmd = os.environ.get("ENTRYCOPY_CMD")
        full = [cmd] if cmd else [sys.executable, str(SCRIPT)]
        full.extend(map(str, args))
        return subprocess.run(full, env=os.environ.copy(), cwd=cwd, capture_output=True, text=True)

    return _run


@pytest.fixture
def tmp_tree(tmp_path):
    """Factory to quickly create files.
    Usage: files = tmp_tree({"a.txt": "hi", "sub/b.bin": b"bytes"})
    Returns dict of relative path -> absolute Path created.
    """
    def _mk(mapping):
        created = {}
        for rel, content in mapping.items():
            p = tmp_path / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                p.write_bytes(content)
            else:
                p.write_text(str(content))
            created[rel] = p
        return created
    return _mk
