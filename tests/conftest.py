from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest


_FAKE_UNSHARE_SCRIPT = """#!{python}
import json
import os
import sys


def main():
    argv = sys.argv[1:]
    log_path = os.environ.get("FAKE_UNSHARE_LOG")
    if log_path:
        with open(log_path, "a") as f:
            f.write(json.dumps({{"argv": argv, "cwd": os.getcwd()}}) + "\\n")

    if os.environ.get("FAKE_UNSHARE_MODE") == "deny":
        print("unshare: unshare failed: Operation not permitted", file=sys.stderr)
        return 1

    i = 0
    while i < len(argv) and argv[i].startswith("--"):
        if argv[i] == "--":
            i += 1
            break
        if argv[i].startswith("--wd="):
            os.chdir(argv[i][len("--wd="):])
        i += 1
    cmd = argv[i:]
    if not cmd:
        print("unshare: no command", file=sys.stderr)
        return 1
    try:
        os.execvp(cmd[0], cmd)
    except OSError as e:
        print(f"unshare: failed to execute {{cmd[0]}}: {{e.strerror}}", file=sys.stderr)
        return 127


if __name__ == "__main__":
    sys.exit(main())
"""


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def fake_unshare(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    """Put a pass-through `unshare` on PATH that records its argv and cwd."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "unshare"
    script.write_text(_FAKE_UNSHARE_SCRIPT.format(python=sys.executable))
    script.chmod(0o755)

    log_file = tmp_path / "fake-unshare.jsonl"
    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_UNSHARE_LOG", str(log_file))
    monkeypatch.delenv("FAKE_UNSHARE_MODE", raising=False)

    return {"bin_dir": bin_dir, "script": script, "log_file": log_file}


def read_unshare_calls(log_file: Path) -> list[dict]:
    if not log_file.exists():
        return []
    return [json.loads(line) for line in log_file.read_text().splitlines()]


@pytest.fixture
def unshare_calls(fake_unshare):
    """Callable returning the invocations recorded by the fake unshare."""

    def _calls() -> list[dict]:
        return read_unshare_calls(fake_unshare["log_file"])

    return _calls
