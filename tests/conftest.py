"""Shared test fixtures."""

from __future__ import annotations

import os
import sys

import pytest

FAIL_SCRIPT = "import sys\nsys.stdin.read()\nsys.stderr.write('boom\\n')\nsys.exit(1)\n"

REVERSE_LINES = (
    "import sys\n"
    "for line in sys.stdin:\n"
    "    sys.stdout.write(line.rstrip('\\n')[::-1] + '\\n')\n"
)

# Echoes stdin but fails until the per-chunk counter (``<chunk>.tries``)
# reaches argv[2]. Usage: python_command(FLAKY_SCRIPT, "{}", "3")
FLAKY_SCRIPT = (
    "import pathlib, sys\n"
    "counter = pathlib.Path(sys.argv[1] + '.tries')\n"
    "count = int(counter.read_text()) + 1 if counter.exists() else 1\n"
    "counter.write_text(str(count))\n"
    "data = sys.stdin.read()\n"
    "sys.stderr.write('try %d\\n' % count)\n"
    "sys.stdout.write(data)\n"
    "sys.exit(0 if count >= int(sys.argv[2]) else 1)\n"
)


def python_command(script: str, *args: str) -> list[str]:
    """Argv running ``script`` with the current interpreter."""

    return [sys.executable, "-c", script, *args]


@pytest.fixture(autouse=True)
def clean_chunkpipe_env(monkeypatch):
    """Isolate tests from CHUNKPIPE_* variables set in the developer shell."""

    for name in list(os.environ):
        if name.startswith("CHUNKPIPE_"):
            monkeypatch.delenv(name, raising=False)
