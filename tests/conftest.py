"""Fake formatter scripts shared by the test modules."""

import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest

import bazel_format_core as core

FAKE_FORMATTERS = {
    "echo": """
        import sys
        sys.stdout.buffer.write(sys.stdin.buffer.read())
    """,
    "fail": """
        import sys
        sys.stdin.buffer.read()
        sys.stderr.write("<stdin>:1:5: syntax error near =\\nmore detail\\n")
        sys.exit(1)
    """,
    # Strips trailing whitespace and guarantees a final newline; idempotent
    "tidy": """
        import sys
        data = sys.stdin.buffer.read().decode("utf-8")
        lines = [line.rstrip() for line in data.splitlines()]
        sys.stdout.buffer.write(("\\n".join(lines) + "\\n").encode("utf-8"))
    """,
    "shrink": """
        import sys
        sys.stdin.buffer.read()
        sys.stdout.buffer.write(b"x\\n")
    """,
    "sleep": """
        import sys, time
        sys.stdin.buffer.read()
        time.sleep(30)
    """,
    "garbage": """
        import sys
        sys.stdin.buffer.read()
        sys.stdout.buffer.write(b"\\xff\\xfe\\xfa")
    """,
    "argv": """
        import sys
        sys.stdin.buffer.read()
        sys.stdout.write(" ".join(sys.argv[1:]))
    """,
    "cwd": """
        import os, sys
        sys.stdin.buffer.read()
        sys.stdout.write(os.getcwd())
    """,
}


@pytest.fixture
def make_formatter(tmp_path: Path) -> Callable[..., core.FormatterConfig]:
    """
    Return a factory building a FormatterConfig that runs a fake formatter.

    The script is run with the current interpreter so no shebang or
    executable bit is needed.
    """

    def factory(name: str, **kwargs) -> core.FormatterConfig:
        script = tmp_path / f"fake_{name}.py"
        script.write_text(textwrap.dedent(FAKE_FORMATTERS[name]))
        extra = kwargs.pop("args", [])
        return core.FormatterConfig(command=sys.executable, args=[str(script)] + extra, **kwargs)

    return factory
