"""External command execution."""

import subprocess
from typing import Callable, List

CommandRunner = Callable[[List[str]], subprocess.CompletedProcess]


def run_command(args: List[str]) -> subprocess.CompletedProcess:
    """Run a command and capture its output as text."""
    return subprocess.run(args, capture_output=True, text=True)
