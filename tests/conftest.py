from __future__ import annotations

import shlex
import sys

import pytest

from matrixci.model import JobConfig
from matrixci.ui.console import Console, set_console


def py(code: str) -> str:
    """Shell command running `code` with the current interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def exit_with(code: int) -> str:
    return py(f"import sys; sys.exit({code})")


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False, output_tail=0)
    set_console(console)
    yield console


@pytest.fixture
def config():
    return JobConfig(labels=(("platform", "linux"),), variables={"os_name": "linux"})
