import os
import sys
from typing import Callable, List, Tuple

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from interpreter import VM, VMOptions, compile_source  # noqa: E402


@pytest.fixture
def load_vm() -> Callable[..., Tuple[VM, List[str]]]:
    """Compile ``source`` into a fresh VM that records printed lines."""

    def _load(source: str, **option_overrides) -> Tuple[VM, List[str]]:
        output: List[str] = []

        def _truncate(length: int) -> None:
            del output[length:]

        vm = VM(output_sink=output.append, output_truncate=_truncate, options=VMOptions(**option_overrides))
        vm.load(compile_source(source))
        return vm, output

    return _load


@pytest.fixture
def run_vm(load_vm) -> Callable[..., Tuple[VM, List[str]]]:
    """Like ``load_vm`` but steps the program to completion."""

    def _run(source: str, **option_overrides) -> Tuple[VM, List[str]]:
        vm, output = load_vm(source, **option_overrides)
        vm.run()
        return vm, output

    return _run
