import sys
from pathlib import Path

# The interpreter is a set of top-level modules; make them importable
# without an install.
sys.path.insert(0, str(Path(__file__).parent.parent))

from typing import List, Optional

import pytest

from interpreter import Interpreter


class Harness:
    """Runs a program with captured output and scripted input."""

    def __init__(self, inputs: Optional[List[str]] = None) -> None:
        self.output: List[str] = []
        self.inputs = list(inputs or [])

    def _next_input(self) -> str:
        return self.inputs.pop(0) if self.inputs else ""

    def make(self, source: str, **kwargs) -> Interpreter:
        return Interpreter(
            source=source,
            filename="<test>",
            input_provider=self._next_input,
            output_sink=self.output.append,
            **kwargs,
        )

    def run(self, source: str, **kwargs) -> Interpreter:
        interpreter = self.make(source, **kwargs)
        interpreter.run()
        return interpreter

    @property
    def text(self) -> str:
        return "".join(self.output)


@pytest.fixture
def harness():
    return Harness()
