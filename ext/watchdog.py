"""ematrm extension: stop runaway programs.

There is no halt instruction, so a program that keeps jumping backwards never
ends on its own. This extension counts executed instructions and stops the
run with exit code 3 once ``EMATRM_MAX_STEPS`` (default 1000000) is exceeded.

Usage:
    python ematrm.py --ext ext/watchdog.py program.em
"""

from __future__ import annotations

import os
import sys

from extensions import ExtensionAPI, StepContext
from interpreter import ExitSignal


EMATRM_EXTENSION_NAME = "watchdog"
EMATRM_EXTENSION_API_VERSION = 1

WATCHDOG_EXIT_CODE = 3
DEFAULT_MAX_STEPS = 1000000


def ematrm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=EMATRM_EXTENSION_NAME, version="0.1.0")
    max_steps = int(os.environ.get("EMATRM_MAX_STEPS", DEFAULT_MAX_STEPS))

    @ext.every_n_steps(1)
    def _check_budget(interpreter, ctx: StepContext) -> None:
        if ctx.step_index + 1 > max_steps:
            print(
                f"watchdog: stopped after {max_steps} steps at ip={ctx.instr_ptr} {ctx.kind} (line {ctx.line})",
                file=sys.stderr,
            )
            raise ExitSignal(WATCHDOG_EXIT_CODE)
