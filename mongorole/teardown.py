"""
Best-effort step sequences.

Teardown runs a fixed ordered list of steps. Every step runs whatever
happened to the ones before it; failures are logged at warning and
reported in the results.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BestEffortStep:
    name: str
    action: Callable[[], Any]


@dataclass(frozen=True)
class StepResult:
    name: str
    ok: bool
    error: Optional[str] = None


def run_best_effort(steps: Sequence[BestEffortStep]) -> List[StepResult]:
    results = []
    for step in steps:
        try:
            outcome = step.action()
            # Steps that report failure by returning False rather than raising
            ok = outcome is not False
            results.append(StepResult(step.name, ok))
            logger.info(f"Teardown step '{step.name}' completed (ok={ok})")
        except Exception as e:
            results.append(StepResult(step.name, False, str(e)))
            logger.warning(f"Teardown step '{step.name}' failed with {e}", exc_info=True)
    return results
