"""
Extraction Stages.

Stage identifiers, tagged stage results and the transition function that
decides which stage runs next. Kept free of I/O so the state machine can be
tested on its own.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Stage(str, Enum):
    """Stages of a knowledge extraction run, in execution order."""

    VALIDATE_INPUT = "validate_input"
    PATTERN_EXTRACT = "pattern_extract"
    LINK_ENTITIES = "link_entities"
    LLM_EXTRACT = "llm_extract"
    PERSIST_RESULTS = "persist_results"
    BROADCAST = "broadcast"


STAGE_SEQUENCE: tuple[Stage, ...] = tuple(Stage)

# Stages whose failure may be degraded to an empty success
NON_CRITICAL_STAGES = frozenset({Stage.PATTERN_EXTRACT, Stage.LINK_ENTITIES, Stage.LLM_EXTRACT})


@dataclass(frozen=True)
class StageSuccess:
    """
    Stage completed and produced a payload.

    ``error`` is set when a non-critical failure was degraded to an empty
    payload; ``skipped`` when the stage's precondition did not hold.
    """

    stage: Stage
    payload: Any = None
    error: str | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return True

    @property
    def degraded(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class StageFailure:
    """Stage failed. A fatal failure halts the run."""

    stage: Stage
    error: str
    fatal: bool = True

    @property
    def ok(self) -> bool:
        return False


StageResult = StageSuccess | StageFailure


def next_stage(current: Stage, result: StageResult) -> Stage | None:
    """
    Transition function of the extraction state machine.

    Returns the stage to run after ``current`` produced ``result``, or None
    when the run is done (after the last stage or on a fatal failure).
    """
    if isinstance(result, StageFailure) and result.fatal:
        return None

    index = STAGE_SEQUENCE.index(current)
    if index + 1 >= len(STAGE_SEQUENCE):
        return None
    return STAGE_SEQUENCE[index + 1]
