"""Deep research engine: templates, state machine, runner and session registry."""

from .machine import ResearchMachine
from .models import ResearchKind, ResearchRequest, ResearchResult, ResearchStage, ResearchTask
from .runner import ResearchRunner

__all__ = [
    "ResearchKind",
    "ResearchMachine",
    "ResearchRequest",
    "ResearchResult",
    "ResearchRunner",
    "ResearchStage",
    "ResearchTask",
]
