"""Stage consumers: triage (1), medium (2), deep (3) and focus questions."""

from researchflow.stages.base import ItemResult, StageConsumer, StageOutcome
from researchflow.stages.deep import DeepConsumer
from researchflow.stages.focus import FocusConsumer
from researchflow.stages.medium import MediumConsumer
from researchflow.stages.triage import TriageConsumer

__all__ = [
    "StageConsumer",
    "StageOutcome",
    "ItemResult",
    "TriageConsumer",
    "MediumConsumer",
    "DeepConsumer",
    "FocusConsumer",
]
