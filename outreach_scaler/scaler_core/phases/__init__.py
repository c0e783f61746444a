from .catalog import DEFAULT_PHASES, MarketPolicy, PhaseCatalog, PhaseDefinition, SuccessCriterion
from .criteria import CriteriaEvaluator, required_passes
from .markets import CandidateDirectory, MarketSelector, fallback_top_n

__all__ = [
    "CandidateDirectory",
    "CriteriaEvaluator",
    "DEFAULT_PHASES",
    "MarketPolicy",
    "MarketSelector",
    "PhaseCatalog",
    "PhaseDefinition",
    "SuccessCriterion",
    "fallback_top_n",
    "required_passes",
]
