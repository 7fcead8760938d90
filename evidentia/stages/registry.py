"""
Stage registry: every pipeline stage by name, in dependency order.
"""

from types import MappingProxyType
from typing import Dict

from evidentia.services.stage_executor import StageDefinition
from evidentia.stages.claims import CLAIMS_STAGE
from evidentia.stages.contacts import CONTACTS_STAGE
from evidentia.stages.patents import PATENTS_STAGE
from evidentia.stages.research_groups import RESEARCH_GROUPS_STAGE
from evidentia.stages.similar_papers import SIMILAR_PAPERS_STAGE
from evidentia.stages.theses import THESES_STAGE
from evidentia.stages.verified_claims import VERIFIED_CLAIMS_STAGE

CLAIMS = CLAIMS_STAGE.name
SIMILAR_PAPERS = SIMILAR_PAPERS_STAGE.name
RESEARCH_GROUPS = RESEARCH_GROUPS_STAGE.name
CONTACTS = CONTACTS_STAGE.name
THESES = THESES_STAGE.name
PATENTS = PATENTS_STAGE.name
VERIFIED_CLAIMS = VERIFIED_CLAIMS_STAGE.name

_DEFINITIONS = (
    CLAIMS_STAGE,
    SIMILAR_PAPERS_STAGE,
    PATENTS_STAGE,
    RESEARCH_GROUPS_STAGE,
    CONTACTS_STAGE,
    THESES_STAGE,
    VERIFIED_CLAIMS_STAGE,
)

STAGES: "MappingProxyType[str, StageDefinition]" = MappingProxyType({stage.name: stage for stage in _DEFINITIONS})

# Topological order; every stage appears after everything it requires
STAGE_ORDER = tuple(stage.name for stage in _DEFINITIONS)


def get_stage(name: str) -> StageDefinition:
    """
    Look up a stage by name.

    Raises:
        KeyError: If no such stage exists
    """
    return STAGES[name]


def cache_key(storage_path: str, stage: str) -> str:
    """
    Cache key for a stage result: the paper's storage path with `.pdf`
    replaced by the stage suffix.
    """
    suffix = STAGES[stage].cache_suffix
    if storage_path.lower().endswith(".pdf"):
        return storage_path[:-4] + suffix
    return storage_path + suffix


def cache_keys(storage_path: str) -> Dict[str, str]:
    return {name: cache_key(storage_path, name) for name in STAGE_ORDER}
