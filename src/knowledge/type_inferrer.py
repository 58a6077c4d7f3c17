"""
Entity Type Inference.

Heuristic classification of a bare name, used when an entity is created
without an explicit type (e.g. while resolving a fact's subject or object).
"""

import re

from src.knowledge.vocabulary import EntityType

_PERSON = re.compile(r"^[A-Z][a-z]+ [A-Z][a-z]+$")
_SYSTEM = re.compile(r"service|api|server|database", re.IGNORECASE)
_ARTIFACT = re.compile(r"controller|model|component|module", re.IGNORECASE)
_EVENT = re.compile(r"sprint|release|meeting|review", re.IGNORECASE)


def infer_entity_type(name: str) -> str:
    """
    Infer an entity type from a name.

    Rules, first match wins:
    - "Firstname Lastname" -> person
    - contains service/api/server/database -> system
    - contains controller/model/component/module -> artifact
    - contains sprint/release/meeting/review -> event
    - otherwise -> concept
    """
    if _PERSON.match(name):
        return EntityType.PERSON.value
    if _SYSTEM.search(name):
        return EntityType.SYSTEM.value
    if _ARTIFACT.search(name):
        return EntityType.ARTIFACT.value
    if _EVENT.search(name):
        return EntityType.EVENT.value
    return EntityType.CONCEPT.value
