"""
Knowledge Extraction Module.

Extracts entities, facts and mentions from kanban card text and persists
them as a knowledge graph.

Pipeline: Validate → Patterns → Link → LLM (conditional) → Persist → Broadcast
"""

from src.knowledge.entity_linker import EntityLinker
from src.knowledge.errors import (
    CardNotFoundError,
    DomainUnavailableError,
    KnowledgeExtractionError,
    PersistenceError,
    RecordInvalid,
    UniqueConstraintViolation,
)
from src.knowledge.llm_extractor import KnowledgeExtractionOutput, LLMExtractor
from src.knowledge.pattern_extractor import PatternExtractor
from src.knowledge.persistence import KnowledgePersister, PersistOutcome
from src.knowledge.pipeline import (
    CardRepository,
    KnowledgeExtractionPipeline,
    create_knowledge_pipeline,
    run_knowledge_extraction,
)
from src.knowledge.progress import ProgressBroadcaster, ProgressEvent, ProgressStage
from src.knowledge.stages import Stage, StageFailure, StageSuccess, next_stage
from src.knowledge.state import (
    Card,
    CardFact,
    Domain,
    Entity,
    EntityMention,
    ExtractionResult,
    Fact,
)
from src.knowledge.type_inferrer import infer_entity_type

__all__ = [
    # Data model
    "Card",
    "CardFact",
    "Domain",
    "Entity",
    "EntityMention",
    "ExtractionResult",
    "Fact",
    # Components
    "EntityLinker",
    "LLMExtractor",
    "KnowledgeExtractionOutput",
    "PatternExtractor",
    "KnowledgePersister",
    "PersistOutcome",
    "infer_entity_type",
    # Pipeline
    "CardRepository",
    "KnowledgeExtractionPipeline",
    "create_knowledge_pipeline",
    "run_knowledge_extraction",
    "Stage",
    "StageFailure",
    "StageSuccess",
    "next_stage",
    # Progress
    "ProgressBroadcaster",
    "ProgressEvent",
    "ProgressStage",
    # Errors
    "CardNotFoundError",
    "DomainUnavailableError",
    "KnowledgeExtractionError",
    "PersistenceError",
    "RecordInvalid",
    "UniqueConstraintViolation",
]
