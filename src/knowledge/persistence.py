"""
Knowledge Persistence (upsert layer).

Commits candidate entities, facts and mentions inside one store transaction.

Rules:
- Find-or-create everywhere; only newly created rows are reported.
- A unique-constraint violation on create means another run won the race:
  re-fetch instead of failing.
- A single invalid item is skipped and logged; the rest of the batch commits.
- Mentions never create entities.
"""

from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

import structlog
from pydantic import ValidationError

from src.knowledge.errors import RecordInvalid, UniqueConstraintViolation
from src.knowledge.state import (
    Card,
    CardFact,
    CandidateEntity,
    CandidateFact,
    CandidateMention,
    Domain,
    Entity,
    EntityMention,
    Fact,
)
from src.knowledge.store.base import KnowledgeStore
from src.knowledge.type_inferrer import infer_entity_type
from src.knowledge.vocabulary import CardFactRole, ObjectType, SourceField

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_OBJECT_TYPES = {t.value for t in ObjectType}


@dataclass
class PersistOutcome:
    """Rows created by one persist call."""

    entities: list[Entity] = field(default_factory=list)
    facts: list[Fact] = field(default_factory=list)
    mentions: list[EntityMention] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def counts(self) -> dict[str, int]:
        return {
            "entities": len(self.entities),
            "facts": len(self.facts),
            "mentions": len(self.mentions),
        }


class KnowledgePersister:
    """Idempotent writer for extraction results."""

    def __init__(
        self,
        store: KnowledgeStore,
        default_confidence: float = 0.8,
        auto_entity_confidence: float = 0.7,
    ) -> None:
        """
        Args:
            store: Knowledge store to write to
            default_confidence: Confidence for candidates that carry none
            auto_entity_confidence: Confidence for entities created while
                resolving fact subjects and objects
        """
        self._store = store
        self._default_confidence = default_confidence
        self._auto_entity_confidence = auto_entity_confidence

    @property
    def store(self) -> KnowledgeStore:
        return self._store

    # =========================================================================
    # Batch persistence
    # =========================================================================

    async def persist(
        self,
        card: Card,
        domain: Domain,
        entities: list[CandidateEntity],
        facts: list[CandidateFact],
        mentions: list[CandidateMention],
    ) -> PersistOutcome:
        """Persist all candidates for a card in a single transaction."""
        outcome = PersistOutcome()

        async with self._store.transaction():
            for candidate in entities:
                entity = await self._guarded(
                    outcome, "entity", candidate.name, self._persist_entity(candidate, domain)
                )
                if entity is not None:
                    outcome.entities.append(entity)

            for candidate in facts:
                fact = await self._guarded(
                    outcome, "fact", candidate.predicate, self._persist_fact(candidate, card, domain)
                )
                if fact is not None:
                    outcome.facts.append(fact)

            for candidate in mentions:
                mention = await self._guarded(
                    outcome, "mention", candidate.mention_text, self._persist_mention(candidate, card)
                )
                if mention is not None:
                    outcome.mentions.append(mention)

        logger.info(
            "Extraction results persisted",
            card_id=card.id,
            domain_id=domain.id,
            skipped=outcome.skipped,
            **outcome.counts,
        )
        return outcome

    async def _guarded(
        self,
        outcome: PersistOutcome,
        kind: str,
        label: str,
        operation: Awaitable[T | None],
    ) -> T | None:
        """Run one item's persistence, turning validation failures into a skip."""
        try:
            return await operation
        except (RecordInvalid, ValidationError) as e:
            outcome.skipped += 1
            outcome.errors.append(f"Skipped {kind} '{label}': {e}")
            logger.warning("Skipped invalid item", kind=kind, label=label, error=str(e))
            return None

    async def _persist_entity(self, candidate: CandidateEntity, domain: Domain) -> Entity | None:
        name = (candidate.name or "").strip()
        if not name:
            return None

        if await self._store.find_entity_by_name(domain.id, name):
            return None
        if candidate.existing_name and await self._store.find_entity_by_alias(
            domain.id, candidate.existing_name
        ):
            return None

        entity = Entity(
            domain_id=domain.id,
            name=name,
            entity_type=candidate.entity_type or infer_entity_type(name),
            description=candidate.description or "",
            confidence=_or_default(candidate.confidence, self._default_confidence),
        )
        try:
            return await self._store.create_entity(entity)
        except UniqueConstraintViolation:
            logger.debug("Entity created concurrently", name=name, domain_id=domain.id)
            return None

    async def _persist_fact(
        self, candidate: CandidateFact, card: Card, domain: Domain
    ) -> Fact | None:
        if not candidate.subject_name or not candidate.subject_name.strip():
            logger.info(
                "Skipping fact without subject",
                predicate=candidate.predicate,
                object=candidate.object_name,
            )
            return None

        subject = await self.find_or_create_entity(candidate.subject_name, domain)
        if subject is None:
            return None

        object_entity: Entity | None = None
        object_value: str | None = None
        if candidate.object_is_entity:
            object_entity = await self.find_or_create_entity(candidate.object_name or "", domain)
        elif candidate.object_name is not None and str(candidate.object_name).strip():
            object_value = str(candidate.object_name).strip()

        if object_entity is None and object_value is None:
            return None

        object_entity_id = object_entity.id if object_entity else None
        existing = await self._store.find_current_fact(
            domain.id, subject.id, candidate.predicate, object_entity_id, object_value
        )
        if existing is not None:
            return None

        object_type = None
        if object_value is not None:
            object_type = candidate.object_type if candidate.object_type in _OBJECT_TYPES else ObjectType.STRING.value

        fact = Fact(
            domain_id=domain.id,
            subject_entity_id=subject.id,
            predicate=candidate.predicate,
            object_entity_id=object_entity_id,
            object_value=object_value,
            object_type=object_type,
            confidence=_or_default(candidate.confidence, self._default_confidence),
            extraction_method=candidate.extraction_method,
            negated=candidate.negated,
        )
        try:
            created = await self._store.create_fact(fact)
        except UniqueConstraintViolation:
            logger.debug("Fact created concurrently", triple=fact.triple_key)
            return None

        await self._link_card(card, created, candidate)
        return created

    async def _link_card(self, card: Card, fact: Fact, candidate: CandidateFact) -> None:
        card_fact = CardFact(
            card_id=card.id,
            fact_id=fact.id,
            role=CardFactRole.SOURCE,
            source_field=candidate.source_field or SourceField.DESCRIPTION.value,
            text_offset_start=candidate.offset_start,
            text_offset_end=candidate.offset_end,
        )
        try:
            await self._store.create_card_fact(card_fact)
        except UniqueConstraintViolation:
            logger.debug("Card fact already linked", card_id=card.id, fact_id=fact.id)

    async def _persist_mention(
        self, candidate: CandidateMention, card: Card
    ) -> EntityMention | None:
        entity = await self._store.get_entity(candidate.entity_id)
        if entity is None:
            return None

        if await self._store.find_mention(
            entity.id, card.id, candidate.mention_text, candidate.source_field
        ):
            return None

        mention = EntityMention(
            entity_id=entity.id,
            card_id=card.id,
            mention_text=candidate.mention_text,
            source_field=candidate.source_field,
            text_offset_start=candidate.offset_start,
            text_offset_end=candidate.offset_end,
            confidence=_or_default(candidate.confidence, self._default_confidence),
            extraction_method=candidate.extraction_method,
        )
        try:
            return await self._store.create_mention(mention)
        except UniqueConstraintViolation:
            logger.debug("Mention created concurrently", key=mention.key)
            return None

    # =========================================================================
    # Entity resolution
    # =========================================================================

    async def find_or_create_entity(self, name: str, domain: Domain) -> Entity | None:
        """
        Resolve a name within a domain: exact name, then name/alias
        (case-insensitive), then create with an inferred type.
        """
        name = (name or "").strip()
        if not name:
            return None

        entity = await self._store.find_entity_by_name(domain.id, name)
        if entity is not None:
            return entity

        entity = await self._store.find_entity_by_alias(domain.id, name)
        if entity is not None:
            return entity

        try:
            return await self._store.create_entity(Entity(
                domain_id=domain.id,
                name=name,
                entity_type=infer_entity_type(name),
                confidence=self._auto_entity_confidence,
            ))
        except UniqueConstraintViolation:
            entity = await self._store.find_entity_by_name(domain.id, name)
            if entity is None:
                raise RecordInvalid("Entity", f"'{name}' conflicts with an existing entity")
            return entity

    # =========================================================================
    # Maintenance operations
    # =========================================================================

    async def merge_entities(self, absorbed_id: str, target_id: str) -> Entity:
        """
        Merge one entity into another.

        The target takes the absorbed entity's name and aliases as aliases;
        facts and mentions are repointed (rows that would duplicate one
        already on the target are dropped); the absorbed entity is deleted.
        """
        if absorbed_id == target_id:
            raise RecordInvalid("Entity", "cannot merge an entity into itself")

        async with self._store.transaction():
            absorbed = await self._store.get_entity(absorbed_id)
            target = await self._store.get_entity(target_id)
            if absorbed is None or target is None:
                raise RecordInvalid("Entity", "merge requires two existing entities")
            if absorbed.domain_id != target.domain_id:
                raise RecordInvalid("Entity", "cannot merge entities from different domains")

            for name in absorbed.all_names:
                target.add_alias(name)

            dropped_facts = await self._repoint_facts(absorbed.id, target.id)
            dropped_mentions = await self._repoint_mentions(absorbed.id, target.id)

            await self._store.delete_entity(absorbed.id)
            merged = await self._store.update_entity(target)

        logger.info(
            "Entities merged",
            absorbed=absorbed.name,
            target=merged.name,
            dropped_facts=dropped_facts,
            dropped_mentions=dropped_mentions,
        )
        return merged

    async def _repoint_facts(self, absorbed_id: str, target_id: str) -> int:
        dropped = 0
        for fact in await self._store.list_facts_for_entity(absorbed_id):
            update: dict[str, str] = {}
            if fact.subject_entity_id == absorbed_id:
                update["subject_entity_id"] = target_id
            if fact.object_entity_id == absorbed_id:
                update["object_entity_id"] = target_id
            moved = fact.model_copy(update=update)

            if moved.is_current and await self._store.find_current_fact(
                moved.domain_id,
                moved.subject_entity_id,
                moved.predicate,
                moved.object_entity_id,
                moved.object_value,
            ):
                await self._store.delete_fact(fact.id)
                dropped += 1
                continue
            await self._store.update_fact(moved)
        return dropped

    async def _repoint_mentions(self, absorbed_id: str, target_id: str) -> int:
        dropped = 0
        for mention in await self._store.list_mentions_for_entity(absorbed_id):
            moved = mention.model_copy(update={"entity_id": target_id})
            if await self._store.find_mention(
                target_id, moved.card_id, moved.mention_text, moved.source_field.value
            ):
                await self._store.delete_mention(mention.id)
                dropped += 1
                continue
            await self._store.update_mention(moved)
        return dropped

    async def expire_fact(self, fact_id: str, at: datetime | None = None) -> Fact:
        """Mark a fact historical, freeing its triple for re-assertion."""
        async with self._store.transaction():
            fact = await self._store.get_fact(fact_id)
            if fact is None:
                raise RecordInvalid("Fact", f"unknown fact {fact_id}")
            fact.expire(at)
            expired = await self._store.update_fact(fact)

        logger.info("Fact expired", fact_id=fact_id, valid_until=str(expired.valid_until))
        return expired

    async def delete_card_references(self, card_id: str) -> tuple[int, int]:
        """Drop a deleted card's mentions and card-fact joins."""
        async with self._store.transaction():
            mentions, card_facts = await self._store.delete_card_references(card_id)

        logger.info(
            "Card references deleted",
            card_id=card_id,
            mentions=mentions,
            card_facts=card_facts,
        )
        return mentions, card_facts


def _or_default(value: float | None, default: float) -> float:
    return default if value is None else value
