"""
In-Memory Knowledge Store.

Process-local store enforcing every unique constraint of the knowledge
graph. Transactions are serialized with an asyncio.Lock; table snapshots are
restored when the transaction body raises.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import TypeVar

import structlog
from pydantic import BaseModel

from src.knowledge.errors import RecordInvalid, UniqueConstraintViolation
from src.knowledge.state import CardFact, Domain, Entity, EntityMention, Fact, utcnow
from src.knowledge.store.base import KnowledgeStore

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_Tables = tuple[
    dict[str, Domain],
    dict[str, Entity],
    dict[str, Fact],
    dict[str, EntityMention],
    dict[str, CardFact],
]


def _copy(record: ModelT) -> ModelT:
    return record.model_copy(deep=True)


class InMemoryKnowledgeStore(KnowledgeStore):
    """
    Dictionary-backed store.

    Records are copied on the way in and out, so callers never share state
    with the tables.
    """

    def __init__(self) -> None:
        self._domains: dict[str, Domain] = {}
        self._entities: dict[str, Entity] = {}
        self._facts: dict[str, Fact] = {}
        self._mentions: dict[str, EntityMention] = {}
        self._card_facts: dict[str, CardFact] = {}

        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"memory_store_tx_{id(self)}", default=False
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _snapshot(self) -> _Tables:
        return (
            dict(self._domains),
            dict(self._entities),
            dict(self._facts),
            dict(self._mentions),
            dict(self._card_facts),
        )

    def _restore(self, snapshot: _Tables) -> None:
        (
            self._domains,
            self._entities,
            self._facts,
            self._mentions,
            self._card_facts,
        ) = snapshot

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = self._snapshot()
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                logger.debug("Transaction rolled back")
                raise
            finally:
                self._in_transaction.reset(token)

    # -------------------------------------------------------------------------
    # Domains
    # -------------------------------------------------------------------------

    async def find_domains(self, board_id: str) -> list[Domain]:
        domains = [d for d in self._domains.values() if d.board_id == board_id]
        return [_copy(d) for d in sorted(domains, key=lambda d: d.created_at)]

    async def create_domain(self, domain: Domain) -> Domain:
        for existing in self._domains.values():
            if existing.board_id == domain.board_id and existing.name == domain.name:
                raise UniqueConstraintViolation("Domain", (domain.board_id, domain.name))
        self._domains[domain.id] = _copy(domain)
        return _copy(domain)

    def _board_of(self, domain_id: str) -> str | None:
        domain = self._domains.get(domain_id)
        return domain.board_id if domain else None

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def list_board_entities(self, board_id: str) -> list[Entity]:
        return [
            _copy(e)
            for e in sorted(self._entities.values(), key=lambda e: e.created_at)
            if self._board_of(e.domain_id) == board_id
        ]

    async def get_entity(self, entity_id: str) -> Entity | None:
        entity = self._entities.get(entity_id)
        return _copy(entity) if entity else None

    async def find_entity_by_name(self, domain_id: str, name: str) -> Entity | None:
        for entity in self._entities.values():
            if entity.domain_id == domain_id and entity.name == name:
                return _copy(entity)
        return None

    async def find_entity_by_alias(self, domain_id: str, name: str) -> Entity | None:
        for entity in self._entities.values():
            if entity.domain_id == domain_id and entity.has_name(name):
                return _copy(entity)
        return None

    def _check_entity(self, entity: Entity) -> None:
        if entity.domain_id not in self._domains:
            raise RecordInvalid("Entity", f"unknown domain {entity.domain_id}")
        for other in self._entities.values():
            if other.id == entity.id:
                continue
            if other.domain_id == entity.domain_id and other.name == entity.name:
                raise UniqueConstraintViolation("Entity", (entity.domain_id, entity.name))
            if (
                entity.external_id is not None
                and other.external_id == entity.external_id
                and other.external_source == entity.external_source
            ):
                raise UniqueConstraintViolation(
                    "Entity", (entity.external_source, entity.external_id)
                )

    async def create_entity(self, entity: Entity) -> Entity:
        self._check_entity(entity)
        self._entities[entity.id] = _copy(entity)
        return _copy(entity)

    async def update_entity(self, entity: Entity) -> Entity:
        if entity.id not in self._entities:
            raise RecordInvalid("Entity", f"unknown entity {entity.id}")
        self._check_entity(entity)
        updated = entity.model_copy(deep=True, update={"updated_at": utcnow()})
        self._entities[entity.id] = updated
        return _copy(updated)

    async def delete_entity(self, entity_id: str) -> None:
        for fact in list(self._facts.values()):
            if entity_id in (fact.subject_entity_id, fact.object_entity_id):
                await self.delete_fact(fact.id)
        for mention in list(self._mentions.values()):
            if mention.entity_id == entity_id:
                del self._mentions[mention.id]
        self._entities.pop(entity_id, None)

    # -------------------------------------------------------------------------
    # Facts
    # -------------------------------------------------------------------------

    def _matching_current_fact(
        self,
        domain_id: str,
        subject_entity_id: str,
        predicate: str,
        object_entity_id: str | None,
        object_value: str | None,
        exclude_id: str | None = None,
    ) -> Fact | None:
        for fact in self._facts.values():
            if fact.id == exclude_id or not fact.is_current:
                continue
            if (
                fact.domain_id == domain_id
                and fact.subject_entity_id == subject_entity_id
                and fact.predicate == predicate
                and fact.object_entity_id == object_entity_id
                and fact.object_value == object_value
            ):
                return fact
        return None

    async def find_current_fact(
        self,
        domain_id: str,
        subject_entity_id: str,
        predicate: str,
        object_entity_id: str | None = None,
        object_value: str | None = None,
    ) -> Fact | None:
        fact = self._matching_current_fact(
            domain_id, subject_entity_id, predicate, object_entity_id, object_value
        )
        return _copy(fact) if fact else None

    async def get_fact(self, fact_id: str) -> Fact | None:
        fact = self._facts.get(fact_id)
        return _copy(fact) if fact else None

    def _check_fact(self, fact: Fact) -> None:
        subject = self._entities.get(fact.subject_entity_id)
        if subject is None:
            raise RecordInvalid("Fact", f"unknown subject {fact.subject_entity_id}")
        if fact.object_entity_id is not None:
            obj = self._entities.get(fact.object_entity_id)
            if obj is None:
                raise RecordInvalid("Fact", f"unknown object {fact.object_entity_id}")
            if self._board_of(subject.domain_id) != self._board_of(obj.domain_id):
                raise RecordInvalid("Fact", "subject and object belong to different boards")
        if fact.is_current and self._matching_current_fact(
            fact.domain_id,
            fact.subject_entity_id,
            fact.predicate,
            fact.object_entity_id,
            fact.object_value,
            exclude_id=fact.id,
        ):
            raise UniqueConstraintViolation("Fact", fact.triple_key)

    async def create_fact(self, fact: Fact) -> Fact:
        self._check_fact(fact)
        self._facts[fact.id] = _copy(fact)
        return _copy(fact)

    async def update_fact(self, fact: Fact) -> Fact:
        if fact.id not in self._facts:
            raise RecordInvalid("Fact", f"unknown fact {fact.id}")
        self._check_fact(fact)
        self._facts[fact.id] = _copy(fact)
        return _copy(fact)

    async def delete_fact(self, fact_id: str) -> None:
        for card_fact in list(self._card_facts.values()):
            if card_fact.fact_id == fact_id:
                del self._card_facts[card_fact.id]
        self._facts.pop(fact_id, None)

    async def list_facts_for_entity(self, entity_id: str) -> list[Fact]:
        return [
            _copy(f)
            for f in sorted(self._facts.values(), key=lambda f: f.created_at)
            if entity_id in (f.subject_entity_id, f.object_entity_id)
        ]

    # -------------------------------------------------------------------------
    # Mentions
    # -------------------------------------------------------------------------

    def _matching_mention(self, key: tuple[str, str, str, str], exclude_id: str | None = None):
        for mention in self._mentions.values():
            if mention.id != exclude_id and mention.key == key:
                return mention
        return None

    async def find_mention(
        self,
        entity_id: str,
        card_id: str,
        mention_text: str,
        source_field: str,
    ) -> EntityMention | None:
        mention = self._matching_mention((entity_id, card_id, mention_text, source_field))
        return _copy(mention) if mention else None

    def _check_mention(self, mention: EntityMention) -> None:
        if mention.entity_id not in self._entities:
            raise RecordInvalid("EntityMention", f"unknown entity {mention.entity_id}")
        if self._matching_mention(mention.key, exclude_id=mention.id):
            raise UniqueConstraintViolation("EntityMention", mention.key)

    async def create_mention(self, mention: EntityMention) -> EntityMention:
        self._check_mention(mention)
        self._mentions[mention.id] = _copy(mention)
        return _copy(mention)

    async def update_mention(self, mention: EntityMention) -> EntityMention:
        if mention.id not in self._mentions:
            raise RecordInvalid("EntityMention", f"unknown mention {mention.id}")
        self._check_mention(mention)
        self._mentions[mention.id] = _copy(mention)
        return _copy(mention)

    async def delete_mention(self, mention_id: str) -> None:
        self._mentions.pop(mention_id, None)

    async def list_mentions_for_entity(self, entity_id: str) -> list[EntityMention]:
        return [_copy(m) for m in self._mentions.values() if m.entity_id == entity_id]

    async def list_card_mentions(self, card_id: str) -> list[EntityMention]:
        return [_copy(m) for m in self._mentions.values() if m.card_id == card_id]

    # -------------------------------------------------------------------------
    # Card facts
    # -------------------------------------------------------------------------

    async def find_card_fact(self, card_id: str, fact_id: str, role: str) -> CardFact | None:
        for card_fact in self._card_facts.values():
            if card_fact.key == (card_id, fact_id, role):
                return _copy(card_fact)
        return None

    async def create_card_fact(self, card_fact: CardFact) -> CardFact:
        if card_fact.fact_id not in self._facts:
            raise RecordInvalid("CardFact", f"unknown fact {card_fact.fact_id}")
        if any(cf.key == card_fact.key for cf in self._card_facts.values()):
            raise UniqueConstraintViolation("CardFact", card_fact.key)
        self._card_facts[card_fact.id] = _copy(card_fact)
        return _copy(card_fact)

    async def list_card_facts(self, card_id: str) -> list[CardFact]:
        return [_copy(cf) for cf in self._card_facts.values() if cf.card_id == card_id]

    # -------------------------------------------------------------------------
    # Card lifecycle
    # -------------------------------------------------------------------------

    async def delete_card_references(self, card_id: str) -> tuple[int, int]:
        mention_ids = [m.id for m in self._mentions.values() if m.card_id == card_id]
        card_fact_ids = [cf.id for cf in self._card_facts.values() if cf.card_id == card_id]
        for mention_id in mention_ids:
            del self._mentions[mention_id]
        for card_fact_id in card_fact_ids:
            del self._card_facts[card_fact_id]
        return len(mention_ids), len(card_fact_ids)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def counts(self) -> dict[str, int]:
        """Row counts per table."""
        return {
            "domains": len(self._domains),
            "entities": len(self._entities),
            "facts": len(self._facts),
            "mentions": len(self._mentions),
            "card_facts": len(self._card_facts),
        }
