"""
Knowledge Store Interface.

Persistence primitives used by the upsert layer. Implementations must treat
the unique keys below as authoritative and raise UniqueConstraintViolation
from ``create_*`` when a key is already taken:

- Domain:     (board_id, name)
- Entity:     (domain_id, name), (external_source, external_id) when present
- Fact:       (domain_id, subject, predicate, object_entity_id) or
              (domain_id, subject, predicate, object_value), current facts only
- Mention:    (entity_id, card_id, mention_text, source_field)
- CardFact:   (card_id, fact_id, role)
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

from src.knowledge.state import CardFact, Domain, Entity, EntityMention, Fact


class KnowledgeStore(ABC):
    """Abstract async knowledge store."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """
        Atomic unit of work. Every primitive called inside the block commits
        or rolls back together; nested blocks join the outer one.
        """

    # -------------------------------------------------------------------------
    # Domains
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_domains(self, board_id: str) -> list[Domain]:
        """Domains of a board, oldest first."""

    @abstractmethod
    async def create_domain(self, domain: Domain) -> Domain: ...

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_board_entities(self, board_id: str) -> list[Entity]:
        """Entities in every domain of a board."""

    @abstractmethod
    async def get_entity(self, entity_id: str) -> Entity | None: ...

    @abstractmethod
    async def find_entity_by_name(self, domain_id: str, name: str) -> Entity | None:
        """Exact (case-sensitive) name lookup."""

    @abstractmethod
    async def find_entity_by_alias(self, domain_id: str, name: str) -> Entity | None:
        """Case-insensitive lookup over names and aliases."""

    @abstractmethod
    async def create_entity(self, entity: Entity) -> Entity: ...

    @abstractmethod
    async def update_entity(self, entity: Entity) -> Entity: ...

    @abstractmethod
    async def delete_entity(self, entity_id: str) -> None:
        """Delete an entity with its facts and mentions."""

    # -------------------------------------------------------------------------
    # Facts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_current_fact(
        self,
        domain_id: str,
        subject_entity_id: str,
        predicate: str,
        object_entity_id: str | None = None,
        object_value: str | None = None,
    ) -> Fact | None: ...

    @abstractmethod
    async def get_fact(self, fact_id: str) -> Fact | None: ...

    @abstractmethod
    async def create_fact(self, fact: Fact) -> Fact: ...

    @abstractmethod
    async def update_fact(self, fact: Fact) -> Fact: ...

    @abstractmethod
    async def delete_fact(self, fact_id: str) -> None:
        """Delete a fact with its card-fact joins."""

    @abstractmethod
    async def list_facts_for_entity(self, entity_id: str) -> list[Fact]:
        """Facts with the entity as subject or object, historical ones included."""

    # -------------------------------------------------------------------------
    # Mentions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_mention(
        self,
        entity_id: str,
        card_id: str,
        mention_text: str,
        source_field: str,
    ) -> EntityMention | None: ...

    @abstractmethod
    async def create_mention(self, mention: EntityMention) -> EntityMention: ...

    @abstractmethod
    async def update_mention(self, mention: EntityMention) -> EntityMention: ...

    @abstractmethod
    async def delete_mention(self, mention_id: str) -> None: ...

    @abstractmethod
    async def list_mentions_for_entity(self, entity_id: str) -> list[EntityMention]: ...

    @abstractmethod
    async def list_card_mentions(self, card_id: str) -> list[EntityMention]: ...

    # -------------------------------------------------------------------------
    # Card facts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_card_fact(self, card_id: str, fact_id: str, role: str) -> CardFact | None: ...

    @abstractmethod
    async def create_card_fact(self, card_fact: CardFact) -> CardFact: ...

    @abstractmethod
    async def list_card_facts(self, card_id: str) -> list[CardFact]: ...

    # -------------------------------------------------------------------------
    # Card lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    async def delete_card_references(self, card_id: str) -> tuple[int, int]:
        """
        Remove a card's mentions and card-fact joins.

        Entities and facts persist. Returns (mentions_deleted, card_facts_deleted).
        """
