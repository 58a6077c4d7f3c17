"""
Neo4j Knowledge Store.

Persists the knowledge graph as Domain/Entity/Fact/Mention/CardFact nodes
with IN_DOMAIN, SUBJECT, OBJECT, MENTIONS and FOR_FACT relationships.

Creates run ``MERGE`` on the record's unique key and set properties only
``ON CREATE``. Under the schema's uniqueness constraints concurrent MERGEs
on one key serialise instead of failing, so a run that loses a race sees
the winner's node (a different id) and can keep using its transaction.
Current facts carry a ``current_key`` property for the same purpose; it is
removed when the fact expires.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, TypeVar

import structlog
from neo4j import AsyncTransaction
from neo4j.exceptions import ConstraintError
from pydantic import BaseModel

from src.graph.neo4j_client import KnowledgeGraphClient
from src.knowledge.errors import RecordInvalid, UniqueConstraintViolation
from src.knowledge.state import CardFact, Domain, Entity, EntityMention, Fact, utcnow
from src.knowledge.store.base import KnowledgeStore

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_current_tx: ContextVar[AsyncTransaction | None] = ContextVar("neo4j_knowledge_tx", default=None)

_LINK_OBJECT = """
WITH f
OPTIONAL MATCH (o:Entity {id: f.object_entity_id})
FOREACH (_ IN CASE WHEN o IS NULL THEN [] ELSE [1] END | CREATE (f)-[:OBJECT]->(o))
RETURN f
"""


def _props(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json")


def current_fact_key(
    domain_id: str,
    subject_entity_id: str,
    predicate: str,
    object_entity_id: str | None,
    object_value: str | None,
) -> str:
    """Unique key of a currently valid fact."""
    obj = f"entity:{object_entity_id}" if object_entity_id is not None else f"value:{object_value}"
    return "|".join((domain_id, subject_entity_id, predicate, obj))


def _fact_props(fact: Fact) -> dict[str, Any]:
    props = _props(fact)
    props["current_key"] = (
        current_fact_key(
            fact.domain_id,
            fact.subject_entity_id,
            fact.predicate,
            fact.object_entity_id,
            fact.object_value,
        )
        if fact.is_current
        else None
    )
    return props


def _one(records: list[dict[str, Any]], key: str, model: type[ModelT]) -> ModelT | None:
    if not records or records[0].get(key) is None:
        return None
    return model.model_validate(dict(records[0][key]))


def _merged(
    records: list[dict[str, Any]],
    key: str,
    model: type[ModelT],
    record_type: str,
    unique_key: Any,
) -> ModelT | None:
    """
    Record created by a MERGE, None when the MERGE matched nothing to attach to.

    Raises UniqueConstraintViolation when the MERGE found an existing node.
    """
    if not records:
        return None
    if not records[0]["created"]:
        raise UniqueConstraintViolation(record_type, unique_key)
    return _one(records, key, model)


def _many(records: list[dict[str, Any]], key: str, model: type[ModelT]) -> list[ModelT]:
    return [model.model_validate(dict(r[key])) for r in records if r.get(key) is not None]


class Neo4jKnowledgeStore(KnowledgeStore):
    """Knowledge store backed by Neo4j."""

    def __init__(self, client: KnowledgeGraphClient) -> None:
        self._client = client

    # -------------------------------------------------------------------------
    # Query execution
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_tx.get() is not None:
            yield
            return

        async with self._client.session() as session:
            tx = await session.begin_transaction()
            token = _current_tx.set(tx)
            try:
                yield
            except BaseException:
                await tx.rollback()
                logger.debug("Transaction rolled back")
                raise
            else:
                await tx.commit()
            finally:
                _current_tx.reset(token)

    async def _run(self, query: str, **parameters: Any) -> list[dict[str, Any]]:
        """Run a query in the current transaction, or in its own session."""
        tx = _current_tx.get()
        if tx is not None:
            result = await tx.run(query, parameters)
            return await result.data()
        return await self._client.execute_cypher(query, parameters)

    async def _create(self, record_type: str, key: Any, query: str, **parameters: Any) -> list[dict[str, Any]]:
        try:
            return await self._run(query, **parameters)
        except ConstraintError as e:
            raise UniqueConstraintViolation(record_type, key) from e

    # -------------------------------------------------------------------------
    # Domains
    # -------------------------------------------------------------------------

    async def find_domains(self, board_id: str) -> list[Domain]:
        records = await self._run(
            "MATCH (d:Domain {board_id: $board_id}) RETURN d ORDER BY d.created_at",
            board_id=board_id,
        )
        return _many(records, "d", Domain)

    async def _board_of(self, domain_id: str) -> str | None:
        records = await self._run(
            "MATCH (d:Domain {id: $domain_id}) RETURN d.board_id AS board_id",
            domain_id=domain_id,
        )
        return records[0]["board_id"] if records else None

    async def create_domain(self, domain: Domain) -> Domain:
        key = (domain.board_id, domain.name)
        records = await self._create(
            "Domain",
            key,
            """
            MERGE (d:Domain {board_id: $props.board_id, name: $props.name})
            ON CREATE SET d = $props
            RETURN d, d.id = $props.id AS created
            """,
            props=_props(domain),
        )
        created = _merged(records, "d", Domain, "Domain", key)
        if created is None:
            raise RecordInvalid("Domain", f"could not create {domain.name}")
        return created

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def list_board_entities(self, board_id: str) -> list[Entity]:
        records = await self._run(
            """
            MATCH (e:Entity)-[:IN_DOMAIN]->(:Domain {board_id: $board_id})
            RETURN e ORDER BY e.created_at
            """,
            board_id=board_id,
        )
        return _many(records, "e", Entity)

    async def get_entity(self, entity_id: str) -> Entity | None:
        records = await self._run("MATCH (e:Entity {id: $id}) RETURN e", id=entity_id)
        return _one(records, "e", Entity)

    async def find_entity_by_name(self, domain_id: str, name: str) -> Entity | None:
        records = await self._run(
            "MATCH (e:Entity {domain_id: $domain_id, name: $name}) RETURN e LIMIT 1",
            domain_id=domain_id,
            name=name,
        )
        return _one(records, "e", Entity)

    async def find_entity_by_alias(self, domain_id: str, name: str) -> Entity | None:
        records = await self._run(
            """
            MATCH (e:Entity {domain_id: $domain_id})
            WHERE toLower(e.name) = toLower($name)
               OR any(a IN coalesce(e.aliases, []) WHERE toLower(a) = toLower($name))
            RETURN e ORDER BY e.created_at LIMIT 1
            """,
            domain_id=domain_id,
            name=name.strip(),
        )
        return _one(records, "e", Entity)

    async def create_entity(self, entity: Entity) -> Entity:
        key = (entity.domain_id, entity.name)
        records = await self._create(
            "Entity",
            key,
            """
            MATCH (d:Domain {id: $props.domain_id})
            MERGE (e:Entity {domain_id: $props.domain_id, name: $props.name})
            ON CREATE SET e = $props
            WITH d, e, e.id = $props.id AS created
            FOREACH (_ IN CASE WHEN created THEN [1] ELSE [] END | CREATE (e)-[:IN_DOMAIN]->(d))
            RETURN e, created
            """,
            props=_props(entity),
        )
        created = _merged(records, "e", Entity, "Entity", key)
        if created is None:
            raise RecordInvalid("Entity", f"unknown domain {entity.domain_id}")
        return created

    async def update_entity(self, entity: Entity) -> Entity:
        updated = entity.model_copy(update={"updated_at": utcnow()})
        records = await self._create(
            "Entity",
            (entity.domain_id, entity.name),
            "MATCH (e:Entity {id: $props.id}) SET e = $props RETURN e",
            props=_props(updated),
        )
        result = _one(records, "e", Entity)
        if result is None:
            raise RecordInvalid("Entity", f"unknown entity {entity.id}")
        return result

    async def delete_entity(self, entity_id: str) -> None:
        await self._run(
            """
            MATCH (e:Entity {id: $id})
            OPTIONAL MATCH (f:Fact) WHERE f.subject_entity_id = $id OR f.object_entity_id = $id
            OPTIONAL MATCH (cf:CardFact {fact_id: f.id})
            OPTIONAL MATCH (m:Mention {entity_id: $id})
            DETACH DELETE cf, f, m, e
            """,
            id=entity_id,
        )

    # -------------------------------------------------------------------------
    # Facts
    # -------------------------------------------------------------------------

    async def find_current_fact(
        self,
        domain_id: str,
        subject_entity_id: str,
        predicate: str,
        object_entity_id: str | None = None,
        object_value: str | None = None,
    ) -> Fact | None:
        records = await self._run(
            "MATCH (f:Fact {current_key: $current_key}) RETURN f LIMIT 1",
            current_key=current_fact_key(
                domain_id, subject_entity_id, predicate, object_entity_id, object_value
            ),
        )
        return _one(records, "f", Fact)

    async def get_fact(self, fact_id: str) -> Fact | None:
        records = await self._run("MATCH (f:Fact {id: $id}) RETURN f", id=fact_id)
        return _one(records, "f", Fact)

    async def _check_fact_entities(self, fact: Fact) -> None:
        subject = await self.get_entity(fact.subject_entity_id)
        if subject is None:
            raise RecordInvalid("Fact", f"unknown subject {fact.subject_entity_id}")
        if fact.object_entity_id is None:
            return
        obj = await self.get_entity(fact.object_entity_id)
        if obj is None:
            raise RecordInvalid("Fact", f"unknown object {fact.object_entity_id}")
        if await self._board_of(subject.domain_id) != await self._board_of(obj.domain_id):
            raise RecordInvalid("Fact", "subject and object belong to different boards")

    async def create_fact(self, fact: Fact) -> Fact:
        await self._check_fact_entities(fact)
        props = _fact_props(fact)

        if props["current_key"] is None:
            records = await self._run(
                f"""
                MATCH (s:Entity {{id: $props.subject_entity_id}})
                CREATE (f:Fact)-[:SUBJECT]->(s)
                SET f = $props
                {_LINK_OBJECT}
                """,
                props=props,
            )
            created = _one(records, "f", Fact)
        else:
            records = await self._create(
                "Fact",
                fact.triple_key,
                """
                MATCH (s:Entity {id: $props.subject_entity_id})
                MERGE (f:Fact {current_key: $props.current_key})
                ON CREATE SET f = $props
                WITH s, f, f.id = $props.id AS created
                FOREACH (_ IN CASE WHEN created THEN [1] ELSE [] END | CREATE (f)-[:SUBJECT]->(s))
                WITH f, created
                OPTIONAL MATCH (o:Entity {id: f.object_entity_id})
                FOREACH (_ IN CASE WHEN created AND o IS NOT NULL THEN [1] ELSE [] END |
                    CREATE (f)-[:OBJECT]->(o))
                RETURN f, created
                """,
                props=props,
            )
            created = _merged(records, "f", Fact, "Fact", fact.triple_key)

        if created is None:
            raise RecordInvalid("Fact", f"unknown subject {fact.subject_entity_id}")
        return created

    async def update_fact(self, fact: Fact) -> Fact:
        if fact.is_current:
            existing = await self.find_current_fact(
                fact.domain_id,
                fact.subject_entity_id,
                fact.predicate,
                fact.object_entity_id,
                fact.object_value,
            )
            if existing is not None and existing.id != fact.id:
                raise UniqueConstraintViolation("Fact", fact.triple_key)
        await self._check_fact_entities(fact)

        records = await self._create(
            "Fact",
            fact.triple_key,
            f"""
            MATCH (f:Fact {{id: $props.id}})
            SET f = $props
            WITH f
            OPTIONAL MATCH (f)-[r:SUBJECT|OBJECT]->()
            DELETE r
            WITH DISTINCT f
            MATCH (s:Entity {{id: f.subject_entity_id}})
            CREATE (f)-[:SUBJECT]->(s)
            {_LINK_OBJECT}
            """,
            props=_fact_props(fact),
        )
        result = _one(records, "f", Fact)
        if result is None:
            raise RecordInvalid("Fact", f"unknown fact {fact.id}")
        return result

    async def delete_fact(self, fact_id: str) -> None:
        await self._run(
            """
            MATCH (f:Fact {id: $id})
            OPTIONAL MATCH (cf:CardFact {fact_id: $id})
            DETACH DELETE cf, f
            """,
            id=fact_id,
        )

    async def list_facts_for_entity(self, entity_id: str) -> list[Fact]:
        records = await self._run(
            """
            MATCH (f:Fact)
            WHERE f.subject_entity_id = $id OR f.object_entity_id = $id
            RETURN f ORDER BY f.created_at
            """,
            id=entity_id,
        )
        return _many(records, "f", Fact)

    # -------------------------------------------------------------------------
    # Mentions
    # -------------------------------------------------------------------------

    async def find_mention(
        self,
        entity_id: str,
        card_id: str,
        mention_text: str,
        source_field: str,
    ) -> EntityMention | None:
        records = await self._run(
            """
            MATCH (m:Mention {
                entity_id: $entity_id,
                card_id: $card_id,
                mention_text: $mention_text,
                source_field: $source_field
            })
            RETURN m LIMIT 1
            """,
            entity_id=entity_id,
            card_id=card_id,
            mention_text=mention_text,
            source_field=source_field,
        )
        return _one(records, "m", EntityMention)

    async def create_mention(self, mention: EntityMention) -> EntityMention:
        records = await self._create(
            "EntityMention",
            mention.key,
            """
            MATCH (e:Entity {id: $props.entity_id})
            MERGE (m:Mention {
                entity_id: $props.entity_id,
                card_id: $props.card_id,
                mention_text: $props.mention_text,
                source_field: $props.source_field
            })
            ON CREATE SET m = $props
            WITH e, m, m.id = $props.id AS created
            FOREACH (_ IN CASE WHEN created THEN [1] ELSE [] END |
                CREATE (m)-[:MENTIONS]->(e))
            RETURN m, created
            """,
            props=_props(mention),
        )
        created = _merged(records, "m", EntityMention, "EntityMention", mention.key)
        if created is None:
            raise RecordInvalid("EntityMention", f"unknown entity {mention.entity_id}")
        return created

    async def update_mention(self, mention: EntityMention) -> EntityMention:
        records = await self._create(
            "EntityMention",
            mention.key,
            """
            MATCH (m:Mention {id: $props.id})
            SET m = $props
            WITH m
            OPTIONAL MATCH (m)-[r:MENTIONS]->()
            DELETE r
            WITH DISTINCT m
            MATCH (e:Entity {id: m.entity_id})
            CREATE (m)-[:MENTIONS]->(e)
            RETURN m
            """,
            props=_props(mention),
        )
        result = _one(records, "m", EntityMention)
        if result is None:
            raise RecordInvalid("EntityMention", f"unknown mention {mention.id}")
        return result

    async def delete_mention(self, mention_id: str) -> None:
        await self._run("MATCH (m:Mention {id: $id}) DETACH DELETE m", id=mention_id)

    async def list_mentions_for_entity(self, entity_id: str) -> list[EntityMention]:
        records = await self._run(
            "MATCH (m:Mention {entity_id: $id}) RETURN m ORDER BY m.created_at",
            id=entity_id,
        )
        return _many(records, "m", EntityMention)

    async def list_card_mentions(self, card_id: str) -> list[EntityMention]:
        records = await self._run(
            "MATCH (m:Mention {card_id: $card_id}) RETURN m ORDER BY m.created_at",
            card_id=card_id,
        )
        return _many(records, "m", EntityMention)

    # -------------------------------------------------------------------------
    # Card facts
    # -------------------------------------------------------------------------

    async def find_card_fact(self, card_id: str, fact_id: str, role: str) -> CardFact | None:
        records = await self._run(
            "MATCH (cf:CardFact {card_id: $card_id, fact_id: $fact_id, role: $role}) RETURN cf LIMIT 1",
            card_id=card_id,
            fact_id=fact_id,
            role=role,
        )
        return _one(records, "cf", CardFact)

    async def create_card_fact(self, card_fact: CardFact) -> CardFact:
        records = await self._create(
            "CardFact",
            card_fact.key,
            """
            MATCH (f:Fact {id: $props.fact_id})
            MERGE (cf:CardFact {
                card_id: $props.card_id,
                fact_id: $props.fact_id,
                role: $props.role
            })
            ON CREATE SET cf = $props
            WITH f, cf, cf.id = $props.id AS created
            FOREACH (_ IN CASE WHEN created THEN [1] ELSE [] END |
                CREATE (cf)-[:FOR_FACT]->(f))
            RETURN cf, created
            """,
            props=_props(card_fact),
        )
        created = _merged(records, "cf", CardFact, "CardFact", card_fact.key)
        if created is None:
            raise RecordInvalid("CardFact", f"unknown fact {card_fact.fact_id}")
        return created

    async def list_card_facts(self, card_id: str) -> list[CardFact]:
        records = await self._run(
            "MATCH (cf:CardFact {card_id: $card_id}) RETURN cf ORDER BY cf.created_at",
            card_id=card_id,
        )
        return _many(records, "cf", CardFact)

    # -------------------------------------------------------------------------
    # Card lifecycle
    # -------------------------------------------------------------------------

    async def delete_card_references(self, card_id: str) -> tuple[int, int]:
        records = await self._run(
            """
            OPTIONAL MATCH (m:Mention {card_id: $card_id})
            WITH collect(m) AS mentions
            OPTIONAL MATCH (cf:CardFact {card_id: $card_id})
            WITH mentions, collect(cf) AS card_facts
            FOREACH (n IN mentions | DETACH DELETE n)
            FOREACH (n IN card_facts | DETACH DELETE n)
            RETURN size(mentions) AS mentions, size(card_facts) AS card_facts
            """,
            card_id=card_id,
        )
        if not records:
            return 0, 0
        return records[0]["mentions"], records[0]["card_facts"]
