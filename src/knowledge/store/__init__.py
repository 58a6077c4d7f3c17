"""
Knowledge Store Backends.

- KnowledgeStore: abstract async interface
- InMemoryKnowledgeStore: process-local store
- Neo4jKnowledgeStore: graph database store
"""

from src.knowledge.store.base import KnowledgeStore
from src.knowledge.store.memory import InMemoryKnowledgeStore
from src.knowledge.store.neo4j_store import Neo4jKnowledgeStore

__all__ = [
    "KnowledgeStore",
    "InMemoryKnowledgeStore",
    "Neo4jKnowledgeStore",
]
