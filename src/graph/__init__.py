"""
Knowledge Graph Module.

Neo4j connection management and schema for the card knowledge graph.
"""

from src.graph.neo4j_client import KnowledgeGraphClient

__all__ = ["KnowledgeGraphClient"]
