"""
Entity Linker.

Links spans of card text to known entities. Strategies in priority order:

1. Exact name match (case-insensitive)  -> confidence 1.0
2. Alias match (case-insensitive)       -> confidence 0.95
3. Fuzzy match (Levenshtein similarity) -> confidence = similarity
4. Token overlap on name parts          -> confidence 0.75

The linker never raises on odd input; it degrades to fewer matches.
"""

import re
from dataclasses import dataclass, field

import structlog

from src.knowledge.similarity import similarity
from src.knowledge.state import Card, CandidateMention, Entity, LinkResult
from src.knowledge.vocabulary import MentionExtractionMethod, SourceField

logger = structlog.get_logger(__name__)

DEFAULT_FUZZY_THRESHOLD = 0.8
DEFAULT_MIN_TOKEN_LENGTH = 3

EXACT_CONFIDENCE = 1.0
ALIAS_CONFIDENCE = 0.95
TOKEN_OVERLAP_CONFIDENCE = 0.75

COMMON_WORDS = frozenset({
    "The", "This", "That", "These", "Those", "Which", "Where", "When", "What", "How",
    "For", "From", "With", "Into", "About", "After", "Before", "During", "Without",
    "Should", "Would", "Could", "Must", "Have", "Been", "Being", "Done", "Made",
    "Card", "Task", "Bug", "Issue", "Sprint", "Release", "Feature", "Update",
})

# Multi-word capitalized phrases (2-4 words)
_PHRASE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,3})\b")
# Single capitalized words (potential names)
_CAPITALIZED = re.compile(r"\b([A-Z][a-z]{2,})\b")
# Technical identifiers (CamelCase, snake_case)
_IDENTIFIER = re.compile(r"\b([A-Z][a-z]+(?:[A-Z][a-z]+)+|[a-z]+(?:_[a-z]+)+)\b")

_NAME_SPLIT = re.compile(r"[\s_]|(?=[A-Z])")


def tokenize_name(name: str) -> list[str]:
    """Split a name on whitespace, underscores and camelCase boundaries."""
    return [part for part in _NAME_SPLIT.split(name) if part]


@dataclass
class Token:
    text: str
    start: int
    end: int


@dataclass
class Match:
    entity_id: str
    confidence: float
    method: MentionExtractionMethod


@dataclass
class EntityIndex:
    """Lookup tables over the known entities."""

    exact: dict[str, str] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)
    tokens: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, entities: list[Entity]) -> "EntityIndex":
        index = cls()
        for entity in entities:
            index.exact[entity.name.lower()] = entity.id
            for alias in entity.aliases:
                if alias:
                    index.aliases[alias.lower()] = entity.id
            for token in tokenize_name(entity.name):
                index.tokens.setdefault(token.lower(), []).append(entity.id)
        return index


class EntityLinker:
    """Finds mentions of known entities in text."""

    def __init__(
        self,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH,
    ) -> None:
        self._fuzzy_threshold = fuzzy_threshold
        self._min_token_length = min_token_length

    def link(
        self,
        text: str | None,
        entities: list[Entity],
        source_field: SourceField | str = SourceField.CONTENT,
    ) -> LinkResult:
        """Link tokens of ``text`` to ``entities``."""
        if not text or not text.strip() or not entities:
            return LinkResult()

        field_name = SourceField(source_field).value
        index = EntityIndex.build(entities)
        mentions: list[CandidateMention] = []

        for token in self.extract_tokens(text):
            match = self.find_best_match(token.text, index)
            if match is None:
                continue

            logger.debug(
                "Token linked",
                token=token.text,
                entity_id=match.entity_id,
                method=match.method.value,
                confidence=round(match.confidence, 3),
            )
            mentions.append(CandidateMention(
                entity_id=match.entity_id,
                mention_text=token.text,
                source_field=field_name,
                offset_start=token.start,
                offset_end=token.end,
                confidence=match.confidence,
                extraction_method=match.method.value,
            ))

        return LinkResult(mentions=deduplicate_mentions(mentions))

    def link_card(self, card: Card, entities: list[Entity]) -> LinkResult:
        """Link the card's title and description."""
        mentions: list[CandidateMention] = []
        for field_name, text in card.text_fields():
            mentions.extend(self.link(text, entities, field_name).mentions)
        return LinkResult(mentions=mentions)

    def extract_tokens(self, text: str) -> list[Token]:
        """Candidate tokens, unique by (start, end), first pass wins."""
        tokens: list[Token] = []

        for m in _PHRASE.finditer(text):
            tokens.append(Token(m.group(1), m.start(1), m.end(1)))

        for m in _CAPITALIZED.finditer(text):
            word = m.group(1)
            if word in COMMON_WORDS:
                continue
            tokens.append(Token(word, m.start(1), m.end(1)))

        for m in _IDENTIFIER.finditer(text):
            tokens.append(Token(m.group(1), m.start(1), m.end(1)))

        seen: set[tuple[int, int]] = set()
        unique: list[Token] = []
        for token in tokens:
            if (token.start, token.end) in seen:
                continue
            seen.add((token.start, token.end))
            unique.append(token)
        return unique

    def find_best_match(self, token: str, index: EntityIndex) -> Match | None:
        """Apply the matching strategies in priority order."""
        if len(token) < self._min_token_length:
            return None

        normalized = token.lower()

        # Strategy 1: Exact match
        entity_id = index.exact.get(normalized)
        if entity_id is not None:
            return Match(entity_id, EXACT_CONFIDENCE, MentionExtractionMethod.EXACT_MATCH)

        # Strategy 2: Alias match
        entity_id = index.aliases.get(normalized)
        if entity_id is not None:
            return Match(entity_id, ALIAS_CONFIDENCE, MentionExtractionMethod.ALIAS_MATCH)

        # Strategy 3: Fuzzy match (strictly better than threshold, first best wins)
        best: Match | None = None
        best_score = self._fuzzy_threshold
        for name, candidate_id in index.exact.items():
            score = similarity(normalized, name)
            if score > best_score:
                best_score = score
                best = Match(candidate_id, score, MentionExtractionMethod.FUZZY_MATCH)
        if best is not None:
            return best

        # Strategy 4: Token overlap
        for part in tokenize_name(token):
            candidates = index.tokens.get(part.lower())
            if candidates:
                return Match(candidates[0], TOKEN_OVERLAP_CONFIDENCE, MentionExtractionMethod.TOKEN_OVERLAP)

        return None


def deduplicate_mentions(mentions: list[CandidateMention]) -> list[CandidateMention]:
    """Keep the highest-confidence mention per (entity, offset_start)."""
    best: dict[tuple[str, int], CandidateMention] = {}
    for mention in mentions:
        key = (mention.entity_id, mention.offset_start)
        current = best.get(key)
        if current is None or mention.confidence > current.confidence:
            best[key] = mention
    return list(best.values())
