"""
Unit Tests for the Knowledge Data Model and Vocabulary.
"""

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from src.knowledge.state import Card, CardFact, Domain, Entity, EntityMention, Fact
from src.knowledge.vocabulary import (
    COMMON_PREDICATES,
    ObjectType,
    humanize_predicate,
    inverse_of,
    is_common_predicate,
)


class TestVocabulary:
    """Test the predicate registry."""

    def test_common_predicates(self) -> None:
        """Test the size of the fixed vocabulary."""
        assert len(COMMON_PREDICATES) == 17
        assert is_common_predicate("depends_on")
        assert not is_common_predicate("likes")

    @pytest.mark.parametrize(
        "predicate,inverse",
        [
            ("depends_on", "depended_on_by"),
            ("depended_on_by", "depends_on"),
            ("blocks", "blocked_by"),
            ("is_part_of", "contains"),
            ("owns", "owned_by"),
        ],
    )
    def test_inverses(self, predicate: str, inverse: str) -> None:
        """Test that inverses resolve in both directions."""
        assert inverse_of(predicate) == inverse

    def test_predicate_without_inverse(self) -> None:
        """Test that predicates without an inverse map to themselves."""
        assert inverse_of("relates_to") == "relates_to"

    def test_humanize(self) -> None:
        assert humanize_predicate("depends_on") == "depends on"


class TestCard:
    """Test the card record."""

    def test_text_fields(self) -> None:
        """Test that blank fields are skipped."""
        card = Card(id="c1", board_id="b1", title="Title", description="  ")

        assert [f.value for f, _ in card.text_fields()] == ["title"]

    def test_content_length(self) -> None:
        card = Card(id="c1", board_id="b1", title="abc", description="de")

        assert card.content_length == 5


class TestDomain:
    """Test the domain record."""

    def test_invalid_color(self) -> None:
        """Test that colors must be #RRGGBB."""
        with pytest.raises(ValidationError):
            Domain(board_id="b1", name="General", color="blue")


class TestEntity:
    """Test the entity record."""

    def test_defaults(self) -> None:
        """Test the concept default and authoritative confidence."""
        entity = Entity(domain_id="d1", name="  Kafka ")

        assert entity.name == "Kafka"
        assert entity.entity_type == "concept"
        assert entity.confidence == 1.0
        assert not entity.ai_extracted
        assert not entity.needs_review

    def test_type_normalized(self) -> None:
        assert Entity(domain_id="d1", name="X", entity_type="System").entity_type == "system"

    def test_blank_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Entity(domain_id="d1", name="   ")

    @pytest.mark.parametrize("confidence", [-0.1, 1.5])
    def test_confidence_bounds(self, confidence: float) -> None:
        with pytest.raises(ValidationError):
            Entity(domain_id="d1", name="X", confidence=confidence)

    def test_external_pair(self) -> None:
        """Test that external id and source are set together."""
        with pytest.raises(ValidationError):
            Entity(domain_id="d1", name="X", external_id="42")
        entity = Entity(domain_id="d1", name="X", external_id="42", external_source="github")
        assert entity.external_source == "github"

    def test_auto_created_needs_review(self) -> None:
        """Test that low-confidence inferred entities are flagged."""
        assert Entity(domain_id="d1", name="X", confidence=0.7).needs_review
        assert not Entity(domain_id="d1", name="X", confidence=0.85).needs_review

    def test_aliases(self) -> None:
        """Test alias addition and case-insensitive name matching."""
        entity = Entity(domain_id="d1", name="PaymentService")

        assert entity.add_alias("PayService")
        assert not entity.add_alias("PayService")
        assert not entity.add_alias("  ")
        assert entity.has_name("payservice")
        assert entity.all_names == ["PaymentService", "PayService"]


class TestFact:
    """Test the fact record."""

    def test_value_object(self) -> None:
        """Test that value facts default to string type."""
        fact = Fact(domain_id="d1", subject_entity_id="e1", predicate="has_version", object_value="2.1.0")

        assert fact.object_type == ObjectType.STRING
        assert not fact.has_entity_object
        assert fact.is_current

    def test_entity_object_has_no_type(self) -> None:
        fact = Fact(
            domain_id="d1",
            subject_entity_id="e1",
            predicate="depends_on",
            object_entity_id="e2",
            object_type=ObjectType.STRING,
        )

        assert fact.object_type is None
        assert fact.inverse_predicate == "depended_on_by"

    def test_both_objects_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Fact(
                domain_id="d1",
                subject_entity_id="e1",
                predicate="uses",
                object_entity_id="e2",
                object_value="x",
            )

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing_object_rejected(self, value: str | None) -> None:
        with pytest.raises(ValidationError):
            Fact(domain_id="d1", subject_entity_id="e1", predicate="uses", object_value=value)

    def test_needs_review(self) -> None:
        """Test that only low-confidence AI facts need review."""
        base = {"domain_id": "d1", "subject_entity_id": "e1", "predicate": "uses", "object_value": "x"}

        assert Fact(**base, extraction_method="ai_llm", confidence=0.6).needs_review
        assert not Fact(**base, extraction_method="ai_llm", confidence=0.9).needs_review
        assert not Fact(**base, extraction_method="manual", confidence=0.6).needs_review

    @pytest.mark.parametrize(
        "object_type,value,expected",
        [
            (ObjectType.NUMBER, "42", 42),
            (ObjectType.NUMBER, "1.5", 1.5),
            (ObjectType.BOOLEAN, "yes", True),
            (ObjectType.DATE, "2024-03-15", date(2024, 3, 15)),
            (ObjectType.DATE, "soon", "soon"),
        ],
    )
    def test_typed_object_value(self, object_type: ObjectType, value: str, expected: object) -> None:
        fact = Fact(
            domain_id="d1",
            subject_entity_id="e1",
            predicate="has_metric",
            object_value=value,
            object_type=object_type,
        )

        assert fact.typed_object_value == expected

    def test_expire(self) -> None:
        fact = Fact(domain_id="d1", subject_entity_id="e1", predicate="has_status", object_value="open")
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        fact.expire(at)

        assert not fact.is_current
        assert fact.valid_until == at

    def test_to_sentence(self) -> None:
        fact = Fact(
            domain_id="d1",
            subject_entity_id="e1",
            predicate="depends_on",
            object_entity_id="e2",
            negated=True,
        )

        assert fact.to_triple("Auth", "Billing") == ("Auth", "depends_on", "Billing")
        assert fact.to_sentence("Auth", "Billing") == "Auth not depends on Billing"


class TestOffsets:
    """Test offset validation on mentions and card facts."""

    def test_mention_start_after_end(self) -> None:
        with pytest.raises(ValidationError):
            EntityMention(entity_id="e1", card_id="c1", mention_text="x", text_offset_start=5, text_offset_end=2)

    def test_mention_negative_offset(self) -> None:
        with pytest.raises(ValidationError):
            EntityMention(entity_id="e1", card_id="c1", mention_text="x", text_offset_start=-1)

    def test_mention_key(self) -> None:
        mention = EntityMention(entity_id="e1", card_id="c1", mention_text="Auth", source_field="title")

        assert mention.key == ("e1", "c1", "Auth", "title")
        assert not mention.has_position

    def test_card_fact_offsets(self) -> None:
        with pytest.raises(ValidationError):
            CardFact(card_id="c1", fact_id="f1", text_offset_start=3, text_offset_end=1)

        card_fact = CardFact(card_id="c1", fact_id="f1")
        assert card_fact.key == ("c1", "f1", "source")
