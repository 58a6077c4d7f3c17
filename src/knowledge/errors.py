"""
Knowledge Extraction Errors.

Exception taxonomy:
- Fatal: CardNotFoundError, DomainUnavailableError
- Per-item: RecordInvalid (item skipped, run continues)
- Race-OK: UniqueConstraintViolation (caller re-fetches)
"""

from typing import Any


class KnowledgeExtractionError(Exception):
    """Base error for the extraction pipeline."""

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.recoverable = recoverable


class CardNotFoundError(KnowledgeExtractionError):
    """Card to extract from does not exist."""

    def __init__(self, card_id: str):
        super().__init__(f"Card not found: {card_id}", stage="validate_input", recoverable=False)
        self.card_id = card_id


class DomainUnavailableError(KnowledgeExtractionError):
    """No domain could be found or created for the card's board."""

    def __init__(self, board_id: str, reason: str):
        super().__init__(
            f"Domain unavailable for board {board_id}: {reason}",
            stage="validate_input",
            recoverable=False,
        )
        self.board_id = board_id


class PersistenceError(KnowledgeExtractionError):
    """Base error for knowledge store failures."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message, stage="persist_results", recoverable=recoverable)


class UniqueConstraintViolation(PersistenceError):
    """A record with the same unique key already exists."""

    def __init__(self, record_type: str, key: Any):
        super().__init__(f"{record_type} already exists: {key}", recoverable=True)
        self.record_type = record_type
        self.key = key


class RecordInvalid(PersistenceError):
    """A record failed validation and was not written."""

    def __init__(self, record_type: str, reason: str):
        super().__init__(f"Invalid {record_type}: {reason}", recoverable=True)
        self.record_type = record_type
        self.reason = reason
