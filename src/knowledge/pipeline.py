"""
Knowledge Extraction LangGraph Pipeline.

Turns a card's text into knowledge graph rows.
Pipeline: Validate → Patterns → Link → LLM (conditional) → Persist → Broadcast

- Pattern, linking and LLM failures degrade to empty results
- Validation failures (card missing, no domain) and persistence failures halt the run
- Progress is reported per stage; notifier failures never fail the run
- Re-running on an unchanged card creates no duplicate rows
"""

import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog
from langgraph.graph import END, StateGraph

from src.config.settings import ExtractionSettings, get_settings
from src.knowledge.entity_linker import EntityLinker
from src.knowledge.errors import CardNotFoundError, DomainUnavailableError, UniqueConstraintViolation
from src.knowledge.llm_extractor import LLMExtractor
from src.knowledge.pattern_extractor import PatternExtractor
from src.knowledge.persistence import KnowledgePersister, PersistOutcome
from src.knowledge.progress import ProgressBroadcaster, ProgressNotifier, ProgressStage
from src.knowledge.stages import (
    NON_CRITICAL_STAGES,
    Stage,
    StageFailure,
    StageResult,
    StageSuccess,
    next_stage,
)
from src.knowledge.state import (
    Card,
    CandidateSet,
    Domain,
    ExtractionResult,
    ExtractionStats,
    KnowledgeExtractionState,
    LinkResult,
    ValidatedInput,
)
from src.knowledge.store.base import KnowledgeStore
from src.llm.provider import LLMRouter, create_llm_router
from src.observability.logging import LogContext, correlation_id_var

logger = structlog.get_logger(__name__)

DEFAULT_DOMAIN_DESCRIPTION = "Auto-created domain for extracted knowledge"

# Progress index reported once a stage has finished
_PROGRESS_AFTER: dict[Stage, ProgressStage] = {
    Stage.VALIDATE_INPUT: ProgressStage.PATTERNS,
    Stage.PATTERN_EXTRACT: ProgressStage.LINKING,
    Stage.LINK_ENTITIES: ProgressStage.LLM,
    Stage.LLM_EXTRACT: ProgressStage.PERSISTING,
    Stage.PERSIST_RESULTS: ProgressStage.COMPLETE,
}


class CardRepository(Protocol):
    """Source of cards."""

    async def find_card(self, card_id: str) -> Card | None: ...


StageWork = Callable[[KnowledgeExtractionState], Awaitable[StageResult]]


class KnowledgeExtractionPipeline:
    """
    Knowledge extraction orchestrator using LangGraph.

    Each stage is a graph node; the edges out of every node are decided by
    ``next_stage`` so a fatal failure ends the graph early.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        card_repository: CardRepository,
        llm_router: LLMRouter | None = None,
        notifier: ProgressNotifier | None = None,
        settings: ExtractionSettings | None = None,
        pattern_extractor: PatternExtractor | None = None,
        entity_linker: EntityLinker | None = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            store: Knowledge store the results are written to
            card_repository: Source of cards
            llm_router: LLM routing capability; LLM extraction is skipped without one
            notifier: Progress receiver (defaults to an in-process broadcaster)
            settings: Extraction settings
            pattern_extractor: Optional pre-configured pattern extractor
            entity_linker: Optional pre-configured entity linker
        """
        self._settings = settings or ExtractionSettings()
        self._store = store
        self._cards = card_repository
        self._notifier: ProgressNotifier = notifier or ProgressBroadcaster()

        self._pattern_extractor = pattern_extractor or PatternExtractor()
        self._entity_linker = entity_linker or EntityLinker(
            fuzzy_threshold=self._settings.fuzzy_threshold,
            min_token_length=self._settings.min_token_length,
        )
        self._llm_extractor: LLMExtractor | None = None
        if llm_router is not None:
            self._llm_extractor = LLMExtractor(
                llm_router,
                enabled=self._settings.llm_enabled,
                min_content_length=self._settings.llm_min_content_length,
                max_pattern_yield=self._settings.llm_max_pattern_yield,
                timeout=self._settings.llm_timeout_seconds,
                entity_limit=self._settings.prompt_entity_limit,
                domain_limit=self._settings.prompt_domain_limit,
            )
        self._persister = KnowledgePersister(
            store,
            default_confidence=self._settings.default_confidence,
            auto_entity_confidence=self._settings.auto_entity_confidence,
        )

        self._app = self._build_workflow().compile()

    @property
    def notifier(self) -> ProgressNotifier:
        return self._notifier

    @property
    def persister(self) -> KnowledgePersister:
        return self._persister

    def _build_workflow(self) -> StateGraph:
        """Build the LangGraph workflow."""
        workflow = StateGraph(KnowledgeExtractionState)

        work: dict[Stage, StageWork] = {
            Stage.VALIDATE_INPUT: self._validate_input,
            Stage.PATTERN_EXTRACT: self._pattern_extract,
            Stage.LINK_ENTITIES: self._link_entities,
            Stage.LLM_EXTRACT: self._llm_extract,
            Stage.PERSIST_RESULTS: self._persist_results,
            Stage.BROADCAST: self._broadcast,
        }
        path_map: dict[str, str] = {stage.value: stage.value for stage in Stage}
        path_map[END] = END

        for stage, fn in work.items():
            workflow.add_node(stage.value, self._node(stage, fn))
            workflow.add_conditional_edges(stage.value, self._route, path_map)

        workflow.set_entry_point(Stage.VALIDATE_INPUT.value)
        return workflow

    def _route(self, state: KnowledgeExtractionState) -> str:
        current = state["current_stage"]
        upcoming = next_stage(current, state["results"][current])
        return upcoming.value if upcoming is not None else END

    def _node(self, stage: Stage, work: StageWork):
        async def run_node(state: KnowledgeExtractionState) -> dict[str, Any]:
            result = await self._execute(stage, work, state)

            errors = list(state.get("errors", []))
            if result.error:
                errors.append(f"{stage.value}: {result.error}")

            if result.ok and stage in _PROGRESS_AFTER:
                await self._notify_progress(state["card_id"], _PROGRESS_AFTER[stage])

            return {
                "results": {**state.get("results", {}), stage: result},
                "current_stage": stage,
                "errors": errors,
                "halted": not result.ok,
            }

        return run_node

    async def _execute(
        self,
        stage: Stage,
        work: StageWork,
        state: KnowledgeExtractionState,
    ) -> StageResult:
        """Run a stage, degrading non-critical failures to empty successes."""
        try:
            result = await work(state)
        except CardNotFoundError:
            raise
        except Exception as e:
            if stage in NON_CRITICAL_STAGES:
                logger.warning("Stage degraded to empty result", stage=stage.value, error=str(e))
                return StageSuccess(stage, payload=_empty_payload(stage), error=str(e))
            logger.error("Stage failed", stage=stage.value, error=str(e), exc_info=True)
            return StageFailure(stage, error=str(e), fatal=True)

        logger.info(
            "Stage completed",
            stage=stage.value,
            ok=result.ok,
            skipped=getattr(result, "skipped", False),
        )
        return result

    # =========================================================================
    # Stage helpers
    # =========================================================================

    @staticmethod
    def _payload(state: KnowledgeExtractionState, stage: Stage) -> Any:
        result = state.get("results", {}).get(stage)
        if isinstance(result, StageSuccess):
            return result.payload
        return _empty_payload(stage)

    def _input(self, state: KnowledgeExtractionState) -> ValidatedInput:
        return self._payload(state, Stage.VALIDATE_INPUT)

    async def _ensure_domain(self, card: Card) -> list[Domain]:
        """Domains of the card's board, creating the default one when there are none."""
        try:
            domains = await self._store.find_domains(card.board_id)
            if domains:
                return domains

            domain = Domain(
                board_id=card.board_id,
                name=self._settings.default_domain_name,
                description=DEFAULT_DOMAIN_DESCRIPTION,
                color=self._settings.default_domain_color,
                system_generated=True,
            )
            try:
                await self._store.create_domain(domain)
                logger.info("Default domain created", board_id=card.board_id, domain=domain.name)
            except UniqueConstraintViolation:
                logger.debug("Default domain created concurrently", board_id=card.board_id)

            domains = await self._store.find_domains(card.board_id)
        except Exception as e:
            raise DomainUnavailableError(card.board_id, str(e)) from e

        if not domains:
            raise DomainUnavailableError(card.board_id, "no domain after creation")
        return domains

    # =========================================================================
    # Pipeline Nodes
    # =========================================================================

    async def _validate_input(self, state: KnowledgeExtractionState) -> StageResult:
        card = await self._cards.find_card(state["card_id"])
        if card is None:
            raise CardNotFoundError(state["card_id"])

        domains = await self._ensure_domain(card)
        existing_entities = await self._store.list_board_entities(card.board_id)

        return StageSuccess(
            Stage.VALIDATE_INPUT,
            payload=ValidatedInput(
                card=card,
                domain=domains[0],
                existing_entities=existing_entities,
                existing_domains=domains,
            ),
        )

    async def _pattern_extract(self, state: KnowledgeExtractionState) -> StageResult:
        card = self._input(state).card
        return StageSuccess(Stage.PATTERN_EXTRACT, payload=self._pattern_extractor.extract_card(card))

    async def _link_entities(self, state: KnowledgeExtractionState) -> StageResult:
        validated = self._input(state)
        result = self._entity_linker.link_card(validated.card, validated.existing_entities)
        return StageSuccess(Stage.LINK_ENTITIES, payload=result)

    async def _llm_extract(self, state: KnowledgeExtractionState) -> StageResult:
        validated = self._input(state)
        pattern_yield = self._payload(state, Stage.PATTERN_EXTRACT).total

        if self._llm_extractor is None or not self._llm_extractor.should_use_llm(
            validated.card, pattern_yield
        ):
            return StageSuccess(Stage.LLM_EXTRACT, payload=CandidateSet(), skipped=True)

        extraction = await self._llm_extractor.extract(
            validated.card,
            validated.existing_entities,
            validated.existing_domains,
        )
        return StageSuccess(Stage.LLM_EXTRACT, payload=extraction.candidates, error=extraction.error)

    async def _persist_results(self, state: KnowledgeExtractionState) -> StageResult:
        validated = self._input(state)
        patterns: CandidateSet = self._payload(state, Stage.PATTERN_EXTRACT)
        llm: CandidateSet = self._payload(state, Stage.LLM_EXTRACT)
        links: LinkResult = self._payload(state, Stage.LINK_ENTITIES)

        outcome = await self._persister.persist(
            validated.card,
            validated.domain,
            entities=patterns.entities + llm.entities,
            facts=patterns.facts + llm.facts,
            mentions=links.mentions,
        )
        return StageSuccess(Stage.PERSIST_RESULTS, payload=outcome)

    async def _broadcast(self, state: KnowledgeExtractionState) -> StageResult:
        outcome: PersistOutcome = self._payload(state, Stage.PERSIST_RESULTS)
        await self._notify_complete(state["card_id"], outcome.counts)
        return StageSuccess(Stage.BROADCAST, payload=outcome.counts)

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _notify_progress(self, card_id: str, stage: ProgressStage) -> None:
        try:
            await self._notifier.notify_progress(card_id, int(stage))
        except Exception as e:
            logger.warning("Progress notification failed", card_id=card_id, stage=int(stage), error=str(e))

    async def _notify_complete(self, card_id: str, counts: dict[str, int]) -> None:
        try:
            await self._notifier.notify_complete(card_id, counts)
        except Exception as e:
            logger.warning("Completion notification failed", card_id=card_id, error=str(e))

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(self, card_id: str) -> ExtractionResult:
        """
        Run knowledge extraction for a card.

        Returns:
            ExtractionResult with the newly persisted rows and any errors

        Raises:
            CardNotFoundError: when the card does not exist
        """
        run_id = uuid.uuid4().hex[:8]
        token = correlation_id_var.set(run_id)

        try:
            return await self._run(card_id, run_id)
        finally:
            correlation_id_var.reset(token)

    async def _run(self, card_id: str, run_id: str) -> ExtractionResult:
        with LogContext(card_id=card_id, run_id=run_id):
            logger.info("Knowledge extraction started")
            await self._notify_progress(card_id, ProgressStage.VALIDATING)

            initial_state: KnowledgeExtractionState = {
                "card_id": card_id,
                "run_id": run_id,
                "results": {},
                "current_stage": None,
                "errors": [],
                "halted": False,
            }
            final_state: KnowledgeExtractionState = await self._app.ainvoke(initial_state)  # type: ignore[assignment]

            result = self._build_result(card_id, final_state)
            logger.info(
                "Knowledge extraction finished",
                halted=final_state.get("halted", False),
                errors=len(result.errors),
                **result.counts,
            )
            return result

    def _build_result(self, card_id: str, state: KnowledgeExtractionState) -> ExtractionResult:
        patterns: CandidateSet = self._payload(state, Stage.PATTERN_EXTRACT)
        llm: CandidateSet = self._payload(state, Stage.LLM_EXTRACT)
        links: LinkResult = self._payload(state, Stage.LINK_ENTITIES)
        outcome: PersistOutcome = self._payload(state, Stage.PERSIST_RESULTS)

        return ExtractionResult(
            card_id=card_id,
            entities=outcome.entities,
            facts=outcome.facts,
            mentions=outcome.mentions,
            errors=list(state.get("errors", [])) + outcome.errors,
            stats=ExtractionStats(
                pattern=patterns.total,
                llm=llm.total,
                linked=len(links.mentions),
            ),
        )


def _empty_payload(stage: Stage) -> Any:
    if stage in (Stage.PATTERN_EXTRACT, Stage.LLM_EXTRACT):
        return CandidateSet()
    if stage == Stage.LINK_ENTITIES:
        return LinkResult()
    if stage == Stage.PERSIST_RESULTS:
        return PersistOutcome()
    return None


# =============================================================================
# Factory Functions
# =============================================================================


def create_knowledge_pipeline(
    store: KnowledgeStore,
    card_repository: CardRepository,
    notifier: ProgressNotifier | None = None,
    llm_router: LLMRouter | None = None,
    settings: ExtractionSettings | None = None,
) -> KnowledgeExtractionPipeline:
    """
    Create a pipeline from application settings.

    An LLM router is built from settings when LLM extraction is enabled and
    none is supplied.
    """
    app_settings = get_settings()
    settings = settings or app_settings.extraction
    if llm_router is None and settings.llm_enabled:
        llm_router = create_llm_router(app_settings.llm)

    return KnowledgeExtractionPipeline(
        store=store,
        card_repository=card_repository,
        llm_router=llm_router,
        notifier=notifier,
        settings=settings,
    )


async def run_knowledge_extraction(
    pipeline: KnowledgeExtractionPipeline,
    card_id: str,
) -> ExtractionResult | None:
    """
    Background job entry point.

    Logs a one-line summary; a missing card is logged and yields None.
    """
    try:
        result = await pipeline.run(card_id)
    except CardNotFoundError as e:
        logger.error("Knowledge extraction failed", card_id=card_id, error=e.message)
        return None

    if result.success:
        logger.info(
            f"Knowledge extraction completed: {len(result.entities)} entities, "
            f"{len(result.facts)} facts, {len(result.mentions)} mentions",
            card_id=card_id,
        )
    else:
        logger.error(
            "Knowledge extraction finished with errors",
            card_id=card_id,
            errors=result.errors,
            **result.counts,
        )
    return result
