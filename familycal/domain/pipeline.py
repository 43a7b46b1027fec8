"""Event processing pipeline architecture for familycal.

A refresh run is a sequence of stages sharing one ProcessingContext:

    pipeline = EventProcessingPipeline()
    pipeline.add_stage(FetchStage(fetcher, url, secret))
    pipeline.add_stage(ExpansionStage(expander))
    pipeline.add_stage(AttributionStage(directory))
    pipeline.add_stage(PublishableFilterStage())

    result = await pipeline.process(ProcessingContext(now=now))

Only the fetch stage suspends; every other stage is synchronous work wrapped
in a coroutine. A stage that raises stops the pipeline, and the exception is
kept on the result so the caller can classify the failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from familycal.calendar.models import EventInstance, Occurrence

logger = logging.getLogger(__name__)


@dataclass
class ProcessingContext:
    """Context passed between pipeline stages."""

    # Time context
    now: Optional[datetime] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    # Processing state (modified by stages)
    raw_content: Optional[str] = None  # Raw ICS text; pre-filled when served from cache
    occurrences: list[Occurrence] = field(default_factory=list)
    events: list[EventInstance] = field(default_factory=list)

    # Metadata
    from_cache: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class ProcessingResult:
    """Result from a pipeline stage or complete pipeline execution."""

    success: bool = True
    events: list[EventInstance] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    exception: Optional[BaseException] = None

    # Statistics
    events_in: int = 0
    events_out: int = 0
    events_filtered: int = 0
    stage_name: str = ""

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning("[%s] %s", self.stage_name, message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark as failed."""
        self.errors.append(message)
        self.success = False
        logger.error("[%s] %s", self.stage_name, message)

    @property
    def error_message(self) -> Optional[str]:
        """First recorded error, suitable for showing to a user."""
        if self.exception is not None:
            return str(self.exception) or type(self.exception).__name__
        return self.errors[0] if self.errors else None


class EventProcessor(Protocol):
    """Protocol for a single stage in the event processing pipeline."""

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        """Process the context according to this stage's responsibility."""
        ...

    @property
    def name(self) -> str:
        """Name of this processing stage for logging."""
        ...


class EventProcessingPipeline:
    """Runs stages in order, stopping at the first failure."""

    def __init__(self) -> None:
        """Initialize empty pipeline."""
        self.stages: list[EventProcessor] = []

    def add_stage(self, stage: EventProcessor) -> EventProcessingPipeline:
        """Add a processing stage to the pipeline (builder pattern)."""
        self.stages.append(stage)
        logger.debug("Added stage to pipeline: %s", stage.name)
        return self

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        """Execute all pipeline stages in sequence.

        Args:
            context: Processing context with initial state

        Returns:
            Aggregated result; ``exception`` holds the error that stopped the run
        """
        logger.debug("Starting pipeline with %d stages", len(self.stages))

        aggregated_result = ProcessingResult(stage_name="Pipeline")

        for i, stage in enumerate(self.stages):
            stage_num = i + 1
            logger.debug("Executing stage %d/%d: %s", stage_num, len(self.stages), stage.name)

            try:
                stage_result = await stage.process(context)
            except Exception as e:
                aggregated_result.exception = e
                aggregated_result.add_error(f"Stage {stage.name} failed: {e}")
                logger.debug("Stage %s raised", stage.name, exc_info=True)
                return aggregated_result

            logger.debug(
                "Stage %s/%s (%s) completed: success=%s, events_in=%s, events_out=%s, warnings=%s",
                stage_num,
                len(self.stages),
                stage.name,
                stage_result.success,
                stage_result.events_in,
                stage_result.events_out,
                len(stage_result.warnings),
            )

            aggregated_result.warnings.extend(stage_result.warnings)
            aggregated_result.errors.extend(stage_result.errors)

            if not stage_result.success:
                aggregated_result.success = False
                aggregated_result.exception = stage_result.exception
                logger.error(
                    "Pipeline stopped at stage %s (%s) due to failure", stage_num, stage.name
                )
                return aggregated_result

            aggregated_result.metadata.update(stage_result.metadata)

        aggregated_result.success = True
        aggregated_result.events = list(context.events)
        aggregated_result.events_out = len(context.events)

        logger.info(
            "Pipeline completed: %s events, %s warnings",
            aggregated_result.events_out,
            len(aggregated_result.warnings),
        )
        return aggregated_result

    def __repr__(self) -> str:
        """String representation of pipeline."""
        return f"EventProcessingPipeline(stages={[stage.name for stage in self.stages]})"
