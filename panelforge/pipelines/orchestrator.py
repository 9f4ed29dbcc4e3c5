"""
Panelforge Generation Orchestrator

Drives a GenerationJob through its four stages:

    idle -> analyzing -> generating_characters -> planning_layout
         -> generating_panels -> complete

with ``failed(stage, item)`` reachable from every active phase. Failed jobs
resume at the recorded stage and item. Character and panel generation are
item-incremental: every finished item is spliced into the job and persisted
before the next one starts, and the first failing item halts the stage.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from panelforge.core.config import PipelineConfig
from panelforge.core.constants import (
    ACTIVE_PHASES,
    CANCELLED_MESSAGE,
    COMPLETE_CAPTION,
    INCREMENTAL_STAGES,
    PANEL_CAPTION,
    STAGE_CAPTIONS,
    STAGE_ORDER,
    STAGE_PHASES,
    ComicStyle,
    PipelinePhase,
    Stage,
)
from panelforge.core.exceptions import (
    ContentSafetyRejection,
    GenerationCancelled,
    PanelforgeError,
    PipelineBusyError,
    StageFailedError,
    ValidationError,
)
from panelforge.core.logging_config import get_logger
from panelforge.core.models import (
    CharacterReference,
    GeneratedPanel,
    GenerationJob,
    JobError,
    RunInputs,
    UploadedReference,
)
from panelforge.storage.persistence import HybridPersistence

from .executors import StageExecutors

logger = get_logger("pipelines.orchestrator")

EventCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class StageStep:
    """A stage of the pipeline."""
    stage: Stage
    phase: PipelinePhase
    caption: str

    @property
    def incremental(self) -> bool:
        return self.stage in INCREMENTAL_STAGES


@dataclass
class RunPlan:
    """Where a prepared run starts."""
    stage: Stage
    item_index: Optional[int] = None


class GenerationOrchestrator:
    """
    Owns one GenerationJob and runs the generation stages against it.

    One orchestrator exists per session; nothing here is process-global.

    Args:
        executors: Stage executors backed by the provider call adapter
        persistence: Where the job is saved after every mutation, if anywhere
        job: Existing job to continue, a fresh one otherwise
        config: Input validation limits
        on_event: Optional async callback receiving progress events
            (status, analysis, character, layout, panel, error, complete)
    """

    def __init__(
        self,
        executors: StageExecutors,
        persistence: Optional[HybridPersistence] = None,
        job: Optional[GenerationJob] = None,
        config: Optional[PipelineConfig] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.executors = executors
        self.persistence = persistence
        self.job = job or GenerationJob()
        self.config = config or PipelineConfig()
        self._on_event = on_event
        self._cancel_requested = False
        self._steps = self._define_steps()

    def _define_steps(self) -> List[StageStep]:
        return [StageStep(stage, STAGE_PHASES[stage], STAGE_CAPTIONS[stage]) for stage in STAGE_ORDER]

    @property
    def steps(self) -> List[StageStep]:
        return self._steps.copy()

    def set_event_callback(self, callback: Optional[EventCallback]) -> None:
        """Set a callback for progress events."""
        self._on_event = callback

    def cancel(self) -> bool:
        """
        Request cooperative cancellation.

        Takes effect before the next item starts; the call in flight completes.

        Returns:
            True if a run was in progress
        """
        if not self.job.is_generating:
            return False
        self._cancel_requested = True
        logger.info("Cancellation requested")
        return True

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_story(self, story: str) -> int:
        """
        Check a story against the input limits.

        Returns:
            Word count

        Raises:
            ValidationError: Empty or over-long story
        """
        if not story or not story.strip():
            raise ValidationError("Please enter a story to generate a comic")
        word_count = len(story.split())
        if word_count > self.config.max_story_words:
            raise ValidationError(
                f"Story is too long ({word_count} words). "
                f"Please keep it under {self.config.max_story_words} words.",
                {"word_count": word_count, "max_words": self.config.max_story_words},
            )
        return word_count

    def _check_resumable(self, stage: Stage) -> None:
        for earlier in STAGE_ORDER[:STAGE_ORDER.index(stage)]:
            if not self.job.has_output(earlier):
                raise ValidationError(
                    f"Cannot resume from '{stage.value}': the '{earlier.value}' stage has no output",
                    {"resume_from_stage": stage.value, "missing": earlier.value},
                )

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(
        self,
        story: str,
        style: Union[ComicStyle, str] = ComicStyle.MANGA,
        no_dialogue: bool = False,
        character_uploads: Optional[List[UploadedReference]] = None,
        setting_uploads: Optional[List[UploadedReference]] = None,
        resume_from_stage: Optional[Union[Stage, str]] = None,
        resume_from_item_index: Optional[int] = None,
    ) -> GenerationJob:
        """
        Run the pipeline, fresh or resumed.

        Without ``resume_from_stage`` every stage output is discarded and the
        run starts at analysis. With it, earlier stages are skipped and their
        outputs reused; the named stage and all later ones run again. The
        panel stage (and the character stage) starts at
        ``resume_from_item_index`` (1-based), leaving earlier items untouched.

        Stage failures are recorded on the returned job, not raised.

        Raises:
            PipelineBusyError: A run or regeneration is in progress
            ValidationError: Invalid input or nothing to resume from
        """
        plan = await self.prepare_run(
            story,
            style,
            no_dialogue,
            character_uploads,
            setting_uploads,
            resume_from_stage,
            resume_from_item_index,
        )
        return await self.execute(plan)

    async def prepare_run(
        self,
        story: str,
        style: Union[ComicStyle, str] = ComicStyle.MANGA,
        no_dialogue: bool = False,
        character_uploads: Optional[List[UploadedReference]] = None,
        setting_uploads: Optional[List[UploadedReference]] = None,
        resume_from_stage: Optional[Union[Stage, str]] = None,
        resume_from_item_index: Optional[int] = None,
    ) -> RunPlan:
        """
        Validate a run request and claim the job for it.

        On return the job is marked as generating and ``execute()`` must
        follow, possibly from a background task.
        """
        if self.job.is_generating:
            raise PipelineBusyError("run")

        style = ComicStyle(style)
        if resume_from_stage is not None:
            resume_from_stage = Stage(resume_from_stage)

        try:
            word_count = self.validate_story(story)
            if resume_from_stage is not None:
                self._check_resumable(resume_from_stage)
        except ValidationError as e:
            self.job.error = JobError(message=e.message)
            logger.warning(f"Run rejected: {e.message}")
            await self._persist()
            await self._emit("error", self.job.error.to_dict())
            raise

        job = self.job
        job.is_generating = True
        job.error = None
        self._cancel_requested = False
        job.run_inputs = RunInputs(
            story=story,
            style=style,
            no_dialogue=no_dialogue,
            character_uploads=list(character_uploads or []),
            setting_uploads=list(setting_uploads or []),
        )

        if resume_from_stage is None:
            job.story = story
            job.style = style
            job.no_dialogue = no_dialogue
            job.character_uploads = list(character_uploads or [])
            job.setting_uploads = list(setting_uploads or [])
            job.clear_outputs_from(Stage.ANALYSIS)
            logger.info(f"🎬 Starting generation: {word_count} words, style={style.value}")
            return RunPlan(Stage.ANALYSIS)

        item = f" at item {resume_from_item_index}" if resume_from_item_index else ""
        logger.info(f"🔄 Resuming generation from '{resume_from_stage.value}'{item}")
        return RunPlan(resume_from_stage, resume_from_item_index)

    async def execute(self, plan: RunPlan) -> GenerationJob:
        """Run the stages of a prepared plan and release the job."""
        job = self.job
        try:
            await self._persist()
            await self._execute_from(plan.stage, plan.item_index)
        finally:
            job.is_generating = False
            self._cancel_requested = False
            await self._persist()
        return job

    async def retry_from_failed_stage(self) -> GenerationJob:
        """
        Resume at the recorded failed stage and item with the inputs cached
        at the start of the failed run.

        Raises:
            PipelineBusyError: A run or regeneration is in progress
            ValidationError: Nothing retryable is recorded
        """
        return await self.execute(await self.prepare_retry())

    async def prepare_retry(self) -> RunPlan:
        """Validate a retry request and claim the job for it."""
        if self.job.is_generating:
            raise PipelineBusyError("retry")

        error = self.job.error
        if error is None or error.stage is None:
            raise ValidationError("There is no failed stage to retry")
        if error.content_blocked:
            raise ValidationError(
                "Content was blocked by safety filters; edit the story and start a new run",
                {"stage": error.stage.value},
            )
        inputs = self.job.run_inputs
        if inputs is None:
            raise ValidationError("No inputs are cached for the failed run")

        item_index = error.item_index if error.stage in INCREMENTAL_STAGES else None
        return await self.prepare_run(
            inputs.story,
            inputs.style,
            inputs.no_dialogue,
            inputs.character_uploads,
            inputs.setting_uploads,
            resume_from_stage=error.stage,
            resume_from_item_index=item_index,
        )

    async def _execute_from(self, start_stage: Stage, item_index: Optional[int]) -> None:
        start = STAGE_ORDER.index(start_stage)
        for step in self._steps[start:]:
            resume_index = item_index if step.stage == start_stage else None
            try:
                if self._cancel_requested:
                    raise GenerationCancelled(
                        CANCELLED_MESSAGE,
                        {"stage": step.stage.value, "item_index": (resume_index or 1) if step.incremental else None},
                    )
                await self._enter(step)
                await self._run_step(step, resume_index)
            except GenerationCancelled as e:
                await self._record_failure(step.stage, e.details.get("item_index"), e)
                return
            except StageFailedError as e:
                await self._record_failure(step.stage, e.item_index, e.__cause__ or e)
                return
            except PanelforgeError as e:
                await self._record_failure(step.stage, None, e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error in stage '{step.stage.value}'")
                item = self._next_item_index(self.job, step.stage) if step.incremental else None
                await self._record_failure(step.stage, item, e)
                return

        await self._finish()

    async def _enter(self, step: StageStep) -> None:
        self.job.phase = step.phase
        self.job.current_step_text = step.caption
        await self._persist()
        await self._emit("status", {"phase": step.phase.value, "message": step.caption})

    async def _run_step(self, step: StageStep, resume_index: Optional[int]) -> None:
        if step.stage == Stage.ANALYSIS:
            await self._run_analysis()
        elif step.stage == Stage.CHARACTERS:
            await self._run_characters(resume_index)
        elif step.stage == Stage.LAYOUT:
            await self._run_layout()
        else:
            await self._run_panels(resume_index)

    def _check_cancelled(self, stage: Stage, item_index: int) -> None:
        if self._cancel_requested:
            raise GenerationCancelled(CANCELLED_MESSAGE, {"stage": stage.value, "item_index": item_index})

    # =========================================================================
    # STAGES
    # =========================================================================

    async def _run_analysis(self) -> None:
        inputs = self.job.run_inputs
        analysis = await self.executors.analyze_story(inputs.story, inputs.style)
        self.job.story_analysis = analysis
        # Character names may have changed; everything downstream is stale
        self.job.clear_outputs_from(Stage.CHARACTERS)
        await self._persist()
        await self._emit("analysis", analysis.to_dict())

    async def _run_characters(self, start_index: Optional[int]) -> None:
        job = self.job
        inputs = job.run_inputs
        analysis = job.story_analysis
        names = set(analysis.character_names())
        job.character_references = [r for r in job.character_references if r.name in names]

        total = len(analysis.characters)
        start = max(start_index or 1, 1)
        for index, character in enumerate(analysis.characters, start=1):
            if index < start:
                continue
            self._check_cancelled(Stage.CHARACTERS, index)
            job.current_step_text = f"{STAGE_CAPTIONS[Stage.CHARACTERS]} ({index}/{total})"
            await self._emit("status", {"phase": job.phase.value, "message": job.current_step_text})

            try:
                reference = await self.executors.design_character(
                    character, analysis.setting, inputs.style, inputs.character_uploads
                )
            except PanelforgeError as e:
                raise StageFailedError(Stage.CHARACTERS.value, e.message, index) from e

            job.upsert_character_reference(reference)
            await self._persist()
            await self._emit("character", reference.to_dict(include_image=False))

    async def _run_layout(self) -> None:
        job = self.job
        inputs = job.run_inputs
        breakdown = await self.executors.plan_panels(
            inputs.story, job.story_analysis, inputs.style, inputs.no_dialogue
        )
        job.story_breakdown = breakdown
        # Panel numbers refer to the previous layout
        job.clear_outputs_from(Stage.PANELS)
        await self._persist()
        await self._emit("layout", breakdown.to_dict())

    async def _run_panels(self, start_index: Optional[int]) -> None:
        job = self.job
        inputs = job.run_inputs
        panels = job.story_breakdown.panels
        numbers = set(job.story_breakdown.panel_numbers())
        job.generated_panels = [p for p in job.generated_panels if p.panel_number in numbers]

        total = len(panels)
        start = max(start_index or 1, 1)
        for index, panel in enumerate(panels, start=1):
            if index < start:
                continue
            self._check_cancelled(Stage.PANELS, index)
            job.current_step_text = PANEL_CAPTION.format(current=index, total=total)
            await self._emit("status", {"phase": job.phase.value, "message": job.current_step_text})

            try:
                generated = await self.executors.render_panel(
                    panel,
                    job.character_references,
                    job.story_analysis.setting,
                    inputs.style,
                    inputs.setting_uploads,
                )
            except PanelforgeError as e:
                raise StageFailedError(Stage.PANELS.value, e.message, index) from e

            job.upsert_generated_panel(generated)
            await self._persist()
            await self._emit("panel", generated.to_dict(include_image=False))

    async def _finish(self) -> None:
        job = self.job
        if not job.is_complete:
            missing = self._next_item_index(job, Stage.PANELS) or 1
            await self._record_failure(
                Stage.PANELS, missing, ValidationError(f"Panel {missing} has no image")
            )
            return

        job.phase = PipelinePhase.COMPLETE
        job.current_step_text = COMPLETE_CAPTION
        await self._persist()
        logger.info(f"✓ Generation complete: {len(job.generated_panels)} panel(s)")
        await self._emit("complete", job.summary())

    async def _record_failure(self, stage: Stage, item_index: Optional[int], error: BaseException) -> None:
        job = self.job
        message = getattr(error, "message", None) or str(error)
        job.phase = PipelinePhase.FAILED
        job.current_step_text = ""
        job.error = JobError(
            message=message,
            stage=stage,
            item_index=item_index,
            content_blocked=isinstance(error, ContentSafetyRejection),
        )
        location = f" at item {item_index}" if item_index is not None else ""
        logger.error(f"❌ Stage '{stage.value}' failed{location}: {message}")
        await self._persist()
        await self._emit("error", job.error.to_dict())

    # =========================================================================
    # SINGLE-ITEM REGENERATION
    # =========================================================================

    def _current_inputs(self) -> RunInputs:
        job = self.job
        if job.run_inputs is not None:
            return job.run_inputs
        return RunInputs(
            story=job.story,
            style=job.style,
            no_dialogue=job.no_dialogue,
            character_uploads=job.character_uploads,
            setting_uploads=job.setting_uploads,
        )

    async def regenerate_single_character(self, name: str) -> CharacterReference:
        """
        Regenerate one character reference and splice it in by name.

        Phase and error are left untouched; provider errors propagate.

        Raises:
            PipelineBusyError: A run or regeneration is in progress
            ValidationError: No analysis or unknown character
        """
        job = self.job
        if job.is_generating:
            raise PipelineBusyError("regenerate character")
        if job.story_analysis is None:
            raise ValidationError("Story has not been analyzed yet")
        character = job.story_analysis.get_character(name)
        if character is None:
            raise ValidationError(f"Unknown character '{name}'", {"name": name})

        inputs = self._current_inputs()
        previous_caption = job.current_step_text
        job.is_generating = True
        job.current_step_text = f"Regenerating {name}..."
        await self._emit("status", {"phase": job.phase.value, "message": job.current_step_text})
        try:
            reference = await self.executors.design_character(
                character, job.story_analysis.setting, inputs.style, inputs.character_uploads
            )
            job.upsert_character_reference(reference)
        finally:
            job.is_generating = False
            job.current_step_text = previous_caption
            await self._persist()

        logger.info(f"✓ Regenerated character '{name}'")
        await self._emit("character", reference.to_dict(include_image=False))
        return reference

    async def regenerate_single_panel(self, panel_number: int) -> GeneratedPanel:
        """
        Regenerate one panel and splice it in by panel number.

        Phase and error are left untouched; provider errors propagate.

        Raises:
            PipelineBusyError: A run or regeneration is in progress
            ValidationError: No layout or unknown panel
        """
        job = self.job
        if job.is_generating:
            raise PipelineBusyError("regenerate panel")
        if job.story_breakdown is None or job.story_analysis is None:
            raise ValidationError("Panel layout has not been planned yet")
        panel = job.story_breakdown.get_panel(panel_number)
        if panel is None:
            raise ValidationError(f"Unknown panel {panel_number}", {"panel_number": panel_number})

        inputs = self._current_inputs()
        previous_caption = job.current_step_text
        job.is_generating = True
        job.current_step_text = f"Regenerating panel {panel_number}..."
        await self._emit("status", {"phase": job.phase.value, "message": job.current_step_text})
        try:
            generated = await self.executors.render_panel(
                panel,
                job.character_references,
                job.story_analysis.setting,
                inputs.style,
                inputs.setting_uploads,
            )
            job.upsert_generated_panel(generated)
        finally:
            job.is_generating = False
            job.current_step_text = previous_caption
            await self._persist()

        logger.info(f"✓ Regenerated panel {panel_number}")
        await self._emit("panel", generated.to_dict(include_image=False))
        return generated

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def restore(self) -> bool:
        """
        Load the saved job, if any. A job saved mid-run is marked failed at
        the stage and item it was working on so it can be resumed.

        Returns:
            True if a saved job was restored
        """
        if self.persistence is None:
            return False
        job = await self.persistence.load()
        if job is None:
            return False

        if job.phase in ACTIVE_PHASES:
            stage = next(s for s, phase in STAGE_PHASES.items() if phase == job.phase)
            item_index = self._next_item_index(job, stage)
            job.phase = PipelinePhase.FAILED
            job.current_step_text = ""
            job.error = JobError(message="Generation was interrupted", stage=stage, item_index=item_index)
            logger.info(f"Restored interrupted job at '{stage.value}'")

        self.job = job
        return True

    @staticmethod
    def _next_item_index(job: GenerationJob, stage: Stage) -> Optional[int]:
        if stage == Stage.CHARACTERS and job.story_analysis:
            for index, character in enumerate(job.story_analysis.characters, start=1):
                ref = job.get_character_reference(character.name)
                if ref is None or not ref.image:
                    return index
            return len(job.story_analysis.characters) + 1
        if stage == Stage.PANELS and job.story_breakdown:
            for index, panel in enumerate(job.story_breakdown.panels, start=1):
                generated = job.get_generated_panel(panel.panel_number)
                if generated is None or not generated.image:
                    return index
            return len(job.story_breakdown.panels) + 1
        return None

    async def reset(self) -> None:
        """Discard the job and everything persisted for it."""
        if self.job.is_generating:
            raise PipelineBusyError("reset")
        if self.persistence is not None:
            await self.persistence.clear()
        self.job = GenerationJob()
        logger.info("Job reset")

    async def _persist(self) -> None:
        if self.persistence is not None:
            await self.persistence.save(self.job)

    async def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._on_event is not None:
            await self._on_event(event, data)
