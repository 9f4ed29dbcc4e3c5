"""
Stage executors.

One adapter invocation per call plus request and response shaping. The
orchestrator treats these as black boxes.
"""

from typing import List, Optional

from panelforge.core.config import PipelineConfig
from panelforge.core.constants import ComicStyle, RequestKind
from panelforge.core.logging_config import get_logger
from panelforge.core.models import (
    Character,
    CharacterReference,
    GeneratedPanel,
    Panel,
    Setting,
    StoryAnalysis,
    StoryBreakdown,
    UploadedReference,
)
from panelforge.llm.api_clients import GenerationRequest, ProviderPayload
from panelforge.llm.provider_adapter import ProviderCallAdapter
from panelforge.utils.image_utils import estimate_size_kb
from panelforge.utils.json_utils import parse_model_json

from .prompts import (
    ANALYSIS_SCHEMA,
    LAYOUT_SCHEMA,
    build_analysis_prompt,
    build_character_prompt,
    build_layout_prompt,
    build_panel_prompt,
)

logger = get_logger("pipelines.executors")


def match_uploads(name: str, uploads: List[UploadedReference]) -> List[UploadedReference]:
    """Uploads whose name contains the character name or vice versa, ignoring case."""
    lowered = name.lower()
    return [
        upload for upload in uploads
        if upload.name and (lowered in upload.name.lower() or upload.name.lower() in lowered)
    ]


def _require_image(payload: ProviderPayload) -> str:
    if not payload.image:
        raise ValueError("Provider returned no image")
    return payload.image


class StageExecutors:
    """The four generation stages, each backed by the provider call adapter."""

    def __init__(self, adapter: ProviderCallAdapter, config: Optional[PipelineConfig] = None):
        self.adapter = adapter
        self.config = config or PipelineConfig()

    async def analyze_story(self, story: str, style: ComicStyle) -> StoryAnalysis:
        request = GenerationRequest(
            prompt=build_analysis_prompt(story, style, self.config.max_characters),
            output_schema=ANALYSIS_SCHEMA,
            label="story analysis",
        )

        def parse(payload: ProviderPayload) -> StoryAnalysis:
            analysis = StoryAnalysis.from_dict(parse_model_json(payload.text))
            analysis.characters = analysis.characters[:self.config.max_characters]
            return analysis

        result = await self.adapter.invoke(request, RequestKind.TEXT, parse)
        analysis = result.value
        logger.info(
            f"Analyzed story '{analysis.title}': {len(analysis.characters)} character(s) "
            f"via {result.provider_used}"
        )
        return analysis

    async def design_character(
        self,
        character: Character,
        setting: Setting,
        style: ComicStyle,
        uploads: Optional[List[UploadedReference]] = None,
    ) -> CharacterReference:
        uploads = uploads or []
        matching = match_uploads(character.name, uploads)
        request = GenerationRequest(
            prompt=build_character_prompt(character, setting, style, bool(matching), bool(uploads)),
            attachments=[u.image for u in uploads if u.image],
            label=f"character '{character.name}'",
        )

        result = await self.adapter.invoke(request, RequestKind.IMAGE, _require_image)
        logger.info(
            f"Generated character '{character.name}' ({estimate_size_kb(result.value)} KB, "
            f"{len(matching)}/{len(uploads)} matching uploads) via {result.provider_used}"
        )
        return CharacterReference(
            name=character.name,
            image=result.value,
            description=character.physical_description,
        )

    async def plan_panels(
        self,
        story: str,
        analysis: StoryAnalysis,
        style: ComicStyle,
        no_dialogue: bool = False,
    ) -> StoryBreakdown:
        request = GenerationRequest(
            prompt=build_layout_prompt(
                story, analysis, style, no_dialogue, self.config.min_panels, self.config.max_panels
            ),
            output_schema=LAYOUT_SCHEMA,
            label="layout planning",
        )

        def parse(payload: ProviderPayload) -> StoryBreakdown:
            breakdown = StoryBreakdown.from_dict(parse_model_json(payload.text))
            return self.normalize_breakdown(breakdown, no_dialogue)

        result = await self.adapter.invoke(request, RequestKind.TEXT, parse)
        logger.info(f"Planned {len(result.value.panels)} panel(s) via {result.provider_used}")
        return result.value

    def normalize_breakdown(self, breakdown: StoryBreakdown, no_dialogue: bool) -> StoryBreakdown:
        """
        Order panels, renumber them 1..n and enforce the panel count bounds.

        Raises:
            ValueError: Fewer panels than the configured minimum
        """
        panels = sorted(breakdown.panels, key=lambda p: p.panel_number)[:self.config.max_panels]
        if len(panels) < self.config.min_panels:
            raise ValueError(
                f"Layout has {len(panels)} panel(s), at least {self.config.min_panels} required"
            )
        for number, panel in enumerate(panels, start=1):
            panel.panel_number = number
            if no_dialogue:
                panel.dialogue = None
        return StoryBreakdown(panels=panels)

    async def render_panel(
        self,
        panel: Panel,
        character_references: List[CharacterReference],
        setting: Setting,
        style: ComicStyle,
        setting_uploads: Optional[List[UploadedReference]] = None,
    ) -> GeneratedPanel:
        setting_uploads = setting_uploads or []
        with_images = [ref for ref in character_references if ref.image]
        request = GenerationRequest(
            prompt=build_panel_prompt(
                panel,
                [ref.name for ref in with_images],
                setting,
                style,
                bool(setting_uploads),
            ),
            attachments=[ref.image for ref in with_images] + [u.image for u in setting_uploads if u.image],
            label=f"panel {panel.panel_number}",
        )

        result = await self.adapter.invoke(request, RequestKind.IMAGE, _require_image)
        logger.info(
            f"Generated panel {panel.panel_number} ({estimate_size_kb(result.value)} KB) "
            f"via {result.provider_used}"
        )
        return GeneratedPanel(panel_number=panel.panel_number, image=result.value)
