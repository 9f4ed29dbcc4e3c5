"""
Panelforge Domain Models

Dataclasses for the generation job and the outputs of each pipeline stage.
Dictionary forms use the camelCase keys requested from providers so that
provider JSON, persisted records and API payloads share one shape.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import (
    ComicStyle,
    PipelinePhase,
    Stage,
    STAGE_ORDER,
)


def _require_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing or empty field '{key}'")
    return value.strip()


def _require_object(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise ValueError(f"Expected an object for {what}, got {type(data).__name__}")
    return data


def _optional_str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return str(value).strip()


# =============================================================================
# STORY ANALYSIS
# =============================================================================

@dataclass
class Character:
    """A story character. ``name`` is the natural key used downstream."""
    name: str
    physical_description: str = ""
    personality: str = ""
    role: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "physicalDescription": self.physical_description,
            "personality": self.personality,
            "role": self.role,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Character':
        data = _require_object(data, "Character")
        return cls(
            name=_require_str(data, "name"),
            physical_description=_optional_str(data, "physicalDescription"),
            personality=_optional_str(data, "personality"),
            role=_optional_str(data, "role"),
        )


@dataclass
class Setting:
    """Where and when the story takes place."""
    time_period: str = ""
    location: str = ""
    mood: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timePeriod": self.time_period,
            "location": self.location,
            "mood": self.mood,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Setting':
        data = _require_object(data, "Setting")
        return cls(
            time_period=_optional_str(data, "timePeriod"),
            location=_optional_str(data, "location"),
            mood=_optional_str(data, "mood"),
        )


@dataclass
class StoryAnalysis:
    """Output of the analysis stage."""
    title: str
    characters: List[Character]
    setting: Setting

    def character_names(self) -> List[str]:
        return [c.name for c in self.characters]

    def get_character(self, name: str) -> Optional[Character]:
        for character in self.characters:
            if character.name == name:
                return character
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "characters": [c.to_dict() for c in self.characters],
            "setting": self.setting.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StoryAnalysis':
        data = _require_object(data, "StoryAnalysis")
        raw_characters = data.get("characters")
        if not isinstance(raw_characters, list) or not raw_characters:
            raise ValueError("Story analysis contains no characters")

        characters: List[Character] = []
        seen = set()
        for raw in raw_characters:
            character = Character.from_dict(raw)
            # Names are keys; keep the first occurrence
            if character.name in seen:
                continue
            seen.add(character.name)
            characters.append(character)

        return cls(
            title=_optional_str(data, "title") or "Untitled",
            characters=characters,
            setting=Setting.from_dict(data.get("setting") or {}),
        )


# =============================================================================
# CHARACTER REFERENCES
# =============================================================================

@dataclass
class CharacterReference:
    """A generated reference image for one analysed character."""
    name: str
    image: str = ""
    description: str = ""

    def to_dict(self, include_image: bool = True) -> Dict[str, Any]:
        data = {"name": self.name, "description": self.description}
        if include_image:
            data["image"] = self.image
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'CharacterReference':
        data = _require_object(data, "CharacterReference")
        return cls(
            name=data["name"],
            image=data.get("image", ""),
            description=data.get("description", ""),
        )


# =============================================================================
# LAYOUT
# =============================================================================

@dataclass
class Panel:
    """One planned panel of the comic."""
    panel_number: int
    characters: List[str] = field(default_factory=list)
    scene_description: str = ""
    dialogue: Optional[str] = None
    camera_angle: str = ""
    visual_mood: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "panelNumber": self.panel_number,
            "characters": list(self.characters),
            "sceneDescription": self.scene_description,
            "cameraAngle": self.camera_angle,
            "visualMood": self.visual_mood,
        }
        if self.dialogue:
            data["dialogue"] = self.dialogue
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Panel':
        data = _require_object(data, "Panel")
        characters = data.get("characters") or []
        if isinstance(characters, str):
            characters = [characters]
        dialogue = data.get("dialogue")
        return cls(
            panel_number=int(data["panelNumber"]),
            characters=[str(c) for c in characters],
            scene_description=_require_str(data, "sceneDescription"),
            dialogue=str(dialogue).strip() if dialogue else None,
            camera_angle=_optional_str(data, "cameraAngle"),
            visual_mood=_optional_str(data, "visualMood"),
        )


@dataclass
class StoryBreakdown:
    """Output of the layout stage. Panel numbers run 1..n in order."""
    panels: List[Panel]

    def panel_numbers(self) -> List[int]:
        return [p.panel_number for p in self.panels]

    def get_panel(self, panel_number: int) -> Optional[Panel]:
        for panel in self.panels:
            if panel.panel_number == panel_number:
                return panel
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"panels": [p.to_dict() for p in self.panels]}

    @classmethod
    def from_dict(cls, data: dict) -> 'StoryBreakdown':
        data = _require_object(data, "StoryBreakdown")
        raw_panels = data.get("panels")
        if not isinstance(raw_panels, list):
            raise ValueError("Story breakdown contains no panel list")
        return cls(panels=[Panel.from_dict(p) for p in raw_panels])


@dataclass
class GeneratedPanel:
    """A rendered panel image."""
    panel_number: int
    image: str = ""

    def to_dict(self, include_image: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {"panelNumber": self.panel_number}
        if include_image:
            data["image"] = self.image
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'GeneratedPanel':
        data = _require_object(data, "GeneratedPanel")
        return cls(panel_number=int(data["panelNumber"]), image=data.get("image", ""))


# =============================================================================
# INPUTS
# =============================================================================

@dataclass
class UploadedReference:
    """A user-supplied reference image for a character or the setting."""
    id: str
    name: str
    image: str = ""
    kind: str = "character"

    def to_dict(self, include_image: bool = True) -> Dict[str, Any]:
        data = {"id": self.id, "name": self.name, "kind": self.kind}
        if include_image:
            data["image"] = self.image
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'UploadedReference':
        data = _require_object(data, "UploadedReference")
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            image=data.get("image", ""),
            kind=data.get("kind", "character"),
        )


@dataclass
class RunInputs:
    """Inputs captured at the start of a run, reused by retries."""
    story: str
    style: ComicStyle = ComicStyle.MANGA
    no_dialogue: bool = False
    character_uploads: List[UploadedReference] = field(default_factory=list)
    setting_uploads: List[UploadedReference] = field(default_factory=list)

    def uploads(self) -> List[UploadedReference]:
        return self.character_uploads + self.setting_uploads

    def to_dict(self, include_images: bool = True) -> Dict[str, Any]:
        return {
            "story": self.story,
            "style": self.style.value,
            "noDialogue": self.no_dialogue,
            "characterUploads": [u.to_dict(include_images) for u in self.character_uploads],
            "settingUploads": [u.to_dict(include_images) for u in self.setting_uploads],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RunInputs':
        data = _require_object(data, "RunInputs")
        return cls(
            story=data.get("story", ""),
            style=ComicStyle(data.get("style", ComicStyle.MANGA.value)),
            no_dialogue=bool(data.get("noDialogue", False)),
            character_uploads=[UploadedReference.from_dict(u) for u in data.get("characterUploads", [])],
            setting_uploads=[UploadedReference.from_dict(u) for u in data.get("settingUploads", [])],
        )


# =============================================================================
# JOB
# =============================================================================

@dataclass
class JobError:
    """The last failure of a job, with enough context for one retry affordance."""
    message: str
    stage: Optional[Stage] = None
    item_index: Optional[int] = None
    content_blocked: bool = False

    @property
    def retryable(self) -> bool:
        return self.stage is not None and not self.content_blocked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "stage": self.stage.value if self.stage else None,
            "itemIndex": self.item_index,
            "contentBlocked": self.content_blocked,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'JobError':
        data = _require_object(data, "JobError")
        stage = data.get("stage")
        return cls(
            message=data.get("message", ""),
            stage=Stage(stage) if stage else None,
            item_index=data.get("itemIndex"),
            content_blocked=bool(data.get("contentBlocked", False)),
        )


@dataclass
class GenerationJob:
    """Root aggregate owned by one orchestrator per session."""

    # Draft inputs, editable between runs
    story: str = ""
    style: ComicStyle = ComicStyle.MANGA
    no_dialogue: bool = False
    character_uploads: List[UploadedReference] = field(default_factory=list)
    setting_uploads: List[UploadedReference] = field(default_factory=list)

    phase: PipelinePhase = PipelinePhase.IDLE
    story_analysis: Optional[StoryAnalysis] = None
    character_references: List[CharacterReference] = field(default_factory=list)
    story_breakdown: Optional[StoryBreakdown] = None
    generated_panels: List[GeneratedPanel] = field(default_factory=list)

    error: Optional[JobError] = None
    is_generating: bool = False
    current_step_text: str = ""
    run_inputs: Optional[RunInputs] = None

    # -------------------------------------------------------------------------
    # Stage outputs
    # -------------------------------------------------------------------------

    def has_output(self, stage: Stage) -> bool:
        if stage == Stage.ANALYSIS:
            return self.story_analysis is not None
        if stage == Stage.CHARACTERS:
            return bool(self.character_references)
        if stage == Stage.LAYOUT:
            return self.story_breakdown is not None
        return bool(self.generated_panels)

    def clear_outputs_from(self, stage: Stage) -> None:
        """Clear the output of ``stage`` and of every later stage."""
        index = STAGE_ORDER.index(stage)
        for later in STAGE_ORDER[index:]:
            if later == Stage.ANALYSIS:
                self.story_analysis = None
            elif later == Stage.CHARACTERS:
                self.character_references = []
            elif later == Stage.LAYOUT:
                self.story_breakdown = None
            elif later == Stage.PANELS:
                self.generated_panels = []

    def get_character_reference(self, name: str) -> Optional[CharacterReference]:
        for ref in self.character_references:
            if ref.name == name:
                return ref
        return None

    def upsert_character_reference(self, reference: CharacterReference) -> None:
        """Replace the reference with the same name, or insert it in analysis order."""
        refs = [r for r in self.character_references if r.name != reference.name]
        refs.append(reference)
        if self.story_analysis:
            order = {name: i for i, name in enumerate(self.story_analysis.character_names())}
            refs.sort(key=lambda r: order.get(r.name, len(order)))
        self.character_references = refs

    def get_generated_panel(self, panel_number: int) -> Optional[GeneratedPanel]:
        for panel in self.generated_panels:
            if panel.panel_number == panel_number:
                return panel
        return None

    def upsert_generated_panel(self, panel: GeneratedPanel) -> None:
        """Replace the panel with the same number, keeping panels sorted."""
        panels = [p for p in self.generated_panels if p.panel_number != panel.panel_number]
        panels.append(panel)
        panels.sort(key=lambda p: p.panel_number)
        self.generated_panels = panels

    @property
    def is_complete(self) -> bool:
        """True when every planned panel has a rendered image."""
        if not self.story_breakdown or not self.story_breakdown.panels:
            return False
        for number in self.story_breakdown.panel_numbers():
            generated = self.get_generated_panel(number)
            if generated is None or not generated.image:
                return False
        return True

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self, include_images: bool = True) -> Dict[str, Any]:
        return {
            "story": self.story,
            "style": self.style.value,
            "noDialogue": self.no_dialogue,
            "characterUploads": [u.to_dict(include_images) for u in self.character_uploads],
            "settingUploads": [u.to_dict(include_images) for u in self.setting_uploads],
            "phase": self.phase.value,
            "storyAnalysis": self.story_analysis.to_dict() if self.story_analysis else None,
            "characterReferences": [r.to_dict(include_images) for r in self.character_references],
            "storyBreakdown": self.story_breakdown.to_dict() if self.story_breakdown else None,
            "generatedPanels": [p.to_dict(include_images) for p in self.generated_panels],
            "error": self.error.to_dict() if self.error else None,
            "isGenerating": self.is_generating,
            "currentStepText": self.current_step_text,
            "runInputs": self.run_inputs.to_dict(include_images) if self.run_inputs else None,
        }

    def to_record(self) -> Dict[str, Any]:
        """Structured persistence form: no image payloads, no transient flags."""
        data = self.to_dict(include_images=False)
        del data["isGenerating"]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'GenerationJob':
        data = _require_object(data, "GenerationJob")
        analysis = data.get("storyAnalysis")
        breakdown = data.get("storyBreakdown")
        error = data.get("error")
        run_inputs = data.get("runInputs")
        return cls(
            story=data.get("story", ""),
            style=ComicStyle(data.get("style", ComicStyle.MANGA.value)),
            no_dialogue=bool(data.get("noDialogue", False)),
            character_uploads=[UploadedReference.from_dict(u) for u in data.get("characterUploads", [])],
            setting_uploads=[UploadedReference.from_dict(u) for u in data.get("settingUploads", [])],
            phase=PipelinePhase(data.get("phase", PipelinePhase.IDLE.value)),
            story_analysis=StoryAnalysis.from_dict(analysis) if analysis else None,
            character_references=[CharacterReference.from_dict(r) for r in data.get("characterReferences", [])],
            story_breakdown=StoryBreakdown.from_dict(breakdown) if breakdown else None,
            generated_panels=[GeneratedPanel.from_dict(p) for p in data.get("generatedPanels", [])],
            error=JobError.from_dict(error) if error else None,
            is_generating=bool(data.get("isGenerating", False)),
            current_step_text=data.get("currentStepText", ""),
            run_inputs=RunInputs.from_dict(run_inputs) if run_inputs else None,
        )

    def summary(self) -> Dict[str, Any]:
        """Lightweight status view without stage payloads."""
        total_panels = len(self.story_breakdown.panels) if self.story_breakdown else 0
        total_characters = len(self.story_analysis.characters) if self.story_analysis else 0
        return {
            "phase": self.phase.value,
            "isGenerating": self.is_generating,
            "currentStepText": self.current_step_text,
            "title": self.story_analysis.title if self.story_analysis else None,
            "charactersDone": len(self.character_references),
            "charactersTotal": total_characters,
            "panelsDone": len(self.generated_panels),
            "panelsTotal": total_panels,
            "error": self.error.to_dict() if self.error else None,
            "canRetry": bool(self.error and self.error.retryable and not self.is_generating),
        }
