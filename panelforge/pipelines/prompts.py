"""
Prompt builders and response schemas for the four generation stages.
"""

from typing import Any, Dict, List

from panelforge.core.constants import ComicStyle, STYLE_PREFIXES
from panelforge.core.models import Character, Panel, Setting, StoryAnalysis

# Schemas use the Gemini responseSchema dialect; the Grok client converts them.
ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "characters": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "physicalDescription": {"type": "STRING"},
                    "personality": {"type": "STRING"},
                    "role": {"type": "STRING"},
                },
                "propertyOrdering": ["name", "physicalDescription", "personality", "role"],
            },
        },
        "setting": {
            "type": "OBJECT",
            "properties": {
                "timePeriod": {"type": "STRING"},
                "location": {"type": "STRING"},
                "mood": {"type": "STRING"},
            },
            "propertyOrdering": ["timePeriod", "location", "mood"],
        },
    },
    "propertyOrdering": ["title", "characters", "setting"],
}

LAYOUT_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "panels": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "panelNumber": {"type": "NUMBER"},
                    "characters": {"type": "ARRAY", "items": {"type": "STRING"}},
                    "sceneDescription": {"type": "STRING"},
                    "dialogue": {"type": "STRING"},
                    "cameraAngle": {"type": "STRING"},
                    "visualMood": {"type": "STRING"},
                },
                "propertyOrdering": [
                    "panelNumber",
                    "characters",
                    "sceneDescription",
                    "dialogue",
                    "cameraAngle",
                    "visualMood",
                ],
            },
        },
    },
    "propertyOrdering": ["panels"],
}

LAYOUT_GUIDANCE = {
    ComicStyle.MANGA: (
        "Manga panel guidelines:\n"
        "- Dynamic panel shapes and sizes, vertical emphasis for dramatic moments\n"
        "- Action lines for movement, close-ups for emotional beats\n"
        "- Wide shots to establish scenes, dramatic angles and perspectives"
    ),
    ComicStyle.COMIC: (
        "American comic panel guidelines:\n"
        "- Rectangular panels with consistent borders\n"
        "- Wide establishing shots, medium shots for dialogue, close-ups for drama\n"
        "- Clean, structured compositions with bold visual storytelling"
    ),
}


def build_analysis_prompt(story: str, style: ComicStyle, max_characters: int) -> str:
    return f"""
Analyze this story and extract its main characters.

Story: "{story}"

Style: {style.value}

Provide:
1. A title for the story (invent a fitting one if none is given)
2. The main characters (1-{max_characters}, based on the story's complexity), each with
   name, physical description (age, build, hair, clothing, distinctive features),
   personality traits and role in the story
3. The setting: time period, location and mood
""".strip()


def build_character_prompt(
    character: Character,
    setting: Setting,
    style: ComicStyle,
    has_matching_uploads: bool,
    has_uploads: bool,
) -> str:
    style_prefix = STYLE_PREFIXES[style]["character"]
    prompt = f"""
Character reference sheet in {style_prefix}.

Full body character design showing a front view of {character.name}:
- Physical appearance: {character.physical_description}
- Personality: {character.personality}
- Role: {character.role}
- Setting context: {setting.time_period}, {setting.location}
""".strip()

    if has_matching_uploads:
        prompt += (
            "\n\nUse the provided reference images as the basis for this character's design, "
            f"adapted to the {style_prefix} aesthetic while keeping their key visual features."
        )
    elif has_uploads:
        prompt += "\n\nReference images are provided; use them as general style inspiration only."

    prompt += (
        "\n\nDraw the character in a neutral pose against a plain background so the design is "
        "clear. This sheet keeps the character consistent across every panel."
    )
    return prompt


def build_layout_prompt(
    story: str,
    analysis: StoryAnalysis,
    style: ComicStyle,
    no_dialogue: bool,
    min_panels: int,
    max_panels: int,
) -> str:
    character_names = ", ".join(analysis.character_names())
    setting = analysis.setting
    dialogue_rule = (
        "Do not include any dialogue; tell the story visually."
        if no_dialogue
        else "Include short dialogue where it helps the story."
    )
    return f"""
Break this story down into individual comic panels.

Story: "{story}"
Characters: {character_names}
Setting: {setting.location}, {setting.time_period}, {setting.mood}
Style: {style.value}

{LAYOUT_GUIDANCE[style]}

Create {min_panels}-{max_panels} panels depending on the story's complexity and pacing.
{dialogue_rule}

For each panel give the characters present (using the names above), the scene
description, dialogue (if any), camera angle and visual mood. Return a flat list
of panels with sequential panel numbers starting at 1.
""".strip()


def build_panel_prompt(
    panel: Panel,
    referenced_characters: List[str],
    setting: Setting,
    style: ComicStyle,
    has_setting_uploads: bool,
) -> str:
    style_prefix = STYLE_PREFIXES[style]["panel"]
    described = [
        f"{name} (matching the character design shown in the reference image)"
        if name in referenced_characters else name
        for name in panel.characters
    ]
    cast = " and ".join(described) or "the scene"
    dialogue = f'Dialogue: "{panel.dialogue}".' if panel.dialogue else "No dialogue."

    prompt = f"""
Create a single comic panel in {style_prefix}.

Setting: {setting.location}, {setting.time_period}, mood: {setting.mood}

Panel {panel.panel_number}: {panel.camera_angle} shot of {cast}. Scene: {panel.scene_description}. {dialogue} Mood: {panel.visual_mood}.

Use the character reference images provided so every character matches their reference exactly.
""".strip()

    if has_setting_uploads:
        prompt += (
            "\nUse the provided setting reference images to guide the environment, lighting "
            f"and atmosphere, adapted to the {style_prefix} aesthetic."
        )

    prompt += (
        "\n\nInclude a clear panel border, speech bubbles containing only the spoken text "
        "(no speaker names), thought bubbles and sound effects where appropriate."
    )
    return prompt
