"""
Panelforge Constants

Global constants used throughout the Panelforge system.
"""

from enum import Enum
from typing import Dict, List

# =============================================================================
# VERSION INFO
# =============================================================================
VERSION = "1.0.0"
PROJECT_NAME = "Panelforge"

# Persisted record schema version. Bump when the record layout changes.
STORAGE_VERSION = "1.0.0"

# =============================================================================
# STORY INPUT
# =============================================================================

MAX_STORY_WORDS = 500
MAX_CHARACTERS = 4
MIN_PANELS = 2
MAX_PANELS = 15


class ComicStyle(Enum):
    """Visual style of the generated comic."""
    MANGA = "manga"
    COMIC = "comic"


STYLE_PREFIXES: Dict[ComicStyle, Dict[str, str]] = {
    ComicStyle.MANGA: {
        "character": "Japanese manga style, black and white, detailed character design "
                     "with clean line art and screentones, English text only",
        "panel": "Japanese manga visual style (black and white with screentones), "
                 "but with English text",
    },
    ComicStyle.COMIC: {
        "character": "American comic book style, colorful superhero art with bold "
                     "colors and clean line art",
        "panel": "American comic book style, full color, clean line art",
    },
}

# =============================================================================
# PIPELINE STAGES
# =============================================================================

class Stage(Enum):
    """Ordered pipeline stages. Values are the names recorded on failures."""
    ANALYSIS = "analysis"
    CHARACTERS = "characters"
    LAYOUT = "layout"
    PANELS = "panels"


STAGE_ORDER: List[Stage] = [
    Stage.ANALYSIS,
    Stage.CHARACTERS,
    Stage.LAYOUT,
    Stage.PANELS,
]

# Stages that produce one addressable item per provider call
INCREMENTAL_STAGES = (Stage.CHARACTERS, Stage.PANELS)


class PipelinePhase(Enum):
    """Job state machine phases."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    GENERATING_CHARACTERS = "generating_characters"
    PLANNING_LAYOUT = "planning_layout"
    GENERATING_PANELS = "generating_panels"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_PHASES: Dict[Stage, PipelinePhase] = {
    Stage.ANALYSIS: PipelinePhase.ANALYZING,
    Stage.CHARACTERS: PipelinePhase.GENERATING_CHARACTERS,
    Stage.LAYOUT: PipelinePhase.PLANNING_LAYOUT,
    Stage.PANELS: PipelinePhase.GENERATING_PANELS,
}

ACTIVE_PHASES = frozenset(STAGE_PHASES.values())

# Progress captions shown while a stage runs
STAGE_CAPTIONS: Dict[Stage, str] = {
    Stage.ANALYSIS: "Analyzing your story...",
    Stage.CHARACTERS: "Creating character designs...",
    Stage.LAYOUT: "Planning comic layout...",
    Stage.PANELS: "Generating panels...",
}
PANEL_CAPTION = "Generating panel {current}/{total}..."
COMPLETE_CAPTION = "Complete!"
CANCELLED_MESSAGE = "Generation cancelled"

# =============================================================================
# PROVIDERS
# =============================================================================

class RequestKind(Enum):
    """Kind of output requested from a provider."""
    TEXT = "text"
    IMAGE = "image"


GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TEXT_MODEL = "gemini-2.5-flash"
GEMINI_IMAGE_MODEL = "gemini-2.5-flash-image-preview"

XAI_BASE_URL = "https://api.x.ai/v1"
XAI_TEXT_MODEL = "grok-4"
XAI_IMAGE_MODEL = "grok-2-image"

# Fixed delay before the single transient retry, in seconds
DEFAULT_RETRY_DELAY = 1.5

# Error text length kept in attempt logs
ERROR_LOG_LIMIT = 200

# =============================================================================
# STORAGE
# =============================================================================

RECORD_KEY = "generation-job"
CHARACTER_BLOB_PREFIX = "char-"
PANEL_BLOB_PREFIX = "panel-"
UPLOAD_BLOB_PREFIX = "upload-"

# Synchronous record store budget, mirrors a browser local-storage quota
DEFAULT_RECORD_CAPACITY = 5 * 1024 * 1024

# =============================================================================
# HTTP SURFACE
# =============================================================================

GENERATION_RATE_LIMIT = "25/minute"
SESSION_HEADER = "X-Session-ID"
DEFAULT_SESSION_ID = "default"
