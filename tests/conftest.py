"""
Pytest Configuration and Fixtures

Shared fixtures for all tests.
"""

import io
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from panelforge.core.constants import RequestKind
from panelforge.core.exceptions import PermanentProviderError
from panelforge.core.models import (
    Character,
    CharacterReference,
    GeneratedPanel,
    Panel,
    Setting,
    StoryAnalysis,
    StoryBreakdown,
)
from panelforge.llm.api_clients import ProviderPayload
from panelforge.utils.image_utils import to_data_url


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_story() -> str:
    """A short story with one character."""
    return "A dog named Rex chased a ball in the park."


@pytest.fixture
def png_data_url() -> str:
    """A small, decodable PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 30, 30)).save(buffer, format="PNG")
    return to_data_url(buffer.getvalue(), "image/png")


def make_analysis(*names: str) -> StoryAnalysis:
    return StoryAnalysis(
        title="Rex and the Ball",
        characters=[Character(name=name, physical_description=f"{name} look") for name in names],
        setting=Setting(time_period="present day", location="a park", mood="playful"),
    )


def make_breakdown(count: int) -> StoryBreakdown:
    return StoryBreakdown(panels=[
        Panel(panel_number=n, characters=["Rex"], scene_description=f"Scene {n}", camera_angle="wide")
        for n in range(1, count + 1)
    ])


@pytest.fixture
def sample_analysis() -> StoryAnalysis:
    return make_analysis("Rex")


@pytest.fixture
def sample_breakdown() -> StoryBreakdown:
    return make_breakdown(4)


def text_payload(text: str, provider: str = "gemini") -> ProviderPayload:
    return ProviderPayload(kind=RequestKind.TEXT, provider=provider, model="test-model", text=text)


def image_payload(image: str = "data:image/png;base64,AAAA", provider: str = "gemini") -> ProviderPayload:
    return ProviderPayload(kind=RequestKind.IMAGE, provider=provider, model="test-model", image=image)


def make_provider(name: str, *outcomes) -> MagicMock:
    """
    A provider double whose ``generate`` returns or raises each outcome in turn.
    """
    provider = MagicMock()
    provider.name = name
    provider.is_available = True
    provider.generate = AsyncMock(side_effect=list(outcomes))
    return provider


class FakeExecutors:
    """
    Stage executors double.

    ``fail_characters`` / ``fail_panels`` map a 1-based item index to the
    exception raised when that item is generated. Each entry is used once.
    """

    def __init__(
        self,
        analysis: Optional[StoryAnalysis] = None,
        breakdown: Optional[StoryBreakdown] = None,
        fail_analysis: Optional[Exception] = None,
        fail_layout: Optional[Exception] = None,
        fail_characters: Optional[Dict[int, Exception]] = None,
        fail_panels: Optional[Dict[int, Exception]] = None,
    ):
        self.analysis = analysis or make_analysis("Rex")
        self.breakdown = breakdown or make_breakdown(4)
        self.fail_analysis = fail_analysis
        self.fail_layout = fail_layout
        self.fail_characters = dict(fail_characters or {})
        self.fail_panels = dict(fail_panels or {})
        self.calls: List[str] = []
        self.on_call = None

    def _index_of_character(self, name: str) -> int:
        return self.analysis.character_names().index(name) + 1

    async def analyze_story(self, story, style):
        self.calls.append("analysis")
        if self.fail_analysis is not None:
            error, self.fail_analysis = self.fail_analysis, None
            raise error
        return StoryAnalysis.from_dict(self.analysis.to_dict())

    async def design_character(self, character, setting, style, uploads=None):
        self.calls.append(f"character:{character.name}")
        if self.on_call:
            self.on_call(character.name)
        index = self._index_of_character(character.name)
        if index in self.fail_characters:
            raise self.fail_characters.pop(index)
        return CharacterReference(
            name=character.name,
            image=f"data:image/png;base64,{character.name}",
            description=character.physical_description,
        )

    async def plan_panels(self, story, analysis, style, no_dialogue=False):
        self.calls.append("layout")
        if self.fail_layout is not None:
            error, self.fail_layout = self.fail_layout, None
            raise error
        return StoryBreakdown.from_dict(self.breakdown.to_dict())

    async def render_panel(self, panel, character_references, setting, style, setting_uploads=None):
        self.calls.append(f"panel:{panel.panel_number}")
        if self.on_call:
            self.on_call(panel.panel_number)
        if panel.panel_number in self.fail_panels:
            raise self.fail_panels.pop(panel.panel_number)
        return GeneratedPanel(panel_number=panel.panel_number, image=f"data:image/png;base64,P{panel.panel_number}")


@pytest.fixture
def provider_failure():
    """A non-transient provider error."""
    return PermanentProviderError("gemini", "HTTP 400: bad request", 400)


@pytest.fixture
def fake_provider():
    """Factory for provider doubles: ``fake_provider(name, *outcomes)``."""
    return make_provider


@pytest.fixture
def text_response():
    return text_payload


@pytest.fixture
def image_response():
    return image_payload


@pytest.fixture
def fake_executors():
    """Factory for FakeExecutors."""
    return FakeExecutors


@pytest.fixture
def analysis_factory():
    return make_analysis


@pytest.fixture
def breakdown_factory():
    return make_breakdown
