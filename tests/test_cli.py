"""
Tests for the command-line entry point

Tests for panelforge/__main__.py
"""

from unittest.mock import MagicMock

import pytest

import panelforge.__main__ as cli
from panelforge.core.config import PanelforgeConfig
from panelforge.core.exceptions import TransientProviderError
from panelforge.core.models import CharacterReference, GeneratedPanel, GenerationJob


@pytest.fixture
def story_file(temp_dir, sample_story):
    path = temp_dir / "story.txt"
    path.write_text(sample_story, encoding="utf-8")
    return path


@pytest.fixture
def use_executors(monkeypatch):
    """Route the CLI's executor construction to a given double."""
    def _use(executors):
        monkeypatch.setattr(cli, "build_adapter", MagicMock())
        monkeypatch.setattr(cli, "StageExecutors", lambda adapter, config: executors)
        return executors
    return _use


def generate_args(story_file, temp_dir, *extra):
    return cli.build_parser().parse_args([
        "generate", str(story_file),
        "--output", str(temp_dir / "out"),
        "--state-dir", str(temp_dir / "state"),
        *extra,
    ])


class TestParser:
    """Tests for argument parsing."""

    def test_generate_defaults(self):
        args = cli.build_parser().parse_args(["generate", "story.txt"])

        assert args.command == "generate"
        assert args.style == "manga"
        assert args.resume is False

    def test_serve(self):
        args = cli.build_parser().parse_args(["--verbose", "serve", "--port", "9000"])

        assert args.verbose is True
        assert args.port == 9000


class TestWriteImages:
    """Tests for writing job images to disk."""

    def test_writes_decoded_images(self, temp_dir, png_data_url):
        job = GenerationJob(
            character_references=[CharacterReference(name="Mia the Cat", image=png_data_url)],
            generated_panels=[
                GeneratedPanel(1, png_data_url),
                GeneratedPanel(2, ""),
                GeneratedPanel(3, "data:image/png;base64,@@"),
            ],
        )

        count = cli.write_images(job, temp_dir / "out")

        assert count == 2
        names = sorted(p.name for p in (temp_dir / "out").iterdir())
        assert names == ["character_Mia_the_Cat.png", "panel_01.png"]
        assert (temp_dir / "out" / "panel_01.png").read_bytes().startswith(b"\x89PNG")


class TestRunGenerate:
    """Tests for running a story from the command line."""

    @pytest.mark.asyncio
    async def test_success(self, temp_dir, story_file, fake_executors, use_executors, capsys):
        use_executors(fake_executors())

        code = await cli.run_generate(generate_args(story_file, temp_dir), PanelforgeConfig())

        assert code == 0
        assert "complete: 4 panel(s)" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_failure_then_resume(self, temp_dir, story_file, fake_executors, use_executors, capsys):
        """Test that a failed run can be resumed from its saved state."""
        executors = use_executors(fake_executors(fail_panels={3: TransientProviderError("gemini", "Request timeout")}))

        code = await cli.run_generate(generate_args(story_file, temp_dir), PanelforgeConfig())

        assert code == 1
        assert "--resume" in capsys.readouterr().out

        code = await cli.run_generate(generate_args(story_file, temp_dir, "--resume"), PanelforgeConfig())

        assert code == 0
        assert executors.calls[-2:] == ["panel:3", "panel:4"]

    @pytest.mark.asyncio
    async def test_resume_without_state(self, temp_dir, story_file, fake_executors, use_executors):
        use_executors(fake_executors())

        code = await cli.run_generate(generate_args(story_file, temp_dir, "--resume"), PanelforgeConfig())

        assert code == 1
