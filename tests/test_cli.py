from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from fakes import noise_image_bytes

from genstudio.cli import app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "studio.toml"
    path.write_text("""
default_provider = "placeholder"

[providers.placeholder]
image_size = 64
polls_until_done = 1

[poll]
interval_sec = 0
""")
    return path


@pytest.fixture
def photo(tmp_path: Path) -> Path:
    path = tmp_path / "photo.png"
    path.write_bytes(noise_image_bytes())
    return path


class TestImageCommands:
    def test_generate(self, tmp_path: Path, config_file: Path) -> None:
        out = tmp_path / "gen"
        result = runner.invoke(app, ["--config", str(config_file), "generate", "a lighthouse", "--out", str(out)])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "gen.png").exists()
        assert "OK" in result.output

    def test_edit(self, tmp_path: Path, config_file: Path, photo: Path) -> None:
        out = tmp_path / "edited.png"
        result = runner.invoke(app, ["--config", str(config_file), "edit", str(photo), "add a hat", "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert out.exists()

    def test_compose(self, tmp_path: Path, config_file: Path, photo: Path) -> None:
        other = tmp_path / "other.png"
        other.write_bytes(noise_image_bytes())
        out = tmp_path / "composed"

        result = runner.invoke(
            app, ["--config", str(config_file), "compose", "blend", str(photo), str(other), "-o", str(out)]
        )

        assert result.exit_code == 0, result.output
        assert (tmp_path / "composed.png").exists()

    def test_check_image(self, config_file: Path, photo: Path) -> None:
        result = runner.invoke(app, ["--config", str(config_file), "check-image", str(photo)])
        assert result.exit_code == 0, result.output
        assert "image/png" in result.output

    def test_check_image_rejects_tiny_file(self, tmp_path: Path, config_file: Path) -> None:
        tiny = tmp_path / "tiny.png"
        tiny.write_bytes(b"x")
        result = runner.invoke(app, ["--config", str(config_file), "check-image", str(tiny)])
        assert result.exit_code == 1
        assert "File too small or corrupted" in result.output


class TestVideoAndRun:
    def test_video(self, tmp_path: Path, config_file: Path) -> None:
        out = tmp_path / "clip"
        result = runner.invoke(app, ["--config", str(config_file), "video", "waves", "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "clip.gif").exists()
        assert "completed" in result.output

    def test_run_request_file_with_event_log(self, tmp_path: Path, config_file: Path, photo: Path) -> None:
        req = tmp_path / "req.yaml"
        req.write_text(f"mode: edit\nprompt: add a hat\nimages: [{photo.name}]\noutput: hat.png\n")
        log = tmp_path / "events.jsonl"

        result = runner.invoke(app, ["--config", str(config_file), "--log-jsonl", str(log), "run", str(req)])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "hat.png").exists()
        names = [json.loads(line)["event"] for line in log.read_text().splitlines()]
        assert "generation_succeeded" in names

    def test_invalid_request_file(self, tmp_path: Path, config_file: Path) -> None:
        req = tmp_path / "req.yaml"
        req.write_text("mode: edit\nprompt: no images\n")
        result = runner.invoke(app, ["--config", str(config_file), "run", str(req)])
        assert result.exit_code == 2

    def test_verbose_prints_events(self, tmp_path: Path, config_file: Path) -> None:
        result = runner.invoke(
            app, ["--config", str(config_file), "--verbose", "generate", "x", "-o", str(tmp_path / "g")]
        )
        assert result.exit_code == 0, result.output
        assert "generation_attempt" in result.output


class TestConfigErrors:
    def test_missing_explicit_config(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.toml"), "generate", "x"])
        assert result.exit_code == 2
        assert "Config error" in result.output

    def test_unknown_provider(self, tmp_path: Path, config_file: Path) -> None:
        result = runner.invoke(
            app, ["--config", str(config_file), "--provider", "dall-e", "generate", "x", "-o", str(tmp_path / "g")]
        )
        assert result.exit_code == 2
        assert "Unknown provider" in result.output
