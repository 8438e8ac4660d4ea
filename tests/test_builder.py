from __future__ import annotations

import base64
from pathlib import Path

import pytest

from fakes import noise_image_bytes, noise_payload

from genstudio.gen.builder import (
    ImageSource,
    build_form,
    build_request,
    clean_base64,
    decode_base64_image,
    order_images,
    parse_data_url,
)
from genstudio.gen.errors import ImageValidationError
from genstudio.gen.types import Mode


class TestBase64Handling:
    def test_parse_data_url(self) -> None:
        assert parse_data_url("data:image/webp;base64,QUJD") == ("image/webp", "QUJD")
        assert parse_data_url("QUJD") == (None, "QUJD")

    def test_clean_strips_header_and_whitespace(self) -> None:
        assert clean_base64("data:image/png;base64,QU\nJD\n") == "QUJD"

    @pytest.mark.parametrize("text", ["", "not base64!!", "data:image/png;base64,@@@@"])
    def test_clean_rejects_bad_input(self, text: str) -> None:
        with pytest.raises(ImageValidationError) as exc_info:
            clean_base64(text)
        assert "Invalid base64 image data format" in str(exc_info.value)

    def test_decode_takes_mime_from_data_url(self) -> None:
        data = noise_image_bytes()
        url = "data:image/jpeg;base64," + base64.b64encode(data).decode()
        payload = decode_base64_image(url)
        assert payload.data == data
        assert payload.mime_type == "image/jpeg"

    def test_explicit_mime_wins(self) -> None:
        payload = decode_base64_image("data:image/jpeg;base64,QUJD", "image/png")
        assert payload.mime_type == "image/png"


class TestImageSource:
    def test_needs_exactly_one_form(self) -> None:
        with pytest.raises(ValueError):
            ImageSource()
        with pytest.raises(ValueError):
            ImageSource(payload=noise_payload(), base64_data="QUJD")

    def test_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "pic.png"
        path.write_bytes(noise_image_bytes())
        src = ImageSource.from_file(path)
        assert not src.is_base64
        assert src.to_payload().mime_type == "image/png"

    def test_base64_roundtrip_to_payload(self) -> None:
        payload = noise_payload()
        src = ImageSource.from_base64(payload.to_data_url())
        assert src.is_base64
        assert src.mime_type == "image/png"
        assert src.to_payload().data == payload.data


class TestBuildRequest:
    def test_current_image_goes_last(self) -> None:
        a, b, cur = (ImageSource.from_payload(noise_payload(n)) for n in ("a.png", "b.png", "cur.png"))
        assert [s.name for s in order_images([a, b], cur)] == ["a.png", "b.png", "cur.png"]

    @pytest.mark.parametrize(
        "count,mode",
        [(0, Mode.GENERATE), (1, Mode.EDIT), (3, Mode.COMPOSE)],
    )
    def test_mode_follows_image_count(self, count: int, mode: Mode) -> None:
        sources = [ImageSource.from_payload(noise_payload(f"{i}.png")) for i in range(count)]
        request = build_request("a prompt", sources)
        assert request.mode is mode
        assert len(request.images) == count

    def test_parts_are_text_then_images(self) -> None:
        new = ImageSource.from_payload(noise_payload("new.png"))
        current = ImageSource.from_base64(noise_payload().to_base64(), "image/png", name="current.png")
        request = build_request("combine", [new], current, instruction="combine")

        parts = request.parts()
        assert parts[0] == {"text": "combine"}
        assert [p["inlineData"]["mimeType"] for p in parts[1:]] == ["image/png", "image/png"]
        assert request.images[0].name == "new.png"
        assert request.images[1].name == "current.png"

    def test_explicit_mode_is_kept(self) -> None:
        request = build_request("x", [ImageSource.from_payload(noise_payload())], mode=Mode.COMPOSE)
        assert request.mode is Mode.COMPOSE


class TestBuildForm:
    def test_files_in_order_with_prompt_first(self) -> None:
        new = ImageSource.from_payload(noise_payload("new.png"))
        current = ImageSource.from_base64(noise_payload().to_base64(), name="generated-image.png")

        data, files = build_form("do it", [new], current, {"instruction": "do it", "model": ""})

        assert list(data) == ["prompt", "instruction"]
        assert data["prompt"] == "do it"
        assert [f[0] for f in files] == ["imageFiles", "imageFiles"]
        assert [f[1][0] for f in files] == ["new.png", "generated-image.png"]
        assert all(isinstance(f[1][1], bytes) for f in files)

    def test_undecodable_base64_falls_back_to_fields(self) -> None:
        current = ImageSource.from_base64("not valid base64!!", "image/webp")

        data, files = build_form("edit", [], current)

        assert files == []
        assert data["imageBase64"] == "not valid base64!!"
        assert data["imageMimeType"] == "image/webp"
