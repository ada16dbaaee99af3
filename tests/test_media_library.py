import json
from pathlib import Path

import pytest

from iris.exceptions import ImageNotFoundError
from iris.services.media_library import ManifestImageSource


@pytest.fixture
def library(tmp_path: Path) -> Path:
    (tmp_path / "cat.png").write_bytes(b"\x89PNG-cat")
    (tmp_path / "clip.mp4").write_bytes(b"video")
    manifest = [
        {"id": "img-1", "kind": "image", "filename": "cat.png"},
        {"id": "vid-1", "kind": "video", "filename": "clip.mp4"},
        {"id": "img-gone", "kind": "image", "filename": "gone.jpg"},
        {"id": "img-escape", "kind": "image", "filename": "../outside.png"},
    ]
    (tmp_path / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    return tmp_path


class TestManifestImageSource:
    def test_load_image(self, library: Path):
        image = ManifestImageSource(library).load("img-1")
        assert image.id == "img-1"
        assert image.data == b"\x89PNG-cat"
        assert image.mime_type == "image/png"

    @pytest.mark.parametrize("image_id", ["unknown", "vid-1", "img-gone", "img-escape"])
    def test_not_found(self, library: Path, image_id: str):
        with pytest.raises(ImageNotFoundError) as exc_info:
            ManifestImageSource(library).load(image_id)
        assert exc_info.value.image_id == image_id

    def test_missing_manifest(self, tmp_path: Path):
        with pytest.raises(ImageNotFoundError):
            ManifestImageSource(tmp_path).load("img-1")

    def test_corrupt_manifest(self, tmp_path: Path):
        (tmp_path / "manifest.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ImageNotFoundError):
            ManifestImageSource(tmp_path).load("img-1")
