"""
Tests for atlas lookup and download.

``requests.get`` is replaced by a fake response, so no network access is
needed.
"""

import json

import pytest
import requests

from act_connectome import atlas as atlas_mod
from act_connectome.atlas import (
    CHECKSUM_FILENAME,
    fetch_atlas,
    locate_mni_template,
    locate_parcellation,
)
from act_connectome.utils import AtlasError, sha256_file


class FakeResponse:

    def __init__(self, chunks=(b"abc", b"def"), status_code=200, fail_midway=False):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.fail_midway = fail_midway
        self.headers = {"content-length": str(sum(len(c) for c in self.chunks))}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        for i, chunk in enumerate(self.chunks):
            if self.fail_midway and i == 1:
                raise requests.ConnectionError("connection reset")
            yield chunk


# ---------------------------------------------------------------------------
# Local lookup
# ---------------------------------------------------------------------------

class TestLocateParcellation:

    def test_single_match(self, parcellation_dir):
        path = locate_parcellation(parcellation_dir)
        assert path.name.startswith("Schaefer2018_400Parcels")

    def test_missing_folder(self, tmp_path):
        with pytest.raises(AtlasError, match="does not exist"):
            locate_parcellation(tmp_path / "PARCELLATION")

    def test_no_match(self, parcellation_dir):
        with pytest.raises(AtlasError, match="No parcellation"):
            locate_parcellation(parcellation_dir, "Glasser*.nii.gz")

    def test_several_matches(self, parcellation_dir):
        (parcellation_dir / "Schaefer2018_100Parcels.nii.gz").write_bytes(b"")
        with pytest.raises(AtlasError, match="Several"):
            locate_parcellation(parcellation_dir)


class TestLocateMniTemplate:

    def test_in_parcellation_dir(self, parcellation_dir):
        assert locate_mni_template(parcellation_dir).parent == parcellation_dir

    def test_fsl_fallback(self, tmp_path, monkeypatch):
        standard = tmp_path / "fsl" / "data" / "standard"
        standard.mkdir(parents=True)
        template = standard / "MNI152_T1_1mm_brain.nii.gz"
        template.write_bytes(b"")
        monkeypatch.setenv("FSLDIR", str(tmp_path / "fsl"))

        assert locate_mni_template(tmp_path / "empty") == template

    def test_not_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FSLDIR", raising=False)
        with pytest.raises(AtlasError, match="FSLDIR is not set"):
            locate_mni_template(tmp_path)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------

class TestFetchAtlas:
    """Tests for the streamed atlas download."""

    def test_download_and_checksum(self, tmp_path, monkeypatch):
        monkeypatch.setattr(atlas_mod.requests, "get", lambda url, **kw: FakeResponse())
        dest = tmp_path / "PARCELLATION" / "atlas.nii.gz"

        fetch_atlas("https://example.org/atlas.nii.gz", dest)

        assert dest.read_bytes() == b"abcdef"
        registry = json.loads((dest.parent / CHECKSUM_FILENAME).read_text())
        assert registry["atlas.nii.gz"]["sha256"] == sha256_file(dest)
        assert registry["atlas.nii.gz"]["source"] == "https://example.org/atlas.nii.gz"

    def test_existing_file_not_downloaded(self, tmp_path, monkeypatch):
        def forbidden(url, **kw):
            raise AssertionError("unexpected download")

        monkeypatch.setattr(atlas_mod.requests, "get", forbidden)
        dest = tmp_path / "atlas.nii.gz"
        dest.write_bytes(b"cached")
        assert fetch_atlas("https://example.org/atlas.nii.gz", dest) == dest
        assert dest.read_bytes() == b"cached"

    def test_http_error(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            atlas_mod.requests, "get", lambda url, **kw: FakeResponse(status_code=404),
        )
        with pytest.raises(AtlasError, match="HTTP error 404"):
            fetch_atlas("https://example.org/missing.nii.gz", tmp_path / "a.nii.gz")

    def test_connection_error(self, tmp_path, monkeypatch):
        def offline(url, **kw):
            raise requests.ConnectionError("offline")

        monkeypatch.setattr(atlas_mod.requests, "get", offline)
        with pytest.raises(AtlasError, match="Network error"):
            fetch_atlas("https://example.org/a.nii.gz", tmp_path / "a.nii.gz")

    def test_invalid_url(self, tmp_path, monkeypatch):
        def bad_url(url, **kw):
            raise requests.exceptions.MissingSchema(f"Invalid URL {url!r}")

        monkeypatch.setattr(atlas_mod.requests, "get", bad_url)
        with pytest.raises(AtlasError, match="Cannot download"):
            fetch_atlas("atlas.nii.gz", tmp_path / "a.nii.gz")

    def test_interrupted_download_leaves_nothing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            atlas_mod.requests, "get", lambda url, **kw: FakeResponse(fail_midway=True),
        )
        dest = tmp_path / "a.nii.gz"
        with pytest.raises(AtlasError, match="interrupted"):
            fetch_atlas("https://example.org/a.nii.gz", dest)
        assert list(tmp_path.iterdir()) == []


class TestAtlasCli:

    def test_fetch_into_folder(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FSLDIR", raising=False)
        monkeypatch.setattr(atlas_mod.requests, "get", lambda url, **kw: FakeResponse())
        target = tmp_path / "PARCELLATION"

        status = atlas_mod.main([
            "--parcellation-dir", str(target),
            "--url", "https://example.org/Schaefer_test.nii.gz",
        ])

        assert status == 0
        assert (target / "Schaefer_test.nii.gz").is_file()

    def test_malformed_url(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FSLDIR", raising=False)
        target = tmp_path / "PARCELLATION"

        status = atlas_mod.main([
            "--parcellation-dir", str(target), "--url", "not-a-url/x.nii.gz",
        ])

        assert status == 1
        assert not (target / "x.nii.gz").exists()
