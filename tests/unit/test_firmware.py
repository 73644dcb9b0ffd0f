"""Tests for OVMF firmware fetching and the artifact cache."""

import hashlib
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from limage.errors import FetchError
from limage.packages.cache import Cache, manifest_path_for, read_manifest, write_manifest
from limage.packages.firmware import (
    OVMF_BASE_URL,
    FirmwareFetcher,
    FirmwareKind,
    firmware_filename,
    firmware_url,
)

FIRMWARE = b"\x00OVMF" * 1024


def fake_response(chunks, status_error=None):
    response = MagicMock()
    response.headers = {"content-length": str(sum(len(c) for c in chunks))}
    response.iter_content.return_value = iter(chunks)
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


def patch_get(mock_get, response):
    mock_get.return_value.__enter__.return_value = response


class TestFirmwareNames:
    def test_filename(self):
        assert firmware_filename("x86_64", FirmwareKind.CODE) == "ovmf-code-x86_64.fd"
        assert firmware_filename("x86_64", FirmwareKind.VARS) == "ovmf-vars-x86_64.fd"

    def test_url(self):
        assert firmware_url("x86_64", FirmwareKind.VARS) == f"{OVMF_BASE_URL}/ovmf-vars-x86_64.fd"


class TestCache:
    def test_layout(self, tmp_path: Path):
        cache = Cache(tmp_path)
        assert cache.get_firmware_path("x86_64", "ovmf-code-x86_64.fd") == tmp_path / "firmware" / "x86_64" / "ovmf-code-x86_64.fd"
        assert cache.get_bootloader_path("v8.x-binary") == tmp_path / "bootloader" / "limine-v8.x-binary"

    def test_bootloader_revision_is_sanitized(self, tmp_path: Path):
        assert Cache(tmp_path).get_bootloader_path("refs/tags/v8.0").name == "limine-refs_tags_v8.0"

    def test_manifest_round_trip(self, tmp_path: Path):
        artifact = tmp_path / "ovmf-code-x86_64.fd"
        artifact.write_bytes(FIRMWARE)

        write_manifest(artifact, "https://example.com/fw", Cache.hash_file(artifact))
        manifest = read_manifest(artifact)

        assert manifest is not None
        assert manifest["sha256"] == hashlib.sha256(FIRMWARE).hexdigest()
        assert manifest["size"] == len(FIRMWARE)
        assert manifest["url"] == "https://example.com/fw"

    def test_unreadable_manifest(self, tmp_path: Path):
        artifact = tmp_path / "fw.fd"
        manifest_path_for(artifact).write_text("{not json", encoding="utf-8")
        assert read_manifest(artifact) is None


class TestFirmwareFetcher:
    @patch("limage.packages.firmware.requests.get")
    def test_downloads_when_missing(self, mock_get, tmp_path: Path):
        patch_get(mock_get, fake_response([FIRMWARE[:100], FIRMWARE[100:]]))
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)

        path = fetcher.fetch("x86_64", FirmwareKind.CODE)

        assert path == tmp_path / "firmware" / "x86_64" / "ovmf-code-x86_64.fd"
        assert path.read_bytes() == FIRMWARE
        assert not path.with_name(path.name + ".download").exists()
        assert read_manifest(path)["sha256"] == hashlib.sha256(FIRMWARE).hexdigest()
        mock_get.assert_called_once_with(firmware_url("x86_64", FirmwareKind.CODE), stream=True, timeout=30)

    @patch("limage.packages.firmware.requests.get")
    def test_cache_hit_needs_no_network(self, mock_get, tmp_path: Path):
        patch_get(mock_get, fake_response([FIRMWARE]))
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)
        first = fetcher.fetch("x86_64", FirmwareKind.CODE)

        mock_get.reset_mock()
        mock_get.side_effect = requests.ConnectionError("network is down")

        assert fetcher.fetch("x86_64", FirmwareKind.CODE) == first
        mock_get.assert_not_called()

    @patch("limage.packages.firmware.requests.get", side_effect=requests.ConnectionError("network is down"))
    def test_prepopulated_cache_is_adopted(self, mock_get, populated_cache: Cache):
        fetcher = FirmwareFetcher(populated_cache, show_progress=False)

        paths = fetcher.ensure_all("x86_64")

        assert set(paths) == {FirmwareKind.CODE, FirmwareKind.VARS}
        assert paths[FirmwareKind.VARS].read_bytes() == b"OVMF vars"
        assert read_manifest(paths[FirmwareKind.CODE]) is not None
        mock_get.assert_not_called()

    @patch("limage.packages.firmware.requests.get")
    def test_corrupt_cache_is_fetched_again(self, mock_get, tmp_path: Path):
        patch_get(mock_get, fake_response([FIRMWARE]))
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)
        path = fetcher.fetch("x86_64", FirmwareKind.VARS)

        path.write_bytes(FIRMWARE[:10])  # truncated
        patch_get(mock_get, fake_response([FIRMWARE]))

        assert fetcher.fetch("x86_64", FirmwareKind.VARS) == path
        assert path.read_bytes() == FIRMWARE
        assert mock_get.call_count == 2

    @patch("limage.packages.firmware.requests.get")
    def test_corrupt_cache_that_cannot_be_removed(self, mock_get, tmp_path: Path):
        patch_get(mock_get, fake_response([FIRMWARE]))
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)
        path = fetcher.fetch("x86_64", FirmwareKind.VARS)
        path.write_bytes(FIRMWARE[:10])

        with patch.object(Path, "unlink", side_effect=PermissionError("read-only cache")):
            with pytest.raises(FetchError, match="Failed to remove corrupt"):
                fetcher.fetch("x86_64", FirmwareKind.VARS)

        assert mock_get.call_count == 1

    @patch("limage.packages.firmware.requests.get")
    def test_malformed_content_length(self, mock_get, tmp_path: Path):
        response = fake_response([FIRMWARE])
        response.headers = {"content-length": "lots"}
        patch_get(mock_get, response)
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)

        assert fetcher.fetch("x86_64", FirmwareKind.CODE).read_bytes() == FIRMWARE

    @patch("limage.packages.firmware.requests.get")
    def test_interrupted_download_leaves_nothing_cached(self, mock_get, tmp_path: Path):
        def broken_stream(chunk_size):
            yield FIRMWARE[:100]
            raise requests.ConnectionError("connection reset")

        response = fake_response([])
        response.iter_content.side_effect = broken_stream
        patch_get(mock_get, response)
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)

        with pytest.raises(FetchError, match="Failed to download"):
            fetcher.fetch("x86_64", FirmwareKind.CODE)

        path = fetcher.get_path("x86_64", FirmwareKind.CODE)
        assert not path.exists()
        assert not path.with_name(path.name + ".download").exists()

    @patch("limage.packages.firmware.requests.get")
    def test_http_error(self, mock_get, tmp_path: Path):
        patch_get(mock_get, fake_response([], status_error=requests.HTTPError("404 Not Found")))
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)

        with pytest.raises(FetchError, match="404"):
            fetcher.fetch("x86_64", FirmwareKind.CODE)

    @patch("limage.packages.firmware.requests.get")
    def test_ensure_all_fetches_each_kind_once(self, mock_get, tmp_path: Path):
        mock_get.return_value.__enter__.side_effect = lambda: fake_response([FIRMWARE])
        fetcher = FirmwareFetcher(Cache(tmp_path), show_progress=False)

        paths = fetcher.ensure_all("x86_64")

        assert [p.name for p in paths.values()] == ["ovmf-code-x86_64.fd", "ovmf-vars-x86_64.fd"]
        assert mock_get.call_count == 2
