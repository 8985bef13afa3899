import io
import json
import socket
import urllib.error
from unittest import mock

import pytest

from furrctorio.config import ConfigError
from furrctorio.errors import NotFoundError, UnavailableError
from furrctorio.files import sha1_bytes
from furrctorio.portal import PortalModSource
from furrctorio.versions import DependencyKind, Version

ARCHIVE = b"PK\x03\x04 flib archive"

FLIB = {
    "name": "flib",
    "releases": [
        {
            "download_url": "/download/flib/aaa",
            "file_name": "flib_0.12.0.zip",
            "info_json": {"factorio_version": "1.1", "dependencies": ["base >= 1.1.0"]},
            "sha1": "0" * 40,
            "version": "0.12.0",
        },
        {
            "download_url": "/download/flib/bbb",
            "file_name": "flib_0.13.0.zip",
            "info_json": {
                "factorio_version": "1.1",
                "dependencies": ["base >= 1.1.0", "? helmod", "! old-flib", "not a valid >= dependency"],
            },
            "sha1": sha1_bytes(ARCHIVE),
            "version": "0.13.0",
        },
    ],
}


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def _json_response(payload):
    return _Response(json.dumps(payload).encode("utf-8"))


def _http_error(code):
    return urllib.error.HTTPError("https://mods.factorio.com/x", code, "error", {}, io.BytesIO(b""))


class TestMetadata:
    def test_lists_versions_ascending(self):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", return_value=_json_response(FLIB)) as urlopen:
            assert portal.list_versions("flib") == [Version(0, 12, 0), Version(0, 13, 0)]

        request = urlopen.call_args.args[0]
        assert request.full_url == "https://mods.factorio.com/api/mods/flib/full"
        assert urlopen.call_args.kwargs["timeout"] == 30.0

    def test_listing_is_fetched_once_per_mod(self):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", return_value=_json_response(FLIB)) as urlopen:
            portal.list_versions("flib")
            portal.get_metadata("flib", Version(0, 13, 0))

        assert urlopen.call_count == 1

    def test_metadata_parses_dependencies(self):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", return_value=_json_response(FLIB)):
            metadata = portal.get_metadata("flib", Version(0, 13, 0))

        assert metadata.sha1 == sha1_bytes(ARCHIVE)
        assert metadata.factorio_version == "1.1"
        assert [dep.name for dep in metadata.dependencies] == ["base", "helmod", "old-flib"]
        assert [dep.name for dep in metadata.incompatibilities] == ["old-flib"]
        assert metadata.dependencies[1].kind is DependencyKind.OPTIONAL

    def test_unknown_version(self):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", return_value=_json_response(FLIB)):
            with pytest.raises(NotFoundError):
                portal.get_metadata("flib", Version(9, 9, 9))

    def test_404_is_not_found(self):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", side_effect=_http_error(404)):
            with pytest.raises(NotFoundError):
                portal.list_versions("ghost")

    @pytest.mark.parametrize(
        "failure",
        [
            _http_error(502),
            urllib.error.URLError("connection refused"),
            socket.timeout("timed out"),
        ],
    )
    def test_transient_failures_are_unavailable(self, failure):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", side_effect=failure):
            with pytest.raises(UnavailableError):
                portal.list_versions("flib")

    def test_invalid_json_is_unavailable(self):
        portal = PortalModSource()
        with mock.patch("urllib.request.urlopen", return_value=_Response(b"<html>")):
            with pytest.raises(UnavailableError):
                portal.list_versions("flib")


class TestDownload:
    def test_requires_credentials(self):
        portal = PortalModSource()
        with pytest.raises(ConfigError):
            portal.fetch_archive("flib", Version(0, 13, 0))

    def test_downloads_with_credentials(self):
        portal = PortalModSource(username="engineer", token="secret", timeout=5)
        responses = [_json_response(FLIB), _Response(ARCHIVE)]
        with mock.patch("urllib.request.urlopen", side_effect=responses) as urlopen:
            archive = portal.fetch_archive("flib", Version(0, 13, 0))

        assert archive.data == ARCHIVE
        assert archive.sha1 == sha1_bytes(ARCHIVE)
        request = urlopen.call_args.args[0]
        assert request.full_url == "https://mods.factorio.com/download/flib/bbb?username=engineer&token=secret"
        assert urlopen.call_args.kwargs["timeout"] == 5

    def test_rejected_credentials(self):
        portal = PortalModSource(username="engineer", token="wrong")
        with mock.patch("urllib.request.urlopen", side_effect=[_json_response(FLIB), _http_error(403)]):
            with pytest.raises(ConfigError) as excinfo:
                portal.fetch_archive("flib", Version(0, 13, 0))

        assert "wrong" not in str(excinfo.value)
