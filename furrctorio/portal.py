"""Mod source backed by the public Factorio mod portal."""

from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

from .config import ConfigError
from .errors import NotFoundError, UnavailableError, VersionError
from .source import ModArchive, ModVersionMetadata
from .versions import Dependency, Version

logger = logging.getLogger(__name__)

PORTAL_URL = "https://mods.factorio.com"
USER_AGENT = "furrctorio"


class PortalModSource:
    """Reads release metadata from the portal API and downloads archives.

    Release listings are fetched once per mod and kept for the lifetime of
    the source, so a resolution run asks the portal about each mod at most
    once.
    """

    def __init__(
        self,
        username: Optional[str] = None,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        base_url: str = PORTAL_URL,
    ):
        self.username = username
        self.token = token
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._releases: Dict[str, Dict[Version, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def list_versions(self, name: str) -> List[Version]:
        return sorted(self._mod_releases(name))

    def get_metadata(self, name: str, version: Version) -> ModVersionMetadata:
        release = self._release(name, version)
        info = release.get("info_json") or {}
        dependencies = []
        for raw in info.get("dependencies") or []:
            try:
                dependencies.append(Dependency.parse(raw))
            except VersionError:
                logger.warning("Skipping unparseable dependency %r of %s@%s", raw, name, version)
        return ModVersionMetadata(
            name=name,
            version=version,
            dependencies=tuple(dependencies),
            sha1=release.get("sha1"),
            file_name=release.get("file_name"),
            factorio_version=info.get("factorio_version"),
        )

    def fetch_archive(self, name: str, version: Version) -> ModArchive:
        if not self.username or not self.token:
            raise ConfigError(
                "Downloading from the mod portal needs credentials. "
                "Set FURRCTORIO_USERNAME and FURRCTORIO_TOKEN or add username/token to .furrctorio.json."
            )
        release = self._release(name, version)
        download_url = release.get("download_url")
        if not download_url:
            raise NotFoundError(name, str(version), message=f"Portal lists no download for {name}@{version}")
        query = urlencode({"username": self.username, "token": self.token})
        url = f"{self.base_url}{download_url}?{query}"
        logger.info("Downloading %s@%s", name, version)
        data = self._http_get(url, name, str(version), label=f"{self.base_url}{download_url}")
        return ModArchive(name=name, version=version, data=data, sha1=release.get("sha1"))

    def _mod_releases(self, name: str) -> Dict[Version, Dict[str, Any]]:
        with self._lock:
            cached = self._releases.get(name)
        if cached is not None:
            return cached

        url = f"{self.base_url}/api/mods/{quote(name)}/full"
        payload = self._http_get_json(url, name)
        releases: Dict[Version, Dict[str, Any]] = {}
        for release in payload.get("releases") or []:
            try:
                releases[Version.parse(release.get("version", ""))] = release
            except VersionError:
                logger.warning("Skipping release of %s with invalid version %r", name, release.get("version"))
        with self._lock:
            self._releases[name] = releases
        return releases

    def _release(self, name: str, version: Version) -> Dict[str, Any]:
        try:
            return self._mod_releases(name)[version]
        except KeyError as exc:
            raise NotFoundError(name, str(version)) from exc

    def _http_get(self, url: str, name: str, version: Optional[str] = None, *, label: Optional[str] = None) -> bytes:
        # ``label`` keeps credentials out of error messages and logs.
        shown = label or url
        request = urllib.request.Request(url)
        request.add_header("User-Agent", USER_AGENT)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise NotFoundError(name, version) from exc
            if exc.code in (401, 403):
                raise ConfigError(f"Mod portal rejected the configured credentials ({shown})") from exc
            raise UnavailableError(f"HTTP {exc.code} error fetching {shown}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise UnavailableError(f"Network error fetching {shown}: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise UnavailableError(f"Timed out after {self.timeout}s fetching {shown}") from exc

    def _http_get_json(self, url: str, name: str) -> Dict[str, Any]:
        payload = self._http_get(url, name)
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UnavailableError(f"Invalid JSON payload from {url}: {exc}") from exc
        if not isinstance(data, dict):
            raise UnavailableError(f"Unexpected payload from {url}")
        return data
