"""Module resolution boundary for versioned imports.

Rewritten imports resolve to package index URLs
(``{host}/pypi/{distribution}[/{version}]/json``). The loader picks the host
once per session with a reachability probe, then fetches the release
metadata, downloads a pure-Python wheel into a session cache directory and
imports from it. Network and lookup failures propagate as ordinary errors.
"""

from __future__ import annotations

import asyncio
import importlib
import sys
import tempfile
from collections.abc import Sequence
from pathlib import Path
from types import ModuleType
from typing import Any

import aiohttp
import structlog

from .constants import MIRROR_HOST, PRIMARY_HOST

logger = structlog.get_logger()


def import_names(module: ModuleType, names: Sequence[str]) -> tuple[Any, ...]:
    """``from module import names``: attributes first, then submodules."""
    values = []
    for name in names:
        try:
            values.append(getattr(module, name))
        except AttributeError:
            try:
                values.append(importlib.import_module(f"{module.__name__}.{name}"))
            except ModuleNotFoundError as err:
                raise ImportError(
                    f"cannot import name {name!r} from {module.__name__!r}",
                    name=module.__name__,
                ) from err
    return tuple(values)


class ModuleLoader:
    """Loads pinned distributions from a package index host.

    Not an isolation boundary: downloaded wheels go on ``sys.path`` of the
    host process.
    """

    def __init__(
        self,
        primary_host: str = PRIMARY_HOST,
        mirror_host: str = MIRROR_HOST,
        probe_timeout: float = 5.0,
        cache_dir: str | Path | None = None,
    ) -> None:
        self.primary_host = primary_host
        self.mirror_host = mirror_host
        self.probe_timeout = probe_timeout
        self.host = primary_host
        self._cache_dir = Path(cache_dir) if cache_dir is not None else None
        self._tmpdir: tempfile.TemporaryDirectory[str] | None = None
        self._session: aiohttp.ClientSession | None = None
        self._paths: list[str] = []

    @property
    def cache_dir(self) -> Path:
        if self._cache_dir is None:
            self._tmpdir = tempfile.TemporaryDirectory(prefix="replbox-")
            self._cache_dir = Path(self._tmpdir.name)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        return self._cache_dir

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def probe(self) -> str:
        """Select the index host with a single HEAD request.

        Falls back to the mirror host on any connection error, server error
        or timeout.
        """
        reachable = False
        try:
            timeout = aiohttp.ClientTimeout(total=self.probe_timeout)
            async with self._client().head(self.primary_host, timeout=timeout, allow_redirects=True) as response:
                reachable = response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("cdn_probe_failed", host=self.primary_host, error=str(e))

        self.host = self.primary_host if reachable else self.mirror_host
        logger.info("cdn_probe_complete", host=self.host, reachable=reachable)
        return self.host

    async def import_url(self, url: str, module: str, *, top_level: bool = False) -> ModuleType:
        """Import ``module`` from the release described by ``url``.

        Args:
            url: Index JSON URL produced by the import rewriter
            module: Dotted module to import from the distribution
            top_level: Return the top-level package instead (``import a.b``)
        """
        wheel = await self._fetch_wheel(url)
        path = str(wheel)
        if path not in sys.path:
            sys.path.insert(0, path)
            self._paths.append(path)
            importlib.invalidate_caches()

        loaded = importlib.import_module(module)
        logger.debug("module_loaded", url=url, module=module, wheel=wheel.name)
        if top_level:
            return sys.modules[module.split(".", 1)[0]]
        return loaded

    async def _fetch_wheel(self, url: str) -> Path:
        client = self._client()
        async with client.get(url) as response:
            response.raise_for_status()
            metadata = await response.json(content_type=None)

        info = metadata.get("info", {})
        wheels = [
            file
            for file in metadata.get("urls", [])
            if file.get("packagetype") == "bdist_wheel" and file.get("filename", "").endswith("-none-any.whl")
        ]
        if not wheels:
            raise ModuleNotFoundError(
                f"No pure-Python wheel for {info.get('name', url)} {info.get('version', '')}".rstrip()
            )

        file = wheels[0]
        target = self.cache_dir / file["filename"]
        if not target.exists():
            async with client.get(file["url"]) as response:
                response.raise_for_status()
                target.write_bytes(await response.read())
            logger.info("wheel_downloaded", filename=file["filename"], url=file["url"])
        return target

    async def close(self) -> None:
        """Close the HTTP session and drop downloaded wheels from ``sys.path``."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        for path in self._paths:
            if path in sys.path:
                sys.path.remove(path)
        self._paths.clear()
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None
            self._cache_dir = None
