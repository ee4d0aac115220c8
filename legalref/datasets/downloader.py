import asyncio
import os
import shutil
import tempfile
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx
import structlog

from .types import DatasetSource

log = structlog.get_logger()

DEFAULT_CACHE_DIR = Path(".cache/datasets")
CHUNK_SIZE = 1 << 20


class DownloadError(Exception):
    """A dataset could not be fetched or unpacked."""


@dataclass(frozen=True)
class DatasetLocation:
    url: str
    local_name: str
    archive: bool = False


DATASETS: dict[DatasetSource, DatasetLocation] = {
    DatasetSource.CUAD: DatasetLocation(
        url="https://huggingface.co/datasets/cuad/resolve/main/CUAD_v1.parquet",
        local_name="CUAD_v1.parquet",
    ),
    DatasetSource.CONTRACT_NLI: DatasetLocation(
        url="https://huggingface.co/datasets/kiddothe2b/contract-nli/resolve/main/train.json",  # noqa: E501
        local_name="contract_nli.json",
    ),
    DatasetSource.BONTERMS: DatasetLocation(
        url="https://github.com/Bonterms/Mutual-NDA/archive/refs/heads/main.zip",
        local_name="bonterms-nda",
        archive=True,
    ),
    DatasetSource.COMMONACCORD: DatasetLocation(
        url="https://github.com/CommonAccord/NW-NDA/archive/refs/heads/master.zip",
        local_name="commonaccord-nda",
        archive=True,
    ),
}


@dataclass
class DownloadResult:
    source: DatasetSource
    path: Path
    cached: bool
    size_bytes: int


def path_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def extract_zip(archive: Path, dest: Path) -> None:
    """
    Extracts ``archive`` into ``dest``, dropping the single top-level folder
    that GitHub archives wrap their contents in.

    Raises:
        DownloadError: The archive is unreadable or has unsafe member paths.
    """
    try:
        with zipfile.ZipFile(archive) as zf:
            names = [n for n in zf.namelist() if n and not n.endswith("/")]
            roots = {PurePosixPath(n).parts[0] for n in names}
            strip = len(roots) == 1 and all(
                len(PurePosixPath(n).parts) > 1 for n in names
            )
            dest.mkdir(parents=True, exist_ok=True)
            for name in names:
                if ".." in PurePosixPath(name).parts or name.startswith("/"):
                    raise DownloadError(f"unsafe path in archive: {name}")
                parts = PurePosixPath(name).parts[1 if strip else 0 :]
                if not parts:
                    raise DownloadError(f"unsafe path in archive: {name}")
                target = dest.joinpath(*parts)
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(name) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
    except zipfile.BadZipFile as e:
        raise DownloadError(f"bad archive {archive}: {e}") from e


class Downloader:
    """
    Fetches each dataset once into ``cache_dir``.

    Flat files are written directly, archives are extracted into a directory.
    Both are staged next to the destination and moved into place only when
    complete, so an interrupted download never looks cached.

    Args:
        cache_dir: Directory holding the local copies.
        client: HTTP client to use; one is created per download when omitted.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        cache_dir: Path | str = DEFAULT_CACHE_DIR,
        client: httpx.AsyncClient | None = None,
        timeout: float = 300.0,
    ):
        self.cache_dir = Path(cache_dir)
        self.client = client
        self.timeout = timeout

    def dataset_path(self, source: DatasetSource) -> Path:
        return self.cache_dir / DATASETS[source].local_name

    def is_cached(self, source: DatasetSource) -> bool:
        path = self.dataset_path(source)
        if path.is_file():
            return path.stat().st_size > 0
        if path.is_dir():
            return any(path.iterdir())
        return False

    async def _fetch(self, client: httpx.AsyncClient, url: str, target: Path) -> int:
        written = 0
        async with client.stream("GET", url, follow_redirects=True) as response:
            if not response.is_success:
                raise DownloadError(f"GET {url} returned {response.status_code}")
            with open(target, "wb") as out:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    out.write(chunk)
                    written += len(chunk)
        return written

    async def download(
        self, source: DatasetSource, force_refresh: bool = False
    ) -> DownloadResult:
        """
        Returns the local path of ``source``, downloading it if needed.

        Raises:
            DownloadError: On a non-2xx response, a transport failure or an
                archive that cannot be extracted.
        """
        location = DATASETS[source]
        dest = self.dataset_path(source)
        if not force_refresh and self.is_cached(source):
            await log.adebug("dataset cached", source=source.value, path=str(dest))
            return DownloadResult(
                source=source, path=dest, cached=True, size_bytes=path_size(dest)
            )

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        await log.ainfo("downloading dataset", source=source.value, url=location.url)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=self.cache_dir)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            try:
                if self.client is not None:
                    await self._fetch(self.client, location.url, tmp)
                else:
                    async with httpx.AsyncClient(timeout=self.timeout) as client:
                        await self._fetch(client, location.url, tmp)
            except httpx.HTTPError as e:
                raise DownloadError(f"failed to download {location.url}: {e}") from e

            if location.archive:
                staging = dest.with_name(f".{dest.name}.extract")
                shutil.rmtree(staging, ignore_errors=True)
                try:
                    await asyncio.to_thread(extract_zip, tmp, staging)
                except BaseException:
                    shutil.rmtree(staging, ignore_errors=True)
                    raise
                shutil.rmtree(dest, ignore_errors=True)
                os.replace(staging, dest)
            else:
                os.replace(tmp, dest)
        finally:
            tmp.unlink(missing_ok=True)

        size = path_size(dest)
        await log.ainfo(
            "dataset downloaded", source=source.value, path=str(dest), size_bytes=size
        )
        return DownloadResult(source=source, path=dest, cached=False, size_bytes=size)

    async def download_all(
        self, sources: Sequence[DatasetSource], force_refresh: bool = False
    ) -> dict[DatasetSource, DownloadResult]:
        """Downloads one source after the other, stopping at the first error."""
        results: dict[DatasetSource, DownloadResult] = {}
        for source in sources:
            results[source] = await self.download(source, force_refresh)
        return results
