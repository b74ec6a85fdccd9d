"""Download and extract repository artifacts."""

import asyncio
import tarfile
from pathlib import Path

import httpx
import structlog

from kraan.controller.api.models import GitRepository
from kraan.controller.exceptions import ArtifactFetchError

logger = structlog.get_logger(__name__)

FETCH_TIMEOUT = 15.0
ARCHIVE_NAME = "artifact.tar.gz"
CONTENT_DIR = "content"


def extract_archive(archive: Path, dest: Path) -> int:
    """Extract a (compressed) tar archive, returning the member count.

    The ``data`` extraction filter rejects absolute paths, parent
    traversal and links that point outside ``dest``.
    """
    try:
        with tarfile.open(archive, mode="r:*") as tar:
            members = tar.getmembers()
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise ArtifactFetchError(f"failed to untar artifact: {e}") from e
    return len(members)


class ArtifactFetcher:
    """Fetches a repository's packaged snapshot over HTTP."""

    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT,
        source_host: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.source_host = source_host
        self._transport = transport

    def artifact_url(self, repository: GitRepository) -> str:
        """Artifact URL, or the source host override used for local runs."""
        if self.source_host:
            return (
                f"http://{self.source_host}/gitrepository/"
                f"{repository.namespace}/{repository.name}/latest.tar.gz"
            )
        artifact = repository.status.artifact
        if artifact is None:
            raise ArtifactFetchError(f"repository {repository.name} does not contain an artifact")
        return artifact.url

    async def fetch(self, repository: GitRepository, workdir: Path) -> Path:
        """Download the artifact into ``workdir`` and extract it.

        The download is bounded by ``timeout`` regardless of the caller's
        own deadline.

        Returns:
            Directory holding the extracted content.

        Raises:
            ArtifactFetchError: on transport failure, a non-200 response,
                timeout, or an archive that cannot be extracted.
        """
        if repository.status.artifact is None:
            raise ArtifactFetchError(f"repository {repository.name} does not contain an artifact")

        url = self.artifact_url(repository)
        archive = workdir / ARCHIVE_NAME
        content = workdir / CONTENT_DIR
        content.mkdir(parents=True, exist_ok=True)

        logger.info(
            "new revision detected",
            repository=f"{repository.namespace}/{repository.name}",
            revision=repository.status.artifact.revision,
        )

        try:
            await asyncio.wait_for(self._download(url, archive), timeout=self.timeout)
        except TimeoutError as e:
            raise ArtifactFetchError(
                f"timed out downloading artifact from {url} after {self.timeout}s"
            ) from e

        count = await asyncio.to_thread(extract_archive, archive, content)
        logger.info("fetched artifact", url=url, files=count)
        return content

    async def _download(self, url: str, archive: Path) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise ArtifactFetchError(
                            f"failed to download artifact, status: {response.status_code}",
                            status_code=response.status_code,
                        )
                    with archive.open("wb") as fh:
                        async for chunk in response.aiter_bytes():
                            fh.write(chunk)
        except httpx.HTTPError as e:
            raise ArtifactFetchError(f"failed to download artifact from {url}: {e}") from e
        except OSError as e:
            raise ArtifactFetchError(f"failed to write artifact {archive}: {e}") from e
