"""
Shared source tree.

Layers locate their deployable content at
``<root>/<namespace>/<repository>/<path>``. That convention path is a
symlink to an immutable snapshot under ``<root>/.snapshots``; publishing a
new revision copies the content into a fresh snapshot and swaps the symlink
with a single rename, so readers only ever see a complete tree.
"""

import os
import re
import shutil
import tempfile
import time
from pathlib import Path, PurePosixPath
from uuid import uuid4

import structlog

from kraan.controller.exceptions import PublishError

logger = structlog.get_logger(__name__)

SNAPSHOTS_DIR = ".snapshots"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def convention_path(root: str | Path, namespace: str, name: str, path: str) -> Path:
    """Location of a layer's content in the source tree."""
    return Path(root, namespace, name, path.strip("/"))


def relative_source_path(path: str) -> PurePosixPath:
    """Normalise a declared source path; raises PublishError if it escapes the repository."""
    rel = PurePosixPath(path.strip())
    parts = [part for part in rel.parts if part not in (".", "")]
    if rel.is_absolute() or ".." in parts:
        raise PublishError(f"source path {path!r} must be relative and stay inside the repository")
    if not parts:
        raise PublishError("source path must name a directory inside the repository")
    return PurePosixPath(*parts)


def _check_segment(kind: str, value: str) -> None:
    if not value or value in (".", "..") or "/" in value:
        raise PublishError(f"invalid repository {kind}: {value!r}")


class SourceTree:
    """Writer side of the shared source tree."""

    def __init__(self, root: str | Path, retain: int = 2) -> None:
        self.root = Path(root)
        self.retain = max(1, retain)

    def layer_path(self, namespace: str, name: str, path: str) -> Path:
        return convention_path(self.root, namespace, name, path)

    def enclosing_link(self, namespace: str, name: str, path: str) -> Path | None:
        """Published link above ``path`` that already serves its content, if any."""
        link = self.root.joinpath(namespace, name, *relative_source_path(path).parts)
        for parent in link.parents:
            if parent == self.root:
                break
            if parent.is_symlink():
                return parent
        return None

    def publish(
        self,
        namespace: str,
        name: str,
        path: str,
        content_root: str | Path,
        revision: str = "",
    ) -> Path:
        """Publish ``content_root/path`` at the convention path.

        Returns:
            The convention path now pointing at the new snapshot.

        Raises:
            PublishError: if the path is invalid, the content is missing,
                or any filesystem operation fails.
        """
        _check_segment("namespace", namespace)
        _check_segment("name", name)
        rel = relative_source_path(path)

        source_dir = Path(content_root).joinpath(*rel.parts)
        if not source_dir.is_dir():
            raise PublishError(f"path {rel} not found in artifact for {namespace}/{name}")

        link = self.root.joinpath(namespace, name, *rel.parts)
        enclosing = self.enclosing_link(namespace, name, str(rel))
        if enclosing is not None:
            raise PublishError(f"{link} overlaps published path {enclosing}")

        snapshot_parent = self.root.joinpath(SNAPSHOTS_DIR, namespace, name, "__".join(rel.parts))
        prefix = f"{time.time_ns():020d}-{_UNSAFE_CHARS.sub('-', revision)[:40]}-"
        snapshot: Path | None = None
        try:
            snapshot_parent.mkdir(parents=True, exist_ok=True)
            snapshot = Path(tempfile.mkdtemp(prefix=prefix, dir=snapshot_parent))
            shutil.copytree(source_dir, snapshot, symlinks=True, dirs_exist_ok=True)
            snapshot.chmod(0o755)
            self._swap(link, snapshot)
        except OSError as e:
            if snapshot is not None:
                shutil.rmtree(snapshot, ignore_errors=True)
            raise PublishError(f"failed to publish {namespace}/{name}/{rel}: {e}") from e

        logger.info(
            "published source",
            namespace=namespace,
            name=name,
            path=str(rel),
            revision=revision,
            snapshot=snapshot.name,
        )
        self._prune_snapshots(snapshot_parent, current=snapshot)
        return link

    def _swap(self, link: Path, snapshot: Path) -> None:
        link.parent.mkdir(parents=True, exist_ok=True)
        target = os.path.relpath(snapshot, link.parent)
        tmp_link = link.parent / f".{link.name}.{uuid4().hex}.tmp"
        os.symlink(target, tmp_link, target_is_directory=True)
        try:
            if link.exists() and not link.is_symlink():
                # Content published before snapshots existed: move it aside first.
                aside = link.parent / f".{link.name}.{uuid4().hex}.old"
                os.rename(link, aside)
                os.replace(tmp_link, link)
                if aside.is_dir():
                    shutil.rmtree(aside, ignore_errors=True)
                else:
                    aside.unlink(missing_ok=True)
            else:
                os.replace(tmp_link, link)
        except OSError:
            tmp_link.unlink(missing_ok=True)
            raise

    def _prune_snapshots(self, snapshot_parent: Path, current: Path) -> None:
        snapshots = sorted(
            (entry for entry in snapshot_parent.iterdir() if entry.is_dir()),
            key=lambda entry: entry.name,
            reverse=True,
        )
        for stale in snapshots[self.retain:]:
            if stale == current:
                continue
            shutil.rmtree(stale, ignore_errors=True)
            logger.debug("removed stale snapshot", snapshot=str(stale))
