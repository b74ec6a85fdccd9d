"""
Tests for repository to layer mapping.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from conftest import FakeClusterClient, make_layer, make_repository, make_tarball

from kraan.controller.api.models import LayerState
from kraan.controller.exceptions import ArtifactFetchError
from kraan.controller.repos.fetch import ArtifactFetcher
from kraan.controller.repos.mapper import RepositoryMapper, SyncResult
from kraan.controller.repos.source_tree import SourceTree

TARBALL_FILES = {
    "addons/base/release.yaml": "kind: HelmRelease\n",
    "addons/apps/release.yaml": "kind: HelmRelease\n",
}


def fetcher_for(status_code: int, content: bytes = b"") -> ArtifactFetcher:
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, content=content))
    return ArtifactFetcher(transport=transport)


@pytest.fixture
def layers():
    return [
        make_layer("base", path="./addons/base"),
        make_layer("apps", path="./addons/apps", depends_on=["base"]),
        make_layer("other", repo="other-repo", path="./addons"),
    ]


@pytest.mark.unit
class TestRepositoryMapper:
    @pytest.mark.asyncio
    async def test_publishes_and_returns_referencing_layers(self, layers, tmp_path):
        client = FakeClusterClient(layers)
        tree = SourceTree(tmp_path / "repos")
        mapper = RepositoryMapper(client, fetcher_for(200, make_tarball(TARBALL_FILES)), tree)

        names = await mapper.map(make_repository())

        assert names == ["base", "apps"]
        base = tree.layer_path("gitops-system", "addons-config", "addons/base")
        assert (base / "release.yaml").exists()

    @pytest.mark.asyncio
    async def test_accepts_raw_objects(self, layers, tmp_path):
        client = FakeClusterClient(layers)
        mapper = RepositoryMapper(
            client,
            fetcher_for(200, make_tarball(TARBALL_FILES)),
            SourceTree(tmp_path / "repos"),
        )

        names = await mapper.map(make_repository().to_wire())

        assert names == ["base", "apps"]

    @pytest.mark.asyncio
    async def test_not_found_artifact_yields_nothing(self, layers, tmp_path):
        client = FakeClusterClient(layers)
        mapper = RepositoryMapper(client, fetcher_for(404), SourceTree(tmp_path / "repos"))

        names = await mapper.map(make_repository())

        assert names == []
        assert client.status_updates == []
        states = {layer.status.state for layer in client.layers.values()}
        assert states == {LayerState.APPLY_PENDING}

    @pytest.mark.asyncio
    async def test_wrong_kind_ignored(self, layers, tmp_path):
        fetcher = MagicMock(spec=ArtifactFetcher)
        mapper = RepositoryMapper(FakeClusterClient(layers), fetcher, SourceTree(tmp_path))

        assert await mapper.map({"kind": "HelmRepository", "metadata": {"name": "x"}}) == []
        assert await mapper.map("not-a-repository") == []
        fetcher.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_repository_without_artifact_ignored(self, layers, tmp_path):
        client = FakeClusterClient(layers)
        mapper = RepositoryMapper(client, MagicMock(spec=ArtifactFetcher), SourceTree(tmp_path))

        assert await mapper.map(make_repository(url=None)) == []
        assert client.list_calls == 0

    @pytest.mark.asyncio
    async def test_unreferenced_repository_not_fetched(self, layers, tmp_path):
        fetcher = MagicMock(spec=ArtifactFetcher)
        fetcher.fetch = AsyncMock()
        mapper = RepositoryMapper(FakeClusterClient(layers), fetcher, SourceTree(tmp_path))

        assert await mapper.map(make_repository("unused-repo")) == []
        fetcher.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listing_failure_yields_nothing(self, layers, tmp_path):
        client = FakeClusterClient(layers)
        client.fail_list = True
        fetcher = MagicMock(spec=ArtifactFetcher)
        fetcher.fetch = AsyncMock()
        mapper = RepositoryMapper(client, fetcher, SourceTree(tmp_path))

        assert await mapper.map(make_repository()) == []
        fetcher.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_failure_skips_only_that_layer(self, layers, tmp_path):
        files = {"addons/apps/release.yaml": "kind: HelmRelease\n"}
        mapper = RepositoryMapper(
            FakeClusterClient(layers),
            fetcher_for(200, make_tarball(files)),
            SourceTree(tmp_path / "repos"),
        )

        assert await mapper.map(make_repository()) == ["apps"]

    @pytest.mark.asyncio
    async def test_fetch_error_is_contained(self, layers, tmp_path):
        fetcher = MagicMock(spec=ArtifactFetcher)
        fetcher.fetch = AsyncMock(side_effect=ArtifactFetchError("timed out"))
        mapper = RepositoryMapper(FakeClusterClient(layers), fetcher, SourceTree(tmp_path))

        assert await mapper.map(make_repository()) == []

    @pytest.mark.asyncio
    async def test_missing_work_root_is_contained(self, layers, tmp_path):
        fetcher = MagicMock(spec=ArtifactFetcher)
        fetcher.fetch = AsyncMock()
        mapper = RepositoryMapper(
            FakeClusterClient(layers),
            fetcher,
            SourceTree(tmp_path),
            work_root=str(tmp_path / "does-not-exist"),
        )

        result = await mapper.sync(make_repository())

        assert result == SyncResult(requests=[], failed=["base", "apps"])
        fetcher.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_reports_failed_layers(self, layers, tmp_path):
        files = {"addons/apps/release.yaml": "kind: HelmRelease\n"}
        mapper = RepositoryMapper(
            FakeClusterClient(layers),
            fetcher_for(200, make_tarball(files)),
            SourceTree(tmp_path / "repos"),
        )

        result = await mapper.sync(make_repository())

        assert result.requests == ["apps"]
        assert result.failed == ["base"]

    @pytest.mark.asyncio
    async def test_sync_skips_excluded_layers(self, layers, tmp_path):
        tree = SourceTree(tmp_path / "repos")
        mapper = RepositoryMapper(
            FakeClusterClient(layers), fetcher_for(200, make_tarball(TARBALL_FILES)), tree
        )

        result = await mapper.sync(make_repository(), exclude={"base"})

        assert result == SyncResult(requests=["apps"])
        assert not tree.layer_path("gitops-system", "addons-config", "addons/base").exists()


NESTED_FILES = {
    "addons/common.yaml": "kind: HelmRelease\n",
    "addons/base/release.yaml": "kind: HelmRelease\n",
}


@pytest.mark.unit
class TestNestedPaths:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("child_first", [False, True])
    async def test_outcome_does_not_depend_on_listing_order(self, child_first, tmp_path):
        parent = make_layer("parent", path="./addons")
        child = make_layer("child", path="./addons/base")
        listed = [child, parent] if child_first else [parent, child]
        tree = SourceTree(tmp_path / "repos")
        mapper = RepositoryMapper(
            FakeClusterClient(listed), fetcher_for(200, make_tarball(NESTED_FILES)), tree
        )

        result = await mapper.sync(make_repository())

        assert result.requests == [layer.name for layer in listed]
        assert result.failed == []
        parent_path = tree.layer_path("gitops-system", "addons-config", "addons")
        child_path = tree.layer_path("gitops-system", "addons-config", "addons/base")
        assert parent_path.is_symlink()
        assert (parent_path / "common.yaml").read_text() == "kind: HelmRelease\n"
        assert (child_path / "release.yaml").read_text() == "kind: HelmRelease\n"

    @pytest.mark.asyncio
    async def test_layer_added_under_published_path_refreshes_it(self, tmp_path):
        client = FakeClusterClient([make_layer("parent", path="./addons")])
        tree = SourceTree(tmp_path / "repos")
        mapper = RepositoryMapper(client, fetcher_for(200, make_tarball(NESTED_FILES)), tree)
        assert (await mapper.sync(make_repository())).requests == ["parent"]

        client.layers["child"] = make_layer("child", path="./addons/base")
        result = await mapper.sync(make_repository(), exclude={"parent"})

        assert result == SyncResult(requests=["child"])
        child_path = tree.layer_path("gitops-system", "addons-config", "addons/base")
        assert (child_path / "release.yaml").exists()
