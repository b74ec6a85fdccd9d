"""Layer dependency resolution and admission checks."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from kraan.controller.api.models import AddonsLayer, LayerState
from kraan.controller.exceptions import DependencyCycleError
from kraan.controller.k8s.interfaces import ClusterClient


@dataclass
class DependencyCheck:
    """Outcome of checking one layer's dependencies against a snapshot."""

    missing: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    cycle: list[str] | None = None

    @property
    def satisfied(self) -> bool:
        return not self.missing and not self.pending and self.cycle is None


def find_cycle(graph: Mapping[str, Iterable[str]], start: str) -> list[str] | None:
    """Return a dependency cycle reachable from ``start``, if any.

    The cycle is returned as a path whose first and last entries are the
    same layer name. Edges to names absent from ``graph`` are ignored.
    """
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in on_path:
            return visiting[visiting.index(node):] + [node]
        if node in done or node not in graph:
            return None
        visiting.append(node)
        on_path.add(node)
        for dep in graph[node]:
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        on_path.discard(node)
        done.add(node)
        return None

    return visit(start)


def dependency_graph(layers: Iterable[AddonsLayer]) -> dict[str, list[str]]:
    return {layer.name: list(layer.spec.depends_on) for layer in layers}


def validate_dependencies(layer: AddonsLayer, existing: Iterable[AddonsLayer]) -> None:
    """Admission check for a new or updated layer.

    Raises:
        DependencyCycleError: if the layer depends on itself or its
            declared dependencies would close a cycle.
    """
    if layer.name in layer.spec.depends_on:
        raise DependencyCycleError([layer.name, layer.name])
    graph = dependency_graph(item for item in existing if item.name != layer.name)
    graph[layer.name] = list(layer.spec.depends_on)
    cycle = find_cycle(graph, layer.name)
    if cycle:
        raise DependencyCycleError(cycle)


class DependencyResolver:
    """Checks that every layer a layer depends on is Deployed."""

    def __init__(self, client: ClusterClient) -> None:
        self.client = client

    async def check(self, layer: AddonsLayer) -> DependencyCheck:
        """Check dependencies using a single listing of all layers.

        Listing failures propagate as ``ClusterAPIError``.
        """
        result = DependencyCheck()
        if not layer.spec.depends_on:
            return result

        layers = {item.name: item for item in await self.client.list_layers()}
        layers[layer.name] = layer

        result.cycle = find_cycle(dependency_graph(layers.values()), layer.name)
        for name in layer.spec.depends_on:
            dependency = layers.get(name)
            if dependency is None:
                result.missing.append(name)
            elif dependency.status.state != LayerState.DEPLOYED:
                result.pending.append(name)
        return result
