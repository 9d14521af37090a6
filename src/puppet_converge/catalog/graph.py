"""Catalog and dependency graph.

A Catalog owns the declared resources of one run and the edges between
them. Ordering is computed with Kahn's algorithm, breaking ties by
declaration order so that identical inputs always produce identical runs.
"""
import heapq
import logging
from typing import Any, Iterable, Iterator, Optional, Union

from .errors import (
    CatalogError,
    CycleError,
    DuplicateResourceError,
    UnknownResourceError,
)
from .schema import Edge, EdgeKind, Resource, ResourceKind, ResourceRef

logger = logging.getLogger(__name__)

RefLike = Union[ResourceRef, Resource]


def _as_ref(value: RefLike) -> ResourceRef:
    if isinstance(value, Resource):
        return value.ref
    return value


class Catalog:
    """Resources and edges for a single convergence run.

    Usage:
        catalog = Catalog()
        pkg = catalog.declare(ResourceKind.PACKAGE, "puppet", {"ensure": "installed"})
        svc = catalog.declare(ResourceKind.SERVICE, "puppet", {"ensure": "running"})
        catalog.add_edge(pkg, svc, EdgeKind.REQUIRE)
        order = catalog.topological_order()
    """

    def __init__(self, name: str = "catalog"):
        self.name = name
        self._resources: dict[ResourceRef, Resource] = {}
        self._edges: list[Edge] = []
        self._edge_set: set[Edge] = set()
        self._out: dict[ResourceRef, list[Edge]] = {}
        self._in: dict[ResourceRef, list[Edge]] = {}
        self._frozen = False

    # === Declarations ===

    def declare(
        self,
        kind: ResourceKind,
        title: str,
        attributes: Optional[dict[str, Any]] = None,
        tags: Iterable[str] = (),
    ) -> Resource:
        """Declare a new resource.

        Raises:
            DuplicateResourceError: If (kind, title) is already declared
        """
        self._check_mutable()
        ref = ResourceRef(kind, title)
        if ref in self._resources:
            raise DuplicateResourceError(ref)

        resource = Resource(
            kind=kind,
            title=title,
            attributes=dict(attributes or {}),
            tags=frozenset(tags),
            index=len(self._resources),
        )
        self._resources[ref] = resource
        self._out[ref] = []
        self._in[ref] = []
        logger.debug(f"Declared {ref}")
        return resource

    def declare_once(
        self,
        kind: ResourceKind,
        title: str,
        attributes: Optional[dict[str, Any]] = None,
        tags: Iterable[str] = (),
    ) -> Resource:
        """Declare a resource shared between independent branches.

        Returns the existing resource when it was already declared with the
        same attributes. Conflicting attributes are still a duplicate.
        """
        ref = ResourceRef(kind, title)
        existing = self._resources.get(ref)
        if existing is None:
            return self.declare(kind, title, attributes, tags)

        if existing.attributes != dict(attributes or {}):
            raise DuplicateResourceError(ref, "conflicting attributes")

        self._check_mutable()
        existing.tags = existing.tags | frozenset(tags)
        return existing

    def add_edge(
        self,
        source: RefLike,
        target: RefLike,
        kind: EdgeKind = EdgeKind.REQUIRE,
    ) -> Edge:
        """Add an ordering or notification edge.

        Raises:
            UnknownResourceError: If either endpoint is not declared
        """
        self._check_mutable()
        source_ref = _as_ref(source)
        target_ref = _as_ref(target)

        for ref, role in ((source_ref, "source"), (target_ref, "target")):
            if ref not in self._resources:
                raise UnknownResourceError(ref, f"edge {role}")
        if source_ref == target_ref:
            raise CycleError([source_ref, target_ref])

        edge = Edge(source_ref, target_ref, kind)
        if edge in self._edge_set:
            return edge

        self._edges.append(edge)
        self._edge_set.add(edge)
        self._out[source_ref].append(edge)
        self._in[target_ref].append(edge)
        return edge

    def require(self, resource: RefLike, dependency: RefLike) -> Edge:
        """``resource`` requires ``dependency`` (dependency runs first)."""
        return self.add_edge(dependency, resource, EdgeKind.REQUIRE)

    def notify(self, source: RefLike, target: RefLike) -> Edge:
        """``source`` notifies ``target`` when it changes."""
        return self.add_edge(source, target, EdgeKind.NOTIFY)

    def freeze(self) -> None:
        """Make the catalog read-only for the apply phase."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise CatalogError(f"Catalog {self.name} is frozen")

    # === Lookups ===

    def __contains__(self, ref: object) -> bool:
        if isinstance(ref, Resource):
            ref = ref.ref
        return ref in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources)

    def get(self, ref: ResourceRef) -> Optional[Resource]:
        return self._resources.get(ref)

    def __getitem__(self, ref: ResourceRef) -> Resource:
        try:
            return self._resources[ref]
        except KeyError:
            raise UnknownResourceError(ref) from None

    @property
    def resources(self) -> list[Resource]:
        """Resources in declaration order."""
        return list(self._resources.values())

    @property
    def edges(self) -> list[Edge]:
        return list(self._edges)

    def resources_of_kind(self, kind: ResourceKind) -> list[Resource]:
        return [r for r in self._resources.values() if r.kind == kind]

    def resources_tagged(self, tag: str) -> list[Resource]:
        return [r for r in self._resources.values() if tag in r.tags]

    def dependencies(self, ref: RefLike) -> list[ResourceRef]:
        """Resources that must complete before ``ref`` (any edge kind)."""
        return [edge.source for edge in self._in[_as_ref(ref)]]

    def dependents(self, ref: RefLike) -> list[ResourceRef]:
        """Resources ordered directly after ``ref`` (any edge kind)."""
        return [edge.target for edge in self._out[_as_ref(ref)]]

    def notify_targets(self, ref: RefLike) -> list[ResourceRef]:
        return [
            edge.target for edge in self._out[_as_ref(ref)]
            if edge.kind == EdgeKind.NOTIFY
        ]

    def transitive_dependents(self, ref: RefLike) -> set[ResourceRef]:
        """Every resource reachable from ``ref`` along outgoing edges."""
        seen: set[ResourceRef] = set()
        stack = [_as_ref(ref)]
        while stack:
            current = stack.pop()
            for target in self.dependents(current):
                if target not in seen:
                    seen.add(target)
                    stack.append(target)
        return seen

    # === Ordering ===

    def topological_order(self) -> list[Resource]:
        """Order resources so every edge source precedes its target.

        Raises:
            CycleError: If the edges do not form a DAG
        """
        return [resource for layer in self._kahn(by_layer=False) for resource in layer]

    def layers(self) -> list[list[Resource]]:
        """Group the ordering into layers with no edges inside a layer."""
        return self._kahn(by_layer=True)

    def _kahn(self, by_layer: bool) -> list[list[Resource]]:
        by_index = {r.index: r for r in self._resources.values()}
        indegree = {ref: len(edges) for ref, edges in self._in.items()}
        ready = [r.index for r in self._resources.values() if indegree[r.ref] == 0]
        heapq.heapify(ready)

        result: list[list[Resource]] = []
        visited = 0

        if by_layer:
            current = sorted(ready)
            while current:
                layer = [by_index[i] for i in current]
                result.append(layer)
                visited += len(layer)
                following: list[int] = []
                for resource in layer:
                    for edge in self._out[resource.ref]:
                        indegree[edge.target] -= 1
                        if indegree[edge.target] == 0:
                            following.append(self._resources[edge.target].index)
                current = sorted(following)
        else:
            order: list[Resource] = []
            while ready:
                resource = by_index[heapq.heappop(ready)]
                order.append(resource)
                for edge in self._out[resource.ref]:
                    indegree[edge.target] -= 1
                    if indegree[edge.target] == 0:
                        heapq.heappush(ready, self._resources[edge.target].index)
            visited = len(order)
            result.append(order)

        if visited != len(self._resources):
            remaining = {ref for ref, degree in indegree.items() if degree > 0}
            raise CycleError(self._find_cycle(remaining))

        return result

    def _find_cycle(self, candidates: set[ResourceRef]) -> list[ResourceRef]:
        """Return one cycle among ``candidates`` as [a, b, ..., a]."""
        ordered = sorted(candidates, key=lambda ref: self._resources[ref].index)
        state: dict[ResourceRef, int] = {}  # 1 = on stack, 2 = done

        for start in ordered:
            if state.get(start):
                continue
            path: list[ResourceRef] = [start]
            iterators = [iter(self._out[start])]
            state[start] = 1
            while iterators:
                edge = next(iterators[-1], None)
                if edge is None:
                    state[path.pop()] = 2
                    iterators.pop()
                    continue
                target = edge.target
                if target not in candidates:
                    continue
                if state.get(target) == 1:
                    return path[path.index(target):] + [target]
                if not state.get(target):
                    state[target] = 1
                    path.append(target)
                    iterators.append(iter(self._out[target]))

        return ordered  # Unreachable for a real cycle; keep the evidence
