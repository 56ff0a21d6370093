"""Dependency graph of casks and formulae."""

from __future__ import annotations

import time
from typing import Iterable, Iterator

from caskade.core.errors import DependencyCycleError, SelfReferencingDependencyError
from caskade.core.logging import get_logger
from caskade.core.models import Dependency, Package, PackageKind
from caskade.providers.base import PackageSource

log = get_logger(__name__)


class DependencyGraph:
    """Arena of packages with edges stored as index pairs.

    Node ids are assigned in insertion order and never change. An edge
    ``a -> b`` means package ``a`` depends on package ``b``.
    """

    def __init__(self) -> None:
        self._nodes: list[Package] = []
        self._index: dict[tuple[str, str], int] = {}
        self._aliases: dict[tuple[PackageKind, str], int] = {}
        self._edges: list[list[int]] = []
        self._components: list[list[int]] = []
        self._order: list[Package] = []
        self.root: Package | None = None

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Package]:
        return iter(self._nodes)

    def add_node(self, package: Package) -> int:
        node = self._index.get(package.key)
        if node is None:
            node = len(self._nodes)
            self._nodes.append(package)
            self._edges.append([])
            self._index[package.key] = node
        self._aliases[(package.kind, package.token)] = node
        self._aliases[(package.kind, package.full_name)] = node
        return node

    def add_edge(self, dependent: int, dependency: int) -> None:
        if dependency not in self._edges[dependent]:
            self._edges[dependent].append(dependency)

    def node(self, package: Package) -> int:
        return self._index[package.key]

    def dependencies_of(self, package: Package) -> list[Package]:
        return [self._nodes[i] for i in self._edges[self.node(package)]]

    def depends_on_itself(self, package: Package) -> bool:
        node = self.node(package)
        return node in self._edges[node]

    def _resolve(self, dep: Dependency, source: PackageSource) -> tuple[int, bool]:
        """Return the node for ``dep``, loading it when unseen."""
        node = self._aliases.get((dep.kind, dep.name))
        if node is not None:
            return node, False
        package = source.load(dep.name, dep.kind)
        is_new = package.key not in self._index
        node = self.add_node(package)
        self._aliases[(dep.kind, dep.name)] = node
        return node, is_new

    def walk(self, root: Package, source: PackageSource,
             extra: Iterable[Dependency] = ()) -> None:
        """Add ``root`` and everything it transitively depends on.

        ``extra`` dependencies are attached to ``root`` in addition to its
        declared ones.
        """
        root_node = self.add_node(root)
        pending: list[tuple[int, list[Dependency]]] = [(root_node, [*root.depends_on, *extra])]

        while pending:
            node, deps = pending.pop()
            for dep in deps:
                child, is_new = self._resolve(dep, source)
                self.add_edge(node, child)
                if is_new:
                    pending.append((child, list(self._nodes[child].depends_on)))

    def strongly_connected_components(self) -> list[list[Package]]:
        """Tarjan's algorithm.

        Components are emitted dependencies-first, so when every component is
        a single node without a self edge the emission order is a valid
        install order.
        """
        index_of: dict[int, int] = {}
        low: dict[int, int] = {}
        stack: list[int] = []
        on_stack: set[int] = set()
        components: list[list[int]] = []
        counter = 0

        for start in range(len(self._nodes)):
            if start in index_of:
                continue

            index_of[start] = low[start] = counter
            counter += 1
            stack.append(start)
            on_stack.add(start)
            work = [(start, iter(self._edges[start]))]

            while work:
                node, children = work[-1]
                for child in children:
                    if child not in index_of:
                        index_of[child] = low[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(self._edges[child])))
                        break
                    if child in on_stack:
                        low[node] = min(low[node], index_of[child])
                else:
                    work.pop()
                    if work:
                        parent = work[-1][0]
                        low[parent] = min(low[parent], low[node])
                    if low[node] == index_of[node]:
                        component = []
                        while True:
                            member = stack.pop()
                            on_stack.discard(member)
                            component.append(member)
                            if member == node:
                                break
                        components.append(component)

        self._components = components
        return [[self._nodes[i] for i in c] for c in components]

    def cyclic_components(self) -> list[list[Package]]:
        sccs = self.strongly_connected_components()
        return [
            scc for scc, ids in zip(sccs, self._components)
            if len(ids) > 1 or ids[0] in self._edges[ids[0]]
        ]

    def tsort(self) -> list[Package]:
        """Packages ordered so that dependencies precede dependents.

        Raises:
            DependencyCycleError: If the graph is not acyclic.
        """
        sccs = self.strongly_connected_components()
        if any(
            len(ids) > 1 or ids[0] in self._edges[ids[0]] for ids in self._components
        ):
            raise DependencyCycleError(self._nodes[0].token if self._nodes else "")
        return [scc[0] for scc in sccs]

    @classmethod
    def for_package(
        cls,
        root: Package,
        source: PackageSource,
        container_dependencies: Iterable[Dependency] = (),
    ) -> "DependencyGraph":
        """Build and validate the dependency graph rooted at ``root``.

        ``container_dependencies`` are formulae the extraction of the root's
        download needs; they are walked like declared dependencies.

        Raises:
            SelfReferencingDependencyError: If ``root`` depends on itself.
            DependencyCycleError: If any dependencies form a cycle; the error
                names the largest cycle found, minus the root.
            PackageNotFoundError: If a dependency cannot be loaded.
        """
        start = time.perf_counter()
        graph = cls()
        graph.walk(root, source)

        if graph.depends_on_itself(root):
            log.error("self_referencing_dependency", package=root.token)
            raise SelfReferencingDependencyError(root.token)

        extra = list(container_dependencies)
        if extra:
            graph.walk(root, source, extra=extra)

        try:
            ordered = graph.tsort()
        except DependencyCycleError:
            cycles = sorted(graph.cyclic_components(), key=len)
            cyclic = sorted(p.full_name for p in cycles[-1] if p.key != root.key)
            log.error("cyclic_dependency", package=root.token, cycle=cyclic)
            raise DependencyCycleError(root.token, cyclic) from None

        graph.root = root
        graph._order = [p for p in ordered if p.key != root.key]
        log.info(
            "dependencies_resolved",
            package=root.token,
            count=len(graph._order),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return graph

    def dependencies(self) -> list[Package]:
        """Transitive dependencies of the root, dependencies first."""
        return list(self._order)


def resolve_dependencies(
    root: Package,
    source: PackageSource,
    container_dependencies: Iterable[Dependency] = (),
) -> list[Package]:
    return DependencyGraph.for_package(root, source, container_dependencies).dependencies()
