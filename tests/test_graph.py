"""
Tests for dependency graph construction, ordering and cycle detection.
"""

import pytest

from caskade.analysis.graph import DependencyGraph, resolve_dependencies
from caskade.core.errors import (
    DependencyCycleError,
    PackageNotFoundError,
    SelfReferencingDependencyError,
)
from caskade.core.models import ContainerSpec, Dependency, PackageKind
from caskade.install.stage import container_dependencies
from conftest import MemorySource, make_cask, make_formula


def _assert_topological(graph: DependencyGraph, order):
    position = {p.key: i for i, p in enumerate(order)}
    for package in order:
        for dep in graph.dependencies_of(package):
            assert position[dep.key] < position[package.key], f"{dep} after {package}"


class TestTopologicalOrder:
    def test_diamond(self):
        source = MemorySource(
            make_formula("d"),
            make_formula("b", deps=["d"]),
            make_formula("c", deps=["d"]),
        )
        root = make_cask("a", depends_on={"formula": ["b", "c"]})

        graph = DependencyGraph.for_package(root, source)
        order = graph.dependencies()

        assert {p.token for p in order} == {"b", "c", "d"}
        assert order[0].token == "d"
        _assert_topological(graph, order)

    def test_root_is_excluded(self):
        source = MemorySource(make_formula("lib"))
        root = make_cask("app", depends_on={"formula": "lib"})
        assert [p.token for p in resolve_dependencies(root, source)] == ["lib"]

    def test_long_chain(self):
        names = [f"f{i}" for i in range(50)]
        source = MemorySource(*[
            make_formula(n, deps=[names[i + 1]] if i + 1 < len(names) else [])
            for i, n in enumerate(names)
        ])
        root = make_cask("app", depends_on={"formula": names[0]})

        order = [p.token for p in resolve_dependencies(root, source)]

        assert order == list(reversed(names))

    def test_mixed_casks_and_formulae(self):
        source = MemorySource(
            make_formula("openssl"),
            make_cask("runtime", depends_on={"formula": "openssl"}),
        )
        root = make_cask("app", depends_on={"cask": "runtime"})

        order = resolve_dependencies(root, source)

        assert [(p.kind, p.token) for p in order] == [
            (PackageKind.FORMULA, "openssl"),
            (PackageKind.CASK, "runtime"),
        ]

    def test_shared_dependency_loaded_once(self):
        source = MemorySource(
            make_formula("shared"),
            make_formula("x", deps=["shared"]),
            make_formula("y", deps=["shared"]),
        )
        root = make_cask("app", depends_on={"formula": ["x", "y"]})

        resolve_dependencies(root, source)

        assert source.loads.count("shared") == 1

    def test_no_dependencies(self):
        assert resolve_dependencies(make_cask("lonely"), MemorySource()) == []

    def test_unknown_dependency(self):
        root = make_cask("app", depends_on={"formula": "ghost"})
        with pytest.raises(PackageNotFoundError):
            resolve_dependencies(root, MemorySource())


class TestCycles:
    def test_cycle_through_root(self):
        a = make_cask("a", depends_on={"cask": "b"})
        b = make_cask("b", depends_on={"cask": "a"})
        source = MemorySource(a, b)

        with pytest.raises(DependencyCycleError) as exc:
            DependencyGraph.for_package(a, source)

        assert exc.value.cycle == ["b"]
        assert "cyclic dependencies on: b" in exc.value.message

    def test_cycle_below_root(self):
        source = MemorySource(
            make_formula("a", deps=["b"]),
            make_formula("b", deps=["a"]),
        )
        root = make_cask("app", depends_on={"formula": "a"})

        with pytest.raises(DependencyCycleError) as exc:
            DependencyGraph.for_package(root, source)

        assert set(exc.value.cycle) == {"a", "b"}

    def test_self_reference(self):
        root = make_cask("narcissus", depends_on={"cask": "narcissus"})
        source = MemorySource(root)

        with pytest.raises(SelfReferencingDependencyError):
            DependencyGraph.for_package(root, source)

    def test_strongly_connected_components(self):
        source = MemorySource(
            make_formula("a", deps=["b"]),
            make_formula("b", deps=["c"]),
            make_formula("c", deps=["a"]),
            make_formula("d"),
        )
        root = make_cask("app", depends_on={"formula": ["a", "d"]})
        graph = DependencyGraph()
        graph.walk(root, source)

        cyclic = graph.cyclic_components()

        assert len(cyclic) == 1
        assert {p.token for p in cyclic[0]} == {"a", "b", "c"}


class TestContainerDependencies:
    def test_declared_container_type_adds_formula(self):
        source = MemorySource(make_formula("p7zip"))
        root = make_cask("archive", container={"type": "seven_zip"})

        order = resolve_dependencies(root, source, container_dependencies(root))

        assert [p.token for p in order] == ["p7zip"]

    def test_plain_container_adds_nothing(self):
        root = make_cask("archive", container={"type": "zip"})
        assert container_dependencies(root) == ()

    def test_unfetched_download_adds_nothing(self):
        root = make_cask("archive")
        assert root.container is None
        assert container_dependencies(root) == ()

    def test_container_spec_parsed(self):
        root = make_cask("archive", container={"type": "rar", "nested": "inner.dmg"})
        assert root.container == ContainerSpec(type="rar", nested="inner.dmg")
        assert container_dependencies(root) == (Dependency("unar", PackageKind.FORMULA),)
