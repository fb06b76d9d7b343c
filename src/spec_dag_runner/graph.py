"""Dependency graph over layers and specs.

This module computes effective dependencies, layer order, execution waves and
ready sets for a validated definition, and renders execution plans.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from rich.console import Console
from rich.tree import Tree

from .errors import CycleError
from .models import BLOCKING_STATUSES, GraphDefinition, Layer, SpecDef, SpecStatus


@dataclass
class ExecutionPlan:
    """Execution plan with batches."""

    batches: list[list[str]]  # Each batch can run in parallel
    total_specs: int
    max_parallelism: int


def find_cycle(nodes: Iterable[str], deps: Mapping[str, Iterable[str]]) -> Optional[list[str]]:
    """Detect a cycle following dependency edges.

    Args:
        nodes: Node ids in the order traversal should start from.
        deps: Mapping of node id to the ids it depends on. Unknown ids are ignored.

    Returns:
        The cycle as a path that starts and ends on the same node, or None.
    """
    order = list(nodes)
    known = set(order)
    # 0 = unvisited, 1 = visiting, 2 = visited
    state: dict[str, int] = {node: 0 for node in order}

    def dfs(node: str, path: list[str]) -> Optional[list[str]]:
        if state[node] == 1:
            return path[path.index(node) :] + [node]
        if state[node] == 2:
            return None
        state[node] = 1
        path.append(node)
        for dep in deps.get(node, ()):
            if dep not in known:
                continue
            cycle = dfs(dep, path)
            if cycle:
                return cycle
        path.pop()
        state[node] = 2
        return None

    for node in order:
        if state[node] == 0:
            cycle = dfs(node, [])
            if cycle:
                return cycle
    return None


def order_layers(layers: list[Layer]) -> list[Layer]:
    """Sort layers topologically by their layer dependencies, stable in definition order.

    Raises:
        CycleError: If the layer dependencies form a cycle.
    """
    by_id = {layer.id: layer for layer in layers}
    cycle = find_cycle(by_id, {layer.id: layer.depends_on for layer in layers})
    if cycle:
        first = by_id[cycle[0]]
        raise CycleError(cycle, first.line, first.column)

    index = {layer.id: position for position, layer in enumerate(layers)}
    remaining = {layer.id: {dep for dep in layer.depends_on if dep in by_id} for layer in layers}
    ordered: list[Layer] = []
    while remaining:
        ready = sorted((lid for lid, deps in remaining.items() if not deps), key=index.__getitem__)
        chosen = ready[0]
        ordered.append(by_id[chosen])
        del remaining[chosen]
        for deps in remaining.values():
            deps.discard(chosen)
    return ordered


class DefinitionGraph:
    """Layer and spec dependency graph of a validated definition."""

    def __init__(self, definition: GraphDefinition):
        self.definition = definition
        self.layers = order_layers(definition.layers)
        self._layer_by_id = {layer.id: layer for layer in self.layers}
        self._spec_by_id: dict[str, SpecDef] = {}
        self._spec_order: dict[str, int] = {}
        for layer in self.layers:
            for spec in layer.specs:
                self._spec_order[spec.id] = len(self._spec_order)
                self._spec_by_id[spec.id] = spec

        self._layer_ancestors: dict[str, set[str]] = {}
        for layer in self.layers:
            self._layer_ancestors[layer.id] = self._collect_ancestors(layer.id)

        self._effective: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for spec_id, spec in self._spec_by_id.items():
            deps = set(dep for dep in spec.depends_on if dep in self._spec_by_id)
            for ancestor in self._layer_ancestors.get(spec.layer_id, set()):
                deps.update(s.id for s in self._layer_by_id[ancestor].specs)
            deps.discard(spec_id)
            ordered = sorted(deps, key=self._spec_order.__getitem__)
            self._effective[spec_id] = ordered
            for dep in ordered:
                self._dependents[dep].append(spec_id)

    def _collect_ancestors(self, layer_id: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self._layer_by_id[layer_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen or current not in self._layer_by_id:
                continue
            seen.add(current)
            stack.extend(self._layer_by_id[current].depends_on)
        return seen

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def spec(self, spec_id: str) -> SpecDef:
        return self._spec_by_id[spec_id]

    def spec_ids(self) -> list[str]:
        return list(self._spec_by_id)

    def layer(self, layer_id: str) -> Layer:
        return self._layer_by_id[layer_id]

    def layer_of(self, spec_id: str) -> Layer:
        return self._layer_by_id[self._spec_by_id[spec_id].layer_id]

    def layer_index(self, layer_id: str) -> int:
        return [layer.id for layer in self.layers].index(layer_id)

    def previous_layer(self, layer_id: str) -> Optional[Layer]:
        """Return the layer preceding ``layer_id`` in layer order, or None for layer 0."""
        position = self.layer_index(layer_id)
        return self.layers[position - 1] if position > 0 else None

    def effective_deps(self, spec_id: str) -> list[str]:
        """Declared dependencies plus every spec of every layer this spec's layer depends on."""
        return list(self._effective[spec_id])

    def dependents(self, spec_id: str) -> list[str]:
        return list(self._dependents.get(spec_id, []))

    def transitive_dependents(self, spec_id: str) -> list[str]:
        seen: set[str] = set()
        stack = self.dependents(spec_id)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents(current))
        return sorted(seen, key=self._spec_order.__getitem__)

    # ------------------------------------------------------------------
    # Scheduling views
    # ------------------------------------------------------------------

    def execution_waves(self) -> ExecutionPlan:
        """Return batches of spec ids that can run in parallel (Kahn's algorithm).

        Raises:
            CycleError: If the effective dependencies contain a cycle.
        """
        cycle = find_cycle(self._spec_by_id, self._effective)
        if cycle:
            first = self._spec_by_id[cycle[0]]
            raise CycleError(cycle, first.line, first.column)

        in_degree = {spec_id: len(deps) for spec_id, deps in self._effective.items()}
        batches: list[list[str]] = []
        current = [spec_id for spec_id in self._spec_by_id if in_degree[spec_id] == 0]
        while current:
            batches.append(current)
            following: list[str] = []
            for spec_id in current:
                for dependent in self._dependents.get(spec_id, []):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            current = sorted(following, key=self._spec_order.__getitem__)

        max_parallelism = max((len(batch) for batch in batches), default=0)
        return ExecutionPlan(batches=batches, total_specs=len(self._spec_by_id), max_parallelism=max_parallelism)

    def topological_specs(self, spec_ids: Optional[Iterable[str]] = None) -> list[str]:
        """Flatten the execution waves, optionally filtered to ``spec_ids``."""
        order = [spec_id for batch in self.execution_waves().batches for spec_id in batch]
        if spec_ids is None:
            return order
        wanted = set(spec_ids)
        return [spec_id for spec_id in order if spec_id in wanted]

    def blocked_by(self, spec_id: str, statuses: Mapping[str, SpecStatus]) -> list[str]:
        """Return effective dependencies that make ``spec_id`` unrunnable."""
        return [dep for dep in self._effective[spec_id] if statuses.get(dep, SpecStatus.PENDING) in BLOCKING_STATUSES]

    def ready_set(
        self,
        statuses: Mapping[str, SpecStatus],
        open_layers: Optional[Iterable[str]] = None,
    ) -> list[str]:
        """Return pending specs whose effective dependencies are all completed.

        Args:
            statuses: Current status per spec id. Missing ids count as pending.
            open_layers: Restrict the result to specs in these layers.
        """
        allowed = set(open_layers) if open_layers is not None else None
        ready: list[str] = []
        for spec_id, spec in self._spec_by_id.items():
            if allowed is not None and spec.layer_id not in allowed:
                continue
            if statuses.get(spec_id, SpecStatus.PENDING) != SpecStatus.PENDING:
                continue
            if all(statuses.get(dep) == SpecStatus.COMPLETED for dep in self._effective[spec_id]):
                ready.append(spec_id)
        return ready

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def visualize_execution_plan(self, plan: Optional[ExecutionPlan] = None) -> str:
        plan = plan or self.execution_waves()
        console = Console(record=True, width=100)

        console.print(f"\n[bold]Execution Plan: {self.definition.name}[/bold]")
        console.print(f"Layers: {' -> '.join(layer.id for layer in self.layers)}")
        console.print(f"Total specs: {plan.total_specs}")
        console.print(f"Waves: {len(plan.batches)}")
        console.print(f"Max parallelism: {plan.max_parallelism}")
        console.print()

        for batch_idx, batch in enumerate(plan.batches, 1):
            console.print(f"[bold cyan]Wave {batch_idx}:[/bold cyan] ({len(batch)} spec(s) in parallel)")
            for spec_id in batch:
                spec = self._spec_by_id[spec_id]
                if spec.depends_on:
                    console.print(
                        f"  • {spec_id} [dim]\\[{spec.layer_id}] (depends on: {', '.join(spec.depends_on)})[/dim]"
                    )
                else:
                    console.print(f"  • {spec_id} [dim]\\[{spec.layer_id}][/dim]")
                console.print(f"    {spec.description[:80]}", markup=False)
            console.print()

        return console.export_text()

    def visualize_as_tree(self) -> str:
        console = Console(record=True, width=100)
        tree = Tree("[bold]Spec Dependency Tree[/bold]")

        def add_dependents(parent_node: Tree, spec_id: str, visited: set[str]) -> None:
            if spec_id in visited:
                return
            visited.add(spec_id)
            for dependent in self._dependents.get(spec_id, []):
                branch = parent_node.add(f"[cyan]{dependent}[/cyan]")
                add_dependents(branch, dependent, visited)

        visited: set[str] = set()
        for spec_id, deps in self._effective.items():
            if not deps:
                branch = tree.add(f"[green]{spec_id}[/green]")
                add_dependents(branch, spec_id, visited)

        console.print(tree)
        return console.export_text()
