"""Validate a parsed graph definition.

Checks run in a fixed order: required fields, identifier uniqueness, reference
resolution, cross-layer direction, cycles, and finally the presence of each
spec's content folder (a warning only).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .constants import KNOWN_SCHEMA_VERSIONS, MERGE_CADENCES, ON_CONFLICT_MODES
from .errors import CycleError, DefinitionError, ValidationFailed
from .graph import find_cycle, order_layers
from .models import GraphDefinition, Layer, SpecDef
from .parser import ParsedDocument


@dataclass
class ValidationReport:
    errors: list[DefinitionError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationFailed(self)

    def format(self) -> str:
        lines = [f"error: {error}" for error in self.errors]
        lines.extend(f"warning: {warning}" for warning in self.warnings)
        return "\n".join(lines)


def _at(node: Layer | SpecDef, message: str) -> DefinitionError:
    return DefinitionError(message, node.line, node.column)


def _dep_error(node: Layer | SpecDef, dep: str, message: str) -> DefinitionError:
    line, column = node.dep_marks.get(dep, (node.line, node.column))
    return DefinitionError(message, line, column)


def _check_required(definition: GraphDefinition, report: ValidationReport) -> None:
    root_line, root_column = 1, 1
    if not definition.schema_version:
        report.errors.append(DefinitionError("schema_version is required", root_line, root_column))
    if not definition.name:
        line, column = definition.marks.get("dag", (root_line, root_column))
        report.errors.append(DefinitionError("dag.name is required", line, column))
    if not definition.layers:
        line, column = definition.marks.get("layers", (root_line, root_column))
        report.errors.append(DefinitionError("at least one layer is required", line, column))

    for index, layer in enumerate(definition.layers):
        if not layer.id:
            report.errors.append(_at(layer, f"layers[{index}]: id is required"))
        if not layer.specs:
            report.errors.append(_at(layer, f"layer {layer.id or index}: at least one spec is required"))
        for spec_index, spec in enumerate(layer.specs):
            if not spec.id:
                report.errors.append(_at(spec, f"layer {layer.id or index}: features[{spec_index}]: id is required"))
            if not spec.description:
                report.errors.append(_at(spec, f"spec {spec.id or spec_index}: description is required"))


def _check_unique(definition: GraphDefinition, report: ValidationReport) -> None:
    seen_layers: dict[str, Layer] = {}
    for layer in definition.layers:
        if not layer.id:
            continue
        if layer.id in seen_layers:
            first = seen_layers[layer.id]
            report.errors.append(_at(layer, f"duplicate layer id {layer.id!r} (first defined at line {first.line})"))
        else:
            seen_layers[layer.id] = layer

    seen_specs: dict[str, SpecDef] = {}
    for spec in definition.iter_specs():
        if not spec.id:
            continue
        if spec.id in seen_specs:
            first = seen_specs[spec.id]
            report.errors.append(_at(spec, f"duplicate spec id {spec.id!r} (first defined at line {first.line})"))
        else:
            seen_specs[spec.id] = spec


def _check_references(definition: GraphDefinition, report: ValidationReport) -> None:
    layer_ids = {layer.id for layer in definition.layers if layer.id}
    spec_ids = {spec.id for spec in definition.iter_specs() if spec.id}
    for layer in definition.layers:
        for dep in layer.depends_on:
            if dep not in layer_ids:
                report.errors.append(_dep_error(layer, dep, f"layer {layer.id}: depends on unknown layer {dep!r}"))
    for spec in definition.iter_specs():
        for dep in spec.depends_on:
            if dep not in spec_ids:
                report.errors.append(_dep_error(spec, dep, f"spec {spec.id}: depends on unknown spec {dep!r}"))


def _layer_ancestors(definition: GraphDefinition) -> dict[str, set[str]]:
    by_id = {layer.id: layer for layer in definition.layers if layer.id}
    ancestors: dict[str, set[str]] = {}
    for layer_id in by_id:
        seen: set[str] = set()
        stack = list(by_id[layer_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen or current not in by_id:
                continue
            seen.add(current)
            stack.extend(by_id[current].depends_on)
        ancestors[layer_id] = seen
    return ancestors


def _layer_positions(definition: GraphDefinition) -> Optional[dict[str, int]]:
    """Position of each layer in run order, or None while layer deps are cyclic."""
    try:
        ordered = order_layers([layer for layer in definition.layers if layer.id])
    except CycleError:
        return None
    return {layer.id: position for position, layer in enumerate(ordered)}


def _check_layer_direction(definition: GraphDefinition, report: ValidationReport) -> None:
    positions = _layer_positions(definition)
    if positions is None:
        return
    layer_of = {spec.id: spec.layer_id for spec in definition.iter_specs() if spec.id}
    for spec in definition.iter_specs():
        for dep in spec.depends_on:
            dep_layer = layer_of.get(dep)
            if dep_layer not in positions or spec.layer_id not in positions or dep_layer == spec.layer_id:
                continue
            # Layers open one after another, so a dependency must sit in an earlier layer.
            if positions[dep_layer] > positions[spec.layer_id]:
                report.errors.append(
                    _dep_error(
                        spec,
                        dep,
                        f"spec {spec.id} (layer {spec.layer_id}) depends on {dep} "
                        f"in later layer {dep_layer}",
                    )
                )


def _check_cycles(definition: GraphDefinition, report: ValidationReport) -> None:
    layers = {layer.id: layer for layer in definition.layers if layer.id}
    cycle = find_cycle(layers, {lid: layer.depends_on for lid, layer in layers.items()})
    if cycle:
        first = layers[cycle[0]]
        report.errors.append(CycleError(cycle, first.line, first.column))
        return

    ancestors = _layer_ancestors(definition)
    specs = {spec.id: spec for spec in definition.iter_specs() if spec.id}
    effective: dict[str, list[str]] = {}
    for spec_id, spec in specs.items():
        deps = list(spec.depends_on)
        for layer_id in ancestors.get(spec.layer_id, set()):
            deps.extend(s.id for s in layers[layer_id].specs if s.id)
        effective[spec_id] = [dep for dep in deps if dep != spec_id or dep in spec.depends_on]
    cycle = find_cycle(specs, effective)
    if cycle:
        first = specs[cycle[0]]
        report.errors.append(CycleError(cycle, first.line, first.column))


def _check_execution(definition: GraphDefinition, report: ValidationReport) -> None:
    execution = definition.execution
    if execution.on_conflict and execution.on_conflict not in ON_CONFLICT_MODES:
        report.errors.append(
            DefinitionError(
                f"execution.on_conflict must be one of {sorted(ON_CONFLICT_MODES)}, got {execution.on_conflict!r}"
            )
        )
    if execution.merge_cadence and execution.merge_cadence not in MERGE_CADENCES:
        report.errors.append(
            DefinitionError(
                f"execution.merge_cadence must be one of {sorted(MERGE_CADENCES)}, got {execution.merge_cadence!r}"
            )
        )


def validate_definition(
    document: ParsedDocument,
    specs_dir: Optional[Path] = None,
) -> ValidationReport:
    """Validate a parsed document.

    Args:
        document: Result of `parse_definition`.
        specs_dir: Directory holding one content folder per spec id. When
            given, missing folders produce warnings.

    Returns:
        A report with every error found and any warnings.
    """
    definition = document.definition
    report = ValidationReport(errors=list(document.problems))

    if definition.schema_version and definition.schema_version not in KNOWN_SCHEMA_VERSIONS:
        line, column = definition.marks.get("schema_version", (1, 1))
        report.warnings.append(
            f"line {line}, column {column}: unknown schema_version {definition.schema_version!r}; "
            "continuing with best-effort parsing"
        )

    _check_required(definition, report)
    _check_unique(definition, report)
    _check_references(definition, report)
    _check_layer_direction(definition, report)
    _check_cycles(definition, report)
    _check_execution(definition, report)

    if specs_dir is not None:
        for spec in definition.iter_specs():
            if spec.id and not (specs_dir / spec.id).is_dir():
                report.warnings.append(
                    f"line {spec.line}, column {spec.column}: spec folder {specs_dir / spec.id} "
                    "not found; it will be created from the description"
                )
    return report
