"""Parse graph definition documents into models with source positions.

A definition document holds the user-written definition followed, after
``STATE_SEPARATOR``, by the runtime state managed by the runner. Parsing uses
``yaml.compose`` so every layer, spec and dependency reference keeps the line
and column it was declared at.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import STATE_SEPARATOR
from .errors import DefinitionError, ParseError
from .models import ExecutionDefaults, GraphDefinition, Layer, SpecDef
from .utils import parse_duration

# Root keys that belong to the runtime state rather than the definition.
STATE_KEYS = ("run", "specs", "staging")


@dataclass
class ParsedDocument:
    """Definition, raw state mapping and any shape problems found while parsing."""

    definition: GraphDefinition
    definition_text: str
    state_data: dict[str, Any] = field(default_factory=dict)
    # State keys were found above the separator and must be moved on save.
    inline_state: bool = False
    problems: list[DefinitionError] = field(default_factory=list)


def split_document(text: str) -> tuple[str, Optional[str]]:
    """Split a document into definition text and state text (None when absent)."""
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if line.strip() == STATE_SEPARATOR:
            return "".join(lines[:index]), "".join(lines[index + 1 :])
    return text, None


def _mark(node: yaml.Node) -> tuple[int, int]:
    return node.start_mark.line + 1, node.start_mark.column + 1


class _NodeReader:
    """Walk composed YAML nodes, recording shape problems instead of raising."""

    def __init__(self) -> None:
        self._constructor = yaml.SafeLoader("")
        self.problems: list[DefinitionError] = []

    def problem(self, node: Optional[yaml.Node], message: str) -> None:
        line, column = _mark(node) if node is not None else (None, None)
        self.problems.append(ParseError(message, line, column))

    def value(self, node: yaml.Node) -> Any:
        return self._constructor.construct_object(node, deep=True)

    def mapping(self, node: Optional[yaml.Node], what: str) -> dict[str, tuple[yaml.Node, yaml.Node]]:
        if node is None:
            return {}
        if isinstance(node, yaml.ScalarNode) and self.value(node) is None:
            return {}
        if not isinstance(node, yaml.MappingNode):
            self.problem(node, f"{what} must be a mapping")
            return {}
        items: dict[str, tuple[yaml.Node, yaml.Node]] = {}
        for key_node, value_node in node.value:
            items[str(self.value(key_node))] = (key_node, value_node)
        return items

    def sequence(self, node: Optional[yaml.Node], what: str) -> list[yaml.Node]:
        if node is None:
            return []
        if isinstance(node, yaml.ScalarNode) and self.value(node) is None:
            return []
        if not isinstance(node, yaml.SequenceNode):
            self.problem(node, f"{what} must be a list")
            return []
        return list(node.value)

    def text(self, node: Optional[yaml.Node]) -> str:
        if node is None:
            return ""
        if not isinstance(node, yaml.ScalarNode):
            self.problem(node, "expected a scalar value")
            return ""
        value = self.value(node)
        return "" if value is None else str(value).strip()

    def refs(self, node: Optional[yaml.Node], what: str) -> tuple[list[str], dict[str, tuple[int, int]]]:
        refs: list[str] = []
        marks: dict[str, tuple[int, int]] = {}
        for item in self.sequence(node, what):
            ref = self.text(item)
            if not ref:
                continue
            refs.append(ref)
            marks.setdefault(ref, _mark(item))
        return refs, marks

    def duration(self, node: Optional[yaml.Node]) -> Optional[float]:
        if node is None:
            return None
        try:
            return parse_duration(self.value(node))
        except ValueError as exc:
            self.problem(node, str(exc))
            return None

    def integer(self, node: Optional[yaml.Node], what: str) -> Optional[int]:
        if node is None:
            return None
        value = self.value(node)
        if isinstance(value, bool) or not isinstance(value, int):
            self.problem(node, f"{what} must be an integer")
            return None
        return value

    def boolean(self, node: Optional[yaml.Node], what: str) -> Optional[bool]:
        if node is None:
            return None
        value = self.value(node)
        if not isinstance(value, bool):
            self.problem(node, f"{what} must be true or false")
            return None
        return value


def _value_node(items: dict[str, tuple[yaml.Node, yaml.Node]], key: str) -> Optional[yaml.Node]:
    pair = items.get(key)
    return pair[1] if pair else None


def _parse_execution(reader: _NodeReader, node: Optional[yaml.Node]) -> ExecutionDefaults:
    items = reader.mapping(node, "execution")
    execution = ExecutionDefaults(
        max_parallel=reader.integer(_value_node(items, "max_parallel"), "execution.max_parallel"),
        timeout=reader.duration(_value_node(items, "timeout")),
        base_branch=reader.text(_value_node(items, "base_branch")) or None,
        on_conflict=reader.text(_value_node(items, "on_conflict")) or None,
        merge_cadence=reader.text(_value_node(items, "merge_cadence")) or None,
        autocommit=reader.boolean(_value_node(items, "autocommit"), "execution.autocommit"),
        autocommit_cmd=reader.text(_value_node(items, "autocommit_cmd")) or None,
        layer_staging=reader.boolean(_value_node(items, "layer_staging"), "execution.layer_staging"),
        max_stage_failures=reader.integer(
            _value_node(items, "max_stage_failures"), "execution.max_stage_failures"
        ),
        max_spec_retries=reader.integer(_value_node(items, "max_spec_retries"), "execution.max_spec_retries"),
    )
    if execution.max_parallel is not None and execution.max_parallel < 1:
        reader.problem(_value_node(items, "max_parallel"), "execution.max_parallel must be at least 1")
        execution.max_parallel = None
    return execution


def _parse_spec(reader: _NodeReader, node: yaml.Node, layer_id: str) -> SpecDef:
    items = reader.mapping(node, "spec")
    depends_on, dep_marks = reader.refs(_value_node(items, "depends_on"), "depends_on")
    line, column = _mark(node)
    return SpecDef(
        id=reader.text(_value_node(items, "id")),
        description=reader.text(_value_node(items, "description")),
        layer_id=layer_id,
        depends_on=depends_on,
        timeout=reader.duration(_value_node(items, "timeout")),
        line=line,
        column=column,
        dep_marks=dep_marks,
    )


def _parse_layer(reader: _NodeReader, node: yaml.Node) -> Layer:
    items = reader.mapping(node, "layer")
    layer_id = reader.text(_value_node(items, "id"))
    depends_on, dep_marks = reader.refs(_value_node(items, "depends_on"), "depends_on")
    specs_node = _value_node(items, "features")
    if specs_node is None:
        specs_node = _value_node(items, "specs")
    line, column = _mark(node)
    return Layer(
        id=layer_id,
        name=reader.text(_value_node(items, "name")),
        depends_on=depends_on,
        specs=[_parse_spec(reader, spec_node, layer_id) for spec_node in reader.sequence(specs_node, "features")],
        line=line,
        column=column,
        dep_marks=dep_marks,
    )


def parse_definition(text: str, path: Optional[Path] = None) -> ParsedDocument:
    """Parse a definition document.

    Args:
        text: Full document text, possibly including the runtime state section.
        path: Location of the document, recorded on the definition.

    Returns:
        The parsed document. Field-level shape problems are collected in
        `problems` so the validator can report them alongside other errors.

    Raises:
        ParseError: If the YAML is malformed or the root is not a mapping.
    """
    definition_text, state_text = split_document(text)
    try:
        root = yaml.compose(definition_text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        problem = getattr(exc, "problem", None) or str(exc)
        if mark is not None:
            raise ParseError(str(problem), mark.line + 1, mark.column + 1) from exc
        raise ParseError(str(problem)) from exc

    if root is None:
        raise ParseError("definition document is empty")
    if not isinstance(root, yaml.MappingNode):
        raise ParseError("definition root must be a mapping", *_mark(root))

    reader = _NodeReader()
    items = reader.mapping(root, "document")
    definition = GraphDefinition(path=path)
    for key in ("schema_version", "dag", "layers"):
        if key in items:
            definition.marks[key] = _mark(items[key][0])

    definition.schema_version = reader.text(_value_node(items, "schema_version"))
    dag_items = reader.mapping(_value_node(items, "dag"), "dag")
    definition.name = reader.text(_value_node(dag_items, "name"))
    definition.explicit_id = reader.text(_value_node(dag_items, "id"))
    if "name" in dag_items:
        definition.marks["dag.name"] = _mark(dag_items["name"][0])
    definition.execution = _parse_execution(reader, _value_node(items, "execution"))
    definition.layers = [_parse_layer(reader, node) for node in reader.sequence(_value_node(items, "layers"), "layers")]

    state_data: dict[str, Any] = {}
    inline_state = False
    inline = {key: reader.value(items[key][1]) for key in STATE_KEYS if key in items}
    if inline:
        state_data.update(inline)
        inline_state = True
    if state_text is not None and state_text.strip():
        try:
            loaded = yaml.safe_load(state_text)
        except yaml.YAMLError as exc:
            raise ParseError(f"runtime state section is not valid YAML: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ParseError("runtime state section must be a mapping")
        state_data.update(loaded or {})

    return ParsedDocument(
        definition=definition,
        definition_text=definition_text,
        state_data=state_data,
        inline_state=inline_state,
        problems=reader.problems,
    )


def load_document(path: Path) -> ParsedDocument:
    """Read and parse the definition document at ``path``."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ParseError(f"cannot read {path}: {exc}") from exc
    return parse_definition(text, path=path.resolve())
