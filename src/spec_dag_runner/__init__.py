"""Provide the public `spec_dag_runner` package exports."""

from __future__ import annotations

from .context import RunContext, open_context
from .graph import DefinitionGraph
from .parser import load_document, parse_definition
from .scheduler import RunOptions, RunSummary, Scheduler
from .state_store import StateStore
from .validator import ValidationReport, validate_definition

__version__ = "0.1.0"

__all__ = [
    "DefinitionGraph",
    "RunContext",
    "RunOptions",
    "RunSummary",
    "Scheduler",
    "StateStore",
    "ValidationReport",
    "load_document",
    "open_context",
    "parse_definition",
    "validate_definition",
]
