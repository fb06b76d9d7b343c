"""Persist run state inside the definition document.

The document keeps the user's definition above ``STATE_SEPARATOR`` and the
runtime sections (``run``, ``specs``, ``staging``) below it. Every mutation is
written immediately with an atomic replace, so a crash loses at most the
transition that was in flight.
"""

from __future__ import annotations

import copy
import threading
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from .constants import STATE_LOCK_SUFFIX, STATE_SEPARATOR
from .errors import InvalidTransitionError, StateError
from .io_utils import FileLock, _atomic_write_text, _dump_yaml
from .models import (
    LayerStaging,
    MergeState,
    RunInfo,
    RunState,
    SpecState,
    SpecStatus,
    can_transition,
)
from .parser import STATE_KEYS, ParsedDocument, parse_definition, split_document
from .utils import _now_iso


def _strip_inline_state(definition_text: str) -> str:
    data = yaml.safe_load(definition_text) or {}
    for key in STATE_KEYS:
        data.pop(key, None)
    return _dump_yaml(data)


class StateStore:
    """Read and write the run state embedded in a definition document."""

    def __init__(self, path: Path):
        self.path = path.resolve()
        self._lock = threading.RLock()
        self._file_lock = FileLock(self.path.with_name(self.path.name + STATE_LOCK_SUFFIX))
        self.document: Optional[ParsedDocument] = None
        self.state = RunState()

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> RunState:
        """Load the document and its state sections.

        Raises:
            ParseError: If the document cannot be parsed.
        """
        with self._lock, self._file_lock:
            text = self.path.read_text(encoding="utf-8")
            self.document = parse_definition(text, path=self.path)
            self.state = RunState.from_dict(self.document.state_data)
            return self.state

    def save(self) -> None:
        with self._lock, self._file_lock:
            self._write_locked()

    def _write_locked(self) -> None:
        # Re-read the definition part so edits made while running are kept.
        try:
            current = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateError(f"cannot read {self.path}: {exc}") from exc
        definition_text, _ = split_document(current)
        if self.document is not None and self.document.inline_state:
            logger.warning("Moving runtime state of {} below the state separator", self.path.name)
            definition_text = _strip_inline_state(definition_text)
            self.document.inline_state = False

        state = self.state.to_dict()
        if not state:
            _atomic_write_text(self.path, definition_text)
            return
        if definition_text and not definition_text.endswith("\n"):
            definition_text += "\n"
        _atomic_write_text(self.path, definition_text + STATE_SEPARATOR + "\n" + _dump_yaml(state))

    def snapshot(self) -> RunState:
        with self._lock:
            return copy.deepcopy(self.state)

    def fresh(self) -> None:
        """Drop every state section, leaving the definition untouched."""
        with self._lock:
            self.state = RunState()
            self.save()

    # ------------------------------------------------------------------
    # Spec updates
    # ------------------------------------------------------------------

    def spec(self, spec_id: str) -> SpecState:
        with self._lock:
            return copy.deepcopy(self._spec_locked(spec_id))

    def _spec_locked(self, spec_id: str) -> SpecState:
        if spec_id not in self.state.specs:
            self.state.specs[spec_id] = SpecState()
        return self.state.specs[spec_id]

    def ensure_specs(self, layer_by_spec: dict[str, str]) -> None:
        """Create pending entries for specs that have no state yet."""
        with self._lock:
            changed = False
            for spec_id, layer_id in layer_by_spec.items():
                state = self.state.specs.get(spec_id)
                if state is None:
                    self.state.specs[spec_id] = SpecState(layer=layer_id)
                    changed = True
                elif state.layer != layer_id:
                    state.layer = layer_id
                    changed = True
            if changed:
                self.save()

    def update_spec(self, spec_id: str, **fields: Any) -> SpecState:
        """Set fields on a spec and persist. ``status`` must go through `transition`."""
        if "status" in fields:
            raise ValueError("use transition() to change a spec status")
        with self._lock:
            state = self._spec_locked(spec_id)
            for key, value in fields.items():
                if not hasattr(state, key):
                    raise AttributeError(f"SpecState has no field {key!r}")
                setattr(state, key, value)
            self.save()
            return copy.deepcopy(state)

    def update_merge(self, spec_id: str, **fields: Any) -> MergeState:
        with self._lock:
            merge = self._spec_locked(spec_id).merge
            for key, value in fields.items():
                if not hasattr(merge, key):
                    raise AttributeError(f"MergeState has no field {key!r}")
                setattr(merge, key, value)
            self.save()
            return copy.deepcopy(merge)

    def transition(self, spec_id: str, status: SpecStatus, **fields: Any) -> SpecState:
        """Move a spec to ``status`` and persist.

        Raises:
            InvalidTransitionError: If the state machine does not allow the move.
        """
        with self._lock:
            state = self._spec_locked(spec_id)
            if not can_transition(state.status, status):
                raise InvalidTransitionError(spec_id, state.status.value, status.value)
            logger.debug("spec {}: {} -> {}", spec_id, state.status.value, status.value)
            state.status = status
            for key, value in fields.items():
                if not hasattr(state, key):
                    raise AttributeError(f"SpecState has no field {key!r}")
                setattr(state, key, value)
            self.save()
            return copy.deepcopy(state)

    def reset_spec(self, spec_id: str) -> SpecState:
        """Explicit retry: return a spec to a clean pending state."""
        with self._lock:
            layer = self._spec_locked(spec_id).layer
            self.state.specs[spec_id] = SpecState(layer=layer)
            for staging in self.state.staging.values():
                if spec_id in staging.specs_merged:
                    staging.specs_merged.remove(spec_id)
            self.save()
            return copy.deepcopy(self.state.specs[spec_id])

    # ------------------------------------------------------------------
    # Layer and run updates
    # ------------------------------------------------------------------

    def staging(self, layer_id: str) -> Optional[LayerStaging]:
        with self._lock:
            staging = self.state.staging.get(layer_id)
            return copy.deepcopy(staging) if staging else None

    def update_layer(self, layer_id: str, **fields: Any) -> LayerStaging:
        with self._lock:
            staging = self.state.staging.get(layer_id)
            if staging is None:
                staging = LayerStaging(branch=str(fields.get("branch") or ""))
                self.state.staging[layer_id] = staging
            for key, value in fields.items():
                if not hasattr(staging, key):
                    raise AttributeError(f"LayerStaging has no field {key!r}")
                setattr(staging, key, value)
            self.save()
            return copy.deepcopy(staging)

    def record_layer_merge(self, layer_id: str, spec_id: str) -> None:
        with self._lock:
            staging = self.state.staging.get(layer_id)
            if staging is None:
                raise StateError(f"layer {layer_id} has no staging branch")
            if spec_id not in staging.specs_merged:
                staging.specs_merged.append(spec_id)
            self.save()

    def update_run(self, **fields: Any) -> RunInfo:
        with self._lock:
            if self.state.run is None:
                self.state.run = RunInfo(started_at=_now_iso())
            for key, value in fields.items():
                if not hasattr(self.state.run, key):
                    raise AttributeError(f"RunInfo has no field {key!r}")
                setattr(self.state.run, key, value)
            self.save()
            return copy.deepcopy(self.state.run)
