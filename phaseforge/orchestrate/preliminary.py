"""On-demand context retrieval ("preliminary") for phase conversations.

Instead of stuffing every upstream artifact into the prompt, a phase
declares which kinds of context it may need. Each kind becomes a fetch
function the model can call; the phase's real operations are rejected with
a validation failure until every kind that has something to offer has been
fetched and committed.

Per kind the controller moves through ``awaiting_request -> fetched ->
ready``: a fetch call marks it fetched, and the round commit loads the
requested items into the conversation and marks it ready.
"""

from __future__ import annotations

import enum
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel, Field

from phaseforge.agents.application import FunctionController, FunctionSpec, ValidationIssue
from phaseforge.agents.function_agent import SystemMessageHistory
from phaseforge.context.state import PipelineState
from phaseforge.core.exceptions import PreliminaryError, PreliminaryExhaustedError
from phaseforge.core.models import Phase, TelemetryEvent, TelemetryKind

logger = logging.getLogger("phaseforge.orchestrate.preliminary")

T = TypeVar("T")


class PreliminaryKind(str, enum.Enum):
    ANALYSIS_FILES = "analysis_files"
    DATABASE_SCHEMAS = "database_schemas"
    INTERFACE_OPERATIONS = "interface_operations"
    INTERFACE_SCHEMAS = "interface_schemas"
    PREVIOUS_ANALYSIS_FILES = "previous_analysis_files"
    PREVIOUS_DATABASE_SCHEMAS = "previous_database_schemas"
    PREVIOUS_INTERFACE_OPERATIONS = "previous_interface_operations"
    PREVIOUS_INTERFACE_SCHEMAS = "previous_interface_schemas"


class FetchStatus(str, enum.Enum):
    AWAITING = "awaiting_request"
    FETCHED = "fetched"
    READY = "ready"


# ---------------------------------------------------------------------------
# Fetch parameters
# ---------------------------------------------------------------------------

class AnalysisFilesRequest(BaseModel):
    file_names: list[str] = Field(description="Names of the requirement analysis files to load.")


class DatabaseSchemasRequest(BaseModel):
    schema_names: list[str] = Field(description="Names of the database models to load.")


class EndpointRef(BaseModel):
    method: str = Field(description="HTTP method, e.g. get, post.")
    path: str = Field(description="Endpoint path, e.g. /users/{id}.")


class InterfaceOperationsRequest(BaseModel):
    endpoints: list[EndpointRef] = Field(description="Endpoints of the API operations to load.")


class InterfaceSchemasRequest(BaseModel):
    type_names: list[str] = Field(description="Names of the API schema types to load.")


def endpoint_id(method: str, path: str) -> str:
    return f"{method.lower()} {path}"


@dataclass(frozen=True)
class KindSpec:
    function: str
    parameters: type[BaseModel]
    phase: Phase
    previous: bool
    label: str

    def requested_ids(self, params: BaseModel) -> list[str]:
        if isinstance(params, AnalysisFilesRequest):
            return list(params.file_names)
        if isinstance(params, DatabaseSchemasRequest):
            return list(params.schema_names)
        if isinstance(params, InterfaceOperationsRequest):
            return [endpoint_id(e.method, e.path) for e in params.endpoints]
        if isinstance(params, InterfaceSchemasRequest):
            return list(params.type_names)
        raise TypeError(f"Unsupported fetch parameters: {type(params).__name__}")


def _spec(function: str, parameters: type[BaseModel], phase: Phase, previous: bool, label: str) -> KindSpec:
    return KindSpec(function, parameters, phase, previous, label)


KIND_SPECS: dict[PreliminaryKind, KindSpec] = {
    PreliminaryKind.ANALYSIS_FILES: _spec(
        "getAnalysisFiles", AnalysisFilesRequest, Phase.ANALYZE, False, "Requirement analysis files"),
    PreliminaryKind.DATABASE_SCHEMAS: _spec(
        "getDatabaseSchemas", DatabaseSchemasRequest, Phase.SCHEMA, False, "Database schemas"),
    PreliminaryKind.INTERFACE_OPERATIONS: _spec(
        "getInterfaceOperations", InterfaceOperationsRequest, Phase.INTERFACE, False, "API operations"),
    PreliminaryKind.INTERFACE_SCHEMAS: _spec(
        "getInterfaceSchemas", InterfaceSchemasRequest, Phase.INTERFACE, False, "API schema types"),
    PreliminaryKind.PREVIOUS_ANALYSIS_FILES: _spec(
        "getPreviousAnalysisFiles", AnalysisFilesRequest, Phase.ANALYZE, True, "Previous requirement analysis files"),
    PreliminaryKind.PREVIOUS_DATABASE_SCHEMAS: _spec(
        "getPreviousDatabaseSchemas", DatabaseSchemasRequest, Phase.SCHEMA, True, "Previous database schemas"),
    PreliminaryKind.PREVIOUS_INTERFACE_OPERATIONS: _spec(
        "getPreviousInterfaceOperations", InterfaceOperationsRequest, Phase.INTERFACE, True,
        "Previous API operations"),
    PreliminaryKind.PREVIOUS_INTERFACE_SCHEMAS: _spec(
        "getPreviousInterfaceSchemas", InterfaceSchemasRequest, Phase.INTERFACE, True, "Previous API schema types"),
}


def extract_items(kind: PreliminaryKind, artifact: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Index the items of a phase artifact by the identifier the model requests."""
    if not artifact:
        return {}
    base = kind.value.removeprefix("previous_")
    if base == "analysis_files":
        return {f["filename"]: f for f in artifact.get("files", []) if "filename" in f}
    if base == "database_schemas":
        return {m["name"]: m for m in artifact.get("models", []) if "name" in m}
    if base == "interface_operations":
        return {
            endpoint_id(op["method"], op["path"]): op
            for op in artifact.get("operations", [])
            if "method" in op and "path" in op
        }
    if base == "interface_schemas":
        return dict(artifact.get("schemas", {}))
    raise ValueError(f"Unknown preliminary kind: {kind}")


def collect_items(state: PipelineState, kind: PreliminaryKind) -> dict[str, Any]:
    spec = KIND_SPECS[kind]
    record = state.previous(spec.phase) if spec.previous else state.latest(spec.phase)
    return extract_items(kind, record.artifact if record is not None else None)


def fix_kinds(
    kinds: Iterable[PreliminaryKind],
    state: PipelineState,
    explicit: Optional[dict[PreliminaryKind, dict[str, Any]]] = None,
) -> list[PreliminaryKind]:
    """Drop ``previous_*`` kinds that have no previous record to draw from."""
    explicit = explicit or {}
    fixed: list[PreliminaryKind] = []
    for kind in kinds:
        kind = PreliminaryKind(kind)
        spec = KIND_SPECS[kind]
        if spec.previous and kind not in explicit and state.previous(spec.phase) is None:
            continue
        if kind not in fixed:
            fixed.append(kind)
    return fixed


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class PreliminaryController:
    """Per-conversation context retrieval state for one stage."""

    def __init__(
        self,
        source: str,
        kinds: Iterable[PreliminaryKind],
        state: PipelineState,
        all: Optional[dict[PreliminaryKind, dict[str, Any]]] = None,
        local: Optional[dict[PreliminaryKind, dict[str, Any]]] = None,
    ):
        self.source = source
        self.source_id = str(uuid.uuid4())
        self.state = state
        self.kinds = fix_kinds(kinds, state, all)
        self.all: dict[PreliminaryKind, dict[str, Any]] = {}
        self.local: dict[PreliminaryKind, dict[str, Any]] = {}
        self._pending: dict[PreliminaryKind, list[str]] = {}
        self._status: dict[PreliminaryKind, FetchStatus] = {}
        self._real_names: list[str] = []
        for kind in self.kinds:
            items = dict((all or {}).get(kind) or collect_items(state, kind))
            loaded = dict((local or {}).get(kind) or {})
            self.all[kind] = {**items, **loaded}
            self.local[kind] = loaded
            self._status[kind] = FetchStatus.AWAITING if self.available(kind) else FetchStatus.READY

    # -- queries ------------------------------------------------------------

    def available(self, kind: PreliminaryKind) -> list[str]:
        """Identifiers of ``kind`` not loaded yet, sorted."""
        loaded = self.local.get(kind, {})
        return sorted(key for key in self.all.get(kind, {}) if key not in loaded)

    def status(self, kind: PreliminaryKind) -> FetchStatus:
        return self._status[kind]

    def awaiting(self) -> list[PreliminaryKind]:
        return [kind for kind in self.kinds if self._status[kind] is FetchStatus.AWAITING]

    def fetched(self) -> list[PreliminaryKind]:
        """Kinds requested in the current turn but not committed yet."""
        return [kind for kind in self.kinds if self._status[kind] is FetchStatus.FETCHED]

    def kind_of(self, function: str) -> Optional[PreliminaryKind]:
        for kind in self.kinds:
            if KIND_SPECS[kind].function == function:
                return kind
        return None

    # -- fetch --------------------------------------------------------------

    def validate_fetch(self, kind: PreliminaryKind, ids: list[str]) -> list[ValidationIssue]:
        spec = KIND_SPECS[kind]
        valid = self.all.get(kind, {})
        newbie = self.available(kind)
        issues: list[ValidationIssue] = []
        for index, key in enumerate(ids):
            if key in valid:
                continue
            listed = "\n".join(f"- {json.dumps(k)}" for k in newbie) or "- (nothing left to load)"
            issues.append(ValidationIssue(
                path=f"$input[{index}]",
                expected=" | ".join(json.dumps(k) for k in newbie) or "never",
                value=key,
                description=(
                    f"{json.dumps(key)} does not exist. Never request it again and "
                    f"never invent identifiers. Choose only from the list below.\n\n"
                    f"{listed}"
                ),
            ))
        loaded = self.local.get(kind, {})
        if ids and all(key in loaded for key in ids):
            others = [f for f in self._operation_names if f != spec.function]
            issues.append(ValidationIssue(
                path="$input",
                expected=" | ".join(others) or "never",
                value=ids,
                description=(
                    f"Every item you requested through {spec.function} is already loaded. "
                    "Never repeat the same request; call another function instead."
                ),
            ))
        if not ids:
            issues.append(ValidationIssue(
                path="$input",
                expected="non-empty array",
                value=ids,
                description="Request at least one item.",
            ))
        return issues

    def fetch(self, kind: PreliminaryKind, ids: list[str]) -> list[str]:
        """Record a validated request; the items load on the next commit."""
        pending = self._pending.setdefault(kind, [])
        for key in ids:
            if key not in pending and key not in self.local.get(kind, {}):
                pending.append(key)
        self._status[kind] = FetchStatus.FETCHED
        return list(pending)

    async def commit(self, ctx: Any, trial: int = 1) -> int:
        """Load every pending request into the local collection."""
        loaded = 0
        for kind, ids in list(self._pending.items()):
            for key in ids:
                self.local.setdefault(kind, {})[key] = self.all[kind][key]
            loaded += len(ids)
            self._status[kind] = FetchStatus.READY
            await ctx.dispatch(TelemetryEvent(
                kind=TelemetryKind.PRELIMINARY,
                source=self.source,
                payload={
                    "source_id": self.source_id,
                    "kind": kind.value,
                    "function": KIND_SPECS[kind].function,
                    "ids": ids,
                    "trial": trial,
                },
            ))
            logger.debug("Loaded %d %s for %s", len(ids), kind.value, self.source)
        self._pending.clear()
        return loaded

    # -- application --------------------------------------------------------

    @property
    def _operation_names(self) -> list[str]:
        return [KIND_SPECS[k].function for k in self.kinds] + self._real_names

    def _fetch_spec(self, kind: PreliminaryKind) -> FunctionSpec:
        spec = KIND_SPECS[kind]
        return FunctionSpec(
            name=spec.function,
            description=(
                f"Load {spec.label.lower()} into the conversation. "
                "Request only items you actually need that are not loaded yet."
            ),
            parameters=spec.parameters,
            execute=lambda params: {"requested": self.fetch(kind, spec.requested_ids(params))},
            validate=lambda params: self.validate_fetch(kind, spec.requested_ids(params)),
        )

    def _guard(self, inner: FunctionSpec) -> FunctionSpec:
        def validate(params: Any) -> list[ValidationIssue]:
            awaiting = self.awaiting()
            if awaiting:
                functions = [KIND_SPECS[k].function for k in awaiting]
                return [ValidationIssue(
                    path="$input",
                    expected=" | ".join(functions),
                    value=None,
                    description=(
                        f"Context required by {inner.name} is not loaded yet. "
                        f"Call {', '.join(functions)} first, then call {inner.name} again."
                    ),
                )]
            fetched = self.fetched()
            if fetched:
                functions = [KIND_SPECS[k].function for k in fetched]
                return [ValidationIssue(
                    path="$input",
                    expected="never",
                    value=None,
                    description=(
                        f"Context requested through {', '.join(functions)} is loaded only "
                        f"after this response. Stop here and call {inner.name} once the "
                        "requested items appear in the conversation."
                    ),
                )]
            return inner.validate(params) if inner.validate else []

        return FunctionSpec(
            name=inner.name,
            description=inner.description,
            parameters=inner.parameters,
            execute=inner.execute,
            validate=validate,
        )

    def wrap(self, controller: FunctionController) -> FunctionController:
        """Controller exposing the fetch functions next to the guarded real operations."""
        self._real_names = controller.function_names
        return FunctionController(
            name=controller.name,
            functions=[self._fetch_spec(kind) for kind in self.kinds]
            + [self._guard(function) for function in controller.functions],
        )

    def get_histories(self) -> list[SystemMessageHistory]:
        histories: list[SystemMessageHistory] = []
        for kind in self.kinds:
            spec = KIND_SPECS[kind]
            loaded = self.local.get(kind, {})
            available = self.available(kind)
            lines = [f"## {spec.label}", ""]
            if loaded:
                lines += [
                    "Already loaded:",
                    "",
                    "```json",
                    json.dumps(loaded, indent=2, default=str),
                    "```",
                    "",
                ]
            if available:
                lines.append(f"Available through `{spec.function}` (not loaded yet):")
                lines.append("")
                lines += [f"- {key}" for key in available]
            else:
                lines.append(f"Nothing more to load through `{spec.function}`.")
            histories.append(SystemMessageHistory("\n".join(lines)))
        return histories

    async def orchestrate(self, ctx: Any, process: Callable[[], Awaitable[Optional[T]]]) -> T:
        """Run ``process`` until it yields a value, loading context in between.

        ``process`` returns None when the model only requested context.
        """
        limit = ctx.config.orchestrator.rag_limit
        for trial in range(1, limit + 1):
            value = await process()
            if value is not None:
                return value
            if not self._pending:
                raise PreliminaryError(
                    f"{self.source} produced neither a result nor a context request"
                )
            await self.commit(ctx, trial)
        raise PreliminaryExhaustedError(self.source, limit)
