#!/usr/bin/env python3
"""
Guardlint - Pattern-guarded call classification over typed ASTs

High-level goals:
- Load a typed tree (nodes, type table, def table, resolutions) dumped by the host compiler
- Resolve callees to canonical, alias-independent symbol identities
- Classify expression types into coarse shapes (reference, raw pointer, value)
- Run declarative guard-chain rules at every node of interest
- Emit diagnostics as rustc-style text or structured JSON for CI / IDEs

The module is intentionally single-file: every layer (input model, path table,
resolver, oracle, rules, visitor, reporter, CLI) lives in its own section below.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)
import argparse
import ast
import functools
import json
import operator
import os
import sys

import yaml

TOOL_NAME = "guardlint"
__version__ = "0.1.0"

CONFIG_ENV_VAR = "GUARDLINT_CONFIG"


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class GuardlintError(Exception):
    """Base class for every error raised by guardlint."""


class MalformedInputError(GuardlintError):
    """The upstream typed tree is internally inconsistent (fatal to one unit)."""


class DumpFormatError(GuardlintError):
    """A typed-tree dump could not be turned into the input model."""


class RegistryError(GuardlintError):
    """Misuse of the canonical path table or the rule registry."""


class ExpressionEvalError(GuardlintError):
    """Raised when a guard expression uses an unsafe or invalid construct."""


def _warn(message: str) -> None:
    sys.stderr.write(f"[{TOOL_NAME}] {message}\n")


_WARNED_ONCE: Set[Tuple[str, ...]] = set()


def _warn_once(key: Tuple[str, ...], message: str) -> None:
    if key in _WARNED_ONCE:
        return
    _WARNED_ONCE.add(key)
    _warn(message)


# ============================================================
# =============== SOURCE LOCATION & TYPES ====================
# ============================================================

@dataclass
class SourceRange:
    file: str
    line_start: int
    col_start: int
    line_end: int
    col_end: int


REFERENCE_KINDS: FrozenSet[str] = frozenset({"ref"})
RAW_POINTER_KINDS: FrozenSet[str] = frozenset({"raw_ptr"})
VALUE_KINDS: FrozenSet[str] = frozenset({
    "bool", "char", "int", "uint", "float", "str",
    "adt", "tuple", "array", "slice", "unit",
})


@dataclass
class TyInfo:
    """
    One entry of the host's type table.
    `inner` is the pointee type id for `ref` / `raw_ptr` kinds.
    """
    type_id: int
    kind: str
    name: Optional[str] = None
    inner: Optional[int] = None
    mutable: bool = False


@dataclass
class TypeTable:
    types: Dict[int, TyInfo] = field(default_factory=dict)
    node_types: Dict[int, int] = field(default_factory=dict)  # hir_id -> type_id

    def lookup(self, type_id: int) -> TyInfo:
        ty = self.types.get(type_id)
        if ty is None:
            raise MalformedInputError(f"type id {type_id} is not in the type table")
        return ty

    def type_of_node(self, hir_id: int) -> Optional[TyInfo]:
        """None when inference recorded nothing for the node."""
        type_id = self.node_types.get(hir_id)
        if type_id is None:
            return None
        ty = self.types.get(type_id)
        if ty is None:
            raise MalformedInputError(
                f"node {hir_id} claims type id {type_id}, which is not in the type table"
            )
        return ty

    def render(self, type_id: int, _depth: int = 0) -> str:
        ty = self.lookup(type_id)
        if _depth > 32:
            return "..."
        if ty.kind in REFERENCE_KINDS and ty.inner is not None:
            prefix = "&mut " if ty.mutable else "&"
            return prefix + self.render(ty.inner, _depth + 1)
        if ty.kind in RAW_POINTER_KINDS and ty.inner is not None:
            prefix = "*mut " if ty.mutable else "*const "
            return prefix + self.render(ty.inner, _depth + 1)
        return ty.name or ty.kind


# ============================================================
# ================= DEFINITIONS & RESOLUTION =================
# ============================================================

CanonicalPath = Tuple[str, ...]

ALIAS_DEF_KINDS: FrozenSet[str] = frozenset({"reexport", "use"})


@dataclass
class DefInfo:
    """
    One declaration known to the host.

    - path: its true def path (crate, modules, item)
    - target: the aliased declaration for `reexport` / `use` entries
    - impls: Self type id -> implementing def, for `trait_method` entries
    """
    def_id: int
    path: CanonicalPath
    kind: str = "fn"
    target: Optional[int] = None
    has_default: bool = False
    impls: Dict[int, int] = field(default_factory=dict)


@dataclass
class Res:
    """What a path expression denotes at its use site."""
    def_id: Optional[int] = None
    local: bool = False
    self_ty: Optional[int] = None
    generic_args: List[int] = field(default_factory=list)


# ============================================================
# ===================== EXPRESSIONS ==========================
# ============================================================

@dataclass
class Expr:
    """
    A node of the host's typed tree.

    Call:       callee + args
    MethodCall: callee is the receiver, args are the remaining operands
    Path:       path is the surface text, resolution lives in TypedCrate.resolutions
    Anything else keeps its sub-expressions in children.
    """
    hir_id: int
    kind: str
    source_range: Optional[SourceRange] = None

    callee: Optional["Expr"] = None
    args: List["Expr"] = field(default_factory=list)
    children: List["Expr"] = field(default_factory=list)

    path: Optional[str] = None
    type_args: List[str] = field(default_factory=list)  # turbofish, e.g. ["&usize"]
    text: Optional[str] = None  # source snippet

    def iter_children(self) -> Iterator["Expr"]:
        """Sub-expressions in document order."""
        if self.callee is not None:
            yield self.callee
        yield from self.args
        yield from self.children


@dataclass
class SyntacticUnit:
    """The smallest independently analyzable piece of the program: one body."""
    name: str
    file: str
    body: Expr


@dataclass
class TypedCrate:
    """Everything the host hands over for one crate."""
    name: str
    units: List[SyntacticUnit] = field(default_factory=list)
    types: TypeTable = field(default_factory=TypeTable)
    defs: Dict[int, DefInfo] = field(default_factory=dict)
    resolutions: Dict[int, Res] = field(default_factory=dict)  # hir_id -> Res

    def unit(self, name: str) -> SyntacticUnit:
        for unit in self.units:
            if unit.name == name:
                return unit
        raise KeyError(name)


# ============================================================
# ==================== TYPED TREE LOADING ====================
# ============================================================

def split_path(value: Any) -> CanonicalPath:
    """Accept "core::mem::zeroed" or ["core", "mem", "zeroed"]."""
    if isinstance(value, str):
        segments = [seg.strip() for seg in value.split("::")]
    elif isinstance(value, (list, tuple)):
        segments = [str(seg).strip() for seg in value]
    else:
        raise DumpFormatError(f"expected a path, got {value!r}")
    if not segments or any(not seg for seg in segments):
        raise DumpFormatError(f"invalid path {value!r}")
    return tuple(segments)


def _as_int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise DumpFormatError(f"{what} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise DumpFormatError(f"{what} must be an integer, got {value!r}") from exc


def _as_mapping(value: Any, what: str) -> Dict[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DumpFormatError(f"{what} must be a mapping")
    return value


def _range_from_doc(raw: Any, default_file: str) -> Optional[SourceRange]:
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        if len(raw) != 4:
            raise DumpFormatError(f"span must have 4 items, got {raw!r}")
        ls, cs, le, ce = (_as_int(item, "span") for item in raw)
        return SourceRange(default_file, ls, cs, le, ce)
    if isinstance(raw, dict):
        return SourceRange(
            file=str(raw.get("file", default_file)),
            line_start=_as_int(raw.get("line_start", 0), "span.line_start"),
            col_start=_as_int(raw.get("col_start", 0), "span.col_start"),
            line_end=_as_int(raw.get("line_end", raw.get("line_start", 0)), "span.line_end"),
            col_end=_as_int(raw.get("col_end", raw.get("col_start", 0)), "span.col_end"),
        )
    raise DumpFormatError(f"unsupported span {raw!r}")


def _res_from_doc(raw: Any) -> Res:
    if raw is None or raw == "local":
        return Res(local=raw == "local")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return Res(def_id=raw)
    if not isinstance(raw, dict):
        raise DumpFormatError(f"unsupported res {raw!r}")
    return Res(
        def_id=_as_int(raw["def"], "res.def") if raw.get("def") is not None else None,
        local=bool(raw.get("local", False)),
        self_ty=_as_int(raw["self_ty"], "res.self_ty") if raw.get("self_ty") is not None else None,
        generic_args=[_as_int(arg, "res.generic_args") for arg in raw.get("generic_args") or []],
    )


class _ExprBuilder:
    def __init__(self, crate: TypedCrate, file: str, seen: Set[int]) -> None:
        self.crate = crate
        self.file = file
        self.seen = seen  # hir ids are unique crate-wide

    def build(self, raw: Any) -> Expr:
        if not isinstance(raw, dict):
            raise DumpFormatError(f"expression node must be a mapping, got {raw!r}")
        if "id" not in raw or "kind" not in raw:
            raise DumpFormatError(f"expression node is missing 'id' or 'kind': {raw!r}")

        hir_id = _as_int(raw["id"], "id")
        if hir_id in self.seen:
            raise DumpFormatError(f"duplicate node id {hir_id}")
        self.seen.add(hir_id)

        if raw.get("ty") is not None:
            self.crate.types.node_types[hir_id] = _as_int(raw["ty"], f"ty of node {hir_id}")
        if "res" in raw:
            self.crate.resolutions[hir_id] = _res_from_doc(raw["res"])

        callee = raw.get("callee")
        return Expr(
            hir_id=hir_id,
            kind=str(raw["kind"]),
            source_range=_range_from_doc(raw.get("span"), self.file),
            callee=self.build(callee) if callee is not None else None,
            args=[self.build(arg) for arg in raw.get("args") or []],
            children=[self.build(child) for child in raw.get("children") or []],
            path=str(raw["path"]) if raw.get("path") is not None else None,
            type_args=[str(arg) for arg in raw.get("type_args") or []],
            text=str(raw["text"]) if raw.get("text") is not None else None,
        )


def crate_from_document(doc: Any, origin: str = "<memory>") -> TypedCrate:
    """
    Build a TypedCrate from an already-parsed dump document.

    Only the document structure is validated here. Referential consistency
    (type ids, def ids, alias chains) is checked lazily during analysis so a
    broken unit cannot take down its siblings.
    """
    if not isinstance(doc, dict):
        raise DumpFormatError(f"{origin}: top-level document must be a mapping")

    name = str(doc.get("crate") or os.path.splitext(os.path.basename(origin))[0])
    crate = TypedCrate(name=name)

    for key, raw_ty in _as_mapping(doc.get("types"), "types").items():
        type_id = _as_int(key, "type id")
        raw_ty = _as_mapping(raw_ty, f"type {type_id}")
        if "kind" not in raw_ty:
            raise DumpFormatError(f"{origin}: type {type_id} has no kind")
        crate.types.types[type_id] = TyInfo(
            type_id=type_id,
            kind=str(raw_ty["kind"]),
            name=str(raw_ty["name"]) if raw_ty.get("name") is not None else None,
            inner=_as_int(raw_ty["inner"], "inner") if raw_ty.get("inner") is not None else None,
            mutable=bool(raw_ty.get("mutable", False)),
        )

    for key, raw_def in _as_mapping(doc.get("defs"), "defs").items():
        def_id = _as_int(key, "def id")
        raw_def = _as_mapping(raw_def, f"def {def_id}")
        if "path" not in raw_def:
            raise DumpFormatError(f"{origin}: def {def_id} has no path")
        impls = {
            _as_int(ty, "impl self type"): _as_int(target, "impl def")
            for ty, target in _as_mapping(raw_def.get("impls"), "impls").items()
        }
        crate.defs[def_id] = DefInfo(
            def_id=def_id,
            path=split_path(raw_def["path"]),
            kind=str(raw_def.get("kind", "fn")),
            target=_as_int(raw_def["target"], "target") if raw_def.get("target") is not None else None,
            has_default=bool(raw_def.get("has_default", False)),
            impls=impls,
        )

    raw_units = doc.get("units") or []
    if not isinstance(raw_units, list):
        raise DumpFormatError(f"{origin}: 'units' must be a list")
    seen: Set[int] = set()
    for index, raw_unit in enumerate(raw_units):
        if not isinstance(raw_unit, dict) or "body" not in raw_unit:
            raise DumpFormatError(f"{origin}: unit #{index + 1} has no body")
        file = str(raw_unit.get("file") or origin)
        builder = _ExprBuilder(crate, file, seen)
        crate.units.append(
            SyntacticUnit(
                name=str(raw_unit.get("name") or f"unit{index + 1}"),
                file=file,
                body=builder.build(raw_unit["body"]),
            )
        )

    return crate


def load_crate_from_dump(path: str) -> TypedCrate:
    """Read a YAML (or JSON) typed-tree dump from disk."""
    with open(path, "r", encoding="utf-8") as handle:
        try:
            doc = yaml.safe_load(handle)
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            raise DumpFormatError(f"{path}: could not parse dump: {exc}") from exc
    return crate_from_document(doc, origin=path)


# ============================================================
# ================== CANONICAL PATH TABLE ====================
# ============================================================

@dataclass(frozen=True)
class SymbolIdentity:
    """
    Alias-independent identity of a declaration: the def path of the
    original declaration, after re-exports and trait dispatch.
    """
    path: CanonicalPath

    def __str__(self) -> str:
        return "::".join(self.path)


ZERO_FILL = "zero_fill"
UNINIT = "uninit"

MEM_ZEROED: CanonicalPath = ("core", "mem", "zeroed")
MEM_UNINIT: CanonicalPath = ("core", "mem", "uninitialized")
INTRINSICS_INIT: CanonicalPath = ("core", "intrinsics", "init")
INTRINSICS_UNINIT: CanonicalPath = ("core", "intrinsics", "uninit")


class CanonicalPathTable:
    """Registry of well-known declarations, keyed by canonical identity."""

    def __init__(self) -> None:
        self._entries: Dict[SymbolIdentity, str] = {}
        self._frozen = False

    def register(self, canonical_path: Sequence[str], tag: str) -> SymbolIdentity:
        if self._frozen:
            raise RegistryError("canonical path table is frozen")
        identity = SymbolIdentity(tuple(canonical_path))
        if not identity.path:
            raise RegistryError("cannot register an empty path")
        if identity in self._entries:
            raise RegistryError(f"'{identity}' is already registered as '{self._entries[identity]}'")
        self._entries[identity] = tag
        return identity

    def lookup(self, identity: Optional[SymbolIdentity]) -> Optional[str]:
        if identity is None:
            return None
        return self._entries.get(identity)

    def freeze(self) -> "CanonicalPathTable":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def copy(self) -> "CanonicalPathTable":
        """Unfrozen copy with the same entries."""
        clone = CanonicalPathTable()
        clone._entries = dict(self._entries)
        return clone

    def __iter__(self) -> Iterator[Tuple[SymbolIdentity, str]]:
        return iter(list(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)


@functools.lru_cache(maxsize=None)
def default_path_table() -> CanonicalPathTable:
    table = CanonicalPathTable()
    table.register(MEM_ZEROED, ZERO_FILL)
    table.register(INTRINSICS_INIT, ZERO_FILL)
    table.register(MEM_UNINIT, UNINIT)
    table.register(INTRINSICS_UNINIT, UNINIT)
    return table.freeze()


def extended_path_table(extra: Iterable[Tuple[CanonicalPath, str]]) -> CanonicalPathTable:
    table = default_path_table().copy()
    for path, tag in extra:
        table.register(path, tag)
    return table.freeze()


# ============================================================
# ==================== SYMBOL RESOLVER =======================
# ============================================================

UNRESOLVABLE_SELF_KINDS: FrozenSet[str] = frozenset({"dyn", "param", "infer", "error"})


class SymbolResolver:
    """
    Maps a callee as written at the call site to the identity of the
    declaration it denotes. Returns None whenever that is not statically
    known (locals, function pointers, trait objects, generic Self).
    """

    def __init__(self, crate: TypedCrate) -> None:
        self.crate = crate

    def resolve(self, callee: Optional[Expr]) -> Optional[SymbolIdentity]:
        if callee is None or callee.kind != "Path":
            return None
        res = self.crate.resolutions.get(callee.hir_id)
        if res is None or res.local or res.def_id is None:
            return None

        decl = self._follow_aliases(res.def_id)
        if decl.kind == "trait_method":
            dispatched = self._dispatch_trait_method(decl, res.self_ty)
            if dispatched is None:
                return None
            decl = dispatched
        return SymbolIdentity(decl.path)

    def _lookup_def(self, def_id: int) -> DefInfo:
        decl = self.crate.defs.get(def_id)
        if decl is None:
            raise MalformedInputError(f"def id {def_id} is not in the def table")
        return decl

    def _follow_aliases(self, def_id: int) -> DefInfo:
        decl = self._lookup_def(def_id)
        seen: Set[int] = set()
        while decl.kind in ALIAS_DEF_KINDS:
            if decl.def_id in seen:
                raise MalformedInputError(f"alias cycle through '{'::'.join(decl.path)}'")
            seen.add(decl.def_id)
            if decl.target is None:
                raise MalformedInputError(f"{decl.kind} '{'::'.join(decl.path)}' has no target")
            decl = self._lookup_def(decl.target)
        return decl

    def _dispatch_trait_method(self, method: DefInfo, self_ty: Optional[int]) -> Optional[DefInfo]:
        if self_ty is None:
            return None
        if self.crate.types.lookup(self_ty).kind in UNRESOLVABLE_SELF_KINDS:
            return None
        impl_def = method.impls.get(self_ty)
        if impl_def is not None:
            return self._follow_aliases(impl_def)
        if method.has_default:
            return method
        return None


# ============================================================
# ================== TYPE SHAPE ORACLE =======================
# ============================================================

class TypeShape(Enum):
    REFERENCE = "reference"
    RAW_POINTER = "raw_pointer"
    VALUE = "value"
    OTHER = "other"


def shape_for_kind(kind: str) -> TypeShape:
    if kind in REFERENCE_KINDS:
        return TypeShape.REFERENCE
    if kind in RAW_POINTER_KINDS:
        return TypeShape.RAW_POINTER
    if kind in VALUE_KINDS:
        return TypeShape.VALUE
    return TypeShape.OTHER


class TypeShapeOracle:
    """
    Read-only view of the type table. Results are cached per pass; the
    table is immutable while analysis runs.
    """

    def __init__(self, types: TypeTable) -> None:
        self.types = types
        self._cache: Dict[int, TypeShape] = {}

    def shape_of(self, expr: Expr) -> TypeShape:
        cached = self._cache.get(expr.hir_id)
        if cached is not None:
            return cached
        ty = self.types.type_of_node(expr.hir_id)
        shape = shape_for_kind(ty.kind) if ty is not None else TypeShape.OTHER
        self._cache[expr.hir_id] = shape
        return shape

    def type_text(self, expr: Expr) -> Optional[str]:
        type_id = self.types.node_types.get(expr.hir_id)
        if type_id is None:
            return None
        return self.types.render(type_id)


# ============================================================
# ======================= DIAGNOSES ==========================
# ============================================================

INTERNAL_ERROR_RULE = "internal-error"


@dataclass
class Diagnosis:
    """
    One confirmed finding. `location` is
    {file, line_start, col_start, line_end, col_end}.
    """
    rule: str
    category: str
    severity: str
    summary: str
    help: str
    location: Dict[str, Any]

    unit: Optional[str] = None
    internal: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)


def _object_location(node: Optional[Expr], unit: Optional[SyntacticUnit]) -> Dict[str, Any]:
    source_range = node.source_range if node is not None else None
    if isinstance(source_range, SourceRange):
        return {
            "file": source_range.file,
            "line_start": source_range.line_start,
            "col_start": source_range.col_start,
            "line_end": source_range.line_end,
            "col_end": source_range.col_end,
        }

    file_hint = unit.file if unit is not None else "<unknown>"
    return {
        "file": file_hint,
        "line_start": 0,
        "col_start": 0,
        "line_end": 0,
        "col_end": 0,
    }


class DiagnosticReporter:
    """Ordered sink for diagnoses. Never deduplicates, never raises."""

    def __init__(self) -> None:
        self.diagnostics: List[Diagnosis] = []

    def report(self, diagnosis: Diagnosis) -> None:
        self.diagnostics.append(diagnosis)

    def report_internal_error(self, unit: SyntacticUnit, exc: Exception) -> None:
        self.report(
            Diagnosis(
                rule=INTERNAL_ERROR_RULE,
                category="internal",
                severity="error",
                summary=f"internal error while analyzing `{unit.name}`: {exc}",
                help="the typed tree handed over by the compiler is inconsistent for this unit",
                location=_object_location(unit.body, unit),
                unit=unit.name,
                internal=True,
            )
        )

    def __len__(self) -> int:
        return len(self.diagnostics)


# ============================================================
# ==================== RULE MODELS ===========================
# ============================================================

# Category -> default lint level, as a lint registry would set it.
CATEGORY_LEVELS: Dict[str, str] = {
    "correctness": "deny",
    "suspicious": "warn",
    "style": "warn",
    "complexity": "warn",
    "perf": "warn",
    "pedantic": "allow",
    "nursery": "allow",
    "restriction": "allow",
}

LEVEL_SEVERITY: Dict[str, str] = {"deny": "error", "warn": "warning", "allow": "note"}
SEVERITY_LEVEL: Dict[str, str] = {severity: level for level, severity in LEVEL_SEVERITY.items()}


@dataclass
class RuleContext:
    """Collaborators a guard step may consult while evaluating one unit."""
    unit: SyntacticUnit
    resolver: SymbolResolver
    oracle: TypeShapeOracle
    paths: CanonicalPathTable


Bindings = Dict[str, Any]
GuardCheck = Callable[[Expr, RuleContext, Bindings], bool]
Classifier = Callable[[Expr, RuleContext, Bindings], Optional[str]]


@dataclass(frozen=True)
class GuardStep:
    name: str
    check: GuardCheck


@dataclass(frozen=True)
class Matched:
    diagnosis: Diagnosis


@dataclass(frozen=True)
class NotMatched:
    failed_step: str


MatchResult = Union[Matched, NotMatched]


@dataclass
class LintDoc:
    what_it_does: str
    why_bad: str
    known_problems: str = "None."
    example: str = ""


@dataclass
class Rule:
    """
    A named guard chain. Rules are stateless: every evaluation starts
    with fresh bindings and nothing is kept between nodes.
    """
    name: str
    category: str
    node_kinds: FrozenSet[str]
    guards: List[GuardStep]
    classify: Classifier

    help: str = ""
    severity: Optional[str] = None
    doc: Optional[LintDoc] = None

    def __post_init__(self) -> None:
        self.node_kinds = frozenset(self.node_kinds)
        if self.severity is None:
            self.severity = LEVEL_SEVERITY[CATEGORY_LEVELS.get(self.category, "warn")]

    @property
    def level(self) -> str:
        return SEVERITY_LEVEL.get(self.severity or "", "warn")

    def evaluate(self, node: Expr, ctx: RuleContext) -> MatchResult:
        bindings: Bindings = {}
        for step in self.guards:
            if not step.check(node, ctx, bindings):
                return NotMatched(step.name)

        summary = self.classify(node, ctx, bindings)
        if summary is None:
            return NotMatched("classify")
        return Matched(self._build_diagnosis(node, ctx, bindings, summary))

    def _build_diagnosis(
        self,
        node: Expr,
        ctx: RuleContext,
        bindings: Bindings,
        summary: str,
    ) -> Diagnosis:
        extras: Dict[str, Any] = {}
        if bindings.get("identity") is not None:
            extras["callee"] = str(bindings["identity"])
        if bindings.get("callee") is not None and bindings["callee"].path:
            extras["callee_text"] = bindings["callee"].path
        if bindings.get("shape") is not None:
            extras["shape"] = bindings["shape"].value
        if node.text:
            extras["snippet"] = node.text
        return Diagnosis(
            rule=self.name,
            category=self.category,
            severity=self.severity or "warning",
            summary=summary,
            help=self.help,
            location=_object_location(node, ctx.unit),
            unit=ctx.unit.name,
            extras=extras,
        )


# ============================================================
# ===================== GUARD STEPS ==========================
# ============================================================

def is_call_with_arity(arity: int) -> GuardStep:
    """Direct call expression (not a method call) with exactly `arity` arguments."""
    def check(node: Expr, ctx: RuleContext, bindings: Bindings) -> bool:
        return node.kind == "Call" and node.callee is not None and len(node.args) == arity

    return GuardStep("call_arity", check)


def callee_is_path() -> GuardStep:
    def check(node: Expr, ctx: RuleContext, bindings: Bindings) -> bool:
        if node.callee is None or node.callee.kind != "Path":
            return False
        bindings["callee"] = node.callee
        return True

    return GuardStep("callee_is_path", check)


def result_shape(shape: TypeShape) -> GuardStep:
    def check(node: Expr, ctx: RuleContext, bindings: Bindings) -> bool:
        actual = ctx.oracle.shape_of(node)
        bindings["shape"] = actual
        return actual is shape

    return GuardStep("result_shape", check)


def resolves_callee() -> GuardStep:
    """Binds `identity` and its path-table `tag` (possibly None)."""
    def check(node: Expr, ctx: RuleContext, bindings: Bindings) -> bool:
        identity = ctx.resolver.resolve(bindings.get("callee") or node.callee)
        if identity is None:
            return False
        bindings["identity"] = identity
        bindings["tag"] = ctx.paths.lookup(identity)
        return True

    return GuardStep("resolves_callee", check)


def classify_by_tag(messages: Mapping[str, str]) -> Classifier:
    messages = dict(messages)

    def classify(node: Expr, ctx: RuleContext, bindings: Bindings) -> Optional[str]:
        tag = bindings.get("tag")
        if tag is None:
            return None
        return messages.get(tag)

    return classify


# ============================================================
# ============== RESTRICTED GUARD EXPRESSIONS ================
# ============================================================

_EXPR_BUILTINS: Dict[str, Any] = {
    "len": len,
    "any": any,
    "all": all,
}


class _GuardExpressionInterpreter:
    """
    Evaluates a restricted subset of Python expressions by walking the AST:
    boolean logic, comparisons, public attribute access, indexing, literals
    and calls to whitelisted builtins only.
    """

    _UNARY_OPS = {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
    }
    _COMPARISONS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.In: lambda left, right: left in right,
        ast.NotIn: lambda left, right: left not in right,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    def __init__(self) -> None:
        self._cache: Dict[str, ast.Expression] = {}

    def compile(self, expr: str) -> ast.Expression:
        tree = self._cache.get(expr)
        if tree is None:
            try:
                tree = ast.parse(expr, mode="eval")
            except SyntaxError as exc:
                raise ExpressionEvalError(f"invalid expression '{expr}': {exc}") from exc
            self._cache[expr] = tree
        return tree

    def evaluate(self, expr: str, env: Mapping[str, Any]) -> Any:
        expr = expr.strip()
        if not expr:
            return True
        return self._eval_node(self.compile(expr).body, env)

    def _eval_node(self, node: ast.AST, env: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(bool(self._eval_node(value, env)) for value in node.values)
            return any(bool(self._eval_node(value, env)) for value in node.values)

        if isinstance(node, ast.UnaryOp):
            op = self._UNARY_OPS.get(type(node.op))
            if op is None:
                raise ExpressionEvalError("unsupported unary operator")
            return op(self._eval_node(node.operand, env))

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, env)
            for operator_node, comparator in zip(node.ops, node.comparators):
                compare = self._COMPARISONS.get(type(operator_node))
                if compare is None:
                    raise ExpressionEvalError("unsupported comparison operator")
                right = self._eval_node(comparator, env)
                if not compare(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval_node(node.test, env) else node.orelse
            return self._eval_node(branch, env)

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExpressionEvalError("access to private attributes is not allowed")
            value = getattr(self._eval_node(node.value, env), node.attr)
            if callable(value):
                raise ExpressionEvalError(f"method '{node.attr}' cannot be used in a guard")
            return value

        if isinstance(node, ast.Name):
            if node.id in env:
                return env[node.id]
            raise ExpressionEvalError(f"unknown identifier '{node.id}'")

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _EXPR_BUILTINS:
                raise ExpressionEvalError("call to unsafe function is not allowed")
            if node.keywords:
                raise ExpressionEvalError("keyword arguments are not supported")
            args = [self._eval_node(arg, env) for arg in node.args]
            return _EXPR_BUILTINS[node.func.id](*args)

        if isinstance(node, ast.Subscript):
            return self._eval_node(node.value, env)[self._eval_node(node.slice, env)]

        if isinstance(node, ast.List):
            return [self._eval_node(elt, env) for elt in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval_node(elt, env) for elt in node.elts)

        raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")


_EXPR_INTERPRETER = _GuardExpressionInterpreter()


def expression_step(expr: str, rule_name: str = "<anonymous>") -> GuardStep:
    """
    Guard step driven by a restricted expression. Names available:
    node, bindings, unit, shape, identity, tag.
    A failing evaluation is a non-match, reported once on stderr.
    """
    _EXPR_INTERPRETER.compile(expr.strip() or "True")

    def check(node: Expr, ctx: RuleContext, bindings: Bindings) -> bool:
        shape = bindings.get("shape")
        env = {
            "node": node,
            "bindings": bindings,
            "unit": ctx.unit,
            "shape": shape.value if isinstance(shape, TypeShape) else None,
            "identity": bindings.get("identity"),
            "tag": bindings.get("tag"),
        }
        try:
            return bool(_EXPR_INTERPRETER.evaluate(expr, env))
        except (ExpressionEvalError, AttributeError, KeyError, IndexError, TypeError) as exc:
            _warn_once(
                ("expr", rule_name, expr),
                f"Failed to evaluate guard expression for rule '{rule_name}': {expr!r} ({exc}).",
            )
            return False

    return GuardStep(f"expr:{expr}", check)


# ============================================================
# ==================== BUILT-IN RULES ========================
# ============================================================

ZERO_REF_SUMMARY = "null reference"
UNINIT_REF_SUMMARY = "uninitialized reference"
INVALID_REF_HELP = (
    "Creation of a null or uninitialized reference is undefined behavior; "
    "see https://doc.rust-lang.org/reference/behavior-considered-undefined.html"
)


def make_invalid_ref_rule() -> Rule:
    return Rule(
        name="invalid_ref",
        category="correctness",
        node_kinds=frozenset({"Call"}),
        guards=[
            is_call_with_arity(0),
            callee_is_path(),
            result_shape(TypeShape.REFERENCE),
            resolves_callee(),
        ],
        classify=classify_by_tag({ZERO_FILL: ZERO_REF_SUMMARY, UNINIT: UNINIT_REF_SUMMARY}),
        help=INVALID_REF_HELP,
        doc=LintDoc(
            what_it_does="Checks for creation of references with uninitialized or null value.",
            why_bad=(
                "Creation of null references and uninitialized references is undefined "
                "behavior, even if they are not dereferenced."
            ),
            example=(
                "let bad_ref: &usize = std::mem::zeroed();\n"
                "let also_bad_ref: &usize = std::mem::uninitialized();"
            ),
        ),
    )


class RuleRegistry:
    """
    Registration surface for rules. Dispatch lists per node kind keep
    registration order, which is also the order sibling rules run in.
    """

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self._rules: List[Rule] = []
        self._by_kind: Dict[str, List[Rule]] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: Rule) -> None:
        if self.get(rule.name) is not None:
            raise RegistryError(f"rule '{rule.name}' is already registered")
        self._rules.append(rule)
        for kind in sorted(rule.node_kinds):
            self._by_kind.setdefault(kind, []).append(rule)

    def get(self, name: str) -> Optional[Rule]:
        for rule in self._rules:
            if rule.name == name:
                return rule
        return None

    def rules_for(self, kind: str) -> List[Rule]:
        return self._by_kind.get(kind, [])

    def without(self, names: Iterable[str]) -> "RuleRegistry":
        skipped = set(names)
        return RuleRegistry(rule for rule in self._rules if rule.name not in skipped)

    def __iter__(self) -> Iterator[Rule]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)


def default_registry() -> RuleRegistry:
    return RuleRegistry([make_invalid_ref_rule()])


# ============================================================
# ==================== YAML RULE LOADING =====================
# ============================================================

def _to_str_list(value: Any) -> List[str]:
    """A YAML scalar or list, as a list of strings."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _build_guard(kind: str, value: Any, rule_name: str) -> GuardStep:
    if kind in ("callee_is_path", "resolves") and value is not True:
        raise ValueError(f"guard '{kind}' only accepts true")
    if kind == "call_arity":
        return is_call_with_arity(int(value))
    if kind == "callee_is_path":
        return callee_is_path()
    if kind == "result_shape":
        try:
            return result_shape(TypeShape(str(value).lower()))
        except ValueError as exc:
            raise ValueError(f"unknown type shape {value!r}") from exc
    if kind == "resolves":
        return resolves_callee()
    if kind == "expr":
        return expression_step(str(value), rule_name)
    raise ValueError(f"unknown guard kind '{kind}'")


def _rule_from_doc(raw_rule: Dict[str, Any], origin: str) -> Optional[Rule]:
    required_fields = {
        "name": raw_rule.get("name"),
        "category": raw_rule.get("category"),
        "node_kinds": raw_rule.get("node_kinds"),
        "classify": raw_rule.get("classify"),
    }
    missing = [name for name, value in required_fields.items() if value in (None, "", [], {})]
    if missing:
        _warn(f"Skipping rule from {origin}: missing required field(s) {missing}.")
        return None

    name = str(required_fields["name"])
    classify = raw_rule["classify"]
    if not isinstance(classify, dict):
        _warn(f"Skipping rule '{name}' from {origin}: 'classify' must map tags to summaries.")
        return None

    severity = raw_rule.get("severity")
    if severity and str(severity) not in LEVEL_SEVERITY.values():
        _warn(
            f"Skipping rule '{name}' from {origin}: unknown severity {severity!r} "
            f"(expected one of {sorted(LEVEL_SEVERITY.values())})."
        )
        return None

    guards: List[GuardStep] = []
    for raw_guard in raw_rule.get("guards") or []:
        if not isinstance(raw_guard, dict) or len(raw_guard) != 1:
            _warn(f"Skipping rule '{name}' from {origin}: each guard must be a single-key mapping.")
            return None
        kind, value = next(iter(raw_guard.items()))
        try:
            guards.append(_build_guard(str(kind), value, name))
        except (ValueError, TypeError, ExpressionEvalError) as exc:
            _warn(f"Skipping rule '{name}' from {origin}: {exc}.")
            return None

    return Rule(
        name=name,
        category=str(required_fields["category"]),
        node_kinds=frozenset(_to_str_list(raw_rule["node_kinds"])),
        guards=guards,
        classify=classify_by_tag({str(tag): str(msg) for tag, msg in classify.items()}),
        help=str(raw_rule.get("help", "")),
        severity=str(severity) if severity else None,
        doc=LintDoc(
            what_it_does=str(raw_rule.get("description", "")),
            why_bad=str(raw_rule.get("why", "")),
        ) if raw_rule.get("description") else None,
    )


def load_rules_from_yaml(yaml_paths: Sequence[str]) -> List[Rule]:
    """
    Load declarative guard-chain rules from YAML files. Unreadable files and
    invalid rules are reported on stderr and skipped.
    """

    def _normalize_rule_docs(doc: Any) -> List[Dict[str, Any]]:
        if doc is None:
            return []
        if isinstance(doc, list):
            return [item for item in doc if isinstance(item, dict)]
        if isinstance(doc, dict):
            if isinstance(doc.get("rules"), list):
                return [item for item in doc["rules"] if isinstance(item, dict)]
            return [doc]
        return []

    rules: List[Rule] = []
    for path in yaml_paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                documents = list(yaml.safe_load_all(handle))
        except FileNotFoundError:
            _warn(f"Rule file not found: {path}")
            continue
        except (OSError, yaml.YAMLError, UnicodeDecodeError) as exc:
            _warn(f"Could not read rule file {path}: {exc}")
            continue

        for doc_index, doc in enumerate(documents):
            for raw_rule in _normalize_rule_docs(doc):
                rule = _rule_from_doc(raw_rule, f"{path}#doc{doc_index + 1}")
                if rule:
                    rules.append(rule)

    return rules


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

@dataclass
class GuardlintConfig:
    paths: List[Tuple[CanonicalPath, str]] = field(default_factory=list)
    rule_files: List[str] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)


def load_config(path: Optional[str]) -> GuardlintConfig:
    """
    Read the optional YAML configuration:

        paths:
          - {path: "mycrate::alloc::zeroed_ref", tag: zero_fill}
        rules: [extra_rules.yaml]
        disable: [invalid_ref]

    Relative rule files are resolved against the config file's directory.
    """
    config = GuardlintConfig()
    if not path:
        return config

    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except FileNotFoundError:
        _warn(f"Config file not found: {path}")
        return config
    except (OSError, yaml.YAMLError, UnicodeDecodeError) as exc:
        _warn(f"Could not read config file {path}: {exc}")
        return config

    if raw is None:
        return config
    if not isinstance(raw, dict):
        _warn(f"Ignoring config file {path}: top level must be a mapping.")
        return config

    for index, entry in enumerate(raw.get("paths") or []):
        if not isinstance(entry, dict) or not entry.get("path") or not entry.get("tag"):
            _warn(f"Skipping paths[{index}] in {path}: expected 'path' and 'tag'.")
            continue
        try:
            config.paths.append((split_path(entry["path"]), str(entry["tag"])))
        except DumpFormatError as exc:
            _warn(f"Skipping paths[{index}] in {path}: {exc}")

    base_dir = os.path.dirname(os.path.abspath(path))
    for rule_file in _to_str_list(raw.get("rules")):
        if not os.path.isabs(rule_file):
            rule_file = os.path.join(base_dir, rule_file)
        config.rule_files.append(rule_file)

    config.disabled = _to_str_list(raw.get("disable"))
    return config


# ============================================================
# ===================== AST VISITOR ==========================
# ============================================================

def iter_nodes(root: Expr) -> Iterator[Expr]:
    """Pre-order, document-order walk that does not recurse."""
    stack: List[Expr] = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(list(node.iter_children())))


class Visitor:
    """
    Walks one unit and offers every node to each rule registered for its
    kind. A rule's outcome never affects sibling rules or the walk.
    """

    def __init__(self, registry: RuleRegistry, reporter: DiagnosticReporter) -> None:
        self.registry = registry
        self.reporter = reporter

    def visit_unit(self, ctx: RuleContext) -> None:
        for node in iter_nodes(ctx.unit.body):
            for rule in self.registry.rules_for(node.kind):
                outcome = rule.evaluate(node, ctx)
                if isinstance(outcome, Matched):
                    self.reporter.report(outcome.diagnosis)


# ============================================================
# =================== ANALYSIS SESSION =======================
# ============================================================

def analyze_unit(
    unit: SyntacticUnit,
    crate: TypedCrate,
    registry: RuleRegistry,
    paths: CanonicalPathTable,
) -> List[Diagnosis]:
    """
    Analyze one unit with its own reporter. An inconsistent typed tree
    aborts the unit: its partial diagnoses are dropped and replaced by a
    single internal-error diagnosis.
    """
    reporter = DiagnosticReporter()
    ctx = RuleContext(
        unit=unit,
        resolver=SymbolResolver(crate),
        oracle=TypeShapeOracle(crate.types),
        paths=paths,
    )
    try:
        Visitor(registry, reporter).visit_unit(ctx)
    except MalformedInputError as exc:
        _warn(f"Aborted analysis of '{unit.name}' in crate '{crate.name}': {exc}")
        failed = DiagnosticReporter()
        failed.report_internal_error(unit, exc)
        return failed.diagnostics
    return reporter.diagnostics


def analyze_crate(
    crate: TypedCrate,
    registry: Optional[RuleRegistry] = None,
    paths: Optional[CanonicalPathTable] = None,
    jobs: int = 1,
) -> List[Diagnosis]:
    """
    Analyze every unit of a crate. With jobs > 1 units run on a thread pool;
    results are merged by unit index, then in-unit traversal order, so the
    output does not depend on `jobs`.
    """
    registry = registry if registry is not None else default_registry()
    paths = paths if paths is not None else default_path_table()

    def run(unit: SyntacticUnit) -> List[Diagnosis]:
        return analyze_unit(unit, crate, registry, paths)

    if jobs <= 1 or len(crate.units) <= 1:
        per_unit = [run(unit) for unit in crate.units]
    else:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            per_unit = list(pool.map(run, crate.units))

    merged: List[Diagnosis] = []
    for diagnostics in per_unit:
        merged.extend(diagnostics)
    return merged


# ============================================================
# =================== DIAGNOSTIC OUTPUT ======================
# ============================================================

def diagnosis_to_json_obj(d: Diagnosis) -> Dict[str, Any]:
    """
    Convert a Diagnosis into a JSON-friendly dict.
    Explicit so the field order stays stable for machine consumers.
    """
    return {
        "rule": d.rule,
        "category": d.category,
        "severity": d.severity,
        "summary": d.summary,
        "help": d.help,
        "location": d.location,
        "unit": d.unit,
        "internal": d.internal,
        "extras": d.extras,
        "tool": TOOL_NAME,
        "version": __version__,
    }


def render_diagnosis_text(d: Diagnosis) -> str:
    loc = d.location
    lines = [
        f"{d.severity}: {d.summary}",
        f"  --> {loc['file']}:{loc['line_start']}:{loc['col_start']}",
    ]
    if d.internal:
        lines.append(f"   = note: analysis of `{d.unit}` was aborted")
    else:
        level = SEVERITY_LEVEL.get(d.severity, "warn")
        lines.append(f"   = note: #[{level}({TOOL_NAME}::{d.rule})] on by default")
    if d.help:
        lines.append(f"   = help: {d.help}")
    return "\n".join(lines)


def _write_output(text: str, out: Optional[str]) -> None:
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


def emit_diagnostics_json(diagnostics: List[Diagnosis], out: Optional[str] = None) -> None:
    as_json = [diagnosis_to_json_obj(d) for d in diagnostics]
    _write_output(json.dumps(as_json, indent=2, sort_keys=False), out)


def emit_diagnostics_text(diagnostics: List[Diagnosis], out: Optional[str] = None) -> None:
    blocks = [render_diagnosis_text(d) for d in diagnostics]
    errors = sum(1 for d in diagnostics if d.severity == "error")
    blocks.append(
        f"{TOOL_NAME}: {len(diagnostics)} diagnostic(s), {errors} error(s)"
    )
    _write_output("\n\n".join(blocks), out)


def render_rule_docs(rule: Rule) -> str:
    lines = [f"{rule.name} [{rule.category}, {rule.level}]"]
    if rule.doc is not None:
        lines.append(f"    What it does: {rule.doc.what_it_does}")
        if rule.doc.why_bad:
            lines.append(f"    Why is this bad? {rule.doc.why_bad}")
        lines.append(f"    Known problems: {rule.doc.known_problems}")
        if rule.doc.example:
            lines.append("    Example:")
            lines.extend(f"        {line}" for line in rule.doc.example.splitlines())
    return "\n".join(lines)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _build_session(args: argparse.Namespace) -> Tuple[RuleRegistry, CanonicalPathTable]:
    config = load_config(args.config or os.environ.get(CONFIG_ENV_VAR))

    registry = default_registry()
    for rule in load_rules_from_yaml(config.rule_files + list(args.rules or [])):
        try:
            registry.register(rule)
        except RegistryError as exc:
            _warn(f"Skipping rule: {exc}")
    if config.disabled:
        registry = registry.without(config.disabled)

    paths = default_path_table()
    if config.paths:
        try:
            paths = extended_path_table(config.paths)
        except RegistryError as exc:
            _warn(f"Ignoring configured paths: {exc}")
    return registry, paths


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
      guardlint check [--config CFG] [--rules FILE ...] [--format text|json] DUMP ...
      guardlint rules
    Exit status is 1 when any error-severity diagnosis was produced.
    """
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="Guardlint: pattern-guarded call classification over typed ASTs",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check_p = subparsers.add_parser(
        "check",
        help="Analyze typed-tree dumps and report diagnoses.",
    )
    check_p.add_argument("--config", metavar="CONFIG", help=f"YAML config (default: ${CONFIG_ENV_VAR}).")
    check_p.add_argument("--rules", nargs="+", metavar="RULE_FILE", help="Extra YAML rule file(s).")
    check_p.add_argument("--format", choices=("text", "json"), default="text")
    check_p.add_argument("--out", metavar="OUT", help="Write diagnoses to this file instead of stdout.")
    check_p.add_argument("--jobs", type=int, default=1, help="Worker threads per crate.")
    check_p.add_argument("dumps", nargs="+", help="Typed-tree dump files (YAML or JSON).")

    rules_p = subparsers.add_parser("rules", help="List registered rules with their documentation.")
    rules_p.add_argument("--config", metavar="CONFIG")
    rules_p.add_argument("--rules", nargs="+", metavar="RULE_FILE")

    args = parser.parse_args(argv)
    registry, paths = _build_session(args)

    if args.command == "rules":
        print("\n\n".join(render_rule_docs(rule) for rule in registry))
        return 0

    diagnostics: List[Diagnosis] = []
    for path in args.dumps:
        try:
            crate = load_crate_from_dump(path)
        except (OSError, DumpFormatError) as exc:
            _warn(f"Skipping dump {path}: {exc}")
            continue
        diagnostics.extend(analyze_crate(crate, registry, paths, jobs=args.jobs))

    if args.format == "json":
        emit_diagnostics_json(diagnostics, out=args.out)
    else:
        emit_diagnostics_text(diagnostics, out=args.out)

    return 1 if any(d.severity == "error" for d in diagnostics) else 0


if __name__ == "__main__":
    sys.exit(main())
