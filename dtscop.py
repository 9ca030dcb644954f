#!/usr/bin/env python3
"""
DtsCop - Best-practice rule enforcement for SSIS projects

High-level goals:
- Load a compiled project (.ispac) or loose .dtsx packages into a small IR
  (control flow tree, event handlers, pipelines, components, paths)
- Run a fixed, id-ordered catalogue of package rules over every package
- Parse embedded C# script code (via tree-sitter) and verify that entry points
  and public methods wrap their work in the expected error-handling shape
- Emit tab-separated or JSON diagnostics for CI / IDEs

Everything lives in this one module, grouped by section banners.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Type, Union
import argparse
import json
import os
import re
import sys
import threading
import urllib.parse
import xml.etree.ElementTree as ElementTree
import zipfile

import yaml
import tree_sitter_c_sharp
from tree_sitter import Language, Node, Parser


TOOL_NAME = "DtsCop"
TOOL_VERSION = "0.1.0"


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class DtsCopError(Exception):
    """Base class for failures that abort an analysis run."""


class ConfigurationError(DtsCopError):
    """Raised when a settings file is missing, unreadable or invalid."""


class ProjectLoadError(DtsCopError):
    """Raised when a project container or a package definition cannot be read."""


# ============================================================
# ======================== NOTICES ===========================
# ============================================================

_NOTICES_EMITTED: Set[str] = set()


def _notice(message: str) -> None:
    sys.stderr.write(f"[dtscop] {message}\n")


def _notice_once(key: str, message: str) -> None:
    if key in _NOTICES_EMITTED:
        return
    _NOTICES_EMITTED.add(key)
    _notice(message)


# ============================================================
# =================== CONTROL FLOW MODEL =====================
# ============================================================

CSHARP_LANGUAGE = "CSharp"


@dataclass
class Variable:
    name: str
    namespace: str = "User"
    expression: Optional[str] = None
    evaluate_as_expression: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}::{self.name}"


@dataclass
class ControlFlowNode:
    """
    Common part of every executable in a package's control flow tree.
    Event handlers are keyed by event name (OnError, OnPreExecute, ...) and
    each handler is itself a Container owned by this node.
    """
    name: str
    creation_name: str = ""
    variables: List[Variable] = field(default_factory=list)
    event_handlers: Dict[str, "Container"] = field(default_factory=dict)

    fail_package_on_failure: bool = False
    fail_parent_on_failure: bool = False
    force_execution_result: str = "None"  # None | Success | Failure | Completion


@dataclass
class Container(ControlFlowNode):
    """Sequence, loop or event handler: an ordered list of child executables."""
    executables: List[ControlFlowNode] = field(default_factory=list)


@dataclass
class Task(ControlFlowNode):
    """
    Leaf of the control flow tree. `inner` holds the task-specific object
    (Pipeline, ScriptTaskData, ExecuteProcessData, GenericTaskData); the
    walkers filter tasks on its type.
    """
    inner: Any = None


class ProtectionLevel(IntEnum):
    DONT_SAVE_SENSITIVE = 0
    ENCRYPT_SENSITIVE_WITH_USER_KEY = 1
    ENCRYPT_SENSITIVE_WITH_PASSWORD = 2
    ENCRYPT_ALL_WITH_PASSWORD = 3
    ENCRYPT_ALL_WITH_USER_KEY = 4
    SERVER_STORAGE = 5


@dataclass
class Package(Container):
    protection_level: ProtectionLevel = ProtectionLevel.ENCRYPT_SENSITIVE_WITH_USER_KEY


@dataclass
class ScriptTaskData:
    project_name: str = ""
    language: str = CSHARP_LANGUAGE
    files: Dict[str, str] = field(default_factory=dict)  # project item name -> source text

    def source_of(self, file_name: str) -> Optional[str]:
        for item_name, text in self.files.items():
            if _script_file_matches(item_name, file_name):
                return text
        return None


@dataclass
class ExecuteProcessData:
    standard_output_variable: str = ""
    standard_error_variable: str = ""


@dataclass
class GenericTaskData:
    creation_name: str = ""


def is_csharp(language: Optional[str]) -> bool:
    """Accepts both the storage tag ("CSharp") and display names ("Microsoft Visual C# 2012")."""
    if not language:
        return False
    text = language.strip().lower()
    return text == CSHARP_LANGUAGE.lower() or "c#" in text


def _script_file_matches(item_name: Any, file_name: str) -> bool:
    if not isinstance(item_name, str):
        return False
    base = item_name.replace("\\", "/").rsplit("/", 1)[-1]
    return base.lower() == file_name.lower()


# ============================================================
# ==================== DATA FLOW MODEL =======================
# ============================================================

@dataclass
class Component:
    name: str
    class_id: str
    ref_id: str = ""
    properties: Dict[str, Any] = field(default_factory=dict)  # custom properties

    def __post_init__(self) -> None:
        if not self.ref_id:
            self.ref_id = self.name


@dataclass
class Endpoint:
    component: Optional[Component]
    ref_id: str = ""
    synchronous_input_id: int = 0  # 0: not driven by an upstream synchronous input


@dataclass
class Path:
    start: Endpoint
    end: Endpoint
    name: str = ""


@dataclass
class Pipeline:
    components: List[Component] = field(default_factory=list)
    paths: List[Path] = field(default_factory=list)


# ============================================================
# ================= COMPONENT METADATA =======================
# ============================================================

class ComponentKind(Enum):
    SOURCE = "source"
    TRANSFORM = "transform"
    DESTINATION = "destination"


@dataclass(frozen=True)
class ComponentInfo:
    id: str
    name: str
    creation_name: str
    kind: ComponentKind


# All managed components share one wrapper class id; the concrete type is
# stored in the UserComponentTypeName custom property.
MANAGED_COMPONENT_WRAPPER_IDS = frozenset({
    "{874F7595-FB5F-40FF-96AF-FBFF8250E3EF}",
    "Microsoft.ManagedComponentHost",
})
USER_COMPONENT_TYPE_NAME = "UserComponentTypeName"

OLEDB_SOURCE_NAME = "OLE DB Source"
ADONET_SOURCE_NAME = "ADO NET Source"
LOOKUP_NAME = "Lookup"
SORT_NAME = "Sort"
SCRIPT_COMPONENT_NAME = "Script Component"
OLEDB_DESTINATION_NAME = "OLE DB Destination"

_STOCK_COMPONENTS: List[Tuple[str, str, ComponentKind]] = [
    ("Microsoft.OLEDBSource", OLEDB_SOURCE_NAME, ComponentKind.SOURCE),
    ("DTSAdapter.OLEDBSource.3", OLEDB_SOURCE_NAME, ComponentKind.SOURCE),
    ("Microsoft.SqlServer.Dts.Pipeline.DataReaderSourceAdapter", ADONET_SOURCE_NAME, ComponentKind.SOURCE),
    ("Microsoft.FlatFileSource", "Flat File Source", ComponentKind.SOURCE),
    ("Microsoft.ExcelSource", "Excel Source", ComponentKind.SOURCE),
    ("Microsoft.RawSource", "Raw File Source", ComponentKind.SOURCE),
    ("Microsoft.SqlServer.Dts.Pipeline.XmlSourceAdapter", "XML Source", ComponentKind.SOURCE),
    ("Microsoft.Sort", SORT_NAME, ComponentKind.TRANSFORM),
    ("DTSTransform.Sort.3", SORT_NAME, ComponentKind.TRANSFORM),
    ("Microsoft.Lookup", LOOKUP_NAME, ComponentKind.TRANSFORM),
    ("DTSTransform.Lookup.3", LOOKUP_NAME, ComponentKind.TRANSFORM),
    ("Microsoft.DerivedColumn", "Derived Column", ComponentKind.TRANSFORM),
    ("Microsoft.ConditionalSplit", "Conditional Split", ComponentKind.TRANSFORM),
    ("Microsoft.DataConvert", "Data Conversion", ComponentKind.TRANSFORM),
    ("Microsoft.UnionAll", "Union All", ComponentKind.TRANSFORM),
    ("Microsoft.Merge", "Merge", ComponentKind.TRANSFORM),
    ("Microsoft.MergeJoin", "Merge Join", ComponentKind.TRANSFORM),
    ("Microsoft.Aggregate", "Aggregate", ComponentKind.TRANSFORM),
    ("Microsoft.Multicast", "Multicast", ComponentKind.TRANSFORM),
    ("Microsoft.RowCount", "Row Count", ComponentKind.TRANSFORM),
    ("Microsoft.ScriptComponentHost", SCRIPT_COMPONENT_NAME, ComponentKind.TRANSFORM),
    ("Microsoft.SqlServer.Dts.Pipeline.ScriptComponentHost", SCRIPT_COMPONENT_NAME, ComponentKind.TRANSFORM),
    ("Microsoft.OLEDBDestination", OLEDB_DESTINATION_NAME, ComponentKind.DESTINATION),
    ("DTSAdapter.OLEDBDestination.3", OLEDB_DESTINATION_NAME, ComponentKind.DESTINATION),
    ("Microsoft.SqlServer.Dts.Pipeline.ADONETDestination", "ADO NET Destination", ComponentKind.DESTINATION),
    ("Microsoft.FlatFileDestination", "Flat File Destination", ComponentKind.DESTINATION),
    ("Microsoft.ExcelDestination", "Excel Destination", ComponentKind.DESTINATION),
    ("Microsoft.RawDestination", "Raw File Destination", ComponentKind.DESTINATION),
    ("Microsoft.RecordsetDestination", "Recordset Destination", ComponentKind.DESTINATION),
]

CatalogueEntry = Tuple[str, str, str, ComponentKind]


def stock_component_catalogue() -> List[CatalogueEntry]:
    """(id, name, creation name, kind) for the stock pipeline components."""
    return [(comp_id, name, comp_id, kind) for comp_id, name, kind in _STOCK_COMPONENTS]


def extended_catalogue(extra: Sequence[ComponentInfo]) -> Callable[[], List[CatalogueEntry]]:
    """
    Catalogue that lists `extra` before the stock components, so that with
    first-write-wins table construction the extra entries take precedence.
    """
    def _catalogue() -> List[CatalogueEntry]:
        entries = [(info.id, info.name, info.creation_name, info.kind) for info in extra]
        entries.extend(stock_component_catalogue())
        return entries

    return _catalogue


def component_lookup_key(component: Component) -> Optional[str]:
    if component.class_id in MANAGED_COMPONENT_WRAPPER_IDS:
        value = component.properties.get(USER_COMPONENT_TYPE_NAME)
        if not value:
            return None
        # Assembly-qualified names carry version/culture/token after the first comma.
        return str(value).split(",", 1)[0].strip()
    return component.class_id


class ComponentResolver:
    """
    Maps a pipeline component to its ComponentInfo.

    The id -> ComponentInfo table is built from the catalogue on first use,
    exactly once per resolver (guarded by a lock), and is read-only afterwards.
    """

    def __init__(self, catalogue: Optional[Callable[[], Iterable[CatalogueEntry]]] = None) -> None:
        self._catalogue = catalogue or stock_component_catalogue
        self._infos: Optional[Dict[str, ComponentInfo]] = None
        self._lock = threading.Lock()
        self.catalogue_queries = 0

    def resolve(self, component: Optional[Component]) -> Optional[ComponentInfo]:
        if component is None:
            return None
        key = component_lookup_key(component)
        if not key:
            return None
        info = self._table().get(key)
        if info is None:
            _notice_once(
                f"component-type:{key}",
                f"Component '{component.name}' has unsupported type '{key}'.",
            )
        return info

    def _table(self) -> Dict[str, ComponentInfo]:
        infos = self._infos
        if infos is None:
            with self._lock:
                if self._infos is None:
                    self._infos = self._build_table()
                infos = self._infos
        return infos

    def _build_table(self) -> Dict[str, ComponentInfo]:
        self.catalogue_queries += 1
        table: Dict[str, ComponentInfo] = {}
        for info_id, name, creation_name, kind in self._catalogue():
            if info_id in table:
                continue
            table[info_id] = ComponentInfo(id=info_id, name=name, creation_name=creation_name, kind=kind)
        return table


_DEFAULT_RESOLVER = ComponentResolver()


def resolve_component(component: Optional[Component]) -> Optional[ComponentInfo]:
    return _DEFAULT_RESOLVER.resolve(component)


# ============================================================
# ================== CONTROL FLOW WALKER =====================
# ============================================================

def iter_control_flow(root: Optional[ControlFlowNode]) -> Iterator[ControlFlowNode]:
    """
    Pre-order walk over every node reachable from `root` (root included).

    For each node, its event handler trees are visited first, then its
    executables, both in collection order. The walk is iterative and skips
    any node already seen, so malformed (shared or cyclic) trees terminate.
    """
    if root is None:
        return
    stack: List[ControlFlowNode] = [root]
    seen: Set[int] = set()
    while stack:
        node = stack.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        yield node
        children: List[ControlFlowNode] = list(node.event_handlers.values())
        if isinstance(node, Container):
            children.extend(node.executables)
        stack.extend(reversed(children))


def collect_tasks(root: Optional[ControlFlowNode], kind: Union[Type[Any], Tuple[Type[Any], ...]] = object) -> List[Task]:
    """Tasks below `root` whose inner object is an instance of `kind`. Containers are never returned."""
    return [
        node
        for node in iter_control_flow(root)
        if isinstance(node, Task) and isinstance(node.inner, kind)
    ]


# ============================================================
# =================== DATA FLOW WALKER =======================
# ============================================================

MAX_TRACE_DEPTH = 1024


def pipelines_of(package: Optional[Package]) -> List[Tuple[Task, Pipeline]]:
    return [(task, task.inner) for task in collect_tasks(package, Pipeline)]


def trace_to_source(
    pipeline: Optional[Pipeline],
    component: Optional[Component],
    max_depth: int = MAX_TRACE_DEPTH,
) -> Optional[Component]:
    """
    Walk backward from `component` to the component that introduces its rows.

    Follows the first path ending at the current component. A start endpoint
    with synchronous input id 0 is the source; otherwise the walk continues
    from the start component. A component with no incoming path is its own
    source. Cycles, missing endpoints and chains longer than `max_depth`
    abort the trace and return None.
    """
    if pipeline is None or component is None:
        return None

    current = component
    visited: Set[str] = set()
    while len(visited) < max_depth:
        if current.ref_id in visited:
            _notice_once(
                f"path-cycle:{current.ref_id}",
                f"Path cycle detected at component '{current.name}'; source trace aborted.",
            )
            return None
        visited.add(current.ref_id)

        path = _path_ending_at(pipeline, current)
        if path is None:
            return current
        upstream = path.start.component
        if upstream is None:
            return None
        if path.start.synchronous_input_id == 0:
            return upstream
        current = upstream

    return None


def _path_ending_at(pipeline: Pipeline, component: Component) -> Optional[Path]:
    for path in pipeline.paths:
        end = path.end.component
        if end is not None and end.ref_id == component.ref_id:
            return path
    return None


# ============================================================
# ======================== RESULTS ===========================
# ============================================================

class Severity(Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFORMATION = "Information"

    @property
    def tag(self) -> str:
        return self.value[:4].upper()


_SEVERITY_BY_TAG: Dict[str, Severity] = {severity.tag: severity for severity in Severity}


@dataclass(frozen=True)
class Result:
    severity: Severity
    rule_id: str
    rule_name: str
    message: str
    package: str
    source: Optional[str] = None
    line: Optional[int] = None  # None: line unknown

    def __post_init__(self) -> None:
        # "" and None both mean no source
        if self.source == "":
            object.__setattr__(self, "source", None)
        if self.line is not None and self.line < 0:
            raise ValueError(f"line must be non-negative or None, got {self.line}")

    def to_line(self, include_severity: bool = True) -> str:
        """
        Tab-separated rendering: severity, package, rule id, rule name,
        message, source, line. Missing values render blank; carriage returns
        and line feeds are stripped from the message only.
        """
        fields = [
            self.package,
            self.rule_id,
            self.rule_name,
            self.message.replace("\r", "").replace("\n", ""),
            self.source,
            self.line,
        ]
        text = "\t".join("" if value is None else str(value) for value in fields)
        if include_severity:
            text = f"{self.severity.tag}\t{text}"
        return text

    def __str__(self) -> str:
        return self.to_line()

    @classmethod
    def from_line(cls, line: str) -> "Result":
        parts = line.rstrip("\r\n").split("\t")
        if len(parts) != 7:
            raise ValueError(f"expected 7 tab-separated fields, got {len(parts)}")
        tag, package, rule_id, rule_name, message, source, line_text = parts
        severity = _SEVERITY_BY_TAG.get(tag)
        if severity is None:
            raise ValueError(f"unknown severity tag {tag!r}")
        return cls(
            severity=severity,
            rule_id=rule_id,
            rule_name=rule_name,
            message=message,
            package=package,
            source=source or None,
            line=int(line_text) if line_text else None,
        )


# ============================================================
# ======================== SETTINGS ==========================
# ============================================================

MAIN_CHECK_ID = "IS1001"
MAIN_CHECK_NAME = "MainShouldHandleErrors"
PUBLIC_CHECK_ID = "IS1002"
PUBLIC_CHECK_NAME = "PublicMethodsShouldHandleErrors"


@dataclass
class RequiredPattern:
    """One expression shape that must appear in a catch block."""
    pattern: str
    description: str
    ignore_case: bool = False
    _regex: Optional["re.Pattern[str]"] = field(default=None, init=False, repr=False, compare=False)

    @property
    def regex(self) -> "re.Pattern[str]":
        if self._regex is None:
            self._regex = re.compile(self.pattern, re.IGNORECASE if self.ignore_case else 0)
        return self._regex

    def search(self, text: str) -> bool:
        return self.regex.search(text) is not None


def default_required_patterns() -> Dict[str, List[RequiredPattern]]:
    return {
        MAIN_CHECK_NAME: [
            RequiredPattern(
                r"Dts\.Events\.FireError\(0,.+,.+\.Message.+\.StackTrace,[\s]+string.Empty,[\s]+0\)",
                "Dts.Events.FireError(0, <package name>, <exception message + stacktrace>, string.Empty, 0)",
            ),
            RequiredPattern(
                r"Dts\.TaskResult = \(int\)ScriptResults\.Failure",
                "Dts.TaskResult = (int)ScriptResults.Failure",
            ),
        ],
        PUBLIC_CHECK_NAME: [
            RequiredPattern(
                r"ComponentMetaData\.FireWarning\(0, ComponentMetaData\.Name\.Trim\(\),.+\.Message.+\.StackTrace.+string.Empty,[\s]+0\)",
                "ComponentMetaData.FireWarning(0, ComponentMetaData.Name.Trim(), <exception message + stacktrace>, string.Empty, 0)",
            ),
            RequiredPattern(
                r'Row\.Status = "FAILED"',
                'Row.Status = "FAILED"',
            ),
        ],
    }


@dataclass
class Settings:
    required_patterns: Dict[str, List[RequiredPattern]] = field(default_factory=default_required_patterns)
    components: List[ComponentInfo] = field(default_factory=list)
    path: Optional[str] = None


def load_settings(path: Optional[str]) -> Settings:
    """
    Load a YAML settings file. No path means built-in defaults.

    Any problem with a given path (missing, unreadable, not YAML, bad
    regex, unknown component kind) raises ConfigurationError so that the
    run fails before any package is analysed.
    """
    if not path:
        return Settings()

    if not os.path.isfile(path):
        raise ConfigurationError(f"Settings file '{path}' doesn't exist.")

    try:
        with open(path, "r", encoding="utf-8") as handle:
            doc = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Could not read settings file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Settings file {path} is not valid YAML: {exc}") from exc

    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping at the top level.")

    def _build_pattern(raw: Any, origin: str) -> RequiredPattern:
        if isinstance(raw, str):
            raw = {"pattern": raw}
        if not isinstance(raw, dict) or not raw.get("pattern"):
            raise ConfigurationError(f"{origin}: each pattern needs a 'pattern' entry.")
        pattern = RequiredPattern(
            pattern=str(raw["pattern"]),
            description=str(raw.get("description") or raw["pattern"]),
            ignore_case=bool(raw.get("ignore_case", False)),
        )
        try:
            pattern.regex
        except re.error as exc:
            raise ConfigurationError(f"{origin}: invalid regular expression {pattern.pattern!r} ({exc}).") from exc
        return pattern

    def _build_component(raw: Any, origin: str) -> ComponentInfo:
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("name"):
            raise ConfigurationError(f"{origin}: each component needs 'id' and 'name'.")
        kind_text = str(raw.get("kind", "transform")).lower()
        try:
            kind = ComponentKind(kind_text)
        except ValueError as exc:
            raise ConfigurationError(f"{origin}: unknown component kind {kind_text!r}.") from exc
        return ComponentInfo(
            id=str(raw["id"]),
            name=str(raw["name"]),
            creation_name=str(raw.get("creation_name") or raw["id"]),
            kind=kind,
        )

    settings = Settings(path=path)

    checks = doc.get("checks") or {}
    if not isinstance(checks, dict):
        raise ConfigurationError(f"{path}: 'checks' must be a mapping of check name to patterns.")
    for check_name, raw_check in checks.items():
        raw_patterns = raw_check.get("patterns") if isinstance(raw_check, dict) else raw_check
        if not isinstance(raw_patterns, list):
            raise ConfigurationError(f"{path}#{check_name}: 'patterns' must be a list.")
        settings.required_patterns[str(check_name)] = [
            _build_pattern(raw, f"{path}#{check_name}[{index}]")
            for index, raw in enumerate(raw_patterns)
        ]

    components = doc.get("components") or []
    if not isinstance(components, list):
        raise ConfigurationError(f"{path}: 'components' must be a list.")
    settings.components = [
        _build_component(raw, f"{path}#components[{index}]")
        for index, raw in enumerate(components)
    ]

    return settings


# ============================================================
# ===================== SYNTAX MODEL =========================
# ============================================================

GUARD_TOKEN = "try"
EXPRESSION_STATEMENT = "Expression"
SCRIPT_RULES_NAMESPACE = "DtsCop.ScriptRules"
SCRIPT_SYNTAX_CHECK_ID = "IS1000"
SCRIPT_SYNTAX_CHECK_NAME = "ScriptSyntax"
GENERATED_MARKER = "<auto-generated"


@dataclass
class Statement:
    """
    One statement of a method body. Expression statements carry the text of
    the wrapped expression (no trailing semicolon); Try statements keep their
    catch branches in `catches` and everything else in `children`.
    """
    kind: str
    text: str = ""
    line: int = 0
    children: List["Statement"] = field(default_factory=list)
    catches: List["Statement"] = field(default_factory=list)

    def walk(self) -> Iterator["Statement"]:
        """Depth-first, pre-order over this statement and everything nested in it."""
        stack: List[Statement] = [self]
        while stack:
            statement = stack.pop()
            yield statement
            stack.extend(reversed(statement.children + statement.catches))


@dataclass
class SyntaxToken:
    kind: str
    text: str
    line: int = 0
    parent: Optional[Statement] = field(default=None, repr=False, compare=False)


@dataclass
class SyntaxElement:
    kind: str  # Document | Namespace | Class | Struct | Interface | Method
    name: str
    access: str = "private"
    line: int = 0
    full_name: str = ""
    tokens: List[SyntaxToken] = field(default_factory=list)
    statements: List[Statement] = field(default_factory=list)
    children: List["SyntaxElement"] = field(default_factory=list)
    generated: bool = False

    def walk(self) -> Iterator["SyntaxElement"]:
        stack: List[SyntaxElement] = [self]
        while stack:
            element = stack.pop()
            yield element
            stack.extend(reversed(element.children))


@dataclass
class ScriptViolation:
    check_id: str
    check_name: str
    message: str
    line: Optional[int] = None

    @property
    def suppression(self) -> str:
        return f'[SuppressMessage("{SCRIPT_RULES_NAMESPACE}", "{self.check_id}:{self.check_name}")]'


@dataclass
class ParseResult:
    root: SyntaxElement
    violations: List[ScriptViolation] = field(default_factory=list)


# ============================================================
# ================== C# SYNTAX ADAPTER =======================
# ============================================================

_CSHARP_PARSER: Optional[Parser] = None
_CSHARP_PARSER_LOCK = threading.Lock()

_NAMESPACE_DECLARATIONS = {"namespace_declaration", "file_scoped_namespace_declaration"}
_TYPE_DECLARATIONS = {
    "class_declaration": "Class",
    "struct_declaration": "Struct",
    "interface_declaration": "Interface",
    "record_declaration": "Class",
}
_ACCESS_MODIFIERS = ("public", "protected", "internal", "private")
_STATEMENT_KINDS = {
    "expression_statement": EXPRESSION_STATEMENT,
    "try_statement": "Try",
    "catch_clause": "Catch",
    "finally_clause": "Finally",
    "block": "Block",
}


def _csharp_parser() -> Parser:
    global _CSHARP_PARSER
    with _CSHARP_PARSER_LOCK:
        if _CSHARP_PARSER is None:
            parser = Parser()
            parser.language = Language(tree_sitter_c_sharp.language())
            _CSHARP_PARSER = parser
    return _CSHARP_PARSER


def parse_csharp(source: str) -> ParseResult:
    """
    Parse C# source with tree-sitter and convert it into SyntaxElements.
    Syntax errors do not raise; they are reported as ScriptSyntax violations
    and the rest of the tree is still converted.
    """
    tree = _csharp_parser().parse(source.encode("utf-8"))
    root = SyntaxElement(kind="Document", name="", line=1, generated=_has_generated_header(tree.root_node))
    _collect_elements(tree.root_node, root, [])
    return ParseResult(root=root, violations=_syntax_violations(tree.root_node))


def _has_generated_header(root: Node) -> bool:
    """True when the comments before the first declaration carry an <auto-generated> marker."""
    for child in root.children:
        if child.type != "comment":
            return False
        if GENERATED_MARKER in _node_text(child).lower():
            return True
    return False


def _node_text(node: Node) -> str:
    return node.text.decode("utf-8", errors="replace") if node.text is not None else ""


def _node_line(node: Node) -> int:
    return node.start_point[0] + 1


def _field_text(node: Node, field_name: str) -> str:
    child = node.child_by_field_name(field_name)
    return _node_text(child) if child is not None else ""


def _access_level(node: Node) -> str:
    for child in node.children:
        if child.type == "modifier":
            text = _node_text(child).strip()
            if text in _ACCESS_MODIFIERS:
                return text
        elif child.type in _ACCESS_MODIFIERS:
            return child.type
    return "private"


def _collect_elements(node: Node, parent: SyntaxElement, scope: List[str]) -> None:
    for child in node.named_children:
        if child.type in _NAMESPACE_DECLARATIONS:
            name = _field_text(child, "name")
            element = SyntaxElement(
                kind="Namespace",
                name=name,
                line=_node_line(child),
                full_name=".".join(scope + [name]),
            )
            parent.children.append(element)
            body = child.child_by_field_name("body")
            _collect_elements(body if body is not None else child, element, scope + [name])
        elif child.type in _TYPE_DECLARATIONS:
            name = _field_text(child, "name")
            element = SyntaxElement(
                kind=_TYPE_DECLARATIONS[child.type],
                name=name,
                access=_access_level(child),
                line=_node_line(child),
                full_name=".".join(scope + [name]),
            )
            parent.children.append(element)
            body = child.child_by_field_name("body")
            _collect_elements(body if body is not None else child, element, scope + [name])
        elif child.type == "method_declaration":
            parent.children.append(_method_element(child, scope))
        elif child.type == "declaration_list":
            _collect_elements(child, parent, scope)


def _method_element(node: Node, scope: List[str]) -> SyntaxElement:
    name = _field_text(node, "name")
    element = SyntaxElement(
        kind="Method",
        name=name,
        access=_access_level(node),
        line=_node_line(node),
        full_name=".".join(scope + [name]),
    )
    try_statements: Dict[Tuple[int, int], Statement] = {}
    body = node.child_by_field_name("body")
    if body is None:
        body = next((child for child in node.named_children if child.type == "block"), None)
    if body is not None:
        element.statements = _statements_in(body, try_statements)
    element.tokens = _tokens_of(node, try_statements)
    return element


def _is_statement_node(node: Node) -> bool:
    return node.type.endswith("_statement") or node.type in _STATEMENT_KINDS


def _statement_kind(node_type: str) -> str:
    if node_type in _STATEMENT_KINDS:
        return _STATEMENT_KINDS[node_type]
    base = node_type[: -len("_statement")] if node_type.endswith("_statement") else node_type
    return "".join(part.capitalize() for part in base.split("_"))


def _statements_in(node: Node, try_statements: Dict[Tuple[int, int], Statement]) -> List[Statement]:
    statements: List[Statement] = []
    for child in node.named_children:
        if _is_statement_node(child):
            statements.append(_statement_from_node(child, try_statements))
        else:
            # statements nested in expressions (lambdas, anonymous methods)
            statements.extend(_statements_in(child, try_statements))
    return statements


def _statement_from_node(node: Node, try_statements: Dict[Tuple[int, int], Statement]) -> Statement:
    statement = Statement(kind=_statement_kind(node.type), text=_node_text(node), line=_node_line(node))

    if node.type == "expression_statement" and node.named_children:
        statement.text = _node_text(node.named_children[0])

    if node.type == "try_statement":
        try_statements[(node.start_byte, node.end_byte)] = statement
        for child in node.named_children:
            if child.type == "catch_clause":
                statement.catches.append(_statement_from_node(child, try_statements))
            elif _is_statement_node(child):
                statement.children.append(_statement_from_node(child, try_statements))
        return statement

    statement.children = _statements_in(node, try_statements)
    return statement


def _tokens_of(node: Node, try_statements: Dict[Tuple[int, int], Statement]) -> List[SyntaxToken]:
    tokens: List[SyntaxToken] = []
    stack: List[Node] = [node]
    while stack:
        current = stack.pop()
        if current.child_count == 0:
            token = SyntaxToken(kind=current.type, text=_node_text(current), line=_node_line(current))
            if current.type == GUARD_TOKEN and current.parent is not None:
                token.parent = try_statements.get((current.parent.start_byte, current.parent.end_byte))
            tokens.append(token)
            continue
        stack.extend(reversed(current.children))
    return tokens


def _syntax_violations(root: Node) -> List[ScriptViolation]:
    violations: List[ScriptViolation] = []
    stack: List[Node] = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR":
            lines = _node_text(node).strip().splitlines()
            snippet = lines[0][:40] if lines else ""
            violations.append(ScriptViolation(
                SCRIPT_SYNTAX_CHECK_ID,
                SCRIPT_SYNTAX_CHECK_NAME,
                f"Script code could not be parsed near '{snippet}'.",
                _node_line(node),
            ))
            continue
        if node.is_missing:
            violations.append(ScriptViolation(
                SCRIPT_SYNTAX_CHECK_ID,
                SCRIPT_SYNTAX_CHECK_NAME,
                f"Script code is missing '{node.type}'.",
                _node_line(node),
            ))
            continue
        if node.has_error:
            stack.extend(reversed(node.children))
    return violations


# ============================================================
# ============ EXCEPTION-HANDLING VALIDATOR ==================
# ============================================================

_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass
class ErrorHandlingCheck:
    check_id: str
    name: str
    required_patterns: List[RequiredPattern] = field(default_factory=list)

    def base_message(self, element: SyntaxElement) -> str:
        return f"Method '{element.full_name or element.name}' must handle errors in a try/catch block."


def validate_error_handling(element: SyntaxElement, check: ErrorHandlingCheck) -> Optional[ScriptViolation]:
    """
    Verify that `element` guards its body with try/catch and that the catch
    branches of the first (top-most) try contain every required pattern.

    Each expression statement found in a catch branch (depth-first) is
    matched against the still-required patterns in their configured order;
    the first match consumes that pattern and nothing else. When patterns
    remain, a single violation names the first remaining one.
    """
    try_token = next((token for token in element.tokens if token.kind == GUARD_TOKEN), None)
    if try_token is None:
        return ScriptViolation(check.check_id, check.name, check.base_message(element), element.line)

    remaining = list(check.required_patterns)
    catches = try_token.parent.catches if try_token.parent is not None else []
    for catch in catches:
        for statement in catch.walk():
            if not remaining:
                break
            if statement.kind != EXPRESSION_STATEMENT:
                continue
            # whitespace runs, newlines included, compare as one space
            text = _WHITESPACE_RUN.sub(" ", statement.text)
            consumed = next((pattern for pattern in remaining if pattern.search(text)), None)
            if consumed is not None:
                remaining.remove(consumed)

    if not remaining:
        return None
    return ScriptViolation(
        check.check_id,
        check.name,
        f'{check.base_message(element)} Catch block should contain "{remaining[0].description}"',
        element.line,
    )


class ScriptAnalyzer:
    """
    Runs the syntax pass and the error-handling checks over one C# file.
    The method named Main gets the main check; every other public method
    gets the public check; all other methods are not validated.
    """

    def __init__(
        self,
        main_check: ErrorHandlingCheck,
        public_check: ErrorHandlingCheck,
        parse: Callable[[str], ParseResult] = parse_csharp,
    ) -> None:
        self.main_check = main_check
        self.public_check = public_check
        self._parse = parse

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScriptAnalyzer":
        patterns = settings.required_patterns
        return cls(
            ErrorHandlingCheck(MAIN_CHECK_ID, MAIN_CHECK_NAME, list(patterns.get(MAIN_CHECK_NAME, []))),
            ErrorHandlingCheck(PUBLIC_CHECK_ID, PUBLIC_CHECK_NAME, list(patterns.get(PUBLIC_CHECK_NAME, []))),
        )

    def check_for(self, element: SyntaxElement) -> Optional[ErrorHandlingCheck]:
        if element.kind != "Method":
            return None
        if element.name.lower() == "main":
            return self.main_check
        if element.access == "public":
            return self.public_check
        return None

    def analyze(self, source: str) -> List[ScriptViolation]:
        parsed = self._parse(source)
        violations = list(parsed.violations)
        if parsed.root.generated:
            return violations
        for element in parsed.root.walk():
            check = self.check_for(element)
            if check is None:
                continue
            violation = validate_error_handling(element, check)
            if violation is not None:
                violations.append(violation)
        return violations


# ============================================================
# ==================== RULE FRAMEWORK ========================
# ============================================================

class PackageRule(ABC):
    """
    A single best-practice check. `check` appends zero or more Results to
    `self.results` and must treat the package as read-only. A None package
    is a no-op.
    """
    id: str = ""
    name: str = ""
    description: str = ""
    message_format: str = "{0}"

    def __init__(self, resolver: Optional[ComponentResolver] = None) -> None:
        self.results: List[Result] = []
        self.resolver = resolver or _DEFAULT_RESOLVER

    @abstractmethod
    def check(self, package: Optional[Package]) -> None:
        raise NotImplementedError

    def add_result(
        self,
        package: Package,
        message: str,
        *,
        source: Optional[str] = None,
        line: Optional[int] = None,
        severity: Severity = Severity.WARNING,
        rule_id: Optional[str] = None,
        rule_name: Optional[str] = None,
    ) -> None:
        self.results.append(Result(
            severity=severity,
            rule_id=rule_id or self.id,
            rule_name=rule_name or self.name,
            message=message,
            package=package.name,
            source=source,
            line=line,
        ))

    def components_named(self, pipeline: Pipeline, *names: str) -> Iterator[Component]:
        for component in pipeline.components:
            info = self.resolver.resolve(component)
            if info is not None and info.name in names:
                yield component


def _component_source(task: Task, component: Component) -> str:
    return f"{task.name}\\{component.name}"


def _int_property(component: Component, name: str) -> Optional[int]:
    value = component.properties.get(name)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


# ============================================================
# ========================= RULES ============================
# ============================================================

ACCESS_MODE_PROPERTY = "AccessMode"
FAST_LOAD_OPTIONS_PROPERTY = "FastLoadOptions"
SCRIPT_LANGUAGE_PROPERTY = "ScriptLanguage"
SOURCE_CODE_PROPERTY = "SourceCode"

SOURCE_ACCESS_MODE_OPENROWSET = 0
SOURCE_ACCESS_MODE_OPENROWSET_VARIABLE = 1
DESTINATION_ACCESS_MODE_FAST_LOAD = 3
DESTINATION_ACCESS_MODE_FAST_LOAD_VARIABLE = 4


class DataflowAsynchronousPaths(PackageRule):
    id = "BIDS0001"
    name = "DataflowAsynchronousPaths"
    description = "Checks for asynchronous paths in the data flow."
    message_format = (
        "There are {0} asynchronous outputs in the {1} data flow. "
        "Too many asynchronous outputs can adversely impact performance."
    )

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task, pipeline in pipelines_of(package):
            async_count = 0
            for path in pipeline.paths:
                if path.start.synchronous_input_id != 0 or path.start.component is None:
                    continue
                info = self.resolver.resolve(path.start.component)
                if info is not None and info.kind != ComponentKind.SOURCE:
                    async_count += 1
            if async_count > 0:
                self.add_result(package, self.message_format.format(async_count, task.name), source=task.name)


class DataflowCount(PackageRule):
    id = "BIDS0002"
    name = "DataflowCount"
    description = "Checks for the number of data flows in the package."
    message_format = (
        "There are {0} data flows in the package. For simplicity, encapsulation, and to "
        "facilitate team development, consider using only one data flow per package."
    )
    max_pipelines = 2

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        count = len(pipelines_of(package))
        if count > self.max_pipelines:
            self.add_result(package, self.message_format.format(count), severity=Severity.INFORMATION)


class DataflowSortTransformations(PackageRule):
    id = "BIDS0003"
    name = "DataflowSortTransformations"
    description = "Checks for the number of sorts in the data flows, and whether they could be performed in a database."
    message_format = (
        "The {0} Sort transformation is operating on data provided from the {1} source. "
        "Rather than using the Sort transformation, which is fully blocking, the sorting should be "
        "performed using an ORDER BY clause in the source's SQL, and the IsSorted and SortKey "
        "properties should be set appropriately."
    )
    count_message_format = (
        "There are {0} Sort transformations in the {1} data flow. A large number of Sorts can slow "
        "down data flow performance. Consider staging the data to a relational database and sorting it there."
    )
    max_sorts = 2

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task, pipeline in pipelines_of(package):
            sort_count = 0
            for component in self.components_named(pipeline, SORT_NAME):
                sort_count += 1
                source = trace_to_source(pipeline, component)
                if source is None or source is component:
                    continue
                info = self.resolver.resolve(source)
                if info is not None and info.name in (OLEDB_SOURCE_NAME, ADONET_SOURCE_NAME):
                    self.add_result(
                        package,
                        self.message_format.format(component.name, source.name),
                        source=_component_source(task, component),
                    )
            if sort_count > self.max_sorts:
                self.add_result(package, self.count_message_format.format(sort_count, task.name), source=task.name)


class DataflowAccessMode(PackageRule):
    id = "BIDS0004"
    name = "DataflowAccessMode"
    description = (
        "Validates that sources and Lookup transformations are not set to use the 'Table or View' "
        "access mode, as it can be slower than specifying a SQL Statement."
    )
    message_format = (
        "Change the {0} component to use a SQL Command access mode, as this performs better "
        "than the OpenRowset access mode."
    )

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task, pipeline in pipelines_of(package):
            for component in self.components_named(pipeline, OLEDB_SOURCE_NAME, ADONET_SOURCE_NAME, LOOKUP_NAME):
                access_mode = _int_property(component, ACCESS_MODE_PROPERTY)
                if access_mode in (SOURCE_ACCESS_MODE_OPENROWSET, SOURCE_ACCESS_MODE_OPENROWSET_VARIABLE):
                    self.add_result(
                        package,
                        self.message_format.format(component.name),
                        source=_component_source(task, component),
                    )


class PackageProtectionLevel(PackageRule):
    id = "BIDS0005"
    name = "PackageProtectionLevel"
    description = "Validates that the ProtectionLevel property is set to DontSaveSensitive or ServerStorage."
    message_format = (
        "Consider using ServerStorage for packages stored in SQL Server, or DontSaveSensitive with "
        "appropriately secured configurations, as it makes packages easier to deploy and share with "
        "other developers."
    )

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        if package.protection_level not in (ProtectionLevel.DONT_SAVE_SENSITIVE, ProtectionLevel.SERVER_STORAGE):
            self.add_result(package, self.message_format)


class VariableEvaluateAsExpression(PackageRule):
    id = "BIDS0006"
    name = "VariableEvaluateAsExpression"
    description = (
        "Validates that any variable which has an expression set also has the EvaluateAsExpression "
        "property set to true."
    )
    message_format = (
        'Variable "{0}" has an Expression set, but the EvaluateAsExpression property is false. '
        "The variable value will be static and the expression will not be used. Consider removing "
        "the expression or setting EvaluateAsExpression to true."
    )

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for node in iter_control_flow(package):
            for variable in node.variables:
                if variable.expression and not variable.evaluate_as_expression:
                    self.add_result(
                        package,
                        self.message_format.format(variable.qualified_name),
                        source=None if node is package else node.name,
                    )


class ExecuteProcessTaskLogging(PackageRule):
    id = "IS0006"
    name = "ExecuteProcessTaskLogging"
    description = "Every execute process task must log its output and error messages."
    message_format = 'Task "{0}" doesn\'t have StandardErrorVariable or StandardOutputVariable set. {1}'

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task in collect_tasks(package, ExecuteProcessData):
            process = task.inner
            if not process.standard_error_variable or not process.standard_output_variable:
                self.add_result(package, self.message_format.format(task.name, self.description), source=task.name)


class ScriptTaskCSharp(PackageRule):
    id = "SSIS0001"
    name = "ScriptTaskCSharp"
    description = "Every script task must be written in C#."
    message_format = "Script task {0} is written in {1}. {2}"

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task in collect_tasks(package, ScriptTaskData):
            if not is_csharp(task.inner.language):
                self.add_result(
                    package,
                    self.message_format.format(task.name, task.inner.language, self.description),
                    source=task.name,
                )


class DataflowScriptCSharp(PackageRule):
    id = "IS0101"
    name = "DataflowScriptCSharp"
    description = "Every data flow script component must be written in C#."
    message_format = "Script component {0} is written in {1}. {2}"

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task, pipeline in pipelines_of(package):
            for component in self.components_named(pipeline, SCRIPT_COMPONENT_NAME):
                language = component.properties.get(SCRIPT_LANGUAGE_PROPERTY)
                if not is_csharp(language):
                    self.add_result(
                        package,
                        self.message_format.format(component.name, language, self.description),
                        source=_component_source(task, component),
                    )


class ScriptAnalysisRule(PackageRule):
    """
    Base for rules that run the ScriptAnalyzer over embedded C# code.
    Violations are reported under the violated check's own id and name.
    """
    script_file_name = ""

    def __init__(
        self,
        settings: Union[Settings, str, None] = None,
        resolver: Optional[ComponentResolver] = None,
    ) -> None:
        super().__init__(resolver)
        if not isinstance(settings, Settings):
            settings = load_settings(settings)
        self.analyzer = ScriptAnalyzer.from_settings(settings)

    def report(self, package: Package, violations: Sequence[ScriptViolation], source: str) -> None:
        for violation in violations:
            self.add_result(
                package,
                f"{violation.message} To suppress: {violation.suppression}",
                source=source,
                line=violation.line,
                rule_id=violation.check_id,
                rule_name=violation.check_name,
            )


class ScriptTaskAnalysis(ScriptAnalysisRule):
    id = "SSIS0002"
    name = "ScriptTaskAnalysis"
    description = "C# script tasks must parse cleanly and handle errors in Main and public methods."
    script_file_name = "ScriptMain.cs"

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task in collect_tasks(package, ScriptTaskData):
            script = task.inner
            if not is_csharp(script.language):
                continue
            code = script.source_of(self.script_file_name)
            if code is None:
                continue
            self.report(package, self.analyzer.analyze(code), f"{script.project_name or task.name} ({task.name})")


def script_component_source(component: Component, file_name: str) -> Optional[str]:
    """
    The SourceCode property is a flat list of (file name, encoding, text)
    triples; return the text following `file_name`.
    """
    files = component.properties.get(SOURCE_CODE_PROPERTY)
    if not isinstance(files, list):
        return None
    for index, entry in enumerate(files):
        if _script_file_matches(entry, file_name) and index + 2 < len(files):
            return files[index + 2]
    return None


class DataflowScriptAnalysis(ScriptAnalysisRule):
    id = "IS0102"
    name = "DataflowScriptAnalysis"
    description = "C# script components must parse cleanly and handle errors in public methods."
    script_file_name = "main.cs"

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task, pipeline in pipelines_of(package):
            for component in self.components_named(pipeline, SCRIPT_COMPONENT_NAME):
                if not is_csharp(component.properties.get(SCRIPT_LANGUAGE_PROPERTY)):
                    continue
                code = script_component_source(component, self.script_file_name)
                if code is None:
                    continue
                self.report(package, self.analyzer.analyze(code), f"{component.name} ({task.name})")


class DataflowFastLoadCheckConstraints(PackageRule):
    id = "IS0108"
    name = "DataflowFastLoadCheckConstraints"
    description = (
        "If the destination uses Fast Load, it must have Check constraints option set. "
        "Otherwise the constraints will become NOCHECK."
    )
    message_format = 'Destination component "{0}" doesn\'t set CHECK_CONSTRAINTS. {1}'

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task, pipeline in pipelines_of(package):
            for component in self.components_named(pipeline, OLEDB_DESTINATION_NAME):
                access_mode = _int_property(component, ACCESS_MODE_PROPERTY)
                options = component.properties.get(FAST_LOAD_OPTIONS_PROPERTY)
                if access_mode not in (DESTINATION_ACCESS_MODE_FAST_LOAD, DESTINATION_ACCESS_MODE_FAST_LOAD_VARIABLE):
                    continue
                if not isinstance(options, str) or "CHECK_CONSTRAINTS" in options.upper():
                    continue
                self.add_result(
                    package,
                    self.message_format.format(component.name, self.description),
                    source=_component_source(task, component),
                )


class TaskProperties(PackageRule):
    id = "SSIS0004"
    name = "TaskProperties"
    description = (
        "FailParentOnFailure and FailPackageOnFailure must be set to true, "
        "ForceExecutionResult must be set to None."
    )

    def check(self, package: Optional[Package]) -> None:
        if package is None:
            return
        for task in collect_tasks(package):
            if task.force_execution_result != "None":
                self.add_result(
                    package,
                    f"Task {task.name} should have ForceExecutionResult=None but it's {task.force_execution_result}.",
                    source=task.name,
                )
            if not task.fail_package_on_failure:
                self.add_result(package, f"Task {task.name} should have FailPackageOnFailure set to true.", source=task.name)
            if not task.fail_parent_on_failure:
                self.add_result(package, f"Task {task.name} should have FailParentOnFailure set to true.", source=task.name)


# ============================================================
# ======================== ENGINE ============================
# ============================================================

RULE_TYPES: Tuple[Type[PackageRule], ...] = (
    ExecuteProcessTaskLogging,
    DataflowScriptAnalysis,
    DataflowScriptCSharp,
    DataflowCount,
    DataflowAsynchronousPaths,
    DataflowAccessMode,
    DataflowSortTransformations,
    DataflowFastLoadCheckConstraints,
    PackageProtectionLevel,
    VariableEvaluateAsExpression,
    TaskProperties,
    ScriptTaskCSharp,
    ScriptTaskAnalysis,
)


def build_rules(settings: Optional[Settings] = None) -> List[PackageRule]:
    """Instantiate the fixed rule catalogue, sorted by rule id."""
    settings = settings if settings is not None else Settings()
    resolver = _DEFAULT_RESOLVER
    if settings.components:
        resolver = ComponentResolver(extended_catalogue(settings.components))

    rules: List[PackageRule] = []
    for rule_type in RULE_TYPES:
        if issubclass(rule_type, ScriptAnalysisRule):
            rules.append(rule_type(settings, resolver=resolver))
        else:
            rules.append(rule_type(resolver=resolver))
    return sorted(rules, key=lambda rule: rule.id)


def run_all_rules(
    packages: Iterable[Optional[Package]],
    rules: Optional[Sequence[PackageRule]] = None,
) -> Iterator[Result]:
    """
    Run every rule over every package and return a lazy stream of Results,
    in package order, then rule-id order, then discovery order.

    Rules are built (and configuration errors raised) before the stream is
    returned. A rule that raises while checking one package is reported as
    an Error Result and a stderr notice; the run continues with the next rule.
    """
    rule_list = sorted(rules if rules is not None else build_rules(), key=lambda rule: rule.id)
    return _iter_results(packages, rule_list)


def _iter_results(packages: Iterable[Optional[Package]], rules: List[PackageRule]) -> Iterator[Result]:
    for package in packages:
        for rule in rules:
            start = len(rule.results)
            try:
                rule.check(package)
            except Exception as exc:
                package_name = package.name if package is not None else ""
                _notice(f"Rule '{rule.id}' failed on package '{package_name}': {exc!r}")
                rule.results.append(Result(
                    severity=Severity.ERROR,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    message=f"Rule raised {type(exc).__name__}: {exc}",
                    package=package_name,
                ))
            yield from rule.results[start:]


def analyze_project(
    path: str,
    settings: Optional[Settings] = None,
    package_name: Optional[str] = None,
) -> Iterator[Result]:
    rules = build_rules(settings)
    return run_all_rules(_selected_packages(path, package_name), rules)


def _selected_packages(path: str, package_name: Optional[str]) -> Iterator[Package]:
    target = f"{package_name}.dtsx".lower() if package_name else None
    for stream_name, package in iter_packages(path):
        if target and stream_name.replace("\\", "/").rsplit("/", 1)[-1].lower() != target:
            continue
        yield package


# ============================================================
# ==================== PROJECT LOADING =======================
# ============================================================

DTS_NAMESPACE = "www.microsoft.com/SqlServer/Dts"
_DTS = "{" + DTS_NAMESPACE + "}"

_CONTAINER_CREATION_NAMES = {"STOCK:SEQUENCE", "STOCK:FORLOOP", "STOCK:FOREACHLOOP"}
_FORCED_EXECUTION_RESULTS = {"-1": "None", "0": "Success", "1": "Failure", "2": "Completion"}
_INT_DATA_TYPES = {"system.int16", "system.int32", "system.int64", "system.byte", "system.uint32"}


def iter_packages(path: str) -> Iterator[Tuple[str, Package]]:
    """
    Yield (stream name, Package) pairs ordered by stream name from an .ispac
    archive, a single .dtsx file or a directory of .dtsx files. The archive
    is closed when iteration finishes or the generator is closed.
    """
    if os.path.isdir(path):
        for name in sorted(entry for entry in os.listdir(path) if entry.lower().endswith(".dtsx")):
            yield name, _read_package_file(os.path.join(path, name), name)
        return

    if not os.path.isfile(path):
        raise ProjectLoadError(f"Project path not found: {path}")

    if path.lower().endswith(".dtsx"):
        name = os.path.basename(path)
        yield name, _read_package_file(path, name)
        return

    try:
        archive = zipfile.ZipFile(path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ProjectLoadError(f"Could not open project {path}: {exc}") from exc

    with archive:
        names = sorted(info.filename for info in archive.infolist() if info.filename.lower().endswith(".dtsx"))
        for member in names:
            stream_name = urllib.parse.unquote(member)
            yield stream_name, load_package(archive.read(member), _stream_stem(stream_name))


def _read_package_file(path: str, stream_name: str) -> Package:
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        raise ProjectLoadError(f"Could not read package {path}: {exc}") from exc
    return load_package(data, _stream_stem(stream_name))


def _stream_stem(stream_name: str) -> str:
    base = stream_name.replace("\\", "/").rsplit("/", 1)[-1]
    return base[:-5] if base.lower().endswith(".dtsx") else base


def load_package(xml_data: Union[str, bytes], name: Optional[str] = None) -> Package:
    """Parse one .dtsx document (SSIS 2012+ format) into a Package."""
    try:
        root = ElementTree.fromstring(xml_data)
    except ElementTree.ParseError as exc:
        raise ProjectLoadError(f"Package '{name}' is not valid XML: {exc}") from exc
    if root.tag != _DTS + "Executable":
        raise ProjectLoadError(f"Package '{name}' has no DTS:Executable root element.")

    package = Package(
        name=_dts_attr(root, "ObjectName") or name or "",
        creation_name=_dts_attr(root, "CreationName") or "Microsoft.Package",
        protection_level=_protection_level(_dts_attr(root, "ProtectionLevel")),
    )
    _hydrate_node(package, root)
    return package


def _dts_attr(element: ElementTree.Element, name: str, default: Optional[str] = None) -> Optional[str]:
    return element.get(_DTS + name, default)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _local_attr(element: ElementTree.Element, name: str, default: str = "") -> str:
    for key, value in element.attrib.items():
        if _local_name(key) == name:
            return value
    return default


def _children(element: Optional[ElementTree.Element], name: str) -> List[ElementTree.Element]:
    if element is None:
        return []
    return [child for child in element if _local_name(child.tag) == name]


def _child(element: Optional[ElementTree.Element], name: str) -> Optional[ElementTree.Element]:
    matches = _children(element, name)
    return matches[0] if matches else None


def _xml_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "-1")


def _protection_level(value: Optional[str]) -> ProtectionLevel:
    if value is None:
        return ProtectionLevel.ENCRYPT_SENSITIVE_WITH_USER_KEY
    try:
        return ProtectionLevel(int(value.strip()))
    except ValueError:
        _notice_once(f"protection-level:{value}", f"Unknown ProtectionLevel '{value}'; assuming EncryptSensitiveWithUserKey.")
        return ProtectionLevel.ENCRYPT_SENSITIVE_WITH_USER_KEY


def _hydrate_node(node: ControlFlowNode, element: ElementTree.Element) -> None:
    node.fail_package_on_failure = _xml_bool(_dts_attr(element, "FailPackageOnFailure"))
    node.fail_parent_on_failure = _xml_bool(_dts_attr(element, "FailParentOnFailure"))
    forced = _dts_attr(element, "ForceExecutionResult")
    if forced is not None:
        node.force_execution_result = _FORCED_EXECUTION_RESULTS.get(forced.strip(), forced.strip())
    node.variables = _variables_of(element)
    node.event_handlers = _event_handlers_of(element)

    if isinstance(node, Container):
        for child_element in _children(_child(element, "Executables"), "Executable"):
            node.executables.append(_executable_from_element(child_element))


def _variables_of(element: ElementTree.Element) -> List[Variable]:
    variables: List[Variable] = []
    for var_element in _children(_child(element, "Variables"), "Variable"):
        variables.append(Variable(
            name=_dts_attr(var_element, "ObjectName") or "",
            namespace=_dts_attr(var_element, "Namespace") or "User",
            expression=_dts_attr(var_element, "Expression"),
            evaluate_as_expression=_xml_bool(_dts_attr(var_element, "EvaluateAsExpression")),
        ))
    return variables


def _event_handlers_of(element: ElementTree.Element) -> Dict[str, Container]:
    handlers: Dict[str, Container] = {}
    for handler_element in _children(_child(element, "EventHandlers"), "EventHandler"):
        event_name = _dts_attr(handler_element, "EventName") or _dts_attr(handler_element, "ObjectName") or "EventHandler"
        handler = Container(name=event_name, creation_name="EventHandler")
        _hydrate_node(handler, handler_element)
        handlers.setdefault(event_name, handler)
    return handlers


def _executable_from_element(element: ElementTree.Element) -> ControlFlowNode:
    creation_name = _dts_attr(element, "CreationName") or _dts_attr(element, "ExecutableType") or ""
    name = _dts_attr(element, "ObjectName") or creation_name
    node: ControlFlowNode
    if creation_name.upper() in _CONTAINER_CREATION_NAMES or _child(element, "Executables") is not None:
        node = Container(name=name, creation_name=creation_name)
    else:
        node = Task(name=name, creation_name=creation_name, inner=_task_inner(creation_name, element))
    _hydrate_node(node, element)
    return node


def _task_inner(creation_name: str, element: ElementTree.Element) -> Any:
    object_data = _child(element, "ObjectData")
    key = creation_name.lower()
    if "pipeline" in key:
        return _pipeline_from_element(_child(object_data, "pipeline"))
    if "scripttask" in key:
        return _script_task_from_element(_child(object_data, "ScriptProject"))
    if "executeprocess" in key:
        return _execute_process_from_element(_child(object_data, "ExecuteProcessData"))
    return GenericTaskData(creation_name=creation_name)


def _script_task_from_element(element: Optional[ElementTree.Element]) -> ScriptTaskData:
    if element is None:
        return ScriptTaskData()
    files = {
        _local_attr(item, "Name"): item.text or ""
        for item in _children(element, "ProjectItem")
    }
    return ScriptTaskData(
        project_name=_local_attr(element, "Name"),
        language=_local_attr(element, "Language", CSHARP_LANGUAGE),
        files=files,
    )


def _execute_process_from_element(element: Optional[ElementTree.Element]) -> ExecuteProcessData:
    if element is None:
        return ExecuteProcessData()
    return ExecuteProcessData(
        standard_output_variable=_local_attr(element, "StandardOutputVariable"),
        standard_error_variable=_local_attr(element, "StandardErrorVariable"),
    )


def _property_value(element: ElementTree.Element) -> Any:
    if _xml_bool(element.get("isArray")):
        return [item.text or "" for item in _children(_child(element, "arrayElements"), "arrayElement")]
    text = element.text or ""
    data_type = (element.get("dataType") or "").lower()
    if data_type in _INT_DATA_TYPES:
        try:
            return int(text.strip())
        except ValueError:
            return text
    if data_type == "system.boolean":
        return _xml_bool(text)
    return text


def _pipeline_from_element(element: Optional[ElementTree.Element]) -> Pipeline:
    """
    Build components and paths. Input refIds are numbered from 1 in document
    order; an output's synchronousInputId (an input refId) is mapped to that
    number, and an output without one gets 0.
    """
    pipeline = Pipeline()
    if element is None:
        return pipeline

    inputs: Dict[str, Tuple[Component, int]] = {}
    outputs: Dict[str, Tuple[Component, str]] = {}
    for comp_element in _children(_child(element, "components"), "component"):
        name = comp_element.get("name", "")
        component = Component(
            name=name,
            class_id=comp_element.get("componentClassID", ""),
            ref_id=comp_element.get("refId", "") or name,
            properties={
                prop.get("name", ""): _property_value(prop)
                for prop in _children(_child(comp_element, "properties"), "property")
            },
        )
        pipeline.components.append(component)
        for input_element in _children(_child(comp_element, "inputs"), "input"):
            inputs[input_element.get("refId", "")] = (component, len(inputs) + 1)
        for output_element in _children(_child(comp_element, "outputs"), "output"):
            outputs[output_element.get("refId", "")] = (component, output_element.get("synchronousInputId", ""))

    for path_element in _children(_child(element, "paths"), "path"):
        start_ref = path_element.get("startId", "")
        end_ref = path_element.get("endId", "")
        start_component, sync_ref = outputs.get(start_ref, (None, ""))
        sync_id = inputs[sync_ref][1] if sync_ref and sync_ref in inputs else 0
        end_component = inputs[end_ref][0] if end_ref in inputs else None
        pipeline.paths.append(Path(
            start=Endpoint(start_component, start_ref, sync_id),
            end=Endpoint(end_component, end_ref),
            name=path_element.get("name", ""),
        ))

    return pipeline


# ============================================================
# ===================== RESULT OUTPUT ========================
# ============================================================

def result_to_json_obj(result: Result) -> Dict[str, Any]:
    return {
        "severity": result.severity.value,
        "rule_id": result.rule_id,
        "rule_name": result.rule_name,
        "message": result.message,
        "package": result.package,
        "source": result.source,
        "line": result.line,
        "tool": TOOL_NAME,
        "version": TOOL_VERSION,
    }


def emit_results(results: Iterable[Result], out: Optional[str] = None, fmt: str = "text") -> int:
    """
    Write results as tab-separated lines (streamed) or one JSON list.
    Returns the number of results written.
    """
    handle = open(out, "w", encoding="utf-8") if out else sys.stdout
    count = 0
    try:
        if fmt == "json":
            as_json = [result_to_json_obj(result) for result in results]
            count = len(as_json)
            handle.write(json.dumps(as_json, indent=2, sort_keys=False) + "\n")
        else:
            for result in results:
                handle.write(result.to_line() + "\n")
                count += 1
    finally:
        if out:
            handle.close()
    return count


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
    Intended usage:
      dtscop analyze [--settings dtscop.yaml] [--package Load] project.ispac
      dtscop rules
    """
    parser = argparse.ArgumentParser(
        prog="dtscop",
        description="DtsCop: best-practice rule enforcement for SSIS projects",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Analyze an .ispac project, a .dtsx package or a directory of packages.",
    )
    analyze_p.add_argument(
        "--settings",
        metavar="SETTINGS_YAML",
        default=os.environ.get("DTSCOP_SETTINGS"),
        help="YAML settings file (required catch patterns, extra components).",
    )
    analyze_p.add_argument(
        "--package",
        metavar="NAME",
        help="Only analyze the package stored as NAME.dtsx.",
    )
    analyze_p.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default: tab-separated text).",
    )
    analyze_p.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write results to this file instead of stdout.",
    )
    analyze_p.add_argument("project", help="Path to the .ispac, .dtsx or directory.")

    subparsers.add_parser("rules", help="List the rule catalogue.")

    args = parser.parse_args(argv)

    if args.command == "rules":
        for rule_type in sorted(RULE_TYPES, key=lambda rule_type: rule_type.id):
            print(f"{rule_type.id}\t{rule_type.name}\t{rule_type.description}")
        return 0

    if args.command == "analyze":
        if not os.path.exists(args.project):
            _notice(f"Invalid path to project: '{args.project}'")
            return 1
        try:
            settings = load_settings(args.settings)
            results = analyze_project(args.project, settings, args.package)
            emit_results(results, out=args.out, fmt=args.format)
        except DtsCopError as exc:
            _notice(str(exc))
            return 2
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
