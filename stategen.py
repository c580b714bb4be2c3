"""One-shot state event generator for Python UI state records.

Scans a Python source tree for ``StateEvent`` markers on fields of immutable
state records and writes, next to each record, a ``<module>_<owner>_events.py``
module holding one consume function per marked field plus a dispatcher that
fires each pending event once and resets it in the configured order.

Usage:
    stategen --source-root src
    stategen --source-root src --naming snake --check
"""

import argparse
import ast
import builtins
import fnmatch
import hashlib
import json
import keyword
import re
import sys
import traceback
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

GENERATOR_NAME = "stategen"
GENERATOR_VERSION = "0.3.0"
DEFAULT_SOURCE_ROOT = Path(".")
DEFAULT_MAX_ROUNDS = 10
DEFAULT_EXCLUDES = (".*", "__pycache__", "build", "dist", "*.egg-info", "venv")
MANIFEST_FILENAME = ".stategen.json"
NAMING_STYLES = ("camel", "snake")


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    source_root: Path
    output_dir: Path
    naming: str
    excludes: tuple[str, ...]
    max_rounds: int
    check: bool = False
    quiet: bool = False


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_OUTPUT_DIR",
    "INVALID_MAX_ROUNDS",
    "INVALID_EXCLUDE",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/dir",
        )
    if path.is_dir():
        return path
    if path.exists():
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"Path for {flag} is not a directory: {path}",
            suggestion or "Point this flag at a directory.",
        )
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=GENERATOR_NAME,
        description="Generate one-shot state event consumers for UI state records",
    )

    parser.add_argument("--source-root", type=Path, default=DEFAULT_SOURCE_ROOT)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--naming", choices=NAMING_STYLES, default="camel")
    parser.add_argument("--exclude", action="append", default=None)
    parser.add_argument("--max-rounds", type=int, default=DEFAULT_MAX_ROUNDS)
    parser.add_argument("--check", action="store_true", default=False)
    parser.add_argument("--quiet", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_excludes(raw_excludes: object) -> tuple[str, ...]:
    if raw_excludes is None:
        return tuple()
    if not isinstance(raw_excludes, list):
        raise ConfigError(
            "INVALID_EXCLUDE",
            f"Invalid --exclude value type: {type(raw_excludes).__name__}",
            "Pass glob patterns as --exclude PATTERN.",
        )

    normalized: list[str] = []
    for pattern in raw_excludes:
        if not isinstance(pattern, str) or not pattern.strip():
            raise ConfigError(
                "INVALID_EXCLUDE",
                f"Invalid --exclude pattern: {pattern!r}",
                "Exclude patterns are non-empty globs matched against path parts.",
            )
        normalized.append(pattern.strip())
    return tuple(normalized)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    source_root = validate_path_exists(
        args.source_root,
        "--source-root",
        "Pass the directory that holds your top-level packages: --source-root src",
    )

    output_dir = args.output_dir if args.output_dir is not None else source_root
    if output_dir.exists() and not output_dir.is_dir():
        raise ConfigError(
            "INVALID_OUTPUT_DIR",
            f"--output-dir is not a directory: {output_dir}",
            "Omit --output-dir to write next to the state records.",
        )

    if args.max_rounds < 1:
        raise ConfigError(
            "INVALID_MAX_ROUNDS",
            f"--max-rounds must be at least 1, got {args.max_rounds}",
            f"The default is {DEFAULT_MAX_ROUNDS}.",
        )

    excludes = DEFAULT_EXCLUDES + normalize_excludes(args.exclude)
    if output_dir.resolve() != source_root.resolve():
        # A package with __init__.py is imported from its first directory
        # only, so modules mirrored under another root are never found.
        regular = find_regular_packages(source_root, excludes)
        if regular:
            raise ConfigError(
                "INVALID_OUTPUT_DIR",
                f"--output-dir cannot extend regular package {regular[0]}; "
                "generated modules there would not be importable",
                "Omit --output-dir, or turn the packages into namespace packages "
                "by removing their __init__.py.",
            )

    return GenerateConfig(
        source_root=source_root,
        output_dir=output_dir,
        naming=args.naming,
        excludes=excludes,
        max_rounds=args.max_rounds,
        check=bool(args.check),
        quiet=bool(args.quiet),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #

STATE_EVENT_MARKER = "state_event.StateEvent"
UI_STATE_MARKER = "state_event.ui_state"
RUNTIME_MODULE = "state_event"
EVENT_TYPE_NAME = "state_event.EventType"

MARKER_PARAMETERS = ("consume_operation_name", "ordering_policy", "handler_name")
CONSTRUCTOR_NAMES = frozenset({"__init__", "__new__"})

ANNOTATED_NAMES = frozenset({"typing.Annotated", "typing_extensions.Annotated"})
OPTIONAL_NAMES = frozenset({"typing.Optional", "typing_extensions.Optional"})
UNION_NAMES = frozenset({"typing.Union", "typing_extensions.Union"})
LITERAL_NAMES = frozenset({"typing.Literal", "typing_extensions.Literal"})
NONE_ADMITTING_NAMES = frozenset({"typing.Any", "builtins.object"})

DATACLASS_DECORATORS = frozenset({"dataclasses.dataclass"})
ATTRS_FROZEN_DECORATORS = frozenset({"attrs.frozen", "attr.frozen"})
ATTRS_CONFIGURABLE_DECORATORS = frozenset(
    {"attr.s", "attr.attrs", "attr.define", "attrs.define"}
)
NAMEDTUPLE_BASES = frozenset({"typing.NamedTuple", "typing_extensions.NamedTuple"})

# Names the generated module binds itself; user-chosen names must avoid them.
GENERATED_RESERVED_NAMES = frozenset(
    {
        "TYPE_CHECKING",
        "Callable",
        "EffectScope",
        "StateEventHandler",
        "annotations",
        "attrs",
        "dataclasses",
        "effects",
        "functools",
        "handler",
        "on_event",
        "run_callback",
        "state",
        "ui_state",
        "value",
    }
)


# ===--- Diagnostics ---=== #


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    EXCEPTION = "exception"


VALID_DIAGNOSTIC_CODES = {
    "INVALID_OWNER",
    "INVALID_POLICY",
    "INVALID_NAME",
    "INVALID_ARGUMENT",
    "NAME_COLLISION",
    "NON_OPTIONAL_FIELD",
    "SYNTHESIS_FAILED",
    "WRITE_FAILED",
    "UNRESOLVED_SYMBOL",
    "INVALID_MANIFEST",
}


@dataclass(frozen=True)
class SourceLocation:
    path: str
    line: int
    column: int


@dataclass(frozen=True)
class Diagnostic:
    """One message emitted during a generation run.

    Attributes:
        severity: INFO for progress, WARNING and ERROR for per-field or
            per-group problems, EXCEPTION for unexpected failures.
        message: Human-readable text.
        code: One of VALID_DIAGNOSTIC_CODES. None for progress messages.
        location: Declaration the message is attached to, if any.
        detail: Extra text printed under the message (a traceback for
            EXCEPTION diagnostics).
    """

    severity: Severity
    message: str
    code: str | None = None
    location: SourceLocation | None = None
    detail: str | None = None


def format_diagnostic(diagnostic: Diagnostic) -> str:
    """Render ``path:line:col: severity[CODE]: message`` plus any detail.

    Progress messages (INFO without a code) print as bare text.
    """
    if diagnostic.severity is Severity.INFO and diagnostic.code is None:
        if diagnostic.location is None:
            return diagnostic.message
    prefix = ""
    if diagnostic.location is not None:
        loc = diagnostic.location
        prefix = f"{loc.path}:{loc.line}:{loc.column}: "
    label = diagnostic.severity.value
    if diagnostic.code:
        label = f"{label}[{diagnostic.code}]"
    text = f"{prefix}{label}: {diagnostic.message}"
    if diagnostic.detail:
        text = f"{text}\n{diagnostic.detail.rstrip()}"
    return text


class DiagnosticSink:
    """Collects diagnostics for one run and echoes them as they arrive.

    Progress goes to stdout unless ``quiet``; everything else to stderr.
    """

    def __init__(self, echo: bool = True, quiet: bool = False):
        self.echo = echo
        self.quiet = quiet
        self.diagnostics: list[Diagnostic] = []

    def report(self, diagnostic: Diagnostic) -> None:
        if diagnostic.code is not None and diagnostic.code not in VALID_DIAGNOSTIC_CODES:
            raise ValueError(f"Unknown diagnostic code: {diagnostic.code}")
        self.diagnostics.append(diagnostic)
        if not self.echo:
            return
        if diagnostic.severity is Severity.INFO:
            if not self.quiet:
                print(format_diagnostic(diagnostic))
        else:
            print(format_diagnostic(diagnostic), file=sys.stderr)

    def info(self, message: str, location: SourceLocation | None = None) -> None:
        self.report(Diagnostic(Severity.INFO, message, location=location))

    def warning(
        self, code: str, message: str, location: SourceLocation | None = None
    ) -> None:
        self.report(Diagnostic(Severity.WARNING, message, code, location))

    def error(
        self, code: str, message: str, location: SourceLocation | None = None
    ) -> None:
        self.report(Diagnostic(Severity.ERROR, message, code, location))

    def exception(
        self,
        code: str,
        message: str,
        exc: BaseException,
        location: SourceLocation | None = None,
    ) -> None:
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self.report(Diagnostic(Severity.EXCEPTION, message, code, location, detail))

    def count(self, severity: Severity) -> int:
        return sum(1 for d in self.diagnostics if d.severity is severity)

    def with_code(self, code: str) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.code == code]

    @property
    def has_errors(self) -> bool:
        return any(
            d.severity in (Severity.ERROR, Severity.EXCEPTION) for d in self.diagnostics
        )


# ===--- Source snapshot ---=== #


@dataclass(frozen=True, eq=False)
class SourceFile:
    """One parsed module of the snapshot.

    Attributes:
        path: Absolute or root-joined path of the file.
        relative_path: POSIX path relative to its root. Identity used for
            dependency tracking.
        module: Dotted module name, e.g. "app.screens.home".
        is_package: True for ``__init__.py`` files.
        tree: Parsed module.
        parents: Child node -> parent node map over ``tree``.
        bindings: Names bound at module level other than by imports.
        imports: Local name -> absolute import target. For ``from m import x``
            the target is "m.x"; for ``import a.b as c`` it is "a.b".
        module_imports: Local names bound by plain ``import`` statements.
        star_imports: Modules imported with ``from m import *``.
        content: Raw file bytes, hashed into generated headers.
        generated: True when the file was produced by this generator.
    """

    path: Path
    relative_path: str
    module: str
    is_package: bool
    tree: ast.Module
    parents: dict[ast.AST, ast.AST]
    bindings: frozenset[str]
    imports: dict[str, str]
    module_imports: frozenset[str]
    star_imports: tuple[str, ...]
    content: bytes
    generated: bool = False

    @property
    def package(self) -> str:
        if self.is_package:
            return self.module
        return self.module.rpartition(".")[0]

    def parent_of(self, node: ast.AST) -> ast.AST | None:
        return self.parents.get(node)

    def location(self, node: ast.AST) -> SourceLocation:
        return SourceLocation(
            self.relative_path,
            getattr(node, "lineno", 0),
            getattr(node, "col_offset", 0) + 1,
        )


def module_name_for(relative: Path) -> tuple[str, bool] | None:
    """Map a root-relative ``.py`` path to (module name, is_package).

    Returns None when the path cannot be imported as a module (a path part
    that is not an identifier, or the root's own ``__init__.py``).
    """
    parts = list(relative.with_suffix("").parts)
    is_package = parts[-1] == "__init__"
    if is_package:
        parts = parts[:-1]
    if not parts or not all(part.isidentifier() for part in parts):
        return None
    return ".".join(parts), is_package


def resolve_import_module(package: str, module: str | None, level: int) -> str:
    if level == 0:
        return module or ""
    parts = package.split(".") if package else []
    if level > 1:
        parts = parts[: max(len(parts) - (level - 1), 0)]
    base = ".".join(parts)
    if module:
        return f"{base}.{module}" if base else module
    return base


def _target_names(target: ast.AST) -> set[str]:
    if isinstance(target, ast.Name):
        return {target.id}
    if isinstance(target, (ast.Tuple, ast.List)):
        names: set[str] = set()
        for element in target.elts:
            names.update(_target_names(element))
        return names
    if isinstance(target, ast.Starred):
        return _target_names(target.value)
    return set()


def _collect_bindings(
    statements: list[ast.stmt],
    package: str,
    bindings: set[str],
    imports: dict[str, str],
    module_imports: set[str],
    star_imports: list[str],
) -> None:
    for stmt in statements:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bindings.add(stmt.name)
            continue
        if isinstance(stmt, ast.Import):
            for alias in stmt.names:
                if alias.asname:
                    imports[alias.asname] = alias.name
                    module_imports.add(alias.asname)
                else:
                    root = alias.name.split(".")[0]
                    imports[root] = root
                    module_imports.add(root)
            continue
        if isinstance(stmt, ast.ImportFrom):
            module = resolve_import_module(package, stmt.module, stmt.level)
            for alias in stmt.names:
                if alias.name == "*":
                    star_imports.append(module)
                    continue
                target = f"{module}.{alias.name}" if module else alias.name
                imports[alias.asname or alias.name] = target
            continue
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                bindings.update(_target_names(target))
        elif isinstance(stmt, (ast.AnnAssign, ast.AugAssign)):
            bindings.update(_target_names(stmt.target))
        elif isinstance(stmt, (ast.For, ast.AsyncFor)):
            bindings.update(_target_names(stmt.target))
        elif isinstance(stmt, (ast.With, ast.AsyncWith)):
            for item in stmt.items:
                if item.optional_vars is not None:
                    bindings.update(_target_names(item.optional_vars))
        elif isinstance(stmt, ast.Try):
            for handler in stmt.handlers:
                if handler.name:
                    bindings.add(handler.name)
                _collect_bindings(
                    handler.body, package, bindings, imports, module_imports, star_imports
                )

        for attr in ("body", "orelse", "finalbody"):
            nested = getattr(stmt, attr, None)
            if isinstance(nested, list):
                _collect_bindings(
                    nested, package, bindings, imports, module_imports, star_imports
                )


def build_parent_map(tree: ast.AST) -> dict[ast.AST, ast.AST]:
    parents: dict[ast.AST, ast.AST] = {}
    for node in ast.walk(tree):
        for child in ast.iter_child_nodes(node):
            parents[child] = node
    return parents


def load_source(
    path: Path,
    root: Path,
    content: bytes | None = None,
    generated: bool = False,
) -> SourceFile | None:
    """Parse one file of the tree rooted at ``root``.

    Args:
        path: File path under ``root``.
        root: Source or output root the module name is relative to.
        content: File bytes. Read from ``path`` when None.
        generated: Marks files produced by this generator.

    Returns:
        SourceFile, or None when the path is not importable as a module.

    Raises:
        OSError: File not readable.
        SyntaxError: File is not valid Python.
    """
    relative = path.relative_to(root)
    naming = module_name_for(relative)
    if naming is None:
        return None
    module, is_package = naming
    if content is None:
        content = path.read_bytes()
    tree = ast.parse(content, filename=str(path))

    package = module if is_package else module.rpartition(".")[0]
    bindings: set[str] = set()
    imports: dict[str, str] = {}
    module_imports: set[str] = set()
    star_imports: list[str] = []
    _collect_bindings(tree.body, package, bindings, imports, module_imports, star_imports)

    return SourceFile(
        path=path,
        relative_path=relative.as_posix(),
        module=module,
        is_package=is_package,
        tree=tree,
        parents=build_parent_map(tree),
        bindings=frozenset(bindings),
        imports=imports,
        module_imports=frozenset(module_imports),
        star_imports=tuple(star_imports),
        content=content,
        generated=generated,
    )


def iter_source_paths(root: Path, excludes: Iterable[str]) -> list[Path]:
    patterns = tuple(excludes)
    paths: list[Path] = []
    for path in sorted(root.rglob("*.py")):
        parts = path.relative_to(root).parts
        if any(fnmatch.fnmatch(part, pattern) for part in parts for pattern in patterns):
            continue
        paths.append(path)
    return paths


def find_regular_packages(root: Path, excludes: Iterable[str]) -> list[str]:
    """Return dotted names of the packages under ``root`` that have an ``__init__.py``."""
    packages: list[str] = []
    for path in iter_source_paths(root, excludes):
        if path.name != "__init__.py":
            continue
        resolved = module_name_for(path.relative_to(root))
        if resolved is not None:
            packages.append(resolved[0])
    return packages


class SourceSnapshot:
    """All modules visible to one generation run, keyed by module name.

    Files generated during the run are added between rounds; a later file
    with the same module name replaces the earlier one.
    """

    def __init__(self, files: Iterable[SourceFile] = ()):
        self._files: dict[str, SourceFile] = {}
        self._top_level: set[str] = set()
        for source in files:
            self.add(source)

    def add(self, source: SourceFile) -> None:
        self._files[source.module] = source
        self._top_level.add(source.module.split(".")[0])

    def get(self, module: str) -> SourceFile | None:
        return self._files.get(module)

    @property
    def files(self) -> tuple[SourceFile, ...]:
        return tuple(sorted(self._files.values(), key=lambda s: s.relative_path))

    def module_exists(self, module: str) -> bool:
        """True for modules outside the snapshot's packages or present in it."""
        if not module:
            return False
        if module.split(".")[0] not in self._top_level:
            return True
        if module in self._files:
            return True
        prefix = module + "."
        return any(name.startswith(prefix) for name in self._files)


# ===--- Data classes ---=== #


class OrderingPolicy(Enum):
    ACTION_THEN_CONSUME = "ActionThenConsume"
    CONSUME_THEN_ACTION = "ConsumeThenAction"


DEFAULT_ORDERING_POLICY = OrderingPolicy.ACTION_THEN_CONSUME


class RecordKind(Enum):
    DATACLASS = "dataclass"
    ATTRS = "attrs"
    NAMEDTUPLE = "namedtuple"


@dataclass(frozen=True, eq=False)
class MarkedField:
    """A field declaration carrying the StateEvent marker.

    Attributes:
        name: Field name.
        declared_type: Source text of the annotated type, e.g. "str | None".
        value_type: Source text of the type with None removed, e.g. "str".
        nullable: True when the declared type admits None.
        arguments: Raw marker arguments as (parameter name, expression) pairs,
            positional arguments mapped onto MARKER_PARAMETERS.
        source: Declaring file.
        node: The ``ast.AnnAssign`` or constructor ``ast.arg``.
        type_node: Declared type expression.
        value_type_node: Declared type expression without None.
    """

    name: str
    declared_type: str
    value_type: str
    nullable: bool
    arguments: tuple[tuple[str, ast.expr], ...]
    source: SourceFile
    node: ast.AST
    type_node: ast.expr
    value_type_node: ast.expr

    @property
    def location(self) -> SourceLocation:
        return self.source.location(self.node)


@dataclass(frozen=True, eq=False)
class OwnerType:
    name: str
    qualname: str
    module: str
    package: str
    node: ast.ClassDef
    source: SourceFile
    is_local: bool = False

    @property
    def identity(self) -> str:
        return f"{self.module}.{self.qualname}"


@dataclass(frozen=True, eq=False)
class OwnerGroup:
    """Marked fields sharing one owning record type, in declaration order."""

    owner: OwnerType
    fields: tuple[MarkedField, ...]
    record_kind: RecordKind | None

    @property
    def is_valid_record(self) -> bool:
        return self.record_kind is not None and not self.owner.is_local


@dataclass(frozen=True)
class FieldConfig:
    field: MarkedField
    consume_operation_name: str
    callback_name: str
    ordering_policy: OrderingPolicy


@dataclass(frozen=True)
class GeneratedArtifact:
    """One generated module, ready to be persisted.

    Attributes:
        package: Dotted package of the owner; "" for top-level modules.
        file_name: File name including ``.py``.
        content: UTF-8 encoded module source.
        dependencies: Relative paths of every source file that contributed a
            marked field or the owner declaration.
        owner: Owner identity (module + qualname).
    """

    package: str
    file_name: str
    content: bytes
    dependencies: tuple[str, ...]
    owner: str

    @property
    def relative_path(self) -> str:
        parts = self.package.split(".") if self.package else []
        return "/".join([*parts, self.file_name])


# ===--- Symbol scanning ---=== #


def qualified_name(node: ast.AST, source: SourceFile) -> str | None:
    """Resolve a Name/Attribute chain to a dotted name via the import table."""
    attrs: list[str] = []
    current = node
    while isinstance(current, ast.Attribute):
        attrs.append(current.attr)
        current = current.value
    if not isinstance(current, ast.Name):
        return None

    root = current.id
    if root in source.imports:
        base = source.imports[root]
    elif root in source.bindings:
        base = f"{source.module}.{root}"
    elif hasattr(builtins, root):
        base = f"builtins.{root}"
    else:
        base = root
    return ".".join([base, *reversed(attrs)])


def _parse_string_annotation(node: ast.expr) -> ast.expr:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        try:
            return ast.parse(node.value, mode="eval").body
        except SyntaxError:
            return node
    return node


def _is_none(node: ast.expr) -> bool:
    if isinstance(node, ast.Constant) and node.value is None:
        return True
    return isinstance(node, ast.Name) and node.id == "None"


def _union_members(node: ast.expr, source: SourceFile) -> list[ast.expr]:
    node = _parse_string_annotation(node)
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _union_members(node.left, source) + _union_members(node.right, source)
    if isinstance(node, ast.Subscript):
        origin = qualified_name(node.value, source)
        if origin in OPTIONAL_NAMES:
            return _union_members(node.slice, source) + [ast.Constant(value=None)]
        if origin in UNION_NAMES:
            elements = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
            members: list[ast.expr] = []
            for element in elements:
                members.extend(_union_members(element, source))
            return members
    return [node]


def split_optional(type_node: ast.expr, source: SourceFile) -> tuple[ast.expr, bool]:
    """Split a declared type into (type without None, admits None)."""
    members = _union_members(type_node, source)
    non_none = [m for m in members if not _is_none(m)]
    if len(members) == 1 and qualified_name(members[0], source) in NONE_ADMITTING_NAMES:
        return members[0], True
    nullable = len(non_none) < len(members)
    if not non_none:
        return ast.Constant(value=None), True
    value = non_none[0]
    for member in non_none[1:]:
        value = ast.BinOp(left=value, op=ast.BitOr(), right=member)
    return value, nullable


def find_marker(
    annotation: ast.expr, source: SourceFile
) -> tuple[ast.expr, ast.expr] | None:
    """Return (declared type, marker) when ``annotation`` carries StateEvent."""
    annotation = _parse_string_annotation(annotation)
    if not isinstance(annotation, ast.Subscript):
        return None
    if qualified_name(annotation.value, source) not in ANNOTATED_NAMES:
        return None
    if not isinstance(annotation.slice, ast.Tuple) or len(annotation.slice.elts) < 2:
        return None

    declared, *metadata = annotation.slice.elts
    for element in metadata:
        target = element.func if isinstance(element, ast.Call) else element
        if qualified_name(target, source) == STATE_EVENT_MARKER:
            return _parse_string_annotation(declared), element
    return None


def marker_arguments(marker: ast.expr) -> tuple[tuple[str, ast.expr], ...]:
    if not isinstance(marker, ast.Call):
        return tuple()
    arguments: list[tuple[str, ast.expr]] = []
    for index, value in enumerate(marker.args):
        if index < len(MARKER_PARAMETERS):
            arguments.append((MARKER_PARAMETERS[index], value))
        else:
            arguments.append((f"<positional {index + 1}>", value))
    for kw in marker.keywords:
        arguments.append((kw.arg or "**", kw.value))
    return tuple(arguments)


def _enclosing_scope(node: ast.AST, source: SourceFile) -> ast.AST | None:
    current = source.parent_of(node)
    while current is not None and not isinstance(
        current,
        (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.Module),
    ):
        current = source.parent_of(current)
    return current


def _make_marked_field(
    name: str, annotation: ast.expr, node: ast.AST, source: SourceFile
) -> MarkedField | None:
    found = find_marker(annotation, source)
    if found is None:
        return None
    declared, marker = found
    value_node, nullable = split_optional(declared, source)
    return MarkedField(
        name=name,
        declared_type=ast.unparse(declared),
        value_type=ast.unparse(value_node),
        nullable=nullable,
        arguments=marker_arguments(marker),
        source=source,
        node=node,
        type_node=declared,
        value_type_node=value_node,
    )


def collect_marked_fields(source: SourceFile) -> list[MarkedField]:
    """Find every StateEvent-marked declaration in ``source``.

    Declarations are annotated assignments outside function bodies and
    parameters of ``__init__``/``__new__``. Returned in source order.
    """
    fields: list[MarkedField] = []
    for node in ast.walk(source.tree):
        if isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            scope = _enclosing_scope(node, source)
            if isinstance(scope, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda)):
                continue
            field = _make_marked_field(node.target.id, node.annotation, node, source)
        elif isinstance(node, ast.arg) and node.annotation is not None:
            function = source.parent_of(source.parent_of(node) or node)
            if not isinstance(function, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            if function.name not in CONSTRUCTOR_NAMES:
                continue
            field = _make_marked_field(node.arg, node.annotation, node, source)
        else:
            continue
        if field is not None:
            fields.append(field)
    fields.sort(key=lambda f: (f.node.lineno, f.node.col_offset))
    return fields


def _type_names(node: ast.expr, source: SourceFile) -> set[str]:
    """Root names a type expression refers to, including string forward refs."""
    names: set[str] = set()
    stack: list[ast.AST] = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, ast.Constant) and isinstance(current.value, str):
            parsed = _parse_string_annotation(current)
            if parsed is not current:
                stack.append(parsed)
            continue
        if isinstance(current, ast.Subscript) and (
            qualified_name(current.value, source) in LITERAL_NAMES
        ):
            stack.append(current.value)
            continue
        if isinstance(current, ast.Name):
            names.add(current.id)
            continue
        stack.extend(ast.iter_child_nodes(current))
    return names


def _class_scope_names(node: ast.AST, source: SourceFile) -> set[str]:
    names: set[str] = set()
    current = source.parent_of(node)
    while current is not None:
        if isinstance(current, ast.ClassDef):
            for stmt in current.body:
                if isinstance(stmt, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
                    names.add(stmt.name)
                elif isinstance(stmt, ast.Assign):
                    for target in stmt.targets:
                        names.update(_target_names(target))
                elif isinstance(stmt, ast.AnnAssign):
                    names.update(_target_names(stmt.target))
        current = source.parent_of(current)
    return names


class SymbolResolver:
    """Round-scoped view of the snapshot offered to the processor.

    Offers the marked fields of the files that are new this round plus the
    fields deferred by the previous round, and decides whether a field's
    type information is fully resolvable against the current snapshot.
    """

    def __init__(
        self,
        snapshot: SourceSnapshot,
        new_files: Iterable[SourceFile],
        deferred: Iterable[MarkedField] = (),
    ):
        self.snapshot = snapshot
        self.new_files = tuple(new_files)
        self.deferred = tuple(deferred)

    def get_symbols_with_annotation(self, marker: str) -> list[MarkedField]:
        if marker != STATE_EVENT_MARKER:
            raise ValueError(f"Unsupported marker: {marker}")
        symbols: list[MarkedField] = []
        for source in self.new_files:
            symbols.extend(collect_marked_fields(source))
        symbols.extend(self.deferred)
        return symbols

    def unresolved_names(self, field: MarkedField) -> list[str]:
        source = field.source
        names = _type_names(field.type_node, source)
        for _name, value in field.arguments:
            names.update(n.id for n in ast.walk(value) if isinstance(n, ast.Name))
        class_names = _class_scope_names(field.node, source)
        return sorted(n for n in names if not self._is_bound(n, source, class_names))

    def validate(self, field: MarkedField) -> bool:
        return not self.unresolved_names(field)

    def _is_bound(self, name: str, source: SourceFile, class_names: set[str]) -> bool:
        if name in class_names or name in source.bindings or hasattr(builtins, name):
            return True
        if name in source.imports:
            target = source.imports[name]
            if name in source.module_imports:
                return self.snapshot.module_exists(target)
            module = target.rpartition(".")[0]
            return self.snapshot.module_exists(module) or self.snapshot.module_exists(
                target
            )
        return any(self.snapshot.module_exists(m) for m in source.star_imports)


@dataclass(frozen=True)
class ScanResult:
    valid: tuple[MarkedField, ...]
    deferred: tuple[MarkedField, ...]


def scan_symbols(resolver: SymbolResolver, sink: DiagnosticSink) -> ScanResult:
    """Partition the offered StateEvent fields into valid and deferred."""
    valid: list[MarkedField] = []
    deferred: list[MarkedField] = []
    for symbol in resolver.get_symbols_with_annotation(STATE_EVENT_MARKER):
        if resolver.validate(symbol):
            valid.append(symbol)
        else:
            deferred.append(symbol)
    sink.info(
        f"Found {len(valid)} valid and {len(deferred)} deferred state event fields"
    )
    return ScanResult(valid=tuple(valid), deferred=tuple(deferred))


# ===--- Ownership and grouping ---=== #


def _owner_type(class_node: ast.ClassDef, source: SourceFile) -> OwnerType:
    names = [class_node.name]
    is_local = False
    current = source.parent_of(class_node)
    while current is not None and not isinstance(current, ast.Module):
        if isinstance(current, ast.ClassDef):
            names.append(current.name)
        elif isinstance(current, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda)):
            is_local = True
        current = source.parent_of(current)
    return OwnerType(
        name=class_node.name,
        qualname=".".join(reversed(names)),
        module=source.module,
        package=source.package,
        node=class_node,
        source=source,
        is_local=is_local,
    )


def resolve_owner(field: MarkedField) -> OwnerType | None:
    """Return the nearest class enclosing ``field``, or None.

    Class-body fields have the class as direct parent. Fields declared under
    ``if``/``try`` blocks or as constructor parameters reach it by walking up
    the parent chain.
    """
    source = field.source
    parent = source.parent_of(field.node)
    if isinstance(parent, ast.ClassDef):
        return _owner_type(parent, source)

    current = parent
    while current is not None and not isinstance(current, ast.ClassDef):
        current = source.parent_of(current)
    if current is None:
        return None
    return _owner_type(current, source)


def group_by_owner(
    fields: Iterable[MarkedField],
    resolve: Callable[[MarkedField], OwnerType | None] = resolve_owner,
) -> tuple[OwnerGroup, ...]:
    """Bucket fields by owner identity; fields without an owner are dropped."""
    owners: dict[str, OwnerType] = {}
    buckets: dict[str, list[MarkedField]] = {}
    for field in fields:
        owner = resolve(field)
        if owner is None:
            continue
        owners.setdefault(owner.identity, owner)
        buckets.setdefault(owner.identity, []).append(field)
    return tuple(
        OwnerGroup(
            owner=owners[identity],
            fields=tuple(members),
            record_kind=classify_record(owners[identity]),
        )
        for identity, members in buckets.items()
    )


# ===--- Record validation ---=== #


def _keyword_is_true(call: ast.Call, name: str) -> bool:
    for kw in call.keywords:
        if kw.arg == name:
            return isinstance(kw.value, ast.Constant) and kw.value.value is True
    return False


def classify_record(owner: OwnerType) -> RecordKind | None:
    """Return how ``owner`` supports copy-with, or None if it is not immutable.

    Accepted: ``@dataclass(frozen=True)``, ``@ui_state``, ``@attrs.frozen``,
    ``@attr.s(frozen=True)``, ``@attrs.define(frozen=True)`` and
    ``typing.NamedTuple`` subclasses.
    """
    source = owner.source
    has_dataclass = False
    dataclass_frozen = False
    has_ui_state = False
    for decorator in owner.node.decorator_list:
        is_call = isinstance(decorator, ast.Call)
        target = decorator.func if is_call else decorator
        name = qualified_name(target, source)
        frozen = is_call and _keyword_is_true(decorator, "frozen")
        if name in DATACLASS_DECORATORS:
            has_dataclass = True
            dataclass_frozen = frozen
        elif name == UI_STATE_MARKER:
            has_ui_state = True
        elif name in ATTRS_FROZEN_DECORATORS:
            return RecordKind.ATTRS
        elif name in ATTRS_CONFIGURABLE_DECORATORS and frozen:
            return RecordKind.ATTRS

    if has_dataclass:
        return RecordKind.DATACLASS if dataclass_frozen else None
    if has_ui_state:
        return RecordKind.DATACLASS

    for base in owner.node.bases:
        if qualified_name(base, source) in NAMEDTUPLE_BASES:
            return RecordKind.NAMEDTUPLE
    return None


def validate_owner_group(group: OwnerGroup, sink: DiagnosticSink) -> bool:
    """Report and reject groups whose owner is not an importable immutable record."""
    owner = group.owner
    if group.is_valid_record:
        for field in group.fields:
            if not field.nullable:
                sink.warning(
                    "NON_OPTIONAL_FIELD",
                    f"State event field {owner.name}.{field.name} is declared as "
                    f"{field.declared_type}; consuming it assigns None",
                    field.location,
                )
        return True

    field_names = ", ".join(field.name for field in group.fields)
    if owner.is_local:
        reason = "is defined inside a function and cannot be imported"
    else:
        reason = (
            "is not an immutable record "
            "(frozen dataclass, attrs frozen class or NamedTuple)"
        )
    sink.error(
        "INVALID_OWNER",
        f"StateEvent on {field_names}: owner {owner.name} {reason}",
        group.fields[0].location,
    )
    return False


# ===--- Field configuration ---=== #


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


def to_pascal_case(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)


def default_consume_name(field_name: str, naming: str) -> str:
    if naming == "snake":
        return f"consume_{to_snake_case(field_name).strip('_')}"
    return f"consume{to_pascal_case(field_name)}"


def default_callback_name(field_name: str, naming: str) -> str:
    if naming == "snake":
        return f"on_{to_snake_case(field_name).strip('_')}"
    return f"on{to_pascal_case(field_name)}"


def dispatcher_name(owner_name: str, naming: str) -> str:
    if naming == "snake":
        return f"handle_{to_snake_case(owner_name)}_events"
    return f"handle{owner_name}Events"


def mixin_name(owner_name: str) -> str:
    return f"{owner_name}Events"


def artifact_file_name(owner: OwnerType) -> str:
    """Return the generated file name for ``owner``, unique within its package.

    The owner module's name leads unless it already spells the owner:
    ``screen_state.ScreenState`` -> ``screen_state_events.py``,
    ``home.ScreenState`` -> ``home_screen_state_events.py``.
    """
    stem = "_".join(to_snake_case(part) for part in owner.qualname.split("."))
    module_stem = "" if owner.source.is_package else owner.module.rpartition(".")[2]
    if module_stem and module_stem != stem:
        stem = f"{module_stem}_{stem}"
    return f"{stem}_events.py"


def fire_helper_name(field_name: str) -> str:
    return f"_fire_{field_name}"


_POLICY_LITERALS: dict[str, OrderingPolicy] = {
    "actionthenconsume": OrderingPolicy.ACTION_THEN_CONSUME,
    "standard": OrderingPolicy.ACTION_THEN_CONSUME,
    "consumethenaction": OrderingPolicy.CONSUME_THEN_ACTION,
    "navigation": OrderingPolicy.CONSUME_THEN_ACTION,
}


def _policy_literal(text: str) -> OrderingPolicy | None:
    return _POLICY_LITERALS.get(re.sub(r"[^a-z]", "", text.lower()))


def normalize_policy(raw: ast.expr, source: SourceFile) -> OrderingPolicy | None:
    """Map an ordering_policy argument to a policy; None when unrecognized.

    Three shapes are accepted, each matched on the literal policy name:
    a member reference (``EventType.NAVIGATION``), a lookup by name or value
    (``EventType["NAVIGATION"]``, ``EventType("consume_then_action")``), and
    the printed expression as a last resort (``"ConsumeThenAction"``).
    References and lookups count only when they resolve to ``state_event.EventType``
    through ``source``'s imports.
    """
    if isinstance(raw, ast.Attribute):
        if qualified_name(raw.value, source) != EVENT_TYPE_NAME:
            return None
        return _policy_literal(raw.attr)
    if (
        isinstance(raw, ast.Subscript)
        and isinstance(raw.slice, ast.Constant)
        and isinstance(raw.slice.value, str)
    ):
        if qualified_name(raw.value, source) != EVENT_TYPE_NAME:
            return None
        return _policy_literal(raw.slice.value)
    if (
        isinstance(raw, ast.Call)
        and len(raw.args) == 1
        and not raw.keywords
        and isinstance(raw.args[0], ast.Constant)
        and isinstance(raw.args[0].value, str)
    ):
        if qualified_name(raw.func, source) != EVENT_TYPE_NAME:
            return None
        return _policy_literal(raw.args[0].value)
    if isinstance(raw, ast.Constant) and isinstance(raw.value, str):
        return _policy_literal(raw.value.strip().rpartition(".")[2])
    if isinstance(raw, ast.Name):
        return _policy_literal(raw.id)
    return None


def resolve_ordering_policy(
    raw: ast.expr | None, field: MarkedField, sink: DiagnosticSink
) -> OrderingPolicy:
    if raw is None or (isinstance(raw, ast.Constant) and raw.value is None):
        return DEFAULT_ORDERING_POLICY
    policy = normalize_policy(raw, field.source)
    if policy is not None:
        return policy
    sink.error(
        "INVALID_POLICY",
        f"Unrecognized ordering_policy {ast.unparse(raw)} on field {field.name}; "
        f"using {DEFAULT_ORDERING_POLICY.value}",
        field.location,
    )
    return DEFAULT_ORDERING_POLICY


def resolve_operation_name(
    raw: ast.expr | None,
    default: str,
    parameter: str,
    field: MarkedField,
    sink: DiagnosticSink,
) -> str:
    if raw is None:
        return default
    if isinstance(raw, ast.Constant) and isinstance(raw.value, str):
        if raw.value == "":
            return default
        if raw.value.isidentifier() and not keyword.iskeyword(raw.value):
            return raw.value
        sink.error(
            "INVALID_NAME",
            f"{parameter} {raw.value!r} on field {field.name} is not a valid "
            f"identifier; using {default}",
            field.location,
        )
        return default
    sink.error(
        "INVALID_NAME",
        f"{parameter} on field {field.name} must be a string literal, got "
        f"{ast.unparse(raw)}; using {default}",
        field.location,
    )
    return default


def resolve_field_config(
    field: MarkedField, naming: str, sink: DiagnosticSink
) -> FieldConfig:
    arguments: dict[str, ast.expr] = {}
    for name, value in field.arguments:
        if name not in MARKER_PARAMETERS:
            sink.error(
                "INVALID_ARGUMENT",
                f"Unknown StateEvent argument {name} on field {field.name}",
                field.location,
            )
            continue
        arguments[name] = value

    return FieldConfig(
        field=field,
        consume_operation_name=resolve_operation_name(
            arguments.get("consume_operation_name"),
            default_consume_name(field.name, naming),
            "consume_operation_name",
            field,
            sink,
        ),
        callback_name=resolve_operation_name(
            arguments.get("handler_name"),
            default_callback_name(field.name, naming),
            "handler_name",
            field,
            sink,
        ),
        ordering_policy=resolve_ordering_policy(
            arguments.get("ordering_policy"), field, sink
        ),
    )


def check_name_collisions(
    group: OwnerGroup,
    configs: tuple[FieldConfig, ...],
    naming: str,
    sink: DiagnosticSink,
) -> bool:
    """Reject groups whose generated names would shadow each other."""
    _lines, type_bindings = build_type_imports(group)
    reserved = set(GENERATED_RESERVED_NAMES) | type_bindings
    reserved.add(dispatcher_name(group.owner.name, naming))
    reserved.add(mixin_name(group.owner.name))
    reserved.update(fire_helper_name(field.name) for field in group.fields)

    consume_names = {config.consume_operation_name for config in configs}
    problems: list[str] = []
    consume_owners: dict[str, str] = {}
    callback_owners: dict[str, str] = {}
    for config in configs:
        field_name = config.field.name
        consume = config.consume_operation_name
        if consume in consume_owners:
            problems.append(
                f"consume operation {consume} is used by both "
                f"{consume_owners[consume]} and {field_name}"
            )
        elif consume in reserved:
            problems.append(
                f"consume operation {consume} of {field_name} clashes with a generated name"
            )
        consume_owners.setdefault(consume, field_name)

        callback = config.callback_name
        if callback in callback_owners:
            problems.append(
                f"callback {callback} is used by both "
                f"{callback_owners[callback]} and {field_name}"
            )
        elif callback in reserved or callback in consume_names:
            problems.append(
                f"callback {callback} of {field_name} clashes with a generated name"
            )
        callback_owners.setdefault(callback, field_name)

    if not problems:
        return True
    sink.error(
        "NAME_COLLISION",
        f"Cannot generate state events for {group.owner.name}: " + "; ".join(problems),
        group.fields[0].location,
    )
    return False


# ===--- Code synthesis ---=== #

_HEADER_BORDER: str = "# x-------------------------------------------x #"


def source_digest(sources: Iterable[SourceFile]) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    for source in sorted(sources, key=lambda s: s.relative_path):
        h.update(source.relative_path.encode("utf-8"))
        h.update(b"\x00")
        h.update(source.content)
        h.update(b"\x00")
    return h.hexdigest()


def format_file_header(
    owner: OwnerType, dependencies: tuple[str, ...], digest: str
) -> list[str]:
    """Return the boxed comment block that opens every generated module.

    Output format:
        # x-------------------------------------------x #
        # | State events for ScreenState
        # | Generated by stategen 0.3.0. Do not edit.
        # | Source: app/screen_state.py
        # | Digest: 5f0c...
        # x-------------------------------------------x #

    One Source line per dependency, in the given order.
    """
    if not dependencies:
        raise ValueError(f"Artifact for {owner.identity} has no source dependencies")
    lines: list[str] = [
        _HEADER_BORDER,
        f"# | State events for {owner.qualname}",
        f"# | Generated by {GENERATOR_NAME} {GENERATOR_VERSION}. Do not edit.",
    ]
    lines.extend(f"# | Source: {dependency}" for dependency in dependencies)
    lines.append(f"# | Digest: {digest}")
    lines.append(_HEADER_BORDER)
    return lines


def copy_with_expression(kind: RecordKind, field_name: str) -> str:
    if kind is RecordKind.DATACLASS:
        return f"dataclasses.replace(state, {field_name}=None)"
    if kind is RecordKind.ATTRS:
        return f"attrs.evolve(state, {field_name.lstrip('_')}=None)"
    return f"state._replace({field_name}=None)"


def build_type_imports(group: OwnerGroup) -> tuple[list[str], set[str]]:
    """Imports needed only for annotations of the generated module.

    The owner class is imported from its module. Names used by the value
    types are imported from where the owner's module got them. Builtins and
    class-scope names need no import.

    Returns:
        (sorted import lines, local names they bind).
    """
    owner = group.owner
    source = owner.source
    root_class = owner.qualname.split(".")[0]
    from_imports: dict[str, set[str]] = {owner.module: {root_class}}
    plain_imports: set[str] = set()
    bound: set[str] = {root_class}
    provided = {"Callable", "EffectScope", "StateEventHandler"}

    for field in group.fields:
        for name in sorted(_type_names(field.value_type_node, source)):
            if name in bound or name in provided:
                continue
            if name in source.imports:
                target = source.imports[name]
                if name in source.module_imports:
                    if target == name:
                        plain_imports.add(f"import {target}")
                    else:
                        plain_imports.add(f"import {target} as {name}")
                else:
                    module, _, attr = target.rpartition(".")
                    if not module:
                        continue
                    entry = attr if attr == name else f"{attr} as {name}"
                    from_imports.setdefault(module, set()).add(entry)
            elif name in source.bindings:
                from_imports[owner.module].add(name)
            else:
                continue
            bound.add(name)

    lines = sorted(plain_imports)
    for module in sorted(from_imports):
        lines.append(f"from {module} import {', '.join(sorted(from_imports[module]))}")
    return lines, bound


def build_reset_lines(
    group: OwnerGroup, configs: tuple[FieldConfig, ...]
) -> list[list[str]]:
    """One consume function per field, each a separate top-level block."""
    owner_ref = group.owner.qualname
    kind = group.record_kind
    if kind is None:
        raise ValueError(f"{group.owner.identity} is not an immutable record")
    blocks: list[list[str]] = []
    for config in configs:
        field_name = config.field.name
        blocks.append(
            [
                f"def {config.consume_operation_name}("
                f"handler: StateEventHandler[{owner_ref}]) -> None:",
                f'    """Reset ``{field_name}`` to None on the state held by ``handler``."""',
                "    handler.update_ui_state(",
                f"        lambda state: {copy_with_expression(kind, field_name)}",
                "    )",
            ]
        )
    return blocks


def build_mixin_lines(group: OwnerGroup, configs: tuple[FieldConfig, ...]) -> list[str]:
    owner_ref = group.owner.qualname
    lines = [
        f"class {mixin_name(group.owner.name)}:",
        f'    """Consume operations as methods of a ``StateEventHandler[{owner_ref}]``."""',
    ]
    for config in configs:
        name = config.consume_operation_name
        lines.extend(
            [
                "",
                f"    def {name}(self: StateEventHandler[{owner_ref}]) -> None:",
                f"        {name}(self)",
            ]
        )
    return lines


def build_fire_lines(
    group: OwnerGroup, configs: tuple[FieldConfig, ...]
) -> list[list[str]]:
    """One coroutine per field running callback and reset in policy order."""
    owner_ref = group.owner.qualname
    blocks: list[list[str]] = []
    for config in configs:
        field = config.field
        callback_step = "    await run_callback(on_event, value)"
        reset_step = f"    {config.consume_operation_name}(handler)"
        if config.ordering_policy is OrderingPolicy.ACTION_THEN_CONSUME:
            steps = [callback_step, reset_step]
        else:
            steps = [reset_step, callback_step]
        blocks.append(
            [
                f"async def {fire_helper_name(field.name)}(",
                f"    handler: StateEventHandler[{owner_ref}],",
                f"    value: {field.value_type},",
                f"    on_event: Callable[[{field.value_type}], object],",
                ") -> None:",
                *steps,
            ]
        )
    return blocks


def build_dispatcher_lines(
    group: OwnerGroup, configs: tuple[FieldConfig, ...], naming: str
) -> list[str]:
    owner_ref = group.owner.qualname
    lines = [
        f"def {dispatcher_name(group.owner.name, naming)}(",
        f"    ui_state: {owner_ref},",
        f"    handler: StateEventHandler[{owner_ref}],",
        "    effects: EffectScope,",
        "    *,",
    ]
    for config in configs:
        lines.append(
            f"    {config.callback_name}: Callable[[{config.field.value_type}], object],"
        )
    lines.append(") -> None:")
    lines.append('    """Launch the effect sequence of every pending event on ``ui_state``.')
    lines.append("")
    for config in configs:
        if config.ordering_policy is OrderingPolicy.ACTION_THEN_CONSUME:
            order = f"{config.callback_name}, then {config.consume_operation_name}"
        else:
            order = f"{config.consume_operation_name}, then {config.callback_name}"
        lines.append(f"    {config.field.name}: {order}.")
    lines.append('    """')

    for config in configs:
        field_name = config.field.name
        accessor = f"ui_state.{field_name}"
        lines.extend(
            [
                f"    if {accessor} is not None:",
                "        effects.launch(",
                f'            "{field_name}",',
                f"            {accessor},",
                "            functools.partial(",
                f"                {fire_helper_name(field_name)}, handler, "
                f"{accessor}, {config.callback_name}",
                "            ),",
                "        )",
                "    else:",
                f'        effects.release("{field_name}")',
            ]
        )
    return lines


def assemble_artifact_source(
    group: OwnerGroup,
    configs: tuple[FieldConfig, ...],
    naming: str,
    dependencies: tuple[str, ...],
    digest: str,
) -> str:
    """Assemble the complete generated module for one owner group.

    Layout: header, docstring, imports, __all__, consume functions, mixin
    class, fire coroutines, dispatcher. Top-level blocks are separated by
    two blank lines; output ends with a single newline.
    """
    if group.record_kind is None:
        raise ValueError(f"{group.owner.identity} is not an immutable record")
    owner = group.owner

    runtime_imports = ["import functools"]
    if group.record_kind is RecordKind.DATACLASS:
        runtime_imports.insert(0, "import dataclasses")
    elif group.record_kind is RecordKind.ATTRS:
        runtime_imports.insert(0, "import attrs")
    type_lines, _bound = build_type_imports(group)

    exported = sorted(
        [config.consume_operation_name for config in configs]
        + [mixin_name(owner.name), dispatcher_name(owner.name, naming)]
    )

    preamble: list[str] = list(format_file_header(owner, dependencies, digest))
    preamble.append(f'"""One-shot state event consumers for {owner.qualname}."""')
    preamble.append("")
    preamble.append("from __future__ import annotations")
    preamble.append("")
    preamble.extend(runtime_imports)
    preamble.append("from typing import TYPE_CHECKING")
    preamble.append("")
    preamble.append(f"from {RUNTIME_MODULE} import run_callback")
    preamble.append("")
    preamble.append("if TYPE_CHECKING:")
    preamble.append("    from collections.abc import Callable")
    preamble.append("")
    preamble.append(f"    from {RUNTIME_MODULE} import EffectScope, StateEventHandler")
    preamble.append("")
    preamble.extend(f"    {line}" for line in type_lines)
    preamble.append("")
    preamble.append("__all__ = [")
    preamble.extend(f'    "{name}",' for name in exported)
    preamble.append("]")

    blocks: list[list[str]] = [preamble]
    blocks.extend(build_reset_lines(group, configs))
    blocks.append(build_mixin_lines(group, configs))
    blocks.extend(build_fire_lines(group, configs))
    blocks.append(build_dispatcher_lines(group, configs, naming))

    return "\n\n\n".join("\n".join(block) for block in blocks) + "\n"


def build_artifact(
    group: OwnerGroup, configs: tuple[FieldConfig, ...], naming: str
) -> GeneratedArtifact:
    sources: dict[str, SourceFile] = {group.owner.source.relative_path: group.owner.source}
    for field in group.fields:
        sources.setdefault(field.source.relative_path, field.source)
    dependencies = tuple(sorted(sources))
    digest = source_digest(sources.values())
    text = assemble_artifact_source(group, configs, naming, dependencies, digest)
    return GeneratedArtifact(
        package=group.owner.package,
        file_name=artifact_file_name(group.owner),
        content=text.encode("utf-8"),
        dependencies=dependencies,
        owner=group.owner.identity,
    )


# ===--- Artifact writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Outcome of persisting one artifact.

    Attributes:
        relative_path: Path relative to the output directory.
        path: Full path of the target file.
        status: "written", "unchanged" (identical bytes already on disk) or
            "stale" (check mode: file missing or different).
        line_count: Newline characters in the content.
        byte_count: Content size in bytes.
    """

    relative_path: str
    path: Path
    status: str
    line_count: int
    byte_count: int


class ArtifactWriter:
    """Persists generated artifacts under one output directory.

    Identical content is never rewritten. In check mode nothing is written
    and differing files are reported as stale. Hand-written files are never
    overwritten.
    """

    def __init__(self, output_dir: Path, check: bool = False):
        self.output_dir = Path(output_dir)
        self.check = check
        self.results: list[FileWriteResult] = []
        self._owners: dict[str, str] = {}

    def target_path(self, artifact: GeneratedArtifact) -> Path:
        return self.output_dir / artifact.relative_path

    def write(self, artifact: GeneratedArtifact) -> FileWriteResult:
        """Persist ``artifact``.

        Raises:
            FileExistsError: Another owner already produced this path in the
                current run, or the existing file was not generated.
            OSError: Propagated directly from filesystem failures.
        """
        relative = artifact.relative_path
        previous_owner = self._owners.get(relative)
        if previous_owner is not None and previous_owner != artifact.owner:
            raise FileExistsError(
                f"{relative} was already generated for {previous_owner}"
            )

        path = self.target_path(artifact)
        existing = path.read_bytes() if path.exists() else None
        if existing is not None and not existing.startswith(_HEADER_BORDER.encode()):
            raise FileExistsError(f"Refusing to overwrite hand-written file {path}")

        if existing == artifact.content:
            status = "unchanged"
        elif self.check:
            status = "stale"
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(artifact.content)
            status = "written"

        self._owners[relative] = artifact.owner
        result = FileWriteResult(
            relative_path=relative,
            path=path,
            status=status,
            line_count=artifact.content.count(b"\n"),
            byte_count=len(artifact.content),
        )
        self.results.append(result)
        return result


# ===--- Processing round ---=== #


@dataclass(frozen=True)
class RoundResult:
    """Outcome of one processing round.

    Attributes:
        deferred: Fields to offer again next round. Includes the resolvable
            fields of any owner that also has a deferred field.
        artifacts: Artifacts persisted this round, in group order.
        group_count: Owner groups processed (deferred owners excluded).
        failed_owners: Identities of groups that produced no artifact.
    """

    deferred: tuple[MarkedField, ...]
    artifacts: tuple[GeneratedArtifact, ...]
    group_count: int
    failed_owners: tuple[str, ...]


def process_owner_group(
    group: OwnerGroup, naming: str, writer: ArtifactWriter, sink: DiagnosticSink
) -> GeneratedArtifact | None:
    if not validate_owner_group(group, sink):
        return None
    configs = tuple(resolve_field_config(field, naming, sink) for field in group.fields)
    if not check_name_collisions(group, configs, naming, sink):
        return None
    artifact = build_artifact(group, configs, naming)
    result = writer.write(artifact)
    sink.info(f"  {result.status.capitalize()}: {result.relative_path}")
    return artifact


def process_round(
    resolver: SymbolResolver,
    writer: ArtifactWriter,
    sink: DiagnosticSink,
    naming: str = "camel",
) -> RoundResult:
    """Run scanner, grouper and per-group synthesis for one round.

    Each group is isolated: a failure is reported and the next group runs.
    Scanner exceptions propagate.
    """
    scan = scan_symbols(resolver, sink)

    deferred_owners: set[str] = set()
    for field in scan.deferred:
        owner = resolve_owner(field)
        if owner is not None:
            deferred_owners.add(owner.identity)

    held: list[MarkedField] = []
    artifacts: list[GeneratedArtifact] = []
    failed: list[str] = []
    group_count = 0
    for group in group_by_owner(scan.valid):
        owner = group.owner
        if owner.identity in deferred_owners:
            held.extend(group.fields)
            continue
        group_count += 1
        sink.info(
            f"Processing {owner.name} with {len(group.fields)} state event fields"
        )
        try:
            artifact = process_owner_group(group, naming, writer, sink)
        except OSError as err:
            sink.error(
                "WRITE_FAILED",
                f"Could not write state events for {owner.name}: {err}",
                group.fields[0].location,
            )
            artifact = None
        except Exception as err:
            sink.exception(
                "SYNTHESIS_FAILED",
                f"Error processing {owner.name}: {err}",
                err,
                group.fields[0].location,
            )
            artifact = None
        if artifact is None:
            failed.append(owner.identity)
        else:
            artifacts.append(artifact)

    return RoundResult(
        deferred=scan.deferred + tuple(held),
        artifacts=tuple(artifacts),
        group_count=group_count,
        failed_owners=tuple(failed),
    )


# ===--- Generation run ---=== #


@dataclass(frozen=True)
class RoundStats:
    """Totals across the rounds of one run.

    Attributes:
        round_count: Rounds executed.
        group_count: Owner groups processed over all rounds.
        artifacts: Every artifact persisted, in production order.
        unresolved: Fields still deferred after the last round.
    """

    round_count: int
    group_count: int
    artifacts: tuple[GeneratedArtifact, ...]
    unresolved: tuple[MarkedField, ...]


def run_rounds(
    snapshot: SourceSnapshot,
    writer: ArtifactWriter,
    sink: DiagnosticSink,
    naming: str = "camel",
    max_rounds: int = DEFAULT_MAX_ROUNDS,
) -> RoundStats:
    """Process rounds until nothing is deferred or no new file was generated.

    Artifacts of each round join the snapshot before the next one, so fields
    referring to generated modules resolve in a later round.

    Raises:
        RuntimeError: If more than ``max_rounds`` rounds would be needed.
    """
    new_files: tuple[SourceFile, ...] = snapshot.files
    deferred: tuple[MarkedField, ...] = tuple()
    artifacts: list[GeneratedArtifact] = []
    group_count = 0
    round_count = 0

    while True:
        round_count += 1
        if round_count > max_rounds:
            raise RuntimeError(
                f"State event processing exceeded the limit of {max_rounds} rounds"
            )
        sink.info(
            f"Round {round_count}: {len(new_files)} new files, "
            f"{len(deferred)} deferred fields"
        )
        resolver = SymbolResolver(snapshot, new_files, deferred)
        result = process_round(resolver, writer, sink, naming)
        deferred = result.deferred
        group_count += result.group_count
        artifacts.extend(result.artifacts)

        generated: list[SourceFile] = []
        for artifact in result.artifacts:
            source = load_source(
                writer.target_path(artifact),
                writer.output_dir,
                content=artifact.content,
                generated=True,
            )
            if source is not None:
                snapshot.add(source)
                generated.append(source)

        if not deferred or not generated:
            break
        new_files = tuple(generated)

    return RoundStats(
        round_count=round_count,
        group_count=group_count,
        artifacts=tuple(artifacts),
        unresolved=deferred,
    )


def load_snapshot(config: GenerateConfig) -> SourceSnapshot:
    """Parse the source root, plus a separate output directory if one exists.

    Raises:
        OSError: A file is not readable.
        SyntaxError: A file is not valid Python.
    """
    snapshot = SourceSnapshot()
    for path in iter_source_paths(config.source_root, config.excludes):
        source = load_source(path, config.source_root)
        if source is not None:
            snapshot.add(source)

    separate_output = config.output_dir.resolve() != config.source_root.resolve()
    if separate_output and config.output_dir.is_dir():
        for path in iter_source_paths(config.output_dir, config.excludes):
            source = load_source(path, config.output_dir, generated=True)
            if source is not None:
                snapshot.add(source)
    return snapshot


def read_manifest(output_dir: Path, sink: DiagnosticSink) -> dict[str, dict]:
    """Return the artifact entries recorded by the previous run."""
    path = output_dir / MANIFEST_FILENAME
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        sink.warning("INVALID_MANIFEST", f"Ignoring unreadable {path}: {err}")
        return {}
    artifacts = data.get("artifacts") if isinstance(data, dict) else None
    if not isinstance(artifacts, dict):
        sink.warning("INVALID_MANIFEST", f"Ignoring malformed {path}")
        return {}
    return artifacts


def build_manifest(artifacts: Iterable[GeneratedArtifact]) -> dict[str, object]:
    return {
        "generator": GENERATOR_NAME,
        "version": GENERATOR_VERSION,
        "artifacts": {
            artifact.relative_path: {
                "owner": artifact.owner,
                "sources": list(artifact.dependencies),
            }
            for artifact in sorted(artifacts, key=lambda a: a.relative_path)
        },
    }


def write_manifest(output_dir: Path, artifacts: Iterable[GeneratedArtifact]) -> Path:
    path = output_dir / MANIFEST_FILENAME
    content = json.dumps(build_manifest(artifacts), indent=2, sort_keys=True) + "\n"
    if not path.exists() or path.read_text(encoding="utf-8") != content:
        output_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return path


def prune_stale_artifacts(
    output_dir: Path,
    previous: dict[str, dict],
    current: set[str],
    check: bool,
    sink: DiagnosticSink,
) -> tuple[str, ...]:
    """Delete files generated by an earlier run that this run no longer produces.

    Only files that still start with the generated header are touched. In
    check mode nothing is deleted; the paths are returned as stale.
    """
    removed: list[str] = []
    for relative in sorted(set(previous) - current):
        path = output_dir / relative
        if not path.is_file():
            continue
        if not path.read_bytes().startswith(_HEADER_BORDER.encode()):
            continue
        if check:
            sink.info(f"  Stale: {relative}")
        else:
            path.unlink()
            sink.info(f"  Removed: {relative}")
        removed.append(relative)
    return tuple(removed)


@dataclass(frozen=True)
class GenerationResult:
    """Everything a run produced.

    Attributes:
        output_dir: Directory artifacts were written to.
        round_count: Processing rounds executed.
        group_count: Owner groups processed.
        files: One FileWriteResult per persisted artifact, in write order.
        removed: Relative paths of stale artifacts deleted (or, in check
            mode, that would be deleted).
        diagnostics: Every diagnostic reported during the run.
    """

    output_dir: Path
    round_count: int
    group_count: int
    files: tuple[FileWriteResult, ...]
    removed: tuple[str, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def total_lines(self) -> int:
        return sum(f.line_count for f in self.files)

    @property
    def has_errors(self) -> bool:
        return any(
            d.severity in (Severity.ERROR, Severity.EXCEPTION) for d in self.diagnostics
        )

    @property
    def out_of_date(self) -> bool:
        return bool(self.removed) or any(f.status == "stale" for f in self.files)


def run_generate(
    config: GenerateConfig, sink: DiagnosticSink | None = None
) -> GenerationResult:
    """Execute a complete generation run for a GenerateConfig.

    Stages: load snapshot -> read manifest -> rounds -> report unresolved
    fields -> prune stale artifacts -> write manifest -> summary.

    Raises:
        OSError: Source not readable or manifest not writable.
        SyntaxError: A source file is not valid Python.
        RuntimeError: Round limit exceeded.
    """
    if sink is None:
        sink = DiagnosticSink(quiet=config.quiet)

    sink.info(f"Scanning: {config.source_root}")
    snapshot = load_snapshot(config)
    sink.info(f"  Sources: {len(snapshot.files)} modules")

    writer = ArtifactWriter(config.output_dir, check=config.check)
    previous = read_manifest(config.output_dir, sink)

    stats = run_rounds(snapshot, writer, sink, config.naming, config.max_rounds)

    final_resolver = SymbolResolver(snapshot, ())
    for field in stats.unresolved:
        names = final_resolver.unresolved_names(field)
        if not names:
            continue
        sink.error(
            "UNRESOLVED_SYMBOL",
            f"Unable to resolve {', '.join(names)} for state event field {field.name}",
            field.location,
        )

    current = {artifact.relative_path for artifact in stats.artifacts}
    removed = prune_stale_artifacts(
        config.output_dir, previous, current, config.check, sink
    )
    if not config.check:
        write_manifest(config.output_dir, stats.artifacts)

    result = GenerationResult(
        output_dir=config.output_dir,
        round_count=stats.round_count,
        group_count=stats.group_count,
        files=tuple(writer.results),
        removed=removed,
        diagnostics=tuple(sink.diagnostics),
    )
    if not config.quiet:
        print_generation_summary(build_generation_summary(config, result))
    return result


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Sealed data for the post-generation console report.

    Attributes:
        mode: "generate" or "check".
        source_label: Source root as given on the command line.
        output_dir: Output directory as string.
        round_count: Processing rounds executed.
        group_count: Owner groups processed.
        files: Per-artifact write results.
        removed: Stale artifacts deleted (or found, in check mode).
        error_count: ERROR plus EXCEPTION diagnostics.
        warning_count: WARNING diagnostics.
    """

    mode: str
    source_label: str
    output_dir: str
    round_count: int
    group_count: int
    files: tuple[FileWriteResult, ...]
    removed: tuple[str, ...]
    error_count: int
    warning_count: int


def build_generation_summary(
    config: GenerateConfig, result: GenerationResult
) -> GenerationSummary:
    severities = [d.severity for d in result.diagnostics]
    return GenerationSummary(
        mode="check" if config.check else "generate",
        source_label=str(config.source_root),
        output_dir=str(result.output_dir),
        round_count=result.round_count,
        group_count=result.group_count,
        files=result.files,
        removed=result.removed,
        error_count=sum(
            1 for s in severities if s in (Severity.ERROR, Severity.EXCEPTION)
        ),
        warning_count=sum(1 for s in severities if s is Severity.WARNING),
    )


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as a multi-line console string.

    Returns a string with exactly one trailing newline.
    """
    heading = (
        "State events checked:" if summary.mode == "check" else "State events generated:"
    )
    lines: list[str] = [heading, ""]
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append(f"  Rounds:     {summary.round_count}")
    lines.append(f"  Records:    {summary.group_count}")
    lines.append("")

    if summary.files:
        lines.append("  Files:")
        for file_result in summary.files:
            line_str = f"{file_result.line_count:>6,} lines"
            lines.append(
                f"    {file_result.relative_path:<40} {file_result.status:<10}{line_str}"
            )
    else:
        lines.append("  Files:      none")

    if summary.removed:
        label = "Stale" if summary.mode == "check" else "Removed"
        lines.append("")
        lines.append(f"  {label}:")
        lines.extend(f"    {relative}" for relative in summary.removed)

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(
        f"  Total: {total_lines:,} lines across {_plural(len(summary.files), 'file')}"
    )
    lines.append(
        f"  Diagnostics: {_plural(summary.error_count, 'error')}, "
        f"{_plural(summary.warning_count, 'warning')}"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        result = run_generate(config)
    except (OSError, SyntaxError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except RuntimeError as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err

    if result.has_errors:
        raise SystemExit(1)
    if config.check and result.out_of_date:
        print(f"Generated state events are out of date; run {GENERATOR_NAME}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
