"""Rust module tree generator for protobuf packages.

Compiles a directory of .proto files into a descriptor set, hands the
descriptors to protoc code-generation plugins (prost, tonic), and lays the
per-package output out under one `mod.rs` whose nested `pub mod` blocks
mirror the dotted package names. Every local top-level message also gets a
`message_name()` accessor returning its protobuf type name.

Usage:
    protomod --in-dir protos --out-dir src/protos --force
"""

import argparse
import os
import re
import subprocess
import sys
import tempfile
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Protocol

from google.protobuf import descriptor_pb2
from google.protobuf.message import DecodeError

DEFAULT_PROTOC: tuple[str, ...] = (sys.executable, "-m", "grpc_tools.protoc")
DEFAULT_PLUGINS: tuple[str, ...] = ("prost", "tonic")
# Plugins that write `<package>.rs` with no plugin-specific suffix.
UNSUFFIXED_PLUGINS = frozenset({"prost"})
# Plugins that accept prost's `extern_path=.<proto>=<rust>` option.
EXTERN_PATH_PLUGINS = frozenset({"prost", "tonic"})
ROOT_MODULE_FILE = "mod.rs"
EMPTY_PACKAGE_FILE_STEM = "_"
INDENT = "    "

PROTOC_HINT = (
    "hint: install grpcio-tools or set PROTOC to the path of a protoc binary"
)
RUSTFMT_HINT = "hint: install rustfmt with `rustup component add rustfmt`"

WELL_KNOWN_EXTERN_PATHS = frozenset(
    {
        "google.protobuf",
        "google.protobuf.BoolValue",
        "google.protobuf.BytesValue",
        "google.protobuf.DoubleValue",
        "google.protobuf.Empty",
        "google.protobuf.FloatValue",
        "google.protobuf.Int32Value",
        "google.protobuf.Int64Value",
        "google.protobuf.StringValue",
        "google.protobuf.UInt32Value",
        "google.protobuf.UInt64Value",
    }
)


# ===--- Extern paths ---=== #


@dataclass(frozen=True)
class ExternPathSet:
    """Dotted prefixes and exact type names supplied by another crate.

    Built once from configuration and never mutated during a build. Entries
    are stored without a leading '.', so `.google.protobuf` and
    `google.protobuf` name the same prefix.

    Attributes:
        paths: Normalized dotted names.
        rust_paths: (dotted name, Rust path) pairs sorted by dotted name.
            These are handed to the code generator so that references to an
            extern type resolve to the crate that provides it.
    """

    paths: frozenset[str] = frozenset()
    rust_paths: tuple[tuple[str, str], ...] = ()

    def __contains__(self, name: object) -> bool:
        return name in self.paths

    def __len__(self) -> int:
        return len(self.paths)


def normalize_extern_path(path: str) -> str:
    return path[1:] if path.startswith(".") else path


def build_extern_paths(
    prefixes: Iterable[str],
    well_known_types: bool = False,
    rust_paths: Iterable[tuple[str, str]] = (),
) -> ExternPathSet:
    """Normalize configured prefixes and optionally add the well-known types.

    Every dotted name in rust_paths is also registered as a prefix.
    """
    mapping = {normalize_extern_path(proto): rust for proto, rust in rust_paths}
    paths = {normalize_extern_path(prefix) for prefix in prefixes} | set(mapping)
    if well_known_types:
        paths |= WELL_KNOWN_EXTERN_PATHS
    return ExternPathSet(frozenset(paths), tuple(sorted(mapping.items())))


def is_local(fully_qualified_name: str, extern_set: ExternPathSet) -> bool:
    """Return False when a type name, or any dotted prefix of it, is extern.

    Prefixes are only taken at '.' boundaries, longest first, so a registered
    `a.b` excludes `a.b.C` but never `a.bc`.

    Args:
        fully_qualified_name: Dotted protobuf type name, with or without a
            leading '.'.
        extern_set: Extern prefixes for this build.

    Returns:
        True if code for the name is generated locally.
    """
    name = normalize_extern_path(fully_qualified_name)
    if name in extern_set:
        return False

    idx = name.rfind(".")
    while idx > 0:
        if name[:idx] in extern_set:
            return False
        idx = name.rfind(".", 0, idx)

    return True


# ===--- Errors ---=== #


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "MISSING_OUT_DIR",
    "NO_PROTOS",
    "INVALID_EXTERN_PATH",
    "INVALID_PLUGIN",
}


class ConfigError(Exception):
    """Rejected command-line input, reported before protoc ever runs."""

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class BuildError(Exception):
    """Base class for failures raised while a build is running."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PackageNameError(BuildError):
    def __init__(self, package: str, reason: str):
        super().__init__(f"Invalid package name {package!r}: {reason}")
        self.package = package
        self.reason = reason


class EmitError(BuildError):
    pass


class CollaboratorError(BuildError):
    """An external tool (protoc, a plugin, rustfmt) or the decoder failed.

    Attributes:
        stage: Which stage failed: "protoc", "decode", "generate" or "rustfmt".
    """

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage


class OutputWriteError(BuildError):
    def __init__(self, path: Path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class OutputExistsError(BuildError):
    def __init__(self, path: Path):
        super().__init__(f"the output directory already exists: {path}")
        self.path = path


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class BuildConfig:
    """Everything a build needs, fixed before the first stage runs.

    Attributes:
        in_dir: Directory scanned recursively for .proto files. Its parent is
            the protoc include root, so imports are written relative to it
            (e.g. `import "protos/foo.proto"`).
        out_dir: Directory receiving per-package files and mod.rs.
        force: Allow building into an existing out_dir.
        extern_paths: User-registered extern prefixes and their Rust paths.
        well_known_types: Also treat google.protobuf types as extern.
        protoc: Command prefix used to run protoc.
        protoc_args: Extra arguments passed to the descriptor compile.
        plugins: protoc plugin names whose outputs are merged per package,
            in this order.
        rustfmt: Pipe every generated file through rustfmt before writing.
    """

    in_dir: Path
    out_dir: Path
    force: bool = False
    extern_paths: ExternPathSet = field(default_factory=ExternPathSet)
    well_known_types: bool = True
    protoc: tuple[str, ...] = DEFAULT_PROTOC
    protoc_args: tuple[str, ...] = ()
    plugins: tuple[str, ...] = DEFAULT_PLUGINS
    rustfmt: bool = False


_DOTTED_NAME_RE = re.compile(r"^\.?[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_RUST_PATH_RE = re.compile(r"^(::)?(r#)?[A-Za-z_][A-Za-z0-9_]*(::(r#)?[A-Za-z_][A-Za-z0-9_]*)*$")
_PLUGIN_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the directory of .proto files: {flag} path/to/protos",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or f"Check the {flag} path relative to {Path.cwd()}.",
    )


def validate_extern_path(value: str) -> tuple[str, str]:
    """Split a `PROTO=RUST` extern mapping and check both halves."""
    proto, sep, rust = value.partition("=")
    if sep and _DOTTED_NAME_RE.match(proto) and _RUST_PATH_RE.match(rust):
        return normalize_extern_path(proto), rust
    raise ConfigError(
        "INVALID_EXTERN_PATH",
        f"Invalid extern path: {value}",
        "Map a protobuf name to the Rust path that provides it, "
        "e.g. --extern-path .google.api=::google_api_proto::google::api",
    )


def validate_plugin_name(name: str) -> str:
    if _PLUGIN_NAME_RE.match(name):
        return name
    raise ConfigError(
        "INVALID_PLUGIN",
        f"Invalid plugin name: {name}",
        "Pass the plugin name without the protoc-gen- prefix, e.g. --plugin prost.",
    )


def resolve_protoc(environ: dict[str, str] | None = None) -> tuple[str, ...]:
    env = os.environ if environ is None else environ
    protoc = env.get("PROTOC")
    if protoc:
        return (protoc,)
    return DEFAULT_PROTOC


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a Rust module tree for protobuf packages"
    )

    parser.add_argument("--in-dir", type=Path, default=None)
    parser.add_argument("--out-dir", type=Path, default=None)
    parser.add_argument("--force", action="store_true", default=False)
    parser.add_argument("--extern-path", action="append", default=None, metavar="PROTO=RUST")
    parser.add_argument("--no-well-known-types", action="store_true", default=False)
    parser.add_argument("--protoc-arg", action="append", default=None)
    parser.add_argument("--plugin", action="append", default=None)
    parser.add_argument("--rustfmt", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(
    args: argparse.Namespace, environ: dict[str, str] | None = None
) -> BuildConfig:
    in_dir = validate_path_exists(
        args.in_dir,
        "--in-dir",
        "Pass the directory holding your .proto files: --in-dir protos",
    )
    if not find_protos(in_dir):
        raise ConfigError(
            "NO_PROTOS",
            f"No .proto files found under {in_dir}",
            "Point --in-dir at the directory containing your schema files.",
        )

    if args.out_dir is None:
        raise ConfigError(
            "MISSING_OUT_DIR",
            "--out-dir is required.",
            "Pass the directory to generate into: --out-dir src/protos",
        )

    extern_paths = build_extern_paths(
        (), rust_paths=[validate_extern_path(value) for value in args.extern_path or ()]
    )
    plugins = (
        tuple(validate_plugin_name(name) for name in args.plugin)
        if args.plugin
        else DEFAULT_PLUGINS
    )

    return BuildConfig(
        in_dir=in_dir,
        out_dir=args.out_dir,
        force=bool(args.force),
        extern_paths=extern_paths,
        well_known_types=not args.no_well_known_types,
        protoc=resolve_protoc(environ),
        protoc_args=tuple(args.protoc_arg or ()),
        plugins=plugins,
        rustfmt=bool(args.rustfmt),
    )


def build_config(argv: list[str] | None = None) -> BuildConfig:
    return validate_config(parse_args(argv))


# ===--- Namespace tree ---=== #


_SEGMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class NamespaceNode:
    """One segment of a dotted package path.

    Nodes live in NamespaceTree.nodes; parent and children refer to other
    nodes by index into that list.

    Attributes:
        segment: Path component owned by this node. Empty only for the root.
        full_path: Segments from the root down to this node.
        parent: Index of the parent node, None for the root.
        children: Child segment -> node index.
        is_terminal: True if full_path is an actual package with output.
    """

    segment: str
    full_path: tuple[str, ...]
    parent: int | None
    children: dict[str, int] = field(default_factory=dict)
    is_terminal: bool = False

    @property
    def package(self) -> str:
        return ".".join(self.full_path)


def split_package_name(package: str) -> tuple[str, ...]:
    """Split a dotted package name into segments.

    The empty string is the default package and has no segments.

    Raises:
        PackageNameError: On an empty segment (leading, trailing or doubled
            '.') or a segment that is not a protobuf identifier.
    """
    if package == "":
        return ()

    segments = tuple(package.split("."))
    for segment in segments:
        if not segment:
            raise PackageNameError(
                package, "empty segment (leading, trailing or doubled '.')"
            )
        if not _SEGMENT_RE.match(segment):
            raise PackageNameError(
                package, f"segment {segment!r} is not a valid identifier"
            )
    return segments


class NamespaceTree:
    """Arena of NamespaceNodes rooted at index 0.

    Shared prefixes map to a single node no matter how many packages pass
    through them. Children are always visited in sorted segment order, so
    walks do not depend on the order packages were inserted.
    """

    ROOT = 0

    def __init__(self) -> None:
        self.nodes: list[NamespaceNode] = [
            NamespaceNode(segment="", full_path=(), parent=None)
        ]

    @property
    def root(self) -> NamespaceNode:
        return self.nodes[self.ROOT]

    def insert(self, package: str) -> int:
        """Add a package, creating missing intermediate nodes.

        Returns:
            Index of the node for package, now marked terminal.
        """
        index = self.ROOT
        for segment in split_package_name(package):
            node = self.nodes[index]
            child = node.children.get(segment)
            if child is None:
                child = len(self.nodes)
                self.nodes.append(
                    NamespaceNode(
                        segment=segment,
                        full_path=node.full_path + (segment,),
                        parent=index,
                    )
                )
                node.children[segment] = child
            index = child

        self.nodes[index].is_terminal = True
        return index

    def find(self, package: str) -> int | None:
        index = self.ROOT
        for segment in split_package_name(package):
            child = self.nodes[index].children.get(segment)
            if child is None:
                return None
            index = child
        return index

    def children_of(self, index: int) -> list[int]:
        node = self.nodes[index]
        return [node.children[segment] for segment in sorted(node.children)]

    def walk(self, index: int = ROOT) -> Iterator[int]:
        yield index
        for child in self.children_of(index):
            yield from self.walk(child)

    def terminal_packages(self) -> list[str]:
        return [
            self.nodes[index].package
            for index in self.walk()
            if self.nodes[index].is_terminal
        ]


def build_namespace_tree(packages: Iterable[str]) -> NamespaceTree:
    """Build the namespace tree for a collection of dotted package names.

    Duplicate names are harmless. A name that is a prefix of another yields
    two terminal nodes, one nested inside the other.

    Args:
        packages: Dotted package names in any order. "" is the root package.

    Returns:
        NamespaceTree with one terminal node per distinct package.

    Raises:
        PackageNameError: Propagated from split_package_name.
    """
    tree = NamespaceTree()
    for package in packages:
        tree.insert(package)
    return tree


# ===--- Rust identifiers ---=== #


RUST_KEYWORDS = frozenset(
    {
        "abstract", "as", "async", "await", "become", "box", "break",
        "const", "continue", "crate", "do", "dyn", "else", "enum",
        "extern", "false", "final", "fn", "for", "gen", "if", "impl", "in",
        "let", "loop", "macro", "match", "mod", "move", "mut", "override",
        "priv", "pub", "ref", "return", "self", "Self", "static", "struct",
        "super", "trait", "true", "try", "type", "typeof", "unsafe",
        "unsized", "use", "virtual", "where", "while", "yield",
    }
)

# Keywords that cannot be written as `r#` raw identifiers.
NON_RAW_KEYWORDS = frozenset({"crate", "extern", "self", "Self", "super"})


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


def to_upper_camel(name: str) -> str:
    ident = "".join(
        word[:1].upper() + word[1:] for word in to_snake_case(name).split("_") if word
    )
    # `Self` names the implementing type inside every impl block.
    if ident == "Self":
        ident += "_"
    return ident


def module_ident(segment: str) -> str:
    """Snake-case a package segment the way prost names its modules.

    Keywords become raw identifiers (`type` -> `r#type`), except those Rust
    refuses as raw identifiers, which get a trailing underscore instead.
    """
    ident = to_snake_case(segment)
    if ident in NON_RAW_KEYWORDS:
        return ident + "_"
    if ident in RUST_KEYWORDS:
        return "r#" + ident
    return ident


def child_module_idents(tree: NamespaceTree, index: int) -> list[tuple[str, int]]:
    """Map the children of a node to module identifiers, in segment order.

    Raises:
        EmitError: If two sibling segments map to the same identifier.
    """
    seen: dict[str, str] = {}
    idents: list[tuple[str, int]] = []
    for child in tree.children_of(index):
        segment = tree.nodes[child].segment
        ident = module_ident(segment)
        if ident in seen:
            parent = tree.nodes[index].package or "<root>"
            raise EmitError(
                f"packages {seen[ident]!r} and {segment!r} under {parent} "
                f"both map to module `{ident}`"
            )
        seen[ident] = segment
        idents.append((ident, child))
    return idents


def rust_string_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


# ===--- Declaration emitter ---=== #


@dataclass(frozen=True)
class MessageRecord:
    """A top-level message and the package that encloses it."""

    package: str
    name: str

    @property
    def full_name(self) -> str:
        if not self.package:
            return self.name
        return f"{self.package}.{self.name}"


def file_name_for_package(package: str) -> str:
    return f"{package or EMPTY_PACKAGE_FILE_STEM}.rs"


def emit_module_declarations(tree: NamespaceTree) -> list[str]:
    """Render the nested `pub mod` tree for every package in tree.

    Each terminal node includes its generated file; each child becomes a
    `pub mod` block one indent level deeper. Output for the same set of
    packages is identical regardless of insertion order.

    Output for packages "a.b" and "a.b.c":
        pub mod a {
            pub mod b {
                include!("a.b.rs");
                pub mod c {
                    include!("a.b.c.rs");
                }
            }
        }

    Args:
        tree: Namespace tree from build_namespace_tree.

    Returns:
        Source lines without trailing newlines.

    Raises:
        EmitError: Propagated from child_module_idents on a collision.
    """
    lines: list[str] = []
    _emit_node_body(tree, NamespaceTree.ROOT, 0, lines)
    return lines


def _emit_node_body(
    tree: NamespaceTree, index: int, depth: int, lines: list[str]
) -> None:
    indent = INDENT * depth
    node = tree.nodes[index]
    if node.is_terminal:
        file_name = file_name_for_package(node.package)
        lines.append(f"{indent}include!({rust_string_literal(file_name)});")

    for ident, child in child_module_idents(tree, index):
        lines.append(f"{indent}pub mod {ident} {{")
        _emit_node_body(tree, child, depth + 1, lines)
        lines.append(f"{indent}}}")


def rust_type_path(message: MessageRecord) -> str:
    parts = [module_ident(segment) for segment in split_package_name(message.package)]
    parts.append(to_upper_camel(message.name))
    return "::".join(parts)


def emit_name_accessor(message: MessageRecord) -> list[str]:
    return [
        f"impl {rust_type_path(message)} {{",
        f"{INDENT}pub fn message_name() -> &'static str {{",
        f"{INDENT * 2}{rust_string_literal(message.full_name)}",
        f"{INDENT}}}",
        "}",
    ]


def emit_name_accessors(
    messages: Iterable[MessageRecord], extern_set: ExternPathSet
) -> list[str]:
    """Render a `message_name()` impl for every local message.

    Messages are deduplicated and sorted by fully-qualified name; each impl
    is preceded by a blank line. Extern messages are skipped.

    Args:
        messages: Top-level messages in any order.
        extern_set: Extern prefixes consulted through is_local.

    Returns:
        Source lines without trailing newlines.
    """
    lines: list[str] = []
    for message in sorted(set(messages), key=lambda m: (m.full_name, m.package)):
        if not is_local(message.full_name, extern_set):
            continue
        lines.append("")
        lines.extend(emit_name_accessor(message))
    return lines


ROOT_MODULE_HEADER = "// This file is @generated by protomod. Do not edit."


def assemble_root_module(
    tree: NamespaceTree,
    messages: Iterable[MessageRecord],
    extern_set: ExternPathSet,
) -> str:
    """Assemble the complete mod.rs source.

    File structure:
        <header comment>
                                    <- blank line
        <module declarations>       <- emit_module_declarations output
        <name accessors>            <- emit_name_accessors output
                                    <- trailing newline
    """
    parts: list[str] = [ROOT_MODULE_HEADER, ""]
    parts.extend(emit_module_declarations(tree))
    parts.extend(emit_name_accessors(messages, extern_set))
    return "\n".join(parts) + "\n"


# ===--- Idempotent writer ---=== #


@dataclass(frozen=True)
class GeneratedUnit:
    """Generated source for one package, produced by a PackageGenerator.

    Attributes:
        package: Dotted package name, "" for the default package.
        file_name: Output file name, from file_name_for_package.
        content: Opaque file body.
    """

    package: str
    file_name: str
    content: bytes


@dataclass(frozen=True)
class FileWriteResult:
    """Outcome of persisting one generated file.

    Attributes:
        file_name: File name relative to the output directory.
        path: Full path of the file.
        written: False when the file already held identical bytes.
        byte_count: Size of the generated content.
    """

    file_name: str
    path: Path
    written: bool
    byte_count: int


def write_if_changed(path: Path, content: bytes) -> bool:
    """Overwrite path with content unless it already holds exactly content.

    Unchanged files are not touched, so their modification time is kept.

    Returns:
        True if the file was written.

    Raises:
        OutputWriteError: On any read error other than a missing file, and on
            any write error. The OSError is chained as the cause.
    """
    path = Path(path)
    try:
        previous = path.read_bytes()
    except FileNotFoundError:
        previous = None
    except OSError as err:
        raise OutputWriteError(path, f"failed to read existing file: {err}") from err

    if previous == content:
        return False

    try:
        path.write_bytes(content)
    except OSError as err:
        raise OutputWriteError(path, f"failed to write file: {err}") from err
    return True


def write_output_file(out_dir: Path, file_name: str, content: bytes) -> FileWriteResult:
    path = Path(out_dir) / file_name
    written = write_if_changed(path, content)
    return FileWriteResult(
        file_name=file_name,
        path=path,
        written=written,
        byte_count=len(content),
    )


def write_generated_units(
    out_dir: Path, units: Iterable[GeneratedUnit]
) -> tuple[FileWriteResult, ...]:
    """Persist per-package units in file name order."""
    return tuple(
        write_output_file(out_dir, unit.file_name, unit.content)
        for unit in sorted(units, key=lambda u: u.file_name)
    )


# ===--- Descriptors ---=== #


@dataclass(frozen=True)
class FileDescriptor:
    """The parts of a FileDescriptorProto the build looks at.

    Attributes:
        name: Proto file name as protoc reports it, e.g. "protos/foo.proto".
        package: Dotted package, "" when the file declares none.
        message_names: Top-level message names in declaration order.
        nested_type_names: Fully-qualified names of every message nested
            inside a top-level message, depth first.
    """

    name: str
    package: str
    message_names: tuple[str, ...]
    nested_type_names: tuple[str, ...] = ()

    def type_names(self) -> Iterator[str]:
        """Every message declared in the file, top-level first, fully qualified."""
        for name in self.message_names:
            yield MessageRecord(self.package, name).full_name
        yield from self.nested_type_names


def _nested_type_names(
    prefix: str, message: descriptor_pb2.DescriptorProto
) -> Iterator[str]:
    for nested in message.nested_type:
        full_name = f"{prefix}.{nested.name}"
        yield full_name
        yield from _nested_type_names(full_name, nested)


def file_descriptor_from_proto(
    proto: descriptor_pb2.FileDescriptorProto,
) -> FileDescriptor:
    nested: list[str] = []
    for message in proto.message_type:
        top = MessageRecord(proto.package, message.name).full_name
        nested.extend(_nested_type_names(top, message))
    return FileDescriptor(
        name=proto.name,
        package=proto.package,
        message_names=tuple(message.name for message in proto.message_type),
        nested_type_names=tuple(nested),
    )


def decode_descriptor_set(blob: bytes) -> list[FileDescriptor]:
    """Decode a serialized FileDescriptorSet.

    Raises:
        CollaboratorError: stage "decode" if blob is not a valid set.
    """
    descriptor_set = descriptor_pb2.FileDescriptorSet()
    try:
        descriptor_set.ParseFromString(blob)
    except DecodeError as err:
        raise CollaboratorError("decode", f"invalid FileDescriptorSet: {err}") from err
    return [file_descriptor_from_proto(proto) for proto in descriptor_set.file]


def collect_message_records(files: Iterable[FileDescriptor]) -> list[MessageRecord]:
    return [
        MessageRecord(package=descriptor.package, name=name)
        for descriptor in files
        for name in descriptor.message_names
    ]


def count_extern_types(files: Iterable[FileDescriptor], extern_set: ExternPathSet) -> int:
    """Count messages at any nesting depth that another crate provides."""
    return sum(
        1
        for descriptor in files
        for name in descriptor.type_names()
        if not is_local(name, extern_set)
    )


# ===--- protoc ---=== #


def find_protos(in_dir: Path) -> list[Path]:
    return sorted(path for path in Path(in_dir).rglob("*.proto") if path.is_file())


def well_known_include_dir() -> Path:
    """Directory of the google/protobuf/*.proto files bundled with grpcio-tools."""
    return Path(str(resources.files("grpc_tools") / "_proto"))


def build_protoc_command(
    config: BuildConfig,
    protos: Sequence[Path],
    descriptor_path: Path,
    include_dir: Path,
) -> list[str]:
    """Build the protoc argv that compiles protos into a descriptor set.

    The parent of config.in_dir is the first include root; include_dir
    supplies the well-known types.
    """
    cmd = [
        *config.protoc,
        "--include_imports",
        "--include_source_info",
        "-o",
        str(descriptor_path),
        "-I",
        str(Path(config.in_dir).parent),
        "-I",
        str(include_dir),
    ]
    cmd.extend(config.protoc_args)
    cmd.extend(str(proto) for proto in protos)
    return cmd


def run_collaborator(
    stage: str,
    command: Sequence[str],
    hint: str,
    input_bytes: bytes | None = None,
) -> bytes:
    """Run an external tool and return its stdout.

    Raises:
        CollaboratorError: If the tool cannot be started or exits non-zero.
    """
    try:
        result = subprocess.run(
            list(command),
            input=input_bytes,
            capture_output=True,
            check=False,
        )
    except OSError as err:
        raise CollaboratorError(
            stage, f"failed to invoke {command[0]} ({hint})"
        ) from err

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise CollaboratorError(
            stage,
            f"{command[0]} exited with status {result.returncode}: {stderr} ({hint})",
        )
    return result.stdout


def compile_descriptor_set(
    config: BuildConfig,
    protos: Sequence[Path],
    descriptor_path: Path,
    include_dir: Path | None = None,
) -> bytes:
    """Run protoc over protos and return the serialized descriptor set.

    Args:
        config: Build configuration (protoc command, in_dir, extra args).
        protos: Schema files, usually from find_protos.
        descriptor_path: Where protoc writes the set. Caller owns cleanup.
        include_dir: Well-known types include root. Defaults to the one
            bundled with grpcio-tools.

    Raises:
        CollaboratorError: stage "protoc" if protoc fails or writes nothing.
    """
    if include_dir is None:
        include_dir = well_known_include_dir()
    command = build_protoc_command(config, protos, descriptor_path, include_dir)
    run_collaborator("protoc", command, PROTOC_HINT)

    try:
        return Path(descriptor_path).read_bytes()
    except OSError as err:
        raise CollaboratorError(
            "protoc", f"descriptor set was not written to {descriptor_path}"
        ) from err


# ===--- Per-package generation ---=== #


class PackageGenerator(Protocol):
    def generate(
        self, descriptor_path: Path, files: Sequence[FileDescriptor]
    ) -> list[GeneratedUnit]: ...


def plugin_file_suffix(plugin: str) -> str:
    """Extra suffix a plugin puts before `.rs`: `.tonic` for tonic, none for prost."""
    if plugin in UNSUFFIXED_PLUGINS:
        return ""
    return "." + plugin.removeprefix("prost-")


def package_for_output_file(file_name: str, plugin: str) -> str:
    """Recover the package from a plugin output name like `a.b.tonic.rs`."""
    stem = file_name.removesuffix(".rs")
    suffix = plugin_file_suffix(plugin)
    if suffix:
        stem = stem.removesuffix(suffix)
    return "" if stem == EMPTY_PACKAGE_FILE_STEM else stem


def collect_plugin_outputs(
    scratch_dir: Path, plugins: Sequence[str]
) -> list[GeneratedUnit]:
    """Merge every plugin's `.rs` outputs into one unit per package.

    Outputs for a package are joined in plugin order, separated by a blank
    line. Units are returned sorted by package.
    """
    bodies: dict[str, list[bytes]] = {}
    for plugin in plugins:
        for path in sorted((Path(scratch_dir) / plugin).glob("*.rs")):
            package = package_for_output_file(path.name, plugin)
            try:
                body = path.read_bytes()
            except OSError as err:
                raise CollaboratorError(
                    "generate", f"cannot read {plugin} output {path.name}"
                ) from err
            bodies.setdefault(package, []).append(body.rstrip(b"\n") + b"\n")

    return [
        GeneratedUnit(
            package=package,
            file_name=file_name_for_package(package),
            content=b"\n".join(parts),
        )
        for package, parts in sorted(bodies.items())
    ]


@dataclass(frozen=True)
class ProtocPluginGenerator:
    """Runs protoc-gen-<plugin> for each plugin over an existing descriptor set.

    Attributes:
        protoc: protoc command prefix.
        plugins: Plugin names, e.g. ("prost", "tonic"). Each must be on PATH
            as protoc-gen-<name>.
        extern_paths: Extern mappings forwarded to the plugins, so generated
            code refers to extern types by their Rust path.
        well_known_types: When False the plugins compile google.protobuf
            themselves instead of mapping it to prost-types.
    """

    protoc: tuple[str, ...] = DEFAULT_PROTOC
    plugins: tuple[str, ...] = DEFAULT_PLUGINS
    extern_paths: ExternPathSet = field(default_factory=ExternPathSet)
    well_known_types: bool = True

    def plugin_options(self, plugin: str) -> list[str]:
        if plugin not in EXTERN_PATH_PLUGINS:
            return []
        options = [
            f"--{plugin}_opt=extern_path=.{proto}={rust}"
            for proto, rust in self.extern_paths.rust_paths
        ]
        if not self.well_known_types:
            options.append(f"--{plugin}_opt=compile_well_known_types")
        return options

    def build_command(
        self,
        descriptor_path: Path,
        files: Sequence[FileDescriptor],
        scratch_dir: Path,
    ) -> list[str]:
        cmd = [*self.protoc, f"--descriptor_set_in={descriptor_path}"]
        for plugin in self.plugins:
            cmd.append(f"--{plugin}_out={Path(scratch_dir) / plugin}")
            cmd.extend(self.plugin_options(plugin))
        cmd.extend(descriptor.name for descriptor in files)
        return cmd

    def generate(
        self, descriptor_path: Path, files: Sequence[FileDescriptor]
    ) -> list[GeneratedUnit]:
        with tempfile.TemporaryDirectory(prefix="protomod-plugins") as tmp:
            scratch_dir = Path(tmp)
            for plugin in self.plugins:
                (scratch_dir / plugin).mkdir()
            command = self.build_command(descriptor_path, files, scratch_dir)
            run_collaborator(
                "generate",
                command,
                f"hint: protoc-gen-{'/protoc-gen-'.join(self.plugins)} must be on PATH",
            )
            return collect_plugin_outputs(scratch_dir, self.plugins)


def format_rust_source(content: bytes) -> bytes:
    """Format Rust source with rustfmt, reading stdin and writing stdout."""
    return run_collaborator(
        "rustfmt",
        ["rustfmt", "--edition", "2021", "--emit", "stdout"],
        RUSTFMT_HINT,
        input_bytes=content,
    )


# ===--- Build pipeline ---=== #


@dataclass(frozen=True)
class BuildResult:
    """Everything a finished build reports.

    Attributes:
        out_dir: Output directory.
        files: Per-package results in file name order, then mod.rs last.
        package_count: Distinct packages in the namespace tree.
        message_count: Top-level messages seen in the descriptor set.
        accessor_count: message_name() accessors emitted (local messages).
        extern_type_count: Messages, nested ones included, whose code comes
            from an extern crate instead of this build.
    """

    out_dir: Path
    files: tuple[FileWriteResult, ...]
    package_count: int
    message_count: int
    accessor_count: int
    extern_type_count: int = 0

    @property
    def written_count(self) -> int:
        return sum(1 for f in self.files if f.written)


def check_output_dir(config: BuildConfig) -> None:
    if not config.force and Path(config.out_dir).exists():
        raise OutputExistsError(Path(config.out_dir))


def resolve_extern_paths(config: BuildConfig) -> ExternPathSet:
    return build_extern_paths(
        config.extern_paths.paths,
        config.well_known_types,
        config.extern_paths.rust_paths,
    )


def check_units_cover_packages(
    tree: NamespaceTree, units: Sequence[GeneratedUnit]
) -> None:
    generated = {unit.package for unit in units}
    missing = [p for p in tree.terminal_packages() if p not in generated]
    if missing:
        raise CollaboratorError(
            "generate", f"no output for package(s): {', '.join(missing)}"
        )


def run_build(
    config: BuildConfig,
    generator: PackageGenerator | None = None,
    include_dir: Path | None = None,
) -> BuildResult:
    """Execute the complete build for a BuildConfig.

    Stages: output precondition -> protoc -> decode -> per-package generate
    -> namespace tree -> declarations -> write -> mod.rs.

    Args:
        config: Validated BuildConfig.
        generator: Per-package generator. Defaults to ProtocPluginGenerator
            over config.protoc and config.plugins.
        include_dir: Well-known types include root passed to protoc.

    Returns:
        BuildResult describing every file considered for writing.

    Raises:
        OutputExistsError: out_dir exists and config.force is False. Raised
            before anything else happens.
        PackageNameError: A descriptor carries a malformed package name.
        CollaboratorError: protoc, decoding, generation or rustfmt failed.
        EmitError: Two packages collide on a module identifier.
        OutputWriteError: Reading or writing an output file failed.
    """
    check_output_dir(config)

    out_dir = Path(config.out_dir)
    protos = find_protos(config.in_dir)
    print(f"Compiling: {len(protos)} protos from {config.in_dir}")

    extern_set = resolve_extern_paths(config)
    if generator is None:
        generator = ProtocPluginGenerator(
            protoc=config.protoc,
            plugins=config.plugins,
            extern_paths=extern_set,
            well_known_types=config.well_known_types,
        )

    with tempfile.TemporaryDirectory(prefix="protomod") as tmp:
        descriptor_path = Path(tmp) / "descriptor-set.bin"
        blob = compile_descriptor_set(config, protos, descriptor_path, include_dir)
        files = decode_descriptor_set(blob)
        messages = collect_message_records(files)
        print(f"  Descriptors: {len(files)} files, {len(messages)} messages")

        tree = build_namespace_tree(descriptor.package for descriptor in files)
        root_source = assemble_root_module(tree, messages, extern_set).encode("utf-8")

        units = generator.generate(descriptor_path, files)
    check_units_cover_packages(tree, units)
    print(f"  Generated: {len(units)} packages")

    if config.rustfmt:
        units = [
            GeneratedUnit(unit.package, unit.file_name, format_rust_source(unit.content))
            for unit in units
        ]
        root_source = format_rust_source(root_source)

    out_dir.mkdir(parents=True, exist_ok=True)
    results = write_generated_units(out_dir, units)
    results += (write_output_file(out_dir, ROOT_MODULE_FILE, root_source),)

    result = BuildResult(
        out_dir=out_dir,
        files=results,
        package_count=len(tree.terminal_packages()),
        message_count=len(messages),
        accessor_count=sum(
            1 for message in set(messages) if is_local(message.full_name, extern_set)
        ),
        extern_type_count=count_extern_types(files, extern_set),
    )
    print(f"  Written: {result.written_count} of {len(result.files)} files to {out_dir}")
    return result


# ===--- Summary report ---=== #


def format_build_summary(result: BuildResult) -> str:
    """Render a BuildResult as the console report.

    Returns a string with exactly one trailing newline.
    """
    unchanged = len(result.files) - result.written_count
    lines: list[str] = [
        "Protobuf modules generated:",
        "",
        f"  Output:     {result.out_dir}",
        f"  Packages:   {result.package_count:>6}",
        f"  Messages:   {result.message_count:>6}",
        f"  Accessors:  {result.accessor_count:>6}",
        f"  Extern:     {result.extern_type_count:>6}",
        "",
        "  Files:",
    ]
    for file_result in result.files:
        status = "written" if file_result.written else "unchanged"
        lines.append(
            f"    {file_result.file_name:<40} {status:<9} {file_result.byte_count:>8,} bytes"
        )
    lines.append("")
    lines.append(f"  Total: {result.written_count} written, {unchanged} unchanged")
    lines.append("")
    return "\n".join(lines)


def print_build_summary(result: BuildResult) -> None:
    print(format_build_summary(result), end="")


# ===--- Main ---=== #


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        result = run_build(config)
    except BuildError as err:
        print(f"Error: {err}")
        if err.__cause__ is not None:
            print(f"Caused by: {err.__cause__}")
        raise SystemExit(1) from err

    print_build_summary(result)


if __name__ == "__main__":
    main()
