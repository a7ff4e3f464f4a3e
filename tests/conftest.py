import argparse
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from google.protobuf import descriptor_pb2

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import protomod  # noqa: E402


@pytest.fixture
def proto_dir(tmp_path: Path) -> Path:
    in_dir = tmp_path / "protos"
    (in_dir / "grpc_build").mkdir(parents=True)
    (in_dir / "grpc_build" / "hello.proto").write_text(
        'syntax = "proto3";\npackage grpc_build.response.helloworld;\n'
        "message HelloReply { string message = 1; }\n",
        encoding="utf-8",
    )
    return in_dir


@pytest.fixture
def make_args(proto_dir: Path, tmp_path: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "in_dir": proto_dir,
            "out_dir": tmp_path / "out",
            "force": False,
            "extern_path": None,
            "no_well_known_types": False,
            "protoc_arg": None,
            "plugin": None,
            "rustfmt": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_descriptor_set() -> Callable[[Sequence[tuple[str, str, Sequence[str]]]], bytes]:
    def _make_descriptor_set(files: Sequence[tuple[str, str, Sequence[str]]]) -> bytes:
        descriptor_set = descriptor_pb2.FileDescriptorSet()
        for name, package, messages in files:
            proto = descriptor_set.file.add()
            proto.name = name
            if package:
                proto.package = package
            for message in messages:
                proto.message_type.add().name = message
        return descriptor_set.SerializeToString()

    return _make_descriptor_set


@dataclass
class FakeGenerator:
    units: list[protomod.GeneratedUnit]
    calls: list[tuple[Path, tuple[str, ...]]] = field(default_factory=list)

    def generate(
        self, descriptor_path: Path, files: Sequence[protomod.FileDescriptor]
    ) -> list[protomod.GeneratedUnit]:
        assert descriptor_path.exists()
        self.calls.append((descriptor_path, tuple(f.name for f in files)))
        return list(self.units)


@pytest.fixture
def make_unit() -> Callable[[str, bytes], protomod.GeneratedUnit]:
    def _make_unit(package: str, content: bytes = b"// generated\n") -> protomod.GeneratedUnit:
        return protomod.GeneratedUnit(
            package=package,
            file_name=protomod.file_name_for_package(package),
            content=content,
        )

    return _make_unit


@pytest.fixture
def make_generator() -> Callable[[list[protomod.GeneratedUnit]], FakeGenerator]:
    return FakeGenerator


@pytest.fixture
def fake_protoc(monkeypatch: pytest.MonkeyPatch) -> Callable[..., list]:
    """Replace every external tool call.

    protoc writes the given descriptor set; plugin runs write plugin_outputs,
    keyed by plugin name then file name.
    """

    def _install(
        blob: bytes, plugin_outputs: dict[str, dict[str, bytes]] | None = None
    ) -> list[tuple[str, list[str]]]:
        calls: list[tuple[str, list[str]]] = []

        def _fake_run_collaborator(
            stage: str,
            command: Sequence[str],
            hint: str,
            input_bytes: bytes | None = None,
        ) -> bytes:
            calls.append((stage, list(command)))
            if stage == "protoc":
                out = Path(command[list(command).index("-o") + 1])
                out.write_bytes(blob)
            if stage == "generate":
                for arg in command:
                    plugin, sep, out_dir = arg.removeprefix("--").partition("_out=")
                    if not sep:
                        continue
                    for name, body in (plugin_outputs or {}).get(plugin, {}).items():
                        Path(out_dir, name).write_bytes(body)
            if stage == "rustfmt":
                return b"// formatted\n" + (input_bytes or b"")
            return b""

        monkeypatch.setattr(protomod, "run_collaborator", _fake_run_collaborator)
        return calls

    return _install
