# shran/specloader.py
"""
specloader.py - build specification loader for shran

Features:
- Parse a declarative build file (YAML) into a typed, immutable BuildSpec
- Fixed stage enum: configure, compile, link, test, package, deploy (in that order)
- Strict validation: required fields, unknown top-level keys, stage names,
  duplicate/empty library override names, version constraint syntax
- Node configure options mapped to autotools flags
- Default build file generation (`shran generate --btc`)

The loader has no side effects beyond parsing: relative library sources are
anchored to the spec file directory but never touched.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from shran.errors import (
    ConfigError,
    DuplicateOverrideError,
    InvalidValueError,
    MissingFieldError,
)
from shran.logging import get_logger
from shran.versions import is_valid_constraint

logger = get_logger("specloader")

# ----------------------------
# Enums
# ----------------------------
class Stage(str, Enum):
    CONFIGURE = "configure"
    COMPILE = "compile"
    LINK = "link"
    TEST = "test"
    PACKAGE = "package"
    DEPLOY = "deploy"

    @classmethod
    def ordered(cls) -> Tuple["Stage", ...]:
        return STAGE_ORDER

    @classmethod
    def parse(cls, value: Any, field_name: str) -> "Stage":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise InvalidValueError(field_name, f"unknown stage '{value}' (expected one of: {allowed})")


STAGE_ORDER: Tuple[Stage, ...] = (
    Stage.CONFIGURE,
    Stage.COMPILE,
    Stage.LINK,
    Stage.TEST,
    Stage.PACKAGE,
    Stage.DEPLOY,
)


class ExecutionMode(str, Enum):
    LOCAL = "local"
    CONTAINER = "container"


Command = Union[str, Tuple[str, ...]]

# ----------------------------
# Node configure options
# ----------------------------
# name -> (flag when enabled, flag when disabled)
CONFIGURE_OPTIONS: Dict[str, Tuple[str, str]] = {
    "wallet": ("--enable-wallet", "--disable-wallet"),
    "sqlite": ("--with-sqlite", "--without-sqlite"),
    "bdb": ("--with-bdb", "--without-bdb"),
    "ebpf": ("--enable-ebpf", "--disable-ebpf"),
    "miniupnpc": ("--with-miniupnpc", "--without-miniupnpc"),
    "upnp_default": ("--enable-upnp-default", "--disable-upnp-default"),
    "natpmp": ("--with-natpmp", "--without-natpmp"),
    "natpmp_default": ("--enable-natpmp-default", "--disable-natpmp-default"),
    "tests": ("--enable-tests", "--disable-tests"),
    "gui": ("--with-gui", "--without-gui"),
    "zmq": ("--enable-zmq", "--disable-zmq"),
    "bench": ("--enable-bench", "--disable-bench"),
}

# ----------------------------
# Typed build plan
# ----------------------------
@dataclass(frozen=True)
class StageOverride:
    enabled: bool = True
    timeout_seconds: Optional[int] = None
    retries: Optional[int] = None
    command: Optional[Command] = None


@dataclass(frozen=True)
class LibraryOverride:
    name: str
    source: str
    version: Optional[str] = None
    requires: Tuple[str, ...] = ()
    checksum: Optional[str] = None
    commands: Mapping[Stage, Command] = field(default_factory=dict)

    @property
    def is_remote(self) -> bool:
        return self.source.startswith(("http://", "https://", "file://"))


@dataclass(frozen=True)
class BuildOptions:
    values: Mapping[str, bool] = field(default_factory=dict)

    def configure_flags(self) -> List[str]:
        flags = []
        for name in CONFIGURE_OPTIONS:
            if name in self.values:
                on, off = CONFIGURE_OPTIONS[name]
                flags.append(on if self.values[name] else off)
        return flags


@dataclass(frozen=True)
class PolicySpec:
    halt_on: Optional[Tuple[Stage, ...]] = None
    test_blocking: Optional[bool] = None
    retries: Optional[int] = None


@dataclass(frozen=True)
class BuildSpec:
    target: str
    source_ref: str
    execution_mode: ExecutionMode
    libraries: Tuple[LibraryOverride, ...] = ()
    stages: Mapping[Stage, StageOverride] = field(default_factory=dict)
    options: BuildOptions = field(default_factory=BuildOptions)
    policy: PolicySpec = field(default_factory=PolicySpec)
    container_image: Optional[str] = None
    base_dir: Optional[str] = None

    def stage(self, stage: Stage) -> StageOverride:
        """Unspecified stages default to enabled with no timeout."""
        return self.stages.get(stage, StageOverride())

    def library(self, name: str) -> Optional[LibraryOverride]:
        for lib in self.libraries:
            if lib.name == name:
                return lib
        return None


TOP_LEVEL_KEYS = ("target", "source_ref", "execution_mode", "libraries", "stages", "options", "policy", "container")
_LIBRARY_KEYS = ("name", "source", "version", "requires", "checksum", "commands")
_STAGE_KEYS = ("enabled", "timeout_seconds", "retries", "command")
_POLICY_KEYS = ("halt_on", "test_blocking", "retries")

# ----------------------------
# Field helpers
# ----------------------------
def _require_str(raw: Mapping[str, Any], key: str, path: str) -> str:
    if key not in raw or raw[key] is None:
        raise MissingFieldError(path)
    val = raw[key]
    # unquoted YAML numbers are lossy (0.10 -> 0.1), so they must be quoted
    if not isinstance(val, str):
        raise InvalidValueError(path, f"expected a string, got {type(val).__name__}")
    val = val.strip()
    if not val:
        raise InvalidValueError(path, "must not be empty")
    return val


def _optional_str(raw: Mapping[str, Any], key: str, path: str) -> Optional[str]:
    if raw.get(key) is None:
        return None
    return _require_str(raw, key, path)


def _check_keys(raw: Mapping[str, Any], allowed: Tuple[str, ...], path: str) -> None:
    for key in raw:
        if key not in allowed:
            where = f"{path}.{key}" if path else str(key)
            raise InvalidValueError(where, "unknown key")


def _positive_int(val: Any, path: str, allow_zero: bool = False) -> int:
    if isinstance(val, bool) or not isinstance(val, int):
        raise InvalidValueError(path, f"expected an integer, got {val!r}")
    if val < 0 or (val == 0 and not allow_zero):
        raise InvalidValueError(path, f"must be {'>= 0' if allow_zero else '> 0'}")
    return val


def _parse_command(val: Any, path: str) -> Command:
    if isinstance(val, str) and val.strip():
        return val
    if isinstance(val, list) and val and all(isinstance(x, (str, int, float)) and not isinstance(x, bool) for x in val):
        return tuple(str(x) for x in val)
    raise InvalidValueError(path, "command must be a non-empty string or list of strings")


def _mapping(val: Any, path: str) -> Mapping[str, Any]:
    if val is None:
        return {}
    if not isinstance(val, dict):
        raise InvalidValueError(path, f"expected a mapping, got {type(val).__name__}")
    return val

# ----------------------------
# Section parsers
# ----------------------------
def _parse_library(raw: Any, idx: int) -> LibraryOverride:
    path = f"libraries[{idx}]"
    if not isinstance(raw, dict):
        raise InvalidValueError(path, "library override must be a mapping")
    _check_keys(raw, _LIBRARY_KEYS, path)
    if "name" not in raw or raw["name"] is None:
        raise MissingFieldError(f"{path}.name")
    if isinstance(raw["name"], str) and not raw["name"].strip():
        raise InvalidValueError(f"{path}.name", "library override name must not be empty")
    name = _require_str(raw, "name", f"{path}.name")
    source = _require_str(raw, "source", f"{path}.source")

    version = _optional_str(raw, "version", f"{path}.version")
    if version is not None and not is_valid_constraint(version):
        raise InvalidValueError(f"{path}.version", f"invalid version constraint '{version}'")

    requires_raw = raw.get("requires") or []
    if isinstance(requires_raw, str):
        requires_raw = [requires_raw]
    if not isinstance(requires_raw, list):
        raise InvalidValueError(f"{path}.requires", "expected a list of names")
    requires = []
    for j, dep in enumerate(requires_raw):
        if not isinstance(dep, str) or not dep.strip():
            raise InvalidValueError(f"{path}.requires[{j}]", "dependency name must be a non-empty string")
        if dep.strip() not in requires:
            requires.append(dep.strip())

    checksum = _optional_str(raw, "checksum", f"{path}.checksum")

    commands: Dict[Stage, Command] = {}
    for stage_name, cmd in _mapping(raw.get("commands"), f"{path}.commands").items():
        stage = Stage.parse(stage_name, f"{path}.commands.{stage_name}")
        commands[stage] = _parse_command(cmd, f"{path}.commands.{stage_name}")

    return LibraryOverride(
        name=name,
        source=source,
        version=version,
        requires=tuple(requires),
        checksum=checksum,
        commands=commands,
    )


def _parse_stages(raw: Any) -> Dict[Stage, StageOverride]:
    out: Dict[Stage, StageOverride] = {}
    for stage_name, body in _mapping(raw, "stages").items():
        stage = Stage.parse(stage_name, f"stages.{stage_name}")
        path = f"stages.{stage.value}"
        body = _mapping(body, path)
        _check_keys(body, _STAGE_KEYS, path)
        enabled = body.get("enabled", True)
        if not isinstance(enabled, bool):
            raise InvalidValueError(f"{path}.enabled", "expected true or false")
        timeout = body.get("timeout_seconds")
        if timeout is not None:
            timeout = _positive_int(timeout, f"{path}.timeout_seconds")
        retries = body.get("retries")
        if retries is not None:
            retries = _positive_int(retries, f"{path}.retries", allow_zero=True)
        command = body.get("command")
        if command is not None:
            command = _parse_command(command, f"{path}.command")
        out[stage] = StageOverride(enabled=enabled, timeout_seconds=timeout, retries=retries, command=command)
    return out


def _parse_options(raw: Any) -> BuildOptions:
    values: Dict[str, bool] = {}
    for name, val in _mapping(raw, "options").items():
        if name not in CONFIGURE_OPTIONS:
            raise InvalidValueError(f"options.{name}", "unknown build option")
        if not isinstance(val, bool):
            raise InvalidValueError(f"options.{name}", "expected true or false")
        values[name] = val
    return BuildOptions(values=values)


def _parse_policy(raw: Any) -> PolicySpec:
    body = _mapping(raw, "policy")
    _check_keys(body, _POLICY_KEYS, "policy")
    halt_on = None
    if body.get("halt_on") is not None:
        if not isinstance(body["halt_on"], list):
            raise InvalidValueError("policy.halt_on", "expected a list of stage names")
        halt_on = tuple(Stage.parse(s, f"policy.halt_on[{i}]") for i, s in enumerate(body["halt_on"]))
    test_blocking = body.get("test_blocking")
    if test_blocking is not None and not isinstance(test_blocking, bool):
        raise InvalidValueError("policy.test_blocking", "expected true or false")
    retries = body.get("retries")
    if retries is not None:
        retries = _positive_int(retries, "policy.retries", allow_zero=True)
    return PolicySpec(halt_on=halt_on, test_blocking=test_blocking, retries=retries)

# ----------------------------
# Public API
# ----------------------------
def load(raw_config: Any, base_dir: Optional[str] = None) -> BuildSpec:
    """
    Validate a raw (already parsed) build document and return a BuildSpec.
    Raises ConfigError naming the offending field.
    """
    if not isinstance(raw_config, dict):
        raise InvalidValueError("<root>", "build specification must be a mapping")
    _check_keys(raw_config, TOP_LEVEL_KEYS, "")

    target = _require_str(raw_config, "target", "target")
    source_ref = _require_str(raw_config, "source_ref", "source_ref")

    mode_raw = _require_str(raw_config, "execution_mode", "execution_mode")
    try:
        mode = ExecutionMode(mode_raw)
    except ValueError:
        raise InvalidValueError("execution_mode", f"expected 'local' or 'container', got '{mode_raw}'")

    if "libraries" not in raw_config:
        raise MissingFieldError("libraries")
    libs_raw = raw_config.get("libraries") or []
    if not isinstance(libs_raw, list):
        raise InvalidValueError("libraries", "expected a list of library overrides")
    libraries: List[LibraryOverride] = []
    seen = set()
    for idx, item in enumerate(libs_raw):
        lib = _parse_library(item, idx)
        if lib.name in seen:
            raise DuplicateOverrideError(f"libraries[{idx}].name={lib.name}")
        if lib.name == target:
            raise DuplicateOverrideError(f"libraries[{idx}].name={lib.name}", "library override shares the target name")
        seen.add(lib.name)
        libraries.append(lib)

    container = _mapping(raw_config.get("container"), "container")
    _check_keys(container, ("image",), "container")
    image = _optional_str(container, "image", "container.image")

    spec = BuildSpec(
        target=target,
        source_ref=source_ref,
        execution_mode=mode,
        libraries=tuple(libraries),
        stages=_parse_stages(raw_config.get("stages")),
        options=_parse_options(raw_config.get("options")),
        policy=_parse_policy(raw_config.get("policy")),
        container_image=image,
        base_dir=base_dir,
    )
    logger.debug("loaded build spec target=%s ref=%s mode=%s libraries=%d",
                 spec.target, spec.source_ref, spec.execution_mode.value, len(spec.libraries))
    return spec


def load_file(path: str) -> BuildSpec:
    """Read a YAML build file and load it. Relative library sources resolve against its directory."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(str(path), f"cannot read build file: {e}")
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidValueError(str(path), f"invalid YAML: {e}")
    if raw is None:
        raise InvalidValueError(str(path), "build file is empty")
    return load(raw, base_dir=str(p.resolve().parent))


def resolve_source_path(spec: BuildSpec, source: str) -> str:
    """Anchor a relative local library source to the spec directory."""
    if source.startswith("file://"):
        source = source[len("file://"):]
    source = os.path.expanduser(source)
    if os.path.isabs(source) or not spec.base_dir:
        return source
    return os.path.normpath(os.path.join(spec.base_dir, source))

# ----------------------------
# Default build file
# ----------------------------
DEFAULT_BUILD_FILE = """\
# shran build specification
#
# target:          node binary identifier
# source_ref:      release tag or commit to build
# execution_mode:  local | container
target: bitcoind
source_ref: "{source_ref}"
execution_mode: local

# Shared libraries injected into the node build, in dependency order
# libraries:
#   - name: libssl-custom
#     source: ./libs/libssl.so.3.0.2
#     version: ">=3.0,<4"
#     requires: []
libraries: []

# Per-stage overrides: enabled, timeout_seconds, retries, command
stages:
  test:
    enabled: true

# Node configure options (unset options keep the native default)
options:
  wallet: false
  sqlite: true
  bdb: false

# Failure policy
# policy:
#   halt_on: [compile, link, deploy]
#   test_blocking: false
#   retries: 0
"""


def generate_default(source_ref: str = "v25.0") -> str:
    return DEFAULT_BUILD_FILE.format(source_ref=source_ref)


def write_default(path: str, source_ref: str = "v25.0", force: bool = False) -> Path:
    p = Path(path)
    if p.exists() and not force:
        raise FileExistsError(f"{p} already exists")
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(generate_default(source_ref), encoding="utf-8")
    logger.info("wrote default build file to %s", p)
    return p
