"""Tests for build specification loading."""

import pytest

from shran.errors import ConfigError, DuplicateOverrideError, InvalidValueError, MissingFieldError
from shran.specloader import (
    STAGE_ORDER,
    ExecutionMode,
    Stage,
    StageOverride,
    generate_default,
    load,
    load_file,
    resolve_source_path,
    write_default,
)


def _raw(**extra):
    raw = {"target": "bitcoind", "source_ref": "v25.0", "execution_mode": "local", "libraries": []}
    raw.update(extra)
    return raw


class TestLoadValid:
    """Test well-formed build documents."""

    def test_minimal(self):
        spec = load(_raw())
        assert spec.target == "bitcoind"
        assert spec.source_ref == "v25.0"
        assert spec.execution_mode == ExecutionMode.LOCAL
        assert spec.libraries == ()

    def test_unspecified_stage_defaults(self):
        spec = load(_raw())
        for stage in STAGE_ORDER:
            assert spec.stage(stage) == StageOverride(enabled=True, timeout_seconds=None)

    def test_stage_order_is_fixed(self):
        assert [s.value for s in STAGE_ORDER] == ["configure", "compile", "link", "test", "package", "deploy"]

    def test_library_override_fields(self):
        spec = load(_raw(libraries=[{
            "name": "libssl-custom",
            "source": "./libs/libssl.so.3.0.2",
            "version": ">=3.0,<4",
            "requires": ["zlib"],
            "checksum": "sha256:abc",
            "commands": {"compile": "make -C ssl"},
        }]))
        lib = spec.library("libssl-custom")
        assert lib.source == "./libs/libssl.so.3.0.2"
        assert lib.version == ">=3.0,<4"
        assert lib.requires == ("zlib",)
        assert lib.commands[Stage.COMPILE] == "make -C ssl"
        assert not lib.is_remote

    def test_stage_overrides(self):
        spec = load(_raw(stages={
            "test": {"enabled": False},
            "compile": {"timeout_seconds": 600, "retries": 2, "command": ["make", "-j4"]},
        }))
        assert spec.stage(Stage.TEST).enabled is False
        assert spec.stage(Stage.COMPILE).timeout_seconds == 600
        assert spec.stage(Stage.COMPILE).retries == 2
        assert spec.stage(Stage.COMPILE).command == ("make", "-j4")

    def test_options_to_configure_flags(self):
        spec = load(_raw(options={"wallet": False, "sqlite": True, "bdb": False}))
        assert spec.options.configure_flags() == ["--disable-wallet", "--with-sqlite", "--without-bdb"]

    def test_container_mode_with_image(self):
        spec = load(_raw(execution_mode="container", container={"image": "ubuntu:22.04"}))
        assert spec.execution_mode == ExecutionMode.CONTAINER
        assert spec.container_image == "ubuntu:22.04"

    def test_policy(self):
        spec = load(_raw(policy={"halt_on": ["compile"], "test_blocking": True, "retries": 1}))
        assert spec.policy.halt_on == (Stage.COMPILE,)
        assert spec.policy.test_blocking is True
        assert spec.policy.retries == 1

    def test_null_libraries_is_empty(self):
        assert load(_raw(libraries=None)).libraries == ()


class TestLoadErrors:
    """Test validation errors name the offending field."""

    @pytest.mark.parametrize("field", ["target", "source_ref", "execution_mode", "libraries"])
    def test_missing_required_field(self, field):
        raw = _raw()
        del raw[field]
        with pytest.raises(MissingFieldError) as exc:
            load(raw)
        assert exc.value.field == field

    def test_missing_target_is_config_error(self):
        raw = _raw()
        del raw["target"]
        with pytest.raises(ConfigError, match="target"):
            load(raw)

    @pytest.mark.parametrize("field,value", [("source_ref", 0.10), ("target", 42), ("source_ref", True)])
    def test_non_string_identity_rejected(self, field, value):
        with pytest.raises(InvalidValueError) as exc:
            load(_raw(**{field: value}))
        assert exc.value.field == field

    def test_unquoted_yaml_number_rejected(self, tmp_path):
        path = tmp_path / "build.yaml"
        path.write_text("target: bitcoind\nsource_ref: 0.10\nexecution_mode: local\nlibraries: []\n")
        with pytest.raises(InvalidValueError) as exc:
            load_file(str(path))
        assert exc.value.field == "source_ref"

    def test_unknown_stage(self):
        with pytest.raises(InvalidValueError) as exc:
            load(_raw(stages={"lint": {"enabled": True}}))
        assert "lint" in exc.value.field

    def test_unknown_execution_mode(self):
        with pytest.raises(InvalidValueError) as exc:
            load(_raw(execution_mode="vm"))
        assert exc.value.field == "execution_mode"

    def test_unknown_top_level_key(self):
        with pytest.raises(InvalidValueError) as exc:
            load(_raw(extra=1))
        assert exc.value.field == "extra"

    def test_empty_library_name(self):
        with pytest.raises(InvalidValueError) as exc:
            load(_raw(libraries=[{"name": "  ", "source": "x"}]))
        assert exc.value.field == "libraries[0].name"

    def test_duplicate_library(self):
        libs = [{"name": "libssl", "source": "a"}, {"name": "libssl", "source": "b"}]
        with pytest.raises(DuplicateOverrideError) as exc:
            load(_raw(libraries=libs))
        assert "libssl" in exc.value.field
        assert exc.value.kind == "DuplicateOverride"

    def test_library_named_like_target(self):
        with pytest.raises(DuplicateOverrideError):
            load(_raw(libraries=[{"name": "bitcoind", "source": "a"}]))

    def test_invalid_version_constraint(self):
        with pytest.raises(InvalidValueError) as exc:
            load(_raw(libraries=[{"name": "libssl", "source": "a", "version": ">=,"}]))
        assert exc.value.field == "libraries[0].version"

    def test_zero_timeout_rejected(self):
        with pytest.raises(InvalidValueError):
            load(_raw(stages={"compile": {"timeout_seconds": 0}}))

    def test_unknown_option(self):
        with pytest.raises(InvalidValueError):
            load(_raw(options={"turbo": True}))

    def test_not_a_mapping(self):
        with pytest.raises(InvalidValueError):
            load(["target"])


class TestFiles:
    """Test file loading and default generation."""

    def test_load_file_anchors_base_dir(self, tmp_path):
        path = tmp_path / "build.yaml"
        path.write_text("target: bitcoind\nsource_ref: v25.0\nexecution_mode: local\nlibraries: []\n")
        spec = load_file(str(path))
        assert spec.base_dir == str(tmp_path.resolve())
        assert resolve_source_path(spec, "libs/x.so") == str(tmp_path.resolve() / "libs" / "x.so")
        assert resolve_source_path(spec, "/abs/x.so") == "/abs/x.so"

    def test_load_empty_file(self, tmp_path):
        path = tmp_path / "build.yaml"
        path.write_text("")
        with pytest.raises(InvalidValueError):
            load_file(str(path))

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_file(str(tmp_path / "nope.yaml"))

    def test_generated_default_loads(self, tmp_path):
        path = write_default(str(tmp_path / "build.yaml"), source_ref="v26.0")
        spec = load_file(str(path))
        assert spec.source_ref == "v26.0"
        assert spec.options.configure_flags() == ["--disable-wallet", "--with-sqlite", "--without-bdb"]

    def test_write_default_refuses_overwrite(self, tmp_path):
        path = tmp_path / "build.yaml"
        path.write_text("keep")
        with pytest.raises(FileExistsError):
            write_default(str(path))
        write_default(str(path), force=True)
        assert 'source_ref: "v25.0"' in path.read_text()

    def test_generate_default_mentions_ref(self):
        assert 'source_ref: "v24.1"' in generate_default("v24.1")
