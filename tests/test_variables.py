"""Tests for variable resolution and binding."""

import textwrap

import pytest

from converge.config import (
    VariableDeclaration,
    VariableType,
    bind_variables,
    load_document,
    load_var_file,
    parse_var_assignments,
    resolve_variables,
)
from converge.config.variables import coerce_value
from converge.utils.errors import ParseError, UndeclaredVariableError, VariableValueError
from converge.utils.sensitive import Sensitive

DOCUMENT = """
variables:
  env:
    type: string
    default: dev
  replicas:
    type: number
  enabled:
    type: bool
    default: false
  zones:
    type: list
    default: [a]
  token:
    type: string
    sensitive: true
    default: s3cr3t-token
resources:
  aws_s3_bucket:
    logs:
      bucket: logs-${var.env}
      replicas: ${var.replicas}
      auth: Bearer ${var.token}
outputs:
  token:
    value: ${var.token}
"""


def _document():
    return load_document(textwrap.dedent(DOCUMENT), source="test.yaml")


def _declaration(kind, sensitive=False):
    return VariableDeclaration(name="v", type=kind, sensitive=sensitive)


class TestResolveVariables:
    def test_defaults_and_overrides(self):
        values = resolve_variables(_document(), {"replicas": 3}, environ={})
        assert values["env"] == "dev"
        assert values["replicas"] == 3
        assert values["enabled"] is False
        assert values["zones"] == ["a"]

    def test_environment_beats_default(self):
        environ = {"CONVERGE_VAR_env": "prod", "CONVERGE_VAR_replicas": "2"}
        values = resolve_variables(_document(), environ=environ)
        assert values["env"] == "prod"
        assert values["replicas"] == 2

    def test_override_beats_environment(self):
        environ = {"CONVERGE_VAR_env": "prod", "CONVERGE_VAR_replicas": "2"}
        values = resolve_variables(_document(), {"env": "stage"}, environ=environ)
        assert values["env"] == "stage"

    def test_environment_text_is_coerced(self):
        environ = {
            "CONVERGE_VAR_replicas": "1.5",
            "CONVERGE_VAR_enabled": "yes",
            "CONVERGE_VAR_zones": "[a, b]",
        }
        values = resolve_variables(_document(), environ=environ)
        assert values["replicas"] == 1.5
        assert values["enabled"] is True
        assert values["zones"] == ["a", "b"]

    def test_missing_value(self):
        with pytest.raises(VariableValueError) as exc_info:
            resolve_variables(_document(), environ={})
        assert "No value for variable 'replicas'" in exc_info.value.message

    def test_override_for_undeclared_variable(self):
        with pytest.raises(UndeclaredVariableError):
            resolve_variables(_document(), {"replicas": 1, "ghost": "x"}, environ={})

    def test_sensitive_values_are_wrapped(self):
        values = resolve_variables(_document(), {"replicas": 1}, environ={})
        assert isinstance(values["token"], Sensitive)
        assert "s3cr3t-token" not in repr(values["token"])


class TestCoerceValue:
    def test_number_rejects_bool(self):
        with pytest.raises(VariableValueError):
            coerce_value(_declaration(VariableType.NUMBER), True, from_text=False)

    def test_number_from_text(self):
        assert coerce_value(_declaration(VariableType.NUMBER), "42", from_text=True) == 42
        with pytest.raises(VariableValueError):
            coerce_value(_declaration(VariableType.NUMBER), "forty", from_text=True)

    def test_bool_from_text(self):
        declaration = _declaration(VariableType.BOOL)
        assert coerce_value(declaration, "off", from_text=True) is False
        with pytest.raises(VariableValueError):
            coerce_value(declaration, "maybe", from_text=True)

    def test_string_rejects_list(self):
        with pytest.raises(VariableValueError):
            coerce_value(_declaration(VariableType.STRING), ["a"], from_text=False)

    def test_map_from_text(self):
        value = coerce_value(_declaration(VariableType.MAP), "{team: infra}", from_text=True)
        assert value == {"team": "infra"}

    def test_sensitive_error_omits_value(self):
        with pytest.raises(VariableValueError) as exc_info:
            coerce_value(_declaration(VariableType.NUMBER, sensitive=True), "hunter22", from_text=True)
        assert "hunter22" not in exc_info.value.message


class TestBindVariables:
    def test_references_are_replaced(self):
        document = _document()
        bound = bind_variables(document, resolve_variables(document, {"replicas": 3}, environ={}))
        attributes = bound.get_resource("aws_s3_bucket.logs").attributes

        assert attributes["bucket"] == "logs-dev"
        assert attributes["replicas"] == 3
        assert isinstance(attributes["auth"], Sensitive)
        assert attributes["auth"].value == "Bearer s3cr3t-token"
        assert isinstance(bound.outputs["token"].value, Sensitive)

    def test_original_document_is_untouched(self):
        document = _document()
        bind_variables(document, resolve_variables(document, {"replicas": 3}, environ={}))
        assert document.get_resource("aws_s3_bucket.logs").variable_references()


class TestVariableSources:
    def test_parse_var_assignments(self):
        assert parse_var_assignments(["env=prod", "url=a=b"]) == {"env": "prod", "url": "a=b"}

    def test_invalid_assignment(self):
        with pytest.raises(VariableValueError):
            parse_var_assignments(["env"])

    def test_load_var_file(self, tmp_path):
        path = tmp_path / "prod.yaml"
        path.write_text("env: prod\nreplicas: 5\n")
        assert load_var_file(str(path)) == {"env": "prod", "replicas": 5}

    def test_var_file_must_be_a_mapping(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- env\n")
        with pytest.raises(ParseError):
            load_var_file(str(path))

    def test_missing_var_file(self, tmp_path):
        with pytest.raises(ParseError):
            load_var_file(str(tmp_path / "missing.yaml"))
