"""Tests for variable resolution and substitution."""

import pytest
from driftwood.core.errors import (
    UnknownReferenceError,
    UnresolvedVariableError,
    ValidationError,
)
from driftwood.specs.loader import parse_configuration
from driftwood.specs.models import Variable
from driftwood.specs.variables import (
    coerce,
    parse_cli_vars,
    resolve_variables,
    substitute_variables,
)


@pytest.fixture
def variables():
    return {
        "project": Variable(name="project", type="string"),
        "region": Variable(name="region", type="string", default="us-central1"),
        "nodes": Variable(name="nodes", type="number", default=1),
        "zones": Variable(name="zones", type="list", default=["a"]),
    }


class TestResolveVariables:
    """Tests for resolve_variables precedence and typing."""

    def test_defaults_and_required(self, variables):
        """Defaults fill in; a required variable without value fails."""
        with pytest.raises(UnresolvedVariableError) as exc_info:
            resolve_variables(variables, environ={})
        assert exc_info.value.names == ["project"]

    def test_precedence(self, variables, tmp_path):
        """CLI beats environment, which beats var-files, which beat defaults."""
        var_file = tmp_path / "prod.yaml"
        var_file.write_text("project: from-file\nregion: europe-west4\nnodes: 2\n")

        values = resolve_variables(
            variables,
            var_files=[var_file],
            cli_vars={"project": "from-cli"},
            environ={"DRIFTWOOD_VAR_nodes": "5", "DRIFTWOOD_VAR_region": "asia-east1"},
        )

        assert values == {
            "project": "from-cli",
            "region": "asia-east1",
            "nodes": 5,
            "zones": ["a"],
        }

    def test_missing_var_file(self, variables, tmp_path):
        """A var-file that does not exist is a validation error."""
        with pytest.raises(ValidationError, match="not found"):
            resolve_variables(variables, var_files=[tmp_path / "nope.yaml"], environ={})


class TestCoerce:
    """Tests for coerce."""

    def test_number_from_string(self):
        variable = Variable(name="n", type="number")
        assert coerce(variable, "3") == 3
        assert coerce(variable, "2.5") == 2.5

    def test_bool_from_string(self):
        variable = Variable(name="b", type="bool")
        assert coerce(variable, "yes") is True
        assert coerce(variable, "off") is False

    def test_list_from_yaml_string(self):
        variable = Variable(name="l", type="list")
        assert coerce(variable, "[a, b]") == ["a", "b"]

    def test_type_mismatch(self):
        """Values that do not fit the declared type are rejected."""
        with pytest.raises(ValidationError, match="expects number"):
            coerce(Variable(name="n", type="number"), "many")

    def test_sensitive_value_not_shown(self):
        """Sensitive values are masked in error messages."""
        with pytest.raises(ValidationError) as exc_info:
            coerce(Variable(name="key", type="number", sensitive=True), "hunter2")
        assert "hunter2" not in exc_info.value.message


class TestParseCliVars:
    """Tests for parse_cli_vars."""

    def test_pairs(self):
        assert parse_cli_vars(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}

    def test_invalid_pair(self):
        with pytest.raises(ValidationError):
            parse_cli_vars(["novalue"])


class TestSubstituteVariables:
    """Tests for substitute_variables."""

    def test_only_variables_are_replaced(self):
        """Declaration references stay intact for the graph builder."""
        config = parse_configuration(
            {
                "variables": {"region": {"type": "string"}},
                "providers": {"gcp": {"region": "${var.region}"}},
                "resources": {
                    "gcp_subnetwork": {
                        "nodes": {
                            "name": "nodes",
                            "network": "${gcp_network.vpc.self_link}",
                            "region": "${var.region}",
                            "ip_cidr_range": "$${not_a_ref}",
                        }
                    }
                },
            }
        )

        result = substitute_variables(config, {"region": "us-east1"})

        attributes = result.declarations["gcp_subnetwork.nodes"].attributes
        assert attributes["region"] == "us-east1"
        assert attributes["network"] == "${gcp_network.vpc.self_link}"
        assert attributes["ip_cidr_range"] == "$${not_a_ref}"
        assert result.providers["gcp"].attributes == {"region": "us-east1"}

    def test_undeclared_variable(self):
        """A reference to an undeclared variable is an unknown reference."""
        config = parse_configuration(
            {"resources": {"memory_item": {"a": {"name": "${var.nope}"}}}}
        )
        with pytest.raises(UnknownReferenceError):
            substitute_variables(config, {})
