"""Tests for reference parsing and substitution."""

import pytest
from driftwood.core.errors import ValidationError
from driftwood.specs.references import (
    MISSING,
    UNKNOWN,
    contains_unknown,
    find_references,
    get_path,
    parse_reference,
    substitute,
)


class TestParseReference:
    """Tests for parse_reference."""

    def test_resource_attribute(self):
        """A resource reference splits into address and attribute path."""
        ref = parse_reference("gcp_network.vpc.self_link")
        assert ref.target == "gcp_network.vpc"
        assert ref.attribute == ("self_link",)
        assert not ref.is_variable

    def test_data_attribute(self):
        """Data references keep the data. prefix in the address."""
        ref = parse_reference("data.gcp_client_config.current.access_token")
        assert ref.target == "data.gcp_client_config.current"
        assert ref.attribute == ("access_token",)

    def test_variable(self):
        """Variable references expose the variable name."""
        ref = parse_reference("var.region")
        assert ref.is_variable
        assert ref.variable_name == "region"
        assert ref.attribute == ()

    def test_nested_path(self):
        """Deeper segments become the attribute path."""
        ref = parse_reference("gcp_cluster.primary.master_auth.cluster_ca_certificate")
        assert ref.attribute == ("master_auth", "cluster_ca_certificate")

    @pytest.mark.parametrize("expr", ["", "vpc", "gcp_network..name", "data.gcp_client_config"])
    def test_malformed(self, expr):
        """Malformed expressions are rejected."""
        with pytest.raises(ValidationError):
            parse_reference(expr)


class TestFindReferences:
    """Tests for find_references."""

    def test_collects_nested_references_in_order(self):
        """References inside mappings and lists are all found."""
        value = {
            "network": "${gcp_network.vpc.self_link}",
            "zones": ["${var.region}-a", "${var.region}-b"],
            "env": [{"value": "http://${k8s_service.api.cluster_ip}:80"}],
        }
        targets = [ref.target for ref in find_references(value)]
        assert targets == ["gcp_network.vpc", "var.region", "var.region", "k8s_service.api"]

    def test_escaped_reference_is_ignored(self):
        """$${...} is a literal, not a reference."""
        assert find_references("echo $${HOME}") == []


class TestSubstitute:
    """Tests for substitute."""

    def test_whole_string_keeps_type(self):
        """A string that is exactly one reference takes the resolved value."""
        assert substitute("${var.count}", lambda ref: 3) == 3
        assert substitute("${var.labels}", lambda ref: {"a": "b"}) == {"a": "b"}

    def test_embedded_reference_renders_text(self):
        """References inside longer strings are rendered as text."""
        result = substitute("https://${gcp_cluster.primary.endpoint}", lambda ref: "10.0.0.1")
        assert result == "https://10.0.0.1"

    def test_embedded_bool_renders_lowercase(self):
        """Booleans render like YAML booleans."""
        assert substitute("enabled=${var.flag}", lambda ref: True) == "enabled=true"

    def test_unknown_makes_whole_string_unknown(self):
        """An UNKNOWN part makes the rendered string UNKNOWN."""
        assert substitute("http://${k8s_service.web.cluster_ip}", lambda ref: UNKNOWN) is UNKNOWN

    def test_escape_is_unescaped(self):
        """$${ renders as ${ after substitution."""
        assert substitute("$${literal}", lambda ref: None) == "${literal}"

    def test_escape_kept_for_partial_pass(self):
        """unescape=False keeps $${ for a later pass."""
        assert substitute("$${literal}", lambda ref: None, unescape=False) == "$${literal}"


class TestPaths:
    """Tests for get_path and contains_unknown."""

    def test_get_path_through_lists(self):
        """Numeric segments index lists."""
        data = {"ingress": [{"ip": "1.2.3.4"}]}
        assert get_path(data, ("ingress", "0", "ip")) == "1.2.3.4"

    def test_get_path_missing(self):
        """Absent keys and out-of-range indexes are MISSING."""
        data = {"ingress": []}
        assert get_path(data, ("ingress", "0")) is MISSING
        assert get_path(data, ("other",)) is MISSING

    def test_contains_unknown(self):
        """UNKNOWN is found at any depth."""
        assert contains_unknown({"a": [1, {"b": UNKNOWN}]})
        assert not contains_unknown({"a": [1, {"b": 2}]})
