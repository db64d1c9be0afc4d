"""
Tests for reference resolution and cardinality expansion.
"""

import pytest

from stackwright.core.errors import CycleError, LoadError, ValidationError
from stackwright.declarations import InstanceAddress, Profile, load_declarations, parse_declarations
from stackwright.declarations.references import ABSENT, make_reference
from stackwright.graph import expand
from stackwright.graph.expander import cardinality_of
from stackwright.graph.resolver import ReferenceResolver


def addr(text):
    return InstanceAddress.parse(text)


class TestSampleStack:
    """Expansion of the shared two-module stack."""

    def test_dev_expansion(self, stack_file):
        expansion = expand(load_declarations(stack_file), Profile("dev", {"environment": "dev"}))

        assert expansion.module_order == ["networking", "compute"]
        assert sorted(str(a) for a in expansion.instances) == [
            "compute.server[0]",
            "compute.server[1]",
            "networking.vpc[0]",
        ]
        assert expansion.cardinality[("compute", "server")] == 2

        vpc = expansion.instances[addr("networking.vpc[0]")]
        assert vpc.attributes == {"cidr_block": "10.0.0.0/16", "name": "dev-vpc"}

        server = expansion.instances[addr("compute.server[1]")]
        vpc_token = make_reference(addr("networking.vpc[0]"), "id")
        assert server.attributes["name"] == "server-1"
        assert server.attributes["vpc"] == vpc_token
        assert server.order_key == (1, 0, 1)

    def test_outputs_carry_tokens(self, stack_file):
        expansion = expand(load_declarations(stack_file), Profile("dev", {"environment": "dev"}))
        assert expansion.outputs["networking"]["vpc_id"] == make_reference(addr("networking.vpc[0]"), "id")
        assert expansion.outputs["compute"]["server_ids"] == [
            make_reference(addr("compute.server[0]"), "id"),
            make_reference(addr("compute.server[1]"), "id"),
        ]

    def test_sensitivity_follows_values(self, stack_file):
        expansion = expand(load_declarations(stack_file), Profile("dev", {"environment": "dev"}))
        server = expansion.instances[addr("compute.server[0]")]
        assert server.sensitive_attributes == frozenset({"password"})

    def test_expansion_is_deterministic(self, stack_file):
        declarations = load_declarations(stack_file)
        profile = Profile("prod", {"environment": "prod", "compute_count": 4})
        first = expand(declarations, profile)
        second = expand(declarations, profile)
        assert list(first.instances) == list(second.instances)
        assert [i.attributes for i in first.instances.values()] == [
            i.attributes for i in second.instances.values()
        ]


class TestParameters:
    """Profile parameters, types and validators."""

    def test_validator_failure(self, stack_file):
        with pytest.raises(ValidationError, match="does not satisfy"):
            expand(load_declarations(stack_file), Profile("dev", {"environment": "qa"}))

    def test_undeclared_profile_parameter(self, stack_file):
        with pytest.raises(ValidationError, match="undeclared parameters: colour"):
            expand(
                load_declarations(stack_file),
                Profile("dev", {"environment": "dev", "colour": "red"}),
            )

    def test_missing_value(self, stack_file):
        with pytest.raises(ValidationError, match="'environment' has no value"):
            expand(load_declarations(stack_file), Profile("dev", {}))

    def test_type_mismatch(self, stack_file):
        with pytest.raises(ValidationError, match="must be of type 'number'"):
            expand(
                load_declarations(stack_file),
                Profile("dev", {"environment": "dev", "compute_count": "two"}),
            )

    def test_sensitive_value_is_masked_in_errors(self):
        declarations = parse_declarations(
            {
                "parameters": [
                    {"name": "token", "type": "string", "sensitive": True, "validation": "length(token) > 8"}
                ],
                "modules": [],
            }
        )
        with pytest.raises(ValidationError) as excinfo:
            expand(declarations, Profile("dev", {"token": "short"}))
        assert "short" not in excinfo.value.message
        assert "(sensitive)" in excinfo.value.message

    def test_input_falls_back_to_default(self):
        declarations = parse_declarations(
            {
                "modules": [
                    {
                        "name": "net",
                        "inputs": [{"name": "size", "type": "number", "default": 3}],
                        "resources": [{"id": "vpc", "kind": "n", "attributes": {"size": "${var.size}"}}],
                    }
                ]
            }
        )
        expansion = expand(declarations, Profile("dev"))
        assert expansion.instances[addr("net.vpc[0]")].attributes == {"size": 3}

    def test_input_without_any_value(self):
        declarations = parse_declarations(
            {"modules": [{"name": "net", "inputs": [{"name": "size"}], "resources": []}]}
        )
        with pytest.raises(ValidationError, match="no wiring, parameter or default"):
            expand(declarations, Profile("dev"))


class TestReferences:
    """Static reference checks and module ordering."""

    def test_dangling_input_reference(self):
        declarations = parse_declarations(
            {
                "modules": [
                    {"name": "net", "resources": [{"id": "vpc", "kind": "n", "attributes": {"a": "${var.nope}"}}]}
                ]
            }
        )
        with pytest.raises(LoadError, match="no input 'nope'"):
            expand(declarations, Profile("dev"))

    def test_resource_reference_not_allowed_in_count(self):
        declarations = parse_declarations(
            {
                "modules": [
                    {
                        "name": "net",
                        "resources": [
                            {"id": "vpc", "kind": "n"},
                            {"id": "subnet", "kind": "n", "count": "${length(resource.vpc[*].id)}"},
                        ],
                    }
                ]
            }
        )
        with pytest.raises(LoadError, match="not allowed here"):
            expand(declarations, Profile("dev"))

    def test_unknown_module_output(self):
        declarations = parse_declarations(
            {
                "modules": [
                    {"name": "a", "outputs": {"x": "1"}},
                    {"name": "b", "inputs": [{"name": "y", "value": "${module.a.z}"}]},
                ]
            }
        )
        with pytest.raises(LoadError, match="has no output 'z'"):
            expand(declarations, Profile("dev"))

    def test_module_cycle_is_named(self):
        declarations = parse_declarations(
            {
                "modules": [
                    {"name": "a", "inputs": [{"name": "x", "value": "${module.b.out}"}], "outputs": {"out": "a"}},
                    {"name": "b", "inputs": [{"name": "y", "value": "${module.a.out}"}], "outputs": {"out": "b"}},
                ]
            }
        )
        with pytest.raises(CycleError) as excinfo:
            expand(declarations, Profile("dev"))
        assert excinfo.value.cycle == ["a", "b", "a"]

    def test_module_reading_its_own_output(self):
        declarations = parse_declarations(
            {"modules": [{"name": "a", "inputs": [{"name": "x", "value": "${module.a.out}"}], "outputs": {"out": "1"}}]}
        )
        with pytest.raises(CycleError):
            ReferenceResolver(declarations).check_references()

    def test_ties_follow_declaration_order(self):
        declarations = parse_declarations(
            {"modules": [{"name": "c"}, {"name": "b", "depends_on": ["c"]}, {"name": "a"}]}
        )
        assert ReferenceResolver(declarations).module_order() == ["c", "b", "a"]


class TestCardinality:
    """Zero-instance templates and absent values."""

    DECLARATIONS = {
        "parameters": [{"name": "enable_nat", "type": "bool", "default": False}],
        "modules": [
            {
                "name": "net",
                "resources": [
                    {"id": "nat", "kind": "nat_gateway", "count": "${param.enable_nat}"},
                    {"id": "vpc", "kind": "network"},
                ],
                "outputs": {"nat_id": "${resource.nat.id}", "vpc_id": "${resource.vpc[0].id}"},
            },
            {
                "name": "app",
                "inputs": [{"name": "nat_id", "value": "${module.net.nat_id}"}],
                "resources": [{"id": "svc", "kind": "service", "attributes": {"name": "svc"}}],
            },
        ],
    }

    def test_zero_cardinality_flows_absent(self):
        expansion = expand(parse_declarations(self.DECLARATIONS), Profile("dev"))

        assert expansion.cardinality[("net", "nat")] == 0
        assert expansion.instances_of("net", "nat") == []
        assert expansion.outputs["net"]["nat_id"] is ABSENT
        assert expansion.module_inputs["app"]["nat_id"] is ABSENT
        assert expansion.reported_outputs()["net"]["nat_id"] is None

    def test_existing_instance_cannot_consume_absent(self):
        data = {
            "modules": [
                {
                    "name": "net",
                    "resources": [
                        {"id": "nat", "kind": "nat_gateway", "count": 0},
                        {"id": "route", "kind": "route", "attributes": {"target": "${resource.nat[0].id}"}},
                    ],
                }
            ]
        }
        with pytest.raises(LoadError, match="does not exist in this profile"):
            expand(parse_declarations(data), Profile("dev"))

    def test_count_from_expression(self):
        data = {
            "parameters": [{"name": "azs", "type": "list"}],
            "modules": [{"name": "net", "resources": [{"id": "subnet", "kind": "subnet", "count": "length(param.azs) * 2"}]}],
        }
        expansion = expand(parse_declarations(data), Profile("dev", {"azs": ["a", "b"]}))
        assert expansion.cardinality[("net", "subnet")] == 4

    @pytest.mark.parametrize(
        "value, expected",
        [(True, 1), (False, 0), (3, 3), (2.0, 2), (0, 0)],
    )
    def test_cardinality_of(self, value, expected):
        assert cardinality_of(value, "x.count") == expected

    @pytest.mark.parametrize(
        "value",
        [-1, 1.5, "3", ABSENT, make_reference(InstanceAddress("m", "t", 0), "id"), None],
    )
    def test_invalid_cardinality(self, value):
        with pytest.raises(LoadError):
            cardinality_of(value, "x.count")
