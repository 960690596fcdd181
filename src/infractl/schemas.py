"""Per-kind attribute schemas.

Each resource kind has a pydantic model describing its declared attributes.
Models also carry the kind-specific rules the planner needs:

- ``computed``: attributes only known after the provider applied the
  resource (ids, ARNs, DNS names). Never compared, always referenceable.
- ``force_new``: attributes that cannot change in place. Changing one
  requires the resource to be replaced.
- ``unordered``: list attributes compared as sets.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import Reference, Resource, SchemaError

# Attribute values that may be a literal or a reference to another resource
RefStr = str | Reference
RefStrList = list[str | Reference]

VALID_PROTOCOLS = {"tcp", "udp", "icmp", "-1", "all"}


class KindSchema(BaseModel):
    """Base schema with common fields."""

    model_config = ConfigDict(extra="forbid")

    computed: ClassVar[frozenset[str]] = frozenset({"id"})
    force_new: ClassVar[frozenset[str]] = frozenset()
    unordered: ClassVar[frozenset[str]] = frozenset()
    # Values never shown in plan or state output
    sensitive: ClassVar[frozenset[str]] = frozenset()

    tags: dict[str, str | Reference] = Field(default_factory=dict)

    @classmethod
    def declared_attributes(cls) -> frozenset[str]:
        return frozenset(cls.model_fields)

    @classmethod
    def known_attributes(cls) -> frozenset[str]:
        """Attributes another resource may reference."""
        return cls.declared_attributes() | cls.computed


def _check_cidr(v: str | None) -> str | None:
    # Basic CIDR validation
    if v is not None and "/" not in v:
        raise ValueError("must be in CIDR notation (e.g., 10.0.0.0/24)")
    return v


# =============================================================================
# Networking
# =============================================================================


class VpcSchema(KindSchema):
    """Virtual private cloud."""

    computed = frozenset({"id", "arn", "default_route_table_id", "main_route_table_id"})
    force_new = frozenset({"cidr_block"})

    cidr_block: str
    enable_dns_support: bool = True
    enable_dns_hostnames: bool = False
    instance_tenancy: Literal["default", "dedicated"] = "default"

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _check_cidr(v)  # type: ignore[return-value]


class SubnetSchema(KindSchema):
    """Subnet inside a VPC."""

    computed = frozenset({"id", "arn"})
    force_new = frozenset({"vpc_id", "cidr_block", "availability_zone"})

    vpc_id: RefStr
    cidr_block: str
    availability_zone: RefStr | None = None
    map_public_ip_on_launch: bool = False

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _check_cidr(v)  # type: ignore[return-value]


class InternetGatewaySchema(KindSchema):
    computed = frozenset({"id", "arn"})

    vpc_id: RefStr | None = None


class EipSchema(KindSchema):
    """Elastic IP address."""

    computed = frozenset({"id", "allocation_id", "public_ip", "public_dns"})
    force_new = frozenset({"domain"})

    domain: Literal["vpc", "standard"] = "vpc"
    instance: RefStr | None = None


class NatGatewaySchema(KindSchema):
    computed = frozenset({"id", "public_ip", "private_ip", "network_interface_id"})
    force_new = frozenset({"allocation_id", "subnet_id", "connectivity_type"})

    allocation_id: RefStr | None = None
    subnet_id: RefStr
    connectivity_type: Literal["public", "private"] = "public"

    @model_validator(mode="after")
    def validate_allocation(self) -> NatGatewaySchema:
        if self.connectivity_type == "public" and self.allocation_id is None:
            raise ValueError("public NAT gateways require allocation_id")
        return self


class RouteTableSchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"vpc_id"})

    vpc_id: RefStr


ROUTE_TARGETS = (
    "gateway_id",
    "nat_gateway_id",
    "network_interface_id",
    "vpc_peering_connection_id",
    "transit_gateway_id",
)


class RouteSchema(KindSchema):
    """Single route in a route table. Exactly one target must be set."""

    computed = frozenset({"id", "state"})
    force_new = frozenset({"route_table_id", "destination_cidr_block"})

    route_table_id: RefStr
    destination_cidr_block: str
    gateway_id: RefStr | None = None
    nat_gateway_id: RefStr | None = None
    network_interface_id: RefStr | None = None
    vpc_peering_connection_id: RefStr | None = None
    transit_gateway_id: RefStr | None = None

    @field_validator("destination_cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _check_cidr(v)  # type: ignore[return-value]

    @model_validator(mode="after")
    def validate_single_target(self) -> RouteSchema:
        targets = [t for t in ROUTE_TARGETS if getattr(self, t) is not None]
        if len(targets) != 1:
            raise ValueError(f"exactly one of {list(ROUTE_TARGETS)} must be set, got {targets}")
        return self


class RouteTableAssociationSchema(KindSchema):
    force_new = frozenset({"subnet_id"})

    subnet_id: RefStr
    route_table_id: RefStr


# =============================================================================
# Security groups
# =============================================================================


class SecurityGroupSchema(KindSchema):
    computed = frozenset({"id", "arn", "owner_id"})
    force_new = frozenset({"name", "description", "vpc_id"})

    name: str = Field(min_length=1, max_length=255)
    description: str = "Managed by infractl"
    vpc_id: RefStr


class SecurityGroupRuleSchema(KindSchema):
    """Ingress or egress rule attached to a security group."""

    force_new = frozenset(
        {
            "type",
            "security_group_id",
            "from_port",
            "to_port",
            "protocol",
            "cidr_blocks",
            "source_security_group_id",
        }
    )
    unordered = frozenset({"cidr_blocks"})

    type: Literal["ingress", "egress"]
    security_group_id: RefStr
    from_port: int = Field(ge=-1, le=65535)
    to_port: int = Field(ge=-1, le=65535)
    protocol: str = "tcp"
    cidr_blocks: list[str] = Field(default_factory=list)
    source_security_group_id: RefStr | None = None
    description: str | None = None

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        if v.lower() not in VALID_PROTOCOLS:
            raise ValueError(f"protocol must be one of {sorted(VALID_PROTOCOLS)}")
        return v.lower()

    @model_validator(mode="after")
    def validate_rule(self) -> SecurityGroupRuleSchema:
        if self.from_port > self.to_port:
            raise ValueError("from_port must not exceed to_port")
        if bool(self.cidr_blocks) == (self.source_security_group_id is not None):
            raise ValueError("exactly one of cidr_blocks or source_security_group_id must be set")
        return self


# =============================================================================
# IAM
# =============================================================================


class IamRoleSchema(KindSchema):
    computed = frozenset({"id", "arn", "unique_id"})
    force_new = frozenset({"name", "path"})

    name: str = Field(min_length=1, max_length=64)
    path: str = "/"
    assume_role_policy: dict[str, Any] | str
    description: str | None = None


class IamPolicySchema(KindSchema):
    computed = frozenset({"id", "arn", "policy_id"})
    force_new = frozenset({"name", "path", "description"})

    name: str = Field(min_length=1, max_length=128)
    path: str = "/"
    description: str | None = None
    policy_document: dict[str, Any] | str


class IamRolePolicyAttachmentSchema(KindSchema):
    force_new = frozenset({"role", "policy_arn"})

    role: RefStr
    policy_arn: RefStr


class IamInstanceProfileSchema(KindSchema):
    computed = frozenset({"id", "arn", "unique_id"})
    force_new = frozenset({"name"})

    name: str = Field(min_length=1, max_length=128)
    role: RefStr


# =============================================================================
# Load balancing
# =============================================================================


class LbSchema(KindSchema):
    """Application or network load balancer."""

    computed = frozenset({"id", "arn", "dns_name", "zone_id"})
    force_new = frozenset({"name", "internal", "load_balancer_type"})
    unordered = frozenset({"security_groups", "subnets"})

    name: str = Field(min_length=1, max_length=32)
    internal: bool = False
    load_balancer_type: Literal["application", "network"] = "application"
    security_groups: RefStrList = Field(default_factory=list)
    subnets: RefStrList
    idle_timeout: int = Field(60, ge=1, le=4000)

    @model_validator(mode="after")
    def validate_subnets(self) -> LbSchema:
        if self.load_balancer_type == "application" and len(self.subnets) < 2:
            raise ValueError("application load balancers need at least two subnets")
        return self


class LbTargetGroupSchema(KindSchema):
    computed = frozenset({"id", "arn", "arn_suffix"})
    force_new = frozenset({"name", "port", "protocol", "vpc_id", "target_type"})

    name: str = Field(min_length=1, max_length=32)
    port: int = Field(ge=1, le=65535)
    protocol: Literal["HTTP", "HTTPS", "TCP", "UDP", "TLS"] = "HTTP"
    vpc_id: RefStr
    target_type: Literal["instance", "ip", "lambda"] = "instance"
    health_check: dict[str, Any] | None = None


class LbListenerSchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"load_balancer_arn"})

    load_balancer_arn: RefStr
    port: int = Field(ge=1, le=65535)
    protocol: Literal["HTTP", "HTTPS", "TCP", "UDP", "TLS"] = "HTTP"
    default_action: dict[str, Any]

    @field_validator("default_action")
    @classmethod
    def validate_action(cls, v: dict[str, Any]) -> dict[str, Any]:
        if "type" not in v:
            raise ValueError("default_action requires a 'type'")
        if v["type"] == "forward" and "target_group_arn" not in v:
            raise ValueError("forward actions require 'target_group_arn'")
        return v


# =============================================================================
# Compute and autoscaling
# =============================================================================


class LaunchTemplateSchema(KindSchema):
    computed = frozenset({"id", "arn", "latest_version"})
    force_new = frozenset({"name"})
    unordered = frozenset({"vpc_security_group_ids"})
    sensitive = frozenset({"user_data"})

    name: str = Field(min_length=3, max_length=128)
    image_id: str
    instance_type: str
    key_name: str | None = None
    vpc_security_group_ids: RefStrList = Field(default_factory=list)
    iam_instance_profile: RefStr | None = None
    user_data: str | None = None


class AutoscalingGroupSchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"name"})
    unordered = frozenset({"vpc_zone_identifier", "target_group_arns"})

    name: str = Field(min_length=1, max_length=255)
    min_size: int = Field(ge=0)
    max_size: int = Field(ge=0)
    desired_capacity: int | None = None
    vpc_zone_identifier: RefStrList
    launch_template: dict[str, Any]
    target_group_arns: RefStrList = Field(default_factory=list)
    health_check_type: Literal["EC2", "ELB"] = "EC2"
    health_check_grace_period: int = 300

    @model_validator(mode="after")
    def validate_capacity(self) -> AutoscalingGroupSchema:
        if self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        if self.desired_capacity is not None and not (
            self.min_size <= self.desired_capacity <= self.max_size
        ):
            raise ValueError("desired_capacity must be between min_size and max_size")
        if "id" not in self.launch_template and "name" not in self.launch_template:
            raise ValueError("launch_template requires 'id' or 'name'")
        return self


class AutoscalingAttachmentSchema(KindSchema):
    force_new = frozenset({"autoscaling_group_name", "lb_target_group_arn"})

    autoscaling_group_name: RefStr
    lb_target_group_arn: RefStr


class AutoscalingPolicySchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"name", "autoscaling_group_name"})

    name: str
    autoscaling_group_name: RefStr
    adjustment_type: Literal[
        "ChangeInCapacity", "ExactCapacity", "PercentChangeInCapacity"
    ] = "ChangeInCapacity"
    scaling_adjustment: int
    cooldown: int | None = None


# =============================================================================
# Monitoring and notifications
# =============================================================================


class SnsTopicSchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"name"})

    name: str = Field(min_length=1, max_length=256)


class CloudwatchMetricAlarmSchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"alarm_name"})
    unordered = frozenset({"alarm_actions", "ok_actions"})

    alarm_name: str
    comparison_operator: Literal[
        "GreaterThanOrEqualToThreshold",
        "GreaterThanThreshold",
        "LessThanThreshold",
        "LessThanOrEqualToThreshold",
    ]
    evaluation_periods: int = Field(ge=1)
    metric_name: str
    namespace: str
    period: int = Field(ge=10)
    statistic: Literal["SampleCount", "Average", "Sum", "Minimum", "Maximum"] = "Average"
    threshold: float
    dimensions: dict[str, str | Reference] = Field(default_factory=dict)
    alarm_actions: RefStrList = Field(default_factory=list)
    ok_actions: RefStrList = Field(default_factory=list)
    alarm_description: str | None = None


# =============================================================================
# Storage and database
# =============================================================================


class S3BucketSchema(KindSchema):
    computed = frozenset({"id", "arn", "bucket_domain_name", "region"})
    force_new = frozenset({"bucket"})

    bucket: str = Field(min_length=3, max_length=63, pattern=r"^[a-z0-9][a-z0-9.\-]*[a-z0-9]$")
    force_destroy: bool = False
    versioning: bool = False


class DbSubnetGroupSchema(KindSchema):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"name"})
    unordered = frozenset({"subnet_ids"})

    name: str = Field(min_length=1, max_length=255)
    description: str = "Managed by infractl"
    subnet_ids: RefStrList = Field(min_length=2)


class DbInstanceSchema(KindSchema):
    computed = frozenset({"id", "arn", "address", "endpoint", "port", "resource_id"})
    force_new = frozenset({"identifier", "engine", "username", "db_subnet_group_name"})
    unordered = frozenset({"vpc_security_group_ids"})
    sensitive = frozenset({"password"})

    identifier: str = Field(min_length=1, max_length=63)
    engine: Literal["mysql", "postgres", "mariadb"]
    engine_version: str | None = None
    instance_class: str
    allocated_storage: int = Field(ge=20, le=65536)
    db_name: str | None = None
    username: str
    password: str | Reference
    db_subnet_group_name: RefStr | None = None
    vpc_security_group_ids: RefStrList = Field(default_factory=list)
    multi_az: bool = False
    publicly_accessible: bool = False
    skip_final_snapshot: bool = False


# Registry of supported kinds
KIND_SCHEMAS: dict[str, type[KindSchema]] = {
    "vpc": VpcSchema,
    "subnet": SubnetSchema,
    "internet_gateway": InternetGatewaySchema,
    "eip": EipSchema,
    "nat_gateway": NatGatewaySchema,
    "route_table": RouteTableSchema,
    "route": RouteSchema,
    "route_table_association": RouteTableAssociationSchema,
    "security_group": SecurityGroupSchema,
    "security_group_rule": SecurityGroupRuleSchema,
    "iam_role": IamRoleSchema,
    "iam_policy": IamPolicySchema,
    "iam_role_policy_attachment": IamRolePolicyAttachmentSchema,
    "iam_instance_profile": IamInstanceProfileSchema,
    "lb": LbSchema,
    "lb_target_group": LbTargetGroupSchema,
    "lb_listener": LbListenerSchema,
    "launch_template": LaunchTemplateSchema,
    "autoscaling_group": AutoscalingGroupSchema,
    "autoscaling_attachment": AutoscalingAttachmentSchema,
    "autoscaling_policy": AutoscalingPolicySchema,
    "sns_topic": SnsTopicSchema,
    "cloudwatch_metric_alarm": CloudwatchMetricAlarmSchema,
    "s3_bucket": S3BucketSchema,
    "db_subnet_group": DbSubnetGroupSchema,
    "db_instance": DbInstanceSchema,
}


def get_schema(kind: str) -> type[KindSchema]:
    """Get the schema class for a resource kind.

    Raises:
        SchemaError: If the kind is not supported.
    """
    schema = KIND_SCHEMAS.get(kind)
    if schema is None:
        raise SchemaError(f"Unknown resource kind '{kind}'. Valid kinds: {sorted(KIND_SCHEMAS)}")
    return schema


def validate_resource(resource: Resource) -> KindSchema:
    """Validate a resource's attributes against its kind schema.

    Returns:
        The validated schema instance.

    Raises:
        SchemaError: If the kind is unknown or attributes are invalid.
    """
    schema = get_schema(resource.kind)
    try:
        return schema.model_validate(resource.attributes)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"]) or "<resource>"
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SchemaError(f"Validation failed for {resource.address}:\n{error_list}") from e


def validate_all(resources: list[Resource]) -> None:
    """Validate every resource, reporting all failures at once.

    Raises:
        SchemaError: If any resource is invalid.
    """
    failures: list[str] = []
    for resource in resources:
        try:
            validate_resource(resource)
        except SchemaError as e:
            failures.append(str(e))
    if failures:
        raise SchemaError("\n".join(failures))


def sensitive_attributes(kind: str) -> frozenset[str]:
    """Attributes of a kind whose values must be masked in output."""
    schema = KIND_SCHEMAS.get(kind)
    return schema.sensitive if schema is not None else frozenset()
