"""Request parameter models and validation for each workflow type."""

from __future__ import annotations

import re
from typing import Any, Dict, Literal, Optional, Type, TypeVar, get_args

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .contracts import WorkflowType
from .errors import ParameterValidationError
from .nodepools import NODE_POOL_CONFIGURATIONS

CLUSTER_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]$"
NAMESPACE_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]*[a-z0-9]$"
Location = Literal["eastus", "westus2", "uksouth", "westeurope", "centralus"]
SUPPORTED_LOCATIONS = get_args(Location)
DEFAULT_KUBERNETES_VERSION = "1.28.3"

_QUANTITY_RE = re.compile(r"^(\d+(?:\.\d+)?)(m|k|M|G|T|Ki|Mi|Gi|Ti)?$")
_QUANTITY_FACTORS = {
    None: 1.0,
    "m": 1e-3,
    "k": 1e3,
    "M": 1e6,
    "G": 1e9,
    "T": 1e12,
    "Ki": 1024.0,
    "Mi": 1024.0**2,
    "Gi": 1024.0**3,
    "Ti": 1024.0**4,
}

ParamsT = TypeVar("ParamsT", bound="RequestParams")


def parse_quantity(value: str) -> float:
    """Convert a Kubernetes resource quantity such as ``500m`` or ``2Gi`` to a float."""
    match = _QUANTITY_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid resource quantity: {value!r}")
    number, suffix = match.groups()
    return float(number) * _QUANTITY_FACTORS[suffix]


def scale_quantity(value: str, factor: float) -> str:
    """Multiply the numeric part of ``value`` keeping its unit."""
    match = _QUANTITY_RE.match(value.strip())
    if not match:
        return value
    number, suffix = match.groups()
    scaled = float(number) * factor
    text = str(int(scaled)) if scaled.is_integer() else str(scaled)
    return f"{text}{suffix or ''}"


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class RequestParams(CamelModel):
    """Base for request models."""

    dry_run: bool = False

    def to_parameters(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class AdvancedClusterConfig(CamelModel):
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    max_nodes: int = Field(default=10, ge=1, le=100)
    enable_spot: bool = False


class ClusterProvisioningParams(RequestParams):
    cluster_name: str = Field(min_length=3, max_length=30, pattern=CLUSTER_NAME_PATTERN)
    location: Location
    node_pool_type: str
    dry_run: bool = True
    enable_nap: bool = True
    advanced_config: AdvancedClusterConfig = Field(default_factory=AdvancedClusterConfig)
    cluster_id: Optional[str] = None

    @field_validator("node_pool_type")
    @classmethod
    def _known_node_pool(cls, value: str) -> str:
        if value not in NODE_POOL_CONFIGURATIONS:
            allowed = ", ".join(NODE_POOL_CONFIGURATIONS)
            raise ValueError(f"must be one of: {allowed}")
        return value

    @field_validator("advanced_config", mode="before")
    @classmethod
    def _empty_advanced_config(cls, value: Any) -> Any:
        return {} if value is None else value


class ClusterDeletionParams(RequestParams):
    cluster_name: str = Field(min_length=3, max_length=30, pattern=CLUSTER_NAME_PATTERN)
    force: bool = False
    dry_run: bool = True
    cluster_id: Optional[str] = None


class ResourceQuantity(CamelModel):
    request: str
    limit: str

    @model_validator(mode="after")
    def _request_within_limit(self) -> "ResourceQuantity":
        if parse_quantity(self.request) > parse_quantity(self.limit):
            raise ValueError("request must be less than or equal to limit")
        return self

    @field_validator("request", "limit")
    @classmethod
    def _valid_quantity(cls, value: str) -> str:
        parse_quantity(value)
        return value


class ResourceLimits(CamelModel):
    cpu: ResourceQuantity = Field(
        default_factory=lambda: ResourceQuantity(request="100m", limit="1000m")
    )
    memory: ResourceQuantity = Field(
        default_factory=lambda: ResourceQuantity(request="128Mi", limit="1Gi")
    )


class NamespaceProvisioningParams(RequestParams):
    namespace_name: str = Field(min_length=3, max_length=63, pattern=NAMESPACE_NAME_PATTERN)
    description: str = ""
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    network_isolated: bool = True


class NamespaceUpdateParams(RequestParams):
    namespace_name: str = Field(min_length=3, max_length=63, pattern=NAMESPACE_NAME_PATTERN)
    resource_limits: Optional[ResourceLimits] = None
    annotations: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _has_updates(self) -> "NamespaceUpdateParams":
        if self.resource_limits is None and not self.annotations:
            raise ValueError("at least one of resourceLimits or annotations is required")
        return self


class NamespaceDeletionParams(RequestParams):
    namespace_name: str = Field(min_length=3, max_length=63, pattern=NAMESPACE_NAME_PATTERN)
    force: bool = False


PARAMS_MODELS: Dict[WorkflowType, Type[RequestParams]] = {
    WorkflowType.CLUSTER_PROVISIONING: ClusterProvisioningParams,
    WorkflowType.CLUSTER_DELETION: ClusterDeletionParams,
    WorkflowType.NAMESPACE_PROVISIONING: NamespaceProvisioningParams,
    WorkflowType.NAMESPACE_UPDATE: NamespaceUpdateParams,
    WorkflowType.NAMESPACE_DELETION: NamespaceDeletionParams,
}


def _describe(errors: list[dict[str, Any]]) -> str:
    missing = [".".join(str(p) for p in e["loc"]) for e in errors if e["type"] == "missing"]
    invalid = [
        f"{'.'.join(str(p) for p in e['loc']) or 'request'}: {e['msg']}"
        for e in errors
        if e["type"] != "missing"
    ]
    parts = []
    if missing:
        parts.append(f"Missing required parameters: {', '.join(missing)}")
    if invalid:
        parts.append(f"Invalid parameters: {'; '.join(invalid)}")
    return ". ".join(parts)


def validate_params(model: Type[ParamsT], raw: Dict[str, Any] | None) -> ParamsT:
    """Validate ``raw`` against ``model``.

    Raises:
        ParameterValidationError: With a message naming every missing or
            malformed parameter.
    """
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise ParameterValidationError(_describe(errors), details=errors) from exc
