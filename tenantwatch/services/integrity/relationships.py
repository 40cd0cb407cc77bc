from __future__ import annotations

from dataclasses import dataclass
import re

from tenantwatch.core.errors import ConfigurationError


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_identifier(value: str) -> str:
    # Identifiers are interpolated into SQL, so only plain names are accepted.
    if not _IDENTIFIER.match(value):
        raise ConfigurationError(f"invalid SQL identifier: {value!r}")
    return value


@dataclass(frozen=True)
class TenantRelationship:
    """A dependent table whose tenant must match the tenant of the row it references."""

    child_table: str
    foreign_key: str
    parent_table: str
    child_tenant_column: str = "tenant_id"
    parent_tenant_column: str = "tenant_id"
    parent_key: str = "id"

    def __post_init__(self) -> None:
        for name in (
            self.child_table,
            self.foreign_key,
            self.parent_table,
            self.child_tenant_column,
            self.parent_tenant_column,
            self.parent_key,
        ):
            check_identifier(name)

    @property
    def label(self) -> str:
        return f"{self.child_table}→{self.parent_table}"


@dataclass(frozen=True)
class RequiredReference:
    """A non-optional foreign reference; rows whose target is missing are orphans."""

    orphan_type: str
    child_table: str
    foreign_key: str
    parent_table: str
    child_key: str = "id"
    parent_key: str = "id"

    def __post_init__(self) -> None:
        for name in (self.child_table, self.foreign_key, self.parent_table, self.child_key, self.parent_key):
            check_identifier(name)


@dataclass(frozen=True)
class RelationshipCatalog:
    # Primary ownership relationships feed the cross-tenant rule.
    primary: tuple[TenantRelationship, ...]
    # Derived analytics tables feed the analytics rule.
    analytics: tuple[TenantRelationship, ...]
    required: tuple[RequiredReference, ...]

    def monitored_tables(self) -> tuple[str, ...]:
        names: list[str] = []
        for rel in (*self.primary, *self.analytics):
            names.extend([rel.child_table, rel.parent_table])
        for ref in self.required:
            names.extend([ref.child_table, ref.parent_table])
        return tuple(dict.fromkeys(names))


def default_catalog() -> RelationshipCatalog:
    return RelationshipCatalog(
        primary=(TenantRelationship("calls", "agent_id", "agents"),),
        analytics=(
            TenantRelationship("lead_analytics", "call_id", "calls"),
            TenantRelationship("agent_analytics", "agent_id", "agents"),
        ),
        required=(
            RequiredReference("missing_agent", "calls", "agent_id", "agents"),
            RequiredReference("missing_user", "calls", "tenant_id", "users"),
            RequiredReference("missing_call", "lead_analytics", "call_id", "calls"),
            RequiredReference("missing_agent", "agent_analytics", "agent_id", "agents"),
        ),
    )
