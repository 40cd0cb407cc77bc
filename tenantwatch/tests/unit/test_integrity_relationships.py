from __future__ import annotations

import pytest

from tenantwatch.core.errors import ConfigurationError
from tenantwatch.services.integrity.contamination import contamination_statement
from tenantwatch.services.integrity.orphans import orphan_statement
from tenantwatch.services.integrity.relationships import (
    RequiredReference,
    TenantRelationship,
    check_identifier,
    default_catalog,
)


@pytest.mark.parametrize("name", ["calls; DROP TABLE agents", "agent-id", "1calls", ""])
def test_check_identifier_rejects_unsafe_names(name: str) -> None:
    with pytest.raises(ConfigurationError):
        check_identifier(name)


def test_relationships_validate_identifiers() -> None:
    with pytest.raises(ConfigurationError):
        TenantRelationship("calls", "agent_id OR 1=1", "agents")
    with pytest.raises(ConfigurationError):
        RequiredReference("missing_agent", "calls", "agent_id", "agents;")


def test_default_catalog_covers_every_monitored_table() -> None:
    catalog = default_catalog()

    assert catalog.monitored_tables() == ("calls", "agents", "lead_analytics", "agent_analytics", "users")
    assert [rel.label for rel in catalog.primary] == ["calls→agents"]
    assert [rel.label for rel in catalog.analytics] == ["lead_analytics→calls", "agent_analytics→agents"]


def test_contamination_statement_compares_owners() -> None:
    sql = str(contamination_statement(TenantRelationship("calls", "agent_id", "agents")))

    assert "JOIN agents p ON c.agent_id = p.id" in sql
    assert "c.tenant_id != p.tenant_id" in sql


def test_orphan_statement_is_anti_join() -> None:
    sql = str(orphan_statement(RequiredReference("missing_agent", "calls", "agent_id", "agents")))

    assert "LEFT JOIN agents p ON c.agent_id = p.id" in sql
    assert "p.id IS NULL" in sql
