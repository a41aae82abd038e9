"""Tests for tenant discovery."""

from __future__ import annotations

import pytest

from aularis.errors import TunnelConnectionError
from aularis.orchestrator.models import Tenant
from aularis.remote.directory import (
    ACTIVE_TENANTS_SQL,
    EnrolmentTenantDirectory,
    StaticTenantDirectory,
    tenant_host,
)


class FakeClient:
    def __init__(self, rows=None, error=None) -> None:
        self.rows = rows or []
        self.error = error
        self.queries = []

    async def execute_query(self, statement, params=None):
        self.queries.append((statement, params))
        if self.error is not None:
            raise self.error
        return self.rows


def test_tenant_host() -> None:
    assert tenant_host("101") == "aula101"
    assert tenant_host("demo") == "demo"


@pytest.mark.asyncio()
async def test_enrolment_directory_builds_tenants() -> None:
    client = FakeClient(rows=[{"idAula": 101}, {"idAula": "101"}, {"idAula": None}, {"idAula": " demo "}])
    directory = EnrolmentTenantDirectory(client, teacher_role_id=17)

    tenants = await directory.list_tenants()

    assert client.queries == [(ACTIVE_TENANTS_SQL, (17,))]
    assert tenants == [
        Tenant(id="101", base_url="https://aula101.utel.edu.mx", name="aula101"),
        Tenant(id="demo", base_url="https://demo.utel.edu.mx", name="demo"),
    ]


@pytest.mark.asyncio()
async def test_enrolment_directory_uses_url_template() -> None:
    directory = EnrolmentTenantDirectory(
        FakeClient(rows=[{"idAula": 7}]), url_template="http://{host}.lms.test"
    )

    tenants = await directory.list_tenants()

    assert tenants[0].base_url == "http://aula7.lms.test"


@pytest.mark.asyncio()
async def test_enrolment_directory_propagates_tunnel_errors() -> None:
    directory = EnrolmentTenantDirectory(FakeClient(error=TunnelConnectionError("down")))

    with pytest.raises(TunnelConnectionError):
        await directory.list_tenants()


@pytest.mark.asyncio()
async def test_static_directory_returns_a_copy() -> None:
    tenant = Tenant(id="101", base_url="https://aula101.example.edu")
    directory = StaticTenantDirectory([tenant])

    first = await directory.list_tenants()
    first.clear()

    assert await directory.list_tenants() == [tenant]
