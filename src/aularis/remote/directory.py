"""Tenant discovery."""

from __future__ import annotations

import logging
from typing import Iterable, List

from aularis.orchestrator.models import Tenant

from .tunnel import RemoteTunnelClient

logger = logging.getLogger(__name__)


ACTIVE_TENANTS_SQL = """
SELECT DISTINCT idAula
FROM enrolment
WHERE roles_id = %s
  AND suspendido = 0
  AND idAula IS NOT NULL
ORDER BY idAula
"""


def tenant_host(tenant_id: str) -> str:
    """Numeric classroom ids live under ``aula<id>``; named ones under their own name."""
    return f"aula{tenant_id}" if tenant_id.isdigit() else tenant_id


class StaticTenantDirectory:
    """Tenants listed in configuration."""

    def __init__(self, tenants: Iterable[Tenant]) -> None:
        self._tenants = list(tenants)

    async def list_tenants(self) -> List[Tenant]:
        return list(self._tenants)


class EnrolmentTenantDirectory:
    """Tenants that currently have at least one active teacher enrolment.

    Errors from the tunnel propagate; a run cannot continue without its
    tenant list.
    """

    def __init__(
        self,
        client: RemoteTunnelClient,
        *,
        teacher_role_id: int = 17,
        url_template: str = "https://{host}.utel.edu.mx",
    ) -> None:
        self._client = client
        self._teacher_role_id = teacher_role_id
        self._url_template = url_template

    async def list_tenants(self) -> List[Tenant]:
        rows = await self._client.execute_query(ACTIVE_TENANTS_SQL, (self._teacher_role_id,))
        tenants: List[Tenant] = []
        seen = set()
        for row in rows:
            raw_id = row.get("idAula")
            if raw_id is None:
                continue
            tenant_id = str(raw_id).strip()
            if not tenant_id or tenant_id in seen:
                continue
            seen.add(tenant_id)
            host = tenant_host(tenant_id)
            tenants.append(
                Tenant(id=tenant_id, base_url=self._url_template.format(host=host), name=host)
            )
        logger.info("Discovered tenants", extra={"count": len(tenants)})
        return tenants
