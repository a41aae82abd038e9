"""Access to the remote enrolment database."""

from .directory import EnrolmentTenantDirectory, StaticTenantDirectory, tenant_host
from .tunnel import RemoteTunnelClient, is_connection_lost

__all__ = [
    "EnrolmentTenantDirectory",
    "RemoteTunnelClient",
    "StaticTenantDirectory",
    "is_connection_lost",
    "tenant_host",
]
