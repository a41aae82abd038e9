"""Interfaces of the externally supplied pipeline collaborators.

The LMS fetch call, the AI analysis call and tenant discovery live outside
this package. Implementations may be plain callables or coroutine
functions; :func:`resolve` awaits the result when needed.
"""

from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

from aularis.errors import CollaboratorError

from .models import Tenant, WorkItem


@dataclass(slots=True)
class AnalysisOutcome:
    """Result of one analysis call."""

    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None


@runtime_checkable
class ContentFetcher(Protocol):
    """Fetch raw course payloads (with their activities) for one tenant."""

    def __call__(
        self, tenant: Tenant
    ) -> Union[Iterable[Dict[str, Any]], Awaitable[Iterable[Dict[str, Any]]]]:
        ...


@runtime_checkable
class AnalysisExecutor(Protocol):
    """Run the AI analysis of one work item."""

    def __call__(self, item: WorkItem) -> Union[AnalysisOutcome, Awaitable[AnalysisOutcome]]:
        ...


@runtime_checkable
class TenantDirectory(Protocol):
    """Source of the tenants a run covers."""

    async def list_tenants(self) -> List[Tenant]:
        ...


async def resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def load_collaborator(import_path: str) -> Any:
    """Import a ``module:attribute`` path.

    Raises:
        CollaboratorError: If the module or attribute cannot be found
    """
    module_name, _, attribute = import_path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CollaboratorError(
            f"Cannot import module '{module_name}'", details={"import_path": import_path}
        ) from exc
    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        raise CollaboratorError(
            f"'{module_name}' has no attribute '{attribute}'",
            details={"import_path": import_path},
        ) from exc
    if not callable(target):
        raise CollaboratorError(
            f"'{import_path}' is not callable", details={"import_path": import_path}
        )
    return target
