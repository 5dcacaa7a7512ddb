"""Collaborator contracts consumed by the clock.

Implementations may be plain methods or coroutines; the clock awaits any
awaitable result. These protocols exist for type checking only and are
never checked at runtime.
"""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Dict, Mapping, Optional, Protocol, Union

if TYPE_CHECKING:
    from .snapshot import StateSnapshot

T_Result = Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]


class ProjectManagement(Protocol):
    def require_active_project(self) -> Union[str, Awaitable[str]]:
        """Return the active project id or raise NoActiveProjectError."""
        ...


class DataPersistence(Protocol):
    def load_project_data(self, project_id: str, key: str) -> Any:
        """Return the JSON value stored under ``key`` or None."""
        ...

    def log_error(
        self,
        context: str,
        error: BaseException,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...


class ReasoningEngine(Protocol):
    def perform_background_analysis(self, snapshot: "StateSnapshot", analysis_type: str) -> T_Result:
        ...


class IdentityEngine(Protocol):
    def perform_background_reflection(self, snapshot: "StateSnapshot") -> T_Result:
        ...


class DataArchiver(Protocol):
    def assess_archive_needs(self, project_id: str) -> Union[bool, Awaitable[bool]]:
        ...

    def perform_archiving(self, *, project_id: str) -> T_Result:
        ...


async def resolve(value: Any) -> Any:
    """Await ``value`` when a collaborator returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value
