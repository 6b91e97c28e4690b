"""
Boundary contracts between the session core and its external collaborators.

Key patterns:
- Protocol-based dependency injection (store and identity are passed in,
  never reached through a global client)
- Generic Result type for expected failures
- Row-level change notification as the only realtime primitive
"""

from collections.abc import Awaitable, Callable, Hashable, Mapping
from typing import Any, Generic, Literal, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from aura_core.domain.errors import StoreReadFailed, StoreWriteFailed

# Logical tables the core reads and writes
SESSIONS_TABLE = "sessions"
STATUSES_TABLE = "statuses"
VITALS_TABLE = "vitals"

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)

Row = dict[str, Any]
Filters = Mapping[str, Any]


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Why: Makes error paths visible in type system, forces handling decisions.
    When to use: When failure is expected business logic, not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error

    def __repr__(self) -> str:
        if self._error is not None:
            return f"Result.err({self._error!r})"
        return f"Result.ok({self._value!r})"


class RowChange(BaseModel):
    """One row-level change notification pushed by the store."""

    model_config = ConfigDict(frozen=True)

    table: str
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    new: Row = Field(default_factory=dict)


ChangeHandler = Callable[[RowChange], Awaitable[None]]


class DataStore(Protocol):
    """
    Narrow persistence interface the core depends on.

    Filters are column equality matches. Writes and reads are async and
    resolve to a Result; change subscription and release are synchronous so
    that tearing down a view releases its listeners before returning.
    """

    async def insert(self, table: str, row: Mapping[str, Any]) -> Result[Row, StoreWriteFailed]:
        """Insert a row and return it as committed (with store-assigned id)."""
        ...

    async def update(
        self, table: str, filters: Filters, patch: Mapping[str, Any]
    ) -> Result[list[Row], StoreWriteFailed]:
        """Apply a patch to every matching row and return the updated rows."""
        ...

    async def select(
        self,
        table: str,
        filters: Filters,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> Result[list[Row], StoreReadFailed]:
        """Point-in-time read of matching rows."""
        ...

    def subscribe_changes(self, table: str, filters: Filters, on_event: ChangeHandler) -> Hashable:
        """Register a listener for changes to matching rows; returns a handle."""
        ...

    def unsubscribe(self, handle: Hashable) -> None:
        """Release a listener. Unknown or already released handles are ignored."""
        ...


class IdentityProvider(Protocol):
    """Supplies the acting user, or None when nobody is signed in."""

    def current_user_id(self) -> str | None: ...
