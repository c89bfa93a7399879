"""
Explicit command tables.

Each service registers its operations by name. Executing a command never
raises a ServiceError to the caller: the outcome is a tagged ``Ok`` or ``Err``
that the HTTP layer renders through a single status table.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.errors import HTTP_STATUS, ErrorKind, ServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    details: list[dict[str, Any]] | None = None

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


Result = Ok[Any] | Err


class CommandTable:
    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: dict[str, Handler] = {}

    def register(self, operation: str) -> Callable[[Handler], Handler]:
        def decorator(func: Handler) -> Handler:
            if operation in self._handlers:
                raise ValueError(f"{self.name}: operation '{operation}' registered twice")
            self._handlers[operation] = func
            return func

        return decorator

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, operation: str, *args: Any, **kwargs: Any) -> Result:
        handler = self._handlers.get(operation)
        if handler is None:
            raise KeyError(f"{self.name}: unknown operation '{operation}'")
        try:
            return Ok(await handler(*args, **kwargs))
        except ServiceError as exc:
            logger.info(
                "Command rejected",
                extra={
                    "command": f"{self.name}.{operation}",
                    "error_kind": exc.kind.value,
                    "error": exc.message,
                },
            )
            return Err(kind=exc.kind, message=exc.message, details=exc.details)


def error_body(message: str, details: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message}
    if details:
        body["details"] = details
    return body


def render(result: Result, status_code: int = 200, exclude_none: bool = False) -> JSONResponse:
    """Translate a tagged result into a JSON response."""
    if isinstance(result, Err):
        return JSONResponse(
            status_code=result.status_code,
            content=jsonable_encoder(error_body(result.message, result.details)),
        )
    value = result.value
    if isinstance(value, BaseModel):
        content = value.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)
    elif isinstance(value, list):
        content = [
            v.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)
            if isinstance(v, BaseModel)
            else jsonable_encoder(v)
            for v in value
        ]
    else:
        content = jsonable_encoder(value, by_alias=True, exclude_none=exclude_none)
    return JSONResponse(status_code=status_code, content=content)
