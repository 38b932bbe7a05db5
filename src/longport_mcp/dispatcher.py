"""
Tool Dispatcher
===============
Maps tool names to (schema, handler), validates arguments, runs the
handler and turns every failure into a ToolError with a stable kind.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

import mcp.types as types
from pydantic import BaseModel, ValidationError

from .errors import (
    AuthError,
    BackendError,
    BackendRejectedError,
    ErrorKind,
    SubscriptionError,
    ToolError,
    TransientBackendError,
)
from .models import ToolInvocation
from .session import ProtocolSession

logger = logging.getLogger("longport-mcp.dispatcher")

ToolHandler = Callable[[BaseModel, ProtocolSession], Awaitable[Any]]


@dataclass
class ToolSpec:
    """One entry of the static tool catalog."""
    name: str
    description: str
    schema: Type[BaseModel]
    handler: ToolHandler
    read_only: bool = True
    title: Optional[str] = None
    annotations: Dict[str, Any] = field(default_factory=dict)

    def input_schema(self) -> Dict[str, Any]:
        schema = self.schema.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def to_mcp_tool(self) -> types.Tool:
        hints = {
            "title": self.title or self.name.replace("_", " ").title(),
            "readOnlyHint": self.read_only,
            "destructiveHint": not self.read_only,
            "idempotentHint": self.read_only,
            "openWorldHint": True,
        }
        hints.update(self.annotations)
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema(),
            annotations=types.ToolAnnotations(**hints),
        )


def describe_validation_error(error: ValidationError) -> str:
    """Compact, client-readable summary of a pydantic validation error."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)


class ToolDispatcher:
    """Static catalog of tools plus the dispatch boundary."""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}
        self._frozen = False

    def register(self, name: str, schema: Type[BaseModel], handler: ToolHandler,
                 description: str = "", read_only: bool = True,
                 title: Optional[str] = None) -> ToolSpec:
        if self._frozen:
            raise RuntimeError(f"Tool catalog is frozen; cannot register '{name}'")
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        spec = ToolSpec(
            name=name,
            description=description or (handler.__doc__ or "").strip(),
            schema=schema,
            handler=handler,
            read_only=read_only,
            title=title,
        )
        self._tools[name] = spec
        return spec

    def freeze(self) -> None:
        self._frozen = True

    def catalog(self) -> List[ToolSpec]:
        return list(self._tools.values())

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(self, invocation: ToolInvocation, session: ProtocolSession) -> Any:
        """
        Validate and run one tool invocation.

        Raises:
            ToolError: for every failure, with a stable kind
        """
        spec = self._tools.get(invocation.tool_name)
        if spec is None:
            raise ToolError(ErrorKind.UNKNOWN_TOOL, f"Unknown tool: {invocation.tool_name}")

        try:
            params = spec.schema.model_validate(invocation.arguments or {})
        except ValidationError as e:
            raise ToolError(ErrorKind.INVALID_ARGUMENT, describe_validation_error(e)) from None

        logger.info(f"[{session.id}] {spec.name} ({invocation.request_id})")
        try:
            result = await spec.handler(params, session)
        except ToolError:
            raise
        except AuthError:
            raise ToolError(
                ErrorKind.UNAUTHENTICATED,
                "Backend authentication failed; check the app key, secret and access token"
            ) from None
        except SubscriptionError as e:
            raise ToolError(
                ErrorKind.SUBSCRIPTION_FAILED,
                f"Subscription to {e.channel} was refused by the backend"
            ) from None
        except TransientBackendError:
            if spec.read_only:
                message = "Backend temporarily unavailable; please retry"
            else:
                message = ("Backend unavailable during a write operation; the request was not "
                           "retried and its outcome is unknown. Check order status before retrying")
            raise ToolError(ErrorKind.BACKEND_UNAVAILABLE, message) from None
        except BackendRejectedError as e:
            suffix = f" (code {e.code})" if e.code is not None else ""
            raise ToolError(
                ErrorKind.BACKEND_REJECTED, f"Backend rejected the request{suffix}"
            ) from None
        except BackendError:
            raise ToolError(ErrorKind.BACKEND_UNAVAILABLE, "Backend request failed") from None
        except Exception as e:
            logger.error(f"Error in tool {spec.name}: {e}", exc_info=True)
            raise ToolError(ErrorKind.INTERNAL, f"Tool {spec.name} failed unexpectedly") from None

        if session.closed:
            logger.info(f"[{session.id}] session closed; discarding {spec.name} result")
        return result
