"""
Routes function calls issued by the remote model to registered handlers.

The dispatcher is a router plus result formatter and holds no domain logic:
each function name maps to exactly one handler (or one collaborator
operation). ``execute`` never raises. Every outcome, including unknown names
and handler failures, becomes exactly one textual result carrying the
invocation id, because the remote endpoint waits for a reply to every call.
"""

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from voice_session.config.constants import LOGGER_NAME
from voice_session.errors import ToolExecutionError
from voice_session.models.envelopes import SessionEffect, ToolCallEnvelope, ToolResultEnvelope

logger = logging.getLogger(LOGGER_NAME)

# Handlers receive the call's argument map and return a result (sync or async)
ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

DEFAULT_RESULT = "ok"


@dataclass
class RegisteredTool:
    name: str
    handler: ToolHandler
    declaration: Optional[Dict[str, Any]] = None
    effect: Optional[SessionEffect] = None


def format_result(value: Any) -> str:
    """Render a handler's return value as the text sent back to the model."""
    if value is None:
        return DEFAULT_RESULT
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


class ToolDispatcher:
    """Registry of tool handlers keyed by function name."""

    def __init__(self):
        self.handlers: Dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        declaration: Optional[Dict[str, Any]] = None,
        effect: Optional[SessionEffect] = None,
    ) -> None:
        """
        Register a handler for a function name.

        Args:
            name: Function name as issued by the remote model
            handler: Callable receiving the argument map
            declaration: Function declaration advertised in the session setup
            effect: Side effect on the session applied after the result is sent

        Raises:
            ValueError: If the name is already registered
        """
        if name in self.handlers:
            raise ValueError(f"Tool already registered: {name}")
        if declaration is not None and declaration.get("name") != name:
            declaration = {**declaration, "name": name}
        self.handlers[name] = RegisteredTool(name, handler, declaration, effect)
        logger.debug(f"Registered tool: {name}")

    def register_operation(
        self,
        name: str,
        operation: Callable[..., Any],
        declaration: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Register a collaborator operation called with the arguments as keywords."""

        def _call(args: Dict[str, Any]):
            return operation(**args)

        self.register(name, _call, declaration)

    def tool(
        self,
        name: str,
        declaration: Optional[Dict[str, Any]] = None,
        effect: Optional[SessionEffect] = None,
    ):
        """Decorator form of ``register``."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler, declaration, effect)
            return handler

        return decorator

    def unregister(self, name: str) -> None:
        self.handlers.pop(name, None)

    def declarations(self) -> List[Dict[str, Any]]:
        """Function declarations of every registered tool that has one."""
        return [tool.declaration for tool in self.handlers.values() if tool.declaration]

    async def execute(self, envelope: ToolCallEnvelope) -> ToolResultEnvelope:
        """
        Run one function call and produce its single result.

        Args:
            envelope: The function call to execute

        Returns:
            ToolResultEnvelope: Result text with the same invocation id
        """
        logger.info(f"Executing function call: {envelope.name} (id={envelope.id})")
        logger.debug(f"Function call arguments: {envelope.args}")

        tool = self.handlers.get(envelope.name)
        if tool is None:
            logger.warning(f"Unknown function call received: {envelope.name}")
            return ToolResultEnvelope(
                id=envelope.id, name=envelope.name, result=f"Unknown function: {envelope.name}"
            )

        effect = None
        try:
            value = tool.handler(dict(envelope.args))
            if inspect.isawaitable(value):
                value = await value
            result = format_result(value)
            effect = tool.effect
        except ToolExecutionError as e:
            logger.warning(f"Function {envelope.name} failed: {e}")
            result = str(e) or f"Error executing function {envelope.name}."
        except Exception as e:
            logger.error(f"Error executing function call {envelope.name}: {e}", exc_info=True)
            result = f"Error executing function {envelope.name}."

        logger.debug(f"Function {envelope.name} result: {result[:200]}")
        return ToolResultEnvelope(id=envelope.id, name=envelope.name, result=result, effect=effect)
