"""Optional collaborators, injected at construction.

Each interface has a no-op default so callers never need to check whether
the collaborator is configured.
"""

import logging
from typing import Protocol

from axreplay.models import ScriptAction

logger = logging.getLogger(__name__)


class CodeGenerator(Protocol):
    """Produces JavaScript for in-page AI requests raised while recording."""

    enabled: bool

    async def generate(self, kind: str, html: str, description: str) -> str: ...


class NullCodeGenerator:
    enabled = False

    async def generate(self, kind: str, html: str, description: str) -> str:
        raise NotImplementedError("no code generator configured")


class ScriptPublisher(Protocol):
    """Receives finished recordings, e.g. to persist or register them as tools."""

    async def publish(self, name: str, actions: list[ScriptAction]) -> None: ...


class NullScriptPublisher:
    async def publish(self, name: str, actions: list[ScriptAction]) -> None:
        logger.debug(f"[Hooks] Recording {name!r} with {len(actions)} actions not published")
