"""Acting Identity Context.

This module provides context variables for passing the acting identity (the
user or service on whose behalf a mutation runs) to the AuditRecordBuilder
without threading it through every data-access call.

Security Impact:
    - Every audit record names an actor; "SYSTEM" is used when none is known
    - Identity lookup failures never block auditing

Architecture:
    - Uses contextvars, so the identity follows threads and asyncio tasks
    - An optional resolver hook lets a host framework (web request, job
      runner) supply the identity lazily
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

from src.domain.services.audit_record_builder import SYSTEM_ACTOR

logger = logging.getLogger(__name__)

_audit_actor: ContextVar[Optional[str]] = ContextVar('audit_actor', default=None)

_actor_resolver: Optional[Callable[[], Optional[str]]] = None


def set_audit_actor(actor: Optional[str]) -> None:
    """Set the acting identity for the current execution context."""
    _audit_actor.set(actor)


def register_actor_resolver(resolver: Optional[Callable[[], Optional[str]]]) -> None:
    """Install a fallback resolver consulted when no actor is set in context.

    Parameters:
        resolver: Callable returning the current identity, or None to remove
    """
    global _actor_resolver
    _actor_resolver = resolver


def get_current_actor() -> str:
    """Get the acting identity, defaulting to "SYSTEM".

    Returns:
        The context actor, else the resolver's answer, else "SYSTEM"
    """
    try:
        actor = _audit_actor.get()
        if not actor and _actor_resolver is not None:
            actor = _actor_resolver()
    except Exception as e:
        logger.debug(f"Actor resolution failed, using {SYSTEM_ACTOR}: {str(e)}")
        return SYSTEM_ACTOR
    return actor if actor else SYSTEM_ACTOR


@contextmanager
def audit_actor(actor: Optional[str]) -> Iterator[Optional[str]]:
    """Context manager scoping the acting identity.

    Example:
        ```python
        with audit_actor("alice"):
            audit_logger.audit(descriptor, execute)
        ```
    """
    token = _audit_actor.set(actor)
    try:
        yield actor
    finally:
        _audit_actor.reset(token)
