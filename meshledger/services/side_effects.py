"""Post-commit dispatch of audit and alert writes.

Primary operations collect their side-channel writes here and flush them
once their own transaction has committed. Each write gets its own session
and transaction on the primary session's engine; a failure, including one
while rolling back or closing that session, is logged as a DependencyError
and dropped, leaving the primary session and its result untouched. Alert
events raised by a write are published only after it commits.
"""

from typing import Any, Awaitable, Callable, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.core.exceptions import DependencyError
from meshledger.events.publisher import EventPublisher
from meshledger.utils.logger import get_logger

logger = get_logger(__name__)

Effect = Callable[..., Awaitable[Any]]


class SideEffects:
    """Ordered queue of deferred side-channel writes.

    Example:
        effects = SideEffects()
        effects.add("audit.ip_assigned", audit.append, action=IP_ASSIGNED, ...)
        await session.commit()
        await effects.flush(session)
    """

    def __init__(self):
        self._pending: List[Tuple[str, Effect, Tuple[Any, ...], Dict[str, Any]]] = []

    def add(self, name: str, func: Effect, *args: Any, **kwargs: Any) -> None:
        """Queue ``func(session, *args, **kwargs)`` to run after commit."""
        self._pending.append((name, func, args, kwargs))

    def __len__(self) -> int:
        return len(self._pending)

    async def _run(
        self, bind: Any, func: Effect, args: Tuple[Any, ...], kwargs: Dict[str, Any]
    ) -> None:
        async with AsyncSession(
            bind=bind, expire_on_commit=False, autoflush=False
        ) as effect_session:
            try:
                await func(effect_session, *args, **kwargs)
                await effect_session.commit()
            except Exception:
                # Closing the session rolls back; nothing it held gets published
                EventPublisher.discard_deferred(effect_session)
                raise
            await EventPublisher.publish_deferred(effect_session)

    async def flush(self, session: AsyncSession) -> int:
        """Run queued writes in order and return how many succeeded."""
        pending, self._pending = self._pending, []
        succeeded = 0

        for name, func, args, kwargs in pending:
            try:
                await self._run(session.bind, func, args, kwargs)
                succeeded += 1
            except Exception as e:
                error = DependencyError(f"Side effect '{name}' failed: {e}")
                logger.error(
                    "Side effect dropped",
                    extra={
                        "side_effect": name,
                        "error": error.detail,
                        "error_type": type(e).__name__,
                    },
                )

        if pending:
            logger.debug(
                "Side effects flushed",
                extra={"total": len(pending), "succeeded": succeeded},
            )
        return succeeded
