import logging
from typing import Dict, List, Optional

from portal.realtime.scopes import Scope
from portal.realtime.subscriptions import Consumer, SubscriptionHandle, SubscriptionManager
from portal.resolver import ViewerContext

logger = logging.getLogger(__name__)


class ViewerSession:
    """
    A connected viewer: a student dashboard, a teacher inbox or an
    administrator's composer.

    Use it as an async context manager; leaving the block releases every
    subscription the session opened.

        async with ViewerSession(manager, viewer) as session:
            await session.watch(default_scope(viewer), consumer)
    """

    def __init__(self, manager: SubscriptionManager, viewer: ViewerContext):
        self.manager = manager
        self.viewer = viewer
        self._handles: Dict[Scope, SubscriptionHandle] = {}

    async def __aenter__(self) -> "ViewerSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def scopes(self) -> List[Scope]:
        return list(self._handles)

    async def watch(self, scope: Scope, consumer: Optional[Consumer] = None) -> SubscriptionHandle:
        """Open the session's single subscription for ``scope``."""
        handle = self._handles.get(scope)
        if handle is not None and not handle.closed:
            return handle
        handle = await self.manager.open(scope, consumer)
        self._handles[scope] = handle
        logger.info(f"Viewer session watching {scope}")
        return handle

    def unwatch(self, scope: Scope) -> None:
        handle = self._handles.pop(scope, None)
        if handle is not None:
            handle.close()

    def close(self) -> None:
        for scope in list(self._handles):
            self.unwatch(scope)
