"""
SplitEasy — Application wiring.

Builds the local store, the sync core and the adapters, then runs the
background loops: connectivity checks, periodic sync and the realtime
subscription.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from spliteasy.config import settings
from spliteasy.core.connectivity import ConnectivityMonitor
from spliteasy.core.context import SyncContext
from spliteasy.core.deletion import DeletionProtocol
from spliteasy.core.group_service import GroupService
from spliteasy.core.identity import IdentityResolver
from spliteasy.core.realtime_router import RealtimeRouter
from spliteasy.core.schema import SchemaAdapter
from spliteasy.core.sync_engine import SyncEngine
from spliteasy.core.user_service import UserService
from spliteasy.data.db import DeleteQueue, GroupCache, LocalStore, SyncMetaStore, UserStore
from spliteasy.ports.notification_port import NotificationPort
from spliteasy.ports.remote_port import RealtimePort, RemoteStorePort
from spliteasy.ports.view_port import ViewObserver

logger = logging.getLogger(__name__)


@dataclass
class SplitEasyApp:
    remote: RemoteStorePort | None
    engine: SyncEngine
    router: RealtimeRouter
    deletion: DeletionProtocol
    groups: GroupService
    users: UserService
    connectivity: ConnectivityMonitor


def build_app(
    remote: RemoteStorePort | None = None,
    realtime: RealtimePort | None = None,
    notifier: NotificationPort | None = None,
    observer: ViewObserver | None = None,
    db_path: str | None = None,
) -> SplitEasyApp:
    """Wire every component together.

    Args:
        remote: Remote store. Defaults to PostgREST when Supabase is configured.
        realtime: Change feed. Defaults to Supabase Realtime when configured.
        notifier: Notification sink. Defaults to Telegram or the log.
        observer: View callbacks. Defaults to a no-op observer.
        db_path: SQLite file for the local cache.
    """
    if remote is None:
        from spliteasy.adapters.remote_factory import create_remote_store
        remote = create_remote_store()

    if realtime is None:
        from spliteasy.adapters.remote_factory import create_realtime
        realtime = create_realtime()

    if notifier is None:
        from spliteasy.adapters.remote_factory import create_notifier
        notifier = create_notifier()

    store = LocalStore(db_path)
    group_cache = GroupCache(store)
    queue = DeleteQueue(store)
    meta = SyncMetaStore(store)

    context = SyncContext(echo_window=settings.ECHO_WINDOW_SECONDS, last_sync=meta.get_last_sync())
    schema = SchemaAdapter(remote)
    identity = IdentityResolver(group_cache, meta)
    users = UserService(UserStore(store), remote, schema, context)

    engine = SyncEngine(
        remote, group_cache, queue, meta, schema, identity,
        current_user=users.current_user,
        notifier=notifier,
        observer=observer,
        context=context,
    )
    router = RealtimeRouter(engine, realtime, group_cache, schema, users.current_user, observer)
    deletion = DeletionProtocol(engine, group_cache, users.current_user, observer)
    groups = GroupService(group_cache, engine, deletion, users.current_user)

    connectivity = ConnectivityMonitor(remote)
    connectivity.add_listener(engine.set_online)
    connectivity.add_listener(router.on_connectivity)

    logger.info(
        "SplitEasy built (%s)", "remote sync enabled" if remote is not None else "local only",
    )
    return SplitEasyApp(
        remote=remote,
        engine=engine,
        router=router,
        deletion=deletion,
        groups=groups,
        users=users,
        connectivity=connectivity,
    )


async def run(app: SplitEasyApp) -> None:
    """Run the background sync service until cancelled."""
    if app.remote is None:
        logger.warning("No remote store configured, nothing to sync")
        return

    # Listeners hear about it if the backend is unreachable at startup
    await app.connectivity.check()

    if app.users.current_user() is None:
        logger.warning("No current user, sync starts after login")
    else:
        await app.engine.sync_all()
        # Offline at startup: the connectivity listener subscribes on reconnect
        if app.connectivity.online:
            await app.router.start()

    tasks = [
        asyncio.create_task(app.connectivity.run(), name="connectivity"),
        asyncio.create_task(app.engine.run_periodic(), name="periodic_sync"),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await app.router.stop()
        await app.remote.aclose()


def main() -> None:
    """Entry point: build the app and run the sync service."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting SplitEasy sync service...")
    app = build_app()
    try:
        asyncio.run(run(app))
    except KeyboardInterrupt:
        logger.info("SplitEasy sync service stopped")


if __name__ == "__main__":
    main()
