"""Build statesync components from a ``StateSyncConfig``"""

from typing import Any, Dict, Optional, Union

from .cell import Cell
from .sync import Publisher, Subscriber, TwoWaySync
from .sync.subscriber import UpdateCallback
from .transport import ChannelHub, ChannelTransport, MemoryTransport, WebSocketTransport
from .utils.config import StateSyncConfig, SyncMode
from .utils.errors import ConfigurationError
from .utils.logging import setup_logging

ROLES = ("publisher", "subscriber")


def configure_logging(config: StateSyncConfig) -> Dict[str, Any]:
    """Apply the logging section of ``config``"""
    log = config.logging
    return setup_logging(
        app_name=config.app_name,
        log_level="DEBUG" if config.debug else log.level,
        log_dir=log.directory,
        enable_json=log.format == "json",
        enable_console=log.console,
        enable_sentry=log.enable_sentry,
        sentry_dsn=log.sentry_dsn,
        max_bytes=log.max_size,
        backup_count=log.backup_count,
    )


def create_transport(
    config: StateSyncConfig,
    hub: Optional[ChannelHub] = None,
) -> ChannelTransport:
    """Create the transport named by ``config.transport.kind`` (not connected)"""
    transport_config = config.transport
    origin = config.sync.origin_id

    if transport_config.kind == "memory":
        if hub is None:
            raise ConfigurationError("A ChannelHub is required for the memory transport")
        return MemoryTransport(hub, origin=origin)

    if not transport_config.url:
        raise ConfigurationError("transport.url is required for the websocket transport")
    return WebSocketTransport(
        transport_config.url,
        origin=origin,
        connect_timeout=transport_config.connect_timeout,
        heartbeat_interval=transport_config.heartbeat_interval,
    )


def create_sync(
    transport: ChannelTransport,
    cell: Cell,
    state_id: str,
    config: Optional[StateSyncConfig] = None,
    role: str = "publisher",
    channel: Optional[str] = None,
    on_update: Optional[UpdateCallback] = None,
) -> Union[Publisher, Subscriber, TwoWaySync]:
    """Create an unstarted sync participant for ``cell``.

    In two-way mode ``role`` is ignored and a ``TwoWaySync`` is returned.
    """
    config = config or StateSyncConfig()
    sync_config = config.sync
    channel = channel or sync_config.default_channel

    if sync_config.mode == SyncMode.TWO_WAY:
        return TwoWaySync(
            transport,
            cell,
            state_id,
            channel=channel,
            on_update=on_update,
            answer_requests=sync_config.answer_requests,
        )

    if role == "publisher":
        return Publisher(
            transport,
            cell,
            state_id,
            channel=channel,
            answer_requests=sync_config.answer_requests,
            exclude_sender=config.transport.exclude_sender,
        )
    if role == "subscriber":
        return Subscriber(transport, cell, state_id, channel=channel, on_update=on_update)

    raise ConfigurationError(f"Unknown sync role: {role} (expected one of {ROLES})")


__all__ = ['configure_logging', 'create_transport', 'create_sync']
