import asyncio
import os
from dataclasses import dataclass
from typing import List

import redis.asyncio as aioredis

from dhcpserver.lib.constants import (
    DHCP_CONF_DIR_PATH,
    DHCP_CONF_FILE_PATH,
    DHCP_LEASE_FILE_PATH,
    DHCP_LOG_FACILITY_PATH,
    DNSMASQ_BINARY,
    DNSMASQ_STOP_GRACE_SECONDS,
    ENTITY_DELETION_CONSUMER_GROUP,
    ENTITY_DELETION_CONSUMER_NAME,
    ENTITY_DELETION_STREAM_ID,
    LEASE_FILE_SETTLE_SECONDS,
    STORE_CALL_TIMEOUT_SECONDS,
    STORE_KEY_PREFIX,
)
from dhcpserver.lib.dhcp.allocation_store import AllocationStore
from dhcpserver.lib.dhcp.config import load_address_ranges
from dhcpserver.lib.dhcp.lease import AddressRange
from dhcpserver.lib.dhcp.utils import parse_dhcp_leases
from dhcpserver.lib.errors import DHCPConfigMissingError, LeaseFileMissingError
from dhcpserver.lib.log import get_logger
from dhcpserver.lib.services.backup_restore import restore_lease_file
from dhcpserver.lib.services.deletion_listener import EntityDeletionListener
from dhcpserver.lib.services.dhcp_supervisor import (
    DHCPServerSupervisor,
    dnsmasq_command,
    resolve_dnsmasq_binary,
)
from dhcpserver.lib.services.lease_reconciler import LeaseReconciler
from dhcpserver.lib.services.lease_watcher import LeaseFileWatcher

log = get_logger("server")


@dataclass
class DHCPServerConfig:
    """
    Configuration for the lease sync event loop.
        - lease_file_path: dnsmasq --dhcp-leasefile
        - conf_file_path: dnsmasq config holding the dhcp-range lines
        - conf_dir_path: passed to dnsmasq as --conf-dir
        - store_timeout: upper bound on every store round trip, a timeout is retried on the next lease change
    """

    lease_file_path: str = DHCP_LEASE_FILE_PATH
    conf_file_path: str = DHCP_CONF_FILE_PATH
    conf_dir_path: str = DHCP_CONF_DIR_PATH
    log_facility: str = DHCP_LOG_FACILITY_PATH
    dnsmasq_binary: str = DNSMASQ_BINARY
    store_prefix: str = STORE_KEY_PREFIX
    deletion_stream: str = ENTITY_DELETION_STREAM_ID
    deletion_group: str = ENTITY_DELETION_CONSUMER_GROUP
    deletion_consumer: str = ENTITY_DELETION_CONSUMER_NAME
    store_timeout: float = STORE_CALL_TIMEOUT_SECONDS
    settle_delay: float = LEASE_FILE_SETTLE_SECONDS
    stop_grace: float = DNSMASQ_STOP_GRACE_SECONDS


async def lease_watch_loop(
    lease_file_path: str,
    reconciler: LeaseReconciler,
    store: AllocationStore,
    ranges: List[AddressRange],
    settle_delay: float = LEASE_FILE_SETTLE_SECONDS,
    store_timeout: float = STORE_CALL_TIMEOUT_SECONDS,
) -> None:
    """Watch -> parse -> reconcile, one lease file change at a time. Re-attaches after the file goes missing."""
    while True:
        if not os.path.exists(lease_file_path):
            await restore_lease_file(lease_file_path, store, ranges, timeout=store_timeout)

        watcher = LeaseFileWatcher(lease_file_path, settle_delay=settle_delay)
        watcher.start()
        try:
            async for data in watcher.changes():
                leases, bad_lines = parse_dhcp_leases(data)
                if bad_lines:
                    log.warning("skipped unparsable lease lines", path=lease_file_path, lines=bad_lines)
                await reconciler.reconcile(leases)
        except LeaseFileMissingError as e:
            log.error("lease file lost, restoring from backup", error=str(e))
        finally:
            await watcher.stop()


async def dhcp_event_loop(
    deletion_queue: asyncio.Queue,
    *,
    store: AllocationStore,
    config: DHCPServerConfig,
    redis_conn: aioredis.Redis | None = None,
) -> None:
    """
    Runs until a fatal error. The first task to fail cancels the others and its error is re-raised.
    """
    if not os.path.exists(config.conf_file_path):
        raise DHCPConfigMissingError(f"{config.conf_file_path} not found, please check the volumeMount")

    binary = resolve_dnsmasq_binary(config.dnsmasq_binary)
    ranges = load_address_ranges(config.conf_file_path)

    # Create lease file from the allocation backup
    await restore_lease_file(config.lease_file_path, store, ranges, timeout=config.store_timeout)

    supervisor = DHCPServerSupervisor(
        dnsmasq_command(binary, config.conf_dir_path, config.log_facility),
        lease_file_path=config.lease_file_path,
        stop_grace=config.stop_grace,
    )
    await supervisor.start()

    reconciler = LeaseReconciler(store, ranges, timeout=config.store_timeout)

    tasks = [
        asyncio.create_task(lease_watch_loop(
            config.lease_file_path,
            reconciler,
            store,
            ranges,
            settle_delay=config.settle_delay,
            store_timeout=config.store_timeout,
        ), name="lease_watch"),
        asyncio.create_task(supervisor.supervise(deletion_queue), name="dnsmasq_supervisor"),
    ]
    if redis_conn is not None:
        listener = EntityDeletionListener(
            redis_conn,
            deletion_queue,
            stream=config.deletion_stream,
            group=config.deletion_group,
            consumer=config.deletion_consumer,
        )
        tasks.append(asyncio.create_task(listener.run(), name="entity_deletion_listener"))

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await supervisor.stop()
