#!/usr/bin/env python3
import argparse
import asyncio
import os
import sys

import redis.asyncio as aioredis

from dhcpserver.lib import constants
from dhcpserver.lib.dhcp.allocation_store import RedisAllocationStore
from dhcpserver.lib.errors import DHCPServerFatalError
from dhcpserver.lib.log import configure_logging, get_logger
from dhcpserver.lib.services.dhcp_loop import DHCPServerConfig, dhcp_event_loop

LEASE_FILE = os.getenv("DHCPSERVER_LEASE_FILE", constants.DHCP_LEASE_FILE_PATH)
CONF_FILE = os.getenv("DHCPSERVER_CONF_FILE", constants.DHCP_CONF_FILE_PATH)
CONF_DIR = os.getenv("DHCPSERVER_CONF_DIR", os.path.dirname(CONF_FILE) or constants.DHCP_CONF_DIR_PATH)
LOG_FACILITY = os.getenv("DHCPSERVER_LOG_FACILITY", constants.DHCP_LOG_FACILITY_PATH)
DNSMASQ_BINARY = os.getenv("DHCPSERVER_DNSMASQ_BINARY", constants.DNSMASQ_BINARY)
STORE_PREFIX = os.getenv("DHCPSERVER_STORE_PREFIX", constants.STORE_KEY_PREFIX)
DELETION_STREAM = os.getenv("DHCPSERVER_DELETION_STREAM", constants.ENTITY_DELETION_STREAM_ID)
DELETION_GROUP = os.getenv("DHCPSERVER_DELETION_GROUP", constants.ENTITY_DELETION_CONSUMER_GROUP)
DELETION_CONSUMER = os.getenv("DHCPSERVER_DELETION_CONSUMER", constants.ENTITY_DELETION_CONSUMER_NAME)
STORE_TIMEOUT = float(os.getenv("DHCPSERVER_STORE_TIMEOUT", constants.STORE_CALL_TIMEOUT_SECONDS))
LOG_LEVEL = os.getenv("DHCPSERVER_LOG_LEVEL", "info")

# Redis configuration
REDIS_HOST = os.getenv("DHCPSERVER_REDIS_HOST", os.getenv("REDIS_HOST", "127.0.0.1"))
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))

log = get_logger("server")


async def wait_for_redis(host: str, port: int, max_retries=30, delay=2) -> aioredis.Redis:
    """Wait for Redis to be available."""
    for i in range(max_retries):
        try:
            r = aioredis.Redis(host=host, port=port)
            await r.ping()
            log.info("connected to redis", host=host, port=port)
            return r
        except Exception:
            log.info(f"Waiting for Redis... ({i+1}/{max_retries})")
            await asyncio.sleep(delay)
    raise RuntimeError("Could not connect to Redis")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="dnsmasq lease sync and supervisor")
    parser.add_argument("--lease-file", default=LEASE_FILE, help="dnsmasq lease file to watch and restore")
    parser.add_argument("--conf-file", default=CONF_FILE, help="dnsmasq config holding dhcp-range lines")
    parser.add_argument("--conf-dir", default=CONF_DIR, help="passed to dnsmasq as --conf-dir")
    parser.add_argument("--log-facility", default=LOG_FACILITY, help="passed to dnsmasq as --log-facility")
    parser.add_argument("--dnsmasq", default=DNSMASQ_BINARY, help="dnsmasq binary name or path")
    parser.add_argument("--redis-host", default=REDIS_HOST)
    parser.add_argument("--redis-port", type=int, default=REDIS_PORT)
    parser.add_argument("--store-prefix", default=STORE_PREFIX, help="key prefix of the IP allocation records")
    parser.add_argument("--deletion-stream", default=DELETION_STREAM, help="Redis stream of deleted entities")
    parser.add_argument("--deletion-group", default=DELETION_GROUP, help="consumer group reading the deletion stream")
    parser.add_argument("--deletion-consumer", default=DELETION_CONSUMER, help="consumer name inside the group")
    parser.add_argument("--store-timeout", type=float, default=STORE_TIMEOUT, help="seconds per store call")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    parser.add_argument("--log-format", choices=["json", "console"], default="json")
    return parser.parse_args(argv)


async def async_main(args: argparse.Namespace) -> None:
    config = DHCPServerConfig(
        lease_file_path=args.lease_file,
        conf_file_path=args.conf_file,
        conf_dir_path=args.conf_dir,
        log_facility=args.log_facility,
        dnsmasq_binary=args.dnsmasq,
        store_prefix=args.store_prefix,
        deletion_stream=args.deletion_stream,
        deletion_group=args.deletion_group,
        deletion_consumer=args.deletion_consumer,
        store_timeout=args.store_timeout,
    )

    redis_client = await wait_for_redis(args.redis_host, args.redis_port)
    store = RedisAllocationStore(redis_client, prefix=config.store_prefix)
    deletion_queue: asyncio.Queue = asyncio.Queue(maxsize=1000)

    log.info("dhcpserver starting", lease_file=config.lease_file_path, conf_file=config.conf_file_path)
    try:
        await dhcp_event_loop(deletion_queue, store=store, config=config, redis_conn=redis_client)
    finally:
        await redis_client.aclose()


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_format)
    try:
        asyncio.run(async_main(args))
    except DHCPServerFatalError as e:
        log.critical("fatal error, shutting down", error=str(e))
        return 1
    except OSError as e:
        log.critical("unrecoverable file system error", error=str(e))
        return 1
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())
