import asyncio
import sys

import pytest

from dhcpserver.lib.dhcp.lease import AllocationRecord
from dhcpserver.lib.errors import DHCPBinaryNotFoundError, DHCPConfigMissingError
from dhcpserver.lib.services import dhcp_loop
from dhcpserver.lib.services.dhcp_loop import DHCPServerConfig, dhcp_event_loop, lease_watch_loop
from dhcpserver.lib.services.lease_reconciler import LeaseReconciler

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def dnsmasq_conf(tmp_path):
    conf = tmp_path / "dnsmasq.d" / "dnsmasq.conf"
    conf.parent.mkdir()
    conf.write_text("dhcp-range=set:10,10.0.0.1,10.0.0.50,255.255.255.0,12h\n")
    return conf


@pytest.fixture
def config(tmp_path, dnsmasq_conf):
    return DHCPServerConfig(
        lease_file_path=str(tmp_path / "leases" / "dnsmasq.leases"),
        conf_file_path=str(dnsmasq_conf),
        conf_dir_path=str(dnsmasq_conf.parent),
        log_facility=str(tmp_path / "dnsmasq.log"),
        store_timeout=1.0,
        settle_delay=0.01,
    )


async def test_missing_config_is_fatal(store, config, tmp_path):
    config.conf_file_path = str(tmp_path / "missing.conf")

    with pytest.raises(DHCPConfigMissingError):
        await dhcp_event_loop(asyncio.Queue(), store=store, config=config)


async def test_missing_binary_is_fatal(store, config):
    config.dnsmasq_binary = "dnsmasq-that-does-not-exist"

    with pytest.raises(DHCPBinaryNotFoundError):
        await dhcp_event_loop(asyncio.Queue(), store=store, config=config)


async def test_watch_loop_restores_missing_lease_file(store, vlan10_range, tmp_path):
    store.records["10.0.0.5"] = AllocationRecord("10.0.0.5", "aa:bb:cc:dd:ee:ff", "vm-1", "1700000000", "10")
    lease_path = tmp_path / "dnsmasq.leases"
    reconciler = LeaseReconciler(store, [vlan10_range])

    task = asyncio.create_task(lease_watch_loop(str(lease_path), reconciler, store, [vlan10_range], settle_delay=0.01))
    try:
        await wait_until(lambda: "10.0.0.5" in reconciler.mirror)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert lease_path.read_text() == "1700000000 aa:bb:cc:dd:ee:ff 10.0.0.5 vm-1 *\n"
    assert reconciler.mirror["10.0.0.5"].hostname == "vm-1"


async def test_entity_deletion_end_to_end(store, config, monkeypatch):
    store.records["10.0.0.5"] = AllocationRecord("10.0.0.5", "aa:bb:cc:dd:ee:ff", "host1", "1700000000", "10")
    monkeypatch.setattr(dhcp_loop, "resolve_dnsmasq_binary", lambda name: sys.executable)
    monkeypatch.setattr(dhcp_loop, "dnsmasq_command", lambda binary, conf_dir, log_facility: SLEEPER)
    queue: asyncio.Queue = asyncio.Queue()

    task = asyncio.create_task(dhcp_event_loop(queue, store=store, config=config))
    try:
        await wait_until(lambda: ("create", "10.0.0.5", "aa:bb:cc:dd:ee:ff", "host1", "1700000000", "10") in store.calls)
        await queue.put(["host1"])
        await wait_until(lambda: ("delete", "10.0.0.5") in store.calls)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert "10.0.0.5" not in store.records
    with open(config.lease_file_path) as f:
        assert f.read() == ""
