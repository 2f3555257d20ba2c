import asyncio
import ipaddress
from typing import List

import pytest

from dhcpserver.lib.dhcp.allocation_store import AllocationStore
from dhcpserver.lib.dhcp.lease import AddressRange, AllocationRecord
from dhcpserver.lib.errors import AllocationNotFoundError, AllocationStoreError


class FakeAllocationStore(AllocationStore):
    """In-memory store that records every call. IPs in fail_ips raise, IPs in hang_ips never answer."""

    def __init__(self, records: List[AllocationRecord] | None = None) -> None:
        self.records = {r.ip_address: r for r in records or []}
        self.calls: list[tuple] = []
        self.fail_ips: set[str] = set()
        self.hang_ips: set[str] = set()
        self.fail_list = False

    async def _check(self, ip: str) -> None:
        if ip in self.fail_ips:
            raise AllocationStoreError(f"store unavailable for {ip}")
        if ip in self.hang_ips:
            await asyncio.sleep(3600)

    async def create_allocation(self, ip, mac, entity_ref, expiry, vlan_id):
        self.calls.append(("create", ip, mac, entity_ref, expiry, vlan_id))
        await self._check(ip)
        if ip in self.records:
            return self.records[ip]
        record = AllocationRecord(ip, mac, entity_ref, expiry, vlan_id)
        self.records[ip] = record
        return record

    async def update_allocation(self, ip, mac, expiry, vlan_id):
        self.calls.append(("update", ip, mac, expiry, vlan_id))
        await self._check(ip)
        existing = await self.get_allocation(ip)
        record = AllocationRecord(ip, mac, existing.entity_ref, expiry, vlan_id)
        self.records[ip] = record
        return record

    async def get_allocation(self, ip):
        if ip not in self.records:
            raise AllocationNotFoundError(ip)
        return self.records[ip]

    async def list_allocations(self):
        self.calls.append(("list",))
        if self.fail_list:
            raise AllocationStoreError("store unavailable")
        return list(self.records.values())

    async def delete_allocation(self, ip):
        self.calls.append(("delete", ip))
        await self._check(ip)
        return self.records.pop(ip, None) is not None


@pytest.fixture
def store() -> FakeAllocationStore:
    return FakeAllocationStore()


@pytest.fixture
def vlan10_range() -> AddressRange:
    return AddressRange(
        start_ip=ipaddress.ip_address("10.0.0.1"),
        end_ip=ipaddress.ip_address("10.0.0.50"),
        vlan_id="10",
    )


@pytest.fixture
def lease_file(tmp_path):
    path = tmp_path / "dnsmasq.leases"
    path.write_text("1700000000 aa:bb:cc:dd:ee:ff 10.0.0.5 host1 *\n")
    return path
