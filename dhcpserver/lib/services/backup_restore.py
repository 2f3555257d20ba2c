import asyncio
import os
from typing import List

from dhcpserver.lib.constants import LEASE_CLIENT_ID_WILDCARD, STORE_CALL_TIMEOUT_SECONDS
from dhcpserver.lib.dhcp.allocation_store import AllocationStore
from dhcpserver.lib.dhcp.lease import AddressRange, AllocationRecord
from dhcpserver.lib.dhcp.utils import format_lease_line
from dhcpserver.lib.errors import AllocationStoreError
from dhcpserver.lib.log import get_logger

log = get_logger("server")


def _matching_range(record: AllocationRecord, ranges: List[AddressRange]) -> AddressRange | None:
    for address_range in ranges:
        if address_range.vlan_id == record.vlan_id and record.ip_address in address_range:
            return address_range
    return None


async def restore_lease_file(
    path: str,
    store: AllocationStore,
    ranges: List[AddressRange],
    timeout: float = STORE_CALL_TIMEOUT_SECONDS,
) -> int:
    """
    Rebuild the dnsmasq lease file from the allocations kept in the store.

    Only allocations whose VLAN and IP fall in a configured dhcp-range are written.
    OSError from writing the file is left to the caller, there is no lease file without it.

    returns: number of restored leases
    """
    log.info("retrieving backup", path=path)

    try:
        allocations = await asyncio.wait_for(store.list_allocations(), timeout=timeout)
    except (AllocationStoreError, asyncio.TimeoutError) as e:
        log.error("failed to fetch IPAllocations, starting with an empty lease file", error=str(e) or type(e).__name__)
        allocations = []

    lease_dir = os.path.dirname(path)
    if lease_dir:
        os.makedirs(lease_dir, exist_ok=True)

    restored = 0
    with open(path, "w") as f:
        for allocation in allocations:
            if _matching_range(allocation, ranges) is None:
                continue
            f.write(format_lease_line(
                allocation.lease_expiry,
                allocation.mac_address,
                allocation.ip_address,
                allocation.entity_ref or LEASE_CLIENT_ID_WILDCARD,
                LEASE_CLIENT_ID_WILDCARD,
            ))
            restored += 1
            log.info("restored IPAllocation", ip=allocation.ip_address)

    return restored
