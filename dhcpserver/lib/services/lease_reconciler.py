import asyncio
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Tuple

from dhcpserver.lib.constants import STORE_CALL_TIMEOUT_SECONDS
from dhcpserver.lib.dhcp.allocation_store import AllocationStore
from dhcpserver.lib.dhcp.lease import AddressRange, LeaseRecord, find_vlan_id
from dhcpserver.lib.errors import AllocationNotFoundError
from dhcpserver.lib.log import get_logger

log = get_logger("server")

LeaseMirror = Dict[str, LeaseRecord]


class LeaseActionType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class LeaseAction:
    action: LeaseActionType
    ip: str
    record: LeaseRecord | None  # None for DELETE
    success: bool = False
    error: str | None = None


def diff_leases(observed: Iterable[LeaseRecord], mirror: LeaseMirror) -> List[LeaseAction]:
    """
    Compare the leases currently in the lease file with the last known state.

    - IPs gone from the file are deleted (dnsmasq expired the lease)
    - new IPs are created
    - IPs whose line changed in any field are updated
    Unchanged IPs produce no action.
    """
    observed_by_ip: LeaseMirror = {}
    for record in observed:
        observed_by_ip[record.ip_address] = record

    actions: List[LeaseAction] = []
    for ip in mirror:
        if ip not in observed_by_ip:
            actions.append(LeaseAction(action=LeaseActionType.DELETE, ip=ip, record=None))

    for ip, record in observed_by_ip.items():
        known = mirror.get(ip)
        if known is None:
            actions.append(LeaseAction(action=LeaseActionType.CREATE, ip=ip, record=record))
        elif known != record:
            actions.append(LeaseAction(action=LeaseActionType.UPDATE, ip=ip, record=record))

    return actions


async def _create(store: AllocationStore, record: LeaseRecord, vlan_id: str) -> None:
    await store.create_allocation(
        record.ip_address,
        record.mac_address,
        record.hostname,
        record.epoch_timestamp,
        vlan_id,
    )


async def _apply_action(store: AllocationStore, action: LeaseAction, ranges: List[AddressRange]) -> None:
    if action.action == LeaseActionType.DELETE:
        deleted = await store.delete_allocation(action.ip)
        if not deleted:
            log.info("IPAllocation already absent", ip=action.ip)
        return

    if action.record is None:
        raise ValueError(f"{action.action.value} of {action.ip} has no lease record")
    vlan_id = find_vlan_id(action.ip, ranges)

    if action.action == LeaseActionType.CREATE:
        await _create(store, action.record, vlan_id)
        return

    try:
        await store.update_allocation(
            action.ip,
            action.record.mac_address,
            action.record.epoch_timestamp,
            vlan_id,
        )
    except AllocationNotFoundError:
        log.warning("IPAllocation missing on update, recreating", ip=action.ip)
        await _create(store, action.record, vlan_id)


async def reconcile_leases(
    observed: Iterable[LeaseRecord],
    mirror: LeaseMirror,
    store: AllocationStore,
    ranges: List[AddressRange],
    timeout: float = STORE_CALL_TIMEOUT_SECONDS,
) -> Tuple[LeaseMirror, List[LeaseAction]]:
    """
    Push lease file changes to the store.

    returns: the new mirror, the actions that were attempted.
    IPs whose store call failed keep their previous mirror entry so the next
    lease file change attempts the same action again.
    """
    actions = diff_leases(observed, mirror)
    new_mirror: LeaseMirror = dict(mirror)

    for action in actions:
        try:
            await asyncio.wait_for(_apply_action(store, action, ranges), timeout=timeout)
        except asyncio.TimeoutError:
            action.error = f"store call timed out after {timeout}s"
        except Exception as e:
            action.error = str(e) or type(e).__name__

        if action.error is not None:
            log.error(f"failed to {action.action.value} IP allocation", ip=action.ip, error=action.error)
            continue

        action.success = True
        if action.record is None:
            new_mirror.pop(action.ip, None)
        else:
            new_mirror[action.ip] = action.record

    return new_mirror, actions


class LeaseReconciler:
    """Owns the lease mirror. Only the lease watch task may call reconcile()."""

    def __init__(
        self,
        store: AllocationStore,
        ranges: List[AddressRange],
        timeout: float = STORE_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.ranges = ranges
        self.timeout = timeout
        self.mirror: LeaseMirror = {}

    async def reconcile(self, observed: Iterable[LeaseRecord]) -> List[LeaseAction]:
        self.mirror, actions = await reconcile_leases(
            observed, self.mirror, self.store, self.ranges, timeout=self.timeout
        )

        if actions:
            failed = sum(1 for a in actions if not a.success)
            log.info("reconciled leases", actions=len(actions), failed=failed, leases=len(self.mirror))
        log.debug("lease mirror", mirror={ip: dataclasses.asdict(r) for ip, r in self.mirror.items()})
        return actions
