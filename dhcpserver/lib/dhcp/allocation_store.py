from abc import ABC, abstractmethod
from typing import List

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dhcpserver.lib.constants import STORE_KEY_PREFIX
from dhcpserver.lib.dhcp.lease import AllocationRecord
from dhcpserver.lib.errors import AllocationNotFoundError, AllocationStoreError
from dhcpserver.lib.log import get_logger

log = get_logger("server")


class AllocationStore(ABC):
    """Durable record of which IP is leased to which entity."""

    @abstractmethod
    async def create_allocation(self, ip: str, mac: str, entity_ref: str, expiry: str, vlan_id: str) -> AllocationRecord:
        ...

    @abstractmethod
    async def update_allocation(self, ip: str, mac: str, expiry: str, vlan_id: str) -> AllocationRecord:
        ...

    @abstractmethod
    async def get_allocation(self, ip: str) -> AllocationRecord:
        """Raises AllocationNotFoundError when no record exists for ip."""
        ...

    @abstractmethod
    async def list_allocations(self) -> List[AllocationRecord]:
        ...

    @abstractmethod
    async def delete_allocation(self, ip: str) -> bool:
        ...


def _decode(v) -> str:
    if v is None:
        return ""
    if isinstance(v, bytes):
        return v.decode(errors="replace")
    return str(v)


class RedisAllocationStore(AllocationStore):
    """
    Keeps one hash per allocation at <prefix>:<ip> and an index set at <prefix>:index.
    Hash fields: mac_addr, entity_ref, lease_expiry, vlan_id.
    """

    def __init__(self, redis_conn: aioredis.Redis, prefix: str = STORE_KEY_PREFIX) -> None:
        self.redis_conn = redis_conn
        self.prefix = prefix

    def _key(self, ip: str) -> str:
        return f"{self.prefix}:{ip}"

    @property
    def _index_key(self) -> str:
        return f"{self.prefix}:index"

    def _to_record(self, ip: str, data: dict) -> AllocationRecord:
        fields = {_decode(k): _decode(v) for k, v in data.items()}
        return AllocationRecord(
            ip_address=ip,
            mac_address=fields.get("mac_addr", ""),
            entity_ref=fields.get("entity_ref", ""),
            lease_expiry=fields.get("lease_expiry", ""),
            vlan_id=fields.get("vlan_id", ""),
        )

    async def _write(self, record: AllocationRecord) -> None:
        await self.redis_conn.hset(self._key(record.ip_address), mapping={
            "mac_addr": record.mac_address,
            "entity_ref": record.entity_ref,
            "lease_expiry": record.lease_expiry,
            "vlan_id": record.vlan_id,
        })
        await self.redis_conn.sadd(self._index_key, record.ip_address)

    async def get_allocation(self, ip: str) -> AllocationRecord:
        try:
            data = await self.redis_conn.hgetall(self._key(ip))
        except RedisError as e:
            raise AllocationStoreError(f"failed to get IPAllocation {ip}: {e}") from e
        if not data:
            raise AllocationNotFoundError(ip)
        return self._to_record(ip, data)

    async def create_allocation(self, ip: str, mac: str, entity_ref: str, expiry: str, vlan_id: str) -> AllocationRecord:
        # Leases restored from backup already have a record; keep it as is
        try:
            return await self.get_allocation(ip)
        except AllocationNotFoundError:
            pass

        record = AllocationRecord(
            ip_address=ip,
            mac_address=mac,
            entity_ref=entity_ref,
            lease_expiry=expiry,
            vlan_id=vlan_id,
        )
        try:
            await self._write(record)
        except RedisError as e:
            raise AllocationStoreError(f"failed to create IPAllocation {ip}: {e}") from e

        log.info("created IPAllocation", ip=ip, mac=mac, entity_ref=entity_ref, vlan_id=vlan_id)
        return record

    async def update_allocation(self, ip: str, mac: str, expiry: str, vlan_id: str) -> AllocationRecord:
        existing = await self.get_allocation(ip)

        record = AllocationRecord(
            ip_address=ip,
            mac_address=mac,
            entity_ref=existing.entity_ref,
            lease_expiry=expiry,
            vlan_id=vlan_id,
        )
        try:
            await self._write(record)
        except RedisError as e:
            raise AllocationStoreError(f"failed to update IPAllocation {ip}: {e}") from e

        log.info("updated IPAllocation", ip=ip, mac=mac, lease_expiry=expiry, vlan_id=vlan_id)
        return record

    async def list_allocations(self) -> List[AllocationRecord]:
        try:
            ips = sorted(_decode(ip) for ip in await self.redis_conn.smembers(self._index_key))
            records: List[AllocationRecord] = []
            for ip in ips:
                data = await self.redis_conn.hgetall(self._key(ip))
                if not data:
                    # Index entry left behind by an interrupted delete
                    continue
                records.append(self._to_record(ip, data))
        except RedisError as e:
            raise AllocationStoreError(f"failed to list IPAllocations: {e}") from e
        return records

    async def delete_allocation(self, ip: str) -> bool:
        try:
            deleted = await self.redis_conn.delete(self._key(ip))
            await self.redis_conn.srem(self._index_key, ip)
        except RedisError as e:
            raise AllocationStoreError(f"failed to delete IPAllocation {ip}: {e}") from e

        if deleted:
            log.info("deleted IPAllocation", ip=ip)
        return bool(deleted)
