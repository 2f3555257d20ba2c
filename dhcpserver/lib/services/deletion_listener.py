import asyncio
import json
from typing import List

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from dhcpserver.lib.constants import (
    ENTITY_DELETION_BLOCK_MS,
    ENTITY_DELETION_CONSUMER_GROUP,
    ENTITY_DELETION_CONSUMER_NAME,
    ENTITY_DELETION_STREAM_ID,
)
from dhcpserver.lib.log import get_logger

log = get_logger("server")

RETRY_INTERVAL_SECONDS = 2


def _decode_bytes(v):
    if v is None:
        return None
    if isinstance(v, bytes):
        return v.decode(errors="replace")
    return str(v)


def parse_deletion_refs(fields: dict) -> List[str]:
    """
    Extract the deleted entity identifiers from one stream entry.

    The refs field is either a JSON list (["aa:bb:..", "vm-1"]) or a comma separated string.
    """
    fields = {_decode_bytes(k): _decode_bytes(v) for k, v in fields.items()}
    raw = fields.get("refs")
    if not raw:
        return []

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = raw.split(",")

    if isinstance(parsed, str):
        parsed = [parsed]
    if not isinstance(parsed, list):
        parsed = [raw]
    return [str(ref).strip() for ref in parsed if str(ref).strip()]


class EntityDeletionListener:
    """
    Feeds batches of deleted VM/pod identifiers from a Redis stream into a queue.

    Reads through a consumer group, so entries published between two reads or while
    the service is down are delivered once the listener reads again. Entries still
    pending for this consumer (read but never acked) are delivered first.
    """

    def __init__(
        self,
        redis_conn: aioredis.Redis,
        queue: asyncio.Queue,
        stream: str = ENTITY_DELETION_STREAM_ID,
        group: str = ENTITY_DELETION_CONSUMER_GROUP,
        consumer: str = ENTITY_DELETION_CONSUMER_NAME,
        block_ms: int = ENTITY_DELETION_BLOCK_MS,
    ) -> None:
        self.redis_conn = redis_conn
        self.queue = queue
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.block_ms = block_ms
        # "0" replays this consumer's pending entries, ">" reads new ones
        self.read_id = "0"
        self._group_ready = False

    async def ensure_consumer_group(self) -> None:
        """Create the consumer group if it doesn't exist."""
        try:
            # A new group starts at the stream tail, older deletions are already reflected in the store
            await self.redis_conn.xgroup_create(self.stream, self.group, id="$", mkstream=True)
            log.info("created consumer group", stream=self.stream, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def poll_once(self) -> int:
        """Read one batch of stream entries. returns: number of batches queued."""
        if not self._group_ready:
            await self.ensure_consumer_group()

        response = await self.redis_conn.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: self.read_id},
            count=100,
            block=self.block_ms,
        )

        queued = 0
        seen = 0
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                seen += 1
                refs = parse_deletion_refs(fields or {})
                if refs:
                    await self.queue.put(refs)
                    queued += 1
                else:
                    log.warning("ignoring entity deletion without refs", entry_id=_decode_bytes(entry_id))
                await self.redis_conn.xack(self.stream, self.group, entry_id)

        if self.read_id != ">" and seen == 0:
            self.read_id = ">"
        return queued

    async def run(self) -> None:
        log.info("listening for entity deletions", stream=self.stream, group=self.group, consumer=self.consumer)
        while True:
            try:
                await self.poll_once()
            except RedisError as e:
                log.error("entity deletion stream read failed", stream=self.stream, error=str(e))
                # Re-create the group on the next read in case the stream was dropped
                self._group_ready = False
                await asyncio.sleep(RETRY_INTERVAL_SECONDS)
