import asyncio
from unittest.mock import AsyncMock, call

import pytest
from redis.exceptions import ResponseError

from dhcpserver.lib.services.deletion_listener import EntityDeletionListener, parse_deletion_refs


def test_parse_json_refs():
    assert parse_deletion_refs({b"refs": b'["aa:bb:cc:dd:ee:ff", "vm-1"]'}) == ["aa:bb:cc:dd:ee:ff", "vm-1"]


def test_parse_comma_separated_refs():
    assert parse_deletion_refs({"refs": "aa:bb:cc:dd:ee:ff, pod-a"}) == ["aa:bb:cc:dd:ee:ff", "pod-a"]


def test_parse_single_ref():
    assert parse_deletion_refs({"refs": '"vm-1"'}) == ["vm-1"]
    assert parse_deletion_refs({"refs": "vm-1"}) == ["vm-1"]


def test_parse_without_refs():
    assert parse_deletion_refs({"mac": "aa:bb:cc:dd:ee:ff"}) == []
    assert parse_deletion_refs({"refs": "[]"}) == []


STREAM = "dhcpserver:entity_deletions"


@pytest.fixture
def redis_conn():
    conn = AsyncMock()
    conn.xreadgroup.return_value = []
    return conn


async def test_poll_once_queues_batches_and_acks(redis_conn):
    redis_conn.xreadgroup.return_value = [
        [STREAM.encode(), [
            (b"1700000000000-0", {b"refs": b'["host1"]'}),
            (b"1700000000001-0", {b"other": b"value"}),
            (b"1700000000002-0", {b"refs": b"aa:bb:cc:dd:ee:01,aa:bb:cc:dd:ee:02"}),
        ]],
    ]
    queue: asyncio.Queue = asyncio.Queue()
    listener = EntityDeletionListener(redis_conn, queue)

    queued = await listener.poll_once()

    assert queued == 2
    assert queue.get_nowait() == ["host1"]
    assert queue.get_nowait() == ["aa:bb:cc:dd:ee:01", "aa:bb:cc:dd:ee:02"]
    redis_conn.xgroup_create.assert_awaited_once_with(STREAM, "dhcpserver", id="$", mkstream=True)
    redis_conn.xreadgroup.assert_awaited_once_with("dhcpserver", "dhcpserver-1", {STREAM: "0"}, count=100, block=5000)
    assert redis_conn.xack.await_args_list == [
        call(STREAM, "dhcpserver", b"1700000000000-0"),
        call(STREAM, "dhcpserver", b"1700000000001-0"),
        call(STREAM, "dhcpserver", b"1700000000002-0"),
    ]


async def test_entry_published_between_idle_polls_is_delivered(redis_conn):
    redis_conn.xreadgroup.side_effect = [
        [],  # no pending entries from a previous run
        [],  # idle poll times out
        [[STREAM.encode(), [(b"1700000000005-0", {b"refs": b'["host1"]'})]]],
    ]
    queue: asyncio.Queue = asyncio.Queue()
    listener = EntityDeletionListener(redis_conn, queue, block_ms=50)

    assert await listener.poll_once() == 0
    assert await listener.poll_once() == 0
    assert await listener.poll_once() == 1

    assert queue.get_nowait() == ["host1"]
    read_ids = [c.args[2][STREAM] for c in redis_conn.xreadgroup.await_args_list]
    assert read_ids == ["0", ">", ">"]
    redis_conn.xgroup_create.assert_awaited_once()


async def test_existing_group_is_reused(redis_conn):
    redis_conn.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
    listener = EntityDeletionListener(redis_conn, asyncio.Queue(), group="dhcp-a", consumer="dhcp-a-0")

    assert await listener.poll_once() == 0

    redis_conn.xreadgroup.assert_awaited_once_with("dhcp-a", "dhcp-a-0", {STREAM: "0"}, count=100, block=5000)


async def test_other_group_errors_propagate(redis_conn):
    redis_conn.xgroup_create.side_effect = ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

    with pytest.raises(ResponseError):
        await EntityDeletionListener(redis_conn, asyncio.Queue()).poll_once()
    redis_conn.xreadgroup.assert_not_awaited()


async def test_pending_entries_are_read_until_drained(redis_conn):
    redis_conn.xreadgroup.side_effect = [
        [[STREAM.encode(), [(b"1700000000000-0", {b"refs": b"vm-1"})]]],
        [[STREAM.encode(), []]],
        [],
    ]
    queue: asyncio.Queue = asyncio.Queue()
    listener = EntityDeletionListener(redis_conn, queue)

    for _ in range(3):
        await listener.poll_once()

    assert queue.get_nowait() == ["vm-1"]
    read_ids = [c.args[2][STREAM] for c in redis_conn.xreadgroup.await_args_list]
    assert read_ids == ["0", "0", ">"]
