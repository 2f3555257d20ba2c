import asyncio
import contextlib
import shutil
from enum import Enum
from typing import List

from dhcpserver.lib.constants import DNSMASQ_STOP_GRACE_SECONDS
from dhcpserver.lib.dhcp.utils import prune_lease_lines
from dhcpserver.lib.errors import (
    DHCPBinaryNotFoundError,
    DHCPServerExitedError,
    DHCPServerStartError,
)
from dhcpserver.lib.log import get_logger

log = get_logger("server")
dnsmasq_log = get_logger("dnsmasq")


class SupervisorState(Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


def resolve_dnsmasq_binary(name: str) -> str:
    binary = shutil.which(name)
    if binary is None:
        raise DHCPBinaryNotFoundError(f"{name} binary is not found")
    return binary


def dnsmasq_command(binary: str, conf_dir: str, log_facility: str) -> List[str]:
    return [
        binary,
        "--no-daemon",
        f"--log-facility={log_facility}",
        f"--conf-dir={conf_dir}",
    ]


class DHCPServerSupervisor:
    """
    Runs dnsmasq as a child process.

    STOPPED -> STARTING -> RUNNING on start(), RUNNING -> STOPPING -> STOPPED on stop().
    An entity deletion batch is handled as stop -> prune lease lines -> start, in that order.
    """

    def __init__(
        self,
        command: List[str],
        lease_file_path: str,
        stop_grace: float = DNSMASQ_STOP_GRACE_SECONDS,
    ) -> None:
        self.command = command
        self.lease_file_path = lease_file_path
        self.stop_grace = stop_grace
        self.state = SupervisorState.STOPPED
        self.proc: asyncio.subprocess.Process | None = None
        self._relay_task: asyncio.Task | None = None

    async def _relay_output(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break  # process exited
            line = line.decode(errors="replace").rstrip()
            if line:
                dnsmasq_log.info(line)

    async def start(self) -> None:
        if self.state != SupervisorState.STOPPED:
            raise RuntimeError(f"cannot start dnsmasq in state {self.state.value}")

        self.state = SupervisorState.STARTING
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.state = SupervisorState.STOPPED
            raise DHCPServerStartError(f"failed to start dnsmasq: {e}") from e

        self._relay_task = asyncio.create_task(self._relay_output(self.proc.stderr))
        self.state = SupervisorState.RUNNING
        log.info("started dnsmasq", pid=self.proc.pid, command=" ".join(self.command))

    async def stop(self) -> None:
        # STOPPING with a live process means an earlier stop() was cancelled mid-way
        if self.state not in (SupervisorState.RUNNING, SupervisorState.STOPPING) or self.proc is None:
            return

        self.state = SupervisorState.STOPPING
        proc = self.proc
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                log.warning("dnsmasq did not stop in time, killing", pid=proc.pid, grace=self.stop_grace)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        if self._relay_task is not None:
            # The relay may have been cancelled along with an interrupted stop()
            await asyncio.gather(self._relay_task, return_exceptions=True)
            self._relay_task = None

        self.proc = None
        self.state = SupervisorState.STOPPED
        log.info("stopped dnsmasq", pid=proc.pid, returncode=proc.returncode)

    async def restart_with_pruned(self, refs: List[str]) -> List[str]:
        """Stop dnsmasq, drop lease lines that reference a deleted entity, start it again."""
        await self.stop()
        try:
            removed = prune_lease_lines(self.lease_file_path, refs)
        except FileNotFoundError:
            log.warning("no lease file to prune", path=self.lease_file_path)
            removed = []
        for line in removed:
            log.info("pruned lease of deleted entity", lease=line)
        await self.start()
        return removed

    async def supervise(self, deletion_queue: asyncio.Queue) -> None:
        """
        React to entity deletion batches until cancelled.

        raises: DHCPServerExitedError if dnsmasq exits without being asked to.
        """
        while True:
            if self.proc is None:
                raise RuntimeError("dnsmasq is not running")

            refs_get = asyncio.create_task(deletion_queue.get())
            proc_wait = asyncio.create_task(self.proc.wait())

            try:
                done, _ = await asyncio.wait(
                    {refs_get, proc_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for task in (refs_get, proc_wait):
                    if not task.done():
                        task.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await task

            if proc_wait in done:
                returncode = proc_wait.result()
                self.state = SupervisorState.STOPPED
                if self._relay_task is not None:
                    await self._relay_task
                    self._relay_task = None
                if refs_get in done:
                    deletion_queue.put_nowait(refs_get.result())
                raise DHCPServerExitedError(returncode)

            refs = refs_get.result()
            log.info("entities deleted, restarting dnsmasq", refs=refs)
            await self.restart_with_pruned(refs)
