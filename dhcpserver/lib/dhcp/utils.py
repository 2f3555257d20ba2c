import hashlib
import ipaddress
from typing import List, Tuple

from .lease import LeaseRecord

LEASE_FIELD_COUNT = 5


def parse_dhcp_leases(data: bytes | str) -> Tuple[List[LeaseRecord], List[int]]:
    """
    Parse a dnsmasq lease file.

    returns: leases: List[LeaseRecord], bad_lines: List[int] (1-based line numbers that could not be parsed)
    """
    if isinstance(data, bytes):
        data = data.decode(errors="replace")

    leases: List[LeaseRecord] = []
    bad_lines: List[int] = []

    for line_no, line in enumerate(data.splitlines(), start=1):
        parts = line.split()
        if not parts:
            continue

        if len(parts) < 3:
            bad_lines.append(line_no)
            continue

        # Missing hostname / client-id are tolerated
        parts = (parts + [""] * LEASE_FIELD_COUNT)[:LEASE_FIELD_COUNT]
        try:
            int(parts[0])
            ipaddress.ip_address(parts[2])
        except ValueError:
            bad_lines.append(line_no)
            continue

        leases.append(LeaseRecord(
            epoch_timestamp=parts[0],
            mac_address=parts[1],
            ip_address=parts[2],
            hostname=parts[3],
            client_id=parts[4],
        ))

    return leases, bad_lines


def format_lease_line(epoch: str, mac: str, ip: str, hostname: str, client_id: str) -> str:
    return f"{epoch} {mac} {ip} {hostname} {client_id}\n"


def bytes_md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def file_md5(path: str) -> str:
    hash_md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hash_md5.update(chunk)
    return hash_md5.hexdigest()


def prune_lease_lines(path: str, refs: List[str]) -> List[str]:
    """
    Drop every lease line that mentions one of refs (substring match) and rewrite the file.

    returns: the removed lines
    """
    with open(path, "r") as f:
        lines = f.read().splitlines()

    kept: List[str] = []
    removed: List[str] = []
    for line in lines:
        if any(ref and ref in line for ref in refs):
            removed.append(line)
        else:
            kept.append(line)

    with open(path, "w") as f:
        f.writelines(line + "\n" for line in kept)

    return removed
