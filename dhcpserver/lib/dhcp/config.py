import ipaddress
import re
from typing import List

from dhcpserver.lib.constants import DHCP_RANGE_DIRECTIVE
from dhcpserver.lib.dhcp.lease import AddressRange
from dhcpserver.lib.errors import DHCPConfigMissingError
from dhcpserver.lib.log import get_logger

log = get_logger("server")

_TOKEN_SPLIT = re.compile(r"[=\s,]")

# dhcp-range=set:<vlan>,<start>,<end>,<netmask>,<lease-time> splits into exactly this many tokens
_TAGGED_RANGE_TOKEN_COUNT = 6


def parse_dhcp_range(line: str) -> AddressRange | None:
    """Turn one dhcp-range directive into an AddressRange, or None if it cannot be used."""
    tokens = _TOKEN_SPLIT.split(line.strip())
    if len(tokens) < 4:
        return None

    vlan_id = ""
    if len(tokens) == _TAGGED_RANGE_TOKEN_COUNT:
        vlan_id = tokens[1]
        if vlan_id.startswith("set:"):
            vlan_id = vlan_id[len("set:"):]

    try:
        start_ip = ipaddress.ip_address(tokens[-4])
        end_ip = ipaddress.ip_address(tokens[-3])
    except ValueError:
        return None

    return AddressRange(start_ip=start_ip, end_ip=end_ip, vlan_id=vlan_id)


def load_address_ranges(path: str) -> List[AddressRange]:
    try:
        with open(path, "r") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise DHCPConfigMissingError(f"Cannot open config file {path}: {e}") from e

    ranges: List[AddressRange] = []
    for line_no, line in enumerate(lines, start=1):
        if DHCP_RANGE_DIRECTIVE not in line:
            continue
        address_range = parse_dhcp_range(line)
        if address_range is None:
            log.warning("skipping unusable dhcp-range", path=path, line_no=line_no, line=line)
            continue
        ranges.append(address_range)

    log.info("loaded dhcp ranges", path=path, ranges=[
        f"{r.start_ip}-{r.end_ip}/{r.vlan_id or '-'}" for r in ranges
    ])
    return ranges
