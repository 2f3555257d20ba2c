import ipaddress
from dataclasses import dataclass


@dataclass(frozen=True)
class AddressRange:
    start_ip: ipaddress.IPv4Address | ipaddress.IPv6Address
    end_ip: ipaddress.IPv4Address | ipaddress.IPv6Address
    vlan_id: str = ""

    def __contains__(self, ip: str) -> bool:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        if addr.version != self.start_ip.version:
            return False
        return self.start_ip <= addr <= self.end_ip


@dataclass
class LeaseRecord:
    # Field order matches a dnsmasq lease line
    epoch_timestamp: str
    mac_address: str
    ip_address: str
    hostname: str = ""
    client_id: str = ""  # MAC or * if the client did not send one


@dataclass
class AllocationRecord:
    ip_address: str
    mac_address: str
    entity_ref: str
    lease_expiry: str
    vlan_id: str = ""


def find_vlan_id(ip: str, ranges: list[AddressRange]) -> str:
    """Return the VLAN tag of the first range holding ip, or "" when none does."""
    for address_range in ranges:
        if ip in address_range:
            return address_range.vlan_id
    return ""
