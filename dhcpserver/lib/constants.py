DHCP_LEASE_FILE_DIR_PATH = "/var/lib/dnsmasq"
DHCP_LEASE_FILE_PATH = DHCP_LEASE_FILE_DIR_PATH + "/dnsmasq.leases"
DHCP_CONF_DIR_PATH = "/etc/dnsmasq.d"
DHCP_CONF_FILE_PATH = DHCP_CONF_DIR_PATH + "/dnsmasq.conf"
DHCP_LOG_FACILITY_PATH = "/var/log/dnsmasq.log"
DNSMASQ_BINARY = "dnsmasq"

DHCP_RANGE_DIRECTIVE = "dhcp-range"
LEASE_CLIENT_ID_WILDCARD = "*"

# dnsmasq may flush the lease file in several writes
LEASE_FILE_SETTLE_SECONDS = 0.1
DNSMASQ_STOP_GRACE_SECONDS = 1.0

STORE_CALL_TIMEOUT_SECONDS = 10.0
STORE_KEY_PREFIX = "ipallocation"

ENTITY_DELETION_STREAM_ID = "dhcpserver:entity_deletions"
ENTITY_DELETION_BLOCK_MS = 5000
ENTITY_DELETION_CONSUMER_GROUP = "dhcpserver"
ENTITY_DELETION_CONSUMER_NAME = "dhcpserver-1"
