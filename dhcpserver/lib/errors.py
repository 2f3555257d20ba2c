class DHCPServerFatalError(RuntimeError):
    """No DHCP service is possible once one of these is raised."""


class DHCPBinaryNotFoundError(DHCPServerFatalError):
    pass


class DHCPConfigMissingError(DHCPServerFatalError):
    pass


class DHCPServerStartError(DHCPServerFatalError):
    pass


class DHCPServerExitedError(DHCPServerFatalError):
    def __init__(self, returncode: int | None) -> None:
        super().__init__(f"dnsmasq exited unexpectedly (code={returncode})")
        self.returncode = returncode


class LeaseFileMissingError(RuntimeError):
    """The watched lease file vanished; it has to be restored from backup."""


class AllocationStoreError(RuntimeError):
    pass


class AllocationNotFoundError(AllocationStoreError):
    def __init__(self, ip: str) -> None:
        super().__init__(f"IPAllocation {ip} not found")
        self.ip = ip
