"""Client origin checks and local network address discovery."""

import ipaddress
import logging
import socket

import netifaces

logger = logging.getLogger(__name__)


class IpDiscoveryError(Exception):
    """Failed to discover IP address."""
    pass


def is_loopback(ip: str | None) -> bool:
    """Check if an address is a loopback origin.

    Accepts 127.0.0.0/8, ::1, IPv4-mapped loopback (``::ffff:127.0.0.1``)
    and the literal ``localhost``.
    """
    if not ip:
        return False
    if ip == "localhost":
        return True
    try:
        addr = ipaddress.ip_address(ip.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr.is_loopback


def normalize_ip(ip: str) -> str:
    """Strip the IPv4-mapped IPv6 prefix (``::ffff:``) from an address."""
    if ip.lower().startswith("::ffff:"):
        candidate = ip[7:]
        try:
            ipaddress.IPv4Address(candidate)
        except ValueError:
            return ip
        return candidate
    return ip


class LocalNetworkIpProvider:
    """Discovers local LAN IP address.

    Prefers physical LAN IPs (192.168.x.x, etc.) over VPN tunnel IPs
    so the address shown to the operator is reachable from the LAN.

    Example:
        provider = LocalNetworkIpProvider()
        ip = await provider.get_ip()  # "192.168.1.100"
    """

    # Interface name prefixes that indicate physical network (not VPN/tunnel)
    PHYSICAL_PREFIXES = ("en", "eth", "wlan", "wl", "bridge")
    # VPN/tunnel interface prefixes to avoid
    VPN_PREFIXES = ("utun", "tun", "tap", "wg", "tailscale")

    async def get_ip(self) -> str:
        """Get local network IP address, preferring physical interfaces.

        Returns:
            Local IP address (e.g., '192.168.1.100').

        Raises:
            IpDiscoveryError: If local IP cannot be determined.
        """
        physical_ip = self._get_physical_interface_ip()
        if physical_ip:
            return physical_ip

        # Fall back to socket trick (may return VPN IP); no packet is sent
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("8.8.8.8", 80))
                ip = s.getsockname()[0]
        except OSError as e:
            raise IpDiscoveryError(f"Network error discovering local IP: {e}")

        if ip == "0.0.0.0":
            raise IpDiscoveryError("Could not determine local IP (got 0.0.0.0)")
        if ip.startswith("127."):
            raise IpDiscoveryError(f"Got loopback address {ip}, not LAN IP")

        return ip

    def _get_physical_interface_ip(self) -> str | None:
        """Get IPv4 address of a physical network interface, if any."""
        try:
            for iface in netifaces.interfaces():
                if iface.startswith("lo"):
                    continue
                if iface.startswith(self.VPN_PREFIXES):
                    continue
                if not iface.startswith(self.PHYSICAL_PREFIXES):
                    continue

                addrs = netifaces.ifaddresses(iface)
                for addr in addrs.get(netifaces.AF_INET, []):
                    ip = addr.get("addr")
                    if ip and not ip.startswith("127."):
                        return ip
        except (OSError, ValueError) as e:
            logger.debug(f"Interface scan failed: {e}")
        return None
