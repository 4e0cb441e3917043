"""
Network Identity Resolution
Discovers the operator's public IP so it can be allowed through the load balancer.
"""
import ipaddress
import subprocess
from typing import Callable, Iterable, List, Optional

from aws_lambda_powertools import Logger

logger = Logger(service="network-identity")

DIG_COMMAND = ["dig", "+short", "myip.opendns.com", "@resolver1.opendns.com"]


class NetworkIdentityError(RuntimeError):
    """Raised when the current public IP address cannot be determined."""


class StaticIpResolver:
    """Resolver returning a fixed address, for offline use and tests"""

    def __init__(self, address: str):
        self.address = address

    def resolve(self) -> str:
        return _to_host_cidr(self.address)


class DigPublicIpResolver:
    """
    Runs `dig +short myip.opendns.com @resolver1.opendns.com` to determine the
    current public IP address. Local firewalls or VPN clients may block the query.
    """

    def __init__(self, command: Optional[List[str]] = None,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 timeout: int = 10):
        self.command = command or list(DIG_COMMAND)
        self.runner = runner
        self.timeout = timeout

    def resolve(self) -> str:
        try:
            result = self.runner(
                self.command,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
            cidr = _to_host_cidr(result.stdout)
        except Exception as e:
            raise NetworkIdentityError(
                "Failed while trying to determine your public IP address. Try visiting "
                "https://whatismyipaddress.com/ and set public_load_balancer_ingress_peers "
                f"in cdk.json accordingly.\n{e}\n"
            ) from e

        logger.info("Resolved public IP address", extra={"cidr": cidr})
        return cidr


def _to_host_cidr(raw: str) -> str:
    address = ipaddress.IPv4Address(raw.strip())
    return f"{address}/32"


def resolve_ingress_peers(peers: Iterable[str], resolver=None) -> List[str]:
    """Return the configured peers plus the resolver's address, without duplicates"""
    resolved = list(dict.fromkeys(peers))
    if resolver is not None:
        cidr = resolver.resolve()
        if cidr not in resolved:
            resolved.append(cidr)
    return resolved
