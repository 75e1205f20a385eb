"""
RBAC configuration read from the environment.

Variables:
  PERMISSION_CACHE_TTL_SECONDS        TTL of a resolved permission snapshot (default 300)
  PERMISSION_REFRESH_INTERVAL_SECONDS portal background refresh period (default 300)
  RBAC_SEED_FILE                      YAML file with default permissions and system roles
  RBAC_API_URL                        base URL used by the portal HTTP permission source
  RBAC_CURRENT_SEMESTER               semester that semester conditions are evaluated against
  RBAC_LOCATION_NETWORKS              "campus=10.0.0.0/8,172.16.0.0/12;library=192.168.5.0/24"
"""

import ipaddress
import os
from pathlib import Path
from typing import List, Optional, Tuple, Union

import dotenv
from loguru import logger

dotenv.load_dotenv()

DEFAULT_SEED_FILE = Path(__file__).resolve().parent.parent / "configs" / "rbac_seed.yaml"


def parse_location_networks(value: str) -> List[Tuple[str, Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]]:
    """Parse `name=cidr,cidr;name=cidr` into (name, network) pairs; bad entries are skipped"""
    networks = []
    for entry in filter(None, (part.strip() for part in value.split(";"))):
        name, _, cidrs = entry.partition("=")
        for cidr in filter(None, (c.strip() for c in cidrs.split(","))):
            try:
                networks.append((name.strip(), ipaddress.ip_network(cidr, strict=False)))
            except ValueError:
                logger.warning(f"Ignoring invalid network '{cidr}' for location '{name.strip()}'")
    return networks


class RBACConfig:
    """Configuration for permission resolution and caching"""

    def __init__(self):
        self.cache_ttl_seconds = int(os.getenv("PERMISSION_CACHE_TTL_SECONDS", "300"))
        self.refresh_interval_seconds = int(os.getenv("PERMISSION_REFRESH_INTERVAL_SECONDS", "300"))

        self.seed_file = Path(os.getenv("RBAC_SEED_FILE", str(DEFAULT_SEED_FILE)))
        self.api_url = os.getenv("RBAC_API_URL", "http://localhost:8000")

        # Request attributes come from server-side settings, never from client headers
        self.current_semester = os.getenv("RBAC_CURRENT_SEMESTER") or None
        self.location_networks = parse_location_networks(os.getenv("RBAC_LOCATION_NETWORKS", ""))

    def location_for(self, ip_address: Optional[str]) -> Optional[str]:
        """Named location whose network contains the address, if any"""
        try:
            address = ipaddress.ip_address(ip_address or "")
        except ValueError:
            return None
        for name, network in self.location_networks:
            if address in network:
                return name
        return None


# Global instance
rbac_config = RBACConfig()
