"""
Container label contract.

Traefik watches the ``traefik.*`` labels to route each site's subdomain to
its container; the ``demoserver.*`` labels are a denormalized copy of the
store row used for discovery and orphan detection.
"""
import re
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from ..config import get_settings
from ..utils.naming import SiteNames

LABEL_PREFIX = "demoserver"
CREATED_AT_LABEL = f"{LABEL_PREFIX}.created_at"
USERNAME_LABEL = f"{LABEL_PREFIX}.username"
DBNAME_LABEL = f"{LABEL_PREFIX}.dbname"
DBUSER_LABEL = f"{LABEL_PREFIX}.dbuser"
SITE_ID_LABEL = f"{LABEL_PREFIX}.site_id"
POOLED_LABEL = f"{LABEL_PREFIX}.pooled"

_HOST_RULE = re.compile(r"Host\(`([^`]+)`\)")


def get_traefik_labels(names: SiteNames, port: int = 80) -> Dict[str, str]:
    """
    Generate Traefik labels for subdomain-based routing.

    The plain HTTP router only redirects to HTTPS; the secure router
    terminates TLS with the configured certificate resolver.
    """
    settings = get_settings()
    router = names.router_name
    host_rule = f"Host(`{names.subdomain}`)"

    labels = {
        "traefik.enable": "true",

        # HTTP: redirect only
        f"traefik.http.routers.{router}.rule": host_rule,
        f"traefik.http.routers.{router}.entrypoints": "web",
        f"traefik.http.routers.{router}.middlewares": settings.traefik_redirect_middleware,

        # HTTPS
        f"traefik.http.routers.{router}-secure.rule": host_rule,
        f"traefik.http.routers.{router}-secure.entrypoints": "websecure",
        f"traefik.http.routers.{router}-secure.tls": "true",
        f"traefik.http.routers.{router}-secure.tls.certresolver": settings.traefik_cert_resolver,
        f"traefik.http.routers.{router}-secure.service": router,

        # Service configuration
        f"traefik.http.services.{router}.loadbalancer.server.port": str(port),
        "traefik.docker.network": settings.traefik_network,
    }

    # Wildcard certificate shared by every site
    if settings.traefik_tls_main_domain:
        labels[f"traefik.http.routers.{router}-secure.tls.domains[0].main"] = settings.traefik_tls_main_domain
        if settings.tls_sans:
            labels[f"traefik.http.routers.{router}-secure.tls.domains[0].sans"] = ",".join(settings.tls_sans)

    return labels


def get_discovery_labels(
    names: SiteNames,
    owner: Optional[str],
    pooled: bool = False,
    created_at: Optional[datetime] = None,
) -> Dict[str, str]:
    """Labels the orchestrator itself reads back when listing containers."""
    created_ms = int((created_at.timestamp() if created_at else time.time()) * 1000)
    return {
        CREATED_AT_LABEL: str(created_ms),
        USERNAME_LABEL: owner or "",
        DBNAME_LABEL: names.db_name,
        DBUSER_LABEL: names.db_user,
        SITE_ID_LABEL: names.site_id,
        POOLED_LABEL: "true" if pooled else "false",
    }


def build_site_labels(names: SiteNames, owner: Optional[str], pooled: bool = False) -> Dict[str, str]:
    labels = get_traefik_labels(names)
    labels.update(get_discovery_labels(names, owner, pooled))
    return labels


def parse_created_at(labels: Dict[str, str]) -> Optional[datetime]:
    """Parse the creation timestamp label (epoch milliseconds). None if absent or malformed."""
    raw = labels.get(CREATED_AT_LABEL)
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def parse_host(labels: Dict[str, str]) -> Optional[str]:
    """Extract the routed hostname from any router rule label."""
    for key, value in labels.items():
        if key.startswith("traefik.http.routers.") and key.endswith(".rule"):
            match = _HOST_RULE.search(value)
            if match:
                return match.group(1)
    return None
