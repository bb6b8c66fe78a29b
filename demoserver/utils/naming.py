"""
Site identifier generation and derived resource names.

Every resource a site owns is named from its identifier alone, so the
container, database, user and subdomain can always be recomputed:

    >>> names = derive_names("k3x8n2", "demo.example.com")
    >>> names.container_name
    'wp_k3x8n2'
    >>> names.url
    'https://k3x8n2.demo.example.com'
"""
from dataclasses import dataclass
from nanoid import generate

ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
PASSWORD_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


def generate_site_id(length: int = 6) -> str:
    """Generate a lowercase alphanumeric site identifier."""
    return generate(ID_ALPHABET, length)


def generate_password(length: int = 16) -> str:
    """Generate a password safe to embed in shell commands and SQL literals."""
    return generate(PASSWORD_ALPHABET, length)


@dataclass(frozen=True)
class SiteNames:
    site_id: str
    container_name: str
    db_name: str
    db_user: str
    subdomain: str
    url: str
    router_name: str


def derive_names(site_id: str, domain_suffix: str) -> SiteNames:
    """Derive every resource name for a site from its identifier."""
    subdomain = f"{site_id}.{domain_suffix}"
    return SiteNames(
        site_id=site_id,
        container_name=f"wp_{site_id}",
        db_name=f"wp_{site_id}",
        db_user=f"user_{site_id}",
        subdomain=subdomain,
        url=f"https://{subdomain}",
        router_name=site_id,
    )


def site_id_from_db_name(db_name: str) -> str:
    """
    Recover the identifier from a database name.

    Examples:
        wp_k3x8n2 -> k3x8n2
    """
    return db_name[3:] if db_name.startswith("wp_") else db_name
