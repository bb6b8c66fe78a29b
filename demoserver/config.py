from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Orchestrator store (sites / sitepool tables). Uses the MySQL root account
    # because per-site databases and users are created through the same server.
    database_url: str

    # MySQL server shared by every site container
    db_host: str = "mysql"
    db_port: int = 3306
    db_root_password: str = ""
    mysql_container_name: str = "mysql"

    # Traefik routing
    traefik_network: str = "web"
    domain_suffix: str = "localhost"
    traefik_cert_resolver: str = "letsencrypt"
    traefik_redirect_middleware: str = "redirect-to-https@file"
    # Wildcard certificate, e.g. main="demo.example.com" sans="*.demo.example.com"
    traefik_tls_main_domain: str = ""
    traefik_tls_sans: str = ""

    # ==========================================================================
    # Golden Image Configuration
    # ==========================================================================
    wp_base_image: str = "wordpress:latest"
    golden_image_repo: str = "wp-golden"
    golden_image_tag: str = "latest"
    golden_db_name: str = "wp_golden"
    golden_container_name: str = "wp_golden"
    golden_site_url: str = "http://localhost"
    golden_site_title: str = "Demo Site"
    golden_admin_password: str = "demo"
    # Host directory mounted read-only at /backups inside the build container
    host_assets_path: str = ""
    golden_plugin_archives: str = ""  # Comma-separated zip names under /backups
    golden_theme_archives: str = ""  # Comma-separated zip names under /backups
    wp_cli_url: str = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"
    # SQL dump (inside the MySQL container) imported into every new site database.
    # Empty means new sites get a copy of golden_db_name, which the build installed.
    golden_sql_path: str = ""

    # ==========================================================================
    # Site Configuration
    # ==========================================================================
    site_memory_limit: str = "1g"
    site_admin_user: str = "admin"
    site_title: str = "Demo Site"
    site_id_length: int = 6
    site_id_max_attempts: int = 3
    wp_path: str = "/var/www/html"

    # Readiness probing
    readiness_max_attempts: int = 90
    readiness_interval_seconds: float = 2.0
    # "optimistic": return the site flagged not-ready; "rollback": tear it down and fail
    readiness_timeout_policy: str = "optimistic"
    install_marker_path: str = ""  # Optional first-boot marker written by the guest
    login_token_path: str = "/var/www/html/wp-content/auto-login-token"
    configure_after_ready: bool = True
    verify_https: bool = False
    https_max_attempts: int = 30
    https_interval_seconds: float = 2.0
    https_request_timeout_seconds: float = 5.0

    # Bootstrap database wait
    db_wait_max_attempts: int = 60
    db_wait_interval_seconds: float = 2.0

    # ==========================================================================
    # Pool Configuration
    # ==========================================================================
    pool_enabled: bool = True
    pool_target_size: int = 10
    pool_min_size: int = 3

    # ==========================================================================
    # Reclamation Configuration
    # ==========================================================================
    # No default: deployments disagree on the right value, so it must be set.
    site_retention_minutes: int
    # Containers with no store row are only reclaimed once older than this.
    # Unset means orphans are reported but never removed.
    orphan_grace_minutes: Optional[int] = None
    # Rows still provisioning after this long are treated as abandoned and torn down.
    # Unset derives it from the readiness and HTTPS probe budgets.
    provisioning_grace_minutes: Optional[int] = None
    sweep_interval_minutes: int = 60

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    @property
    def is_rollback_on_timeout(self) -> bool:
        """Check if readiness timeouts tear the site down."""
        return self.readiness_timeout_policy.lower() == "rollback"

    @property
    def provisioning_grace_seconds(self) -> float:
        if self.provisioning_grace_minutes is not None:
            return self.provisioning_grace_minutes * 60
        budget = self.readiness_max_attempts * self.readiness_interval_seconds
        if self.verify_https:
            budget += self.https_max_attempts * (self.https_interval_seconds + self.https_request_timeout_seconds)
        return max(15 * 60, 3 * budget)

    @property
    def golden_image(self) -> str:
        return f"{self.golden_image_repo}:{self.golden_image_tag}"

    @property
    def tls_sans(self) -> list[str]:
        return [s.strip() for s in self.traefik_tls_sans.split(",") if s.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
