"""
Tests for site identifier generation and derived names.
"""

import re

from demoserver.utils.naming import (
    ID_ALPHABET,
    derive_names,
    generate_password,
    generate_site_id,
    site_id_from_db_name,
)


class TestGenerateSiteId:

    def test_length_and_alphabet(self):
        for _ in range(50):
            site_id = generate_site_id()
            assert len(site_id) == 6
            assert all(c in ID_ALPHABET for c in site_id)

    def test_custom_length(self):
        assert len(generate_site_id(10)) == 10

    def test_ids_differ(self):
        ids = {generate_site_id() for _ in range(200)}
        assert len(ids) > 195

    def test_password_is_shell_safe(self):
        password = generate_password(24)
        assert len(password) == 24
        assert re.fullmatch(r"[A-Za-z0-9]+", password)


class TestDeriveNames:

    def test_all_names_follow_identifier(self):
        names = derive_names("k3x8n2", "demo.example.com")

        assert names.site_id == "k3x8n2"
        assert names.container_name == "wp_k3x8n2"
        assert names.db_name == "wp_k3x8n2"
        assert names.db_user == "user_k3x8n2"
        assert names.subdomain == "k3x8n2.demo.example.com"
        assert names.url == "https://k3x8n2.demo.example.com"
        assert names.router_name == "k3x8n2"

    def test_deterministic(self):
        """Same identifier always yields the same names."""
        for _ in range(20):
            site_id = generate_site_id()
            assert derive_names(site_id, "demo.test") == derive_names(site_id, "demo.test")

    def test_site_id_round_trip_from_db_name(self):
        names = derive_names("abc123", "demo.test")
        assert site_id_from_db_name(names.db_name) == "abc123"

    def test_site_id_from_foreign_db_name(self):
        assert site_id_from_db_name("golden") == "golden"
