"""Tests for request schema helpers."""

import pytest

from shipyard.schemas.deployment import DomainSpec, GitDeployRequest, parse_env_vars


class TestParseEnvVars:

    def test_empty(self):
        assert parse_env_vars("") == {}
        assert parse_env_vars(None) == {}
        assert parse_env_vars("   \n") == {}

    def test_json_object(self):
        assert parse_env_vars('{"PORT": 4000, "DEBUG": "1"}') == {"PORT": "4000", "DEBUG": "1"}

    def test_key_value_lines(self):
        text = """
        # comment
        PORT=4000
        DATABASE_URL=postgres://u:p@h/db?sslmode=require
        EMPTY=
        """
        assert parse_env_vars(text) == {
            "PORT": "4000",
            "DATABASE_URL": "postgres://u:p@h/db?sslmode=require",
            "EMPTY": "",
        }

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="JSON"):
            parse_env_vars("{not json")

    def test_json_must_be_object(self):
        with pytest.raises(ValueError):
            parse_env_vars('["a"]')

    def test_line_without_equals(self):
        with pytest.raises(ValueError, match="line 2"):
            parse_env_vars("A=1\nBROKEN")


class TestDeployRequests:

    def test_domain_is_normalized(self):
        assert DomainSpec(domain=" Demo.Example.COM. ").domain == "demo.example.com"

    def test_git_request_converts(self):
        request = GitDeployRequest(
            app_name="demo",
            repository="https://example/demo.git",
            start_command="node index.js",
            domains=[{"domain": "demo.example.com", "ssl_enabled": False}],
        ).to_deploy_request()
        assert request.source_type == "git"
        assert request.runtime == "node"
        assert request.domains[0].ssl_enabled is False
