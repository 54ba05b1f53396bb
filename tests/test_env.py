# tests/test_env.py
"""Unit tests for environment composition and shell helpers."""

import subprocess
import shutil

import pytest

from sandboxcore.base import AgentCredentials, EnvironmentVariable
from sandboxcore.env import get_env
from sandboxcore.utils import bash_quote, random_id, safe_env_key


class TestGetEnv:
    """Tests for get_env precedence."""

    def test_token_and_marker(self):
        """Test GH_TOKEN and TERRAGON are always present."""
        assert get_env("tok") == {"GH_TOKEN": "tok", "TERRAGON": "true"}

    def test_user_variables_override_token(self):
        """Test user variables win over the token."""
        env = get_env("tok", [EnvironmentVariable("GH_TOKEN", "mine"), EnvironmentVariable("A", "1")])

        assert env["GH_TOKEN"] == "mine"
        assert env["A"] == "1"

    def test_env_var_credentials_applied(self):
        """Test env-var credentials are exported."""
        creds = AgentCredentials(type="env-var", contents={"ANTHROPIC_API_KEY": "sk"})
        assert get_env("tok", (), creds)["ANTHROPIC_API_KEY"] == "sk"

    def test_other_credentials_ignored(self):
        """Test non env-var credentials do not leak into the environment."""
        creds = AgentCredentials(type="oauth", contents={"SECRET": "x"})
        assert "SECRET" not in get_env("tok", (), creds)

    def test_terragon_cannot_be_overridden(self):
        """Test TERRAGON is set last."""
        env = get_env(
            "tok",
            [EnvironmentVariable("TERRAGON", "false")],
            overrides={"TERRAGON": "no", "CI": "true"},
        )

        assert env["TERRAGON"] == "true"
        assert env["CI"] == "true"


class TestShellHelpers:
    """Tests for quoting and identifiers."""

    def test_bash_quote_plain(self):
        """Test simple values are single-quoted."""
        assert bash_quote("main") == "'main'"

    def test_bash_quote_embedded_quote(self):
        """Test embedded single quotes use the close-reopen idiom."""
        assert bash_quote("it's") == "'it'\"'\"'s'"

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
    @pytest.mark.parametrize("value", ["it's", "$(whoami)", "a b\nc", "`id`", "\\"])
    def test_bash_quote_round_trips(self, value):
        """Test quoted values reach bash unchanged."""
        result = subprocess.run(
            ["bash", "-c", f"printf %s {bash_quote(value)}"],
            capture_output=True,
            text=True,
            check=True,
        )
        assert result.stdout == value

    @pytest.mark.parametrize(
        "key, expected",
        [
            ("PATH", "PATH"),
            ("my-var", "my_var"),
            ("1ST", "_1ST"),
            ("a.b c", "a_b_c"),
        ],
    )
    def test_safe_env_key(self, key, expected):
        """Test shell variable name sanitizing."""
        assert safe_env_key(key) == expected

    def test_random_id(self):
        """Test random ids are lowercase alphanumeric of the given length."""
        value = random_id(12)

        assert len(value) == 12
        assert value.isalnum() and value == value.lower()
