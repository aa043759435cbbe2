"""
Tests for the credential manager.
"""

from unittest.mock import MagicMock, patch

import paramiko

from geo_gate.core.credentials import CredentialManager, credential_manager


class TestCredentialManager:
    """Test credential manager functionality."""

    def test_singleton_pattern(self):
        """Test that a shared credential_manager instance is exposed."""
        assert isinstance(credential_manager, CredentialManager)

    def test_cache_ssh_password(self):
        """Test SSH password caching."""
        cm = CredentialManager()

        with patch("sys.stdin.isatty", return_value=True), patch(
            "getpass.getpass", return_value="test_password"
        ) as mock_getpass:
            pwd1 = cm.get_ssh_password("admin", "192.0.2.10")
            pwd2 = cm.get_ssh_password("admin", "192.0.2.10")

            assert pwd1 == "test_password"
            assert pwd2 == "test_password"
            assert mock_getpass.call_count == 1

    def test_clear_cache(self):
        """Test cache clearing."""
        cm = CredentialManager()

        with patch("sys.stdin.isatty", return_value=True), patch(
            "getpass.getpass", return_value="test_password"
        ) as mock_getpass:
            cm.get_ssh_password("admin", "192.0.2.10")
            cm.clear_cache()
            cm.get_ssh_password("admin", "192.0.2.10")

            assert mock_getpass.call_count == 2

    def test_non_interactive_mode(self):
        """Test that prompts fail in non-interactive mode."""
        cm = CredentialManager()
        cm.set_non_interactive(True)

        with patch("getpass.getpass") as mock_getpass:
            assert cm.get_ssh_password("admin", "192.0.2.10") is None
            mock_getpass.assert_not_called()

    def test_no_tty(self):
        """Test that prompts fail without a terminal."""
        cm = CredentialManager()
        with patch("sys.stdin.isatty", return_value=False):
            assert cm.get_ssh_password("admin", "192.0.2.10") is None

    def test_ssh_agent_requires_socket(self, monkeypatch):
        """Test that the agent is only used when a socket is available."""
        cm = CredentialManager()
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        assert not cm.allow_ssh_agent

        monkeypatch.setenv("SSH_AUTH_SOCK", "/tmp/agent.sock")
        assert cm.allow_ssh_agent
        cm.set_allow_ssh_agent(False)
        assert not cm.allow_ssh_agent


class TestPrivateKeyLoading:
    """Test private key loading."""

    def test_missing_key(self, tmp_path):
        """Test that a missing key file returns None."""
        assert CredentialManager().load_private_key(str(tmp_path / "id_rsa")) is None

    def test_passphrase_prompted_once(self, tmp_path):
        """Test that an encrypted key prompts for its passphrase and caches it."""
        key_file = tmp_path / "id_rsa"
        key_file.write_text("encrypted")
        key = MagicMock(spec=paramiko.PKey)
        cm = CredentialManager()

        with patch("sys.stdin.isatty", return_value=True), patch(
            "getpass.getpass", return_value="secret"
        ) as mock_getpass, patch(
            "paramiko.RSAKey.from_private_key_file",
            side_effect=[paramiko.PasswordRequiredException(), key, key],
        ) as mock_load:
            assert cm.load_private_key(str(key_file)) is key
            assert cm.load_private_key(str(key_file)) is key

            assert mock_getpass.call_count == 1
            assert mock_load.call_args.kwargs["password"] == "secret"

    def test_falls_back_to_other_key_types(self, tmp_path):
        """Test that other key classes are tried when RSA parsing fails."""
        key_file = tmp_path / "id_ed25519"
        key_file.write_text("ed25519")
        key = MagicMock(spec=paramiko.PKey)

        with patch(
            "paramiko.RSAKey.from_private_key_file",
            side_effect=paramiko.SSHException("not an RSA key"),
        ), patch("paramiko.Ed25519Key.from_private_key_file", return_value=key):
            assert CredentialManager().load_private_key(str(key_file)) is key

    def test_unreadable_key(self, tmp_path):
        """Test that a key no class can parse returns None."""
        key_file = tmp_path / "garbage"
        key_file.write_text("garbage")

        with patch(
            "paramiko.RSAKey.from_private_key_file", side_effect=paramiko.SSHException()
        ), patch(
            "paramiko.Ed25519Key.from_private_key_file", side_effect=paramiko.SSHException()
        ), patch(
            "paramiko.ECDSAKey.from_private_key_file", side_effect=paramiko.SSHException()
        ):
            assert CredentialManager().load_private_key(str(key_file)) is None
