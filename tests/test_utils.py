"""
Tests for the pass utility wrapper.
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from ado_process_migrator.utils import InvalidPassPathError, PassError, PassphraseRequiredError, get_pass_value


def _failure(returncode: int, stderr: str) -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(returncode, ["pass"], output="", stderr=stderr)


@pytest.mark.unit
class TestGetPassValue:
    """Test reading secrets from pass."""

    def test_returns_stripped_value(self) -> None:
        with patch("ado_process_migrator.utils.subprocess.run", return_value=Mock(stdout="secret\n")) as mock_run:
            assert get_pass_value("azure-devops/source/token") == "secret"
        assert mock_run.call_args.args[0] == ["pass", "azure-devops/source/token"]

    @pytest.mark.parametrize("pass_path", ["", "a//b", "a b", "/absolute"])
    def test_malformed_path_rejected(self, pass_path: str) -> None:
        with pytest.raises(ValueError, match="Invalid pass path"):
            get_pass_value(pass_path)

    def test_missing_entry(self) -> None:
        error = _failure(1, "Error: azure-devops/x is not in the password store.")
        with (
            patch("ado_process_migrator.utils.subprocess.run", side_effect=error),
            pytest.raises(InvalidPassPathError),
        ):
            get_pass_value("azure-devops/x")

    def test_pass_not_installed(self) -> None:
        with (
            patch("ado_process_migrator.utils.subprocess.run", side_effect=FileNotFoundError("pass")),
            pytest.raises(PassError, match="not installed"),
        ):
            get_pass_value("azure-devops/source/token")

    def test_passphrase_prompt_interrupted(self) -> None:
        """Without an interactive terminal the passphrase prompt fails cleanly."""
        error = _failure(2, "gpg: public key decryption failed: No pinentry")
        with (
            patch("ado_process_migrator.utils.subprocess.run", side_effect=error),
            patch("builtins.input", side_effect=EOFError),
            pytest.raises(PassphraseRequiredError, match="interrupted"),
        ):
            get_pass_value("azure-devops/source/token")

    def test_passphrase_retry_succeeds(self) -> None:
        first = _failure(2, "gpg: public key decryption failed")
        with (
            patch("ado_process_migrator.utils.subprocess.run", side_effect=[first, Mock(stdout="secret\n")]) as run,
            patch("builtins.input", return_value="hunter2"),
        ):
            assert get_pass_value("azure-devops/source/token") == "secret"

        assert run.call_args.kwargs["input"] == "hunter2"
        assert "--passphrase-fd 0" in run.call_args.kwargs["env"]["PASSWORD_STORE_GPG_OPTS"]
