"""
Utility functions for the process migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess

LOG_FILE = "migration.log"
_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path does not exist in the password store."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbosity: int = 0, log_file: str | None = LOG_FILE) -> None:
    """Configure logging for a migration run.

    The console shows warnings by default, info with -v and debug with -vv.
    The log file always receives everything.
    """
    console_level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    handlers: list[logging.Handler] = [console]

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, format=_LOG_FORMAT, handlers=handlers, force=True)


def _validate_pass_path(pass_path: str) -> None:
    if not re.fullmatch(r"(?:[A-Za-z0-9_.-]+)(?:/[A-Za-z0-9_.-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def _describe_failure(pass_path: str, e: subprocess.CalledProcessError, suffix: str = "") -> str:
    return (
        f"Failed to get value from pass at '{pass_path}'{suffix}.\n"
        f"Output: {e.stdout.strip()}\n"
        f"Error: {e.stderr.strip()}\n"
        f"Return code: {e.returncode}"
    )


def get_pass_value(pass_path: str) -> str:
    """Get value from the pass utility at the specified path.

    Raises:
        ValueError: If the path is malformed
        InvalidPassPathError: If nothing is stored at the path
        PassphraseRequiredError: If the GPG key needs a passphrase that could not be obtained
        PassError: For any other pass failure
    """
    _validate_pass_path(pass_path)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if e.returncode == 2 and "public key decryption failed" in stderr:
            return _get_pass_value_with_passphrase(pass_path)
        raise PassError(_describe_failure(pass_path, e)) from e

    return result.stdout.strip()


def _get_pass_value_with_passphrase(pass_path: str) -> str:
    # Fails in non-interactive sessions (e.g. pytest), which is reported as PassphraseRequiredError.
    try:
        passphrase = input("Enter passphrase for GPG key used by pass: ")
    except EOFError as e:
        msg = "Passphrase input was interrupted. Please run the command in an interactive session."
        raise PassphraseRequiredError(msg) from e

    env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
    try:
        result = subprocess.run(  # noqa: S603
            ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
        )
    except subprocess.CalledProcessError as e:
        raise PassphraseRequiredError(_describe_failure(pass_path, e, " with passphrase")) from e
    return result.stdout.strip()
