"""
Utility functions for the Rally to Azure DevOps migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

logger: logging.Logger = logging.getLogger(__name__)


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid or not in the store."""


def setup_logging(*, verbose: bool = False) -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler("migration.log", mode="a")],
    )
    # urllib3 logs every retry at WARNING
    logging.getLogger("urllib3").setLevel(logging.DEBUG if verbose else logging.ERROR)


def get_pass_value(pass_path: str) -> str:
    """Read a secret from the `pass` password store."""
    if not re.fullmatch(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The 'pass' utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        if "not in the password store" in e.stderr.lower():
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        msg = f"Failed to get value from pass at '{pass_path}'.\nError: {e.stderr.strip()}\nReturn code: {e.returncode}"
        raise PassError(msg) from e

    return result.stdout.strip()


def get_secret(pass_path: str | None, env_var: str, default_pass_path: str) -> str | None:
    """Resolve a credential from an explicit pass path, an env var, or the default pass path.

    An explicit pass path must resolve; the default pass path is only a best effort.
    """
    if pass_path:
        return get_pass_value(pass_path)

    value = os.environ.get(env_var)
    if value:
        return value

    try:
        return get_pass_value(default_pass_path)
    except PassError:
        logger.warning(f"No secret found in ${env_var} or pass path '{default_pass_path}'")
        return None


def create_session(
    *,
    auth: tuple[str, str] | None = None,
    headers: dict[str, str] | None = None,
    retries: int = 5,
) -> requests.Session:
    """Create a requests session that retries throttled and failed requests.

    429 and 5xx responses and connection errors are retried with exponential
    backoff, honoring Retry-After. POST and PATCH are never retried.
    """
    retry = Retry(
        total=retries,
        backoff_factor=1,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"Accept": "application/json", "User-Agent": "rally-to-ado-migrator"})
    if headers:
        session.headers.update(headers)
    if auth is not None:
        session.auth = auth
    return session


def mask_secret(secret: str | None) -> str:
    """Render a secret for log output, keeping only the last four characters."""
    if not secret:
        return "<not set>"
    return f"***{secret[-4:]}"
