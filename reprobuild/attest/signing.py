"""Manifest signers.

This module handles:
- Detached GPG signatures via the ``gpg`` binary
- Remote signing through an HTTP signing service

A signer exposes an ``identity`` (recorded in the manifest before signing)
and ``sign(data) -> bytes`` returning an ASCII-armored detached signature.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

# Timeout for signing requests (seconds)
SIGN_TIMEOUT = 60


class SigningError(Exception):
    """Raised when a manifest cannot be signed."""

    def __init__(self, message: str, code: str = "signing_error") -> None:
        super().__init__(message)
        self.code = code


class Signer(Protocol):
    """Anything able to produce a detached signature."""

    @property
    def identity(self) -> str: ...

    def sign(self, data: bytes) -> bytes: ...


class GpgSigner:
    """Sign with a local GPG key.

    Args:
        key: Key id, fingerprint or user id passed to ``--local-user``.
        gpg_binary: GPG executable.
        timeout: Timeout in seconds.
    """

    def __init__(
        self, key: str, gpg_binary: str = "gpg", timeout: int = SIGN_TIMEOUT
    ) -> None:
        self.key = key
        self.gpg_binary = gpg_binary
        self.timeout = timeout

    @property
    def identity(self) -> str:
        return f"gpg:{self.key}"

    def sign(self, data: bytes) -> bytes:
        """Return an armored detached signature of ``data``.

        Raises:
            SigningError: If gpg is missing or fails.
        """
        cmd = [
            self.gpg_binary,
            "--batch",
            "--yes",
            "--local-user",
            self.key,
            "--armor",
            "--detach-sign",
            "--output",
            "-",
        ]
        try:
            result = subprocess.run(
                cmd,
                input=data,
                capture_output=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode("utf-8", errors="replace") if e.stderr else ""
            raise SigningError(
                f"gpg failed with exit code {e.returncode}: {stderr.strip()}",
                code="gpg_failed",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise SigningError(
                f"gpg timed out after {self.timeout}s", code="timeout"
            ) from e
        except OSError as e:
            raise SigningError(f"Failed to run gpg: {e}", code="gpg_unavailable") from e
        return result.stdout


class HttpSigner:
    """Sign through a remote signing service.

    The service receives the manifest bytes in a POST body and answers with
    JSON ``{"signature": "<armored signature>"}``.

    Args:
        url: Signing endpoint.
        identity: Signer identity recorded in the manifest (defaults to url).
        token: Optional bearer token.
        client: HTTPX client; one is created per call if None.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        identity: str | None = None,
        token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = SIGN_TIMEOUT,
    ) -> None:
        self.url = url
        self._identity = identity or url
        self.token = token
        self.client = client
        self.timeout = timeout

    @property
    def identity(self) -> str:
        return self._identity

    def sign(self, data: bytes) -> bytes:
        """Return the detached signature produced by the service.

        Raises:
            SigningError: On HTTP errors or a malformed response.
        """
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        logger.info("Requesting signature from %s", self.url)
        client = self.client or httpx.Client()
        try:
            response = client.post(
                self.url, content=data, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise SigningError(
                f"Signing service returned {e.response.status_code}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise SigningError(
                f"Timeout contacting signing service {self.url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise SigningError(
                f"Network error contacting signing service: {e}",
                code="network_error",
            ) from e
        except ValueError as e:
            raise SigningError(
                "Signing service returned invalid JSON", code="invalid_response"
            ) from e
        finally:
            if self.client is None:
                client.close()

        signature = payload.get("signature") if isinstance(payload, dict) else None
        if not isinstance(signature, str) or not signature:
            raise SigningError(
                "Signing service response has no signature", code="invalid_response"
            )
        return signature.encode("utf-8")


def create_signer(
    gpg_key: str | None = None,
    sign_url: str | None = None,
    token: str | None = None,
) -> Signer | None:
    """Create the signer selected by configuration, if any.

    A GPG key takes precedence over a signing URL. ``token`` is only used
    by the signing service.
    """
    if gpg_key:
        return GpgSigner(gpg_key)
    if sign_url:
        return HttpSigner(sign_url, token=token)
    return None


__all__ = [
    "GpgSigner",
    "HttpSigner",
    "Signer",
    "SigningError",
    "create_signer",
]
