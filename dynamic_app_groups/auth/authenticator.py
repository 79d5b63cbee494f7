"""
Authentication module — Certificate-based app-only auth for Microsoft Graph.
Uses MSAL for token acquisition against Microsoft Identity Platform.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import AuthConfig, ENV_PREFIX, REQUIRED_PERMISSIONS

logger = logging.getLogger("dynamic_app_groups.auth")

# Default scopes for app-only auth
APP_SCOPES = ["https://graph.microsoft.com/.default"]


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def load_certificate(cert_path: str, password: str) -> tuple[str, str]:
    """
    Load a base64-encoded PFX file.

    Returns:
        (private key PEM, SHA1 thumbprint hex)
    """
    try:
        with open(cert_path, "r") as f:
            cert_base64 = f.read().strip()

        cert_bytes = base64.b64decode(cert_base64)
        password_bytes = password.encode("utf-8") if password else None

        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password_bytes
        )
    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_path}")
    except Exception as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError(f"Certificate file has no key/certificate pair: {cert_path}")

    private_key_pem = private_key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("utf-8")
    thumbprint = certificate.fingerprint(SHA1()).hex()
    return private_key_pem, thumbprint


class Authenticator:
    """
    Acquires an app-only Graph token with a certificate credential.
    The token is acquired once per run and reused for every request.
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._access_token: Optional[str] = None

    async def acquire_token(self) -> str:
        """Acquire an access token using the configured certificate."""
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        logger.info(
            "Authenticating with certificate-based app credentials...",
            extra={"action": "Authenticate"},
        )

        password = cert_config.certificate_password
        if not password:
            password = os.environ.get(f"{ENV_PREFIX}CERT_PASSWORD", "")
        if not password:
            password = getpass.getpass("Enter the certificate password: ")

        private_key_pem, thumbprint = load_certificate(cert_config.certificate_path, password)
        if cert_config.thumbprint and cert_config.thumbprint.lower() != thumbprint:
            raise AuthenticationError(
                f"Certificate thumbprint {thumbprint} does not match configured "
                f"thumbprint {cert_config.thumbprint}"
            )
        logger.debug(f"Certificate loaded. Thumbprint: {thumbprint}", extra={"action": "Authenticate"})

        # Authority discovery and token requests go over the network
        try:
            app = msal.ConfidentialClientApplication(
                client_id=cert_config.client_id,
                authority=f"https://login.microsoftonline.com/{cert_config.tenant_id}",
                client_credential={
                    "thumbprint": thumbprint,
                    "private_key": private_key_pem,
                },
            )
            result = app.acquire_token_for_client(scopes=APP_SCOPES)
        except Exception as e:
            raise AuthenticationError(f"Certificate auth failed: {e}") from e

        if "access_token" in result:
            self._access_token = result["access_token"]
            logger.info("Certificate authentication successful.", extra={"action": "Authenticate"})
            return self._access_token
        else:
            error = result.get("error_description", result.get("error", "Unknown"))
            raise AuthenticationError(f"Certificate auth failed: {error}")

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        """Return the map of required Graph API permissions."""
        return REQUIRED_PERMISSIONS
