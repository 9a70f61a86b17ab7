"""
Token acquisition for the remote candidate library.

Two MSAL flows are supported: app-only with a PFX certificate, and
delegated sign-in through the device-code flow. Only read scopes are
ever requested.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from pathlib import Path
from typing import Optional

import msal
from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)

from ..config import AuthConfig, REQUIRED_PERMISSIONS

logger = logging.getLogger("m365_link_repair.auth")

APP_SCOPES = ["https://graph.microsoft.com/.default"]
PASSWORD_ENV_VAR = "M365_LINK_REPAIR_CERT_PASSWORD"
AUTHORITY = "https://login.microsoftonline.com/{tenant}"


class AuthenticationError(Exception):
    """No token could be obtained for the remote library."""


def load_certificate(cert_path: str, password: str) -> tuple[str, str]:
    """
    Read a PFX file, raw or base64 text, and return the PEM private key
    with the certificate's SHA-1 thumbprint.
    """
    blob = Path(cert_path).read_bytes()
    try:
        blob = base64.b64decode(blob.strip(), validate=True)
    except ValueError:
        pass    # already binary

    key, cert, _ = pkcs12.load_key_and_certificates(
        blob, password.encode("utf-8") if password else None
    )
    if key is None or cert is None:
        raise AuthenticationError(f"{cert_path} does not contain both a key and a certificate")

    pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()).decode("ascii")
    return pem, cert.fingerprint(SHA1()).hex()


def _missing_rights_hint() -> str:
    return "check that the app has " + ", ".join(sorted(REQUIRED_PERMISSIONS))


class Authenticator:
    """Picks the MSAL flow from ``AuthConfig.mode`` and keeps the last token."""

    def __init__(self, config: AuthConfig, interactive: bool = True):
        self.config = config
        self.interactive = interactive
        self.token: Optional[str] = None

    async def acquire_token(self) -> str:
        flows = {
            "certificate": self._app_only,
            "delegated": self._device_code,
        }
        flow = flows.get(self.config.mode)
        if flow is None:
            raise AuthenticationError(
                f"Auth mode must be one of {sorted(flows)}, got {self.config.mode!r}"
            )
        return self._keep(flow(), self.config.mode)

    def _certificate_password(self) -> str:
        password = self.config.certificate.certificate_password or os.environ.get(PASSWORD_ENV_VAR, "")
        if not password and self.interactive:
            password = getpass.getpass("Certificate password: ")
        return password

    def _app_only(self) -> dict:
        settings = self.config.certificate
        if settings is None:
            raise AuthenticationError("Certificate mode selected but no certificate settings given.")

        try:
            pem, thumbprint = load_certificate(settings.certificate_path, self._certificate_password())
        except FileNotFoundError as e:
            raise AuthenticationError(f"No certificate at {settings.certificate_path}") from e
        except (ValueError, TypeError) as e:
            raise AuthenticationError(f"Could not read certificate {settings.certificate_path}: {e}") from e
        logger.info(f"Using certificate {thumbprint} for tenant {settings.tenant_id}")

        app = msal.ConfidentialClientApplication(
            client_id=settings.client_id,
            authority=AUTHORITY.format(tenant=settings.tenant_id),
            client_credential={"thumbprint": thumbprint, "private_key": pem},
        )
        return app.acquire_token_for_client(scopes=APP_SCOPES)

    def _device_code(self) -> dict:
        settings = self.config.delegated
        if settings is None:
            raise AuthenticationError("Delegated mode selected but no delegated settings given.")
        if not self.interactive:
            raise AuthenticationError("Device-code sign-in cannot run without a console.")

        app = msal.PublicClientApplication(
            client_id=settings.client_id,
            authority=AUTHORITY.format(tenant=settings.tenant_id),
        )
        flow = app.initiate_device_flow(scopes=settings.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Could not start device-code sign-in: {flow.get('error_description', flow)}"
            )

        print(f"\n{'-' * 60}")
        print(f"  Sign in at {flow['verification_uri']} with code {flow['user_code']}")
        print(f"{'-' * 60}\n")
        return app.acquire_token_by_device_flow(flow)

    def _keep(self, result: dict, mode: str) -> str:
        token = result.get("access_token")
        if not token:
            reason = result.get("error_description") or result.get("error") or "no token returned"
            raise AuthenticationError(f"{mode} sign-in failed ({reason}); {_missing_rights_hint()}")
        logger.info(f"Obtained {mode} token for the remote library")
        self.token = token
        return token
