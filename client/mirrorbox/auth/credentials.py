"""Keyring-backed storage of account tokens."""

import logging
import os
from typing import Optional

import keyring
import keyring.errors

from mirrorbox.api.client import RemoteClient
from mirrorbox.errors import NetworkUnavailable, RemoteOperationFailed
from mirrorbox.models import Account

log = logging.getLogger(__name__)


def _keyring_service_name() -> str:
    """Use a separate keyring namespace when MIRRORBOX_CONFIG_DIR is set (tests)."""
    if os.environ.get("MIRRORBOX_CONFIG_DIR", "").strip():
        return "MirrorBox-Test"
    return "MirrorBox"


class CredentialsStore:
    """
    Stores one auth token per account in the OS keyring (Windows Credential
    Manager, macOS Keychain, Linux Secret Service). Library passwords are never
    stored here; they live only in the in-memory CredentialCache.
    """

    def get_token(self, account: Account) -> Optional[str]:
        """
        Return the stored token, or None. On keyring read error (e.g. a corrupted
        entry) returns None so the caller can log in again and overwrite it.
        """
        try:
            return keyring.get_password(_keyring_service_name(), account.signature)
        except Exception as e:
            log.warning("Could not read stored token for %s: %s", account.email, e)
            return None

    def set_token(self, account: Account, token: str) -> None:
        keyring.set_password(_keyring_service_name(), account.signature, token)

    def clear_token(self, account: Account) -> None:
        try:
            keyring.delete_password(_keyring_service_name(), account.signature)
        except keyring.errors.PasswordDeleteError:
            pass

    def login(self, client: RemoteClient, account: Account, password: str) -> Account:
        """Obtain a token, store it, and return the account carrying it."""
        token = client.login(account.email, password)
        self.set_token(account, token)
        log.info("Login successful for %s", account.email)
        return account.model_copy(update={"token": token})

    def authenticated(self, client: RemoteClient, account: Account) -> Optional[Account]:
        """
        Attach the stored token to client and account. Returns None when no
        token is stored or the server rejects it.
        """
        token = account.token or self.get_token(account)
        if not token:
            log.debug("No stored token for %s", account.email)
            return None
        client.set_token(token)
        try:
            client.get_account_info()
        except NetworkUnavailable:
            log.info("Offline; using stored token for %s unverified", account.email)
        except RemoteOperationFailed as e:
            if e.status_code not in (401, 403):
                raise
            log.warning("Stored token for %s rejected: %s", account.email, e)
            client.set_token(None)
            return None
        return account.model_copy(update={"token": token})
