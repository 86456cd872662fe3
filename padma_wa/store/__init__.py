"""Durable per-session state in Redis: credentials, keyed material, cache snapshots."""

from padma_wa.store.credentials import AuthState as AuthState
from padma_wa.store.credentials import CredentialStore as CredentialStore
from padma_wa.store.credentials import SessionKeyStore as SessionKeyStore

__all__ = ["AuthState", "CredentialStore", "SessionKeyStore"]
