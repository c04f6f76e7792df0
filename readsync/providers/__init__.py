"""
Sync provider factory.

Built-in providers are ``folder`` and ``http``; ``none`` means sync is not
configured. Either built-in can be wrapped in end-to-end encryption by
setting ``encrypt = true`` and ``salt`` in ``[provider]``; the passphrase
comes from ``READSYNC_PASSPHRASE`` or is supplied at runtime.

External providers register via the ``readsync.providers`` entry point
group with a factory function::

    def create_provider(config: ProviderConfig) -> SyncProvider:
        ...

and in their pyproject.toml::

    [project.entry-points."readsync.providers"]
    my-provider = "my_package.provider:create_provider"
"""

import os
from pathlib import Path
from typing import Optional

from ..config import ProviderConfig
from ..errors import ConfigError
from .base import PayloadProvider, SyncProvider, content_filename, parse_snapshot
from .encrypted import PBKDF2_ITERATIONS, EncryptedProvider, decode_salt
from .folder import FolderProvider
from .http import HttpProvider

__all__ = [
    "SyncProvider",
    "PayloadProvider",
    "FolderProvider",
    "HttpProvider",
    "EncryptedProvider",
    "content_filename",
    "parse_snapshot",
    "create_provider",
    "create_transport",
]


def create_provider(config: ProviderConfig) -> Optional[SyncProvider]:
    """
    Create the configured provider, or None when sync has no provider.

    The HTTP api key may come from ``READSYNC_API_KEY`` and the encryption
    passphrase from ``READSYNC_PASSPHRASE`` instead of the config file.
    """
    provider = create_transport(config)
    if provider is None or not config.params.get("encrypt"):
        return provider

    salt = config.params.get("salt")
    if not salt:
        raise ConfigError("Encrypted provider needs 'salt' in [provider]", "configuration")
    if not isinstance(provider, PayloadProvider):
        raise ConfigError(f"Provider {config.name!r} does not support encryption", "configuration")
    return EncryptedProvider(
        provider,
        decode_salt(salt),
        os.environ.get("READSYNC_PASSPHRASE") or None,
        iterations=int(config.params.get("iterations", PBKDF2_ITERATIONS)),
    )


def create_transport(config: ProviderConfig) -> Optional[SyncProvider]:
    """Create the configured provider without the encryption layer."""
    name = config.name
    params = config.params

    if name in ("", "none"):
        return None
    if name == "folder":
        folder = params.get("folder")
        if not folder:
            raise ConfigError("Folder provider needs 'folder' in [provider]", "configuration")
        return FolderProvider(Path(folder))
    if name == "http":
        api_url = params.get("api_url")
        if not api_url:
            raise ConfigError("HTTP provider needs 'api_url' in [provider]", "configuration")
        api_key = os.environ.get("READSYNC_API_KEY") or params.get("api_key")
        try:
            return HttpProvider(api_url, api_key, timeout=float(params.get("timeout", 30.0)))
        except ValueError as e:
            raise ConfigError(str(e), "configuration") from e
    return _load_provider(name, config)


def _load_provider(name: str, config: ProviderConfig) -> SyncProvider:
    """Load a provider by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="readsync.providers")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = ["folder", "http"] + [ep.name for ep in eps]
    raise ConfigError(f"Unknown sync provider: {name!r}. Available: {available}", "configuration")
