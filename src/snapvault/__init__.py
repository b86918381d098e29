"""
snapvault - backup lifecycle manager for self-hosted Docker Compose deployments.

Snapshots the stateful parts of a deployment (data volumes, configuration,
TLS certificates, compose files) into a single verifiable, optionally
encrypted archive, and restores such archives with integrity checks and a
pre-restore safety snapshot.

Key Features:
    - tar.gz / tar.bz2 / tar.xz archives with SHA-256 checksum sidecars
    - Optional GnuPG (recipient or symmetric) or built-in passphrase encryption
    - Services stopped and guaranteed to restart around backup/restore
    - Restore as an explicit state machine with scoped temp-file cleanup
    - Standalone verification: VALID, NO_CHECKSUM or CORRUPTED
"""

__version__ = "0.1.0"

from snapvault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
