"""
Client configuration.

Defaults are module constants; ClientConfig.from_env() lets deployments
override them with BLINDRELAY_* environment variables.
"""

import os
from dataclasses import dataclass


MIN_MASTER_KEY_ITERATIONS = 300_000
DEFAULT_MASTER_KEY_ITERATIONS = 310_000
MIN_PASSWORD_LENGTH = 8

TRANSPORT_KEY_ROTATION_MS = 30 * 24 * 60 * 60 * 1000  # 30 days
TRANSPORT_KEY_GRACE_MS = 72 * 60 * 60 * 1000  # 72 hours
ROTATION_CHECK_INTERVAL_SECONDS = 6 * 60 * 60  # 6 hours


@dataclass
class ClientConfig:
    """
    Settings for one client installation.

    Attributes:
        server_url: Base URL of the relay
        instance_host: Host part of local handles (user@host)
        storage_dir: Directory for the local session store
        kdf_iterations: PBKDF2 iterations for new master keys
        rotation_threshold_ms: Age after which the transport key is rotated
        grace_period_ms: How long the previous transport key stays usable
        rotation_check_interval: Seconds between background rotation checks
    """
    server_url: str = "http://localhost:8000"
    instance_host: str = "localhost"
    storage_dir: str = "client_data"
    kdf_iterations: int = DEFAULT_MASTER_KEY_ITERATIONS
    rotation_threshold_ms: int = TRANSPORT_KEY_ROTATION_MS
    grace_period_ms: int = TRANSPORT_KEY_GRACE_MS
    rotation_check_interval: float = ROTATION_CHECK_INTERVAL_SECONDS

    def __post_init__(self):
        if self.kdf_iterations < MIN_MASTER_KEY_ITERATIONS:
            raise ValueError(
                f"kdf_iterations must be at least {MIN_MASTER_KEY_ITERATIONS}"
            )

    @property
    def ws_url(self) -> str:
        return self.server_url.replace("http", "ws", 1) + "/ws"

    @classmethod
    def from_env(cls) -> 'ClientConfig':
        """Build a config from BLINDRELAY_* environment variables"""
        defaults = cls()
        return cls(
            server_url=os.environ.get("BLINDRELAY_SERVER_URL", defaults.server_url),
            instance_host=os.environ.get("BLINDRELAY_INSTANCE_HOST", defaults.instance_host),
            storage_dir=os.environ.get("BLINDRELAY_STORAGE_DIR", defaults.storage_dir),
            kdf_iterations=int(os.environ.get("BLINDRELAY_KDF_ITERATIONS", defaults.kdf_iterations)),
        )
