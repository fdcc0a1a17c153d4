"""
Configuration management for the dispute ledger.

Loads settings from environment variables.
Validates all settings and provides typed access.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LedgerConfig(BaseModel):
    """Dispute ledger configuration."""

    # ========================================================================
    # Evidence bounds
    # ========================================================================

    min_evidence: int = Field(
        default=3,
        ge=1,
        description="Minimum evidence items per dispute case"
    )
    max_evidence: int = Field(
        default=100,
        ge=1,
        description="Maximum evidence items per dispute case"
    )

    # ========================================================================
    # Case lifecycle
    # ========================================================================

    case_ttl_days: int = Field(
        default=30,
        ge=7,
        le=365,
        description="Days before an unresolved case expires"
    )

    sweep_interval_seconds: int = Field(
        default=86400,
        ge=60,
        description="Run the expiry sweep every N seconds"
    )

    # ========================================================================
    # Storage
    # ========================================================================

    storage_backend: str = Field(
        default="sqlite",
        description="Key-value backend: memory or sqlite"
    )

    state_dir: Path = Field(
        default=Path("/var/lib/dispute-ledger"),
        description="State directory for the SQLite database"
    )

    # ========================================================================
    # Anchoring (immutable storage)
    # ========================================================================

    anchor_enabled: bool = Field(
        default=False,
        description="Anchor case packages to immutable storage"
    )

    anchor_endpoint: Optional[str] = Field(
        default=None,
        description="Base URL of the immutable storage gateway"
    )

    anchor_api_key_file: Optional[Path] = Field(
        default=None,
        description="Path to the anchor gateway API key file"
    )

    anchor_timeout_seconds: float = Field(
        default=60,
        gt=0,
        description="Timeout for a single anchoring call"
    )

    anchor_max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per out-of-band anchoring retry"
    )

    anchor_max_total_attempts: int = Field(
        default=10,
        ge=1,
        description="Anchoring rounds per case before scheduled retries give up"
    )

    anchor_retry_base_seconds: float = Field(
        default=5,
        ge=0,
        description="Base delay for exponential anchoring backoff"
    )

    anchor_retry_max_seconds: float = Field(
        default=300,
        ge=0,
        description="Maximum delay between anchoring attempts"
    )

    # ========================================================================
    # Signing & verification
    # ========================================================================

    signing_key_file: Optional[Path] = Field(
        default=None,
        description="Ed25519 key used to sign anchored packages"
    )

    authorized_verifiers: List[str] = Field(
        default_factory=list,
        description="Actors allowed to mark evidence verified (empty = any)"
    )

    # ========================================================================
    # Application
    # ========================================================================

    app_name: str = Field(default="Dispute-Ledger")
    app_version: str = Field(default="0.1.0")

    log_level: str = Field(
        default="INFO",
        description="Log level"
    )

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator('storage_backend')
    @classmethod
    def validate_storage_backend(cls, v):
        if v not in ['memory', 'sqlite']:
            raise ValueError('storage_backend must be memory or sqlite')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError('log_level must be DEBUG, INFO, WARNING, or ERROR')
        return v

    @field_validator('anchor_endpoint')
    @classmethod
    def validate_anchor_endpoint(cls, v):
        if v and not v.startswith(('http://', 'https://')):
            raise ValueError('anchor_endpoint must be an http(s) URL')
        return v.rstrip('/') if v else v

    @model_validator(mode='after')
    def validate_bounds(self):
        if self.min_evidence > self.max_evidence:
            raise ValueError('min_evidence must not exceed max_evidence')
        if self.anchor_enabled and not self.anchor_endpoint:
            raise ValueError('anchor_endpoint required when anchor_enabled=true')
        return self

    # ========================================================================
    # Parsed Properties
    # ========================================================================

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.case_ttl_days)

    @property
    def db_path(self) -> Path:
        """SQLite key-value database path."""
        return self.state_dir / 'ledger.db'

    def read_anchor_api_key(self) -> Optional[str]:
        if self.anchor_api_key_file and self.anchor_api_key_file.exists():
            return self.anchor_api_key_file.read_text().strip()
        return None

    model_config = ConfigDict(
        validate_assignment=True,
        extra='forbid'
    )


def _bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes')


def load_config(environ: Optional[Mapping[str, str]] = None) -> LedgerConfig:
    """
    Load configuration from environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        LedgerConfig: Validated configuration

    Raises:
        pydantic.ValidationError: If settings are invalid
    """
    env = os.environ if environ is None else environ

    verifiers = [
        v.strip() for v in env.get('AUTHORIZED_VERIFIERS', '').split(',') if v.strip()
    ]

    config_dict = {
        # Evidence bounds
        'min_evidence': int(env.get('MIN_EVIDENCE_COUNT', '3')),
        'max_evidence': int(env.get('MAX_EVIDENCE_COUNT', '100')),

        # Lifecycle
        'case_ttl_days': int(env.get('DISPUTE_EXPIRY_DAYS', '30')),
        'sweep_interval_seconds': int(env.get('SWEEP_INTERVAL', '86400')),

        # Storage
        'storage_backend': env.get('STORAGE_BACKEND', 'sqlite'),
        'state_dir': Path(env.get('STATE_DIR', '/var/lib/dispute-ledger')),

        # Anchoring
        'anchor_enabled': _bool(env.get('ANCHOR_ENABLED', 'false')),
        'anchor_endpoint': env.get('ANCHOR_ENDPOINT') or None,
        'anchor_api_key_file': env.get('ANCHOR_API_KEY_FILE') or None,
        'anchor_timeout_seconds': float(env.get('ANCHOR_TIMEOUT', '60')),
        'anchor_max_retries': int(env.get('ANCHOR_MAX_RETRIES', '3')),
        'anchor_max_total_attempts': int(env.get('ANCHOR_MAX_TOTAL_ATTEMPTS', '10')),
        'anchor_retry_base_seconds': float(env.get('ANCHOR_RETRY_DELAY', '5')),
        'anchor_retry_max_seconds': float(env.get('ANCHOR_RETRY_MAX_DELAY', '300')),

        # Signing & verification
        'signing_key_file': env.get('SIGNING_KEY_FILE') or None,
        'authorized_verifiers': verifiers,

        # Logging
        'log_level': env.get('LOG_LEVEL', 'INFO'),
    }

    return LedgerConfig(**config_dict)
