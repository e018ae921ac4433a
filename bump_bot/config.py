"""
Configuration Management Module

Handles the bump bot configuration file with encrypted API credentials.
Uses Fernet symmetric encryption with password-derived keys.
"""

import os
import base64
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict, field

import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Secrets kept encrypted at rest
SECRET_FIELDS = ("zerox_api_key", "coingecko_api_key")


@dataclass
class Config:
    """Bump bot configuration settings."""

    # Network
    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = 8453

    # Funding asset (WETH on Base)
    funding_token: str = "0x4200000000000000000000000000000000000006"
    funding_token_decimals: int = 18

    # Storage
    database_url: str = "sqlite+aiosqlite:///./bump_bot.db"

    # Worker pool
    wallet_count: int = 5

    # Session limits
    min_interval_seconds: int = 2
    max_interval_seconds: int = 600
    min_notional_usd: str = "0.01"
    max_consecutive_failures: int = 5

    # Scheduler
    poll_interval_seconds: int = 30
    lease_seconds: int = 900

    # External call timeouts
    price_timeout_seconds: float = 10.0
    quote_timeout_seconds: float = 30.0
    submit_timeout_seconds: float = 60.0
    confirmation_timeout_seconds: float = 180.0

    # Aggregator
    zerox_api_url: str = "https://api.0x.org"
    slippage_bps: List[int] = field(default_factory=lambda: [500, 1000])

    # Price feed
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    price_cache_seconds: float = 0.0

    # Gas settings
    max_gas_price_gwei: float = 5.0
    gas_limit_buffer: float = 1.2  # 20% buffer

    # Custody
    custody_backend: str = "dry_run"
    keystore_file: str = "./bump_wallets.json"

    # Deposits
    allow_unverified_deposits: bool = False

    # Security (encrypted at rest)
    zerox_api_key: Optional[str] = None
    coingecko_api_key: Optional[str] = None
    salt: Optional[str] = None

    # Operation
    dry_run: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = "./bump_bot.log"
    json_log_file: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        # Filter only valid fields
        valid_fields = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems = []
        if self.wallet_count < 1:
            problems.append("wallet_count must be at least 1")
        if self.min_interval_seconds < 1 or self.min_interval_seconds > self.max_interval_seconds:
            problems.append("interval bounds are inconsistent")
        if self.max_consecutive_failures < 1:
            problems.append("max_consecutive_failures must be at least 1")
        if not self.slippage_bps or any(b <= 0 or b >= 10000 for b in self.slippage_bps):
            problems.append("slippage_bps must be a non-empty list of values in (0, 10000)")
        if self.custody_backend not in ("dry_run", "local"):
            problems.append(f"unknown custody_backend: {self.custody_backend}")
        if self.custody_backend == "local" and self.dry_run:
            problems.append("custody_backend 'local' requires dry_run: false")
        return problems


class ConfigManager:
    """Manages configuration file with encrypted secrets."""

    def __init__(self, config_path: Path = Path("./bump_config.yaml")):
        self.config_path = Path(config_path)
        self._kdf_iterations = 480000  # OWASP recommended minimum

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def _encrypt_secret(self, secret: str, password: str, salt: bytes) -> str:
        f = Fernet(self._derive_key(password, salt))
        return base64.b64encode(f.encrypt(secret.strip().encode())).decode()

    def _decrypt_secret(self, encrypted: str, password: str, salt: bytes) -> str:
        f = Fernet(self._derive_key(password, salt))
        try:
            return f.decrypt(base64.b64decode(encrypted.encode())).decode()
        except InvalidToken:
            raise ValueError("Invalid password for encrypted configuration")

    def create_config(
        self,
        config_data: Dict[str, Any],
        password: str,
        secrets: Optional[Dict[str, str]] = None
    ) -> Config:
        """Create new configuration, encrypting any API keys supplied."""
        salt = os.urandom(16)
        data = dict(config_data)
        data["salt"] = base64.b64encode(salt).decode()

        for name in SECRET_FIELDS:
            value = (secrets or {}).get(name) or data.get(name)
            data[name] = self._encrypt_secret(value, password, salt) if value else None

        config = Config.from_dict(data)
        self._save_config(config)

        logger.info(f"Configuration created at {self.config_path}")
        return config

    def load_config(self, password: Optional[str] = None) -> Config:
        """
        Load configuration, decrypting secrets for runtime use.

        Without a password the encrypted secrets are dropped, which is enough
        for dry-run operation.
        """
        config = Config.from_dict(self.read_raw_config())

        if config.salt:
            salt = base64.b64decode(config.salt)
            for name in SECRET_FIELDS:
                encrypted = getattr(config, name)
                if not encrypted:
                    continue
                if password is None:
                    setattr(config, name, None)
                else:
                    setattr(config, name, self._decrypt_secret(encrypted, password, salt))

        problems = config.validate()
        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))

        logger.info("Configuration loaded successfully")
        return config

    def read_raw_config(self) -> Dict[str, Any]:
        """Read config without decrypting (for status checks)."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _save_config(self, config: Config):
        """Save configuration to YAML file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

        # Owner read/write only
        os.chmod(self.config_path, 0o600)

        logger.info(f"Configuration saved to {self.config_path}")

    def update_config(self, updates: Dict[str, Any]):
        """Update non-secret configuration values."""
        data = self.read_raw_config()
        for name in SECRET_FIELDS + ("salt",):
            updates.pop(name, None)
        data.update(updates)

        self._save_config(Config.from_dict(data))
        logger.info("Configuration updated")

    def rotate_password(self, old_password: str, new_password: str):
        """Re-encrypt secrets under a new password and salt."""
        config = self.load_config(old_password)

        salt = os.urandom(16)
        data = self.read_raw_config()
        data["salt"] = base64.b64encode(salt).decode()
        for name in SECRET_FIELDS:
            value = getattr(config, name)
            data[name] = self._encrypt_secret(value, new_password, salt) if value else None

        self._save_config(Config.from_dict(data))
        logger.info("Password rotated successfully")


# Default configuration template
DEFAULT_CONFIG = """
# Bump Bot Configuration
# API keys are stored encrypted - keep this file secure!

rpc_url: https://mainnet.base.org
chain_id: 8453

# Funding asset (WETH on Base)
funding_token: "0x4200000000000000000000000000000000000006"
funding_token_decimals: 18

database_url: sqlite+aiosqlite:///./bump_bot.db

# Worker pool
wallet_count: 5

# Session limits
min_interval_seconds: 2
max_interval_seconds: 600
min_notional_usd: "0.01"
max_consecutive_failures: 5

# Scheduler
poll_interval_seconds: 30
lease_seconds: 900

# Timeouts (seconds)
price_timeout_seconds: 10
quote_timeout_seconds: 30
submit_timeout_seconds: 60
confirmation_timeout_seconds: 180

# Aggregator slippage ladder (basis points)
slippage_bps: [500, 1000]

# Gas Settings
max_gas_price_gwei: 5.0
gas_limit_buffer: 1.2

# Custody: dry_run (simulated) or local (encrypted keystore)
custody_backend: dry_run
keystore_file: ./bump_wallets.json

allow_unverified_deposits: false

# Operation Settings
dry_run: true
log_level: INFO
log_file: ./bump_bot.log

# Encrypted credentials (DO NOT MODIFY)
zerox_api_key: null
coingecko_api_key: null
salt: null
""".strip()
