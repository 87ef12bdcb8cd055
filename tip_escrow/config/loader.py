"""
Configuration management and loading.

Handles revenue split and payout policy settings. Thresholds change with
notice to artists, so they live in configuration rather than code.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_ENV_VAR = "TIP_ESCROW_CONFIG"


@dataclass(frozen=True)
class RevenueSplitConfig:
    """Share of every tip that goes to the artist pool."""
    artist_share_percent: int = 70

    def __post_init__(self):
        """Validate the percentage is a whole number in range."""
        if not 1 <= self.artist_share_percent <= 100:
            raise ValueError("artist_share_percent must be between 1 and 100")


@dataclass(frozen=True)
class PayoutThresholds:
    """Payout eligibility thresholds, all in pence."""
    first_payout_pence: int = 3300
    subsequent_payout_pence: int = 1000
    minimum_payout_pence: int = 100

    def __post_init__(self):
        """Validate thresholds are positive."""
        if self.first_payout_pence <= 0:
            raise ValueError("first_payout_pence must be > 0")
        if self.subsequent_payout_pence <= 0:
            raise ValueError("subsequent_payout_pence must be > 0")
        if self.minimum_payout_pence <= 0:
            raise ValueError("minimum_payout_pence must be > 0")


@dataclass(frozen=True)
class OwnershipConfig:
    """How strictly ownership shares must sum to one."""
    share_tolerance: Decimal = Decimal("0.0001")

    def __post_init__(self):
        """Validate tolerance is a small non-negative number."""
        if self.share_tolerance < 0 or self.share_tolerance >= 1:
            raise ValueError("share_tolerance must be >= 0 and < 1")


@dataclass(frozen=True)
class EscrowConfig:
    """Complete escrow ledger configuration."""
    revenue_split: RevenueSplitConfig = field(default_factory=RevenueSplitConfig)
    payout: PayoutThresholds = field(default_factory=PayoutThresholds)
    ownership: OwnershipConfig = field(default_factory=OwnershipConfig)


def default_escrow_config() -> EscrowConfig:
    """Policy defaults: 70/30 split, £33 first payout, £10 thereafter, £1 minimum."""
    return EscrowConfig()


def load_escrow_config(path: str) -> EscrowConfig:
    """Load and validate escrow configuration from YAML file.

    Strict validation ensures a typo cannot silently change what artists are
    paid. Omitted sections keep their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EscrowConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Escrow config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'revenue_split', 'payout', 'ownership'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    revenue_data = _section(raw_config, 'revenue_split', {'artist_share_percent'})
    payout_data = _section(
        raw_config,
        'payout',
        {'first_payout_pence', 'subsequent_payout_pence', 'minimum_payout_pence'},
    )
    ownership_data = _section(raw_config, 'ownership', {'share_tolerance'})

    revenue_split = RevenueSplitConfig(**{
        key: _parse_int(value, f"revenue_split.{key}") for key, value in revenue_data.items()
    })
    payout = PayoutThresholds(**{
        key: _parse_int(value, f"payout.{key}") for key, value in payout_data.items()
    })

    ownership = OwnershipConfig()
    if 'share_tolerance' in ownership_data:
        ownership = OwnershipConfig(
            share_tolerance=_parse_decimal(ownership_data['share_tolerance'], "ownership.share_tolerance")
        )

    return EscrowConfig(revenue_split=revenue_split, payout=payout, ownership=ownership)


def resolve_escrow_config(path: Optional[str] = None) -> EscrowConfig:
    """Load config from ``path``, else ``$TIP_ESCROW_CONFIG``, else defaults."""
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        return load_escrow_config(path)
    return default_escrow_config()


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated config section, or ``{}`` if absent."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_int(value: Any, path: str) -> int:
    """Money thresholds are whole pence; floats and bools are refused."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    if value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return value


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
