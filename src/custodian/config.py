"""Service configuration read from ``CUSTODIAN_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError
from .signing import normalize_address


ENV_PREFIX = "CUSTODIAN_"

DEFAULT_CHAIN_ID = 31337
ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
DEFAULT_HOME = Path.home() / ".custodian"


@dataclass
class CustodianConfig:
    sponsor_key: Optional[str] = None
    chain_id: int = DEFAULT_CHAIN_ID
    entry_point: str = ENTRY_POINT_V07
    native_paymaster: Optional[str] = None
    token_paymaster: Optional[str] = None
    token_address: Optional[str] = None
    escrow_address: Optional[str] = None
    bridge_address: Optional[str] = None
    arbitrator_address: Optional[str] = None
    log_url: Optional[str] = None
    log_secret: Optional[str] = None
    log_operator: str = "custodian"
    log_network: str = "testnet"
    home: Path = DEFAULT_HOME
    clock_skew_seconds: int = 30
    hourly_cap: int = 20
    rate_window_seconds: int = 3600
    quote_validity_seconds: int = 600
    sponsor_validity_seconds: int = 300
    max_slippage_bps: int = 50

    @property
    def state_path(self) -> Path:
        return self.home / "state.json"

    def require(self, field_name: str):
        value = getattr(self, field_name)
        if value in (None, ""):
            raise ConfigError(f"{ENV_PREFIX}{field_name.upper()} is not set")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> CustodianConfig:
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        def get_int(name: str, default: int) -> int:
            raw = get(name)
            if raw is None:
                return default
            try:
                return int(raw, 0)
            except ValueError:
                raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

        def get_address(name: str, default: Optional[str] = None) -> Optional[str]:
            raw = get(name) or default
            if raw is None:
                return None
            try:
                return normalize_address(raw)
            except ValueError as exc:
                raise ConfigError(f"{ENV_PREFIX}{name}: {exc}") from None

        home = get("HOME")
        return cls(
            sponsor_key=get("SPONSOR_KEY"),
            chain_id=get_int("CHAIN_ID", DEFAULT_CHAIN_ID),
            entry_point=get_address("ENTRY_POINT", ENTRY_POINT_V07),
            native_paymaster=get_address("NATIVE_PAYMASTER"),
            token_paymaster=get_address("TOKEN_PAYMASTER"),
            token_address=get_address("TOKEN_ADDRESS"),
            escrow_address=get_address("ESCROW_ADDRESS"),
            bridge_address=get_address("BRIDGE_ADDRESS"),
            arbitrator_address=get_address("ARBITRATOR_ADDRESS"),
            log_url=get("LOG_URL"),
            log_secret=get("LOG_SECRET"),
            log_operator=get("LOG_OPERATOR") or "custodian",
            log_network=get("LOG_NETWORK") or "testnet",
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            clock_skew_seconds=get_int("CLOCK_SKEW_SECONDS", 30),
            hourly_cap=get_int("HOURLY_CAP", 20),
            rate_window_seconds=get_int("RATE_WINDOW_SECONDS", 3600),
            quote_validity_seconds=get_int("QUOTE_VALIDITY_SECONDS", 600),
            sponsor_validity_seconds=get_int("SPONSOR_VALIDITY_SECONDS", 300),
            max_slippage_bps=get_int("MAX_SLIPPAGE_BPS", 50),
        )
