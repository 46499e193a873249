"""Configuration management for the sniper bot."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from ..utils.constants import WSOL_MINT

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "BOT_PROFILE"
DEFAULT_PROFILE = "default"


class SubmissionChannelKind(str, Enum):
    """Supported ways of broadcasting a signed transaction."""

    RPC = "rpc"
    JITO = "jito"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    """Merge the requested profile over the ``default`` tables."""

    base_section = cast(Dict[str, Any], data.get(DEFAULT_PROFILE, {}))
    requested = os.getenv(PROFILE_ENV_VAR)
    if not requested:
        runtime = base_section.get("runtime")
        if isinstance(runtime, dict):
            requested = cast(Optional[str], runtime.get("profile"))
    requested = (requested or DEFAULT_PROFILE).lower()
    if requested != DEFAULT_PROFILE and isinstance(data.get(requested), dict):
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested])), requested
    if base_section:
        return dict(base_section), requested
    return dict(data), requested


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    merged, profile = _select_profile(payload)
    runtime = merged.get("runtime")
    runtime = dict(runtime) if isinstance(runtime, dict) else {}
    runtime.setdefault("config_file", str(path))
    runtime.setdefault("profile", profile)
    merged["runtime"] = runtime
    return merged, path


class TomlProfileSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading the profile-aware TOML file."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        payload, _ = _load_toml_config()
        return payload


class RuntimeConfig(BaseModel):
    """Which profile is active and where it was loaded from."""

    profile: str = Field(default=DEFAULT_PROFILE)
    config_file: Optional[Path] = None


class RPCConfig(BaseModel):
    """RPC endpoint used for quotes, confirmations and account lookups."""

    primary_url: AnyHttpUrl = Field(default="https://api.mainnet-beta.solana.com")
    commitment: str = Field(default="confirmed")
    request_timeout: float = Field(default=12.0, ge=1.0, le=60.0)

    @field_validator("request_timeout", mode="before")
    @classmethod
    def _parse_request_timeout(cls, value: Any) -> Any:
        if isinstance(value, str):
            return float(value)
        return value


class WalletConfig(BaseModel):
    """Wallet and signer configuration."""

    private_key: Optional[str] = None
    keypair_path: Optional[Path] = None


class TradingConfig(BaseModel):
    """Per-trade sizing, slippage, concurrency and retry budgets."""

    quote_mint: str = Field(default=WSOL_MINT)
    quote_symbol: str = Field(default="WSOL")
    quote_decimals: int = Field(default=9, ge=0, le=18)
    quote_amount: float = Field(default=0.01, gt=0.0)
    buy_slippage_pct: float = Field(default=20.0, ge=0.0, le=100.0)
    sell_slippage_pct: float = Field(default=20.0, ge=0.0, le=100.0)
    compute_unit_limit: int = Field(default=101_337, ge=1)
    compute_unit_price: int = Field(default=421_197, ge=0)
    max_concurrent_positions: int = Field(default=1, ge=1)
    max_buy_retries: int = Field(default=10, ge=1)
    max_sell_retries: int = Field(default=10, ge=1)
    buy_deadline_seconds: float = Field(default=10.0, gt=0.0)
    auto_buy_delay_seconds: float = Field(default=0.0, ge=0.0)
    auto_sell_delay_seconds: float = Field(default=0.0, ge=0.0)
    auto_sell: bool = True


class EntrySignalConfig(BaseModel):
    """Polling budget for the momentum entry gate."""

    check_interval_seconds: float = Field(default=1.0, gt=0.0)
    check_duration_seconds: float = Field(default=600.0, gt=0.0)
    no_signal_max_checks: int = Field(default=60, ge=1)


class ExitConfig(BaseModel):
    """Take-profit, stop-loss and drawdown-abort thresholds."""

    price_check_interval_seconds: float = Field(default=2.0, ge=0.0)
    price_check_duration_seconds: float = Field(default=600.0, ge=0.0)
    take_profit_pct: float = Field(default=40.0, ge=0.0)
    stop_loss_pct: float = Field(default=20.0, ge=0.0, le=100.0)
    trailing_stop_loss: bool = False
    skip_selling_if_lost_more_than_pct: float = Field(default=90.0, ge=0.0, le=100.0)


class FilterConfig(BaseModel):
    """Pool quality filter polling and thresholds."""

    check_interval_seconds: float = Field(default=2.0, ge=0.0)
    check_duration_seconds: float = Field(default=60.0, ge=0.0)
    consecutive_match_count: int = Field(default=1, ge=1)
    min_pool_size: float = Field(default=0.0, ge=0.0)
    max_pool_size: float = Field(default=0.0, ge=0.0)


class SnipeListConfig(BaseModel):
    """Allow-list mode: only buy mints listed in a local file."""

    enabled: bool = False
    path: Path = Field(default=Path("snipe-list.txt"))
    refresh_interval_seconds: float = Field(default=30.0, gt=0.0)


class ExecutionConfig(BaseModel):
    """Submission channel selection and relay parameters."""

    channel: SubmissionChannelKind = Field(default=SubmissionChannelKind.RPC)
    jito_block_engine_url: AnyHttpUrl = Field(
        default="https://mainnet.block-engine.jito.wtf/api/v1/bundles"
    )
    jito_tip_sol: float = Field(default=0.0001, ge=0.0)
    relay_timeout_seconds: float = Field(default=5.0, gt=0.0)
    confirm_timeout_seconds: float = Field(default=30.0, gt=0.0)
    skip_preflight: bool = True


class NodeBridgeConfig(BaseModel):
    """Location of the Node.js helper wrapping the Raydium SDK."""

    base_dir: Optional[Path] = None
    quote_script: str = Field(default="raydium_quote.js")
    pool_info_script: str = Field(default="raydium_pool_info.js")
    swap_script: str = Field(default="raydium_swap.js")


class MonitoringConfig(BaseModel):
    """Logging and notification delivery configuration."""

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    alert_throttle_seconds: int = Field(default=0, ge=0)
    notify_events: List[str] = Field(default_factory=lambda: ["buy", "pnl", "abort"])
    metrics_path: Optional[Path] = None


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    entry: EntrySignalConfig = Field(default_factory=EntrySignalConfig)
    exit: ExitConfig = Field(default_factory=ExitConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    snipe_list: SnipeListConfig = Field(default_factory=SnipeListConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    node_bridge: NodeBridgeConfig = Field(default_factory=NodeBridgeConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables win over the static config file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlProfileSettingsSource(settings_cls),
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _check_pool_size_bounds(self) -> "AppConfig":
        filters = self.filters
        if filters.max_pool_size and filters.min_pool_size > filters.max_pool_size:
            raise ValueError("filters.min_pool_size must not exceed filters.max_pool_size")
        return self


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "EntrySignalConfig",
    "ExecutionConfig",
    "ExitConfig",
    "FilterConfig",
    "MonitoringConfig",
    "NodeBridgeConfig",
    "RPCConfig",
    "RuntimeConfig",
    "SnipeListConfig",
    "SubmissionChannelKind",
    "TradingConfig",
    "WalletConfig",
    "get_app_config",
]
