# faucet_bot/config.py
from decimal import Decimal, InvalidOperation
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from faucet_bot.core.errors import ConfigurationError


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "poller"] = "all"
    log_level: str = "INFO"
    http_host: str = "0.0.0.0"
    http_port: int = 8000

    # Chain (EVM JSON-RPC)
    rpc_url: str | None = None
    funding_addresses: str = ""  # Comma-separated, in preference order (first-fit)
    token_symbol: str = "MON"
    token_decimals: int = 18
    rpc_timeout_seconds: float = 15.0
    receipt_poll_interval_seconds: float = 2.0
    transfer_gas_limit: int = 21000  # 0 = let the node estimate

    # Faucet policy (token units, converted with token_decimals)
    faucet_amount: str = "0.05"
    global_budget: str = "300"  # Max dispensed per reset interval
    recipient_cap: str = "300"  # Max received per address per reset interval
    recipient_balance_ceiling: str = "10"  # Empty string disables the check
    cooldown_seconds: int = 43200  # 12 hours
    reset_interval_seconds: int = 43200  # 12 hours

    # Dispatch worker
    no_funding_backoff_seconds: float = 5.0
    no_funding_max_wait_seconds: float = 120.0
    confirmation_timeout_seconds: float = 60.0
    transient_max_attempts: int = 3  # Total submission attempts on transient faults
    transient_retry_delay_seconds: float = 5.0

    # Telegram
    telegram_bot_token: str | None = None
    telegram_poll_timeout: int = 30
    allowed_chat_ids: str = ""  # Empty = every chat
    admin_user_ids: str = ""  # May use /balance and /give
    faucet_user_ids: str = ""  # Empty = anyone may request
    chat_rate_limit_per_minute: int = 10

    # Monitoring
    metrics_token: str | None = None
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def funding_address_list(self) -> list[str]:
        return _split_csv(self.funding_addresses)

    @property
    def allowed_chat_id_set(self) -> set[str]:
        return set(_split_csv(self.allowed_chat_ids))

    @property
    def admin_user_id_set(self) -> set[str]:
        return set(_split_csv(self.admin_user_ids))

    @property
    def faucet_user_id_set(self) -> set[str]:
        return set(_split_csv(self.faucet_user_ids))

    def to_base_units(self, value: str) -> int:
        """Convert a decimal token amount (e.g. "0.05") to the smallest unit."""
        try:
            scaled = Decimal(value) * (Decimal(10) ** self.token_decimals)
        except InvalidOperation:
            raise ConfigurationError(f"Invalid token amount: {value!r}")
        if scaled != scaled.to_integral_value():
            raise ConfigurationError(
                f"Amount {value!r} has more than {self.token_decimals} decimals"
            )
        return int(scaled)

    @property
    def faucet_amount_units(self) -> int:
        return self.to_base_units(self.faucet_amount)

    @property
    def global_budget_units(self) -> int:
        return self.to_base_units(self.global_budget)

    @property
    def recipient_cap_units(self) -> int:
        return self.to_base_units(self.recipient_cap)

    @property
    def recipient_balance_ceiling_units(self) -> int | None:
        if not self.recipient_balance_ceiling.strip():
            return None
        return self.to_base_units(self.recipient_balance_ceiling)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        required_fields = [
            ("rpc_url", self.rpc_url),
            ("funding_addresses", self.funding_address_list),
        ]
        if self.run_mode in ("all", "poller"):
            required_fields.append(("telegram_bot_token", self.telegram_bot_token))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Chain ---
    if not s.rpc_url:
        warnings.append("rpc_url is not set (transfers and balance checks will fail).")
    if not s.funding_address_list:
        warnings.append("funding_addresses is empty (every request will end NO_FUNDING_AVAILABLE).")

    # --- Policy ---
    try:
        if s.faucet_amount_units <= 0:
            warnings.append("faucet_amount must be positive.")
        if s.faucet_amount_units > s.global_budget_units:
            warnings.append("faucet_amount exceeds global_budget (every request will be rejected).")
        if s.faucet_amount_units > s.recipient_cap_units:
            warnings.append("faucet_amount exceeds recipient_cap (every request will be rejected).")
    except ConfigurationError as exc:
        warnings.append(str(exc))

    if s.transient_max_attempts < 1:
        warnings.append("transient_max_attempts < 1: no submission will ever be attempted.")

    # --- Chat ---
    if s.run_mode in ("all", "poller") and not s.telegram_enabled:
        warnings.append("telegram_bot_token is not set (chat poller will not start).")
    if not s.allowed_chat_id_set:
        warnings.append("allowed_chat_ids is empty: the bot answers in every chat it is added to.")
    if not s.admin_user_id_set:
        warnings.append("admin_user_ids is empty: /balance and /give are unusable.")

    # --- Metrics exposure ---
    if not s.metrics_token:
        warnings.append("metrics_token is not set: /metrics is publicly readable.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
