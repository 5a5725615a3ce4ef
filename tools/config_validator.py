"""
Configuration Validation Module

Validates ticker.yaml against Pydantic schemas, then applies cross-field
sanity checks. Ensures the config is correct before the engine starts.

Usage:
    from tools.config_validator import validate_config_file

    errors = validate_config_file("config/ticker.yaml")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# ===== Ticker Schema =====
class TickerSection(BaseModel):
    """Price simulation parameters"""
    model_config = ConfigDict(extra="forbid")

    update_interval_ms: int = Field(default=2000, gt=0, description="Scheduler cadence (ms)")
    max_history_points: int = Field(default=30, gt=0, le=10_000, description="Points kept per instrument")
    max_stocks: int = Field(default=50, gt=0, description="Catalogue size cap")
    start_paused: bool = Field(default=False, description="Start with the scheduler paused")
    price_fluctuation_pct: float = Field(default=2.0, gt=0, le=50, description="Max per-tick move %")


class ConstraintsSection(BaseModel):
    """Validator bounds"""
    model_config = ConfigDict(extra="forbid")

    min_stock_price: float = Field(default=0.01, gt=0, description="Lowest accepted price")
    max_stock_price: float = Field(default=1_000_000.0, gt=0, description="Highest accepted price")
    min_update_interval_ms: int = Field(default=100, gt=0, description="Fastest accepted cadence (ms)")
    stock_name_max_length: int = Field(default=50, gt=0, le=500, description="Name length cap")

    @field_validator("max_stock_price")
    @classmethod
    def validate_price_bounds(cls, v: float, info) -> float:
        """Ensure max_stock_price > min_stock_price"""
        min_price = info.data.get("min_stock_price", 0)
        if v <= min_price:
            raise ValueError(f"max_stock_price ({v}) must be > min_stock_price ({min_price})")
        return v


class RateLimitsSection(BaseModel):
    """Per-action quotas sharing one window"""
    model_config = ConfigDict(extra="forbid")

    window_ms: int = Field(default=60_000, gt=0, description="Rate window (ms)")
    actions: Dict[str, int] = Field(default_factory=dict, description="Action family -> max calls per window")

    @field_validator("actions")
    @classmethod
    def validate_action_limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        known = {"setPrice", "updateSpeed", "addStock", "removeStock", "selectStock"}
        for action, limit in v.items():
            if action not in known:
                raise ValueError(f"Unknown rate-limited action {action!r}; expected one of {sorted(known)}")
            if limit <= 0:
                raise ValueError(f"Rate limit for {action} must be > 0, got {limit}")
        return v


class RetrySection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, gt=0, description="Attempts before cooldown")
    retry_delay_ms: int = Field(default=1000, ge=0, description="Cooldown is twice this delay")


class MemorySection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    check_interval_ms: int = Field(default=10_000, gt=0, description="Monitor cadence (ms)")
    max_usage_mb: float = Field(default=100.0, gt=0, description="Heap budget (MB)")
    trace_allocations: bool = Field(default=True, description="Start tracemalloc at launch")


class StorageSection(BaseModel):
    """Persistence of the ticker snapshot"""
    model_config = ConfigDict(extra="forbid")

    backend: str = Field(default="memory", pattern="^(file|memory)$", description="Key/value backend")
    path: str = Field(default="data/ticker_storage.json", min_length=1, description="File backend location")
    prefix: str = Field(default="secure_ticker_", description="Key namespace")
    state_key: str = Field(default="tickerState", min_length=1, description="Key of the persisted snapshot")
    obfuscation_key: str = Field(default="TICKER_STORAGE_KEY", min_length=1, description="XOR obfuscation key")
    obfuscation_key_env: str = Field(default="TICKER_STORAGE_KEY", min_length=1, description="Env override for the key")
    max_items: int = Field(default=100, gt=0, description="Item cap per backend")
    autoload: bool = Field(default=True, description="Restore snapshot on start")
    autosave: bool = Field(default=True, description="Persist snapshot on shutdown")


class ErrorsSection(BaseModel):
    """Internal error severity policy"""
    model_config = ConfigDict(extra="forbid")

    window_seconds: float = Field(default=300, gt=0, description="Window for counting internal errors")
    pause_threshold: int = Field(default=2, gt=0, description="Errors within the window that force a pause")


class StockEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(pattern="^[A-Z]{1,5}$", description="Ticker symbol")
    name: str = Field(min_length=1, description="Display name")
    price: float = Field(gt=0, description="Initial price")


class LoggingSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default=None, description="Optional log file")


class MonitoringSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metrics_enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    metrics_port: int = Field(default=9100, gt=0, le=65535, description="Exporter port")


class TickerConfigSchema(BaseModel):
    """Complete ticker.yaml schema (every section optional)"""
    model_config = ConfigDict(extra="forbid")

    ticker: TickerSection = Field(default_factory=TickerSection)
    constraints: ConstraintsSection = Field(default_factory=ConstraintsSection)
    rate_limits: RateLimitsSection = Field(default_factory=RateLimitsSection)
    retry: RetrySection = Field(default_factory=RetrySection)
    memory: MemorySection = Field(default_factory=MemorySection)
    storage: StorageSection = Field(default_factory=StorageSection)
    errors: ErrorsSection = Field(default_factory=ErrorsSection)
    stocks: Optional[List[StockEntry]] = Field(default=None, description="Seed catalogue")
    logging: LoggingSection = Field(default_factory=LoggingSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"{message} (line {line + 1}, column {column + 1})"

    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_sanity_checks(config: Dict[str, Any]) -> List[str]:
    """
    Cross-field checks the schema cannot express.

    Assumes the schema already validated config.
    """
    errors: List[str] = []
    schema = TickerConfigSchema(**config)
    constraints = schema.constraints

    if schema.ticker.update_interval_ms < constraints.min_update_interval_ms:
        errors.append(
            f"ticker.update_interval_ms ({schema.ticker.update_interval_ms}) is below "
            f"constraints.min_update_interval_ms ({constraints.min_update_interval_ms})"
        )

    stocks = schema.stocks or []
    if len(stocks) > schema.ticker.max_stocks:
        errors.append(f"stocks: {len(stocks)} configured but ticker.max_stocks is {schema.ticker.max_stocks}")

    seen = set()
    for entry in stocks:
        if entry.symbol in seen:
            errors.append(f"stocks: duplicate symbol {entry.symbol}")
        seen.add(entry.symbol)
        if not constraints.min_stock_price <= entry.price <= constraints.max_stock_price:
            errors.append(
                f"stocks -> {entry.symbol}: price {entry.price} outside "
                f"[{constraints.min_stock_price}, {constraints.max_stock_price}]"
            )
        if len(entry.name) > constraints.stock_name_max_length:
            errors.append(
                f"stocks -> {entry.symbol}: name longer than {constraints.stock_name_max_length} characters"
            )

    return errors


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a parsed ticker config.

    Returns:
        List of error messages (empty if valid)
    """
    if not isinstance(config, dict):
        return ["ticker.yaml: top level must be a mapping"]

    try:
        TickerConfigSchema(**config)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"ticker.yaml: {field}: {error['msg']}")
        return errors

    return [f"ticker.yaml: {error}" for error in validate_sanity_checks(config)]


def validate_config_file(path: str = "config/ticker.yaml") -> List[str]:
    """Load and validate a ticker config file"""
    file_path = Path(path)
    try:
        config = load_yaml_file(file_path)
    except FileNotFoundError as e:
        return [f"ticker.yaml: {e}"]
    except yaml.YAMLError as e:
        return [f"ticker.yaml: Invalid YAML - {e}"]

    errors = validate_config(config)
    if errors:
        logger.error(f"{len(errors)} validation error(s) found in {file_path}")
    else:
        logger.info(f"{file_path} validation passed")
    return errors


def load_config(path: str = "config/ticker.yaml") -> Dict[str, Any]:
    """
    Load a validated ticker config.

    Raises:
        ValueError: If the file is missing, malformed or invalid
    """
    errors = validate_config_file(path)
    if errors:
        raise ValueError("Invalid ticker configuration:\n  " + "\n  ".join(errors))
    return load_yaml_file(Path(path))


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_path = sys.argv[1] if len(sys.argv) > 1 else "config/ticker.yaml"
    errors = validate_config_file(config_path)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nConfiguration is valid!\n")
        sys.exit(0)
