"""
Ticker Engine Core: Input Validation & Sanitation

Pure functions that normalize and accept/reject externally supplied symbols,
names, prices and update intervals. Symbols and names are always sanitized
before validation; numeric inputs are validated as-is and never clamped.
"""

import math
import re
from dataclasses import dataclass
from numbers import Real
from typing import Any, Callable, Dict

from core.exceptions import ErrorKind
from core.models import ValidationResult

STOCK_SYMBOL_PATTERN = re.compile(r"^[A-Z]{1,5}$")
STOCK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9&\s\-.,]+$")
_SYMBOL_STRIP = re.compile(r"[^A-Z]")
_NAME_STRIP = re.compile(r"[^A-Za-z0-9&\s\-.,]")

SYMBOL_MAX_LENGTH = 5


@dataclass(frozen=True)
class SecurityConstraints:
    """Bounds applied by the validators"""
    min_stock_price: float = 0.01
    max_stock_price: float = 1_000_000.0
    min_update_interval_ms: int = 100
    stock_name_max_length: int = 50

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SecurityConstraints":
        config = config or {}
        defaults = cls()
        return cls(
            min_stock_price=float(config.get("min_stock_price", defaults.min_stock_price)),
            max_stock_price=float(config.get("max_stock_price", defaults.max_stock_price)),
            min_update_interval_ms=int(config.get("min_update_interval_ms", defaults.min_update_interval_ms)),
            stock_name_max_length=int(config.get("stock_name_max_length", defaults.stock_name_max_length)),
        )


DEFAULT_CONSTRAINTS = SecurityConstraints()


def sanitize_stock_symbol(symbol: Any) -> str:
    """Uppercase, drop everything outside A-Z, keep at most 5 characters."""
    if not isinstance(symbol, str):
        return ""
    return _SYMBOL_STRIP.sub("", symbol.strip().upper())[:SYMBOL_MAX_LENGTH]


def sanitize_stock_name(name: Any, constraints: SecurityConstraints = DEFAULT_CONSTRAINTS) -> str:
    if not isinstance(name, str):
        return ""
    return _NAME_STRIP.sub("", name.strip())[:constraints.stock_name_max_length]


def validate_stock_symbol(symbol: Any) -> ValidationResult:
    if not symbol or not isinstance(symbol, str):
        return ValidationResult.fail(ErrorKind.VALIDATION, "Stock symbol is required")

    if not STOCK_SYMBOL_PATTERN.fullmatch(symbol):
        return ValidationResult.fail(ErrorKind.VALIDATION, "Stock symbol must be 1-5 uppercase letters")

    return ValidationResult.ok()


def validate_stock_name(name: Any, constraints: SecurityConstraints = DEFAULT_CONSTRAINTS) -> ValidationResult:
    if not name or not isinstance(name, str):
        return ValidationResult.fail(ErrorKind.VALIDATION, "Stock name is required")

    if len(name) > constraints.stock_name_max_length:
        return ValidationResult.fail(
            ErrorKind.VALIDATION,
            f"Stock name cannot exceed {constraints.stock_name_max_length} characters",
        )

    if not STOCK_NAME_PATTERN.fullmatch(name):
        return ValidationResult.fail(ErrorKind.VALIDATION, "Stock name contains invalid characters")

    return ValidationResult.ok()


def _is_number(value: Any) -> bool:
    # bool is a Real subclass but never a meaningful price or interval
    return isinstance(value, Real) and not isinstance(value, bool) and not math.isnan(value)


def validate_stock_price(price: Any, constraints: SecurityConstraints = DEFAULT_CONSTRAINTS) -> ValidationResult:
    if not _is_number(price):
        return ValidationResult.fail(ErrorKind.VALIDATION, "Price must be a valid number")

    if price < constraints.min_stock_price:
        return ValidationResult.fail(
            ErrorKind.VALIDATION,
            f"Price cannot be less than {constraints.min_stock_price}",
        )

    if price > constraints.max_stock_price:
        return ValidationResult.fail(
            ErrorKind.VALIDATION,
            f"Price cannot exceed {constraints.max_stock_price}",
        )

    return ValidationResult.ok()


def validate_update_interval(interval_ms: Any, constraints: SecurityConstraints = DEFAULT_CONSTRAINTS) -> ValidationResult:
    if not _is_number(interval_ms) or math.isinf(interval_ms):
        return ValidationResult.fail(ErrorKind.VALIDATION, "Update interval must be a valid number")

    if interval_ms < constraints.min_update_interval_ms:
        return ValidationResult.fail(
            ErrorKind.VALIDATION,
            f"Update interval cannot be less than {constraints.min_update_interval_ms}ms",
        )

    return ValidationResult.ok()


def mask_sensitive_data(data: Any, kind: str) -> str:
    """
    Mask a symbol or price for display in shared views.

    Symbols keep their first and last character; prices collapse to a
    magnitude bucket such as "$***.**".
    """
    if data is None or data == "":
        return ""
    text = str(data)

    if kind == "symbol":
        if len(text) <= 2:
            return text
        return f"{text[0]}{'*' * (len(text) - 2)}{text[-1]}"

    if kind == "price":
        try:
            price = float(text)
        except ValueError:
            return text
        if math.isnan(price):
            return text
        if price < 10:
            return "$*.**"
        if price < 100:
            return "$**.**"
        if price < 1000:
            return "$***.**"
        if price < 10000:
            return "$*,***.**"
        return "$**,***.**"

    return text


def build_validators(constraints: SecurityConstraints = DEFAULT_CONSTRAINTS) -> Dict[str, Callable[[Any], ValidationResult]]:
    """Validators keyed by input kind, bound to the given constraints."""
    return {
        "symbol": validate_stock_symbol,
        "name": lambda value: validate_stock_name(value, constraints),
        "price": lambda value: validate_stock_price(value, constraints),
        "interval": lambda value: validate_update_interval(value, constraints),
    }


__all__ = [
    "DEFAULT_CONSTRAINTS",
    "STOCK_NAME_PATTERN",
    "STOCK_SYMBOL_PATTERN",
    "SecurityConstraints",
    "build_validators",
    "mask_sensitive_data",
    "sanitize_stock_name",
    "sanitize_stock_symbol",
    "validate_stock_name",
    "validate_stock_price",
    "validate_stock_symbol",
    "validate_update_interval",
]
