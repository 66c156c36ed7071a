"""Product codes of the form ``{CATEGORY}-{000001}`` and optimistic allocation."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from ..billing.exceptions import CodeAllocationError
from ..storage import DuplicateKeyError, MissingFunctionError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

PRODUCT_CODE_CONSTRAINT = "products_product_code_key"
PRODUCT_CODE_DIGITS = 6

# alias -> (display category, code prefix)
CATEGORY_ALIASES: Dict[str, Tuple[str, str]] = {
    "chair": ("Chairs", "CHAIR"),
    "chairs": ("Chairs", "CHAIR"),
    "desk": ("Desks", "DESK"),
    "desks": ("Desks", "DESK"),
    "storage": ("Storage", "STORAGE"),
    "meeting": ("Meeting", "MEETING"),
    "meetings": ("Meeting", "MEETING"),
    "accessory": ("Accessories", "ACCESSORY"),
    "accessories": ("Accessories", "ACCESSORY"),
}


class ProductCodeStore(Protocol):
    def generate_product_code(self, category_code: str) -> Optional[str]:
        """Next code from the server-side generator."""

    def max_product_code_number(self, category_code: str) -> int:
        """Highest numeric suffix already used for ``category_code``."""


def normalize_category(value: object) -> Optional[Tuple[str, str]]:
    """Return ``(category, category_code)`` for a known alias, else ``None``."""

    if not isinstance(value, str):
        return None
    return CATEGORY_ALIASES.get(value.strip().lower())


def format_product_code(category_code: str, number: int) -> str:
    return f"{category_code}-{number:0{PRODUCT_CODE_DIGITS}d}"


def parse_product_code_number(product_code: str, category_code: str) -> int:
    prefix, _, suffix = product_code.partition("-")
    if prefix != category_code or not suffix.isdigit():
        return 0
    return int(suffix)


def allocate_product_code(store: ProductCodeStore, category_code: str) -> str:
    """Ask the generator first; fall back to ``max + 1`` only when it does not exist."""

    try:
        code = store.generate_product_code(category_code)
    except MissingFunctionError:
        logger.warning("generate_product_code unavailable; using max+1 fallback for %s", category_code)
        return format_product_code(category_code, store.max_product_code_number(category_code) + 1)
    if not code:
        raise RuntimeError("Failed to generate product code")
    return code


class BatchCodeAllocator:
    """Allocates codes for one batch attempt, caching fallback counters per category."""

    def __init__(self, store: ProductCodeStore) -> None:
        self._store = store
        self._use_fallback = False
        self._counters: Dict[str, int] = {}

    def next_code(self, category_code: str) -> str:
        if not self._use_fallback:
            try:
                code = self._store.generate_product_code(category_code)
            except MissingFunctionError:
                self._use_fallback = True
            else:
                if not code:
                    raise RuntimeError("Failed to generate product code")
                return code

        if category_code not in self._counters:
            self._counters[category_code] = self._store.max_product_code_number(category_code)
        self._counters[category_code] += 1
        return format_product_code(category_code, self._counters[category_code])

    def allocate(self, category_codes: List[str]) -> List[str]:
        return [self.next_code(code) for code in category_codes]


def insert_with_unique_code(
    allocate: Callable[[], T],
    insert: Callable[[T], R],
    *,
    attempts: int,
    code_constraint: str = PRODUCT_CODE_CONSTRAINT,
    failure_message: str = "Failed to generate a unique product code. Please retry.",
) -> R:
    """Allocate and insert, retrying only when the code's unique constraint rejects the write."""

    for attempt in range(1, attempts + 1):
        codes = allocate()
        try:
            return insert(codes)
        except DuplicateKeyError as exc:
            if not exc.violates(code_constraint):
                raise
            logger.info("Product code collision on attempt %s/%s", attempt, attempts)
    raise CodeAllocationError(failure_message)


__all__ = [
    "BatchCodeAllocator",
    "CATEGORY_ALIASES",
    "PRODUCT_CODE_CONSTRAINT",
    "ProductCodeStore",
    "allocate_product_code",
    "format_product_code",
    "insert_with_unique_code",
    "normalize_category",
    "parse_product_code_number",
]
