"""
Custom categories for ledger entries.

A category is a named set of regular expressions. On chain entries are
matched on their transaction label, off chain entries on the invoice memo
or payment description. The first category with a matching expression wins.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from .errors import CategoryError


@dataclass(frozen=True)
class CustomCategory:
    """
    A user defined category for ledger entries.

    Attributes:
        name: Label applied to matching entries
        regexes: Compiled expressions, any of which may match
        on_chain: Apply to on chain entries
        off_chain: Apply to off chain entries
    """
    name: str
    regexes: Tuple[Pattern, ...] = field(default_factory=tuple)
    on_chain: bool = False
    off_chain: bool = False

    def is_member(self, label: str) -> bool:
        return any(regex.search(label) for regex in self.regexes)


def new_custom_category(name: str, regexes: List[str], on_chain: bool,
                        off_chain: bool) -> CustomCategory:
    """
    Compile a category.

    Raises:
        CategoryError: if an expression does not compile
    """
    compiled = []
    for expression in regexes:
        try:
            compiled.append(re.compile(expression))
        except re.error as e:
            raise CategoryError(
                f"category: {name} invalid regex {expression}: {e}"
            )

    return CustomCategory(
        name=name, regexes=tuple(compiled), on_chain=on_chain,
        off_chain=off_chain,
    )


def get_category(label: str, categories: List[CustomCategory]) -> str:
    """Get the name of the first category matching label, or ""."""
    for category in categories:
        if category.is_member(label):
            return category.name

    return ""


def validate_custom_categories(categories: List[Dict[str, Any]]) -> None:
    """
    Check raw category dicts as received over RPC.

    Each needs a name, must apply to on chain and/or off chain entries, and
    every expression must compile and be unique across all categories so
    that an entry can only ever match one of them.
    """
    seen: Dict[str, str] = {}
    names = set()

    for category in categories:
        name = category.get("name")
        if not name:
            raise CategoryError("category name required")

        if name in names:
            raise CategoryError(f"duplicate category name: {name}")
        names.add(name)

        if not category.get("on_chain") and not category.get("off_chain"):
            raise CategoryError(
                f"category: {name} must apply to on chain or off chain entries"
            )

        for expression in category.get("label_patterns") or []:
            try:
                re.compile(expression)
            except re.error as e:
                raise CategoryError(
                    f"category: {name} invalid regex {expression}: {e}"
                )

            if expression in seen:
                raise CategoryError(
                    f"regex {expression} duplicated in categories "
                    f"{seen[expression]} and {name}"
                )
            seen[expression] = name


def parse_categories(raw: Optional[List[Dict[str, Any]]]) -> List[CustomCategory]:
    """Validate and compile raw category dicts."""
    if not raw:
        return []

    validate_custom_categories(raw)

    return [
        new_custom_category(
            name=category["name"],
            regexes=category.get("label_patterns") or [],
            on_chain=bool(category.get("on_chain")),
            off_chain=bool(category.get("off_chain")),
        )
        for category in raw
    ]


def split_categories(categories: List[CustomCategory]
                     ) -> Tuple[List[CustomCategory], List[CustomCategory]]:
    """Split categories into (on chain, off chain) lists, keeping order."""
    on_chain = [c for c in categories if c.on_chain]
    off_chain = [c for c in categories if c.off_chain]
    return on_chain, off_chain
