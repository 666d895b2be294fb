"""Book writers for assembled volumes."""

from __future__ import annotations

from typing import Iterable, Optional, Type

from .base import BaseBookBuilder
from .epub import EpubBookBuilder
from .pdf import PdfBookBuilder

_REGISTERED_BUILDERS: Iterable[Type[BaseBookBuilder]] = (
    PdfBookBuilder,
    EpubBookBuilder,
)


def get_builder_by_name(name: str) -> Optional[Type[BaseBookBuilder]]:
    lowered = (name or "").lower()
    for builder in _REGISTERED_BUILDERS:
        if builder.name == lowered:
            return builder
    return None


def create_builder(
    name: str, title: str, author: str = "", language: str = "en"
) -> BaseBookBuilder:
    builder = get_builder_by_name(name)
    if builder is None:
        raise ValueError(f"Unknown output format: {name}")
    return builder(title, author=author, language=language)


__all__ = [
    "BaseBookBuilder",
    "EpubBookBuilder",
    "PdfBookBuilder",
    "create_builder",
    "get_builder_by_name",
]
