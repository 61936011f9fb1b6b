"""Saved payment token synchronization."""

from .synchronizer import TokenSynchronizer, UPDATABLE_FROM_DETAILS_TYPES
from .labels import (
    saved_method_label,
    normalize_payment_method_label,
    LABEL_OVERRIDE_PAYMENT_METHOD_TYPES,
)

__all__ = [
    "TokenSynchronizer",
    "UPDATABLE_FROM_DETAILS_TYPES",
    "saved_method_label",
    "normalize_payment_method_label",
    "LABEL_OVERRIDE_PAYMENT_METHOD_TYPES",
]
