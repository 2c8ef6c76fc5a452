"""metaview kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .fingerprint import query_fingerprint, same_fingerprint

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "query_fingerprint",
    "same_fingerprint",
]
