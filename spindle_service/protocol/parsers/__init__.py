"""
Stream-level parsing: delimiter scanning and invocation parsing.
"""
from .tags import TagScanner
from .invocation import parse_invocation, salvage_payload, shorten

__all__ = ["TagScanner", "parse_invocation", "salvage_payload", "shorten"]
