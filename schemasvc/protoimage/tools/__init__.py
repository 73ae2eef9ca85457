"""
CLI tools for protoimage.

This module provides command-line tools for:
- image: List, summarize and re-encode images

Invariants:
    - Tools work offline (local files and stdin only)
"""

from .image_cli import ImageCLI

__all__ = ["ImageCLI"]
