"""Graph compilation and run execution core."""

from __future__ import annotations
