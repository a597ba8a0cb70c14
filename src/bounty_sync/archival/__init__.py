"""Archival of hunter submissions on the pinning service."""

from bounty_sync.archival.sweeper import ArchivalSweeper

__all__ = ["ArchivalSweeper"]
