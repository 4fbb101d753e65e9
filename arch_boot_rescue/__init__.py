"""Bootloader recovery for Arch Linux installations from a live environment."""

from .__version__ import __version__


__all__ = ["__version__"]
