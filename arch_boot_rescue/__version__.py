"""Version information for arch-boot-rescue."""

__version__ = "0.3.0"
