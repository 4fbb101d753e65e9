"""Configuration for arch-boot-rescue."""
